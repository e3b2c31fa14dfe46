"""
Webhook payload schemas - raw input from each provider.
Every model ignores unknown fields; the normalizer turns them into CanonicalEvents.
"""
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class VapiCustomer(_Lenient):
    number: Optional[str] = None
    name: Optional[str] = None


class VapiCall(_Lenient):
    id: Optional[str] = None
    status: Optional[str] = None
    outcome: Optional[str] = None
    duration: Optional[float] = None
    cost: Optional[float] = None
    endedReason: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    customer: Optional[VapiCustomer] = None


class VapiAnalysis(_Lenient):
    summary: Optional[str] = None
    successEvaluation: Optional[Any] = None
    structuredData: Optional[dict[str, Any]] = None


class VapiMessage(_Lenient):
    """Vapi server message envelope (end-of-call-report, status-update, ...)."""
    type: Optional[str] = None
    call: Optional[VapiCall] = None
    customer: Optional[VapiCustomer] = None
    endedReason: Optional[str] = None
    analysis: Optional[VapiAnalysis] = None
    durationSeconds: Optional[float] = None
    transcript: Optional[str] = None
    summary: Optional[str] = None


class VapiEnvelopePayload(_Lenient):
    """Current Vapi shape: {"message": {...}}."""
    message: VapiMessage


class VapiFlatPayload(_Lenient):
    """Legacy flat shapes: {"call": {...}} or the call fields at top level."""
    call: Optional[VapiCall] = None
    id: Optional[str] = None
    status: Optional[str] = None
    outcome: Optional[str] = None
    duration: Optional[float] = None
    endedReason: Optional[str] = None
    booked: Optional[bool] = None
    metadata: Optional[dict[str, Any]] = None
    customer: Optional[VapiCustomer] = None
    analysis: Optional[VapiAnalysis] = None


class TwilioSmsPayload(_Lenient):
    """Twilio inbound SMS webhook payload (form-encoded)."""
    MessageSid: Optional[str] = None
    From: str = ""
    To: str = ""
    Body: str = ""
