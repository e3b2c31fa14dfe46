"""
Canonical event schema - the provider-agnostic shape every webhook is
normalized into before the lead state machine sees it.
"""
import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional
from pydantic import BaseModel, Field


class EventKind(str, enum.Enum):
    CALL_ENDED = "call_ended"
    INBOUND_MESSAGE = "inbound_message"
    OPT_OUT_SIGNAL = "opt_out_signal"
    UNRECOGNIZED = "unrecognized"


class CallOutcome(str, enum.Enum):
    POSITIVE = "positive"
    BOOKED = "booked"
    NO_ANSWER = "no_answer"
    AMBIGUOUS = "ambiguous"


class LeadRef(BaseModel):
    """Everything a webhook tells us about which lead it concerns."""
    lead_id: Optional[uuid.UUID] = None
    tenant_key: Optional[str] = None
    phone: Optional[str] = None
    provider_call_id: Optional[str] = None
    to_phone: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.lead_id or self.provider_call_id or self.phone)


class CanonicalEvent(BaseModel):
    lead_ref: LeadRef = Field(default_factory=LeadRef)
    kind: EventKind
    outcome: Optional[CallOutcome] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    provider_event_id: Optional[str] = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CallReport(BaseModel):
    """Fields pulled out of a call-ended payload, whatever its shape. Input to outcome classifiers."""
    call_id: Optional[str] = None
    status: Optional[str] = None
    outcome: Optional[str] = None
    ended_reason: Optional[str] = None
    success_evaluation: Optional[Any] = None
    structured_data: dict[str, Any] = Field(default_factory=dict)
    duration_seconds: Optional[float] = None
    summary: Optional[str] = None
    transcript: Optional[str] = None
    booked: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
