"""
Webhook event normalizer - turns provider payloads into CanonicalEvents.

Call-ended reports arrive in several shapes (Vapi's {"message": {...}} envelope,
the older flat {"call": {...}} form, or bare call fields at the top level).
Inbound SMS arrive as Twilio form fields.

Anything that cannot be parsed or attributed becomes an `unrecognized` event:
it is logged and acknowledged, never applied to a lead, so providers have no
reason to keep retrying it.
"""
import hashlib
import json
import logging
import re
import uuid
from typing import Any, Optional

from pydantic import ValidationError

from leadrelay.errors import MalformedEvent
from leadrelay.schemas.events import (
    CallReport,
    CanonicalEvent,
    EventKind,
    LeadRef,
)
from leadrelay.schemas.webhook_payloads import (
    VapiAnalysis,
    VapiCall,
    VapiEnvelopePayload,
    VapiFlatPayload,
)
from leadrelay.services.opt_out import is_stop_keyword
from leadrelay.services.outcome_classifier import OutcomeClassifier, default_classifier
from leadrelay.utils.logging import mask_phone
from leadrelay.utils.phone import normalize_phone

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")

CALL_ENDED_STATUSES = {"ended", "completed"}
CALL_REPORT_TYPE = "end-of-call-report"
OPT_OUT_OUTCOMES = {"opt_out", "opted_out", "do_not_call", "dnc"}


def extract_email(text: Optional[str]) -> Optional[str]:
    """First email address in free text, or None."""
    if not text:
        return None
    match = EMAIL_PATTERN.search(text)
    return match.group(0) if match else None


def compute_payload_hash(raw: Any) -> str:
    body = json.dumps(raw, sort_keys=True, default=str).encode()
    return hashlib.sha256(body).hexdigest()


def _unrecognized(reason: str, raw: Any = None) -> CanonicalEvent:
    logger.warning("Unrecognized webhook payload: %s", reason)
    payload: dict[str, Any] = {"reason": reason}
    if isinstance(raw, dict):
        payload["keys"] = sorted(str(k) for k in raw.keys())[:20]
    return CanonicalEvent(kind=EventKind.UNRECOGNIZED, payload=payload)


def _parse_uuid(value: Any) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _extract_report(raw: dict) -> Optional[tuple[CallReport, Optional[str]]]:
    """
    Pull a CallReport (plus the customer number) out of any known call shape.
    Returns None when the payload is not a call-ended report.
    """
    if isinstance(raw.get("message"), dict):
        message = VapiEnvelopePayload.model_validate(raw).message
        if message.type and message.type != CALL_REPORT_TYPE:
            return None
        call = message.call or VapiCall()
        analysis = message.analysis or VapiAnalysis()
        customer = message.customer or call.customer
        report = CallReport(
            call_id=call.id,
            status=call.status,
            outcome=call.outcome,
            ended_reason=message.endedReason or call.endedReason,
            success_evaluation=analysis.successEvaluation,
            structured_data=analysis.structuredData or {},
            duration_seconds=message.durationSeconds or call.duration,
            summary=analysis.summary or message.summary,
            transcript=message.transcript,
            metadata=call.metadata or {},
        )
        return report, customer.number if customer else None

    flat = VapiFlatPayload.model_validate(raw)
    call = flat.call or VapiCall(
        id=flat.id,
        status=flat.status,
        outcome=flat.outcome,
        duration=flat.duration,
        endedReason=flat.endedReason,
        metadata=flat.metadata,
        customer=flat.customer,
    )
    analysis = flat.analysis or VapiAnalysis()
    ended = (
        (call.status or "").lower() in CALL_ENDED_STATUSES
        or bool(call.outcome or flat.outcome)
        or bool(call.endedReason or flat.endedReason)
        or flat.booked is not None
    )
    if not ended:
        return None

    report = CallReport(
        call_id=call.id or flat.id,
        status=call.status or flat.status,
        outcome=call.outcome or flat.outcome,
        ended_reason=call.endedReason or flat.endedReason,
        success_evaluation=analysis.successEvaluation,
        structured_data=analysis.structuredData or {},
        duration_seconds=call.duration or flat.duration,
        summary=analysis.summary,
        booked=flat.booked is True,
        metadata={**(flat.metadata or {}), **(call.metadata or {})},
    )
    customer = call.customer or flat.customer
    return report, customer.number if customer else None


def _is_opt_out_report(report: CallReport) -> bool:
    for source in (report.metadata, report.structured_data):
        if source.get("optOut") is True or source.get("doNotCall") is True:
            return True
    for value in (report.outcome, report.structured_data.get("outcome")):
        if isinstance(value, str) and value.strip().lower() in OPT_OUT_OUTCOMES:
            return True
    return False


def normalize_call_webhook(
    raw: Any,
    classifier: Optional[OutcomeClassifier] = None,
) -> CanonicalEvent:
    """Normalize a call-ended webhook. Never raises."""
    if not isinstance(raw, dict) or not raw:
        return _unrecognized("payload is not a JSON object", raw)

    try:
        return _normalize_call(raw, classifier)
    except MalformedEvent as e:
        return _unrecognized(str(e), raw)
    except ValidationError as e:
        return _unrecognized(f"validation failed: {e.error_count()} errors", raw)
    except (TypeError, ValueError, AttributeError) as e:
        return _unrecognized(f"malformed call report: {e}", raw)


def _normalize_call(raw: dict, classifier: Optional[OutcomeClassifier]) -> CanonicalEvent:
    extracted = _extract_report(raw)
    if extracted is None:
        return _unrecognized("not a call-ended report", raw)
    report, customer_number = extracted

    metadata = report.metadata
    phone_raw = metadata.get("leadPhone") or metadata.get("lead_phone") or customer_number
    lead_ref = LeadRef(
        lead_id=_parse_uuid(metadata.get("leadId") or metadata.get("lead_id")),
        tenant_key=metadata.get("tenantKey") or metadata.get("clientKey") or metadata.get("tenant_key"),
        phone=normalize_phone(phone_raw) if phone_raw else None,
        provider_call_id=report.call_id,
    )
    if lead_ref.is_empty:
        raise MalformedEvent("call report has no lead reference")

    provider_event_id = (
        f"call:{report.call_id}:ended" if report.call_id else f"call:payload:{compute_payload_hash(raw)}"
    )
    payload = {
        "ended_reason": report.ended_reason,
        "duration_seconds": report.duration_seconds,
        "summary": report.summary,
        "appointment_id": report.structured_data.get("appointmentId") or raw.get("appointmentId"),
        "booking_start": raw.get("bookingStart") or raw.get("slotStart"),
    }

    if _is_opt_out_report(report):
        return CanonicalEvent(
            lead_ref=lead_ref,
            kind=EventKind.OPT_OUT_SIGNAL,
            payload={**payload, "source": "call"},
            provider_event_id=provider_event_id,
        )

    outcome = (classifier or default_classifier).classify(report)
    payload["outcome"] = report.outcome
    return CanonicalEvent(
        lead_ref=lead_ref,
        kind=EventKind.CALL_ENDED,
        outcome=outcome,
        payload=payload,
        provider_event_id=provider_event_id,
    )


def normalize_inbound_message(
    from_phone: str,
    to_phone: str,
    body: Optional[str],
    message_id: Optional[str] = None,
    stop_keywords: Optional[list[str]] = None,
) -> CanonicalEvent:
    """Normalize an inbound SMS. Stop keywords become opt-out signals."""
    sender = normalize_phone(from_phone)
    recipient = normalize_phone(to_phone)
    if not sender or not recipient:
        return _unrecognized("inbound message with unparseable phone numbers")

    text = (body or "").strip()
    lead_ref = LeadRef(phone=sender, to_phone=recipient)
    provider_event_id = f"sms:{message_id}" if message_id else None

    if is_stop_keyword(text, stop_keywords):
        logger.info("Stop keyword from %s", mask_phone(sender))
        return CanonicalEvent(
            lead_ref=lead_ref,
            kind=EventKind.OPT_OUT_SIGNAL,
            payload={"body": text, "source": "sms"},
            provider_event_id=provider_event_id,
        )

    extracted = {}
    email = extract_email(text)
    if email:
        extracted["email"] = email

    return CanonicalEvent(
        lead_ref=lead_ref,
        kind=EventKind.INBOUND_MESSAGE,
        payload={"body": text, "extracted": extracted},
        provider_event_id=provider_event_id,
    )
