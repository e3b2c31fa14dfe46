"""
Lead state machine - owns the canonical status of a lead.

  new → calling → interested → booked
  calling → needs_followup → calling (retry)
  calling → failed → needs_followup | exhausted
  any non-terminal state → opted_out

Terminal states (booked, opted_out, exhausted) accept no further transitions:
events for them are ignored, logged and acknowledged. Opt-out pre-empts an
in-flight call; the call's own ended event is then dropped here.

Every canonical event carries a provider event id that is claimed exactly once
(Redis window first, processed_events table as the durable guard), so duplicate
webhooks never double-advance a lead or double-count attempts.
"""
import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leadrelay.errors import InvalidTransition
from leadrelay.models.lead import Lead
from leadrelay.models.processed_event import ProcessedEvent
from leadrelay.schemas.events import CallOutcome, CanonicalEvent
from leadrelay.utils.dedup import is_duplicate_event
from leadrelay.utils.logging import short_id

logger = logging.getLogger(__name__)


class LeadStatus(str, enum.Enum):
    NEW = "new"
    CALLING = "calling"
    INTERESTED = "interested"
    NEEDS_FOLLOWUP = "needs_followup"
    BOOKED = "booked"
    FAILED = "failed"
    OPTED_OUT = "opted_out"
    EXHAUSTED = "exhausted"


TERMINAL_STATUSES = {LeadStatus.BOOKED.value, LeadStatus.OPTED_OUT.value, LeadStatus.EXHAUSTED.value}

VALID_TRANSITIONS = {
    "new": ["calling", "opted_out"],
    "calling": ["interested", "needs_followup", "failed", "opted_out"],
    "needs_followup": ["calling", "opted_out"],
    "failed": ["needs_followup", "exhausted", "opted_out"],
    "interested": ["booked", "opted_out"],
    "booked": [],
    "opted_out": [],
    "exhausted": [],
}


@dataclass
class TransitionResult:
    applied: bool
    from_status: str
    to_status: str
    reason: str = ""
    retry: bool = False  # scheduler should re-arm a follow-up

    def __bool__(self) -> bool:
        return self.applied


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: str, target: str) -> bool:
    return target in VALID_TRANSITIONS.get(current, [])


def transition(lead: Lead, target: str, reason: Optional[str] = None) -> bool:
    """
    Move a lead to a new status.
    Returns False (no-op) for terminal leads; raises InvalidTransition for illegal moves.
    """
    target = LeadStatus(target).value
    current = lead.status

    if is_terminal(current):
        logger.info(
            "Lead %s is terminal (%s); ignoring transition to %s",
            short_id(lead.id), current, target,
        )
        return False

    if not can_transition(current, target):
        raise InvalidTransition(current, target)

    lead.previous_status = current
    lead.status = target
    if reason:
        lead.detail = reason

    logger.info("Lead %s: %s → %s%s", short_id(lead.id), current, target, f" ({reason})" if reason else "")
    return True


def record_failed_attempt(
    lead: Lead,
    max_attempts: int,
    detail: Optional[str] = None,
    *,
    permanent: bool = False,
    dispatch_failed: bool = False,
) -> TransitionResult:
    """
    Count one failed outbound attempt and move the lead on.

    - no answer / ambiguous call below the limit: calling → needs_followup
    - dispatch failure below the limit: calling → failed → needs_followup
    - limit reached: → failed → exhausted
    - permanent failure: consumes all remaining attempts, → failed → exhausted
    """
    start = lead.status
    if is_terminal(start):
        return TransitionResult(False, start, start, "terminal")

    if permanent:
        lead.attempts = max_attempts
    else:
        lead.attempts = min((lead.attempts or 0) + 1, max_attempts)

    below_limit = lead.attempts < max_attempts and not permanent

    if below_limit and not dispatch_failed and lead.status == LeadStatus.CALLING.value:
        transition(lead, LeadStatus.NEEDS_FOLLOWUP.value, detail)
        return TransitionResult(True, start, lead.status, detail or "", retry=True)

    if lead.status != LeadStatus.FAILED.value:
        transition(lead, LeadStatus.FAILED.value, detail)

    if below_limit:
        transition(lead, LeadStatus.NEEDS_FOLLOWUP.value, detail)
        return TransitionResult(True, start, lead.status, detail or "", retry=True)

    transition(lead, LeadStatus.EXHAUSTED.value, detail)
    logger.warning(
        "Lead %s exhausted after %d/%d attempts", short_id(lead.id), lead.attempts, max_attempts,
    )
    return TransitionResult(True, start, lead.status, detail or "")


def apply_call_ended(
    lead: Lead,
    event: CanonicalEvent,
    max_attempts: int,
) -> TransitionResult:
    """Apply a canonical call-ended event to a lead in `calling`."""
    current = lead.status

    if is_terminal(current):
        logger.info("Call-ended event for terminal lead %s (%s) ignored", short_id(lead.id), current)
        return TransitionResult(False, current, current, "terminal")

    if current != LeadStatus.CALLING.value:
        logger.info(
            "Call-ended event for lead %s in %s ignored (out of order)", short_id(lead.id), current,
        )
        return TransitionResult(False, current, current, "out_of_order")

    call_id = event.lead_ref.provider_call_id
    if call_id and lead.provider_call_id and call_id != lead.provider_call_id:
        logger.info(
            "Call-ended event for stale call %s on lead %s ignored", call_id[:12], short_id(lead.id),
        )
        return TransitionResult(False, current, current, "stale_call")

    lead.last_contact_at = datetime.now(timezone.utc)
    outcome = event.outcome or CallOutcome.AMBIGUOUS

    if outcome == CallOutcome.POSITIVE:
        transition(lead, LeadStatus.INTERESTED.value, "Positive call outcome")
        return TransitionResult(True, current, lead.status, outcome.value)

    if outcome == CallOutcome.BOOKED:
        transition(lead, LeadStatus.INTERESTED.value, "Booked on call")
        appointment_id = event.payload.get("appointment_id")
        if appointment_id:
            lead.appointment_id = str(appointment_id)
        transition(lead, LeadStatus.BOOKED.value, "Booked on call")
        return TransitionResult(True, current, lead.status, outcome.value)

    detail = event.payload.get("ended_reason") or outcome.value
    return record_failed_attempt(lead, max_attempts, f"Call ended: {detail}")


def apply_opt_out(lead: Lead, reason: str = "Opted out") -> TransitionResult:
    current = lead.status
    if is_terminal(current):
        return TransitionResult(False, current, current, "terminal")
    transition(lead, LeadStatus.OPTED_OUT.value, reason)
    return TransitionResult(True, current, lead.status, reason)


def mark_booked(lead: Lead, appointment_id: Optional[str] = None) -> TransitionResult:
    """interested → booked on calendar confirmation."""
    current = lead.status
    if is_terminal(current):
        return TransitionResult(False, current, current, "terminal")
    if current != LeadStatus.INTERESTED.value:
        raise InvalidTransition(current, LeadStatus.BOOKED.value)
    if appointment_id:
        lead.appointment_id = appointment_id
    transition(lead, LeadStatus.BOOKED.value, "Booking confirmed")
    return TransitionResult(True, current, lead.status, "booking_confirmed")


async def claim_event(
    db: AsyncSession,
    event: CanonicalEvent,
    lead_id: Optional[uuid.UUID] = None,
) -> bool:
    """
    Claim a canonical event for processing. False means it was already applied.

    The processed_events row is added to the caller's transaction: if the state
    change rolls back, so does the claim, and a provider retry gets through.
    """
    event_id = event.provider_event_id
    if not event_id:
        return True

    if await is_duplicate_event(event_id):
        return False

    existing = await db.execute(
        select(ProcessedEvent.id).where(ProcessedEvent.provider_event_id == event_id).limit(1)
    )
    if existing.scalar_one_or_none() is not None:
        logger.info("Event %s already processed", event_id[:40])
        return False

    db.add(ProcessedEvent(provider_event_id=event_id, kind=event.kind.value, lead_id=lead_id))
    await db.flush()
    return True
