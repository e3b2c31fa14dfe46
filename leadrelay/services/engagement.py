"""
Engagement operations - the entry points the HTTP layer and workers call.

  ingest_new_lead        create a lead, arm its first attempt, run it inline
  ingest_call_webhook    normalize a call-ended report and apply it
  ingest_inbound_message stop keywords first, then replies (YES, email address)
  get_lead_status        read model for a single lead
  confirm_booking        calendar confirmation, interested → booked

Every state change for a lead happens under its Redis lock and is committed
before the lock is released. A concurrent writer that slips past the lock is
caught by the row version check (StaleDataError) and the operation is retried
a bounded number of times. Webhook operations always return a WebhookAck.
"""
import logging
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from leadrelay.config import get_settings
from leadrelay.errors import DispatchError, InvalidPhoneNumber, LeadNotFound, TenantNotFound
from leadrelay.models.lead import Lead
from leadrelay.models.tenant import Tenant
from leadrelay.schemas.api_responses import LeadStatusView, WebhookAck
from leadrelay.schemas.events import CallOutcome, CanonicalEvent, EventKind, LeadRef
from leadrelay.schemas.tenant_config import TenantConfig
from leadrelay.services.booking import CalendarCollaborator, default_calendar
from leadrelay.services.dispatcher import ChannelDispatcher, default_dispatcher
from leadrelay.services.feature_flags import resolve_feature_flags
from leadrelay.services.lead_state import (
    LeadStatus,
    TERMINAL_STATUSES,
    apply_call_ended,
    apply_opt_out,
    claim_event,
    is_terminal,
    mark_booked,
)
from leadrelay.services.ledger import log_attempt
from leadrelay.services.normalizer import normalize_call_webhook, normalize_inbound_message
from leadrelay.services.opt_out import is_opted_out, record_opt_out
from leadrelay.services.outcome_classifier import OutcomeClassifier
from leadrelay.services.scheduler import (
    backoff_delay,
    cancel_pending_jobs,
    execute_job,
    load_lead,
    rearm_or_close,
    schedule_followup,
)
from leadrelay.services.tenant_registry import (
    resolve_tenant,
    resolve_tenant_by_inbound_number,
    to_tenant_config,
)
from leadrelay.utils.alerting import AlertType, send_alert
from leadrelay.utils.dedup import forget_event
from leadrelay.utils.locks import lead_lock
from leadrelay.utils.logging import mask_phone, short_id
from leadrelay.utils.phone import normalize_phone

logger = logging.getLogger(__name__)

MAX_STALE_RETRIES = 3
CALLBACK_REPLIES = {"YES", "Y"}
ANSWERED_OUTCOMES = {CallOutcome.POSITIVE, CallOutcome.BOOKED}


def _status_view(lead: Lead) -> LeadStatusView:
    return LeadStatusView(
        lead_id=lead.id,
        status=lead.status,
        attempts=lead.attempts,
        last_contact_at=lead.last_contact_at,
        detail=lead.detail,
    )


async def _tenant_config(db: AsyncSession, tenant_id: uuid.UUID) -> Optional[TenantConfig]:
    tenant = await db.get(Tenant, tenant_id)
    if tenant is None or not tenant.is_active:
        return None
    return to_tenant_config(tenant)


async def _apply_locked(
    db: AsyncSession,
    lead_id: uuid.UUID,
    event: CanonicalEvent,
    apply: Callable[[Lead], Awaitable[WebhookAck]],
) -> WebhookAck:
    """
    Claim the event and apply it to one lead under the lead lock.
    Retries on a stale lead version; a failed attempt releases the dedup marker.
    """
    for attempt in range(1, MAX_STALE_RETRIES + 1):
        try:
            async with lead_lock(str(lead_id), strict=False):
                lead = await load_lead(db, lead_id)
                if not await claim_event(db, event, lead.id):
                    await db.rollback()
                    return WebhookAck(status="duplicate", lead_id=str(lead_id))
                ack = await apply(lead)
                await db.commit()
                return ack
        except StaleDataError:
            await db.rollback()
            await forget_event(event.provider_event_id)
            logger.info(
                "Lead %s modified concurrently, retrying event (%d/%d)",
                short_id(lead_id), attempt, MAX_STALE_RETRIES,
            )
        except Exception:
            await db.rollback()
            await forget_event(event.provider_event_id)
            raise

    logger.error("Giving up on event %s for lead %s", event.provider_event_id, short_id(lead_id))
    return WebhookAck(status="ignored", lead_id=str(lead_id), detail="concurrent update")


# ---------------------------------------------------------------------------
# New leads
# ---------------------------------------------------------------------------

async def ingest_new_lead(
    db: AsyncSession,
    tenant_key: str,
    lead_phone: str,
    context: Optional[dict[str, Any]] = None,
    dispatcher: Optional[ChannelDispatcher] = None,
) -> uuid.UUID:
    """
    Create a `new` lead and run its first attempt immediately.
    A tenant that already has an open lead for the phone gets that lead back.
    """
    settings = get_settings()
    tenant = await resolve_tenant(db, tenant_key)
    if tenant is None:
        raise TenantNotFound(f"Unknown tenant: {tenant_key}")

    phone = normalize_phone(lead_phone, settings.default_phone_region)
    if not phone:
        raise InvalidPhoneNumber(f"Invalid phone number: {mask_phone(lead_phone)}")

    existing = (
        await db.execute(
            select(Lead)
            .where(
                Lead.tenant_id == tenant.id,
                Lead.phone == phone,
                Lead.status.notin_(list(TERMINAL_STATUSES)),
            )
            .order_by(Lead.created_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    if existing is not None:
        logger.info(
            "Lead for %s already open for tenant %s: %s",
            mask_phone(phone), tenant.key, short_id(existing.id),
        )
        return existing.id

    context = dict(context or {})
    lead = Lead(
        tenant_id=tenant.id,
        phone=phone,
        name=context.pop("name", None),
        email=context.pop("email", None),
        industry=context.pop("industry", None),
        location=context.pop("location", None),
        context=context,
        status=LeadStatus.NEW.value,
        attempts=0,
    )
    db.add(lead)
    await db.flush()
    job = await schedule_followup(db, lead, backoff_delay(0, settings))
    await db.commit()
    lead_id, job_id = lead.id, job.id

    logger.info("Lead %s created for tenant %s (%s)", short_id(lead_id), tenant.key, mask_phone(phone))

    try:
        await execute_job(db, job_id, dispatcher)
    except Exception as e:
        # The worker picks the lead up again on its next poll
        logger.error("Inline first attempt failed for lead %s: %s", short_id(lead_id), str(e))
        await db.rollback()
        lead = await load_lead(db, lead_id)
        if lead is not None and lead.status == LeadStatus.NEW.value:
            await schedule_followup(db, lead, timedelta(seconds=settings.scheduler_poll_seconds))
            await db.commit()

    return lead_id


# ---------------------------------------------------------------------------
# Call webhooks
# ---------------------------------------------------------------------------

async def _find_lead_for_call(db: AsyncSession, ref: LeadRef) -> Optional[Lead]:
    tenant_id = None
    if ref.tenant_key:
        tenant = await resolve_tenant(db, ref.tenant_key)
        if tenant is None:
            return None
        tenant_id = tenant.id

    lead = None
    if ref.lead_id:
        lead = await db.get(Lead, ref.lead_id)
    if lead is None and ref.provider_call_id:
        lead = (
            await db.execute(
                select(Lead).where(Lead.provider_call_id == ref.provider_call_id).limit(1)
            )
        ).scalar_one_or_none()
    if lead is None and ref.phone and tenant_id:
        lead = (
            await db.execute(
                select(Lead)
                .where(
                    Lead.tenant_id == tenant_id,
                    Lead.phone == ref.phone,
                    Lead.status == LeadStatus.CALLING.value,
                )
                .order_by(Lead.updated_at.desc())
                .limit(1)
            )
        ).scalar_one_or_none()

    if lead is not None and tenant_id and lead.tenant_id != tenant_id:
        logger.warning(
            "Call report for lead %s names a different tenant (%s); ignored",
            short_id(lead.id), ref.tenant_key,
        )
        return None
    return lead


async def ingest_call_webhook(
    db: AsyncSession,
    raw_payload: Any,
    classifier: Optional[OutcomeClassifier] = None,
) -> WebhookAck:
    """Apply a call-ended report. Always acknowledges."""
    settings = get_settings()
    event = normalize_call_webhook(raw_payload, classifier)

    if event.kind == EventKind.UNRECOGNIZED:
        await send_alert(
            AlertType.UNRECOGNIZED_WEBHOOK,
            f"Unrecognized call webhook: {event.payload.get('reason')}",
            severity="warning",
        )
        return WebhookAck(status="unrecognized", detail=event.payload.get("reason"))

    lead = await _find_lead_for_call(db, event.lead_ref)
    if lead is None:
        logger.info("Call report for unknown lead (call %s) ignored", event.lead_ref.provider_call_id)
        return WebhookAck(status="ignored", detail="lead not found")

    if event.kind == EventKind.OPT_OUT_SIGNAL:
        async def apply(current: Lead) -> WebhookAck:
            return await _apply_opt_out_signal(db, current, event, "call", "vapi")
    else:
        async def apply(current: Lead) -> WebhookAck:
            return await _apply_call_outcome(db, current, event, settings.max_attempts)

    return await _apply_locked(db, lead.id, event, apply)


async def _apply_call_outcome(
    db: AsyncSession,
    lead: Lead,
    event: CanonicalEvent,
    max_attempts: int,
) -> WebhookAck:
    result = apply_call_ended(lead, event, max_attempts)
    if not result.applied:
        return WebhookAck(status="ignored", lead_id=str(lead.id), detail=result.reason)

    outcome = event.outcome or CallOutcome.AMBIGUOUS
    await log_attempt(
        db,
        tenant_id=lead.tenant_id,
        lead_id=lead.id,
        channel="call",
        direction="outbound",
        status="delivered" if outcome in ANSWERED_OUTCOMES else "failed",
        detail=f"Call ended: {outcome.value} ({event.payload.get('ended_reason') or 'n/a'})",
        provider_event_id=event.provider_event_id,
    )

    if lead.status in (LeadStatus.INTERESTED.value, LeadStatus.BOOKED.value):
        await cancel_pending_jobs(db, lead.id, lead.status)
    else:
        await rearm_or_close(db, lead, result, "call")

    return WebhookAck(lead_id=str(lead.id), detail=f"{result.from_status} -> {result.to_status}")


async def _apply_opt_out_signal(
    db: AsyncSession,
    lead: Lead,
    event: CanonicalEvent,
    channel: str,
    source: str,
) -> WebhookAck:
    await record_opt_out(db, lead.phone, reason=f"{channel}_opt_out", source=source)
    result = apply_opt_out(lead, f"Opt-out via {channel}")
    await cancel_pending_jobs(db, lead.id, "opted_out")
    await log_attempt(
        db,
        tenant_id=lead.tenant_id,
        lead_id=lead.id,
        channel=channel,
        direction="inbound",
        status="delivered",
        detail=f"Opt-out received via {channel}",
        provider_event_id=event.provider_event_id,
    )
    return WebhookAck(
        status="processed" if result.applied else "ignored",
        lead_id=str(lead.id),
        detail="opted_out",
    )


# ---------------------------------------------------------------------------
# Inbound messages
# ---------------------------------------------------------------------------

async def _leads_for_phone(db: AsyncSession, tenant_id: uuid.UUID, phone: str) -> list[Lead]:
    result = await db.execute(
        select(Lead)
        .where(Lead.tenant_id == tenant_id, Lead.phone == phone)
        .order_by(Lead.created_at.desc())
    )
    return list(result.scalars().all())


async def ingest_inbound_message(
    db: AsyncSession,
    from_phone: str,
    to_phone: str,
    body: Optional[str],
    message_id: Optional[str] = None,
    dispatcher: Optional[ChannelDispatcher] = None,
) -> WebhookAck:
    """
    Handle an inbound SMS. Stop keywords are recorded on the opt-out list
    before anything else happens; other replies go to the sender's most
    recent lead at the tenant that owns to_phone. Always acknowledges.
    """
    settings = get_settings()
    event = normalize_inbound_message(
        from_phone, to_phone, body, message_id, stop_keywords=settings.stop_keywords,
    )
    if event.kind == EventKind.UNRECOGNIZED:
        return WebhookAck(status="unrecognized", detail=event.payload.get("reason"))

    sender = event.lead_ref.phone

    if event.kind == EventKind.OPT_OUT_SIGNAL:
        return await _handle_stop(db, event, sender)

    tenant = await resolve_tenant_by_inbound_number(db, event.lead_ref.to_phone)
    if tenant is None:
        return WebhookAck(status="ignored", detail="unknown inbound number")

    leads = await _leads_for_phone(db, tenant.id, sender)
    if not leads:
        logger.info("Inbound message from %s matches no lead at %s", mask_phone(sender), tenant.key)
        return WebhookAck(status="ignored", detail="no lead for sender")

    async def apply(lead: Lead) -> WebhookAck:
        return await _apply_reply(db, lead, event, tenant)

    ack = await _apply_locked(db, leads[0].id, event, apply)

    email = event.payload.get("extracted", {}).get("email")
    if email and ack.status == "processed":
        await _send_booking_email(db, leads[0].id, tenant, dispatcher)
    return ack


async def _handle_stop(db: AsyncSession, event: CanonicalEvent, sender: str) -> WebhookAck:
    if not await claim_event(db, event):
        await db.rollback()
        return WebhookAck(status="duplicate")
    await record_opt_out(db, sender, reason="stop_keyword", source="sms")
    await db.commit()

    tenant = await resolve_tenant_by_inbound_number(db, event.lead_ref.to_phone)
    if tenant is None:
        return WebhookAck(detail="opted_out")

    lead_ids = [lead.id for lead in await _leads_for_phone(db, tenant.id, sender)]
    for lead_id in lead_ids:
        async with lead_lock(str(lead_id), strict=False):
            lead = await load_lead(db, lead_id)
            result = apply_opt_out(lead, "STOP received")
            await cancel_pending_jobs(db, lead.id, "opted_out")
            if result.applied:
                await log_attempt(
                    db,
                    tenant_id=lead.tenant_id,
                    lead_id=lead.id,
                    channel="sms",
                    direction="inbound",
                    status="delivered",
                    detail=(event.payload.get("body") or "STOP")[:200],
                    provider_event_id=event.provider_event_id,
                )
            await db.commit()

    logger.info("STOP from %s applied to %d lead(s) at %s", mask_phone(sender), len(lead_ids), tenant.key)
    return WebhookAck(lead_id=str(lead_ids[0]) if lead_ids else None, detail="opted_out")


async def _apply_reply(
    db: AsyncSession,
    lead: Lead,
    event: CanonicalEvent,
    tenant: TenantConfig,
) -> WebhookAck:
    text = event.payload.get("body") or ""
    await log_attempt(
        db,
        tenant_id=lead.tenant_id,
        lead_id=lead.id,
        channel="sms",
        direction="inbound",
        status="delivered",
        detail=text[:200],
        provider_event_id=event.provider_event_id,
    )

    if is_terminal(lead.status):
        return WebhookAck(status="ignored", lead_id=str(lead.id), detail=f"lead {lead.status}")

    email = event.payload.get("extracted", {}).get("email")
    if email:
        lead.email = email
        logger.info("Email captured for lead %s", short_id(lead.id))
        return WebhookAck(lead_id=str(lead.id), detail="email captured")

    if text.strip().upper() in CALLBACK_REPLIES and lead.status == LeadStatus.NEEDS_FOLLOWUP.value:
        await schedule_followup(db, lead, timedelta(0))
        logger.info("Callback requested by lead %s", short_id(lead.id))
        return WebhookAck(lead_id=str(lead.id), detail="callback armed")

    return WebhookAck(lead_id=str(lead.id), detail="reply logged")


async def _send_booking_email(
    db: AsyncSession,
    lead_id: uuid.UUID,
    tenant: TenantConfig,
    dispatcher: Optional[ChannelDispatcher],
) -> None:
    """Send the booking-link email to an address the lead just gave us."""
    dispatcher = dispatcher or default_dispatcher
    flags = resolve_feature_flags(tenant)
    if not flags.email_enabled:
        logger.info("Email disabled for tenant %s; booking link not sent", tenant.key)
        return

    async with lead_lock(str(lead_id), strict=False):
        lead = await load_lead(db, lead_id)
        if is_terminal(lead.status) or await is_opted_out(db, lead.phone):
            return

        try:
            result = await dispatcher.dispatch("email", tenant, lead)
            status, detail, event_id = "sent", result.detail, result.attempt_id or None
        except DispatchError as e:
            status, detail, event_id = "failed", e.detail, None
            logger.warning("Booking email failed for lead %s: %s", short_id(lead.id), e.detail)

        await log_attempt(
            db,
            tenant_id=lead.tenant_id,
            lead_id=lead.id,
            channel="email",
            direction="outbound",
            status=status,
            detail=detail,
            provider_event_id=event_id,
        )
        await db.commit()


# ---------------------------------------------------------------------------
# Reads and bookings
# ---------------------------------------------------------------------------

async def get_lead_status(db: AsyncSession, lead_id: uuid.UUID) -> LeadStatusView:
    lead = await db.get(Lead, lead_id)
    if lead is None:
        raise LeadNotFound(f"Lead {lead_id} not found")
    return _status_view(lead)


async def confirm_booking(
    db: AsyncSession,
    lead_id: uuid.UUID,
    slot: dict[str, Any],
    calendar: Optional[CalendarCollaborator] = None,
) -> LeadStatusView:
    """
    Confirm a slot with the calendar and move the lead interested → booked.
    Confirming an already-booked lead returns its status unchanged.
    Raises LeadNotFound, InvalidTransition, or the calendar's rejection.
    """
    calendar = calendar or default_calendar
    if await db.get(Lead, lead_id) is None:
        raise LeadNotFound(f"Lead {lead_id} not found")

    async with lead_lock(str(lead_id)):
        lead = await load_lead(db, lead_id)
        if lead.status == LeadStatus.BOOKED.value:
            return _status_view(lead)

        tenant = await _tenant_config(db, lead.tenant_id)
        if tenant is None:
            raise LeadNotFound(f"Lead {lead_id} belongs to an inactive tenant")

        if lead.status != LeadStatus.INTERESTED.value:
            mark_booked(lead)  # raises InvalidTransition / no-op for terminal leads
            return _status_view(lead)

        confirmation = await calendar.confirm_booking(tenant, lead, slot)
        mark_booked(lead, confirmation.get("appointment_id"))
        await cancel_pending_jobs(db, lead.id, "booked")
        await db.commit()

    logger.info("Lead %s booked (%s)", short_id(lead.id), lead.appointment_id)
    return _status_view(lead)


# ---------------------------------------------------------------------------
# Lost call reports
# ---------------------------------------------------------------------------

async def resolve_stuck_call(db: AsyncSession, lead_id: uuid.UUID) -> WebhookAck:
    """
    Treat a call whose ended report never arrived as an ambiguous outcome.

    The synthetic event reuses the call's own ended-event id, so a report that
    turns up later is dropped as a duplicate instead of counting twice.
    """
    settings = get_settings()
    lead = await db.get(Lead, lead_id)
    if lead is None:
        raise LeadNotFound(f"Lead {lead_id} not found")

    event_id = (
        f"call:{lead.provider_call_id}:ended"
        if lead.provider_call_id
        else f"call:sweep:{lead.id}:{lead.version}"
    )
    event = CanonicalEvent(
        lead_ref=LeadRef(lead_id=lead.id, provider_call_id=lead.provider_call_id),
        kind=EventKind.CALL_ENDED,
        outcome=CallOutcome.AMBIGUOUS,
        payload={"ended_reason": "no call report received"},
        provider_event_id=event_id,
    )

    async def apply(current: Lead) -> WebhookAck:
        return await _apply_call_outcome(db, current, event, settings.max_attempts)

    return await _apply_locked(db, lead.id, event, apply)
