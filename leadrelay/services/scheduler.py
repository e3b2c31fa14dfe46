"""
Follow-up scheduler - durable retry schedule for outbound attempts.

Backoff table (minutes after the Nth failed attempt):
  attempt 0 → immediately, 1 → 15 min, 2 → 4 h, 3 and beyond → 20 h

Jobs are rows in followup_jobs, so a restart never drops a pending retry.
At most one pending job exists per lead: scheduling cancels whatever was
pending before inserting the new job.

execute_job() owns its transaction boundaries. It commits the job claim, the
calling transition before the provider is contacted, and the recorded outcome,
all while holding the per-lead lock, so a call-ended webhook never observes a
half-applied attempt.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from leadrelay.config import Settings, get_settings
from leadrelay.database import async_session_factory
from leadrelay.errors import Blocked, DispatchError
from leadrelay.models.followup_job import FollowUpJob
from leadrelay.models.lead import Lead
from leadrelay.models.tenant import Tenant
from leadrelay.services.dispatcher import ChannelDispatcher, DispatchResult, default_dispatcher
from leadrelay.services.feature_flags import resolve_feature_flags
from leadrelay.services.lead_state import (
    LeadStatus,
    TransitionResult,
    apply_opt_out,
    is_terminal,
    record_failed_attempt,
    transition,
)
from leadrelay.services.ledger import log_attempt
from leadrelay.services.opt_out import ensure_not_opted_out, record_opt_out
from leadrelay.services.tenant_registry import to_tenant_config
from leadrelay.utils.alerting import AlertType, send_alert
from leadrelay.utils.locks import LockTimeoutError, lead_lock
from leadrelay.utils.logging import short_id

logger = logging.getLogger(__name__)

OPT_OUT_BLOCK_DETAIL = "STOP on number"
DISPATCHABLE_STATUSES = {LeadStatus.NEW.value, LeadStatus.NEEDS_FOLLOWUP.value}


@dataclass
class JobOutcome:
    job_id: uuid.UUID
    result: str  # dispatched, failed, opted_out, blocked, skipped, deferred, not_claimed
    lead_status: Optional[str] = None
    detail: str = ""


def backoff_delay(attempt: int, settings: Optional[Settings] = None) -> timedelta:
    """Delay before the next attempt, given how many attempts have been made."""
    if attempt <= 0:
        return timedelta(0)
    table = (settings or get_settings()).backoff_minutes
    return timedelta(minutes=table[min(attempt - 1, len(table) - 1)])


async def cancel_pending_jobs(db: AsyncSession, lead_id: uuid.UUID, reason: str) -> int:
    """Cancel every pending job for a lead. Returns the number cancelled."""
    result = await db.execute(
        update(FollowUpJob)
        .where(and_(FollowUpJob.lead_id == lead_id, FollowUpJob.status == "pending"))
        .values(status="cancelled", skip_reason=reason, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session="fetch")
    )
    count = result.rowcount or 0
    if count:
        logger.info("Cancelled %d pending job(s) for lead %s: %s", count, short_id(lead_id), reason)
    return count


async def schedule_followup(
    db: AsyncSession,
    lead: Lead,
    delay: timedelta,
    channel: str = "call",
) -> FollowUpJob:
    """Arm the lead's next attempt, replacing any pending job."""
    await cancel_pending_jobs(db, lead.id, "rescheduled")

    job = FollowUpJob(
        tenant_id=lead.tenant_id,
        lead_id=lead.id,
        scheduled_for=datetime.now(timezone.utc) + delay,
        attempt_number=(lead.attempts or 0) + 1,
        channel=channel,
        status="pending",
    )
    db.add(job)
    await db.flush()

    logger.info(
        "Follow-up #%d (%s) scheduled for lead %s in %s",
        job.attempt_number, channel, short_id(lead.id), delay,
    )
    return job


async def rearm_or_close(
    db: AsyncSession,
    lead: Lead,
    result: TransitionResult,
    channel: str = "call",
    settings: Optional[Settings] = None,
) -> Optional[FollowUpJob]:
    """After a failed attempt: schedule the next one on backoff, or close out an exhausted lead."""
    if result.retry:
        return await schedule_followup(db, lead, backoff_delay(lead.attempts, settings), channel)

    if lead.status == LeadStatus.EXHAUSTED.value:
        await cancel_pending_jobs(db, lead.id, "exhausted")
        await send_alert(
            AlertType.LEAD_EXHAUSTED,
            f"Lead {short_id(lead.id)} exhausted after {lead.attempts} attempts: {lead.detail or ''}",
            severity="warning",
        )
    return None


async def _load_job(db: AsyncSession, job_id: uuid.UUID) -> Optional[FollowUpJob]:
    result = await db.execute(
        select(FollowUpJob)
        .where(FollowUpJob.id == job_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def load_lead(db: AsyncSession, lead_id: uuid.UUID) -> Optional[Lead]:
    """Fresh read of a lead, overwriting whatever the session had cached."""
    result = await db.execute(
        select(Lead).where(Lead.id == lead_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _finish(
    db: AsyncSession,
    job: FollowUpJob,
    status: str,
    result: str,
    lead: Optional[Lead] = None,
    reason: str = "",
) -> JobOutcome:
    job.status = status
    job.executed_at = datetime.now(timezone.utc)
    if status == "skipped":
        job.skip_reason = reason
    await db.commit()
    if status == "skipped":
        logger.info("Job %s skipped: %s", short_id(job.id), reason)
    return JobOutcome(job.id, result, lead.status if lead else None, reason)


async def execute_job(
    db: AsyncSession,
    job_id: uuid.UUID,
    dispatcher: Optional[ChannelDispatcher] = None,
) -> JobOutcome:
    """
    Run one due follow-up job.

    Order of checks once the job is claimed and the lead lock is held:
    terminal lead (skip), opt-out list (blocked_by_optout, lead opted out),
    lead not dispatchable (skip), channel disabled (fail closed, re-armed
    without consuming an attempt). Then calling → dispatch → outcome.

    The terminal check comes first because an opted_out lead is terminal and a
    blocked_by_optout row is itself an outbound ledger entry: a lead that has
    already opted out gets no further outbound rows of any status.
    """
    settings = get_settings()
    dispatcher = dispatcher or default_dispatcher

    claimed = await db.execute(
        update(FollowUpJob)
        .where(and_(FollowUpJob.id == job_id, FollowUpJob.status == "pending"))
        .values(status="running", updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        await db.rollback()
        logger.debug("Job %s already claimed or no longer pending", short_id(job_id))
        return JobOutcome(job_id, "not_claimed")
    await db.commit()

    job = await _load_job(db, job_id)
    lead = await load_lead(db, job.lead_id)
    if lead is None:
        return await _finish(db, job, "skipped", "skipped", reason="lead not found")

    try:
        async with lead_lock(str(lead.id)):
            return await _run_claimed_job(db, job, lead.id, dispatcher, settings)
    except LockTimeoutError:
        await db.rollback()
        job = await _load_job(db, job_id)
        lead = await load_lead(db, job.lead_id)
        await schedule_followup(db, lead, timedelta(seconds=settings.scheduler_poll_seconds), job.channel)
        return await _finish(db, job, "skipped", "deferred", lead, "lead busy")


async def _run_claimed_job(
    db: AsyncSession,
    job: FollowUpJob,
    lead_id: uuid.UUID,
    dispatcher: ChannelDispatcher,
    settings: Settings,
) -> JobOutcome:
    lead = await load_lead(db, lead_id)

    if is_terminal(lead.status):
        return await _finish(db, job, "skipped", "skipped", lead, f"lead {lead.status}")

    try:
        await ensure_not_opted_out(db, lead.phone)
    except Blocked as e:
        logger.info("Job %s blocked: %s", short_id(job.id), e)
        await log_attempt(
            db,
            tenant_id=lead.tenant_id,
            lead_id=lead.id,
            channel=job.channel,
            direction="outbound",
            status="blocked_by_optout",
            detail=OPT_OUT_BLOCK_DETAIL,
        )
        apply_opt_out(lead, "Number is on the opt-out list")
        await cancel_pending_jobs(db, lead.id, "opted_out")
        return await _finish(db, job, "skipped", "blocked", lead, "blocked_by_optout")

    if lead.status not in DISPATCHABLE_STATUSES:
        reason = "attempt in flight" if lead.status == LeadStatus.CALLING.value else f"lead {lead.status}"
        return await _finish(db, job, "skipped", "skipped", lead, reason)

    if lead.attempts >= settings.max_attempts:
        return await _finish(db, job, "skipped", "skipped", lead, "max attempts reached")

    tenant = await db.get(Tenant, lead.tenant_id)
    if tenant is None or not tenant.is_active:
        return await _finish(db, job, "skipped", "skipped", lead, "tenant inactive")
    tenant_config = to_tenant_config(tenant)

    flags = resolve_feature_flags(tenant_config, settings)
    if not flags.is_enabled(job.channel):
        logger.warning(
            "Channel %s disabled for tenant %s; lead %s re-armed without an attempt",
            job.channel, tenant_config.key, short_id(lead.id),
        )
        job.status = "skipped"
        job.skip_reason = "channel disabled"
        job.executed_at = datetime.now(timezone.utc)
        await schedule_followup(db, lead, backoff_delay(max(lead.attempts, 1), settings), job.channel)
        await db.commit()
        return JobOutcome(job.id, "deferred", lead.status, "channel disabled")

    # In-flight marker: committed before the provider is contacted
    transition(lead, LeadStatus.CALLING.value, f"Dispatching {job.channel}")
    lead.provider_call_id = None
    await db.commit()

    try:
        result = await dispatcher.dispatch(job.channel, tenant_config, lead)
    except DispatchError as e:
        return await _record_dispatch_failure(db, job, lead, e, settings)

    return await _record_dispatch_success(db, job, lead, result, settings)


async def _log_sent(db: AsyncSession, job: FollowUpJob, lead: Lead, result: DispatchResult) -> None:
    await log_attempt(
        db,
        tenant_id=lead.tenant_id,
        lead_id=lead.id,
        channel=job.channel,
        direction="outbound",
        status="sent",
        detail=result.detail,
        provider_event_id=result.attempt_id or None,
    )


async def _log_failed(db: AsyncSession, job: FollowUpJob, lead: Lead, detail: str) -> None:
    await log_attempt(
        db,
        tenant_id=lead.tenant_id,
        lead_id=lead.id,
        channel=job.channel,
        direction="outbound",
        status="failed",
        detail=detail,
    )


async def _apply_carrier_opt_out(db: AsyncSession, lead: Lead, error: DispatchError) -> None:
    await record_opt_out(db, lead.phone, reason="carrier_opt_out", source=error.provider)
    apply_opt_out(lead, error.detail)
    await cancel_pending_jobs(db, lead.id, "opted_out")


async def _record_dispatch_success(
    db: AsyncSession,
    job: FollowUpJob,
    lead: Lead,
    result: DispatchResult,
    settings: Settings,
) -> JobOutcome:
    now = datetime.now(timezone.utc)
    job_id, lead_id = job.id, lead.id
    try:
        lead.last_contact_at = now
        if job.channel == "call":
            lead.provider_call_id = result.attempt_id or None
        else:
            # Non-call channels have no ended event; the send itself is the attempt
            outcome = record_failed_attempt(
                lead, settings.max_attempts, f"{job.channel} sent, awaiting reply",
            )
            await rearm_or_close(db, lead, outcome, "call", settings)
        await _log_sent(db, job, lead, result)
        job.status = "completed"
        job.executed_at = now
        await db.commit()
    except StaleDataError:
        # A webhook moved the lead on between our commits; keep its state
        await db.rollback()
        job = await _load_job(db, job_id)
        lead = await load_lead(db, lead_id)
        job.status = "completed"
        job.executed_at = now
        if lead.status == LeadStatus.OPTED_OUT.value:
            # No outbound row after an opt-out; the job keeps the in-flight send
            logger.info("Lead %s opted out during dispatch; send kept on job only", short_id(lead_id))
            job.last_error = f"sent before opt-out: {result.detail}"[:2000]
        else:
            logger.info("Lead %s changed during dispatch; recording send only", short_id(lead_id))
            await _log_sent(db, job, lead, result)
        await db.commit()

    logger.info(
        "Job %s dispatched %s for lead %s (attempt #%d)",
        short_id(job.id), job.channel, short_id(lead.id), job.attempt_number,
    )
    return JobOutcome(job.id, "dispatched", lead.status, result.detail)


async def _record_dispatch_failure(
    db: AsyncSession,
    job: FollowUpJob,
    lead: Lead,
    error: DispatchError,
    settings: Settings,
) -> JobOutcome:
    detail = error.detail
    now = datetime.now(timezone.utc)
    job_id, lead_id = job.id, lead.id
    logger.warning(
        "Dispatch %s failed for lead %s (permanent=%s): %s",
        job.channel, short_id(lead_id), error.permanent, detail,
    )

    try:
        await _log_failed(db, job, lead, detail)
        job.status = "failed"
        job.last_error = detail[:2000]
        job.executed_at = now
        lead.detail = detail

        if error.opt_out:
            await _apply_carrier_opt_out(db, lead, error)
            await db.commit()
            return JobOutcome(job.id, "opted_out", lead.status, detail)

        outcome = record_failed_attempt(
            lead, settings.max_attempts, detail, permanent=error.permanent, dispatch_failed=True,
        )
        await rearm_or_close(db, lead, outcome, job.channel, settings)
        await db.commit()
    except StaleDataError:
        # A webhook moved the lead on during dispatch; keep its state, fail the job
        await db.rollback()
        job = await _load_job(db, job_id)
        lead = await load_lead(db, lead_id)
        job.status = "failed"
        job.last_error = detail[:2000]
        job.executed_at = now
        if lead.status == LeadStatus.OPTED_OUT.value:
            logger.info("Lead %s opted out during dispatch; failure kept on job only", short_id(lead_id))
        else:
            await _log_failed(db, job, lead, detail)
            if error.opt_out:
                await _apply_carrier_opt_out(db, lead, error)
        await db.commit()
        return JobOutcome(job.id, "failed", lead.status, detail)

    if not error.permanent:
        await send_alert(
            AlertType.DISPATCH_FAILED,
            f"{job.channel} dispatch failed for lead {short_id(lead.id)}: {detail[:200]}",
            severity="warning",
        )
    return JobOutcome(job.id, "failed", lead.status, detail)


async def find_due_jobs(db: AsyncSession, limit: int) -> list[uuid.UUID]:
    now = datetime.now(timezone.utc)
    result = await db.execute(
        select(FollowUpJob.id)
        .where(
            and_(
                FollowUpJob.status == "pending",
                FollowUpJob.scheduled_for <= now,
            )
        )
        .order_by(FollowUpJob.scheduled_for)
        .limit(limit)
    )
    return list(result.scalars().all())


async def process_due_jobs(dispatcher: Optional[ChannelDispatcher] = None) -> int:
    """Find and execute all due jobs. Each job runs in its own session. Returns jobs executed."""
    settings = get_settings()
    async with async_session_factory() as db:
        job_ids = await find_due_jobs(db, settings.scheduler_batch_size)

    if not job_ids:
        return 0

    logger.info("Processing %d due follow-up jobs", len(job_ids))
    executed = 0
    for job_id in job_ids:
        async with async_session_factory() as db:
            try:
                outcome = await execute_job(db, job_id, dispatcher)
                if outcome.result != "not_claimed":
                    executed += 1
            except Exception as e:
                logger.error("Failed to execute follow-up job %s: %s", short_id(job_id), str(e))
                await db.rollback()
                await _mark_job_failed(db, job_id, str(e))
    return executed


async def _mark_job_failed(db: AsyncSession, job_id: uuid.UUID, error: str) -> None:
    try:
        await db.execute(
            update(FollowUpJob)
            .where(and_(FollowUpJob.id == job_id, FollowUpJob.status == "running"))
            .values(status="failed", last_error=error[:2000], executed_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception as e:
        logger.error("Could not mark job %s failed: %s", short_id(job_id), str(e))
        await db.rollback()
