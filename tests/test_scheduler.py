"""
Tests for leadrelay/services/scheduler.py - durable follow-up jobs.

Covers:
- backoff_delay(): the 0 / 15m / 4h / 20h table
- schedule_followup() / cancel_pending_jobs(): one pending job per lead
- execute_job(): dispatch success, transient / permanent / carrier opt-out
  failures, opt-out list block, terminal skip, disabled channel, claim race,
  STOP arriving while the provider call is in flight
- process_due_jobs(): due-job discovery and per-job sessions
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select

from leadrelay.errors import PermanentDispatchFailure, TransientDispatchFailure
from leadrelay.models.contact_attempt import ContactAttempt
from leadrelay.models.followup_job import FollowUpJob
from leadrelay.services.engagement import ingest_inbound_message
from leadrelay.services.opt_out import record_opt_out
from leadrelay.services.scheduler import (
    OPT_OUT_BLOCK_DETAIL,
    backoff_delay,
    cancel_pending_jobs,
    execute_job,
    find_due_jobs,
    process_due_jobs,
    schedule_followup,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _jobs(db, lead_id, status=None):
    query = select(FollowUpJob).where(FollowUpJob.lead_id == lead_id)
    if status:
        query = query.where(FollowUpJob.status == status)
    result = await db.execute(query.execution_options(populate_existing=True))
    return list(result.scalars().all())


async def _ledger(db, lead_id):
    result = await db.execute(select(ContactAttempt).where(ContactAttempt.lead_id == lead_id))
    return list(result.scalars().all())


async def _due_job(db, lead, channel="call"):
    job = await schedule_followup(db, lead, timedelta(0), channel)
    await db.commit()
    return job


def _stop_during_dispatch(dispatcher_cls, session_factory, error=None):
    """A dispatcher whose provider call overlaps a STOP reply handled in another session."""

    class StopDuringDispatch(dispatcher_cls):
        async def dispatch(self, channel, tenant, lead, message=None):
            async with session_factory() as other:
                await ingest_inbound_message(other, lead.phone, "+447700900999", "STOP", "SM-stop-1")
            return await super().dispatch(channel, tenant, lead, message)

    return StopDuringDispatch(error)


def _naive(dt):
    return dt.replace(tzinfo=None) if dt.tzinfo else dt


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


class TestBackoffDelay:
    @pytest.mark.parametrize(
        "attempt,expected",
        [
            (0, timedelta(0)),
            (1, timedelta(minutes=15)),
            (2, timedelta(hours=4)),
            (3, timedelta(hours=20)),
            (7, timedelta(hours=20)),
        ],
    )
    def test_table(self, attempt, expected):
        assert backoff_delay(attempt) == expected

    def test_custom_table(self, settings, monkeypatch):
        monkeypatch.setattr(settings, "backoff_minutes", [1, 2])
        assert backoff_delay(1, settings) == timedelta(minutes=1)
        assert backoff_delay(5, settings) == timedelta(minutes=2)


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


class TestScheduleFollowup:
    async def test_rescheduling_leaves_one_pending_job(self, db, make_lead):
        lead = await make_lead()
        await schedule_followup(db, lead, timedelta(minutes=15))
        await schedule_followup(db, lead, timedelta(hours=4))
        await db.commit()

        pending = await _jobs(db, lead.id, "pending")
        cancelled = await _jobs(db, lead.id, "cancelled")
        assert len(pending) == 1
        assert len(cancelled) == 1
        assert cancelled[0].skip_reason == "rescheduled"

    async def test_attempt_number_follows_lead_attempts(self, db, make_lead):
        lead = await make_lead(status="needs_followup", attempts=2)
        job = await schedule_followup(db, lead, timedelta(0), "sms")
        assert job.attempt_number == 3
        assert job.channel == "sms"

    async def test_cancel_pending_jobs_counts(self, db, make_lead):
        lead = await make_lead()
        await schedule_followup(db, lead, timedelta(minutes=5))
        assert await cancel_pending_jobs(db, lead.id, "opted_out") == 1
        assert await cancel_pending_jobs(db, lead.id, "opted_out") == 0

    async def test_find_due_jobs_skips_future_jobs(self, db, make_lead):
        due_lead = await make_lead()
        later_lead = await make_lead(phone="+447700900001")
        due = await schedule_followup(db, due_lead, timedelta(0))
        await schedule_followup(db, later_lead, timedelta(hours=1))
        await db.commit()

        assert await find_due_jobs(db, 10) == [due.id]


# ---------------------------------------------------------------------------
# execute_job
# ---------------------------------------------------------------------------


class TestExecuteJob:
    async def test_call_dispatched_marks_calling(self, db, make_lead, dispatcher):
        lead = await make_lead()
        job = await _due_job(db, lead)

        outcome = await execute_job(db, job.id, dispatcher)

        assert outcome.result == "dispatched"
        assert outcome.lead_status == "calling"
        assert dispatcher.calls == [("call", lead.id)]
        await db.refresh(lead)
        assert lead.status == "calling"
        assert lead.provider_call_id == "call-1"
        assert lead.attempts == 0
        assert lead.last_contact_at is not None

        rows = await _ledger(db, lead.id)
        assert [(r.channel, r.direction, r.status) for r in rows] == [("call", "outbound", "sent")]
        assert rows[0].provider_event_id == "call-1"
        assert (await _jobs(db, lead.id))[0].status == "completed"

    async def test_transient_failure_rearms_on_backoff(self, db, make_lead, make_dispatcher):
        dispatcher = make_dispatcher(TransientDispatchFailure("timeout", provider="vapi"))
        lead = await make_lead()
        job = await _due_job(db, lead)

        outcome = await execute_job(db, job.id, dispatcher)

        assert outcome.result == "failed"
        await db.refresh(lead)
        assert lead.status == "needs_followup"
        assert lead.previous_status == "failed"
        assert lead.attempts == 1

        failed_job = await db.get(FollowUpJob, job.id)
        await db.refresh(failed_job)
        assert failed_job.status == "failed"
        assert "timeout" in failed_job.last_error

        pending = await _jobs(db, lead.id, "pending")
        assert len(pending) == 1
        delay = _naive(pending[0].scheduled_for) - datetime.now(timezone.utc).replace(tzinfo=None)
        assert timedelta(minutes=14) < delay <= timedelta(minutes=15)

        rows = await _ledger(db, lead.id)
        assert [r.status for r in rows] == ["failed"]

    async def test_permanent_failure_exhausts_lead(self, db, make_lead, make_dispatcher):
        dispatcher = make_dispatcher(PermanentDispatchFailure("invalid number", provider="vapi", status_code=400))
        lead = await make_lead()
        job = await _due_job(db, lead)

        outcome = await execute_job(db, job.id, dispatcher)

        assert outcome.result == "failed"
        await db.refresh(lead)
        assert lead.status == "exhausted"
        assert lead.attempts == 3
        assert await _jobs(db, lead.id, "pending") == []

    async def test_carrier_opt_out_records_opt_out(self, db, make_lead, make_dispatcher):
        error = PermanentDispatchFailure("unsubscribed", provider="twilio", status_code=21610, opt_out=True)
        lead = await make_lead(status="needs_followup", attempts=1)
        job = await _due_job(db, lead, "sms")

        outcome = await execute_job(db, job.id, make_dispatcher(error))

        assert outcome.result == "opted_out"
        await db.refresh(lead)
        assert lead.status == "opted_out"
        from leadrelay.services.opt_out import is_opted_out
        assert await is_opted_out(db, lead.phone)

    async def test_opted_out_phone_is_blocked(self, db, make_lead, dispatcher):
        lead = await make_lead(status="needs_followup", attempts=1)
        await record_opt_out(db, lead.phone, reason="stop_keyword", source="sms")
        job = await _due_job(db, lead)

        outcome = await execute_job(db, job.id, dispatcher)

        assert outcome.result == "blocked"
        assert dispatcher.calls == []
        await db.refresh(lead)
        assert lead.status == "opted_out"
        rows = await _ledger(db, lead.id)
        assert len(rows) == 1
        assert rows[0].status == "blocked_by_optout"
        assert rows[0].detail == OPT_OUT_BLOCK_DETAIL

    async def test_stop_during_call_logs_no_outbound_row(self, db, session_factory, make_lead, make_dispatcher):
        dispatcher = _stop_during_dispatch(make_dispatcher, session_factory)
        lead = await make_lead()
        job = await _due_job(db, lead)

        outcome = await execute_job(db, job.id, dispatcher)

        assert outcome.result == "dispatched"
        assert outcome.lead_status == "opted_out"
        await db.refresh(lead)
        assert lead.status == "opted_out"
        assert lead.attempts == 0

        rows = await _ledger(db, lead.id)
        assert [(r.direction, r.status) for r in rows] == [("inbound", "delivered")]
        done = (await _jobs(db, lead.id))[0]
        assert done.status == "completed"
        assert done.last_error.startswith("sent before opt-out")

    async def test_stop_during_failed_dispatch_logs_no_outbound_row(
        self, db, session_factory, make_lead, make_dispatcher,
    ):
        dispatcher = _stop_during_dispatch(
            make_dispatcher, session_factory, TransientDispatchFailure("timeout", provider="vapi"),
        )
        lead = await make_lead(status="needs_followup", attempts=1)
        job = await _due_job(db, lead)

        outcome = await execute_job(db, job.id, dispatcher)

        assert outcome.result == "failed"
        await db.refresh(lead)
        assert lead.status == "opted_out"
        assert lead.attempts == 1
        rows = await _ledger(db, lead.id)
        assert all(r.direction == "inbound" for r in rows)
        assert await _jobs(db, lead.id, "pending") == []
        failed_job = (await _jobs(db, lead.id, "failed"))[0]
        assert "timeout" in failed_job.last_error

    async def test_terminal_lead_skipped_without_ledger_row(self, db, make_lead, dispatcher):
        lead = await make_lead(status="needs_followup", attempts=1)
        job = await _due_job(db, lead)
        lead.status = "opted_out"
        await db.commit()

        outcome = await execute_job(db, job.id, dispatcher)

        assert outcome.result == "skipped"
        assert dispatcher.calls == []
        assert await _ledger(db, lead.id) == []

    async def test_lead_already_calling_is_skipped(self, db, make_lead, dispatcher):
        lead = await make_lead(status="calling", provider_call_id="call-live")
        job = await _due_job(db, lead)

        outcome = await execute_job(db, job.id, dispatcher)

        assert outcome.result == "skipped"
        assert outcome.detail == "attempt in flight"
        assert dispatcher.calls == []

    async def test_disabled_channel_defers_without_attempt(self, db, make_lead, dispatcher, settings, monkeypatch):
        monkeypatch.setattr(settings, "call_enabled", False)
        lead = await make_lead()
        job = await _due_job(db, lead)

        outcome = await execute_job(db, job.id, dispatcher)

        assert outcome.result == "deferred"
        assert dispatcher.calls == []
        await db.refresh(lead)
        assert lead.status == "new"
        assert lead.attempts == 0
        pending = await _jobs(db, lead.id, "pending")
        assert len(pending) == 1
        assert pending[0].id != job.id

    async def test_tenant_flag_disables_channel(self, db, tenant, make_lead, dispatcher):
        tenant.feature_flags = {"call_enabled": False}
        await db.commit()
        lead = await make_lead()
        job = await _due_job(db, lead)

        outcome = await execute_job(db, job.id, dispatcher)

        assert outcome.result == "deferred"
        assert dispatcher.calls == []

    async def test_job_runs_only_once(self, db, make_lead, dispatcher):
        lead = await make_lead()
        job = await _due_job(db, lead)

        first = await execute_job(db, job.id, dispatcher)
        second = await execute_job(db, job.id, dispatcher)

        assert first.result == "dispatched"
        assert second.result == "not_claimed"
        assert len(dispatcher.calls) == 1

    async def test_sms_send_counts_as_attempt_and_rearms_call(self, db, make_lead, dispatcher):
        lead = await make_lead(status="needs_followup", attempts=1)
        job = await _due_job(db, lead, "sms")

        outcome = await execute_job(db, job.id, dispatcher)

        assert outcome.result == "dispatched"
        await db.refresh(lead)
        assert lead.status == "needs_followup"
        assert lead.attempts == 2
        pending = await _jobs(db, lead.id, "pending")
        assert len(pending) == 1
        assert pending[0].channel == "call"

    async def test_lock_timeout_reschedules(self, db, make_lead, dispatcher, mock_redis, settings, monkeypatch):
        monkeypatch.setattr(settings, "lead_lock_wait_seconds", 0.0)
        lead = await make_lead()
        job = await _due_job(db, lead)
        mock_redis.set.return_value = None

        outcome = await execute_job(db, job.id, dispatcher)

        assert outcome.result == "deferred"
        assert outcome.detail == "lead busy"
        assert dispatcher.calls == []
        assert len(await _jobs(db, lead.id, "pending")) == 1


# ---------------------------------------------------------------------------
# process_due_jobs
# ---------------------------------------------------------------------------


class TestProcessDueJobs:
    async def test_executes_due_jobs_in_own_sessions(self, db, session_factory, make_lead, dispatcher):
        first = await make_lead()
        second = await make_lead(phone="+447700900001")
        await _due_job(db, first)
        await _due_job(db, second)

        with patch("leadrelay.services.scheduler.async_session_factory", session_factory):
            executed = await process_due_jobs(dispatcher)

        assert executed == 2
        assert {lead_id for _, lead_id in dispatcher.calls} == {first.id, second.id}

    async def test_nothing_due(self, db, session_factory, tenant, dispatcher):
        with patch("leadrelay.services.scheduler.async_session_factory", session_factory):
            assert await process_due_jobs(dispatcher) == 0

    async def test_unexpected_error_marks_job_failed(self, db, session_factory, make_lead, make_dispatcher):
        lead = await make_lead()
        job = await _due_job(db, lead)

        with patch("leadrelay.services.scheduler.async_session_factory", session_factory), \
             patch("leadrelay.services.scheduler._run_claimed_job", side_effect=RuntimeError("boom")):
            executed = await process_due_jobs(make_dispatcher())

        assert executed == 0
        stored = (await _jobs(db, lead.id))[0]
        assert stored.id == job.id
        assert stored.status == "failed"
        assert stored.last_error == "boom"
