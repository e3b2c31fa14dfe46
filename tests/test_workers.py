"""
Tests for leadrelay/workers/ - follow-up scheduler and lead state manager.

Covers:
- _heartbeat(): Redis heartbeat storage and error handling
- run_followup_scheduler() / run_lead_state_manager(): process, heartbeat, sleep
- sweep_stuck_calls(): only calls past the outcome timeout are resolved
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from leadrelay.models.lead import Lead
from leadrelay.schemas.api_responses import WebhookAck
from leadrelay.workers import followup_scheduler, lead_state_manager


class TestHeartbeat:
    async def test_scheduler_heartbeat_stored(self, mock_redis):
        await followup_scheduler._heartbeat()

        args, kwargs = mock_redis.set.call_args
        assert args[0] == "leadrelay:worker_health:followup_scheduler"
        assert kwargs.get("ex") == 300

    async def test_lead_state_heartbeat_stored(self, mock_redis):
        await lead_state_manager._heartbeat()

        args, kwargs = mock_redis.set.call_args
        assert args[0] == "leadrelay:worker_health:lead_state_manager"
        assert kwargs.get("ex") == 600

    async def test_heartbeat_swallows_redis_errors(self):
        with patch("leadrelay.utils.dedup.get_redis", new_callable=AsyncMock, side_effect=ConnectionError("no redis")):
            await followup_scheduler._heartbeat()


class TestRunFollowupScheduler:
    async def test_loop_processes_then_heartbeats_then_sleeps(self, settings):
        call_order = []

        async def fake_process():
            call_order.append("process")
            return 2

        async def fake_heartbeat():
            call_order.append("heartbeat")

        async def fake_sleep(seconds):
            call_order.append(("sleep", seconds))
            raise KeyboardInterrupt()

        with patch("leadrelay.workers.followup_scheduler.process_due_jobs", side_effect=fake_process), \
             patch("leadrelay.workers.followup_scheduler._heartbeat", side_effect=fake_heartbeat), \
             patch("leadrelay.workers.followup_scheduler.asyncio.sleep", side_effect=fake_sleep):
            with pytest.raises(KeyboardInterrupt):
                await followup_scheduler.run_followup_scheduler()

        assert call_order == ["process", "heartbeat", ("sleep", settings.scheduler_poll_seconds)]

    async def test_loop_survives_errors_and_alerts(self):
        call_order = []

        async def fail_process():
            call_order.append("process_error")
            raise RuntimeError("db down")

        async def fake_sleep(seconds):
            raise KeyboardInterrupt()

        with patch("leadrelay.workers.followup_scheduler.process_due_jobs", side_effect=fail_process), \
             patch("leadrelay.workers.followup_scheduler._heartbeat", new_callable=AsyncMock) as heartbeat, \
             patch("leadrelay.workers.followup_scheduler.send_alert", new_callable=AsyncMock) as alert, \
             patch("leadrelay.workers.followup_scheduler.asyncio.sleep", side_effect=fake_sleep):
            with pytest.raises(KeyboardInterrupt):
                await followup_scheduler.run_followup_scheduler()

        assert call_order == ["process_error"]
        heartbeat.assert_awaited_once()
        alert.assert_awaited_once()
        assert alert.call_args.args[0] == "scheduler_error"


class TestRunLeadStateManager:
    async def test_loop_sweeps_then_sleeps(self):
        async def fake_sleep(seconds):
            assert seconds == lead_state_manager.POLL_INTERVAL_SECONDS
            raise KeyboardInterrupt()

        with patch("leadrelay.workers.lead_state_manager.sweep_stuck_calls", new_callable=AsyncMock, return_value=0) as sweep, \
             patch("leadrelay.workers.lead_state_manager._heartbeat", new_callable=AsyncMock) as heartbeat, \
             patch("leadrelay.workers.lead_state_manager.asyncio.sleep", side_effect=fake_sleep):
            with pytest.raises(KeyboardInterrupt):
                await lead_state_manager.run_lead_state_manager()

        sweep.assert_awaited_once()
        heartbeat.assert_awaited_once()


class TestSweepStuckCalls:
    async def test_only_stale_calls_resolved(self, db, session_factory, make_lead, mock_redis):
        old = datetime.now(timezone.utc) - timedelta(hours=1)
        stuck = await make_lead(status="calling", provider_call_id="call-1", updated_at=old)
        fresh = await make_lead(phone="+447700900001", status="calling", provider_call_id="call-2")
        waiting = await make_lead(phone="+447700900002", status="needs_followup", attempts=1, updated_at=old)

        with patch("leadrelay.workers.lead_state_manager.async_session_factory", session_factory):
            resolved = await lead_state_manager.sweep_stuck_calls()

        assert resolved == 1
        statuses = {
            lead.id: (lead.status, lead.attempts)
            for lead in (
                await db.execute(select(Lead).execution_options(populate_existing=True))
            ).scalars()
        }
        assert statuses[stuck.id] == ("needs_followup", 1)
        assert statuses[fresh.id] == ("calling", 0)
        assert statuses[waiting.id] == ("needs_followup", 1)
        alert_keys = [c.args[0] for c in mock_redis.set.call_args_list]
        assert "leadrelay:alert_cooldown:stuck_calls_found" in alert_keys

    async def test_nothing_stuck(self, db, session_factory, tenant):
        with patch("leadrelay.workers.lead_state_manager.async_session_factory", session_factory):
            assert await lead_state_manager.sweep_stuck_calls() == 0

    async def test_one_failure_does_not_stop_the_sweep(self, db, session_factory, make_lead):
        old = datetime.now(timezone.utc) - timedelta(hours=1)
        await make_lead(status="calling", provider_call_id="call-1", updated_at=old)
        await make_lead(phone="+447700900001", status="calling", provider_call_id="call-2", updated_at=old)

        resolve = AsyncMock(side_effect=[RuntimeError("boom"), WebhookAck(detail="ok")])
        with patch("leadrelay.workers.lead_state_manager.async_session_factory", session_factory), \
             patch("leadrelay.workers.lead_state_manager.resolve_stuck_call", resolve):
            resolved = await lead_state_manager.sweep_stuck_calls()

        assert resolve.await_count == 2
        assert resolved == 1
