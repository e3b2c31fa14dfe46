"""
Tests for leadrelay/services/opt_out.py and ledger.py.

Covers:
- is_stop_keyword(): exact match after trimming, case-insensitive
- record_opt_out(): idempotent, global across tenants
- ensure_not_opted_out(): raises Blocked for listed numbers
- log_attempt(): append, best-effort failure handling
- count_attempts() / list_attempts()
"""
import pytest
from sqlalchemy import func, select

from leadrelay.errors import Blocked
from leadrelay.models.opt_out import OptOut
from leadrelay.services import ledger
from leadrelay.services.ledger import count_attempts, list_attempts, log_attempt
from leadrelay.services.opt_out import (
    ensure_not_opted_out,
    is_opted_out,
    is_stop_keyword,
    record_opt_out,
)


class TestStopKeywords:
    @pytest.mark.parametrize("body", ["STOP", "stop", " Stop ", "unsubscribe", "QUIT", "end"])
    def test_matches(self, body):
        assert is_stop_keyword(body)

    @pytest.mark.parametrize("body", ["please don't stop", "STOP!", "", "   ", None, "stopping"])
    def test_non_matches(self, body):
        assert not is_stop_keyword(body)

    def test_custom_keyword_set(self):
        assert is_stop_keyword("halt", ["HALT"])
        assert not is_stop_keyword("stop", ["HALT"])


class TestRecordOptOut:
    async def test_record_and_check(self, db):
        assert not await is_opted_out(db, "+447700900000")
        entry = await record_opt_out(db, "+447700900000", reason="stop_keyword", source="sms")
        await db.commit()

        assert entry.reason == "stop_keyword"
        assert await is_opted_out(db, "+447700900000")
        assert not await is_opted_out(db, "+447700900001")
        assert not await is_opted_out(db, "")

    async def test_second_record_is_noop(self, db):
        first = await record_opt_out(db, "+447700900000", reason="stop_keyword", source="sms")
        second = await record_opt_out(db, "+447700900000", reason="call_opt_out", source="vapi")
        await db.commit()

        assert second.id == first.id
        assert second.reason == "stop_keyword"
        count = (await db.execute(select(func.count(OptOut.id)))).scalar()
        assert count == 1

    async def test_ensure_not_opted_out(self, db):
        await ensure_not_opted_out(db, "+447700900000")
        await record_opt_out(db, "+447700900000", reason="stop_keyword", source="sms")

        with pytest.raises(Blocked):
            await ensure_not_opted_out(db, "+447700900000")
        await ensure_not_opted_out(db, "+447700900001")


class TestLedger:
    async def test_log_attempt_appends_row(self, db, make_lead):
        lead = await make_lead()

        entry = await log_attempt(
            db,
            tenant_id=lead.tenant_id,
            lead_id=lead.id,
            channel="call",
            direction="outbound",
            status="sent",
            detail="Call placed",
            provider_event_id="call-1",
        )
        await db.commit()

        assert entry is not None
        rows = await list_attempts(db, lead.id)
        assert len(rows) == 1
        assert rows[0].provider_event_id == "call-1"
        assert await count_attempts(db, lead.id, direction="outbound") == 1
        assert await count_attempts(db, lead.id, direction="inbound") == 0
        assert await count_attempts(db, lead.id, statuses=["failed"]) == 0

    async def test_invalid_entry_is_swallowed_and_counted(self, db, make_lead, mock_redis):
        lead = await make_lead()
        before = ledger.ledger_write_failures

        entry = await log_attempt(
            db,
            tenant_id=lead.tenant_id,
            lead_id=lead.id,
            channel="pigeon",
            direction="outbound",
            status="sent",
        )

        assert entry is None
        assert ledger.ledger_write_failures == before + 1
        alert_keys = [c.args[0] for c in mock_redis.set.call_args_list]
        assert "leadrelay:alert_cooldown:ledger_write_failed" in alert_keys

    async def test_failed_write_keeps_session_usable(self, db, make_lead):
        lead = await make_lead()
        await log_attempt(
            db, tenant_id=lead.tenant_id, lead_id=lead.id,
            channel="call", direction="sideways", status="sent",
        )
        lead.detail = "still writable"
        await db.commit()

        await db.refresh(lead)
        assert lead.detail == "still writable"

    async def test_long_detail_truncated(self, db, make_lead):
        lead = await make_lead()
        entry = await log_attempt(
            db, tenant_id=lead.tenant_id, lead_id=lead.id,
            channel="sms", direction="inbound", status="delivered", detail="x" * 5000,
        )
        assert len(entry.detail) == 2000
