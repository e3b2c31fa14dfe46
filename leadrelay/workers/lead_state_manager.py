"""
Lead state manager - sweeps leads stranded in `calling`.

A call-ended webhook can be lost (provider outage, network). A lead left in
`calling` longer than call_outcome_timeout_minutes is resolved as an
ambiguous outcome: one attempt consumed, then re-armed on backoff or
exhausted, exactly as if the report had said nothing useful.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, and_

from leadrelay.config import get_settings
from leadrelay.database import async_session_factory
from leadrelay.models.lead import Lead
from leadrelay.services.engagement import resolve_stuck_call
from leadrelay.services.lead_state import LeadStatus
from leadrelay.utils.alerting import AlertType, send_alert
from leadrelay.utils.logging import short_id

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 300  # 5 minutes
SWEEP_BATCH_SIZE = 50
HEARTBEAT_KEY = "leadrelay:worker_health:lead_state_manager"


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from leadrelay.utils.dedup import get_redis
        redis = await get_redis()
        await redis.set(HEARTBEAT_KEY, datetime.now(timezone.utc).isoformat(), ex=600)
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


async def run_lead_state_manager():
    """Main loop - sweep stuck calls."""
    logger.info("Lead state manager started (poll every %ds)", POLL_INTERVAL_SECONDS)

    while True:
        try:
            stuck = await sweep_stuck_calls()
            if stuck:
                logger.info("Lead state manager: resolved %d stuck call(s)", stuck)
        except Exception as e:
            logger.error("Lead state manager error: %s", str(e), exc_info=True)

        await _heartbeat()
        await asyncio.sleep(POLL_INTERVAL_SECONDS)


async def find_stuck_calls(db, now: datetime) -> list[uuid.UUID]:
    cutoff = now - timedelta(minutes=get_settings().call_outcome_timeout_minutes)
    result = await db.execute(
        select(Lead.id)
        .where(
            and_(
                Lead.status == LeadStatus.CALLING.value,
                Lead.updated_at < cutoff,
            )
        )
        .order_by(Lead.updated_at)
        .limit(SWEEP_BATCH_SIZE)
    )
    return list(result.scalars().all())


async def sweep_stuck_calls() -> int:
    """Resolve leads stranded in `calling`. Returns how many were resolved."""
    now = datetime.now(timezone.utc)
    async with async_session_factory() as db:
        lead_ids = await find_stuck_calls(db, now)

    resolved = 0
    for lead_id in lead_ids:
        async with async_session_factory() as db:
            try:
                ack = await resolve_stuck_call(db, lead_id)
            except Exception as e:
                logger.error("Failed to resolve stuck call for lead %s: %s", short_id(lead_id), str(e))
                continue
            if ack.status == "processed":
                resolved += 1
                logger.warning("Stuck call resolved for lead %s: %s", short_id(lead_id), ack.detail)

    if resolved:
        await send_alert(
            AlertType.STUCK_CALLS_FOUND,
            f"{resolved} lead(s) had no call report after "
            f"{get_settings().call_outcome_timeout_minutes} minutes",
            severity="warning",
        )
    return resolved
