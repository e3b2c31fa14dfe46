"""
Follow-up scheduler worker - executes due follow-up jobs.
Polls every scheduler_poll_seconds. Jobs are durable rows, so a restart
resumes exactly where the previous process stopped.
"""
import asyncio
import logging
from datetime import datetime, timezone

from leadrelay.config import get_settings
from leadrelay.services.scheduler import process_due_jobs
from leadrelay.utils.alerting import AlertType, send_alert

logger = logging.getLogger(__name__)

HEARTBEAT_KEY = "leadrelay:worker_health:followup_scheduler"


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from leadrelay.utils.dedup import get_redis
        redis = await get_redis()
        await redis.set(HEARTBEAT_KEY, datetime.now(timezone.utc).isoformat(), ex=300)
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


async def run_followup_scheduler():
    """Main loop - poll for due jobs and execute them."""
    poll_seconds = get_settings().scheduler_poll_seconds
    logger.info("Follow-up scheduler started (poll every %ds)", poll_seconds)

    while True:
        try:
            executed = await process_due_jobs()
            if executed:
                logger.info("Follow-up scheduler executed %d job(s)", executed)
        except Exception as e:
            logger.error("Follow-up scheduler error: %s", str(e), exc_info=True)
            await send_alert(AlertType.SCHEDULER_ERROR, f"Follow-up scheduler cycle failed: {str(e)[:200]}")

        await _heartbeat()
        await asyncio.sleep(poll_seconds)
