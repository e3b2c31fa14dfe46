"""
Operational alerting - events an operator should see even though the flow carried on.

Alert channels:
1. Structured log (always) - at ERROR level
2. Webhook (configurable) - Discord/Slack URL via ALERT_WEBHOOK_URL env var

Per-type cooldown prevents alert storms. Cooldowns live in Redis, with an
in-memory fallback when Redis is down.
"""
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300

_local_cooldowns: dict[str, float] = {}  # alert_type → expiry (monotonic)


class AlertType:
    LEDGER_WRITE_FAILED = "ledger_write_failed"
    DISPATCH_FAILED = "dispatch_failed"
    LEAD_EXHAUSTED = "lead_exhausted"
    STUCK_CALLS_FOUND = "stuck_calls_found"
    UNRECOGNIZED_WEBHOOK = "unrecognized_webhook"
    SCHEDULER_ERROR = "scheduler_error"
    WEBHOOK_FAILED = "webhook_failed"


async def send_alert(
    alert_type: str,
    message: str,
    severity: str = "error",
    extra: Optional[dict] = None,
) -> None:
    """Send an alert through all configured channels. Never raises."""
    if not await _acquire_cooldown(alert_type):
        return

    from leadrelay.utils.logging import get_correlation_id
    cid = get_correlation_id()

    log_message = f"ALERT [{alert_type}]: {message}"
    if cid:
        log_message += f" (correlation_id={cid})"

    if severity == "critical":
        logger.critical(log_message)
    elif severity == "warning":
        logger.warning(log_message)
    else:
        logger.error(log_message)

    await _send_webhook_alert(alert_type, message, cid, extra)


async def _acquire_cooldown(alert_type: str) -> bool:
    """Atomically check-and-set alert cooldown. Returns True if the alert should go out."""
    try:
        from leadrelay.utils.dedup import get_redis
        redis = await get_redis()
        acquired = await redis.set(
            f"leadrelay:alert_cooldown:{alert_type}", "1", nx=True, ex=ALERT_COOLDOWN_SECONDS,
        )
        return bool(acquired)
    except Exception as e:
        logger.debug("Alert cooldown Redis check failed, using in-memory fallback: %s", str(e))
        now = time.monotonic()
        if now < _local_cooldowns.get(alert_type, 0):
            return False
        _local_cooldowns[alert_type] = now + ALERT_COOLDOWN_SECONDS
        return True


async def _send_webhook_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
) -> None:
    try:
        from leadrelay.config import get_settings
        webhook_url = get_settings().alert_webhook_url
        if not webhook_url:
            return

        import httpx

        content = f"**{alert_type}**\n{message}"
        if correlation_id:
            content += f"\n`correlation_id: {correlation_id}`"
        for key, val in (extra or {}).items():
            content += f"\n`{key}: {val}`"

        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(webhook_url, json={"content": content})
    except Exception as e:
        logger.warning("Failed to send webhook alert: %s", str(e))
