"""
Canonical event deduplication - Redis SET NX with a short-lived window.
Webhook providers retry aggressively; the same provider event id seen twice
inside the window is dropped before it touches the database.

This is the fast path only. The processed_events table is the durable guard.
"""
import hashlib
import logging
from typing import Optional

logger = logging.getLogger(__name__)

# Redis client (lazily initialized)
_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from leadrelay.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


def make_event_key(provider_event_id: str) -> str:
    """Hash the provider event id into a fixed-length Redis key."""
    hash_val = hashlib.sha256(provider_event_id.encode()).hexdigest()[:24]
    return f"leadrelay:event:{hash_val}"


async def is_duplicate_event(
    provider_event_id: Optional[str],
    window_seconds: Optional[int] = None,
) -> bool:
    """
    Check-and-mark a provider event id.

    Returns True if the id was already seen inside the window, False otherwise.
    Events without an id are never treated as duplicates here.
    """
    if not provider_event_id:
        return False

    if window_seconds is None:
        from leadrelay.config import get_settings
        window_seconds = get_settings().dedup_window_seconds

    key = make_event_key(provider_event_id)
    try:
        redis = await get_redis()
        was_set = await redis.set(key, "1", nx=True, ex=window_seconds)
        if was_set:
            return False
        logger.info("Duplicate provider event dropped: %s", provider_event_id[:40])
        return True
    except Exception as e:
        # Redis failure must not block event processing - the database check still runs
        logger.warning("Redis event dedup failed: %s. Assuming not duplicate.", str(e))
        return False


async def forget_event(provider_event_id: Optional[str]) -> None:
    """Drop a dedup marker so a provider retry can be processed (used when processing failed)."""
    if not provider_event_id:
        return
    try:
        redis = await get_redis()
        await redis.delete(make_event_key(provider_event_id))
    except Exception as e:
        logger.debug("Redis event marker delete failed: %s", str(e))
