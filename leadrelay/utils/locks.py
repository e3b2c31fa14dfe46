"""
Redis distributed locks - per-lead critical sections.
Webhooks and scheduler timers for the same lead are serialized here; different
leads and tenants never contend. Uses Redis SET NX with TTL for automatic expiration.

The lock is the first line of defence; the optimistic version check on the
lead row is what actually guarantees correctness if Redis is unavailable.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

logger = logging.getLogger(__name__)

LOCK_POLL_INTERVAL = 0.1  # 100ms

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout."""
    pass


@asynccontextmanager
async def lead_lock(
    lead_id: str,
    ttl: Optional[int] = None,
    wait: Optional[float] = None,
    strict: bool = True,
):
    """
    Acquire a distributed lock for a lead.

    With strict=False a lock timeout is logged and the body runs unlocked,
    relying on the lead row version check alone.

    Usage:
        async with lead_lock(lead_id):
            # read-then-write lead state safely
    """
    if ttl is None or wait is None:
        from leadrelay.config import get_settings
        settings = get_settings()
        ttl = ttl if ttl is not None else settings.lead_lock_ttl_seconds
        wait = wait if wait is not None else settings.lead_lock_wait_seconds

    lock_key = f"leadrelay:lock:lead:{lead_id}"
    lock_value = uuid.uuid4().hex

    acquired = False
    try:
        acquired = await _acquire_lock(lock_key, lock_value, ttl, wait)
        if not acquired and not strict:
            logger.warning("Proceeding without lock for lead %s after %ss", lead_id[:8], wait)
        elif not acquired:
            raise LockTimeoutError(f"Could not acquire lock for lead {lead_id[:8]} within {wait}s")
        yield
    finally:
        if acquired:
            await _release_lock(lock_key, lock_value)


async def _acquire_lock(key: str, value: str, ttl: int, wait: float) -> bool:
    """Try to acquire a Redis lock with polling."""
    try:
        from leadrelay.utils.dedup import get_redis
        redis = await get_redis()

        if await redis.set(key, value, nx=True, ex=ttl):
            return True

        elapsed = 0.0
        while elapsed < wait:
            await asyncio.sleep(LOCK_POLL_INTERVAL)
            elapsed += LOCK_POLL_INTERVAL
            if await redis.set(key, value, nx=True, ex=ttl):
                return True

        logger.warning("Lock acquisition timed out for %s", key)
        return False
    except Exception as e:
        # Redis failure should not block lead processing; row versioning still guards writes
        logger.warning("Redis lock error for %s: %s. Proceeding without lock.", key, str(e))
        return True


async def _release_lock(key: str, value: str) -> None:
    """Release a Redis lock only if we still own it (compare-and-delete)."""
    try:
        from leadrelay.utils.dedup import get_redis
        redis = await get_redis()
        await redis.eval(_RELEASE_SCRIPT, 1, key, value)
    except Exception as e:
        logger.warning("Redis lock release error for %s: %s", key, str(e))
