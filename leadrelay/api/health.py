"""
Health check endpoints - used by load balancers and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis + worker heartbeats)
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from leadrelay.database import get_db
from leadrelay.services import ledger
from leadrelay.workers import followup_scheduler, lead_state_manager

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

WORKER_HEARTBEATS = {
    "followup_scheduler": followup_scheduler.HEARTBEAT_KEY,
    "lead_state_manager": lead_state_manager.HEARTBEAT_KEY,
}


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """Readiness check - verifies database and Redis connectivity, reports worker heartbeats."""
    checks = {"database": False, "redis": False}
    workers = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    try:
        from leadrelay.utils.dedup import get_redis
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
        for name, key in WORKER_HEARTBEATS.items():
            workers[name] = await redis.get(key)
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))

    return {
        "status": "ready" if all(checks.values()) else "degraded",
        "checks": checks,
        "workers": workers,
        "ledger_write_failures": ledger.ledger_write_failures,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
