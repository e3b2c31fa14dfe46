"""
LeadRelay - multi-tenant lead engagement service.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from leadrelay.config import get_settings
from leadrelay.api.router import api_router
from leadrelay.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("leadrelay")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("LeadRelay starting up (env=%s)", settings.app_env)

    if not settings.vapi_api_key:
        logger.warning("VAPI_API_KEY not set - outbound calls will fail and be retried on backoff")

    worker_tasks: list[asyncio.Task] = []
    if settings.workers_enabled:
        from leadrelay.workers.followup_scheduler import run_followup_scheduler
        worker_tasks.append(asyncio.create_task(run_followup_scheduler()))
        logger.info("Follow-up scheduler worker started")

        from leadrelay.workers.lead_state_manager import run_lead_state_manager
        worker_tasks.append(asyncio.create_task(run_lead_state_manager()))
        logger.info("Lead state manager started")
    else:
        logger.info("Background workers disabled (WORKERS_ENABLED=false)")

    yield

    # Graceful shutdown - give workers time to finish current work
    logger.info("LeadRelay shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        await asyncio.gather(*worker_tasks, return_exceptions=True)
    logger.info("LeadRelay shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="LeadRelay",
        description="Multi-tenant lead engagement over call, SMS and email",
        version="0.1.0",
        lifespan=lifespan,
    )
    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)
    return application


app = create_app()
