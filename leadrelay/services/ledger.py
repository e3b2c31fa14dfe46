"""
Contact attempt ledger - append-only audit trail of every contact event.

Writes are best-effort: each append runs in its own SAVEPOINT, and a failure is
logged, alerted and swallowed. Losing an audit row must never block a lead's
state transition, while a failed state transition always propagates.
"""
import logging
import uuid
from typing import Iterable, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from leadrelay.models.contact_attempt import ContactAttempt
from leadrelay.utils.alerting import AlertType, send_alert
from leadrelay.utils.logging import short_id

logger = logging.getLogger(__name__)

CHANNELS = {"call", "sms", "email"}
DIRECTIONS = {"outbound", "inbound"}
STATUSES = {"sent", "delivered", "failed", "blocked_by_optout"}

# Incremented on every swallowed write failure; read by health checks
ledger_write_failures = 0


async def log_attempt(
    db: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    lead_id: uuid.UUID,
    channel: str,
    direction: str,
    status: str,
    detail: Optional[str] = None,
    provider_event_id: Optional[str] = None,
) -> Optional[ContactAttempt]:
    """
    Append one contact attempt. Returns the row, or None if the write failed.
    Never raises.
    """
    global ledger_write_failures

    # Pending lead/job changes flush here, outside the guard, so their errors propagate
    await db.flush()

    try:
        if channel not in CHANNELS or direction not in DIRECTIONS or status not in STATUSES:
            raise ValueError(f"Invalid ledger entry {channel}/{direction}/{status}")

        entry = ContactAttempt(
            tenant_id=tenant_id,
            lead_id=lead_id,
            channel=channel,
            direction=direction,
            status=status,
            detail=(detail or "")[:2000] or None,
            provider_event_id=provider_event_id,
        )
        async with db.begin_nested():
            db.add(entry)
        return entry
    except Exception as e:
        ledger_write_failures += 1
        logger.error(
            "Ledger write failed for lead %s (%s/%s/%s): %s",
            short_id(lead_id), channel, direction, status, str(e),
        )
        await send_alert(
            AlertType.LEDGER_WRITE_FAILED,
            f"Contact attempt not recorded for lead {short_id(lead_id)}: {str(e)[:200]}",
            severity="warning",
        )
        return None


async def count_attempts(
    db: AsyncSession,
    lead_id: uuid.UUID,
    direction: Optional[str] = None,
    statuses: Optional[Iterable[str]] = None,
) -> int:
    query = select(func.count(ContactAttempt.id)).where(ContactAttempt.lead_id == lead_id)
    if direction:
        query = query.where(ContactAttempt.direction == direction)
    if statuses:
        query = query.where(ContactAttempt.status.in_(list(statuses)))
    return (await db.execute(query)).scalar() or 0


async def list_attempts(db: AsyncSession, lead_id: uuid.UUID) -> list[ContactAttempt]:
    """Full audit trail for a lead, oldest first."""
    result = await db.execute(
        select(ContactAttempt)
        .where(ContactAttempt.lead_id == lead_id)
        .order_by(ContactAttempt.created_at, ContactAttempt.id)
    )
    return list(result.scalars().all())
