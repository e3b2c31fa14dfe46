"""
Opt-out guard - THE GATEKEEPER for outbound contact.
Every outbound attempt checks this first. Once a number is here, nothing is sent to it.

Stop keywords are matched exactly (after trimming), case-insensitively, against a
configurable set. Recording is idempotent: a second opt-out for the same number
is a no-op, not an error.
"""
import logging
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from leadrelay.errors import Blocked
from leadrelay.models.opt_out import OptOut
from leadrelay.utils.logging import mask_phone

logger = logging.getLogger(__name__)


def is_stop_keyword(body: Optional[str], keywords: Optional[Iterable[str]] = None) -> bool:
    """
    True if the whole message is a stop keyword.
    "STOP", " stop " and "Stop" match; "please don't stop" does not.
    """
    if not body or not body.strip():
        return False
    if keywords is None:
        from leadrelay.config import get_settings
        keywords = get_settings().stop_keywords
    normalized = body.strip().upper()
    return normalized in {k.strip().upper() for k in keywords}


async def is_opted_out(db: AsyncSession, phone: str) -> bool:
    if not phone:
        return False
    result = await db.execute(select(OptOut.id).where(OptOut.phone == phone).limit(1))
    return result.scalar_one_or_none() is not None


async def ensure_not_opted_out(db: AsyncSession, phone: str) -> None:
    """Raise Blocked when the number is on the opt-out list."""
    if await is_opted_out(db, phone):
        raise Blocked(f"{mask_phone(phone)} is on the opt-out list")


async def record_opt_out(
    db: AsyncSession,
    phone: str,
    reason: str,
    source: str,
) -> OptOut:
    """
    Add a phone number to the opt-out list. Idempotent.
    Returns the existing entry when the number was already opted out.
    """
    existing = (
        await db.execute(select(OptOut).where(OptOut.phone == phone).limit(1))
    ).scalar_one_or_none()
    if existing is not None:
        logger.info("Opt-out already recorded for %s", mask_phone(phone))
        return existing

    entry = OptOut(phone=phone, reason=reason, source=source)
    try:
        async with db.begin_nested():
            db.add(entry)
    except IntegrityError:
        # Concurrent insert for the same number won the race
        existing = (
            await db.execute(select(OptOut).where(OptOut.phone == phone).limit(1))
        ).scalar_one()
        return existing

    logger.info("Opt-out recorded for %s (reason=%s source=%s)", mask_phone(phone), reason, source)
    return entry
