"""
Calendar collaborator - confirms a booking slot and returns an appointment id.

The engagement core only depends on the CalendarCollaborator protocol.
LocalCalendar is the built-in implementation for tenants without an external
calendar integration: it validates the slot and issues a stable appointment
id, so repeating a confirmation for the same lead and slot yields the same id.
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Protocol

from leadrelay.models.lead import Lead
from leadrelay.schemas.tenant_config import TenantConfig
from leadrelay.utils.logging import short_id

logger = logging.getLogger(__name__)

APPOINTMENT_NAMESPACE = uuid.UUID("5f0c6a2e-4f7b-4b8e-9d55-2a6f3c1b7e90")


class BookingRejected(ValueError):
    """The calendar refused the requested slot."""
    pass


class CalendarCollaborator(Protocol):
    async def confirm_booking(
        self, tenant: TenantConfig, lead: Lead, slot: dict[str, Any],
    ) -> dict[str, Any]:
        ...


def parse_slot_start(slot: dict[str, Any]) -> datetime:
    start = (slot or {}).get("start")
    if not start:
        raise BookingRejected("Slot has no start time")
    if isinstance(start, datetime):
        return start
    try:
        return datetime.fromisoformat(str(start).replace("Z", "+00:00"))
    except ValueError as e:
        raise BookingRejected(f"Invalid slot start: {start}") from e


class LocalCalendar:
    async def confirm_booking(
        self, tenant: TenantConfig, lead: Lead, slot: dict[str, Any],
    ) -> dict[str, Any]:
        start = parse_slot_start(slot)
        calendar = tenant.calendar_id or tenant.key
        appointment_id = uuid.uuid5(
            APPOINTMENT_NAMESPACE, f"{calendar}:{lead.id}:{start.isoformat()}",
        ).hex
        logger.info(
            "Booking confirmed for lead %s on %s at %s",
            short_id(lead.id), calendar, start.isoformat(),
        )
        return {"appointment_id": appointment_id, "start": start.isoformat(), "calendar_id": calendar}


default_calendar = LocalCalendar()
