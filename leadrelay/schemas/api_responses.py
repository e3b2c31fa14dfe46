"""
API response schemas for the engagement operations.
"""
import uuid
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, Field


class WebhookAck(BaseModel):
    """Returned to providers. ok is always True once the payload was read."""
    ok: bool = True
    status: str = "processed"  # processed, duplicate, ignored, unrecognized
    lead_id: Optional[str] = None
    detail: Optional[str] = None


class LeadStatusView(BaseModel):
    lead_id: uuid.UUID
    status: str
    attempts: int
    last_contact_at: Optional[datetime] = None
    detail: Optional[str] = None


class NewLeadRequest(BaseModel):
    tenant_key: str
    phone: str
    context: dict[str, Any] = Field(default_factory=dict)


class NewLeadResponse(BaseModel):
    lead_id: uuid.UUID
    status: str


class BookingRequest(BaseModel):
    slot: dict[str, Any] = Field(default_factory=dict)
