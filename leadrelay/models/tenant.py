"""
Tenant model - an independent client business whose leads, channel
credentials and templates are isolated from every other tenant.
Soft-disabled via is_active; never deleted.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Boolean, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from leadrelay.database import Base


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), default="Europe/London")

    # Voice (Vapi)
    voice_assistant_id: Mapped[Optional[str]] = mapped_column(String(100))
    voice_phone_number_id: Mapped[Optional[str]] = mapped_column(String(100))

    # SMS (Twilio) - sms_from_number is how inbound messages find their tenant
    sms_from_number: Mapped[Optional[str]] = mapped_column(String(20), unique=True)
    sms_messaging_service_sid: Mapped[Optional[str]] = mapped_column(String(100))

    # Calendar
    calendar_id: Mapped[Optional[str]] = mapped_column(String(255))
    booking_link: Mapped[Optional[str]] = mapped_column(String(500))

    # Message templates and per-tenant channel switches
    templates: Mapped[Optional[dict]] = mapped_column(JSONB, default=dict)
    feature_flags: Mapped[Optional[dict]] = mapped_column(JSONB, default=dict)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    leads: Mapped[list["Lead"]] = relationship(back_populates="tenant", lazy="select")

    __table_args__ = (
        Index("ix_tenants_is_active", "is_active"),
    )

    def __repr__(self) -> str:
        return f"<Tenant {self.key}>"
