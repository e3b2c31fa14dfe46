"""
Lead model - a prospective customer tracked through the engagement lifecycle.
Lifecycle: new → calling → interested → booked, with needs_followup/failed retry loops.
Terminal states: booked, opted_out, exhausted.

Rows are never hard-deleted (audit). The version column gives optimistic
concurrency: a stale read-then-write raises StaleDataError at flush.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from leadrelay.database import Base


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False
    )

    # Contact info
    phone: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(200))
    email: Mapped[Optional[str]] = mapped_column(String(255))
    industry: Mapped[Optional[str]] = mapped_column(String(100))
    location: Mapped[Optional[str]] = mapped_column(String(200))
    context: Mapped[Optional[dict]] = mapped_column(JSONB, default=dict)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(30), default="new", nullable=False)
    previous_status: Mapped[Optional[str]] = mapped_column(String(30))
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_contact_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    detail: Mapped[Optional[str]] = mapped_column(Text)  # last provider error / reason

    # Provider correlation
    provider_call_id: Mapped[Optional[str]] = mapped_column(String(100))
    appointment_id: Mapped[Optional[str]] = mapped_column(String(100))

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    tenant: Mapped["Tenant"] = relationship(back_populates="leads")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_leads_tenant_id", "tenant_id"),
        Index("ix_leads_phone", "phone"),
        Index("ix_leads_status", "status"),
        Index("ix_leads_tenant_phone", "tenant_id", "phone"),
        Index("ix_leads_provider_call_id", "provider_call_id"),
    )

    def __repr__(self) -> str:
        masked = self.phone[:6] + "***" if self.phone else "unknown"
        return f"<Lead {masked} status={self.status} attempts={self.attempts}>"
