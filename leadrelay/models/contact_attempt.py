"""
Contact attempt model - the append-only ledger of every outbound and inbound
contact event. Rows are never updated or deleted; attempt counts and audit
trails are reconstructed from here independently of the mutable lead row.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from leadrelay.database import Base


class ContactAttempt(Base):
    __tablename__ = "contact_attempts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False
    )

    channel: Mapped[str] = mapped_column(String(10), nullable=False)  # call, sms, email
    direction: Mapped[str] = mapped_column(String(10), nullable=False)  # outbound, inbound
    status: Mapped[str] = mapped_column(
        String(30), nullable=False
    )  # sent, delivered, failed, blocked_by_optout
    detail: Mapped[Optional[str]] = mapped_column(Text)
    provider_event_id: Mapped[Optional[str]] = mapped_column(String(200))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_contact_attempts_lead_id", "lead_id"),
        Index("ix_contact_attempts_tenant_id", "tenant_id"),
        Index("ix_contact_attempts_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ContactAttempt {self.channel}/{self.direction} status={self.status}>"
