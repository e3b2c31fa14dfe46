"""
Opt-out model - phone numbers that must never be contacted again.
Checked before every outbound attempt. The core never deletes rows;
removal is an administrative action outside the engagement flow.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, DateTime
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from leadrelay.database import Base


class OptOut(Base):
    __tablename__ = "opt_outs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    phone: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(100))  # stop_keyword, carrier_unsubscribed, call_request
    source: Mapped[Optional[str]] = mapped_column(String(50))  # sms, call, twilio, admin
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        masked = self.phone[:6] + "***" if self.phone else "unknown"
        return f"<OptOut {masked} source={self.source}>"
