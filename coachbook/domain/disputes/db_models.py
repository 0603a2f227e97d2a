import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from coachbook.domain.bookings.db_models import Booking
from coachbook.infra.db import Base


class DisputeStatus(str, Enum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    REJECTED = "rejected"


ACTIVE_DISPUTE_STATUSES = frozenset({DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW})


class Dispute(Base):
    __tablename__ = "disputes"

    dispute_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.booking_id"), nullable=False)
    opened_by: Mapped[str] = mapped_column(String(16), nullable=False)
    opened_by_id: Mapped[str | None] = mapped_column(ForeignKey("users.user_id"))
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=DisputeStatus.OPEN.value)
    resolution_notes: Mapped[str | None] = mapped_column(Text)
    admin_id: Mapped[str | None] = mapped_column(ForeignKey("users.user_id"))
    processor_dispute_id: Mapped[str | None] = mapped_column(String(255))
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    booking: Mapped[Booking] = relationship("Booking")

    __table_args__ = (Index("ix_disputes_booking_status", "booking_id", "status"),)
