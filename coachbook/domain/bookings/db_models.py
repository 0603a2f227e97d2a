import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from coachbook.domain.bookings.statuses import ApprovalStatus, BookingStatus, PayoutStatus
from coachbook.domain.users.db_models import Lesson, User
from coachbook.infra.db import Base


class Booking(Base):
    __tablename__ = "bookings"

    booking_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    lesson_id: Mapped[str] = mapped_column(ForeignKey("lessons.lesson_id"), nullable=False, index=True)
    coach_id: Mapped[str] = mapped_column(ForeignKey("users.user_id"), nullable=False, index=True)
    primary_student_id: Mapped[str | None] = mapped_column(ForeignKey("users.user_id"), index=True)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=BookingStatus.PENDING.value)
    payout_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=PayoutStatus.NONE.value
    )
    cancelled_by: Mapped[str | None] = mapped_column(String(16))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    messaging_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    reschedule_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reschedule_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    extra_paid_reschedules: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reschedule_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    court_location_id: Mapped[str | None] = mapped_column(String(36), index=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    lesson: Mapped[Lesson] = relationship("Lesson")
    coach: Mapped[User] = relationship("User", foreign_keys=[coach_id])
    primary_student: Mapped[User | None] = relationship("User", foreign_keys=[primary_student_id])
    reschedules: Mapped[list["RescheduleHistory"]] = relationship(
        "RescheduleHistory",
        back_populates="booking",
        order_by="RescheduleHistory.requested_at",
    )
    cancellations: Mapped[list["CancellationHistory"]] = relationship(
        "CancellationHistory", back_populates="booking"
    )

    __table_args__ = (
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_payout_status", "payout_status"),
        Index("ix_bookings_scheduled_status", "scheduled_at", "status"),
        Index("ix_bookings_coach_status_scheduled", "coach_id", "status", "scheduled_at"),
        Index("ix_bookings_student_status_scheduled", "primary_student_id", "status", "scheduled_at"),
    )


class RescheduleHistory(Base):
    __tablename__ = "reschedule_history"

    reschedule_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.booking_id"), nullable=False)
    requested_by: Mapped[str] = mapped_column(String(16), nullable=False)
    requested_by_id: Mapped[str | None] = mapped_column(ForeignKey("users.user_id"))
    old_scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    new_scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    approval_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ApprovalStatus.PENDING.value
    )
    approved_by: Mapped[str | None] = mapped_column(ForeignKey("users.user_id"))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    reason: Mapped[str | None] = mapped_column(Text)
    paid_reschedule: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    booking: Mapped[Booking] = relationship("Booking", back_populates="reschedules")

    __table_args__ = (
        Index("ix_reschedule_history_booking_requested", "booking_id", "requested_at"),
        Index("ix_reschedule_history_requested_by_id", "requested_by_id"),
    )


class CancellationHistory(Base):
    __tablename__ = "cancellation_history"

    cancellation_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.booking_id"), nullable=False)
    cancelled_by: Mapped[str] = mapped_column(String(16), nullable=False)
    cancelled_by_id: Mapped[str | None] = mapped_column(ForeignKey("users.user_id"))
    refund_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    penalty_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    penalty_reason: Mapped[str | None] = mapped_column(String(255))
    notes: Mapped[str | None] = mapped_column(Text)
    refund_payment_id: Mapped[str | None] = mapped_column(ForeignKey("payments.payment_id"))
    cancelled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    booking: Mapped[Booking] = relationship("Booking", back_populates="cancellations")

    __table_args__ = (
        Index("ix_cancellation_history_booking_cancelled", "booking_id", "cancelled_at"),
    )
