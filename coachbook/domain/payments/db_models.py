import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from coachbook.domain.bookings.db_models import Booking
from coachbook.domain.payments.statuses import (
    EscrowStatus,
    PaymentMethod,
    PaymentStatus,
    PayoutRecordStatus,
)
from coachbook.infra.db import Base


class Payment(Base):
    __tablename__ = "payments"

    payment_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.booking_id"), nullable=False)
    student_id: Mapped[str] = mapped_column(ForeignKey("users.user_id"), nullable=False)
    coach_id: Mapped[str] = mapped_column(ForeignKey("users.user_id"), nullable=False)
    lesson_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    platform_fee_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_charge_to_student: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    coach_payout_expected: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="usd")
    payment_method: Mapped[str] = mapped_column(
        String(32), nullable=False, default=PaymentMethod.STRIPE.value
    )
    escrow_status: Mapped[str] = mapped_column(String(16), nullable=False, default=EscrowStatus.HELD.value)
    payment_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=PaymentStatus.PENDING.value
    )
    processor_intent_id: Mapped[str | None] = mapped_column(String(255), unique=True)
    processor_charge_id: Mapped[str | None] = mapped_column(String(255), index=True)
    processor_transfer_id: Mapped[str | None] = mapped_column(String(255))
    refunded_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    payment_metadata: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
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

    booking: Mapped[Booking] = relationship("Booking")

    __table_args__ = (
        Index("ix_payments_booking_id", "booking_id"),
        Index("ix_payments_escrow_status", "escrow_status"),
        Index("ix_payments_coach_escrow", "coach_id", "escrow_status"),
    )


class Payout(Base):
    __tablename__ = "payouts"

    payout_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    coach_id: Mapped[str] = mapped_column(ForeignKey("users.user_id"), nullable=False, index=True)
    payment_id: Mapped[str] = mapped_column(ForeignKey("payments.payment_id"), nullable=False, unique=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=PayoutRecordStatus.PENDING.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processor_transfer_id: Mapped[str | None] = mapped_column(String(255))
    failure_reason: Mapped[str | None] = mapped_column(String(255))
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    payment: Mapped[Payment] = relationship("Payment")


class ProcessorEvent(Base):
    __tablename__ = "processor_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str | None] = mapped_column(String(128))
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
