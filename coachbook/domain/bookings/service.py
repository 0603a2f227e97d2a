from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coachbook.domain.bookings.db_models import Booking, CancellationHistory
from coachbook.domain.bookings.statuses import (
    ACTIVE_STATUSES,
    ActorRole,
    BookingStatus,
    PayoutStatus,
    assert_valid_booking_transition,
    is_terminal,
)
from coachbook.domain.clock import ensure_utc, utc_now
from coachbook.domain.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from coachbook.domain.payments import service as payment_service
from coachbook.domain.payments.db_models import Payment
from coachbook.domain.payments.service import has_active_dispute
from coachbook.domain.payments.statuses import EscrowStatus
from coachbook.domain.users.db_models import ROLE_ADMIN, ROLE_STUDENT, Lesson, User
from coachbook.infra.metrics import metrics
from coachbook.infra.processor import PaymentProcessor
from coachbook.settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookingCreation:
    booking: Booking
    payment: Payment
    client_secret: str | None


def reschedule_deadline_for(scheduled_at: datetime) -> datetime:
    return ensure_utc(scheduled_at) - timedelta(hours=settings.reschedule_deadline_hours)


def lesson_end(booking: Booking) -> datetime:
    return ensure_utc(booking.scheduled_at) + timedelta(minutes=booking.duration_minutes)


def actor_role_for(booking: Booking, actor: User) -> ActorRole:
    """Resolve how the actor relates to the booking; non-participants are refused."""
    if actor.role == ROLE_ADMIN:
        return ActorRole.ADMIN
    if actor.user_id == booking.coach_id:
        return ActorRole.COACH
    if booking.primary_student_id and actor.user_id == booking.primary_student_id:
        return ActorRole.STUDENT
    raise UnauthorizedError("Actor is not a participant of this booking")


async def get_booking(session: AsyncSession, booking_id: str) -> Booking:
    booking = await session.get(Booking, booking_id)
    if booking is None or booking.deleted_at is not None:
        raise NotFoundError("Booking not found")
    return booking


async def get_booking_for_actor(session: AsyncSession, actor: User, booking_id: str) -> Booking:
    booking = await get_booking(session, booking_id)
    actor_role_for(booking, actor)
    return booking


async def has_overlap(
    session: AsyncSession,
    lesson_id: str,
    start: datetime,
    end: datetime,
    exclude_booking_id: str | None = None,
) -> bool:
    stmt = select(Booking).where(
        Booking.lesson_id == lesson_id,
        Booking.status.in_([status.value for status in ACTIVE_STATUSES]),
        Booking.deleted_at.is_(None),
        Booking.scheduled_at < end,
    )
    if exclude_booking_id:
        stmt = stmt.where(Booking.booking_id != exclude_booking_id)
    result = await session.execute(stmt)
    for existing in result.scalars().all():
        if ensure_utc(existing.scheduled_at) < end and lesson_end(existing) > start:
            return True
    return False


async def create_booking(
    session: AsyncSession,
    processor: PaymentProcessor,
    actor: User,
    lesson_id: str,
    scheduled_at: datetime,
    *,
    student_id: str | None = None,
    payment_method: str = "stripe",
    court_location_id: str | None = None,
) -> BookingCreation:
    lesson = await session.get(Lesson, lesson_id)
    if lesson is None or not lesson.is_active or lesson.deleted_at is not None:
        raise NotFoundError("Lesson not found")

    if actor.role == ROLE_STUDENT:
        student_id = actor.user_id
    elif actor.role == ROLE_ADMIN:
        if not student_id:
            raise ValidationError(
                "student_id is required when booking on behalf of a student",
                errors=[{"field": "student_id", "message": "required"}],
            )
        student = await session.get(User, student_id)
        if student is None or not student.is_active:
            raise NotFoundError("Student not found")
        if student.role != ROLE_STUDENT:
            raise ValidationError(
                "Bookings can only be made for students",
                errors=[{"field": "student_id", "message": "must reference a student"}],
            )
    else:
        raise UnauthorizedError("Only students or admins can create bookings")

    start = ensure_utc(scheduled_at)
    if start <= utc_now():
        raise ValidationError(
            "Scheduled time must be in the future",
            errors=[{"field": "scheduled_at", "message": "must be in the future"}],
        )
    end = start + timedelta(minutes=lesson.duration_minutes)
    if await has_overlap(session, lesson.lesson_id, start, end):
        raise ConflictError("Lesson is already booked for an overlapping time")

    booking = Booking(
        lesson_id=lesson.lesson_id,
        coach_id=lesson.coach_id,
        primary_student_id=student_id,
        scheduled_at=start,
        duration_minutes=lesson.duration_minutes,
        price=lesson.price,
        status=BookingStatus.PENDING.value,
        payout_status=PayoutStatus.NONE.value,
        messaging_locked=True,
        reschedule_count=0,
        reschedule_limit=settings.default_reschedule_limit,
        extra_paid_reschedules=0,
        reschedule_deadline=reschedule_deadline_for(start),
        court_location_id=court_location_id,
    )
    session.add(booking)
    await session.commit()
    await session.refresh(booking)
    logger.info(
        "booking_created",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "lesson_id": lesson.lesson_id,
                "coach_id": booking.coach_id,
            }
        },
    )
    metrics.record_booking("created")

    created = await payment_service.create_payment_for_booking(
        session, processor, booking, student_id, payment_method
    )
    return BookingCreation(booking=booking, payment=created.payment, client_secret=created.client_secret)


def _late_cancel_penalty(booking: Booking, cancelled_by: ActorRole, now: datetime) -> Decimal:
    if cancelled_by != ActorRole.STUDENT or booking.reschedule_deadline is None:
        return Decimal("0.00")
    if now <= ensure_utc(booking.reschedule_deadline):
        return Decimal("0.00")
    return payment_service.quantize_money(
        Decimal(booking.price) * settings.late_cancel_penalty_percent / Decimal(100)
    )


async def cancel_booking(
    session: AsyncSession,
    actor: User,
    booking_id: str,
    reason: str | None = None,
) -> Booking:
    booking = await get_booking(session, booking_id)
    if is_terminal(booking.status):
        raise InvalidStateError(f"Booking is already {booking.status}")
    cancelled_by = actor_role_for(booking, actor)
    assert_valid_booking_transition(booking.status, BookingStatus.CANCELLED)

    now = utc_now()
    penalty = _late_cancel_penalty(booking, cancelled_by, now)
    booking.status = BookingStatus.CANCELLED.value
    booking.cancelled_by = cancelled_by.value
    booking.cancelled_at = now
    session.add(
        CancellationHistory(
            booking_id=booking.booking_id,
            cancelled_by=cancelled_by.value,
            cancelled_by_id=actor.user_id,
            refund_amount=Decimal("0.00"),
            penalty_amount=penalty,
            penalty_reason="Cancelled after reschedule deadline" if penalty > 0 else None,
            notes=reason,
            cancelled_at=now,
        )
    )
    await session.commit()
    await session.refresh(booking)
    logger.info(
        "booking_cancelled",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "cancelled_by": cancelled_by.value,
                "penalty": str(penalty),
            }
        },
    )
    metrics.record_booking("cancelled")
    return booking


async def mark_awaiting_verification(session: AsyncSession, booking: Booking) -> Booking:
    assert_valid_booking_transition(booking.status, BookingStatus.AWAITING_VERIFICATION)
    booking.status = BookingStatus.AWAITING_VERIFICATION.value
    booking.payout_status = PayoutStatus.AWAITING_VERIFICATION.value
    await session.commit()
    metrics.record_booking("awaiting_verification")
    return booking


async def complete_booking(session: AsyncSession, booking: Booking) -> Booking:
    assert_valid_booking_transition(booking.status, BookingStatus.COMPLETED)
    booking.status = BookingStatus.COMPLETED.value
    booking.payout_status = PayoutStatus.PENDING.value
    await session.commit()
    logger.info("booking_completed", extra={"extra": {"booking_id": booking.booking_id}})
    metrics.record_booking("completed")
    return booking


async def confirm_completion(session: AsyncSession, actor: User, booking_id: str) -> Booking:
    booking = await get_booking(session, booking_id)
    actor_role_for(booking, actor)
    if booking.status != BookingStatus.AWAITING_VERIFICATION.value:
        raise InvalidStateError(f"Booking cannot be completed from status {booking.status}")
    if await has_active_dispute(session, booking.booking_id):
        raise InvalidStateError("Booking has an active dispute")
    return await complete_booking(session, booking)


async def reinstate_booking(
    session: AsyncSession,
    actor: User,
    booking_id: str,
    status: BookingStatus,
) -> Booking:
    if actor.role != ROLE_ADMIN:
        raise UnauthorizedError("Only admins can reinstate bookings")
    booking = await get_booking(session, booking_id)
    if booking.status != BookingStatus.DISPUTED.value:
        raise InvalidStateError("Only disputed bookings can be reinstated")
    if await has_active_dispute(session, booking.booking_id):
        raise InvalidStateError("Dispute is still active")
    target = BookingStatus(status)
    assert_valid_booking_transition(booking.status, target)

    booking.status = target.value
    if target == BookingStatus.COMPLETED:
        booking.payout_status = PayoutStatus.PENDING.value
    elif target == BookingStatus.CANCELLED:
        booking.cancelled_by = ActorRole.ADMIN.value
        booking.cancelled_at = utc_now()
        session.add(
            CancellationHistory(
                booking_id=booking.booking_id,
                cancelled_by=ActorRole.ADMIN.value,
                cancelled_by_id=actor.user_id,
                notes="Cancelled after dispute resolution",
                cancelled_at=booking.cancelled_at,
            )
        )

    # chargeback holds return to plain escrow once the booking re-enters the flow
    payment = await payment_service.get_payment_for_booking(session, booking.booking_id)
    if (
        payment is not None
        and payment.escrow_status == EscrowStatus.DISPUTED.value
        and target != BookingStatus.CANCELLED
    ):
        payment.escrow_status = EscrowStatus.HELD.value

    await session.commit()
    await session.refresh(booking)
    logger.info(
        "booking_reinstated",
        extra={"extra": {"booking_id": booking.booking_id, "status": target.value}},
    )
    metrics.record_booking("reinstated")
    return booking

