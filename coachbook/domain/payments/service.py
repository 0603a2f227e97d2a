from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from coachbook.domain.bookings.db_models import Booking, CancellationHistory
from coachbook.domain.bookings.statuses import (
    RELEASABLE_STATUSES,
    ActorRole,
    BookingStatus,
    PayoutStatus,
    assert_valid_booking_transition,
    is_terminal,
)
from coachbook.domain.clock import utc_now
from coachbook.domain.disputes.db_models import ACTIVE_DISPUTE_STATUSES, Dispute, DisputeStatus
from coachbook.domain.errors import InvalidStateError, NotFoundError, ProcessorError, ValidationError
from coachbook.domain.payments.db_models import Payment, Payout
from coachbook.domain.payments.statuses import (
    REFUNDABLE_ESCROW_STATUSES,
    EscrowStatus,
    PaymentMethod,
    PaymentStatus,
    PayoutRecordStatus,
)
from coachbook.infra.metrics import metrics
from coachbook.infra.processor import PaymentProcessor, from_minor_units
from coachbook.settings import settings

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass(frozen=True)
class PaymentSplit:
    platform_fee_amount: Decimal
    total_charge_to_student: Decimal
    coach_payout_expected: Decimal


@dataclass(frozen=True)
class CreatedPayment:
    payment: Payment
    client_secret: str | None


def quantize_money(value: Decimal | int | str) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_split(lesson_price: Decimal | int | str, fee_percent: Decimal | None = None) -> PaymentSplit:
    """Platform fee is added on top of the price for the student and withheld from the coach."""
    price = quantize_money(lesson_price)
    if price < 0:
        raise ValidationError("Lesson price cannot be negative")
    percent = settings.platform_fee_percent if fee_percent is None else fee_percent
    fee = quantize_money(price * percent / Decimal(100))
    return PaymentSplit(
        platform_fee_amount=fee,
        total_charge_to_student=price + fee,
        coach_payout_expected=price - fee,
    )


async def _get_payment(session: AsyncSession, payment_id: str) -> Payment:
    payment = await session.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found")
    return payment


async def _payment_by(session: AsyncSession, column, value: str) -> Payment:
    result = await session.execute(select(Payment).where(column == value).limit(1))
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFoundError("Payment not found")
    return payment


async def get_payment_for_booking(session: AsyncSession, booking_id: str) -> Payment | None:
    result = await session.execute(
        select(Payment).where(Payment.booking_id == booking_id).order_by(Payment.created_at.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def create_payment_for_booking(
    session: AsyncSession,
    processor: PaymentProcessor,
    booking: Booking,
    student_id: str,
    method: str = PaymentMethod.STRIPE.value,
    *,
    customer_id: str | None = None,
) -> CreatedPayment:
    split = compute_split(booking.price)
    payment = Payment(
        booking_id=booking.booking_id,
        student_id=student_id,
        coach_id=booking.coach_id,
        lesson_price=quantize_money(booking.price),
        platform_fee_amount=split.platform_fee_amount,
        total_charge_to_student=split.total_charge_to_student,
        coach_payout_expected=split.coach_payout_expected,
        currency=settings.processor_currency,
        payment_method=PaymentMethod(method).value,
        escrow_status=EscrowStatus.HELD.value,
        payment_status=PaymentStatus.PENDING.value,
        payment_metadata={"booking_id": booking.booking_id, "lesson_id": booking.lesson_id},
    )
    session.add(payment)
    await session.commit()

    try:
        intent = processor.create_payment_intent(
            split.total_charge_to_student,
            payment.currency,
            customer_id=customer_id,
            metadata={
                "booking_id": booking.booking_id,
                "payment_id": payment.payment_id,
                "student_id": student_id,
                "coach_id": booking.coach_id,
            },
        )
    except ProcessorError as exc:
        logger.warning(
            "payment_intent_failed",
            extra={
                "extra": {
                    "booking_id": booking.booking_id,
                    "payment_id": payment.payment_id,
                    "reason": exc.reason,
                }
            },
        )
        metrics.record_escrow("intent_failed")
        raise

    payment.processor_intent_id = intent.id
    await session.commit()
    await session.refresh(payment)
    logger.info(
        "payment_created",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "payment_id": payment.payment_id,
                "total": str(payment.total_charge_to_student),
            }
        },
    )
    metrics.record_escrow("held")
    return CreatedPayment(payment=payment, client_secret=intent.client_secret)


async def handle_payment_capture(
    session: AsyncSession,
    intent_id: str,
    charge_id: str | None,
    *,
    commit: bool = True,
) -> Payment:
    payment = await _payment_by(session, Payment.processor_intent_id, intent_id)
    if payment.payment_status == PaymentStatus.CAPTURED.value:
        logger.info("payment_capture_duplicate", extra={"extra": {"payment_id": payment.payment_id}})
        return payment
    if payment.payment_status == PaymentStatus.REFUNDED.value:
        raise InvalidStateError("Refunded payment cannot be captured")

    payment.payment_status = PaymentStatus.CAPTURED.value
    if charge_id:
        payment.processor_charge_id = charge_id

    booking = await session.get(Booking, payment.booking_id)
    if booking is not None:
        booking.messaging_locked = False
        if booking.status == BookingStatus.PENDING.value:
            assert_valid_booking_transition(booking.status, BookingStatus.CONFIRMED)
            booking.status = BookingStatus.CONFIRMED.value
            metrics.record_booking("confirmed")

    await session.flush()
    if commit:
        await session.commit()
    logger.info(
        "payment_captured",
        extra={"extra": {"payment_id": payment.payment_id, "booking_id": payment.booking_id}},
    )
    metrics.record_escrow("captured")
    return payment


async def mark_payment_failed(session: AsyncSession, intent_id: str, *, commit: bool = True) -> Payment:
    payment = await _payment_by(session, Payment.processor_intent_id, intent_id)
    if payment.payment_status in {PaymentStatus.CAPTURED.value, PaymentStatus.REFUNDED.value}:
        return payment
    payment.payment_status = PaymentStatus.FAILED.value
    await session.flush()
    if commit:
        await session.commit()
    logger.info("payment_failed", extra={"extra": {"payment_id": payment.payment_id}})
    return payment


async def has_active_dispute(session: AsyncSession, booking_id: str) -> bool:
    result = await session.execute(
        select(Dispute.dispute_id)
        .where(
            Dispute.booking_id == booking_id,
            Dispute.status.in_([status.value for status in ACTIVE_DISPUTE_STATUSES]),
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def _get_or_create_payout(session: AsyncSession, payment: Payment) -> Payout:
    result = await session.execute(select(Payout).where(Payout.payment_id == payment.payment_id).limit(1))
    payout = result.scalar_one_or_none()
    if payout is None:
        payout = Payout(
            coach_id=payment.coach_id,
            payment_id=payment.payment_id,
            amount=payment.coach_payout_expected,
            currency=payment.currency,
            status=PayoutRecordStatus.PENDING.value,
            attempts=0,
        )
        session.add(payout)
        await session.flush()
    return payout


async def release_escrow(
    session: AsyncSession,
    processor: PaymentProcessor,
    payment_id: str,
    payout_account_id: str | None,
) -> Payout:
    payment = await _get_payment(session, payment_id)
    if payment.escrow_status != EscrowStatus.HELD.value:
        raise InvalidStateError(f"Escrow is not held: {payment.escrow_status}")
    booking = await session.get(Booking, payment.booking_id)
    if booking is None:
        raise NotFoundError("Booking not found")
    if BookingStatus(booking.status) not in RELEASABLE_STATUSES:
        raise InvalidStateError(f"Booking is not releasable in status {booking.status}")
    if await has_active_dispute(session, booking.booking_id):
        raise InvalidStateError("Booking has an active dispute")

    payout = await _get_or_create_payout(session, payment)
    if payout.status in {PayoutRecordStatus.PAID.value, PayoutRecordStatus.PROCESSING.value}:
        raise InvalidStateError(f"Payout already {payout.status}")
    await session.commit()

    if not payout_account_id:
        logger.info(
            "payout_pending_no_account",
            extra={"extra": {"payment_id": payment.payment_id, "payout_id": payout.payout_id}},
        )
        return payout

    claim = await session.execute(
        update(Payout)
        .where(
            Payout.payout_id == payout.payout_id,
            Payout.status.in_([PayoutRecordStatus.PENDING.value, PayoutRecordStatus.FAILED.value]),
            Payout.attempts == payout.attempts,
        )
        .values(status=PayoutRecordStatus.PROCESSING.value, attempts=Payout.attempts + 1)
    )
    if claim.rowcount != 1:
        await session.rollback()
        raise InvalidStateError("Payout is already being processed")
    await session.commit()

    try:
        transfer = processor.transfer_to_payout_account(
            payout_account_id,
            payout.amount,
            payout.currency,
            metadata={"payment_id": payment.payment_id, "payout_id": payout.payout_id},
        )
    except ProcessorError as exc:
        await session.execute(
            update(Payout)
            .where(Payout.payout_id == payout.payout_id)
            .values(status=PayoutRecordStatus.FAILED.value, failure_reason=exc.reason or "transfer_failed")
        )
        await session.commit()
        logger.warning(
            "escrow_release_failed",
            extra={"extra": {"payment_id": payment.payment_id, "reason": exc.reason}},
        )
        metrics.record_escrow("release_failed")
        raise

    released = await session.execute(
        update(Payment)
        .where(Payment.payment_id == payment.payment_id, Payment.escrow_status == EscrowStatus.HELD.value)
        .values(escrow_status=EscrowStatus.RELEASED.value, processor_transfer_id=transfer.id)
    )
    await session.execute(
        update(Payout)
        .where(Payout.payout_id == payout.payout_id)
        .values(
            status=PayoutRecordStatus.PAID.value,
            processor_transfer_id=transfer.id,
            processed_at=utc_now(),
            failure_reason=None,
        )
    )
    await session.commit()
    if released.rowcount != 1:
        # escrow left "held" while the transfer was in flight
        logger.error(
            "escrow_release_conflict",
            extra={"extra": {"payment_id": payment.payment_id, "transfer_id": transfer.id}},
        )
    await session.refresh(payout)
    await session.refresh(payment)
    logger.info(
        "escrow_released",
        extra={
            "extra": {
                "payment_id": payment.payment_id,
                "payout_id": payout.payout_id,
                "amount": str(payout.amount),
            }
        },
    )
    metrics.record_escrow("released")
    return payout


async def _stamp_refund_on_booking(session: AsyncSession, payment: Payment, amount: Decimal) -> None:
    booking = await session.get(Booking, payment.booking_id)
    if booking is None:
        return
    booking.payout_status = PayoutStatus.FORFEITED.value
    if booking.status != BookingStatus.CANCELLED.value:
        return
    result = await session.execute(
        select(CancellationHistory)
        .where(CancellationHistory.booking_id == booking.booking_id)
        .order_by(CancellationHistory.cancelled_at.desc())
        .limit(1)
    )
    cancellation = result.scalar_one_or_none()
    if cancellation is not None:
        cancellation.refund_amount = amount
        cancellation.refund_payment_id = payment.payment_id


async def process_refund(
    session: AsyncSession,
    processor: PaymentProcessor,
    payment_id: str,
    amount: Decimal | None = None,
    reason: str = "requested_by_customer",
) -> Payment:
    payment = await _get_payment(session, payment_id)
    if not payment.processor_charge_id:
        raise InvalidStateError("Payment has no captured charge to refund")
    if EscrowStatus(payment.escrow_status) not in REFUNDABLE_ESCROW_STATUSES:
        raise InvalidStateError(f"Cannot refund escrow in status {payment.escrow_status}")

    refund_amount = payment.total_charge_to_student if amount is None else quantize_money(amount)
    if refund_amount <= 0:
        raise ValidationError("Refund amount must be positive")
    if refund_amount > payment.total_charge_to_student:
        raise ValidationError("Refund exceeds the charged amount")

    refund = processor.create_refund(
        payment.processor_charge_id,
        None if amount is None else refund_amount,
        reason=reason,
    )

    payment.escrow_status = EscrowStatus.REFUNDED.value
    payment.payment_status = PaymentStatus.REFUNDED.value
    payment.refunded_amount = refund_amount
    await _stamp_refund_on_booking(session, payment, refund_amount)
    await session.commit()
    await session.refresh(payment)
    logger.info(
        "payment_refunded",
        extra={
            "extra": {
                "payment_id": payment.payment_id,
                "refund_id": refund.id,
                "amount": str(refund_amount),
            }
        },
    )
    metrics.record_escrow("refunded")
    return payment


async def apply_processor_refund(
    session: AsyncSession,
    charge_id: str,
    amount_refunded_minor: int,
    *,
    commit: bool = True,
) -> Payment:
    payment = await _payment_by(session, Payment.processor_charge_id, charge_id)
    amount = from_minor_units(amount_refunded_minor)
    if amount > payment.total_charge_to_student:
        logger.warning(
            "processor_refund_exceeds_charge",
            extra={"extra": {"payment_id": payment.payment_id, "reported": str(amount)}},
        )
        amount = payment.total_charge_to_student
    payment.payment_status = PaymentStatus.REFUNDED.value
    payment.refunded_amount = amount
    if payment.escrow_status == EscrowStatus.RELEASED.value:
        logger.warning(
            "refund_after_release",
            extra={"extra": {"payment_id": payment.payment_id, "amount": str(amount)}},
        )
    else:
        payment.escrow_status = EscrowStatus.REFUNDED.value
        await _stamp_refund_on_booking(session, payment, amount)
    await session.flush()
    if commit:
        await session.commit()
    metrics.record_escrow("refunded")
    return payment


async def apply_processor_dispute(
    session: AsyncSession,
    charge_id: str,
    processor_dispute_id: str | None,
    *,
    commit: bool = True,
) -> Payment:
    payment = await _payment_by(session, Payment.processor_charge_id, charge_id)
    if payment.escrow_status == EscrowStatus.HELD.value:
        payment.escrow_status = EscrowStatus.DISPUTED.value

    booking = await session.get(Booking, payment.booking_id)
    if booking is not None and not is_terminal(booking.status):
        if booking.status != BookingStatus.DISPUTED.value:
            booking.status = BookingStatus.DISPUTED.value
            metrics.record_booking("disputed")
        if not await has_active_dispute(session, booking.booking_id):
            session.add(
                Dispute(
                    booking_id=booking.booking_id,
                    opened_by=ActorRole.SYSTEM.value,
                    reason="Processor chargeback",
                    status=DisputeStatus.OPEN.value,
                    processor_dispute_id=processor_dispute_id,
                    opened_at=utc_now(),
                )
            )

    await session.flush()
    if commit:
        await session.commit()
    logger.info(
        "payment_disputed",
        extra={"extra": {"payment_id": payment.payment_id, "processor_dispute_id": processor_dispute_id}},
    )
    metrics.record_escrow("disputed")
    return payment
