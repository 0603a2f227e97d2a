from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from coachbook.domain.bookings import reschedules as reschedule_service
from coachbook.domain.bookings import service as booking_service
from coachbook.domain.bookings.db_models import Booking, CancellationHistory
from coachbook.domain.bookings.statuses import (
    BookingStatus,
    PayoutStatus,
    assert_valid_booking_transition,
)
from coachbook.domain.clock import ensure_utc
from coachbook.domain.disputes import service as dispute_service
from coachbook.domain.disputes.db_models import Dispute, DisputeStatus
from coachbook.domain.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ProcessorError,
    UnauthorizedError,
    ValidationError,
)
from coachbook.domain.payments.db_models import Payment
from coachbook.domain.payments.statuses import EscrowStatus, PaymentStatus
from coachbook.domain.users.db_models import ROLE_STUDENT
from tests.conftest import seed_booking, seed_marketplace, seed_user


def _future(hours: int = 72) -> datetime:
    return datetime.now(tz=timezone.utc).replace(microsecond=0) + timedelta(hours=hours)


@pytest.mark.anyio
async def test_create_booking_starts_pending_and_locked(async_session_maker, processor):
    scheduled_at = _future()
    async with async_session_maker() as session:
        coach, student, _, lesson = await seed_marketplace(session)
        created = await booking_service.create_booking(
            session, processor, student, lesson.lesson_id, scheduled_at, court_location_id="court-7"
        )

    booking = created.booking
    assert booking.status == BookingStatus.PENDING.value
    assert booking.payout_status == PayoutStatus.NONE.value
    assert booking.messaging_locked is True
    assert booking.coach_id == coach.user_id
    assert booking.primary_student_id == student.user_id
    assert booking.price == Decimal("100.00")
    assert booking.reschedule_count == 0
    assert booking.reschedule_limit == 1
    assert ensure_utc(booking.reschedule_deadline) == scheduled_at - timedelta(hours=24)
    assert booking.court_location_id == "court-7"


@pytest.mark.anyio
async def test_admin_books_on_behalf_of_student(async_session_maker, processor):
    async with async_session_maker() as session:
        _, student, admin, lesson = await seed_marketplace(session)
        with pytest.raises(ValidationError):
            await booking_service.create_booking(session, processor, admin, lesson.lesson_id, _future())
        created = await booking_service.create_booking(
            session, processor, admin, lesson.lesson_id, _future(), student_id=student.user_id
        )

    assert created.booking.primary_student_id == student.user_id
    assert created.payment.student_id == student.user_id


@pytest.mark.anyio
async def test_admin_booking_requires_an_active_student(async_session_maker, processor):
    async with async_session_maker() as session:
        coach, _, admin, lesson = await seed_marketplace(session)
        retired = await seed_user(session, ROLE_STUDENT, is_active=False)
        with pytest.raises(NotFoundError):
            await booking_service.create_booking(
                session, processor, admin, lesson.lesson_id, _future(), student_id="no-such-user"
            )
        with pytest.raises(NotFoundError):
            await booking_service.create_booking(
                session, processor, admin, lesson.lesson_id, _future(), student_id=retired.user_id
            )
        with pytest.raises(ValidationError) as excinfo:
            await booking_service.create_booking(
                session, processor, admin, lesson.lesson_id, _future(), student_id=coach.user_id
            )
        bookings = (await session.execute(select(Booking))).scalars().all()

    assert excinfo.value.errors[0]["field"] == "student_id"
    assert bookings == []
    assert processor.calls_named("create_payment_intent") == []


@pytest.mark.anyio
async def test_coach_cannot_create_booking(async_session_maker, processor):
    async with async_session_maker() as session:
        coach, _, _, lesson = await seed_marketplace(session)
        with pytest.raises(UnauthorizedError):
            await booking_service.create_booking(session, processor, coach, lesson.lesson_id, _future())


@pytest.mark.anyio
async def test_create_booking_rejects_past_time_and_unknown_lesson(async_session_maker, processor):
    async with async_session_maker() as session:
        _, student, _, lesson = await seed_marketplace(session)
        with pytest.raises(ValidationError):
            await booking_service.create_booking(
                session, processor, student, lesson.lesson_id, datetime.now(tz=timezone.utc) - timedelta(minutes=1)
            )
        with pytest.raises(NotFoundError):
            await booking_service.create_booking(session, processor, student, "missing-lesson", _future())
    assert processor.calls_named("create_payment_intent") == []


@pytest.mark.anyio
async def test_overlapping_booking_is_rejected(async_session_maker, processor):
    start = _future()
    async with async_session_maker() as session:
        _, student, _, lesson = await seed_marketplace(session)
        other = await seed_user(session, ROLE_STUDENT)
        await booking_service.create_booking(session, processor, student, lesson.lesson_id, start)
        with pytest.raises(ConflictError):
            await booking_service.create_booking(
                session, processor, other, lesson.lesson_id, start + timedelta(minutes=30)
            )
        back_to_back = await booking_service.create_booking(
            session, processor, other, lesson.lesson_id, start + timedelta(minutes=60)
        )

    assert back_to_back.booking.status == BookingStatus.PENDING.value


@pytest.mark.anyio
async def test_intent_failure_keeps_committed_booking(async_session_maker, processor):
    processor.fail_intent = True
    async with async_session_maker() as session:
        _, student, _, lesson = await seed_marketplace(session)
        with pytest.raises(ProcessorError):
            await booking_service.create_booking(session, processor, student, lesson.lesson_id, _future())

    async with async_session_maker() as session:
        booking = (await session.execute(select(Booking))).scalar_one()
        payment = (await session.execute(select(Payment))).scalar_one()
        assert booking.status == BookingStatus.PENDING.value
        assert payment.payment_status == PaymentStatus.PENDING.value
        assert payment.escrow_status == EscrowStatus.HELD.value
        assert payment.processor_intent_id is None


@pytest.mark.anyio
async def test_student_cancel_before_deadline_has_no_penalty(async_session_maker):
    async with async_session_maker() as session:
        _, student, _, lesson = await seed_marketplace(session)
        booking, _ = await seed_booking(session, lesson, student)

    async with async_session_maker() as session:
        cancelled = await booking_service.cancel_booking(session, student, booking.booking_id, "Sick")
        history = (await session.execute(select(CancellationHistory))).scalar_one()

    assert cancelled.status == BookingStatus.CANCELLED.value
    assert cancelled.cancelled_by == "student"
    assert cancelled.cancelled_at is not None
    assert history.cancelled_by_id == student.user_id
    assert history.penalty_amount == Decimal("0.00")
    assert history.notes == "Sick"


@pytest.mark.anyio
async def test_late_cancel_penalty_applies_to_students_only(async_session_maker):
    soon = datetime.now(tz=timezone.utc) + timedelta(hours=2)
    async with async_session_maker() as session:
        coach, student, _, lesson = await seed_marketplace(session)
        student_booking, _ = await seed_booking(session, lesson, student, scheduled_at=soon)
        coach_booking, _ = await seed_booking(session, lesson, student, scheduled_at=soon + timedelta(hours=3))

    async with async_session_maker() as session:
        await booking_service.cancel_booking(session, student, student_booking.booking_id)
        await booking_service.cancel_booking(session, coach, coach_booking.booking_id)

    async with async_session_maker() as session:
        rows = (await session.execute(select(CancellationHistory))).scalars().all()
        by_booking = {row.booking_id: row for row in rows}

    assert by_booking[student_booking.booking_id].penalty_amount == Decimal("50.00")
    assert by_booking[student_booking.booking_id].penalty_reason
    assert by_booking[coach_booking.booking_id].penalty_amount == Decimal("0.00")
    assert by_booking[coach_booking.booking_id].cancelled_by == "coach"


@pytest.mark.anyio
async def test_outsider_cannot_touch_booking(async_session_maker):
    async with async_session_maker() as session:
        _, student, _, lesson = await seed_marketplace(session)
        outsider = await seed_user(session, ROLE_STUDENT)
        booking, _ = await seed_booking(session, lesson, student)

    async with async_session_maker() as session:
        with pytest.raises(UnauthorizedError):
            await booking_service.cancel_booking(session, outsider, booking.booking_id)
        with pytest.raises(UnauthorizedError):
            await booking_service.get_booking_for_actor(session, outsider, booking.booking_id)


@pytest.mark.anyio
@pytest.mark.parametrize("terminal", [BookingStatus.COMPLETED, BookingStatus.CANCELLED])
async def test_terminal_bookings_reject_every_mutation(async_session_maker, terminal):
    async with async_session_maker() as session:
        _, student, admin, lesson = await seed_marketplace(session)
        booking, _ = await seed_booking(session, lesson, student, status=terminal)

    async with async_session_maker() as session:
        with pytest.raises(InvalidStateError):
            await booking_service.cancel_booking(session, student, booking.booking_id)
        with pytest.raises(InvalidStateError):
            await reschedule_service.request_reschedule(session, student, booking.booking_id, _future(100))
        with pytest.raises(InvalidStateError):
            await dispute_service.open_dispute(session, student, booking.booking_id, "Late coach")
        with pytest.raises(InvalidStateError):
            await booking_service.reinstate_booking(session, admin, booking.booking_id, BookingStatus.CONFIRMED)

    async with async_session_maker() as session:
        stored = await session.get(Booking, booking.booking_id)
        assert stored.status == terminal.value


@pytest.mark.parametrize(
    "current, target",
    [
        (BookingStatus.PENDING, BookingStatus.COMPLETED),
        (BookingStatus.CONFIRMED, BookingStatus.PENDING),
        (BookingStatus.COMPLETED, BookingStatus.DISPUTED),
        (BookingStatus.CANCELLED, BookingStatus.CONFIRMED),
    ],
)
def test_illegal_transitions_raise(current, target):
    with pytest.raises(InvalidStateError):
        assert_valid_booking_transition(current, target)


def test_disputed_booking_can_return_to_the_flow():
    for target in (BookingStatus.CONFIRMED, BookingStatus.COMPLETED, BookingStatus.CANCELLED):
        assert_valid_booking_transition(BookingStatus.DISPUTED, target)


@pytest.mark.anyio
async def test_confirm_completion_requires_verification_and_no_dispute(async_session_maker):
    past = datetime.now(tz=timezone.utc) - timedelta(hours=3)
    async with async_session_maker() as session:
        _, student, _, lesson = await seed_marketplace(session)
        confirmed, _ = await seed_booking(session, lesson, student, scheduled_at=past + timedelta(hours=6))
        awaiting, _ = await seed_booking(
            session, lesson, student, scheduled_at=past, status=BookingStatus.AWAITING_VERIFICATION
        )
        disputed, _ = await seed_booking(
            session,
            lesson,
            student,
            scheduled_at=past - timedelta(hours=2),
            status=BookingStatus.AWAITING_VERIFICATION,
        )
        session.add(
            Dispute(
                booking_id=disputed.booking_id,
                opened_by="student",
                opened_by_id=student.user_id,
                reason="No show",
                status=DisputeStatus.OPEN.value,
                opened_at=datetime.now(tz=timezone.utc),
            )
        )
        await session.commit()

    async with async_session_maker() as session:
        with pytest.raises(InvalidStateError):
            await booking_service.confirm_completion(session, student, confirmed.booking_id)
        with pytest.raises(InvalidStateError):
            await booking_service.confirm_completion(session, student, disputed.booking_id)
        completed = await booking_service.confirm_completion(session, student, awaiting.booking_id)

    assert completed.status == BookingStatus.COMPLETED.value
    assert completed.payout_status == PayoutStatus.PENDING.value


@pytest.mark.anyio
async def test_reinstate_after_chargeback_restores_escrow(async_session_maker):
    async with async_session_maker() as session:
        _, student, admin, lesson = await seed_marketplace(session)
        booking, payment = await seed_booking(
            session,
            lesson,
            student,
            status=BookingStatus.DISPUTED,
            escrow_status=EscrowStatus.DISPUTED,
        )
        dispute = Dispute(
            booking_id=booking.booking_id,
            opened_by="system",
            reason="Processor chargeback",
            status=DisputeStatus.OPEN.value,
            opened_at=datetime.now(tz=timezone.utc),
        )
        session.add(dispute)
        await session.commit()

    async with async_session_maker() as session:
        with pytest.raises(UnauthorizedError):
            await booking_service.reinstate_booking(session, student, booking.booking_id, BookingStatus.COMPLETED)
        with pytest.raises(InvalidStateError):
            await booking_service.reinstate_booking(session, admin, booking.booking_id, BookingStatus.COMPLETED)

    async with async_session_maker() as session:
        await dispute_service.resolve_dispute(session, admin, dispute.dispute_id, "Evidence accepted")
        reinstated = await booking_service.reinstate_booking(
            session, admin, booking.booking_id, BookingStatus.COMPLETED
        )

    assert reinstated.status == BookingStatus.COMPLETED.value
    assert reinstated.payout_status == PayoutStatus.PENDING.value
    async with async_session_maker() as session:
        stored = await session.get(Payment, payment.payment_id)
        assert stored.escrow_status == EscrowStatus.HELD.value


@pytest.mark.anyio
async def test_reinstate_as_cancelled_records_admin_cancellation(async_session_maker):
    async with async_session_maker() as session:
        _, student, admin, lesson = await seed_marketplace(session)
        booking, payment = await seed_booking(
            session, lesson, student, status=BookingStatus.DISPUTED, escrow_status=EscrowStatus.DISPUTED
        )

    async with async_session_maker() as session:
        reinstated = await booking_service.reinstate_booking(
            session, admin, booking.booking_id, BookingStatus.CANCELLED
        )
        history = (await session.execute(select(CancellationHistory))).scalar_one()
        stored = await session.get(Payment, payment.payment_id)

    assert reinstated.status == BookingStatus.CANCELLED.value
    assert reinstated.cancelled_by == "admin"
    assert history.cancelled_by_id == admin.user_id
    assert stored.escrow_status == EscrowStatus.DISPUTED.value
