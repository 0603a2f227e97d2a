from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from coachbook.domain.bookings.db_models import Booking
from coachbook.domain.bookings.statuses import BookingStatus, PayoutStatus
from coachbook.domain.disputes.db_models import Dispute, DisputeStatus
from coachbook.domain.notifications.db_models import REMINDER_1H, REMINDER_24H, REMINDER_48H, Notification
from coachbook.domain.payments.db_models import Payment, Payout
from coachbook.domain.payments.statuses import EscrowStatus, PaymentStatus, PayoutRecordStatus
from coachbook.domain.reliability.db_models import UserReliability
from coachbook.jobs import sweeps
from coachbook.jobs.scheduler import ScheduledTask, Scheduler
from tests.conftest import seed_booking, seed_marketplace


async def _open_dispute(session, booking, student) -> None:
    session.add(
        Dispute(
            booking_id=booking.booking_id,
            opened_by="student",
            opened_by_id=student.user_id,
            reason="Coach left early",
            status=DisputeStatus.OPEN.value,
            opened_at=datetime.now(tz=timezone.utc),
        )
    )
    await session.commit()


@pytest.mark.anyio
async def test_auto_confirm_completes_bookings_past_the_window(async_session_maker):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        _, student, _, lesson = await seed_marketplace(session)
        booking, _ = await seed_booking(
            session,
            lesson,
            student,
            scheduled_at=now - timedelta(hours=30),
            status=BookingStatus.AWAITING_VERIFICATION,
            payout_status=PayoutStatus.AWAITING_VERIFICATION,
        )

    result = await sweeps.run_auto_confirm_sweep(async_session_maker, now)

    assert result == {"selected": 1, "processed": 1, "skipped": 0, "failed": 0}
    async with async_session_maker() as session:
        stored = await session.get(Booking, booking.booking_id)
        assert stored.status == BookingStatus.COMPLETED.value
        assert stored.payout_status == PayoutStatus.PENDING.value


@pytest.mark.anyio
async def test_auto_confirm_moves_finished_lessons_to_verification(async_session_maker):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        _, student, _, lesson = await seed_marketplace(session)
        finished, _ = await seed_booking(session, lesson, student, scheduled_at=now - timedelta(hours=2))
        running, _ = await seed_booking(session, lesson, student, scheduled_at=now - timedelta(minutes=30))
        recent, _ = await seed_booking(
            session,
            lesson,
            student,
            scheduled_at=now - timedelta(hours=5),
            status=BookingStatus.AWAITING_VERIFICATION,
        )

    result = await sweeps.run_auto_confirm_sweep(async_session_maker, now)

    assert result["processed"] == 1
    assert result["skipped"] == 1
    async with async_session_maker() as session:
        assert (await session.get(Booking, finished.booking_id)).status == BookingStatus.AWAITING_VERIFICATION.value
        assert (await session.get(Booking, running.booking_id)).status == BookingStatus.CONFIRMED.value
        assert (await session.get(Booking, recent.booking_id)).status == BookingStatus.AWAITING_VERIFICATION.value


@pytest.mark.anyio
async def test_auto_confirm_skips_disputed_bookings(async_session_maker):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        _, student, _, lesson = await seed_marketplace(session)
        overdue, _ = await seed_booking(
            session,
            lesson,
            student,
            scheduled_at=now - timedelta(hours=30),
            status=BookingStatus.AWAITING_VERIFICATION,
        )
        ended, _ = await seed_booking(session, lesson, student, scheduled_at=now - timedelta(hours=3))
        await _open_dispute(session, overdue, student)
        await _open_dispute(session, ended, student)

    result = await sweeps.run_auto_confirm_sweep(async_session_maker, now)

    assert result["processed"] == 0
    assert result["skipped"] == 2
    async with async_session_maker() as session:
        assert (await session.get(Booking, overdue.booking_id)).status == BookingStatus.AWAITING_VERIFICATION.value
        assert (await session.get(Booking, ended.booking_id)).status == BookingStatus.CONFIRMED.value


@pytest.mark.anyio
async def test_payout_sweep_without_account_creates_pending_payout(async_session_maker, processor):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        _, student, _, lesson = await seed_marketplace(session)
        booking, payment = await seed_booking(
            session,
            lesson,
            student,
            scheduled_at=now - timedelta(days=2),
            status=BookingStatus.COMPLETED,
            payout_status=PayoutStatus.PENDING,
        )

    result = await sweeps.run_payout_sweep(async_session_maker, processor, now)
    assert result["processed"] == 1

    async with async_session_maker() as session:
        payouts = (await session.execute(select(Payout))).scalars().all()
        stored_payment = await session.get(Payment, payment.payment_id)
        stored_booking = await session.get(Booking, booking.booking_id)
        assert len(payouts) == 1
        assert payouts[0].amount == Decimal("92.00")
        assert payouts[0].status == PayoutRecordStatus.PENDING.value
        assert stored_payment.escrow_status == EscrowStatus.HELD.value
        assert stored_booking.payout_status == PayoutStatus.PROCESSING.value
    assert processor.calls_named("transfer_to_payout_account") == []

    again = await sweeps.run_payout_sweep(async_session_maker, processor, now)
    assert again["selected"] == 0
    async with async_session_maker() as session:
        assert await session.scalar(select(func.count()).select_from(Payout)) == 1


@pytest.mark.anyio
async def test_payout_sweep_releases_to_connected_account(async_session_maker, processor):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        _, student, _, lesson = await seed_marketplace(session, payout_account_id="acct_live")
        _, payment = await seed_booking(
            session,
            lesson,
            student,
            scheduled_at=now - timedelta(days=2),
            status=BookingStatus.COMPLETED,
            payout_status=PayoutStatus.PENDING,
        )

    result = await sweeps.run_payout_sweep(async_session_maker, processor, now)

    assert result["processed"] == 1
    async with async_session_maker() as session:
        stored = await session.get(Payment, payment.payment_id)
        payout = (await session.execute(select(Payout))).scalar_one()
        assert stored.escrow_status == EscrowStatus.RELEASED.value
        assert payout.status == PayoutRecordStatus.PAID.value
    assert processor.calls_named("transfer_to_payout_account")[0]["account_id"] == "acct_live"


@pytest.mark.anyio
async def test_payout_sweep_holds_disputed_and_unverified_bookings(async_session_maker, processor):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        _, student, _, lesson = await seed_marketplace(session, payout_account_id="acct_live")
        disputed, _ = await seed_booking(
            session,
            lesson,
            student,
            scheduled_at=now - timedelta(days=2),
            status=BookingStatus.COMPLETED,
            payout_status=PayoutStatus.PENDING,
        )
        await _open_dispute(session, disputed, student)
        await seed_booking(
            session,
            lesson,
            student,
            scheduled_at=now - timedelta(hours=5),
            status=BookingStatus.AWAITING_VERIFICATION,
            payout_status=PayoutStatus.AWAITING_VERIFICATION,
        )
        await seed_booking(
            session,
            lesson,
            student,
            scheduled_at=now + timedelta(days=1),
            status=BookingStatus.CONFIRMED,
        )
        await seed_booking(
            session,
            lesson,
            student,
            scheduled_at=now - timedelta(days=3),
            status=BookingStatus.COMPLETED,
            payment_status=PaymentStatus.PENDING,
        )

    result = await sweeps.run_payout_sweep(async_session_maker, processor, now)

    assert result == {"selected": 2, "processed": 0, "skipped": 2, "failed": 0}
    async with async_session_maker() as session:
        assert await session.scalar(select(func.count()).select_from(Payout)) == 0
        released = await session.scalar(
            select(func.count()).select_from(Payment).where(Payment.escrow_status == EscrowStatus.RELEASED.value)
        )
        assert released == 0
    assert processor.calls_named("transfer_to_payout_account") == []


@pytest.mark.anyio
async def test_payout_sweep_counts_transfer_failures_and_retries(async_session_maker, processor):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        _, student, _, lesson = await seed_marketplace(session, payout_account_id="acct_live")
        booking, payment = await seed_booking(
            session,
            lesson,
            student,
            scheduled_at=now - timedelta(days=2),
            status=BookingStatus.COMPLETED,
            payout_status=PayoutStatus.PENDING,
        )

    processor.fail_transfer = True
    failed = await sweeps.run_payout_sweep(async_session_maker, processor, now)
    assert failed["failed"] == 1

    async with async_session_maker() as session:
        stored_booking = await session.get(Booking, booking.booking_id)
        stored_payment = await session.get(Payment, payment.payment_id)
        assert stored_booking.payout_status == PayoutStatus.PENDING.value
        assert stored_payment.escrow_status == EscrowStatus.HELD.value

    processor.fail_transfer = False
    retried = await sweeps.run_payout_sweep(async_session_maker, processor, now)
    assert retried["processed"] == 1
    async with async_session_maker() as session:
        payout = (await session.execute(select(Payout))).scalar_one()
        assert payout.status == PayoutRecordStatus.PAID.value
        assert payout.attempts == 2


@pytest.mark.anyio
async def test_reminders_are_sent_once_per_threshold(async_session_maker):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        coach, student, _, lesson = await seed_marketplace(session)
        booking, _ = await seed_booking(
            session, lesson, student, scheduled_at=now + timedelta(hours=24, seconds=10)
        )
        await seed_booking(
            session,
            lesson,
            student,
            scheduled_at=now + timedelta(hours=1, seconds=5),
            status=BookingStatus.PENDING,
        )

    first = await sweeps.run_reminder_sweep(async_session_maker, now, window_seconds=60)
    second = await sweeps.run_reminder_sweep(async_session_maker, now, window_seconds=60)

    assert first["processed"] == 1
    assert second["processed"] == 0
    assert second["skipped"] == 1
    async with async_session_maker() as session:
        rows = (await session.execute(select(Notification))).scalars().all()
    assert {row.user_id for row in rows} == {coach.user_id, student.user_id}
    assert {row.notification_type for row in rows} == {REMINDER_24H}
    assert all(row.booking_id == booking.booking_id for row in rows)
    assert REMINDER_1H not in {row.notification_type for row in rows}


@pytest.mark.anyio
async def test_late_reminder_tick_covers_the_gap_since_the_previous_run(async_session_maker):
    t0 = datetime.now(tz=timezone.utc).replace(microsecond=0)
    async with async_session_maker() as session:
        _, student, _, lesson = await seed_marketplace(session)
        booking, _ = await seed_booking(
            session, lesson, student, scheduled_at=t0 + timedelta(hours=48, seconds=60.5)
        )

    scheduler = Scheduler(
        [
            ScheduledTask(
                name="reminders",
                run=sweeps.ReminderSweep(async_session_maker, window_seconds=60),
                interval=timedelta(minutes=1),
            )
        ]
    )
    first = await scheduler.tick(t0)
    second = await scheduler.tick(t0 + timedelta(seconds=61))

    assert first["reminders"]["selected"] == 0
    assert second["reminders"]["processed"] == 1
    async with async_session_maker() as session:
        rows = (await session.execute(select(Notification))).scalars().all()
    assert len(rows) == 2
    assert {row.notification_type for row in rows} == {REMINDER_48H}
    assert all(row.booking_id == booking.booking_id for row in rows)

@pytest.mark.anyio
async def test_reliability_sweep_scores_every_participant(async_session_maker):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        coach, student, _, lesson = await seed_marketplace(session)
        await seed_booking(session, lesson, student, status=BookingStatus.COMPLETED)

    result = await sweeps.run_reliability_sweep(async_session_maker, now)

    assert result == {"selected": 2, "processed": 2, "skipped": 0, "failed": 0}
    async with async_session_maker() as session:
        records = (await session.execute(select(UserReliability))).scalars().all()
    assert {record.user_id for record in records} == {coach.user_id, student.user_id}
    assert all(record.reliability_score == Decimal("100.00") for record in records)
    assert all(record.total_bookings == 1 for record in records)
