from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from coachbook.domain.bookings import service as booking_service
from coachbook.domain.bookings.db_models import Booking
from coachbook.domain.bookings.statuses import (
    PAYOUT_OPEN_STATUSES,
    RELEASABLE_STATUSES,
    REMINDER_STATUSES,
    BookingStatus,
    PayoutStatus,
)
from coachbook.domain.clock import ensure_utc
from coachbook.domain.notifications.service import REMINDER_THRESHOLDS, emit_lesson_reminders
from coachbook.domain.payments import service as payment_service
from coachbook.domain.payments.db_models import Payment
from coachbook.domain.payments.statuses import EscrowStatus, PaymentStatus
from coachbook.domain.reliability import service as reliability_service
from coachbook.domain.users.db_models import CoachProfile
from coachbook.infra.processor import PaymentProcessor
from coachbook.settings import settings

logger = logging.getLogger(__name__)


def _new_result(selected: int = 0) -> dict[str, int]:
    return {"selected": selected, "processed": 0, "skipped": 0, "failed": 0}


def _record_failure(job: str, record_id: str, exc: Exception, result: dict[str, int]) -> None:
    result["failed"] += 1
    logger.warning(
        "sweep_record_failed",
        extra={"extra": {"job": job, "record_id": record_id, "reason": type(exc).__name__}},
    )


def _values(statuses) -> list[str]:
    return [status.value for status in statuses]


async def run_reminder_sweep(
    session_factory: async_sessionmaker,
    now: datetime,
    window_seconds: int | None = None,
    *,
    since: datetime | None = None,
) -> dict[str, int]:
    """Scan [since + lead, now + lead + window) per threshold; repeats are deduped downstream."""
    window = timedelta(seconds=window_seconds or settings.reminder_window_seconds)
    scan_from = min(since, now) if since is not None else now
    candidates = []
    async with session_factory() as session:
        for threshold in REMINDER_THRESHOLDS:
            rows = await session.execute(
                select(Booking.booking_id).where(
                    Booking.status.in_(_values(REMINDER_STATUSES)),
                    Booking.deleted_at.is_(None),
                    Booking.scheduled_at >= scan_from + threshold.lead_time,
                    Booking.scheduled_at < now + threshold.lead_time + window,
                )
            )
            candidates.extend((booking_id, threshold) for booking_id in rows.scalars().all())

    result = _new_result(len(candidates))
    for booking_id, threshold in candidates:
        try:
            async with session_factory() as session:
                booking = await session.get(Booking, booking_id)
                if booking is None or BookingStatus(booking.status) not in REMINDER_STATUSES:
                    result["skipped"] += 1
                    continue
                created = await emit_lesson_reminders(session, booking, threshold)
            result["processed" if created else "skipped"] += 1
        except Exception as exc:  # noqa: BLE001
            _record_failure("reminders", booking_id, exc, result)
    return result


class ReminderSweep:
    """Reminder runner whose scan starts where the previous run left off."""

    def __init__(self, session_factory: async_sessionmaker, window_seconds: int | None = None) -> None:
        self.session_factory = session_factory
        self.window_seconds = window_seconds
        self.last_run_at: datetime | None = None

    async def __call__(self, now: datetime) -> dict[str, int]:
        result = await run_reminder_sweep(
            self.session_factory, now, self.window_seconds, since=self.last_run_at
        )
        self.last_run_at = now
        return result


async def run_auto_confirm_sweep(session_factory: async_sessionmaker, now: datetime) -> dict[str, int]:
    """Advance finished lessons to verification, then complete ones past the confirmation window."""
    cutoff = now - timedelta(hours=settings.auto_confirm_after_hours)
    async with session_factory() as session:
        ended = await session.execute(
            select(Booking.booking_id).where(
                Booking.status == BookingStatus.CONFIRMED.value,
                Booking.deleted_at.is_(None),
                Booking.scheduled_at <= now,
            )
        )
        ended_ids = list(ended.scalars().all())
        overdue = await session.execute(
            select(Booking.booking_id).where(
                Booking.status == BookingStatus.AWAITING_VERIFICATION.value,
                Booking.deleted_at.is_(None),
                Booking.scheduled_at <= cutoff,
            )
        )
        overdue_ids = list(overdue.scalars().all())

    result = _new_result(len(ended_ids) + len(overdue_ids))
    for booking_id in ended_ids:
        try:
            async with session_factory() as session:
                booking = await session.get(Booking, booking_id)
                if (
                    booking is None
                    or booking.status != BookingStatus.CONFIRMED.value
                    or booking_service.lesson_end(booking) > now
                    or await booking_service.has_active_dispute(session, booking_id)
                ):
                    result["skipped"] += 1
                    continue
                await booking_service.mark_awaiting_verification(session, booking)
            result["processed"] += 1
        except Exception as exc:  # noqa: BLE001
            _record_failure("auto-confirm", booking_id, exc, result)

    for booking_id in overdue_ids:
        try:
            async with session_factory() as session:
                booking = await session.get(Booking, booking_id)
                if booking is None or booking.status != BookingStatus.AWAITING_VERIFICATION.value:
                    result["skipped"] += 1
                    continue
                if await booking_service.has_active_dispute(session, booking_id):
                    result["skipped"] += 1
                    continue
                await booking_service.complete_booking(session, booking)
            result["processed"] += 1
        except Exception as exc:  # noqa: BLE001
            _record_failure("auto-confirm", booking_id, exc, result)
    return result


async def _payout_account_for(session, coach_id: str) -> str | None:
    profile = await session.get(CoachProfile, coach_id)
    return profile.payout_account_id if profile else None


async def run_payout_sweep(
    session_factory: async_sessionmaker,
    processor: PaymentProcessor,
    now: datetime,
) -> dict[str, int]:
    verification_cutoff = now - timedelta(hours=settings.auto_confirm_after_hours)
    async with session_factory() as session:
        rows = await session.execute(
            select(Payment.payment_id)
            .join(Booking, Booking.booking_id == Payment.booking_id)
            .where(
                Payment.escrow_status == EscrowStatus.HELD.value,
                Payment.payment_status == PaymentStatus.CAPTURED.value,
                Booking.status.in_(_values(RELEASABLE_STATUSES)),
                Booking.payout_status.in_(_values(PAYOUT_OPEN_STATUSES)),
                Booking.deleted_at.is_(None),
            )
        )
        payment_ids = list(rows.scalars().all())

    result = _new_result(len(payment_ids))
    for payment_id in payment_ids:
        try:
            async with session_factory() as session:
                payment = await session.get(Payment, payment_id)
                booking = await session.get(Booking, payment.booking_id) if payment else None
                if booking is None or await booking_service.has_active_dispute(session, booking.booking_id):
                    result["skipped"] += 1
                    continue
                if (
                    booking.status == BookingStatus.AWAITING_VERIFICATION.value
                    and ensure_utc(booking.scheduled_at) > verification_cutoff
                ):
                    result["skipped"] += 1
                    continue
                account_id = await _payout_account_for(session, booking.coach_id)
                await payment_service.release_escrow(session, processor, payment_id, account_id)
                booking = await session.get(Booking, payment.booking_id)
                booking.payout_status = PayoutStatus.PROCESSING.value
                await session.commit()
            result["processed"] += 1
        except Exception as exc:  # noqa: BLE001
            _record_failure("payout-release", payment_id, exc, result)
    return result


async def run_reliability_sweep(session_factory: async_sessionmaker, now: datetime) -> dict[str, int]:
    async with session_factory() as session:
        user_ids = await reliability_service.scored_user_ids(session)

    result = _new_result(len(user_ids))
    for user_id in user_ids:
        try:
            async with session_factory() as session:
                await reliability_service.recompute_user_reliability(session, user_id, now=now)
            result["processed"] += 1
        except Exception as exc:  # noqa: BLE001
            _record_failure("reliability", user_id, exc, result)
    return result
