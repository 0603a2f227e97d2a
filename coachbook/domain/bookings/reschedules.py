from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coachbook.domain.bookings.db_models import Booking, RescheduleHistory
from coachbook.domain.bookings.service import (
    actor_role_for,
    get_booking,
    has_overlap,
    reschedule_deadline_for,
)
from coachbook.domain.bookings.statuses import ActorRole, ApprovalStatus, is_terminal
from coachbook.domain.clock import ensure_utc, utc_now
from coachbook.domain.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from coachbook.domain.users.db_models import User
from coachbook.infra.metrics import metrics

logger = logging.getLogger(__name__)


def _apply_time(booking: Booking, scheduled_at: datetime) -> None:
    booking.scheduled_at = scheduled_at
    booking.reschedule_deadline = reschedule_deadline_for(scheduled_at)


async def _get_reschedule(session: AsyncSession, reschedule_id: str) -> RescheduleHistory:
    record = await session.get(RescheduleHistory, reschedule_id)
    if record is None:
        raise NotFoundError("Reschedule request not found")
    return record


async def request_reschedule(
    session: AsyncSession,
    actor: User,
    booking_id: str,
    new_scheduled_at: datetime,
    *,
    paid_reschedule: bool = False,
    reason: str | None = None,
) -> RescheduleHistory:
    """Apply a new lesson time right away and log it for approval.

    Free reschedules count against ``reschedule_limit``; once it is spent the
    caller must pay, which bumps ``extra_paid_reschedules`` instead.
    """
    booking = await get_booking(session, booking_id)
    requested_by = actor_role_for(booking, actor)
    if is_terminal(booking.status):
        raise InvalidStateError(f"Cannot reschedule a {booking.status} booking")

    new_time = ensure_utc(new_scheduled_at)
    if new_time <= utc_now():
        raise ValidationError(
            "Cannot reschedule to the past",
            errors=[{"field": "new_scheduled_at", "message": "must be in the future"}],
        )
    if not paid_reschedule and booking.reschedule_count >= booking.reschedule_limit:
        raise InvalidStateError("Free reschedule limit reached; a paid reschedule is required")
    new_end = new_time + timedelta(minutes=booking.duration_minutes)
    if await has_overlap(session, booking.lesson_id, new_time, new_end, exclude_booking_id=booking.booking_id):
        raise ConflictError("Lesson is already booked for an overlapping time")

    now = utc_now()
    auto_approved = requested_by == ActorRole.ADMIN
    record = RescheduleHistory(
        booking_id=booking.booking_id,
        requested_by=requested_by.value,
        requested_by_id=actor.user_id,
        old_scheduled_at=ensure_utc(booking.scheduled_at),
        new_scheduled_at=new_time,
        approval_status=(ApprovalStatus.AUTO_APPROVED if auto_approved else ApprovalStatus.PENDING).value,
        approved_by=actor.user_id if auto_approved else None,
        approved_at=now if auto_approved else None,
        reason=reason,
        paid_reschedule=paid_reschedule,
        requested_at=now,
    )
    session.add(record)

    if paid_reschedule:
        booking.extra_paid_reschedules += 1
    else:
        booking.reschedule_count += 1
    _apply_time(booking, new_time)

    await session.commit()
    await session.refresh(record)
    logger.info(
        "reschedule_requested",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "reschedule_id": record.reschedule_id,
                "requested_by": requested_by.value,
                "paid": paid_reschedule,
            }
        },
    )
    metrics.record_booking("rescheduled")
    return record


async def approve_reschedule(session: AsyncSession, actor: User, reschedule_id: str) -> RescheduleHistory:
    record = await _get_reschedule(session, reschedule_id)
    if record.approval_status != ApprovalStatus.PENDING.value:
        raise InvalidStateError(f"Reschedule already {record.approval_status}")
    booking = await get_booking(session, record.booking_id)
    actor_role_for(booking, actor)
    if is_terminal(booking.status):
        raise InvalidStateError(f"Cannot reschedule a {booking.status} booking")

    record.approval_status = ApprovalStatus.APPROVED.value
    record.approved_by = actor.user_id
    record.approved_at = utc_now()
    _apply_time(booking, ensure_utc(record.new_scheduled_at))

    await session.commit()
    await session.refresh(record)
    logger.info(
        "reschedule_approved",
        extra={"extra": {"booking_id": booking.booking_id, "reschedule_id": record.reschedule_id}},
    )
    return record


async def reject_reschedule(
    session: AsyncSession,
    actor: User,
    reschedule_id: str,
    reason: str | None = None,
) -> RescheduleHistory:
    record = await _get_reschedule(session, reschedule_id)
    if record.approval_status != ApprovalStatus.PENDING.value:
        raise InvalidStateError(f"Reschedule already {record.approval_status}")
    booking = await get_booking(session, record.booking_id)
    actor_role_for(booking, actor)

    record.approval_status = ApprovalStatus.REJECTED.value
    record.approved_by = actor.user_id
    record.approved_at = utc_now()
    if reason:
        record.reason = f"{record.reason}\nRejected: {reason}" if record.reason else f"Rejected: {reason}"

    latest = await session.execute(
        select(RescheduleHistory.reschedule_id)
        .where(RescheduleHistory.booking_id == booking.booking_id)
        .order_by(RescheduleHistory.requested_at.desc())
        .limit(1)
    )
    restored = False
    if (
        latest.scalar_one_or_none() == record.reschedule_id
        and not is_terminal(booking.status)
        and ensure_utc(booking.scheduled_at) == ensure_utc(record.new_scheduled_at)
    ):
        _apply_time(booking, ensure_utc(record.old_scheduled_at))
        restored = True

    await session.commit()
    await session.refresh(record)
    logger.info(
        "reschedule_rejected",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "reschedule_id": record.reschedule_id,
                "restored": restored,
            }
        },
    )
    return record


async def list_reschedules(session: AsyncSession, booking_id: str) -> list[RescheduleHistory]:
    result = await session.execute(
        select(RescheduleHistory)
        .where(RescheduleHistory.booking_id == booking_id)
        .order_by(RescheduleHistory.requested_at.desc())
    )
    return list(result.scalars().all())
