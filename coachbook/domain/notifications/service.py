from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from coachbook.domain.bookings.db_models import Booking
from coachbook.domain.clock import ensure_utc
from coachbook.domain.notifications.db_models import (
    REMINDER_1H,
    REMINDER_24H,
    REMINDER_48H,
    Notification,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReminderThreshold:
    notification_type: str
    label: str
    lead_time: timedelta


REMINDER_THRESHOLDS = (
    ReminderThreshold(REMINDER_48H, "48h", timedelta(hours=48)),
    ReminderThreshold(REMINDER_24H, "24h", timedelta(hours=24)),
    ReminderThreshold(REMINDER_1H, "1h", timedelta(hours=1)),
)


async def _already_sent(session: AsyncSession, booking_id: str, user_id: str, notification_type: str) -> bool:
    stmt = select(Notification.notification_id).where(
        and_(
            Notification.booking_id == booking_id,
            Notification.user_id == user_id,
            Notification.notification_type == notification_type,
        )
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def emit_lesson_reminders(
    session: AsyncSession, booking: Booking, threshold: ReminderThreshold
) -> list[Notification]:
    """Record one reminder per participant; repeats for the same threshold are skipped."""
    recipients = [booking.coach_id]
    if booking.primary_student_id:
        recipients.append(booking.primary_student_id)

    created: list[Notification] = []
    for user_id in recipients:
        if await _already_sent(session, booking.booking_id, user_id, threshold.notification_type):
            continue
        notification = Notification(
            user_id=user_id,
            booking_id=booking.booking_id,
            notification_type=threshold.notification_type,
            channel="push",
            payload={
                "booking_id": booking.booking_id,
                "threshold": threshold.label,
                "scheduled_at": ensure_utc(booking.scheduled_at).isoformat(),
            },
        )
        session.add(notification)
        created.append(notification)
    if created:
        await session.commit()
        logger.info(
            "lesson_reminder_recorded",
            extra={
                "extra": {
                    "booking_id": booking.booking_id,
                    "threshold": threshold.label,
                    "recipients": len(created),
                }
            },
        )
    return created


async def list_notifications(session: AsyncSession, booking_id: str) -> list[Notification]:
    result = await session.execute(
        select(Notification).where(Notification.booking_id == booking_id).order_by(Notification.created_at)
    )
    return list(result.scalars().all())
