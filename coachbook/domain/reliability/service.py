from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from coachbook.domain.bookings.db_models import Booking, CancellationHistory, RescheduleHistory
from coachbook.domain.bookings.statuses import TERMINAL_STATUSES, ActorRole
from coachbook.domain.clock import utc_now
from coachbook.domain.reliability.db_models import UserReliability
from coachbook.domain.users.db_models import ROLE_COACH, ROLE_STUDENT, User

logger = logging.getLogger(__name__)

MAX_SCORE = Decimal("100.00")
RESCHEDULE_WEIGHT = Decimal(10)
CANCEL_WEIGHT = Decimal(20)
COACH_CANCEL_WEIGHT = Decimal(30)


@dataclass(frozen=True)
class ReliabilityMetrics:
    total_bookings: int = 0
    total_reschedules: int = 0
    paid_reschedules: int = 0
    late_cancels: int = 0
    no_shows: int = 0
    coach_cancels: int = 0


def score(metrics: ReliabilityMetrics) -> Decimal:
    """Reliability in [0, 100]; users without finished bookings keep full trust."""
    if metrics.total_bookings <= 0:
        return MAX_SCORE
    total = Decimal(metrics.total_bookings)
    value = MAX_SCORE
    value -= Decimal(metrics.total_reschedules) / total * RESCHEDULE_WEIGHT
    value -= Decimal(metrics.late_cancels + metrics.no_shows) / total * CANCEL_WEIGHT
    value -= Decimal(metrics.coach_cancels) / total * COACH_CANCEL_WEIGHT
    value = max(Decimal(0), min(MAX_SCORE, value))
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


async def _count(session: AsyncSession, stmt) -> int:
    result = await session.execute(stmt)
    return int(result.scalar_one() or 0)


async def collect_metrics(session: AsyncSession, user_id: str) -> ReliabilityMetrics:
    total_bookings = await _count(
        session,
        select(func.count())
        .select_from(Booking)
        .where(
            or_(Booking.coach_id == user_id, Booking.primary_student_id == user_id),
            Booking.status.in_([status.value for status in TERMINAL_STATUSES]),
            Booking.deleted_at.is_(None),
        ),
    )
    reschedules = select(func.count()).select_from(RescheduleHistory).where(
        RescheduleHistory.requested_by_id == user_id
    )
    total_reschedules = await _count(session, reschedules)
    paid_reschedules = await _count(session, reschedules.where(RescheduleHistory.paid_reschedule.is_(True)))

    cancellations = select(func.count()).select_from(CancellationHistory).where(
        CancellationHistory.cancelled_by_id == user_id
    )
    coach_cancels = await _count(
        session, cancellations.where(CancellationHistory.cancelled_by == ActorRole.COACH.value)
    )
    # a cancellation after the start is a no-show only, never also a late cancel
    timed = cancellations.join(Booking, Booking.booking_id == CancellationHistory.booking_id)
    no_shows = await _count(session, timed.where(CancellationHistory.cancelled_at >= Booking.scheduled_at))
    late_cancels = await _count(
        session,
        timed.where(
            CancellationHistory.penalty_amount > 0,
            CancellationHistory.cancelled_at < Booking.scheduled_at,
        ),
    )
    return ReliabilityMetrics(
        total_bookings=total_bookings,
        total_reschedules=total_reschedules,
        paid_reschedules=paid_reschedules,
        late_cancels=late_cancels,
        no_shows=no_shows,
        coach_cancels=coach_cancels,
    )


async def recompute_user_reliability(
    session: AsyncSession, user_id: str, now: datetime | None = None
) -> UserReliability:
    metrics = await collect_metrics(session, user_id)
    record = await session.get(UserReliability, user_id)
    if record is None:
        record = UserReliability(user_id=user_id)
        session.add(record)
    record.total_bookings = metrics.total_bookings
    record.total_reschedules = metrics.total_reschedules
    record.paid_reschedules = metrics.paid_reschedules
    record.late_cancels = metrics.late_cancels
    record.no_shows = metrics.no_shows
    record.coach_cancels = metrics.coach_cancels
    record.reliability_score = score(metrics)
    record.last_calculated_at = now or utc_now()
    await session.commit()
    await session.refresh(record)
    logger.info(
        "reliability_recomputed",
        extra={"extra": {"user_id": user_id, "score": str(record.reliability_score)}},
    )
    return record


async def scored_user_ids(session: AsyncSession) -> list[str]:
    result = await session.execute(
        select(User.user_id)
        .where(User.is_active.is_(True), User.role.in_([ROLE_STUDENT, ROLE_COACH]))
        .order_by(User.user_id)
    )
    return list(result.scalars().all())
