from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from coachbook.domain.bookings.service import get_booking
from coachbook.domain.bookings.statuses import BookingStatus
from coachbook.domain.errors import ConflictError, InvalidStateError, UnauthorizedError, ValidationError
from coachbook.domain.reviews.db_models import Review
from coachbook.domain.users.db_models import ROLE_ADMIN, CoachProfile, User

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5


async def recompute_coach_rating(session: AsyncSession, coach_id: str) -> CoachProfile:
    """Full recomputation over every review naming the coach."""
    result = await session.execute(select(Review.rating).where(Review.target_user_id == coach_id))
    ratings = list(result.scalars().all())
    profile = await session.get(CoachProfile, coach_id)
    if profile is None:
        profile = CoachProfile(user_id=coach_id)
        session.add(profile)
    if ratings:
        mean = Decimal(sum(ratings)) / Decimal(len(ratings))
        profile.rating_average = mean.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    else:
        profile.rating_average = Decimal("0.00")
    profile.rating_count = len(ratings)
    return profile


async def create_review(
    session: AsyncSession,
    actor: User,
    booking_id: str,
    rating: int,
    comment: str | None = None,
    *,
    is_public: bool = True,
) -> Review:
    if rating < MIN_RATING or rating > MAX_RATING:
        raise ValidationError(
            "Rating must be between 1 and 5",
            errors=[{"field": "rating", "message": "out of range"}],
        )
    booking = await get_booking(session, booking_id)
    if actor.role != ROLE_ADMIN and actor.user_id != booking.primary_student_id:
        raise UnauthorizedError("Only the booking's student can review this lesson")
    if booking.status != BookingStatus.COMPLETED.value:
        raise InvalidStateError("Only completed bookings can be reviewed")

    existing = await session.execute(
        select(func.count())
        .select_from(Review)
        .where(Review.booking_id == booking.booking_id, Review.reviewer_id == actor.user_id)
    )
    if existing.scalar_one() > 0:
        raise ConflictError("Booking already reviewed")

    review = Review(
        booking_id=booking.booking_id,
        reviewer_id=actor.user_id,
        target_user_id=booking.coach_id,
        rating=rating,
        comment=comment,
        is_public=is_public,
    )
    session.add(review)
    await session.flush()
    profile = await recompute_coach_rating(session, booking.coach_id)
    await session.commit()
    await session.refresh(review)
    logger.info(
        "review_created",
        extra={
            "extra": {
                "review_id": review.review_id,
                "booking_id": booking.booking_id,
                "rating_average": str(profile.rating_average),
                "rating_count": profile.rating_count,
            }
        },
    )
    return review
