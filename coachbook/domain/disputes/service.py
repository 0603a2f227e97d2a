from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from coachbook.domain.bookings.service import actor_role_for, get_booking, has_active_dispute
from coachbook.domain.bookings.statuses import is_terminal
from coachbook.domain.clock import utc_now
from coachbook.domain.disputes.db_models import ACTIVE_DISPUTE_STATUSES, Dispute, DisputeStatus
from coachbook.domain.errors import ConflictError, InvalidStateError, NotFoundError, UnauthorizedError
from coachbook.domain.users.db_models import ROLE_ADMIN, User

logger = logging.getLogger(__name__)


async def get_dispute(session: AsyncSession, dispute_id: str) -> Dispute:
    dispute = await session.get(Dispute, dispute_id)
    if dispute is None:
        raise NotFoundError("Dispute not found")
    return dispute


def _ensure_admin(actor: User) -> None:
    if actor.role != ROLE_ADMIN:
        raise UnauthorizedError("Only admins can act on disputes")


def _ensure_state(dispute: Dispute, allowed: frozenset[DisputeStatus]) -> None:
    if DisputeStatus(dispute.status) not in allowed:
        raise InvalidStateError(f"Invalid dispute state transition from {dispute.status}")


async def open_dispute(session: AsyncSession, actor: User, booking_id: str, reason: str) -> Dispute:
    booking = await get_booking(session, booking_id)
    opened_by = actor_role_for(booking, actor)
    if is_terminal(booking.status):
        raise InvalidStateError(f"Cannot dispute a {booking.status} booking")
    if await has_active_dispute(session, booking.booking_id):
        raise ConflictError("Booking already has an active dispute")

    dispute = Dispute(
        booking_id=booking.booking_id,
        opened_by=opened_by.value,
        opened_by_id=actor.user_id,
        reason=reason,
        status=DisputeStatus.OPEN.value,
        opened_at=utc_now(),
    )
    session.add(dispute)
    await session.commit()
    await session.refresh(dispute)
    logger.info(
        "dispute_opened",
        extra={
            "extra": {
                "dispute_id": dispute.dispute_id,
                "booking_id": booking.booking_id,
                "opened_by": opened_by.value,
            }
        },
    )
    return dispute


async def mark_under_review(session: AsyncSession, actor: User, dispute_id: str) -> Dispute:
    _ensure_admin(actor)
    dispute = await get_dispute(session, dispute_id)
    _ensure_state(dispute, frozenset({DisputeStatus.OPEN}))
    dispute.status = DisputeStatus.UNDER_REVIEW.value
    dispute.admin_id = actor.user_id
    await session.commit()
    await session.refresh(dispute)
    return dispute


async def _close(
    session: AsyncSession,
    actor: User,
    dispute_id: str,
    status: DisputeStatus,
    notes: str | None,
) -> Dispute:
    _ensure_admin(actor)
    dispute = await get_dispute(session, dispute_id)
    _ensure_state(dispute, ACTIVE_DISPUTE_STATUSES)
    dispute.status = status.value
    dispute.resolution_notes = notes
    dispute.admin_id = actor.user_id
    dispute.resolved_at = utc_now()
    await session.commit()
    await session.refresh(dispute)
    logger.info(
        "dispute_closed",
        extra={
            "extra": {
                "dispute_id": dispute.dispute_id,
                "booking_id": dispute.booking_id,
                "status": status.value,
            }
        },
    )
    return dispute


async def resolve_dispute(
    session: AsyncSession, actor: User, dispute_id: str, resolution_notes: str | None = None
) -> Dispute:
    # booking.status is left alone; reinstating it is a separate admin action
    return await _close(session, actor, dispute_id, DisputeStatus.RESOLVED, resolution_notes)


async def reject_dispute(
    session: AsyncSession, actor: User, dispute_id: str, resolution_notes: str | None = None
) -> Dispute:
    return await _close(session, actor, dispute_id, DisputeStatus.REJECTED, resolution_notes)
