from enum import Enum

from coachbook.domain.errors import InvalidStateError


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    AWAITING_VERIFICATION = "awaiting_verification"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class PayoutStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    AWAITING_VERIFICATION = "awaiting_verification"
    PROCESSING = "processing"
    PAID = "paid"
    FORFEITED = "forfeited"


class ActorRole(str, Enum):
    STUDENT = "student"
    COACH = "coach"
    ADMIN = "admin"
    SYSTEM = "system"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    AUTO_APPROVED = "auto_approved"


TERMINAL_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})
ACTIVE_STATUSES = frozenset(
    {
        BookingStatus.PENDING,
        BookingStatus.CONFIRMED,
        BookingStatus.AWAITING_VERIFICATION,
        BookingStatus.DISPUTED,
    }
)
RELEASABLE_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.AWAITING_VERIFICATION})
REMINDER_STATUSES = frozenset({BookingStatus.CONFIRMED, BookingStatus.AWAITING_VERIFICATION})
PAYOUT_OPEN_STATUSES = frozenset(
    {PayoutStatus.NONE, PayoutStatus.PENDING, PayoutStatus.AWAITING_VERIFICATION}
)

BOOKING_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset(
        {BookingStatus.CONFIRMED, BookingStatus.CANCELLED, BookingStatus.DISPUTED}
    ),
    BookingStatus.CONFIRMED: frozenset(
        {BookingStatus.AWAITING_VERIFICATION, BookingStatus.CANCELLED, BookingStatus.DISPUTED}
    ),
    BookingStatus.AWAITING_VERIFICATION: frozenset(
        {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.DISPUTED}
    ),
    BookingStatus.DISPUTED: frozenset(
        {
            BookingStatus.CONFIRMED,
            BookingStatus.AWAITING_VERIFICATION,
            BookingStatus.COMPLETED,
            BookingStatus.CANCELLED,
        }
    ),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}


def is_terminal(status: str | BookingStatus) -> bool:
    return BookingStatus(status) in TERMINAL_STATUSES


def assert_valid_booking_transition(current: str | BookingStatus, target: str | BookingStatus) -> None:
    current_status = BookingStatus(current)
    target_status = BookingStatus(target)
    allowed = BOOKING_TRANSITIONS[current_status]
    if not allowed:
        raise InvalidStateError(f"Booking is already in terminal status: {current_status.value}")
    if target_status not in allowed:
        raise InvalidStateError(
            f"Cannot transition booking from {current_status.value} to {target_status.value}"
        )
