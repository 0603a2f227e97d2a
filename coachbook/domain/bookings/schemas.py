from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from coachbook.domain.bookings.statuses import BookingStatus
from coachbook.domain.payments.statuses import PaymentMethod


class BookingCreateRequest(BaseModel):
    lesson_id: str
    scheduled_at: datetime
    student_id: str | None = None
    payment_method: PaymentMethod = PaymentMethod.STRIPE
    court_location_id: str | None = None


class BookingCancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=2000)


class BookingReinstateRequest(BaseModel):
    status: BookingStatus


class RescheduleCreateRequest(BaseModel):
    booking_id: str
    new_scheduled_at: datetime
    paid_reschedule: bool = False
    reason: str | None = Field(None, max_length=2000)


class RescheduleRejectRequest(BaseModel):
    reason: str | None = Field(None, max_length=2000)


class RescheduleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    reschedule_id: str
    booking_id: str
    requested_by: str
    old_scheduled_at: datetime
    new_scheduled_at: datetime
    approval_status: str
    paid_reschedule: bool
    approved_by: str | None = None
    approved_at: datetime | None = None


class PaymentSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: str
    lesson_price: Decimal
    platform_fee_amount: Decimal
    total_charge_to_student: Decimal
    coach_payout_expected: Decimal
    currency: str
    escrow_status: str
    payment_status: str


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    lesson_id: str
    coach_id: str
    primary_student_id: str | None
    scheduled_at: datetime
    duration_minutes: int
    price: Decimal
    status: str
    payout_status: str
    messaging_locked: bool
    reschedule_count: int
    reschedule_limit: int
    extra_paid_reschedules: int
    reschedule_deadline: datetime | None
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None


class BookingCreateResponse(BaseModel):
    booking: BookingResponse
    payment: PaymentSummary
    client_secret: str | None = None


class BookingDetailResponse(BookingResponse):
    payment: PaymentSummary | None = None
    reschedules: list[RescheduleResponse] = Field(default_factory=list)
