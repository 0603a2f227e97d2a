import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from coachbook.api.deps import get_current_user, get_processor
from coachbook.domain.bookings import reschedules as reschedule_service
from coachbook.domain.bookings import schemas as booking_schemas
from coachbook.domain.bookings import service as booking_service
from coachbook.domain.payments import service as payment_service
from coachbook.domain.users.db_models import User
from coachbook.infra.db import get_db_session
from coachbook.infra.processor import PaymentProcessor

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/v1/bookings",
    response_model=booking_schemas.BookingCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_booking(
    payload: booking_schemas.BookingCreateRequest,
    session: AsyncSession = Depends(get_db_session),
    processor: PaymentProcessor = Depends(get_processor),
    user: User = Depends(get_current_user),
) -> booking_schemas.BookingCreateResponse:
    created = await booking_service.create_booking(
        session,
        processor,
        user,
        payload.lesson_id,
        payload.scheduled_at,
        student_id=payload.student_id,
        payment_method=payload.payment_method.value,
        court_location_id=payload.court_location_id,
    )
    return booking_schemas.BookingCreateResponse(
        booking=booking_schemas.BookingResponse.model_validate(created.booking),
        payment=booking_schemas.PaymentSummary.model_validate(created.payment),
        client_secret=created.client_secret,
    )


@router.get("/v1/bookings/{booking_id}", response_model=booking_schemas.BookingDetailResponse)
async def get_booking(
    booking_id: str,
    session: AsyncSession = Depends(get_db_session),
    user: User = Depends(get_current_user),
) -> booking_schemas.BookingDetailResponse:
    booking = await booking_service.get_booking_for_actor(session, user, booking_id)
    payment = await payment_service.get_payment_for_booking(session, booking.booking_id)
    history = await reschedule_service.list_reschedules(session, booking.booking_id)
    base = booking_schemas.BookingResponse.model_validate(booking)
    return booking_schemas.BookingDetailResponse(
        **base.model_dump(),
        payment=booking_schemas.PaymentSummary.model_validate(payment) if payment else None,
        reschedules=[booking_schemas.RescheduleResponse.model_validate(item) for item in history],
    )


@router.post("/v1/bookings/{booking_id}/cancel", response_model=booking_schemas.BookingResponse)
async def cancel_booking(
    booking_id: str,
    payload: booking_schemas.BookingCancelRequest,
    session: AsyncSession = Depends(get_db_session),
    user: User = Depends(get_current_user),
) -> booking_schemas.BookingResponse:
    booking = await booking_service.cancel_booking(session, user, booking_id, payload.reason)
    return booking_schemas.BookingResponse.model_validate(booking)


@router.post("/v1/bookings/{booking_id}/complete", response_model=booking_schemas.BookingResponse)
async def complete_booking(
    booking_id: str,
    session: AsyncSession = Depends(get_db_session),
    user: User = Depends(get_current_user),
) -> booking_schemas.BookingResponse:
    booking = await booking_service.confirm_completion(session, user, booking_id)
    return booking_schemas.BookingResponse.model_validate(booking)


@router.post("/v1/bookings/{booking_id}/reinstate", response_model=booking_schemas.BookingResponse)
async def reinstate_booking(
    booking_id: str,
    payload: booking_schemas.BookingReinstateRequest,
    session: AsyncSession = Depends(get_db_session),
    user: User = Depends(get_current_user),
) -> booking_schemas.BookingResponse:
    booking = await booking_service.reinstate_booking(session, user, booking_id, payload.status)
    return booking_schemas.BookingResponse.model_validate(booking)


@router.post(
    "/v1/reschedules",
    response_model=booking_schemas.RescheduleResponse,
    status_code=status.HTTP_201_CREATED,
)
async def request_reschedule(
    payload: booking_schemas.RescheduleCreateRequest,
    session: AsyncSession = Depends(get_db_session),
    user: User = Depends(get_current_user),
) -> booking_schemas.RescheduleResponse:
    record = await reschedule_service.request_reschedule(
        session,
        user,
        payload.booking_id,
        payload.new_scheduled_at,
        paid_reschedule=payload.paid_reschedule,
        reason=payload.reason,
    )
    return booking_schemas.RescheduleResponse.model_validate(record)


@router.post("/v1/reschedules/{reschedule_id}/approve", response_model=booking_schemas.RescheduleResponse)
async def approve_reschedule(
    reschedule_id: str,
    session: AsyncSession = Depends(get_db_session),
    user: User = Depends(get_current_user),
) -> booking_schemas.RescheduleResponse:
    record = await reschedule_service.approve_reschedule(session, user, reschedule_id)
    return booking_schemas.RescheduleResponse.model_validate(record)


@router.post("/v1/reschedules/{reschedule_id}/reject", response_model=booking_schemas.RescheduleResponse)
async def reject_reschedule(
    reschedule_id: str,
    payload: booking_schemas.RescheduleRejectRequest,
    session: AsyncSession = Depends(get_db_session),
    user: User = Depends(get_current_user),
) -> booking_schemas.RescheduleResponse:
    record = await reschedule_service.reject_reschedule(session, user, reschedule_id, payload.reason)
    return booking_schemas.RescheduleResponse.model_validate(record)
