import hashlib
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coachbook.api.deps import get_processor, require_admin
from coachbook.domain.clock import utc_now
from coachbook.domain.errors import NotFoundError
from coachbook.domain.payments import schemas as payment_schemas
from coachbook.domain.payments import service as payment_service
from coachbook.domain.payments.db_models import ProcessorEvent
from coachbook.domain.users.db_models import User
from coachbook.infra.db import get_db_session
from coachbook.infra.metrics import metrics
from coachbook.infra.processor import PaymentProcessor

router = APIRouter()
logger = logging.getLogger(__name__)

EVENT_PAYMENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_PAYMENT_FAILED = "payment_intent.payment_failed"
EVENT_CHARGE_REFUNDED = "charge.refunded"
EVENT_DISPUTE_CREATED = "charge.dispute.created"


def _safe_get(source: object, key: str, default: Any | None = None) -> Any:
    if isinstance(source, dict):
        return source.get(key, default)
    return getattr(source, key, default)


async def _handle_processor_event(session: AsyncSession, event: Any) -> bool:
    event_type = _safe_get(event, "type")
    data = _safe_get(event, "data", {}) or {}
    obj = _safe_get(data, "object", {}) or {}

    try:
        if event_type == EVENT_PAYMENT_SUCCEEDED:
            await payment_service.handle_payment_capture(
                session, str(_safe_get(obj, "id")), _safe_get(obj, "latest_charge"), commit=False
            )
            return True
        if event_type == EVENT_PAYMENT_FAILED:
            await payment_service.mark_payment_failed(session, str(_safe_get(obj, "id")), commit=False)
            return True
        if event_type == EVENT_CHARGE_REFUNDED:
            await payment_service.apply_processor_refund(
                session,
                str(_safe_get(obj, "id")),
                int(_safe_get(obj, "amount_refunded", 0) or 0),
                commit=False,
            )
            return True
        if event_type == EVENT_DISPUTE_CREATED:
            await payment_service.apply_processor_dispute(
                session, str(_safe_get(obj, "charge")), _safe_get(obj, "id"), commit=False
            )
            return True
    except NotFoundError:
        logger.info(
            "processor_webhook_unmatched",
            extra={"extra": {"event_type": event_type, "object_id": _safe_get(obj, "id")}},
        )
        return False

    logger.info("processor_webhook_ignored", extra={"extra": {"event_type": event_type}})
    return False


@router.post("/v1/payments/webhook", status_code=status.HTTP_200_OK)
async def processor_webhook(
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
    processor: PaymentProcessor = Depends(get_processor),
) -> dict[str, Any]:
    payload = await http_request.body()
    event = processor.verify_webhook_signature(payload, http_request.headers.get("Stripe-Signature"))

    event_id = _safe_get(event, "id")
    if not event_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing event id")
    event_type = _safe_get(event, "type")
    payload_hash = hashlib.sha256(payload or b"").hexdigest()

    processed = False
    processing_error: Exception | None = None
    async with session.begin():
        existing = await session.scalar(
            select(ProcessorEvent).where(ProcessorEvent.event_id == str(event_id)).with_for_update()
        )
        if existing:
            if existing.payload_hash != payload_hash:
                logger.warning("processor_webhook_replayed_mismatch", extra={"extra": {"event_id": event_id}})
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Event payload mismatch")
            if existing.status in {"succeeded", "ignored", "processing"}:
                logger.info(
                    "processor_webhook_duplicate",
                    extra={"extra": {"event_id": event_id, "status": existing.status}},
                )
                metrics.record_webhook("duplicate")
                return {"received": True, "processed": False}
            record = existing
            record.status = "processing"
            record.last_error = None
        else:
            record = ProcessorEvent(
                event_id=str(event_id),
                event_type=event_type,
                status="processing",
                payload_hash=payload_hash,
            )
            session.add(record)

        try:
            processed = await _handle_processor_event(session, event)
            record.status = "succeeded" if processed else "ignored"
        except Exception as exc:  # noqa: BLE001
            processed = False
            record.status = "error"
            record.last_error = type(exc).__name__
            processing_error = exc
            logger.exception(
                "processor_webhook_error",
                extra={"extra": {"event_id": event_id, "reason": type(exc).__name__}},
            )
        record.processed_at = utc_now()

    metrics.record_webhook(record.status)
    if processing_error is not None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing error",
        ) from processing_error

    return {"received": True, "processed": processed}


@router.post("/v1/payments/{payment_id}/refund", response_model=payment_schemas.RefundResponse)
async def refund_payment(
    payment_id: str,
    payload: payment_schemas.RefundRequest,
    session: AsyncSession = Depends(get_db_session),
    processor: PaymentProcessor = Depends(get_processor),
    admin: User = Depends(require_admin),
) -> payment_schemas.RefundResponse:
    payment = await payment_service.process_refund(
        session, processor, payment_id, amount=payload.amount, reason=payload.reason
    )
    logger.info(
        "refund_requested",
        extra={"extra": {"payment_id": payment.payment_id, "admin_id": admin.user_id}},
    )
    return payment_schemas.RefundResponse(
        payment_id=payment.payment_id,
        escrow_status=payment.escrow_status,
        payment_status=payment.payment_status,
        refunded_amount=payment.refunded_amount,
    )
