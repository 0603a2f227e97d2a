from decimal import Decimal

from pydantic import BaseModel, Field


class RefundRequest(BaseModel):
    amount: Decimal | None = Field(None, decimal_places=2)
    reason: str = "requested_by_customer"


class RefundResponse(BaseModel):
    payment_id: str
    escrow_status: str
    payment_status: str
    refunded_amount: Decimal | None
