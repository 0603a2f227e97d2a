from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol


@dataclass(frozen=True)
class PaymentIntentResult:
    id: str
    client_secret: str | None
    amount: Decimal
    currency: str
    status: str


@dataclass(frozen=True)
class ProcessorRef:
    id: str


class PaymentProcessor(Protocol):
    """Money movement capability. Amounts are in major currency units."""

    def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        customer_id: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> PaymentIntentResult: ...

    def capture_confirmed_intent(self, intent_id: str) -> ProcessorRef: ...

    def create_refund(
        self, charge_id: str, amount: Decimal | None = None, reason: str = "requested_by_customer"
    ) -> ProcessorRef: ...

    def transfer_to_payout_account(
        self,
        account_id: str,
        amount: Decimal,
        currency: str,
        metadata: dict[str, str] | None = None,
    ) -> ProcessorRef: ...

    def verify_webhook_signature(self, payload: bytes, signature: str | None) -> Any: ...


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))
