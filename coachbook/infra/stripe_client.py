from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from coachbook.domain.errors import ProcessorError, SignatureError
from coachbook.infra.processor import (
    PaymentIntentResult,
    ProcessorRef,
    from_minor_units,
    to_minor_units,
)
from coachbook.settings import settings

logger = logging.getLogger(__name__)


class StripeClient:
    def __init__(
        self,
        *,
        secret_key: str | None,
        webhook_secret: str | None,
        stripe_sdk: Any | None = None,
    ) -> None:
        if stripe_sdk is None:
            import stripe as stripe_sdk  # type: ignore

        self.stripe = stripe_sdk
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def _configure(self) -> None:
        if not self.secret_key:
            raise ProcessorError("Payment processor not configured", reason="missing_secret_key")
        self.stripe.api_key = self.secret_key

    def _call(self, operation: str, func, **payload: Any) -> Any:
        self._configure()
        try:
            return func(**payload)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "stripe_call_failed",
                extra={"extra": {"operation": operation, "reason": type(exc).__name__}},
            )
            raise ProcessorError(reason=type(exc).__name__) from exc

    def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        customer_id: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> PaymentIntentResult:
        payload: dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "metadata": metadata or {},
            "automatic_payment_methods": {"enabled": True},
        }
        if customer_id:
            payload["customer"] = customer_id
        intent = self._call("create_payment_intent", self.stripe.PaymentIntent.create, **payload)
        logger.info(
            "stripe_payment_intent_created",
            extra={"extra": {"payment_intent_id": intent["id"], "amount": str(amount)}},
        )
        return PaymentIntentResult(
            id=intent["id"],
            client_secret=intent.get("client_secret"),
            amount=from_minor_units(int(intent.get("amount") or 0)),
            currency=intent.get("currency") or currency.lower(),
            status=intent.get("status") or "requires_payment_method",
        )

    def capture_confirmed_intent(self, intent_id: str) -> ProcessorRef:
        intent = self._call("capture_payment_intent", self.stripe.PaymentIntent.capture, intent=intent_id)
        return ProcessorRef(id=intent["id"])

    def create_refund(
        self, charge_id: str, amount: Decimal | None = None, reason: str = "requested_by_customer"
    ) -> ProcessorRef:
        payload: dict[str, Any] = {"charge": charge_id, "reason": reason}
        if amount is not None:
            payload["amount"] = to_minor_units(amount)
        refund = self._call("create_refund", self.stripe.Refund.create, **payload)
        logger.info("stripe_refund_created", extra={"extra": {"refund_id": refund["id"], "charge_id": charge_id}})
        return ProcessorRef(id=refund["id"])

    def transfer_to_payout_account(
        self,
        account_id: str,
        amount: Decimal,
        currency: str,
        metadata: dict[str, str] | None = None,
    ) -> ProcessorRef:
        transfer = self._call(
            "create_transfer",
            self.stripe.Transfer.create,
            amount=to_minor_units(amount),
            currency=currency.lower(),
            destination=account_id,
            metadata=metadata or {},
        )
        logger.info("stripe_transfer_created", extra={"extra": {"transfer_id": transfer["id"]}})
        return ProcessorRef(id=transfer["id"])

    def verify_webhook_signature(self, payload: bytes, signature: str | None) -> Any:
        if not self.webhook_secret:
            raise SignatureError("Webhook secret not configured")
        if not signature:
            raise SignatureError("Missing webhook signature header")
        try:
            return self.stripe.Webhook.construct_event(
                payload=payload, sig_header=signature, secret=self.webhook_secret
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("stripe_webhook_invalid", extra={"extra": {"reason": type(exc).__name__}})
            raise SignatureError() from exc


def resolve_client(app_state: Any):
    client = getattr(app_state, "payment_processor", None)
    if client is None:
        client = StripeClient(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
        )
        app_state.payment_processor = client
    return client
