# src/infrastructure/payments/gateway.py

from abc import ABC, abstractmethod
from dataclasses import dataclass
import hashlib
import json
import logging
import os

import razorpay

from src.domain.exceptions import (
    UnavailableError,
    ValidationFailedError,
    WebhookSignatureError,
)
from src.domain.state_machine import PaymentOutcome


logger = logging.getLogger(__name__)

RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET")

# Processor event names mapped onto ledger outcomes; anything else is ignored.
RAZORPAY_OUTCOMES = {
    "order.paid": PaymentOutcome.SUCCEEDED,
    "payment.captured": PaymentOutcome.SUCCEEDED,
    "payment.failed": PaymentOutcome.FAILED,
    "refund.processed": PaymentOutcome.REFUNDED,
}


@dataclass(frozen=True)
class PaymentNotification:
    """A processor event reduced to what the ledger needs."""

    external_event_id: str
    session_ref: str
    outcome: PaymentOutcome
    payload_hash: str


def hash_payload(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


def _as_object(value) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationFailedError("Webhook payload has an unexpected shape")
    return value


class PaymentGateway(ABC):
    """
    Payment processor seam. Checkout pages and webhook delivery live
    on the processor side; the engine only creates sessions and
    consumes signed events.
    """

    @abstractmethod
    def create_checkout_session(
        self,
        amount_cents: int,
        currency: str,
        success_ref: str,
        cancel_ref: str,
        metadata: dict[str, str],
    ) -> str:
        """Returns the processor's session reference."""

    @abstractmethod
    def verify_webhook_signature(self, body: bytes, signature: str | None) -> None:
        """Raises WebhookSignatureError when the body was not signed by the processor."""

    @abstractmethod
    def parse_webhook_event(
        self,
        body: bytes,
        event_id: str | None,
    ) -> PaymentNotification | None:
        """Returns None for event types the ledger does not track."""


class RazorpayGateway(PaymentGateway):

    def __init__(
        self,
        key_id: str | None = RAZORPAY_KEY_ID,
        key_secret: str | None = RAZORPAY_KEY_SECRET,
        webhook_secret: str | None = RAZORPAY_WEBHOOK_SECRET,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret

    def _client(self) -> razorpay.Client:
        if not self.key_id or not self.key_secret:
            raise UnavailableError(
                "Razorpay keys not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET."
            )
        return razorpay.Client(auth=(self.key_id, self.key_secret))

    def create_checkout_session(
        self,
        amount_cents: int,
        currency: str,
        success_ref: str,
        cancel_ref: str,
        metadata: dict[str, str],
    ) -> str:
        client = self._client()
        notes = dict(metadata)
        notes["success_ref"] = success_ref
        notes["cancel_ref"] = cancel_ref
        try:
            order = client.order.create(
                {
                    "amount": amount_cents,
                    "currency": currency,
                    "receipt": metadata.get("receipt", ""),
                    "notes": notes,
                }
            )
        except (
            razorpay.errors.BadRequestError,
            razorpay.errors.GatewayError,
            razorpay.errors.ServerError,
            OSError,
        ) as exc:
            logger.exception("Razorpay order creation failed. amount=%s currency=%s", amount_cents, currency)
            raise UnavailableError("Payment processor is unavailable. Please retry.") from exc

        order_id = order.get("id")
        if not order_id:
            raise UnavailableError("Payment processor returned no order id.")
        return order_id

    def verify_webhook_signature(self, body: bytes, signature: str | None) -> None:
        if not self.webhook_secret:
            raise UnavailableError("Razorpay webhook secret not configured.")
        if not signature:
            raise WebhookSignatureError("Missing webhook signature")

        # Signature checks need only the webhook secret, not API keys.
        client = razorpay.Client(auth=None)
        try:
            client.utility.verify_webhook_signature(
                body.decode("utf-8"),
                signature,
                self.webhook_secret,
            )
        except razorpay.errors.SignatureVerificationError as exc:
            raise WebhookSignatureError("Invalid webhook signature") from exc

    def parse_webhook_event(
        self,
        body: bytes,
        event_id: str | None,
    ) -> PaymentNotification | None:
        if not event_id:
            raise ValidationFailedError("Missing webhook event id")
        try:
            event = json.loads(body)
        except ValueError as exc:
            raise ValidationFailedError("Webhook body is not valid JSON") from exc
        if not isinstance(event, dict):
            raise ValidationFailedError("Webhook body must be a JSON object")

        outcome = RAZORPAY_OUTCOMES.get(event.get("event"))
        if outcome is None:
            logger.info("Ignoring Razorpay event type %s", event.get("event"))
            return None

        payload = _as_object(event.get("payload"))
        order = _as_object(_as_object(payload.get("order")).get("entity"))
        payment = _as_object(_as_object(payload.get("payment")).get("entity"))
        session_ref = order.get("id") or payment.get("order_id")
        if not session_ref:
            raise ValidationFailedError("Webhook event carries no order reference")

        return PaymentNotification(
            external_event_id=event_id,
            session_ref=session_ref,
            outcome=outcome,
            payload_hash=hash_payload(body),
        )


def get_payment_gateway() -> PaymentGateway:
    return RazorpayGateway()
