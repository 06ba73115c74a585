# src/infrastructure/payments/razorpay_gateway.py

import hashlib
import json
import logging
from datetime import datetime
from typing import Callable

import razorpay

from src.domain.exceptions import (
    GatewayPayloadError,
    GatewaySignatureError,
    PaymentGatewayError,
)
from src.domain.payment_events import PaymentEvent, PaymentEventKind
from src.domain.ticket_codec import utc_now
from src.infrastructure.payments.gateway import PaymentGateway, PaymentIntent

logger = logging.getLogger(__name__)

PROVIDER = "RAZORPAY"

# Razorpay webhook event names -> normalized kinds. Anything else is unsupported.
_EVENT_KINDS = {
    "payment.captured": PaymentEventKind.SUCCEEDED,
    "order.paid": PaymentEventKind.SUCCEEDED,
    "payment.failed": PaymentEventKind.FAILED,
    "refund.processed": PaymentEventKind.REFUNDED,
}


def _hash_webhook_payload(raw_payload: bytes) -> str:
    return hashlib.sha256(raw_payload).hexdigest()


def _entity(payload: dict, name: str) -> dict:
    wrapper = payload.get(name) or {}
    if not isinstance(wrapper, dict):
        return {}
    entity = wrapper.get("entity") or {}
    return entity if isinstance(entity, dict) else {}


class RazorpayGateway(PaymentGateway):

    def __init__(
        self,
        key_id: str | None,
        key_secret: str | None,
        webhook_secret: str | None,
        client: razorpay.Client | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.key_id = key_id
        self._webhook_secret = webhook_secret
        self._clock = clock
        if client is None:
            client = razorpay.Client(auth=(key_id or "", key_secret or ""))
        self._client = client
        self._has_credentials = bool(key_id and key_secret)

    def create_payment_intent(
        self,
        amount: int,
        currency: str,
        receipt: str,
    ) -> PaymentIntent:
        if not self._has_credentials:
            raise PaymentGatewayError(
                "Razorpay keys not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET."
            )

        try:
            order = self._client.order.create(
                {
                    "amount": amount,
                    "currency": currency,
                    "receipt": receipt,
                }
            )
        except Exception as exc:
            logger.exception("Razorpay order creation failed. receipt=%s", receipt)
            raise PaymentGatewayError("Payment provider rejected the order") from exc

        order_id = order.get("id")
        if not order_id:
            raise PaymentGatewayError("Payment provider returned no order id")

        return PaymentIntent(
            reference=order_id,
            # Razorpay Checkout is opened with the order id and the public key id.
            client_secret=order_id,
            amount=amount,
            currency=currency,
            key_id=self.key_id,
        )

    def parse_notification(
        self,
        raw_payload: bytes,
        signature: str | None,
        event_id: str | None = None,
    ) -> PaymentEvent:
        self._verify_signature(raw_payload, signature)

        try:
            body = json.loads(raw_payload)
        except ValueError as exc:
            raise GatewayPayloadError("Webhook body is not JSON") from exc
        if not isinstance(body, dict):
            raise GatewayPayloadError("Webhook body must be an object")

        provider_event = body.get("event")
        if not isinstance(provider_event, str) or not provider_event:
            raise GatewayPayloadError("Webhook body has no event name")

        payload = body.get("payload") or {}
        if not isinstance(payload, dict):
            raise GatewayPayloadError("Webhook payload must be an object")

        payment = _entity(payload, "payment")
        order = _entity(payload, "order")
        payment_ref = payment.get("order_id") or order.get("id")
        amount = payment.get("amount", order.get("amount"))

        kind = _EVENT_KINDS.get(provider_event, PaymentEventKind.UNSUPPORTED)
        if kind is not PaymentEventKind.UNSUPPORTED and not payment_ref:
            raise GatewayPayloadError(
                f"Webhook {provider_event} does not reference an order"
            )

        external_event_id = event_id or f"sha256:{_hash_webhook_payload(raw_payload)}"
        return PaymentEvent(
            external_event_id=external_event_id,
            kind=kind,
            payment_ref=payment_ref,
            received_at=self._clock(),
            provider_event=provider_event,
            amount=amount if isinstance(amount, int) else None,
        )

    def _verify_signature(self, raw_payload: bytes, signature: str | None) -> None:
        if not self._webhook_secret:
            raise GatewaySignatureError(
                "RAZORPAY_WEBHOOK_SECRET not configured; refusing unverifiable webhook"
            )
        if not signature:
            raise GatewaySignatureError("Webhook signature header missing")

        try:
            body = raw_payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise GatewaySignatureError("Webhook body is not UTF-8") from exc

        try:
            self._client.utility.verify_webhook_signature(
                body,
                signature,
                self._webhook_secret,
            )
        except razorpay.errors.SignatureVerificationError as exc:
            logger.warning("Rejected %s webhook with invalid signature", PROVIDER)
            raise GatewaySignatureError("Invalid webhook signature") from exc
        except (TypeError, ValueError) as exc:
            raise GatewaySignatureError("Webhook signature could not be checked") from exc
