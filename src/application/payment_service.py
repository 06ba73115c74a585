import logging

from src.application.booking_service import BookingService
from src.domain.payment_events import PaymentApplication
from src.infrastructure.payments.gateway import PaymentGateway

logger = logging.getLogger(__name__)


class PaymentNotificationHandler:
    """
    Turns raw provider callbacks into booking transitions.

    The gateway verifies and normalizes; the booking service decides state.
    Nothing read from an unverified body ever reaches the booking service.
    """

    def __init__(self, gateway: PaymentGateway, booking_service: BookingService):
        self.gateway = gateway
        self.booking_service = booking_service

    def handle(
        self,
        raw_payload: bytes,
        provider_signature: str | None,
        event_id: str | None = None,
    ) -> PaymentApplication:
        event = self.gateway.parse_notification(raw_payload, provider_signature, event_id)
        logger.info(
            "Payment notification %s: %s for %s",
            event.external_event_id,
            event.kind.value,
            event.payment_ref,
        )
        return self.booking_service.apply_payment_event(event)
