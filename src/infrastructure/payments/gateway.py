"""Payment gateway interface.

The engine only talks to the payment provider through this boundary.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from src.domain.payment_events import PaymentEvent


@dataclass(frozen=True)
class PaymentIntent:
    reference: str
    client_secret: str
    amount: int
    currency: str
    key_id: str | None = None


class PaymentGateway(ABC):

    @abstractmethod
    def create_payment_intent(
        self,
        amount: int,
        currency: str,
        receipt: str,
    ) -> PaymentIntent:
        """Create a provider-side payment for ``amount`` minor units."""
        ...

    @abstractmethod
    def parse_notification(
        self,
        raw_payload: bytes,
        signature: str | None,
        event_id: str | None = None,
    ) -> PaymentEvent:
        """Verify a signed provider callback and normalize it."""
        ...
