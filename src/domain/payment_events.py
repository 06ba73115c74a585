from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from src.domain.state_machine import BookingTrigger


class PaymentEventKind(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    # Provider events this engine does not act on. Recorded, never applied.
    UNSUPPORTED = "unsupported"


_KIND_TRIGGERS = {
    PaymentEventKind.SUCCEEDED: BookingTrigger.PAYMENT_SUCCEEDED,
    PaymentEventKind.FAILED: BookingTrigger.PAYMENT_FAILED,
    PaymentEventKind.REFUNDED: BookingTrigger.REFUNDED,
}


class PaymentOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    LATE_SUCCESS = "late_success"
    IGNORED = "ignored"


@dataclass(frozen=True)
class PaymentEvent:
    """A provider notification normalized at the gateway boundary."""

    external_event_id: str
    kind: PaymentEventKind
    payment_ref: str | None
    received_at: datetime
    provider_event: str = ""
    amount: int | None = None

    @property
    def trigger(self) -> BookingTrigger | None:
        return _KIND_TRIGGERS.get(self.kind)


@dataclass(frozen=True)
class PaymentApplication:
    external_event_id: str
    outcome: PaymentOutcome
    booking_id: str | None = None
    status: str | None = None
