class TicketingEngineError(Exception):
    """
    Base exception for all domain-level errors
    inside the ticketing engine.
    """


class InvalidRequestError(TicketingEngineError):
    """Raised when an operation is called with unusable arguments."""


class PermissionDeniedError(TicketingEngineError):
    """Raised when the principal does not hold a required role."""


class EventNotFoundError(TicketingEngineError):
    """Raised when an event id does not resolve to an event."""


class BookingNotFoundError(TicketingEngineError):
    """Raised when a booking id or payment reference is unknown."""


class InsufficientInventoryError(TicketingEngineError):
    """Raised when the event has fewer available units than requested."""

    def __init__(self, event_id: str, requested: int):
        self.event_id = event_id
        self.requested = requested
        super().__init__(
            f"Event {event_id} cannot supply {requested} ticket(s)"
        )


class OverReleaseError(TicketingEngineError):
    """
    Raised when releasing a reservation would push available units
    above capacity. Indicates broken accounting, never retried.
    """


class InvalidStateError(TicketingEngineError):
    """Raised when an operation is not valid for the booking's status."""


class InvalidStateTransitionError(InvalidStateError):
    """
    Raised when an illegal booking state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class NotConfirmedError(InvalidStateError):
    """Raised at check-in when the booking is not confirmed."""


class AlreadyRedeemedError(TicketingEngineError):
    """Raised when every unit of a booking has already been checked in."""


class TicketTokenError(TicketingEngineError):
    """Base class for ticket tokens rejected by the codec."""

    code = "invalid_token"


class MalformedTokenError(TicketTokenError):
    code = "malformed_token"


class BadSignatureError(TicketTokenError):
    code = "bad_signature"


class ExpiredTokenError(TicketTokenError):
    code = "expired_token"


class GatewaySignatureError(TicketingEngineError):
    """Raised when a payment notification fails signature verification."""


class GatewayPayloadError(TicketingEngineError):
    """Raised when a verified payment notification cannot be decoded."""


class PaymentGatewayError(TicketingEngineError):
    """Raised when the payment provider call itself fails."""
