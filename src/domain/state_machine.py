# src/domain/state_machine.py

from enum import Enum
from typing import Dict, Set, Tuple

from src.domain.exceptions import InvalidStateTransitionError


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    REFUNDED = "refunded"


class BookingTrigger(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    RESERVATION_EXPIRED = "reservation_expired"
    REFUNDED = "refunded"
    FULLY_REDEEMED = "fully_redeemed"
    USER_CANCELLED = "user_cancelled"


# Transitions whose side effect hands reserved units back to the ledger.
RELEASING_TRIGGERS: Set[BookingTrigger] = {
    BookingTrigger.PAYMENT_FAILED,
    BookingTrigger.RESERVATION_EXPIRED,
    BookingTrigger.REFUNDED,
    BookingTrigger.USER_CANCELLED,
}


class BookingStateMachine:
    """
    Central lifecycle controller for booking transitions.
    Defines the legal state transitions and which trigger drives each.
    """

    _ALLOWED_TRANSITIONS: Dict[BookingStatus, Set[BookingStatus]] = {
        BookingStatus.PENDING: {
            BookingStatus.CONFIRMED,
            BookingStatus.CANCELLED,
        },
        BookingStatus.CONFIRMED: {
            BookingStatus.COMPLETED,
            BookingStatus.REFUNDED,
            BookingStatus.CANCELLED,
        },
        BookingStatus.COMPLETED: set(),
        BookingStatus.CANCELLED: set(),
        BookingStatus.REFUNDED: set(),
    }

    _TRIGGERED_TRANSITIONS: Dict[Tuple[BookingStatus, BookingTrigger], BookingStatus] = {
        (BookingStatus.PENDING, BookingTrigger.PAYMENT_SUCCEEDED): BookingStatus.CONFIRMED,
        (BookingStatus.PENDING, BookingTrigger.PAYMENT_FAILED): BookingStatus.CANCELLED,
        (BookingStatus.PENDING, BookingTrigger.RESERVATION_EXPIRED): BookingStatus.CANCELLED,
        (BookingStatus.PENDING, BookingTrigger.USER_CANCELLED): BookingStatus.CANCELLED,
        (BookingStatus.CONFIRMED, BookingTrigger.REFUNDED): BookingStatus.REFUNDED,
        (BookingStatus.CONFIRMED, BookingTrigger.FULLY_REDEEMED): BookingStatus.COMPLETED,
        (BookingStatus.CONFIRMED, BookingTrigger.USER_CANCELLED): BookingStatus.CANCELLED,
    }

    @classmethod
    def can_transition(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
    ) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
    ) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def can_fire(cls, status: BookingStatus, trigger: BookingTrigger) -> bool:
        cls._ensure_valid_status(status)
        return (status, trigger) in cls._TRIGGERED_TRANSITIONS

    @classmethod
    def next_status(
        cls,
        status: BookingStatus,
        trigger: BookingTrigger,
    ) -> BookingStatus:
        """
        Resolves the status a trigger moves a booking to.
        Raises InvalidStateTransitionError when the trigger does not apply.
        """
        cls._ensure_valid_status(status)
        if not isinstance(trigger, BookingTrigger):
            raise TypeError(
                f"Expected BookingTrigger, got {type(trigger)}"
            )

        target = cls._TRIGGERED_TRANSITIONS.get((status, trigger))
        if target is None:
            raise InvalidStateTransitionError(
                from_state=status.value,
                to_state=f"<{trigger.value}>",
            )

        cls.validate_transition(status, target)
        return target

    @classmethod
    def is_terminal(cls, status: BookingStatus) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def get_allowed_transitions(
        cls, status: BookingStatus
    ) -> Set[BookingStatus]:
        """
        Returns allowed next states from current state.
        """
        cls._ensure_valid_status(status)
        return cls._ALLOWED_TRANSITIONS.get(status, set())

    @staticmethod
    def _ensure_valid_status(status: BookingStatus) -> None:
        if not isinstance(status, BookingStatus):
            raise TypeError(
                f"Expected BookingStatus, got {type(status)}"
            )
