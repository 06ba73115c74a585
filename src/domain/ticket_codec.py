# src/domain/ticket_codec.py

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import jwt

from src.domain.exceptions import (
    BadSignatureError,
    ExpiredTokenError,
    InvalidStateError,
    MalformedTokenError,
)
from src.domain.state_machine import BookingStatus

DEFAULT_VALIDITY = timedelta(hours=24)
ALGORITHM = "HS256"

_ISSUABLE_STATUSES = {BookingStatus.CONFIRMED, BookingStatus.COMPLETED}
_STRING_FIELDS = ("booking_id", "user_id", "event_id")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TicketPayload:
    booking_id: str
    user_id: str
    event_id: str
    quantity: int
    issued_at: int

    @property
    def issued_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.issued_at, tz=timezone.utc)

    def claims(self) -> dict:
        return {
            "booking_id": self.booking_id,
            "user_id": self.user_id,
            "event_id": self.event_id,
            "quantity": self.quantity,
            "issued_at": self.issued_at,
        }


class TicketCodec:
    """
    Issues and verifies signed ticket tokens.

    A token is a compact HS256 JWT carrying the ticket claims. Expiry is
    checked here against ``issued_at`` and the injected clock rather than by
    PyJWT, so a token is still accepted at exactly ``issued_at + validity``.

    Verification never touches the store; callers cross-check the decoded
    booking id against the persisted booking.
    """

    def __init__(
        self,
        secret_key: str | bytes,
        validity: timedelta = DEFAULT_VALIDITY,
        clock: Callable[[], datetime] = utc_now,
    ):
        if not secret_key:
            raise ValueError("Ticket signing secret must not be empty")
        self._secret_key = secret_key
        self.validity = validity
        self._clock = clock

    def issue(self, booking: Any) -> str:
        if booking.status not in _ISSUABLE_STATUSES:
            raise InvalidStateError(
                f"Cannot issue a ticket for booking {booking.id} "
                f"in status {BookingStatus(booking.status).value}"
            )

        payload = TicketPayload(
            booking_id=str(booking.id),
            user_id=str(booking.user_id),
            event_id=str(booking.event_id),
            quantity=int(booking.quantity),
            issued_at=int(self._clock().timestamp()),
        )
        return self.encode(payload)

    def encode(self, payload: TicketPayload) -> str:
        return jwt.encode(payload.claims(), self._secret_key, algorithm=ALGORITHM)

    def verify(self, token: str) -> TicketPayload:
        if not isinstance(token, str) or not token:
            raise MalformedTokenError("Ticket token must be a non-empty string")

        try:
            claims = jwt.decode(
                token,
                self._secret_key,
                algorithms=[ALGORITHM],
                options={"verify_exp": False, "verify_iat": False, "verify_nbf": False},
            )
        except jwt.InvalidSignatureError as exc:
            raise BadSignatureError("Ticket signature does not match payload") from exc
        except jwt.InvalidTokenError as exc:
            raise MalformedTokenError(f"Ticket token could not be decoded: {exc}") from exc

        payload = self._payload_from_claims(claims)

        age = self._clock() - payload.issued_at_datetime
        if age > self.validity:
            raise ExpiredTokenError(
                f"Ticket for booking {payload.booking_id} expired "
                f"{age - self.validity} ago"
            )
        return payload

    @staticmethod
    def _payload_from_claims(claims: dict) -> TicketPayload:
        for name in _STRING_FIELDS:
            if not isinstance(claims.get(name), str) or not claims[name]:
                raise MalformedTokenError(f"Ticket claim {name} is missing")

        quantity = claims.get("quantity")
        issued_at = claims.get("issued_at")
        # bool is an int subclass; reject it explicitly
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise MalformedTokenError("Ticket claim quantity is invalid")
        if not isinstance(issued_at, int) or isinstance(issued_at, bool):
            raise MalformedTokenError("Ticket claim issued_at is invalid")
        try:
            datetime.fromtimestamp(issued_at, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise MalformedTokenError("Ticket claim issued_at is out of range") from exc

        return TicketPayload(
            booking_id=claims["booking_id"],
            user_id=claims["user_id"],
            event_id=claims["event_id"],
            quantity=quantity,
            issued_at=issued_at,
        )
