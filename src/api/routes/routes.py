import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from src.application.check_in_service import CheckInResult
from src.application.engine import TicketingEngine
from src.api.schemas.schemas import (
    BookingCreatedResponse,
    BookingRequest,
    BookingResponse,
    CheckInHistoryItem,
    CheckInRequest,
    CheckInResponse,
    EventCreate,
    InventoryResponse,
    TicketResponse,
    WebhookResponse,
)
from src.domain.exceptions import (
    AlreadyRedeemedError,
    BookingNotFoundError,
    EventNotFoundError,
    GatewayPayloadError,
    GatewaySignatureError,
    InsufficientInventoryError,
    InvalidRequestError,
    InvalidStateError,
    NotConfirmedError,
    OverReleaseError,
    PaymentGatewayError,
    PermissionDeniedError,
    TicketingEngineError,
    TicketTokenError,
)
from src.domain.principal import Principal, Role
from src.infrastructure.db.models import Booking, Event


router = APIRouter()
logger = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins.
_ERROR_RESPONSES: list[tuple[type[TicketingEngineError], int, str]] = [
    (AlreadyRedeemedError, status.HTTP_409_CONFLICT, "already_redeemed"),
    (NotConfirmedError, status.HTTP_409_CONFLICT, "not_confirmed"),
    (InvalidStateError, status.HTTP_409_CONFLICT, "invalid_state"),
    (InsufficientInventoryError, status.HTTP_409_CONFLICT, "insufficient_inventory"),
    (GatewaySignatureError, status.HTTP_400_BAD_REQUEST, "invalid_webhook_signature"),
    (GatewayPayloadError, status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_webhook_payload"),
    (InvalidRequestError, status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_request"),
    (BookingNotFoundError, status.HTTP_404_NOT_FOUND, "booking_not_found"),
    (EventNotFoundError, status.HTTP_404_NOT_FOUND, "event_not_found"),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN, "forbidden"),
    (PaymentGatewayError, status.HTTP_502_BAD_GATEWAY, "payment_gateway_error"),
    (OverReleaseError, status.HTTP_500_INTERNAL_SERVER_ERROR, "over_release"),
]


def _http_error(exc: TicketingEngineError) -> HTTPException:
    if isinstance(exc, TicketTokenError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": exc.code, "message": str(exc)},
        )

    for error_type, status_code, code in _ERROR_RESPONSES:
        if isinstance(exc, error_type):
            if status_code >= 500:
                logger.error("Invariant breach surfaced to caller: %s", exc)
            return HTTPException(
                status_code=status_code,
                detail={"code": code, "message": str(exc)},
            )

    logger.error("Unmapped engine error: %r", exc)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": "internal_error", "message": str(exc)},
    )


def get_engine(request: Request) -> TicketingEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ticketing engine is not ready.",
        )
    return engine


def get_principal(
    x_user_id: str = Header(...),
    x_user_roles: str = Header("user"),
) -> Principal:
    try:
        roles = frozenset(
            Role(role.strip().lower())
            for role in x_user_roles.split(",")
            if role.strip()
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown role in X-User-Roles: {x_user_roles}",
        ) from exc
    return Principal(user_id=x_user_id, roles=roles)


def _booking_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        booking_id=booking.id,
        event_id=booking.event_id,
        status=booking.status.value,
        quantity=booking.quantity,
        units_redeemed=booking.units_redeemed,
        total_amount=booking.total_amount,
        currency=booking.currency,
        expires_at=booking.expires_at,
        payment_ref=booking.payment_ref,
    )


def _inventory_response(event: Event) -> InventoryResponse:
    return InventoryResponse(
        event_id=event.id,
        capacity=event.capacity,
        available_units=event.available_units,
        reserved_units=event.capacity - event.available_units,
        is_active=event.is_active,
    )


def _check_in_response(result: CheckInResult) -> CheckInResponse:
    return CheckInResponse(
        check_in_id=result.check_in.id,
        booking_id=result.booking_id,
        event_id=result.event_id,
        checked_in_at=result.check_in.checked_in_at,
        checked_in_by=result.check_in.checked_in_by,
        units_redeemed=result.units_redeemed,
        total_redeemed=result.total_redeemed,
        units_remaining=result.units_remaining,
        booking_status=result.booking_status.value,
        warnings=[warning.value for warning in result.warnings],
    )


@router.get("/health")
def health():
    return {"status": "ok"}


@router.post("/inventory/events", response_model=InventoryResponse)
def register_event(
    request: EventCreate,
    principal: Principal = Depends(get_principal),
    engine: TicketingEngine = Depends(get_engine),
):
    try:
        event = engine.register_event(
            principal,
            venue_id=request.venue_id,
            title=request.title,
            capacity=request.capacity,
            unit_price=request.unit_price,
            currency=request.currency,
            start_time=request.start_time,
            end_time=request.end_time,
        )
    except TicketingEngineError as exc:
        raise _http_error(exc) from exc
    return _inventory_response(event)


@router.get("/inventory/{event_id}", response_model=InventoryResponse)
def get_inventory(
    event_id: str,
    engine: TicketingEngine = Depends(get_engine),
):
    try:
        event = engine.get_availability(event_id)
    except TicketingEngineError as exc:
        raise _http_error(exc) from exc
    return _inventory_response(event)


@router.post("/bookings", response_model=BookingCreatedResponse)
def create_booking(
    request: BookingRequest,
    principal: Principal = Depends(get_principal),
    engine: TicketingEngine = Depends(get_engine),
):
    try:
        created = engine.create_booking(
            principal,
            event_id=request.event_id,
            quantity=request.quantity,
        )
    except TicketingEngineError as exc:
        raise _http_error(exc) from exc

    return BookingCreatedResponse(
        **_booking_response(created.booking).model_dump(),
        payment_secret=created.payment_secret,
        key_id=created.key_id,
    )


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    principal: Principal = Depends(get_principal),
    engine: TicketingEngine = Depends(get_engine),
):
    try:
        booking = engine.get_booking(principal, booking_id)
    except TicketingEngineError as exc:
        raise _http_error(exc) from exc
    return _booking_response(booking)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
def cancel_booking(
    booking_id: str,
    principal: Principal = Depends(get_principal),
    engine: TicketingEngine = Depends(get_engine),
):
    try:
        booking = engine.cancel_booking(principal, booking_id)
    except TicketingEngineError as exc:
        raise _http_error(exc) from exc
    return _booking_response(booking)


@router.post("/bookings/{booking_id}/ticket", response_model=TicketResponse)
def issue_ticket(
    booking_id: str,
    principal: Principal = Depends(get_principal),
    engine: TicketingEngine = Depends(get_engine),
):
    try:
        token = engine.issue_ticket(principal, booking_id)
    except TicketingEngineError as exc:
        raise _http_error(exc) from exc
    return TicketResponse(booking_id=booking_id, ticket_token=token)


@router.post("/payments/webhook", response_model=WebhookResponse)
async def payment_webhook(
    request: Request,
    x_razorpay_signature: str | None = Header(None),
    x_razorpay_event_id: str | None = Header(None),
    engine: TicketingEngine = Depends(get_engine),
):
    raw_payload = await request.body()
    try:
        application = await run_in_threadpool(
            engine.handle_payment_notification,
            raw_payload,
            x_razorpay_signature,
            x_razorpay_event_id,
        )
    except TicketingEngineError as exc:
        raise _http_error(exc) from exc

    return WebhookResponse(
        received=True,
        outcome=application.outcome.value,
        booking_id=application.booking_id,
        status=application.status,
    )


@router.post("/check-ins", response_model=CheckInResponse)
def redeem_ticket(
    request: CheckInRequest,
    principal: Principal = Depends(get_principal),
    engine: TicketingEngine = Depends(get_engine),
):
    try:
        result = engine.redeem_ticket(principal, request.token)
    except TicketingEngineError as exc:
        raise _http_error(exc) from exc
    return _check_in_response(result)


@router.get("/events/{event_id}/check-ins", response_model=list[CheckInHistoryItem])
def list_check_ins(
    event_id: str,
    principal: Principal = Depends(get_principal),
    engine: TicketingEngine = Depends(get_engine),
):
    try:
        check_ins = engine.list_check_ins(principal, event_id)
    except TicketingEngineError as exc:
        raise _http_error(exc) from exc
    return [
        CheckInHistoryItem(
            check_in_id=check_in.id,
            booking_id=check_in.booking_id,
            checked_in_at=check_in.checked_in_at,
            checked_in_by=check_in.checked_in_by,
            units_redeemed=check_in.units_redeemed,
        )
        for check_in in check_ins
    ]
