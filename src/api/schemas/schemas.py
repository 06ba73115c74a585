from datetime import datetime

from pydantic import BaseModel, Field, model_validator


class EventCreate(BaseModel):
    venue_id: str
    title: str
    capacity: int = Field(ge=0)
    unit_price: int = Field(ge=0)
    currency: str | None = None
    start_time: datetime
    end_time: datetime

    @model_validator(mode="after")
    def _ends_after_start(self) -> "EventCreate":
        if self.end_time < self.start_time:
            raise ValueError("end_time must not precede start_time")
        return self


class InventoryResponse(BaseModel):
    event_id: str
    capacity: int
    available_units: int
    reserved_units: int
    is_active: bool


class BookingRequest(BaseModel):
    event_id: str
    quantity: int = Field(gt=0)


class BookingResponse(BaseModel):
    booking_id: str
    event_id: str
    status: str
    quantity: int
    units_redeemed: int
    total_amount: int
    currency: str
    expires_at: datetime
    payment_ref: str | None = None


class BookingCreatedResponse(BookingResponse):
    payment_secret: str
    key_id: str | None = None


class TicketResponse(BaseModel):
    booking_id: str
    ticket_token: str


class CheckInRequest(BaseModel):
    token: str = Field(min_length=1)


class CheckInResponse(BaseModel):
    check_in_id: str
    booking_id: str
    event_id: str
    checked_in_at: datetime
    checked_in_by: str
    units_redeemed: int
    total_redeemed: int
    units_remaining: int
    booking_status: str
    warnings: list[str] = []


class CheckInHistoryItem(BaseModel):
    check_in_id: str
    booking_id: str
    checked_in_at: datetime
    checked_in_by: str
    units_redeemed: int


class WebhookResponse(BaseModel):
    received: bool
    outcome: str
    booking_id: str | None = None
    status: str | None = None
