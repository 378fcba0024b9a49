import uuid
from datetime import date
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator

from ratewise.schemas.rates import CurrencyCode

INBOUND_KINDS = ("new_booking", "modification", "cancellation")


class StayWindow(BaseModel):
    check_in: date
    check_out: date

    @model_validator(mode="after")
    def _order(self):
        if self.check_in >= self.check_out:
            raise ValueError("check_in must be before check_out")
        return self


class GuestInfo(BaseModel):
    name: str | None = None
    email: str | None = None


class BookingValues(BaseModel):
    """Booking fields that a modification can change."""

    room_type_id: uuid.UUID | None = None
    check_in: date | None = None
    check_out: date | None = None
    rooms: int | None = Field(default=None, ge=1)


class ChannelEventIn(BaseModel):
    """A channel callback normalised by the channel's adapter."""

    channel: str
    kind: str
    channel_booking_id: str = Field(min_length=1, max_length=100)
    room_type_id: uuid.UUID | None = None
    stay: StayWindow | None = None
    guest: GuestInfo | None = None
    rooms: int = Field(default=1, ge=1)
    amount: Decimal | None = Field(default=None, ge=0)
    currency: CurrencyCode | None = None
    old_values: BookingValues | None = None
    new_values: BookingValues | None = None
    sequence: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _shape(self):
        if self.kind not in INBOUND_KINDS:
            raise ValueError(f"kind must be one of {', '.join(INBOUND_KINDS)}")
        if self.kind == "new_booking" and (self.stay is None or self.room_type_id is None):
            raise ValueError("new_booking requires stay and room_type_id")
        return self
