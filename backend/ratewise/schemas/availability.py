import uuid
from datetime import date
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator

from ratewise.schemas.rates import CurrencyCode


class AvailabilityUpdate(BaseModel):
    """One row of a bulk availability update; omitted fields keep their stored value."""

    room_type_id: uuid.UUID
    date: date
    total_rooms: int | None = Field(default=None, ge=0)
    sold_rooms: int | None = Field(default=None, ge=0)
    blocked_rooms: int | None = Field(default=None, ge=0)
    stop_sell: bool | None = None
    closed_to_arrival: bool | None = None
    closed_to_departure: bool | None = None
    min_stay: int | None = Field(default=None, ge=1)
    max_stay: int | None = Field(default=None, ge=1)

    def patch(self) -> dict:
        return self.model_dump(exclude={"room_type_id", "date"}, exclude_none=True)


class RateUpdate(BaseModel):
    """One date-specific rate of a bulk rate update."""

    room_type_id: uuid.UUID
    rate_plan_id: uuid.UUID | None = None
    date: date
    rate: Decimal = Field(ge=0)
    currency: CurrencyCode
    reason: str | None = None


class AvailabilityRangeCreate(BaseModel):
    room_type_id: uuid.UUID
    start_date: date
    end_date: date
    total_rooms: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _range(self):
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        if (self.end_date - self.start_date).days > 730:
            raise ValueError("range is limited to two years")
        return self


class BulkAvailabilityRequest(BaseModel):
    updates: list[dict] = Field(min_length=1)


class BulkRatesRequest(BaseModel):
    updates: list[dict] = Field(min_length=1)
    approved_by: str | None = None
