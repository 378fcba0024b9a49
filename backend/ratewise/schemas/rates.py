import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated

from pydantic import AfterValidator, BaseModel, Field, field_validator, model_validator

from ratewise.services.calendar import WEEKDAY_KEYS

PLAN_TYPES = ("bar", "corporate", "package", "promotional", "non_refundable", "member")
RULE_TYPES = ("occupancy", "demand", "day_of_week", "lead_time", "length_of_stay", "elasticity")
ADJUSTMENT_MODES = ("multiply", "add", "cap")


def _currency(value: str) -> str:
    if len(value) != 3 or not value.isalpha():
        raise ValueError("currency must be a 3-letter ISO-4217 code")
    return value.upper()


CurrencyCode = Annotated[str, AfterValidator(_currency)]


class RoomTypeCreate(BaseModel):
    code: str = Field(min_length=1, max_length=32)
    name: str
    max_occupancy: int = Field(default=2, ge=1)
    base_rate: Decimal = Field(ge=0)
    base_currency: CurrencyCode = "USD"
    total_rooms: int = Field(default=10, ge=0)
    timezone: str | None = None


class RatePlanCreate(BaseModel):
    room_type_id: uuid.UUID
    name: str
    type: str = "bar"
    base_rate: Decimal = Field(ge=0)
    base_currency: CurrencyCode = "USD"
    valid_from: date
    valid_to: date
    day_of_week_rates: dict[str, Decimal] | None = None
    priority: int = Field(default=0, ge=0, le=10)
    min_advance_days: int | None = Field(default=None, ge=0)
    max_advance_days: int | None = Field(default=None, ge=0)
    active: bool = True

    @field_validator("type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        if value not in PLAN_TYPES:
            raise ValueError(f"type must be one of {', '.join(PLAN_TYPES)}")
        return value

    @field_validator("day_of_week_rates")
    @classmethod
    def _weekday_keys(cls, value: dict[str, Decimal] | None) -> dict[str, Decimal] | None:
        return _clean_weekday_rates(value)

    @model_validator(mode="after")
    def _validity(self):
        if self.valid_from >= self.valid_to:
            raise ValueError("valid_from must be before valid_to")
        return self


class RatePlanUpdate(BaseModel):
    name: str | None = None
    base_rate: Decimal | None = Field(default=None, ge=0)
    base_currency: CurrencyCode | None = None
    valid_from: date | None = None
    valid_to: date | None = None
    day_of_week_rates: dict[str, Decimal] | None = None
    priority: int | None = Field(default=None, ge=0, le=10)
    min_advance_days: int | None = Field(default=None, ge=0)
    max_advance_days: int | None = Field(default=None, ge=0)

    @field_validator("day_of_week_rates")
    @classmethod
    def _weekday_keys(cls, value: dict[str, Decimal] | None) -> dict[str, Decimal] | None:
        return _clean_weekday_rates(value)


def _clean_weekday_rates(value: dict[str, Decimal] | None) -> dict[str, Decimal] | None:
    if value is None:
        return None
    cleaned = {}
    for key, amount in value.items():
        k = key.lower()[:3]
        if k not in WEEKDAY_KEYS:
            raise ValueError(f"unknown weekday {key!r}")
        if amount < 0:
            raise ValueError("day-of-week rates must not be negative")
        cleaned[k] = amount
    return cleaned


class RateOverrideCreate(BaseModel):
    room_type_id: uuid.UUID
    rate_plan_id: uuid.UUID | None = None
    date: date
    rate: Decimal = Field(ge=0)
    currency: CurrencyCode
    reason: str | None = None
    approved_by: str | None = None


class SeasonalRateCreate(BaseModel):
    room_type_id: uuid.UUID | None = None
    season: str
    start_date: date
    end_date: date
    rate: Decimal | None = Field(default=None, ge=0)
    # Positive discounts, negative surcharges (-20 = +20%)
    discount_pct: Decimal | None = Field(default=None, gt=-100, lt=100)
    priority: int = 0

    @model_validator(mode="after")
    def _one_of(self):
        if (self.rate is None) == (self.discount_pct is None):
            raise ValueError("exactly one of rate and discount_pct is required")
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class Adjustment(BaseModel):
    mode: str
    value: Decimal

    @field_validator("mode")
    @classmethod
    def _known_mode(cls, value: str) -> str:
        if value not in ADJUSTMENT_MODES:
            raise ValueError(f"mode must be one of {', '.join(ADJUSTMENT_MODES)}")
        return value


class DynamicRuleUpsert(BaseModel):
    rule_id: str
    name: str | None = None
    type: str
    priority: int = 0
    conditions: dict = Field(default_factory=dict)
    adjustment: Adjustment
    room_type_ids: list[uuid.UUID] | None = None
    active: bool = True

    @field_validator("type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        if value not in RULE_TYPES:
            raise ValueError(f"type must be one of {', '.join(RULE_TYPES)}")
        return value


class PromoCodeCreate(BaseModel):
    code: str = Field(min_length=2, max_length=50)
    discount_type: str = "percentage"
    value: Decimal = Field(gt=0)
    currency: CurrencyCode | None = None
    min_stay_value: Decimal | None = Field(default=None, ge=0)
    min_nights: int | None = Field(default=None, ge=1)
    valid_from: date
    valid_to: date
    max_uses: int | None = Field(default=None, ge=1)

    @field_validator("discount_type")
    @classmethod
    def _known_discount(cls, value: str) -> str:
        if value not in ("percentage", "fixed"):
            raise ValueError("discount_type must be percentage or fixed")
        return value


class BestRateQuery(BaseModel):
    room_type_id: uuid.UUID
    stay_start: date
    stay_end: date
    guest_count: int = Field(default=1, ge=1)
    promo_code: str | None = None
    currency: str | None = None
    split_allowed: bool = False


class CompareRatesQuery(BaseModel):
    room_type_id: uuid.UUID
    dates: list[date] = Field(min_length=1, max_length=366)
    guest_count: int = Field(default=1, ge=1)
    currency: str | None = None


class RatePlanResponse(BaseModel):
    id: uuid.UUID
    hotel_id: str
    room_type_id: uuid.UUID
    name: str
    type: str
    base_rate: Decimal
    base_currency: str
    valid_from: date
    valid_to: date
    day_of_week_rates: dict | None
    priority: int
    active: bool
    updated_at: datetime

    model_config = {"from_attributes": True}
