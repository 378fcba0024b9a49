import uuid
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator, model_validator

from ratewise.schemas.rates import CurrencyCode

ADAPTERS = ("booking_com", "expedia", "airbnb", "agoda", "generic")
SYNC_FLAGS = ("rate_update", "availability_update", "channel_modification", "booking_sync")


class CurrencyConfigIn(BaseModel):
    code: CurrencyCode
    markup: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    rounding: str = "nearest"
    conversion_method: str = "live"
    fixed_rate: Decimal | None = Field(default=None, gt=0)
    channel_currency: CurrencyCode | None = None
    market: str | None = None
    precision: int | None = Field(default=None, ge=0, le=4)

    @field_validator("rounding")
    @classmethod
    def _rounding(cls, value: str) -> str:
        if value not in ("up", "down", "nearest", "none"):
            raise ValueError("rounding must be up, down, nearest or none")
        return value

    @field_validator("conversion_method")
    @classmethod
    def _method(cls, value: str) -> str:
        if value not in ("live", "daily_cached", "fixed"):
            raise ValueError("conversion_method must be live, daily_cached or fixed")
        return value

    @model_validator(mode="after")
    def _fixed_needs_rate(self):
        if self.conversion_method == "fixed" and self.fixed_rate is None:
            raise ValueError("fixed conversion requires fixed_rate")
        return self


class ChannelConfigUpsert(BaseModel):
    channel_id: str = Field(min_length=2, max_length=50)
    channel_name: str | None = None
    adapter: str | None = None
    hotel_timezone: str | None = None
    credentials: dict | None = None
    backup_credentials: dict | None = None
    credential_expires_at: datetime | None = None
    endpoints: dict[str, str] = Field(default_factory=dict)
    supported_currencies: list[CurrencyConfigIn] = Field(default_factory=list)
    sync_flags: list[str] = Field(default_factory=lambda: ["rate_update", "availability_update"])
    timeout_ms: int | None = Field(default=None, ge=100, le=120000)
    retry_policy: dict | None = None
    max_concurrency: int | None = Field(default=None, ge=1, le=64)
    active: bool = True

    @field_validator("adapter")
    @classmethod
    def _adapter(cls, value: str | None) -> str | None:
        if value is not None and value not in ADAPTERS:
            raise ValueError(f"adapter must be one of {', '.join(ADAPTERS)}")
        return value

    @field_validator("sync_flags")
    @classmethod
    def _flags(cls, value: list[str]) -> list[str]:
        unknown = [flag for flag in value if flag not in SYNC_FLAGS]
        if unknown:
            raise ValueError(f"unknown sync flags: {', '.join(unknown)}")
        return value


class CredentialRotate(BaseModel):
    credentials: dict
    expires_at: datetime | None = None
    backup_credentials: dict | None = None


class ChannelRate(BaseModel):
    room_type_id: uuid.UUID
    rate_plan_id: uuid.UUID | None = None
    date: date
    amount: Decimal = Field(ge=0)
    currency: CurrencyCode


class DistributeRatesRequest(BaseModel):
    rates: list[ChannelRate] = Field(min_length=1)
    priority: int = Field(default=3, ge=1, le=5)
