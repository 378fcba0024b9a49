"""Rate store models: room types, plans, seasonal rates, overrides and dynamic rules."""

import uuid
import datetime as dt
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from ratewise.database import Base, JSONType, UTCDateTime
from ratewise.services.calendar import utcnow


class RoomType(Base):
    __tablename__ = "room_types"
    __table_args__ = (UniqueConstraint("hotel_id", "code", name="uq_room_types_hotel_code"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    hotel_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    code: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    max_occupancy: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    base_rate: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    base_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    total_rooms: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    timezone: Mapped[str | None] = mapped_column(String(64))
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime, default=utcnow)


class RatePlan(Base):
    __tablename__ = "rate_plans"
    __table_args__ = (
        CheckConstraint("valid_from < valid_to", name="ck_rate_plans_validity"),
        CheckConstraint("priority >= 0 AND priority <= 10", name="ck_rate_plans_priority"),
        Index("idx_rate_plans_lookup", "hotel_id", "room_type_id", "active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    hotel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    room_type_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("room_types.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[str] = mapped_column(String(30), nullable=False, default="bar")  # bar | corporate | package | promotional | non_refundable
    base_rate: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    base_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    valid_from: Mapped[dt.date] = mapped_column(Date, nullable=False)
    valid_to: Mapped[dt.date] = mapped_column(Date, nullable=False)
    day_of_week_rates: Mapped[dict | None] = mapped_column(JSONType)  # {"fri": "140.00", ...}
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    min_advance_days: Mapped[int | None] = mapped_column(Integer)
    max_advance_days: Mapped[int | None] = mapped_column(Integer)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


class SeasonalRate(Base):
    __tablename__ = "seasonal_rates"
    __table_args__ = (
        CheckConstraint("(rate IS NULL) <> (discount_pct IS NULL)", name="ck_seasonal_rates_one_of"),
        CheckConstraint("start_date <= end_date", name="ck_seasonal_rates_dates"),
        Index("idx_seasonal_rates_lookup", "hotel_id", "start_date", "end_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    hotel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    room_type_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("room_types.id", ondelete="CASCADE")
    )
    season: Mapped[str] = mapped_column(String(50), nullable=False)  # peak | high | shoulder | low | custom
    start_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    end_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    rate: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    # Positive lowers the base, negative is a surcharge: -20 means +20%
    discount_pct: Mapped[Decimal | None] = mapped_column(Numeric(6, 2))
    priority: Mapped[int] = mapped_column(Integer, default=0)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime, default=utcnow)


class RateOverride(Base):
    __tablename__ = "rate_overrides"
    __table_args__ = (
        UniqueConstraint(
            "hotel_id", "room_type_id", "rate_plan_key", "date", name="uq_rate_overrides_key"
        ),
        CheckConstraint("rate >= 0", name="ck_rate_overrides_rate"),
        Index("idx_rate_overrides_lookup", "hotel_id", "room_type_id", "date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    hotel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    room_type_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("room_types.id", ondelete="CASCADE"), nullable=False
    )
    rate_plan_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("rate_plans.id", ondelete="CASCADE")
    )
    # rate_plan_id as text ("*" for room-type wide) so the unique key also covers NULL plans
    rate_plan_key: Mapped[str] = mapped_column(String(36), nullable=False, default="*")
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    approved_by: Mapped[str | None] = mapped_column(String(100))
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


class DynamicRule(Base):
    __tablename__ = "dynamic_rules"
    __table_args__ = (
        UniqueConstraint("hotel_id", "rule_id", name="uq_dynamic_rules_rule"),
        Index("idx_dynamic_rules_hotel", "hotel_id", "active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    hotel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_id: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str | None] = mapped_column(String(200))
    type: Mapped[str] = mapped_column(String(30), nullable=False)  # occupancy | demand | day_of_week | lead_time | length_of_stay | elasticity
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conditions: Mapped[dict] = mapped_column(JSONType, default=dict)
    adjustment: Mapped[dict] = mapped_column(JSONType, nullable=False)  # {"mode": "multiply"|"add"|"cap", "value": "1.10"}
    room_type_ids: Mapped[list | None] = mapped_column(JSONType)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


class PromoCode(Base):
    __tablename__ = "promo_codes"
    __table_args__ = (UniqueConstraint("hotel_id", "code", name="uq_promo_codes_code"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    hotel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    discount_type: Mapped[str] = mapped_column(String(20), nullable=False)  # percentage | fixed
    value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str | None] = mapped_column(String(3))
    min_stay_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    min_nights: Mapped[int | None] = mapped_column(Integer)
    valid_from: Mapped[dt.date] = mapped_column(Date, nullable=False)
    valid_to: Mapped[dt.date] = mapped_column(Date, nullable=False)
    max_uses: Mapped[int | None] = mapped_column(Integer)
    uses: Mapped[int] = mapped_column(Integer, default=0)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime, default=utcnow)


class DemandForecast(Base):
    __tablename__ = "demand_forecasts"
    __table_args__ = (
        UniqueConstraint("hotel_id", "room_type_id", "date", name="uq_demand_forecasts_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    hotel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    room_type_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("room_types.id", ondelete="CASCADE"), nullable=False
    )
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    demand_level: Mapped[str] = mapped_column(String(20), nullable=False)  # low | medium | high | very_high
    predicted_occupancy: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    elasticity: Mapped[Decimal] = mapped_column(Numeric(6, 3), nullable=False)
    confidence: Mapped[Decimal] = mapped_column(Numeric(4, 3), nullable=False)
    factors: Mapped[list | None] = mapped_column(JSONType)
    computed_at: Mapped[dt.datetime] = mapped_column(UTCDateTime, default=utcnow)
