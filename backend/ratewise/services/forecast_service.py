"""Demand forecast service: parametric occupancy model for future stay dates.

Uses a layered approach:
1. Pickup curve: share of still-unsold rooms expected to sell before the date
2. Day-of-week multiplier: weekend vs weekday demand
3. Seasonality: peak/shoulder/off-peak by month
4. Demand level drives elasticity (busy dates are less price sensitive)

Works from day 1 with no booking history. The pricing engine reads the stored
forecasts for occupancy and elasticity rules; recommend_rates turns them into
suggested nightly rates that can be written back as overrides.
"""

import logging
import uuid
from collections import defaultdict
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ratewise.config import settings
from ratewise.data.currency import currency_decimals
from ratewise.database import dialect_insert
from ratewise.models.rates import DemandForecast
from ratewise.models.reconciliation import ChannelBooking
from ratewise.services.availability_store import AvailabilityStore, availability_store
from ratewise.services.cache_service import CacheService, cache_service
from ratewise.services.calendar import (
    Clock,
    date_range,
    hotel_today,
    stay_nights,
    system_clock,
    to_wire_date,
    weekday_key,
)
from ratewise.services.currency_service import CurrencyService, currency_service, quantize_for_wire
from ratewise.services.event_bus import EventBus, event_bus, event_key
from ratewise.services.rate_store import PricingStrategy, RateStore, rate_store
from ratewise.services.results import CoreError, Result, ValidationFailed

logger = logging.getLogger(__name__)

# Lead-time pickup curve: share of the remaining rooms expected to sell
PICKUP_CURVE = {
    # (min_days, max_days): (pickup, label)
    (0, 3): (0.05, "last_minute"),
    (4, 7): (0.12, "short_lead"),
    (8, 14): (0.22, "short_lead"),
    (15, 30): (0.35, "core_window"),
    (31, 60): (0.45, "core_window"),
    (61, 90): (0.55, "early"),
    (91, 365): (0.60, "very_early"),
}

# Day-of-week stay multipliers (1=Mon, 7=Sun)
DOW_MULTIPLIER = {
    1: 0.95,  # Monday
    2: 0.97,
    3: 0.98,
    4: 1.02,
    5: 1.12,  # Friday
    6: 1.15,  # Saturday
    7: 0.90,  # Sunday night is the quietest
}

SEASON_BY_MONTH = {
    1: "off_peak", 2: "off_peak", 3: "shoulder", 4: "shoulder",
    5: "shoulder", 6: "peak", 7: "peak", 8: "peak",
    9: "shoulder", 10: "shoulder", 11: "off_peak", 12: "peak",
}

SEASON_MULTIPLIERS = {
    "peak": 1.15,
    "shoulder": 1.03,
    "off_peak": 0.88,
}

ELASTICITY_BY_DEMAND = {
    "low": -1.8,
    "medium": -1.4,
    "high": -1.0,
    "very_high": -0.7,
}

TARGET_OCCUPANCY = 70.0


def demand_level(occupancy: float) -> str:
    if occupancy < 40:
        return "low"
    if occupancy < 65:
        return "medium"
    if occupancy < 85:
        return "high"
    return "very_high"


class ForecastService:
    """Parametric demand forecast plus rate recommendations built on it."""

    def __init__(
        self,
        rates: RateStore | None = None,
        availability: AvailabilityStore | None = None,
        currency: CurrencyService | None = None,
        cache: CacheService | None = None,
        bus: EventBus | None = None,
        clock: Clock | None = None,
    ):
        self._rates = rates or rate_store
        self._availability = availability or availability_store
        self._currency = currency or currency_service
        self._cache = cache or cache_service
        self._bus = bus or event_bus
        self._clock = clock or system_clock

    def forecast(self, current_occupancy: float, stay_date: date, today: date) -> dict:
        """Forecast final occupancy for one stay date.

        Args:
            current_occupancy: Percent of rooms sold or blocked today
            stay_date: Night being forecast
            today: Hotel-local date the forecast is made on

        Returns:
            {
                "predicted_occupancy": float,  # 0-100
                "demand_level": "low" | "medium" | "high" | "very_high",
                "elasticity": float,           # negative
                "confidence": float,           # 0-1
                "factors": [{"name": str, "impact": "positive" | "negative" | "neutral", "detail": str}],
            }
        """
        lead = max((stay_date - today).days, 0)
        factors = []

        # 1. Pickup still to come
        pickup, window = self._pickup(lead)
        expected = current_occupancy + (100 - current_occupancy) * pickup
        factors.append({
            "name": "Booking Window",
            "impact": "neutral",
            "detail": f"{lead} days out ({window}): ~{pickup * 100:.0f}% of unsold rooms usually pick up",
        })

        # 2. Day-of-week
        dow = stay_date.isoweekday()
        dow_mult = DOW_MULTIPLIER.get(dow, 1.0)
        if dow_mult > 1.02:
            factors.append({
                "name": "Stay Night",
                "impact": "positive",
                "detail": f"{stay_date.strftime('%A')} nights run ~{(dow_mult - 1) * 100:.0f}% above average demand",
            })
        elif dow_mult < 0.98:
            factors.append({
                "name": "Stay Night",
                "impact": "negative",
                "detail": f"{stay_date.strftime('%A')} nights run ~{(1 - dow_mult) * 100:.0f}% below average demand",
            })

        # 3. Seasonality
        season = SEASON_BY_MONTH[stay_date.month]
        season_mult = SEASON_MULTIPLIERS[season]
        if season != "shoulder":
            factors.append({
                "name": "Peak Season" if season == "peak" else "Off-Peak Season",
                "impact": "positive" if season == "peak" else "negative",
                "detail": f"{stay_date.strftime('%B')} is {season.replace('_', '-')}",
            })

        predicted = max(min(expected * dow_mult * season_mult, 100.0), current_occupancy)
        level = demand_level(predicted)

        # 4. Confidence narrows as the date approaches
        if lead <= 7:
            confidence = 0.9
        elif lead <= 30:
            confidence = 0.75
        elif lead <= 60:
            confidence = 0.6
        else:
            confidence = 0.45

        elasticity = ELASTICITY_BY_DEMAND[level] if confidence >= 0.5 else settings.pricing_fallback_elasticity

        return {
            "predicted_occupancy": round(predicted, 2),
            "demand_level": level,
            "elasticity": elasticity,
            "confidence": confidence,
            "factors": factors,
        }

    def _pickup(self, lead: int) -> tuple[float, str]:
        for (lo, hi), value in PICKUP_CURVE.items():
            if lo <= lead <= hi:
                return value
        return 0.60, "very_early"

    # ─── Refresh ───

    async def refresh_forecasts(self, db: AsyncSession, hotel_id: str, horizon_days: int | None = None) -> int:
        """Recompute and store forecasts for every room type over the horizon."""
        horizon = horizon_days or settings.horizon_days
        now = self._clock.now()
        count = 0
        for room_type in await self._rates.list_room_types(db, hotel_id):
            today = hotel_today(room_type.timezone, now)
            end = today + timedelta(days=horizon)
            rows = await self._availability.get_rows(db, hotel_id, room_type.id, today, end)
            for day in stay_nights(today, end):
                row = rows.get(day)
                occupancy = row.occupancy_pct if row is not None else 0.0
                result = self.forecast(occupancy, day, today)
                stmt = dialect_insert(db, DemandForecast).values(
                    id=uuid.uuid4(),
                    hotel_id=hotel_id,
                    room_type_id=room_type.id,
                    date=day,
                    demand_level=result["demand_level"],
                    predicted_occupancy=Decimal(str(result["predicted_occupancy"])),
                    elasticity=Decimal(str(result["elasticity"])),
                    confidence=Decimal(str(result["confidence"])),
                    factors=result["factors"],
                    computed_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["hotel_id", "room_type_id", "date"],
                    set_={
                        "demand_level": stmt.excluded.demand_level,
                        "predicted_occupancy": stmt.excluded.predicted_occupancy,
                        "elasticity": stmt.excluded.elasticity,
                        "confidence": stmt.excluded.confidence,
                        "factors": stmt.excluded.factors,
                        "computed_at": stmt.excluded.computed_at,
                    },
                )
                await db.execute(stmt)
                await self._cache.set_forecast(hotel_id, str(room_type.id), to_wire_date(day), {
                    k: v for k, v in result.items() if k != "factors"
                })
                count += 1
        await db.commit()
        logger.info(f"Refreshed {count} demand forecasts for {hotel_id} ({horizon} days)")
        return count

    # ─── Recommendations ───

    async def recommend_rates(
        self,
        db: AsyncSession,
        hotel_id: str,
        room_type_id: uuid.UUID,
        start: date,
        end: date,
        apply: bool = False,
    ) -> Result[dict]:
        """Recommended nightly rates for [start, end] from forecast occupancy and elasticity.

        Rates stay within 50%-300% of the plan base and move at most the configured
        percentage from one night to the next. With ``apply`` they are written as
        rate overrides and pushed to channels.
        """
        try:
            if end < start:
                raise ValidationFailed("end must not be before start")
            strategy = await self._rates.pricing_strategy(db, hotel_id, room_type_id)
            forecasts = await self._rates.forecasts_for(db, hotel_id, room_type_id, start, end + timedelta(days=1))
            rows = await self._availability.get_rows(db, hotel_id, room_type_id, start, end + timedelta(days=1))
            today = hotel_today(strategy.room_type.timezone, self._clock.now())
            currency = strategy.room_type.base_currency
            decimals = currency_decimals(currency)
            max_change = Decimal(str(settings.pricing_max_daily_change_pct)) / 100

            recommendations = []
            previous: Decimal | None = None
            for day in date_range(start, end):
                base, base_currency = self._base_rate(strategy, day)
                if base_currency != currency:
                    base = (await self._currency.convert(base, base_currency, currency)).amount
                stored = forecasts.get(day)
                if stored is not None:
                    occupancy = float(stored.predicted_occupancy)
                    elasticity = float(stored.elasticity)
                    level = stored.demand_level
                    confidence = float(stored.confidence)
                else:
                    row = rows.get(day)
                    computed = self.forecast(row.occupancy_pct if row is not None else 0.0, day, today)
                    occupancy = computed["predicted_occupancy"]
                    elasticity = computed["elasticity"]
                    level = computed["demand_level"]
                    confidence = computed["confidence"]

                gap = Decimal(str(occupancy - TARGET_OCCUPANCY)) / 100
                factor = Decimal(1) + gap / abs(Decimal(str(elasticity or settings.pricing_fallback_elasticity)))
                factor = min(max(factor, Decimal("0.5")), Decimal("3.0"))
                recommended = base * factor
                if previous is not None and previous > 0:
                    recommended = min(max(recommended, previous * (1 - max_change)), previous * (1 + max_change))
                recommended = quantize_for_wire(recommended, decimals)
                previous = recommended

                change = ((recommended - base) / base * 100) if base else Decimal(0)
                recommendations.append({
                    "date": to_wire_date(day),
                    "base_rate": str(quantize_for_wire(base, decimals)),
                    "recommended_rate": str(recommended),
                    "change_pct": str(change.quantize(Decimal("0.1"))),
                    "demand_level": level,
                    "predicted_occupancy": occupancy,
                    "confidence": confidence,
                })

            applied = 0
            if apply and recommendations:
                for rec in recommendations:
                    await self._rates.upsert_override(
                        db, hotel_id, room_type_id, None, date.fromisoformat(rec["date"]),
                        Decimal(rec["recommended_rate"]), currency,
                        reason="dynamic_pricing", approved_by="forecast",
                    )
                    applied += 1
                await self._bus.publish(
                    db,
                    "rate_update",
                    hotel_id,
                    {
                        "source": "dynamic_pricing",
                        "start": to_wire_date(start),
                        "end": to_wire_date(end),
                        "roomTypeIds": [str(room_type_id)],
                    },
                    keys=[event_key(room_type_id, d) for d in date_range(start, end)],
                    priority=3,
                )
                await db.commit()
                logger.info(f"Applied {applied} dynamic rates for {hotel_id}/{room_type_id}")
        except CoreError as e:
            await db.rollback()
            return Result.from_error(e)

        return Result.ok({
            "room_type_id": str(room_type_id),
            "currency": currency,
            "recommendations": recommendations,
            "applied": applied,
        })

    def _base_rate(self, strategy: PricingStrategy, day: date) -> tuple[Decimal, str]:
        """Highest-priority plan covering the night, else the room type's base rate."""
        covering = [p for p in strategy.plans if p.covers(day)]
        if not covering:
            return strategy.room_type.base_rate, strategy.room_type.base_currency
        plan = max(covering, key=lambda p: (p.priority, p.updated_at))
        return plan.day_of_week_rates.get(weekday_key(day), plan.base_rate), plan.base_currency

    # ─── Yield metrics ───

    async def yield_metrics(
        self, db: AsyncSession, hotel_id: str, start: date, end: date, currency: str | None = None
    ) -> dict:
        """Occupancy, ADR and RevPAR for the nights [start, end]."""
        if end < start:
            raise ValidationFailed("end must not be before start")
        rows = await self._availability.list_range(db, hotel_id, start, end)
        available = sum(r.total_rooms for r in rows)
        occupied = sum(r.sold_rooms for r in rows)

        room_types = await self._rates.list_room_types(db, hotel_id)
        target = currency or (room_types[0].base_currency if room_types else "USD")
        decimals = currency_decimals(target)

        result = await db.execute(
            select(ChannelBooking).where(
                ChannelBooking.hotel_id == hotel_id,
                ChannelBooking.status != "cancelled",
                ChannelBooking.check_in <= end,
                ChannelBooking.check_out > start,
                ChannelBooking.amount.is_not(None),
            )
        )
        revenue = Decimal(0)
        nights_sold = 0
        by_channel: dict[str, Decimal] = defaultdict(Decimal)
        for booking in result.scalars().all():
            stay = list(stay_nights(booking.check_in, booking.check_out))
            inside = [n for n in stay if start <= n <= end]
            if not stay or not inside:
                continue
            amount = Decimal(booking.amount) * len(inside) / len(stay)
            if booking.currency and booking.currency != target:
                amount = (await self._currency.convert(amount, booking.currency, target)).amount
            revenue += amount
            by_channel[booking.channel] += amount
            nights_sold += len(inside) * booking.rooms

        adr = revenue / nights_sold if nights_sold else Decimal(0)
        revpar = revenue / available if available else Decimal(0)
        return {
            "start": to_wire_date(start),
            "end": to_wire_date(end),
            "currency": target,
            "room_nights_available": available,
            "room_nights_sold": occupied,
            "occupancy_pct": round(occupied / available * 100, 2) if available else 0.0,
            "revenue": str(quantize_for_wire(revenue, decimals)),
            "adr": str(quantize_for_wire(adr, decimals)),
            "revpar": str(quantize_for_wire(revpar, decimals)),
            "revenue_by_channel": {k: str(quantize_for_wire(v, decimals)) for k, v in by_channel.items()},
        }


forecast_service = ForecastService()
