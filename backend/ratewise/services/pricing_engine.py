"""Pricing engine: best available rate for a stay.

Per night the base rate comes from the first source that applies:
1. Rate override (terminates precedence for the night)
2. Rate plan base, replaced by its day-of-week rate when defined
3. Seasonal rate (replaces) or seasonal discount/surcharge (scales)
4. Dynamic rules (descending priority, first match per rule type), clamped to 50-300%

Nights are converted to the quote currency and rounded once each, then summed and
run through the promo code, if any.
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from decimal import Decimal, localcontext

from sqlalchemy.ext.asyncio import AsyncSession

from ratewise.config import settings
from ratewise.data.currency import currency_decimals
from ratewise.models.availability import AvailabilityRow
from ratewise.models.rates import DemandForecast, RateOverride
from ratewise.services.availability_store import AvailabilityStore, availability_store
from ratewise.services.calendar import (
    Clock,
    hotel_today,
    nights_between,
    stay_nights,
    system_clock,
    to_wire_date,
    weekday_key,
)
from ratewise.services.currency_service import (
    DECIMAL_CONTEXT,
    CurrencyService,
    FxQuote,
    currency_service,
    quantize_for_wire,
    validate_currency,
)
from ratewise.services.promo_service import validate_promo
from ratewise.services.rate_store import PlanInfo, PricingStrategy, RateStore, RuleInfo, SeasonInfo, rate_store
from ratewise.services.results import CoreError, ErrorCode, NotFound, Result, ValidationFailed

logger = logging.getLogger(__name__)

DYNAMIC_FLOOR = Decimal("0.5")
DYNAMIC_CEILING = Decimal("3.0")

DEMAND_LEVELS = ("low", "medium", "high", "very_high")


@dataclass
class NightPrice:
    night: date
    source: str
    plan_id: uuid.UUID | None
    plan_name: str | None
    currency: str
    base: Decimal
    amount: Decimal  # before conversion, full precision
    converted: Decimal | None = None
    final: Decimal | None = None
    steps: list[dict] = field(default_factory=list)
    rules_applied: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "date": to_wire_date(self.night),
            "source": self.source,
            "plan_id": str(self.plan_id) if self.plan_id else None,
            "plan_name": self.plan_name,
            "source_currency": self.currency,
            "base": str(self.base),
            "amount": str(self.final) if self.final is not None else None,
            "steps": self.steps,
            "rules_applied": self.rules_applied,
        }


@dataclass
class Quote:
    final_rate: Decimal
    currency: str
    plan_name: str
    components: dict
    valid_until: datetime
    confidence: float
    nights: int
    total_before_promo: Decimal
    plan_id: uuid.UUID | None = None

    @property
    def average_nightly_rate(self) -> Decimal:
        return quantize_for_wire(self.total_before_promo / self.nights, currency_decimals(self.currency))

    def to_dict(self) -> dict:
        return {
            "final_rate": str(self.final_rate),
            "currency": self.currency,
            "plan_name": self.plan_name,
            "plan_id": str(self.plan_id) if self.plan_id else None,
            "components": self.components,
            "valid_until": self.valid_until.isoformat(),
            "confidence": self.confidence,
            "nights": self.nights,
            "total_before_promo": str(self.total_before_promo),
            "average_nightly_rate": str(self.average_nightly_rate),
        }


@dataclass
class StayContext:
    """Everything the per-night pricing needs, loaded once per stay."""

    hotel_id: str
    strategy: PricingStrategy
    start: date
    end: date
    today: date
    overrides: dict[date, list[RateOverride]]
    rows: dict[date, AvailabilityRow]
    forecasts: dict[date, DemandForecast]

    @property
    def nights(self) -> int:
        return nights_between(self.start, self.end)

    @property
    def lead_days(self) -> int:
        return (self.start - self.today).days


class PricingEngine:
    def __init__(
        self,
        store: RateStore | None = None,
        availability: AvailabilityStore | None = None,
        currency: CurrencyService | None = None,
        clock: Clock | None = None,
    ):
        self._store = store or rate_store
        self._availability = availability or availability_store
        self._currency = currency or currency_service
        self._clock = clock or system_clock

    # ─── Public operations ───

    async def best_rate(
        self,
        db: AsyncSession,
        hotel_id: str,
        room_type_id: uuid.UUID,
        stay_start: date,
        stay_end: date,
        guest_count: int = 1,
        promo_code: str | None = None,
        currency: str | None = None,
        split_allowed: bool = False,
    ) -> Result[Quote]:
        try:
            ctx = await self._load(db, hotel_id, room_type_id, stay_start, stay_end, guest_count, currency)
            nights = self._price_nights(ctx, split_allowed=split_allowed)
            quote = await self._finish(db, ctx, nights, promo_code, currency)
        except CoreError as e:
            logger.debug(f"best_rate {hotel_id}/{room_type_id} {stay_start}..{stay_end}: {e}")
            return Result.from_error(e)
        return Result.ok(quote)

    async def get_all_rates(
        self,
        db: AsyncSession,
        hotel_id: str,
        room_type_id: uuid.UUID,
        stay_start: date,
        stay_end: date,
        guest_count: int = 1,
        currency: str | None = None,
    ) -> Result[list[Quote]]:
        """One quote per plan that covers the whole stay, cheapest first."""
        try:
            ctx = await self._load(db, hotel_id, room_type_id, stay_start, stay_end, guest_count, currency)
            quotes = []
            for plan in ctx.strategy.plans:
                if not all(plan.covers(n) for n in stay_nights(stay_start, stay_end)):
                    continue
                if not self._bookable(plan, ctx):
                    continue
                nights = self._price_nights(ctx, forced_plan=plan)
                quotes.append(await self._finish(db, ctx, nights, None, currency))
        except CoreError as e:
            return Result.from_error(e)
        if not quotes:
            return Result.not_found("No rate plan covers the requested stay", ErrorCode.NO_RATE_PLAN)
        quotes.sort(key=lambda q: q.final_rate)
        return Result.ok(quotes)

    async def compare_rates(
        self,
        db: AsyncSession,
        hotel_id: str,
        room_type_id: uuid.UUID,
        dates: list[date],
        guest_count: int = 1,
        currency: str | None = None,
    ) -> dict[str, dict]:
        """One-night best rate for each date; failures are reported per date."""
        comparison = {}
        for day in sorted(set(dates)):
            result = await self.best_rate(
                db, hotel_id, room_type_id, day, day + timedelta(days=1), guest_count, currency=currency
            )
            comparison[to_wire_date(day)] = result.to_dict()
        return comparison

    # ─── Loading ───

    async def _load(
        self,
        db: AsyncSession,
        hotel_id: str,
        room_type_id: uuid.UUID,
        start: date,
        end: date,
        guest_count: int,
        currency: str | None,
    ) -> StayContext:
        if start >= end:
            raise ValidationFailed("stay_start must be before stay_end")
        if guest_count < 1:
            raise ValidationFailed("guest_count must be at least 1")
        if currency is not None:
            validate_currency(currency)

        strategy = await self._store.pricing_strategy(db, hotel_id, room_type_id)
        if guest_count > strategy.room_type.max_occupancy:
            raise ValidationFailed(
                f"{guest_count} guests exceed the maximum occupancy of {strategy.room_type.max_occupancy}",
                ErrorCode.EXCEEDS_OCCUPANCY,
                max_occupancy=strategy.room_type.max_occupancy,
            )

        overrides: dict[date, list[RateOverride]] = {}
        for override in await self._store.overrides_for(db, hotel_id, room_type_id, start, end):
            overrides.setdefault(override.date, []).append(override)

        # Departure day row carries the closed-to-departure flag
        rows = await self._availability.get_rows(
            db, hotel_id, room_type_id, start, end + timedelta(days=1)
        )
        forecasts = await self._store.forecasts_for(db, hotel_id, room_type_id, start, end)
        ctx = StayContext(
            hotel_id=hotel_id,
            strategy=strategy,
            start=start,
            end=end,
            today=hotel_today(strategy.room_type.timezone, self._clock.now()),
            overrides=overrides,
            rows=rows,
            forecasts=forecasts,
        )
        self._check_restrictions(ctx)
        return ctx

    def _check_restrictions(self, ctx: StayContext):
        def blackout(reason: str, night: date):
            raise ValidationFailed(
                f"Stay is not bookable: {reason.replace('_', ' ')} on {to_wire_date(night)}",
                ErrorCode.BLACKED_OUT,
                reason=reason,
                date=to_wire_date(night),
            )

        arrival = ctx.rows.get(ctx.start)
        if arrival is not None:
            if arrival.closed_to_arrival:
                blackout("closed_to_arrival", ctx.start)
            if ctx.nights < arrival.min_stay:
                blackout("min_stay", ctx.start)
            if ctx.nights > arrival.max_stay:
                blackout("max_stay", ctx.start)
        departure = ctx.rows.get(ctx.end)
        if departure is not None and departure.closed_to_departure:
            blackout("closed_to_departure", ctx.end)
        for night in stay_nights(ctx.start, ctx.end):
            row = ctx.rows.get(night)
            if row is None:
                continue
            if row.stop_sell:
                blackout("stop_sell", night)
            if row.available_rooms <= 0:
                blackout("sold_out", night)

    # ─── Per-night pricing ───

    def _bookable(self, plan: PlanInfo, ctx: StayContext) -> bool:
        if plan.min_advance_days is not None and ctx.lead_days < plan.min_advance_days:
            return False
        if plan.max_advance_days is not None and ctx.lead_days > plan.max_advance_days:
            return False
        return True

    def _select_plan(self, ctx: StayContext, night: date) -> PlanInfo | None:
        candidates = [p for p in ctx.strategy.plans if p.covers(night) and self._bookable(p, ctx)]
        if not candidates:
            return None
        # Highest priority; ties go to the most recently updated plan
        return max(candidates, key=lambda p: (p.priority, p.updated_at))

    def _override_for(self, ctx: StayContext, night: date, plan: PlanInfo | None) -> RateOverride | None:
        matches = ctx.overrides.get(night) or []
        if plan is not None:
            for override in matches:
                if override.rate_plan_id == plan.id:
                    return override
        for override in matches:
            if override.rate_plan_id is None:
                return override
        return None

    def _price_nights(
        self, ctx: StayContext, split_allowed: bool = False, forced_plan: PlanInfo | None = None
    ) -> list[NightPrice]:
        if not ctx.strategy.plans and not ctx.overrides:
            raise NotFound(
                f"No active rate plan for room type {ctx.strategy.room_type.code}", ErrorCode.NO_RATE_PLAN
            )

        priced: list[NightPrice] = []
        uncovered: list[str] = []
        for night in stay_nights(ctx.start, ctx.end):
            plan = forced_plan or self._select_plan(ctx, night)
            override = self._override_for(ctx, night, plan)
            if override is not None:
                priced.append(NightPrice(
                    night=night,
                    source="override",
                    plan_id=plan.id if plan else None,
                    plan_name=plan.name if plan else None,
                    currency=override.currency,
                    base=Decimal(override.rate),
                    amount=Decimal(override.rate),
                    steps=[{"step": "override", "rate": str(override.rate), "reason": override.reason}],
                ))
                continue
            if plan is None:
                uncovered.append(to_wire_date(night))
                continue
            priced.append(self._price_from_plan(ctx, night, plan))

        if uncovered:
            if not any(p.covers(n) for p in ctx.strategy.plans for n in stay_nights(ctx.start, ctx.end)):
                raise NotFound("No rate plan is valid for the requested stay", ErrorCode.NO_RATE_PLAN)
            raise ValidationFailed(
                "Rate plan expires during the stay", ErrorCode.PLAN_EXPIRED, uncovered_nights=uncovered
            )

        plan_ids = {n.plan_id for n in priced if n.source != "override" and n.plan_id}
        if len(plan_ids) > 1 and not split_allowed:
            raise ValidationFailed(
                "Stay spans more than one rate plan; request a split quote",
                ErrorCode.PLAN_EXPIRED,
                plan_ids=sorted(str(p) for p in plan_ids),
            )
        return priced

    def _price_from_plan(self, ctx: StayContext, night: date, plan: PlanInfo) -> NightPrice:
        price = NightPrice(
            night=night,
            source="plan",
            plan_id=plan.id,
            plan_name=plan.name,
            currency=plan.base_currency,
            base=plan.base_rate,
            amount=plan.base_rate,
            steps=[{"step": "plan", "rate": str(plan.base_rate)}],
        )
        with localcontext(DECIMAL_CONTEXT):
            dow_rate = plan.day_of_week_rates.get(weekday_key(night))
            if dow_rate is not None:
                price.amount = dow_rate
                price.source = "day_of_week"
                price.steps.append({"step": "day_of_week", "rate": str(dow_rate)})

            season = self._season_for(ctx, night)
            if season is not None:
                if season.rate is not None:
                    price.amount = season.rate
                else:
                    price.amount = price.amount * (Decimal(1) - season.discount_pct / Decimal(100))
                price.source = "seasonal"
                price.steps.append({
                    "step": "seasonal",
                    "season": season.season,
                    "rate": str(season.rate) if season.rate is not None else None,
                    "discount_pct": str(season.discount_pct) if season.discount_pct is not None else None,
                })

            pre_dynamic = price.amount
            adjusted = self._apply_rules(ctx, night, price)
            if price.rules_applied:
                floor = pre_dynamic * DYNAMIC_FLOOR
                ceiling = pre_dynamic * DYNAMIC_CEILING
                clamped = min(max(adjusted, floor), ceiling)
                if clamped != adjusted:
                    price.steps.append({"step": "clamp", "from": str(adjusted), "to": str(clamped)})
                price.amount = clamped
                price.source = "dynamic"
        return price

    def _season_for(self, ctx: StayContext, night: date) -> SeasonInfo | None:
        candidates = [s for s in ctx.strategy.seasons if s.covers(night)]
        if not candidates:
            return None
        # Room-type specific seasons beat hotel-wide ones
        return max(candidates, key=lambda s: (s.room_type_id is not None, s.priority, s.start_date))

    def _apply_rules(self, ctx: StayContext, night: date, price: NightPrice) -> Decimal:
        amount = price.amount
        seen_types: set[str] = set()
        for rule in ctx.strategy.rules:
            if rule.type in seen_types:
                continue
            factor = self._rule_matches(ctx, night, rule)
            if factor is None:
                continue
            seen_types.add(rule.type)
            before = amount
            if rule.mode == "multiply":
                amount = amount * factor
            elif rule.mode == "add":
                amount = amount + factor
            elif rule.mode == "cap":
                amount = min(amount, factor)
            price.rules_applied.append(rule.rule_id)
            price.steps.append({
                "step": "dynamic",
                "rule": rule.rule_id,
                "type": rule.type,
                "mode": rule.mode,
                "value": str(factor),
                "from": str(before),
                "to": str(amount),
            })
        return amount

    def _occupancy(self, ctx: StayContext, night: date) -> Decimal:
        row = ctx.rows.get(night)
        if row is not None:
            return Decimal(str(row.occupancy_pct))
        forecast = ctx.forecasts.get(night)
        if forecast is not None:
            return Decimal(forecast.predicted_occupancy)
        return Decimal(0)

    def _rule_matches(self, ctx: StayContext, night: date, rule: RuleInfo) -> Decimal | None:
        """Adjustment value for the night, or None if the rule does not apply."""
        cond = rule.conditions
        if "start_date" in cond and night < date.fromisoformat(cond["start_date"]):
            return None
        if "end_date" in cond and night > date.fromisoformat(cond["end_date"]):
            return None

        if rule.type == "occupancy":
            occupancy = self._occupancy(ctx, night)
            if occupancy < Decimal(str(cond.get("min_occupancy", 0))):
                return None
            if occupancy > Decimal(str(cond.get("max_occupancy", 100))):
                return None
            return rule.value

        if rule.type == "demand":
            forecast = ctx.forecasts.get(night)
            if forecast is None:
                return None
            levels = cond.get("levels")
            if levels is None:
                minimum = cond.get("min_level", "high")
                levels = DEMAND_LEVELS[DEMAND_LEVELS.index(minimum):]
            return rule.value if forecast.demand_level in levels else None

        if rule.type == "day_of_week":
            return rule.value if weekday_key(night) in cond.get("days", []) else None

        if rule.type == "lead_time":
            lead = ctx.lead_days
            if lead < int(cond.get("min_days", 0)) or lead > int(cond.get("max_days", 10_000)):
                return None
            return rule.value

        if rule.type == "length_of_stay":
            if ctx.nights < int(cond.get("min_nights", 1)) or ctx.nights > int(cond.get("max_nights", 10_000)):
                return None
            return rule.value

        if rule.type == "elasticity":
            # Price moves against the occupancy gap, damped by demand elasticity
            forecast = ctx.forecasts.get(night)
            elasticity = (
                Decimal(forecast.elasticity) if forecast is not None
                else Decimal(str(settings.pricing_fallback_elasticity))
            )
            if elasticity == 0:
                return None
            target = Decimal(str(cond.get("target_occupancy", 70)))
            gap = (self._occupancy(ctx, night) - target) / Decimal(100)
            factor = Decimal(1) + gap / abs(elasticity) * rule.value
            if rule.mode == "multiply":
                return factor
            return None

        return None

    # ─── Conversion, aggregation, promo ───

    async def _finish(
        self,
        db: AsyncSession,
        ctx: StayContext,
        nights: list[NightPrice],
        promo_code: str | None,
        currency: str | None,
    ) -> Quote:
        target = validate_currency(currency) if currency else ctx.strategy.room_type.base_currency
        decimals = currency_decimals(target)
        fx_used: dict[str, FxQuote] = {}
        total = Decimal(0)
        for night in nights:
            conversion = await self._currency.convert(night.amount, night.currency, target)
            if night.currency != target:
                fx_used[night.currency] = conversion.fx
            night.converted = conversion.amount
            night.final = quantize_for_wire(conversion.amount, decimals)
            total += night.final

        components: dict = {
            "source": self._overall_source(nights),
            "nights": [n.to_dict() for n in nights],
            "fx": {code: fx.to_dict() for code, fx in fx_used.items()},
        }

        final = total
        if promo_code:
            outcome = await validate_promo(db, ctx.hotel_id, promo_code, total, ctx.start, ctx.end)
            if outcome.applicable and outcome.discount_type == "fixed" and outcome.currency and outcome.currency != target:
                promo_value = (await self._currency.convert(outcome.value, outcome.currency, target)).amount
                outcome = replace(outcome, value=promo_value, currency=target)
            final = quantize_for_wire(outcome.apply(total), decimals)
            components["promo"] = outcome.to_dict()

        plan_names = [n.plan_name for n in nights if n.plan_name]
        plan_ids = {n.plan_id for n in nights if n.plan_id}
        confidence = self._confidence(ctx, nights, fx_used, split=len(plan_ids) > 1)
        now = self._clock.now()
        return Quote(
            final_rate=final,
            currency=target,
            plan_name=plan_names[0] if len(set(plan_names)) == 1 else ("Rate override" if not plan_names else "Split stay"),
            plan_id=next(iter(plan_ids)) if len(plan_ids) == 1 else None,
            components=components,
            valid_until=now + timedelta(minutes=settings.pricing_quote_ttl_minutes),
            confidence=confidence,
            nights=len(nights),
            total_before_promo=total,
        )

    def _overall_source(self, nights: list[NightPrice]) -> str:
        sources = {n.source for n in nights}
        return sources.pop() if len(sources) == 1 else "mixed"

    def _confidence(self, ctx: StayContext, nights: list[NightPrice], fx_used: dict[str, FxQuote], split: bool) -> float:
        confidence = 1.0
        if split:
            confidence *= 0.9
        if any(fx.stale for fx in fx_used.values()):
            confidence *= 0.8
        dynamic_nights = [n.night for n in nights if n.source == "dynamic"]
        forecast_conf = [float(ctx.forecasts[d].confidence) for d in dynamic_nights if d in ctx.forecasts]
        if forecast_conf:
            confidence *= min(forecast_conf)
        return round(confidence, 3)


pricing_engine = PricingEngine()
