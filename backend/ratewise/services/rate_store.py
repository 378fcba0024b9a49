"""Rate store commands and the pricing-strategy snapshot read by the pricing engine."""

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ratewise.database import dialect_insert
from ratewise.models.rates import (
    DemandForecast,
    DynamicRule,
    PromoCode,
    RateOverride,
    RatePlan,
    RoomType,
    SeasonalRate,
)
from ratewise.schemas.rates import (
    DynamicRuleUpsert,
    PromoCodeCreate,
    RateOverrideCreate,
    RatePlanCreate,
    RatePlanUpdate,
    RoomTypeCreate,
    SeasonalRateCreate,
)
from ratewise.services.cache_service import TTLCache, pricing_memo
from ratewise.services.calendar import Clock, system_clock
from ratewise.services.currency_service import validate_currency
from ratewise.services.results import Conflict, CoreError, NotFound, Result, ValidationFailed

logger = logging.getLogger(__name__)

ROOM_TYPE_WIDE = "*"


# ─── Pricing-strategy snapshot ───
# Detached copies of the rows pricing needs, safe to share across sessions.


@dataclass(frozen=True)
class PlanInfo:
    id: uuid.UUID
    name: str
    type: str
    base_rate: Decimal
    base_currency: str
    valid_from: date
    valid_to: date
    day_of_week_rates: dict[str, Decimal]
    priority: int
    min_advance_days: int | None
    max_advance_days: int | None
    updated_at: datetime

    def covers(self, night: date) -> bool:
        # valid_to is the last sellable night
        return self.valid_from <= night <= self.valid_to


@dataclass(frozen=True)
class SeasonInfo:
    id: uuid.UUID
    season: str
    room_type_id: uuid.UUID | None
    start_date: date
    end_date: date
    rate: Decimal | None
    discount_pct: Decimal | None
    priority: int

    def covers(self, night: date) -> bool:
        return self.start_date <= night <= self.end_date


@dataclass(frozen=True)
class RuleInfo:
    rule_id: str
    name: str | None
    type: str
    priority: int
    conditions: dict
    mode: str
    value: Decimal


@dataclass(frozen=True)
class RoomTypeInfo:
    id: uuid.UUID
    code: str
    name: str
    max_occupancy: int
    base_rate: Decimal
    base_currency: str
    total_rooms: int
    timezone: str | None


@dataclass(frozen=True)
class PricingStrategy:
    room_type: RoomTypeInfo
    plans: list[PlanInfo] = field(default_factory=list)
    seasons: list[SeasonInfo] = field(default_factory=list)
    rules: list[RuleInfo] = field(default_factory=list)


def _plan_info(plan: RatePlan) -> PlanInfo:
    return PlanInfo(
        id=plan.id,
        name=plan.name,
        type=plan.type,
        base_rate=Decimal(plan.base_rate),
        base_currency=plan.base_currency,
        valid_from=plan.valid_from,
        valid_to=plan.valid_to,
        day_of_week_rates={k: Decimal(str(v)) for k, v in (plan.day_of_week_rates or {}).items()},
        priority=plan.priority,
        min_advance_days=plan.min_advance_days,
        max_advance_days=plan.max_advance_days,
        updated_at=plan.updated_at,
    )


def _rule_info(rule: DynamicRule) -> RuleInfo:
    adjustment = rule.adjustment or {}
    return RuleInfo(
        rule_id=rule.rule_id,
        name=rule.name,
        type=rule.type,
        priority=rule.priority,
        conditions=rule.conditions or {},
        mode=adjustment.get("mode", "multiply"),
        value=Decimal(str(adjustment.get("value", "1"))),
    )


def memo_tag(hotel_id: str, room_type_id: uuid.UUID | str) -> str:
    return f"plans:{hotel_id}:{room_type_id}"


def _decimal_json(values: dict[str, Decimal] | None) -> dict[str, str] | None:
    if values is None:
        return None
    return {k: str(v) for k, v in values.items()}


class RateStore:
    """Commands over rate plans, overrides, seasons, rules and promo codes.

    Every command runs in its own transaction on the given session and returns
    a Result; writes drop the memoised pricing strategy for the room type.
    """

    def __init__(self, memo: TTLCache | None = None, clock: Clock | None = None):
        self._memo = memo or pricing_memo
        self._clock = clock or system_clock

    async def _run(self, db: AsyncSession, command: Callable[[], Awaitable]) -> Result:
        try:
            value = await command()
            await db.commit()
        except CoreError as e:
            await db.rollback()
            logger.info(f"Rate store command rejected: {e}")
            return Result.from_error(e)
        return Result.ok(value)

    def invalidate(self, hotel_id: str, room_type_id: uuid.UUID | None = None):
        if room_type_id is None:
            return
        self._memo.invalidate_tag(memo_tag(hotel_id, room_type_id))

    def invalidate_hotel(self, hotel_id: str):
        self._memo.invalidate_tag(f"hotel:{hotel_id}")

    async def get_room_type(self, db: AsyncSession, hotel_id: str, room_type_id: uuid.UUID) -> RoomType:
        room_type = await db.get(RoomType, room_type_id)
        if room_type is None or room_type.hotel_id != hotel_id:
            raise NotFound(f"Room type {room_type_id} not found", room_type_id=str(room_type_id))
        return room_type

    async def list_room_types(self, db: AsyncSession, hotel_id: str) -> list[RoomType]:
        result = await db.execute(
            select(RoomType).where(RoomType.hotel_id == hotel_id, RoomType.active.is_(True)).order_by(RoomType.code)
        )
        return list(result.scalars().all())

    async def get_rate_plan(self, db: AsyncSession, hotel_id: str, plan_id: uuid.UUID, for_update: bool = False) -> RatePlan:
        stmt = select(RatePlan).where(RatePlan.id == plan_id, RatePlan.hotel_id == hotel_id)
        if for_update:
            stmt = stmt.with_for_update()
        plan = (await db.execute(stmt)).scalar_one_or_none()
        if plan is None:
            raise NotFound(f"Rate plan {plan_id} not found", rate_plan_id=str(plan_id))
        return plan

    async def _check_priority_overlap(self, db: AsyncSession, plan: RatePlan):
        """At most one enabled plan per (room type, type) may hold a priority over any night."""
        if not plan.active:
            return
        result = await db.execute(
            select(RatePlan.id, RatePlan.name).where(
                RatePlan.hotel_id == plan.hotel_id,
                RatePlan.room_type_id == plan.room_type_id,
                RatePlan.type == plan.type,
                RatePlan.priority == plan.priority,
                RatePlan.active.is_(True),
                RatePlan.id != plan.id,
                RatePlan.valid_from <= plan.valid_to,
                RatePlan.valid_to >= plan.valid_from,
            )
        )
        clash = result.first()
        if clash is not None:
            raise Conflict(
                f"Plan '{clash.name}' already holds priority {plan.priority} for overlapping dates",
                conflicting_plan_id=str(clash.id),
            )

    # ─── Room types ───

    async def create_room_type(self, db: AsyncSession, hotel_id: str, data: RoomTypeCreate) -> Result[RoomType]:
        async def command():
            existing = await db.execute(
                select(RoomType.id).where(RoomType.hotel_id == hotel_id, RoomType.code == data.code)
            )
            if existing.first() is not None:
                raise Conflict(f"Room type code '{data.code}' already exists", code=data.code)
            room_type = RoomType(
                hotel_id=hotel_id,
                code=data.code,
                name=data.name,
                max_occupancy=data.max_occupancy,
                base_rate=data.base_rate,
                base_currency=validate_currency(data.base_currency),
                total_rooms=data.total_rooms,
                timezone=data.timezone,
            )
            db.add(room_type)
            await db.flush()
            return room_type

        return await self._run(db, command)

    # ─── Rate plans ───

    async def create_rate_plan(self, db: AsyncSession, hotel_id: str, data: RatePlanCreate) -> Result[RatePlan]:
        async def command():
            await self.get_room_type(db, hotel_id, data.room_type_id)
            plan = RatePlan(
                id=uuid.uuid4(),
                hotel_id=hotel_id,
                room_type_id=data.room_type_id,
                name=data.name,
                type=data.type,
                base_rate=data.base_rate,
                base_currency=validate_currency(data.base_currency),
                valid_from=data.valid_from,
                valid_to=data.valid_to,
                day_of_week_rates=_decimal_json(data.day_of_week_rates),
                priority=data.priority,
                min_advance_days=data.min_advance_days,
                max_advance_days=data.max_advance_days,
                active=data.active,
                updated_at=self._clock.now(),
            )
            await self._check_priority_overlap(db, plan)
            db.add(plan)
            await db.flush()
            self.invalidate(hotel_id, data.room_type_id)
            logger.info(f"Created rate plan '{plan.name}' for {hotel_id}/{data.room_type_id}")
            return plan

        return await self._run(db, command)

    async def update_rate_plan(
        self, db: AsyncSession, hotel_id: str, plan_id: uuid.UUID, patch: RatePlanUpdate
    ) -> Result[RatePlan]:
        async def command():
            plan = await self.get_rate_plan(db, hotel_id, plan_id, for_update=True)
            changes = patch.model_dump(exclude_unset=True)
            if "base_currency" in changes and changes["base_currency"] is not None:
                changes["base_currency"] = validate_currency(changes["base_currency"])
            if "day_of_week_rates" in changes:
                changes["day_of_week_rates"] = _decimal_json(changes["day_of_week_rates"])
            for name, value in changes.items():
                if value is None and name not in ("day_of_week_rates", "min_advance_days", "max_advance_days"):
                    continue
                setattr(plan, name, value)
            if plan.valid_from >= plan.valid_to:
                raise ValidationFailed("valid_from must be before valid_to")
            await self._check_priority_overlap(db, plan)
            plan.updated_at = self._clock.now()
            await db.flush()
            self.invalidate(hotel_id, plan.room_type_id)
            return plan

        return await self._run(db, command)

    async def deactivate_rate_plan(self, db: AsyncSession, hotel_id: str, plan_id: uuid.UUID) -> Result[RatePlan]:
        async def command():
            plan = await self.get_rate_plan(db, hotel_id, plan_id, for_update=True)
            if plan.active:
                plan.active = False
                plan.updated_at = self._clock.now()
                await db.flush()
                self.invalidate(hotel_id, plan.room_type_id)
                logger.info(f"Deactivated rate plan '{plan.name}' ({plan.id})")
            return plan

        return await self._run(db, command)

    async def list_rate_plans(
        self, db: AsyncSession, hotel_id: str, room_type_id: uuid.UUID | None = None, active_only: bool = True
    ) -> list[RatePlan]:
        stmt = select(RatePlan).where(RatePlan.hotel_id == hotel_id)
        if room_type_id:
            stmt = stmt.where(RatePlan.room_type_id == room_type_id)
        if active_only:
            stmt = stmt.where(RatePlan.active.is_(True))
        result = await db.execute(stmt.order_by(RatePlan.priority.desc(), RatePlan.valid_from))
        return list(result.scalars().all())

    # ─── Overrides ───

    async def upsert_override(
        self,
        db: AsyncSession,
        hotel_id: str,
        room_type_id: uuid.UUID,
        rate_plan_id: uuid.UUID | None,
        day: date,
        rate: Decimal,
        currency: str,
        reason: str | None = None,
        approved_by: str | None = None,
    ):
        """Insert or replace the override for (room type, plan, date) inside the caller's transaction."""
        if rate < 0:
            raise ValidationFailed("Override rate must not be negative", rate=str(rate))
        now = self._clock.now()
        values = {
            "id": uuid.uuid4(),
            "hotel_id": hotel_id,
            "room_type_id": room_type_id,
            "rate_plan_id": rate_plan_id,
            "rate_plan_key": str(rate_plan_id) if rate_plan_id else ROOM_TYPE_WIDE,
            "date": day,
            "rate": rate,
            "currency": validate_currency(currency),
            "reason": reason,
            "approved_by": approved_by,
            "active": True,
            "created_at": now,
            "updated_at": now,
        }
        stmt = dialect_insert(db, RateOverride).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["hotel_id", "room_type_id", "rate_plan_key", "date"],
            set_={
                "rate": stmt.excluded.rate,
                "currency": stmt.excluded.currency,
                "reason": stmt.excluded.reason,
                "approved_by": stmt.excluded.approved_by,
                "active": True,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await db.execute(stmt)

    async def override_rate(self, db: AsyncSession, hotel_id: str, data: RateOverrideCreate) -> Result[RateOverride]:
        async def command():
            await self.get_room_type(db, hotel_id, data.room_type_id)
            if data.rate_plan_id is not None:
                plan = await self.get_rate_plan(db, hotel_id, data.rate_plan_id)
                if not plan.active:
                    raise Conflict(
                        f"Rate plan '{plan.name}' is deactivated", rate_plan_id=str(plan.id)
                    )
                if plan.room_type_id != data.room_type_id:
                    raise ValidationFailed("Rate plan belongs to a different room type")
            await self.upsert_override(
                db, hotel_id, data.room_type_id, data.rate_plan_id, data.date,
                data.rate, data.currency, data.reason, data.approved_by,
            )
            result = await db.execute(
                select(RateOverride).where(
                    RateOverride.hotel_id == hotel_id,
                    RateOverride.room_type_id == data.room_type_id,
                    RateOverride.rate_plan_key == (str(data.rate_plan_id) if data.rate_plan_id else ROOM_TYPE_WIDE),
                    RateOverride.date == data.date,
                ).execution_options(populate_existing=True)
            )
            return result.scalar_one()

        return await self._run(db, command)

    async def delete_rate_override(self, db: AsyncSession, hotel_id: str, override_id: uuid.UUID) -> Result[dict]:
        async def command():
            override = await db.get(RateOverride, override_id)
            if override is None or override.hotel_id != hotel_id:
                raise NotFound(f"Rate override {override_id} not found", override_id=str(override_id))
            room_type_id = override.room_type_id
            await db.delete(override)
            await db.flush()
            return {"deleted": str(override_id), "room_type_id": str(room_type_id), "date": override.date.isoformat()}

        return await self._run(db, command)

    async def overrides_for(
        self, db: AsyncSession, hotel_id: str, room_type_id: uuid.UUID, start: date, end: date
    ) -> list[RateOverride]:
        """Active overrides for nights in [start, end)."""
        result = await db.execute(
            select(RateOverride).where(
                RateOverride.hotel_id == hotel_id,
                RateOverride.room_type_id == room_type_id,
                RateOverride.active.is_(True),
                RateOverride.date >= start,
                RateOverride.date < end,
            )
        )
        return list(result.scalars().all())

    # ─── Seasonal rates, dynamic rules, promo codes ───

    async def create_seasonal_rate(
        self, db: AsyncSession, hotel_id: str, data: SeasonalRateCreate
    ) -> Result[SeasonalRate]:
        async def command():
            if data.room_type_id is not None:
                await self.get_room_type(db, hotel_id, data.room_type_id)
            season = SeasonalRate(
                hotel_id=hotel_id,
                room_type_id=data.room_type_id,
                season=data.season,
                start_date=data.start_date,
                end_date=data.end_date,
                rate=data.rate,
                discount_pct=data.discount_pct,
                priority=data.priority,
            )
            db.add(season)
            await db.flush()
            if data.room_type_id is None:
                self.invalidate_hotel(hotel_id)
            else:
                self.invalidate(hotel_id, data.room_type_id)
            return season

        return await self._run(db, command)

    async def upsert_dynamic_rule(
        self, db: AsyncSession, hotel_id: str, data: DynamicRuleUpsert
    ) -> Result[DynamicRule]:
        async def command():
            result = await db.execute(
                select(DynamicRule).where(DynamicRule.hotel_id == hotel_id, DynamicRule.rule_id == data.rule_id)
            )
            rule = result.scalar_one_or_none()
            if rule is None:
                rule = DynamicRule(hotel_id=hotel_id, rule_id=data.rule_id)
                db.add(rule)
            rule.name = data.name
            rule.type = data.type
            rule.priority = data.priority
            rule.conditions = data.conditions
            rule.adjustment = {"mode": data.adjustment.mode, "value": str(data.adjustment.value)}
            rule.room_type_ids = [str(rt) for rt in data.room_type_ids] if data.room_type_ids else None
            rule.active = data.active
            rule.updated_at = self._clock.now()
            await db.flush()
            # Rules may span room types
            self.invalidate_hotel(hotel_id)
            return rule

        return await self._run(db, command)

    async def create_promo_code(self, db: AsyncSession, hotel_id: str, data: PromoCodeCreate) -> Result[PromoCode]:
        async def command():
            code = data.code.strip().upper()
            existing = await db.execute(
                select(PromoCode.id).where(PromoCode.hotel_id == hotel_id, PromoCode.code == code)
            )
            if existing.first() is not None:
                raise Conflict(f"Promo code '{code}' already exists", code=code)
            if data.discount_type == "fixed" and not data.currency:
                raise ValidationFailed("Fixed promo codes need a currency")
            promo = PromoCode(
                hotel_id=hotel_id,
                code=code,
                discount_type=data.discount_type,
                value=data.value,
                currency=validate_currency(data.currency) if data.currency else None,
                min_stay_value=data.min_stay_value,
                min_nights=data.min_nights,
                valid_from=data.valid_from,
                valid_to=data.valid_to,
                max_uses=data.max_uses,
            )
            db.add(promo)
            await db.flush()
            return promo

        return await self._run(db, command)

    # ─── Reads for pricing ───

    async def pricing_strategy(
        self, db: AsyncSession, hotel_id: str, room_type_id: uuid.UUID, bypass_cache: bool = False
    ) -> PricingStrategy:
        """Room type, active plans, seasons and rules, memoised per (hotel, room type)."""
        key = f"{hotel_id}:{room_type_id}"
        if not bypass_cache:
            cached = self._memo.get(key, now=self._clock.now())
            if cached is not None:
                return cached

        room_type = await self.get_room_type(db, hotel_id, room_type_id)
        plans = await db.execute(
            select(RatePlan).where(
                RatePlan.hotel_id == hotel_id,
                RatePlan.room_type_id == room_type_id,
                RatePlan.active.is_(True),
            )
        )
        seasons = await db.execute(
            select(SeasonalRate).where(
                SeasonalRate.hotel_id == hotel_id,
                SeasonalRate.active.is_(True),
                (SeasonalRate.room_type_id == room_type_id) | (SeasonalRate.room_type_id.is_(None)),
            )
        )
        rules = await db.execute(
            select(DynamicRule).where(DynamicRule.hotel_id == hotel_id, DynamicRule.active.is_(True))
        )
        applicable_rules = [
            _rule_info(rule)
            for rule in rules.scalars().all()
            if not rule.room_type_ids or str(room_type_id) in rule.room_type_ids
        ]
        strategy = PricingStrategy(
            room_type=RoomTypeInfo(
                id=room_type.id,
                code=room_type.code,
                name=room_type.name,
                max_occupancy=room_type.max_occupancy,
                base_rate=Decimal(room_type.base_rate),
                base_currency=room_type.base_currency,
                total_rooms=room_type.total_rooms,
                timezone=room_type.timezone,
            ),
            plans=[_plan_info(p) for p in plans.scalars().all()],
            seasons=[
                SeasonInfo(
                    id=s.id,
                    season=s.season,
                    room_type_id=s.room_type_id,
                    start_date=s.start_date,
                    end_date=s.end_date,
                    rate=Decimal(s.rate) if s.rate is not None else None,
                    discount_pct=Decimal(s.discount_pct) if s.discount_pct is not None else None,
                    priority=s.priority,
                )
                for s in seasons.scalars().all()
            ],
            rules=sorted(applicable_rules, key=lambda r: -r.priority),
        )
        self._memo.put(
            key,
            strategy,
            tags={memo_tag(hotel_id, room_type_id), f"hotel:{hotel_id}"},
            now=self._clock.now(),
        )
        return strategy

    async def forecasts_for(
        self, db: AsyncSession, hotel_id: str, room_type_id: uuid.UUID, start: date, end: date
    ) -> dict[date, DemandForecast]:
        result = await db.execute(
            select(DemandForecast).where(
                DemandForecast.hotel_id == hotel_id,
                DemandForecast.room_type_id == room_type_id,
                DemandForecast.date >= start,
                DemandForecast.date < end,
            )
        )
        return {f.date: f for f in result.scalars().all()}


rate_store = RateStore()
