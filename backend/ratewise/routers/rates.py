"""Rates router: room types, rate plans, overrides, pricing rules and quotes."""

import logging
import uuid
from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ratewise.database import get_db
from ratewise.dependencies import rate_limit, raise_core, unwrap
from ratewise.models.rates import RoomType
from ratewise.schemas.availability import BulkRatesRequest
from ratewise.schemas.rates import (
    BestRateQuery,
    CompareRatesQuery,
    DynamicRuleUpsert,
    PromoCodeCreate,
    RateOverrideCreate,
    RatePlanCreate,
    RatePlanResponse,
    RatePlanUpdate,
    RoomTypeCreate,
    SeasonalRateCreate,
)
from ratewise.services.batch_writer import batch_writer
from ratewise.services.forecast_service import forecast_service
from ratewise.services.pricing_engine import pricing_engine
from ratewise.services.rate_store import rate_store
from ratewise.services.results import CoreError

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(rate_limit)])


def _room_type_dict(rt: RoomType) -> dict:
    return {
        "id": str(rt.id),
        "code": rt.code,
        "name": rt.name,
        "max_occupancy": rt.max_occupancy,
        "base_rate": str(rt.base_rate),
        "base_currency": rt.base_currency,
        "total_rooms": rt.total_rooms,
        "timezone": rt.timezone,
        "active": rt.active,
    }


# ─── Room types ───


@router.post("/{hotel_id}/room-types", status_code=201)
async def create_room_type(hotel_id: str, req: RoomTypeCreate, db: AsyncSession = Depends(get_db)):
    room_type = unwrap(await rate_store.create_room_type(db, hotel_id, req))
    return _room_type_dict(room_type)


@router.get("/{hotel_id}/room-types")
async def list_room_types(hotel_id: str, db: AsyncSession = Depends(get_db)):
    room_types = await rate_store.list_room_types(db, hotel_id)
    return {"room_types": [_room_type_dict(rt) for rt in room_types], "count": len(room_types)}


# ─── Rate plans ───


@router.post("/{hotel_id}/rate-plans", status_code=201, response_model=RatePlanResponse)
async def create_rate_plan(hotel_id: str, req: RatePlanCreate, db: AsyncSession = Depends(get_db)):
    return unwrap(await rate_store.create_rate_plan(db, hotel_id, req))


@router.get("/{hotel_id}/rate-plans", response_model=list[RatePlanResponse])
async def list_rate_plans(
    hotel_id: str,
    room_type_id: uuid.UUID | None = None,
    active_only: bool = True,
    db: AsyncSession = Depends(get_db),
):
    return await rate_store.list_rate_plans(db, hotel_id, room_type_id, active_only)


@router.patch("/{hotel_id}/rate-plans/{plan_id}", response_model=RatePlanResponse)
async def update_rate_plan(
    hotel_id: str, plan_id: uuid.UUID, req: RatePlanUpdate, db: AsyncSession = Depends(get_db)
):
    return unwrap(await rate_store.update_rate_plan(db, hotel_id, plan_id, req))


@router.delete("/{hotel_id}/rate-plans/{plan_id}", response_model=RatePlanResponse)
async def deactivate_rate_plan(hotel_id: str, plan_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    """Plans are deactivated, never deleted; existing overrides keep their history."""
    return unwrap(await rate_store.deactivate_rate_plan(db, hotel_id, plan_id))


# ─── Overrides, seasons, rules, promos ───


@router.post("/{hotel_id}/overrides", status_code=201)
async def override_rate(hotel_id: str, req: RateOverrideCreate, db: AsyncSession = Depends(get_db)):
    override = unwrap(await rate_store.override_rate(db, hotel_id, req))
    return {
        "id": str(override.id),
        "room_type_id": str(override.room_type_id),
        "rate_plan_id": str(override.rate_plan_id) if override.rate_plan_id else None,
        "date": override.date.isoformat(),
        "rate": str(override.rate),
        "currency": override.currency,
        "reason": override.reason,
    }


@router.delete("/{hotel_id}/overrides/{override_id}")
async def delete_rate_override(hotel_id: str, override_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    return unwrap(await rate_store.delete_rate_override(db, hotel_id, override_id))


@router.post("/{hotel_id}/seasonal-rates", status_code=201)
async def create_seasonal_rate(hotel_id: str, req: SeasonalRateCreate, db: AsyncSession = Depends(get_db)):
    season = unwrap(await rate_store.create_seasonal_rate(db, hotel_id, req))
    return {"id": str(season.id), "season": season.season, "start_date": season.start_date.isoformat(),
            "end_date": season.end_date.isoformat()}


@router.put("/{hotel_id}/dynamic-rules")
async def upsert_dynamic_rule(hotel_id: str, req: DynamicRuleUpsert, db: AsyncSession = Depends(get_db)):
    rule = unwrap(await rate_store.upsert_dynamic_rule(db, hotel_id, req))
    return {"id": str(rule.id), "rule_id": rule.rule_id, "type": rule.type, "active": rule.active}


@router.post("/{hotel_id}/promo-codes", status_code=201)
async def create_promo_code(hotel_id: str, req: PromoCodeCreate, db: AsyncSession = Depends(get_db)):
    promo = unwrap(await rate_store.create_promo_code(db, hotel_id, req))
    return {"id": str(promo.id), "code": promo.code, "discount_type": promo.discount_type, "value": str(promo.value)}


# ─── Quotes ───


@router.post("/{hotel_id}/rates/best")
async def best_rate(hotel_id: str, req: BestRateQuery, db: AsyncSession = Depends(get_db)):
    quote = unwrap(await pricing_engine.best_rate(
        db, hotel_id, req.room_type_id, req.stay_start, req.stay_end,
        guest_count=req.guest_count, promo_code=req.promo_code,
        currency=req.currency, split_allowed=req.split_allowed,
    ))
    return quote.to_dict()


@router.post("/{hotel_id}/rates/all")
async def all_rates(hotel_id: str, req: BestRateQuery, db: AsyncSession = Depends(get_db)):
    quotes = unwrap(await pricing_engine.get_all_rates(
        db, hotel_id, req.room_type_id, req.stay_start, req.stay_end, req.guest_count, req.currency
    ))
    return {"quotes": [q.to_dict() for q in quotes], "count": len(quotes)}


@router.post("/{hotel_id}/rates/compare")
async def compare_rates(hotel_id: str, req: CompareRatesQuery, db: AsyncSession = Depends(get_db)):
    return await pricing_engine.compare_rates(db, hotel_id, req.room_type_id, req.dates, req.guest_count, req.currency)


@router.post("/{hotel_id}/rates/bulk")
async def bulk_update_rates(hotel_id: str, req: BulkRatesRequest):
    try:
        result = await batch_writer.bulk_update_rates(hotel_id, req.updates, req.approved_by)
    except CoreError as e:
        raise_core(e)
    return result.to_dict()


# ─── Forecasts + yield ───


@router.post("/{hotel_id}/forecasts/refresh")
async def refresh_forecasts(hotel_id: str, horizon_days: int | None = Query(default=None, ge=1, le=365),
                            db: AsyncSession = Depends(get_db)):
    count = await forecast_service.refresh_forecasts(db, hotel_id, horizon_days)
    return {"hotel_id": hotel_id, "forecasts": count}


@router.get("/{hotel_id}/rates/recommendations")
async def recommend_rates(
    hotel_id: str,
    room_type_id: uuid.UUID,
    start: date,
    end: date,
    apply: bool = False,
    db: AsyncSession = Depends(get_db),
):
    return unwrap(await forecast_service.recommend_rates(db, hotel_id, room_type_id, start, end, apply=apply))


@router.get("/{hotel_id}/yield")
async def yield_metrics(
    hotel_id: str, start: date, end: date, currency: str | None = None, db: AsyncSession = Depends(get_db)
):
    try:
        return await forecast_service.yield_metrics(db, hotel_id, start, end, currency)
    except CoreError as e:
        raise_core(e)
