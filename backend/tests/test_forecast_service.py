from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from ratewise.models.events import EventEnvelope
from ratewise.models.rates import DemandForecast, RateOverride
from ratewise.models.reconciliation import ChannelBooking
from ratewise.services.alert_service import AlertService
from ratewise.services.availability_store import AvailabilityStore
from ratewise.services.cache_service import CacheService, TTLCache
from ratewise.services.currency_service import CurrencyService
from ratewise.services.event_bus import EventBus
from ratewise.services.exchange_rate_client import ExchangeRateClient
from ratewise.services.forecast_service import ForecastService, demand_level
from ratewise.services.rate_store import RateStore
from ratewise.services.results import ResultKind

from conftest import HOTEL, make_plan, make_room_type, make_rows

TODAY = date(2025, 7, 1)


@pytest.fixture
def forecasts(session_factory, memo, clock):
    return ForecastService(
        rates=RateStore(memo=memo, clock=clock),
        availability=AvailabilityStore(),
        currency=CurrencyService(
            session_factory=session_factory,
            provider=ExchangeRateClient(api_key=""),
            cache=TTLCache("test-fx", default_ttl=3600),
            shared_cache=CacheService(url=""),
            clock=clock,
        ),
        cache=CacheService(url=""),
        bus=EventBus(clock=clock, alerts=AlertService()),
        clock=clock,
    )


async def add_forecast(db, room_type, day: date, occupancy: str, elasticity: str, level: str = "high"):
    db.add(DemandForecast(
        hotel_id=HOTEL,
        room_type_id=room_type.id,
        date=day,
        demand_level=level,
        predicted_occupancy=Decimal(occupancy),
        elasticity=Decimal(elasticity),
        confidence=Decimal("0.9"),
        factors=[],
        computed_at=datetime(2025, 7, 1, tzinfo=timezone.utc),
    ))
    await db.commit()


# ─── Model ───


@pytest.mark.parametrize(
    "occupancy, level",
    [(0, "low"), (39.9, "low"), (40, "medium"), (64.9, "medium"), (65, "high"), (84.9, "high"), (85, "very_high")],
)
def test_demand_level_thresholds(occupancy, level):
    assert demand_level(occupancy) == level


def test_forecast_combines_pickup_weekday_and_season(forecasts):
    # Thursday in July, two days out
    result = forecasts.forecast(50.0, date(2025, 7, 3), TODAY)

    assert result["predicted_occupancy"] == 61.58
    assert result["demand_level"] == "medium"
    assert result["confidence"] == 0.9
    assert result["elasticity"] == -1.4
    assert any(f["name"] == "Peak Season" for f in result["factors"])


def test_forecast_weekend_is_a_positive_factor(forecasts):
    result = forecasts.forecast(20.0, date(2025, 7, 4), TODAY)

    [night] = [f for f in result["factors"] if f["name"] == "Stay Night"]
    assert night["impact"] == "positive"
    assert night["detail"].startswith("Friday")


def test_forecast_never_drops_below_current_occupancy(forecasts):
    # Sunday in November: both multipliers pull down
    result = forecasts.forecast(90.0, date(2025, 11, 2), TODAY)

    assert result["predicted_occupancy"] == 90.0
    assert result["demand_level"] == "very_high"


def test_low_confidence_uses_fallback_elasticity(forecasts):
    result = forecasts.forecast(10.0, date(2025, 10, 15), TODAY)

    assert result["confidence"] == 0.45
    assert result["elasticity"] == -1.2


# ─── Refresh ───


@pytest.mark.asyncio
async def test_refresh_stores_one_forecast_per_night(db, session_factory, forecasts):
    room_type = await make_room_type(db)
    await make_rows(db, room_type, TODAY, date(2025, 7, 3), sold_rooms=5)

    assert await forecasts.refresh_forecasts(db, HOTEL, horizon_days=3) == 3
    assert await forecasts.refresh_forecasts(db, HOTEL, horizon_days=3) == 3

    async with session_factory() as s:
        stored = (await s.execute(select(DemandForecast).order_by(DemandForecast.date))).scalars().all()
    assert [f.date for f in stored] == [date(2025, 7, 1), date(2025, 7, 2), date(2025, 7, 3)]
    assert all(f.demand_level == "medium" for f in stored)


# ─── Recommendations ───


@pytest.mark.asyncio
async def test_recommendations_follow_occupancy_gap_within_daily_change(db, forecasts):
    room_type = await make_room_type(db)
    await make_plan(db, room_type)
    await add_forecast(db, room_type, date(2025, 8, 1), "90", "-1.0")
    await add_forecast(db, room_type, date(2025, 8, 2), "30", "-2.0", level="low")

    result = await forecasts.recommend_rates(db, HOTEL, room_type.id, date(2025, 8, 1), date(2025, 8, 2))

    assert result.is_ok
    recs = result.value["recommendations"]
    assert [r["recommended_rate"] for r in recs] == ["120.00", "96.00"]
    assert [r["change_pct"] for r in recs] == ["20.0", "-4.0"]
    assert result.value["applied"] == 0


@pytest.mark.asyncio
async def test_recommendation_factor_is_capped(db, forecasts):
    room_type = await make_room_type(db)
    await make_plan(db, room_type)
    await add_forecast(db, room_type, date(2025, 8, 1), "100", "-0.1", level="very_high")

    result = await forecasts.recommend_rates(db, HOTEL, room_type.id, date(2025, 8, 1), date(2025, 8, 1))

    assert result.value["recommendations"][0]["recommended_rate"] == "300.00"


@pytest.mark.asyncio
async def test_applied_recommendations_become_overrides_and_an_update(db, session_factory, forecasts):
    room_type = await make_room_type(db)
    await make_plan(db, room_type)
    await add_forecast(db, room_type, date(2025, 8, 1), "90", "-1.0")
    await add_forecast(db, room_type, date(2025, 8, 2), "90", "-1.0")

    result = await forecasts.recommend_rates(
        db, HOTEL, room_type.id, date(2025, 8, 1), date(2025, 8, 2), apply=True
    )

    assert result.value["applied"] == 2
    async with session_factory() as s:
        overrides = (await s.execute(select(RateOverride))).scalars().all()
        [event] = (await s.execute(select(EventEnvelope))).scalars().all()
    assert sorted(o.rate for o in overrides) == [Decimal("120.00"), Decimal("120.00")]
    assert {o.reason for o in overrides} == {"dynamic_pricing"}
    assert (event.type, event.priority, len(event.keys)) == ("rate_update", 3, 2)


@pytest.mark.asyncio
async def test_recommendations_for_unknown_room_type(db, forecasts):
    room_type = await make_room_type(db, hotel_id="hotel-other")

    result = await forecasts.recommend_rates(db, HOTEL, room_type.id, date(2025, 8, 1), date(2025, 8, 2))

    assert result.kind == ResultKind.NOT_FOUND


@pytest.mark.asyncio
async def test_inverted_range_is_a_validation_error(db, forecasts):
    room_type = await make_room_type(db)

    result = await forecasts.recommend_rates(db, HOTEL, room_type.id, date(2025, 8, 2), date(2025, 8, 1))

    assert result.kind == ResultKind.VALIDATION_ERROR


# ─── Yield ───


@pytest.mark.asyncio
async def test_yield_metrics(db, forecasts):
    room_type = await make_room_type(db)
    await make_rows(db, room_type, date(2025, 9, 10), date(2025, 9, 11), sold_rooms=2)
    for ref, status in (("BK-1", "confirmed"), ("BK-2", "cancelled")):
        db.add(ChannelBooking(
            hotel_id=HOTEL,
            channel="booking_com",
            channel_booking_id=ref,
            room_type_id=room_type.id,
            check_in=date(2025, 9, 10),
            check_out=date(2025, 9, 12),
            rooms=2,
            amount=Decimal("300.00"),
            currency="USD",
            status=status,
        ))
    await db.commit()

    metrics = await forecasts.yield_metrics(db, HOTEL, date(2025, 9, 10), date(2025, 9, 11))

    assert metrics["room_nights_available"] == 20
    assert metrics["room_nights_sold"] == 4
    assert metrics["occupancy_pct"] == 20.0
    assert metrics["revenue"] == "300.00"
    assert metrics["adr"] == "75.00"
    assert metrics["revpar"] == "15.00"
    assert metrics["revenue_by_channel"] == {"booking_com": "300.00"}
