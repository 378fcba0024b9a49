from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from ratewise.models.alerts import SupervisionAlert
from ratewise.models.availability import AvailabilityRow
from ratewise.models.events import EventEnvelope
from ratewise.models.rates import RatePlan
from ratewise.services.alert_service import AlertService
from ratewise.services.availability_store import AvailabilityStore
from ratewise.services.cache_service import CacheService, TTLCache
from ratewise.services.channel_registry import ChannelRegistry
from ratewise.services.currency_service import CurrencyService
from ratewise.services.distributor import ChannelDistributor
from ratewise.services.event_bus import EventBus
from ratewise.services.exchange_rate_client import ExchangeRateClient
from ratewise.services.forecast_service import ForecastService
from ratewise.services.rate_store import RateStore
from ratewise.services.scheduler_jobs import SchedulerJobs

from conftest import HOTEL, NOW, make_channel, make_plan, make_room_type


@pytest.fixture
def jobs(session_factory, memo, clock):
    bus = EventBus(clock=clock, alerts=AlertService())
    rates = RateStore(memo=memo, clock=clock)
    availability = AvailabilityStore()
    registry = ChannelRegistry(TTLCache("test-channels", default_ttl=900), clock, AlertService())
    currency = CurrencyService(
        session_factory=session_factory,
        provider=ExchangeRateClient(api_key=""),
        cache=TTLCache("test-fx", default_ttl=3600),
        shared_cache=CacheService(url=""),
        clock=clock,
    )
    return SchedulerJobs(
        session_factory=session_factory,
        rates=rates,
        availability=availability,
        registry=registry,
        forecasts=ForecastService(rates, availability, currency, CacheService(url=""), bus, clock),
        dist=ChannelDistributor(session_factory=session_factory, bus=bus, registry=registry, currency=currency),
        bus=bus,
        alerts=AlertService(),
        clock=clock,
    )


# ─── Rate plan rollover ───


@pytest.mark.asyncio
async def test_rollover_deactivates_expired_plans_and_pushes_a_week(db, session_factory, jobs):
    room_type = await make_room_type(db)
    expired = await make_plan(db, room_type, name="Spring", valid_from=date(2025, 3, 1), valid_to=date(2025, 6, 30))
    current = await make_plan(db, room_type, name="Summer", valid_from=date(2025, 7, 1), valid_to=date(2025, 9, 30))

    assert await jobs.rate_plan_rollover() == {HOTEL: 1}

    async with session_factory() as s:
        assert (await s.get(RatePlan, expired.id)).active is False
        assert (await s.get(RatePlan, current.id)).active is True
        [event] = (await s.execute(select(EventEnvelope))).scalars().all()
    assert event.type == "rate_update"
    assert event.payload["source"] == "rate_plan_rollover"
    assert (event.payload["start"], event.payload["end"]) == ("2025-07-01", "2025-07-07")
    assert len(event.keys) == 7

    # Nothing left to roll over
    assert await jobs.rate_plan_rollover() == {HOTEL: 0}


@pytest.mark.asyncio
async def test_rollover_uses_the_hotel_calendar(db, session_factory, clock, jobs):
    # 05:00 UTC on 1 July is still 30 June in Honolulu
    clock.set(datetime(2025, 7, 1, 5, 0, tzinfo=timezone.utc))
    room_type = await make_room_type(db, timezone="Pacific/Honolulu")
    plan = await make_plan(db, room_type, valid_to=date(2025, 6, 30))

    assert await jobs.rate_plan_rollover() == {HOTEL: 0}
    async with session_factory() as s:
        assert (await s.get(RatePlan, plan.id)).active is True


@pytest.mark.asyncio
async def test_job_already_running_for_hotel_is_skipped(db, jobs):
    room_type = await make_room_type(db)
    await make_plan(db, room_type, valid_to=date(2025, 6, 30))

    async with jobs._locks.get(f"rate_plan_rollover:{HOTEL}"):
        assert await jobs.rate_plan_rollover() == {}

    assert await jobs.rate_plan_rollover() == {HOTEL: 1}


# ─── Credentials ───


@pytest.mark.asyncio
async def test_credential_scan_alerts_once_per_channel(db, session_factory, jobs):
    await make_channel(db, "booking_com", credential_expires_at=NOW + timedelta(days=5))
    await make_channel(db, "expedia", credential_expires_at=NOW + timedelta(days=60))

    assert await jobs.credential_expiry_scan() == 1
    assert await jobs.credential_expiry_scan() == 0

    async with session_factory() as s:
        [alert] = (await s.execute(select(SupervisionAlert))).scalars().all()
    assert (alert.type, alert.reference_id, alert.severity) == ("credential_expiring", "booking_com", "critical")
    assert alert.details["days_left"] == 5


# ─── Availability + forecasts ───


@pytest.mark.asyncio
async def test_availability_rollout_fills_the_horizon_once(db, session_factory, jobs):
    await make_room_type(db)

    first = await jobs.availability_rollout()
    second = await jobs.availability_rollout()

    assert first == {HOTEL: 90}
    assert second == {HOTEL: 0}
    async with session_factory() as s:
        earliest = await s.scalar(select(func.min(AvailabilityRow.date)))
    assert earliest == date(2025, 7, 1)


@pytest.mark.asyncio
async def test_forecast_refresh_runs_per_hotel(db, jobs):
    await make_room_type(db)
    await make_room_type(db, hotel_id="hotel-second")

    results = await jobs.forecast_refresh()

    assert results == {HOTEL: 90, "hotel-second": 90}


@pytest.mark.asyncio
async def test_event_drain_with_empty_outbox(jobs):
    assert await jobs.event_drain() == {"leased": 0}
