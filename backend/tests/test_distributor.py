import asyncio
import base64
import json
from datetime import date, timedelta
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select

from ratewise.config import settings
from ratewise.models.alerts import SupervisionAlert
from ratewise.models.channels import ChannelCall, ChannelConfig
from ratewise.models.events import EventEnvelope
from ratewise.services.alert_service import AlertService
from ratewise.services.availability_store import AvailabilityStore
from ratewise.services.cache_service import CacheService, TTLCache
from ratewise.services.channel_registry import ChannelRegistry, ChannelView
from ratewise.services.channels import AdapterError, WireRate, get_adapter
from ratewise.services.channels.base import SignedJsonMixin, wire_amount
from ratewise.services.currency_service import CurrencyConfig, CurrencyService
from ratewise.services.distributor import ChannelDistributor, call_outcome, retry_after_ms
from ratewise.services.event_bus import EventBus, event_key
from ratewise.services.exchange_rate_client import ExchangeRateClient
from ratewise.services.pricing_engine import PricingEngine
from ratewise.services.rate_store import RateStore

from conftest import HOTEL, NOW, make_channel, make_plan, make_room_type, make_rows

DAY = date(2025, 8, 1)


class FakeChannels:
    """MockTransport handler: status per host and path, every request recorded."""

    def __init__(self, default: int = 200):
        self.default = default
        self.statuses: dict[str, int] = {}
        self.headers: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.respond = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.respond is not None:
            return self.respond(request)
        key = f"{request.url.host}{request.url.path}"
        return httpx.Response(
            self.statuses.get(key, self.default),
            headers=self.headers.get(key, {}),
            json={"ok": True},
        )

    def calls_to(self, host: str, path: str = "/rates") -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host == host and r.url.path == path]


@pytest.fixture
def fake():
    return FakeChannels()


@pytest.fixture
def bus(clock):
    return EventBus(clock=clock, alerts=AlertService())


@pytest_asyncio.fixture
async def distributor(session_factory, memo, clock, bus, fake):
    currency = CurrencyService(
        session_factory=session_factory,
        provider=ExchangeRateClient(api_key=""),
        cache=TTLCache("test-fx", default_ttl=3600),
        shared_cache=CacheService(url=""),
        clock=clock,
    )
    dist = ChannelDistributor(
        session_factory=session_factory,
        bus=bus,
        registry=ChannelRegistry(TTLCache("test-channels", default_ttl=900), clock, AlertService()),
        pricing=PricingEngine(RateStore(memo=memo, clock=clock), AvailabilityStore(), currency, clock),
        availability=AvailabilityStore(),
        currency=currency,
        alerts=AlertService(),
        transport=httpx.MockTransport(fake),
    )
    yield dist
    await dist.close()


async def priced_room(db):
    room_type = await make_room_type(db)
    await make_plan(db, room_type)
    return room_type


async def publish_rates(db, bus, room_type, day: date = DAY, priority: int = 3) -> EventEnvelope:
    envelope = await bus.publish(
        db,
        "rate_update",
        HOTEL,
        {"source": "test", "start": day.isoformat(), "end": day.isoformat(), "roomTypeIds": [str(room_type.id)]},
        keys=[event_key(room_type.id, day)],
        priority=priority,
    )
    await db.commit()
    return envelope


async def fetch(session_factory, model, id):
    async with session_factory() as s:
        return await s.get(model, id)


async def channel(session_factory, channel_id: str = "booking_com") -> ChannelConfig:
    async with session_factory() as s:
        result = await s.execute(
            select(ChannelConfig).where(ChannelConfig.hotel_id == HOTEL, ChannelConfig.channel_id == channel_id)
        )
        return result.scalar_one()


async def alert_types(session_factory) -> list[str]:
    async with session_factory() as s:
        result = await s.execute(select(SupervisionAlert.type).order_by(SupervisionAlert.type))
        return list(result.scalars().all())


# ─── Ordering + delivery ───


@pytest.mark.asyncio
async def test_superseded_update_sends_once_per_channel(db, session_factory, clock, bus, distributor, fake):
    room_type = await priced_room(db)
    await make_channel(db, "booking_com")
    await make_channel(db, "expedia")

    first = await publish_rates(db, bus, room_type, priority=3)
    clock.advance(1)
    second = await publish_rates(db, bus, room_type, priority=1)

    summary = await distributor.drain_once()

    assert summary == {"leased": 1, "succeeded": 1}
    assert len(fake.calls_to("booking_com.test")) == 1
    assert len(fake.calls_to("expedia.test")) == 1
    older = await fetch(session_factory, EventEnvelope, first.id)
    assert (older.status, older.reason) == ("succeeded", "superseded")
    newer = await fetch(session_factory, EventEnvelope, second.id)
    assert newer.status == "succeeded"
    assert newer.channel_state["booking_com"]["status"] == "succeeded"


@pytest.mark.asyncio
async def test_rate_body_carries_the_best_rate(db, bus, distributor, fake):
    room_type = await make_room_type(db)
    plan = await make_plan(db, room_type)
    await make_channel(db)
    await publish_rates(db, bus, room_type)

    await distributor.drain_once()

    request = fake.calls_to("booking_com.test")[0]
    assert request.headers["Authorization"] == "Bearer primary-key"
    body = json.loads(request.content)
    assert body["hotelId"] == HOTEL
    assert body["rates"] == [{
        "date": "2025-08-01",
        "roomTypeId": str(room_type.id),
        "ratePlanId": str(plan.id),
        "currency": "USD",
        "amount": "100.00",
    }]


@pytest.mark.asyncio
async def test_fixed_currency_channel_gets_converted_rates(db, session_factory, bus, distributor, fake):
    room_type = await priced_room(db)
    await make_channel(
        db,
        supported_currencies=[{"code": "EUR", "markup": "5", "conversion_method": "fixed", "fixed_rate": "0.90"}],
    )
    envelope = await publish_rates(db, bus, room_type)

    await distributor.drain_once()

    body = json.loads(fake.calls_to("booking_com.test")[0].content)
    assert body["rates"][0]["currency"] == "EUR"
    assert body["rates"][0]["amount"] == "94.50"
    stored = await fetch(session_factory, EventEnvelope, envelope.id)
    assert stored.channel_state["booking_com"]["currencies"] == {"EUR": "succeeded"}


@pytest.mark.asyncio
async def test_retry_resends_only_to_failed_channels(db, session_factory, clock, bus, distributor, fake):
    room_type = await priced_room(db)
    await make_channel(db, "booking_com")
    await make_channel(db, "expedia")
    fake.statuses["expedia.test/rates"] = 503
    envelope = await publish_rates(db, bus, room_type)

    assert await distributor.drain_once() == {"leased": 1, "pending": 1}

    fake.statuses.clear()
    clock.advance(hours=1)
    assert await distributor.drain_once() == {"leased": 1, "succeeded": 1}

    assert len(fake.calls_to("booking_com.test")) == 1
    assert len(fake.calls_to("expedia.test")) == 2
    stored = await fetch(session_factory, EventEnvelope, envelope.id)
    assert stored.channel_state["booking_com"]["attempts"] == 1
    assert stored.channel_state["expedia"]["attempts"] == 2


async def publish_two_nights(db, bus, room_type) -> EventEnvelope:
    envelope = await bus.publish(
        db,
        "rate_update",
        HOTEL,
        {
            "source": "test",
            "start": DAY.isoformat(),
            "end": (DAY + timedelta(days=1)).isoformat(),
            "roomTypeIds": [str(room_type.id)],
        },
        keys=[event_key(room_type.id, DAY), event_key(room_type.id, DAY + timedelta(days=1))],
    )
    await db.commit()
    return envelope


@pytest.mark.asyncio
async def test_unhealthy_channel_does_not_hold_back_healthy_ones(db, session_factory, clock, bus, distributor, fake):
    room_type = await priced_room(db)
    await make_channel(db, "booking_com", connection_status="unhealthy", consecutive_failures=3)
    await make_channel(db, "expedia")

    first = await publish_two_nights(db, bus, room_type)
    assert await distributor.drain_once() == {"leased": 1, "pending": 1}

    clock.advance(1)
    second = await publish_rates(db, bus, room_type)
    assert await distributor.drain_once() == {"leased": 1, "pending": 1}

    assert len(fake.calls_to("expedia.test")) == 2
    assert fake.calls_to("booking_com.test") == []
    for event_id in (first.id, second.id):
        stored = await fetch(session_factory, EventEnvelope, event_id)
        assert stored.reason == "held:booking_com"
        assert stored.channel_state["expedia"]["status"] == "succeeded"
        assert stored.channel_state["booking_com"]["status"] == "held"


@pytest.mark.asyncio
async def test_channel_gets_a_key_in_order_while_others_move_on(db, session_factory, clock, bus, distributor, fake):
    room_type = await priced_room(db)
    await make_channel(db, "booking_com")
    await make_channel(db, "expedia")
    fake.statuses["booking_com.test/rates"] = 503

    first = await publish_two_nights(db, bus, room_type)
    assert await distributor.drain_once() == {"leased": 1, "pending": 1}

    clock.advance(1)
    second = await publish_rates(db, bus, room_type)
    assert await distributor.drain_once() == {"leased": 1, "pending": 1}

    waiting = await fetch(session_factory, EventEnvelope, second.id)
    assert waiting.reason == "queued:booking_com"
    assert waiting.attempts == 0
    assert waiting.channel_state["expedia"]["status"] == "succeeded"
    assert len(fake.calls_to("expedia.test")) == 2
    assert len(fake.calls_to("booking_com.test")) == 1

    fake.statuses.clear()
    clock.advance(hours=1)
    assert await distributor.drain_once() == {"leased": 1, "succeeded": 1}
    assert await distributor.drain_once() == {"leased": 1, "succeeded": 1}

    # booking_com saw both nights of the first event before the second one
    nights_sent = [len(json.loads(r.content)["rates"]) for r in fake.calls_to("booking_com.test")]
    assert nights_sent == [2, 2, 1]
    assert len(fake.calls_to("expedia.test")) == 2
    assert (await fetch(session_factory, EventEnvelope, first.id)).status == "succeeded"


@pytest.mark.asyncio
async def test_channel_failing_with_503_goes_dead_then_recovers_after_health_check(
    db, session_factory, clock, bus, distributor, fake
):
    room_type = await priced_room(db)
    await make_channel(db)
    fake.statuses["booking_com.test/rates"] = 503
    envelope = await publish_rates(db, bus, room_type)

    for _ in range(8):
        await distributor.drain_once()
        clock.advance(hours=1)

    dead = await fetch(session_factory, EventEnvelope, envelope.id)
    assert dead.status == "dead"
    assert dead.attempts == 8
    assert len(fake.calls_to("booking_com.test")) == 8
    config = await channel(session_factory)
    assert config.connection_status == "unhealthy"
    assert config.consecutive_failures == 8
    assert await alert_types(session_factory) == ["channel_unhealthy", "event_dead"]

    # New work is parked while the channel is unhealthy
    held = await publish_rates(db, bus, room_type, day=DAY + timedelta(days=1))
    assert await distributor.drain_once() == {"leased": 1, "pending": 1}
    assert len(fake.calls_to("booking_com.test")) == 8
    parked = await fetch(session_factory, EventEnvelope, held.id)
    assert (parked.reason, parked.priority) == ("held:booking_com", 5)

    fake.statuses.clear()
    async with session_factory() as s:
        assert await distributor.probe_unhealthy(s) == {f"{HOTEL}/booking_com": True}
    released = await fetch(session_factory, EventEnvelope, held.id)
    assert (released.reason, released.priority) == (None, 3)
    assert (await channel(session_factory)).connection_status == "connected"

    assert await distributor.drain_once() == {"leased": 1, "succeeded": 1}


@pytest.mark.asyncio
async def test_failed_health_check_keeps_channel_unhealthy(db, session_factory, distributor, fake):
    await make_channel(db, connection_status="unhealthy", consecutive_failures=3)
    fake.statuses["booking_com.test/health"] = 500

    async with session_factory() as s:
        assert await distributor.probe_unhealthy(s) == {f"{HOTEL}/booking_com": False}
    assert (await channel(session_factory)).connection_status == "unhealthy"


# ─── Response classification ───


@pytest.mark.asyncio
async def test_auth_failure_switches_to_backup_credentials(db, session_factory, bus, distributor, fake):
    room_type = await priced_room(db)
    await make_channel(db, backup_credentials={"api_key": "backup-key"})
    envelope = await publish_rates(db, bus, room_type)

    def respond(request: httpx.Request) -> httpx.Response:
        if request.headers["Authorization"] == "Bearer primary-key":
            return httpx.Response(401, text="expired key")
        return httpx.Response(200, json={"ok": True})

    fake.respond = respond

    assert await distributor.drain_once() == {"leased": 1, "succeeded": 1}

    assert [r.headers["Authorization"] for r in fake.requests] == ["Bearer primary-key", "Bearer backup-key"]
    config = await channel(session_factory)
    assert config.credentials == {"api_key": "backup-key"}
    assert config.backup_credentials is None
    assert config.credential_status == "rotated"
    assert config.connection_status == "connected"
    async with session_factory() as s:
        outcomes = (await s.execute(
            select(ChannelCall.outcome).where(ChannelCall.event_id == envelope.id)
        )).scalars().all()
    assert sorted(outcomes) == ["auth_failed", "success"]


@pytest.mark.asyncio
async def test_auth_failure_without_backup_degrades_channel(db, session_factory, bus, distributor, fake):
    room_type = await priced_room(db)
    await make_channel(db)
    fake.statuses["booking_com.test/rates"] = 403
    envelope = await publish_rates(db, bus, room_type)

    assert await distributor.drain_once() == {"leased": 1, "pending": 1}

    stored = await fetch(session_factory, EventEnvelope, envelope.id)
    assert stored.attempts == 1
    assert stored.priority == 4
    assert stored.channel_state["booking_com"]["status_code"] == 403
    assert (await channel(session_factory)).connection_status == "degraded"


@pytest.mark.asyncio
async def test_client_error_completes_with_warning(db, session_factory, bus, distributor, fake):
    room_type = await priced_room(db)
    await make_channel(db)
    fake.statuses["booking_com.test/rates"] = 422
    envelope = await publish_rates(db, bus, room_type)

    assert await distributor.drain_once() == {"leased": 1, "succeeded": 1}

    stored = await fetch(session_factory, EventEnvelope, envelope.id)
    assert stored.reason == "warning"
    assert stored.channel_state["booking_com"]["status"] == "warning"
    assert (await channel(session_factory)).connection_status == "connected"


@pytest.mark.asyncio
async def test_rate_limited_call_honours_retry_after(db, session_factory, bus, distributor, fake):
    room_type = await priced_room(db)
    await make_channel(db)
    fake.statuses["booking_com.test/rates"] = 429
    fake.headers["booking_com.test/rates"] = {"Retry-After": "120"}
    envelope = await publish_rates(db, bus, room_type)

    await distributor.drain_once()

    stored = await fetch(session_factory, EventEnvelope, envelope.id)
    assert stored.status == "pending"
    assert stored.next_attempt_at == NOW + timedelta(seconds=120)
    assert (await channel(session_factory)).consecutive_failures == 0


@pytest.mark.asyncio
async def test_missing_endpoint_is_a_warning_not_a_retry(db, session_factory, bus, distributor, fake):
    room_type = await make_room_type(db)
    await make_channel(db)
    envelope = await bus.publish(
        db,
        "availability_update",
        HOTEL,
        {"source": "test", "start": "2025-08-01", "end": "2025-08-01", "roomTypeIds": [str(room_type.id)]},
        keys=[event_key(room_type.id, DAY)],
    )
    await db.commit()
    await make_rows(db, room_type, DAY, DAY)

    await distributor.drain_once()

    stored = await fetch(session_factory, EventEnvelope, envelope.id)
    assert (stored.status, stored.reason) == ("succeeded", "warning")
    assert "No inventory endpoint" in stored.channel_state["booking_com"]["last_error"]
    assert fake.requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "exc, expected",
    [(httpx.ConnectTimeout, "timeout after 1000ms"), (httpx.ConnectError, "network error: ConnectError")],
)
async def test_transport_failures_are_transient(db, session_factory, bus, distributor, fake, exc, expected):
    room_type = await priced_room(db)
    await make_channel(db)
    envelope = await publish_rates(db, bus, room_type)

    def respond(request: httpx.Request) -> httpx.Response:
        raise exc("connection trouble", request=request)

    fake.respond = respond

    assert await distributor.drain_once() == {"leased": 1, "pending": 1}

    stored = await fetch(session_factory, EventEnvelope, envelope.id)
    assert stored.attempts == 1
    assert stored.last_error.startswith(f"booking_com: {expected}")
    async with session_factory() as s:
        call = (await s.execute(select(ChannelCall).where(ChannelCall.event_id == envelope.id))).scalar_one()
    assert (call.outcome, call.status_code) == ("transient", None)
    assert call.error.startswith(expected)
    assert (await channel(session_factory)).consecutive_failures == 1


# ─── Concurrency + deadlines ───


@pytest.mark.asyncio
async def test_slow_channel_misses_the_deadline_without_undoing_the_fast_one(
    db, session_factory, clock, bus, distributor, fake, monkeypatch
):
    monkeypatch.setattr(settings, "channel_default_timeout_ms", 200)
    room_type = await priced_room(db)
    await make_channel(db, "booking_com")
    await make_channel(db, "expedia")
    envelope = await publish_rates(db, bus, room_type)

    async def respond(request: httpx.Request) -> httpx.Response:
        if request.url.host == "expedia.test":
            await asyncio.sleep(5)
        return httpx.Response(200, json={"ok": True})

    fake.respond = respond

    assert await distributor.drain_once() == {"leased": 1, "pending": 1}

    stored = await fetch(session_factory, EventEnvelope, envelope.id)
    assert stored.attempts == 1
    assert stored.channel_state["booking_com"]["status"] == "succeeded"
    assert stored.channel_state["expedia"]["status"] == "pending"
    assert "deadline" in stored.channel_state["expedia"]["last_error"]
    async with session_factory() as s:
        calls = (await s.execute(
            select(ChannelCall.channel_id, ChannelCall.outcome).where(ChannelCall.event_id == envelope.id)
        )).all()
    assert sorted(calls) == [("booking_com", "success"), ("expedia", "transient")]
    assert (await channel(session_factory, "booking_com")).last_sync_rates == NOW
    assert (await channel(session_factory, "expedia")).consecutive_failures == 1

    fake.respond = None
    clock.advance(hours=1)
    assert await distributor.drain_once() == {"leased": 1, "succeeded": 1}
    assert len(fake.calls_to("booking_com.test")) == 1
    assert len(fake.calls_to("expedia.test")) == 2


@pytest.mark.asyncio
async def test_channel_at_its_concurrency_cap_defers_without_an_attempt(
    db, session_factory, clock, bus, distributor, fake
):
    room_type = await priced_room(db)
    await make_channel(db, max_concurrency=1)
    envelopes = [
        await publish_rates(db, bus, room_type, day=DAY),
        await publish_rates(db, bus, room_type, day=DAY + timedelta(days=1)),
    ]

    async def respond(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.5)
        return httpx.Response(200, json={"ok": True})

    fake.respond = respond

    assert await distributor.drain_once() == {"leased": 2, "succeeded": 1, "pending": 1}

    assert len(fake.calls_to("booking_com.test")) == 1
    stored = [await fetch(session_factory, EventEnvelope, e.id) for e in envelopes]
    [deferred] = [e for e in stored if e.status == "pending"]
    assert deferred.reason == "busy:booking_com"
    assert deferred.attempts == 0
    assert deferred.channel_state["booking_com"] == {"status": "busy", "attempts": 0}
    assert deferred.next_attempt_at == NOW + timedelta(milliseconds=settings.channel_busy_retry_ms)

    fake.respond = None
    clock.advance(seconds=settings.channel_busy_retry_ms / 1000)
    assert await distributor.drain_once() == {"leased": 1, "succeeded": 1}
    assert len(fake.calls_to("booking_com.test")) == 2


# ─── Events that need no call ───


@pytest.mark.asyncio
async def test_overbooking_alert_event_records_alert(db, session_factory, bus, distributor, fake):
    envelope = await bus.publish(
        db,
        "overbooking_alert",
        HOTEL,
        {"channelId": "booking_com", "channelBookingId": "BK-1", "kind": "new_booking", "details": {"date": "2025-09-10"}},
        priority=1,
    )
    await db.commit()

    await distributor.drain_once()

    stored = await fetch(session_factory, EventEnvelope, envelope.id)
    assert (stored.status, stored.reason) == ("succeeded", "alert_recorded")
    assert await alert_types(session_factory) == ["overbooking"]
    assert fake.requests == []


@pytest.mark.asyncio
async def test_event_without_target_channels_completes(db, session_factory, bus, distributor):
    room_type = await priced_room(db)
    await make_channel(db, sync_flags=["booking_sync"])
    envelope = await publish_rates(db, bus, room_type)

    await distributor.drain_once()

    stored = await fetch(session_factory, EventEnvelope, envelope.id)
    assert stored.reason == "no_targets"


@pytest.mark.asyncio
async def test_event_with_nothing_sellable_completes_empty(db, session_factory, bus, distributor, fake):
    room_type = await make_room_type(db)  # no rate plan
    await make_channel(db)
    envelope = await publish_rates(db, bus, room_type)

    await distributor.drain_once()

    stored = await fetch(session_factory, EventEnvelope, envelope.id)
    assert stored.reason == "empty"
    assert fake.requests == []


@pytest.mark.asyncio
async def test_drain_with_nothing_due(distributor):
    assert await distributor.drain_once() == {"leased": 0}


# ─── Parity ───


@pytest.mark.asyncio
async def test_rate_parity_flags_variance_beyond_allowance(db, distributor):
    room_type = await priced_room(db)
    await make_channel(
        db,
        supported_currencies=[{"code": "EUR", "conversion_method": "fixed", "fixed_rate": "0.90"}],
    )

    strict = await distributor.rate_parity(db, HOTEL, room_type.id, DAY, DAY, Decimal("1"))
    assert strict["dates_checked"] == 1
    assert strict["violations_found"] == 1
    violation = strict["violations"][0]
    assert violation["violation_type"] == "rate_too_low"
    assert violation["variance_pct"] == "-2.80"
    assert violation["actual_rate"] == "97.20"
    assert strict["checks"][0]["channels"][0]["rate"] == "90.00"

    lenient = await distributor.rate_parity(db, HOTEL, room_type.id, DAY, DAY, Decimal("5"))
    assert lenient["violations_found"] == 0


# ─── Adapters + helpers ───


def make_view(adapter: str = "generic", **overrides) -> ChannelView:
    data = {
        "hotel_id": HOTEL,
        "channel_id": adapter,
        "channel_name": adapter,
        "adapter": adapter,
        "hotel_timezone": "UTC",
        "credentials": {"api_key": "k"},
        "backup_credentials": None,
        "credential_status": "active",
        "credential_version": 1,
        "endpoints": {"rates": "https://ota.test/rates"},
        "currencies": (CurrencyConfig(code="USD"),),
        "sync_flags": ("rate_update",),
        "timeout_ms": 1000,
        "retry_policy": {},
        "max_concurrency": 2,
        "active": True,
        "connection_status": "connected",
        "consecutive_failures": 0,
    }
    data.update(overrides)
    return ChannelView(**data)


def rate(day: str, plan: str, amount: str, currency: str = "EUR", decimals: int = 2) -> WireRate:
    return WireRate("rt-1", plan, day, Decimal(amount), currency, decimals)


def test_booking_com_groups_rates_per_date_and_room():
    adapter = get_adapter("booking_com")
    view = make_view("booking_com", credentials={"username": "hotel", "password": "pw", "hotel_code": "123"})

    body = adapter.format_rates(view, [rate("2025-08-01", "bar", "120.5"), rate("2025-08-01", "nr", "99")])

    assert body["hotel_id"] == "123"
    assert len(body["rates"]) == 1
    assert [r["amount"] for r in body["rates"][0]["rates"]] == ["120.50", "99.00"]
    expected = base64.b64encode(b"hotel:pw").decode()
    assert adapter.authorization(view.credentials, b"{}") == {"Authorization": f"Basic {expected}"}


def test_expedia_sends_bearer_and_base_rate():
    adapter = get_adapter("expedia")
    view = make_view("expedia", credentials={"api_key": "exp-key", "property_id": "EXP-1"})

    request = adapter.build_request(view, "rates", adapter.format_rates(view, [rate("2025-08-01", "bar", "80")]))

    assert request.headers["Authorization"] == "Bearer exp-key"
    assert request.body["propertyId"] == "EXP-1"
    assert request.body["rateUpdates"][0]["baseRate"] == "80.00"


def test_generic_adapter_signs_with_hmac_secret():
    adapter = get_adapter("generic")
    view = make_view(credentials={"hmac_secret": "s3cret", "api_key": "k"})

    request = adapter.build_request(view, "rates", {"rates": []})

    assert request.headers["X-Api-Key"] == "k"
    assert SignedJsonMixin.verify(
        "s3cret", request.content, request.headers["X-Timestamp"], request.headers["X-Signature"]
    )
    assert not SignedJsonMixin.verify(
        "other", request.content, request.headers["X-Timestamp"], request.headers["X-Signature"]
    )


def test_adapter_errors_on_missing_endpoint_or_credentials():
    adapter = get_adapter("generic")
    with pytest.raises(AdapterError):
        adapter.build_request(make_view(), "inventory", {})
    with pytest.raises(AdapterError):
        adapter.authorization({}, b"")


def test_unknown_adapter_falls_back_to_generic():
    assert get_adapter("tripadvisor").name == "generic"


def test_wire_amount_uses_currency_precision():
    assert wire_amount(Decimal("12345.6"), 0) == "12346"
    assert wire_amount(Decimal("94.125"), 2) == "94.12"
    assert wire_amount(Decimal("94.5"), 2) == "94.50"
    assert wire_amount(Decimal("1.2345"), 3) == "1.234"


@pytest.mark.parametrize(
    "status_code, outcome",
    [(200, "success"), (401, "auth_failed"), (403, "auth_failed"), (429, "rate_limited"),
     (404, "warning"), (503, "transient"), (None, "transient")],
)
def test_call_outcome(status_code, outcome):
    assert call_outcome(status_code) == outcome


def test_retry_after_header_parsing():
    assert retry_after_ms(httpx.Response(429, headers={"Retry-After": "30"})) == 30000
    assert retry_after_ms(httpx.Response(429, headers={"Retry-After": "soon"})) is None
    assert retry_after_ms(httpx.Response(429)) is None
