import json
import time
from datetime import date, timedelta

import httpx
import pytest
import pytest_asyncio

from ratewise.main import app
from ratewise.services.cache_service import channel_config_cache
from ratewise.services.channels.base import SignedJsonMixin
from ratewise.services.rate_limiter import rate_limiter

from conftest import HOTEL, make_channel, make_room_type

SECRET = "callback-secret"


@pytest_asyncio.fixture
async def client(session_factory):
    channel_config_cache.clear()
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    channel_config_cache.clear()


def signed(body: dict) -> tuple[bytes, dict[str, str]]:
    content = json.dumps(body).encode()
    headers = SignedJsonMixin().signature_headers(SECRET, content, int(time.time()))
    return content, {**headers, "Content-Type": "application/json"}


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/api/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "service": "ratewise"}


# ─── Rates ───


@pytest.mark.asyncio
async def test_room_type_codes_are_unique_per_hotel(client):
    body = {"code": "DLX", "name": "Deluxe Double", "base_rate": "180.00"}

    created = await client.post(f"/api/hotels/{HOTEL}/room-types", json=body)
    duplicate = await client.post(f"/api/hotels/{HOTEL}/room-types", json=body)
    other_hotel = await client.post("/api/hotels/hotel-other/room-types", json=body)

    assert created.status_code == 201
    assert created.json()["base_rate"] == "180.00"
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"]["kind"] == "conflict"
    assert other_hotel.status_code == 201


@pytest.mark.asyncio
async def test_best_rate_for_unknown_room_type(client):
    start = date.today() + timedelta(days=30)
    resp = await client.post(f"/api/hotels/{HOTEL}/rates/best", json={
        "room_type_id": "00000000-0000-0000-0000-000000000000",
        "stay_start": start.isoformat(),
        "stay_end": (start + timedelta(days=2)).isoformat(),
    })

    assert resp.status_code == 404
    assert resp.json()["detail"]["kind"] == "notFound"


@pytest.mark.asyncio
async def test_rate_limit_returns_retry_after(client, monkeypatch):
    monkeypatch.setattr(rate_limiter, "limit", 0)

    resp = await client.get(f"/api/hotels/{HOTEL}/room-types", headers={"X-Api-Token": "limited-token"})

    assert resp.status_code == 429
    assert resp.json()["detail"]["kind"] == "rateLimited"
    assert 1 <= int(resp.headers["Retry-After"]) <= 60


@pytest.mark.asyncio
async def test_health_is_not_rate_limited(client, monkeypatch):
    monkeypatch.setattr(rate_limiter, "limit", 0)

    resp = await client.get("/api/health")

    assert resp.status_code == 200


# ─── Inbound callbacks ───


@pytest.fixture
def booking_body():
    def build(room_type, **overrides):
        check_in = date.today() + timedelta(days=30)
        body = {
            "kind": "new_booking",
            "channel_booking_id": "BK-900",
            "room_type_id": str(room_type.id),
            "stay": {"check_in": check_in.isoformat(), "check_out": (check_in + timedelta(days=2)).isoformat()},
            "rooms": 1,
            "amount": "200.00",
            "currency": "USD",
        }
        body.update(overrides)
        return body
    return build


@pytest.mark.asyncio
async def test_callback_without_signature_is_rejected(db, client, booking_body):
    room_type = await make_room_type(db)
    await make_channel(db, "direct_api", credentials={"api_key": "primary-key", "hmac_secret": SECRET})

    resp = await client.post(
        f"/api/hotels/{HOTEL}/channels/direct_api/inbound", json=booking_body(room_type)
    )

    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_signed_callback_is_reconciled(db, client, booking_body):
    room_type = await make_room_type(db)
    await make_channel(db, "direct_api", credentials={"api_key": "primary-key", "hmac_secret": SECRET})
    content, headers = signed(booking_body(room_type))

    first = await client.post(f"/api/hotels/{HOTEL}/channels/direct_api/inbound", content=content, headers=headers)
    again = await client.post(f"/api/hotels/{HOTEL}/channels/direct_api/inbound", content=content, headers=headers)

    assert first.status_code == 200
    assert first.json()["outcome"] == "applied"
    assert first.json()["duplicate"] is False
    assert again.json()["duplicate"] is True


@pytest.mark.asyncio
async def test_signed_callback_with_bad_body(db, client, booking_body):
    room_type = await make_room_type(db)
    await make_channel(db, "direct_api", credentials={"api_key": "primary-key", "hmac_secret": SECRET})
    body = booking_body(room_type)
    del body["channel_booking_id"]
    content, headers = signed(body)

    resp = await client.post(f"/api/hotels/{HOTEL}/channels/direct_api/inbound", content=content, headers=headers)

    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_callback_for_unknown_channel(client):
    resp = await client.post(f"/api/hotels/{HOTEL}/channels/nowhere/inbound", json={"kind": "new_booking"})

    assert resp.status_code == 404


# ─── Supervision ───


@pytest.mark.asyncio
async def test_event_stats_for_empty_hotel(client):
    resp = await client.get(f"/api/hotels/{HOTEL}/events/stats")

    assert resp.status_code == 200
