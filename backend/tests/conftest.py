import os
import tempfile

# Settings are read at import time; point everything at a throwaway SQLite file first
_TMP_DIR = tempfile.mkdtemp(prefix="ratewise-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP_DIR}/ratewise.db"
os.environ["REDIS_URL"] = ""
os.environ["EXCHANGE_RATE_API_KEY"] = ""
os.environ["SCHEDULER_ENABLED"] = "false"

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

import ratewise.models  # noqa: F401  (registers every table on Base.metadata)
from ratewise.database import Base, async_session_factory, engine
from ratewise.models.availability import AvailabilityRow
from ratewise.models.channels import ChannelConfig
from ratewise.models.rates import RatePlan, RoomType
from ratewise.services.cache_service import TTLCache
from ratewise.services.calendar import FixedClock, date_range

HOTEL = "hotel-test"
NOW = datetime(2025, 7, 1, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def session_factory():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield async_session_factory
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def memo():
    return TTLCache("test-memo", default_ttl=300)


# ─── Factories ───


async def make_room_type(db, hotel_id: str = HOTEL, **overrides) -> RoomType:
    data = {
        "code": "STD",
        "name": "Standard King",
        "max_occupancy": 2,
        "base_rate": Decimal("100.00"),
        "base_currency": "USD",
        "total_rooms": 10,
        "timezone": "UTC",
    }
    data.update(overrides)
    room_type = RoomType(hotel_id=hotel_id, **data)
    db.add(room_type)
    await db.commit()
    return room_type


async def make_plan(db, room_type: RoomType, **overrides) -> RatePlan:
    data = {
        "name": "Best Available",
        "type": "bar",
        "base_rate": Decimal("100.00"),
        "base_currency": "USD",
        "valid_from": date(2025, 1, 1),
        "valid_to": date(2025, 12, 31),
        "priority": 1,
        "updated_at": NOW,
    }
    data.update(overrides)
    plan = RatePlan(hotel_id=room_type.hotel_id, room_type_id=room_type.id, **data)
    db.add(plan)
    await db.commit()
    return plan


async def make_rows(db, room_type: RoomType, start: date, end: date, **fields) -> list[AvailabilityRow]:
    """Availability rows for every date in [start, end]."""
    rows = []
    for day in date_range(start, end):
        row = AvailabilityRow(
            hotel_id=room_type.hotel_id,
            room_type_id=room_type.id,
            date=day,
            total_rooms=fields.get("total_rooms", room_type.total_rooms),
            sold_rooms=fields.get("sold_rooms", 0),
            blocked_rooms=fields.get("blocked_rooms", 0),
        )
        db.add(row)
        rows.append(row)
    await db.commit()
    return rows


async def make_channel(db, channel_id: str = "booking_com", hotel_id: str = HOTEL, **overrides) -> ChannelConfig:
    data = {
        "channel_name": channel_id.replace("_", " ").title(),
        "adapter": "generic",
        "hotel_timezone": "UTC",
        "credentials": {"api_key": "primary-key"},
        "endpoints": {"rates": f"https://{channel_id}.test/rates", "health": f"https://{channel_id}.test/health"},
        "supported_currencies": [{"code": "USD", "markup": "0", "rounding": "nearest", "conversion_method": "live"}],
        "sync_flags": ["rate_update", "availability_update", "channel_modification", "booking_sync"],
        "timeout_ms": 1000,
        "max_concurrency": 2,
    }
    data.update(overrides)
    config = ChannelConfig(hotel_id=hotel_id, channel_id=channel_id, **data)
    db.add(config)
    await db.commit()
    return config


def days(start: date, count: int) -> list[date]:
    return [start + timedelta(days=i) for i in range(count)]
