from datetime import date, timedelta

import pytest
from sqlalchemy import func, select

from ratewise.models.availability import AvailabilityRow
from ratewise.models.events import EventEnvelope
from ratewise.models.rates import RateOverride
from ratewise.schemas.availability import AvailabilityRangeCreate
from ratewise.services.alert_service import AlertService
from ratewise.services.availability_store import AvailabilityStore
from ratewise.services.batch_writer import BatchWriter
from ratewise.services.event_bus import EventBus
from ratewise.services.rate_store import RateStore
from ratewise.services.results import ValidationFailed

from conftest import HOTEL, make_room_type, make_rows

START = date(2025, 1, 1)


@pytest.fixture
def writer_factory(session_factory, memo, clock):
    def build(size: int = 1000, concurrency: int = 1, availability: AvailabilityStore | None = None) -> BatchWriter:
        return BatchWriter(
            session_factory=session_factory,
            bus=EventBus(clock=clock, alerts=AlertService()),
            availability=availability or AvailabilityStore(),
            rates=RateStore(memo=memo, clock=clock),
            size=size,
            concurrency=concurrency,
        )

    return build


def availability_updates(room_type, count: int, **fields) -> list[dict]:
    return [
        {"room_type_id": str(room_type.id), "date": (START + timedelta(days=i)).isoformat(), **fields}
        for i in range(count)
    ]


async def count(session_factory, model, *where) -> int:
    async with session_factory() as db:
        return await db.scalar(select(func.count()).select_from(model).where(*where))


@pytest.mark.asyncio
async def test_failed_sub_batch_rolls_back_alone(db, session_factory, writer_factory):
    room_type = await make_room_type(db, total_rooms=10)
    updates = availability_updates(room_type, 2500, total_rooms=10, sold_rooms=2)
    updates[1500]["sold_rooms"] = 20  # breaks sold + blocked <= total

    result = await writer_factory(size=1000).apply(HOTEL, "availability", updates)

    summary = result.to_dict()
    assert summary["modified"] == 1500
    assert summary["failed"] == 1000
    assert summary["subBatches"] == 3
    assert summary["eventsPublished"] == 2
    assert [s.ok for s in result.sub_batches] == [True, False, True]
    assert result.sub_batches[1].errors[0]["code"] == "InventoryConflict"

    assert await count(session_factory, AvailabilityRow) == 1500
    assert await count(session_factory, EventEnvelope, EventEnvelope.type == "availability_update") == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("items, expected", [(10, 1), (11, 2)])
async def test_sub_batch_boundary(db, writer_factory, items, expected):
    room_type = await make_room_type(db)

    result = await writer_factory(size=10).apply(HOTEL, "availability", availability_updates(room_type, items, min_stay=2))

    assert len(result.sub_batches) == expected
    assert result.modified == items


@pytest.mark.asyncio
async def test_sub_batches_run_concurrently_and_each_publishes(db, session_factory, writer_factory):
    room_type = await make_room_type(db)

    result = await writer_factory(size=10, concurrency=3).apply(
        HOTEL, "availability", availability_updates(room_type, 25, min_stay=2)
    )

    summary = result.to_dict()
    assert (summary["modified"], summary["failed"]) == (25, 0)
    assert [s.size for s in result.sub_batches] == [10, 10, 5]
    assert summary["eventsPublished"] == 3
    assert await count(session_factory, AvailabilityRow) == 25
    async with session_factory() as check:
        events = (await check.execute(select(EventEnvelope))).scalars().all()
    assert sorted(e.payload["subBatch"] for e in events) == [0, 1, 2]
    assert sum(len(e.keys) for e in events) == 25


class StaleReadStore(AvailabilityStore):
    """Misses existing rows on the first lookup, as when another writer inserts them first."""

    def __init__(self):
        super().__init__()
        self.stale_reads = 1

    async def get_rows_for_keys(self, *args, **kwargs):
        if self.stale_reads:
            self.stale_reads -= 1
            return {}
        return await super().get_rows_for_keys(*args, **kwargs)


@pytest.mark.asyncio
async def test_duplicate_key_retries_the_sub_batch_as_upsert(db, session_factory, writer_factory):
    room_type = await make_room_type(db, total_rooms=10)
    await make_rows(db, room_type, START, START, sold_rooms=3)

    result = await writer_factory(availability=StaleReadStore()).apply(
        HOTEL, "availability", availability_updates(room_type, 1, stop_sell=True)
    )

    [sub] = result.sub_batches
    assert sub.ok
    assert sub.upsert_mode is True
    assert (sub.modified_count, sub.upserted_count) == (1, 0)
    async with session_factory() as check:
        row = (await check.execute(select(AvailabilityRow))).scalar_one()
    assert row.stop_sell is True
    assert row.sold_rooms == 3
    assert await count(session_factory, EventEnvelope) == 1


@pytest.mark.asyncio
async def test_existing_rows_are_patched_in_place(db, session_factory, writer_factory):
    room_type = await make_room_type(db, total_rooms=10)
    await make_rows(db, room_type, START, START + timedelta(days=2), sold_rooms=4)

    result = await writer_factory().apply(HOTEL, "availability", availability_updates(room_type, 3, stop_sell=True))

    sub = result.sub_batches[0]
    assert sub.modified_count == 3
    assert sub.upserted_count == 0
    async with session_factory() as check:
        rows = (await check.execute(select(AvailabilityRow))).scalars().all()
    assert all(r.stop_sell and r.sold_rooms == 4 for r in rows)


@pytest.mark.asyncio
async def test_invalid_items_are_reported_individually(db, writer_factory):
    room_type = await make_room_type(db)
    updates = availability_updates(room_type, 3, min_stay=2)
    updates[1]["sold_rooms"] = -1

    result = await writer_factory().apply(HOTEL, "availability", updates)

    assert [e["index"] for e in result.item_errors] == [1]
    assert result.modified == 2


@pytest.mark.asyncio
async def test_unknown_room_type_fails_the_sub_batch(db, writer_factory):
    room_type = await make_room_type(db)
    other = await make_room_type(db, hotel_id="another-hotel", code="DLX")
    updates = availability_updates(room_type, 2) + availability_updates(other, 1)

    result = await writer_factory().apply(HOTEL, "availability", updates)

    assert result.failed == 3
    assert result.success is False
    assert result.sub_batches[0].errors[0]["kind"] == "notFound"


@pytest.mark.asyncio
async def test_bulk_rates_write_overrides_and_one_event(db, session_factory, writer_factory):
    room_type = await make_room_type(db)
    updates = [
        {"room_type_id": str(room_type.id), "date": f"2025-07-{d}", "rate": "150.00", "currency": "USD"}
        for d in (14, 15, 16)
    ]

    result = await writer_factory().apply(HOTEL, "rate", updates, approved_by="revenue-manager")

    assert result.modified == 3
    assert result.sub_batches[0].upserted_count == 3
    assert await count(session_factory, RateOverride, RateOverride.approved_by == "revenue-manager") == 3
    async with session_factory() as check:
        event = (await check.execute(select(EventEnvelope))).scalar_one()
    assert event.type == "rate_update"
    assert event.payload["start"] == "2025-07-14"
    assert event.payload["end"] == "2025-07-16"
    assert len(event.keys) == 3


@pytest.mark.asyncio
async def test_unknown_kind_is_rejected(writer_factory):
    with pytest.raises(ValidationFailed):
        await writer_factory().apply(HOTEL, "content", [{}])


@pytest.mark.asyncio
async def test_availability_range_seeds_missing_rows_once(db, writer_factory):
    room_type = await make_room_type(db, total_rooms=12)
    data = AvailabilityRangeCreate(room_type_id=room_type.id, start_date=START, end_date=START + timedelta(days=6))
    writer = writer_factory()

    first = await writer.create_availability_range(db, HOTEL, data)
    second = await writer.create_availability_range(db, HOTEL, data)

    assert first.value["created"] == 7
    assert second.value["created"] == 0
    events = (await db.execute(select(EventEnvelope))).scalars().all()
    assert len(events) == 1
    assert events[0].priority == 4
