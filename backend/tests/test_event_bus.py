import random
import uuid
from datetime import date

import pytest
from sqlalchemy import select

from ratewise.models.alerts import SupervisionAlert
from ratewise.services.alert_service import AlertService
from ratewise.services.event_bus import EventBus, backoff_ms, event_key
from ratewise.services.results import NotFound, ValidationFailed

from conftest import HOTEL

K1 = "rt-1|2025-07-15"
K2 = "rt-1|2025-07-16"


@pytest.fixture
def bus(clock):
    return EventBus(clock=clock, alerts=AlertService(), rng=random.Random(7))


def test_event_key_format():
    assert event_key("rt-1", date(2025, 7, 15)) == K1
    assert event_key("rt-1", "2025-07-15") == K1


def test_backoff_uses_equal_jitter():
    rng = random.Random(1)
    for _ in range(20):
        assert 15_000 <= backoff_ms(1, rng) <= 30_000
        assert 30_000 <= backoff_ms(2, rng) <= 60_000


def test_backoff_is_capped():
    assert 900_000 <= backoff_ms(30, random.Random(3)) <= 1_800_000


# ─── Publishing ───


@pytest.mark.asyncio
async def test_newer_snapshot_supersedes_pending_one(db, bus):
    e1 = await bus.publish(db, "rate_update", HOTEL, {"n": 1}, keys=[K1])
    e2 = await bus.publish(db, "rate_update", HOTEL, {"n": 2}, keys=[K1, K2])
    await db.commit()

    assert e1.status == "succeeded"
    assert e1.reason == "superseded"
    assert e2.status == "pending"


@pytest.mark.asyncio
async def test_partial_key_overlap_does_not_supersede(db, bus):
    e1 = await bus.publish(db, "rate_update", HOTEL, {}, keys=[K1, K2])
    await bus.publish(db, "rate_update", HOTEL, {}, keys=[K1])
    assert e1.status == "pending"


@pytest.mark.asyncio
async def test_less_urgent_event_does_not_supersede(db, bus):
    e1 = await bus.publish(db, "rate_update", HOTEL, {}, keys=[K1], priority=2)
    await bus.publish(db, "rate_update", HOTEL, {}, keys=[K1], priority=3)
    assert e1.status == "pending"


@pytest.mark.asyncio
async def test_bookings_are_never_superseded(db, bus):
    e1 = await bus.publish(db, "booking_sync", HOTEL, {}, keys=[K1])
    await bus.publish(db, "booking_sync", HOTEL, {}, keys=[K1])
    assert e1.status == "pending"


@pytest.mark.asyncio
async def test_publish_validates_type_and_priority(db, bus):
    with pytest.raises(ValidationFailed):
        await bus.publish(db, "price_watch", HOTEL, {})
    with pytest.raises(ValidationFailed):
        await bus.publish(db, "rate_update", HOTEL, {}, priority=6)


# ─── Leasing ───


@pytest.mark.asyncio
async def test_lease_is_fifo_per_key(db, bus, clock):
    first = await bus.publish(db, "booking_sync", HOTEL, {"seq": 1}, keys=[K1])
    clock.advance(1)
    second = await bus.publish(db, "booking_sync", HOTEL, {"seq": 2}, keys=[K1])
    other = await bus.publish(db, "booking_sync", HOTEL, {"seq": 3}, keys=[K2])
    await db.commit()

    leased = await bus.lease(db, limit=10)
    assert {e.id for e in leased} == {first.id, other.id}

    await bus.complete(db, leased[0] if leased[0].id == first.id else leased[1])
    await db.commit()

    assert [e.id for e in await bus.lease(db, limit=10)] == [second.id]


@pytest.mark.asyncio
async def test_lease_orders_by_priority(db, bus, clock):
    await bus.publish(db, "rate_update", HOTEL, {}, keys=[K1], priority=3)
    clock.advance(1)
    urgent = await bus.publish(db, "overbooking_alert", HOTEL, {}, keys=[K2], priority=1)
    await db.commit()

    leased = await bus.lease(db, limit=1)

    assert [e.id for e in leased] == [urgent.id]


@pytest.mark.asyncio
async def test_urgent_event_waiting_on_a_key_does_not_block_the_older_event(db, bus, clock):
    older = await bus.publish(db, "booking_sync", HOTEL, {}, keys=[K1, K2], priority=4)
    clock.advance(1)
    urgent = await bus.publish(db, "booking_sync", HOTEL, {}, keys=[K1], priority=2)
    await db.commit()

    leased = await bus.lease(db, limit=10)
    assert [e.id for e in leased] == [older.id]

    await bus.complete(db, leased[0])
    await db.commit()

    assert [e.id for e in await bus.lease(db, limit=10)] == [urgent.id]


@pytest.mark.asyncio
async def test_part_delivered_event_leaves_the_key_to_the_distributor(db, bus, clock):
    held = await bus.publish(db, "booking_sync", HOTEL, {}, keys=[K1])
    held.channel_state = {
        "booking_com": {"status": "held", "attempts": 0},
        "expedia": {"status": "succeeded", "attempts": 1},
    }
    await bus.hold(db, held, "booking_com", delay_ms=300_000)
    clock.advance(1)
    newer = await bus.publish(db, "booking_sync", HOTEL, {}, keys=[K1])
    await db.commit()

    assert [e.id for e in await bus.lease(db, limit=10)] == [newer.id]


@pytest.mark.asyncio
async def test_events_not_yet_due_are_skipped(db, bus, clock):
    envelope = await bus.publish(db, "rate_update", HOTEL, {}, keys=[K1])
    await db.commit()
    await bus.lease(db)
    await bus.retry(db, envelope, "HTTP 503")
    await db.commit()

    assert await bus.lease(db) == []
    clock.advance(60)
    assert [e.id for e in await bus.lease(db)] == [envelope.id]


@pytest.mark.asyncio
async def test_expired_lease_is_reaped(db, bus, clock):
    envelope = await bus.publish(db, "rate_update", HOTEL, {}, keys=[K1])
    await db.commit()
    assert len(await bus.lease(db)) == 1
    assert await bus.lease(db) == []

    clock.advance(60)
    leased = await bus.lease(db)

    assert [e.id for e in leased] == [envelope.id]
    assert leased[0].last_error == "lease expired"


# ─── Outcomes ───


@pytest.mark.asyncio
async def test_event_goes_dead_after_max_attempts(db, bus):
    envelope = await bus.publish(db, "rate_update", HOTEL, {}, keys=[K1])
    await db.commit()

    for attempt in range(1, 8):
        await bus.retry(db, envelope, "HTTP 503")
        assert envelope.status == "pending"
        assert envelope.attempts == attempt
    await bus.retry(db, envelope, "HTTP 503")
    await db.commit()

    assert envelope.status == "dead"
    assert envelope.attempts == 8
    alerts = (await db.execute(select(SupervisionAlert))).scalars().all()
    assert [a.type for a in alerts] == ["event_dead"]
    assert [e.id for e in await bus.dead_letters(db, HOTEL)] == [envelope.id]


@pytest.mark.asyncio
async def test_retry_after_extends_the_delay(db, bus, clock):
    envelope = await bus.publish(db, "rate_update", HOTEL, {}, keys=[K1])
    await bus.retry(db, envelope, "HTTP 429", retry_after_ms=600_000)
    assert (envelope.next_attempt_at - clock.now()).total_seconds() == 600


@pytest.mark.asyncio
async def test_requeue_dead_event(db, bus):
    envelope = await bus.publish(db, "rate_update", HOTEL, {}, keys=[K1])
    await bus.dead(db, envelope, "gave up")
    await db.commit()

    requeued = await bus.requeue(db, HOTEL, envelope.id)

    assert requeued.status == "pending"
    assert requeued.attempts == 0
    with pytest.raises(ValidationFailed):
        await bus.requeue(db, HOTEL, envelope.id)


@pytest.mark.asyncio
async def test_requeue_unknown_event(db, bus):
    with pytest.raises(NotFound):
        await bus.requeue(db, HOTEL, uuid.uuid4())


@pytest.mark.asyncio
async def test_held_events_are_released_at_original_priority(db, bus):
    envelope = await bus.publish(db, "rate_update", HOTEL, {}, keys=[K1], priority=2)
    await bus.hold(db, envelope, "expedia", delay_ms=300_000)
    await db.commit()
    assert envelope.priority == 5

    released = await bus.release_held(db, HOTEL, "expedia")
    await db.commit()
    await db.refresh(envelope)

    assert released == 1
    assert envelope.priority == 2
    assert envelope.reason is None


@pytest.mark.asyncio
async def test_stats(db, bus, clock):
    await bus.publish(db, "rate_update", HOTEL, {}, keys=[K1], priority=2)
    await bus.publish(db, "availability_update", HOTEL, {}, keys=[K2])
    await db.commit()
    clock.advance(30)

    stats = await bus.stats(db, HOTEL)

    assert stats["by_status"] == {"pending": 2}
    assert stats["pending_by_priority"] == {"2": 1, "3": 1}
    assert stats["oldest_pending_age_seconds"] == 30
