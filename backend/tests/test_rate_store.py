from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from ratewise.models.rates import RateOverride
from ratewise.schemas.rates import (
    PromoCodeCreate,
    RateOverrideCreate,
    RatePlanCreate,
    RatePlanUpdate,
    RoomTypeCreate,
)
from ratewise.services.rate_store import RateStore
from ratewise.services.results import ResultKind

from conftest import HOTEL, make_plan, make_room_type


@pytest.fixture
def store(memo, clock):
    return RateStore(memo=memo, clock=clock)


def plan_data(room_type, **overrides) -> RatePlanCreate:
    data = {
        "room_type_id": room_type.id,
        "name": "BAR",
        "base_rate": Decimal("100"),
        "valid_from": date(2025, 1, 1),
        "valid_to": date(2025, 12, 31),
        "priority": 1,
    }
    data.update(overrides)
    return RatePlanCreate(**data)


@pytest.mark.asyncio
async def test_duplicate_room_type_code_conflicts(db, store):
    first = await store.create_room_type(db, HOTEL, RoomTypeCreate(code="STD", name="Standard", base_rate=Decimal("100")))
    second = await store.create_room_type(db, HOTEL, RoomTypeCreate(code="STD", name="Again", base_rate=Decimal("90")))

    assert first.is_ok
    assert second.kind == ResultKind.CONFLICT


@pytest.mark.asyncio
async def test_overlapping_plans_cannot_share_a_priority(db, store):
    room_type = await make_room_type(db)
    assert (await store.create_rate_plan(db, HOTEL, plan_data(room_type))).is_ok

    clash = await store.create_rate_plan(db, HOTEL, plan_data(room_type, name="BAR 2", valid_from=date(2025, 6, 1)))
    other_priority = await store.create_rate_plan(db, HOTEL, plan_data(room_type, name="BAR 2", priority=2))

    assert clash.kind == ResultKind.CONFLICT
    assert other_priority.is_ok


@pytest.mark.asyncio
async def test_plan_for_unknown_room_type(db, store):
    room_type = await make_room_type(db)
    other = await make_room_type(db, hotel_id="another-hotel", code="DLX")

    result = await store.create_rate_plan(db, HOTEL, plan_data(other))

    assert room_type.hotel_id == HOTEL
    assert result.kind == ResultKind.NOT_FOUND


@pytest.mark.asyncio
async def test_update_rejects_inverted_validity(db, store):
    room_type = await make_room_type(db)
    plan = await make_plan(db, room_type)

    result = await store.update_rate_plan(db, HOTEL, plan.id, RatePlanUpdate(valid_to=date(2024, 12, 1)))

    assert result.kind == ResultKind.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_override_replaces_existing_for_same_night(db, store):
    room_type = await make_room_type(db)
    data = RateOverrideCreate(room_type_id=room_type.id, date=date(2025, 7, 15), rate=Decimal("80"), currency="USD")

    await store.override_rate(db, HOTEL, data)
    result = await store.override_rate(db, HOTEL, data.model_copy(update={"rate": Decimal("85")}))

    count = await db.scalar(select(func.count()).select_from(RateOverride))
    assert count == 1
    assert result.value.rate == Decimal("85")


@pytest.mark.asyncio
async def test_override_on_deactivated_plan_conflicts(db, store):
    room_type = await make_room_type(db)
    plan = await make_plan(db, room_type)
    await store.deactivate_rate_plan(db, HOTEL, plan.id)

    result = await store.override_rate(db, HOTEL, RateOverrideCreate(
        room_type_id=room_type.id, rate_plan_id=plan.id, date=date(2025, 7, 15),
        rate=Decimal("80"), currency="USD",
    ))

    assert result.kind == ResultKind.CONFLICT


@pytest.mark.asyncio
async def test_plan_writes_refresh_the_pricing_snapshot(db, store):
    room_type = await make_room_type(db)
    await store.create_rate_plan(db, HOTEL, plan_data(room_type))

    before = await store.pricing_strategy(db, HOTEL, room_type.id)
    assert await store.pricing_strategy(db, HOTEL, room_type.id) is before

    await store.create_rate_plan(db, HOTEL, plan_data(room_type, name="Corporate", type="corporate"))
    after = await store.pricing_strategy(db, HOTEL, room_type.id)

    assert len(before.plans) == 1
    assert sorted(p.name for p in after.plans) == ["BAR", "Corporate"]


@pytest.mark.asyncio
async def test_deactivated_plans_leave_the_snapshot(db, store):
    room_type = await make_room_type(db)
    plan = await make_plan(db, room_type)
    assert len((await store.pricing_strategy(db, HOTEL, room_type.id)).plans) == 1

    await store.deactivate_rate_plan(db, HOTEL, plan.id)

    assert (await store.pricing_strategy(db, HOTEL, room_type.id)).plans == []


@pytest.mark.asyncio
async def test_fixed_promo_needs_currency(db, store):
    result = await store.create_promo_code(db, HOTEL, PromoCodeCreate(
        code="TENOFF", discount_type="fixed", value=Decimal("10"),
        valid_from=date(2025, 1, 1), valid_to=date(2025, 12, 31),
    ))
    assert result.kind == ResultKind.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_promo_codes_are_normalised(db, store):
    result = await store.create_promo_code(db, HOTEL, PromoCodeCreate(
        code=" summer25 ", value=Decimal("25"), valid_from=date(2025, 6, 1), valid_to=date(2025, 8, 31),
    ))
    assert result.value.code == "SUMMER25"
