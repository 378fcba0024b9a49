"""Seed script for a RateWise development database."""

import asyncio
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import select

from ratewise.config import settings
from ratewise.database import Base, async_session_factory, engine
from ratewise.models.channels import ChannelConfig
from ratewise.models.rates import DynamicRule, PromoCode, RatePlan, RoomType, SeasonalRate
from ratewise.services.availability_store import availability_store

HOTEL_ID = "hotel-demo"

# ── Room types ─────────────────────────────────────────────────────────────────

ROOM_TYPES = [
    {"code": "STD", "name": "Standard King", "max_occupancy": 2, "base_rate": Decimal("120.00"), "total_rooms": 40},
    {"code": "DLX", "name": "Deluxe Double", "max_occupancy": 3, "base_rate": Decimal("165.00"), "total_rooms": 20},
    {"code": "STE", "name": "Junior Suite", "max_occupancy": 4, "base_rate": Decimal("260.00"), "total_rooms": 6},
]

# ── Channels ───────────────────────────────────────────────────────────────────

CHANNELS = [
    {
        "channel_id": "booking_com",
        "channel_name": "Booking.com",
        "adapter": "booking_com",
        "credentials": {"username": "demo", "password": "demo", "hotel_code": "1234567"},
        "endpoints": {"rates": "https://supply-xml.booking.com/hotels/rates", "health": "https://supply-xml.booking.com/health"},
        "supported_currencies": [{"code": "EUR", "markup": "0", "rounding": "nearest", "conversion_method": "live", "market": "EU"}],
        "sync_flags": ["rate_update", "availability_update", "channel_modification", "booking_sync"],
    },
    {
        "channel_id": "expedia",
        "channel_name": "Expedia",
        "adapter": "expedia",
        "credentials": {"api_key": "demo-key", "property_id": "EXP-998"},
        "endpoints": {"rates": "https://services.expediapartnercentral.com/rates"},
        "supported_currencies": [{"code": "USD", "markup": "0", "rounding": "nearest", "conversion_method": "live"}],
        "sync_flags": ["rate_update", "availability_update"],
    },
]

RULES = [
    {
        "rule_id": "high-occupancy",
        "name": "High occupancy uplift",
        "type": "occupancy",
        "priority": 10,
        "conditions": {"min_occupancy": 80},
        "adjustment": {"mode": "multiply", "value": "1.15"},
    },
    {
        "rule_id": "weekend",
        "name": "Weekend premium",
        "type": "day_of_week",
        "priority": 5,
        "conditions": {"days": ["fri", "sat"]},
        "adjustment": {"mode": "multiply", "value": "1.10"},
    },
]


async def seed():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session_factory() as db:
        # Check if already seeded
        result = await db.execute(select(RoomType).where(RoomType.hotel_id == HOTEL_ID).limit(1))
        if result.scalar_one_or_none():
            print("Database already seeded. Skipping.")
            return

        today = date.today()

        # ── Room types + plans ──
        room_types = []
        for data in ROOM_TYPES:
            rt = RoomType(hotel_id=HOTEL_ID, base_currency="USD", timezone="America/New_York", **data)
            db.add(rt)
            room_types.append(rt)
        await db.flush()  # get room type ids

        for rt in room_types:
            db.add(RatePlan(
                hotel_id=HOTEL_ID,
                room_type_id=rt.id,
                name=f"{rt.name} BAR",
                type="bar",
                base_rate=rt.base_rate,
                base_currency="USD",
                valid_from=today - timedelta(days=30),
                valid_to=today + timedelta(days=365),
                day_of_week_rates={"fri": str(rt.base_rate * Decimal("1.15")), "sat": str(rt.base_rate * Decimal("1.20"))},
                priority=1,
            ))
            db.add(RatePlan(
                hotel_id=HOTEL_ID,
                room_type_id=rt.id,
                name=f"{rt.name} Non-refundable",
                type="non_refundable",
                base_rate=(rt.base_rate * Decimal("0.9")).quantize(Decimal("0.01")),
                base_currency="USD",
                valid_from=today - timedelta(days=30),
                valid_to=today + timedelta(days=365),
                priority=0,
                min_advance_days=7,
            ))
            await availability_store.ensure_rows(db, HOTEL_ID, rt, today, settings.horizon_days)
        print(f"Created {len(room_types)} room types with 2 rate plans each and {settings.horizon_days} days of availability")

        # ── Seasons, rules, promos ──
        db.add(SeasonalRate(
            hotel_id=HOTEL_ID,
            season="peak",
            start_date=date(today.year, 12, 20),
            end_date=date(today.year + 1, 1, 3),
            discount_pct=Decimal("-25"),
            priority=5,
        ))
        for rule in RULES:
            db.add(DynamicRule(hotel_id=HOTEL_ID, **rule))
        db.add(PromoCode(
            hotel_id=HOTEL_ID,
            code="WELCOME10",
            discount_type="percentage",
            value=Decimal("10"),
            valid_from=today,
            valid_to=today + timedelta(days=180),
            max_uses=500,
        ))
        print(f"Created 1 season, {len(RULES)} dynamic rules, 1 promo code")

        # ── Channels ──
        for data in CHANNELS:
            db.add(ChannelConfig(
                hotel_id=HOTEL_ID,
                hotel_timezone="America/New_York",
                max_concurrency=settings.channel_per_channel_concurrency,
                **data,
            ))
        print(f"Created {len(CHANNELS)} channel configs")

        await db.commit()
        print("Seed complete.")


if __name__ == "__main__":
    asyncio.run(seed())
