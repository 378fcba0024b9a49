"""Periodic maintenance jobs run by the APScheduler in the app lifespan.

Each job is single-flight per (job, hotel): a run that finds the previous run
for the same hotel still going skips that hotel instead of queueing behind it.
"""

import logging
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ratewise.config import settings
from ratewise.database import async_session_factory
from ratewise.models.rates import RatePlan, RoomType
from ratewise.services.alert_service import AlertService, alert_service
from ratewise.services.availability_store import AvailabilityStore, availability_store
from ratewise.services.cache_service import KeyedLocks
from ratewise.services.calendar import Clock, date_range, hotel_today, system_clock, to_wire_date
from ratewise.services.channel_registry import ChannelRegistry, channel_registry
from ratewise.services.distributor import ChannelDistributor, distributor
from ratewise.services.event_bus import EventBus, event_bus, event_key
from ratewise.services.forecast_service import ForecastService, forecast_service
from ratewise.services.rate_store import RateStore, rate_store

logger = logging.getLogger(__name__)

ROLLOVER_PUSH_DAYS = 7


class SchedulerJobs:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        rates: RateStore | None = None,
        availability: AvailabilityStore | None = None,
        registry: ChannelRegistry | None = None,
        forecasts: ForecastService | None = None,
        dist: ChannelDistributor | None = None,
        bus: EventBus | None = None,
        alerts: AlertService | None = None,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory or async_session_factory
        self._rates = rates or rate_store
        self._availability = availability or availability_store
        self._registry = registry or channel_registry
        self._forecasts = forecasts or forecast_service
        self._distributor = dist or distributor
        self._bus = bus or event_bus
        self._alerts = alerts or alert_service
        self._clock = clock or system_clock
        self._locks = KeyedLocks()

    async def hotels(self, db: AsyncSession) -> list[str]:
        result = await db.execute(
            select(RoomType.hotel_id).where(RoomType.active.is_(True)).distinct().order_by(RoomType.hotel_id)
        )
        return list(result.scalars().all())

    async def _per_hotel(self, job: str, run, hotel_id: str | None = None) -> dict[str, int]:
        """Run ``run(db, hotel_id)`` for each hotel under the (job, hotel) lock."""
        async with self._session_factory() as db:
            hotel_ids = [hotel_id] if hotel_id else await self.hotels(db)

        results: dict[str, int] = {}
        for hid in hotel_ids:
            key = f"{job}:{hid}"
            if self._locks.is_locked(key):
                logger.info(f"{job} still running for {hid}, skipping")
                continue
            async with self._locks.get(key):
                async with self._session_factory() as db:
                    try:
                        results[hid] = await run(db, hid)
                    except Exception as e:
                        await db.rollback()
                        logger.error(f"{job} failed for {hid}: {e}", exc_info=True)
        return results

    # ─── Rate plans ───

    async def rate_plan_rollover(self, hotel_id: str | None = None) -> dict[str, int]:
        return await self._per_hotel("rate_plan_rollover", self._rollover, hotel_id)

    async def _rollover(self, db: AsyncSession, hotel_id: str) -> int:
        now = self._clock.now()
        result = await db.execute(
            select(RatePlan, RoomType)
            .join(RoomType, RoomType.id == RatePlan.room_type_id)
            .where(RatePlan.hotel_id == hotel_id, RatePlan.active.is_(True))
        )
        expired: dict = {}
        for plan, room_type in result.all():
            today = hotel_today(room_type.timezone, now)
            if plan.valid_to < today:
                plan.active = False
                plan.updated_at = now
                expired.setdefault(room_type.id, today)
                logger.info(f"Rolled over expired rate plan '{plan.name}' ({plan.id}), valid to {plan.valid_to}")
        if not expired:
            return 0

        for room_type_id, today in expired.items():
            self._rates.invalidate(hotel_id, room_type_id)
            end = today + timedelta(days=ROLLOVER_PUSH_DAYS - 1)
            await self._bus.publish(
                db,
                "rate_update",
                hotel_id,
                {
                    "source": "rate_plan_rollover",
                    "start": to_wire_date(today),
                    "end": to_wire_date(end),
                    "roomTypeIds": [str(room_type_id)],
                },
                keys=[event_key(room_type_id, d) for d in date_range(today, end)],
                priority=3,
            )
        await db.commit()
        return len(expired)

    # ─── Forecasts ───

    async def forecast_refresh(self, hotel_id: str | None = None) -> dict[str, int]:
        return await self._per_hotel("forecast_refresh", self._forecasts.refresh_forecasts, hotel_id)

    # ─── Credentials ───

    async def credential_expiry_scan(self) -> int:
        """Alert once per channel whose credentials expire inside the warning window."""
        key = "credential_expiry_scan"
        if self._locks.is_locked(key):
            return 0
        async with self._locks.get(key):
            async with self._session_factory() as db:
                now = self._clock.now()
                raised = 0
                for config in await self._registry.expiring_credentials(db):
                    if await self._alerts.has_open(db, config.hotel_id, "credential_expiring", config.channel_id):
                        continue
                    days_left = max((config.credential_expires_at - now).days, 0)
                    await self._alerts.credential_expiring(
                        db, config.hotel_id, config.channel_id, config.credential_expires_at, days_left
                    )
                    raised += 1
                await db.commit()
                if raised:
                    logger.info(f"Credential expiry scan: {raised} alerts raised")
                return raised

    # ─── Availability ───

    async def availability_rollout(self, hotel_id: str | None = None) -> dict[str, int]:
        return await self._per_hotel("availability_rollout", self._rollout, hotel_id)

    async def _rollout(self, db: AsyncSession, hotel_id: str) -> int:
        now = self._clock.now()
        created = 0
        for room_type in await self._rates.list_room_types(db, hotel_id):
            today = hotel_today(room_type.timezone, now)
            created += await self._availability.ensure_rows(db, hotel_id, room_type, today, settings.horizon_days)
        await db.commit()
        if created:
            logger.info(f"Availability rollout seeded {created} rows for {hotel_id}")
        return created

    # ─── Distribution ───

    async def health_probe(self) -> dict[str, bool]:
        async with self._session_factory() as db:
            return await self._distributor.probe_unhealthy(db)

    async def event_drain(self) -> dict[str, int]:
        key = "event_drain"
        if self._locks.is_locked(key):
            return {}
        async with self._locks.get(key):
            return await self._distributor.drain_once()


scheduler_jobs = SchedulerJobs()
