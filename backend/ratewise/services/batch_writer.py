"""Batch writer for bulk rate and availability updates.

Updates are validated item by item, partitioned into sub-batches and written
with a bounded number of sub-batches in flight. Each sub-batch is one
transaction that also carries its outbox envelope, so an event is published
exactly when its rows commit.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date

from pydantic import BaseModel, ValidationError
from sqlalchemy import select, tuple_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ratewise.config import settings
from ratewise.database import async_session_factory
from ratewise.models.rates import RateOverride, RoomType
from ratewise.schemas.availability import AvailabilityRangeCreate, AvailabilityUpdate, RateUpdate
from ratewise.services.availability_store import (
    AvailabilityStore,
    availability_store,
    check_invariants,
    merge_patch,
)
from ratewise.services.calendar import date_range, to_wire_date
from ratewise.services.event_bus import EventBus, event_bus, event_key
from ratewise.services.rate_store import ROOM_TYPE_WIDE, RateStore, rate_store
from ratewise.services.results import Conflict, CoreError, Result, ValidationFailed

logger = logging.getLogger(__name__)

KINDS: dict[str, type[BaseModel]] = {"availability": AvailabilityUpdate, "rate": RateUpdate}
EVENT_TYPES = {"availability": "availability_update", "rate": "rate_update"}


@dataclass
class SubBatchResult:
    index: int
    size: int
    modified_count: int = 0
    upserted_count: int = 0
    errors: list[dict] = field(default_factory=list)
    event_id: uuid.UUID | None = None
    upsert_mode: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors

    def reset(self):
        self.modified_count = 0
        self.upserted_count = 0
        self.event_id = None

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "size": self.size,
            "modifiedCount": self.modified_count,
            "upsertedCount": self.upserted_count,
            "errors": self.errors,
            "eventId": str(self.event_id) if self.event_id else None,
            "upsertMode": self.upsert_mode,
        }


@dataclass
class BatchResult:
    kind: str
    sub_batches: list[SubBatchResult] = field(default_factory=list)
    item_errors: list[dict] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return any(s.ok for s in self.sub_batches)

    @property
    def modified(self) -> int:
        return sum(s.size for s in self.sub_batches if s.ok)

    @property
    def failed(self) -> int:
        return sum(s.size for s in self.sub_batches if not s.ok)

    @property
    def events_published(self) -> int:
        return sum(1 for s in self.sub_batches if s.event_id)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "success": self.success,
            "modified": self.modified,
            "failed": self.failed,
            "subBatches": len(self.sub_batches),
            "eventsPublished": self.events_published,
            "results": [s.to_dict() for s in self.sub_batches],
            "itemErrors": self.item_errors,
        }


def _error(e: CoreError) -> dict:
    return {
        "kind": e.kind.value,
        "code": e.code.value if e.code else None,
        "message": str(e),
        "details": e.details,
    }


class BatchWriter:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        bus: EventBus | None = None,
        availability: AvailabilityStore | None = None,
        rates: RateStore | None = None,
        size: int | None = None,
        concurrency: int | None = None,
        timeout_ms: int | None = None,
    ):
        self._session_factory = session_factory or async_session_factory
        self._bus = bus or event_bus
        self._availability = availability or availability_store
        self._rates = rates or rate_store
        self.size = size or settings.batch_size
        self.concurrency = concurrency or settings.batch_concurrency
        self.timeout_ms = timeout_ms or settings.batch_timeout_ms

    async def apply(
        self, hotel_id: str, kind: str, updates: list[dict], approved_by: str | None = None
    ) -> BatchResult:
        if kind not in KINDS:
            raise ValidationFailed(f"Unknown batch kind: {kind}", kind=kind)
        result = BatchResult(kind=kind)

        schema = KINDS[kind]
        valid = []
        for index, raw in enumerate(updates):
            try:
                valid.append(schema.model_validate(raw))
            except ValidationError as e:
                result.item_errors.append({
                    "index": index,
                    "errors": [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()],
                })
        if result.item_errors:
            logger.info(f"Batch for {hotel_id}: {len(result.item_errors)} of {len(updates)} items failed validation")

        chunks = [valid[i:i + self.size] for i in range(0, len(valid), self.size)]
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(index: int, chunk: list) -> SubBatchResult:
            async with semaphore:
                return await self._run_sub_batch(hotel_id, kind, index, chunk, approved_by)

        result.sub_batches = list(await asyncio.gather(*(run(i, c) for i, c in enumerate(chunks))))
        logger.info(
            f"Batch {kind} for {hotel_id}: {len(chunks)} sub-batches, "
            f"{result.modified} written, {result.failed} failed"
        )
        return result

    async def _run_sub_batch(
        self, hotel_id: str, kind: str, index: int, chunk: list, approved_by: str | None
    ) -> SubBatchResult:
        sub = SubBatchResult(index=index, size=len(chunk))
        for upsert in (False, True):
            sub.upsert_mode = upsert
            async with self._session_factory() as db:
                try:
                    await asyncio.wait_for(
                        self._write(db, hotel_id, kind, chunk, sub, upsert, approved_by),
                        timeout=self.timeout_ms / 1000,
                    )
                    await db.commit()
                    return sub
                except IntegrityError as e:
                    await db.rollback()
                    sub.reset()
                    if upsert:
                        sub.errors.append({"kind": "conflict", "code": "Duplicate", "message": str(e.orig)})
                        return sub
                    logger.warning(f"Sub-batch {index} for {hotel_id} hit a duplicate key, retrying as upsert")
                except CoreError as e:
                    await db.rollback()
                    sub.reset()
                    sub.errors.append(_error(e))
                    logger.warning(f"Sub-batch {index} for {hotel_id} rolled back: {e}")
                    return sub
                except asyncio.TimeoutError:
                    await db.rollback()
                    sub.reset()
                    sub.errors.append({
                        "kind": "unavailable",
                        "code": None,
                        "message": f"Sub-batch timed out after {self.timeout_ms}ms",
                    })
                    logger.error(f"Sub-batch {index} for {hotel_id} timed out")
                    return sub
        return sub

    async def _write(
        self,
        db: AsyncSession,
        hotel_id: str,
        kind: str,
        chunk: list,
        sub: SubBatchResult,
        upsert: bool,
        approved_by: str | None,
    ):
        if kind == "availability":
            await self._write_availability(db, hotel_id, chunk, sub, upsert)
        else:
            await self._write_rates(db, hotel_id, chunk, sub, approved_by)

        days = [u.date for u in chunk]
        room_type_ids = sorted({str(u.room_type_id) for u in chunk})
        envelope = await self._bus.publish(
            db,
            EVENT_TYPES[kind],
            hotel_id,
            {
                "source": "batch",
                "start": to_wire_date(min(days)),
                "end": to_wire_date(max(days)),
                "roomTypeIds": room_type_ids,
                "subBatch": sub.index,
            },
            keys=[event_key(u.room_type_id, u.date) for u in chunk],
            priority=3,
        )
        sub.event_id = envelope.id

    async def _room_types(self, db: AsyncSession, hotel_id: str, chunk: list) -> dict[uuid.UUID, RoomType]:
        return {
            room_type_id: await self._rates.get_room_type(db, hotel_id, room_type_id)
            for room_type_id in {u.room_type_id for u in chunk}
        }

    async def _write_availability(
        self, db: AsyncSession, hotel_id: str, chunk: list[AvailabilityUpdate], sub: SubBatchResult, upsert: bool
    ):
        room_types = await self._room_types(db, hotel_id, chunk)
        keys = {(u.room_type_id, u.date) for u in chunk}
        rows = await self._availability.get_rows_for_keys(db, hotel_id, keys, for_update=True)

        if upsert:
            missing: dict[uuid.UUID, list[date]] = {}
            for room_type_id, day in keys - rows.keys():
                missing.setdefault(room_type_id, []).append(day)
            for room_type_id, days in missing.items():
                sub.upserted_count += await self._availability.seed(db, hotel_id, room_types[room_type_id], sorted(days))
            rows = await self._availability.get_rows_for_keys(db, hotel_id, keys, for_update=True)

        created: set[tuple[uuid.UUID, date]] = set()
        modified: set[tuple[uuid.UUID, date]] = set()
        for update in chunk:
            key = (update.room_type_id, update.date)
            row = rows.get(key)
            if row is None:
                row = self._availability.new_row(hotel_id, room_types[update.room_type_id], update.date)
                db.add(row)
                rows[key] = row
                created.add(key)
            patch = update.patch()
            self._availability.validate_patch(patch)
            if merge_patch(row, patch) and key not in created:
                modified.add(key)
            check_invariants(row)
        await db.flush()
        sub.modified_count = len(modified)
        sub.upserted_count += len(created)

    async def _write_rates(
        self, db: AsyncSession, hotel_id: str, chunk: list[RateUpdate], sub: SubBatchResult, approved_by: str | None
    ):
        await self._room_types(db, hotel_id, chunk)
        plans = {u.rate_plan_id for u in chunk if u.rate_plan_id}
        for plan_id in plans:
            plan = await self._rates.get_rate_plan(db, hotel_id, plan_id)
            if not plan.active:
                raise Conflict(f"Rate plan '{plan.name}' is deactivated", rate_plan_id=str(plan_id))

        def plan_key(u: RateUpdate) -> str:
            return str(u.rate_plan_id) if u.rate_plan_id else ROOM_TYPE_WIDE

        existing = await db.execute(
            select(RateOverride.room_type_id, RateOverride.rate_plan_key, RateOverride.date).where(
                RateOverride.hotel_id == hotel_id,
                tuple_(RateOverride.room_type_id, RateOverride.rate_plan_key, RateOverride.date).in_(
                    [(u.room_type_id, plan_key(u), u.date) for u in chunk]
                ),
            )
        )
        already = {tuple(row) for row in existing.all()}

        seen = set()
        for update in chunk:
            key = (update.room_type_id, plan_key(update), update.date)
            await self._rates.upsert_override(
                db, hotel_id, update.room_type_id, update.rate_plan_id, update.date,
                update.rate, update.currency, update.reason or "bulk_update", approved_by,
            )
            if key in seen:
                continue
            seen.add(key)
            if key in already:
                sub.modified_count += 1
            else:
                sub.upserted_count += 1

    # ─── Convenience entry points ───

    async def bulk_update_availability(self, hotel_id: str, updates: list[dict]) -> BatchResult:
        return await self.apply(hotel_id, "availability", updates)

    async def bulk_update_rates(
        self, hotel_id: str, updates: list[dict], approved_by: str | None = None
    ) -> BatchResult:
        return await self.apply(hotel_id, "rate", updates, approved_by)

    async def create_availability_range(
        self, db: AsyncSession, hotel_id: str, data: AvailabilityRangeCreate
    ) -> Result[dict]:
        """Seed default rows for an inclusive date range and announce them."""
        try:
            room_type = await self._rates.get_room_type(db, hotel_id, data.room_type_id)
            days = (data.end_date - data.start_date).days + 1
            created = await self._availability.ensure_rows(
                db, hotel_id, room_type, data.start_date, days, data.total_rooms
            )
            if created:
                await self._bus.publish(
                    db,
                    "availability_update",
                    hotel_id,
                    {
                        "source": "rollout",
                        "start": to_wire_date(data.start_date),
                        "end": to_wire_date(data.end_date),
                        "roomTypeIds": [str(room_type.id)],
                    },
                    keys=[event_key(room_type.id, d) for d in date_range(data.start_date, data.end_date)],
                    priority=4,
                )
            await db.commit()
        except CoreError as e:
            await db.rollback()
            return Result.from_error(e)
        return Result.ok({
            "room_type_id": str(room_type.id),
            "start_date": to_wire_date(data.start_date),
            "end_date": to_wire_date(data.end_date),
            "days": days,
            "created": created,
        })


batch_writer = BatchWriter()
