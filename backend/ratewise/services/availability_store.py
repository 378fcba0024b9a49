"""Availability store: date by room-type inventory rows and their invariants."""

import logging
import uuid
from datetime import date, timedelta

from sqlalchemy import select, tuple_
from sqlalchemy.ext.asyncio import AsyncSession

from ratewise.database import dialect_insert
from ratewise.models.availability import AvailabilityRow
from ratewise.models.rates import RoomType
from ratewise.services.calendar import stay_nights, to_wire_date
from ratewise.services.results import InventoryConflict, NotFound, ValidationFailed

logger = logging.getLogger(__name__)

DEFAULT_MIN_STAY = 1
DEFAULT_MAX_STAY = 30

# Fields a caller may patch on a row
PATCHABLE_FIELDS = (
    "total_rooms",
    "sold_rooms",
    "blocked_rooms",
    "stop_sell",
    "closed_to_arrival",
    "closed_to_departure",
    "min_stay",
    "max_stay",
)


def check_invariants(row: AvailabilityRow):
    """Raise InventoryConflict if the row breaks an inventory invariant."""
    key = f"{row.room_type_id}|{to_wire_date(row.date)}"
    if row.sold_rooms < 0 or row.blocked_rooms < 0 or row.total_rooms < 0:
        raise InventoryConflict(f"Negative inventory count for {key}", key=key)
    if row.sold_rooms + row.blocked_rooms > row.total_rooms:
        raise InventoryConflict(
            f"sold + blocked exceeds total for {key}",
            key=key,
            total=row.total_rooms,
            sold=row.sold_rooms,
            blocked=row.blocked_rooms,
        )
    if row.min_stay < 1 or row.min_stay > row.max_stay:
        raise InventoryConflict(f"min_stay must be between 1 and max_stay for {key}", key=key)


def snapshot(row: AvailabilityRow) -> dict:
    """Value object carried on availability_update envelopes."""
    return {
        "roomTypeId": str(row.room_type_id),
        "date": to_wire_date(row.date),
        "totalRooms": row.total_rooms,
        "soldRooms": row.sold_rooms,
        "blockedRooms": row.blocked_rooms,
        "available": row.available_rooms,
        "stopSell": row.stop_sell,
        "closedToArrival": row.closed_to_arrival,
        "closedToDeparture": row.closed_to_departure,
        "minStay": row.min_stay,
        "maxStay": row.max_stay,
    }


def merge_patch(row: AvailabilityRow, patch: dict) -> bool:
    """Apply a partial update; returns True if anything changed."""
    changed = False
    for field_name in PATCHABLE_FIELDS:
        if field_name in patch and patch[field_name] is not None:
            if getattr(row, field_name) != patch[field_name]:
                setattr(row, field_name, patch[field_name])
                changed = True
    return changed


class AvailabilityStore:
    """Reads and mutates AvailabilityRows inside the caller's transaction."""

    async def get_rows(
        self,
        db: AsyncSession,
        hotel_id: str,
        room_type_id: uuid.UUID,
        start: date,
        end: date,
        for_update: bool = False,
    ) -> dict[date, AvailabilityRow]:
        """Rows for dates in [start, end), keyed by date."""
        stmt = select(AvailabilityRow).where(
            AvailabilityRow.hotel_id == hotel_id,
            AvailabilityRow.room_type_id == room_type_id,
            AvailabilityRow.date >= start,
            AvailabilityRow.date < end,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return {row.date: row for row in result.scalars().all()}

    async def get_rows_for_keys(
        self,
        db: AsyncSession,
        hotel_id: str,
        keys: set[tuple[uuid.UUID, date]],
        for_update: bool = False,
    ) -> dict[tuple[uuid.UUID, date], AvailabilityRow]:
        if not keys:
            return {}
        stmt = select(AvailabilityRow).where(
            AvailabilityRow.hotel_id == hotel_id,
            tuple_(AvailabilityRow.room_type_id, AvailabilityRow.date).in_(list(keys)),
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return {(row.room_type_id, row.date): row for row in result.scalars().all()}

    async def list_range(
        self, db: AsyncSession, hotel_id: str, start: date, end: date, room_type_id: uuid.UUID | None = None
    ) -> list[AvailabilityRow]:
        stmt = select(AvailabilityRow).where(
            AvailabilityRow.hotel_id == hotel_id,
            AvailabilityRow.date >= start,
            AvailabilityRow.date <= end,
        )
        if room_type_id:
            stmt = stmt.where(AvailabilityRow.room_type_id == room_type_id)
        result = await db.execute(stmt.order_by(AvailabilityRow.room_type_id, AvailabilityRow.date))
        return list(result.scalars().all())

    async def _room_type(self, db: AsyncSession, hotel_id: str, room_type_id: uuid.UUID) -> RoomType:
        room_type = await db.get(RoomType, room_type_id)
        if room_type is None or room_type.hotel_id != hotel_id:
            raise NotFound(f"Room type {room_type_id} not found", room_type_id=str(room_type_id))
        return room_type

    def new_row(self, hotel_id: str, room_type: RoomType, day: date) -> AvailabilityRow:
        return AvailabilityRow(
            hotel_id=hotel_id,
            room_type_id=room_type.id,
            date=day,
            total_rooms=room_type.total_rooms,
            sold_rooms=0,
            blocked_rooms=0,
            stop_sell=False,
            closed_to_arrival=False,
            closed_to_departure=False,
            min_stay=DEFAULT_MIN_STAY,
            max_stay=DEFAULT_MAX_STAY,
        )

    async def apply_sold_delta(
        self,
        db: AsyncSession,
        hotel_id: str,
        room_type_id: uuid.UUID,
        start: date,
        end: date,
        delta: int,
        clamp_release: bool = False,
    ) -> tuple[list[AvailabilityRow], list[str]]:
        """Add ``delta`` sold rooms to every night in [start, end).

        Rows are locked for the rest of the transaction. Missing rows are created
        from the room type defaults. A positive delta that overbooks a night raises
        InventoryConflict; a release below zero raises too unless ``clamp_release``
        is set, in which case the night is clamped and reported as drift.
        """
        rows = await self.get_rows(db, hotel_id, room_type_id, start, end, for_update=True)
        room_type = None
        touched: list[AvailabilityRow] = []
        drift: list[str] = []
        for night in stay_nights(start, end):
            row = rows.get(night)
            if row is None:
                room_type = room_type or await self._room_type(db, hotel_id, room_type_id)
                row = self.new_row(hotel_id, room_type, night)
                db.add(row)
            new_sold = row.sold_rooms + delta
            if new_sold < 0:
                if not clamp_release:
                    raise InventoryConflict(
                        f"Release would make sold rooms negative on {to_wire_date(night)}",
                        key=f"{room_type_id}|{to_wire_date(night)}",
                    )
                drift.append(to_wire_date(night))
                new_sold = 0
            if delta > 0 and new_sold + row.blocked_rooms > row.total_rooms:
                raise InventoryConflict(
                    f"Overbooking on {to_wire_date(night)}: {row.available_rooms} rooms available",
                    key=f"{room_type_id}|{to_wire_date(night)}",
                    date=to_wire_date(night),
                    available=row.available_rooms,
                    requested=delta,
                )
            row.sold_rooms = new_sold
            touched.append(row)
        await db.flush()
        return touched, drift

    async def ensure_rows(
        self,
        db: AsyncSession,
        hotel_id: str,
        room_type: RoomType,
        start: date,
        days: int,
        total_rooms: int | None = None,
    ) -> int:
        """Seed missing rows for [start, start + days) with room type defaults."""
        end = start + timedelta(days=days)
        existing = await self.get_rows(db, hotel_id, room_type.id, start, end)
        missing = [d for d in stay_nights(start, end) if d not in existing]
        return await self.seed(db, hotel_id, room_type, missing, total_rooms)

    async def seed(
        self,
        db: AsyncSession,
        hotel_id: str,
        room_type: RoomType,
        days: list[date],
        total_rooms: int | None = None,
    ) -> int:
        """Insert default rows for ``days``, skipping any that already exist."""
        if not days:
            return 0
        values = [
            {
                "id": uuid.uuid4(),
                "hotel_id": hotel_id,
                "room_type_id": room_type.id,
                "date": day,
                "total_rooms": room_type.total_rooms if total_rooms is None else total_rooms,
                "sold_rooms": 0,
                "blocked_rooms": 0,
                "stop_sell": False,
                "closed_to_arrival": False,
                "closed_to_departure": False,
                "min_stay": DEFAULT_MIN_STAY,
                "max_stay": DEFAULT_MAX_STAY,
            }
            for day in days
        ]
        # Another writer may seed the same nights concurrently; duplicates are skipped
        stmt = dialect_insert(db, AvailabilityRow).values(values).on_conflict_do_nothing(
            index_elements=["hotel_id", "room_type_id", "date"]
        )
        result = await db.execute(stmt)
        created = result.rowcount if result.rowcount is not None and result.rowcount >= 0 else len(days)
        logger.debug(f"Seeded {created} availability rows for {hotel_id}/{room_type.code}")
        return created

    def validate_patch(self, patch: dict):
        for field_name in ("total_rooms", "sold_rooms", "blocked_rooms", "min_stay", "max_stay"):
            value = patch.get(field_name)
            if value is not None and value < 0:
                raise ValidationFailed(f"{field_name} must not be negative")


availability_store = AvailabilityStore()
