"""Reconciler: applies channel booking callbacks to inventory.

New bookings take rooms night by night, modifications apply the difference
between the old and new stay, cancellations release rooms. Every callback leaves a
ReconciliationRecord and is deduplicated on (channel, booking, kind, sequence).
A booking that would overbook a night is rejected and raises an overbooking alert.
"""

import logging
import uuid
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ratewise.models.reconciliation import ChannelBooking, InboundOperation, ReconciliationRecord
from ratewise.schemas.inbound import ChannelEventIn
from ratewise.services.availability_store import AvailabilityStore, availability_store
from ratewise.services.calendar import Clock, stay_nights, system_clock, to_wire_date
from ratewise.services.channel_registry import ChannelRegistry, channel_registry
from ratewise.services.event_bus import EventBus, event_bus, event_key
from ratewise.services.rate_store import RateStore, rate_store
from ratewise.services.results import (
    Conflict,
    CoreError,
    ErrorCode,
    InventoryConflict,
    NotFound,
    Result,
)

logger = logging.getLogger(__name__)

AMENDMENT_CUTOFF = timedelta(hours=2)


class AmendmentRefused(Conflict):
    def __init__(self, message: str, **details):
        super().__init__(message, ErrorCode.AMENDMENT_REFUSED, **details)


class Reconciler:
    def __init__(
        self,
        bus: EventBus | None = None,
        availability: AvailabilityStore | None = None,
        rates: RateStore | None = None,
        registry: ChannelRegistry | None = None,
        clock: Clock | None = None,
    ):
        self._bus = bus or event_bus
        self._availability = availability or availability_store
        self._rates = rates or rate_store
        self._registry = registry or channel_registry
        self._clock = clock or system_clock

    async def on_channel_event(self, db: AsyncSession, hotel_id: str, event: ChannelEventIn) -> Result[dict]:
        duplicate = await self._seen(db, event)
        if duplicate is not None:
            logger.info(
                f"Duplicate {event.kind} from {event.channel} for {event.channel_booking_id} seq {event.sequence}"
            )
            return Result.ok({"duplicate": True, "reconciliation_id": _str(duplicate.reconciliation_id)})

        handlers = {
            "new_booking": self._new_booking,
            "modification": self._modification,
            "cancellation": self._cancellation,
        }
        try:
            record = await handlers[event.kind](db, hotel_id, event)
            self._remember(db, event, record)
            await db.commit()
        except InventoryConflict as e:
            await db.rollback()
            return await self._overbooked(db, hotel_id, event, e)
        except AmendmentRefused as e:
            await db.rollback()
            record = self._record(hotel_id, event, "refused", notes=str(e))
            db.add(record)
            self._remember(db, event, record)
            await db.commit()
            logger.warning(f"Refused {event.kind} {event.channel}/{event.channel_booking_id}: {e}")
            return Result.from_error(e)
        except CoreError as e:
            await db.rollback()
            logger.warning(f"Rejected {event.kind} {event.channel}/{event.channel_booking_id}: {e}")
            return Result.from_error(e)
        except IntegrityError:
            # A concurrent delivery of the same callback won the idempotency key
            await db.rollback()
            return Result.ok({"duplicate": True, "reconciliation_id": None})

        logger.info(
            f"Reconciled {event.kind} {event.channel}/{event.channel_booking_id} for {hotel_id}: {record.outcome}"
        )
        return Result.ok({
            "duplicate": False,
            "reconciliation_id": str(record.id),
            "booking_id": _str(record.internal_booking_id),
            "outcome": record.outcome,
            "notes": record.notes,
        })

    # ─── Idempotency + records ───

    async def _seen(self, db: AsyncSession, event: ChannelEventIn) -> InboundOperation | None:
        result = await db.execute(
            select(InboundOperation).where(
                InboundOperation.channel == event.channel,
                InboundOperation.channel_booking_id == event.channel_booking_id,
                InboundOperation.modification_type == event.kind,
                InboundOperation.sequence == event.sequence,
            )
        )
        return result.scalar_one_or_none()

    def _remember(self, db: AsyncSession, event: ChannelEventIn, record: ReconciliationRecord):
        db.add(
            InboundOperation(
                channel=event.channel,
                channel_booking_id=event.channel_booking_id,
                modification_type=event.kind,
                sequence=event.sequence,
                reconciliation_id=record.id,
            )
        )

    def _record(
        self,
        hotel_id: str,
        event: ChannelEventIn,
        outcome: str,
        booking: ChannelBooking | None = None,
        old_values: dict | None = None,
        new_values: dict | None = None,
        notes: str | None = None,
        resolved: bool = False,
    ) -> ReconciliationRecord:
        return ReconciliationRecord(
            id=uuid.uuid4(),
            hotel_id=hotel_id,
            channel_id=event.channel,
            channel_booking_id=event.channel_booking_id,
            internal_booking_id=booking.id if booking else None,
            modification_type=event.kind,
            sequence=event.sequence,
            old_values=old_values,
            new_values=new_values,
            outcome=outcome,
            notes=notes,
            resolved_at=self._clock.now() if resolved else None,
        )

    async def _booking(self, db: AsyncSession, hotel_id: str, event: ChannelEventIn) -> ChannelBooking | None:
        result = await db.execute(
            select(ChannelBooking)
            .where(
                ChannelBooking.hotel_id == hotel_id,
                ChannelBooking.channel == event.channel,
                ChannelBooking.channel_booking_id == event.channel_booking_id,
            )
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _missing_booking(self, db: AsyncSession, hotel_id: str, event: ChannelEventIn) -> ReconciliationRecord:
        record = self._record(hotel_id, event, "no_booking", notes="No booking with this channel reference")
        db.add(record)
        self._remember(db, event, record)
        await db.commit()
        raise NotFound(
            f"No booking {event.channel_booking_id} from {event.channel}",
            channel_booking_id=event.channel_booking_id,
            reconciliation_id=str(record.id),
        )

    # ─── Handlers ───

    async def _new_booking(self, db: AsyncSession, hotel_id: str, event: ChannelEventIn) -> ReconciliationRecord:
        booking = await self._booking(db, hotel_id, event)
        if booking is not None and booking.status != "cancelled":
            record = self._record(
                hotel_id, event, "applied", booking, new_values=_values(booking),
                notes="Booking already recorded; inventory unchanged", resolved=True,
            )
            db.add(record)
            return record

        await self._rates.get_room_type(db, hotel_id, event.room_type_id)
        await self._availability.apply_sold_delta(
            db, hotel_id, event.room_type_id, event.stay.check_in, event.stay.check_out, event.rooms
        )
        if booking is None:
            booking = ChannelBooking(
                id=uuid.uuid4(),
                hotel_id=hotel_id,
                channel=event.channel,
                channel_booking_id=event.channel_booking_id,
                source="channel",
            )
            db.add(booking)
        booking.room_type_id = event.room_type_id
        booking.check_in = event.stay.check_in
        booking.check_out = event.stay.check_out
        booking.rooms = event.rooms
        booking.guest_name = event.guest.name if event.guest else None
        booking.guest_email = event.guest.email if event.guest else None
        booking.amount = event.amount
        booking.currency = event.currency
        booking.status = "confirmed"
        booking.last_sequence = event.sequence

        nights = {event.room_type_id: list(stay_nights(event.stay.check_in, event.stay.check_out))}
        await self._publish_correction(db, hotel_id, event, nights)
        await self._acknowledge(db, hotel_id, event, "booking_sync", "confirmed")

        record = self._record(hotel_id, event, "applied", booking, new_values=_values(booking), resolved=True)
        db.add(record)
        return record

    async def _modification(self, db: AsyncSession, hotel_id: str, event: ChannelEventIn) -> ReconciliationRecord:
        booking = await self._booking(db, hotel_id, event)
        if booking is None:
            return await self._missing_booking(db, hotel_id, event)
        if booking.status == "cancelled":
            raise AmendmentRefused("Booking is cancelled", booking_id=str(booking.id))
        if event.sequence and event.sequence < (booking.last_sequence or 0):
            raise AmendmentRefused(
                f"Sequence {event.sequence} is older than {booking.last_sequence}", booking_id=str(booking.id)
            )
        await self._check_cutoff(db, hotel_id, booking)

        old = _values(booking)
        requested = event.new_values
        new_room_type = (requested.room_type_id if requested else None) or event.room_type_id or booking.room_type_id
        new_check_in = (requested.check_in if requested else None) or (event.stay.check_in if event.stay else booking.check_in)
        new_check_out = (requested.check_out if requested else None) or (event.stay.check_out if event.stay else booking.check_out)
        new_rooms = (requested.rooms if requested else None) or event.rooms or booking.rooms
        if new_check_in >= new_check_out:
            raise AmendmentRefused("Modified stay must end after it starts")
        if new_room_type != booking.room_type_id:
            await self._rates.get_room_type(db, hotel_id, new_room_type)

        deltas: dict[uuid.UUID, dict[date, int]] = defaultdict(lambda: defaultdict(int))
        for night in stay_nights(booking.check_in, booking.check_out):
            deltas[booking.room_type_id][night] -= booking.rooms
        for night in stay_nights(new_check_in, new_check_out):
            deltas[new_room_type][night] += new_rooms
        drift = await self._apply_deltas(db, hotel_id, deltas)

        booking.room_type_id = new_room_type
        booking.check_in = new_check_in
        booking.check_out = new_check_out
        booking.rooms = new_rooms
        if event.amount is not None:
            booking.amount = event.amount
            booking.currency = event.currency or booking.currency
        booking.status = "modified"
        booking.last_sequence = event.sequence

        touched = {rt: [d for d, delta in nights.items() if delta] for rt, nights in deltas.items()}
        await self._publish_correction(db, hotel_id, event, touched)
        await self._acknowledge(db, hotel_id, event, "channel_modification", "modified")

        record = self._record(
            hotel_id, event, "drift_corrected" if drift else "applied", booking,
            old_values=old, new_values=_values(booking),
            notes=f"Sold rooms clamped at zero on {', '.join(drift)}" if drift else None,
            resolved=True,
        )
        db.add(record)
        return record

    async def _cancellation(self, db: AsyncSession, hotel_id: str, event: ChannelEventIn) -> ReconciliationRecord:
        booking = await self._booking(db, hotel_id, event)
        if booking is None:
            return await self._missing_booking(db, hotel_id, event)
        if booking.status == "cancelled":
            record = self._record(
                hotel_id, event, "applied", booking, old_values=_values(booking),
                notes="Booking already cancelled; inventory unchanged", resolved=True,
            )
            db.add(record)
            return record

        old = _values(booking)
        _, drift = await self._availability.apply_sold_delta(
            db, hotel_id, booking.room_type_id, booking.check_in, booking.check_out,
            -booking.rooms, clamp_release=True,
        )
        booking.status = "cancelled"
        booking.last_sequence = event.sequence

        nights = {booking.room_type_id: list(stay_nights(booking.check_in, booking.check_out))}
        await self._publish_correction(db, hotel_id, event, nights)
        await self._acknowledge(db, hotel_id, event, "channel_modification", "cancelled")

        record = self._record(
            hotel_id, event, "drift_corrected" if drift else "applied", booking,
            old_values=old, new_values={"status": "cancelled"},
            notes=f"Sold rooms clamped at zero on {', '.join(drift)}" if drift else None,
            resolved=True,
        )
        db.add(record)
        if drift:
            logger.warning(f"Inventory drift on cancellation {event.channel}/{event.channel_booking_id}: {drift}")
        return record

    async def _apply_deltas(self, db: AsyncSession, hotel_id: str, deltas: dict) -> list[str]:
        """Releases first, then takes, so a stay shifted within the same nights never overbooks."""
        drift: list[str] = []
        changes = [
            (room_type_id, night, delta)
            for room_type_id, nights in deltas.items()
            for night, delta in nights.items()
            if delta
        ]
        for room_type_id, night, delta in sorted(changes, key=lambda c: c[2]):
            _, clamped = await self._availability.apply_sold_delta(
                db, hotel_id, room_type_id, night, night + timedelta(days=1), delta, clamp_release=delta < 0
            )
            drift.extend(clamped)
        return drift

    async def _check_cutoff(self, db: AsyncSession, hotel_id: str, booking: ChannelBooking):
        room_type = await self._rates.get_room_type(db, hotel_id, booking.room_type_id)
        tz = ZoneInfo(room_type.timezone) if room_type.timezone else ZoneInfo("UTC")
        check_in_at = datetime.combine(booking.check_in, time.min, tzinfo=tz)
        if check_in_at - self._clock.now() < AMENDMENT_CUTOFF:
            raise AmendmentRefused(
                "Bookings cannot be modified within 2 hours of check-in", booking_id=str(booking.id)
            )

    # ─── Events ───

    async def _publish_correction(
        self, db: AsyncSession, hotel_id: str, event: ChannelEventIn, nights: dict[uuid.UUID, list[date]]
    ):
        all_nights = [n for days in nights.values() for n in days]
        if not all_nights:
            return
        await self._bus.publish(
            db,
            "availability_update",
            hotel_id,
            {
                "source": "reconciler",
                "start": to_wire_date(min(all_nights)),
                "end": to_wire_date(max(all_nights)),
                "roomTypeIds": sorted(str(rt) for rt, days in nights.items() if days),
                "channelId": event.channel,
                "channelBookingId": event.channel_booking_id,
            },
            keys=[event_key(rt, n) for rt, days in nights.items() for n in days],
            priority=2,
            correlation_id=f"{event.channel}:{event.channel_booking_id}:{event.sequence}",
        )

    async def _acknowledge(self, db: AsyncSession, hotel_id: str, event: ChannelEventIn, event_type: str, status: str):
        try:
            view = await self._registry.get(db, hotel_id, event.channel)
        except NotFound:
            return
        if event_type not in view.sync_flags:
            return
        await self._bus.publish(
            db,
            event_type,
            hotel_id,
            {
                "channelId": event.channel,
                "channelBookingId": event.channel_booking_id,
                "status": status,
                "sequence": event.sequence,
            },
            priority=2,
            correlation_id=f"{event.channel}:{event.channel_booking_id}:{event.sequence}",
        )

    async def _overbooked(
        self, db: AsyncSession, hotel_id: str, event: ChannelEventIn, error: InventoryConflict
    ) -> Result[dict]:
        """Record the rejection and raise the alert in a transaction of its own."""
        record = self._record(
            hotel_id, event, "overbooked",
            new_values={
                "room_type_id": _str(event.room_type_id),
                "check_in": to_wire_date(event.stay.check_in) if event.stay else None,
                "check_out": to_wire_date(event.stay.check_out) if event.stay else None,
                "rooms": event.rooms,
            },
            notes=str(error),
        )
        db.add(record)
        self._remember(db, event, record)
        await self._bus.publish(
            db,
            "overbooking_alert",
            hotel_id,
            {
                "channelId": event.channel,
                "channelBookingId": event.channel_booking_id,
                "kind": event.kind,
                "details": {k: v for k, v in error.details.items() if isinstance(v, (str, int))},
                "reconciliationId": str(record.id),
            },
            priority=1,
            correlation_id=f"{event.channel}:{event.channel_booking_id}:{event.sequence}",
        )
        await db.commit()
        logger.error(f"Overbooking rejected: {event.channel}/{event.channel_booking_id} for {hotel_id}: {error}")
        return Result.conflict(
            str(error),
            ErrorCode.INVENTORY_CONFLICT,
            reconciliation_id=str(record.id),
            **{k: v for k, v in error.details.items() if isinstance(v, (str, int))},
        )

    # ─── Supervision ───

    async def list_records(
        self, db: AsyncSession, hotel_id: str, unresolved_only: bool = False, limit: int = 50
    ) -> list[ReconciliationRecord]:
        stmt = select(ReconciliationRecord).where(ReconciliationRecord.hotel_id == hotel_id)
        if unresolved_only:
            stmt = stmt.where(ReconciliationRecord.resolved_at.is_(None))
        result = await db.execute(stmt.order_by(ReconciliationRecord.created_at.desc()).limit(limit))
        return list(result.scalars().all())

    async def resolve(
        self, db: AsyncSession, hotel_id: str, record_id: uuid.UUID, notes: str | None = None
    ) -> ReconciliationRecord:
        record = await db.get(ReconciliationRecord, record_id)
        if record is None or record.hotel_id != hotel_id:
            raise NotFound(f"Reconciliation record {record_id} not found")
        record.resolved_at = self._clock.now()
        if notes:
            record.notes = f"{record.notes}\n{notes}" if record.notes else notes
        await db.commit()
        return record


def _values(booking: ChannelBooking) -> dict:
    return {
        "room_type_id": str(booking.room_type_id),
        "check_in": to_wire_date(booking.check_in),
        "check_out": to_wire_date(booking.check_out),
        "rooms": booking.rooms,
        "status": booking.status,
    }


def _str(value) -> str | None:
    return str(value) if value is not None else None


reconciler = Reconciler()
