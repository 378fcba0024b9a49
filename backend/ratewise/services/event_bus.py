"""Event bus: durable outbox of envelopes drained by the channel distributor.

Envelopes are published inside the caller's transaction, so an event exists
exactly when the data change it describes has committed. Delivery is FIFO per
channel and event key (roomTypeId|date within a hotel) and concurrent across
keys. The lease keeps envelopes nobody has seen yet in key order; once an
envelope has reached some channels, the distributor orders the rest per channel.
"""

import logging
import random
import uuid
from collections.abc import Iterable
from datetime import date, datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ratewise.config import settings
from ratewise.models.events import EVENT_TYPES, EventEnvelope
from ratewise.services.alert_service import AlertService, alert_service
from ratewise.services.calendar import Clock, ms, system_clock, to_wire_date
from ratewise.services.results import NotFound, ValidationFailed

logger = logging.getLogger(__name__)

# Only state snapshots can replace each other
SUPERSEDABLE_TYPES = ("rate_update", "availability_update")

LOWEST_PRIORITY = 5


def event_key(room_type_id: uuid.UUID | str, day: date | str) -> str:
    return f"{room_type_id}|{to_wire_date(day) if isinstance(day, date) else day}"


def backoff_ms(attempts: int, rng: random.Random | None = None) -> int:
    """Delay before the next attempt: exponential with equal jitter, capped."""
    exponent = max(attempts - 1, 0)
    delay = min(
        settings.event_backoff_cap_ms,
        settings.event_backoff_base_ms * settings.event_backoff_factor ** exponent,
    )
    rng = rng or random
    return int(delay / 2 + rng.uniform(0, delay / 2))


def lease_duration() -> timedelta:
    # Covers the per-event deadline (2x the call timeout) plus grace
    return ms(2 * settings.channel_default_timeout_ms + settings.event_lease_grace_ms)


class EventBus:
    def __init__(
        self,
        clock: Clock | None = None,
        alerts: AlertService | None = None,
        rng: random.Random | None = None,
    ):
        self._clock = clock or system_clock
        self._alerts = alerts or alert_service
        self._rng = rng

    @property
    def clock(self) -> Clock:
        return self._clock

    # ─── Publishing ───

    async def publish(
        self,
        db: AsyncSession,
        event_type: str,
        hotel_id: str,
        payload: dict,
        keys: Iterable[str] = (),
        priority: int = 3,
        correlation_id: str | None = None,
        max_attempts: int | None = None,
    ) -> EventEnvelope:
        """Add an envelope to the outbox inside the caller's transaction.

        Pending envelopes of the same type whose keys are all covered by this one,
        and whose priority is not more urgent, are marked superseded.
        """
        if event_type not in EVENT_TYPES:
            raise ValidationFailed(f"Unknown event type: {event_type}")
        if not 1 <= priority <= LOWEST_PRIORITY:
            raise ValidationFailed("priority must be between 1 and 5", priority=priority)

        key_list = sorted(set(keys))
        now = self._clock.now()

        superseded = 0
        if event_type in SUPERSEDABLE_TYPES and key_list:
            covered = set(key_list)
            result = await db.execute(
                select(EventEnvelope).where(
                    EventEnvelope.hotel_id == hotel_id,
                    EventEnvelope.type == event_type,
                    EventEnvelope.status == "pending",
                    EventEnvelope.original_priority >= priority,
                )
            )
            for older in result.scalars().all():
                if older.keys and set(older.keys) <= covered:
                    older.status = "succeeded"
                    older.reason = "superseded"
                    older.completed_at = now
                    superseded += 1

        envelope = EventEnvelope(
            id=uuid.uuid4(),
            type=event_type,
            hotel_id=hotel_id,
            payload=payload,
            keys=key_list,
            priority=priority,
            original_priority=priority,
            status="pending",
            attempts=0,
            max_attempts=max_attempts or settings.event_max_attempts,
            next_attempt_at=now,
            channel_state={},
            correlation_id=correlation_id,
            created_at=now,
        )
        db.add(envelope)
        await db.flush()
        logger.info(
            f"Published {event_type} p{priority} for {hotel_id} ({len(key_list)} keys"
            f"{f', superseded {superseded}' if superseded else ''})"
        )
        return envelope

    # ─── Leasing ───

    async def reap_expired(self, db: AsyncSession) -> int:
        """Return envelopes whose lease ran out to pending, or dead at max attempts."""
        now = self._clock.now()
        result = await db.execute(
            select(EventEnvelope).where(
                EventEnvelope.status == "in_flight",
                EventEnvelope.leased_until < now,
            )
        )
        reaped = 0
        for envelope in result.scalars().all():
            reaped += 1
            if envelope.attempts >= envelope.max_attempts:
                await self.dead(db, envelope, envelope.last_error or "lease expired")
                continue
            envelope.status = "pending"
            envelope.leased_until = None
            envelope.next_attempt_at = now
            envelope.last_error = "lease expired"
        if reaped:
            logger.warning(f"Reaped {reaped} expired event leases")
        return reaped

    async def lease(self, db: AsyncSession, limit: int | None = None) -> list[EventEnvelope]:
        """Lease up to ``limit`` due envelopes, most urgent first, FIFO per key.

        Commits the session so the leases are visible to other workers.
        """
        limit = limit or settings.event_drain_batch
        await self.reap_expired(db)
        now = self._clock.now()

        result = await db.execute(
            select(EventEnvelope)
            .where(EventEnvelope.status == "pending", EventEnvelope.next_attempt_at <= now)
            .order_by(EventEnvelope.priority, EventEnvelope.created_at)
            .limit(settings.event_drain_window)
        )
        candidates = list(result.scalars().all())
        if not candidates:
            await db.commit()
            return []

        hotels = {c.hotel_id for c in candidates}
        # Keys held by in-flight envelopes, and by pending ones no channel has seen yet.
        # Pending envelopes already part-delivered are ordered per channel by the distributor.
        held = await db.execute(
            select(EventEnvelope.id, EventEnvelope.hotel_id, EventEnvelope.keys, EventEnvelope.status,
                   EventEnvelope.created_at, EventEnvelope.channel_state)
            .where(EventEnvelope.hotel_id.in_(hotels), EventEnvelope.status.in_(("pending", "in_flight")))
        )
        in_flight_keys: set[tuple[str, str]] = set()
        pending_by_key: dict[tuple[str, str], list[tuple[datetime, uuid.UUID]]] = {}
        for other_id, other_hotel, other_keys, status, created, channel_state in held.all():
            for key in other_keys or ():
                if status == "in_flight":
                    in_flight_keys.add((other_hotel, key))
                elif not channel_state:
                    pending_by_key.setdefault((other_hotel, key), []).append((created, other_id))

        # Only leased envelopes block later candidates; a skipped one holds nothing
        blocked = set(in_flight_keys)
        leased: list[EventEnvelope] = []
        lease_until = now + lease_duration()
        for envelope in candidates:
            if len(leased) >= limit:
                break
            keys = {(envelope.hotel_id, k) for k in envelope.keys or ()}
            if keys & blocked:
                continue
            if any(
                (created, other_id) < (envelope.created_at, envelope.id)
                for key in keys
                for created, other_id in pending_by_key.get(key, ())
                if other_id != envelope.id
            ):
                continue

            claimed = await db.execute(
                update(EventEnvelope)
                .where(EventEnvelope.id == envelope.id, EventEnvelope.status == "pending")
                .values(status="in_flight", leased_until=lease_until)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                continue
            envelope.status = "in_flight"
            envelope.leased_until = lease_until
            blocked |= keys
            leased.append(envelope)

        await db.commit()
        return leased

    # ─── Outcomes ───

    async def complete(self, db: AsyncSession, envelope: EventEnvelope, reason: str | None = None):
        envelope.status = "succeeded"
        envelope.reason = reason
        envelope.leased_until = None
        envelope.completed_at = self._clock.now()
        await db.flush()

    async def retry(
        self,
        db: AsyncSession,
        envelope: EventEnvelope,
        error: str,
        retry_after_ms: int | None = None,
        priority: int | None = None,
    ):
        """Count an attempt and schedule the next one, or give up at max attempts."""
        envelope.attempts += 1
        envelope.last_error = error
        if envelope.attempts >= envelope.max_attempts:
            await self.dead(db, envelope, error)
            return
        delay = backoff_ms(envelope.attempts, self._rng)
        if retry_after_ms is not None:
            delay = max(delay, retry_after_ms)
        envelope.status = "pending"
        envelope.leased_until = None
        envelope.next_attempt_at = self._clock.now() + ms(delay)
        if priority is not None:
            envelope.priority = min(max(priority, 1), LOWEST_PRIORITY)
        await db.flush()
        logger.info(
            f"Event {envelope.id} attempt {envelope.attempts}/{envelope.max_attempts} failed, "
            f"retrying in {delay / 1000:.1f}s: {error}"
        )

    async def defer(
        self,
        db: AsyncSession,
        envelope: EventEnvelope,
        delay_ms: int,
        reason: str,
        priority: int | None = None,
    ):
        """Put the envelope back without counting an attempt."""
        envelope.status = "pending"
        envelope.leased_until = None
        envelope.reason = reason
        envelope.next_attempt_at = self._clock.now() + ms(delay_ms)
        if priority is not None:
            envelope.priority = priority
        await db.flush()

    async def hold(self, db: AsyncSession, envelope: EventEnvelope, channel_id: str, delay_ms: int):
        """Park an envelope at the lowest priority until ``channel_id`` recovers."""
        await self.defer(db, envelope, delay_ms, f"held:{channel_id}", priority=LOWEST_PRIORITY)

    async def release_held(self, db: AsyncSession, hotel_id: str, channel_id: str) -> int:
        """Restore envelopes held for a channel to their original priority."""
        result = await db.execute(
            update(EventEnvelope)
            .where(
                EventEnvelope.hotel_id == hotel_id,
                EventEnvelope.status == "pending",
                EventEnvelope.reason == f"held:{channel_id}",
            )
            .values(
                priority=EventEnvelope.original_priority,
                reason=None,
                next_attempt_at=self._clock.now(),
            )
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0
        if count:
            logger.info(f"Released {count} events held for {hotel_id}/{channel_id}")
        return count

    async def dead(self, db: AsyncSession, envelope: EventEnvelope, error: str):
        envelope.status = "dead"
        envelope.attempts = envelope.max_attempts
        envelope.last_error = error
        envelope.leased_until = None
        envelope.completed_at = self._clock.now()
        await self._alerts.event_dead(db, envelope.hotel_id, envelope.id, envelope.type, envelope.attempts, error)
        await db.flush()
        logger.error(f"Event {envelope.id} ({envelope.type}) is dead: {error}")

    # ─── Dead letters + stats ───

    async def dead_letters(self, db: AsyncSession, hotel_id: str, limit: int = 50) -> list[EventEnvelope]:
        result = await db.execute(
            select(EventEnvelope)
            .where(EventEnvelope.hotel_id == hotel_id, EventEnvelope.status == "dead")
            .order_by(EventEnvelope.completed_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def requeue(self, db: AsyncSession, hotel_id: str, event_id: uuid.UUID) -> EventEnvelope:
        envelope = await db.get(EventEnvelope, event_id)
        if envelope is None or envelope.hotel_id != hotel_id:
            raise NotFound(f"Event {event_id} not found", event_id=str(event_id))
        if envelope.status not in ("dead", "failed"):
            raise ValidationFailed(f"Only dead events can be requeued (status is {envelope.status})")
        envelope.status = "pending"
        envelope.reason = "requeued"
        envelope.attempts = 0
        envelope.priority = envelope.original_priority
        envelope.next_attempt_at = self._clock.now()
        envelope.completed_at = None
        envelope.channel_state = {
            channel: {**state, "status": "pending"} if state.get("status") != "succeeded" else state
            for channel, state in (envelope.channel_state or {}).items()
        }
        await db.flush()
        logger.info(f"Requeued event {event_id}")
        return envelope

    async def stats(self, db: AsyncSession, hotel_id: str | None = None) -> dict:
        stmt = select(EventEnvelope.status, EventEnvelope.priority, func.count(EventEnvelope.id)).group_by(
            EventEnvelope.status, EventEnvelope.priority
        )
        oldest = select(func.min(EventEnvelope.created_at)).where(EventEnvelope.status == "pending")
        if hotel_id:
            stmt = stmt.where(EventEnvelope.hotel_id == hotel_id)
            oldest = oldest.where(EventEnvelope.hotel_id == hotel_id)

        by_status: dict[str, int] = {}
        pending_by_priority: dict[str, int] = {}
        for status, priority, count in (await db.execute(stmt)).all():
            by_status[status] = by_status.get(status, 0) + count
            if status == "pending":
                pending_by_priority[str(priority)] = count
        oldest_pending = (await db.execute(oldest)).scalar()
        return {
            "by_status": by_status,
            "pending_by_priority": pending_by_priority,
            "oldest_pending_age_seconds": (
                int((self._clock.now() - oldest_pending).total_seconds()) if oldest_pending else None
            ),
        }


event_bus = EventBus()
