"""Channel distributor: drains the event bus and pushes rates and inventory to OTAs.

Each leased envelope is delivered to every target channel of its hotel. Rate
events make one call per (channel, supported currency), availability events one
call per channel. Per-channel progress is kept in the envelope's channel_state,
so a retry only re-sends to channels (and currencies) that have not succeeded.
Channels are served concurrently and a channel takes an envelope only after it
has finished every earlier envelope that shares a key with it.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from email.utils import parsedate_to_datetime

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ratewise.config import settings
from ratewise.data.currency import currency_decimals
from ratewise.database import async_session_factory
from ratewise.models.channels import ChannelCall, ChannelConfig
from ratewise.models.events import EventEnvelope
from ratewise.schemas.channels import DistributeRatesRequest
from ratewise.services.alert_service import AlertService, alert_service
from ratewise.services.availability_store import AvailabilityStore, availability_store, snapshot
from ratewise.services.calendar import date_range, parse_date, to_wire_date, utcnow
from ratewise.services.channel_registry import ChannelRegistry, ChannelView, channel_registry, to_view
from ratewise.services.channels import AdapterError, ChannelAdapter, WireAvailability, WireRate, get_adapter
from ratewise.services.currency_service import (
    ConversionMethod,
    CurrencyConfig,
    CurrencyService,
    currency_service,
)
from ratewise.services.event_bus import LOWEST_PRIORITY, EventBus, event_bus, event_key
from ratewise.services.pricing_engine import PricingEngine, pricing_engine
from ratewise.services.results import CoreError, ExchangeRateUnavailable, ValidationFailed

logger = logging.getLogger(__name__)

ENDPOINTS = {
    "rate_update": "rates",
    "availability_update": "inventory",
    "booking_sync": "bookings",
    "channel_modification": "bookings",
}

# Events that go back only to the channel the booking came from
ORIGIN_ONLY = ("booking_sync", "channel_modification")

DONE = ("succeeded", "warning")


@dataclass
class ChannelOutcome:
    channel_id: str
    status: str  # succeeded | warning | retry | busy | queued | held
    error: str | None = None
    status_code: int | None = None
    retry_after_ms: int | None = None
    priority: int | None = None
    currencies: dict[str, str] = field(default_factory=dict)
    next_attempt_at: datetime | None = None


def call_outcome(status_code: int | None) -> str:
    if status_code is None:
        return "transient"
    if 200 <= status_code < 300:
        return "success"
    if status_code in (401, 403):
        return "auth_failed"
    if status_code == 429:
        return "rate_limited"
    if 400 <= status_code < 500:
        return "warning"
    return "transient"


def retry_after_ms(response: httpx.Response) -> int | None:
    """Retry-After as milliseconds; accepts delta-seconds or an HTTP date."""
    value = response.headers.get("Retry-After")
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return int(value) * 1000
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(int((when - utcnow()).total_seconds() * 1000), 0)


class ChannelDistributor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        bus: EventBus | None = None,
        registry: ChannelRegistry | None = None,
        pricing: PricingEngine | None = None,
        availability: AvailabilityStore | None = None,
        currency: CurrencyService | None = None,
        alerts: AlertService | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._session_factory = session_factory or async_session_factory
        self._bus = bus or event_bus
        self._registry = registry or channel_registry
        self._pricing = pricing or pricing_engine
        self._availability = availability or availability_store
        self._currency = currency or currency_service
        self._alerts = alerts or alert_service
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._semaphores: dict[str, tuple[int, asyncio.Semaphore]] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=settings.channel_default_timeout_ms / 1000,
                transport=self._transport,
                follow_redirects=False,
            )
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _semaphore(self, view: ChannelView) -> asyncio.Semaphore:
        key = f"{view.hotel_id}:{view.channel_id}"
        cap = max(view.max_concurrency, 1)
        entry = self._semaphores.get(key)
        if entry is None or entry[0] != cap:
            entry = (cap, asyncio.Semaphore(cap))
            self._semaphores[key] = entry
        return entry[1]

    # ─── Drain loop ───

    async def drain_once(self, limit: int | None = None) -> dict[str, int]:
        """Lease a batch and deliver it; envelopes run concurrently, one session each."""
        async with self._session_factory() as db:
            leased = await self._bus.lease(db, limit)
            event_ids = [e.id for e in leased]
        if not event_ids:
            return {"leased": 0}

        statuses = await asyncio.gather(*(self._run_envelope(event_id) for event_id in event_ids))
        summary: dict[str, int] = {"leased": len(event_ids)}
        for status in statuses:
            summary[status] = summary.get(status, 0) + 1
        logger.info(f"Drained {len(event_ids)} events: {summary}")
        return summary

    async def _run_envelope(self, event_id: uuid.UUID) -> str:
        # Channel sends stop at the event deadline inside deliver(); this only guards the rest
        guard = (2 * settings.channel_default_timeout_ms + settings.event_lease_grace_ms / 2) / 1000
        async with self._session_factory() as db:
            envelope = await db.get(EventEnvelope, event_id)
            if envelope is None or envelope.status != "in_flight":
                return "skipped"
            try:
                status = await asyncio.wait_for(self.deliver(db, envelope), timeout=guard)
                await db.commit()
                return status
            except asyncio.TimeoutError:
                error = f"event guard of {guard:.0f}s exceeded"
                logger.warning(f"Event {event_id} ({envelope.type}): {error}")
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
                logger.exception(f"Event {event_id} delivery crashed")

            # Calls committed by the channel sessions stay recorded
            await db.rollback()
            await db.refresh(envelope)
            await self._bus.retry(db, envelope, error)
            await db.commit()
            return envelope.status

    # ─── Delivery ───

    async def deliver(self, db: AsyncSession, envelope: EventEnvelope) -> str:
        """Deliver one leased envelope to its target channels and settle it on the bus.

        Channels are sent to concurrently, each in its own session that commits
        after every call. Flushes the envelope but does not commit it; returns the
        envelope's resulting status.
        """
        if envelope.type == "overbooking_alert":
            payload = envelope.payload or {}
            await self._alerts.overbooking(
                db,
                envelope.hotel_id,
                payload.get("channelId", "unknown"),
                payload.get("channelBookingId", "unknown"),
                payload.get("details") or {},
            )
            await self._bus.complete(db, envelope, "alert_recorded")
            return envelope.status

        targets = await self._targets(db, envelope)
        if not targets:
            await self._bus.complete(db, envelope, "no_targets")
            return envelope.status

        source = await self._load_source(db, envelope)
        if source is not None and not source:
            logger.info(f"Event {envelope.id} ({envelope.type}) has nothing to send")
            await self._bus.complete(db, envelope, "empty")
            return envelope.status

        state = {channel: dict(s) for channel, s in (envelope.channel_state or {}).items()}
        ahead = await self._earlier_unfinished(db, envelope)
        outcomes: list[ChannelOutcome] = []
        sends: list[ChannelView] = []
        for view in targets:
            previous = state.get(view.channel_id, {})
            if previous.get("status") in DONE:
                continue
            if view.connection_status == "unhealthy" and not previous.get("attempts"):
                outcome = ChannelOutcome(view.channel_id, "held")
            elif view.channel_id in ahead:
                blocker = ahead[view.channel_id]
                outcome = ChannelOutcome(view.channel_id, "queued", next_attempt_at=blocker.next_attempt_at)
                logger.debug(f"Event {envelope.id} waits for {blocker.id} on {view.channel_id}")
            else:
                sends.append(view)
                continue
            outcomes.append(outcome)
            state[view.channel_id] = self._channel_state(previous, outcome)

        for view, outcome in await self._fan_out(db, envelope, sends, source, state):
            outcomes.append(outcome)
            state[view.channel_id] = self._channel_state(state.get(view.channel_id, {}), outcome)
        envelope.channel_state = state

        await self._settle(db, envelope, outcomes)
        return envelope.status

    async def _earlier_unfinished(self, db: AsyncSession, envelope: EventEnvelope) -> dict[str, EventEnvelope]:
        """Per channel, the oldest earlier envelope on a shared key that channel has not finished."""
        if not envelope.keys:
            return {}
        result = await db.execute(
            select(EventEnvelope)
            .where(
                EventEnvelope.hotel_id == envelope.hotel_id,
                EventEnvelope.status == "pending",
                EventEnvelope.id != envelope.id,
                EventEnvelope.created_at <= envelope.created_at,
            )
            .order_by(EventEnvelope.created_at)
        )
        keys = set(envelope.keys)
        ahead: dict[str, EventEnvelope] = {}
        for other in result.scalars().all():
            if (other.created_at, other.id) >= (envelope.created_at, envelope.id):
                continue
            if not keys & set(other.keys or ()):
                continue
            for channel_id, channel_state in (other.channel_state or {}).items():
                if channel_state.get("status") not in DONE:
                    ahead.setdefault(channel_id, other)
        return ahead

    async def _fan_out(
        self,
        db: AsyncSession,
        envelope: EventEnvelope,
        views: list[ChannelView],
        source: list | None,
        state: dict[str, dict],
    ) -> list[tuple[ChannelView, ChannelOutcome]]:
        """Send to every channel at once; channels still running at the event deadline get a retry."""
        if not views:
            return []
        deadline = 2 * settings.channel_default_timeout_ms / 1000
        # Currency progress per channel, filled in as each call is committed
        progress = {view.channel_id: dict(state.get(view.channel_id, {}).get("currencies") or {}) for view in views}
        tasks = {
            asyncio.create_task(self._deliver_in_session(envelope, view, source, progress[view.channel_id])): view
            for view in views
        }
        try:
            _, unfinished = await asyncio.wait(tasks, timeout=deadline)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
        if unfinished:
            await asyncio.gather(*unfinished, return_exceptions=True)

        results = []
        for task, view in tasks.items():
            if task.cancelled():
                outcome = await self._deadline_exceeded(db, envelope, view, deadline, progress[view.channel_id])
            elif task.exception() is not None:
                e = task.exception()
                logger.error(f"Event {envelope.id} delivery to {view.channel_id} crashed", exc_info=e)
                outcome = ChannelOutcome(
                    view.channel_id, "retry", f"{type(e).__name__}: {e}", currencies=progress[view.channel_id]
                )
            else:
                outcome = task.result()
            results.append((view, outcome))
        return results

    async def _deliver_in_session(
        self, envelope: EventEnvelope, view: ChannelView, source: list | None, done: dict[str, str]
    ) -> ChannelOutcome:
        async with self._session_factory() as db:
            outcome = await self._deliver_to_channel(db, envelope, view, source, done)
            await db.commit()
            return outcome

    async def _deadline_exceeded(
        self, db: AsyncSession, envelope: EventEnvelope, view: ChannelView, deadline: float, done: dict[str, str]
    ) -> ChannelOutcome:
        error = f"event deadline of {deadline:g}s exceeded"
        logger.warning(f"Event {envelope.id} ({envelope.type}) to {view.channel_id}: {error}")
        db.add(
            ChannelCall(
                event_id=envelope.id,
                hotel_id=view.hotel_id,
                channel_id=view.channel_id,
                url=view.endpoint(ENDPOINTS[envelope.type]) or "",
                status_code=None,
                outcome=call_outcome(None),
                error=error,
                duration_ms=int(deadline * 1000),
            )
        )
        await self._registry.record_failure(db, view.hotel_id, view.channel_id, error)
        return ChannelOutcome(view.channel_id, "retry", error, currencies=done)

    async def _targets(self, db: AsyncSession, envelope: EventEnvelope) -> list[ChannelView]:
        targets = await self._registry.targets_for(db, envelope.hotel_id, envelope.type)
        if envelope.type in ORIGIN_ONLY:
            origin = (envelope.payload or {}).get("channelId")
            targets = [t for t in targets if t.channel_id == origin]
        return targets

    def _channel_state(self, previous: dict, outcome: ChannelOutcome) -> dict:
        attempted = outcome.status not in ("busy", "queued", "held")
        state = {
            **previous,
            "status": "pending" if outcome.status == "retry" else outcome.status,
            "attempts": previous.get("attempts", 0) + (1 if attempted else 0),
        }
        if outcome.error:
            state["last_error"] = outcome.error
        if outcome.status_code is not None:
            state["status_code"] = outcome.status_code
        if outcome.currencies:
            state["currencies"] = outcome.currencies
        return state

    async def _settle(self, db: AsyncSession, envelope: EventEnvelope, outcomes: list[ChannelOutcome]):
        retry = [o for o in outcomes if o.status == "retry"]
        busy = [o for o in outcomes if o.status == "busy"]
        queued = [o for o in outcomes if o.status == "queued"]
        held = [o for o in outcomes if o.status == "held"]
        if retry:
            error = "; ".join(f"{o.channel_id}: {o.error}" for o in retry)
            after = max((o.retry_after_ms for o in retry if o.retry_after_ms), default=None)
            priority = max((o.priority for o in retry if o.priority), default=None)
            await self._bus.retry(db, envelope, error, retry_after_ms=after, priority=priority)
        elif busy:
            await self._bus.defer(db, envelope, settings.channel_busy_retry_ms, f"busy:{busy[0].channel_id}")
        elif queued:
            # Come back just after the envelope ahead is due again
            now = self._bus.clock.now()
            wait_ms = max(
                (int((o.next_attempt_at - now).total_seconds() * 1000) for o in queued if o.next_attempt_at),
                default=0,
            )
            await self._bus.defer(
                db, envelope, max(wait_ms, 0) + settings.channel_busy_retry_ms, f"queued:{queued[0].channel_id}"
            )
        elif held:
            await self._bus.hold(
                db, envelope, held[0].channel_id, settings.channel_health_probe_interval_seconds * 1000
            )
        else:
            warned = any(o.status == "warning" for o in outcomes)
            await self._bus.complete(db, envelope, "warning" if warned else None)

    async def _load_source(self, db: AsyncSession, envelope: EventEnvelope) -> list | None:
        """Current state to send: WireRates, WireAvailability rows, or None for acks."""
        if envelope.type == "rate_update":
            return await self.rates_for(db, envelope.hotel_id, envelope.payload or {})
        if envelope.type == "availability_update":
            return await self.availability_for(db, envelope.hotel_id, envelope.payload or {})
        return None

    async def rates_for(self, db: AsyncSession, hotel_id: str, payload: dict) -> list[WireRate]:
        """Explicit rates from the payload, else the best one-night rate per room type and date."""
        if payload.get("rates"):
            return [
                WireRate(
                    room_type_id=str(r["roomTypeId"]),
                    rate_plan_id=str(r["ratePlanId"]) if r.get("ratePlanId") else None,
                    date=r["date"],
                    amount=Decimal(str(r["amount"])),
                    currency=r["currency"],
                    decimals=currency_decimals(r["currency"]),
                )
                for r in payload["rates"]
            ]

        start, end = parse_date(payload["start"]), parse_date(payload["end"])
        rates: list[WireRate] = []
        for room_type_id in payload.get("roomTypeIds") or ():
            for day in date_range(start, end):
                result = await self._pricing.best_rate(
                    db, hotel_id, uuid.UUID(str(room_type_id)), day, day + timedelta(days=1)
                )
                if not result.is_ok:
                    logger.debug(f"No sellable rate for {room_type_id} on {day}: {result.code}")
                    continue
                quote = result.value
                rates.append(
                    WireRate(
                        room_type_id=str(room_type_id),
                        rate_plan_id=str(quote.plan_id) if quote.plan_id else None,
                        date=to_wire_date(day),
                        amount=quote.total_before_promo,
                        currency=quote.currency,
                        decimals=currency_decimals(quote.currency),
                    )
                )
        return rates

    async def availability_for(self, db: AsyncSession, hotel_id: str, payload: dict) -> list[WireAvailability]:
        start, end = parse_date(payload["start"]), parse_date(payload["end"])
        wanted = {str(rt) for rt in payload.get("roomTypeIds") or ()}
        rows = await self._availability.list_range(db, hotel_id, start, end)
        return [
            WireAvailability.from_snapshot(snapshot(row))
            for row in rows
            if not wanted or str(row.room_type_id) in wanted
        ]

    async def _deliver_to_channel(
        self,
        db: AsyncSession,
        envelope: EventEnvelope,
        view: ChannelView,
        source: list | None,
        done: dict[str, str],
    ) -> ChannelOutcome:
        semaphore = self._semaphore(view)
        if semaphore.locked():
            logger.debug(f"{view.channel_id} at its concurrency cap, deferring {envelope.id}")
            return ChannelOutcome(view.channel_id, "busy")

        async with semaphore:
            adapter = get_adapter(view.adapter)
            try:
                if envelope.type == "rate_update":
                    return await self._send_rates(db, envelope, view, adapter, source or [], done)
                if envelope.type == "availability_update":
                    body = adapter.format_availability(view, source or [])
                else:
                    body = adapter.format_booking_ack(view, envelope.payload or {})
                return await self._send(db, envelope, view, adapter, body, currency=None)
            except AdapterError as e:
                logger.warning(f"{view.hotel_id}/{view.channel_id} cannot take {envelope.type}: {e}")
                return ChannelOutcome(view.channel_id, "warning", str(e))

    async def _send_rates(
        self,
        db: AsyncSession,
        envelope: EventEnvelope,
        view: ChannelView,
        adapter: ChannelAdapter,
        source: list[WireRate],
        done: dict[str, str],
    ) -> ChannelOutcome:
        """One call per supported currency; ``done`` is updated in place as each one settles."""
        warnings: list[str] = []
        configs: tuple[CurrencyConfig | None, ...] = view.currencies or (None,)
        for config in configs:
            label = config.code if config else "source"
            if done.get(label) in DONE:
                continue
            try:
                rates = await self.convert_rates(source, config)
            except ExchangeRateUnavailable as e:
                return ChannelOutcome(view.channel_id, "retry", str(e), currencies=dict(done))
            except CoreError as e:
                done[label] = "warning"
                warnings.append(f"{label}: {e}")
                logger.warning(f"{view.channel_id} currency {label} misconfigured: {e}")
                continue

            wire_currency = config.wire_code if config else source[0].currency
            outcome = await self._send(
                db, envelope, view, adapter, adapter.format_rates(view, rates), currency=wire_currency
            )
            done[label] = outcome.status
            if outcome.status not in DONE:
                outcome.currencies = dict(done)
                return outcome
            if outcome.status == "warning":
                warnings.append(f"{label}: {outcome.error}")

        status = "warning" if warnings else "succeeded"
        return ChannelOutcome(view.channel_id, status, "; ".join(warnings) or None, currencies=dict(done))

    async def convert_rates(self, source: list[WireRate], config: CurrencyConfig | None) -> list[WireRate]:
        """Source rates priced for one channel currency (fx, markup, PPP, tax, rounding)."""
        if config is None:
            return list(source)
        converted = []
        for rate in source:
            price = await self._currency.price_for_channel(rate.amount, rate.currency, config)
            converted.append(
                replace(rate, amount=price.amount, currency=price.wire_currency, decimals=config.decimals)
            )
        return converted

    # ─── HTTP ───

    async def _send(
        self,
        db: AsyncSession,
        envelope: EventEnvelope,
        view: ChannelView,
        adapter: ChannelAdapter,
        body: dict,
        currency: str | None,
    ) -> ChannelOutcome:
        response, error = await self._post(db, envelope, view, adapter, body, currency)
        if response is not None and response.status_code in (401, 403):
            if await self._registry.switch_to_backup(db, view.hotel_id, view.channel_id):
                view = await self._registry.get(db, view.hotel_id, view.channel_id, bypass_cache=True)
                response, error = await self._post(db, envelope, view, adapter, body, currency)
        outcome = await self._classify(db, envelope, view, response, error)
        # Committed call by call
        await db.commit()
        return outcome

    async def _post(
        self,
        db: AsyncSession,
        envelope: EventEnvelope,
        view: ChannelView,
        adapter: ChannelAdapter,
        body: dict,
        currency: str | None,
    ) -> tuple[httpx.Response | None, str | None]:
        request = adapter.build_request(view, ENDPOINTS[envelope.type], body)
        client = await self._get_client()
        response: httpx.Response | None = None
        error: str | None = None
        started = time.monotonic()
        try:
            response = await client.request(
                request.method,
                request.url,
                content=request.content,
                headers=request.headers,
                timeout=view.timeout_ms / 1000,
            )
        except httpx.TimeoutException:
            error = f"timeout after {view.timeout_ms}ms"
        except httpx.RequestError as e:
            error = f"network error: {type(e).__name__}: {e}"
        duration_ms = int((time.monotonic() - started) * 1000)

        status_code = response.status_code if response is not None else None
        if response is not None and status_code >= 400:
            error = f"HTTP {status_code}: {response.text[:500]}"
        db.add(
            ChannelCall(
                event_id=envelope.id,
                hotel_id=view.hotel_id,
                channel_id=view.channel_id,
                currency=currency,
                method=request.method,
                url=request.url,
                request_payload=body,
                status_code=status_code,
                outcome=call_outcome(status_code),
                error=error,
                duration_ms=duration_ms,
            )
        )
        return response, error

    async def _classify(
        self,
        db: AsyncSession,
        envelope: EventEnvelope,
        view: ChannelView,
        response: httpx.Response | None,
        error: str | None,
    ) -> ChannelOutcome:
        channel_id = view.channel_id
        if response is None:
            await self._registry.record_failure(db, view.hotel_id, channel_id, error or "request failed")
            return ChannelOutcome(channel_id, "retry", error)

        status = response.status_code
        if 200 <= status < 300:
            await self._registry.record_success(db, view.hotel_id, channel_id, envelope.type)
            return ChannelOutcome(channel_id, "succeeded", status_code=status)
        if status in (401, 403):
            await self._registry.mark_degraded(db, view.hotel_id, channel_id, error or f"HTTP {status}")
            logger.warning(f"{view.hotel_id}/{channel_id} rejected credentials (HTTP {status})")
            return ChannelOutcome(
                channel_id, "retry", error, status, priority=min(envelope.priority + 1, LOWEST_PRIORITY)
            )
        if status == 429:
            return ChannelOutcome(channel_id, "retry", error, status, retry_after_ms=retry_after_ms(response))
        if 400 <= status < 500:
            logger.warning(f"{view.hotel_id}/{channel_id} rejected {envelope.type} {envelope.id}: {error}")
            return ChannelOutcome(channel_id, "warning", error, status)

        await self._registry.record_failure(db, view.hotel_id, channel_id, error or f"HTTP {status}")
        return ChannelOutcome(channel_id, "retry", error, status, retry_after_ms=retry_after_ms(response))

    # ─── Health probe ───

    async def probe(self, view: ChannelView) -> bool:
        url = view.endpoint("health")
        if not url:
            return False
        adapter = get_adapter(view.adapter)
        try:
            headers = {
                "User-Agent": settings.channel_user_agent,
                **adapter.authorization(view.credentials or {}, b""),
            }
            client = await self._get_client()
            response = await client.get(url, headers=headers, timeout=view.timeout_ms / 1000)
        except AdapterError as e:
            logger.warning(f"Health probe for {view.channel_id} cannot authenticate: {e}")
            return False
        except httpx.HTTPError as e:
            logger.info(f"Health probe for {view.hotel_id}/{view.channel_id} failed: {e}")
            return False
        return 200 <= response.status_code < 300

    async def probe_unhealthy(self, db: AsyncSession, hotel_id: str | None = None) -> dict[str, bool]:
        """Probe unhealthy channels; a passing probe restores the channel and its held events."""
        stmt = select(ChannelConfig).where(
            ChannelConfig.connection_status == "unhealthy",
            ChannelConfig.active.is_(True),
        )
        if hotel_id:
            stmt = stmt.where(ChannelConfig.hotel_id == hotel_id)
        configs = list((await db.execute(stmt)).scalars().all())

        results: dict[str, bool] = {}
        for config in configs:
            view = to_view(config)
            healthy = await self.probe(view)
            results[f"{view.hotel_id}/{view.channel_id}"] = healthy
            if healthy:
                await self._registry.mark_healthy(db, view.hotel_id, view.channel_id)
                released = await self._bus.release_held(db, view.hotel_id, view.channel_id)
                logger.info(f"{view.hotel_id}/{view.channel_id} passed its health probe, released {released} events")
        await db.commit()
        return results

    # ─── Explicit push + parity ───

    async def distribute_rates(self, db: AsyncSession, hotel_id: str, request: DistributeRatesRequest) -> EventEnvelope:
        """Enqueue an explicit rate push to every channel that syncs rates."""
        rates = [
            {
                "roomTypeId": str(r.room_type_id),
                "ratePlanId": str(r.rate_plan_id) if r.rate_plan_id else None,
                "date": to_wire_date(r.date),
                "amount": str(r.amount),
                "currency": r.currency,
            }
            for r in request.rates
        ]
        days = [r.date for r in request.rates]
        envelope = await self._bus.publish(
            db,
            "rate_update",
            hotel_id,
            {
                "source": "distribute",
                "start": to_wire_date(min(days)),
                "end": to_wire_date(max(days)),
                "roomTypeIds": sorted({r["roomTypeId"] for r in rates}),
                "rates": rates,
            },
            keys=[event_key(r.room_type_id, r.date) for r in request.rates],
            priority=request.priority,
        )
        await db.commit()
        return envelope

    async def rate_parity(
        self,
        db: AsyncSession,
        hotel_id: str,
        room_type_id: uuid.UUID,
        start: date,
        end: date,
        allowed_variance_pct: Decimal = Decimal("0"),
    ) -> dict:
        """Compare what each channel is sent against the hotel's own rate, per date.

        Channel prices are converted back to the hotel currency at the live rate;
        a variance beyond the allowance is a rate_too_high or rate_too_low violation.
        """
        if end < start:
            raise ValidationFailed("end must not be before start")
        channels = [
            v for v in await self._registry.targets_for(db, hotel_id, "rate_update") if v.currencies
        ]
        checks = []
        violations = []
        for day in date_range(start, end):
            result = await self._pricing.best_rate(db, hotel_id, room_type_id, day, day + timedelta(days=1))
            if not result.is_ok:
                checks.append({"date": to_wire_date(day), "skipped": result.code.value if result.code else result.error})
                continue
            base = result.value.total_before_promo
            base_currency = result.value.currency
            entry = {"date": to_wire_date(day), "base_rate": str(base), "currency": base_currency, "channels": []}
            for view in channels:
                for config in view.currencies:
                    price = await self._currency.price_for_channel(base, base_currency, config)
                    back = (await self._currency.convert(price.amount, config.code, base_currency, ConversionMethod.LIVE)).amount
                    variance = ((back - base) / base * 100).quantize(Decimal("0.01")) if base else Decimal(0)
                    compliant = abs(variance) <= allowed_variance_pct
                    entry["channels"].append({
                        "channel_id": view.channel_id,
                        "currency": config.wire_code,
                        "rate": str(price.amount),
                        "variance_pct": str(variance),
                        "compliant": compliant,
                    })
                    if not compliant:
                        violations.append({
                            "date": to_wire_date(day),
                            "channel_id": view.channel_id,
                            "currency": config.wire_code,
                            "violation_type": "rate_too_high" if variance > 0 else "rate_too_low",
                            "expected_rate": str(base),
                            "actual_rate": str(back.quantize(Decimal(1).scaleb(-currency_decimals(base_currency)))),
                            "variance_pct": str(variance),
                        })
            checks.append(entry)
        return {
            "room_type_id": str(room_type_id),
            "dates_checked": len(checks),
            "violations_found": len(violations),
            "violations": violations,
            "checks": checks,
        }


distributor = ChannelDistributor()
