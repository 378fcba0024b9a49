"""Channel registry: per-hotel channel configs, credentials, and connection health."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ratewise.config import settings
from ratewise.models.channels import ChannelCall, ChannelConfig
from ratewise.schemas.channels import ChannelConfigUpsert, CredentialRotate
from ratewise.services.alert_service import AlertService, alert_service
from ratewise.services.cache_service import TTLCache, channel_config_cache
from ratewise.services.calendar import Clock, system_clock
from ratewise.services.currency_service import CurrencyConfig
from ratewise.services.results import NotFound, ValidationFailed

logger = logging.getLogger(__name__)

KNOWN_ADAPTERS = {
    "booking_com": "booking_com",
    "booking": "booking_com",
    "expedia": "expedia",
    "airbnb": "airbnb",
    "agoda": "agoda",
}

SYNC_TIMESTAMP = {
    "rate_update": "last_sync_rates",
    "availability_update": "last_sync_inventory",
    "channel_modification": "last_sync_content",
    "booking_sync": "last_sync_inventory",
}


@dataclass(frozen=True)
class ChannelView:
    """Detached, cacheable view of a ChannelConfig row."""

    hotel_id: str
    channel_id: str
    channel_name: str | None
    adapter: str
    hotel_timezone: str | None
    credentials: dict | None = field(repr=False)
    backup_credentials: dict | None = field(repr=False)
    credential_status: str
    credential_version: int
    endpoints: dict
    currencies: tuple[CurrencyConfig, ...]
    sync_flags: tuple[str, ...]
    timeout_ms: int
    retry_policy: dict
    max_concurrency: int
    active: bool
    connection_status: str
    consecutive_failures: int

    @property
    def distributable(self) -> bool:
        return self.active and self.credential_status != "revoked" and bool(self.credentials)

    def endpoint(self, name: str) -> str | None:
        return self.endpoints.get(name) or self.endpoints.get("default")


def to_view(config: ChannelConfig) -> ChannelView:
    return ChannelView(
        hotel_id=config.hotel_id,
        channel_id=config.channel_id,
        channel_name=config.channel_name,
        adapter=config.adapter,
        hotel_timezone=config.hotel_timezone,
        credentials=dict(config.credentials) if config.credentials else None,
        backup_credentials=dict(config.backup_credentials) if config.backup_credentials else None,
        credential_status=config.credential_status,
        credential_version=config.credential_version,
        endpoints=dict(config.endpoints or {}),
        currencies=tuple(CurrencyConfig.from_dict(c) for c in config.supported_currencies or ()),
        sync_flags=tuple(config.sync_flags or ()),
        timeout_ms=config.timeout_ms or settings.channel_default_timeout_ms,
        retry_policy=dict(config.retry_policy or {}),
        max_concurrency=config.max_concurrency or settings.channel_per_channel_concurrency,
        active=config.active,
        connection_status=config.connection_status,
        consecutive_failures=config.consecutive_failures,
    )


class ChannelRegistry:
    def __init__(
        self,
        cache: TTLCache | None = None,
        clock: Clock | None = None,
        alerts: AlertService | None = None,
    ):
        self._cache = cache or channel_config_cache
        self._clock = clock or system_clock
        self._alerts = alerts or alert_service

    def _key(self, hotel_id: str, channel_id: str) -> str:
        return f"{hotel_id}:{channel_id}"

    def invalidate(self, hotel_id: str, channel_id: str):
        self._cache.invalidate(self._key(hotel_id, channel_id))
        self._cache.invalidate_tag(f"hotel:{hotel_id}")

    async def _row(self, db: AsyncSession, hotel_id: str, channel_id: str, for_update: bool = False) -> ChannelConfig:
        stmt = select(ChannelConfig).where(ChannelConfig.hotel_id == hotel_id, ChannelConfig.channel_id == channel_id)
        if for_update:
            stmt = stmt.with_for_update()
        config = (await db.execute(stmt)).scalar_one_or_none()
        if config is None:
            raise NotFound(f"Channel {channel_id} is not configured for {hotel_id}", channel_id=channel_id)
        return config

    # ─── Reads ───

    async def get(self, db: AsyncSession, hotel_id: str, channel_id: str, bypass_cache: bool = False) -> ChannelView:
        key = self._key(hotel_id, channel_id)
        if not bypass_cache:
            cached = self._cache.get(key, now=self._clock.now())
            if cached is not None:
                return cached
        view = to_view(await self._row(db, hotel_id, channel_id))
        self._cache.put(key, view, tags={f"hotel:{hotel_id}"}, now=self._clock.now())
        return view

    async def list_channels(self, db: AsyncSession, hotel_id: str) -> list[ChannelConfig]:
        result = await db.execute(
            select(ChannelConfig).where(ChannelConfig.hotel_id == hotel_id).order_by(ChannelConfig.channel_id)
        )
        return list(result.scalars().all())

    async def targets_for(self, db: AsyncSession, hotel_id: str, event_type: str) -> list[ChannelView]:
        """Distributable channels of the hotel whose sync flags include the event type."""
        key = f"{hotel_id}:*targets"
        views = self._cache.get(key, now=self._clock.now())
        if views is None:
            views = [to_view(c) for c in await self.list_channels(db, hotel_id)]
            self._cache.put(key, views, tags={f"hotel:{hotel_id}"}, now=self._clock.now())
        return [v for v in views if v.distributable and event_type in v.sync_flags]

    # ─── Commands ───

    async def upsert(self, db: AsyncSession, hotel_id: str, data: ChannelConfigUpsert) -> ChannelConfig:
        result = await db.execute(
            select(ChannelConfig)
            .where(ChannelConfig.hotel_id == hotel_id, ChannelConfig.channel_id == data.channel_id)
            .with_for_update()
        )
        config = result.scalar_one_or_none()
        now = self._clock.now()
        adapter = data.adapter or KNOWN_ADAPTERS.get(data.channel_id, "generic")
        if config is None:
            if not data.credentials:
                raise ValidationFailed("A new channel needs credentials")
            config = ChannelConfig(
                hotel_id=hotel_id,
                channel_id=data.channel_id,
                credential_status="active",
                credential_version=1,
                credential_rotated_at=now,
                connection_status="connected",
                consecutive_failures=0,
            )
            db.add(config)
        config.channel_name = data.channel_name or config.channel_name or data.channel_id
        config.adapter = adapter
        config.hotel_timezone = data.hotel_timezone
        if data.credentials is not None:
            if config.credentials and data.credentials != config.credentials:
                config.credential_version = (config.credential_version or 1) + 1
                config.credential_rotated_at = now
            config.credentials = data.credentials
            config.credential_status = "active"
        if data.backup_credentials is not None:
            config.backup_credentials = data.backup_credentials
        config.credential_expires_at = data.credential_expires_at or config.credential_expires_at or (
            now + timedelta(days=settings.credential_rotation_days)
        )
        config.endpoints = data.endpoints
        config.supported_currencies = [
            CurrencyConfig.from_dict(c.model_dump(mode="json")).to_dict() for c in data.supported_currencies
        ]
        config.sync_flags = list(data.sync_flags)
        config.timeout_ms = data.timeout_ms
        config.retry_policy = data.retry_policy
        config.max_concurrency = data.max_concurrency
        config.active = data.active
        config.updated_at = now
        await db.flush()
        self.invalidate(hotel_id, data.channel_id)
        logger.info(f"Upserted channel config {hotel_id}/{data.channel_id} ({adapter})")
        return config

    async def rotate_credential(
        self, db: AsyncSession, hotel_id: str, channel_id: str, data: CredentialRotate
    ) -> ChannelConfig:
        config = await self._row(db, hotel_id, channel_id, for_update=True)
        now = self._clock.now()
        config.credentials = data.credentials
        if data.backup_credentials is not None:
            config.backup_credentials = data.backup_credentials
        config.credential_version = (config.credential_version or 1) + 1
        config.credential_status = "active"
        config.credential_rotated_at = now
        config.credential_expires_at = data.expires_at or now + timedelta(days=settings.credential_rotation_days)
        if config.connection_status == "degraded":
            config.connection_status = "connected"
        config.updated_at = now
        await db.flush()
        self.invalidate(hotel_id, channel_id)
        logger.info(f"Rotated credentials for {hotel_id}/{channel_id} to v{config.credential_version}")
        return config

    async def revoke_credential(self, db: AsyncSession, hotel_id: str, channel_id: str) -> ChannelConfig:
        config = await self._row(db, hotel_id, channel_id, for_update=True)
        config.credentials = None
        config.backup_credentials = None
        config.credential_status = "revoked"
        config.connection_status = "disconnected"
        config.updated_at = self._clock.now()
        await db.flush()
        self.invalidate(hotel_id, channel_id)
        logger.warning(f"Revoked credentials for {hotel_id}/{channel_id}")
        return config

    async def switch_to_backup(self, db: AsyncSession, hotel_id: str, channel_id: str) -> bool:
        """Promote the backup credential after an auth failure; False when there is none."""
        config = await self._row(db, hotel_id, channel_id, for_update=True)
        if not config.backup_credentials:
            return False
        config.credentials, config.backup_credentials = config.backup_credentials, None
        config.credential_version = (config.credential_version or 1) + 1
        config.credential_status = "rotated"
        config.credential_rotated_at = self._clock.now()
        await db.flush()
        self.invalidate(hotel_id, channel_id)
        logger.warning(f"Switched {hotel_id}/{channel_id} to backup credentials")
        return True

    # ─── Health ───

    async def record_success(self, db: AsyncSession, hotel_id: str, channel_id: str, event_type: str):
        config = await self._row(db, hotel_id, channel_id)
        now = self._clock.now()
        column = SYNC_TIMESTAMP.get(event_type)
        if column:
            setattr(config, column, now)
        config.consecutive_failures = 0
        if config.connection_status in ("degraded", "unhealthy"):
            logger.info(f"Channel {hotel_id}/{channel_id} recovered")
        if config.credential_status != "revoked":
            config.connection_status = "connected"
        await db.flush()
        self.invalidate(hotel_id, channel_id)

    async def record_failure(self, db: AsyncSession, hotel_id: str, channel_id: str, error: str) -> str:
        """Count a transient failure; returns the resulting connection status."""
        config = await self._row(db, hotel_id, channel_id)
        config.consecutive_failures = (config.consecutive_failures or 0) + 1
        config.last_error = error[:2000]
        config.last_error_at = self._clock.now()
        if (
            config.consecutive_failures >= settings.channel_unhealthy_after
            and config.connection_status != "unhealthy"
        ):
            config.connection_status = "unhealthy"
            await self._alerts.channel_unhealthy(db, hotel_id, channel_id, config.consecutive_failures, error)
        await db.flush()
        self.invalidate(hotel_id, channel_id)
        return config.connection_status

    async def mark_degraded(self, db: AsyncSession, hotel_id: str, channel_id: str, error: str):
        config = await self._row(db, hotel_id, channel_id)
        config.connection_status = "degraded"
        config.last_error = error[:2000]
        config.last_error_at = self._clock.now()
        await db.flush()
        self.invalidate(hotel_id, channel_id)

    async def mark_healthy(self, db: AsyncSession, hotel_id: str, channel_id: str):
        config = await self._row(db, hotel_id, channel_id)
        config.connection_status = "connected"
        config.consecutive_failures = 0
        await db.flush()
        self.invalidate(hotel_id, channel_id)

    # ─── Reporting ───

    async def expiring_credentials(self, db: AsyncSession, within_days: int | None = None) -> list[ChannelConfig]:
        horizon = self._clock.now() + timedelta(days=within_days or settings.credential_expiry_warning_days)
        result = await db.execute(
            select(ChannelConfig).where(
                ChannelConfig.active.is_(True),
                ChannelConfig.credential_status != "revoked",
                ChannelConfig.credential_expires_at.is_not(None),
                ChannelConfig.credential_expires_at <= horizon,
            )
        )
        return list(result.scalars().all())

    async def distribution_status(self, db: AsyncSession, hotel_id: str) -> dict:
        """Per-hotel overview of channel connectivity and sync freshness."""
        channels = await self.list_channels(db, hotel_id)
        now = self._clock.now()
        recent = await db.execute(
            select(ChannelCall)
            .where(ChannelCall.hotel_id == hotel_id, ChannelCall.outcome != "success")
            .order_by(ChannelCall.created_at.desc())
            .limit(20)
        )
        currencies: dict[str, list[str]] = {}
        entries = []
        for c in channels:
            codes = [cur.get("code") for cur in c.supported_currencies or ()]
            for code in codes:
                currencies.setdefault(code, []).append(c.channel_id)
            last_sync = c.last_sync_rates or c.last_sync_inventory
            hours_since = (now - last_sync).total_seconds() / 3600 if last_sync else None
            entries.append({
                "channel_id": c.channel_id,
                "channel_name": c.channel_name,
                "adapter": c.adapter,
                "active": c.active,
                "connection_status": c.connection_status,
                "credential_status": c.credential_status,
                "credential_expires_at": _iso(c.credential_expires_at),
                "consecutive_failures": c.consecutive_failures,
                "last_sync": {
                    "rates": _iso(c.last_sync_rates),
                    "inventory": _iso(c.last_sync_inventory),
                    "content": _iso(c.last_sync_content),
                },
                "sync_health": (
                    "unknown" if hours_since is None
                    else "healthy" if hours_since < 1
                    else "stale" if hours_since < 24
                    else "outdated"
                ),
                "currencies": codes,
                "last_error": c.last_error,
            })
        return {
            "hotel_id": hotel_id,
            "total_channels": len(channels),
            "active_channels": sum(1 for c in channels if c.active),
            "connected_channels": sum(1 for c in channels if c.active and c.connection_status == "connected"),
            "channels": entries,
            "currency_support": currencies,
            "recent_errors": [
                {
                    "channel_id": call.channel_id,
                    "outcome": call.outcome,
                    "status_code": call.status_code,
                    "error": call.error,
                    "at": _iso(call.created_at),
                }
                for call in recent.scalars().all()
            ],
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


channel_registry = ChannelRegistry()
