"""Redis-backed shared cache plus bounded in-process TTL caches."""

import asyncio
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import redis.asyncio as redis

from ratewise.config import settings
from ratewise.services.calendar import utcnow

logger = logging.getLogger(__name__)

# TTLs in seconds
TTL_EXCHANGE_RATE = settings.cache_currency_ttl_sec
TTL_CHANNEL_CONFIG = settings.cache_channel_config_ttl_sec
TTL_PRICING_MEMO = settings.cache_pricing_memo_ttl_sec
TTL_FORECAST = 60 * 60            # 1 hour, same as the refresh job


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "invalidations": self.invalidations,
            "hit_rate": round(self.hit_rate, 4),
        }


@dataclass
class _Entry:
    value: Any
    expires_at: datetime


class TTLCache:
    """In-process LRU cache with per-entry TTL and tag invalidation.

    Mutations happen without awaiting, so a single event loop never observes
    a half-applied update.
    """

    def __init__(self, name: str, default_ttl: int, max_size: int | None = None):
        self.name = name
        self._default_ttl = default_ttl
        self._max_size = max_size or settings.cache_max_entries
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._tags: dict[str, set[str]] = {}
        self.stats = CacheStats()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str, now: datetime | None = None) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            self.stats.misses += 1
            return None
        if (now or utcnow()) >= entry.expires_at:
            del self._entries[key]
            self.stats.misses += 1
            return None
        self._entries.move_to_end(key)
        self.stats.hits += 1
        return entry.value

    def put(
        self,
        key: str,
        value: Any,
        ttl: int | None = None,
        tags: set[str] | None = None,
        now: datetime | None = None,
    ):
        if key not in self._entries and len(self._entries) >= self._max_size:
            self._entries.popitem(last=False)
            self.stats.evictions += 1
        expires = (now or utcnow()) + timedelta(seconds=ttl or self._default_ttl)
        self._entries[key] = _Entry(value=value, expires_at=expires)
        self._entries.move_to_end(key)
        for tag in tags or ():
            self._tags.setdefault(tag, set()).add(key)

    def invalidate(self, key: str) -> bool:
        if self._entries.pop(key, None) is not None:
            self.stats.invalidations += 1
            return True
        return False

    def invalidate_tag(self, tag: str) -> int:
        count = 0
        for key in self._tags.pop(tag, set()):
            if self._entries.pop(key, None) is not None:
                count += 1
        self.stats.invalidations += count
        return count

    def clear(self):
        self._entries.clear()
        self._tags.clear()


class CacheService:
    """Redis-backed shared cache. Degrades to a no-op when Redis is unavailable."""

    def __init__(self, url: str | None = None):
        self._url = settings.redis_url if url is None else url
        self._redis: redis.Redis | None = None
        self._disabled = not self._url

    async def _get_redis(self) -> redis.Redis | None:
        if self._disabled:
            return None
        if self._redis is None:
            try:
                self._redis = redis.from_url(
                    self._url,
                    encoding="utf-8",
                    decode_responses=True,
                )
                await self._redis.ping()
            except Exception as e:
                logger.warning(f"Redis unavailable, shared cache disabled: {e}")
                self._redis = None
                self._disabled = True
                return None
        return self._redis

    @property
    def available(self) -> bool:
        return not self._disabled

    async def get(self, key: str) -> Any | None:
        """Get a value from cache. Returns None on miss or error."""
        try:
            r = await self._get_redis()
            if r is None:
                return None
            raw = await r.get(key)
            if raw is None:
                return None
            return json.loads(raw)
        except Exception as e:
            logger.debug(f"Cache get failed for {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: int = TTL_EXCHANGE_RATE) -> bool:
        """Set a value in cache with TTL. Returns False on error."""
        try:
            r = await self._get_redis()
            if r is None:
                return False
            await r.set(key, json.dumps(value, default=str), ex=ttl)
            return True
        except Exception as e:
            logger.debug(f"Cache set failed for {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        try:
            r = await self._get_redis()
            if r is None:
                return False
            await r.delete(key)
            return True
        except Exception as e:
            logger.debug(f"Cache delete failed for {key}: {e}")
            return False

    async def incr(self, key: str, ttl: int) -> int | None:
        """Atomically increment a counter and (re)arm its expiry.

        Returns None when Redis is unavailable so callers can fall back.
        """
        try:
            r = await self._get_redis()
            if r is None:
                return None
            async with r.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.expire(key, ttl)
                count, _ = await pipe.execute()
            return int(count)
        except Exception as e:
            logger.warning(f"Cache incr failed for {key}: {e}")
            return None

    # Typed helpers

    def fx_key(self, base: str, quote: str, method: str) -> str:
        return f"fx:{base}:{quote}:{method}"

    def forecast_key(self, hotel_id: str, room_type_id: str, day: str) -> str:
        return f"forecast:{hotel_id}:{room_type_id}:{day}"

    def rate_limit_key(self, token: str, window: int) -> str:
        return f"ratelimit:{token}:{window}"

    async def get_fx(self, base: str, quote: str, method: str) -> dict | None:
        return await self.get(self.fx_key(base, quote, method))

    async def set_fx(self, base: str, quote: str, method: str, data: dict):
        await self.set(self.fx_key(base, quote, method), data, TTL_EXCHANGE_RATE)

    async def get_forecast(self, hotel_id: str, room_type_id: str, day: str) -> dict | None:
        return await self.get(self.forecast_key(hotel_id, room_type_id, day))

    async def set_forecast(self, hotel_id: str, room_type_id: str, day: str, data: dict):
        await self.set(self.forecast_key(hotel_id, room_type_id, day), data, TTL_FORECAST)

    async def close(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None


class KeyedLocks:
    """Lazily created asyncio locks keyed by string; used for single-flight work."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


cache_service = CacheService()

exchange_rate_cache = TTLCache("exchange_rates", TTL_EXCHANGE_RATE)
channel_config_cache = TTLCache("channel_configs", TTL_CHANNEL_CONFIG)
pricing_memo = TTLCache("pricing_memo", TTL_PRICING_MEMO)
