"""Per-API-token fixed-window rate limit.

Counters live in Redis (atomic INCR + EXPIRE) so every worker shares them. When
Redis is disabled or unreachable, an in-process counter keeps the limit per worker.
"""

import logging
import math

from ratewise.config import settings
from ratewise.services.cache_service import CacheService, cache_service
from ratewise.services.calendar import Clock, system_clock
from ratewise.services.results import RateLimitExceeded

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(
        self,
        cache: CacheService | None = None,
        clock: Clock | None = None,
        limit: int | None = None,
        window_seconds: int = 60,
    ):
        self._cache = cache or cache_service
        self._clock = clock or system_clock
        self.limit = limit or settings.api_rate_limit_per_minute
        self.window_seconds = window_seconds
        self._local: dict[str, int] = {}
        self._local_window: int | None = None

    def _window(self) -> tuple[int, int]:
        """(window index, seconds until the window closes)."""
        now = self._clock.now().timestamp()
        index = int(now // self.window_seconds)
        remaining = math.ceil((index + 1) * self.window_seconds - now)
        return index, max(remaining, 1)

    def _local_incr(self, key: str, window: int) -> int:
        if self._local_window != window:
            self._local.clear()
            self._local_window = window
        self._local[key] = self._local.get(key, 0) + 1
        return self._local[key]

    async def hit(self, token: str) -> int:
        """Count one request for ``token``; returns requests left in the window.

        Raises RateLimitExceeded once the window's limit is used up.
        """
        window, retry_after = self._window()
        key = self._cache.rate_limit_key(token, window)
        count = await self._cache.incr(key, self.window_seconds)
        if count is None:
            count = self._local_incr(key, window)
        if count > self.limit:
            logger.warning(f"Rate limit hit for token {token[:6]}... ({count}/{self.limit})")
            raise RateLimitExceeded(
                f"Rate limit of {self.limit} requests per {self.window_seconds}s exceeded",
                retry_after=retry_after,
            )
        return self.limit - count


rate_limiter = RateLimiter()
