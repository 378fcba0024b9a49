import pytest

from ratewise.services.cache_service import CacheService
from ratewise.services.rate_limiter import RateLimiter
from ratewise.services.results import RateLimitExceeded


@pytest.fixture
def limiter(clock):
    return RateLimiter(cache=CacheService(url=""), clock=clock, limit=3)


@pytest.mark.asyncio
async def test_requests_within_limit_report_remaining(limiter):
    assert [await limiter.hit("token-a") for _ in range(3)] == [2, 1, 0]


@pytest.mark.asyncio
async def test_limit_exceeded_carries_retry_after(limiter, clock):
    for _ in range(3):
        await limiter.hit("token-a")
    clock.advance(20)

    with pytest.raises(RateLimitExceeded) as exc:
        await limiter.hit("token-a")

    assert exc.value.retry_after == 40
    assert exc.value.details["retry_after"] == 40


@pytest.mark.asyncio
async def test_new_window_resets_the_counter(limiter, clock):
    for _ in range(3):
        await limiter.hit("token-a")
    clock.advance(60)
    assert await limiter.hit("token-a") == 2


@pytest.mark.asyncio
async def test_tokens_are_counted_separately(limiter):
    for _ in range(3):
        await limiter.hit("token-a")
    assert await limiter.hit("token-b") == 2
