"""Tests for fixed-window rate limiting."""
import asyncio

import pytest

from config import DEFAULTS, validate_settings
from ratelimit import MemoryCounterStore, RateLimit, RateLimitExceededError, RateLimiter

from tests.fakes import FakeClock


@pytest.fixture
def limiter(clock):
    return RateLimiter(
        MemoryCounterStore(clock=clock),
        {'purchase': RateLimit(max_requests=3, window_seconds=60)},
    )


@pytest.mark.asyncio
async def test_limit_is_enforced(limiter):
    counts = [await limiter.hit('purchase', 'buyer1') for _ in range(3)]

    with pytest.raises(RateLimitExceededError) as exc_info:
        await limiter.hit('purchase', 'buyer1')

    assert counts == [1, 2, 3]
    assert exc_info.value.status_code == 429
    assert exc_info.value.retry_after == 60
    assert exc_info.value.details == {'retry_after': 60}


@pytest.mark.asyncio
async def test_window_resets(limiter, clock):
    for _ in range(3):
        await limiter.hit('purchase', 'buyer1')

    clock.advance(59)
    with pytest.raises(RateLimitExceededError) as exc_info:
        await limiter.hit('purchase', 'buyer1')
    assert exc_info.value.retry_after == 1

    clock.advance(1)
    assert await limiter.hit('purchase', 'buyer1') == 1


@pytest.mark.asyncio
async def test_identities_are_counted_separately(limiter):
    for _ in range(3):
        await limiter.hit('purchase', 'buyer1')

    assert await limiter.hit('purchase', 'buyer2') == 1


@pytest.mark.asyncio
async def test_unconfigured_action_is_not_limited(limiter):
    assert await limiter.hit('upload', 'buyer1') == 0


@pytest.mark.asyncio
async def test_concurrent_hits_allow_exactly_the_limit(limiter):
    results = await asyncio.gather(
        *[limiter.hit('purchase', 'buyer1') for _ in range(10)],
        return_exceptions=True
    )

    allowed = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, RateLimitExceededError)]
    assert sorted(allowed) == [1, 2, 3]
    assert len(refused) == 7


@pytest.mark.asyncio
async def test_reset_counter():
    store = MemoryCounterStore(clock=FakeClock())
    await store.increment('purchase:buyer1', 60)

    await store.reset('purchase:buyer1')

    assert await store.increment('purchase:buyer1', 60) == (1, 60)


def test_limits_from_settings():
    settings = validate_settings({**DEFAULTS, 'listing_rate_limit': '2'})

    limiter = RateLimiter.from_settings(MemoryCounterStore(), settings)

    assert limiter.limits['purchase'] == RateLimit(max_requests=10, window_seconds=60)
    assert limiter.limits['listing'] == RateLimit(max_requests=2, window_seconds=3600)
    assert limiter.limits['upload'] == RateLimit(max_requests=20, window_seconds=3600)
