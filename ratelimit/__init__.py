"""Rate limiting for purchases, listing creation and uploads.

Counters live in an injected CounterStore. Each counter has a fixed window:
the first hit starts it, later hits increment it, and once the reset time has
passed the next hit starts a new window. The increment and the window check
happen under one lock so concurrent requests cannot undercount.
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

from pydantic import BaseModel

from errors import BazaarError, ErrorCodes

logger = logging.getLogger(__name__)


class RateLimitExceededError(BazaarError):
    """Raised when an identity exceeds its limit for an action"""
    code = ErrorCodes.RATE_LIMITED
    status_code = 429

    def __init__(self, action: str, identity: str, retry_after: float):
        self.action = action
        self.identity = identity
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for {action}; retry in {int(retry_after) + 1}s",
            details={'retry_after': round(retry_after, 3)}
        )


class RateLimit(BaseModel):
    max_requests: int
    window_seconds: float


class CounterStore(ABC):
    """TTL-bounded counters keyed by string."""

    @abstractmethod
    async def increment(self, key: str, ttl_seconds: float) -> Tuple[int, float]:
        """Increment ``key``, starting a new window if the old one expired.

        Returns:
            (count within the current window, seconds until the window resets)
        """

    @abstractmethod
    async def reset(self, key: str) -> None:
        pass


class MemoryCounterStore(CounterStore):
    """Counters in a dict guarded by an asyncio.Lock."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    async def increment(self, key: str, ttl_seconds: float) -> Tuple[int, float]:
        async with self._lock:
            now = self._clock()
            count, reset_at = self._counters.get(key, (0, 0.0))
            if reset_at <= now:
                count, reset_at = 0, now + ttl_seconds
            count += 1
            self._counters[key] = (count, reset_at)
            self._purge(now)
            return count, reset_at - now

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._counters.pop(key, None)

    def _purge(self, now: float) -> None:
        expired = [key for key, (_, reset_at) in self._counters.items() if reset_at <= now]
        for key in expired:
            del self._counters[key]


class RateLimiter:
    """Applies per-action limits to identities."""

    def __init__(self, store: CounterStore, limits: Dict[str, RateLimit]):
        self.store = store
        self.limits = dict(limits)

    @classmethod
    def from_settings(cls, store: CounterStore, settings: dict) -> 'RateLimiter':
        limits = {
            action: RateLimit(
                max_requests=settings[f'{action}_rate_limit'],
                window_seconds=settings[f'{action}_rate_window'],
            )
            for action in ('purchase', 'listing', 'upload')
        }
        return cls(store, limits)

    async def hit(self, action: str, identity: str) -> int:
        """Count one request and raise once the limit is exceeded.

        Actions without a configured limit are not counted.

        Raises:
            RateLimitExceededError: If the identity is over the limit
        """
        limit: Optional[RateLimit] = self.limits.get(action)
        if limit is None:
            return 0
        count, retry_after = await self.store.increment(f"{action}:{identity}", limit.window_seconds)
        if count > limit.max_requests:
            logger.warning(f"Rate limit hit for {action} by {identity} ({count}/{limit.max_requests})")
            raise RateLimitExceededError(action, identity, retry_after)
        return count


# Export public interface
__all__ = [
    'RateLimiter',
    'RateLimit',
    'CounterStore',
    'MemoryCounterStore',
    'RateLimitExceededError',
]
