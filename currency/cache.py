"""TTL cache for ledger balances, owned by a single adapter instance."""
import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, Optional

from pydantic import BaseModel


class BalanceCacheEntry(BaseModel):
    amount: int
    observed_at: float


class BalanceCache:
    """Balance cache keyed by account.

    Reads through a miss and invalidation both hold the account's lock, so a
    query in flight cannot re-populate an entry after it was invalidated.
    Locks exist only while a task holds or waits on them.
    """

    def __init__(self, ttl_seconds: float = 30, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, BalanceCacheEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def locked(self, account_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(account_id, asyncio.Lock())
        self._lock_users[account_id] = self._lock_users.get(account_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[account_id] -= 1
            if not self._lock_users[account_id]:
                del self._lock_users[account_id]
                del self._locks[account_id]

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    def fresh(self, account_id: str) -> Optional[BalanceCacheEntry]:
        """Entry if it is younger than the TTL. Caller holds the account lock."""
        entry = self._entries.get(account_id)
        if entry is None:
            return None
        if self._clock() - entry.observed_at >= self.ttl_seconds:
            return None
        return entry

    def last_known(self, account_id: str) -> Optional[BalanceCacheEntry]:
        return self._entries.get(account_id)

    def store(self, account_id: str, amount: int) -> BalanceCacheEntry:
        entry = BalanceCacheEntry(amount=amount, observed_at=self._clock())
        self._entries[account_id] = entry
        return entry

    async def invalidate(self, account_id: str) -> None:
        async with self.locked(account_id):
            self._entries.pop(account_id, None)
