import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class KeyedConcurrencyLimiter:
    """Cap concurrent runs that share an external idempotency key."""

    def __init__(self, limit: int = 1) -> None:
        self.limit = max(1, limit)
        self._sems: Dict[str, asyncio.Semaphore] = {}
        self._holders: Dict[str, int] = {}

    def active(self, key: str) -> int:
        return self._holders.get(key, 0)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        sem = self._sems.get(key)
        if sem is None:
            sem = asyncio.Semaphore(self.limit)
            self._sems[key] = sem
        # Count waiters too so the semaphore is not dropped while queued.
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with sem:
                yield
        finally:
            remaining = self._holders.get(key, 1) - 1
            if remaining <= 0:
                self._holders.pop(key, None)
                self._sems.pop(key, None)
            else:
                self._holders[key] = remaining
