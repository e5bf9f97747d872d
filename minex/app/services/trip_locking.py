"""
Per-trip locking.

Serializes every completion/close for a given trip token, whether it comes
from a foreground action or from a queued operation replayed by a sync pass.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from minex.app.services.trip_store import normalize_token


class TripLockRegistry:
    """
    One asyncio.Lock per trip token, created on demand.

    A lock is dropped again once nobody holds or waits on it, so the registry
    only grows with the number of trips being worked on at the same time.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, trip_token: str) -> AsyncIterator[None]:
        """
        Hold the lock for 'trip_token' for the duration of the block.

        Args:
            trip_token: Token of the trip being mutated (whitespace ignored)
        """
        key = normalize_token(trip_token)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]
