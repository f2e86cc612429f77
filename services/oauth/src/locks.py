"""Per-integration locks shared by refresh and revoke."""

import asyncio
from contextlib import asynccontextmanager


class IntegrationLocks:
    """One ``asyncio.Lock`` per integration id, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, integration_id: str):
        lock = self._locks.setdefault(integration_id, asyncio.Lock())
        self._users[integration_id] = self._users.get(integration_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[integration_id] -= 1
            if not self._users[integration_id]:
                del self._users[integration_id]
                del self._locks[integration_id]

    def __len__(self) -> int:
        return len(self._locks)
