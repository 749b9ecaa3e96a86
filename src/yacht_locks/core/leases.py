"""Per-device leases so only one command touches a device at a time."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class DeviceLeases:
    """One ``asyncio.Lock`` per device id, kept only while someone holds or waits for it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks[device_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, device_id: str) -> AsyncIterator[None]:
        lock = self._lock_for(device_id)
        self._users[device_id] = self._users.get(device_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[device_id] -= 1
            if not self._users[device_id]:
                del self._users[device_id]
                del self._locks[device_id]

    def is_held(self, device_id: str) -> bool:
        lock = self._locks.get(device_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
