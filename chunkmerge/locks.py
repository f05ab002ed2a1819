import asyncio
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

SessionKey = tuple[str, str]


class SessionLocks:
    """One asyncio lock per (user_id, file_name), dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[SessionKey, asyncio.Lock] = {}
        self._counts: dict[SessionKey, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def is_locked(self, key: SessionKey) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def _acquire_ref(self, key: SessionKey) -> asyncio.Lock:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._counts[key] = self._counts.get(key, 0) + 1
        return lock

    def _release_ref(self, key: SessionKey) -> None:
        next_value = max(0, self._counts.get(key, 0) - 1)
        if next_value == 0:
            self._counts.pop(key, None)
            self._locks.pop(key, None)
        else:
            self._counts[key] = next_value

    @asynccontextmanager
    async def hold(self, key: SessionKey) -> AsyncIterator[None]:
        lock = self._acquire_ref(key)
        try:
            async with lock:
                yield
        finally:
            self._release_ref(key)
