import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Tuple


class KeyedLocks:
    """In-process mutual exclusion per (bucket, key). Entries are dropped once nobody holds or waits."""

    def __init__(self) -> None:
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._users: Dict[Tuple[str, str], int] = {}

    @asynccontextmanager
    async def hold(self, bucket: str, key: str) -> AsyncIterator[None]:
        slot = (bucket, key)
        lock = self._locks.setdefault(slot, asyncio.Lock())
        self._users[slot] = self._users.get(slot, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[slot] -= 1
            if self._users[slot] == 0:
                del self._users[slot]
                del self._locks[slot]

    def __len__(self) -> int:
        return len(self._locks)
