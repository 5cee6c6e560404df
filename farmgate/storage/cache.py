from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Protocol, Tuple


class Cache(Protocol):
    """Short-lived key/value state shared by request handlers.

    Backs the gateway rate-limit counters and the CSRF token cache. ``increment``
    creates a missing key with value 1 and starts its TTL; later increments
    keep the original expiry so counters form fixed windows.
    """

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    async def increment(self, key: str, ttl_seconds: int) -> int:
        ...

    async def ttl(self, key: str) -> int:
        ...

    async def delete(self, key: str) -> bool:
        ...

    def verify_connection(self) -> None:
        ...

    async def close(self) -> None:
        ...


class MemoryCache:
    """Process-local cache used in tests and single-node development."""

    def __init__(self, *, clock=time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str, now: float) -> Optional[Tuple[str, float]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= now:
            self._entries.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key, self._clock())
            return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + max(1, ttl_seconds))

    async def increment(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                self._entries[key] = ("1", now + max(1, ttl_seconds))
                return 1
            count = int(entry[0]) + 1
            self._entries[key] = (str(count), entry[1])
            return count

    async def ttl(self, key: str) -> int:
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                return 0
            return max(1, int(entry[1] - now))

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
