"""Process-local TTL cache.

Best-effort only: not shared between instances and not authoritative.
Callers depend on the ``get``/``set``/``expire`` surface so a distributed
backend can replace it.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Protocol


class Cache(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None: ...

    def expire(self, key: str) -> None: ...


class TTLCache:
    """Thread-safe dict with per-entry expiry."""

    def __init__(
        self,
        ttl_seconds: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            expires_at, value = item
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)

    def expire(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
