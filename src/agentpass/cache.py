"""Time-bounded in-memory cache for short-lived handshake state."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Generic, Optional, TypeVar


V = TypeVar("V")


class TTLCache(Generic[V]):
    """
    Dict-backed cache whose entries expire after a fixed TTL.

    Expired entries are dropped lazily on access and by ``purge()``. The clock
    is injectable so tests can advance time without sleeping.
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.time,
        max_entries: int = 10_000,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def set(self, key: str, value: V, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._purge_locked()
                if len(self._entries) >= self.max_entries:
                    oldest = min(self._entries, key=lambda k: self._entries[k]["expires_at"])
                    del self._entries[oldest]
            self._entries[key] = {"value": value, "expires_at": self._clock() + ttl}

    def get(self, key: str) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() >= entry["expires_at"]:
                del self._entries[key]
                return None
            return entry["value"]

    def pop(self, key: str) -> Optional[V]:
        """Remove and return a live entry (single consumption)."""
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None or self._clock() >= entry["expires_at"]:
            return None
        return entry["value"]

    def purge(self) -> int:
        with self._lock:
            return self._purge_locked()

    def _purge_locked(self) -> int:
        now = self._clock()
        expired = [k for k, entry in self._entries.items() if now >= entry["expires_at"]]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
