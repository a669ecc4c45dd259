from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any


class TTLCache:
    """
    Process-local read-through cache with per-entry TTL.

    - Entries expire lazily on read.
    - Writers invalidate by exact key or key prefix.
    - Every invalidation bumps a generation counter; a value computed before
      an invalidation is returned to its caller but never stored.
    """

    def __init__(
        self,
        *,
        default_ttl_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[float, Any]] = {}
        self._generation = 0
        self._default_ttl_s = default_ttl_s
        self._clock = clock

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(
        self,
        key: str,
        value: Any,
        *,
        ttl_s: float | None = None,
        generation: int | None = None,
    ) -> bool:
        """Store ``value``; skipped when ``generation`` is no longer current."""
        ttl = self._default_ttl_s if ttl_s is None else ttl_s
        if ttl <= 0:
            return False
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            self._entries[key] = (self._clock() + ttl, value)
        return True

    def get_or_set(
        self,
        key: str,
        factory: Callable[[], Any],
        *,
        ttl_s: float | None = None,
    ) -> Any:
        with self._lock:
            generation = self._generation
        cached = self.get(key)
        if cached is not None:
            return cached
        value = factory()
        self.set(key, value, ttl_s=ttl_s, generation=generation)
        return value

    def delete(self, key: str) -> None:
        with self._lock:
            self._generation += 1
            self._entries.pop(key, None)

    def clear_prefix(self, prefix: str) -> int:
        with self._lock:
            self._generation += 1
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
