"""TTL cache owned by a ledger adapter instance.

Entries expire after a fixed time-to-live measured on the adapter's Clock,
and writers invalidate the keys their transaction could change.
"""

from typing import Any, Generic, Hashable, Optional, TypeVar

from croupier.core.clock import Clock, SystemClock

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Small bounded mapping with per-entry expiry."""

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 4096,
        clock: Optional[Clock] = None,
    ) -> None:
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be >= 0")
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock or SystemClock()
        self._entries: dict[Hashable, tuple[float, V]] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: Hashable) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        expires_at, value = entry
        if self._clock.now() >= expires_at:
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return value

    def set(self, key: Hashable, value: V) -> None:
        if self._ttl == 0:
            return
        if key not in self._entries and len(self._entries) >= self._max_entries:
            self._evict()
        self._entries[key] = (self._clock.now() + self._ttl, value)

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def _evict(self) -> None:
        now = self._clock.now()
        expired = [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        if len(self._entries) >= self._max_entries:
            # Insertion order: the first key is the oldest write.
            oldest = next(iter(self._entries))
            del self._entries[oldest]

    def stats(self) -> dict[str, Any]:
        return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses}
