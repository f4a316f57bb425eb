# services/ttl_cache.py
import json
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

_MISSING = object()


def make_key(*parts: Any, **params: Any) -> str:
    """Key built from the full parameter set, order-insensitive for keyword params."""
    return json.dumps([parts, params], sort_keys=True, default=str)


class TTLCache:
    """Small in-process cache with a fixed time-to-live per entry."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic, maxsize: int = 256):
        self.ttl_seconds = ttl_seconds
        self.maxsize = maxsize
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}

    def get(self, key: Hashable, default: Optional[Any] = None) -> Any:
        entry = self._entries.get(key, _MISSING)
        if entry is _MISSING:
            return default
        stored_at, value = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            self._entries.pop(key, None)
            return default
        return value

    def set(self, key: Hashable, value: Any) -> None:
        if len(self._entries) >= self.maxsize and key not in self._entries:
            self._evict()
        self._entries[key] = (self._clock(), value)

    def _evict(self) -> None:
        now = self._clock()
        for key in [k for k, (t, _) in self._entries.items() if now - t >= self.ttl_seconds]:
            del self._entries[key]
        if len(self._entries) >= self.maxsize:
            oldest = min(self._entries, key=lambda k: self._entries[k][0])
            del self._entries[oldest]

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        return len(self._entries)
