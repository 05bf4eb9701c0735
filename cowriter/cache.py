"""Key-value cache abstraction used by the cowriter rate limiter.

The limiter only needs ``get`` and ``set`` with a per-entry lifetime, so any
shared store (Redis, memcached, a database table) can back it. An in-memory
implementation is provided for single-process deployments and tests.
"""

import heapq
import threading
import time
from typing import Any, Dict, List, Optional, Protocol, Tuple


class CacheBackend(Protocol):
    """Minimal cache contract: read a value, write a value with a TTL."""

    def get(self, key: str) -> Any:
        """Return the stored value, or None on a miss."""
        ...

    def set(self, key: str, value: Any, lifetime: int) -> None:
        """Store value under key for lifetime seconds."""
        ...


class InMemoryCache:
    """Thread-safe dict cache.

    Expired entries are dropped when read, and every write also evicts all
    entries whose lifetime has passed, so keys that are never read again do
    not accumulate.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[float, Any]] = {}
        # (expires_at, key); stale pairs for rewritten keys are skipped on pop
        self._expiry_heap: List[Tuple[float, str]] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if time.time() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, lifetime: int) -> None:
        now = time.time()
        with self._lock:
            self._evict_expired(now)
            expires_at = now + lifetime
            self._entries[key] = (expires_at, value)
            heapq.heappush(self._expiry_heap, (expires_at, key))

    def clear(self, key: Optional[str] = None) -> None:
        """Drop a single key, or every key when none is given."""
        with self._lock:
            if key is None:
                self._entries.clear()
                self._expiry_heap.clear()
            else:
                self._entries.pop(key, None)

    def _evict_expired(self, now: float) -> None:
        heap = self._expiry_heap
        while heap and heap[0][0] <= now:
            expires_at, key = heapq.heappop(heap)
            entry = self._entries.get(key)
            if entry is not None and entry[0] == expires_at:
                del self._entries[key]
