"""Storage backends for the step result cache.

The result cache talks to storage through a small contract:

- ``get(key)`` returns the stored value or None
- ``put(key, value, ttl_seconds)`` stores a value, overwriting any previous one
- ``delete(key)`` removes a key (optional)
- ``keys()`` lists stored keys (optional, needed for tag invalidation)

Each method may be synchronous or a coroutine, and may raise; the result
cache turns faults into misses. Two backends ship with the engine:

- InMemoryStorage: thread-safe in-process store with LRU eviction bounded
  by entry count. Best for: single process runs and tests.
- NoOpStorage: stores nothing. Best for: disabling caching without
  touching ensemble definitions.
"""
from __future__ import annotations

import logging
import time
from collections import OrderedDict
from threading import RLock
from typing import Any, Callable, Optional, Protocol, Set, Tuple, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class CacheStorage(Protocol):
    """Protocol defining the storage contract used by ResultCache.

    Implementations may return plain values or awaitables from every method.
    """

    def get(self, key: str) -> Any:
        """Retrieve the value stored under a key.

        Returns:
            Stored value, or None when the key is absent or expired
        """
        ...

    def put(self, key: str, value: Any, ttl_seconds: float) -> Any:
        """Store a value under a key for at most ``ttl_seconds``."""
        ...


class InMemoryStorage:
    """Thread-safe in-memory storage with LRU eviction policy.

    Entries live in an OrderedDict; each get() moves the entry to the end so
    the least recently used entry is evicted first once ``max_entries`` is
    reached. The storage also honors the TTL given to put() using its own
    clock, independently of the expiry carried by cache entries.

    Attributes:
        max_entries: Maximum number of stored keys
        evictions: Number of entries evicted to respect the bound
    """

    def __init__(self, max_entries: int = 1024, clock: Callable[[], float] = time.monotonic):
        """Initialize in-memory storage.

        Args:
            max_entries: Maximum number of entries kept before LRU eviction
            clock: Time source for storage-level expiry
        """
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.evictions = 0
        self._clock = clock
        self._data: "OrderedDict[str, Tuple[Any, Optional[float]]]" = OrderedDict()
        self._lock = RLock()

        logger.debug(f"Initialized InMemoryStorage with max_entries={max_entries}")

    def get(self, key: str) -> Any:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, deadline = item
            if deadline is not None and self._clock() >= deadline:
                del self._data[key]
                return None
            self._data.move_to_end(key)
            return value

    def put(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> bool:
        deadline = self._clock() + ttl_seconds if ttl_seconds else None
        with self._lock:
            if key in self._data:
                del self._data[key]
            while len(self._data) >= self.max_entries:
                self._evict_oldest()
            self._data[key] = (value, deadline)
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def clear(self) -> int:
        """Clear all entries.

        Returns:
            Number of entries cleared
        """
        with self._lock:
            count = len(self._data)
            self._data.clear()
            return count

    def keys(self) -> Set[str]:
        with self._lock:
            return set(self._data.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def _evict_oldest(self) -> None:
        key, _ = self._data.popitem(last=False)
        self.evictions += 1
        logger.debug(f"Evicted cache key: {key}")


class NoOpStorage:
    """Storage that never keeps anything; every lookup is a miss."""

    def get(self, key: str) -> Any:
        return None

    def put(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> bool:
        return False

    def delete(self, key: str) -> bool:
        return False

    def keys(self) -> Set[str]:
        return set()

    def clear(self) -> int:
        return 0
