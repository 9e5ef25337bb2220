"""
Content-addressed cache for step results.

Entries are keyed by the member type tag plus a hash of the normalized
resolved input (see CacheKeyBuilder) and carry their own expiry. A lookup is
a hit only while ``now < expires_at``; an expired entry counts as a miss and
is deleted on the spot.

The cache never raises into the orchestrator: storage faults on lookup become
misses, faults on store are dropped, both are logged at WARNING.
"""
from __future__ import annotations

import copy
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from .backends import CacheStorage, InMemoryStorage
from .keys import DEFAULT_TEXT_FIELDS, DEFAULT_URL_FIELDS, CacheKey, CacheKeyBuilder

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600.0


@dataclass
class CacheEntry:
    """Cached step output with expiry metadata.

    Attributes:
        key: Cache key string the entry is stored under
        value: Step output
        created_at: Clock time of the store
        expires_at: Clock time after which the entry is no longer served
        tags: Labels used for bulk invalidation
        state_updates: State writes the step staged alongside its output
    """

    key: str
    value: Any
    created_at: float
    expires_at: float
    tags: List[str] = field(default_factory=list)
    state_updates: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def age_seconds(self, now: float) -> float:
        return now - self.created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "tags": list(self.tags),
            "state_updates": dict(self.state_updates),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        """Rebuild an entry from its dictionary form (for serializing backends)."""
        return cls(
            key=data["key"],
            value=data.get("value"),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
            tags=list(data.get("tags") or []),
            state_updates=dict(data.get("state_updates") or {}),
        )


@dataclass(frozen=True)
class CacheLookup:
    """Outcome of a cache lookup. ``value`` and ``state_updates`` are only meaningful on a hit."""

    hit: bool
    value: Any = None
    state_updates: Dict[str, Any] = field(default_factory=dict)


MISS = CacheLookup(hit=False)


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    stores: int = 0
    expired: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate hit rate.

        Returns:
            Hit rate percentage
        """
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits / total) * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": f"{self.hit_rate:.2f}%",
            "stores": self.stores,
            "expired": self.expired,
            "errors": self.errors,
        }


async def _call(method: Callable[..., Any], *args: Any) -> Any:
    """Invoke a storage method that may be sync or async."""
    result = method(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class ResultCache:
    """Step result cache over a pluggable storage backend.

    Example:
        cache = ResultCache(InMemoryStorage(max_entries=500), default_ttl=600)
        key = cache.key("lookup-company", {"domain": "https://www.acme.io"})
        found = await cache.lookup(key)
        if not found.hit:
            await cache.store(key, await compute(), ttl_seconds=60)
    """

    def __init__(
        self,
        storage: Optional[CacheStorage] = None,
        key_builder: Optional[CacheKeyBuilder] = None,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize result cache.

        Args:
            storage: Backend implementing the storage contract (in-memory by default)
            key_builder: Normalizer and key factory
            default_ttl: TTL used when store() is called without one
            enabled: When False every lookup misses and every store is skipped
            clock: Time source for entry expiry
        """
        self.storage = storage if storage is not None else InMemoryStorage()
        self.key_builder = key_builder or CacheKeyBuilder()
        self.default_ttl = default_ttl
        self.enabled = enabled
        self._clock = clock
        self._stats = CacheStats()

    @classmethod
    def from_config(cls, config: Any, storage: Optional[CacheStorage] = None) -> "ResultCache":
        """Create a cache from an EngineConfig."""
        builder = CacheKeyBuilder(
            text_fields=getattr(config, "cache_text_fields", DEFAULT_TEXT_FIELDS),
            url_fields=getattr(config, "cache_url_fields", DEFAULT_URL_FIELDS),
            prefix=getattr(config, "cache_key_prefix", ""),
        )
        if storage is None:
            storage = InMemoryStorage(max_entries=getattr(config, "cache_max_entries", 1024))
        return cls(
            storage=storage,
            key_builder=builder,
            default_ttl=getattr(config, "cache_default_ttl", DEFAULT_TTL_SECONDS),
            enabled=getattr(config, "cache_enabled", True),
        )

    @property
    def stats(self) -> CacheStats:
        return self._stats

    def key(self, step_type: str, resolved_input: Any) -> str:
        """Derive the deterministic key string for a step invocation."""
        return str(self.build_key(step_type, resolved_input))

    def build_key(self, step_type: str, resolved_input: Any) -> CacheKey:
        return self.key_builder.build(step_type, resolved_input)

    async def lookup(self, key: Union[str, CacheKey]) -> CacheLookup:
        """Look up a key.

        Args:
            key: Cache key

        Returns:
            CacheLookup with ``hit`` True and a copy of the value while the
            entry is fresh; a miss otherwise (including on storage faults)
        """
        if not self.enabled:
            return MISS

        key = str(key)
        try:
            entry = await _call(self.storage.get, key)
        except Exception as e:
            self._stats.errors += 1
            self._stats.misses += 1
            logger.warning(f"Cache lookup failed for {key}: {e}")
            return MISS

        if entry is None:
            self._stats.misses += 1
            return MISS

        if isinstance(entry, dict):
            try:
                entry = CacheEntry.from_dict(entry)
            except (KeyError, TypeError, ValueError) as e:
                self._stats.errors += 1
                self._stats.misses += 1
                logger.warning(f"Discarding malformed cache entry {key}: {e}")
                return MISS

        if not isinstance(entry, CacheEntry):
            self._stats.misses += 1
            logger.warning(f"Discarding foreign cache value under {key}")
            return MISS

        if entry.is_expired(self._clock()):
            self._stats.misses += 1
            self._stats.expired += 1
            logger.debug(f"Cache entry expired: {key}")
            await self._delete_quietly(key)
            return MISS

        self._stats.hits += 1
        logger.debug(f"Cache hit: {key}")
        return CacheLookup(
            hit=True,
            value=copy.deepcopy(entry.value),
            state_updates=copy.deepcopy(entry.state_updates),
        )

    async def store(
        self,
        key: Union[str, CacheKey],
        value: Any,
        ttl_seconds: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
        state_updates: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Store a value, overwriting any previous entry under the key.

        Args:
            key: Cache key
            value: Step output to cache
            ttl_seconds: Lifetime of the entry (default TTL when omitted)
            tags: Labels for invalidate_by_tag()
            state_updates: Staged state writes replayed on a hit

        Returns:
            True if the storage accepted the entry; False when the value
            cannot be copied or the storage fails
        """
        if not self.enabled:
            return False

        key = str(key)
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl
        now = self._clock()
        try:
            entry = CacheEntry(
                key=key,
                value=copy.deepcopy(value),
                created_at=now,
                expires_at=now + ttl,
                tags=list(tags or []),
                state_updates=copy.deepcopy(dict(state_updates or {})),
            )
            await _call(self.storage.put, key, entry, ttl)
        except Exception as e:
            self._stats.errors += 1
            logger.warning(f"Cache store failed for {key}: {e}")
            return False

        self._stats.stores += 1
        logger.debug(f"Cached {key} for {ttl}s")
        return True

    async def invalidate(self, key: Union[str, CacheKey]) -> bool:
        """Remove one entry. Returns True if the storage reported a deletion."""
        delete = getattr(self.storage, "delete", None)
        if delete is None:
            return False
        try:
            return bool(await _call(delete, str(key)))
        except Exception as e:
            self._stats.errors += 1
            logger.warning(f"Cache invalidation failed for {key}: {e}")
            return False

    async def invalidate_by_tag(self, tag: str) -> int:
        """Remove every entry carrying a tag.

        Requires storage supporting ``keys()`` and ``delete()``; other storages
        report zero removals.

        Returns:
            Number of entries removed
        """
        list_keys = getattr(self.storage, "keys", None)
        if list_keys is None or getattr(self.storage, "delete", None) is None:
            logger.debug(f"Storage {type(self.storage).__name__} cannot invalidate by tag")
            return 0

        try:
            keys = await _call(list_keys)
        except Exception as e:
            self._stats.errors += 1
            logger.warning(f"Cache key listing failed: {e}")
            return 0

        removed = 0
        for key in sorted(keys):
            try:
                entry = await _call(self.storage.get, key)
            except Exception as e:
                self._stats.errors += 1
                logger.warning(f"Cache lookup failed for {key}: {e}")
                continue
            if isinstance(entry, dict):
                entry_tags = entry.get("tags") or []
            else:
                entry_tags = getattr(entry, "tags", None) or []
            if tag in entry_tags and await self.invalidate(key):
                removed += 1

        if removed:
            logger.info(f"Invalidated {removed} cache entries tagged '{tag}'")
        return removed

    async def _delete_quietly(self, key: str) -> None:
        delete = getattr(self.storage, "delete", None)
        if delete is None:
            return
        try:
            await _call(delete, key)
        except Exception as e:
            self._stats.errors += 1
            logger.warning(f"Failed to evict expired cache entry {key}: {e}")
