"""Step result caching."""

from .backends import CacheStorage, InMemoryStorage, NoOpStorage
from .keys import CacheKey, CacheKeyBuilder, canonical_host
from .result_cache import CacheEntry, CacheLookup, CacheStats, ResultCache

__all__ = [
    "CacheEntry",
    "CacheKey",
    "CacheKeyBuilder",
    "CacheLookup",
    "CacheStats",
    "CacheStorage",
    "InMemoryStorage",
    "NoOpStorage",
    "ResultCache",
    "canonical_host",
]
