"""Infrastructure adapters: cache tiers and persistence."""

from .cache import CacheStore, InMemoryCacheStore, RedisCacheStore, TieredCache, create_cache
from .store import CustodyStore, SQLiteCustodyStore

__all__ = [
    "CacheStore",
    "CustodyStore",
    "InMemoryCacheStore",
    "RedisCacheStore",
    "SQLiteCustodyStore",
    "TieredCache",
    "create_cache",
]
