"""
Gate caching package.

Keys come from ``KeyCodec``; values go through ``TieredCache``, which prefers
the distributed store and falls back to the bounded local store without ever
failing the request path.
"""

from .keys import KeyCodec
from .tiered_cache import CacheEntry, CachedResponse, CacheWriteStatus, TieredCache
from .tiered_store import TieredStore

__all__ = [
    "KeyCodec",
    "CacheEntry",
    "CachedResponse",
    "CacheWriteStatus",
    "TieredCache",
    "TieredStore",
]
