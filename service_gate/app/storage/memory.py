"""
Bounded in-process store used as the local fallback tier.
"""

import asyncio
import zlib
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple

from shared.circuit_breaker import BackendId
from shared.clock import Clock
from shared.errors import BackendCorrupt
from shared.logging import get_logger

from .base import StorageBackend


class MemoryBackend(StorageBackend):
    """LRU + TTL map shared by all request tasks in one process.

    Size is capped by ``max_entries`` (least recently used entries are
    evicted) and age by ``max_age_seconds`` (TTLs are clamped to it).
    Compound operations lock a stripe chosen by key hash, so unrelated keys
    do not serialize behind one lock.
    """

    backend_id = BackendId.LOCAL

    def __init__(self,
                 max_entries: int = 10000,
                 max_age_seconds: float = 3600.0,
                 clock: Optional[Clock] = None,
                 lock_stripes: int = 64):
        self.max_entries = max_entries
        self.max_age_seconds = max_age_seconds
        self.clock = clock or Clock()
        self.logger = get_logger("gate.storage.memory")

        self._store: "OrderedDict[str, Tuple[float, bytes]]" = OrderedDict()
        self._locks: List[asyncio.Lock] = [asyncio.Lock() for _ in range(lock_stripes)]
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._store)

    def _lock_for(self, key: str) -> asyncio.Lock:
        return self._locks[zlib.crc32(key.encode("utf-8")) % len(self._locks)]

    def _expiry(self, ttl: float) -> float:
        return self.clock.now() + min(ttl, self.max_age_seconds)

    def _live(self, key: str) -> Optional[Tuple[float, bytes]]:
        item = self._store.get(key)
        if item is None:
            return None
        expires_at, _ = item
        if self.clock.now() >= expires_at:
            self._store.pop(key, None)
            return None
        return item

    def _put(self, key: str, expires_at: float, value: bytes) -> None:
        self._store[key] = (expires_at, value)
        self._store.move_to_end(key)
        while len(self._store) > self.max_entries:
            evicted, _ = self._store.popitem(last=False)
            self._evictions += 1
            self.logger.debug("Evicted local entry", key=evicted)

    async def get(self, key: str) -> Optional[bytes]:
        item = self._live(key)
        if item is None:
            return None
        self._store.move_to_end(key)
        return item[1]

    async def set(self, key: str, value: bytes, ttl: float) -> None:
        if ttl <= 0:
            self._store.pop(key, None)
            return
        async with self._lock_for(key):
            self._put(key, self._expiry(ttl), value)

    async def increment(self, key: str, ttl: float) -> int:
        async with self._lock_for(key):
            item = self._live(key)
            if item is None:
                expires_at, current = self._expiry(ttl), 0
            else:
                expires_at = item[0]
                try:
                    current = int(item[1])
                except ValueError:
                    raise BackendCorrupt(key, "Counter holds a non-integer value")
            current += 1
            self._put(key, expires_at, str(current).encode("ascii"))
            return current

    async def delete(self, key: str) -> bool:
        async with self._lock_for(key):
            return self._store.pop(key, None) is not None

    async def compare_and_set(self, key: str, expected: Optional[bytes], value: bytes, ttl: float) -> bool:
        async with self._lock_for(key):
            item = self._live(key)
            current = item[1] if item is not None else None
            if current != expected:
                return False
            self._put(key, self._expiry(ttl), value)
            return True

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self.clock.now()
        expired = [key for key, (expires_at, _) in self._store.items() if now >= expires_at]
        for key in expired:
            self._store.pop(key, None)
        if expired:
            self.logger.debug("Purged expired local entries", count=len(expired))
        return len(expired)

    async def close(self) -> None:
        self._store.clear()

    async def stats(self) -> Dict[str, Any]:
        return {
            "backend": self.backend_id.value,
            "entries": len(self._store),
            "max_entries": self.max_entries,
            "evictions": self._evictions,
        }
