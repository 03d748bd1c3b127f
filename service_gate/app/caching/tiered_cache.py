"""
Response cache on top of the tiered store.
"""

import base64
import binascii
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, TYPE_CHECKING

from shared.circuit_breaker import BackendId
from shared.clock import Clock
from shared.errors import BackendCorrupt, BackendUnavailable
from shared.logging import get_logger

from .tiered_store import TieredStore

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


@dataclass
class CachedResponse:
    """Response payload as produced by a handler."""

    body: bytes
    status_code: int = 200
    content_type: str = "application/json"

    @classmethod
    def json(cls, data: Any, status_code: int = 200) -> "CachedResponse":
        return cls(
            body=json.dumps(data, default=str).encode("utf-8"),
            status_code=status_code,
            content_type="application/json",
        )


@dataclass
class CacheEntry:
    """A cached response with its absolute expiry."""

    key: str
    value: CachedResponse
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def encode(self) -> bytes:
        return json.dumps({
            "key": self.key,
            "status_code": self.value.status_code,
            "content_type": self.value.content_type,
            "body": base64.b64encode(self.value.body).decode("ascii"),
            "expires_at": self.expires_at,
        }).encode("utf-8")

    @classmethod
    def decode(cls, key: str, raw: bytes) -> "CacheEntry":
        try:
            payload = json.loads(raw)
            entry = cls(
                key=payload["key"],
                value=CachedResponse(
                    body=base64.b64decode(payload["body"], validate=True),
                    status_code=int(payload["status_code"]),
                    content_type=str(payload["content_type"]),
                ),
                expires_at=float(payload["expires_at"]),
            )
        except (ValueError, TypeError, KeyError, binascii.Error) as exc:
            raise BackendCorrupt(key, f"Undecodable cache entry: {exc}")
        if entry.key != key:
            raise BackendCorrupt(key, "Cache entry stored under a different key")
        return entry


class CacheWriteStatus(Enum):
    """Outcome of a cache put."""
    STORED = "stored"        # Landed in the distributed store
    DEGRADED = "degraded"    # Landed in the local store only
    SKIPPED = "skipped"      # TTL <= 0, nothing cached
    FAILED = "failed"        # No tier accepted the value


class TieredCache:
    """Response cache that never fails the request path.

    ``get`` returns None on a miss, on an expired entry and on a corrupt
    entry (which is purged). ``put`` reports where the value landed.
    """

    def __init__(self,
                 store: TieredStore,
                 clock: Optional[Clock] = None,
                 metrics: Optional["MetricsCollector"] = None):
        self.store = store
        self.clock = clock or Clock()
        self.metrics = metrics
        self.logger = get_logger("gate.cache")

        self._counters: Dict[str, int] = {
            "hits": 0,
            "misses": 0,
            "stored": 0,
            "degraded": 0,
            "failed": 0,
            "corrupt_purged": 0,
        }

    async def get(self, key: str) -> Optional[CachedResponse]:
        """Get a cached response, or None."""
        try:
            raw = await self.store.get(key)
            if raw is None:
                self._counters["misses"] += 1
                return None
            entry = CacheEntry.decode(key, raw)
        except BackendCorrupt as exc:
            self._counters["misses"] += 1
            await self._purge(key, exc)
            return None
        except BackendUnavailable as exc:
            self._counters["misses"] += 1
            self.logger.error("Cache fetch error", key=key, error=exc.message)
            return None

        if entry.is_expired(self.clock.now()):
            self._counters["misses"] += 1
            return None

        self._counters["hits"] += 1
        return entry.value

    async def put(self, key: str, value: CachedResponse, ttl: float) -> CacheWriteStatus:
        """Cache a response for ``ttl`` seconds."""
        if ttl <= 0:
            return CacheWriteStatus.SKIPPED

        entry = CacheEntry(key=key, value=value, expires_at=self.clock.now() + ttl)
        try:
            landed = await self.store.write(key, entry.encode(), ttl)
        except BackendUnavailable as exc:
            self._counters["failed"] += 1
            self.logger.error("Cache set error", key=key, error=exc.message)
            return CacheWriteStatus.FAILED

        if landed == BackendId.DISTRIBUTED:
            self._counters["stored"] += 1
            self.logger.debug("Cached value", key=key, ttl=ttl)
            return CacheWriteStatus.STORED

        self._counters["degraded"] += 1
        self.logger.info("Cached value in local store only", key=key, ttl=ttl)
        return CacheWriteStatus.DEGRADED

    async def invalidate(self, key: str) -> bool:
        """Drop a key from both tiers."""
        try:
            return await self.store.delete(key)
        except BackendUnavailable as exc:
            self.logger.error("Cache invalidate error", key=key, error=exc.message)
            return False

    async def _purge(self, key: str, exc: BackendCorrupt) -> None:
        self._counters["corrupt_purged"] += 1
        self.logger.warning("Purging corrupt cache entry", key=key, error=exc.message)
        try:
            await self.store.delete(key)
        except BackendUnavailable as purge_exc:
            self.logger.error("Failed to purge corrupt cache entry", key=key, error=purge_exc.message)

    async def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        lookups = self._counters["hits"] + self._counters["misses"]
        stats: Dict[str, Any] = dict(self._counters)
        stats["hit_ratio"] = self._counters["hits"] / lookups if lookups else 0.0
        stats["store"] = await self.store.stats()
        return stats
