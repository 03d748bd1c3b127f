"""
Failover between the distributed store and the local store.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TYPE_CHECKING

from shared.circuit_breaker import BackendHealth, BackendId, CircuitBreakerState
from shared.errors import BackendCorrupt
from shared.logging import get_logger

from ..storage.base import StorageBackend

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector

_CIRCUIT_GAUGE = {
    CircuitBreakerState.CLOSED: 0,
    CircuitBreakerState.OPEN: 1,
    CircuitBreakerState.HALF_OPEN: 2,
}


class TieredStore(StorageBackend):
    """Distributed-first store that falls back to the local tier.

    The distributed backend is skipped while ``health`` reports an open
    circuit. Every distributed call is bounded by ``timeout``; a timeout or
    any backend error counts as a failure and the local tier serves the call
    instead, so callers never see the distributed failure.
    """

    backend_id = BackendId.DISTRIBUTED

    def __init__(self,
                 local: StorageBackend,
                 distributed: Optional[StorageBackend] = None,
                 health: Optional[BackendHealth] = None,
                 timeout: float = 0.25,
                 metrics: Optional["MetricsCollector"] = None):
        self.local = local
        self.distributed = distributed
        self.health = health or BackendHealth()
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger("gate.storage.tiered")

    def _record(self, backend: BackendId, operation: str, result: str) -> None:
        if not self.metrics:
            return
        self.metrics.increment_counter(
            "cache_backend_operations_total",
            backend=backend.value,
            operation=operation,
            result=result,
        )
        self.metrics.set_gauge(
            "circuit_state",
            _CIRCUIT_GAUGE[self.health.state],
            backend=self.health.backend_id.value,
        )

    async def _distributed(self, operation: str, call: Callable[[StorageBackend], Awaitable[Any]]) -> Tuple[bool, Any]:
        """Try the distributed backend; returns (succeeded, result)."""
        if self.distributed is None:
            return False, None
        if not self.health.allow_attempt():
            self._record(BackendId.DISTRIBUTED, operation, "skipped")
            return False, None

        try:
            result = await asyncio.wait_for(call(self.distributed), timeout=self.timeout)
        except BackendCorrupt:
            # The backend answered; the data is bad, not the connection
            self.health.record_success()
            raise
        except asyncio.TimeoutError:
            self.health.record_failure()
            self._record(BackendId.DISTRIBUTED, operation, "timeout")
            self.logger.warning("Distributed store timed out, using local store", operation=operation, timeout=self.timeout)
            return False, None
        except Exception as exc:
            self.health.record_failure()
            self._record(BackendId.DISTRIBUTED, operation, "error")
            self.logger.warning("Distributed store failed, using local store", operation=operation, error=str(exc))
            return False, None

        self.health.record_success()
        self._record(BackendId.DISTRIBUTED, operation, "ok")
        return True, result

    async def get(self, key: str) -> Optional[bytes]:
        """Read a key; the local tier is consulted only when the distributed one is unusable."""
        ok, value = await self._distributed("get", lambda backend: backend.get(key))
        if ok:
            return value
        value = await self.local.get(key)
        self._record(BackendId.LOCAL, "get", "hit" if value is not None else "miss")
        return value

    async def write(self, key: str, value: bytes, ttl: float) -> BackendId:
        """Store a value and report which tier took it."""
        ok, _ = await self._distributed("set", lambda backend: backend.set(key, value, ttl))
        if ok:
            # A stale fallback copy must not shadow the fresh value
            await self.local.delete(key)
            return BackendId.DISTRIBUTED
        await self.local.set(key, value, ttl)
        self._record(BackendId.LOCAL, "set", "ok")
        return BackendId.LOCAL

    async def set(self, key: str, value: bytes, ttl: float) -> None:
        await self.write(key, value, ttl)

    async def increment(self, key: str, ttl: float) -> int:
        ok, value = await self._distributed("increment", lambda backend: backend.increment(key, ttl))
        if ok:
            return value
        return await self.local.increment(key, ttl)

    async def delete(self, key: str) -> bool:
        ok, deleted = await self._distributed("delete", lambda backend: backend.delete(key))
        local_deleted = await self.local.delete(key)
        return bool(ok and deleted) or local_deleted

    async def compare_and_set(self, key: str, expected: Optional[bytes], value: bytes, ttl: float) -> bool:
        ok, swapped = await self._distributed(
            "compare_and_set",
            lambda backend: backend.compare_and_set(key, expected, value, ttl),
        )
        if ok:
            return swapped
        return await self.local.compare_and_set(key, expected, value, ttl)

    async def ping(self) -> bool:
        ok, alive = await self._distributed("ping", lambda backend: backend.ping())
        return bool(ok and alive)

    async def close(self) -> None:
        if self.distributed is not None:
            await self.distributed.close()
        await self.local.close()

    async def stats(self) -> Dict[str, Any]:
        return {
            "health": self.health.get_state(),
            "local": await self.local.stats(),
            "distributed": await self.distributed.stats() if self.distributed is not None else None,
        }
