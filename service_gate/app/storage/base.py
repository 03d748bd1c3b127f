"""
Storage backend interface shared by the distributed and local stores.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from shared.circuit_breaker import BackendId


class StorageBackend(ABC):
    """Async key-value store with TTLs.

    Implementations raise ``BackendUnavailable`` when the store cannot be
    reached and ``BackendCorrupt`` when a stored value has the wrong shape.
    TTLs are in seconds.
    """

    backend_id: BackendId

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """Return the stored bytes, or None on a miss."""

    @abstractmethod
    async def set(self, key: str, value: bytes, ttl: float) -> None:
        """Store ``value`` under ``key`` for ``ttl`` seconds."""

    @abstractmethod
    async def increment(self, key: str, ttl: float) -> int:
        """Atomically add one to an integer counter.

        A counter created by this call expires after ``ttl`` seconds; an
        existing counter keeps its expiry.
        """

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove ``key``; True if something was removed."""

    @abstractmethod
    async def compare_and_set(self, key: str, expected: Optional[bytes], value: bytes, ttl: float) -> bool:
        """Atomically replace the value if it still equals ``expected``.

        ``expected=None`` means the key must be absent. Returns False when the
        stored value changed since it was read.
        """

    async def ping(self) -> bool:
        """True when reachable; raises BackendUnavailable otherwise."""
        return True

    async def close(self) -> None:
        return None

    async def stats(self) -> Dict[str, Any]:
        return {"backend": self.backend_id.value}
