"""
Storage backends for the gate.

Two concrete stores share one interface: ``RedisBackend`` (distributed) and
``MemoryBackend`` (bounded, in-process).
"""

from .base import StorageBackend
from .memory import MemoryBackend
from .redis_backend import RedisBackend

__all__ = ["StorageBackend", "MemoryBackend", "RedisBackend"]
