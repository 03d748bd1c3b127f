"""
Redis-backed distributed store.
"""

import asyncio
import math
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError

from shared.circuit_breaker import BackendId
from shared.errors import BackendCorrupt, BackendUnavailable
from shared.logging import get_logger

from .base import StorageBackend

T = TypeVar("T")

# INCR and arm the expiry only for a freshly created counter.
INCREMENT_SCRIPT = """
local value = redis.call('INCR', KEYS[1])
if value == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
return value
"""

# ARGV: has_expected ('1'/'0'), expected, new value, ttl in ms
COMPARE_AND_SET_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if ARGV[1] == '1' then
  if current ~= ARGV[2] then
    return 0
  end
elseif current then
  return 0
end
redis.call('SET', KEYS[1], ARGV[3], 'PX', ARGV[4])
return 1
"""


def _ttl_ms(ttl: float) -> int:
    return max(1, int(math.ceil(ttl * 1000)))


class RedisBackend(StorageBackend):
    """Distributed store on Redis.

    Every call is bounded by ``timeout`` seconds; timeouts and connection or
    protocol errors are raised as ``BackendUnavailable``.
    """

    backend_id = BackendId.DISTRIBUTED

    def __init__(self, redis_url: str, timeout: float = 0.25):
        self.redis_url = redis_url
        self.timeout = timeout
        self.logger = get_logger("gate.storage.redis")
        self._redis: Optional[redis.Redis] = None
        self._increment_script = None
        self._cas_script = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                socket_timeout=self.timeout,
                socket_connect_timeout=self.timeout,
            )
            self._increment_script = self._redis.register_script(INCREMENT_SCRIPT)
            self._cas_script = self._redis.register_script(COMPARE_AND_SET_SCRIPT)
        return self._redis

    async def _call(self, operation: str, key: str, func: Callable[[redis.Redis], Awaitable[T]]) -> T:
        try:
            client = await self._get_redis()
            return await asyncio.wait_for(func(client), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise BackendUnavailable("redis", f"{operation} timed out after {self.timeout}s")
        except ResponseError as exc:
            # Wrong type or non-integer counter: the stored value is at fault
            raise BackendCorrupt(key, str(exc))
        except (RedisError, OSError) as exc:
            raise BackendUnavailable("redis", f"{operation} failed: {exc}")

    async def get(self, key: str) -> Optional[bytes]:
        value = await self._call("get", key, lambda client: client.get(key))
        if isinstance(value, str):
            value = value.encode("utf-8")
        return value

    async def set(self, key: str, value: bytes, ttl: float) -> None:
        if ttl <= 0:
            await self.delete(key)
            return
        await self._call("set", key, lambda client: client.set(key, value, px=_ttl_ms(ttl)))

    async def increment(self, key: str, ttl: float) -> int:
        async def _increment(client: redis.Redis):
            return await self._increment_script(keys=[key], args=[_ttl_ms(ttl)], client=client)

        result = await self._call("increment", key, _increment)
        return int(result)

    async def delete(self, key: str) -> bool:
        deleted = await self._call("delete", key, lambda client: client.delete(key))
        return bool(deleted)

    async def compare_and_set(self, key: str, expected: Optional[bytes], value: bytes, ttl: float) -> bool:
        args = [
            "1" if expected is not None else "0",
            expected if expected is not None else b"",
            value,
            _ttl_ms(ttl),
        ]

        async def _cas(client: redis.Redis):
            return await self._cas_script(keys=[key], args=args, client=client)

        result = await self._call("compare_and_set", key, _cas)
        return int(result) == 1

    async def ping(self) -> bool:
        return bool(await self._call("ping", "", lambda client: client.ping()))

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis connections closed")

    async def stats(self) -> Dict[str, Any]:
        return {
            "backend": self.backend_id.value,
            "url": self.redis_url,
            "timeout_seconds": self.timeout,
            "connected": self._redis is not None,
        }
