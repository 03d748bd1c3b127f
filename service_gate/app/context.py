"""
Process-wide wiring of the gate components.

``GateContext`` is built once at startup and handed to everything that
serves requests; nothing here is a module-level singleton.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Optional

from shared.circuit_breaker import BackendHealth, BackendId
from shared.clock import Clock
from shared.config import GateConfig
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from .caching.keys import KeyCodec
from .caching.tiered_cache import TieredCache
from .caching.tiered_store import TieredStore
from .gate import ResilientGate
from .lockout.tracker import LockoutTracker
from .ratelimit.fixed_window import GENERAL_POLICY, STRICT_POLICY, FixedWindowThrottle, ThrottlePolicy
from .storage.base import StorageBackend
from .storage.memory import MemoryBackend
from .storage.redis_backend import RedisBackend

logger = get_logger("gate.context")


@dataclass
class GateContext:
    config: GateConfig
    clock: Clock
    metrics: MetricsCollector
    store: TieredStore
    state_store: TieredStore
    cache: TieredCache
    throttle: FixedWindowThrottle
    lockout: LockoutTracker
    gate: ResilientGate
    purge_task: Optional["asyncio.Task[None]"] = field(default=None, repr=False)

    @classmethod
    def build(cls,
              config: GateConfig,
              *,
              clock: Optional[Clock] = None,
              metrics: Optional[MetricsCollector] = None,
              distributed: Optional[StorageBackend] = None,
              local: Optional[StorageBackend] = None) -> "GateContext":
        """Construct every component from configuration.

        ``distributed`` and ``local`` override the backends the config would
        create; tests pass in-memory fakes here. ``local`` only backs the
        response cache. Throttle windows and lockout state get a local tier
        of their own, so a burst of cached responses cannot evict them.
        """
        clock = clock or Clock()
        metrics = metrics or MetricsCollector("gate")

        if distributed is None and config.redis_enabled:
            distributed = RedisBackend(config.redis_url, timeout=config.backend_timeout_seconds)
        if local is None:
            local = MemoryBackend(
                max_entries=config.local_max_entries,
                max_age_seconds=config.local_max_age_seconds,
                clock=clock,
            )
        # State must outlive the longest window or lock it records
        state_local = MemoryBackend(
            max_entries=config.local_max_entries,
            max_age_seconds=max(
                config.local_max_age_seconds,
                config.lockout_duration_seconds,
                config.general_window_seconds,
                config.strict_window_seconds,
            ),
            clock=clock,
        )

        # Both tiers talk to the same distributed backend, so they share its breaker
        health = BackendHealth(
            backend_id=BackendId.DISTRIBUTED,
            failure_threshold=config.circuit_failure_threshold,
            cooldown_seconds=config.circuit_cooldown_seconds,
            clock=clock,
        )
        timeout = config.backend_timeout_seconds
        store = TieredStore(local=local, distributed=distributed, health=health, timeout=timeout, metrics=metrics)
        state_store = TieredStore(
            local=state_local,
            distributed=distributed,
            health=health,
            timeout=timeout,
            metrics=metrics,
        )

        cache = TieredCache(store, clock=clock, metrics=metrics)
        throttle = FixedWindowThrottle(
            state_store,
            policies=[
                ThrottlePolicy(GENERAL_POLICY, config.general_limit, config.general_window_seconds),
                ThrottlePolicy(STRICT_POLICY, config.strict_limit, config.strict_window_seconds),
            ],
            clock=clock,
            strict_path_prefixes=config.strict_path_prefixes,
            metrics=metrics,
        )
        lockout = LockoutTracker(
            state_store,
            clock=clock,
            max_attempts=config.lockout_max_attempts,
            lockout_seconds=config.lockout_duration_seconds,
            metrics=metrics,
        )
        gate = ResilientGate(
            cache,
            throttle,
            lockout=lockout,
            key_codec=KeyCodec(),
            default_ttl=config.cache_ttl_default,
            route_ttls=config.cache_ttl_by_route_class,
            metrics=metrics,
        )

        logger.info(
            "Gate context built",
            distributed=distributed is not None,
            local_max_entries=config.local_max_entries,
            circuit_threshold=config.circuit_failure_threshold,
        )
        return cls(
            config=config,
            clock=clock,
            metrics=metrics,
            store=store,
            state_store=state_store,
            cache=cache,
            throttle=throttle,
            lockout=lockout,
            gate=gate,
        )

    def purge_local(self) -> int:
        """Drop expired entries from both local tiers; returns how many went."""
        purged = 0
        for backend in (self.store.local, self.state_store.local):
            if isinstance(backend, MemoryBackend):
                purged += backend.purge_expired()
        return purged

    async def _purge_periodically(self) -> None:
        interval = self.config.local_purge_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                self.purge_local()
            except Exception as exc:
                logger.error("Error in local purge loop", error=str(exc))

    async def startup(self) -> None:
        self.purge_task = asyncio.create_task(self._purge_periodically())

        if self.store.distributed is None:
            logger.info("Distributed store disabled, using local store only")
            return
        if await self.store.ping():
            logger.info("Distributed store reachable")
        else:
            logger.warning("Distributed store unreachable at startup, serving from local store")

    async def close(self) -> None:
        if self.purge_task is not None:
            self.purge_task.cancel()
            try:
                await self.purge_task
            except asyncio.CancelledError:
                pass
            self.purge_task = None
        await self.store.close()
        await self.state_store.close()
        logger.info("Gate context closed")
