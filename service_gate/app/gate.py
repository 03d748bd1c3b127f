"""
Composition of cache, throttle and lockout around a handler.

Order is fixed: cache lookup, then throttle, then (for account-scoped work)
lockout, then the handler. Cache hits are served before the throttle runs,
so they never count against a client's budget.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Union, TYPE_CHECKING

from fastapi import Request, Response

from shared.errors import AccountLockedError, RateLimitError
from shared.logging import get_logger, set_client_context

from .caching.keys import KeyCodec
from .caching.tiered_cache import CachedResponse, CacheWriteStatus, TieredCache
from .lockout.tracker import LockoutTracker
from .ratelimit.fixed_window import FixedWindowThrottle, ThrottleDecision, ThrottlePolicy, client_identity

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector

Compute = Callable[[str], Union[CachedResponse, Awaitable[CachedResponse]]]


class GateOutcome(Enum):
    """Per-request decision exposed for logging and metrics."""
    HIT = "hit"
    MISS_COMPUTED = "miss_computed"
    RATE_LIMITED = "rate_limited"
    LOCKED = "locked"


@dataclass
class GateDecision:
    outcome: GateOutcome
    key: str
    response: Optional[CachedResponse] = None
    throttle: Optional[ThrottleDecision] = None
    retry_after: Optional[float] = None
    locked_until: Optional[float] = None
    cache_status: Optional[CacheWriteStatus] = None

    def raise_for_rejection(self, account_key: str = "") -> None:
        """Turn a rejection into the matching gate error."""
        if self.outcome == GateOutcome.RATE_LIMITED:
            raise RateLimitError(self.retry_after or 0.0, details={"policy": self.throttle.policy})
        if self.outcome == GateOutcome.LOCKED:
            raise AccountLockedError(account_key, self.locked_until, self.retry_after or 0.0)


class ResilientGate:
    """Wraps a unit of work with caching, throttling and lockout checks."""

    def __init__(self,
                 cache: TieredCache,
                 throttle: FixedWindowThrottle,
                 lockout: Optional[LockoutTracker] = None,
                 key_codec: Optional[KeyCodec] = None,
                 default_ttl: float = 300,
                 route_ttls: Optional[Dict[str, float]] = None,
                 metrics: Optional["MetricsCollector"] = None):
        self.cache = cache
        self.throttle = throttle
        self.lockout = lockout
        self.key_codec = key_codec or KeyCodec()
        self.default_ttl = default_ttl
        self.route_ttls = dict(route_ttls or {})
        self.metrics = metrics
        self.logger = get_logger("gate.gate")

    def ttl_for(self, route_class: str) -> float:
        return self.route_ttls.get(route_class, self.default_ttl)

    def _decide(self, decision: GateDecision, **log_fields) -> GateDecision:
        if self.metrics:
            self.metrics.increment_counter("gate_decisions_total", outcome=decision.outcome.value)
        self.logger.info("Gate decision", outcome=decision.outcome.value, key=decision.key, **log_fields)
        return decision

    async def handle(self,
                     key: str,
                     compute: Compute,
                     *,
                     client_key: str,
                     policy: ThrottlePolicy,
                     route_class: str = "default",
                     account_key: Optional[str] = None) -> GateDecision:
        """Serve ``key`` from cache or run ``compute`` under the client's budget."""
        cached = await self.cache.get(key)
        if cached is not None:
            return self._decide(GateDecision(outcome=GateOutcome.HIT, key=key, response=cached))

        throttle_decision = await self.throttle.allow(client_key, policy)
        if not throttle_decision.allowed:
            return self._decide(
                GateDecision(
                    outcome=GateOutcome.RATE_LIMITED,
                    key=key,
                    throttle=throttle_decision,
                    retry_after=throttle_decision.retry_after,
                ),
                client_id=client_key,
                policy=policy.name,
            )

        if account_key is not None and self.lockout is not None:
            try:
                await self.lockout.check(account_key)
            except AccountLockedError as exc:
                return self._decide(
                    GateDecision(
                        outcome=GateOutcome.LOCKED,
                        key=key,
                        throttle=throttle_decision,
                        retry_after=exc.retry_after,
                        locked_until=exc.locked_until,
                    ),
                    account=account_key,
                )

        result = compute(key)
        if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
            result = await result

        # Error responses are served but never cached
        ttl = self.ttl_for(route_class) if result.status_code < 400 else 0
        cache_status = await self.cache.put(key, result, ttl)
        return self._decide(
            GateDecision(
                outcome=GateOutcome.MISS_COMPUTED,
                key=key,
                response=result,
                throttle=throttle_decision,
                cache_status=cache_status,
            ),
            cache_status=cache_status.value,
        )


def gated(route_class: str = "default", policy_name: Optional[str] = None):
    """Decorator turning ``async def handler(request) -> CachedResponse`` into a gated endpoint.

    The gate is looked up on ``request.app.state.gate_context`` at request
    time. The policy defaults to the one matching the request path.
    """

    def decorator(handler: Callable[[Request], Awaitable[CachedResponse]]):
        async def endpoint(request: Request) -> Response:
            gate: ResilientGate = request.app.state.gate_context.gate
            key = gate.key_codec.for_request(
                request.method,
                request.url.path,
                request.url.query,
                route_class=route_class,
            )
            client_key = client_identity(request)
            set_client_context(client_id=client_key)
            policy = (
                gate.throttle.policy(policy_name)
                if policy_name
                else gate.throttle.policy_for_path(request.url.path)
            )

            decision = await gate.handle(
                key,
                lambda _key: handler(request),
                client_key=client_key,
                policy=policy,
                route_class=route_class,
            )
            decision.raise_for_rejection()

            headers = {"X-Cache": "HIT" if decision.outcome == GateOutcome.HIT else "MISS"}
            if decision.throttle is not None:
                headers.update(decision.throttle.headers())
            return Response(
                content=decision.response.body,
                status_code=decision.response.status_code,
                media_type=decision.response.content_type,
                headers=headers,
            )

        # Not functools.wraps: FastAPI must see this signature, not the handler's
        endpoint.__name__ = handler.__name__
        endpoint.__doc__ = handler.__doc__
        return endpoint

    return decorator
