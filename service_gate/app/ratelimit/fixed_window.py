"""
Fixed-window rate limiter for the gate.
"""

import json
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple, TYPE_CHECKING

from fastapi import Request

from shared.clock import Clock
from shared.errors import BackendCorrupt, BackendUnavailable
from shared.logging import get_logger

from ..storage.base import StorageBackend

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector

GENERAL_POLICY = "general"
STRICT_POLICY = "strict"


@dataclass(frozen=True)
class ThrottlePolicy:
    """A named budget: ``limit`` requests per ``window_seconds``."""

    name: str
    limit: int
    window_seconds: float


@dataclass
class ThrottleWindow:
    """Counter state for one (policy, client) pair."""

    client_key: str
    window_start: float
    count: int
    limit: int
    window_size: float

    def encode(self) -> bytes:
        return json.dumps({
            "client_key": self.client_key,
            "window_start": self.window_start,
            "count": self.count,
            "limit": self.limit,
            "window_size": self.window_size,
        }).encode("utf-8")

    @classmethod
    def decode(cls, key: str, raw: bytes) -> "ThrottleWindow":
        try:
            payload = json.loads(raw)
            return cls(
                client_key=str(payload["client_key"]),
                window_start=float(payload["window_start"]),
                count=int(payload["count"]),
                limit=int(payload["limit"]),
                window_size=float(payload["window_size"]),
            )
        except (ValueError, TypeError, KeyError) as exc:
            raise BackendCorrupt(key, f"Undecodable throttle window: {exc}")


@dataclass
class ThrottleDecision:
    """Result of a throttle check."""

    allowed: bool
    policy: str
    limit: int
    count: int
    retry_after: float = 0.0
    reset_in_seconds: float = 0.0
    error: Optional[str] = None

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    def headers(self) -> Dict[str, str]:
        """Standard rate limit headers for this decision."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(round(self.reset_in_seconds))),
        }
        if not self.allowed:
            headers["Retry-After"] = str(max(1, int(round(self.retry_after))))
        return headers


def advance_window(window: Optional[ThrottleWindow], client_key: str, policy: ThrottlePolicy,
                   now: float) -> Tuple[ThrottleWindow, ThrottleDecision]:
    """Count one request against ``window`` and decide on it."""
    if window is None or now - window.window_start >= policy.window_seconds:
        window = ThrottleWindow(
            client_key=client_key,
            window_start=now,
            count=0,
            limit=policy.limit,
            window_size=policy.window_seconds,
        )

    window.count += 1
    reset_in = max(0.0, window.window_start + policy.window_seconds - now)
    allowed = window.count <= policy.limit
    decision = ThrottleDecision(
        allowed=allowed,
        policy=policy.name,
        limit=policy.limit,
        count=window.count,
        retry_after=0.0 if allowed else reset_in,
        reset_in_seconds=reset_in,
    )
    return window, decision


class FixedWindowThrottle:
    """Fixed-window request counter per client identity.

    Each policy keeps its own windows, keyed by ``(policy, client)``, so a
    client's budget under one policy never affects another. When the store
    holding window state is unreachable the throttle fails open.
    """

    def __init__(self,
                 store: StorageBackend,
                 policies: Iterable[ThrottlePolicy],
                 clock: Optional[Clock] = None,
                 strict_path_prefixes: Iterable[str] = ("/api/v1/auth/",),
                 metrics: Optional["MetricsCollector"] = None,
                 max_cas_attempts: int = 8):
        self.store = store
        self.policies: Dict[str, ThrottlePolicy] = {policy.name: policy for policy in policies}
        self.clock = clock or Clock()
        self.strict_path_prefixes = tuple(strict_path_prefixes)
        self.metrics = metrics
        self.max_cas_attempts = max_cas_attempts
        self.logger = get_logger("gate.rate_limiter")

    def _make_key(self, client_key: str, policy_name: str) -> str:
        """Generate rate limit key."""
        return f"rate_limit:{policy_name}:{client_key}"

    def policy(self, name: str) -> ThrottlePolicy:
        try:
            return self.policies[name]
        except KeyError:
            raise ValueError(f"Unknown throttle policy: {name}")

    def policy_for_path(self, path: str) -> ThrottlePolicy:
        """Strict policy for sensitive paths, general for everything else."""
        if STRICT_POLICY in self.policies and path.startswith(self.strict_path_prefixes):
            return self.policies[STRICT_POLICY]
        return self.policies[GENERAL_POLICY]

    async def _read_window(self, key: str) -> Tuple[Optional[bytes], Optional[ThrottleWindow]]:
        try:
            raw = await self.store.get(key)
        except BackendCorrupt as exc:
            # Unreadable at the store level; start over with an empty window
            self.logger.warning("Purging corrupt throttle window", key=key, error=exc.message)
            try:
                await self.store.delete(key)
            except BackendUnavailable as delete_exc:
                self.logger.error("Failed to purge throttle window", key=key, error=delete_exc.message)
            return None, None
        if raw is None:
            return None, None
        try:
            return raw, ThrottleWindow.decode(key, raw)
        except BackendCorrupt as exc:
            # Overwritten by the next compare-and-set
            self.logger.warning("Discarding corrupt throttle window", key=key, error=exc.message)
            return raw, None

    def _fail_open(self, policy: ThrottlePolicy, client_key: str, error: str) -> ThrottleDecision:
        self.logger.error(
            "Rate limit state unavailable, allowing request",
            client_id=client_key,
            policy=policy.name,
            error=error,
        )
        if self.metrics:
            self.metrics.increment_counter("throttle_fail_open_total", policy=policy.name)
        return ThrottleDecision(
            allowed=True,
            policy=policy.name,
            limit=policy.limit,
            count=0,
            reset_in_seconds=policy.window_seconds,
            error=error,
        )

    async def allow(self, client_key: str, policy: ThrottlePolicy) -> ThrottleDecision:
        """Count a request from ``client_key`` and decide whether it may proceed."""
        key = self._make_key(client_key, policy.name)
        decision: Optional[ThrottleDecision] = None

        try:
            for _ in range(self.max_cas_attempts):
                raw, window = await self._read_window(key)
                now = self.clock.now()
                window, decision = advance_window(window, client_key, policy, now)
                ttl = window.window_start + policy.window_seconds - now
                if await self.store.compare_and_set(key, raw, window.encode(), ttl):
                    break
            else:
                # Lost every race; counting is best-effort here
                self.logger.warning("Throttle window contention", client_id=client_key, policy=policy.name)
        except (BackendUnavailable, BackendCorrupt) as exc:
            return self._fail_open(policy, client_key, exc.message)

        if not decision.allowed:
            self.logger.warning(
                "Rate limit exceeded",
                client_id=client_key,
                policy=policy.name,
                current_count=decision.count,
                limit=policy.limit,
                retry_after=decision.retry_after,
            )
        return decision

    async def status(self, client_key: str, policy: ThrottlePolicy) -> ThrottleDecision:
        """Current budget for a client without counting a request."""
        key = self._make_key(client_key, policy.name)
        try:
            _, window = await self._read_window(key)
        except (BackendUnavailable, BackendCorrupt) as exc:
            return self._fail_open(policy, client_key, exc.message)

        now = self.clock.now()
        if window is None or now - window.window_start >= policy.window_seconds:
            return ThrottleDecision(
                allowed=True,
                policy=policy.name,
                limit=policy.limit,
                count=0,
                reset_in_seconds=policy.window_seconds,
            )

        reset_in = window.window_start + policy.window_seconds - now
        allowed = window.count < policy.limit
        return ThrottleDecision(
            allowed=allowed,
            policy=policy.name,
            limit=policy.limit,
            count=window.count,
            retry_after=0.0 if allowed else reset_in,
            reset_in_seconds=reset_in,
        )

    async def reset(self, client_key: str, policy: ThrottlePolicy) -> bool:
        """Reset rate limit for client and policy."""
        try:
            await self.store.delete(self._make_key(client_key, policy.name))
        except BackendUnavailable as exc:
            self.logger.error("Rate limit reset error", client_id=client_key, error=exc.message)
            return False

        self.logger.info("Rate limit reset", client_id=client_key, policy=policy.name)
        return True


def client_identity(request: Request) -> str:
    """Extract client ID from request."""
    user_info = getattr(request.state, "user_info", None)
    if isinstance(user_info, dict) and user_info.get("user_id"):
        return f"user:{user_info['user_id']}"

    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return request.client.host if request.client else "unknown"
