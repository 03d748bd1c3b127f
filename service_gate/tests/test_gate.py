"""
Unit tests for the gate composition.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from service_gate.app.caching.tiered_cache import CachedResponse, CacheWriteStatus, TieredCache
from service_gate.app.caching.tiered_store import TieredStore
from service_gate.app.gate import GateDecision, GateOutcome, ResilientGate
from service_gate.app.lockout.tracker import LockoutTracker
from service_gate.app.ratelimit.fixed_window import STRICT_POLICY, FixedWindowThrottle, ThrottlePolicy
from service_gate.app.storage.memory import MemoryBackend
from shared.errors import AccountLockedError, RateLimitError
from shared.metrics import MetricsCollector
from shared.test_helpers import FlakyBackend, ManualClock

POLICY = ThrottlePolicy(STRICT_POLICY, 2, 60)


class TestResilientGate:
    """Test cases for ResilientGate."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("test")

    @pytest.fixture
    def remote(self, clock):
        return FlakyBackend(MemoryBackend(clock=clock))

    @pytest.fixture
    def store(self, clock, remote, metrics):
        return TieredStore(local=MemoryBackend(clock=clock), distributed=remote, timeout=0.05, metrics=metrics)

    @pytest.fixture
    def lockout(self, store, clock):
        return LockoutTracker(store, clock=clock, max_attempts=2, lockout_seconds=600)

    @pytest.fixture
    def gate(self, store, clock, lockout, metrics):
        """Create ResilientGate instance."""
        return ResilientGate(
            TieredCache(store, clock=clock),
            FixedWindowThrottle(store, [POLICY], clock=clock),
            lockout=lockout,
            default_ttl=30,
            route_ttls={"volatile": 0},
            metrics=metrics,
        )

    @pytest.mark.asyncio
    async def test_miss_computes_and_caches(self, gate, metrics):
        compute = MagicMock(return_value=CachedResponse.json({"n": 1}))

        decision = await gate.handle("k", compute, client_key="c", policy=POLICY)
        assert decision.outcome == GateOutcome.MISS_COMPUTED
        assert decision.cache_status == CacheWriteStatus.STORED
        compute.assert_called_once_with("k")

        decision = await gate.handle("k", compute, client_key="c", policy=POLICY)
        assert decision.outcome == GateOutcome.HIT
        assert decision.response == CachedResponse.json({"n": 1})
        compute.assert_called_once()
        assert metrics.sample("gate_decisions_total", outcome="hit") == 1

    @pytest.mark.asyncio
    async def test_async_compute(self, gate):
        compute = AsyncMock(return_value=CachedResponse.json({"n": 1}))
        decision = await gate.handle("k", compute, client_key="c", policy=POLICY)
        assert decision.response == CachedResponse.json({"n": 1})
        compute.assert_awaited_once_with("k")

    @pytest.mark.asyncio
    async def test_hits_do_not_consume_budget(self, gate):
        compute = MagicMock(return_value=CachedResponse.json({"n": 1}))
        await gate.handle("k", compute, client_key="c", policy=POLICY)
        for _ in range(5):
            decision = await gate.handle("k", compute, client_key="c", policy=POLICY)
            assert decision.outcome == GateOutcome.HIT

        decision = await gate.handle("other", compute, client_key="c", policy=POLICY)
        assert decision.outcome == GateOutcome.MISS_COMPUTED

    @pytest.mark.asyncio
    async def test_rate_limited_before_compute(self, gate):
        compute = MagicMock(return_value=CachedResponse.json({"n": 1}))
        await gate.handle("a", compute, client_key="c", policy=POLICY)
        await gate.handle("b", compute, client_key="c", policy=POLICY)

        decision = await gate.handle("c", compute, client_key="c", policy=POLICY)
        assert decision.outcome == GateOutcome.RATE_LIMITED
        assert decision.retry_after == pytest.approx(60)
        assert compute.call_count == 2

        with pytest.raises(RateLimitError):
            decision.raise_for_rejection()

    @pytest.mark.asyncio
    async def test_locked_account(self, gate, lockout):
        await lockout.record_failure("alice")
        await lockout.record_failure("alice")
        compute = MagicMock()

        decision = await gate.handle("k", compute, client_key="c", policy=POLICY, account_key="alice")
        assert decision.outcome == GateOutcome.LOCKED
        assert decision.retry_after == pytest.approx(600)
        compute.assert_not_called()

        with pytest.raises(AccountLockedError) as exc_info:
            decision.raise_for_rejection("alice")
        assert exc_info.value.to_response().model_dump()["code"] == "AUTHENTICATION_ERROR"

    @pytest.mark.asyncio
    async def test_error_responses_are_not_cached(self, gate):
        compute = MagicMock(return_value=CachedResponse.json({"error": "nope"}, status_code=404))
        decision = await gate.handle("k", compute, client_key="c", policy=POLICY)
        assert decision.cache_status == CacheWriteStatus.SKIPPED
        decision = await gate.handle("k", compute, client_key="c", policy=POLICY)
        assert decision.outcome == GateOutcome.MISS_COMPUTED

    @pytest.mark.asyncio
    async def test_route_class_ttl(self, gate):
        assert gate.ttl_for("volatile") == 0
        assert gate.ttl_for("anything") == 30
        compute = MagicMock(return_value=CachedResponse.json({"n": 1}))
        decision = await gate.handle("k", compute, client_key="c", policy=POLICY, route_class="volatile")
        assert decision.cache_status == CacheWriteStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_distributed_outage_is_transparent(self, gate, remote):
        remote.failing = True
        compute = MagicMock(return_value=CachedResponse.json({"n": 1}))

        decision = await gate.handle("k", compute, client_key="c", policy=POLICY)
        assert decision.outcome == GateOutcome.MISS_COMPUTED
        assert decision.cache_status == CacheWriteStatus.DEGRADED

        decision = await gate.handle("k", compute, client_key="c", policy=POLICY)
        assert decision.outcome == GateOutcome.HIT
        compute.assert_called_once()

    def test_allowed_decision_does_not_raise(self):
        GateDecision(outcome=GateOutcome.HIT, key="k").raise_for_rejection()
