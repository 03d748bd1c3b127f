"""
Unit tests for gate component wiring.
"""

import asyncio

import pytest

from service_gate.app.caching.tiered_cache import CachedResponse
from service_gate.app.context import GateContext
from service_gate.app.ratelimit.fixed_window import GENERAL_POLICY
from shared.metrics import MetricsCollector
from shared.test_helpers import ManualClock, TestEnvironment


def build_context(clock, **overrides) -> GateContext:
    return GateContext.build(
        TestEnvironment.get_test_config(**overrides),
        clock=clock,
        metrics=MetricsCollector("test"),
    )


class TestGateContext:
    """Test cases for GateContext."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.mark.asyncio
    async def test_long_throttle_window_outlives_local_age_cap(self, clock):
        ctx = build_context(clock, general_limit=5, general_window_seconds=86400, local_max_age_seconds=3600)
        policy = ctx.throttle.policy(GENERAL_POLICY)

        for _ in range(5):
            assert (await ctx.throttle.allow("c", policy)).allowed is True
        clock.advance(3601)

        decision = await ctx.throttle.allow("c", policy)
        assert decision.allowed is False
        assert decision.count == 6

    def test_state_tier_covers_lockout_and_windows(self, clock):
        ctx = build_context(
            clock,
            local_max_age_seconds=60,
            strict_window_seconds=900,
            general_window_seconds=43200,
            lockout_duration_seconds=7200,
        )
        assert ctx.state_store.local.max_age_seconds == 43200
        assert ctx.store.local.max_age_seconds == 60
        assert ctx.state_store.health is ctx.store.health

    @pytest.mark.asyncio
    async def test_cached_responses_cannot_evict_lockout_state(self, clock):
        ctx = build_context(clock, local_max_entries=3)
        for _ in range(5):
            await ctx.lockout.record_failure("alice")

        for page in range(10):
            await ctx.cache.put(f"page:{page}", CachedResponse.json({"page": page}), 60)

        assert len(ctx.store.local) == 3
        assert await ctx.lockout.is_locked("alice") is True

    @pytest.mark.asyncio
    async def test_purge_local_drops_expired_entries(self, clock):
        ctx = build_context(clock)
        await ctx.cache.put("k", CachedResponse.json({"v": 1}), 5)
        await ctx.state_store.set("rate_limit:general:c", b"{}", 5)
        await ctx.state_store.set("lockout:alice", b"{}", 500)
        clock.advance(10)

        assert ctx.purge_local() == 2
        assert len(ctx.store.local) == 0
        assert len(ctx.state_store.local) == 1

    @pytest.mark.asyncio
    async def test_startup_schedules_purge_until_close(self, clock):
        ctx = build_context(clock, local_purge_interval_seconds=0.01)
        await ctx.startup()
        task = ctx.purge_task
        assert task is not None

        await ctx.state_store.set("rate_limit:general:c", b"{}", 5)
        clock.advance(10)
        await asyncio.sleep(0.1)
        assert len(ctx.state_store.local) == 0

        await ctx.close()
        assert task.done()
        assert ctx.purge_task is None
