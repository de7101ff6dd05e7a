"""
Unit tests for the rate limiter, loop guard and kill switch.
"""

import asyncio
from datetime import timedelta

import pytest
import redis

from service_automation.app.rules.models import utcnow
from service_automation.app.safety.config_store import InMemoryConfigStore, RedisConfigStore
from service_automation.app.safety.kill_switch import KillSwitch
from service_automation.app.safety.loop_guard import LoopGuard
from service_automation.app.safety.rate_limiter import SlidingWindowRateLimiter


class TestSlidingWindowRateLimiter:
    """Test cases for SlidingWindowRateLimiter."""

    @pytest.fixture
    def rate_limiter(self, clock):
        """Create a limiter of 3 per 60s on a fake clock."""
        return SlidingWindowRateLimiter(max_executions=3, window_seconds=60.0, clock=clock)

    @pytest.mark.asyncio
    async def test_admits_up_to_limit(self, rate_limiter):
        """Test N admitted then rejected."""
        results = [await rate_limiter.try_acquire("rule-1") for _ in range(4)]
        assert results == [True, True, True, False]

    @pytest.mark.asyncio
    async def test_explicit_zero_limit(self, rate_limiter):
        """Test a limit of 0 rejects instead of using the default."""
        assert await rate_limiter.try_acquire("rule-1", limit=0) is False
        assert rate_limiter.status("rule-1", limit=0)["remaining"] == 0

    @pytest.mark.asyncio
    async def test_window_slides(self, rate_limiter, clock):
        """Test expired timestamps are pruned before counting."""
        for _ in range(3):
            await rate_limiter.try_acquire("rule-1")
        clock.advance(59)
        assert await rate_limiter.try_acquire("rule-1") is False
        clock.advance(1)
        assert await rate_limiter.try_acquire("rule-1") is True

    @pytest.mark.asyncio
    async def test_rules_are_independent(self, rate_limiter):
        """Test windows are kept per rule."""
        for _ in range(3):
            await rate_limiter.try_acquire("rule-1")
        assert await rate_limiter.try_acquire("rule-2") is True

    @pytest.mark.asyncio
    async def test_per_rule_limit_override(self, rate_limiter):
        """Test an explicit limit replaces the default."""
        results = [await rate_limiter.try_acquire("rule-1", limit=1) for _ in range(2)]
        assert results == [True, False]

    @pytest.mark.asyncio
    async def test_concurrent_acquire_never_exceeds_limit(self, rate_limiter):
        """Test concurrent callers cannot both pass the last slot."""
        results = await asyncio.gather(*(rate_limiter.try_acquire("rule-1") for _ in range(20)))
        assert results.count(True) == 3

    @pytest.mark.asyncio
    async def test_status(self, rate_limiter, clock):
        """Test window usage reporting."""
        await rate_limiter.try_acquire("rule-1")
        clock.advance(20)
        status = rate_limiter.status("rule-1")
        assert status["current_count"] == 1
        assert status["remaining"] == 2
        assert status["reset_in_seconds"] == pytest.approx(40.0)

    @pytest.mark.asyncio
    async def test_reset_and_cleanup(self, rate_limiter, clock):
        """Test reset and idle window cleanup."""
        await rate_limiter.try_acquire("rule-1")
        await rate_limiter.try_acquire("rule-2")
        rate_limiter.reset("rule-1")
        assert rate_limiter.status("rule-1")["current_count"] == 0

        clock.advance(61)
        assert rate_limiter.cleanup() == 1
        assert rate_limiter.status("rule-2")["current_count"] == 0


class TestLoopGuard:
    """Test cases for LoopGuard."""

    @pytest.fixture
    def loop_guard(self, clock):
        """Create a guard of 5 per 5s on a fake clock."""
        return LoopGuard(threshold=5, window_seconds=5.0, clock=clock)

    @pytest.mark.asyncio
    async def test_trips_above_threshold(self, loop_guard, make_rule):
        """Test the sixth execution in the window trips the rule."""
        rule = make_rule()
        checks = [await loop_guard.record_and_check(rule.id, rule) for _ in range(6)]
        assert all(c.ok for c in checks[:5])
        assert checks[5].ok is False
        assert checks[5].should_disable is True
        assert checks[5].count == 6

    @pytest.mark.asyncio
    async def test_stays_tripped(self, loop_guard, make_rule, clock):
        """Test a trip survives the window and reports disable only once."""
        rule = make_rule()
        for _ in range(6):
            await loop_guard.record_and_check(rule.id, rule)
        clock.advance(60)
        check = await loop_guard.record_and_check(rule.id, rule)
        assert check.ok is False
        assert check.should_disable is False
        assert loop_guard.tripped_rules("ws-1", "deal.closed_won") == [rule]
        assert loop_guard.tripped_rules("ws-2", "deal.closed_won") == []

    @pytest.mark.asyncio
    async def test_slow_executions_do_not_trip(self, loop_guard, clock):
        """Test executions spread beyond the window are fine."""
        for _ in range(20):
            check = await loop_guard.record_and_check("rule-1")
            assert check.ok is True
            clock.advance(1.5)

    @pytest.mark.asyncio
    async def test_concurrent_trip_reports_disable_once(self, loop_guard):
        """Test concurrent callers see should_disable exactly once."""
        checks = await asyncio.gather(*(loop_guard.record_and_check("rule-1") for _ in range(10)))
        assert sum(1 for c in checks if c.should_disable) == 1
        assert sum(1 for c in checks if c.ok) == 5

    @pytest.mark.asyncio
    async def test_observe_active_clears_after_reenable(self, loop_guard, make_rule):
        """Test a later updated_at on an active rule clears the trip."""
        rule = make_rule()
        for _ in range(6):
            await loop_guard.record_and_check(rule.id, rule)

        assert loop_guard.observe_active(rule) is False
        assert loop_guard.is_tripped(rule.id)

        rule.updated_at = utcnow() + timedelta(seconds=1)
        assert loop_guard.observe_active(rule) is True
        assert not loop_guard.is_tripped(rule.id)

    def test_running_marks_reentrancy(self, loop_guard):
        """Test the call-chain marker."""
        assert loop_guard.is_reentrant("rule-1") is False
        with loop_guard.running("rule-1"):
            assert loop_guard.is_reentrant("rule-1") is True
            assert loop_guard.is_reentrant("rule-2") is False
        assert loop_guard.is_reentrant("rule-1") is False

    @pytest.mark.asyncio
    async def test_cleanup(self, loop_guard, clock):
        """Test idle histories are dropped."""
        await loop_guard.record_and_check("rule-1")
        clock.advance(10)
        assert loop_guard.cleanup() == 1
        assert loop_guard.cleanup() == 0


class TestKillSwitch:
    """Test cases for KillSwitch."""

    @pytest.fixture
    def store(self):
        return InMemoryConfigStore()

    @pytest.fixture
    def kill_switch(self, store, clock):
        """Create KillSwitch with a 1s cache."""
        return KillSwitch(store, ttl_seconds=1.0, clock=clock)

    def test_defaults_to_enabled(self, kill_switch):
        """Test everything is enabled without flags."""
        assert kill_switch.is_engine_enabled() is True
        assert kill_switch.is_rule_enabled("rule-1", "ws-1") is True

    def test_default_disabled(self, store):
        """Test the configured default applies without flags."""
        assert KillSwitch(store, default_enabled=False).is_engine_enabled() is False

    def test_layering(self, kill_switch):
        """Test rule overrides beat workspace overrides beat the global flag."""
        kill_switch.set_engine_enabled(False)
        assert kill_switch.is_rule_enabled("rule-1", "ws-1") is False

        kill_switch.set_workspace_enabled("ws-1", True)
        assert kill_switch.is_rule_enabled("rule-1", "ws-1") is True
        assert kill_switch.is_rule_enabled("rule-2", "ws-2") is False

        kill_switch.set_rule_enabled("rule-1", False)
        assert kill_switch.is_rule_enabled("rule-1", "ws-1") is False

        kill_switch.set_rule_enabled("rule-1", None)
        assert kill_switch.is_rule_enabled("rule-1", "ws-1") is True

    def test_external_changes_seen_after_ttl(self, kill_switch, store, clock):
        """Test reads are cached for the TTL only."""
        assert kill_switch.is_engine_enabled() is True
        store.set_flag("automation.engine.enabled", False)
        assert kill_switch.is_engine_enabled() is True
        clock.advance(1.0)
        assert kill_switch.is_engine_enabled() is False


class FakeRedis:
    """Async Redis double over a dict."""

    def __init__(self, data=None):
        self.data = dict(data or {})
        self.fail = False
        self.closed = False

    def _check(self):
        if self.fail:
            raise redis.ConnectionError("down")

    async def set(self, key, value):
        self._check()
        self.data[key] = value

    async def delete(self, key):
        self._check()
        self.data.pop(key, None)

    async def mget(self, keys):
        self._check()
        return [self.data.get(key) for key in keys]

    async def scan_iter(self, match="*"):
        self._check()
        prefix = match.rstrip("*")
        for key in list(self.data):
            if key.startswith(prefix):
                yield key

    async def close(self):
        self.closed = True


class TestRedisConfigStore:
    """Test cases for RedisConfigStore."""

    ENGINE_KEY = "automation:flags:automation.engine.enabled"
    RULE_KEY = "automation:flags:automation.rule.r1.enabled"

    @pytest.fixture
    def client(self):
        return FakeRedis()

    @pytest.fixture
    def store(self, client):
        return RedisConfigStore("redis://localhost:6379/0", client=client, refresh_interval=0.01)

    @pytest.mark.asyncio
    async def test_reads_come_from_snapshot(self, store, client):
        """Test flags are served from the last refresh."""
        client.data[self.ENGINE_KEY] = "0"
        assert store.get_flag("automation.engine.enabled") is None

        assert await store.refresh() is True
        assert store.get_flag("automation.engine.enabled") is False

        client.data[self.ENGINE_KEY] = b"1"
        await store.refresh()
        assert store.get_flag("automation.engine.enabled") is True

    @pytest.mark.asyncio
    async def test_set_flag_applies_locally_then_pushes(self, store, client):
        """Test writes take effect at once and reach Redis on refresh."""
        store.set_flag("automation.rule.r1.enabled", False)
        assert store.get_flag("automation.rule.r1.enabled") is False
        assert client.data == {}

        await store.refresh()
        assert client.data == {self.RULE_KEY: "0"}

        store.set_flag("automation.rule.r1.enabled", None)
        assert store.get_flag("automation.rule.r1.enabled") is None
        await store.refresh()
        assert client.data == {}

    @pytest.mark.asyncio
    async def test_unreachable_redis_keeps_state(self, store, client):
        """Test a failed refresh keeps the snapshot and retries unpushed writes."""
        client.data[self.ENGINE_KEY] = "0"
        await store.refresh()

        client.fail = True
        store.set_flag("automation.rule.r1.enabled", True)
        assert await store.refresh() is False
        assert store.get_flag("automation.engine.enabled") is False
        assert store.get_flag("automation.rule.r1.enabled") is True

        client.fail = False
        assert await store.refresh() is True
        assert client.data[self.RULE_KEY] == "1"

    @pytest.mark.asyncio
    async def test_fallback_for_unknown_keys(self, client):
        """Test keys absent from Redis are answered by the fallback."""
        fallback = InMemoryConfigStore({"automation.engine.enabled": False})
        store = RedisConfigStore("redis://localhost:6379/0", client=client, fallback=fallback)
        await store.refresh()
        assert store.get_flag("automation.engine.enabled") is False

    @pytest.mark.asyncio
    async def test_start_refreshes_in_background(self, store, client):
        """Test the refresh loop picks up changes made elsewhere."""
        await store.start()
        client.data[self.ENGINE_KEY] = "0"
        await asyncio.sleep(0.1)

        assert store.get_flag("automation.engine.enabled") is False

        await store.stop()
        assert client.closed is True
        assert store.refresh_task is None

    @pytest.mark.asyncio
    async def test_start_without_redis(self, store, client):
        """Test startup survives an unreachable Redis."""
        client.fail = True
        await store.start()
        assert store.get_flag("automation.engine.enabled") is None
        await store.stop()
