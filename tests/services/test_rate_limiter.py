"""Rate Limiter - fixed windows, violations, sweeping, policy configuration.

Tests:
    - max_requests calls are allowed, the next is denied with remaining 0
    - Once now >= reset_at a fresh window starts
    - Concurrent increments on one key are all counted
    - check()/get_status() never count; skip policies always allow
    - Violations are recorded newest first and swept after retention
    - build_policies applies overrides; caller identity helpers
"""

import asyncio

import pytest

from boxoffice.config import RateLimitOverride
from boxoffice.core.errors import RateLimitedError
from boxoffice.services.rate_limiter import (
    DEFAULT_POLICIES, VIOLATION_RETENTION_SECONDS, RateLimiter,
    RateLimiterRegistry, RateLimitPolicy, build_policies, extract_ip,
    get_client_identifier,
)


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(RateLimitPolicy("order", 60_000, 3), clock=clock)


# ─── Counting ────────────────────────────────────────────────────

async def test_denies_after_max_requests(limiter):
    results = [await limiter.increment("ip:1.2.3.4") for _ in range(4)]

    assert [r.allowed for r in results] == [True, True, True, False]
    assert [r.remaining for r in results] == [2, 1, 0, 0]
    assert results[3].total == 4
    assert results[3].retry_after == 60


async def test_fresh_window_after_reset(limiter, clock):
    for _ in range(4):
        await limiter.increment("k")
    clock.advance(60)

    result = await limiter.increment("k")
    assert result.allowed
    assert result.total == 1
    assert result.reset_at == clock.now + 60


async def test_retry_after_counts_down(limiter, clock):
    for _ in range(3):
        await limiter.increment("k")
    clock.advance(45.5)
    result = await limiter.increment("k")
    assert result.retry_after == 15


async def test_concurrent_increments_all_counted(clock):
    limiter = RateLimiter(RateLimitPolicy("api", 60_000, 100), clock=clock)
    results = await asyncio.gather(*(limiter.increment("k") for _ in range(50)))

    assert all(r.allowed for r in results)
    assert sorted(r.total for r in results) == list(range(1, 51))
    assert limiter.get_status("k").total == 50


async def test_keys_and_policies_are_independent(clock):
    registry = RateLimiterRegistry(clock=clock)
    for _ in range(10):
        await registry["order"].increment("ip:1.1.1.1")

    assert not registry["order"].check("ip:1.1.1.1").allowed
    assert registry["order"].check("ip:2.2.2.2").allowed
    assert registry["api"].check("ip:1.1.1.1").allowed


async def test_enforce_raises_with_retry_after(limiter):
    for _ in range(3):
        await limiter.enforce("k")
    with pytest.raises(RateLimitedError) as exc:
        await limiter.enforce("k")
    assert exc.value.context.retry_after_seconds == 60


async def test_check_and_status_do_not_count(limiter):
    assert limiter.get_status("k") is None
    for _ in range(5):
        assert limiter.check("k").allowed
    assert limiter.get_status("k") is None

    await limiter.increment("k")
    assert limiter.get_status("k").total == 1
    assert limiter.check("k").remaining == 2


async def test_skip_policy_always_allows(clock):
    limiter = RateLimiter(RateLimitPolicy("order", 60_000, 1, skip=True), clock=clock)
    for _ in range(5):
        assert (await limiter.increment("k")).allowed
    assert limiter.get_status("k") is None
    assert limiter.get_violations() == []


# ─── Violations & State ──────────────────────────────────────────

async def test_violations_recorded_newest_first(clock):
    limited = []
    limiter = RateLimiter(
        RateLimitPolicy("order", 60_000, 1), clock=clock, on_limited=limited.append,
    )
    await limiter.increment("ip:1.1.1.1")
    await limiter.increment("ip:1.1.1.1", {"ip": "1.1.1.1", "endpoint": "orders"})
    clock.advance(1)
    await limiter.increment("ip:1.1.1.1", {"ip": "1.1.1.1", "endpoint": "orders"})

    violations = limiter.get_violations()
    assert [v.count for v in violations] == [3, 2]
    assert violations[0].key == "order:ip:1.1.1.1"
    assert violations[0].endpoint == "orders"
    assert limiter.get_violation_count("ip:1.1.1.1") == 2
    assert limiter.get_violations(limit=0) == []
    assert limited == ["order", "order"]


async def test_reset_and_clear(limiter):
    for _ in range(4):
        await limiter.increment("k")
    limiter.reset("k")
    assert limiter.check("k").allowed

    await limiter.increment("other")
    limiter.clear()
    assert limiter.get_stats()["total_keys"] == 0
    assert limiter.get_stats()["total_violations"] == 0


async def test_reset_and_clear_release_key_locks(limiter):
    await limiter.increment("a")
    await limiter.increment("b")
    limiter.reset("a")
    assert list(limiter._locks) == [limiter._full_key("b")]

    limiter.clear()
    assert limiter._locks == {}


async def test_sweep_evicts_expired_windows_and_old_violations(clock):
    limiter = RateLimiter(RateLimitPolicy("order", 60_000, 1), clock=clock)
    await limiter.increment("a")
    await limiter.increment("a")
    clock.advance(30)
    await limiter.increment("b")

    assert limiter.sweep() == (0, 0)
    clock.advance(30)
    assert limiter.sweep() == (1, 0)
    clock.advance(VIOLATION_RETENTION_SECONDS)
    assert limiter.sweep() == (1, 1)
    assert limiter.get_stats()["total_keys"] == 0


async def test_start_and_shutdown_are_idempotent(limiter):
    assert not limiter.running
    limiter.start()
    limiter.start()
    assert limiter.running
    await limiter.shutdown()
    await limiter.shutdown()
    assert not limiter.running


async def test_context_manager_runs_sweep_task(clock):
    limiter = RateLimiter(RateLimitPolicy("api", 60_000, 5), clock=clock)
    async with limiter:
        assert limiter.running
    assert not limiter.running


async def test_registry_starts_and_stops_all(clock):
    registry = RateLimiterRegistry(clock=clock)
    registry.start_all()
    assert all(registry[name].running for name in registry.names)
    await registry.shutdown_all()
    assert not any(registry[name].running for name in registry.names)


# ─── Configuration ───────────────────────────────────────────────

def test_default_policies():
    assert DEFAULT_POLICIES["order"].max_requests == 10
    assert DEFAULT_POLICIES["manual_entry"].prefix == "manual-entry"
    assert DEFAULT_POLICIES["scan"].window_ms == 60_000


def test_build_policies_applies_overrides():
    policies = build_policies({
        "order": RateLimitOverride(max_requests=2),
        "scan": {"window_ms": 1000},
        "nonexistent": {"max_requests": 1},
    })
    assert policies["order"].max_requests == 2
    assert policies["order"].window_ms == 60_000
    assert policies["scan"].window_ms == 1000
    assert "nonexistent" not in policies
    assert DEFAULT_POLICIES["order"].max_requests == 10


def test_build_policies_skip():
    assert all(p.skip for p in build_policies(skip=True).values())


def test_client_identifier_precedence():
    assert get_client_identifier(ip="1.2.3.4", user_id="u1") == "user:u1"
    assert get_client_identifier(ip="1.2.3.4") == "ip:1.2.3.4"
    assert get_client_identifier() == "anonymous"


def test_extract_ip_header_order():
    assert extract_ip({"x-forwarded-for": "10.0.0.1, 172.16.0.1"}) == "10.0.0.1"
    assert extract_ip({"x-real-ip": " 10.0.0.2 "}) == "10.0.0.2"
    assert extract_ip({"cf-connecting-ip": "10.0.0.3"}) == "10.0.0.3"
    assert extract_ip({}) is None
