import pytest

from amp_relay.config import clear_settings_cache, get_settings
from amp_relay.ratelimit import FixedWindowRateLimiter


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_fixed_window_cap_and_reset():
    clock = _Clock()
    limiter = FixedWindowRateLimiter(window_seconds=60, max_requests=120, clock=clock)
    for i in range(120):
        decision = await limiter.check("crabmail.ai")
        assert decision.allowed, f"request {i + 1} should pass"
        clock.now += 0.25

    limited = await limiter.check("crabmail.ai")
    assert not limited.allowed
    assert limited.remaining == 0
    assert 1 <= limited.retry_after <= 60

    clock.now = 1000.0 + 60
    decision = await limiter.check("crabmail.ai")
    assert decision.allowed
    assert decision.remaining == 119


@pytest.mark.asyncio
async def test_window_does_not_slide():
    clock = _Clock()
    limiter = FixedWindowRateLimiter(window_seconds=60, max_requests=2, clock=clock)
    assert (await limiter.check("p")).allowed
    clock.now += 59
    assert (await limiter.check("p")).allowed
    assert not (await limiter.check("p")).allowed
    clock.now += 1
    # The window that opened at t=1000 has ended; the counter resets entirely
    assert (await limiter.check("p")).allowed
    assert (await limiter.check("p")).allowed


@pytest.mark.asyncio
async def test_limits_are_per_provider():
    limiter = FixedWindowRateLimiter(window_seconds=60, max_requests=1, clock=_Clock())
    assert (await limiter.check("a.example")).allowed
    assert not (await limiter.check("a.example")).allowed
    assert (await limiter.check("b.example")).allowed


@pytest.mark.asyncio
async def test_reset_clears_counters():
    limiter = FixedWindowRateLimiter(window_seconds=60, max_requests=1, clock=_Clock())
    await limiter.check("p")
    limiter.reset("p")
    assert (await limiter.check("p")).allowed


def test_from_settings_defaults(isolated_env):
    limiter = FixedWindowRateLimiter.from_settings(get_settings())
    assert limiter.window_seconds == 60
    assert limiter.max_requests == 120


class _FakeRedis:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.counts: dict[str, int] = {}

    async def eval(self, script, numkeys, key, window):
        if self.fail:
            raise ConnectionError("redis down")
        self.counts[key] = self.counts.get(key, 0) + 1
        return [self.counts[key], 42]


@pytest.mark.asyncio
async def test_redis_backend_counts_in_redis():
    redis = _FakeRedis()
    limiter = FixedWindowRateLimiter(max_requests=2, redis_client=redis)
    assert (await limiter.check("crabmail.ai")).allowed
    assert (await limiter.check("crabmail.ai")).allowed
    decision = await limiter.check("crabmail.ai")
    assert not decision.allowed
    assert decision.retry_after == 42
    assert redis.counts == {"amp:rl:crabmail.ai": 3}


@pytest.mark.asyncio
async def test_redis_failure_falls_back_to_memory():
    limiter = FixedWindowRateLimiter(max_requests=1, redis_client=_FakeRedis(fail=True), clock=_Clock())
    assert (await limiter.check("p")).allowed
    assert not (await limiter.check("p")).allowed


def test_from_settings_without_redis_package(isolated_env, monkeypatch):
    monkeypatch.setenv("AMP_RATE_LIMIT_BACKEND", "redis")
    monkeypatch.setenv("AMP_RATE_LIMIT_REDIS_URL", "redis://localhost:6379/0")
    clear_settings_cache()
    import importlib

    real_import = importlib.import_module

    def fake_import(name, *args, **kwargs):
        if name == "redis.asyncio":
            raise ImportError("no redis")
        return real_import(name, *args, **kwargs)

    monkeypatch.setattr(importlib, "import_module", fake_import)
    limiter = FixedWindowRateLimiter.from_settings(get_settings())
    assert limiter._redis is None
