"""Tests for the per-identifier token bucket limiter."""

import asyncio

import pytest

from contextforge.api.rate_limiter import RateLimitConfig, RateLimiter


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestCheck:
    def setup_method(self):
        self.clock = FakeClock()
        self.limiter = RateLimiter(clock=self.clock)

    def test_first_request(self):
        result = self.limiter.check("user-1")
        assert result.allowed
        assert result.remaining == 19
        assert result.reset_at == self.clock.now + 60

    def test_burst_then_denied(self):
        results = [self.limiter.check("user-1") for _ in range(20)]
        assert all(r.allowed for r in results)
        assert results[-1].remaining == 0

        denied = self.limiter.check("user-1")
        assert not denied.allowed
        assert denied.remaining == 0
        assert self.clock.now < denied.reset_at <= self.clock.now + 3

    def test_refill_after_window(self):
        for _ in range(21):
            self.limiter.check("user-1")
        self.clock.advance(60)
        result = self.limiter.check("user-1")
        assert result.allowed
        assert result.remaining == 19

    def test_partial_refill(self):
        for _ in range(20):
            self.limiter.check("user-1")
        self.clock.advance(3.5)
        assert self.limiter.check("user-1").allowed
        assert not self.limiter.check("user-1").allowed

    def test_identifiers_are_independent(self):
        for _ in range(21):
            self.limiter.check("user-1")
        assert self.limiter.check("user-2").allowed
        assert len(self.limiter) == 2

    def test_denial_logged(self, caplog):
        with caplog.at_level("INFO"):
            for _ in range(21):
                self.limiter.check("user-1")
        assert "Rate limit exceeded for user-1" in caplog.text


class TestStatusAndReset:
    def setup_method(self):
        self.clock = FakeClock()
        self.limiter = RateLimiter(clock=self.clock)

    def test_status_does_not_consume(self):
        assert self.limiter.status("user-1").remaining == 20
        self.limiter.check("user-1")
        assert self.limiter.status("user-1").remaining == 19
        assert self.limiter.status("user-1").remaining == 19

    def test_reset(self):
        for _ in range(21):
            self.limiter.check("user-1")
        self.limiter.reset("user-1")
        assert self.limiter.check("user-1").remaining == 19

    def test_clear(self):
        self.limiter.check("user-1")
        self.limiter.check("user-2")
        self.limiter.clear()
        assert len(self.limiter) == 0

    def test_cleanup_old_buckets(self):
        self.limiter.check("idle")
        self.clock.advance(3000)
        self.limiter.check("active")
        self.clock.advance(1000)
        assert self.limiter.cleanup_old_buckets(max_idle=3600) == 1
        assert len(self.limiter) == 1
        assert self.limiter.status("active").remaining == 20


def test_custom_config():
    clock = FakeClock()
    limiter = RateLimiter(RateLimitConfig(max_tokens=2, refill_rate=1.0), clock)
    assert limiter.check("a").remaining == 1
    assert limiter.check("a").remaining == 0
    denied = limiter.check("a")
    assert not denied.allowed
    assert denied.reset_at == clock.now + 1


@pytest.mark.asyncio
async def test_acquire_immediate():
    limiter = RateLimiter()
    await limiter.acquire("model")  # Should not raise


@pytest.mark.asyncio
async def test_acquire_timeout():
    limiter = RateLimiter(RateLimitConfig(max_tokens=1, refill_rate=0.001))
    await limiter.acquire("model")
    with pytest.raises(TimeoutError, match="Rate limiter timed out"):
        await limiter.acquire("model", timeout=0.2)


@pytest.mark.asyncio
async def test_acquire_waits_for_refill():
    limiter = RateLimiter(RateLimitConfig(max_tokens=1, refill_rate=10.0))
    await limiter.acquire("model")
    await asyncio.wait_for(limiter.acquire("model", timeout=5), timeout=5)


@pytest.mark.asyncio
async def test_run_cleanup_sweeps_periodically():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    limiter.check("idle")
    clock.advance(7200)

    task = asyncio.create_task(limiter.run_cleanup(interval=0.01, max_idle=3600))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert len(limiter) == 0
