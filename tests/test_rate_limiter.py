"""
Token bucket tests. Time is injected; asyncio.sleep is mocked.

Run with: pytest tests/test_rate_limiter.py -v
"""

import pytest

from src.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now


class TestRateLimiter:

    def test_rejects_non_positive_rate(self):
        with pytest.raises(ValueError):
            RateLimiter(requests_per_minute=0)

    def test_starts_full(self):
        limiter = RateLimiter(requests_per_minute=500, clock=FakeClock())
        assert limiter.capacity == 500
        assert limiter.tokens == 500
        assert limiter.refill_rate == pytest.approx(500 / 60)

    @pytest.mark.asyncio
    async def test_burst_up_to_capacity_without_waiting(self, no_sleep):
        limiter = RateLimiter(requests_per_minute=5, clock=FakeClock())

        for _ in range(5):
            await limiter.acquire()

        no_sleep.assert_not_awaited()
        assert limiter.tokens == pytest.approx(0)

    @pytest.mark.asyncio
    async def test_waits_for_refill_when_empty(self, no_sleep):
        clock = FakeClock()
        limiter = RateLimiter(requests_per_minute=60, clock=clock)  # 1 token/s
        limiter.tokens = 0.25

        async def advance(delay):
            clock.now += delay

        no_sleep.side_effect = advance
        await limiter.acquire()

        no_sleep.assert_awaited_once()
        assert no_sleep.await_args[0][0] == pytest.approx(0.75)
        assert limiter.tokens == pytest.approx(0)

    @pytest.mark.asyncio
    async def test_refill_capped_at_capacity(self, no_sleep):
        clock = FakeClock()
        limiter = RateLimiter(requests_per_minute=10, clock=clock)
        limiter.tokens = 0

        clock.now += 3600
        await limiter.acquire()

        assert limiter.tokens == pytest.approx(9)
        no_sleep.assert_not_awaited()
