"""Tests for market_data_aggregator.services.rate_limiter."""

import pytest

from conftest import FakeClock
from market_data_aggregator.models import DataProvider
from market_data_aggregator.services.rate_limiter import RateLimiter


@pytest.fixture
def limiter(clock: FakeClock) -> RateLimiter:
    limiter = RateLimiter(clock)
    limiter.register(DataProvider.ALPHA_VANTAGE, limit=5, window_length=60)
    return limiter


class TestTryAcquire:
    async def test_admits_up_to_limit(self, limiter):
        decisions = [await limiter.try_acquire(DataProvider.ALPHA_VANTAGE) for _ in range(6)]

        assert [d.admitted for d in decisions] == [True] * 5 + [False]

    async def test_denial_reports_time_until_window_reset(self, limiter, clock):
        for _ in range(5):
            await limiter.try_acquire(DataProvider.ALPHA_VANTAGE)
        clock.advance(20)

        decision = await limiter.try_acquire(DataProvider.ALPHA_VANTAGE)

        assert not decision.admitted
        assert decision.retry_after == pytest.approx(40)

    async def test_window_resets_after_length_elapses(self, limiter, clock):
        for _ in range(5):
            await limiter.try_acquire(DataProvider.ALPHA_VANTAGE)
        clock.advance(60)

        decision = await limiter.try_acquire(DataProvider.ALPHA_VANTAGE)

        assert decision.admitted

    async def test_disabled_provider_is_always_denied(self, clock):
        limiter = RateLimiter(clock)
        limiter.register(DataProvider.POLYGON, limit=5, window_length=60, enabled=False)

        decision = await limiter.try_acquire(DataProvider.POLYGON)

        assert not decision.admitted
        assert decision.retry_after is None

    async def test_unregistered_provider_is_denied(self, limiter):
        decision = await limiter.try_acquire(DataProvider.FINNHUB)

        assert not decision.admitted

    async def test_zero_budget_denies_everything(self, clock):
        limiter = RateLimiter(clock)
        limiter.register(DataProvider.FINNHUB, limit=0, window_length=60)

        assert not (await limiter.try_acquire(DataProvider.FINNHUB)).admitted


class TestStatus:
    async def test_status_does_not_consume_budget(self, limiter):
        await limiter.try_acquire(DataProvider.ALPHA_VANTAGE)

        first = limiter.status(DataProvider.ALPHA_VANTAGE)
        second = limiter.status(DataProvider.ALPHA_VANTAGE)

        assert first == second
        assert first["requests"] == 1
        assert first["limit"] == 5
        assert first["available"] is True
        assert first["reset_in"] == 60

    async def test_status_after_window_elapsed_reads_empty(self, limiter, clock):
        for _ in range(5):
            await limiter.try_acquire(DataProvider.ALPHA_VANTAGE)
        assert limiter.status(DataProvider.ALPHA_VANTAGE)["available"] is False

        clock.advance(61)

        status = limiter.status(DataProvider.ALPHA_VANTAGE)
        assert status["requests"] == 0
        assert status["available"] is True
