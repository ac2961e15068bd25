"""Tests for ScanManager and the token-bucket RateLimiter."""

import asyncio

import pytest

from app.market.rate_limiter import RateLimiter
from app.models.results import (
    ExternalFetchError,
    Failure,
    InsufficientDataError,
)
from app.scan_manager import ScanManager


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class TestScanManager:
    @pytest.mark.asyncio
    async def test_collects_results_and_counts(self):
        async def worker(symbol):
            if symbol == "SHORT":
                raise InsufficientDataError("3 bars")
            if symbol == "DOWN":
                raise ExternalFetchError("timeout")
            if symbol == "NONE":
                return None
            return symbol.lower()

        outcome = await ScanManager(max_concurrency=2).run(
            ["A", "SHORT", "DOWN", "NONE", "B"], worker
        )
        assert sorted(outcome.results) == ["a", "b"]
        assert outcome.report.analyzed == 5
        assert outcome.report.found == 2
        assert outcome.report.failed == 1
        assert outcome.report.skipped == 1
        assert outcome.report.stopped_early is False
        kinds = {f.symbol: f.kind for f in outcome.failures}
        assert kinds == {"SHORT": "insufficient_data", "DOWN": "external_fetch"}

    @pytest.mark.asyncio
    async def test_returned_failure_counted(self):
        async def worker(symbol):
            return Failure(kind="input_validation", message="bad", symbol=symbol)

        outcome = await ScanManager().run(["A"], worker)
        assert outcome.report.failed == 1
        assert outcome.results == ()

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_abort_batch(self):
        async def worker(symbol):
            if symbol == "BUG":
                raise ZeroDivisionError("division by zero")
            return symbol

        outcome = await ScanManager().run(["A", "BUG", "B"], worker)
        assert sorted(outcome.results) == ["A", "B"]
        assert outcome.report.failed == 1

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self):
        in_flight = 0
        peak = 0

        async def worker(symbol):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return symbol

        outcome = await ScanManager(max_concurrency=3).run(
            [str(i) for i in range(12)], worker
        )
        assert outcome.report.found == 12
        assert peak <= 3

    @pytest.mark.asyncio
    async def test_max_results_stops_early(self):
        async def worker(symbol):
            return symbol

        outcome = await ScanManager(max_concurrency=1, max_results=2).run(
            ["A", "B", "C", "D"], worker
        )
        assert outcome.results == ("A", "B")
        assert outcome.report.analyzed == 2
        assert outcome.report.stopped_early is True

    @pytest.mark.asyncio
    async def test_time_budget_stops_early(self):
        clock = FakeClock()

        async def worker(symbol):
            clock.now += 10.0
            return symbol

        manager = ScanManager(
            max_concurrency=1, time_budget_seconds=15.0, clock=clock
        )
        outcome = await manager.run(["A", "B", "C", "D"], worker)
        assert outcome.results == ("A", "B")
        assert outcome.report.stopped_early is True

    @pytest.mark.asyncio
    async def test_rate_limiter_acquired_per_symbol(self):
        class CountingLimiter:
            calls = 0

            async def acquire(self):
                CountingLimiter.calls += 1
                return 0.0

        async def worker(symbol):
            return symbol

        await ScanManager(rate_limiter=CountingLimiter()).run(["A", "B", "C"], worker)
        assert CountingLimiter.calls == 3

    @pytest.mark.asyncio
    async def test_empty_input(self):
        async def worker(symbol):
            return symbol

        outcome = await ScanManager().run([], worker)
        assert outcome.results == ()
        assert outcome.report.analyzed == 0

    def test_invalid_concurrency(self):
        with pytest.raises(ValueError):
            ScanManager(max_concurrency=0)


class TestRateLimiter:
    def test_invalid_rate(self):
        with pytest.raises(ValueError):
            RateLimiter(max_per_second=0)

    @pytest.mark.asyncio
    async def test_burst_within_capacity_does_not_wait(self):
        clock = FakeClock()
        limiter = RateLimiter(max_per_second=5, clock=clock)
        waits = [await limiter.acquire() for _ in range(5)]
        assert waits == [0.0] * 5
        assert limiter.tokens == pytest.approx(0.0)

    @pytest.mark.asyncio
    async def test_empty_bucket_waits_for_deficit(self, monkeypatch):
        slept = []

        async def fake_sleep(seconds):
            slept.append(seconds)

        monkeypatch.setattr(asyncio, "sleep", fake_sleep)
        clock = FakeClock()
        limiter = RateLimiter(max_per_second=4, clock=clock)
        for _ in range(4):
            await limiter.acquire()
        wait = await limiter.acquire()
        assert wait == pytest.approx(0.25)
        assert slept == [pytest.approx(0.25)]

    @pytest.mark.asyncio
    async def test_refill_over_time(self):
        clock = FakeClock()
        limiter = RateLimiter(max_per_second=2, clock=clock)
        await limiter.acquire()
        await limiter.acquire()
        clock.now += 1.0
        assert await limiter.acquire() == 0.0
