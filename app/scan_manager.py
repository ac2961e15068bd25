"""ScanManager — bounded concurrent per-symbol scans.

Runs an async worker for each symbol under a semaphore, optionally paced by
a token-bucket ``RateLimiter``.  Results are collected in completion order.
Per-symbol errors are logged and counted; they never abort the batch.
Scheduling stops early once enough results were found or the time budget
is spent; work already in flight is allowed to finish.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional

from app.market.rate_limiter import RateLimiter
from app.models.results import BatchReport, Failure, ScreenerError

logger = logging.getLogger("surgescan.scan_manager")

ScanWorker = Callable[[str], Awaitable[Any]]


@dataclass(frozen=True)
class ScanOutcome:
    """Everything a scan produced.

    ``results`` holds the non-``None`` worker return values in completion
    order; ``failures`` one ``Failure`` per skipped or failed symbol.
    """

    results: tuple
    failures: tuple[Failure, ...]
    report: BatchReport


class ScanManager:
    """Bounded worker pool for per-symbol fetch + analyze steps.

    Args:
        max_concurrency: Maximum workers in flight.
        rate_limiter: Optional limiter acquired once per symbol before its
            worker starts.
        max_results: Stop scheduling once this many results were found.
        time_budget_seconds: Stop scheduling once this much time elapsed.
        interval_seconds: Fixed pause between scheduling two symbols.
        progress_every: Log progress every N completed symbols.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        max_concurrency: int = 4,
        rate_limiter: Optional[RateLimiter] = None,
        max_results: Optional[int] = None,
        time_budget_seconds: Optional[float] = None,
        interval_seconds: float = 0.0,
        progress_every: int = 20,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError(
                f"max_concurrency must be at least 1, got {max_concurrency}"
            )
        self._max_concurrency = max_concurrency
        self._rate_limiter = rate_limiter
        self._max_results = max_results
        self._time_budget = time_budget_seconds or None
        self._interval = interval_seconds
        self._progress_every = progress_every
        self._clock = clock

    def _should_stop(self, found: int, started: float) -> bool:
        if self._max_results is not None and found >= self._max_results:
            return True
        if self._time_budget is not None:
            return self._clock() - started >= self._time_budget
        return False

    async def run(
        self, symbols: Iterable[str], worker: ScanWorker
    ) -> ScanOutcome:
        """Run *worker* for each symbol and collect the outcomes.

        A worker returns a result, ``None`` (analyzed, nothing found) or a
        ``Failure``; raising a ``ScreenerError`` is treated like returning
        the matching ``Failure``.  Insufficient-data failures count as
        skipped, every other failure as failed.
        """
        symbols = list(symbols)
        semaphore = asyncio.Semaphore(self._max_concurrency)
        results: list = []
        failures: list[Failure] = []
        counts = {"analyzed": 0, "failed": 0, "skipped": 0}
        started = self._clock()

        async def _scan_one(symbol: str) -> None:
            try:
                if self._rate_limiter is not None:
                    await self._rate_limiter.acquire()
                outcome = await worker(symbol)
            except ScreenerError as exc:
                outcome = Failure.from_exception(exc, symbol)
            except Exception as exc:
                logger.error(
                    "Unexpected error scanning %s: %s", symbol, exc,
                    exc_info=True,
                )
                outcome = Failure.from_exception(exc, symbol)
            finally:
                semaphore.release()

            counts["analyzed"] += 1
            if isinstance(outcome, Failure):
                failures.append(outcome)
                if outcome.is_insufficient_data:
                    counts["skipped"] += 1
                    logger.debug("Skipped %s: %s", symbol, outcome.message)
                else:
                    counts["failed"] += 1
                    logger.warning(
                        "Scan failed for %s (%s): %s",
                        symbol, outcome.kind, outcome.message,
                    )
            elif outcome is not None:
                results.append(outcome)

            if counts["analyzed"] % self._progress_every == 0:
                logger.info(
                    "Progress %d/%d — found %d, failed %d",
                    counts["analyzed"], len(symbols), len(results),
                    counts["failed"],
                )

        tasks: list[asyncio.Task] = []
        stopped_early = False
        for index, symbol in enumerate(symbols):
            if self._should_stop(len(results), started):
                stopped_early = True
                break
            await semaphore.acquire()
            if self._should_stop(len(results), started):
                semaphore.release()
                stopped_early = True
                break
            tasks.append(asyncio.create_task(_scan_one(symbol)))
            if self._interval and index < len(symbols) - 1:
                await asyncio.sleep(self._interval)

        if tasks:
            await asyncio.gather(*tasks)

        if stopped_early:
            logger.info(
                "Scan stopped early after %d of %d symbols",
                len(tasks), len(symbols),
            )

        report = BatchReport(
            analyzed=counts["analyzed"],
            found=len(results),
            failed=counts["failed"],
            skipped=counts["skipped"],
            stopped_early=stopped_early,
        )
        return ScanOutcome(
            results=tuple(results), failures=tuple(failures), report=report,
        )
