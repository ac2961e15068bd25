"""Backtest engine — replays historical entries through the scorer.

For each symbol and each test point N, the entry is the bar N bars before
the latest one; the entry is scored on the 30 bars ending at it (no later
data leaks in) and then held to the end, for *holding_days*, or until the
close breaches the stop-loss.  No real orders are placed.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional, Protocol, Union

from app.analysis.snapshot import MIN_BARS, build_snapshot
from app.backtest.models import (
    BacktestReport,
    SimulatedTrade,
    StopLossComparison,
)
from app.backtest.stats import (
    compute_statistics,
    compute_stop_loss_statistics,
    group_by_grade,
    interpret,
)
from app.market.models import Bar, RankedSymbol
from app.models.results import (
    ExternalFetchError,
    Failure,
    InputValidationError,
    InsufficientDataError,
)
from app.patterns.catalog import match_patterns
from app.patterns.models import Pattern
from app.scan_manager import ScanManager
from app.scoring.scorer import score_snapshot

logger = logging.getLogger("surgescan.backtest")

DEFAULT_TEST_POINTS = (5, 10, 15, 20, 25)
MIN_STOP_LOSS_RATE = -20.0
MAX_HOLDING_DAYS = 25
COMPARISON_EXAMPLES = 5


class HistorySource(Protocol):
    async def get_daily_bars(self, symbol: str, count: int = 30) -> list[Bar]: ...

    async def get_universe(
        self, markets: tuple[str, ...] = ("KOSPI", "KOSDAQ"),
        per_ranking: int = 30,
    ) -> list[RankedSymbol]: ...


# ── Validation ───────────────────────────────────────────────────────────


def validate_stop_loss_rate(rate: float) -> None:
    """Raise ``InputValidationError`` unless ``-20 <= rate < 0``."""
    if not MIN_STOP_LOSS_RATE <= rate < 0:
        raise InputValidationError(
            f"stop_loss_rate must be in [{MIN_STOP_LOSS_RATE:g}, 0), got {rate}"
        )


def validate_holding_days(days: int) -> None:
    if not 1 <= days <= MAX_HOLDING_DAYS:
        raise InputValidationError(
            f"holding_days must be in [1, {MAX_HOLDING_DAYS}], got {days}"
        )


# ── Trade simulation ─────────────────────────────────────────────────────


def _exit_index(bars: list[Bar], entry_index: int, max_days: Optional[int]) -> int:
    if not 0 <= entry_index < len(bars) - 1:
        raise InsufficientDataError(
            f"Entry index {entry_index} leaves no bar to exit on "
            f"({len(bars)} bars)"
        )
    last = len(bars) - 1
    return last if max_days is None else min(entry_index + max_days, last)


def _trade(
    bars: list[Bar],
    entry_index: int,
    exit_index: int,
    stopped: bool = False,
    **labels,
) -> SimulatedTrade:
    entry, exit_ = bars[entry_index], bars[exit_index]
    ret = (exit_.close - entry.close) / entry.close * 100
    return SimulatedTrade(
        entry_date=entry.date,
        entry_price=entry.close,
        exit_date=exit_.date,
        exit_price=exit_.close,
        holding_days=exit_index - entry_index,
        return_rate=ret,
        is_win=ret > 0 and not stopped,
        stop_loss_triggered=stopped,
        stop_loss_day=exit_index - entry_index if stopped else None,
        **labels,
    )


def simulate_hold(
    bars: list[Bar],
    entry_index: int,
    holding_days: Optional[int] = None,
    symbol: str = "",
    grade: str = "",
    score: float = 0.0,
) -> SimulatedTrade:
    """Buy at the entry close and sell *holding_days* bars later (or on the
    last bar when ``None`` or when history runs out).
    """
    exit_index = _exit_index(bars, entry_index, holding_days)
    return _trade(
        bars, entry_index, exit_index, symbol=symbol, grade=grade, score=score,
    )


def simulate_stop_loss(
    bars: list[Bar],
    entry_index: int,
    stop_loss_rate: float,
    max_days: Optional[int] = None,
    symbol: str = "",
    grade: str = "",
    score: float = 0.0,
) -> SimulatedTrade:
    """Walk forward from the entry and exit on the first close whose
    cumulative return is at or below *stop_loss_rate*.

    Raises ``InputValidationError`` for a rate outside ``[-20, 0)``.
    """
    validate_stop_loss_rate(stop_loss_rate)
    exit_index = _exit_index(bars, entry_index, max_days)
    entry_price = bars[entry_index].close
    for i in range(entry_index + 1, exit_index + 1):
        ret = (bars[i].close - entry_price) / entry_price * 100
        if ret <= stop_loss_rate:
            return _trade(
                bars, entry_index, i, stopped=True,
                symbol=symbol, grade=grade, score=score,
            )
    return _trade(
        bars, entry_index, exit_index, symbol=symbol, grade=grade, score=score,
    )


def compare_with_no_stop_loss(
    with_stop: list[SimulatedTrade],
    without_stop: list[SimulatedTrade],
) -> StopLossComparison:
    """Contrast stop-loss trades with the same entries held unstopped."""
    stopped = [t for t in with_stop if t.stop_loss_triggered]
    avg_stopped = (
        sum(t.return_rate for t in stopped) / len(stopped) if stopped else 0.0
    )
    return StopLossComparison(
        with_stop=compute_statistics(with_stop),
        without_stop=compute_statistics(without_stop),
        stopped_count=len(stopped),
        avg_stopped_loss=avg_stopped,
        examples=tuple(stopped[:COMPARISON_EXAMPLES]),
    )


# ── Engine ───────────────────────────────────────────────────────────────


class BacktestEngine:
    """Runs hold-N and stop-loss backtests over a symbol list.

    Args:
        source: Bar source (``KisClient`` or an archive).
        scan_manager: Worker pool for the per-symbol fetches.
        patterns: Stored patterns feeding the scorer's pattern bonus.
        repo: Optional ``BacktestRepo``; every run is persisted when set.
    """

    def __init__(
        self,
        source: HistorySource,
        scan_manager: Optional[ScanManager] = None,
        patterns: Optional[list[Pattern]] = None,
        repo=None,
    ) -> None:
        self._source = source
        self._scan_manager = scan_manager or ScanManager()
        self._patterns = patterns
        self._repo = repo

    def _score_entry(self, bars: list[Bar], entry_index: int, symbol: str):
        window = bars[entry_index - MIN_BARS + 1:entry_index + 1]
        snapshot = build_snapshot(window, symbol)
        win_rates = match_patterns(snapshot, self._patterns).win_rates
        return score_snapshot(snapshot, pattern_win_rates=win_rates)

    async def _simulate_symbol(
        self,
        symbol: str,
        test_points: tuple[int, ...],
        holding_days: Optional[int],
        stop_loss_rate: Optional[float],
    ) -> tuple[tuple[SimulatedTrade, SimulatedTrade], ...]:
        bars = await self._source.get_daily_bars(
            symbol, MIN_BARS + max(test_points)
        )
        pairs = []
        for days_ago in test_points:
            entry_index = len(bars) - 1 - days_ago
            if entry_index < MIN_BARS - 1:
                continue
            breakdown = self._score_entry(bars, entry_index, symbol)
            labels = dict(
                symbol=symbol,
                grade=breakdown.grade,
                score=breakdown.final_score,
            )
            held = simulate_hold(bars, entry_index, holding_days, **labels)
            stopped = (
                simulate_stop_loss(
                    bars, entry_index, stop_loss_rate, holding_days, **labels
                )
                if stop_loss_rate is not None
                else held
            )
            pairs.append((stopped, held))

        if not pairs:
            raise InsufficientDataError(
                f"{symbol}: {len(bars)} bars cover none of the test points"
            )
        return tuple(pairs)

    async def run(
        self,
        symbols: Optional[Iterable[str]] = None,
        test_points: Iterable[int] = DEFAULT_TEST_POINTS,
        holding_days: Optional[int] = None,
        stop_loss_rate: Optional[float] = None,
    ) -> Union[BacktestReport, Failure]:
        """Backtest *symbols* at every test point.

        Args:
            symbols: Symbols to test; the source's ranking universe when
                omitted.
            test_points: Entry offsets in bars before the latest bar.
            holding_days: Exit after this many bars; hold to the latest
                bar when ``None``.
            stop_loss_rate: Enable the stop-loss variant (``[-20, 0)``).

        Returns:
            A ``BacktestReport`` with trades in chronological entry order,
            or an ``input_validation`` ``Failure``.
        """
        test_points = tuple(sorted(set(test_points), reverse=True))
        try:
            if not test_points or min(test_points) < 1:
                raise InputValidationError(
                    f"test_points must be positive, got {list(test_points)}"
                )
            if holding_days is not None:
                validate_holding_days(holding_days)
            if stop_loss_rate is not None:
                validate_stop_loss_rate(stop_loss_rate)
        except InputValidationError as exc:
            return Failure.from_exception(exc)

        if symbols is None:
            try:
                symbols = [s.code for s in await self._source.get_universe()]
            except ExternalFetchError as exc:
                return Failure.from_exception(exc)
        symbols = list(symbols)

        async def _worker(symbol: str):
            return await self._simulate_symbol(
                symbol, test_points, holding_days, stop_loss_rate
            )

        logger.info(
            "Backtesting %d symbols at test points %s (hold %s, stop %s)",
            len(symbols), list(test_points), holding_days or "to end",
            stop_loss_rate,
        )
        outcome = await self._scan_manager.run(symbols, _worker)
        pairs = sorted(
            (pair for per_symbol in outcome.results for pair in per_symbol),
            key=lambda p: (p[0].entry_date, p[0].symbol),
        )
        trades = [stopped for stopped, _ in pairs]
        statistics = compute_statistics(trades)

        kind = "hold" if stop_loss_rate is None else "stop_loss"
        stop_stats = None
        comparison = None
        if stop_loss_rate is not None:
            stop_stats = compute_stop_loss_statistics(trades, stop_loss_rate)
            comparison = compare_with_no_stop_loss(
                trades, [held for _, held in pairs]
            )

        interpretation: tuple[str, ...] = ()
        if statistics is not None:
            interpretation = tuple(
                interpret(
                    statistics,
                    stop_stats.triggered_rate if stop_stats else None,
                )
            )
            logger.info(
                "Backtest %s: %d trades, win rate %.1f%%, avg %.2f%%, MDD %.2f%%",
                kind, statistics.total_count, statistics.win_rate,
                statistics.avg_return, statistics.max_drawdown,
            )
        else:
            logger.warning("Backtest %s produced no trades", kind)

        parameters = {
            "test_points": sorted(test_points),
            "holding_days": holding_days,
            "stop_loss_rate": stop_loss_rate,
            "symbols": len(symbols),
        }
        report = BacktestReport(
            kind=kind,
            parameters=parameters,
            trades=tuple(trades),
            statistics=statistics,
            by_grade=group_by_grade(trades),
            report=outcome.report,
            failures=outcome.failures,
            stop_loss=stop_stats,
            comparison=comparison,
            interpretation=interpretation,
        )
        if self._repo is not None:
            self._repo.insert_run(
                kind=kind,
                parameters=parameters,
                statistics=statistics,
                started_at=datetime.now(timezone.utc).isoformat(),
                summary=report.to_dict(),
            )
        return report
