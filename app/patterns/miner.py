"""Pattern miner — surge corpus → ranked, backtested catalog patterns.

Pipeline: collect corpus → extract predicate occurrences → backtest →
rank/filter → publish.  The pure steps (``find_first_surge``,
``backtest_events``, ``mine_patterns``) are module functions; the miners
own the I/O-bound corpus collection.
"""

import logging
import math
import random
from datetime import datetime, timezone
from typing import Optional, Protocol, Union

from app.analysis.snapshot import build_snapshot
from app.market.models import Bar, RankedSymbol
from app.models.results import (
    INPUT_VALIDATION,
    ExternalFetchError,
    Failure,
    InsufficientDataError,
)
from app.patterns.catalog import PatternKind
from app.patterns.models import (
    MiningResult,
    Pattern,
    PatternBacktest,
    PatternFeatures,
    SurgeEvent,
)
from app.scan_manager import ScanManager, ScanOutcome

logger = logging.getLogger("surgescan.miner")

SNAPSHOT_WINDOW = 30
SAMPLE_SYMBOLS = 5
RECENT_SESSIONS_SKIPPED = 10


class BarSource(Protocol):
    async def get_daily_bars(self, symbol: str, count: int = 30) -> list[Bar]: ...

    async def get_ranked_symbols(
        self, market: str, ranking_kind: str, limit: int
    ) -> list[RankedSymbol]: ...

    async def get_universe(
        self, markets: tuple[str, ...] = ("KOSPI", "KOSDAQ"),
        per_ranking: int = 30,
    ) -> list[RankedSymbol]: ...


def _symbol_name(source, symbol: str) -> str:
    lookup = getattr(source, "cached_name", None)
    name = lookup(symbol) if lookup else None
    return name or symbol


# ── Pure mining steps ────────────────────────────────────────────────────


def find_first_surge(
    bars: list[Bar],
    lookback_days: int,
    min_return: float,
    skip_recent: int = RECENT_SESSIONS_SKIPPED,
) -> Optional[tuple[int, float]]:
    """Most recent surge bar inside the lookback window.

    Scans newest → oldest over the last *lookback_days* bars, leaving out
    the *skip_recent* latest sessions and any bar without
    ``SNAPSHOT_WINDOW`` bars of preceding history.

    Returns:
        ``(index, daily_return_pct)`` of the first qualifying bar, or
        ``None``.
    """
    first = max(SNAPSHOT_WINDOW, len(bars) - lookback_days)
    for t in range(len(bars) - 1 - skip_recent, first - 1, -1):
        prev_close = bars[t - 1].close
        if prev_close <= 0:
            continue
        daily_return = (bars[t].close - prev_close) / prev_close * 100
        if daily_return >= min_return:
            return t, daily_return
    return None


def period_return(bars: list[Bar], lookback: int) -> tuple[float, float]:
    """Close-to-close return over *lookback* bars and the pullback of the
    latest close from the highest high of the last *lookback* bars.

    Raises ``InsufficientDataError`` with fewer than ``lookback + 1`` bars.
    """
    if len(bars) < lookback + 1:
        raise InsufficientDataError(
            f"Need at least {lookback + 1} bars for a {lookback}-bar return, "
            f"got {len(bars)}"
        )
    latest = bars[-1]
    base = bars[-1 - lookback].close
    ret = (latest.close - base) / base * 100 if base > 0 else 0.0
    high = max(b.high for b in bars[-lookback:])
    pullback = (high - latest.close) / high * 100 if high > 0 else 0.0
    return ret, pullback


def backtest_events(events: list[SurgeEvent]) -> PatternBacktest:
    """Win rate and return spread over the events' recorded returns."""
    returns = [e.daily_return for e in events]
    if not returns:
        return PatternBacktest(0.0, 0.0, 0.0, 0.0, 0, 0)
    wins = sum(1 for r in returns if r > 0)
    return PatternBacktest(
        win_rate=wins / len(returns) * 100,
        avg_return=sum(returns) / len(returns),
        max_return=max(returns),
        min_return=min(returns),
        total_samples=len(returns),
        wins=wins,
    )


def mine_patterns(
    corpus: list[SurgeEvent], min_samples: int = 3, top_k: int = 5
) -> list[Pattern]:
    """Count, backtest and rank every catalog predicate over *corpus*.

    Predicates with fewer than *min_samples* matches are dropped; the rest
    are sorted by win rate (ties by occurrence count) and cut to *top_k*.
    """
    if not corpus:
        return []

    candidates: list[Pattern] = []
    for kind in PatternKind:
        matched = [e for e in corpus if kind.matches(e.features)]
        if not matched:
            continue
        candidates.append(
            Pattern(
                key=kind.key,
                name=kind.label,
                occurrence_count=len(matched),
                frequency=len(matched) / len(corpus) * 100,
                sample_symbols=tuple(e.symbol for e in matched[:SAMPLE_SYMBOLS]),
                backtest=backtest_events(matched),
            )
        )

    qualified = [p for p in candidates if p.backtest.total_samples >= min_samples]
    qualified.sort(key=lambda p: (-p.backtest.win_rate, -p.occurrence_count))
    for pattern in qualified[:top_k]:
        logger.info(
            "Pattern %s: win rate %.1f%% over %d samples (frequency %.1f%%)",
            pattern.key, pattern.backtest.win_rate,
            pattern.backtest.total_samples, pattern.frequency,
        )
    return qualified[:top_k]


# ── Miners ───────────────────────────────────────────────────────────────


class _Miner:
    miner_name = "basic"

    def __init__(
        self,
        source: BarSource,
        min_samples: int,
        top_k: int,
        min_corpus: int,
        scan_manager: Optional[ScanManager],
    ) -> None:
        self._source = source
        self._min_samples = min_samples
        self._top_k = top_k
        self._min_corpus = min_corpus
        self._scan_manager = scan_manager or ScanManager()

    def _parameters(self) -> dict:
        raise NotImplementedError

    def _finish(
        self, outcome: ScanOutcome, phase_counts: Optional[dict] = None
    ) -> Union[MiningResult, Failure]:
        corpus = list(outcome.results)
        if len(corpus) < self._min_corpus:
            logger.warning(
                "Mining aborted: %d surge events, need at least %d",
                len(corpus), self._min_corpus,
            )
            return Failure(
                kind=INPUT_VALIDATION,
                message=(
                    f"Surge corpus too small: {len(corpus)} events, "
                    f"need at least {self._min_corpus}"
                ),
                details={
                    "corpus_size": len(corpus),
                    "report": outcome.report.to_dict(),
                    **({"phase_counts": phase_counts} if phase_counts else {}),
                },
            )

        patterns = mine_patterns(corpus, self._min_samples, self._top_k)
        parameters = self._parameters()
        parameters["corpus_size"] = len(corpus)
        return MiningResult(
            generated_at=datetime.now(timezone.utc).isoformat(),
            miner=self.miner_name,
            parameters=parameters,
            patterns=tuple(patterns),
            corpus=tuple(corpus),
            report=outcome.report,
            phase_counts=dict(phase_counts or {}),
        )


class PatternMiner(_Miner):
    """Basic miner: random universe sample, first one-day surge per symbol.

    Args:
        source: Bar source (``KisClient`` or an archive).
        lookback_days: Window scanned for surge bars.
        min_return: One-day return (%) that counts as a surge.
        sample_limit: Upper bound on sampled symbols.
        sample_fraction: Share of the universe sampled.
        min_samples: Minimum matches for a pattern to be kept.
        top_k: Patterns published.
        min_corpus: Smallest corpus mined; smaller aborts the run.
        scan_manager: Worker pool (early termination lives there).
        rng: Random source for sampling, injectable for tests.
    """

    miner_name = "basic"

    def __init__(
        self,
        source: BarSource,
        lookback_days: int = 30,
        min_return: float = 15.0,
        sample_limit: int = 200,
        sample_fraction: float = 0.2,
        min_samples: int = 3,
        top_k: int = 5,
        min_corpus: int = 3,
        scan_manager: Optional[ScanManager] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        super().__init__(source, min_samples, top_k, min_corpus, scan_manager)
        self._lookback_days = lookback_days
        self._min_return = min_return
        self._sample_limit = sample_limit
        self._sample_fraction = sample_fraction
        self._rng = rng or random.Random()

    def _parameters(self) -> dict:
        return {
            "lookback_days": self._lookback_days,
            "min_return": self._min_return,
            "min_samples": self._min_samples,
            "top_k": self._top_k,
        }

    def sample(self, universe: list[str]) -> list[str]:
        """Shuffle *universe* and keep ``min(limit, fraction × size)`` symbols."""
        size = min(
            self._sample_limit,
            max(1, math.floor(len(universe) * self._sample_fraction)),
        )
        shuffled = list(universe)
        self._rng.shuffle(shuffled)
        return shuffled[:size]

    async def _scan_symbol(self, symbol: str) -> Optional[SurgeEvent]:
        bars = await self._source.get_daily_bars(
            symbol, self._lookback_days + SNAPSHOT_WINDOW
        )
        if len(bars) < SNAPSHOT_WINDOW + 1:
            raise InsufficientDataError(
                f"{symbol}: {len(bars)} bars, need {SNAPSHOT_WINDOW + 1}"
            )
        hit = find_first_surge(bars, self._lookback_days, self._min_return)
        if hit is None:
            return None

        index, daily_return = hit
        snapshot = build_snapshot(bars[index - SNAPSHOT_WINDOW:index], symbol)
        logger.info(
            "Surge %s on %s: %+.1f%%", symbol, bars[index].date, daily_return
        )
        return SurgeEvent(
            symbol=symbol,
            event_date=bars[index].date,
            daily_return=daily_return,
            features=PatternFeatures.from_snapshot(snapshot),
            name=_symbol_name(self._source, symbol),
            snapshot=snapshot,
        )

    async def collect_corpus(self, symbols: list[str]) -> ScanOutcome:
        """Scan *symbols* for surge events."""
        return await self._scan_manager.run(symbols, self._scan_symbol)

    async def run(
        self, universe: Optional[list[str]] = None
    ) -> Union[MiningResult, Failure]:
        """Run the full pipeline.

        Args:
            universe: Candidate symbols; the source's ranking universe when
                omitted.

        Returns:
            A ``MiningResult``, or an ``input_validation`` ``Failure`` when
            the corpus is below the minimum size.
        """
        if universe is None:
            try:
                universe = [s.code for s in await self._source.get_universe()]
            except ExternalFetchError as exc:
                return Failure.from_exception(exc)

        symbols = self.sample(universe) if universe else []
        logger.info(
            "Mining %d of %d symbols (lookback %d days, surge >= %.1f%%)",
            len(symbols), len(universe), self._lookback_days, self._min_return,
        )
        outcome = await self.collect_corpus(symbols)
        logger.info(
            "Corpus collected: analyzed %d, surges %d, failed %d",
            outcome.report.analyzed, outcome.report.found,
            outcome.report.failed,
        )
        return self._finish(outcome)


class SmartPatternMiner(_Miner):
    """Three-phase miner.

    Phase 1 takes the volume-surge ranking of each market; phase 2 keeps
    symbols whose *lookback_days* return is at least *min_return*; phase 3
    drops symbols that have already pulled back *pullback_threshold* % or
    more from the window high.  Survivors are snapshotted on their latest
    bar and mined with ``min_samples`` 2.
    """

    miner_name = "smart"

    def __init__(
        self,
        source: BarSource,
        min_return: float = 15.0,
        pullback_threshold: float = 10.0,
        lookback_days: int = 10,
        markets: tuple[str, ...] = ("KOSPI", "KOSDAQ"),
        per_market: int = 30,
        min_samples: int = 2,
        top_k: int = 5,
        min_corpus: int = 3,
        scan_manager: Optional[ScanManager] = None,
    ) -> None:
        super().__init__(source, min_samples, top_k, min_corpus, scan_manager)
        self._min_return = min_return
        self._pullback_threshold = pullback_threshold
        self._lookback_days = lookback_days
        self._markets = markets
        self._per_market = per_market
        self._counts: dict[str, int] = {}

    def _parameters(self) -> dict:
        return {
            "min_return": self._min_return,
            "pullback_threshold": self._pullback_threshold,
            "lookback_days": self._lookback_days,
            "markets": list(self._markets),
            "per_market": self._per_market,
            "min_samples": self._min_samples,
            "top_k": self._top_k,
        }

    async def phase1_candidates(self) -> list[str]:
        """Volume-surge leaders per market, de-duplicated in rank order.

        A failing market is logged and skipped.
        """
        codes: dict[str, None] = {}
        for market in self._markets:
            try:
                ranked = await self._source.get_ranked_symbols(
                    market, "volume_surge", self._per_market
                )
            except ExternalFetchError as exc:
                logger.warning("Phase 1 ranking for %s failed: %s", market, exc)
                continue
            logger.info("Phase 1 %s: %d candidates", market, len(ranked))
            for item in ranked:
                codes.setdefault(item.code, None)
        return list(codes)

    async def _qualify(self, symbol: str) -> Optional[SurgeEvent]:
        count = max(SNAPSHOT_WINDOW, self._lookback_days + 5)
        bars = await self._source.get_daily_bars(symbol, count)
        ret, pullback = period_return(bars, self._lookback_days)
        if ret < self._min_return:
            return None
        self._counts["phase2_passed"] += 1

        if pullback >= self._pullback_threshold:
            self._counts["phase3_excluded"] += 1
            return None

        snapshot = build_snapshot(bars, symbol)
        logger.info(
            "Qualified %s: %+.1f%% over %d bars (pullback %.1f%%)",
            symbol, ret, self._lookback_days, pullback,
        )
        return SurgeEvent(
            symbol=symbol,
            event_date=bars[-1].date,
            daily_return=ret,
            features=PatternFeatures.from_snapshot(snapshot),
            name=_symbol_name(self._source, symbol),
            snapshot=snapshot,
        )

    async def run(self) -> Union[MiningResult, Failure]:
        """Run all three phases and mine the survivors."""
        candidates = await self.phase1_candidates()
        self._counts = {
            "phase1_candidates": len(candidates),
            "phase2_passed": 0,
            "phase3_excluded": 0,
        }
        if not candidates:
            return Failure(
                kind=INPUT_VALIDATION,
                message="Phase 1 produced no candidates",
                details={"corpus_size": 0, "phase_counts": dict(self._counts)},
            )

        outcome = await self._scan_manager.run(candidates, self._qualify)
        self._counts["qualified"] = outcome.report.found
        logger.info(
            "Smart mining phases: %d candidates, %d passed phase 2, "
            "%d excluded in phase 3, %d qualified",
            self._counts["phase1_candidates"], self._counts["phase2_passed"],
            self._counts["phase3_excluded"], self._counts["qualified"],
        )
        return self._finish(outcome, dict(self._counts))
