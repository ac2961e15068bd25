"""Screener — single-symbol analysis and universe screening.

Each symbol is snapshotted on its latest 30 bars, matched against the
published patterns and the active DNA profile, and scored.  Full universe
results are cached per market for a short TTL so category views reuse
the last screen.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from app.analysis.models import IndicatorSnapshot
from app.analysis.snapshot import MIN_BARS, build_snapshot
from app.dna.extractor import build_symbol_pattern, match_score
from app.dna.models import DNAMatch
from app.market.models import Bar, InvestorFlow
from app.models.results import (
    INPUT_VALIDATION,
    BatchReport,
    ExternalFetchError,
    Failure,
    ScreenerError,
)
from app.patterns.catalog import PatternMatch, match_patterns
from app.repos.ttl_cache import DnaStore, PatternStore, TTLCache
from app.scan_manager import ScanManager
from app.scoring.scorer import ScoreBreakdown, score_snapshot

logger = logging.getLogger("surgescan.screener")

MARKETS = {
    "ALL": ("KOSPI", "KOSDAQ"),
    "KOSPI": ("KOSPI",),
    "KOSDAQ": ("KOSDAQ",),
}
DNA_WINDOW = 25
CATEGORY_LIMIT = 10

CATEGORY_FILTERS: dict[str, Callable[[IndicatorSnapshot], bool]] = {
    "whale": lambda s: s.whale.detected,
    "accumulation": lambda s: s.accumulation.detected,
    "escape": lambda s: s.escape.detected,
    "drain": lambda s: s.drain.detected,
    "volume-surge": lambda s: s.volume_ratio >= 2.5,
}


@dataclass(frozen=True)
class ScreenResult:
    symbol: str
    name: str
    snapshot: IndicatorSnapshot
    breakdown: ScoreBreakdown
    patterns: PatternMatch
    dna: Optional[DNAMatch] = None

    @property
    def score(self) -> float:
        return self.breakdown.final_score

    @property
    def grade(self) -> str:
        return self.breakdown.grade

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "name": self.name,
            "score": round(self.score, 2),
            "grade": self.grade,
            "tier": self.snapshot.tier,
            "breakdown": self.breakdown.to_dict(),
            "indicators": self.snapshot.to_dict(),
            "patterns": self.patterns.to_dict(),
            "dna": self.dna.to_dict() if self.dna else None,
        }


@dataclass(frozen=True)
class ScreenReport:
    market: str
    screened_at: str
    results: tuple[ScreenResult, ...]
    report: BatchReport = field(default_factory=BatchReport)
    failures: tuple[Failure, ...] = ()
    category: Optional[str] = None
    cached: bool = False

    def to_dict(self) -> dict:
        return {
            "market": self.market,
            "category": self.category,
            "screened_at": self.screened_at,
            "cached": self.cached,
            "count": len(self.results),
            "results": [r.to_dict() for r in self.results],
            "report": self.report.to_dict(),
            "failures": [f.to_dict() for f in self.failures],
        }


class Screener:
    """Scores symbols with pattern and DNA bonuses.

    Args:
        source: Bar source (``KisClient`` or an archive).
        pattern_store: Published patterns; no pattern bonus when absent.
        dna_store: Active DNA profile; no DNA bonus when absent.
        scan_manager: Worker pool for universe screens.
        min_score: Screens keep results scoring at least this much.
        result_ttl_seconds: Lifetime of a cached universe screen.
        repo: Optional ``ScreenRepo`` every universe screen is written to.
    """

    def __init__(
        self,
        source,
        pattern_store: Optional[PatternStore] = None,
        dna_store: Optional[DnaStore] = None,
        scan_manager: Optional[ScanManager] = None,
        min_score: float = 30.0,
        result_ttl_seconds: float = 600.0,
        repo=None,
    ) -> None:
        self._source = source
        self._pattern_store = pattern_store
        self._dna_store = dna_store
        self._scan_manager = scan_manager or ScanManager()
        self._min_score = min_score
        self._ttl = result_ttl_seconds
        self._repo = repo
        self._cache: dict[str, TTLCache[ScreenReport]] = {}

    async def _flows(self, symbol: str) -> Optional[list[InvestorFlow]]:
        getter = getattr(self._source, "get_investor_flows", None)
        if getter is None:
            return None
        try:
            return await getter(symbol, MIN_BARS)
        except ExternalFetchError as exc:
            logger.debug("No investor flows for %s: %s", symbol, exc)
            return None

    def _name(self, symbol: str) -> str:
        lookup = getattr(self._source, "cached_name", None)
        return (lookup(symbol) if lookup else None) or symbol

    def score_bars(
        self,
        symbol: str,
        bars: list[Bar],
        flows: Optional[list[InvestorFlow]] = None,
        sentiment: Optional[float] = None,
    ) -> ScreenResult:
        """Score *bars* for *symbol*; raises ``InsufficientDataError``."""
        snapshot = build_snapshot(bars, symbol, flows)
        patterns = match_patterns(
            snapshot,
            self._pattern_store.patterns() if self._pattern_store else None,
        )

        dna = None
        profile = self._dna_store.load() if self._dna_store else None
        if profile is not None:
            candidate = build_symbol_pattern(
                symbol, bars[-DNA_WINDOW:], flows[-DNA_WINDOW:] if flows else None
            )
            dna = match_score(candidate, profile)

        breakdown = score_snapshot(
            snapshot,
            pattern_win_rates=patterns.win_rates,
            dna_score=dna.total_score if dna else None,
            sentiment=sentiment,
        )
        return ScreenResult(
            symbol=symbol,
            name=self._name(symbol),
            snapshot=snapshot,
            breakdown=breakdown,
            patterns=patterns,
            dna=dna,
        )

    async def _analyze(self, symbol: str) -> ScreenResult:
        bars = await self._source.get_daily_bars(symbol, MIN_BARS)
        flows = await self._flows(symbol)
        return self.score_bars(symbol, bars, flows)

    async def analyze(
        self, symbol: str, sentiment: Optional[float] = None
    ) -> Union[ScreenResult, Failure]:
        """Analyse one symbol.  Errors come back as a ``Failure``."""
        try:
            bars = await self._source.get_daily_bars(symbol, MIN_BARS)
            flows = await self._flows(symbol)
            return self.score_bars(symbol, bars, flows, sentiment)
        except ScreenerError as exc:
            logger.warning("Analysis of %s failed: %s", symbol, exc)
            return Failure.from_exception(exc, symbol)

    async def screen(
        self,
        market: str = "ALL",
        limit: int = 10,
        category: Optional[str] = None,
        refresh: bool = False,
    ) -> Union[ScreenReport, Failure]:
        """Screen the ranking universe of *market*.

        Args:
            market: ``ALL``, ``KOSPI`` or ``KOSDAQ``.
            limit: Results returned, best score first.
            category: Optional detector filter, one of ``CATEGORY_FILTERS``.
            refresh: Ignore a cached screen.
        """
        market = market.upper()
        if market not in MARKETS:
            return Failure(
                kind=INPUT_VALIDATION,
                message=f"Unknown market '{market}'. Available: {', '.join(MARKETS)}",
            )
        if category is not None and category not in CATEGORY_FILTERS:
            return Failure(
                kind=INPUT_VALIDATION,
                message=(
                    f"Unknown category '{category}'. "
                    f"Available: {', '.join(CATEGORY_FILTERS)}"
                ),
            )
        if limit < 1:
            return Failure(
                kind=INPUT_VALIDATION, message=f"limit must be at least 1, got {limit}"
            )

        cache = self._cache.setdefault(market, TTLCache(self._ttl))
        full = None if refresh else cache.get()
        cached = full is not None
        if full is None:
            full = await self._screen_universe(market)
            if isinstance(full, Failure):
                return full
            cache.set(full)

        results = full.results
        if category is not None:
            keep = CATEGORY_FILTERS[category]
            results = tuple(r for r in results if keep(r.snapshot))
            limit = min(limit, CATEGORY_LIMIT)
        return ScreenReport(
            market=market,
            screened_at=full.screened_at,
            results=results[:limit],
            report=full.report,
            failures=full.failures,
            category=category,
            cached=cached,
        )

    async def _screen_universe(self, market: str) -> Union[ScreenReport, Failure]:
        try:
            universe = await self._source.get_universe(markets=MARKETS[market])
        except ExternalFetchError as exc:
            return Failure.from_exception(exc)
        symbols = [s.code for s in universe]
        logger.info("Screening %d %s symbols", len(symbols), market)

        outcome = await self._scan_manager.run(symbols, self._analyze)
        kept = sorted(
            (r for r in outcome.results if r.score >= self._min_score),
            key=lambda r: r.score,
            reverse=True,
        )
        screened_at = datetime.now(timezone.utc).isoformat()
        logger.info(
            "Screen complete: %d analyzed, %d at or above %.0f, %d failed",
            outcome.report.analyzed, len(kept), self._min_score,
            outcome.report.failed,
        )

        if self._repo is not None and kept:
            self._repo.insert_results(
                screened_at,
                [
                    {
                        "symbol": r.symbol,
                        "name": r.name,
                        "score": r.score,
                        "grade": r.grade,
                        "breakdown": r.breakdown.to_dict(),
                    }
                    for r in kept
                ],
            )
        return ScreenReport(
            market=market,
            screened_at=screened_at,
            results=tuple(kept),
            report=outcome.report,
            failures=outcome.failures,
        )
