"""DNA extractor — common volume/flow signature of past surges.

Profiles are built from user-chosen exemplars (symbol + date range) and
then used to score the current market.  ``analyze_volume_pattern``,
``analyze_flows``, ``extract_profile`` and ``match_score`` are pure; the
``DnaExtractor`` owns the fetching.
"""

import dataclasses
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional, Protocol, Union

import numpy as np

from app.market.models import Bar, InvestorFlow, RankedSymbol
from app.models.results import (
    INPUT_VALIDATION,
    ExternalFetchError,
    Failure,
    InputValidationError,
    InsufficientDataError,
    ScreenerError,
)
from app.dna.models import (
    FOREIGN_KEY,
    INSTITUTION_KEY,
    DNAExtraction,
    DNAMatch,
    DNAProfile,
    DNAScanResult,
    Exemplar,
    FlowPattern,
    SegmentAverages,
    SymbolPattern,
    VolumePattern,
)
from app.scan_manager import ScanManager

logger = logging.getLogger("surgescan.dna")

MIN_PATTERN_BARS = 10
MIN_EXEMPLARS = 2
EXEMPLAR_FETCH_BARS = 40
EMA_DECAY = 5.0
THRESHOLD_FACTOR = 0.7
ACCELERATING_SHARE = 0.6


class DnaSource(Protocol):
    async def get_daily_bars(
        self, symbol: str, count: int = 30, end_date: Optional[str] = None
    ) -> list[Bar]: ...

    async def get_investor_flows(
        self, symbol: str, count: int = 30
    ) -> list[InvestorFlow]: ...

    async def get_universe(
        self, markets: tuple[str, ...] = ("KOSPI", "KOSDAQ"),
        per_ranking: int = 30,
    ) -> list[RankedSymbol]: ...


# ── Volume pattern ───────────────────────────────────────────────────────


def volume_change_rates(bars: list[Bar]) -> list[float]:
    """Day-over-day volume change in percent; the first bar is 0."""
    rates = [0.0]
    for prev, cur in zip(bars, bars[1:]):
        if prev.volume > 0:
            rates.append((cur.volume - prev.volume) / prev.volume * 100)
        else:
            rates.append(0.0)
    return rates


def _segment_trend(early: float, mid: float, late: float) -> str:
    if late > mid > early:
        return "accelerating"
    if late < mid < early:
        return "decelerating"
    return "mixed"


def segment_averages(values: list[float]) -> SegmentAverages:
    """Split at 40 % / 70 % and weight the segments 0.2 / 0.3 / 0.5."""
    n = len(values)
    if n == 0:
        return SegmentAverages(0.0, 0.0, 0.0, 0.0, "flat")
    first, second = int(n * 0.4), int(n * 0.7)

    def _mean(part: list[float]) -> float:
        return float(np.mean(part)) if part else 0.0

    early = _mean(values[:first])
    mid = _mean(values[first:second])
    late = _mean(values[second:])
    return SegmentAverages(
        early=early,
        mid=mid,
        late=late,
        overall=0.2 * early + 0.3 * mid + 0.5 * late,
        trend=_segment_trend(early, mid, late),
    )


def weighted_average(values: list[float], decay: float = EMA_DECAY) -> float:
    """Exponentially time-weighted mean, the latest value weighing most."""
    if not values:
        return 0.0
    n = len(values)
    weights = np.exp(-(n - 1 - np.arange(n)) / decay)
    return float(np.dot(weights, values) / weights.sum())


def analyze_volume_pattern(bars: list[Bar]) -> VolumePattern:
    """Summarise the volume change rates over *bars*.

    Raises ``InsufficientDataError`` below 10 bars.
    """
    if len(bars) < MIN_PATTERN_BARS:
        raise InsufficientDataError(
            f"Need at least {MIN_PATTERN_BARS} bars for a volume pattern, "
            f"got {len(bars)}"
        )
    rates = volume_change_rates(bars)
    ema = weighted_average(rates)
    segments = segment_averages(rates)
    recent = float(np.mean(rates[-5:]))
    return VolumePattern(
        overall_avg=float(np.mean(rates)),
        ema_avg=ema,
        segments=segments,
        recent_5d=recent,
        composite_score=0.4 * ema + 0.3 * segments.overall + 0.3 * recent,
        urgency="high" if recent > ema else "normal",
    )


# ── Flow pattern ─────────────────────────────────────────────────────────


def analyze_flows(net_buys: list[int]) -> Optional[FlowPattern]:
    """Net-buy total and the buying streak ending on the latest day.

    Returns ``None`` when there is no flow data.
    """
    if not net_buys:
        return None
    streak = 0
    for value in reversed(net_buys):
        if value <= 0:
            break
        streak += 1
    total = int(sum(net_buys))
    return FlowPattern(
        total=total,
        consecutive_days=streak,
        avg_daily=total / len(net_buys),
    )


def build_symbol_pattern(
    symbol: str,
    bars: list[Bar],
    flows: Optional[list[InvestorFlow]] = None,
) -> SymbolPattern:
    flows = flows or []
    return SymbolPattern(
        symbol=symbol,
        volume=analyze_volume_pattern(bars),
        institution=analyze_flows([f.institution_net_buy for f in flows]),
        foreign=analyze_flows([f.foreign_net_buy for f in flows]),
        start_date=bars[0].date,
        end_date=bars[-1].date,
        days=len(bars),
    )


# ── Profile ──────────────────────────────────────────────────────────────


def _common_intensity(flows: list[FlowPattern]) -> str:
    strong = sum(1 for f in flows if f.intensity == "strong") / len(flows)
    moderate = sum(
        1 for f in flows if f.intensity in ("strong", "moderate")
    ) / len(flows)
    if strong >= 0.6:
        return "strong"
    if moderate >= 0.3:
        return "moderate"
    return "weak"


def extract_profile(patterns: list[SymbolPattern]) -> DNAProfile:
    """Average the exemplar patterns and derive per-indicator thresholds.

    Each threshold is 0.7 × the weakest exemplar's value.  Flow categories
    enter the profile only when at least one exemplar carried flow data.

    Raises ``InputValidationError`` with fewer than two patterns.
    """
    if len(patterns) < MIN_EXEMPLARS:
        raise InputValidationError(
            f"Need at least {MIN_EXEMPLARS} valid exemplars, got {len(patterns)}"
        )

    averages: dict[str, float] = {}
    thresholds: dict[str, float] = {}

    def _add(key: str, values: list[float]) -> None:
        averages[key] = float(np.mean(values))
        thresholds[key] = THRESHOLD_FACTOR * min(values)

    _add("ema_avg", [p.volume.ema_avg for p in patterns])
    _add("recent_5d", [p.volume.recent_5d for p in patterns])

    intensity: dict[str, str] = {}
    institution = [p.institution for p in patterns if p.institution]
    foreign = [p.foreign for p in patterns if p.foreign]
    if institution:
        _add(INSTITUTION_KEY, [f.consecutive_days for f in institution])
        intensity["institution"] = _common_intensity(institution)
    if foreign:
        _add(FOREIGN_KEY, [f.consecutive_days for f in foreign])
        intensity["foreign"] = _common_intensity(foreign)

    accelerating = sum(
        1 for p in patterns if p.volume.segments.trend == "accelerating"
    )
    common_trend = (
        "accelerating"
        if accelerating / len(patterns) >= ACCELERATING_SHARE
        else "mixed"
    )

    strength = 40.0
    if institution:
        strength += 30
    if foreign:
        strength += 30
    if len(patterns) >= 3:
        strength += 10
    if len(patterns) >= 5:
        strength += 10

    return DNAProfile(
        averages=averages,
        thresholds=thresholds,
        common_trend=common_trend,
        strength_score=min(100.0, strength),
        based_on=len(patterns),
        extracted_at=datetime.now(timezone.utc).isoformat(),
        symbols=tuple(p.symbol for p in patterns),
        flow_intensity=intensity,
    )


# ── Matching ─────────────────────────────────────────────────────────────


def threshold_score(value: float, threshold: float) -> float:
    """0–100 score of *value* against *threshold*.

    At or above the threshold scores 100.  Below it the score is
    ``100 × value / threshold`` clamped to [0, 100]; a zero threshold
    scores 0.
    """
    if value >= threshold:
        return 100.0
    if threshold == 0:
        return 0.0
    ratio = value / threshold
    return max(0.0, min(100.0, ratio * 100))


def match_score(candidate: SymbolPattern, profile: DNAProfile) -> DNAMatch:
    """Score *candidate* against *profile* per category and overall.

    The total is the mean over the categories the profile and the candidate
    both have; volume is always present.
    """
    details: dict[str, float] = {}
    volume = candidate.volume
    details["volume"] = (
        threshold_score(volume.ema_avg, profile.thresholds["ema_avg"])
        + threshold_score(volume.recent_5d, profile.thresholds["recent_5d"])
    ) / 2

    if profile.has_institution and candidate.institution is not None:
        details["institution"] = threshold_score(
            candidate.institution.consecutive_days,
            profile.thresholds[INSTITUTION_KEY],
        )
    if profile.has_foreign and candidate.foreign is not None:
        details["foreign"] = threshold_score(
            candidate.foreign.consecutive_days,
            profile.thresholds[FOREIGN_KEY],
        )

    total = sum(details.values()) / len(details)
    return DNAMatch(
        symbol=candidate.symbol,
        total_score=total,
        details={k: round(v, 2) for k, v in details.items()},
        pattern=candidate,
    )


# ── Extractor ────────────────────────────────────────────────────────────


def _validate_date(value: str) -> None:
    try:
        datetime.strptime(value, "%Y%m%d")
    except ValueError:
        raise InputValidationError(
            f"Invalid date '{value}', expected YYYYMMDD"
        ) from None


class DnaExtractor:
    """Fetches exemplar windows, builds profiles and scans for matches."""

    def __init__(
        self,
        source: DnaSource,
        scan_manager: Optional[ScanManager] = None,
    ) -> None:
        self._source = source
        self._scan_manager = scan_manager or ScanManager()

    async def _flows(
        self, symbol: str, count: int
    ) -> Optional[list[InvestorFlow]]:
        getter = getattr(self._source, "get_investor_flows", None)
        if getter is None:
            return None
        try:
            return await getter(symbol, count)
        except ExternalFetchError as exc:
            logger.warning("Investor flows unavailable for %s: %s", symbol, exc)
            return None

    async def extract_exemplar(self, exemplar: Exemplar) -> SymbolPattern:
        """Pattern of one exemplar's date range (both ends inclusive).

        Flow data is best-effort; a failed flow fetch leaves the flow
        categories empty.
        """
        _validate_date(exemplar.start_date)
        _validate_date(exemplar.end_date)
        if exemplar.start_date > exemplar.end_date:
            raise InputValidationError(
                f"{exemplar.symbol}: start {exemplar.start_date} is after "
                f"end {exemplar.end_date}"
            )

        span = (
            datetime.strptime(exemplar.end_date, "%Y%m%d")
            - datetime.strptime(exemplar.start_date, "%Y%m%d")
        ).days
        bars = await self._source.get_daily_bars(
            exemplar.symbol,
            max(EXEMPLAR_FETCH_BARS, span + 10),
            end_date=exemplar.end_date,
        )
        window = [
            b for b in bars
            if exemplar.start_date <= b.date <= exemplar.end_date
        ]
        if len(window) < MIN_PATTERN_BARS:
            raise InsufficientDataError(
                f"{exemplar.symbol}: {len(window)} bars between "
                f"{exemplar.start_date} and {exemplar.end_date}, "
                f"need {MIN_PATTERN_BARS}"
            )

        flows = await self._flows(exemplar.symbol, EXEMPLAR_FETCH_BARS)
        if flows:
            flows = [
                f for f in flows
                if exemplar.start_date <= f.date <= exemplar.end_date
            ]
        pattern = build_symbol_pattern(exemplar.symbol, window, flows)
        logger.info(
            "Exemplar %s %s-%s: ema %.1f, recent5d %.1f, trend %s",
            exemplar.symbol, pattern.start_date, pattern.end_date,
            pattern.volume.ema_avg, pattern.volume.recent_5d,
            pattern.volume.segments.trend,
        )
        return pattern

    async def extract(
        self, exemplars: list[Exemplar]
    ) -> Union[DNAExtraction, Failure]:
        """Extract a profile from *exemplars*.

        Exemplars that cannot be analysed are reported and skipped.
        Returns an ``input_validation`` ``Failure`` when fewer than two
        remain.
        """
        if len(exemplars) < MIN_EXEMPLARS:
            return Failure(
                kind=INPUT_VALIDATION,
                message=(
                    f"Need at least {MIN_EXEMPLARS} exemplars, "
                    f"got {len(exemplars)}"
                ),
            )

        # Keyed by position: one symbol may appear with several windows.
        keys = [f"{i}:{e.symbol}" for i, e in enumerate(exemplars)]

        async def _worker(key: str) -> Union[tuple[int, SymbolPattern], Failure]:
            index = int(key.split(":", 1)[0])
            exemplar = exemplars[index]
            try:
                return index, await self.extract_exemplar(exemplar)
            except ScreenerError as exc:
                return dataclasses.replace(
                    Failure.from_exception(exc, exemplar.symbol),
                    details={
                        "start_date": exemplar.start_date,
                        "end_date": exemplar.end_date,
                    },
                )

        outcome = await self._scan_manager.run(keys, _worker)
        patterns = [pattern for _, pattern in sorted(outcome.results)]
        if len(patterns) < MIN_EXEMPLARS:
            return Failure(
                kind=INPUT_VALIDATION,
                message=(
                    f"Need at least {MIN_EXEMPLARS} valid exemplars, "
                    f"got {len(patterns)}"
                ),
                details={"errors": [f.to_dict() for f in outcome.failures]},
            )

        profile = extract_profile(patterns)
        logger.info(
            "DNA profile from %d exemplars: trend %s, strength %.0f",
            profile.based_on, profile.common_trend, profile.strength_score,
        )
        return DNAExtraction(
            profile=profile,
            patterns=tuple(patterns),
            failures=outcome.failures,
        )

    async def scan(
        self,
        profile: DNAProfile,
        symbols: Optional[Iterable[str]] = None,
        match_threshold: float = 70.0,
        limit: int = 10,
        days: int = 25,
    ) -> Union[DNAScanResult, Failure]:
        """Score current symbols against *profile*.

        Args:
            profile: Profile from ``extract``.
            symbols: Candidates; the source's ranking universe when omitted.
            match_threshold: Minimum total score (0–100) to report.
            limit: Maximum matches returned, best first.
            days: Recent bars analysed per candidate.
        """
        if not 0 <= match_threshold <= 100:
            return Failure(
                kind=INPUT_VALIDATION,
                message=f"match_threshold must be in [0, 100], got {match_threshold}",
            )
        if limit < 1:
            return Failure(
                kind=INPUT_VALIDATION,
                message=f"limit must be at least 1, got {limit}",
            )
        if days < MIN_PATTERN_BARS:
            return Failure(
                kind=INPUT_VALIDATION,
                message=f"days must be at least {MIN_PATTERN_BARS}, got {days}",
            )

        if symbols is None:
            try:
                symbols = [s.code for s in await self._source.get_universe()]
            except ExternalFetchError as exc:
                return Failure.from_exception(exc)
        symbols = list(symbols)
        wants_flows = profile.has_institution or profile.has_foreign

        async def _worker(symbol: str) -> Optional[DNAMatch]:
            bars = await self._source.get_daily_bars(symbol, days)
            flows = await self._flows(symbol, days) if wants_flows else None
            match = match_score(build_symbol_pattern(symbol, bars, flows), profile)
            if match.total_score < match_threshold:
                return None
            return match

        logger.info(
            "DNA scan of %d symbols (threshold %.0f, %d days)",
            len(symbols), match_threshold, days,
        )
        outcome = await self._scan_manager.run(symbols, _worker)
        matches = sorted(
            outcome.results, key=lambda m: m.total_score, reverse=True
        )[:limit]
        return DNAScanResult(
            matches=tuple(matches),
            report=outcome.report,
            failures=outcome.failures,
        )
