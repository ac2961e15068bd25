"""Analysis data models — detector outputs and the per-symbol snapshot."""

from dataclasses import asdict, dataclass, field
from typing import Optional


@dataclass(frozen=True)
class WhaleSignal:
    """One bar flagged by the whale detector."""

    date: str
    direction: str  # "buy" or "sell"
    volume_ratio: float
    price_change_pct: float
    intensity: float
    upper_shadow_pct: float
    upper_shadow_warning: bool = False


@dataclass(frozen=True)
class WhaleResult:
    signals: tuple[WhaleSignal, ...] = ()

    @property
    def detected(self) -> bool:
        return len(self.signals) > 0

    @property
    def count(self) -> int:
        return len(self.signals)

    @property
    def max_intensity(self) -> float:
        return max((s.intensity for s in self.signals), default=0.0)

    @property
    def latest_intensity(self) -> float:
        return self.signals[-1].intensity if self.signals else 0.0


@dataclass(frozen=True)
class AccumulationResult:
    detected: bool
    price_volatility_pct: float  # stdev/mean of close, in %
    volume_growth_pct: float
    score: float


@dataclass(frozen=True)
class EscapeResult:
    detected: bool
    resistance: float
    breakout_pct: float
    volume_ratio: float
    closing_strength: float
    upper_shadow_pct: float
    high_decline_pct: float
    momentum: float

    @property
    def score(self) -> float:
        return self.momentum if self.detected else 0.0


@dataclass(frozen=True)
class DrainResult:
    detected: bool
    volume_decline_pct: float
    volatility_decline_pct: float
    score: float


@dataclass(frozen=True)
class AsymmetricResult:
    up_volume: int
    down_volume: int
    up_days: int
    down_days: int
    ratio: float
    score: float

    @property
    def signal(self) -> str:
        if self.ratio > 1.5:
            return "buying_pressure"
        if self.ratio < 0.7:
            return "selling_pressure"
        return "balanced"


@dataclass(frozen=True)
class LeadSignal:
    """Result of a lead detector (gradual accumulation, smart money, ...).

    ``metrics`` holds the detector-specific measurements.
    """

    detected: bool
    score: float
    metrics: dict = field(default_factory=dict)
    ready_in: Optional[str] = None


@dataclass(frozen=True)
class OverheatResult:
    warning: bool
    pullback_warning: bool
    heat_score: float
    surge_pct: float
    high_decline_pct: float
    closing_strength: float
    score_penalty: float  # positive magnitude subtracted from the score


@dataclass(frozen=True)
class FlowSignal:
    """Consecutive net-buy streak for one investor type."""

    consecutive_days: int
    total: int
    avg_daily: float

    @property
    def intensity(self) -> str:
        if self.consecutive_days >= 5:
            return "strong"
        if self.consecutive_days >= 3:
            return "moderate"
        return "weak"


@dataclass(frozen=True)
class InstitutionalFlowResult:
    institution: FlowSignal
    foreign: FlowSignal

    @property
    def detected(self) -> bool:
        return (
            self.institution.consecutive_days >= 3
            or self.foreign.consecutive_days >= 3
        )


@dataclass(frozen=True)
class IndicatorSnapshot:
    """Derived indicators for one symbol as of its latest bar.

    Recomputed on demand from bars; never persisted as a source of truth.
    """

    symbol: str
    as_of: str
    close: float
    volume: int
    obv: float
    obv_trend: str
    mfi: float
    vwap: float
    ad_line: float
    volume_ma5: float
    volume_ma20: float
    volume_ratio: float
    closing_strength: float
    whale: WhaleResult
    accumulation: AccumulationResult
    escape: EscapeResult
    drain: DrainResult
    asymmetric: AsymmetricResult
    gradual_accumulation: LeadSignal
    smart_money: LeadSignal
    bottom_formation: LeadSignal
    breakout_preparation: LeadSignal
    overheating: OverheatResult
    institutional_flow: Optional[InstitutionalFlowResult] = None
    tier: str = "normal"  # "normal", "watch" or "buy"

    def to_dict(self) -> dict:
        out = asdict(self)
        out["whale"]["detected"] = self.whale.detected
        out["whale"]["max_intensity"] = self.whale.max_intensity
        out["escape"]["score"] = self.escape.score
        out["asymmetric"]["signal"] = self.asymmetric.signal
        return out
