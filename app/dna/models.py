"""DNA data models — per-symbol volume/flow patterns, profiles and matches."""

from dataclasses import dataclass, field
from typing import Optional

from app.models.results import BatchReport, Failure


@dataclass(frozen=True)
class Exemplar:
    """A past surge chosen by the user: symbol plus an inclusive date range."""

    symbol: str
    start_date: str  # YYYYMMDD
    end_date: str  # YYYYMMDD


@dataclass(frozen=True)
class SegmentAverages:
    """Early 40 % / mid 30 % / late 30 % averages of a series."""

    early: float
    mid: float
    late: float
    overall: float  # 0.2 × early + 0.3 × mid + 0.5 × late
    trend: str  # "accelerating", "decelerating", "mixed" or "flat"


@dataclass(frozen=True)
class VolumePattern:
    """Time-weighted summary of day-over-day volume change rates (%)."""

    overall_avg: float
    ema_avg: float
    segments: SegmentAverages
    recent_5d: float
    composite_score: float
    urgency: str  # "high" when recent_5d > ema_avg

    def to_dict(self) -> dict:
        return {
            "overall_avg": round(self.overall_avg, 2),
            "ema_avg": round(self.ema_avg, 2),
            "segments": {
                "early": round(self.segments.early, 2),
                "mid": round(self.segments.mid, 2),
                "late": round(self.segments.late, 2),
                "overall": round(self.segments.overall, 2),
                "trend": self.segments.trend,
            },
            "recent_5d": round(self.recent_5d, 2),
            "composite_score": round(self.composite_score, 2),
            "urgency": self.urgency,
        }


@dataclass(frozen=True)
class FlowPattern:
    """Net-buy summary for one investor type over a window."""

    total: int
    consecutive_days: int
    avg_daily: float

    @property
    def intensity(self) -> str:
        if self.consecutive_days >= 5:
            return "strong"
        if self.consecutive_days >= 3:
            return "moderate"
        return "weak"

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "consecutive_days": self.consecutive_days,
            "avg_daily": round(self.avg_daily, 2),
            "intensity": self.intensity,
        }


@dataclass(frozen=True)
class SymbolPattern:
    """Volume (and optional flow) pattern of one symbol over one window."""

    symbol: str
    volume: VolumePattern
    institution: Optional[FlowPattern] = None
    foreign: Optional[FlowPattern] = None
    start_date: str = ""
    end_date: str = ""
    days: int = 0

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "days": self.days,
            "volume": self.volume.to_dict(),
            "institution": self.institution.to_dict() if self.institution else None,
            "foreign": self.foreign.to_dict() if self.foreign else None,
        }


# Indicator keys per matching category.
VOLUME_KEYS = ("ema_avg", "recent_5d")
INSTITUTION_KEY = "institution_days"
FOREIGN_KEY = "foreign_days"


@dataclass(frozen=True)
class DNAProfile:
    """Common signature of a set of exemplars.

    ``averages`` and ``thresholds`` share keys: ``ema_avg`` and
    ``recent_5d`` always, ``institution_days`` / ``foreign_days`` only when
    some exemplar had flow data.
    """

    averages: dict
    thresholds: dict
    common_trend: str
    strength_score: float
    based_on: int
    extracted_at: str = ""
    symbols: tuple[str, ...] = ()
    flow_intensity: dict = field(default_factory=dict)

    @property
    def has_institution(self) -> bool:
        return INSTITUTION_KEY in self.thresholds

    @property
    def has_foreign(self) -> bool:
        return FOREIGN_KEY in self.thresholds

    def to_dict(self) -> dict:
        return {
            "averages": {k: round(v, 4) for k, v in self.averages.items()},
            "thresholds": {k: round(v, 4) for k, v in self.thresholds.items()},
            "common_trend": self.common_trend,
            "strength_score": self.strength_score,
            "based_on": self.based_on,
            "extracted_at": self.extracted_at,
            "symbols": list(self.symbols),
            "flow_intensity": dict(self.flow_intensity),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DNAProfile":
        return cls(
            averages={k: float(v) for k, v in data["averages"].items()},
            thresholds={k: float(v) for k, v in data["thresholds"].items()},
            common_trend=data.get("common_trend", "mixed"),
            strength_score=float(data.get("strength_score", 0.0)),
            based_on=int(data.get("based_on", 0)),
            extracted_at=data.get("extracted_at", ""),
            symbols=tuple(data.get("symbols", ())),
            flow_intensity=dict(data.get("flow_intensity", {})),
        )


@dataclass(frozen=True)
class DNAMatch:
    """Per-category match scores (0–100) and their mean."""

    symbol: str
    total_score: float
    details: dict = field(default_factory=dict)
    pattern: Optional[SymbolPattern] = None

    def to_dict(self) -> dict:
        out = {
            "symbol": self.symbol,
            "total_score": round(self.total_score, 2),
            "details": self.details,
        }
        if self.pattern is not None:
            out["pattern"] = self.pattern.to_dict()
        return out


@dataclass(frozen=True)
class DNAExtraction:
    """A profile plus the per-exemplar patterns and failures behind it."""

    profile: DNAProfile
    patterns: tuple[SymbolPattern, ...]
    failures: tuple[Failure, ...] = ()

    def to_dict(self) -> dict:
        return {
            "profile": self.profile.to_dict(),
            "patterns": [p.to_dict() for p in self.patterns],
            "failures": [f.to_dict() for f in self.failures],
        }


@dataclass(frozen=True)
class DNAScanResult:
    matches: tuple[DNAMatch, ...]
    report: BatchReport
    failures: tuple[Failure, ...] = ()

    def to_dict(self) -> dict:
        return {
            "matches": [m.to_dict() for m in self.matches],
            "report": self.report.to_dict(),
            "failures": [f.to_dict() for f in self.failures],
        }
