"""Pattern mining data models — surge events, patterns, mining results."""

from dataclasses import dataclass, field
from typing import Optional

from app.analysis.models import IndicatorSnapshot
from app.models.results import BatchReport


@dataclass(frozen=True)
class PatternFeatures:
    """The indicator values pattern predicates read."""

    whale_count: int
    accumulation: bool
    escape: bool
    drain: bool
    asymmetric_ratio: float
    volume_ratio: float
    mfi: float
    closing_strength: float
    whale_intensity: float = 0.0

    @classmethod
    def from_snapshot(cls, snapshot: IndicatorSnapshot) -> "PatternFeatures":
        return cls(
            whale_count=snapshot.whale.count,
            accumulation=snapshot.accumulation.detected,
            escape=snapshot.escape.detected,
            drain=snapshot.drain.detected,
            asymmetric_ratio=snapshot.asymmetric.ratio,
            volume_ratio=snapshot.volume_ratio,
            mfi=snapshot.mfi,
            closing_strength=snapshot.closing_strength,
            whale_intensity=snapshot.whale.latest_intensity,
        )

    def to_dict(self) -> dict:
        return {
            "whale_count": self.whale_count,
            "whale_intensity": round(self.whale_intensity, 4),
            "accumulation": self.accumulation,
            "escape": self.escape,
            "drain": self.drain,
            "asymmetric_ratio": round(self.asymmetric_ratio, 4),
            "volume_ratio": round(self.volume_ratio, 4),
            "mfi": round(self.mfi, 4),
            "closing_strength": round(self.closing_strength, 4),
        }


@dataclass(frozen=True)
class SurgeEvent:
    """A historical surge and the indicators on the bar before it.

    ``daily_return`` is the surge-day return for the basic miner and the
    10-bar return for the smart miner, in percent.
    """

    symbol: str
    event_date: str
    daily_return: float
    features: PatternFeatures
    name: str = ""
    snapshot: Optional[IndicatorSnapshot] = None

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "name": self.name,
            "event_date": self.event_date,
            "daily_return": round(self.daily_return, 2),
            "features": self.features.to_dict(),
        }


@dataclass(frozen=True)
class PatternBacktest:
    win_rate: float  # 0–100
    avg_return: float
    max_return: float
    min_return: float
    total_samples: int
    wins: int

    def to_dict(self) -> dict:
        return {
            "win_rate": round(self.win_rate, 2),
            "avg_return": round(self.avg_return, 2),
            "max_return": round(self.max_return, 2),
            "min_return": round(self.min_return, 2),
            "total_samples": self.total_samples,
            "wins": self.wins,
        }


@dataclass(frozen=True)
class Pattern:
    """A catalog predicate with its corpus statistics."""

    key: str
    name: str
    occurrence_count: int
    frequency: float  # % of the corpus
    sample_symbols: tuple[str, ...]
    backtest: PatternBacktest

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "name": self.name,
            "occurrence_count": self.occurrence_count,
            "frequency": round(self.frequency, 2),
            "sample_symbols": list(self.sample_symbols),
            "backtest": self.backtest.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Pattern":
        bt = data["backtest"]
        return cls(
            key=data["key"],
            name=data.get("name", data["key"]),
            occurrence_count=int(data.get("occurrence_count", 0)),
            frequency=float(data.get("frequency", 0.0)),
            sample_symbols=tuple(data.get("sample_symbols", ())),
            backtest=PatternBacktest(
                win_rate=float(bt["win_rate"]),
                avg_return=float(bt.get("avg_return", 0.0)),
                max_return=float(bt.get("max_return", 0.0)),
                min_return=float(bt.get("min_return", 0.0)),
                total_samples=int(bt.get("total_samples", 0)),
                wins=int(bt.get("wins", 0)),
            ),
        )


@dataclass(frozen=True)
class MiningResult:
    """Output of one mining run; replaces any earlier result wholesale."""

    generated_at: str
    miner: str  # "basic" or "smart"
    parameters: dict
    patterns: tuple[Pattern, ...]
    corpus: tuple[SurgeEvent, ...] = ()
    report: BatchReport = field(default_factory=BatchReport)
    phase_counts: dict = field(default_factory=dict)

    def to_dict(self, include_corpus: bool = False) -> dict:
        out = {
            "generated_at": self.generated_at,
            "miner": self.miner,
            "parameters": dict(self.parameters),
            "patterns": [p.to_dict() for p in self.patterns],
            "report": self.report.to_dict(),
        }
        if self.phase_counts:
            out["phase_counts"] = dict(self.phase_counts)
        if include_corpus:
            out["corpus"] = [e.to_dict() for e in self.corpus]
        return out

    @classmethod
    def from_dict(cls, data: dict) -> "MiningResult":
        """Rebuild a stored result; the corpus is not restored."""
        return cls(
            generated_at=data["generated_at"],
            miner=data.get("miner", "basic"),
            parameters=dict(data.get("parameters", {})),
            patterns=tuple(Pattern.from_dict(p) for p in data.get("patterns", [])),
            report=BatchReport(**data.get("report", {})),
            phase_counts=dict(data.get("phase_counts", {})),
        )
