"""Score term descriptors — named ``compute → raw`` functions with caps.

Every term computes its raw value from the inputs alone and is capped
against its own maximum before being summed; no term sees another term's
value.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from app.analysis.models import IndicatorSnapshot


@dataclass(frozen=True)
class ScoreInputs:
    """Everything a term may read.

    ``pattern_win_rates`` holds the win rates (0–100) of stored patterns the
    snapshot matches; ``dna_score`` is a DNA match total (0–100) and
    ``sentiment`` an external trend score (0–100).  ``None`` contributes 0.
    """

    snapshot: IndicatorSnapshot
    pattern_win_rates: tuple[float, ...] = ()
    dna_score: Optional[float] = None
    sentiment: Optional[float] = None


@dataclass(frozen=True)
class ScoreLine:
    """One evaluated term as reported in a breakdown."""

    name: str
    raw: float
    value: float
    cap: float
    active: bool

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "raw": round(self.raw, 4),
            "value": round(self.value, 4),
            "cap": self.cap,
            "active": self.active,
        }


@dataclass(frozen=True)
class ScoreTerm:
    name: str
    compute: Callable[[ScoreInputs], float]
    cap: float

    def evaluate(self, inputs: ScoreInputs) -> ScoreLine:
        """Compute the raw value and clamp it to ``[0, cap]``."""
        raw = float(self.compute(inputs))
        value = min(max(raw, 0.0), self.cap)
        return ScoreLine(
            name=self.name, raw=raw, value=value, cap=self.cap,
            active=value > 0,
        )


def fold_terms(
    terms: tuple[ScoreTerm, ...], inputs: ScoreInputs
) -> tuple[tuple[ScoreLine, ...], float]:
    """Evaluate *terms* left to right and return the lines and their sum."""
    lines: list[ScoreLine] = []
    total = 0.0
    for term in terms:
        line = term.evaluate(inputs)
        lines.append(line)
        total += line.value
    return tuple(lines), total


# ── Detector terms ───────────────────────────────────────────────────────


ADVANCED_TERMS: tuple[ScoreTerm, ...] = (
    ScoreTerm("whale", lambda i: i.snapshot.whale.max_intensity, 25),
    ScoreTerm(
        "silent_accumulation",
        lambda i: i.snapshot.accumulation.score / 2, 25,
    ),
    ScoreTerm("escape_velocity", lambda i: i.snapshot.escape.score, 30),
    ScoreTerm("liquidity_drain", lambda i: i.snapshot.drain.score / 5, 10),
    ScoreTerm(
        "asymmetric_volume", lambda i: i.snapshot.asymmetric.score / 5, 10,
    ),
    ScoreTerm(
        "gradual_accumulation",
        lambda i: i.snapshot.gradual_accumulation.score / 3, 15,
    ),
    ScoreTerm("smart_money", lambda i: i.snapshot.smart_money.score / 5, 10),
    ScoreTerm(
        "bottom_formation",
        lambda i: i.snapshot.bottom_formation.score / 3, 15,
    ),
    ScoreTerm(
        "breakout_preparation",
        lambda i: i.snapshot.breakout_preparation.score / 5, 20,
    ),
)

BASE_WEIGHT = 0.6


# ── Bonus and penalty terms ──────────────────────────────────────────────


def _volume_surge(inputs: ScoreInputs) -> float:
    ratio = inputs.snapshot.volume_ratio
    if ratio >= 3:
        return 20.0
    if ratio >= 2:
        return 10.0
    return 0.0


BONUS_TERMS: tuple[ScoreTerm, ...] = (
    ScoreTerm(
        "mfi_oversold",
        lambda i: 20.0 if i.snapshot.mfi <= 30 else 0.0, 20,
    ),
    ScoreTerm("volume_surge", _volume_surge, 20),
    ScoreTerm(
        "pattern_match",
        lambda i: sum(wr / 100 * 15 for wr in i.pattern_win_rates), 20,
    ),
    ScoreTerm("dna_match", lambda i: (i.dna_score or 0.0) * 0.15, 15),
    ScoreTerm("sentiment", lambda i: (i.sentiment or 0.0) / 10, 10),
)

PENALTY_TERMS: tuple[ScoreTerm, ...] = (
    ScoreTerm(
        "mfi_overbought",
        lambda i: 10.0 if i.snapshot.mfi >= 70 else 0.0, 10,
    ),
    ScoreTerm(
        "overheating", lambda i: i.snapshot.overheating.score_penalty, 50,
    ),
)


def advanced_total(snapshot: IndicatorSnapshot) -> float:
    """Sum of the capped detector terms for *snapshot*."""
    _, total = fold_terms(ADVANCED_TERMS, ScoreInputs(snapshot=snapshot))
    return total
