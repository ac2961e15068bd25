"""Composite scorer — snapshot (+ optional context) → bounded score and grade.

Pure and read-only; callers own persistence.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from app.analysis.models import IndicatorSnapshot
from app.scoring.terms import (
    ADVANCED_TERMS,
    BASE_WEIGHT,
    BONUS_TERMS,
    PENALTY_TERMS,
    ScoreInputs,
    ScoreLine,
    fold_terms,
)

# Ordered high → low; a score takes the first grade whose floor it meets.
GRADE_THRESHOLDS: tuple[tuple[str, float], ...] = (
    ("S", 75.0),
    ("A", 58.0),
    ("B", 42.0),
    ("C", 25.0),
    ("D", 0.0),
)


@dataclass(frozen=True)
class ScoreBreakdown:
    """Result of scoring one snapshot.

    ``final_score == clamp(base_score + Σbonuses − Σpenalties, 0, 100)``.
    """

    base_score: float
    advanced_total: float
    advanced: tuple[ScoreLine, ...]
    bonuses: tuple[ScoreLine, ...]
    penalties: tuple[ScoreLine, ...]
    final_score: float
    grade: str

    @property
    def bonus_total(self) -> float:
        return sum(line.value for line in self.bonuses)

    @property
    def penalty_total(self) -> float:
        return sum(line.value for line in self.penalties)

    def to_dict(self) -> dict:
        return {
            "base_score": round(self.base_score, 2),
            "advanced_total": round(self.advanced_total, 2),
            "advanced": [line.to_dict() for line in self.advanced],
            "bonuses": [line.to_dict() for line in self.bonuses],
            "penalties": [line.to_dict() for line in self.penalties],
            "final_score": round(self.final_score, 2),
            "grade": self.grade,
        }


def assign_grade(score: float, hot_issue: bool = False) -> str:
    """Map a final score in ``[0, 100]`` to its grade.

    ``hot_issue`` upgrades ``S`` to ``S+`` and has no other effect.
    """
    for grade, floor in GRADE_THRESHOLDS:
        if score >= floor:
            if grade == "S" and hot_issue:
                return "S+"
            return grade
    return GRADE_THRESHOLDS[-1][0]


def score_snapshot(
    snapshot: IndicatorSnapshot,
    pattern_win_rates: Iterable[float] = (),
    dna_score: Optional[float] = None,
    sentiment: Optional[float] = None,
    hot_issue: bool = False,
) -> ScoreBreakdown:
    """Score *snapshot*.

    Args:
        snapshot: Indicators for the symbol's latest bar.
        pattern_win_rates: Win rates of stored patterns the snapshot matches.
        dna_score: DNA match total against the active profile, if any.
        sentiment: External trend score in ``[0, 100]``; ``None`` counts as 0.
        hot_issue: Upgrade an ``S`` grade to ``S+``.

    Returns:
        A ``ScoreBreakdown`` with every term line reported.
    """
    inputs = ScoreInputs(
        snapshot=snapshot,
        pattern_win_rates=tuple(pattern_win_rates),
        dna_score=dna_score,
        sentiment=sentiment,
    )
    advanced, advanced_sum = fold_terms(ADVANCED_TERMS, inputs)
    bonuses, bonus_sum = fold_terms(BONUS_TERMS, inputs)
    penalties, penalty_sum = fold_terms(PENALTY_TERMS, inputs)

    base = advanced_sum * BASE_WEIGHT
    final = min(max(base + bonus_sum - penalty_sum, 0.0), 100.0)

    return ScoreBreakdown(
        base_score=base,
        advanced_total=advanced_sum,
        advanced=advanced,
        bonuses=bonuses,
        penalties=penalties,
        final_score=final,
        grade=assign_grade(final, hot_issue),
    )
