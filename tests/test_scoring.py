"""Deterministic tests for the composite scorer and grade lookup."""

import dataclasses

import pytest

from app.analysis.models import IndicatorSnapshot, WhaleResult, WhaleSignal
from app.analysis.snapshot import build_snapshot
from app.market.models import Bar
from app.scoring.scorer import GRADE_THRESHOLDS, assign_grade, score_snapshot
from app.scoring.terms import ADVANCED_TERMS, ScoreInputs, ScoreTerm, advanced_total, fold_terms


def _flat_snapshot(**overrides) -> IndicatorSnapshot:
    bars = [
        Bar(date=f"202401{i + 1:02d}", open=100, high=101, low=99, close=100, volume=1000)
        for i in range(30)
    ]
    snap = build_snapshot(bars, symbol="005930")
    return dataclasses.replace(snap, **overrides)


def _whale(intensity: float) -> WhaleResult:
    return WhaleResult(
        signals=(WhaleSignal("20240130", "buy", 3.0, 4.0, intensity, 10.0),)
    )


def _line(lines, name):
    return next(line for line in lines if line.name == name)


class TestTerms:
    def test_term_clamps_to_cap(self):
        term = ScoreTerm("big", lambda i: 40.0, 25)
        line = term.evaluate(ScoreInputs(snapshot=_flat_snapshot()))
        assert line.raw == 40.0
        assert line.value == 25
        assert line.active is True

    def test_negative_raw_is_zero(self):
        term = ScoreTerm("neg", lambda i: -5.0, 10)
        line = term.evaluate(ScoreInputs(snapshot=_flat_snapshot()))
        assert line.value == 0.0
        assert line.active is False

    def test_fold_sums_capped_values(self):
        terms = (
            ScoreTerm("a", lambda i: 30.0, 25),
            ScoreTerm("b", lambda i: 5.0, 10),
        )
        lines, total = fold_terms(terms, ScoreInputs(snapshot=_flat_snapshot()))
        assert [line.value for line in lines] == [25, 5.0]
        assert total == 30.0

    def test_caps_independent_of_order(self):
        snap = _flat_snapshot(whale=_whale(40.0))
        inputs = ScoreInputs(snapshot=snap)
        _, forward = fold_terms(ADVANCED_TERMS, inputs)
        _, backward = fold_terms(tuple(reversed(ADVANCED_TERMS)), inputs)
        assert forward == pytest.approx(backward)


class TestScoreSnapshot:
    def test_flat_snapshot(self):
        # Doji bars leave no down volume, so asymmetric volume hits its cap
        breakdown = score_snapshot(_flat_snapshot())
        assert breakdown.advanced_total == pytest.approx(10.0)
        assert breakdown.base_score == pytest.approx(6.0)
        assert breakdown.final_score == pytest.approx(6.0)
        assert breakdown.grade == "D"

    def test_whale_capped_at_25(self):
        breakdown = score_snapshot(_flat_snapshot(whale=_whale(80.0)))
        line = _line(breakdown.advanced, "whale")
        assert line.raw == 80.0
        assert line.value == 25
        assert breakdown.advanced_total == pytest.approx(35.0)

    def test_final_score_invariant(self):
        snap = _flat_snapshot(whale=_whale(12.0), mfi=25.0, volume_ratio=2.5)
        breakdown = score_snapshot(snap, pattern_win_rates=[80.0], dna_score=60.0, sentiment=45.0)
        expected = (
            breakdown.base_score + breakdown.bonus_total - breakdown.penalty_total
        )
        assert breakdown.final_score == pytest.approx(min(max(expected, 0), 100))
        assert _line(breakdown.bonuses, "mfi_oversold").value == 20.0
        assert _line(breakdown.bonuses, "volume_surge").value == 10.0
        assert _line(breakdown.bonuses, "pattern_match").value == pytest.approx(12.0)
        assert _line(breakdown.bonuses, "dna_match").value == pytest.approx(9.0)
        assert _line(breakdown.bonuses, "sentiment").value == pytest.approx(4.5)

    def test_pattern_bonus_capped(self):
        breakdown = score_snapshot(_flat_snapshot(), pattern_win_rates=[100.0, 100.0])
        line = _line(breakdown.bonuses, "pattern_match")
        assert line.raw == pytest.approx(30.0)
        assert line.value == 20

    def test_missing_sentiment_is_zero(self):
        breakdown = score_snapshot(_flat_snapshot(), sentiment=None)
        assert _line(breakdown.bonuses, "sentiment").value == 0.0
        assert _line(breakdown.bonuses, "sentiment").active is False

    def test_penalties_clamp_to_zero(self):
        overheat = dataclasses.replace(_flat_snapshot().overheating, score_penalty=50.0)
        breakdown = score_snapshot(_flat_snapshot(mfi=95.0, overheating=overheat))
        assert breakdown.penalty_total == pytest.approx(60.0)
        assert breakdown.final_score == 0.0
        assert breakdown.grade == "D"

    def test_bonuses_clamp_to_100(self):
        snap = _flat_snapshot(whale=_whale(100.0), mfi=10.0, volume_ratio=5.0)
        accumulation = dataclasses.replace(snap.accumulation, detected=True, score=100.0)
        snap = dataclasses.replace(snap, accumulation=accumulation)
        breakdown = score_snapshot(
            snap, pattern_win_rates=[100.0, 100.0], dna_score=100.0,
            sentiment=100.0,
        )
        assert breakdown.final_score == 100.0
        assert breakdown.grade == "S"

    def test_hot_issue_upgrades_s(self):
        snap = _flat_snapshot(whale=_whale(100.0), mfi=10.0, volume_ratio=5.0)
        breakdown = score_snapshot(
            snap, pattern_win_rates=[100.0, 100.0], dna_score=100.0,
            sentiment=100.0, hot_issue=True,
        )
        assert breakdown.grade == "S+"

    def test_advanced_total_matches_breakdown(self):
        snap = _flat_snapshot(whale=_whale(7.0))
        assert advanced_total(snap) == pytest.approx(score_snapshot(snap).advanced_total)

    def test_to_dict(self):
        out = score_snapshot(_flat_snapshot()).to_dict()
        assert set(out) >= {"base_score", "bonuses", "penalties", "final_score", "grade"}
        assert all("cap" in line for line in out["bonuses"])


class TestGrades:
    @pytest.mark.parametrize(
        "score,grade",
        [
            (100.0, "S"), (75.0, "S"), (74.99, "A"), (58.0, "A"),
            (57.99, "B"), (42.0, "B"), (41.99, "C"), (25.0, "C"),
            (24.99, "D"), (0.0, "D"),
        ],
    )
    def test_thresholds(self, score, grade):
        assert assign_grade(score) == grade

    def test_thresholds_partition_range(self):
        floors = [floor for _, floor in GRADE_THRESHOLDS]
        assert floors == sorted(floors, reverse=True)
        assert floors[-1] == 0.0
        for score in range(0, 101):
            assert assign_grade(float(score)) in {g for g, _ in GRADE_THRESHOLDS}

    def test_hot_issue_only_affects_s(self):
        assert assign_grade(80.0, hot_issue=True) == "S+"
        assert assign_grade(60.0, hot_issue=True) == "A"
