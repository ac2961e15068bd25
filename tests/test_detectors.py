"""Deterministic tests for the composite detectors and snapshot extraction."""

from datetime import date, timedelta

import pytest

from app.analysis.detectors import (
    calculate_asymmetric_volume,
    check_institutional_flow,
    check_overheating,
    detect_bottom_formation,
    detect_breakout_preparation,
    detect_escape_velocity,
    detect_gradual_accumulation,
    detect_liquidity_drain,
    detect_silent_accumulation,
    detect_smart_money,
    detect_whale,
    volume_increase_streak,
)
from app.analysis.models import IndicatorSnapshot
from app.analysis.snapshot import MIN_BARS, build_snapshot, extract_snapshot
from app.market.models import Bar, InvestorFlow
from app.models.results import Failure, InsufficientDataError


# ── Bar fixtures ─────────────────────────────────────────────────────────

def _date(i: int) -> str:
    return (date(2024, 1, 1) + timedelta(days=i)).strftime("%Y%m%d")


def _make_bar(i: int, o: float, h: float, l: float, c: float, vol: int = 1000) -> Bar:
    return Bar(date=_date(i), open=o, high=h, low=l, close=c, volume=vol)


def _flat_bars(n: int, price: float = 100.0, vol: int = 1000) -> list[Bar]:
    """Doji bars with a 2 % range around *price*."""
    return [_make_bar(i, price, price + 1, price - 1, price, vol) for i in range(n)]


def _with_latest(bars: list[Bar], o: float, h: float, l: float, c: float, vol: int) -> list[Bar]:
    i = len(bars) - 1
    return bars[:-1] + [_make_bar(i, o, h, l, c, vol)]


# ── Whale ────────────────────────────────────────────────────────────────

class TestWhale:
    def test_three_x_volume_four_pct_body_detected(self):
        bars = _with_latest(_flat_bars(30), 100, 104.5, 99.5, 104, 3000)
        result = detect_whale(bars)
        assert result.detected is True
        assert result.count == 1
        signal = result.signals[0]
        assert signal.direction == "buy"
        assert signal.volume_ratio == pytest.approx(3.0)
        assert signal.price_change_pct == pytest.approx(4.0)
        assert signal.intensity == pytest.approx(1.2)
        assert signal.upper_shadow_warning is False

    def test_two_x_volume_not_detected(self):
        bars = _with_latest(_flat_bars(30), 100, 104.5, 99.5, 104, 2000)
        assert detect_whale(bars).detected is False

    def test_small_body_not_detected(self):
        bars = _with_latest(_flat_bars(30), 100, 102.5, 99.5, 102, 5000)
        assert detect_whale(bars).detected is False

    def test_upper_shadow_halves_intensity(self):
        bars = _with_latest(_flat_bars(30), 100, 110, 99, 104, 3000)
        signal = detect_whale(bars).signals[0]
        assert signal.upper_shadow_warning is True
        assert signal.intensity == pytest.approx(0.6)

    def test_sell_whale(self):
        bars = _with_latest(_flat_bars(30), 100, 100.5, 95.5, 96, 3000)
        signal = detect_whale(bars).signals[0]
        assert signal.direction == "sell"
        assert signal.upper_shadow_warning is False

    def test_insufficient_data(self):
        with pytest.raises(InsufficientDataError):
            detect_whale(_flat_bars(29))


# ── Silent accumulation ──────────────────────────────────────────────────

class TestSilentAccumulation:
    def _bars(self, newer_vol: int) -> list[Bar]:
        bars = []
        for i in range(20):
            price = 100.0 if i % 2 == 0 else 101.0
            vol = 1000 if i < 10 else newer_vol
            bars.append(_make_bar(i, price, price + 0.5, price - 0.5, price, vol))
        return bars

    def test_detected(self):
        result = detect_silent_accumulation(self._bars(1300))
        assert result.detected is True
        assert result.volume_growth_pct == pytest.approx(30.0)
        assert result.score == pytest.approx(30.0)
        assert result.price_volatility_pct < 3.0

    def test_score_is_growth_above_floor(self):
        result = detect_silent_accumulation(self._bars(1250))
        assert result.detected is True
        assert result.score == pytest.approx(25.0)

    def test_growth_below_threshold(self):
        assert detect_silent_accumulation(self._bars(1150)).detected is False

    def test_flat_volume_not_detected(self):
        result = detect_silent_accumulation(self._bars(1000))
        assert result.detected is False
        assert result.score == 0.0

    def test_volatile_price_not_detected(self):
        bars = [
            _make_bar(i, p, p + 1, p - 1, p, 1000 if i < 10 else 2000)
            for i, p in enumerate([100.0, 120.0] * 10)
        ]
        assert detect_silent_accumulation(bars).detected is False


# ── Escape velocity ──────────────────────────────────────────────────────

class TestEscapeVelocity:
    def test_breakout_detected(self):
        bars = _with_latest(_flat_bars(30), 100, 106, 100, 106, 3000)
        result = detect_escape_velocity(bars)
        assert result.detected is True
        assert result.resistance == 101
        assert result.volume_ratio == pytest.approx(3.0)
        assert result.closing_strength == pytest.approx(100.0)
        expected_breakout = (106 - 101) / 101 * 100
        assert result.breakout_pct == pytest.approx(expected_breakout)
        assert result.momentum == pytest.approx(expected_breakout * 3.0)
        assert result.score == result.momentum

    def test_low_volume_not_detected(self):
        bars = _with_latest(_flat_bars(30), 100, 106, 100, 106, 1500)
        result = detect_escape_velocity(bars)
        assert result.detected is False
        assert result.momentum == 0.0
        assert result.score == 0.0

    def test_red_candle_not_detected(self):
        bars = _with_latest(_flat_bars(30), 107, 108, 102, 106, 3000)
        assert detect_escape_velocity(bars).detected is False


# ── Liquidity drain ──────────────────────────────────────────────────────

class TestLiquidityDrain:
    def test_detected(self):
        bars = [_make_bar(i, 100, 102, 98, 100, 2000) for i in range(20)]
        bars += [_make_bar(20 + i, 100, 100.5, 99.5, 100, 1000) for i in range(10)]
        result = detect_liquidity_drain(bars)
        assert result.detected is True
        assert result.volume_decline_pct == pytest.approx(-50.0)
        assert result.volatility_decline_pct == pytest.approx(-75.0)
        assert result.score == pytest.approx(125.0)

    def test_volume_only_not_detected(self):
        bars = [_make_bar(i, 100, 102, 98, 100, 2000) for i in range(20)]
        bars += [_make_bar(20 + i, 100, 102, 98, 100, 1000) for i in range(10)]
        result = detect_liquidity_drain(bars)
        assert result.detected is False
        assert result.score == 0.0


# ── Asymmetric volume ────────────────────────────────────────────────────

class TestAsymmetricVolume:
    def test_ratio_and_score(self):
        bars = [_make_bar(i, 100, 101.5, 99.5, 101, 2000) for i in range(10)]
        bars += [_make_bar(10 + i, 101, 101.5, 99.5, 100, 1000) for i in range(10)]
        result = calculate_asymmetric_volume(bars)
        assert result.up_days == 10
        assert result.down_days == 10
        assert result.ratio == pytest.approx(2.0)
        assert result.score == pytest.approx(50.0)
        assert result.signal == "buying_pressure"

    def test_no_down_volume(self):
        bars = [_make_bar(i, 100, 101.5, 99.5, 101, 2000) for i in range(20)]
        result = calculate_asymmetric_volume(bars)
        assert result.ratio == 100.0
        assert result.score == pytest.approx(4950.0)

    def test_doji_bars_ignored(self):
        result = calculate_asymmetric_volume(_flat_bars(20))
        assert result.up_volume == 0
        assert result.down_volume == 0


# ── Lead detectors ───────────────────────────────────────────────────────

class TestGradualAccumulation:
    def _bars(self) -> list[Bar]:
        volumes = (
            [1000] * 5 + [1200] * 5 + [1500] * 5 + [1700, 1800, 1900, 2000, 2100]
        )
        return [_make_bar(i, 100, 101, 99, 100, v) for i, v in enumerate(volumes)]

    def test_detected(self):
        result = detect_gradual_accumulation(self._bars())
        assert result.detected is True
        assert result.metrics["consecutive_days"] == 3
        assert result.metrics["growth_pct"] == pytest.approx(90.0)
        assert result.score == 80.0
        assert result.ready_in is not None

    def test_streak_broken(self):
        bars = self._bars()
        bars[-2] = _make_bar(18, 100, 101, 99, 100, 1750)
        assert volume_increase_streak(bars, 3) == 1
        assert detect_gradual_accumulation(bars).detected is False


class TestSmartMoney:
    def test_detected(self):
        bars = [_make_bar(i, 100, 105, 100, 105, 5000) for i in range(3)]
        bars += [_make_bar(3 + i, 100, 100, 99, 99, 1000) for i in range(7)]
        result = detect_smart_money(bars)
        assert result.detected is True
        assert result.metrics["ratio"] == pytest.approx(0.15 / 0.07)
        assert result.score == pytest.approx(0.15 / 0.07 * 20)

    def test_heavy_days_falling_not_detected(self):
        bars = [_make_bar(i, 105, 105, 100, 100, 5000) for i in range(3)]
        bars += [_make_bar(3 + i, 99, 100, 99, 100, 1000) for i in range(7)]
        assert detect_smart_money(bars).detected is False


class TestBottomFormation:
    def test_detected(self):
        bars = [_make_bar(i, 118, 120, 117, 118, 1000) for i in range(10)]
        bars += [_make_bar(10 + i, 105, 106, 104, 105, 1000) for i in range(15)]
        bars += [_make_bar(25 + i, 100, 100.5, 99.5, 100, 300) for i in range(5)]
        result = detect_bottom_formation(bars)
        assert result.detected is True
        assert result.metrics["decline_pct"] == pytest.approx(-100 / 6)
        assert result.score == pytest.approx(100 / 3)
        assert result.ready_in is not None

    def test_no_decline_not_detected(self):
        assert detect_bottom_formation(_flat_bars(30)).detected is False


def _breakout_prep_bars() -> list[Bar]:
    bars = []
    for i in range(25):
        high = 110 if i in (5, 12, 19) else 105
        bars.append(_make_bar(i, 104, high, 103, 104, 1000))
    for i in range(25, 29):
        bars.append(_make_bar(i, 106, 107, 105, 106, 1500))
    bars.append(_make_bar(29, 107, 108.5, 106.5, 108, 1500))
    return bars


class TestBreakoutPreparation:
    def test_detected(self):
        result = detect_breakout_preparation(_breakout_prep_bars())
        assert result.detected is True
        assert result.score == 90.0
        assert result.metrics["resistance"] == 110
        assert result.metrics["touch_count"] >= 3
        assert result.metrics["trigger_price"] == 111

    def test_above_resistance_not_detected(self):
        bars = _breakout_prep_bars()
        bars[-1] = _make_bar(29, 110, 112, 109, 111, 1500)
        assert detect_breakout_preparation(bars).detected is False


# ── Filters ──────────────────────────────────────────────────────────────

class TestOverheating:
    def test_full_warning(self):
        bars = [_make_bar(i, 100 + i * 4, 101 + i * 4, 99 + i * 4, 100 + i * 4) for i in range(9)]
        bars.append(_make_bar(9, 130, 141, 130, 140))
        result = check_overheating(bars, volume_ratio=12.0, mfi=92.0)
        assert result.surge_pct == pytest.approx(40.0)
        assert result.warning is True
        assert result.heat_score == pytest.approx(60.0)
        assert result.score_penalty == 50.0

    def test_intraday_pullback(self):
        bars = _flat_bars(9) + [_make_bar(9, 100, 120, 100, 105)]
        result = check_overheating(bars, volume_ratio=1.0, mfi=50.0)
        assert result.warning is False
        assert result.pullback_warning is True
        assert result.high_decline_pct == pytest.approx(12.5)
        assert result.score_penalty == 40.0

    def test_normal(self):
        result = check_overheating(_flat_bars(10), volume_ratio=1.0, mfi=50.0)
        assert result.warning is False
        assert result.pullback_warning is False
        assert result.heat_score == 0.0
        assert result.score_penalty == 0.0

    def test_heat_capped_at_100(self):
        bars = _flat_bars(9) + [_make_bar(9, 100, 200, 100, 170)]
        result = check_overheating(bars, volume_ratio=20.0, mfi=99.0)
        assert result.heat_score == 100.0


class TestInstitutionalFlow:
    def test_streak_counted_from_latest(self):
        flows = [
            InvestorFlow("20240101", -1, 5),
            InvestorFlow("20240102", 5, 5),
            InvestorFlow("20240103", 5, -1),
            InvestorFlow("20240104", 5, 5),
        ]
        result = check_institutional_flow(flows)
        assert result.institution.consecutive_days == 3
        assert result.institution.total == 15
        assert result.institution.intensity == "moderate"
        assert result.foreign.consecutive_days == 1
        assert result.foreign.intensity == "weak"
        assert result.detected is True

    def test_no_buying(self):
        flows = [InvestorFlow("20240101", -1, -1)]
        result = check_institutional_flow(flows)
        assert result.detected is False
        assert result.institution.avg_daily == 0.0


# ── Snapshot ─────────────────────────────────────────────────────────────

class TestSnapshot:
    def test_insufficient_history_is_tagged_failure(self):
        result = extract_snapshot(_flat_bars(MIN_BARS - 1), symbol="005930")
        assert isinstance(result, Failure)
        assert result.is_insufficient_data
        assert result.symbol == "005930"

    def test_flat_history(self):
        snap = extract_snapshot(_flat_bars(30), symbol="005930")
        assert isinstance(snap, IndicatorSnapshot)
        assert snap.as_of == _date(29)
        assert snap.mfi == 50.0
        assert snap.volume_ratio == pytest.approx(1.0)
        assert snap.whale.detected is False
        assert snap.institutional_flow is None
        assert snap.tier == "normal"

    def test_newest_first_input_normalized(self):
        bars = list(reversed(_flat_bars(30)))
        snap = build_snapshot(bars)
        assert snap.as_of == _date(29)

    def test_breakout_preparation_is_buy_tier(self):
        snap = build_snapshot(_breakout_prep_bars())
        assert snap.breakout_preparation.detected is True
        assert snap.tier == "buy"

    def test_bottom_formation_is_watch_tier(self):
        bars = [_make_bar(i, 118, 120, 117, 118, 1000) for i in range(10)]
        bars += [_make_bar(10 + i, 105, 106, 104, 105, 1000) for i in range(15)]
        bars += [_make_bar(25 + i, 100, 100.5, 99.5, 100, 300) for i in range(5)]
        assert build_snapshot(bars).tier == "watch"

    def test_flows_attached(self):
        flows = [InvestorFlow(_date(i), 10, 10) for i in range(5)]
        snap = build_snapshot(_flat_bars(30), flows=flows)
        assert snap.institutional_flow is not None
        assert snap.institutional_flow.institution.intensity == "strong"

    def test_to_dict_is_json_shaped(self):
        out = build_snapshot(_flat_bars(30), symbol="005930").to_dict()
        assert out["symbol"] == "005930"
        assert out["whale"]["detected"] is False
        assert out["asymmetric"]["signal"] in {"buying_pressure", "selling_pressure", "balanced"}
