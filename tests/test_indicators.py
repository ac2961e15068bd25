"""Deterministic tests for the volume indicators."""

import pytest

from app.analysis.indicators import (
    calculate_ad_line,
    calculate_mfi,
    calculate_obv,
    calculate_vwap,
    closing_strength,
    high_decline_pct,
    obv_trend,
    upper_shadow_pct,
    volume_ma,
    volume_ratio,
)
from app.market.models import Bar, normalize_bars
from app.models.results import InsufficientDataError


def _make_bar(i: int, o: float, h: float, l: float, c: float, vol: int = 1000) -> Bar:
    return Bar(date=f"202401{i + 1:02d}", open=o, high=h, low=l, close=c, volume=vol)


def _point_bars(prices: list[float], vol: int = 100) -> list[Bar]:
    """Bars whose OHLC all equal the price, so typical price == price."""
    return [_make_bar(i, p, p, p, p, vol) for i, p in enumerate(prices)]


class TestOBV:
    def test_seeded_with_first_volume(self):
        bars = _point_bars([10.0])
        assert calculate_obv(bars) == [100.0]

    def test_up_down_flat(self):
        bars = [
            _make_bar(0, 10, 10, 10, 10, 100),
            _make_bar(1, 11, 11, 11, 11, 200),
            _make_bar(2, 10, 10, 10, 10, 300),
            _make_bar(3, 10, 10, 10, 10, 400),
        ]
        assert calculate_obv(bars) == [100.0, 300.0, 0.0, 0.0]

    def test_direction_property(self):
        prices = [10, 12, 11, 11, 15, 9, 9, 14]
        bars = _point_bars(prices)
        obv = calculate_obv(bars)
        for i in range(1, len(bars)):
            if bars[i].close > bars[i - 1].close:
                assert obv[i] > obv[i - 1]
            elif bars[i].close < bars[i - 1].close:
                assert obv[i] < obv[i - 1]
            else:
                assert obv[i] == obv[i - 1]

    def test_empty_raises(self):
        with pytest.raises(InsufficientDataError):
            calculate_obv([])

    def test_trend_labels(self):
        assert obv_trend([100.0, 200.0, 300.0]) == "strong_up"
        assert obv_trend([300.0, 200.0, 100.0]) == "down"
        assert obv_trend([100.0, 100.0]) == "flat"
        assert obv_trend([100.0]) == "flat"


class TestMFI:
    def test_all_rising_is_100(self):
        bars = _point_bars([float(10 + i) for i in range(15)])
        assert calculate_mfi(bars) == 100.0

    def test_all_falling_is_0(self):
        bars = _point_bars([float(30 - i) for i in range(15)])
        assert calculate_mfi(bars) == pytest.approx(0.0)

    def test_no_movement_is_neutral(self):
        bars = _point_bars([10.0] * 15)
        assert calculate_mfi(bars) == 50.0

    def test_known_ratio(self):
        # 7 up moves at tp=11 and 7 down moves at tp=10, equal volume
        prices = [10.0] + [11.0, 10.0] * 7
        mfi = calculate_mfi(_point_bars(prices))
        assert mfi == pytest.approx(100 - 100 / (1 + 7700 / 7000))

    def test_only_last_period_counts(self):
        # Early falling bars fall outside the 14-change window
        prices = [50.0, 40.0, 30.0] + [float(10 + i) for i in range(15)]
        assert calculate_mfi(_point_bars(prices)) == 100.0

    def test_insufficient_data(self):
        with pytest.raises(InsufficientDataError):
            calculate_mfi(_point_bars([10.0] * 14))

    def test_insufficient_is_value_error(self):
        with pytest.raises(ValueError):
            calculate_mfi(_point_bars([10.0] * 3))


class TestVWAP:
    def test_cumulative(self):
        bars = [
            _make_bar(0, 10, 10, 10, 10, 100),
            _make_bar(1, 20, 20, 20, 20, 300),
        ]
        assert calculate_vwap(bars) == pytest.approx(17.5)

    def test_zero_volume(self):
        bars = [_make_bar(0, 10, 10, 10, 10, 0)]
        assert calculate_vwap(bars) == 0.0


class TestADLine:
    def test_accumulates_multiplier(self):
        bars = [
            _make_bar(0, 10, 12, 10, 12, 100),  # close at high: +1
            _make_bar(1, 12, 12, 10, 10, 50),   # close at low: -1
            _make_bar(2, 11, 11, 11, 11, 999),  # zero range: 0
        ]
        assert calculate_ad_line(bars) == [100.0, 50.0, 50.0]


class TestVolumeAverages:
    def test_volume_ma(self):
        bars = [_make_bar(i, 10, 10, 10, 10, (i + 1) * 100) for i in range(10)]
        assert volume_ma(bars, 5) == pytest.approx(800.0)

    def test_volume_ma_insufficient(self):
        bars = [_make_bar(i, 10, 10, 10, 10) for i in range(4)]
        with pytest.raises(InsufficientDataError):
            volume_ma(bars, 5)

    def test_volume_ratio(self):
        bars = [_make_bar(i, 10, 10, 10, 10, 1000) for i in range(19)]
        bars.append(_make_bar(19, 10, 10, 10, 10, 3000))
        assert volume_ratio(bars) == pytest.approx(3000 / 1100)

    def test_volume_ratio_zero_mean(self):
        bars = [_make_bar(i, 10, 10, 10, 10, 0) for i in range(5)]
        assert volume_ratio(bars) == 1.0


class TestBarShape:
    def test_closing_strength(self):
        assert closing_strength(_make_bar(0, 100, 110, 100, 110)) == 100.0
        assert closing_strength(_make_bar(0, 100, 110, 100, 100)) == 0.0
        assert closing_strength(_make_bar(0, 100, 100, 100, 100)) == 50.0

    def test_upper_shadow_and_high_decline(self):
        bar = _make_bar(0, 100, 120, 100, 110)
        assert upper_shadow_pct(bar) == pytest.approx(50.0)
        assert high_decline_pct(bar) == pytest.approx(10 / 120 * 100)


class TestNormalize:
    def test_newest_first_is_reversed_and_deduplicated(self):
        bars = [
            _make_bar(2, 12, 12, 12, 12),
            _make_bar(1, 11, 11, 11, 11),
            _make_bar(1, 99, 99, 99, 99),
            _make_bar(0, 10, 10, 10, 10),
        ]
        out = normalize_bars(bars)
        assert [b.date for b in out] == ["20240101", "20240102", "20240103"]
        assert out[1].close == 11
