"""Volume indicators — volume MA, OBV, MFI, VWAP, A/D line. Pure functions, no I/O.

All functions take bars ordered oldest → newest.
"""

from app.market.models import Bar
from app.models.results import InsufficientDataError


def typical_price(bar: Bar) -> float:
    """``(high + low + close) / 3``."""
    return (bar.high + bar.low + bar.close) / 3


def volume_ma(bars: list[Bar], period: int = 20) -> float:
    """Simple trailing mean of ``volume`` over the last *period* bars.

    Raises ``InsufficientDataError`` if fewer than *period* bars are provided.
    """
    if len(bars) < period:
        raise InsufficientDataError(
            f"Need at least {period} bars for volume MA({period}), "
            f"got {len(bars)}"
        )
    recent = bars[-period:]
    return sum(b.volume for b in recent) / period


def volume_ratio(bars: list[Bar], period: int = 20) -> float:
    """Latest volume relative to the mean volume of the last *period* bars.

    Uses every available bar when fewer than *period* exist.  Returns 1.0
    when the mean is zero.
    """
    if not bars:
        raise InsufficientDataError("Need at least 1 bar for volume ratio")
    window = bars[-period:]
    mean = sum(b.volume for b in window) / len(window)
    if mean == 0:
        return 1.0
    return bars[-1].volume / mean


def calculate_obv(bars: list[Bar]) -> list[float]:
    """On-Balance Volume series, seeded with the first bar's volume.

    Adds the bar's volume when close rises versus the prior bar, subtracts
    it when close falls, and carries the value unchanged on a tie.
    """
    if not bars:
        raise InsufficientDataError("Need at least 1 bar for OBV")

    obv: list[float] = [float(bars[0].volume)]
    for i in range(1, len(bars)):
        prev = obv[-1]
        if bars[i].close > bars[i - 1].close:
            obv.append(prev + bars[i].volume)
        elif bars[i].close < bars[i - 1].close:
            obv.append(prev - bars[i].volume)
        else:
            obv.append(prev)
    return obv


def obv_trend(obv: list[float], lookback: int = 10) -> str:
    """Classify the OBV direction over the last *lookback* values.

    Returns ``"strong_up"``, ``"up"``, ``"flat"`` or ``"down"`` based on the
    change relative to the mean absolute OBV of the window.
    """
    window = obv[-lookback:]
    if len(window) < 2:
        return "flat"
    scale = sum(abs(v) for v in window) / len(window)
    if scale == 0:
        return "flat"
    change = (window[-1] - window[0]) / scale
    if change > 0.3:
        return "strong_up"
    if change > 0.05:
        return "up"
    if change < -0.05:
        return "down"
    return "flat"


def calculate_mfi(bars: list[Bar], period: int = 14) -> float:
    """Money Flow Index over the last *period* typical-price changes.

    Raw money flow (typical price × volume) counts as positive when the
    typical price rises versus the prior bar and negative when it falls.
    ``MFI = 100 − 100 / (1 + Σpositive / Σnegative)``; with no negative flow
    the ratio is treated as infinite and MFI is 100.  A window with no
    typical-price movement at all returns the neutral 50.

    Requires at least ``period + 1`` bars.

    Raises ``InsufficientDataError`` if insufficient data.
    """
    if len(bars) < period + 1:
        raise InsufficientDataError(
            f"Need at least {period + 1} bars for MFI({period}), "
            f"got {len(bars)}"
        )

    positive = 0.0
    negative = 0.0
    start = len(bars) - period
    for i in range(start, len(bars)):
        tp = typical_price(bars[i])
        prev_tp = typical_price(bars[i - 1])
        flow = tp * bars[i].volume
        if tp > prev_tp:
            positive += flow
        elif tp < prev_tp:
            negative += flow

    if negative == 0:
        return 50.0 if positive == 0 else 100.0
    ratio = positive / negative
    return 100.0 - 100.0 / (1.0 + ratio)


def calculate_vwap(bars: list[Bar]) -> float:
    """Cumulative VWAP from the start of the supplied series.

    Returns 0.0 when total volume is zero.
    """
    if not bars:
        raise InsufficientDataError("Need at least 1 bar for VWAP")
    cumulative_tpv = 0.0
    cumulative_volume = 0
    for bar in bars:
        cumulative_tpv += typical_price(bar) * bar.volume
        cumulative_volume += bar.volume
    if cumulative_volume == 0:
        return 0.0
    return cumulative_tpv / cumulative_volume


def calculate_ad_line(bars: list[Bar]) -> list[float]:
    """Accumulation/Distribution line.

    Money-flow multiplier ``((C−L) − (H−C)) / (H−L)``; a zero range uses a
    divisor of 1.
    """
    ad: list[float] = []
    value = 0.0
    for bar in bars:
        rng = (bar.high - bar.low) or 1
        mfm = ((bar.close - bar.low) - (bar.high - bar.close)) / rng
        value += mfm * bar.volume
        ad.append(value)
    return ad


def closing_strength(bar: Bar) -> float:
    """Close position within the bar's range, 0–100 (50 on a zero range)."""
    rng = bar.high - bar.low
    if rng == 0:
        return 50.0
    return (bar.close - bar.low) / rng * 100


def upper_shadow_pct(bar: Bar) -> float:
    """Upper shadow (high − close) as a percentage of the bar's range."""
    rng = bar.high - bar.low
    if rng <= 0:
        return 0.0
    return (bar.high - bar.close) / rng * 100


def high_decline_pct(bar: Bar) -> float:
    """Drop from the intraday high to the close, in percent of the high."""
    if bar.high <= 0:
        return 0.0
    return (bar.high - bar.close) / bar.high * 100
