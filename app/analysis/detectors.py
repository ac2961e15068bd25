"""Composite volume detectors — whale, silent accumulation, escape velocity,
liquidity drain, asymmetric volume, plus the lead detectors and the
overheating filter.

Pure functions over bars ordered oldest → newest.  Each detector raises
``InsufficientDataError`` when given fewer bars than its window needs.
"""

import numpy as np

from app.analysis.indicators import (
    closing_strength,
    high_decline_pct,
    upper_shadow_pct,
)
from app.analysis.models import (
    AccumulationResult,
    AsymmetricResult,
    DrainResult,
    EscapeResult,
    FlowSignal,
    InstitutionalFlowResult,
    LeadSignal,
    OverheatResult,
    WhaleResult,
    WhaleSignal,
)
from app.market.models import Bar, InvestorFlow
from app.models.results import InsufficientDataError

WHALE_VOLUME_RATIO = 2.5
WHALE_PRICE_CHANGE_PCT = 3.0
UPPER_SHADOW_WARNING_PCT = 30.0


def _require(bars: list[Bar], n: int, name: str) -> None:
    if len(bars) < n:
        raise InsufficientDataError(
            f"Need at least {n} bars for {name}, got {len(bars)}"
        )


def _mean_volume(bars: list[Bar]) -> float:
    if not bars:
        return 0.0
    return sum(b.volume for b in bars) / len(bars)


def _pct_change(new: float, old: float) -> float:
    if old == 0:
        return 0.0
    return (new - old) / old * 100


# ── Creative detectors ───────────────────────────────────────────────────


def detect_whale(bars: list[Bar]) -> WhaleResult:
    """Flag large-volume, large-body bars among the last 10.

    A bar qualifies when its volume is at least 2.5× the mean volume of the
    20 bars preceding the window and its body ``|close − open| / open`` is
    at least 3 %.  Intensity is ``volume_ratio × body% / 10``; an up-bar
    whose upper shadow covers 30 % or more of its range has its intensity
    halved.

    Requires 30 bars.
    """
    _require(bars, 30, "whale detection")

    baseline = _mean_volume(bars[-30:-10])
    signals: list[WhaleSignal] = []
    if baseline == 0:
        return WhaleResult()

    for bar in bars[-10:]:
        if bar.open <= 0:
            continue
        ratio = bar.volume / baseline
        change = abs(bar.close - bar.open) / bar.open * 100
        if ratio < WHALE_VOLUME_RATIO or change < WHALE_PRICE_CHANGE_PCT:
            continue

        is_up = bar.close > bar.open
        shadow = upper_shadow_pct(bar)
        intensity = ratio * change / 10
        warning = is_up and shadow >= UPPER_SHADOW_WARNING_PCT
        if warning:
            intensity *= 0.5

        signals.append(
            WhaleSignal(
                date=bar.date,
                direction="buy" if is_up else "sell",
                volume_ratio=ratio,
                price_change_pct=change,
                intensity=intensity,
                upper_shadow_pct=shadow,
                upper_shadow_warning=warning,
            )
        )

    return WhaleResult(signals=tuple(signals))


def detect_silent_accumulation(bars: list[Bar]) -> AccumulationResult:
    """Sideways price with rising volume over the last 20 bars.

    Detected when the close coefficient of variation is below 3 % and the
    mean volume of the newer 10 bars exceeds the older 10 by at least 20 %.
    Score is ``max(volume_growth, 10)`` when detected.
    """
    _require(bars, 20, "silent accumulation")

    recent = bars[-20:]
    closes = np.array([b.close for b in recent], dtype=float)
    mean_close = float(closes.mean())
    volatility = float(closes.std()) / mean_close * 100 if mean_close else 0.0

    older = _mean_volume(recent[:10])
    newer = _mean_volume(recent[10:])
    growth = _pct_change(newer, older)

    detected = volatility < 3.0 and growth >= 20.0
    return AccumulationResult(
        detected=detected,
        price_volatility_pct=volatility,
        volume_growth_pct=growth,
        score=max(growth, 10.0) if detected else 0.0,
    )


def detect_escape_velocity(bars: list[Bar]) -> EscapeResult:
    """Resistance breakout on heavy volume.

    Resistance is the highest high of the last 30 bars excluding the most
    recent 5; the volume baseline is the mean volume of the same window.
    Detected when the latest close clears resistance on at least 2× the
    baseline volume with a green candle.

    ``momentum = breakout% × volume_ratio × closing_strength / 100`` when
    detected, else 0.
    """
    _require(bars, 30, "escape velocity")

    recent = bars[-30:]
    window = recent[:-5]
    latest = recent[-1]

    resistance = max(b.high for b in window)
    baseline = _mean_volume(window)
    ratio = latest.volume / baseline if baseline else 0.0
    breakout = _pct_change(latest.close, resistance)
    strength = closing_strength(latest)

    detected = (
        latest.close > resistance
        and ratio >= 2.0
        and latest.close > latest.open
    )
    momentum = breakout * ratio * strength / 100 if detected else 0.0

    return EscapeResult(
        detected=detected,
        resistance=resistance,
        breakout_pct=breakout,
        volume_ratio=ratio,
        closing_strength=strength,
        upper_shadow_pct=upper_shadow_pct(latest),
        high_decline_pct=high_decline_pct(latest),
        momentum=momentum,
    )


def detect_liquidity_drain(bars: list[Bar]) -> DrainResult:
    """Volume and range contraction: last 10 bars versus the prior 20.

    Per-bar volatility is ``(high − low) / close × 100``.  Detected when
    volume declined by 30 % or more and volatility by 20 % or more.
    """
    _require(bars, 30, "liquidity drain")

    recent = bars[-10:]
    previous = bars[-30:-10]

    def _volatility(window: list[Bar]) -> float:
        ranges = [
            (b.high - b.low) / b.close * 100 for b in window if b.close > 0
        ]
        return sum(ranges) / len(ranges) if ranges else 0.0

    volume_decline = _pct_change(_mean_volume(recent), _mean_volume(previous))
    volatility_decline = _pct_change(_volatility(recent), _volatility(previous))

    detected = volume_decline <= -30.0 and volatility_decline <= -20.0
    return DrainResult(
        detected=detected,
        volume_decline_pct=volume_decline,
        volatility_decline_pct=volatility_decline,
        score=abs(volume_decline + volatility_decline) if detected else 0.0,
    )


def calculate_asymmetric_volume(bars: list[Bar]) -> AsymmetricResult:
    """Up-day versus down-day volume over the last 20 bars.

    Up and down are judged by close versus open; doji bars count for
    neither side.  ``ratio = up / down`` (100 with no down volume) and
    ``score = |ratio − 1| × 50``.
    """
    _require(bars, 20, "asymmetric volume")

    up_volume = down_volume = up_days = down_days = 0
    for bar in bars[-20:]:
        if bar.close > bar.open:
            up_volume += bar.volume
            up_days += 1
        elif bar.close < bar.open:
            down_volume += bar.volume
            down_days += 1

    ratio = 100.0 if down_volume == 0 else up_volume / down_volume
    return AsymmetricResult(
        up_volume=up_volume,
        down_volume=down_volume,
        up_days=up_days,
        down_days=down_days,
        ratio=ratio,
        score=abs(ratio - 1) * 50,
    )


# ── Lead detectors ───────────────────────────────────────────────────────


def volume_increase_streak(bars: list[Bar], days: int = 3) -> int:
    """Consecutive day-over-day volume increases ending at the latest bar,
    looking at the last ``days + 1`` bars."""
    recent = bars[-days - 1:]
    streak = 0
    for i in range(1, len(recent)):
        if recent[i].volume > recent[i - 1].volume:
            streak += 1
        else:
            streak = 0
    return streak


def detect_gradual_accumulation(bars: list[Bar]) -> LeadSignal:
    """Volume stepping up block by block while price stays flat.

    The last 20 bars are split into four 5-bar blocks; each block's mean
    volume must beat the previous by more than 10 %, the 20-bar close
    change must stay under 5 % and the last three sessions must each
    print higher volume than the one before.
    """
    _require(bars, 20, "gradual accumulation")

    recent = bars[-20:]
    blocks = [_mean_volume(recent[i * 5:(i + 1) * 5]) for i in range(4)]
    stepping = all(blocks[i] > blocks[i - 1] * 1.1 for i in range(1, 4))

    first_close = recent[0].close
    price_change = (
        abs(recent[-1].close - first_close) / first_close * 100
        if first_close
        else 0.0
    )
    streak = volume_increase_streak(bars, 3)
    growth = _pct_change(blocks[3], blocks[0])

    detected = stepping and price_change < 5.0 and streak >= 3
    return LeadSignal(
        detected=detected,
        score=min(growth, 80.0) if detected else 0.0,
        metrics={
            "volume_blocks": blocks,
            "growth_pct": growth,
            "price_change_pct": price_change,
            "consecutive_days": streak,
        },
        ready_in="7-14d" if detected else None,
    )


def detect_smart_money(bars: list[Bar]) -> LeadSignal:
    """Heavy-volume days rising while light-volume days fall.

    Among the last 10 bars, the three with the largest volume must show a
    positive summed body return and the other seven a negative one, with
    the magnitude ratio above 2 (10 when the light side is exactly 0).
    """
    _require(bars, 10, "smart money")

    ranked = sorted(bars[-10:], key=lambda b: b.volume, reverse=True)

    def _body_sum(window: list[Bar]) -> float:
        return sum((b.close - b.open) / b.open for b in window if b.open > 0)

    big = _body_sum(ranked[:3])
    small = _body_sum(ranked[3:])
    ratio = abs(big / small) if small != 0 else 10.0

    detected = big > 0 and small < 0 and ratio > 2
    return LeadSignal(
        detected=detected,
        score=min(ratio * 20, 70.0) if detected else 0.0,
        metrics={
            "big_volume_return_pct": big / 3 * 100,
            "small_volume_return_pct": small / 7 * 100,
            "ratio": ratio,
        },
    )


def detect_bottom_formation(bars: list[Bar]) -> LeadSignal:
    """Post-decline base: sharp drop, drying volume, tight closes.

    Over the last 30 bars: the latest close sits more than 15 % below the
    high of the first 10, the last-5 mean volume is under half the mean of
    the first 20 and the last five closes span less than 3 %.
    """
    _require(bars, 30, "bottom formation")

    recent = bars[-30:]
    high = max(b.high for b in recent[:10])
    current = recent[-1].close
    decline = _pct_change(current, high)

    baseline = _mean_volume(recent[:20])
    vol_ratio = _mean_volume(recent[-5:]) / baseline if baseline else 1.0

    last_closes = [b.close for b in recent[-5:]]
    price_range = (
        (max(last_closes) - min(last_closes)) / current * 100 if current else 0.0
    )

    detected = decline < -15.0 and vol_ratio < 0.5 and price_range < 3.0
    return LeadSignal(
        detected=detected,
        score=abs(decline) * 2 if detected else 0.0,
        metrics={
            "high": high,
            "decline_pct": decline,
            "volume_ratio": vol_ratio,
            "price_range_pct": price_range,
        },
        ready_in="3-7d" if detected else None,
    )


def detect_breakout_preparation(bars: list[Bar]) -> LeadSignal:
    """Repeated tests of resistance with the close just beneath it.

    Resistance is the highest high of the first 25 of the last 30 bars.
    Detected when at least three bars came within 2 % of it, the latest
    close is 0–3 % below it and the last-5 mean volume beats the previous
    five by more than 30 %.  The trigger price is 1 % above resistance.
    """
    _require(bars, 30, "breakout preparation")

    recent = bars[-30:]
    current = recent[-1].close
    resistance = max(b.high for b in recent[:25])

    touches = sum(
        1 for b in recent if abs(b.high - resistance) / resistance < 0.02
    )
    gap = (resistance - current) / current * 100 if current else -1.0
    near = 0.0 <= gap < 3.0

    last5 = _mean_volume(recent[-5:])
    prev5 = _mean_volume(recent[-10:-5])

    detected = touches >= 3 and near and last5 > prev5 * 1.3
    return LeadSignal(
        detected=detected,
        score=90.0 if detected else 0.0,
        metrics={
            "resistance": resistance,
            "gap_pct": gap,
            "touch_count": touches,
            "volume_growth_pct": _pct_change(last5, prev5),
            "trigger_price": round(resistance * 1.01) if detected else None,
        },
    )


# ── Filters ──────────────────────────────────────────────────────────────


def check_overheating(
    bars: list[Bar], volume_ratio: float, mfi: float
) -> OverheatResult:
    """Flag names that already ran too far to buy safely.

    Heat score (capped at 100) accumulates from the 10-bar surge, extreme
    volume, extreme MFI and the latest bar's fall from its intraday high.
    ``warning`` requires all of surge > 30 %, volume ratio > 10 and
    MFI > 90; ``pullback_warning`` fires on a high-to-close drop of 10 % or
    more or a close in the lower half of the range.

    The score penalty is 50 on ``warning``, 40 on a 10 %+ intraday pullback,
    25 when heat exceeds 50, else 0.
    """
    _require(bars, 10, "overheating check")

    latest = bars[-1]
    surge = _pct_change(latest.close, bars[-10].close)
    decline = high_decline_pct(latest)
    strength = closing_strength(latest)

    heat = 0.0
    if surge > 50:
        heat += 40
    elif surge > 30:
        heat += 25
    if volume_ratio > 15:
        heat += 35
    elif volume_ratio > 10:
        heat += 20
    if mfi > 95:
        heat += 25
    elif mfi > 90:
        heat += 15
    if decline >= 15:
        heat += 30
    elif decline >= 10:
        heat += 20
    heat = min(heat, 100.0)

    warning = surge > 30 and volume_ratio > 10 and mfi > 90
    pullback = decline >= 10 or strength < 50

    if warning:
        penalty = 50.0
    elif pullback and decline >= 10:
        penalty = 40.0
    elif heat > 50:
        penalty = 25.0
    else:
        penalty = 0.0

    return OverheatResult(
        warning=warning,
        pullback_warning=pullback,
        heat_score=heat,
        surge_pct=surge,
        high_decline_pct=decline,
        closing_strength=strength,
        score_penalty=penalty,
    )


def _flow_streak(values: list[int]) -> FlowSignal:
    days = 0
    total = 0
    for value in reversed(values):
        if value <= 0:
            break
        days += 1
        total += value
    return FlowSignal(
        consecutive_days=days,
        total=total,
        avg_daily=total / days if days else 0.0,
    )


def check_institutional_flow(
    flows: list[InvestorFlow],
) -> InstitutionalFlowResult:
    """Consecutive net-buy streaks for institutions and foreigners,
    counted back from the most recent flow (flows ordered oldest → newest)."""
    return InstitutionalFlowResult(
        institution=_flow_streak([f.institution_net_buy for f in flows]),
        foreign=_flow_streak([f.foreign_net_buy for f in flows]),
    )
