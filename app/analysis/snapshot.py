"""Indicator extraction — bars → ``IndicatorSnapshot`` for the latest bar."""

import dataclasses
from typing import Optional, Union

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
)
from app.analysis.indicators import (
    calculate_ad_line,
    calculate_mfi,
    calculate_obv,
    calculate_vwap,
    closing_strength,
    obv_trend,
    volume_ma,
    volume_ratio,
)
from app.analysis.models import IndicatorSnapshot
from app.market.models import Bar, InvestorFlow, normalize_bars
from app.models.results import Failure, InsufficientDataError
from app.scoring.terms import advanced_total

MIN_BARS = 30
BUY_TIER_ADVANCED_TOTAL = 60.0


def _tier(snapshot: IndicatorSnapshot) -> str:
    if snapshot.breakout_preparation.detected or (
        snapshot.escape.detected
        and advanced_total(snapshot) >= BUY_TIER_ADVANCED_TOTAL
    ):
        return "buy"
    if (
        snapshot.gradual_accumulation.detected
        or snapshot.bottom_formation.detected
    ):
        return "watch"
    return "normal"


def build_snapshot(
    bars: list[Bar],
    symbol: str = "",
    flows: Optional[list[InvestorFlow]] = None,
) -> IndicatorSnapshot:
    """Compute every indicator and detector over *bars*.

    Raises ``InsufficientDataError`` when fewer than ``MIN_BARS`` bars are
    supplied.  Use ``extract_snapshot`` for the non-raising variant.
    """
    bars = normalize_bars(bars)
    if len(bars) < MIN_BARS:
        raise InsufficientDataError(
            f"Need at least {MIN_BARS} bars for a snapshot, got {len(bars)}"
        )

    latest = bars[-1]
    obv = calculate_obv(bars)
    mfi = calculate_mfi(bars)
    ratio = volume_ratio(bars)

    snapshot = IndicatorSnapshot(
        symbol=symbol,
        as_of=latest.date,
        close=latest.close,
        volume=latest.volume,
        obv=obv[-1],
        obv_trend=obv_trend(obv),
        mfi=mfi,
        vwap=calculate_vwap(bars),
        ad_line=calculate_ad_line(bars)[-1],
        volume_ma5=volume_ma(bars, 5),
        volume_ma20=volume_ma(bars, 20),
        volume_ratio=ratio,
        closing_strength=closing_strength(latest),
        whale=detect_whale(bars),
        accumulation=detect_silent_accumulation(bars),
        escape=detect_escape_velocity(bars),
        drain=detect_liquidity_drain(bars),
        asymmetric=calculate_asymmetric_volume(bars),
        gradual_accumulation=detect_gradual_accumulation(bars),
        smart_money=detect_smart_money(bars),
        bottom_formation=detect_bottom_formation(bars),
        breakout_preparation=detect_breakout_preparation(bars),
        overheating=check_overheating(bars, ratio, mfi),
        institutional_flow=check_institutional_flow(flows) if flows else None,
    )
    return dataclasses.replace(snapshot, tier=_tier(snapshot))


def extract_snapshot(
    bars: list[Bar],
    symbol: str = "",
    flows: Optional[list[InvestorFlow]] = None,
) -> Union[IndicatorSnapshot, Failure]:
    """Snapshot for the latest bar, or an ``insufficient_data`` ``Failure``.

    Never raises for short histories; callers skip the symbol instead.
    """
    try:
        return build_snapshot(bars, symbol, flows)
    except InsufficientDataError as exc:
        return Failure.from_exception(exc, symbol or None)
