"""Backtest statistics — pure functions over simulated-trade sequences.

Drawdown is computed on a compounding unit portfolio applied in the order
the trades are supplied, so reordering the input changes it.
"""

from collections import defaultdict
from typing import Optional

import numpy as np

from app.backtest.models import (
    PerformanceStatistics,
    SimulatedTrade,
    StopLossStatistics,
)


def compute_statistics(
    trades: list[SimulatedTrade],
) -> Optional[PerformanceStatistics]:
    """Summary statistics for *trades*, or ``None`` when there are none."""
    if not trades:
        return None

    returns = [t.return_rate for t in trades]
    wins = [t.return_rate for t in trades if t.is_win]
    losses = [t.return_rate for t in trades if not t.is_win]

    avg_return = float(np.mean(returns))
    std_dev = float(np.std(returns))
    sharpe = avg_return / std_dev if std_dev > 0 else 0.0
    max_dd, final_value = _compound_drawdown(returns)

    total_profit = sum(wins)
    total_loss = abs(sum(losses))
    profit_factor = total_profit if total_loss == 0 else total_profit / total_loss

    return PerformanceStatistics(
        total_count=len(trades),
        win_count=len(wins),
        loss_count=len(losses),
        win_rate=len(wins) / len(trades) * 100,
        avg_return=avg_return,
        max_return=max(returns),
        min_return=min(returns),
        std_dev=std_dev,
        sharpe_ratio=sharpe,
        max_drawdown=max_dd,
        profit_factor=profit_factor,
        avg_win=float(np.mean(wins)) if wins else 0.0,
        avg_loss=float(np.mean(losses)) if losses else 0.0,
        final_portfolio_value=final_value,
    )


def compute_stop_loss_statistics(
    trades: list[SimulatedTrade], stop_loss_rate: float
) -> Optional[StopLossStatistics]:
    """``compute_statistics`` plus trigger count, rate and mean stop day."""
    overall = compute_statistics(trades)
    if overall is None:
        return None

    stopped = [t for t in trades if t.stop_loss_triggered]
    avg_day = (
        sum(t.stop_loss_day or 0 for t in stopped) / len(stopped)
        if stopped else 0.0
    )
    return StopLossStatistics(
        overall=overall,
        stop_loss_rate=stop_loss_rate,
        triggered_count=len(stopped),
        triggered_rate=len(stopped) / len(trades) * 100,
        avg_day_to_stop_loss=avg_day,
        saved_from_worst=abs(overall.avg_loss) - abs(stop_loss_rate),
    )


def group_by_grade(
    trades: list[SimulatedTrade],
) -> dict[str, PerformanceStatistics]:
    """Statistics per grade, keeping each group's input order."""
    groups: dict[str, list[SimulatedTrade]] = defaultdict(list)
    for trade in trades:
        groups[trade.grade or "-"].append(trade)
    return {grade: compute_statistics(items) for grade, items in groups.items()}


def interpret(stats: PerformanceStatistics, triggered_rate: Optional[float] = None) -> list[str]:
    """Short human-readable verdicts on the headline numbers."""
    notes = []

    if stats.win_rate >= 60:
        notes.append("Win rate excellent (>= 60%)")
    elif stats.win_rate >= 50:
        notes.append("Win rate good (>= 50%)")
    elif stats.win_rate >= 40:
        notes.append("Win rate fair (>= 40%)")
    else:
        notes.append("Win rate poor (< 40%)")

    if stats.avg_return >= 5:
        notes.append("Average return excellent (>= 5%)")
    elif stats.avg_return >= 2:
        notes.append("Average return good (>= 2%)")
    elif stats.avg_return >= 0:
        notes.append("Average return low (>= 0%)")
    else:
        notes.append("Average return negative")

    if stats.sharpe_ratio > 2:
        notes.append("Risk-adjusted return excellent (Sharpe > 2)")
    elif stats.sharpe_ratio > 1:
        notes.append("Risk-adjusted return good (Sharpe > 1)")
    elif stats.sharpe_ratio > 0:
        notes.append("Risk-adjusted return fair (Sharpe > 0)")
    else:
        notes.append("Risk-adjusted return poor")

    if stats.max_drawdown < 10:
        notes.append("Drawdown very stable (MDD < 10%)")
    elif stats.max_drawdown < 15:
        notes.append("Drawdown acceptable (MDD < 15%)")
    elif stats.max_drawdown < 20:
        notes.append("Drawdown elevated (MDD < 20%)")
    else:
        notes.append("Drawdown dangerous (MDD >= 20%)")

    if stats.profit_factor > 2:
        notes.append("Profit factor excellent (PF > 2)")
    elif stats.profit_factor > 1.5:
        notes.append("Profit factor good (PF > 1.5)")
    elif stats.profit_factor > 1:
        notes.append("Profit factor fair (PF > 1)")
    else:
        notes.append("Losses exceed profits (PF <= 1)")

    if triggered_rate is not None:
        if triggered_rate < 10:
            notes.append(f"Stop-loss rarely hit ({triggered_rate:.1f}%)")
        elif triggered_rate < 20:
            notes.append(f"Stop-loss hit occasionally ({triggered_rate:.1f}%)")
        else:
            notes.append(f"Stop-loss hit frequently ({triggered_rate:.1f}%)")

    return notes


# ── Helpers ──────────────────────────────────────────────────────────────


def _compound_drawdown(returns: list[float]) -> tuple[float, float]:
    """Maximum drawdown (%) of a unit portfolio compounding *returns* in
    order, and the portfolio's final value.
    """
    value = 1.0
    peak = 1.0
    max_dd = 0.0
    for r in returns:
        value *= 1 + r / 100
        if value > peak:
            peak = value
        dd = (peak - value) / peak * 100
        if dd > max_dd:
            max_dd = dd
    return max_dd, value
