"""Backtest data models — simulated trades and performance statistics."""

from dataclasses import dataclass, field
from typing import Optional

from app.models.results import BatchReport, Failure


@dataclass(frozen=True)
class SimulatedTrade:
    """One simulated entry/exit.

    ``return_rate = (exit − entry) / entry × 100``; a stopped-out trade is
    never a win.
    """

    symbol: str
    entry_date: str
    entry_price: float
    exit_date: str
    exit_price: float
    holding_days: int
    return_rate: float
    is_win: bool
    stop_loss_triggered: bool = False
    stop_loss_day: Optional[int] = None
    grade: str = ""
    score: float = 0.0
    name: str = ""

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "name": self.name,
            "grade": self.grade,
            "score": round(self.score, 2),
            "entry_date": self.entry_date,
            "entry_price": self.entry_price,
            "exit_date": self.exit_date,
            "exit_price": self.exit_price,
            "holding_days": self.holding_days,
            "return_rate": round(self.return_rate, 2),
            "is_win": self.is_win,
            "stop_loss_triggered": self.stop_loss_triggered,
            "stop_loss_day": self.stop_loss_day,
        }


@dataclass(frozen=True)
class PerformanceStatistics:
    total_count: int
    win_count: int
    loss_count: int
    win_rate: float
    avg_return: float
    max_return: float
    min_return: float
    std_dev: float
    sharpe_ratio: float
    max_drawdown: float
    profit_factor: float
    avg_win: float
    avg_loss: float
    final_portfolio_value: float

    def to_dict(self) -> dict:
        return {
            "total_count": self.total_count,
            "win_count": self.win_count,
            "loss_count": self.loss_count,
            "win_rate": round(self.win_rate, 2),
            "avg_return": round(self.avg_return, 2),
            "max_return": round(self.max_return, 2),
            "min_return": round(self.min_return, 2),
            "std_dev": round(self.std_dev, 2),
            "sharpe_ratio": round(self.sharpe_ratio, 2),
            "max_drawdown": round(self.max_drawdown, 2),
            "profit_factor": round(self.profit_factor, 2),
            "avg_win": round(self.avg_win, 2),
            "avg_loss": round(self.avg_loss, 2),
            "final_portfolio_value": round(self.final_portfolio_value, 4),
        }


@dataclass(frozen=True)
class StopLossStatistics:
    """Base statistics plus stop-loss trigger counts."""

    overall: PerformanceStatistics
    stop_loss_rate: float
    triggered_count: int
    triggered_rate: float
    avg_day_to_stop_loss: float
    saved_from_worst: float  # |avg loss| − |stop-loss rate|

    def to_dict(self) -> dict:
        return {
            "overall": self.overall.to_dict(),
            "stop_loss": {
                "rate": self.stop_loss_rate,
                "triggered_count": self.triggered_count,
                "triggered_rate": round(self.triggered_rate, 2),
                "avg_day_to_stop_loss": round(self.avg_day_to_stop_loss, 2),
                "saved_from_worst": round(self.saved_from_worst, 2),
            },
        }


@dataclass(frozen=True)
class StopLossComparison:
    """The same entries with and without the stop."""

    with_stop: Optional[PerformanceStatistics]
    without_stop: Optional[PerformanceStatistics]
    stopped_count: int
    avg_stopped_loss: float
    examples: tuple[SimulatedTrade, ...] = ()

    @property
    def return_delta(self) -> float:
        if self.with_stop is None or self.without_stop is None:
            return 0.0
        return self.with_stop.avg_return - self.without_stop.avg_return

    @property
    def drawdown_delta(self) -> float:
        if self.with_stop is None or self.without_stop is None:
            return 0.0
        return self.with_stop.max_drawdown - self.without_stop.max_drawdown

    def to_dict(self) -> dict:
        return {
            "with_stop": self.with_stop.to_dict() if self.with_stop else None,
            "without_stop": self.without_stop.to_dict() if self.without_stop else None,
            "stopped_count": self.stopped_count,
            "avg_stopped_loss": round(self.avg_stopped_loss, 2),
            "return_delta": round(self.return_delta, 2),
            "drawdown_delta": round(self.drawdown_delta, 2),
            "examples": [
                {
                    "symbol": t.symbol,
                    "grade": t.grade,
                    "return_rate": round(t.return_rate, 2),
                    "stop_loss_day": t.stop_loss_day,
                }
                for t in self.examples
            ],
        }


@dataclass(frozen=True)
class BacktestReport:
    """Everything one backtest run produced."""

    kind: str  # "hold" or "stop_loss"
    parameters: dict
    trades: tuple[SimulatedTrade, ...]
    statistics: Optional[PerformanceStatistics]
    by_grade: dict = field(default_factory=dict)
    report: BatchReport = field(default_factory=BatchReport)
    failures: tuple[Failure, ...] = ()
    stop_loss: Optional[StopLossStatistics] = None
    comparison: Optional[StopLossComparison] = None
    interpretation: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        out = {
            "kind": self.kind,
            "parameters": dict(self.parameters),
            "trades": [t.to_dict() for t in self.trades],
            "statistics": self.statistics.to_dict() if self.statistics else None,
            "by_grade": {g: s.to_dict() for g, s in self.by_grade.items()},
            "report": self.report.to_dict(),
            "failures": [f.to_dict() for f in self.failures],
            "interpretation": list(self.interpretation),
        }
        if self.stop_loss is not None:
            out["stop_loss"] = self.stop_loss.to_dict()["stop_loss"]
        if self.comparison is not None:
            out["comparison"] = self.comparison.to_dict()
        return out
