"""Market data models — typed representations of provider objects."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Bar:
    """A single daily OHLCV bar.

    ``date`` is a ``YYYYMMDD`` string so lexical order equals date order.
    """

    date: str
    open: float
    high: float
    low: float
    close: float
    volume: int

    @property
    def is_valid(self) -> bool:
        """``True`` when the OHLC invariants hold."""
        return (
            self.high >= max(self.open, self.close, self.low)
            and self.low <= min(self.open, self.close, self.high)
            and self.volume >= 0
        )


@dataclass(frozen=True)
class Quote:
    """Current price snapshot for a symbol."""

    symbol: str
    name: str
    price: float
    volume: int
    change_pct: float
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    prev_close: float = 0.0
    trading_value: int = 0
    market_cap: int = 0


@dataclass(frozen=True)
class RankedSymbol:
    """A symbol returned by a ranking query."""

    code: str
    name: str
    price: float = 0.0
    volume: int = 0
    volume_rate: Optional[float] = None  # % change vs previous day's volume


@dataclass(frozen=True)
class InvestorFlow:
    """Net-buy quantities by investor type for one trading day."""

    date: str
    institution_net_buy: int
    foreign_net_buy: int
    individual_net_buy: int = 0


def normalize_bars(bars: list[Bar]) -> list[Bar]:
    """Return *bars* ordered oldest → newest with duplicate dates dropped.

    Providers frequently return newest-first; the first occurrence of a
    date wins.
    """
    seen: set[str] = set()
    unique: list[Bar] = []
    for bar in bars:
        if bar.date in seen:
            continue
        seen.add(bar.date)
        unique.append(bar)
    return sorted(unique, key=lambda b: b.date)
