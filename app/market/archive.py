"""Daily bar archive — Parquet storage and an offline bar source.

One Parquet file per symbol under the archive root plus a
``universe.parquet`` listing the archived symbols and their names.  The
``ArchiveBarSource`` serves the archive through the same
``get_daily_bars`` / ``get_universe`` interface as ``KisClient``, so the
miners, DNA extractor and backtests can run without network access.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pandas as pd

from app.market.models import Bar, RankedSymbol
from app.models.results import BatchReport, ExternalFetchError
from app.scan_manager import ScanManager

logger = logging.getLogger("surgescan.market.archive")

BAR_COLUMNS = ["date", "open", "high", "low", "close", "volume"]
UNIVERSE_FILE = "universe.parquet"
METADATA_FILE = "metadata.json"


# ── DataFrame conversion ─────────────────────────────────────────────────


def bars_to_frame(bars: list[Bar]) -> pd.DataFrame:
    if not bars:
        return pd.DataFrame(columns=BAR_COLUMNS)
    return pd.DataFrame(
        [
            {
                "date": b.date,
                "open": b.open,
                "high": b.high,
                "low": b.low,
                "close": b.close,
                "volume": b.volume,
            }
            for b in bars
        ],
        columns=BAR_COLUMNS,
    )


def frame_to_bars(df: pd.DataFrame) -> list[Bar]:
    return [
        Bar(
            date=str(row.date),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=int(row.volume),
        )
        for row in df.itertuples(index=False)
    ]


def clean_bars(df: pd.DataFrame) -> pd.DataFrame:
    """Clean raw daily bars.

    1. Drop rows with a missing or non-positive close.
    2. Drop rows breaking the OHLC invariants (high below low).
    3. Keep the last row per date (re-fetched days overwrite older copies).
    4. Sort oldest → newest.
    """
    if df.empty:
        return df.reindex(columns=BAR_COLUMNS)

    df = df.copy()
    df["date"] = df["date"].astype(str)
    df = df.dropna(subset=["close"])
    df = df[df["close"] > 0]
    df = df[df["high"] >= df["low"]]
    df["volume"] = df["volume"].fillna(0).astype("int64")

    return (
        df.drop_duplicates(subset=["date"], keep="last")
        .sort_values("date")
        .reset_index(drop=True)[BAR_COLUMNS]
    )


# ── Parquet I/O ──────────────────────────────────────────────────────────


def save_to_parquet(df: pd.DataFrame, path: Path) -> None:
    """Save DataFrame to Parquet file, creating directories as needed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_parquet(path, engine="pyarrow", index=False)
    logger.debug("Saved %d rows → %s", len(df), path)


def load_from_parquet(path: Path) -> pd.DataFrame:
    df = pd.read_parquet(path, engine="pyarrow")
    if "date" in df.columns:
        df["date"] = df["date"].astype(str)
    return df


# ── Archive ──────────────────────────────────────────────────────────────


class BarArchive:
    """Per-symbol Parquet files under *root*."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, symbol: str) -> Path:
        return self._root / f"{symbol}.parquet"

    def read(self, symbol: str) -> pd.DataFrame:
        """Stored bars for *symbol*; an empty frame when nothing is archived."""
        path = self.path_for(symbol)
        if not path.exists():
            return pd.DataFrame(columns=BAR_COLUMNS)
        return load_from_parquet(path)

    def append(self, symbol: str, bars: list[Bar]) -> int:
        """Merge *bars* into the stored history; returns the stored row count."""
        merged = clean_bars(pd.concat(
            [self.read(symbol), bars_to_frame(bars)], ignore_index=True,
        ))
        save_to_parquet(merged, self.path_for(symbol))
        return len(merged)

    def read_universe(self) -> list[RankedSymbol]:
        path = self._root / UNIVERSE_FILE
        if not path.exists():
            return []
        df = load_from_parquet(path)
        return [
            RankedSymbol(code=str(row.code), name=str(row.name))
            for row in df.itertuples(index=False)
        ]

    def write_universe(self, symbols: list[RankedSymbol]) -> None:
        """Merge *symbols* into the stored universe, newest names winning."""
        known = {s.code: s.name for s in self.read_universe()}
        known.update({s.code: s.name for s in symbols})
        df = pd.DataFrame(
            {"code": list(known), "name": list(known.values())},
            columns=["code", "name"],
        )
        save_to_parquet(df, self._root / UNIVERSE_FILE)

    def symbols(self) -> list[str]:
        """Archived symbol codes, sorted."""
        if not self._root.exists():
            return []
        return sorted(
            p.stem for p in self._root.glob("*.parquet")
            if p.name != UNIVERSE_FILE
        )

    def generate_metadata(self) -> dict:
        """Row counts and date ranges per archived symbol."""
        meta: dict = {
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "symbols": {},
        }
        for symbol in self.symbols():
            df = self.read(symbol)
            meta["symbols"][symbol] = {
                "rows": len(df),
                "first_date": df["date"].iloc[0] if len(df) else None,
                "last_date": df["date"].iloc[-1] if len(df) else None,
            }
        return meta


class ArchiveBarSource:
    """Offline bar source reading from a ``BarArchive``."""

    def __init__(self, archive: BarArchive) -> None:
        self._archive = archive
        self._names: dict[str, str] = {}

    def cached_name(self, symbol: str) -> Optional[str]:
        if not self._names:
            self._names = {s.code: s.name for s in self._archive.read_universe()}
        return self._names.get(symbol)

    async def get_daily_bars(
        self,
        symbol: str,
        count: int = 30,
        end_date: Optional[str] = None,
    ) -> list[Bar]:
        """Up to *count* archived bars ending at *end_date*, oldest-first."""
        df = self._archive.read(symbol)
        if end_date is not None and not df.empty:
            df = df[df["date"] <= end_date]
        return frame_to_bars(df.tail(count))

    async def get_ranked_symbols(
        self,
        market: str,
        ranking_kind: str = "volume_surge",
        limit: int = 30,
    ) -> list[RankedSymbol]:
        """Rank archived symbols on their latest bar.

        ``volume_surge`` ranks by the day-over-day volume change,
        ``volume`` by volume and ``trading_value`` by close × volume.
        *market* is ignored; the archive does not record markets.
        """
        if ranking_kind not in ("volume_surge", "volume", "trading_value"):
            raise ValueError(f"Unknown ranking kind '{ranking_kind}'")

        names = {s.code: s.name for s in self._archive.read_universe()}
        ranked: list[tuple[float, RankedSymbol]] = []
        for code in self._archive.symbols():
            tail = self._archive.read(code).tail(2)
            if tail.empty:
                continue
            latest = tail.iloc[-1]
            prev_volume = int(tail["volume"].iloc[0]) if len(tail) == 2 else 0
            volume_rate = (
                (int(latest["volume"]) - prev_volume) / prev_volume * 100
                if prev_volume > 0 else None
            )
            key = {
                "volume_surge": volume_rate or 0.0,
                "volume": float(latest["volume"]),
                "trading_value": float(latest["close"]) * float(latest["volume"]),
            }[ranking_kind]
            ranked.append((key, RankedSymbol(
                code=code,
                name=names.get(code, code),
                price=float(latest["close"]),
                volume=int(latest["volume"]),
                volume_rate=volume_rate,
            )))
        ranked.sort(key=lambda item: item[0], reverse=True)
        return [symbol for _, symbol in ranked[:limit]]

    async def get_universe(
        self,
        markets: tuple[str, ...] = ("KOSPI", "KOSDAQ"),
        per_ranking: int = 30,
    ) -> list[RankedSymbol]:
        """Every archived symbol; the archive does not record markets."""
        names = {s.code: s.name for s in self._archive.read_universe()}
        return [
            RankedSymbol(code=code, name=names.get(code, code))
            for code in self._archive.symbols()
        ]


# ── Backfill ─────────────────────────────────────────────────────────────


async def run_backfill(
    client,
    archive: BarArchive,
    markets: tuple[str, ...] = ("KOSPI", "KOSDAQ"),
    count: int = 120,
    per_ranking: int = 30,
    scan_manager: Optional[ScanManager] = None,
) -> BatchReport:
    """Fetch *count* bars for every universe symbol and merge them into *archive*.

    Writes the universe and a ``metadata.json`` summary next to the bars.
    """
    universe = await client.get_universe(markets=markets, per_ranking=per_ranking)
    archive.write_universe(universe)
    logger.info("Backfilling %d symbols, %d bars each", len(universe), count)

    async def _worker(symbol: str) -> Optional[int]:
        bars = await client.get_daily_bars(symbol, count)
        if not bars:
            raise ExternalFetchError(f"No bars returned for {symbol}")
        return archive.append(symbol, bars)

    outcome = await (scan_manager or ScanManager()).run(
        [s.code for s in universe], _worker,
    )

    meta_path = archive.root / METADATA_FILE
    meta_path.write_text(json.dumps(archive.generate_metadata(), indent=2))
    logger.info(
        "Backfill complete: %d stored, %d failed → %s",
        outcome.report.found, outcome.report.failed, archive.root,
    )
    return outcome.report
