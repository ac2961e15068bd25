"""Backtest run repository — persists backtest summaries to SQLite."""

import json
from typing import Optional

from app.backtest.models import PerformanceStatistics
from app.repos.db import get_connection


class BacktestRepo:
    """Data access layer for the ``backtest_runs`` table.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def insert_run(
        self,
        kind: str,
        parameters: dict,
        statistics: Optional[PerformanceStatistics],
        started_at: str,
        summary: Optional[dict] = None,
    ) -> int:
        """Persist a backtest run summary.  Returns the row id."""
        stats = statistics.to_dict() if statistics is not None else {}
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO backtest_runs
                    (started_at, kind, parameters_json, total_count,
                     win_rate, avg_return, sharpe_ratio, max_drawdown,
                     profit_factor, stats_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    started_at,
                    kind,
                    json.dumps(parameters),
                    stats.get("total_count", 0),
                    stats.get("win_rate"),
                    stats.get("avg_return"),
                    stats.get("sharpe_ratio"),
                    stats.get("max_drawdown"),
                    stats.get("profit_factor"),
                    json.dumps(summary if summary is not None else stats),
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def get_runs(self, limit: int = 10) -> list[dict]:
        """Return recent backtest run summaries, newest first."""
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                "SELECT id, started_at, kind, parameters_json, total_count, "
                "win_rate, avg_return, sharpe_ratio, max_drawdown, profit_factor "
                "FROM backtest_runs ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        finally:
            conn.close()
        runs = []
        for row in rows:
            run = dict(row)
            run["parameters"] = json.loads(run.pop("parameters_json"))
            runs.append(run)
        return runs

    def get_run(self, run_id: int) -> Optional[dict]:
        """Full stored summary of one run, or ``None``."""
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT stats_json FROM backtest_runs WHERE id = ?", (run_id,)
            ).fetchone()
        finally:
            conn.close()
        return json.loads(row["stats_json"]) if row else None
