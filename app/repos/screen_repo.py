"""Screen result repository — SQLite history of screening runs."""

import json

from app.repos.db import get_connection


class ScreenRepo:
    """Data access layer for the ``screen_results`` table.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def insert_results(self, screened_at: str, rows: list[dict]) -> int:
        """Store one screening run.

        Each row needs ``symbol``, ``name``, ``score``, ``grade`` and
        ``breakdown``.  Returns the number of rows written.
        """
        conn = get_connection(self._db_path)
        try:
            conn.executemany(
                """
                INSERT INTO screen_results
                    (screened_at, symbol, name, score, grade, breakdown_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        screened_at,
                        r["symbol"],
                        r.get("name"),
                        r["score"],
                        r["grade"],
                        json.dumps(r.get("breakdown")),
                    )
                    for r in rows
                ],
            )
            conn.commit()
            return len(rows)
        finally:
            conn.close()

    def get_latest(self, limit: int = 50) -> list[dict]:
        """Results of the most recent run, best score first."""
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                """
                SELECT screened_at, symbol, name, score, grade
                FROM screen_results
                WHERE screened_at = (SELECT MAX(screened_at) FROM screen_results)
                ORDER BY score DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()
