"""Pattern set repository — one row per mining run, latest wins."""

import json
from datetime import datetime, timezone
from typing import Optional

from app.patterns.models import MiningResult
from app.repos.db import get_connection


class PatternRepo:
    """Data access layer for the ``pattern_sets`` table.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def save_patterns(self, result: MiningResult) -> int:
        """Store *result* as the newest pattern set.  Returns the row id."""
        data = result.to_dict()
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO pattern_sets
                    (generated_at, miner, parameters_json, patterns_json, saved_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    result.generated_at,
                    result.miner,
                    json.dumps(data["parameters"]),
                    json.dumps(data),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def load_patterns(self) -> Optional[MiningResult]:
        """The most recently saved set, or ``None`` before the first run."""
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT patterns_json FROM pattern_sets ORDER BY id DESC LIMIT 1"
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return MiningResult.from_dict(json.loads(row["patterns_json"]))
