"""DNA profile repository — named profiles, newest version wins."""

import json
from datetime import datetime, timezone
from typing import Optional

from app.dna.models import DNAProfile
from app.repos.db import get_connection


class DnaRepo:
    """Data access layer for the ``dna_profiles`` table.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def save_profile(self, name: str, profile: DNAProfile) -> int:
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO dna_profiles (name, extracted_at, profile_json, saved_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    name,
                    profile.extracted_at,
                    json.dumps(profile.to_dict()),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def load_profile(self, name: str) -> Optional[DNAProfile]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT profile_json FROM dna_profiles WHERE name = ? "
                "ORDER BY id DESC LIMIT 1",
                (name,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return DNAProfile.from_dict(json.loads(row["profile_json"]))

    def list_names(self) -> list[str]:
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                "SELECT DISTINCT name FROM dna_profiles ORDER BY name"
            ).fetchall()
        finally:
            conn.close()
        return [r["name"] for r in rows]
