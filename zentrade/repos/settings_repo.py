"""Settings repository — persisted client-side key/value state (tokens, app id, server)."""

from datetime import datetime, timezone
from typing import Optional

from zentrade.repos.db import get_connection


class SettingsRepo:
    """Key/value access to the ``settings`` table.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def get(self, key: str) -> Optional[str]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT value FROM settings WHERE key = ?", (key,)
            ).fetchone()
            return row["value"] if row else None
        finally:
            conn.close()

    def set(self, key: str, value: str) -> None:
        """Insert or overwrite *key*."""
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                INSERT INTO settings (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, value, datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()
        finally:
            conn.close()

    def delete(self, key: str) -> bool:
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute("DELETE FROM settings WHERE key = ?", (key,))
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def all(self) -> dict[str, str]:
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute("SELECT key, value FROM settings ORDER BY key").fetchall()
            return {row["key"]: row["value"] for row in rows}
        finally:
            conn.close()
