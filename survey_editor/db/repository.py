# repository.py
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from survey_editor.app.errors import SettingsStoreError
from survey_editor.app.logging import get_logger

logger = get_logger(__name__)

CUSTOMIZATION_KEY = "customization"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS settings (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL,
  updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""


@contextmanager
def _settings_db(db_path: str) -> Iterator[sqlite3.Connection]:
    # One short-lived connection per read or write; commits on success.
    conn = sqlite3.connect(db_path, timeout=60.0)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


class SettingsRepository:
    """
    Key-value settings store.

    Only one value matters today: the free-text customization string that is
    added to the system prompt. A missing value reads as "".
    """

    def __init__(self, db_path: str, key: str = CUSTOMIZATION_KEY):
        self.db_path = db_path
        self.key = key
        self.init_schema()

    def init_schema(self) -> None:
        try:
            with _settings_db(self.db_path) as conn:
                conn.executescript(SCHEMA_SQL)
        except sqlite3.Error as e:
            raise SettingsStoreError(f"Failed to initialise settings store: {e}") from e

    def get(self) -> str:
        try:
            with _settings_db(self.db_path) as conn:
                row = conn.execute("SELECT value FROM settings WHERE key = ?", (self.key,)).fetchone()
        except sqlite3.Error as e:
            raise SettingsStoreError(f"Failed to read setting {self.key!r}: {e}") from e
        return row["value"] if row is not None else ""

    def set(self, value: Optional[str]) -> None:
        try:
            with _settings_db(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO settings(key, value, updated_at)
                    VALUES (?, ?, datetime('now'))
                    ON CONFLICT(key) DO UPDATE SET
                      value=excluded.value,
                      updated_at=datetime('now')
                    """,
                    (self.key, value or ""),
                )
        except sqlite3.Error as e:
            raise SettingsStoreError(f"Failed to write setting {self.key!r}: {e}") from e
        logger.info("Saved setting", extra={"setting": self.key, "chars": len(value or "")})
