"""Device-local persistence backed by a single SQLite file.

The file holds two tables: ``offline_recipes`` for recipe snapshots (see
:mod:`recipebox.offline`) and ``settings`` for small JSON encoded values such
as the remember-me preference, the biometric credential descriptor and the
persisted auth session. Every operation opens its own connection, so each put
or delete is atomic on its own and no locking is needed.
"""

from __future__ import annotations

import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterator, Optional, Union

DEFAULT_PATH = Path.home() / ".recipebox" / "local.db"

SCHEMA = """
CREATE TABLE IF NOT EXISTS offline_recipes (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    payload TEXT NOT NULL,
    saved_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS offline_recipes_by_title ON offline_recipes (title COLLATE NOCASE);
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class LocalStore:
    """Key-value settings plus the offline snapshot table."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as conn:
            conn.executescript(SCHEMA)

    @classmethod
    def from_env(cls) -> "LocalStore":
        return cls(os.environ.get("RECIPEBOX_LOCAL_DB", str(DEFAULT_PATH)))

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.path))
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def get_item(self, key: str) -> Optional[Any]:
        with self.connect() as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    def set_item(self, key: str, value: Any) -> None:
        encoded = json.dumps(value, default=json_default)
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO settings (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, encoded),
            )

    def remove_item(self, key: str) -> None:
        with self.connect() as conn:
            conn.execute("DELETE FROM settings WHERE key = ?", (key,))


__all__ = ["DEFAULT_PATH", "LocalStore", "json_default"]
