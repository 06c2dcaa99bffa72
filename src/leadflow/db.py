from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import StoreUnavailableError


class SqliteDatabase:
    def __init__(self, db_path: Path, busy_timeout_seconds: float = 30.0) -> None:
        self.db_path = db_path
        self.busy_timeout_seconds = busy_timeout_seconds
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.session() as conn:
            conn.execute("PRAGMA journal_mode=WAL")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout_seconds)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def session(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"cannot open {self.db_path}: {exc}") from exc
        try:
            with conn:
                yield conn
        except (sqlite3.OperationalError, sqlite3.DatabaseError) as exc:
            if isinstance(exc, sqlite3.IntegrityError):
                raise
            raise StoreUnavailableError(str(exc)) from exc
        finally:
            conn.close()

    def executescript(self, script: str) -> None:
        with self.session() as conn:
            conn.executescript(script)
