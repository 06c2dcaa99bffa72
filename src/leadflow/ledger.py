from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator

from .db import SqliteDatabase
from .keyed_lock import KeyedLocks
from .time_utils import parse_iso, to_iso, utc_now

STATUS_PROCESSED = "processed"
STATUS_PROCESSED_WITH_ERRORS = "processed_with_errors"


@dataclass(frozen=True)
class IngestedArtifact:
    artifact_id: str
    size: int
    row_count: int
    error_count: int
    duration_ms: int
    status: str
    aborted: bool
    processed_at: datetime


class IdempotencyLedger:
    def __init__(self, db: SqliteDatabase) -> None:
        self.db = db
        self._locks = KeyedLocks()
        self._init_db()

    def _init_db(self) -> None:
        self.db.executescript(
            """
            CREATE TABLE IF NOT EXISTS ingested_artifacts (
                artifact_id TEXT PRIMARY KEY,
                size INTEGER NOT NULL DEFAULT 0,
                row_count INTEGER NOT NULL DEFAULT 0,
                error_count INTEGER NOT NULL DEFAULT 0,
                duration_ms INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                aborted INTEGER NOT NULL DEFAULT 0,
                processed_at_utc TEXT NOT NULL
            );
            """
        )

    @contextmanager
    def guard(self, artifact_id: str) -> Iterator[None]:
        with self._locks.hold(artifact_id):
            yield

    def is_processed(self, artifact_id: str) -> bool:
        with self.db.session() as conn:
            row = conn.execute("SELECT 1 FROM ingested_artifacts WHERE artifact_id = ?", (artifact_id,)).fetchone()
        return row is not None

    def get(self, artifact_id: str) -> IngestedArtifact | None:
        with self.db.session() as conn:
            row = conn.execute("SELECT * FROM ingested_artifacts WHERE artifact_id = ?", (artifact_id,)).fetchone()
        return self._to_artifact(row) if row else None

    def record(
        self,
        artifact_id: str,
        *,
        size: int,
        row_count: int,
        error_count: int,
        duration_ms: int,
        aborted: bool = False,
        processed_at: datetime | None = None,
    ) -> bool:
        status = STATUS_PROCESSED_WITH_ERRORS if (error_count > 0 or aborted) else STATUS_PROCESSED
        with self.db.session() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO ingested_artifacts
                    (artifact_id, size, row_count, error_count, duration_ms, status, aborted, processed_at_utc)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    artifact_id,
                    int(size),
                    int(row_count),
                    int(error_count),
                    int(duration_ms),
                    status,
                    1 if aborted else 0,
                    to_iso(processed_at or utc_now()),
                ),
            )
        return cur.rowcount == 1

    def list_recent(self, limit: int = 50) -> list[IngestedArtifact]:
        with self.db.session() as conn:
            rows = conn.execute(
                "SELECT * FROM ingested_artifacts ORDER BY processed_at_utc DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._to_artifact(row) for row in rows]

    @staticmethod
    def _to_artifact(row: sqlite3.Row) -> IngestedArtifact:
        return IngestedArtifact(
            artifact_id=str(row["artifact_id"]),
            size=int(row["size"]),
            row_count=int(row["row_count"]),
            error_count=int(row["error_count"]),
            duration_ms=int(row["duration_ms"]),
            status=str(row["status"]),
            aborted=bool(row["aborted"]),
            processed_at=parse_iso(row["processed_at_utc"]) or utc_now(),
        )
