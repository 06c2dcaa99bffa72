from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Callable, TypeVar

from .cache import TtlCache
from .db import SqliteDatabase
from .errors import SequenceDefinitionError
from .sequences import (
    EnrollmentExecution,
    ExecutionKey,
    ExecutionStatus,
    SequenceDefinition,
    SequenceStats,
    SkipCondition,
    StepDefinition,
    TERMINAL_STATUSES,
    can_advance,
    compute_fire_times,
)
from .time_utils import parse_iso, to_iso, utc_now

T = TypeVar("T")

_KEY_WHERE = "sequence_id = ? AND lead_id = ? AND cycle = ? AND step_number = ?"


def _key_params(key: ExecutionKey) -> tuple[int, int, int, int]:
    return (key.sequence_id, key.lead_id, key.cycle, key.step_number)


class SequenceStore:
    def __init__(
        self,
        db: SqliteDatabase,
        cache: TtlCache | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.cache = cache
        self._clock = clock
        self._init_db()

    def _init_db(self) -> None:
        self.db.executescript(
            """
            CREATE TABLE IF NOT EXISTS sequences (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                description TEXT NOT NULL DEFAULT '',
                active INTEGER NOT NULL DEFAULT 1,
                created_at_utc TEXT NOT NULL,
                updated_at_utc TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS sequence_steps (
                sequence_id INTEGER NOT NULL,
                step_number INTEGER NOT NULL,
                template_id TEXT NOT NULL,
                delay_seconds INTEGER NOT NULL,
                skip_conditions TEXT NOT NULL DEFAULT '[]',
                PRIMARY KEY (sequence_id, step_number)
            );
            CREATE TABLE IF NOT EXISTS executions (
                sequence_id INTEGER NOT NULL,
                lead_id INTEGER NOT NULL,
                cycle INTEGER NOT NULL,
                step_number INTEGER NOT NULL,
                enrolled_at_utc TEXT NOT NULL,
                fire_at_utc TEXT NOT NULL,
                status TEXT NOT NULL,
                message_id TEXT UNIQUE,
                last_error TEXT NOT NULL DEFAULT '',
                retryable INTEGER NOT NULL DEFAULT 0,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                cancel_reason TEXT NOT NULL DEFAULT '',
                created_at_utc TEXT NOT NULL,
                updated_at_utc TEXT NOT NULL,
                PRIMARY KEY (sequence_id, lead_id, cycle, step_number)
            );
            CREATE INDEX IF NOT EXISTS idx_executions_due ON executions(status, fire_at_utc);
            CREATE INDEX IF NOT EXISTS idx_executions_lead ON executions(lead_id, status);
            CREATE TABLE IF NOT EXISTS execution_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                message_id TEXT NOT NULL,
                event TEXT NOT NULL,
                occurred_at_utc TEXT,
                received_at_utc TEXT NOT NULL,
                applied INTEGER NOT NULL,
                reason TEXT NOT NULL DEFAULT ''
            );
            CREATE INDEX IF NOT EXISTS idx_execution_events_message ON execution_events(message_id);
            """
        )

    # sequences

    def create_sequence(
        self,
        name: str,
        description: str,
        steps: tuple[StepDefinition, ...],
        active: bool = True,
    ) -> SequenceDefinition:
        now = to_iso(self._clock())
        try:
            with self.db.session() as conn:
                cur = conn.execute(
                    """
                    INSERT INTO sequences (name, description, active, created_at_utc, updated_at_utc)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (name, description, 1 if active else 0, now, now),
                )
                sequence_id = int(cur.lastrowid)
                conn.executemany(
                    """
                    INSERT INTO sequence_steps (sequence_id, step_number, template_id, delay_seconds, skip_conditions)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            sequence_id,
                            step.step_number,
                            step.template_id,
                            int(step.delay.total_seconds()),
                            json.dumps([c.value for c in step.skip_conditions]),
                        )
                        for step in steps
                    ],
                )
        except sqlite3.IntegrityError as exc:
            raise SequenceDefinitionError(f"sequence name already exists: {name}") from exc
        self._invalidate_sequence(sequence_id)
        created = self.get_sequence(sequence_id)
        if created is None:
            raise SequenceDefinitionError(f"sequence {sequence_id} vanished after insert")
        return created

    def get_sequence(self, sequence_id: int) -> SequenceDefinition | None:
        return self._cached(f"sequence:{sequence_id}", lambda: self._load_sequence("id = ?", sequence_id))

    def get_sequence_by_name(self, name: str) -> SequenceDefinition | None:
        return self._cached(f"sequences:name:{name}", lambda: self._load_sequence("name = ?", name))

    def list_sequences(self) -> list[SequenceDefinition]:
        with self.db.session() as conn:
            rows = conn.execute("SELECT id FROM sequences ORDER BY id ASC").fetchall()
        out = [self.get_sequence(int(row["id"])) for row in rows]
        return [s for s in out if s is not None]

    def set_active(self, sequence_id: int, active: bool) -> bool:
        with self.db.session() as conn:
            cur = conn.execute(
                "UPDATE sequences SET active = ?, updated_at_utc = ? WHERE id = ?",
                (1 if active else 0, to_iso(self._clock()), sequence_id),
            )
        self._invalidate_sequence(sequence_id)
        return cur.rowcount == 1

    def _load_sequence(self, where: str, value: Any) -> SequenceDefinition | None:
        with self.db.session() as conn:
            row = conn.execute(f"SELECT * FROM sequences WHERE {where}", (value,)).fetchone()
            if row is None:
                return None
            step_rows = conn.execute(
                "SELECT * FROM sequence_steps WHERE sequence_id = ? ORDER BY step_number ASC",
                (row["id"],),
            ).fetchall()
        steps = tuple(
            StepDefinition(
                step_number=int(s["step_number"]),
                template_id=str(s["template_id"]),
                delay=timedelta(seconds=int(s["delay_seconds"])),
                skip_conditions=tuple(SkipCondition(c) for c in json.loads(s["skip_conditions"] or "[]")),
            )
            for s in step_rows
        )
        return SequenceDefinition(
            id=int(row["id"]),
            name=str(row["name"]),
            description=str(row["description"]),
            active=bool(row["active"]),
            steps=steps,
            created_at=parse_iso(row["created_at_utc"]),
        )

    # enrollments

    def enroll(self, sequence: SequenceDefinition, lead_id: int, enrolled_at: datetime) -> int | None:
        """Create one scheduled row per step. Returns the new cycle, or None while any earlier row is non-terminal."""
        fire_times = compute_fire_times(enrolled_at, sequence.steps)
        enrolled = to_iso(enrolled_at)
        now = to_iso(self._clock())
        with self.db.session() as conn:
            conn.execute("BEGIN IMMEDIATE")
            terminal = sorted(s.value for s in TERMINAL_STATUSES)
            live = conn.execute(
                "SELECT 1 FROM executions WHERE sequence_id = ? AND lead_id = ? AND status NOT IN (?, ?, ?) LIMIT 1",
                (sequence.id, lead_id, *terminal),
            ).fetchone()
            if live is not None:
                return None
            row = conn.execute(
                "SELECT COALESCE(MAX(cycle), 0) FROM executions WHERE sequence_id = ? AND lead_id = ?",
                (sequence.id, lead_id),
            ).fetchone()
            cycle = int(row[0]) + 1
            conn.executemany(
                """
                INSERT INTO executions (
                    sequence_id, lead_id, cycle, step_number, enrolled_at_utc, fire_at_utc, status,
                    created_at_utc, updated_at_utc
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        sequence.id,
                        lead_id,
                        cycle,
                        step_number,
                        enrolled,
                        to_iso(fire_at),
                        ExecutionStatus.SCHEDULED.value,
                        now,
                        now,
                    )
                    for step_number, fire_at in sorted(fire_times.items())
                ],
            )
        return cycle

    def cancel_scheduled(self, sequence_id: int, lead_id: int, reason: str) -> int:
        with self.db.session() as conn:
            cur = conn.execute(
                """
                UPDATE executions SET status = ?, cancel_reason = ?, updated_at_utc = ?
                WHERE sequence_id = ? AND lead_id = ? AND status = ?
                """,
                (
                    ExecutionStatus.CANCELLED.value,
                    reason,
                    to_iso(self._clock()),
                    sequence_id,
                    lead_id,
                    ExecutionStatus.SCHEDULED.value,
                ),
            )
        return int(cur.rowcount)

    # executions

    def get_execution(self, key: ExecutionKey) -> EnrollmentExecution | None:
        with self.db.session() as conn:
            row = conn.execute(f"SELECT * FROM executions WHERE {_KEY_WHERE}", _key_params(key)).fetchone()
        return self._to_execution(row) if row else None

    def find_by_message_id(self, message_id: str) -> EnrollmentExecution | None:
        with self.db.session() as conn:
            row = conn.execute("SELECT * FROM executions WHERE message_id = ?", (message_id,)).fetchone()
        return self._to_execution(row) if row else None

    def list_executions(self, sequence_id: int, lead_id: int | None = None) -> list[EnrollmentExecution]:
        sql = "SELECT * FROM executions WHERE sequence_id = ?"
        params: list[Any] = [sequence_id]
        if lead_id is not None:
            sql += " AND lead_id = ?"
            params.append(lead_id)
        sql += " ORDER BY lead_id ASC, cycle ASC, step_number ASC"
        with self.db.session() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._to_execution(row) for row in rows]

    def due(self, now: datetime, limit: int = 500) -> list[EnrollmentExecution]:
        with self.db.session() as conn:
            rows = conn.execute(
                """
                SELECT e.* FROM executions e
                JOIN sequences s ON s.id = e.sequence_id
                WHERE e.status = ? AND e.fire_at_utc <= ? AND s.active = 1
                ORDER BY e.fire_at_utc ASC, e.sequence_id ASC, e.lead_id ASC, e.step_number ASC
                LIMIT ?
                """,
                (ExecutionStatus.SCHEDULED.value, to_iso(now), limit),
            ).fetchall()
        return [self._to_execution(row) for row in rows]

    def count_due_paused(self, now: datetime) -> int:
        with self.db.session() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM executions e
                JOIN sequences s ON s.id = e.sequence_id
                WHERE e.status = ? AND e.fire_at_utc <= ? AND s.active = 0
                """,
                (ExecutionStatus.SCHEDULED.value, to_iso(now)),
            ).fetchone()
        return int(row[0]) if row else 0

    def upcoming(self, until: datetime, limit: int = 500) -> list[EnrollmentExecution]:
        """Scheduled executions firing at or before ``until``, overdue ones included."""
        with self.db.session() as conn:
            rows = conn.execute(
                """
                SELECT * FROM executions
                WHERE status = ? AND fire_at_utc <= ?
                ORDER BY fire_at_utc ASC LIMIT ?
                """,
                (ExecutionStatus.SCHEDULED.value, to_iso(until), limit),
            ).fetchall()
        return [self._to_execution(row) for row in rows]

    def has_engagement_before(self, key: ExecutionKey) -> bool:
        with self.db.session() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM executions
                WHERE sequence_id = ? AND lead_id = ? AND cycle = ? AND step_number < ? AND status IN (?, ?)
                LIMIT 1
                """,
                (*_key_params(key), ExecutionStatus.OPENED.value, ExecutionStatus.CLICKED.value),
            ).fetchone()
        return row is not None

    def transition(
        self,
        key: ExecutionKey,
        expected: ExecutionStatus,
        target: ExecutionStatus,
        **fields: Any,
    ) -> bool:
        """Compare-and-set the status; extra columns are written in the same statement."""
        if expected != target and not can_advance(expected, target):
            return False
        assignments = "".join(f", {name} = ?" for name in fields)
        values = [int(v) if isinstance(v, bool) else v for v in fields.values()]
        with self.db.session() as conn:
            cur = conn.execute(
                f"UPDATE executions SET status = ?, updated_at_utc = ?{assignments} WHERE {_KEY_WHERE} AND status = ?",
                (target.value, to_iso(self._clock()), *values, *_key_params(key), expected.value),
            )
        return cur.rowcount == 1

    def stats(self, sequence_id: int) -> SequenceStats:
        with self.db.session() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM executions WHERE sequence_id = ? GROUP BY status",
                (sequence_id,),
            ).fetchall()
        return SequenceStats(sequence_id=sequence_id, counts={str(r["status"]): int(r["n"]) for r in rows})

    def record_event(
        self,
        message_id: str,
        event: str,
        occurred_at: datetime | None,
        applied: bool,
        reason: str = "",
    ) -> None:
        with self.db.session() as conn:
            conn.execute(
                """
                INSERT INTO execution_events (message_id, event, occurred_at_utc, received_at_utc, applied, reason)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    message_id,
                    event,
                    to_iso(occurred_at) if occurred_at else None,
                    to_iso(self._clock()),
                    1 if applied else 0,
                    reason,
                ),
            )

    def list_events(self, message_id: str) -> list[dict[str, Any]]:
        with self.db.session() as conn:
            rows = conn.execute(
                "SELECT * FROM execution_events WHERE message_id = ? ORDER BY id ASC",
                (message_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def _cached(self, key: str, loader: Callable[[], T]) -> T:
        if self.cache is None:
            return loader()
        return self.cache.get_or_load(key, loader)

    def _invalidate_sequence(self, sequence_id: int) -> None:
        if self.cache is None:
            return
        self.cache.invalidate(f"sequence:{sequence_id}")
        self.cache.invalidate("sequences:*")

    @staticmethod
    def _to_execution(row: sqlite3.Row) -> EnrollmentExecution:
        return EnrollmentExecution(
            sequence_id=int(row["sequence_id"]),
            lead_id=int(row["lead_id"]),
            cycle=int(row["cycle"]),
            step_number=int(row["step_number"]),
            enrolled_at=parse_iso(row["enrolled_at_utc"]) or utc_now(),
            fire_at=parse_iso(row["fire_at_utc"]) or utc_now(),
            status=ExecutionStatus(row["status"]),
            message_id=row["message_id"],
            last_error=str(row["last_error"]),
            retryable=bool(row["retryable"]),
            attempt_count=int(row["attempt_count"]),
            cancel_reason=str(row["cancel_reason"]),
            updated_at=parse_iso(row["updated_at_utc"]),
        )
