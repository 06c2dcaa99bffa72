from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

from .config import IncidentPolicy
from .db import SqliteDatabase
from .logging_utils import JsonlLogger, redact
from .time_utils import to_iso, utc_now

VOLATILE_RE = re.compile(r"\d+")


@dataclass
class IncidentState:
    fingerprint: str
    count_window: int
    level: str
    should_generate_report: bool


class IncidentEngine:
    def __init__(
        self,
        db: SqliteDatabase,
        policy: IncidentPolicy,
        incident_dir: Path,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.policy = policy
        self.incident_dir = incident_dir
        self._clock = clock
        self.incident_dir.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        self.db.executescript(
            """
            CREATE TABLE IF NOT EXISTS incident_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                fingerprint TEXT NOT NULL,
                timestamp_utc TEXT NOT NULL,
                error_type TEXT NOT NULL,
                message TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_incident_events_fp ON incident_events(fingerprint, timestamp_utc);
            """
        )

    @staticmethod
    def fingerprint(error_type: str, message: str, stage: str) -> str:
        # Ids and counters inside messages would split one failure into many fingerprints.
        base = f"{error_type}|{VOLATILE_RE.sub('#', message)}|{stage}"
        return hashlib.sha256(base.encode("utf-8")).hexdigest()[:20]

    def register(self, fingerprint: str, error_type: str, message: str) -> IncidentState:
        now = self._clock()
        window_start = to_iso(now - timedelta(minutes=self.policy.window_min))
        with self.db.session() as conn:
            conn.execute(
                "INSERT INTO incident_events (fingerprint, timestamp_utc, error_type, message) VALUES (?, ?, ?, ?)",
                (fingerprint, to_iso(now), error_type, message[:500]),
            )
            conn.execute("DELETE FROM incident_events WHERE timestamp_utc < ?", (window_start,))
            row = conn.execute(
                "SELECT COUNT(*) FROM incident_events WHERE fingerprint = ? AND timestamp_utc >= ?",
                (fingerprint, window_start),
            ).fetchone()

        count = int(row[0]) if row else 1
        level = "L0"
        if count >= self.policy.l3:
            level = "L3"
        elif count >= self.policy.l2:
            level = "L2"
        elif count >= self.policy.l1:
            level = "L1"

        return IncidentState(
            fingerprint=fingerprint,
            count_window=count,
            level=level,
            should_generate_report=level in {"L2", "L3"},
        )

    def record_failure(self, stage: str, exc: BaseException, logger: JsonlLogger, context: dict[str, Any] | None = None) -> IncidentState:
        error_type = type(exc).__name__
        message = str(exc)
        merged_context = {"stage": stage, **(context or {})}
        state = self.register(self.fingerprint(error_type, message, stage), error_type, message)
        logger.write(
            "incident_registered",
            {
                "stage": stage,
                "fingerprint": state.fingerprint,
                "level": state.level,
                "count_window": state.count_window,
                "error_type": error_type,
                "message": message[:200],
                "retryable": bool(getattr(exc, "retryable", False)),
            },
        )
        if state.should_generate_report:
            report = self.write_report(state=state, error_type=error_type, message=message, context=merged_context)
            logger.write(
                "incident_report_generated",
                {"stage": stage, "fingerprint": state.fingerprint, "level": state.level, "path": str(report)},
            )
        return state

    def write_report(self, state: IncidentState, error_type: str, message: str, context: dict[str, Any]) -> Path:
        now = self._clock()
        file_path = self.incident_dir / f"incident-{state.fingerprint}-{now.strftime('%Y%m%dT%H%M%SZ')}.md"
        safe_context = redact(context)
        content = [
            f"# Incident {state.fingerprint}",
            "",
            f"- time_utc: {now.isoformat()}",
            f"- fingerprint: {state.fingerprint}",
            f"- occurrences_in_{self.policy.window_min}m: {state.count_window}",
            f"- level: {state.level}",
            f"- error_type: {error_type}",
            f"- message: {redact(message)}",
            "",
            "## Context",
            *[f"- {key}: {value}" for key, value in sorted(safe_context.items())],
            "",
            "## Next steps",
            "- Check the worker's recent `worker_tick_failed` events in the event log",
            "- Confirm the state database and batch source are reachable",
            "- Failed ticks are retried on the next interval; no manual replay is needed",
            "",
        ]
        file_path.write_text("\n".join(content), encoding="utf-8")
        return file_path
