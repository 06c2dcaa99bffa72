from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from .batch_source import BatchSource, parse_delimited
from .errors import BatchSourceError
from .ingestion import IngestionService
from .ledger import IdempotencyLedger
from .logging_utils import JsonlLogger


@dataclass
class PollSummary:
    listed: int = 0
    skipped_known: int = 0
    skipped_empty: int = 0
    ingested: int = 0
    parse_failures: int = 0
    aborted: int = 0
    rows_accepted: int = 0
    rows_rejected: int = 0
    skipped_busy: bool = False
    files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "listed": self.listed,
            "skippedKnown": self.skipped_known,
            "skippedEmpty": self.skipped_empty,
            "ingested": self.ingested,
            "parseFailures": self.parse_failures,
            "aborted": self.aborted,
            "rowsAccepted": self.rows_accepted,
            "rowsRejected": self.rows_rejected,
            "skippedBusy": self.skipped_busy,
            "files": list(self.files),
        }


class BatchIngestionPoller:
    def __init__(
        self,
        source_factory: Callable[[], BatchSource],
        ingestion: IngestionService,
        ledger: IdempotencyLedger,
        logger: JsonlLogger,
        source_name: str = "batch",
    ) -> None:
        self.source_factory = source_factory
        self.ingestion = ingestion
        self.ledger = ledger
        self.logger = logger
        self.source_name = source_name
        self._running = threading.Lock()

    def poll_once(self) -> PollSummary:
        if not self._running.acquire(blocking=False):
            self.logger.write("poll_skipped", {"reason": "already_running"})
            return PollSummary(skipped_busy=True)
        try:
            return self._poll()
        finally:
            self._running.release()

    def _poll(self) -> PollSummary:
        summary = PollSummary()
        self.logger.write("poll_started", {"source": self.source_name})
        with self.source_factory() as source:
            remote_files = source.list_files()
            summary.listed = len(remote_files)
            for remote in remote_files:
                if remote.size <= 0:
                    summary.skipped_empty += 1
                    continue
                if self.ledger.is_processed(remote.name):
                    summary.skipped_known += 1
                    continue
                data = source.read(remote.name)
                try:
                    rows = parse_delimited(data)
                except ValueError as exc:
                    summary.parse_failures += 1
                    self.logger.write(
                        "file_parse_failed",
                        {"file": remote.name, "error_type": type(exc).__name__, "detail": str(exc)[:220]},
                    )
                    continue
                result = self.ingestion.ingest(remote.name, rows, source=self.source_name, size=remote.size)
                if result.duplicate:
                    summary.skipped_known += 1
                    continue
                summary.ingested += 1
                summary.files.append(remote.name)
                summary.rows_accepted += result.accepted
                summary.rows_rejected += result.rejected
                if result.aborted:
                    summary.aborted += 1
        self.logger.write("poll_finished", {"source": self.source_name, **summary.to_dict()})
        return summary

    def health_check(self) -> dict[str, Any]:
        try:
            with self.source_factory() as source:
                files = source.list_files()
        except BatchSourceError as exc:
            return {"ok": False, "source": self.source_name, "error": str(exc), "retryable": exc.retryable}
        return {"ok": True, "source": self.source_name, "files": len(files)}
