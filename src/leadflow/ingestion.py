from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from .batch_source import parse_delimited
from .config import IngestionPolicy
from .errors import ArtifactAbortedError, PayloadValidationError
from .lead_store import LeadStore
from .ledger import IdempotencyLedger
from .logging_utils import JsonlLogger
from .normalizer import RowRejection, map_columns, validate_row
from .time_utils import utc_now

ABANDONMENT_EVALUATION_REQUESTED = "abandonment_evaluation_requested"
TOO_MANY_ROW_ERRORS = "too many row errors"

EventHandler = Callable[[str, dict[str, Any]], None]


@dataclass(frozen=True)
class RowError:
    index: int
    reason: str


@dataclass
class IngestResult:
    artifact_id: str
    accepted: int = 0
    rejected: int = 0
    row_errors: list[RowError] = field(default_factory=list)
    lead_ids: dict[int, int] = field(default_factory=dict)
    duplicate: bool = False
    aborted: bool = False
    error: str = ""

    @property
    def processed(self) -> int:
        return self.accepted + self.rejected

    def raise_for_abort(self) -> None:
        if self.aborted:
            raise ArtifactAbortedError(self.artifact_id, self.rejected)

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifactId": self.artifact_id,
            "accepted": self.accepted,
            "rejected": self.rejected,
            "rowErrors": [{"index": e.index, "reason": e.reason} for e in self.row_errors],
            "duplicate": self.duplicate,
            "aborted": self.aborted,
            "error": self.error,
        }


@dataclass
class PayloadResult:
    artifact_id: str
    total_processed: int
    success_count: int
    failure_count: int
    results: list[dict[str, Any]]
    duplicate: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifactId": self.artifact_id,
            "totalProcessed": self.total_processed,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "results": self.results,
            "duplicate": self.duplicate,
        }


def payload_artifact_id(payload: Mapping[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)
    return "payload:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class IngestionService:
    def __init__(
        self,
        ledger: IdempotencyLedger,
        leads: LeadStore,
        policy: IngestionPolicy,
        logger: JsonlLogger,
        clock: Callable[[], datetime] = utc_now,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ledger = ledger
        self.leads = leads
        self.policy = policy
        self.logger = logger
        self._clock = clock
        self._timer = timer
        self._subscribers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        self._subscribers.append(handler)

    def ingest(self, artifact_id: str, rows: Iterable[Any], source: str = "", size: int = 0) -> IngestResult:
        with self.ledger.guard(artifact_id):
            if self.ledger.is_processed(artifact_id):
                self.logger.write("artifact_skipped", {"artifact_id": artifact_id, "reason": "already_processed"})
                return IngestResult(artifact_id=artifact_id, duplicate=True)

            started = self._timer()
            result = IngestResult(artifact_id=artifact_id)
            for index, raw in enumerate(rows):
                outcome = validate_row(index, raw, self.policy, source)
                if isinstance(outcome, RowRejection):
                    result.rejected += 1
                    result.row_errors.append(RowError(index=outcome.index, reason=outcome.reason))
                    self.logger.write(
                        "row_rejected",
                        {"artifact_id": artifact_id, "index": index, "reason": outcome.reason, "email": outcome.email},
                    )
                    if result.rejected > self.policy.max_row_errors:
                        result.aborted = True
                        result.error = TOO_MANY_ROW_ERRORS
                        break
                    continue
                upserted = self.leads.upsert_visitor(outcome, seen_at=self._clock())
                result.accepted += 1
                result.lead_ids[index] = upserted.lead_id

            duration_ms = int((self._timer() - started) * 1000)
            self.ledger.record(
                artifact_id,
                size=size,
                row_count=result.processed,
                error_count=result.rejected,
                duration_ms=duration_ms,
                aborted=result.aborted,
                processed_at=self._clock(),
            )

        summary = {
            "artifact_id": artifact_id,
            "source": source,
            "accepted": result.accepted,
            "rejected": result.rejected,
            "duration_ms": duration_ms,
        }
        if result.aborted:
            self.logger.write("artifact_aborted", {**summary, "max_row_errors": self.policy.max_row_errors})
        self.logger.write("artifact_ingested", {**summary, "aborted": result.aborted})
        self._emit(ABANDONMENT_EVALUATION_REQUESTED, {"artifact_id": artifact_id, "accepted": result.accepted})
        return result

    def submit_payload(self, payload: Any) -> PayloadResult:
        if not isinstance(payload, Mapping):
            raise PayloadValidationError("payload must be a JSON object")
        raw_leads = payload.get("leads")
        if not isinstance(raw_leads, list):
            raise PayloadValidationError("payload.leads must be a list")
        source = payload.get("source") or "api"
        if not isinstance(source, str):
            raise PayloadValidationError("payload.source must be a string")

        artifact_id = payload_artifact_id(payload)
        result = self.ingest(artifact_id, raw_leads, source=source.strip() or "api")
        if result.duplicate:
            return PayloadResult(
                artifact_id=artifact_id,
                total_processed=0,
                success_count=0,
                failure_count=0,
                results=[],
                duplicate=True,
            )

        errors = {e.index: e.reason for e in result.row_errors}
        items: list[dict[str, Any]] = []
        for index, raw in enumerate(raw_leads):
            item: dict[str, Any] = {"index": index, "email": _raw_email(raw)}
            if index in result.lead_ids:
                item.update(success=True, leadId=result.lead_ids[index])
            else:
                item.update(success=False, error=errors.get(index, TOO_MANY_ROW_ERRORS))
            items.append(item)
        return PayloadResult(
            artifact_id=artifact_id,
            total_processed=result.processed,
            success_count=result.accepted,
            failure_count=len(items) - result.accepted,
            results=items,
        )

    def ingest_file(self, path: Path, source: str = "manual", strict: bool = False) -> IngestResult:
        """Ingest a local delimited file. With ``strict``, an aborted artifact raises ArtifactAbortedError
        after the ledger has recorded it."""
        path = Path(path)
        data = path.read_bytes()
        rows = parse_delimited(data)
        result = self.ingest(path.name, rows, source=source, size=len(data))
        if strict:
            result.raise_for_abort()
        return result

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        self.logger.write(event_type, payload)
        for handler in list(self._subscribers):
            try:
                handler(event_type, payload)
            except Exception as exc:
                self.logger.write(
                    "subscriber_failed",
                    {"event_type": event_type, "error_type": type(exc).__name__, "detail": str(exc)[:220]},
                )


def _raw_email(raw: Any) -> str:
    if not isinstance(raw, Mapping):
        return ""
    value = map_columns(raw).get("email")
    return value.strip() if isinstance(value, str) else ""
