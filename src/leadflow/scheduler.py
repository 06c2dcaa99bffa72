from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Mapping

from .errors import SequenceNotFoundError
from .lead_store import LeadStore
from .logging_utils import JsonlLogger
from .sequence_store import SequenceStore
from .sequences import EnrollmentExecution, SequenceDefinition, SequenceStats, build_steps
from .time_utils import utc_now

ENROLLED = "enrolled"
ALREADY_ENROLLED = "already_enrolled"
LEAD_NOT_FOUND = "lead_not_found"
LEAD_INACTIVE = "lead_inactive"


@dataclass(frozen=True)
class EnrollmentItem:
    lead_id: Any
    status: str
    cycle: int | None = None

    @property
    def ok(self) -> bool:
        return self.status in (ENROLLED, ALREADY_ENROLLED)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"leadId": self.lead_id, "status": self.status, "success": self.ok}
        if self.cycle is not None:
            out["cycle"] = self.cycle
        return out


@dataclass
class EnrollmentResult:
    sequence_id: int
    items: list[EnrollmentItem] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for item in self.items if item.status == status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequenceId": self.sequence_id,
            "enrolled": self.count(ENROLLED),
            "alreadyEnrolled": self.count(ALREADY_ENROLLED),
            "failed": sum(1 for item in self.items if not item.ok),
            "results": [item.to_dict() for item in self.items],
        }


class SequenceScheduler:
    def __init__(
        self,
        sequences: SequenceStore,
        leads: LeadStore,
        logger: JsonlLogger,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.sequences = sequences
        self.leads = leads
        self.logger = logger
        self._clock = clock

    def create_sequence(
        self,
        name: str,
        description: str,
        steps: Iterable[Mapping[str, Any]],
        active: bool = True,
    ) -> SequenceDefinition:
        built = build_steps(steps)
        sequence = self.sequences.create_sequence(name.strip(), description, built, active=active)
        self.logger.write(
            "sequence_created",
            {"sequence_id": sequence.id, "name": sequence.name, "steps": len(sequence.steps), "active": active},
        )
        return sequence

    def require(self, sequence_id: int) -> SequenceDefinition:
        sequence = self.sequences.get_sequence(sequence_id)
        if sequence is None:
            raise SequenceNotFoundError(f"sequence {sequence_id} not found")
        return sequence

    def set_active(self, sequence_id: int, active: bool) -> SequenceDefinition:
        self.require(sequence_id)
        self.sequences.set_active(sequence_id, active)
        self.logger.write("sequence_toggled", {"sequence_id": sequence_id, "active": active})
        return self.require(sequence_id)

    def enroll(self, sequence_id: int, lead_ids: Iterable[Any]) -> EnrollmentResult:
        sequence = self.require(sequence_id)
        result = EnrollmentResult(sequence_id=sequence_id)
        for raw_id in lead_ids:
            lead_id = _as_lead_id(raw_id)
            lead = self.leads.get_lead(lead_id) if lead_id is not None else None
            if lead is None:
                result.items.append(EnrollmentItem(lead_id=raw_id, status=LEAD_NOT_FOUND))
                continue
            if not lead.active:
                result.items.append(EnrollmentItem(lead_id=lead.id, status=LEAD_INACTIVE))
                continue
            cycle = self.sequences.enroll(sequence, lead.id, self._clock())
            if cycle is None:
                result.items.append(EnrollmentItem(lead_id=lead.id, status=ALREADY_ENROLLED))
                continue
            result.items.append(EnrollmentItem(lead_id=lead.id, status=ENROLLED, cycle=cycle))
            self.logger.write(
                "lead_enrolled",
                {"sequence_id": sequence_id, "lead_id": lead.id, "cycle": cycle, "steps": len(sequence.steps)},
            )
        return result

    def unenroll(self, sequence_id: int, lead_id: int) -> int:
        self.require(sequence_id)
        cancelled = self.sequences.cancel_scheduled(sequence_id, lead_id, reason="unenrolled")
        if cancelled:
            self.logger.write(
                "execution_cancelled",
                {"sequence_id": sequence_id, "lead_id": lead_id, "reason": "unenrolled", "count": cancelled},
            )
        return cancelled

    def upcoming(self, horizon: timedelta, limit: int = 500) -> list[EnrollmentExecution]:
        return self.sequences.upcoming(self._clock() + horizon, limit=limit)

    def stats(self, sequence_id: int) -> SequenceStats:
        self.require(sequence_id)
        return self.sequences.stats(sequence_id)


def _as_lead_id(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.strip().isdigit():
        return int(raw.strip())
    return None
