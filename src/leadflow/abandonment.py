from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from .config import AbandonmentPolicy
from .ingestion import ABANDONMENT_EVALUATION_REQUESTED
from .lead_store import LeadStore
from .logging_utils import JsonlLogger
from .scheduler import ENROLLED, SequenceScheduler
from .time_utils import to_iso, utc_now


@dataclass(frozen=True)
class AbandonmentSummary:
    evaluated: int
    flagged: int
    enrolled: int

    def to_dict(self) -> dict[str, int]:
        return {"evaluated": self.evaluated, "flagged": self.flagged, "enrolled": self.enrolled}


class AbandonmentEvaluator:
    """Flags visitors that went quiet and optionally starts the recovery sequence for them."""

    def __init__(
        self,
        leads: LeadStore,
        scheduler: SequenceScheduler,
        policy: AbandonmentPolicy,
        logger: JsonlLogger,
        clock: Callable[[], datetime] = utc_now,
        batch_limit: int = 1000,
    ) -> None:
        self.leads = leads
        self.scheduler = scheduler
        self.policy = policy
        self.logger = logger
        self._clock = clock
        self.batch_limit = batch_limit
        self._running = threading.Lock()

    def on_event(self, event_type: str, payload: dict[str, Any]) -> None:
        if event_type == ABANDONMENT_EVALUATION_REQUESTED:
            self.evaluate()

    def evaluate(self) -> AbandonmentSummary:
        with self._running:
            cutoff = self._clock() - timedelta(minutes=self.policy.threshold_minutes)
            candidates = self.leads.list_abandonment_candidates(cutoff, limit=self.batch_limit)
            flagged = [lead.id for lead in candidates if self.leads.set_abandoned(lead.id)]

            enrolled = 0
            sequence = None
            if flagged and self.policy.sequence_name:
                sequence = self.scheduler.sequences.get_sequence_by_name(self.policy.sequence_name)
                if sequence is None:
                    self.logger.write("abandonment_sequence_missing", {"name": self.policy.sequence_name})
                elif sequence.active:
                    result = self.scheduler.enroll(sequence.id, flagged)
                    enrolled = result.count(ENROLLED)

            summary = AbandonmentSummary(evaluated=len(candidates), flagged=len(flagged), enrolled=enrolled)
            self.logger.write(
                "abandonment_evaluated",
                {**summary.to_dict(), "cutoff": to_iso(cutoff), "sequence_id": sequence.id if sequence else None},
            )
            return summary
