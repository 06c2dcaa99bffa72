from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable, Mapping

from .errors import SequenceDefinitionError


MAX_STEP_DELAY_DAYS = 3650


class ExecutionStatus(str, Enum):
    SCHEDULED = "scheduled"
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Engagement order; callbacks only ever move an execution forward along it.
PROGRESS_RANK = {
    ExecutionStatus.SCHEDULED: 0,
    ExecutionStatus.SENT: 1,
    ExecutionStatus.DELIVERED: 2,
    ExecutionStatus.OPENED: 3,
    ExecutionStatus.CLICKED: 4,
}

ENGAGED_STATUSES = (ExecutionStatus.SENT, ExecutionStatus.DELIVERED, ExecutionStatus.OPENED)
TERMINAL_STATUSES = frozenset({ExecutionStatus.CLICKED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED})

CALLBACK_EVENTS = {
    "delivered": ExecutionStatus.DELIVERED,
    "opened": ExecutionStatus.OPENED,
    "clicked": ExecutionStatus.CLICKED,
    "bounced": ExecutionStatus.FAILED,
}


def can_advance(current: ExecutionStatus, target: ExecutionStatus) -> bool:
    if current in (ExecutionStatus.FAILED, ExecutionStatus.CANCELLED, ExecutionStatus.CLICKED):
        return False
    if target == ExecutionStatus.FAILED:
        return True
    if target == ExecutionStatus.CANCELLED:
        return current == ExecutionStatus.SCHEDULED
    if current == ExecutionStatus.SCHEDULED:
        return target == ExecutionStatus.SENT
    return PROGRESS_RANK.get(target, -1) > PROGRESS_RANK[current]


class SkipCondition(str, Enum):
    IF_RESPONDED = "skip_if_responded"
    IF_OPENED_PRIOR = "skip_if_opened_prior"
    IF_INACTIVE = "skip_if_inactive"

    @classmethod
    def parse(cls, raw: str) -> SkipCondition:
        key = str(raw).strip().lower()
        aliases = {
            "responded": cls.IF_RESPONDED,
            "if_responded": cls.IF_RESPONDED,
            "opened_prior": cls.IF_OPENED_PRIOR,
            "opened": cls.IF_OPENED_PRIOR,
            "inactive": cls.IF_INACTIVE,
        }
        if key in aliases:
            return aliases[key]
        try:
            return cls(key)
        except ValueError as exc:
            raise SequenceDefinitionError(f"unknown skip condition: {raw}") from exc


@dataclass(frozen=True)
class StepDefinition:
    step_number: int
    template_id: str
    delay: timedelta
    skip_conditions: tuple[SkipCondition, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "stepNumber": self.step_number,
            "templateId": self.template_id,
            "delaySeconds": int(self.delay.total_seconds()),
            "skipConditions": [c.value for c in self.skip_conditions],
        }


@dataclass(frozen=True)
class SequenceDefinition:
    id: int
    name: str
    description: str
    active: bool
    steps: tuple[StepDefinition, ...]
    created_at: datetime | None = None

    def step(self, step_number: int) -> StepDefinition | None:
        for step in self.steps:
            if step.step_number == step_number:
                return step
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "active": self.active,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass(frozen=True)
class ExecutionKey:
    sequence_id: int
    lead_id: int
    cycle: int
    step_number: int


@dataclass(frozen=True)
class EnrollmentExecution:
    sequence_id: int
    lead_id: int
    cycle: int
    step_number: int
    enrolled_at: datetime
    fire_at: datetime
    status: ExecutionStatus
    message_id: str | None = None
    last_error: str = ""
    retryable: bool = False
    attempt_count: int = 0
    cancel_reason: str = ""
    updated_at: datetime | None = None

    @property
    def key(self) -> ExecutionKey:
        return ExecutionKey(self.sequence_id, self.lead_id, self.cycle, self.step_number)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequenceId": self.sequence_id,
            "leadId": self.lead_id,
            "cycle": self.cycle,
            "stepNumber": self.step_number,
            "enrolledAt": self.enrolled_at.isoformat(),
            "fireAt": self.fire_at.isoformat(),
            "status": self.status.value,
            "messageId": self.message_id,
            "lastError": self.last_error,
            "retryable": self.retryable,
            "attemptCount": self.attempt_count,
            "cancelReason": self.cancel_reason,
        }


@dataclass(frozen=True)
class SequenceStats:
    sequence_id: int
    counts: dict[str, int] = field(default_factory=dict)

    def count(self, status: ExecutionStatus) -> int:
        return int(self.counts.get(status.value, 0))

    @property
    def sent(self) -> int:
        # Every execution that left the transport, whatever happened after.
        return sum(self.count(s) for s in (ExecutionStatus.SENT, ExecutionStatus.DELIVERED, ExecutionStatus.OPENED, ExecutionStatus.CLICKED))

    def to_dict(self) -> dict[str, Any]:
        out = {status.value: self.count(status) for status in ExecutionStatus}
        out["sequenceId"] = self.sequence_id
        out["totalSent"] = self.sent
        return out


def build_steps(raw_steps: Iterable[Mapping[str, Any]]) -> tuple[StepDefinition, ...]:
    steps: list[StepDefinition] = []
    previous_delay: timedelta | None = None
    for number, raw in enumerate(raw_steps, start=1):
        if not isinstance(raw, Mapping):
            raise SequenceDefinitionError(f"step {number} must be an object")
        template_id = str(raw.get("templateId") or raw.get("template_id") or "").strip()
        if not template_id:
            raise SequenceDefinitionError(f"step {number} is missing templateId")
        try:
            delay_days = float(raw.get("delayDays", raw.get("delay_days", 0)) or 0)
            delay_hours = float(raw.get("delayHours", raw.get("delay_hours", 0)) or 0)
        except (TypeError, ValueError) as exc:
            raise SequenceDefinitionError(f"step {number} has a non-numeric delay") from exc
        if not (math.isfinite(delay_days) and math.isfinite(delay_hours)):
            raise SequenceDefinitionError(f"step {number} has a non-finite delay")
        if delay_days < 0 or delay_hours < 0:
            raise SequenceDefinitionError(f"step {number} has a negative delay")
        if delay_days + delay_hours / 24 > MAX_STEP_DELAY_DAYS:
            raise SequenceDefinitionError(f"step {number} delay exceeds {MAX_STEP_DELAY_DAYS} days")
        delay = timedelta(days=delay_days, hours=delay_hours)
        if previous_delay is not None and delay < previous_delay:
            raise SequenceDefinitionError(
                f"step {number} fires before step {number - 1}; delays must be non-decreasing"
            )
        raw_conditions = raw.get("skipConditions", raw.get("skip_conditions")) or []
        if isinstance(raw_conditions, str):
            raw_conditions = [raw_conditions]
        conditions = tuple(dict.fromkeys(SkipCondition.parse(c) for c in raw_conditions))
        steps.append(StepDefinition(step_number=number, template_id=template_id, delay=delay, skip_conditions=conditions))
        previous_delay = delay
    if not steps:
        raise SequenceDefinitionError("a sequence needs at least one step")
    return tuple(steps)


def compute_fire_times(enrolled_at: datetime, steps: Iterable[StepDefinition]) -> dict[int, datetime]:
    return {step.step_number: enrolled_at + step.delay for step in steps}
