from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from .config import DispatchPolicy
from .errors import LeadNotFoundError, PayloadValidationError, RowValidationError, TransportError
from .lead_store import LeadRecord, LeadStore
from .logging_utils import JsonlLogger
from .normalizer import canonical_email, hash_email
from .sequence_store import SequenceStore
from .sequences import (
    CALLBACK_EVENTS,
    EnrollmentExecution,
    ExecutionStatus,
    SkipCondition,
    StepDefinition,
    can_advance,
)
from .time_utils import parse_iso, to_iso, utc_now
from .transport import DeliveryResult, TemplateCatalog, Transport

CAS_ATTEMPTS = 3


@dataclass
class TickSummary:
    due: int = 0
    sent: int = 0
    cancelled: int = 0
    retried: int = 0
    failed: int = 0
    paused: int = 0
    conflicts: int = 0
    skipped_busy: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "due": self.due,
            "sent": self.sent,
            "cancelled": self.cancelled,
            "retried": self.retried,
            "failed": self.failed,
            "paused": self.paused,
            "conflicts": self.conflicts,
            "skippedBusy": self.skipped_busy,
        }


@dataclass(frozen=True)
class CallbackOutcome:
    applied: bool
    status: str | None
    reason: str = ""
    message_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"applied": self.applied, "status": self.status, "reason": self.reason, "messageId": self.message_id}


def retry_delay(attempts: int, base_seconds: int, max_seconds: int) -> timedelta:
    return timedelta(seconds=min(base_seconds * 2 ** max(attempts - 1, 0), max_seconds))


class ExecutionDispatcher:
    def __init__(
        self,
        sequences: SequenceStore,
        leads: LeadStore,
        transport: Transport,
        templates: TemplateCatalog,
        policy: DispatchPolicy,
        logger: JsonlLogger,
        hash_emails: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.sequences = sequences
        self.leads = leads
        self.transport = transport
        self.templates = templates
        self.policy = policy
        self.logger = logger
        self.hash_emails = hash_emails
        self._clock = clock
        self._running = threading.Lock()

    def tick(self) -> TickSummary:
        if not self._running.acquire(blocking=False):
            return TickSummary(skipped_busy=True)
        try:
            return self._tick()
        finally:
            self._running.release()

    def _tick(self) -> TickSummary:
        now = self._clock()
        summary = TickSummary()
        due = self.sequences.due(now, limit=self.policy.batch_limit)
        summary.due = len(due)
        summary.paused = self.sequences.count_due_paused(now)
        for execution in due:
            self._dispatch(execution, summary)
        return summary

    def _dispatch(self, execution: EnrollmentExecution, summary: TickSummary) -> None:
        sequence = self.sequences.get_sequence(execution.sequence_id)
        step = sequence.step(execution.step_number) if sequence else None
        if step is None:
            self._fail(execution, "step_not_found", retryable=False, summary=summary)
            return
        lead = self.leads.get_lead(execution.lead_id)
        if lead is None:
            self._fail(execution, "lead_not_found", retryable=False, summary=summary)
            return

        reason = self._skip_reason(execution, step, lead)
        if reason:
            if self.sequences.transition(
                execution.key, ExecutionStatus.SCHEDULED, ExecutionStatus.CANCELLED, cancel_reason=reason
            ):
                summary.cancelled += 1
                self.logger.write("execution_cancelled", {**_ident(execution), "reason": reason})
            else:
                summary.conflicts += 1
            return

        if not lead.email:
            self._fail(execution, "no_deliverable_email", retryable=False, summary=summary)
            return
        rendered = self.templates.render(step.template_id, lead)
        if rendered is None:
            self._fail(execution, f"template_not_found:{step.template_id}", retryable=False, summary=summary)
            return

        subject, body = rendered
        try:
            result = self.transport.send(lead.email, subject, body)
        except Exception as exc:
            if not isinstance(exc, (TransportError, OSError)):
                self.logger.write(
                    "transport_send_raised",
                    {**_ident(execution), "error_type": type(exc).__name__, "error": str(exc)[:200]},
                )
            result = DeliveryResult(
                ok=False,
                message_id="",
                status=type(exc).__name__,
                detail=str(exc)[:200],
                retryable=bool(getattr(exc, "retryable", True)),
            )
        attempts = execution.attempt_count + 1

        if result.ok:
            if self.sequences.transition(
                execution.key,
                ExecutionStatus.SCHEDULED,
                ExecutionStatus.SENT,
                message_id=result.message_id,
                attempt_count=attempts,
                last_error="",
                retryable=False,
            ):
                summary.sent += 1
                self.logger.write(
                    "execution_sent",
                    {**_ident(execution), "message_id": result.message_id, "attempt_count": attempts, "to": lead.email},
                )
            else:
                summary.conflicts += 1
            return

        detail = f"{result.status}:{result.detail}" if result.detail else result.status
        if result.retryable and attempts < self.policy.max_attempts:
            fire_at = self._clock() + retry_delay(attempts, self.policy.retry_base_seconds, self.policy.retry_max_seconds)
            if self.sequences.transition(
                execution.key,
                ExecutionStatus.SCHEDULED,
                ExecutionStatus.SCHEDULED,
                fire_at_utc=to_iso(fire_at),
                attempt_count=attempts,
                last_error=detail,
                retryable=True,
            ):
                summary.retried += 1
                self.logger.write(
                    "execution_retry_scheduled",
                    {**_ident(execution), "attempt_count": attempts, "fire_at": to_iso(fire_at), "error": detail},
                )
            else:
                summary.conflicts += 1
            return
        self._fail(execution, detail, retryable=result.retryable, summary=summary, attempts=attempts)

    def _skip_reason(self, execution: EnrollmentExecution, step: StepDefinition, lead: LeadRecord) -> str | None:
        for condition in step.skip_conditions:
            if condition == SkipCondition.IF_RESPONDED and self.leads.has_reply_since(lead.id, execution.enrolled_at):
                return condition.value
            if condition == SkipCondition.IF_OPENED_PRIOR and self.sequences.has_engagement_before(execution.key):
                return condition.value
            if condition == SkipCondition.IF_INACTIVE and not lead.active:
                return condition.value
        return None

    def _fail(
        self,
        execution: EnrollmentExecution,
        error: str,
        retryable: bool,
        summary: TickSummary,
        attempts: int | None = None,
    ) -> None:
        fields: dict[str, Any] = {"last_error": error, "retryable": retryable}
        if attempts is not None:
            fields["attempt_count"] = attempts
        if self.sequences.transition(execution.key, ExecutionStatus.SCHEDULED, ExecutionStatus.FAILED, **fields):
            summary.failed += 1
            self.logger.write(
                "execution_failed",
                {**_ident(execution), "error": error, "retryable": retryable, "attempt_count": attempts or execution.attempt_count},
            )
        else:
            summary.conflicts += 1

    def handle_callback(self, payload: Any) -> CallbackOutcome:
        if not isinstance(payload, Mapping):
            raise PayloadValidationError("callback must be a JSON object")
        message_id = payload.get("messageId") or payload.get("message_id")
        event = payload.get("event")
        if not isinstance(message_id, str) or not message_id.strip():
            raise PayloadValidationError("callback.messageId is required")
        if not isinstance(event, str) or not event.strip():
            raise PayloadValidationError("callback.event is required")
        message_id = message_id.strip()
        event = event.strip().lower()
        occurred_at = parse_iso(payload.get("timestamp")) if isinstance(payload.get("timestamp"), str) else None

        outcome = self._apply_callback(message_id, event)
        self.sequences.record_event(message_id, event, occurred_at, outcome.applied, outcome.reason)
        log_payload = {"message_id": message_id, "event": event, "status": outcome.status, "reason": outcome.reason}
        self.logger.write("callback_applied" if outcome.applied else "callback_ignored", log_payload)
        return outcome

    def _apply_callback(self, message_id: str, event: str) -> CallbackOutcome:
        target = CALLBACK_EVENTS.get(event)
        if target is None:
            return CallbackOutcome(applied=False, status=None, reason="unsupported_event", message_id=message_id)
        for _ in range(CAS_ATTEMPTS):
            execution = self.sequences.find_by_message_id(message_id)
            if execution is None:
                return CallbackOutcome(applied=False, status=None, reason="unknown_message", message_id=message_id)
            current = execution.status
            if current == target:
                return CallbackOutcome(applied=False, status=current.value, reason="duplicate", message_id=message_id)
            if not can_advance(current, target):
                reason = "already_clicked" if current == ExecutionStatus.CLICKED else "out_of_order"
                if current in (ExecutionStatus.FAILED, ExecutionStatus.CANCELLED):
                    reason = "terminal"
                return CallbackOutcome(applied=False, status=current.value, reason=reason, message_id=message_id)
            fields: dict[str, Any] = {}
            if target == ExecutionStatus.FAILED:
                fields = {"last_error": event, "retryable": False}
            if self.sequences.transition(execution.key, current, target, **fields):
                return CallbackOutcome(applied=True, status=target.value, message_id=message_id)
        return CallbackOutcome(applied=False, status=None, reason="conflict", message_id=message_id)

    def record_reply(
        self,
        *,
        lead_id: int | None = None,
        email: str | None = None,
        channel: str = "email",
        body: str = "",
        received_at: datetime | None = None,
    ) -> int:
        lead = self._resolve_lead(lead_id, email)
        reply_id = self.leads.record_reply(lead.id, channel, body, received_at=received_at)
        self.logger.write("reply_recorded", {"lead_id": lead.id, "channel": channel, "reply_id": reply_id})
        return lead.id

    def _resolve_lead(self, lead_id: int | None, email: str | None) -> LeadRecord:
        if lead_id is not None:
            lead = self.leads.get_lead(lead_id)
        elif email is not None:
            try:
                canonical = canonical_email(email)
            except RowValidationError as exc:
                raise PayloadValidationError(str(exc)) from exc
            lead = self.leads.get_lead_by_identity(hash_email(canonical) if self.hash_emails else canonical)
        else:
            raise PayloadValidationError("leadId or email is required")
        if lead is None:
            raise LeadNotFoundError("lead not found")
        return lead


def _ident(execution: EnrollmentExecution) -> dict[str, int]:
    return {
        "sequence_id": execution.sequence_id,
        "lead_id": execution.lead_id,
        "cycle": execution.cycle,
        "step_number": execution.step_number,
    }
