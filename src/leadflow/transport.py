from __future__ import annotations

import json
import os
import socket
import uuid
from dataclasses import dataclass
from html import escape
from pathlib import Path
from string import Template
from typing import Any, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .lead_store import LeadRecord

RETRYABLE_HTTP_CODES = {408, 425, 429}


@dataclass(frozen=True)
class DeliveryResult:
    ok: bool
    message_id: str
    status: str
    detail: str
    retryable: bool = False


class Transport(Protocol):
    def send(self, to: str, subject: str, body: str) -> DeliveryResult: ...


class ResendEmailClient:
    def __init__(self, api_key: str, from_email: str, timeout: float = 25.0) -> None:
        self.api_key = api_key
        self.from_email = from_email
        self.timeout = timeout

    def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        payload = {
            "from": self.from_email,
            "to": [to],
            "subject": subject,
            "html": body,
        }
        req = Request(
            "https://api.resend.com/emails",
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": "leadflow-dispatcher/1.0",
            },
        )
        try:
            with urlopen(req, timeout=self.timeout) as res:
                data = json.loads(res.read().decode("utf-8") or "{}")
            message_id = str(data.get("id", "")).strip()
            if not message_id:
                return DeliveryResult(ok=False, message_id="", status="bad_response", detail="missing id", retryable=True)
            return DeliveryResult(ok=True, message_id=message_id, status="sent", detail="")
        except HTTPError as exc:
            retryable = exc.code in RETRYABLE_HTTP_CODES or exc.code >= 500
            return DeliveryResult(ok=False, message_id="", status="http_error", detail=f"{exc.code}", retryable=retryable)
        except URLError as exc:
            return DeliveryResult(ok=False, message_id="", status="network_error", detail=str(exc.reason), retryable=True)
        except (socket.timeout, TimeoutError) as exc:
            return DeliveryResult(ok=False, message_id="", status="timeout", detail=str(exc) or "timed out", retryable=True)
        except ValueError as exc:
            return DeliveryResult(ok=False, message_id="", status="bad_response", detail=str(exc)[:200], retryable=True)


class SimulatedTransport:
    """Accepts every send without leaving the process; used when no provider is configured."""

    def __init__(self) -> None:
        self.sent: list[dict[str, str]] = []

    def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        message_id = f"sim-{uuid.uuid4().hex}"
        self.sent.append({"to": to, "subject": subject, "message_id": message_id})
        return DeliveryResult(ok=True, message_id=message_id, status="simulated", detail="")


def get_resend_client_from_env(timeout: float = 25.0) -> ResendEmailClient | None:
    key = os.getenv("RESEND_API_KEY", "").strip()
    from_email = os.getenv("RESEND_FROM_EMAIL", "").strip()
    if not key or not from_email:
        return None
    return ResendEmailClient(api_key=key, from_email=from_email, timeout=timeout)


@dataclass(frozen=True)
class EmailTemplate:
    template_id: str
    subject: str
    body: str


DEFAULT_TEMPLATES = (
    EmailTemplate(
        "initial-followup",
        "Just checking in - your car financing options",
        "Hi $first_name,\n\n"
        "Thanks for stopping by. Your financing options for $vehicle are still available, "
        "and it only takes a couple of minutes to pick up where you left off.\n\n"
        "Reply to this email if you have any questions.",
    ),
    EmailTemplate(
        "second-touchpoint",
        "Still here to help with your car financing",
        "Hi $first_name,\n\n"
        "We saved your progress. Most applicants hear back the same day, "
        "and checking your options does not affect your credit score.",
    ),
    EmailTemplate(
        "final-opportunity",
        "One last chance - let's get you approved",
        "Hi $first_name,\n\n"
        "This is our last note about your application. If now is not the right time, no problem. "
        "Just reply whenever you are ready.",
    ),
    EmailTemplate(
        "welcome-inmarket",
        "Your car financing options are ready to review",
        "Hi $first_name,\n\nYour personalized options for $vehicle are ready to review.",
    ),
    EmailTemplate(
        "prequalification-reminder",
        "Get pre-qualified in under 2 minutes",
        "Hi $first_name,\n\nPre-qualification takes under two minutes and has no impact on your credit.",
    ),
)


class TemplateCatalog:
    def __init__(self, templates: dict[str, EmailTemplate] | None = None) -> None:
        self._templates = dict(templates or {})

    @classmethod
    def default(cls) -> TemplateCatalog:
        return cls({t.template_id: t for t in DEFAULT_TEMPLATES})

    @classmethod
    def from_file(cls, path: Path) -> TemplateCatalog:
        """Load ``{template_id: {subject, body}}`` on top of the built-in templates."""
        catalog = cls.default()
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        for template_id, item in raw.items():
            catalog.register(template_id, str(item.get("subject", "")), str(item.get("body", "")))
        return catalog

    def register(self, template_id: str, subject: str, body: str) -> None:
        self._templates[template_id] = EmailTemplate(template_id, subject, body)

    def __contains__(self, template_id: str) -> bool:
        return template_id in self._templates

    def render(self, template_id: str, lead: LeadRecord) -> tuple[str, str] | None:
        template = self._templates.get(template_id)
        if template is None:
            return None
        fields = _lead_fields(lead)
        subject = Template(template.subject).safe_substitute(fields)
        text = Template(template.body).safe_substitute({k: escape(v) for k, v in fields.items()})
        return subject, text.replace("\n", "<br>")


def _lead_fields(lead: LeadRecord) -> dict[str, Any]:
    first = lead.first_name or "there"
    return {
        "first_name": first,
        "last_name": lead.last_name,
        "name": lead.display_name,
        "vehicle": lead.vehicle_interest or "your next vehicle",
        "vehicle_interest": lead.vehicle_interest,
        "source": lead.source,
    }
