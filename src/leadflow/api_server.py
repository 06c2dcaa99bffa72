from __future__ import annotations

import json
import re
from datetime import timedelta
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs, urlparse

from .engine import OutreachEngine
from .errors import (
    LeadflowError,
    LeadNotFoundError,
    PayloadValidationError,
    SequenceDefinitionError,
    SequenceNotFoundError,
)

SEQUENCE_ACTION_RE = re.compile(r"^/api/sequences/(\d+)/(active|enroll|unenroll|stats)$")
MAX_UPCOMING_HOURS = 24 * 365


class LeadflowApiHandler(BaseHTTPRequestHandler):
    engine: OutreachEngine

    def do_GET(self) -> None:  # noqa: N802
        self._dispatch("GET")

    def do_POST(self) -> None:  # noqa: N802
        self._dispatch("POST")

    def log_message(self, format: str, *args) -> None:
        return

    def _dispatch(self, method: str) -> None:
        parsed = urlparse(self.path)
        try:
            self._route(method, parsed.path, parse_qs(parsed.query))
        except (PayloadValidationError, SequenceDefinitionError) as exc:
            self._send_json(400, {"ok": False, **exc.to_dict()})
        except (SequenceNotFoundError, LeadNotFoundError) as exc:
            self._send_json(404, {"ok": False, **exc.to_dict()})
        except LeadflowError as exc:
            code = 503 if exc.retryable else 500
            self.engine.logger.write("api_request_failed", {"path": parsed.path, "status": code, **exc.to_dict()})
            self._send_json(code, {"ok": False, **exc.to_dict()})

    def _route(self, method: str, path: str, query: dict[str, list[str]]) -> None:
        if method == "GET" and path == "/health":
            self._send_json(200, {"status": "ok"})
            return
        if method == "GET" and path == "/api/cache/stats":
            stats = self.engine.cache.stats()
            self._send_json(
                200,
                {
                    "hits": stats.hits,
                    "misses": stats.misses,
                    "loads": stats.loads,
                    "size": stats.size,
                    "pendingPatterns": stats.pending_patterns,
                    "hitRate": round(stats.hit_rate, 4),
                },
            )
            return
        if method == "GET" and path == "/api/executions/upcoming":
            self._handle_upcoming(query)
            return
        if method == "POST" and path == "/api/leads":
            result = self.engine.ingestion.submit_payload(self._read_json())
            self._send_json(200, {"ok": True, **result.to_dict()})
            return
        if method == "POST" and path == "/webhooks/transport":
            outcome = self.engine.dispatcher.handle_callback(self._read_json())
            self._send_json(200, {"ok": True, **outcome.to_dict()})
            return
        if method == "POST" and path == "/webhooks/reply":
            self._handle_reply()
            return
        if method == "POST" and path == "/api/sequences":
            self._handle_create_sequence()
            return

        match = SEQUENCE_ACTION_RE.match(path)
        if match:
            sequence_id, action = int(match.group(1)), match.group(2)
            if method == "GET" and action == "stats":
                self._send_json(200, {"ok": True, **self.engine.scheduler.stats(sequence_id).to_dict()})
                return
            if method == "POST" and action == "active":
                self._handle_toggle(sequence_id)
                return
            if method == "POST" and action == "enroll":
                self._handle_enroll(sequence_id)
                return
            if method == "POST" and action == "unenroll":
                self._handle_unenroll(sequence_id)
                return

        self._send_json(404, {"ok": False, "error": "not_found"})

    def _send_json(self, code: int, payload: dict) -> None:
        raw = json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)

    def _read_json(self) -> Any:
        content_length = int(self.headers.get("Content-Length", "0") or "0")
        body = self.rfile.read(content_length) if content_length > 0 else b""
        if not body.strip():
            raise PayloadValidationError("request body is required")
        try:
            return json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise PayloadValidationError("request body is not valid JSON") from exc

    def _read_object(self) -> dict[str, Any]:
        payload = self._read_json()
        if not isinstance(payload, dict):
            raise PayloadValidationError("request body must be a JSON object")
        return payload

    def _handle_upcoming(self, query: dict[str, list[str]]) -> None:
        raw_hours = (query.get("hours") or ["24"])[0]
        try:
            hours = float(raw_hours)
        except ValueError as exc:
            raise PayloadValidationError("hours must be a number") from exc
        if hours < 0 or hours > MAX_UPCOMING_HOURS:
            raise PayloadValidationError(f"hours must be between 0 and {MAX_UPCOMING_HOURS}")
        items = self.engine.scheduler.upcoming(timedelta(hours=hours))
        self._send_json(200, {"ok": True, "hours": hours, "count": len(items), "items": [e.to_dict() for e in items]})

    def _handle_reply(self) -> None:
        payload = self._read_object()
        email = payload.get("email")
        lead_id = payload.get("leadId")
        body = payload.get("body") or payload.get("text") or ""
        channel = payload.get("channel") or "email"
        if lead_id is not None and (isinstance(lead_id, bool) or not isinstance(lead_id, int)):
            raise PayloadValidationError("leadId must be an integer")
        if email is not None and not isinstance(email, str):
            raise PayloadValidationError("email must be a string")
        resolved = self.engine.dispatcher.record_reply(lead_id=lead_id, email=email, channel=str(channel), body=str(body))
        self._send_json(200, {"ok": True, "leadId": resolved})

    def _handle_create_sequence(self) -> None:
        payload = self._read_object()
        name = payload.get("name")
        steps = payload.get("steps")
        if not isinstance(name, str) or not name.strip():
            raise PayloadValidationError("name is required")
        if not isinstance(steps, list):
            raise PayloadValidationError("steps must be a list")
        sequence = self.engine.scheduler.create_sequence(
            name,
            str(payload.get("description") or ""),
            steps,
            active=bool(payload.get("active", True)),
        )
        self._send_json(200, {"ok": True, "sequence": sequence.to_dict()})

    def _handle_toggle(self, sequence_id: int) -> None:
        payload = self._read_object()
        active = payload.get("active")
        if not isinstance(active, bool):
            raise PayloadValidationError("active must be a boolean")
        sequence = self.engine.scheduler.set_active(sequence_id, active)
        self._send_json(200, {"ok": True, "sequence": sequence.to_dict()})

    def _handle_enroll(self, sequence_id: int) -> None:
        payload = self._read_object()
        lead_ids = payload.get("leadIds")
        if not isinstance(lead_ids, list):
            raise PayloadValidationError("leadIds must be a list")
        result = self.engine.scheduler.enroll(sequence_id, lead_ids)
        self._send_json(200, {"ok": True, **result.to_dict()})

    def _handle_unenroll(self, sequence_id: int) -> None:
        payload = self._read_object()
        lead_id = payload.get("leadId")
        if isinstance(lead_id, bool) or not isinstance(lead_id, int):
            raise PayloadValidationError("leadId must be an integer")
        cancelled = self.engine.scheduler.unenroll(sequence_id, lead_id)
        self._send_json(200, {"ok": True, "cancelled": cancelled})


def make_handler(engine: OutreachEngine) -> type[LeadflowApiHandler]:
    return type("BoundLeadflowApiHandler", (LeadflowApiHandler,), {"engine": engine})


def build_server(engine: OutreachEngine, host: str = "0.0.0.0", port: int = 8787) -> ThreadingHTTPServer:
    return ThreadingHTTPServer((host, port), make_handler(engine))


def run_server(engine: OutreachEngine, host: str = "0.0.0.0", port: int = 8787) -> None:
    httpd = build_server(engine, host, port)
    try:
        httpd.serve_forever()
    finally:
        httpd.server_close()
