from __future__ import annotations

import json
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .time_utils import utc_now

SENSITIVE_KEYS = {
    "token",
    "password",
    "passwd",
    "secret",
    "cookie",
    "authorization",
    "api_key",
    "apikey",
    "access_token",
    "refresh_token",
    "encryption_key",
}

BEARER_RE = re.compile(r"(?i)bearer\s+[a-z0-9\-._~+/]+=*")
GENERIC_SECRET_RE = re.compile(r"(?i)(token|password|secret|api[_-]?key)\s*[:=]\s*[^\s,;]+")
EMAIL_RE = re.compile(r"([A-Za-z0-9._%+-])[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+\.[A-Za-z]{2,})")
PHONE_RE = re.compile(r"(?<![\w+])\+?\d[\d\s().-]{7,}(\d{4})(?!\w)")


@dataclass
class JsonlLogger:
    file_path: Path
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    def write(self, event_type: str, payload: dict[str, Any]) -> None:
        record = {
            "timestamp_utc": utc_now().isoformat(),
            "event_type": event_type,
            "payload": redact(payload),
        }
        line = json.dumps(record, ensure_ascii=True, default=str) + "\n"
        with self._lock:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            with self.file_path.open("a", encoding="utf-8") as fh:
                fh.write(line)

    def read_events(self, event_type: str | None = None) -> list[dict[str, Any]]:
        if not self.file_path.exists():
            return []
        out: list[dict[str, Any]] = []
        with self._lock:
            lines = self.file_path.read_text(encoding="utf-8").splitlines()
        for line in lines:
            if not line.strip():
                continue
            record = json.loads(line)
            if event_type is None or record.get("event_type") == event_type:
                out.append(record)
        return out


def mask_contact(value: str) -> str:
    value = EMAIL_RE.sub(r"\1***@\2", value)
    value = PHONE_RE.sub(r"***\1", value)
    return value


def redact(value: Any) -> Any:
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for key, item in value.items():
            key_l = str(key).lower()
            if any(secret in key_l for secret in SENSITIVE_KEYS):
                out[key] = "[REDACTED]"
            else:
                out[key] = redact(item)
        return out

    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]

    if isinstance(value, str):
        value = BEARER_RE.sub("Bearer [REDACTED]", value)
        value = GENERIC_SECRET_RE.sub(r"\1=[REDACTED]", value)
        return mask_contact(value)

    return value
