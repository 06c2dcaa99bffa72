from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, TypeVar

from .cache import TtlCache
from .contact_cipher import ContactCipher
from .db import SqliteDatabase
from .keyed_lock import KeyedLocks
from .normalizer import NormalizedLead
from .time_utils import parse_iso, to_iso, utc_now

T = TypeVar("T")


@dataclass(frozen=True)
class LeadRecord:
    id: int
    identity_key: str
    email: str | None
    phone: str | None
    first_name: str
    last_name: str
    vehicle_interest: str
    notes: str
    source: str
    attributes: dict[str, Any]
    created_at: datetime
    session_key: str = ""
    last_activity_at: datetime | None = None
    abandoned: bool = False
    active: bool = True
    responded_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or "there"


@dataclass(frozen=True)
class UpsertResult:
    lead_id: int
    created: bool


class LeadStore:
    def __init__(
        self,
        db: SqliteDatabase,
        cipher: ContactCipher,
        cache: TtlCache | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.cipher = cipher
        self.cache = cache
        self._clock = clock
        self._identity_locks = KeyedLocks()
        self._init_db()

    def _init_db(self) -> None:
        self.db.executescript(
            """
            CREATE TABLE IF NOT EXISTS leads (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                identity_key TEXT NOT NULL UNIQUE,
                email_enc TEXT,
                phone_enc TEXT,
                first_name TEXT NOT NULL DEFAULT '',
                last_name TEXT NOT NULL DEFAULT '',
                vehicle_interest TEXT NOT NULL DEFAULT '',
                notes TEXT NOT NULL DEFAULT '',
                source TEXT NOT NULL DEFAULT '',
                attributes TEXT NOT NULL DEFAULT '{}',
                session_key TEXT NOT NULL DEFAULT '',
                abandoned INTEGER NOT NULL DEFAULT 0,
                active INTEGER NOT NULL DEFAULT 1,
                responded_at_utc TEXT,
                last_activity_utc TEXT NOT NULL,
                created_at_utc TEXT NOT NULL,
                updated_at_utc TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_leads_last_activity ON leads(last_activity_utc);
            CREATE TABLE IF NOT EXISTS replies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                lead_id INTEGER NOT NULL,
                channel TEXT NOT NULL,
                body TEXT NOT NULL,
                received_at_utc TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_replies_lead ON replies(lead_id, received_at_utc);
            """
        )

    def upsert_visitor(self, lead: NormalizedLead, seen_at: datetime | None = None) -> UpsertResult:
        seen = to_iso(seen_at or self._clock())
        now = to_iso(self._clock())
        with self._identity_locks.hold(lead.identity_key):
            with self.db.session() as conn:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute("SELECT * FROM leads WHERE identity_key = ?", (lead.identity_key,)).fetchone()
                if row is None:
                    cur = conn.execute(
                        """
                        INSERT INTO leads (
                            identity_key, email_enc, phone_enc, first_name, last_name, vehicle_interest, notes,
                            source, attributes, session_key, last_activity_utc, created_at_utc, updated_at_utc
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            lead.identity_key,
                            self.cipher.encrypt(lead.email),
                            self.cipher.encrypt(lead.phone),
                            lead.first_name,
                            lead.last_name,
                            lead.vehicle_interest,
                            lead.notes,
                            lead.source,
                            json.dumps(lead.attributes, sort_keys=True, default=str),
                            lead.session_key,
                            seen,
                            now,
                            now,
                        ),
                    )
                    lead_id, created = int(cur.lastrowid), True
                else:
                    lead_id, created = int(row["id"]), False
                    merged = self._merge(row, lead, seen)
                    assignments = ", ".join(f"{name} = ?" for name in merged)
                    conn.execute(
                        f"UPDATE leads SET {assignments}, updated_at_utc = ? WHERE id = ?",
                        (*merged.values(), now, lead_id),
                    )
        self._invalidate(lead_id, lead.identity_key)
        return UpsertResult(lead_id=lead_id, created=created)

    def _merge(self, row: sqlite3.Row, lead: NormalizedLead, seen: str) -> dict[str, Any]:
        merged: dict[str, Any] = {}
        if lead.email:
            merged["email_enc"] = self.cipher.encrypt(lead.email)
        if lead.phone:
            merged["phone_enc"] = self.cipher.encrypt(lead.phone)
        for name in ("first_name", "last_name", "vehicle_interest", "notes", "source", "session_key"):
            value = getattr(lead, name)
            if value:
                merged[name] = value
        if lead.attributes:
            attributes = json.loads(row["attributes"] or "{}")
            attributes.update(lead.attributes)
            merged["attributes"] = json.dumps(attributes, sort_keys=True, default=str)
        merged["last_activity_utc"] = max(str(row["last_activity_utc"]), seen)
        return merged

    def get_lead(self, lead_id: int) -> LeadRecord | None:
        return self._cached(f"lead:{lead_id}", lambda: self._load_one("SELECT * FROM leads WHERE id = ?", (lead_id,)))

    def get_lead_by_identity(self, identity_key: str) -> LeadRecord | None:
        return self._cached(
            f"lead:identity:{identity_key}",
            lambda: self._load_one("SELECT * FROM leads WHERE identity_key = ?", (identity_key,)),
        )

    def list_leads(self, limit: int = 100, active_only: bool = True) -> list[LeadRecord]:
        def _load() -> list[LeadRecord]:
            where = "WHERE active = 1" if active_only else ""
            with self.db.session() as conn:
                rows = conn.execute(f"SELECT * FROM leads {where} ORDER BY id ASC LIMIT ?", (limit,)).fetchall()
            return [self._to_record(row) for row in rows]

        return self._cached(f"leads:list:{limit}:{int(active_only)}", _load)

    def count_leads(self) -> int:
        def _load() -> int:
            with self.db.session() as conn:
                row = conn.execute("SELECT COUNT(*) FROM leads").fetchone()
            return int(row[0]) if row else 0

        return self._cached("leads:count", _load)

    def deactivate(self, lead_id: int) -> bool:
        return self._update_flags(lead_id, "active = 0")

    def set_abandoned(self, lead_id: int, abandoned: bool = True) -> bool:
        return self._update_flags(lead_id, f"abandoned = {1 if abandoned else 0}")

    def _update_flags(self, lead_id: int, assignment: str) -> bool:
        with self.db.session() as conn:
            cur = conn.execute(
                f"UPDATE leads SET {assignment}, updated_at_utc = ? WHERE id = ?",
                (to_iso(self._clock()), lead_id),
            )
            row = conn.execute("SELECT identity_key FROM leads WHERE id = ?", (lead_id,)).fetchone()
        if row is not None:
            self._invalidate(lead_id, str(row["identity_key"]))
        return cur.rowcount == 1

    def list_abandonment_candidates(self, inactive_since: datetime, limit: int = 1000) -> list[LeadRecord]:
        with self.db.session() as conn:
            rows = conn.execute(
                """
                SELECT * FROM leads
                WHERE active = 1 AND abandoned = 0 AND last_activity_utc < ?
                ORDER BY last_activity_utc ASC LIMIT ?
                """,
                (to_iso(inactive_since), limit),
            ).fetchall()
        return [self._to_record(row) for row in rows]

    def record_reply(self, lead_id: int, channel: str, body: str, received_at: datetime | None = None) -> int:
        received = to_iso(received_at or self._clock())
        with self.db.session() as conn:
            cur = conn.execute(
                "INSERT INTO replies (lead_id, channel, body, received_at_utc) VALUES (?, ?, ?, ?)",
                (lead_id, channel, body, received),
            )
            conn.execute(
                """
                UPDATE leads SET responded_at_utc = MAX(COALESCE(responded_at_utc, ''), ?), updated_at_utc = ?
                WHERE id = ?
                """,
                (received, to_iso(self._clock()), lead_id),
            )
            row = conn.execute("SELECT identity_key FROM leads WHERE id = ?", (lead_id,)).fetchone()
        if row is not None:
            self._invalidate(lead_id, str(row["identity_key"]))
        return int(cur.lastrowid)

    def has_reply_since(self, lead_id: int, since: datetime) -> bool:
        with self.db.session() as conn:
            row = conn.execute(
                "SELECT 1 FROM replies WHERE lead_id = ? AND received_at_utc >= ? LIMIT 1",
                (lead_id, to_iso(since)),
            ).fetchone()
        return row is not None

    def _load_one(self, sql: str, params: tuple) -> LeadRecord | None:
        with self.db.session() as conn:
            row = conn.execute(sql, params).fetchone()
        return self._to_record(row) if row else None

    def _cached(self, key: str, loader: Callable[[], T]) -> T:
        if self.cache is None:
            return loader()
        return self.cache.get_or_load(key, loader)

    def _invalidate(self, lead_id: int, identity_key: str) -> None:
        if self.cache is None:
            return
        self.cache.invalidate(f"lead:{lead_id}")
        self.cache.invalidate(f"lead:identity:{identity_key}")
        self.cache.invalidate("leads:*")

    def _to_record(self, row: sqlite3.Row) -> LeadRecord:
        return LeadRecord(
            id=int(row["id"]),
            identity_key=str(row["identity_key"]),
            email=self.cipher.decrypt(row["email_enc"]),
            phone=self.cipher.decrypt(row["phone_enc"]),
            first_name=str(row["first_name"]),
            last_name=str(row["last_name"]),
            vehicle_interest=str(row["vehicle_interest"]),
            notes=str(row["notes"]),
            source=str(row["source"]),
            attributes=json.loads(row["attributes"] or "{}"),
            created_at=parse_iso(row["created_at_utc"]) or utc_now(),
            session_key=str(row["session_key"]),
            last_activity_at=parse_iso(row["last_activity_utc"]),
            abandoned=bool(row["abandoned"]),
            active=bool(row["active"]),
            responded_at=parse_iso(row["responded_at_utc"]),
            updated_at=parse_iso(row["updated_at_utc"]),
        )
