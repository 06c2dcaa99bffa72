from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

from .config import IngestionPolicy
from .errors import RowValidationError

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
SHA256_HEX_RE = re.compile(r"^[0-9a-f]{64}$")
HEADER_CLEAN_RE = re.compile(r"[^a-z0-9]+")

MIN_PHONE_DIGITS = 10
MAX_PHONE_DIGITS = 15

# Header aliases seen in dealer exports, ad-platform drops and form payloads.
COLUMN_ALIASES = {
    "email": "email",
    "email_address": "email",
    "emailaddress": "email",
    "e_mail": "email",
    "work_email": "email",
    "contact_email": "email",
    "primary_email": "email",
    "email_hash": "email_hash",
    "emailhash": "email_hash",
    "hashed_email": "email_hash",
    "first_name": "first_name",
    "firstname": "first_name",
    "first": "first_name",
    "given_name": "first_name",
    "fname": "first_name",
    "last_name": "last_name",
    "lastname": "last_name",
    "last": "last_name",
    "surname": "last_name",
    "family_name": "last_name",
    "lname": "last_name",
    "phone": "phone",
    "phone_number": "phone",
    "phonenumber": "phone",
    "mobile": "phone",
    "mobile_phone": "phone",
    "cell": "phone",
    "telephone": "phone",
    "vehicle_interest": "vehicle_interest",
    "vehicleinterest": "vehicle_interest",
    "vehicle_of_interest": "vehicle_interest",
    "vehicle": "vehicle_interest",
    "notes": "notes",
    "note": "notes",
    "comments": "notes",
    "comment": "notes",
    "campaign": "campaign",
    "campaign_id": "campaign",
    "campaignid": "campaign",
    "utm_campaign": "campaign",
    "source": "source",
    "lead_source": "source",
    "utm_source": "source",
    "session_id": "session_key",
    "sessionid": "session_key",
    "click_id": "session_key",
    "clickid": "session_key",
    "keyword": "keyword",
    "search_keyword": "keyword",
    "ad_group_id": "ad_group",
    "adgroup_id": "ad_group",
    "metadata": "metadata",
}

ATTRIBUTE_FIELDS = ("campaign", "keyword", "ad_group")


@dataclass(frozen=True)
class NormalizedLead:
    index: int
    identity_key: str
    email: str | None
    phone: str | None = None
    first_name: str = ""
    last_name: str = ""
    vehicle_interest: str = ""
    notes: str = ""
    session_key: str = ""
    source: str = ""
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RowRejection:
    index: int
    reason: str
    email: str = ""


def canonical_header(raw: str) -> str:
    # firstName -> firstname, "Vehicle Interest" -> vehicle_interest
    return HEADER_CLEAN_RE.sub("_", str(raw).strip().lower()).strip("_")


def map_columns(raw: Mapping[str, Any]) -> dict[str, Any]:
    mapped: dict[str, Any] = {}
    for header, value in raw.items():
        target = COLUMN_ALIASES.get(canonical_header(header))
        if target is None or target in mapped:
            continue
        mapped[target] = value
    return mapped


def canonical_email(raw: Any) -> str:
    if not isinstance(raw, str):
        raise RowValidationError("email must be a string")
    email = raw.strip().lower()
    if not email:
        raise RowValidationError("email is required")
    if not EMAIL_RE.match(email):
        raise RowValidationError("invalid email format")
    return email


def hash_email(email: str) -> str:
    return hashlib.sha256(email.strip().lower().encode("utf-8")).hexdigest()


def normalize_phone(raw: Any, default_country_code: str = "1") -> str | None:
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise RowValidationError("phone must be a string")
    text = raw.strip()
    if not text:
        return None
    digits = re.sub(r"\D+", "", text)
    if not digits:
        raise RowValidationError("phone has no digits")

    explicit = text.startswith("+")
    if not explicit and digits.startswith("00"):
        digits = digits[2:]
        explicit = True
    if not explicit and len(digits) == 10:
        digits = f"{default_country_code}{digits}"

    if not MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS:
        raise RowValidationError(f"phone must have {MIN_PHONE_DIGITS}-{MAX_PHONE_DIGITS} digits, got {len(digits)}")
    return f"+{digits}"


def _text(mapped: Mapping[str, Any], name: str) -> str:
    value = mapped.get(name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise RowValidationError(f"{name} must be a string")
    return value.strip()


def normalize_row(index: int, raw: Mapping[str, Any], policy: IngestionPolicy, source: str = "") -> NormalizedLead:
    if not isinstance(raw, Mapping):
        raise RowValidationError("row must be an object")
    mapped = map_columns(raw)

    raw_email = mapped.get("email")
    raw_hash = _text(mapped, "email_hash").lower()
    email: str | None = None
    if raw_email is not None and (not isinstance(raw_email, str) or raw_email.strip()):
        email = canonical_email(raw_email)
        identity_key = hash_email(email) if policy.hash_emails else email
    elif raw_hash:
        if not policy.hash_emails:
            raise RowValidationError("email is required")
        if not SHA256_HEX_RE.match(raw_hash):
            raise RowValidationError("invalid email hash")
        identity_key = raw_hash
    else:
        raise RowValidationError("email is required")

    phone = normalize_phone(mapped.get("phone"), policy.default_country_code)

    attributes: dict[str, Any] = {}
    for name in ATTRIBUTE_FIELDS:
        value = _text(mapped, name)
        if value:
            attributes[name] = value
    metadata = mapped.get("metadata")
    if metadata is not None:
        if not isinstance(metadata, Mapping):
            raise RowValidationError("metadata must be an object")
        attributes.update(dict(metadata))

    return NormalizedLead(
        index=index,
        identity_key=identity_key,
        email=email,
        phone=phone,
        first_name=_text(mapped, "first_name"),
        last_name=_text(mapped, "last_name"),
        vehicle_interest=_text(mapped, "vehicle_interest"),
        notes=_text(mapped, "notes"),
        session_key=_text(mapped, "session_key"),
        source=_text(mapped, "source") or source,
        attributes=attributes,
    )


def validate_row(index: int, raw: Any, policy: IngestionPolicy, source: str = "") -> NormalizedLead | RowRejection:
    try:
        return normalize_row(index, raw, policy, source)
    except RowValidationError as exc:
        email = ""
        if isinstance(raw, Mapping):
            candidate = map_columns(raw).get("email")
            email = candidate.strip() if isinstance(candidate, str) else ""
        return RowRejection(index=index, reason=str(exc), email=email)
