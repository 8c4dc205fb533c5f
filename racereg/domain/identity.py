"""Canonical forms for the identity fields used to match invitees and batch rows to accounts."""
from __future__ import annotations

import hashlib
import re
from datetime import date, datetime
from typing import Optional, Union

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# local@domain.tld, no whitespace
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_email(raw: Optional[str]) -> str:
    return (raw or "").strip().lower()


def is_valid_email(raw: Optional[str]) -> bool:
    return bool(_EMAIL_RE.match(normalize_email(raw)))


def parse_iso_date(raw: Optional[str]) -> Optional[str]:
    """Return `YYYY-MM-DD` for a real calendar date written exactly that way, else None."""
    if raw is None:
        return None
    value = str(raw).strip()
    if not _ISO_DATE_RE.match(value):
        return None
    try:
        parsed = date.fromisoformat(value)
    except ValueError:
        return None
    return parsed.isoformat()


def to_iso_date_string(value: Union[date, datetime, str, None]) -> Optional[str]:
    """Stored DOBs and invite DOBs compare as plain strings, never as instants."""
    if value is None:
        return None
    if isinstance(value, datetime):
        # date part as stored; no timezone shifting
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        return parse_iso_date(value[:10]) if len(value) >= 10 else None
    return None


def to_date(value: Optional[str]) -> Optional[date]:
    iso = parse_iso_date(value)
    return date.fromisoformat(iso) if iso else None


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
