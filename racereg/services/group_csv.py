"""Tabular input for group uploads: CSV text or a base64 XLSX, both read into the same row shape."""
from __future__ import annotations

import base64
import binascii
import csv
import io
import json
import math
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional, Sequence, Union

import pandas as pd

TEMPLATE_HEADERS: tuple[str, ...] = (
    "firstName",
    "lastName",
    "email",
    "dateOfBirth",
    "phone",
    "gender",
    "genderIdentity",
    "city",
    "state",
    "country",
    "emergencyContactName",
    "emergencyContactPhone",
    "distanceId",
    "distanceLabel",
    "addOnSelections",
)

REQUIRED_HEADERS: tuple[str, ...] = ("firstName", "lastName", "email", "dateOfBirth")
DISTANCE_HEADERS: tuple[str, ...] = ("distanceId", "distanceLabel")

TEMPLATE_EXAMPLE_ROW: tuple[str, ...] = (
    "Ana", "Perez", "ana.perez@example.com", "1990-01-15",
    "", "", "", "", "", "MX", "", "", "", "", "",
)


class TabularParseError(ValueError):
    pass


@dataclass
class ParsedTable:
    headers: list[str]
    rows: list[list[str]] = field(default_factory=list)

    def header_index(self) -> dict[str, int]:
        # first occurrence wins on duplicated headers
        index: dict[str, int] = {}
        for i, h in enumerate(self.headers):
            if h and h not in index:
                index[h] = i
        return index


def _is_blank_row(row: Sequence[str]) -> bool:
    return all(str(v).strip() == "" for v in row)


def _split(rows: list[list[str]]) -> ParsedTable:
    rows = [r for r in rows if not _is_blank_row(r)]
    if not rows:
        return ParsedTable(headers=[])
    head, *data = rows
    return ParsedTable(headers=[h.strip() for h in head], rows=data)


def parse_csv(text: str) -> ParsedTable:
    if text.startswith("\ufeff"):
        text = text[1:]
    try:
        # strict mode turns an unterminated quote into csv.Error
        rows = list(csv.reader(io.StringIO(text, newline=""), strict=True))
    except csv.Error as e:
        raise TabularParseError(f"unreadable CSV: {e}") from e
    return _split(rows)


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        if value.is_integer():
            return str(int(value))
    if isinstance(value, (pd.Timestamp, datetime)):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def parse_xlsx(payload_b64: str) -> ParsedTable:
    """First sheet only; dates typed by the spreadsheet come back as YYYY-MM-DD."""
    try:
        raw = base64.b64decode(payload_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise TabularParseError("xlsx payload is not valid base64") from e
    try:
        frame = pd.read_excel(io.BytesIO(raw), sheet_name=0, header=None, dtype=object, engine="openpyxl")
    except Exception as e:
        raise TabularParseError(f"unreadable spreadsheet: {e}") from e
    rows = [[_cell_text(v) for v in record] for record in frame.itertuples(index=False, name=None)]
    return _split(rows)


def parse_upload(*, csv_text: Optional[str] = None, xlsx_base64: Optional[str] = None) -> ParsedTable:
    if csv_text:
        return parse_csv(csv_text)
    if xlsx_base64:
        return parse_xlsx(xlsx_base64)
    raise TabularParseError("empty upload")


def missing_headers(table: ParsedTable) -> list[str]:
    """Required columns absent from the file; a distance column counts as one requirement."""
    index = table.header_index()
    missing = [h for h in REQUIRED_HEADERS if h not in index]
    if not any(h in index for h in DISTANCE_HEADERS):
        missing.append("distanceId|distanceLabel")
    return missing


def cell(row: Sequence[str], index: dict[str, int], header: str) -> str:
    i = index.get(header)
    if i is None or i >= len(row):
        return ""
    return row[i] or ""


# ---- addOnSelections ----
@dataclass(frozen=True)
class AddOnPick:
    option_id: str
    quantity: int

    def to_json(self) -> dict:
        return {"optionId": self.option_id, "quantity": self.quantity}


def _is_uuid(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def _picks(items: list) -> Union[list[AddOnPick], str]:
    picks: list[AddOnPick] = []
    seen: set[str] = set()
    for item in items:
        if not isinstance(item, dict):
            return "addOnSelections must be an array of objects"
        option_id = item.get("optionId")
        if not _is_uuid(option_id):
            return "addOnSelections.optionId must be a UUID"
        qty_raw = item.get("quantity")
        if isinstance(qty_raw, float) and qty_raw.is_integer():
            quantity = int(qty_raw)
        elif isinstance(qty_raw, int) and not isinstance(qty_raw, bool):
            quantity = qty_raw
        else:
            quantity = 1
        if quantity <= 0:
            return "addOnSelections.quantity must be a positive integer"
        option_id = str(uuid.UUID(option_id))
        if option_id in seen:
            return "addOnSelections contains duplicate optionId values"
        seen.add(option_id)
        picks.append(AddOnPick(option_id=option_id, quantity=quantity))
    return picks


def parse_add_on_selections(value: str) -> Union[list[AddOnPick], str]:
    """Picks from a cell, or the error message for the row. A missing quantity means 1."""
    text = (value or "").strip()
    if not text:
        return []
    try:
        parsed = json.loads(text)
    except ValueError:
        return "addOnSelections must be valid JSON"
    if not isinstance(parsed, list):
        return "addOnSelections must be a JSON array"
    return _picks(parsed)


def stored_add_on_selections(value: Any) -> Optional[list[AddOnPick]]:
    """Re-read picks persisted on a batch row; None when the stored shape is corrupt."""
    if value is None:
        return []
    if not isinstance(value, list):
        return None
    picks = _picks(value)
    return None if isinstance(picks, str) else picks


# ---- template ----
def template_csv(example_distance_label: Optional[str] = None) -> str:
    example = list(TEMPLATE_EXAMPLE_ROW)
    if example_distance_label:
        example[TEMPLATE_HEADERS.index("distanceLabel")] = example_distance_label
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(TEMPLATE_HEADERS)
    writer.writerow(example)
    return buf.getvalue()
