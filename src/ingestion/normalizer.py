"""Normalization utilities for code-enforcement uploads."""
from __future__ import annotations

import re
from datetime import date
from typing import Any, Dict, Optional

import pandas as pd

# Canonical staging columns
CANONICAL_COLUMNS = (
    "case_id",
    "address",
    "city",
    "state",
    "zip",
    "violation",
    "status",
    "opened_date",
    "last_updated",
)

# Header spellings seen in municipal exports, after lower-casing and
# collapsing separators to underscores.
COLUMN_ALIASES: Dict[str, str] = {
    "case": "case_id",
    "case_no": "case_id",
    "case_number": "case_id",
    "case_num": "case_id",
    "caseid": "case_id",
    "record_id": "case_id",
    "street_address": "address",
    "property_address": "address",
    "site_address": "address",
    "location_address": "address",
    "addr": "address",
    "municipality": "city",
    "town": "city",
    "st": "state",
    "state_code": "state",
    "zip_code": "zip",
    "zipcode": "zip",
    "postal_code": "zip",
    "violation_type": "violation",
    "violation_description": "violation",
    "description": "violation",
    "case_status": "status",
    "open_date": "opened_date",
    "date_opened": "opened_date",
    "opened": "opened_date",
    "last_update": "last_updated",
    "updated": "last_updated",
    "last_updated_date": "last_updated",
}

DEFAULT_VIOLATION_STATUS = "Open"

_SEPARATORS = re.compile(r"[\s\-/.]+")
_WHITESPACE = re.compile(r"\s+")
_ZIP = re.compile(r"^(\d{5})(?:-?\d{4})?$")


def normalize_header(raw: Any) -> str:
    """
    Map a raw CSV header to a canonical column name.

    Unknown headers are returned lower-cased with separators collapsed so
    they can still be inspected, but are otherwise ignored by the pipeline.
    """
    cleaned = _SEPARATORS.sub("_", str(raw or "").strip().lower()).strip("_")
    return COLUMN_ALIASES.get(cleaned, cleaned)


def clean_text(value: Any) -> Optional[str]:
    """Trim a cell value, returning None for blanks and pandas NA markers."""
    if value is None:
        return None
    if isinstance(value, float) and pd.isna(value):
        return None
    text = _WHITESPACE.sub(" ", str(value)).strip()
    return text or None


def normalize_state(value: Any) -> Optional[str]:
    text = clean_text(value)
    return text.upper() if text else None


def normalize_zip(value: Any) -> Optional[str]:
    """
    Reduce a ZIP to its 5-digit form when it looks like one.

    Values that do not look like US ZIPs are kept as typed so nothing is
    silently lost.
    """
    text = clean_text(value)
    if not text:
        return None
    match = _ZIP.match(text)
    if match:
        return match.group(1)
    if text.isdigit() and len(text) < 5:
        # Spreadsheet exports drop leading zeros
        return text.zfill(5)
    return text


def property_key(
    address: Optional[str],
    city: Optional[str],
    state: Optional[str],
    zip_code: Optional[str],
) -> str:
    """
    Build the dedup key for a property.

    The key is the lower-cased, whitespace-collapsed address, city, state and
    zip joined with ``|``. Two rows with the same key are the same property.
    """
    parts = [clean_text(part) or "" for part in (address, city, state, zip_code)]
    return "|".join(parts).lower()


def parse_date(value: Any) -> Optional[date]:
    """
    Parse a date cell into a ``date``.

    Accepts anything pandas recognizes (ISO, US month/day/year, timestamps).
    Unparseable input yields None rather than an error.
    """
    text = clean_text(value)
    if not text:
        return None
    parsed = pd.to_datetime(text, errors="coerce")
    if parsed is None or pd.isna(parsed):
        return None
    return parsed.date()


def days_open(opened: Optional[date], today: date) -> Optional[int]:
    """Whole days between ``opened`` and ``today``."""
    if opened is None:
        return None
    return (today - opened).days


__all__ = [
    "CANONICAL_COLUMNS",
    "COLUMN_ALIASES",
    "DEFAULT_VIOLATION_STATUS",
    "normalize_header",
    "clean_text",
    "normalize_state",
    "normalize_zip",
    "property_key",
    "parse_date",
    "days_open",
]
