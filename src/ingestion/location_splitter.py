"""Jurisdiction detection and splitting for code-enforcement CSV uploads.

Municipal exports regularly contain rows where a free-text description has
slid into the city column. The validators here reject those values so they
never become a jurisdiction, and the splitter partitions a multi-city file
into one CSV per (city, state) while keeping every record's original text.
"""
from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from core.logging_config import get_logger
from ingestion.normalizer import clean_text, normalize_header

LOGGER = get_logger(__name__)


US_STATE_CODES = frozenset({
    "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "FL", "GA",
    "HI", "ID", "IL", "IN", "IA", "KS", "KY", "LA", "ME", "MD",
    "MA", "MI", "MN", "MS", "MO", "MT", "NE", "NV", "NH", "NJ",
    "NM", "NY", "NC", "ND", "OH", "OK", "OR", "PA", "RI", "SC",
    "SD", "TN", "TX", "UT", "VT", "VA", "WA", "WV", "WI", "WY",
    "DC",
})

# Column headers that sometimes end up as cell values in broken exports
HEADER_WORDS = frozenset({
    "address",
    "case number",
    "case",
    "city",
    "description",
    "location",
    "state",
    "status",
    "violation",
    "violation type",
    "zip",
})

VIOLATION_KEYWORDS = (
    "violation", "debris", "trash", "weeds", "overgrown", "illegal",
    "unpermitted", "hazard", "unsafe", "repair", "maintain", "fence",
    "yard", "building", "structure", "vehicle", "junk", "abandoned",
    "permit", "inspection", "citation", "notice",
)
INSTRUCTION_WORDS = ("please", "must", "should", "shall", "required", "notify")
PROPERTY_PART_WORDS = ("backyard", "porch", "roof", "window")

MIN_CITY_LENGTH = 2
MAX_CITY_LENGTH = 50

_FORBIDDEN_CHARS = re.compile(r"[:;()\[\]#@*&]")
# "lot. Owner" reads like a sentence; "St. Louis" does not
_SENTENCE_BREAK = re.compile(r"\w{3,}\.\s+[A-Z]")
_DATE_LIKE = re.compile(r"\d{1,4}[/-]\d{1,2}[/-]\d{1,4}")
_ZIP_LIKE = re.compile(r"\b\d{5}(?:-\d{4})?\b")
_STREET_LIKE = re.compile(
    r"^\d+\s+\w+|\b(?:street|avenue|boulevard|blvd|ave|apt|suite)\b",
    re.IGNORECASE,
)
_CITY_PUNCTUATION = frozenset(" -'.")
_KEYWORD_PATTERN = re.compile(
    r"\b(?:%s)\b" % "|".join(VIOLATION_KEYWORDS + INSTRUCTION_WORDS + PROPERTY_PART_WORDS),
    re.IGNORECASE,
)


# =============================================================================
# Token validation
# =============================================================================


def is_valid_city(value: Optional[str]) -> bool:
    """
    Return True when ``value`` plausibly names a city.

    Rejects blank or oversized values, sentence punctuation, dates, ZIPs,
    street fragments, header words and violation-description vocabulary.
    """
    city = clean_text(value)
    if not city:
        return False
    if len(city) < MIN_CITY_LENGTH or len(city) > MAX_CITY_LENGTH:
        return False
    if city[0].isdigit() or city[0] in "-#":
        return False
    if _SENTENCE_BREAK.search(city) or _FORBIDDEN_CHARS.search(city):
        return False
    if _DATE_LIKE.search(city) or _ZIP_LIKE.search(city) or _STREET_LIKE.search(city):
        return False
    if city.lower() in HEADER_WORDS:
        return False
    if _KEYWORD_PATTERN.search(city):
        return False
    # Letters in any script, so "Española" and "Cañon City" pass
    return city[0].isalpha() and all(ch.isalpha() or ch in _CITY_PUNCTUATION for ch in city)


def is_valid_state(value: Optional[str]) -> bool:
    """Return True for one of the 50 US state codes or DC (case-insensitive)."""
    state = clean_text(value)
    return bool(state) and state.upper() in US_STATE_CODES


def resolve_location(
    city: Optional[str],
    state: Optional[str],
    fallback_city: Optional[str] = None,
    fallback_state: Optional[str] = None,
) -> Optional[Tuple[str, str]]:
    """
    Resolve a row's (city, state), substituting fallbacks for invalid fields.

    Each field is replaced independently by its fallback when it fails
    validation, then re-validated.

    Returns:
        ``(city, STATE)`` or None when the row has no usable location.
    """
    resolved_city = clean_text(city)
    if not is_valid_city(resolved_city):
        resolved_city = clean_text(fallback_city)
    resolved_state = clean_text(state)
    if not is_valid_state(resolved_state):
        resolved_state = clean_text(fallback_state)

    if not is_valid_city(resolved_city) or not is_valid_state(resolved_state):
        return None
    return resolved_city, resolved_state.upper()


# =============================================================================
# Verbatim CSV reading
# =============================================================================


@dataclass
class CsvRecord:
    """A parsed CSV record and the exact source text it was read from."""

    fields: List[str]
    raw: str


def read_csv_records(text: str) -> Iterator[CsvRecord]:
    """
    Yield every non-blank CSV record together with its original text.

    Quoted fields containing commas, quotes or line breaks are parsed as one
    record, and ``raw`` holds all the physical lines that made it up.
    """
    consumed: List[str] = []

    def _lines() -> Iterator[str]:
        for line in io.StringIO(text.lstrip("\ufeff"), newline=""):
            consumed.append(line)
            yield line

    for fields in csv.reader(_lines()):
        raw = "".join(consumed).rstrip("\r\n")
        consumed.clear()
        if not fields or all(not f.strip() for f in fields):
            continue
        yield CsvRecord(fields=fields, raw=raw)


# =============================================================================
# Detection & splitting
# =============================================================================


@dataclass
class DetectedLocation:
    city: str
    state: str
    count: int = 0

    def as_dict(self) -> Dict[str, object]:
        return {"city": self.city, "state": self.state, "count": self.count}


@dataclass
class LocationDetection:
    """Summary of the jurisdictions found in one CSV document."""

    locations: List[DetectedLocation] = field(default_factory=list)
    missing_location_rows: int = 0
    total_rows: int = 0

    @property
    def unique_cities(self) -> List[str]:
        return sorted({loc.city for loc in self.locations})

    @property
    def unique_states(self) -> List[str]:
        return sorted({loc.state for loc in self.locations})

    @property
    def is_multi_location(self) -> bool:
        return len(self.locations) > 1

    def as_dict(self) -> Dict[str, object]:
        return {
            "locations": [loc.as_dict() for loc in self.locations],
            "missing_location_rows": self.missing_location_rows,
            "total_rows": self.total_rows,
            "unique_cities": self.unique_cities,
            "unique_states": self.unique_states,
        }


@dataclass
class _Group:
    city: str
    state: str
    raws: List[str] = field(default_factory=list)


@dataclass
class _Partition:
    header_raw: Optional[str]
    groups: Dict[str, _Group]
    missing: int
    total: int


def location_key(city: str, state: str) -> str:
    return f"{city}|{state}"


def _partition(
    text: str,
    fallback_city: Optional[str],
    fallback_state: Optional[str],
) -> _Partition:
    records = read_csv_records(text)
    header = next(records, None)
    if header is None:
        return _Partition(header_raw=None, groups={}, missing=0, total=0)

    columns = [normalize_header(name) for name in header.fields]
    city_idx = columns.index("city") if "city" in columns else None
    state_idx = columns.index("state") if "state" in columns else None

    groups: Dict[str, _Group] = {}
    # Grouping is case-insensitive on city; the first spelling seen names the group
    lookup: Dict[Tuple[str, str], str] = {}
    missing = 0
    total = 0

    for record in records:
        total += 1
        city = record.fields[city_idx] if city_idx is not None and city_idx < len(record.fields) else None
        state = record.fields[state_idx] if state_idx is not None and state_idx < len(record.fields) else None
        resolved = resolve_location(city, state, fallback_city, fallback_state)
        if resolved is None:
            missing += 1
            continue

        resolved_city, resolved_state = resolved
        fold = (resolved_city.lower(), resolved_state)
        key = lookup.get(fold)
        if key is None:
            key = location_key(resolved_city, resolved_state)
            lookup[fold] = key
            groups[key] = _Group(city=resolved_city, state=resolved_state)
        groups[key].raws.append(record.raw)

    return _Partition(header_raw=header.raw, groups=groups, missing=missing, total=total)


def detect_locations(
    text: str,
    fallback_city: Optional[str] = None,
    fallback_state: Optional[str] = None,
) -> LocationDetection:
    """
    Summarize the jurisdictions present in a CSV document.

    Args:
        text: Raw CSV text including the header row.
        fallback_city: City used for rows whose city is missing or invalid.
        fallback_state: State used for rows whose state is missing or invalid.

    Returns:
        LocationDetection with locations ordered by row count, highest first.
    """
    partition = _partition(text, fallback_city, fallback_state)
    locations = [
        DetectedLocation(city=g.city, state=g.state, count=len(g.raws))
        for g in partition.groups.values()
    ]
    locations.sort(key=lambda loc: loc.count, reverse=True)
    return LocationDetection(
        locations=locations,
        missing_location_rows=partition.missing,
        total_rows=partition.total,
    )


def split_csv_by_location(
    text: str,
    fallback_city: Optional[str] = None,
    fallback_state: Optional[str] = None,
) -> Dict[str, str]:
    """
    Partition a CSV document into one sub-document per (city, state).

    Each sub-document is the original header line followed by the original
    text of every record in that jurisdiction, in input order. Rows with no
    usable location appear in no group.

    Returns:
        Mapping of ``"City|ST"`` to CSV text, in first-seen order.
    """
    partition = _partition(text, fallback_city, fallback_state)
    if partition.header_raw is None:
        LOGGER.info("CSV has no header row; nothing to split")
        return {}

    documents: Dict[str, str] = {}
    for key, group in partition.groups.items():
        documents[key] = "\n".join([partition.header_raw] + group.raws)
        LOGGER.debug(f"Location group {key}: {len(group.raws)} rows")

    if partition.missing:
        LOGGER.info(f"Dropped {partition.missing} rows without a usable location")
    return documents


__all__ = [
    "US_STATE_CODES",
    "VIOLATION_KEYWORDS",
    "is_valid_city",
    "is_valid_state",
    "resolve_location",
    "CsvRecord",
    "read_csv_records",
    "DetectedLocation",
    "LocationDetection",
    "location_key",
    "detect_locations",
    "split_csv_by_location",
]
