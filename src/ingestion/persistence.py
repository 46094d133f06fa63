"""Property deduplication and batched violation persistence.

Properties are resolved by normalized key with batched IN lookups, missing
keys are inserted in batches, and violations are written in fixed-size
batches that are each committed on their own. A failure part-way through
leaves every earlier batch in place.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.config import get_settings
from core.logging_config import get_logger
from core.models import Property, Violation
from core.utils import chunked, utcnow
from ingestion.normalizer import DEFAULT_VIOLATION_STATUS, days_open

LOGGER = get_logger(__name__)


@dataclass
class ViolationRow:
    """One validated input row, ready to become a property and a violation."""

    row_num: int
    address: str
    city: str
    state: str
    zip: Optional[str]
    violation: str
    key: str
    case_id: Optional[str] = None
    status: Optional[str] = None
    opened_date: Optional[date] = None
    last_updated: Optional[date] = None


@dataclass
class DedupResult:
    """Outcome of resolving every row's property."""

    property_ids: Dict[str, int] = field(default_factory=dict)
    properties_created: int = 0
    properties_existing: int = 0
    unresolved_keys: Set[str] = field(default_factory=set)
    duplicate_case_ids: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, int]:
        return {
            "properties_resolved": len(self.property_ids),
            "properties_created": self.properties_created,
            "properties_existing": self.properties_existing,
            "unresolved_keys": len(self.unresolved_keys),
            "duplicate_case_ids": len(self.duplicate_case_ids),
        }


@dataclass
class ViolationWriteResult:
    created: int = 0
    skipped_existing: int = 0
    skipped_unresolved: int = 0
    batches: int = 0
    property_ids: Set[int] = field(default_factory=set)

    def as_dict(self) -> Dict[str, int]:
        return {
            "created": self.created,
            "skipped_existing": self.skipped_existing,
            "skipped_unresolved": self.skipped_unresolved,
            "batches": self.batches,
        }


def find_duplicate_case_ids(rows: Iterable[ViolationRow]) -> Dict[str, int]:
    """Return case ids that occur on more than one row, with their counts."""
    counts = Counter(row.case_id for row in rows if row.case_id)
    return {case_id: n for case_id, n in counts.items() if n > 1}


# =============================================================================
# Property resolution
# =============================================================================


class PropertyResolver:
    """
    Map normalized keys to property ids, creating properties as needed.

    The unique constraint on ``property.normalized_key`` is what keeps two
    concurrent uploads from creating the same property; a batch that loses
    that race is re-resolved and retried one row at a time.
    """

    def __init__(
        self,
        session: Session,
        lookup_batch_size: Optional[int] = None,
        insert_batch_size: Optional[int] = None,
    ):
        settings = get_settings()
        self.session = session
        self.lookup_batch_size = lookup_batch_size or settings.property_lookup_batch_size
        self.insert_batch_size = insert_batch_size or settings.property_insert_batch_size

    def lookup(self, keys: Sequence[str]) -> Dict[str, int]:
        """Fetch ids for the keys that already exist, one query per batch."""
        found: Dict[str, int] = {}
        for batch in chunked(keys, self.lookup_batch_size):
            result = self.session.execute(
                select(Property.normalized_key, Property.id).where(
                    Property.normalized_key.in_(batch)
                )
            )
            found.update({key: pid for key, pid in result})
        return found

    def resolve(self, rows: Sequence[ViolationRow]) -> DedupResult:
        """
        Resolve a property id for every distinct key in ``rows``.

        Args:
            rows: Validated rows; rows sharing a key share a property.

        Returns:
            DedupResult with the key to id map and creation counts.
        """
        first_seen: Dict[str, ViolationRow] = {}
        for row in rows:
            first_seen.setdefault(row.key, row)

        result = DedupResult(duplicate_case_ids=find_duplicate_case_ids(rows))
        existing = self.lookup(list(first_seen))
        result.property_ids.update(existing)
        result.properties_existing = len(existing)

        missing = [first_seen[key] for key in first_seen if key not in existing]
        for batch in chunked(missing, self.insert_batch_size):
            resolved, created, unresolved = self._insert_batch(batch)
            result.property_ids.update(resolved)
            result.properties_created += created
            result.unresolved_keys.update(unresolved)

        LOGGER.info(
            f"Resolved {len(result.property_ids)} properties "
            f"({result.properties_created} new, {result.properties_existing} existing, "
            f"{len(result.unresolved_keys)} unresolved)"
        )
        return result

    def _insert_batch(
        self, batch: List[ViolationRow]
    ) -> Tuple[Dict[str, int], int, Set[str]]:
        properties = [_new_property(row) for row in batch]
        try:
            self.session.add_all(properties)
            self.session.flush()
            created = {p.normalized_key: p.id for p in properties}
            self.session.commit()
            return created, len(created), set()
        except IntegrityError:
            self.session.rollback()
            LOGGER.warning(
                f"Property batch of {len(batch)} hit a unique conflict; retrying row by row"
            )

        keys = [row.key for row in batch]
        resolved = self.lookup(keys)
        unresolved: Set[str] = set()
        inserted = 0
        for row in batch:
            if row.key in resolved:
                continue
            prop = _new_property(row)
            try:
                self.session.add(prop)
                self.session.flush()
                resolved[row.key] = prop.id
                self.session.commit()
                inserted += 1
            except IntegrityError:
                self.session.rollback()
                winner = self.lookup([row.key])
                if winner:
                    resolved.update(winner)
                else:
                    LOGGER.error(f"Could not resolve property for key {row.key!r}")
                    unresolved.add(row.key)
        return resolved, inserted, unresolved


def _new_property(row: ViolationRow) -> Property:
    return Property(
        address=row.address,
        city=row.city,
        state=row.state,
        zip=row.zip,
        normalized_key=row.key,
    )


# =============================================================================
# Violation writes
# =============================================================================


def _existing_violation_markers(
    session: Session,
    property_ids: Sequence[int],
    batch_size: int,
) -> Tuple[Set[Tuple[int, str]], Set[Tuple[int, str, Optional[date]]]]:
    by_case: Set[Tuple[int, str]] = set()
    by_content: Set[Tuple[int, str, Optional[date]]] = set()
    for batch in chunked(property_ids, batch_size):
        result = session.execute(
            select(
                Violation.property_id,
                Violation.case_id,
                Violation.violation_type,
                Violation.opened_date,
            ).where(Violation.property_id.in_(batch))
        )
        for property_id, case_id, violation_type, opened in result:
            if case_id:
                by_case.add((property_id, case_id))
            else:
                by_content.add((property_id, violation_type, opened))
    return by_case, by_content


def write_violations(
    session: Session,
    rows: Sequence[ViolationRow],
    property_ids: Dict[str, int],
    upload_job_id: Optional[int] = None,
    batch_size: Optional[int] = None,
    today: Optional[date] = None,
    on_batch: Optional[Callable[[int], None]] = None,
) -> ViolationWriteResult:
    """
    Insert one violation per row, committing every ``batch_size`` rows.

    Rows whose property could not be resolved are skipped. Rows already
    recorded for the same property (same case id, or same type and opened
    date when there is no case id) are skipped so a re-run does not
    duplicate them.

    ``on_batch`` is called with the running created count after every
    committed batch.

    Raises:
        SQLAlchemyError: When a batch fails. Earlier batches stay committed.
    """
    settings = get_settings()
    batch_size = batch_size or settings.violation_batch_size
    today = today or utcnow().date()
    result = ViolationWriteResult()

    by_case, by_content = _existing_violation_markers(
        session, sorted(set(property_ids.values())), settings.property_lookup_batch_size
    )

    pending: List[Violation] = []
    for row in rows:
        property_id = property_ids.get(row.key)
        if property_id is None:
            result.skipped_unresolved += 1
            continue
        if row.case_id:
            if (property_id, row.case_id) in by_case:
                result.skipped_existing += 1
                continue
        elif (property_id, row.violation, row.opened_date) in by_content:
            result.skipped_existing += 1
            continue

        pending.append(
            Violation(
                property_id=property_id,
                case_id=row.case_id,
                violation_type=row.violation,
                status=row.status or DEFAULT_VIOLATION_STATUS,
                opened_date=row.opened_date,
                last_updated=row.last_updated,
                days_open=days_open(row.opened_date, today),
                upload_job_id=upload_job_id,
            )
        )
        result.property_ids.add(property_id)
        if len(pending) >= batch_size:
            _flush_violations(session, pending, result)
            if on_batch:
                on_batch(result.created)

    if pending:
        _flush_violations(session, pending, result)
        if on_batch:
            on_batch(result.created)

    LOGGER.info(
        f"Created {result.created} violations in {result.batches} batches "
        f"({result.skipped_existing} already present, {result.skipped_unresolved} unresolved)"
    )
    return result


def _flush_violations(
    session: Session,
    pending: List[Violation],
    result: ViolationWriteResult,
) -> None:
    session.add_all(pending)
    session.commit()
    result.created += len(pending)
    result.batches += 1
    LOGGER.debug(f"Committed violation batch {result.batches} ({result.created} total)")
    pending.clear()


# =============================================================================
# Aggregates
# =============================================================================


def refresh_property_aggregates(
    session: Session,
    property_ids: Iterable[int],
    batch_size: Optional[int] = None,
) -> int:
    """
    Recompute enforcement aggregates for the given properties.

    total_violations, open_violations (status "open", case-insensitive),
    repeat_offender (more than one distinct non-empty case id) and
    last_enforcement_date (latest opened date).

    Returns:
        Number of properties updated.
    """
    batch_size = batch_size or get_settings().property_lookup_batch_size
    ids = sorted(set(property_ids))
    is_open = case((func.lower(func.trim(Violation.status)) == "open", 1), else_=0)
    distinct_cases = func.count(func.distinct(func.nullif(func.trim(Violation.case_id), "")))

    updated = 0
    for batch in chunked(ids, batch_size):
        result = session.execute(
            select(
                Violation.property_id,
                func.count(Violation.id),
                func.sum(is_open),
                distinct_cases,
                func.max(Violation.opened_date),
            )
            .where(Violation.property_id.in_(batch))
            .group_by(Violation.property_id)
        )
        params = [
            {
                "id": property_id,
                "total_violations": total,
                "open_violations": int(open_count or 0),
                "repeat_offender": (cases or 0) > 1,
                "last_enforcement_date": last_opened,
            }
            for property_id, total, open_count, cases, last_opened in result
        ]
        if params:
            session.execute(update(Property), params)
            updated += len(params)
        session.commit()

    return updated


__all__ = [
    "ViolationRow",
    "DedupResult",
    "ViolationWriteResult",
    "PropertyResolver",
    "find_duplicate_case_ids",
    "write_violations",
    "refresh_property_aggregates",
]
