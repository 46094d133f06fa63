"""
Rule-based property insights.

Classifies each violation into a category and severity, writes a short
investor-facing summary (``snap_insight``) and a 0-100 distress score
(``snap_score``) onto the property. Runs as the ``generate_insights`` task
submitted when an upload finishes.

NO EXTERNAL CALLS. The same violations always produce the same insight.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from core.exceptions import ValidationError
from core.logging_config import get_logger
from core.models import Property, Violation
from core.utils import chunked

LOGGER = get_logger(__name__)

MAX_INSIGHT_LENGTH = 280
MAX_SCORE = 100

SEVERE = "severe"
MODERATE = "moderate"
MINOR = "minor"

# =============================================================================
# CLASSIFICATION RULES (first match wins)
# =============================================================================

CLASSIFICATION_RULES: Tuple[Tuple[str, str, Tuple[str, ...]], ...] = (
    ("Structural", SEVERE, ("collapse", "unsafe structure", "condemned", "foundation failure", "imminent danger")),
    ("Fire", SEVERE, ("fire damage", "burnt", "smoke damage", "charred", "fire-related damage")),
    ("Utility", SEVERE, ("no utilities", "utility disconnect", "no water", "no electric")),
    ("Structural", MODERATE, ("roof leak", "structural damage", "foundation crack", "major repair")),
    ("Vacancy", MODERATE, ("vacant", "abandon", "unoccup", "boarded")),
    ("Safety", MODERATE, ("unsafe", "hazard", "danger", "health")),
    ("Utility", MODERATE, ("plumbing", "electrical", "sewage", "hvac")),
    ("Exterior", MINOR, ("paint", "siding", "fence", "grass", "weeds", "debris")),
    ("Exterior", MINOR, ("window", "door", "screen", "gutter")),
    ("Structural", MODERATE, ("structur", "foundation", "roof", "wall")),
    ("Fire", SEVERE, ("fire", "burn", "smoke")),
    ("Exterior", MINOR, ("exterior", "facade")),
)

DEFAULT_CLASSIFICATION = ("Other", MINOR)

LEGAL_ESCALATION = ("condemned", "legal action", "prosecution")
ENFORCEMENT_ESCALATION = ("referred", "board", "hearing")


@dataclass
class ClassifiedViolation:
    category: str
    severity: str
    violation_type: str
    status: str
    days_open: int


@dataclass
class PropertyInsight:
    property_id: int
    insight: str
    score: int

    def to_dict(self) -> Dict[str, Any]:
        return {"property_id": self.property_id, "snap_insight": self.insight, "snap_score": self.score}


def classify_violation(violation_type: Optional[str]) -> Tuple[str, str]:
    """
    Map a violation description to ``(category, severity)``.

    Example:
        >>> classify_violation("Fire damage to rear structure")
        ('Fire', 'severe')
    """
    text = (violation_type or "").lower()
    for category, severity, keywords in CLASSIFICATION_RULES:
        if any(keyword in text for keyword in keywords):
            return category, severity
    return DEFAULT_CLASSIFICATION


def classify_violations(violations: Iterable[Violation]) -> List[ClassifiedViolation]:
    classified = []
    for v in violations:
        category, severity = classify_violation(v.violation_type)
        classified.append(
            ClassifiedViolation(
                category=category,
                severity=severity,
                violation_type=v.violation_type or "",
                status=v.status or "",
                days_open=v.days_open or 0,
            )
        )
    return classified


# =============================================================================
# INSIGHT TEXT
# =============================================================================


def build_insight(classified: Sequence[ClassifiedViolation]) -> str:
    """Compose the summary sentence from the classified violations."""
    if not classified:
        return "No violation records found for this property."

    parts: List[str] = []
    severe_categories = {c.category for c in classified if c.severity == SEVERE}
    if "Fire" in severe_categories:
        parts.append("Fire-related damage observed")
    if "Structural" in severe_categories:
        parts.append("Significant structural concerns identified")
    if "Utility" in severe_categories:
        parts.append("Critical utility issues noted")

    moderate_categories = {c.category for c in classified if c.severity == MODERATE}
    if "Vacancy" in moderate_categories:
        parts.append("Signs of vacancy or abandonment")
    if "Safety" in moderate_categories:
        parts.append("Safety-related conditions present")

    if len(classified) >= 3:
        parts.append("Pattern of chronic non-compliance suggests owner capacity constraints")
    elif len(classified) > 1:
        parts.append("Multiple condition issues noted")

    oldest = max(c.days_open for c in classified)
    if oldest > 180:
        parts.append("Extended non-remediation period indicates potential distress")
    elif oldest > 90:
        parts.append("Prolonged maintenance deferral observed")

    if not parts:
        if any(c.severity == MINOR for c in classified):
            return "Property shows deferred maintenance. Value-add opportunity potential."
        return "Property condition requires further assessment."

    text = ". ".join(parts) + "."
    if len(text) > MAX_INSIGHT_LENGTH:
        text = ". ".join(parts[:2]) + "."
    if len(text) > MAX_INSIGHT_LENGTH:
        text = text[: MAX_INSIGHT_LENGTH - 3] + "..."
    return text


# =============================================================================
# SCORE
# =============================================================================


def score_property(insight: str, classified: Sequence[ClassifiedViolation]) -> int:
    """
    Distress score, 0-100.

    Components: months open (5/month, max 30), severity (first severe 40,
    each further severe 15, moderate 15 each, minor 5 each up to 15),
    category spread, violation count, escalated statuses and signals in the
    insight text.
    """
    score = 0

    months_open = max((c.days_open for c in classified), default=0) // 30
    score += min(months_open * 5, 30)

    severe = sum(1 for c in classified if c.severity == SEVERE)
    moderate = sum(1 for c in classified if c.severity == MODERATE)
    minor = sum(1 for c in classified if c.severity == MINOR)
    if severe:
        score += 40 + (severe - 1) * 15
    score += moderate * 15
    score += min(minor * 5, 15)

    categories = {c.category for c in classified}
    if len(categories) >= 3:
        score += 25
    elif len(categories) == 2:
        score += 10

    count = len(classified)
    if count >= 5:
        score += 25
    elif count >= 3:
        score += 15
    elif count >= 2:
        score += 5

    statuses = [c.status.lower() for c in classified]
    if any(any(word in s for word in LEGAL_ESCALATION) for s in statuses):
        score += 30
    elif any(any(word in s for word in ENFORCEMENT_ESCALATION) for s in statuses):
        score += 15

    text = insight.lower()
    if "fire" in text and severe == 0:
        score += 20
    if "vacant" in text or "abandon" in text or "unoccup" in text:
        score += 10
    if "unsecured" in text or "open to entry" in text or "boarded" in text:
        score += 15

    return max(0, min(MAX_SCORE, score))


def generate_property_insight(prop: Property) -> PropertyInsight:
    classified = classify_violations(prop.violations)
    insight = build_insight(classified)
    return PropertyInsight(
        property_id=prop.id,
        insight=insight,
        score=score_property(insight, classified),
    )


# =============================================================================
# BATCH ENTRY POINT
# =============================================================================


def generate_insights(
    session: Session,
    property_ids: Sequence[int],
    batch_size: int = 500,
) -> Dict[str, int]:
    """
    Generate and store insights for the given properties.

    Returns:
        ``{"processed": n, "total": len(property_ids)}``; ids that no longer
        exist are not counted as processed.
    """
    ids = sorted({int(pid) for pid in property_ids})
    processed = 0
    for batch in chunked(ids, batch_size):
        properties = session.scalars(
            select(Property)
            .where(Property.id.in_(batch))
            .options(selectinload(Property.violations))
        ).all()
        for prop in properties:
            result = generate_property_insight(prop)
            prop.snap_insight = result.insight
            prop.snap_score = result.score
            processed += 1
        session.commit()

    LOGGER.info(f"Generated insights for {processed} of {len(ids)} properties")
    return {"processed": processed, "total": len(ids)}


def handle_generate_insights(
    session: Session,
    payload: Dict[str, Any],
    dispatcher,
) -> Dict[str, Any]:
    """Task handler for ``generate_insights {propertyIds}``."""
    property_ids = payload.get("propertyIds")
    if not property_ids or not isinstance(property_ids, list):
        raise ValidationError("generate_insights requires a non-empty propertyIds list")
    return generate_insights(session, property_ids)


__all__ = [
    "ClassifiedViolation",
    "PropertyInsight",
    "classify_violation",
    "classify_violations",
    "build_insight",
    "score_property",
    "generate_property_insight",
    "generate_insights",
    "handle_generate_insights",
]
