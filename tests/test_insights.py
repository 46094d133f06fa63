"""Tests for rule-based property insights."""
from __future__ import annotations

import pytest

from conftest import add_property, add_violation
from core.exceptions import ValidationError
from services.insights import (
    MAX_INSIGHT_LENGTH,
    ClassifiedViolation,
    build_insight,
    classify_violation,
    generate_insights,
    handle_generate_insights,
    score_property,
)


def classified(category, severity, days_open=0, status="Open"):
    return ClassifiedViolation(
        category=category, severity=severity, violation_type=category, status=status, days_open=days_open
    )


class TestClassifyViolation:

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("Fire damage to rear structure", ("Fire", "severe")),
            ("Building condemned", ("Structural", "severe")),
            ("Roof leak over kitchen", ("Structural", "moderate")),
            ("Vacant and boarded", ("Vacancy", "moderate")),
            ("Tall weeds and grass", ("Exterior", "minor")),
            ("Broken window", ("Exterior", "minor")),
            ("Smoke detector missing", ("Fire", "severe")),
            ("Noise complaint", ("Other", "minor")),
            (None, ("Other", "minor")),
        ],
    )
    def test_first_matching_rule_wins(self, text, expected):
        assert classify_violation(text) == expected


class TestBuildInsight:

    def test_no_violations(self):
        assert build_insight([]) == "No violation records found for this property."

    def test_minor_only(self):
        text = build_insight([classified("Exterior", "minor", days_open=10)])
        assert text == "Property shows deferred maintenance. Value-add opportunity potential."

    def test_severe_and_chronic(self):
        text = build_insight([
            classified("Fire", "severe", days_open=200),
            classified("Vacancy", "moderate"),
            classified("Exterior", "minor"),
        ])
        assert text.startswith("Fire-related damage observed. Signs of vacancy or abandonment.")
        assert "chronic non-compliance" in text
        assert text.endswith("Extended non-remediation period indicates potential distress.")
        assert len(text) <= MAX_INSIGHT_LENGTH


class TestScoreProperty:

    def test_single_minor_violation(self):
        violations = [classified("Exterior", "minor", days_open=10)]
        assert score_property("Property shows deferred maintenance.", violations) == 5

    def test_score_is_capped(self):
        violations = [classified("Fire", "severe", days_open=400, status="Condemned")] * 6
        assert score_property("Fire-related damage observed. Signs of vacancy.", violations) == 100

    def test_escalated_status_adds_points(self):
        base = [classified("Exterior", "minor")]
        hearing = [classified("Exterior", "minor", status="Referred to hearing")]
        assert score_property("", hearing) - score_property("", base) == 15


class TestGenerateInsights:

    def test_writes_score_and_text(self, db_session):
        prop = add_property(db_session)
        add_violation(db_session, prop, "Fire damage to garage", status="Open", days_open=100)
        add_violation(db_session, prop, "Weeds", status="Open", days_open=5)
        empty = add_property(db_session, address="2 Quiet Ln")
        db_session.commit()

        result = generate_insights(db_session, [prop.id, empty.id, 99999])

        assert result == {"processed": 2, "total": 3}
        db_session.refresh(prop)
        db_session.refresh(empty)
        assert prop.snap_insight.startswith("Fire-related damage observed")
        assert 0 < prop.snap_score <= 100
        assert empty.snap_insight == "No violation records found for this property."
        assert empty.snap_score == 0

    def test_same_violations_same_insight(self, db_session):
        first = add_property(db_session, address="1 Twin St")
        second = add_property(db_session, address="2 Twin St")
        for prop in (first, second):
            add_violation(db_session, prop, "Vacant and boarded", status="Open", days_open=120)
        db_session.commit()

        generate_insights(db_session, [first.id, second.id])

        db_session.refresh(first)
        db_session.refresh(second)
        assert (first.snap_insight, first.snap_score) == (second.snap_insight, second.snap_score)

    @pytest.mark.parametrize("payload", [{}, {"propertyIds": []}, {"propertyIds": "1,2"}])
    def test_handler_requires_ids(self, db_session, recorder, payload):
        with pytest.raises(ValidationError):
            handle_generate_insights(db_session, payload, recorder)
