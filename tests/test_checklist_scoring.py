"""
Tests: checklist item points, audit scoring and submission validation.

Pure functions: templates are transient AuditTemplate objects and results are
simple attribute holders, nothing touches the database.
"""

from types import SimpleNamespace

import pytest

from compliance.core.exceptions import ValidationError
from compliance.models.template import AuditTemplate
from compliance.services import checklist_scoring as scoring

CHECKLIST = {"sections": [
    {"id": "s1", "name": "Food Safety", "weight": 60, "items": [
        {"id": "i1", "type": "pass_fail", "points": 10, "critical": True},
        {"id": "i2", "type": "rating", "points": 10},
    ]},
    {"id": "s2", "name": "Front of House", "weight": 40, "items": [
        {"id": "i3", "type": "pass_fail", "points": 10},
        {"id": "i4", "type": "checklist", "points": 10},
    ]},
]}


def _result(response, evidence_urls=(), notes=""):
    return SimpleNamespace(response=response, evidence_urls=list(evidence_urls), notes=notes)


def _template(checklist=CHECKLIST, **scoring_config):
    cfg = {"pass_threshold": 70, "critical_fail_rule": True, "weighted": True}
    cfg.update(scoring_config)
    return AuditTemplate(code="TPL", name="T", entity_type="branch",
                         checklist_json=checklist, scoring_config=cfg)


def _all_good():
    return {
        "i1": _result("pass"),
        "i2": _result(5),
        "i3": _result("pass"),
        "i4": _result({"doors": True, "lights": True}),
    }


# ═════════════════════════════════════════════════════════════════════════════
# 1. ITEM POINTS
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
@pytest.mark.parametrize("item_type,response,evidence,expected", [
    ("pass_fail", "pass", (), 10.0),
    ("pass_fail", "fail", (), 0.0),
    ("rating", 4, (), 8.0),
    ("numeric", 3.7, (), 10.0),
    ("photo", "taken", ("evidence/a/b/c.jpg",), 10.0),
    ("photo", "taken", (), 0.0),
    ("text", "All good", (), 10.0),
    ("text", "   ", (), 0.0),
    ("checklist", {"a": True, "b": False}, (), 5.0),
])
def test_item_points_by_type(item_type, response, evidence, expected):
    item = {"id": "x", "type": item_type, "points": 10}
    assert scoring.item_points(item, _result(response, evidence)) == pytest.approx(expected)


@pytest.mark.unit
def test_unanswered_item_earns_nothing():
    assert scoring.item_points({"id": "x", "type": "numeric", "points": 10}, None) == 0.0


@pytest.mark.unit
@pytest.mark.parametrize("rating,expected", [(1, 2.0), (5, 10.0), (10, 0.0), (0, 0.0), (True, 0.0)])
def test_rating_points_never_exceed_item_points(rating, expected):
    item = {"id": "r", "type": "rating", "points": 10}
    assert scoring.item_points(item, _result(rating)) == pytest.approx(expected)
    assert (scoring.response_error(item, rating) is None) == (expected > 0)


@pytest.mark.unit
def test_failing_responses_raise_findings():
    rating = {"id": "r", "type": "rating", "points": 10}
    assert scoring.is_failed_for_finding(rating, _result(2))
    assert not scoring.is_failed_for_finding(rating, _result(3))
    checklist = {"id": "c", "type": "checklist", "points": 10}
    assert scoring.is_failed_for_finding(checklist, _result({"a": True, "b": False}))
    assert not scoring.is_failed_for_finding(checklist, None)


@pytest.mark.unit
def test_severity_from_item_and_section_weight():
    assert scoring.determine_severity({"critical": True}, {"weight": 5}) == "critical"
    assert scoring.determine_severity({}, {"weight": 25}) == "high"
    assert scoring.determine_severity({}, {"weight": 24}) == "medium"


# ═════════════════════════════════════════════════════════════════════════════
# 2. AUDIT SCORE
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_weighted_score_sums_section_percentages():
    results = _all_good()
    results["i3"] = _result("fail")
    scored = scoring.calculate_score(_template(), results)

    # s1: 100% × 60 ; s2: 50% × 40
    assert scored["total_score"] == 80.0
    assert scored["pass_fail"] == "pass"
    assert scored["critical_fail"] is False
    assert [s["percentage"] for s in scored["section_scores"]] == [100.0, 50.0]


@pytest.mark.unit
def test_unweighted_score_uses_overall_points():
    results = _all_good()
    results["i3"] = _result("fail")
    scored = scoring.calculate_score(_template(weighted=False), results)
    assert scored["total_score"] == 75.0


@pytest.mark.unit
def test_critical_failure_forces_fail_despite_high_score():
    results = _all_good()
    results["i1"] = _result("fail")
    scored = scoring.calculate_score(_template(pass_threshold=10), results)
    assert scored["critical_fail"] is True
    assert scored["pass_fail"] == "fail"


@pytest.mark.unit
def test_critical_rule_off_scores_normally():
    results = _all_good()
    results["i1"] = _result("fail")
    scored = scoring.calculate_score(_template(critical_fail_rule=False, pass_threshold=50),
                                     results)
    assert scored["pass_fail"] == "pass"


@pytest.mark.unit
def test_below_threshold_fails():
    results = {"i1": _result("pass"), "i2": _result(1), "i3": _result("fail"),
               "i4": _result({"a": False})}
    scored = scoring.calculate_score(_template(critical_fail_rule=False), results)
    # s1: (10 + 2) / 20 = 60% × 60 = 36 ; s2: 0
    assert scored["total_score"] == 36.0
    assert scored["pass_fail"] == "fail"


# ═════════════════════════════════════════════════════════════════════════════
# 3. SUBMISSION VALIDATION
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_submission_requires_95_percent_answered():
    results = _all_good()
    del results["i4"]
    with pytest.raises(ValidationError) as exc:
        scoring.validate_submission(_template(), results)
    assert "Currently at 75%" in exc.value.message
    assert exc.value.details["completion"]["answered"] == 3


@pytest.mark.unit
def test_submission_requires_evidence_where_configured():
    checklist = {"sections": [{"id": "s", "name": "S", "weight": 100, "items": [
        {"id": "p", "type": "photo", "points": 10, "evidence_required": "required_2"},
    ]}]}
    with pytest.raises(ValidationError) as exc:
        scoring.validate_submission(
            _template(checklist), {"p": _result("taken", ["evidence/x/y/1.jpg"])},
        )
    assert exc.value.message == "Missing required evidence on 1 item(s)."
    assert exc.value.details["items"] == ["p"]


@pytest.mark.unit
def test_submission_rejects_skipped_critical_item():
    items = [{"id": f"n{i}", "type": "numeric", "points": 1} for i in range(19)]
    items.append({"id": "crit", "type": "pass_fail", "points": 1, "critical": True})
    checklist = {"sections": [{"id": "s", "name": "S", "weight": 100, "items": items}]}
    results = {f"n{i}": _result(i) for i in range(19)}

    with pytest.raises(ValidationError) as exc:
        scoring.validate_submission(_template(checklist), results)
    assert exc.value.message.startswith("Critical items cannot be skipped.")
    assert exc.value.details["items"] == ["crit"]


@pytest.mark.unit
def test_complete_checklist_passes_validation():
    scoring.validate_submission(_template(), _all_good())
