"""
Checklist scoring: pure functions over a template and its recorded results.

``results`` arguments are dicts of item id → AuditResult (or any object with
``response``, ``evidence_urls`` and ``notes`` attributes).

Item points:
    pass_fail  'pass' → full points
    rating     r (1-5) → r / 5 × points
    numeric    any value → full points
    photo      ≥1 evidence reference → full points
    text       non-blank → full points
    checklist  {label: checked} → checked fraction × points

Audit score: per-section percentage (earned / max); the total is
Σ(percentage × weight / 100) for weighted templates, otherwise earned / max
across all sections. A failing critical item forces ``fail`` when the
template's ``critical_fail_rule`` is on.
"""

from __future__ import annotations

import math

from compliance.core.exceptions import ValidationError
from compliance.services.template_catalog import scoring_config

MIN_COMPLETION_RATIO = 0.95
MIN_RATING, MAX_RATING = 1, 5
FAILING_RATING = 2          # ratings at or below this raise a finding
CRITICAL_FAIL_RATING = 1
HIGH_SEVERITY_SECTION_WEIGHT = 25


def _response(result):
    return None if result is None else result.response


def _evidence_count(result):
    return 0 if result is None else len(result.evidence_urls or [])


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_answered(result) -> bool:
    return _response(result) is not None


def is_valid_rating(value) -> bool:
    return _is_number(value) and MIN_RATING <= value <= MAX_RATING


def response_error(item: dict, value) -> str | None:
    """Why ``value`` is not an acceptable response for ``item``, or None."""
    if value is None:
        return None
    if item.get("type") == "rating" and not is_valid_rating(value):
        return f"Rating must be a number from {MIN_RATING} to {MAX_RATING}"
    return None


def item_points(item: dict, result) -> float:
    """Points earned for one item."""
    value = _response(result)
    if value is None:
        return 0.0
    points = float(item.get("points", 0))
    kind = item.get("type")

    if kind == "pass_fail":
        return points if value == "pass" else 0.0
    if kind == "rating":
        return (value / MAX_RATING) * points if is_valid_rating(value) else 0.0
    if kind == "numeric":
        return points
    if kind == "photo":
        return points if _evidence_count(result) > 0 else 0.0
    if kind == "text":
        return points if isinstance(value, str) and value.strip() else 0.0
    if kind == "checklist":
        if isinstance(value, dict) and value:
            checked = sum(1 for v in value.values() if v)
            return checked / len(value) * points
        return 0.0
    return 0.0


def is_critical_failure(item: dict, result) -> bool:
    """A critical item whose response counts as a hard fail."""
    if not item.get("critical"):
        return False
    value = _response(result)
    kind = item.get("type")
    if kind == "pass_fail":
        return value == "fail"
    if kind == "rating":
        return _is_number(value) and value == CRITICAL_FAIL_RATING
    if kind == "checklist":
        return isinstance(value, dict) and any(not v for v in value.values())
    return False


def is_failed_for_finding(item: dict, result) -> bool:
    """Whether a response is a non-conformance that needs a Finding."""
    value = _response(result)
    if value is None:
        return False
    kind = item.get("type")
    if kind == "pass_fail":
        return value == "fail"
    if kind == "rating":
        return _is_number(value) and value <= FAILING_RATING
    if kind == "checklist":
        return isinstance(value, dict) and any(not v for v in value.values())
    return False


def determine_severity(item: dict, section: dict) -> str:
    if item.get("critical"):
        return "critical"
    if float(section.get("weight", 0)) >= HIGH_SEVERITY_SECTION_WEIGHT:
        return "high"
    return "medium"


def calculate_score(template, results: dict) -> dict:
    """Score an audit.

    Returns ``{"total_score", "pass_fail", "critical_fail", "section_scores"}``
    with ``total_score`` rounded to one decimal.
    """
    cfg = scoring_config(template)
    critical_fail = False
    if cfg.get("critical_fail_rule"):
        critical_fail = any(
            is_critical_failure(item, results.get(item["id"]))
            for _section, item in template.iter_items()
        )

    section_scores = []
    weighted_total = 0.0
    total_earned = 0.0
    total_max = 0.0
    for section in template.sections:
        earned = 0.0
        max_points = 0.0
        for item in section.get("items", []):
            max_points += float(item.get("points", 0))
            earned += item_points(item, results.get(item["id"]))
        pct = (earned / max_points * 100) if max_points > 0 else 0.0
        weight = float(section.get("weight", 0))
        weighted_total += pct * weight / 100
        total_earned += earned
        total_max += max_points
        section_scores.append({
            "section_id": section.get("id"),
            "section_name": section.get("name", ""),
            "points_earned": round(earned, 2),
            "max_points": max_points,
            "weight": weight,
            "percentage": round(pct, 2),
        })

    if cfg.get("weighted"):
        total = weighted_total
    else:
        total = (total_earned / total_max * 100) if total_max > 0 else 0.0

    total = round(total, 1)
    if critical_fail:
        pass_fail = "fail"
    else:
        pass_fail = "pass" if total >= float(cfg.get("pass_threshold", 0)) else "fail"

    return {
        "total_score": total,
        "pass_fail": pass_fail,
        "critical_fail": critical_fail,
        "section_scores": section_scores,
    }


def completion_stats(template, results: dict) -> dict:
    total = 0
    answered = 0
    for _section, item in template.iter_items():
        total += 1
        if is_answered(results.get(item["id"])):
            answered += 1
    pct = round(answered / total * 100) if total else 100
    return {"total": total, "answered": answered, "percentage": pct}


def validate_submission(template, results: dict) -> None:
    """Raise ValidationError unless the checklist can be submitted.

    Checks, in order: at least 95% of items answered, required evidence
    attached, every critical item answered.
    """
    stats = completion_stats(template, results)
    min_required = math.ceil(stats["total"] * MIN_COMPLETION_RATIO)
    if stats["answered"] < min_required:
        raise ValidationError(
            "Audit incomplete. You must answer at least 95% of items before "
            f"submitting. Currently at {stats['percentage']}%.",
            details={"completion": stats},
        )

    missing_evidence = []
    unanswered_critical = []
    for _section, item in template.iter_items():
        result = results.get(item["id"])
        required = item.get("evidence_required", "none")
        needed = {"required_1": 1, "required_2": 2}.get(required, 0)
        if _evidence_count(result) < needed:
            missing_evidence.append(item["id"])
        if item.get("critical") and not is_answered(result):
            unanswered_critical.append(item["id"])

    if missing_evidence:
        raise ValidationError(
            f"Missing required evidence on {len(missing_evidence)} item(s).",
            details={"items": missing_evidence},
        )
    if unanswered_critical:
        raise ValidationError(
            "Critical items cannot be skipped. "
            f"{len(unanswered_critical)} critical item(s) unanswered.",
            details={"items": unanswered_critical},
        )
