"""
Tests: health / quality score components, weighting, persistence and
supplier auto-suspension.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from compliance.core.exceptions import NotFoundError, ValidationError
from compliance.models import db as _db
from compliance.models.directory import Supplier
from compliance.models.health_score import HealthScoreRecord
from compliance.models.notification import Notification
from compliance.services import health_score as svc
from compliance.services.activity import log_activity

NOW = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)
LATER = datetime(2025, 1, 11, 9, 0, tzinfo=timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# 1. LABELS
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
@pytest.mark.parametrize("score,entity_type,label", [
    (85.0, "branch", "Excellent"),
    (84.9, "branch", "Good"),
    (50.0, "bck", "Needs Improvement"),
    (49.9, "branch", "Critical"),
    (90.0, "supplier", "Approved"),
    (75.0, "supplier", "Conditional"),
    (60.0, "supplier", "Under Review"),
    (59.9, "supplier", "Suspended"),
])
def test_threshold_labels(score, entity_type, label):
    assert svc.threshold_label(score, entity_type) == label


# ═════════════════════════════════════════════════════════════════════════════
# 2. BRANCH
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_branch_without_history(org):
    result = svc.calculate_health_score("branch", org.branch.id, now=NOW)
    # no approved audits: 0 × 0.40, every other component at 100
    assert result["score"] == 60.0
    assert result["components"] == {
        "audit_performance": 0.0,
        "capa_completion": 100.0,
        "repeat_findings": 100.0,
        "incident_rate": 100.0,
        "verification_pass": 100.0,
    }


@pytest.mark.unit
def test_repeat_findings_penalty_is_capped(org, make_audit, make_capa):
    audit = make_audit(status="submitted")
    for _ in range(6):
        make_capa(audit=audit)
    result = svc.calculate_health_score("branch", org.branch.id, now=LATER)
    assert result["components"]["repeat_findings"] == 50.0


@pytest.mark.unit
def test_old_audits_fall_out_of_the_window(org, make_audit):
    make_audit(status="approved", score=90.0, completed_at=NOW - timedelta(days=100))
    make_audit(status="approved", score=70.0, completed_at=NOW - timedelta(days=10))
    result = svc.calculate_health_score("branch", org.branch.id, now=NOW)
    assert result["components"]["audit_performance"] == 70.0


@pytest.mark.unit
def test_late_and_rejected_capas_score_zero(org, make_capa):
    capa = make_capa(priority="critical", status="closed")  # due 2025-01-04
    log_activity(capa, org.regional_manager.id, "rejected", "Blurry photo",
                 now=datetime(2025, 1, 3, 12, 0, tzinfo=timezone.utc))
    log_activity(capa, org.regional_manager.id, "approved", "",
                 now=datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc))
    _db.session.commit()

    components = svc.calculate_health_score("branch", org.branch.id, now=LATER)["components"]
    assert components["capa_completion"] == 0.0
    assert components["verification_pass"] == 0.0


@pytest.mark.unit
def test_closed_on_due_date_counts_as_on_time(org, make_capa):
    capa = make_capa(priority="critical", status="closed")
    log_activity(capa, org.regional_manager.id, "approved", "",
                 now=datetime(2025, 1, 4, 23, 0, tzinfo=timezone.utc))
    _db.session.commit()
    components = svc.calculate_health_score("branch", org.branch.id, now=LATER)["components"]
    assert components["capa_completion"] == 100.0


# ═════════════════════════════════════════════════════════════════════════════
# 3. BCK & SUPPLIER
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
@pytest.mark.parametrize("entity_type,component", [
    ("branch", "audit_performance"),
    ("bck", "haccp_compliance"),
    ("bck", "production_audit_perf"),
    ("supplier", "audit_performance"),
])
def test_out_of_range_audit_score_is_clamped(org, make_audit, entity_type, component):
    make_audit(entity_type=entity_type, status="approved", score=150.0, completed_at=NOW)
    entity_id = {"branch": org.branch.id, "bck": org.bck.id,
                 "supplier": org.supplier.id}[entity_type]

    result = svc.calculate_health_score(entity_type, entity_id, now=NOW)
    assert result["components"][component] == 100.0
    assert all(0.0 <= v <= 100.0 for v in result["components"].values())
    assert result["score"] <= 100.0


@pytest.mark.unit
@pytest.mark.parametrize("value,expected", [(-12.5, 0.0), (0, 0.0), (55.5, 55.5), (140, 100.0)])
def test_clamp_bounds(value, expected):
    assert svc.clamp(value) == expected


@pytest.mark.unit
def test_bck_uses_latest_audit_and_supplier_quality(org, make_audit):
    make_audit(entity_type="bck", status="approved", score=80.0, completed_at=NOW)
    org.supplier.quality_score = 60.0
    _db.session.commit()

    result = svc.calculate_health_score("bck", org.bck.id, now=NOW)
    # 80 × 0.50 + 80 × 0.25 + 60 × 0.15 + 100 × 0.10
    assert result["score"] == 79.0
    assert result["components"]["haccp_compliance"] == 80.0
    assert result["components"]["supplier_quality"] == 60.0


@pytest.mark.unit
def test_certified_supplier_at_threshold_is_not_suspended(org):
    svc.recalculate_health_score("supplier", org.supplier.id, now=NOW)
    supplier = _db.session.get(Supplier, org.supplier.id)
    assert supplier.quality_score == 60.0
    assert supplier.status == "active"


@pytest.mark.unit
def test_uncertified_supplier_below_threshold_is_suspended(org):
    org.supplier.certifications = []
    _db.session.commit()

    svc.recalculate_health_score("supplier", org.supplier.id, now=NOW)

    supplier = _db.session.get(Supplier, org.supplier.id)
    assert supplier.quality_score == 55.0
    assert supplier.status == "suspended"
    note = Notification.query.filter_by(type="supplier_suspended").one()
    assert note.user_id == org.audit_manager.id
    assert "dropped to 55.0" in note.message


# ═════════════════════════════════════════════════════════════════════════════
# 4. PERSISTENCE
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_recalculation_overwrites_the_single_record(org):
    svc.recalculate_health_score("branch", org.branch.id, now=NOW)
    svc.recalculate_health_score("branch", org.branch.id, now=LATER)

    records = HealthScoreRecord.query.filter_by(entity_type="branch",
                                                entity_id=org.branch.id).all()
    assert len(records) == 1
    assert records[0].calculated_at.date() == date(2025, 1, 11)

    stored = svc.get_health_score("branch", org.branch.id)
    assert stored["score"] == 60.0
    assert stored["label"] == "Needs Improvement"
    assert stored["weights"]["audit_performance"] == 0.40


@pytest.mark.unit
def test_missing_record_and_unknown_entities(org):
    with pytest.raises(NotFoundError):
        svc.get_health_score("branch", org.branch.id)
    with pytest.raises(NotFoundError):
        svc.recalculate_health_score("branch", 9999)
    with pytest.raises(ValidationError):
        svc.calculate_health_score("warehouse", 1)


@pytest.mark.unit
def test_recalculate_all_counts_each_entity_type(org):
    stats = svc.recalculate_all(now=NOW)
    assert stats == {"supplier": 1, "bck": 1, "branch": 2, "failed": 0}
    assert HealthScoreRecord.query.count() == 4
