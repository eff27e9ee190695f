"""
Tests: CAPA approve / reject, audit finalization and the verification queue.

The end-to-end cases drive a real audit through the services: responses,
submission, CAPA work, verification, finalization and the health score
recalculation that follows it.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from compliance.core.exceptions import ValidationError
from compliance.models import db as _db
from compliance.models.audit import Audit
from compliance.models.directory import Branch
from compliance.models.finding import CAPA
from compliance.models.health_score import HealthScoreRecord
from compliance.models.notification import Notification
from compliance.services import audit_service, capa_service, verification
from compliance.services.role_scope import resolve_scope

NOW = datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)
PHOTO = "evidence/capa/x/fixed.jpg"


def _responses(**overrides):
    responses = {
        "i1": "pass",
        "i2": 5,
        "i3": "pass",
        "i4": {"doors": True, "lights": True},
    }
    responses.update(overrides)
    return [{"item_id": k, "response": v} for k, v in responses.items()]


def _submitted_audit(make_audit, **overrides):
    audit = make_audit(status="in_progress")
    audit_service.record_checklist_responses(audit.id, _responses(**overrides),
                                             submit=True, now=NOW)
    return audit


def _only_capa(audit):
    return CAPA.query.filter_by(audit_id=audit.id).one()


# ═════════════════════════════════════════════════════════════════════════════
# 1. CAPA VERIFICATION
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_critical_capa_reject_then_rework_then_approve(org, make_audit):
    audit = _submitted_audit(make_audit, i1="fail")
    capa = _only_capa(audit)
    assert capa.priority == "critical"
    assert capa.due_date == date(2025, 1, 4)

    capa_service.start_capa(capa.id, org.branch_manager.id, now=NOW)
    capa_service.add_evidence(capa.id, org.branch_manager.id, PHOTO, now=NOW)
    capa_service.submit_for_verification(capa.id, org.branch_manager.id, now=NOW)

    reason = "Photo does not show the thermometer reading."
    verification.reject_capa(capa.id, org.regional_manager.id, reason,
                             now=NOW + timedelta(hours=1))
    capa = _db.session.get(CAPA, capa.id)
    assert capa.status == "rejected"
    rejected = capa_service.get_activity(capa.id)[-1]
    assert rejected.action == "rejected"
    assert rejected.details == reason
    note = Notification.query.filter_by(user_id=org.branch_manager.id, type="capa_rejected").one()
    assert note.message == reason

    capa_service.resubmit_capa(capa.id, org.branch_manager.id, now=NOW + timedelta(hours=2))
    assert capa_service.get_activity(capa.id)[-1].action == "resubmitted"

    verification.approve_capa(capa.id, org.regional_manager.id, now=NOW + timedelta(hours=3))
    capa = _db.session.get(CAPA, capa.id)
    assert capa.status == "closed"
    assert capa.closed_at is not None
    assert capa.finding.status == "resolved"


@pytest.mark.unit
def test_reject_requires_a_reason(org, make_capa):
    capa = make_capa(status="pending_verification", evidence=[PHOTO])
    with pytest.raises(ValidationError) as exc:
        verification.reject_capa(capa.id, org.regional_manager.id, "   ")
    assert exc.value.message == "A rejection reason is required."
    assert _db.session.get(CAPA, capa.id).status == "pending_verification"


@pytest.mark.unit
def test_approve_only_from_pending_verification(org, make_capa):
    capa = make_capa(status="in_progress", evidence=[PHOTO])
    with pytest.raises(ValidationError):
        verification.approve_capa(capa.id, org.regional_manager.id)


# ═════════════════════════════════════════════════════════════════════════════
# 2. AUDIT FINALIZATION
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_audit_approval_waits_for_open_capas(org, make_audit):
    audit = _submitted_audit(make_audit, i3="fail")
    capa = _only_capa(audit)

    with pytest.raises(ValidationError) as exc:
        verification.approve_audit(audit.id, org.regional_manager.id, now=NOW)
    assert exc.value.details["pending_capas"] == [capa.code]
    assert _db.session.get(Audit, audit.id).status == "submitted"


@pytest.mark.unit
def test_full_approval_scores_audit_and_recalculates_health(org, make_audit):
    audit = _submitted_audit(make_audit, i3="fail")
    capa = _only_capa(audit)
    assert capa.priority == "high"

    capa_service.add_evidence(capa.id, org.branch_manager.id, PHOTO, now=NOW)
    capa_service.submit_for_verification(capa.id, org.branch_manager.id, now=NOW)
    verification.approve_capa(capa.id, org.regional_manager.id, now=NOW)
    approved = verification.approve_audit(audit.id, org.regional_manager.id, now=NOW)

    # s1: 100% × 60 ; s2: 50% × 40
    assert approved.status == "approved"
    assert approved.score == 80.0
    assert approved.pass_fail == "pass"
    assert capa_service.get_activity(capa.id)[-1].action == "audit_finalized"
    assert Notification.query.filter_by(
        user_id=org.branch_manager.id, type="audit_finalized",
    ).count() == 1

    # 80×0.40 + 100×0.25 + 90×0.15 + 100×0.10 + 100×0.10
    record = HealthScoreRecord.query.filter_by(entity_type="branch",
                                               entity_id=org.branch.id).one()
    assert record.score == 90.5
    assert record.components["repeat_findings"] == 90.0
    assert _db.session.get(Branch, org.branch.id).health_score == 90.5


@pytest.mark.unit
def test_flag_audit_sends_it_back_and_leaves_capas(org, make_audit):
    audit = _submitted_audit(make_audit, i3="fail")
    capa = _only_capa(audit)

    flagged = verification.flag_audit(audit.id, org.regional_manager.id,
                                      "Responses look copied from last visit")
    assert flagged.status == "rejected"
    assert "Responses look copied" in flagged.notes
    assert _db.session.get(CAPA, capa.id).status == "open"
    assert [n.user_id for n in Notification.query.filter_by(type="audit_flagged")] == [
        org.audit_manager.id,
    ]


@pytest.mark.unit
def test_flag_requires_a_reason(org, make_audit):
    audit = _submitted_audit(make_audit, i3="fail")
    with pytest.raises(ValidationError):
        verification.flag_audit(audit.id, org.regional_manager.id, "")


# ═════════════════════════════════════════════════════════════════════════════
# 3. QUEUE
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_queue_auto_approves_before_listing(org, make_audit, make_capa):
    audit = make_audit(status="submitted")
    capa = make_capa(priority="low", status="pending_verification", audit=audit,
                     evidence=[PHOTO])

    queue = verification.get_verification_queue(now=NOW)

    assert _db.session.get(CAPA, capa.id).status == "closed"
    assert [q["id"] for q in queue] == [audit.id]
    assert queue[0]["entity_name"] == "Kadikoy"
    assert queue[0]["capa_count"] == 1
    assert queue[0]["capas_closed"] == 1
    assert queue[0]["is_overdue"] is False


@pytest.mark.unit
def test_queue_respects_scope(org, make_audit):
    make_audit(status="pending_verification")
    make_audit(status="pending_verification", entity_id=org.other_branch.id)

    queue = verification.get_verification_queue(resolve_scope(org.regional_manager.id), now=NOW)
    assert [q["entity_id"] for q in queue] == [org.branch.id]
