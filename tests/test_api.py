"""
Tests: HTTP API: caller identity, permissions, scoping and the main
plan → audit → CAPA → verification flow over the test client.
"""

import pytest

from compliance.models import db as _db
from compliance.models.audit import Audit
from compliance.models.finding import CAPA

RESPONSES = [
    {"item_id": "i1", "response": "pass"},
    {"item_id": "i2", "response": 5},
    {"item_id": "i3", "response": "fail"},
    {"item_id": "i4", "response": {"doors": True}},
]


# ═════════════════════════════════════════════════════════════════════════════
# 1. IDENTITY & PERMISSIONS
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.integration
@pytest.mark.parametrize("hdrs", [{}, {"X-User-Id": "abc"}, {"X-User-Id": "9999"}])
def test_missing_or_unknown_caller_is_401(client, org, hdrs):
    res = client.get("/api/v1/audits", headers=hdrs)
    assert res.status_code == 401
    assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"


@pytest.mark.integration
def test_forbidden_operation_is_403(client, org, headers, template):
    res = client.post("/api/v1/audit-plans", json={"name": "x"}, headers=headers(org.auditor))
    assert res.status_code == 403
    assert res.get_json()["code"] == "ERR_FORBIDDEN"


@pytest.mark.integration
def test_staff_cannot_verify(client, org, headers, make_capa):
    capa = make_capa(status="pending_verification", evidence=["evidence/a/b/c"])
    res = client.post(f"/api/v1/verification/capas/{capa.id}/approve",
                      headers=headers(org.staff))
    assert res.status_code == 403


@pytest.mark.integration
def test_out_of_scope_capa_looks_missing(client, org, headers, make_audit, make_capa):
    foreign = make_capa(audit=make_audit(entity_id=org.other_branch.id, status="submitted"))
    res = client.get(f"/api/v1/capas/{foreign.id}", headers=headers(org.branch_manager))
    assert res.status_code == 404
    res = client.post(f"/api/v1/capas/{foreign.id}/start", headers=headers(org.branch_manager))
    assert res.status_code == 404


@pytest.mark.integration
@pytest.mark.parametrize("action,body", [("approve", {}), ("reject", {"reason": "Blurry"})])
def test_cross_region_capa_verification_is_404(client, org, headers, make_audit, make_capa,
                                               action, body):
    foreign = make_capa(status="pending_verification", evidence=["evidence/a/b/c"],
                        audit=make_audit(entity_id=org.other_branch.id, status="submitted"))
    res = client.post(f"/api/v1/verification/capas/{foreign.id}/{action}",
                      json=body, headers=headers(org.regional_manager))
    assert res.status_code == 404
    assert _db.session.get(CAPA, foreign.id).status == "pending_verification"

    res = client.post(f"/api/v1/verification/capas/{foreign.id}/{action}",
                      json=body, headers=headers(org.other_regional))
    assert res.status_code == 200


@pytest.mark.integration
@pytest.mark.parametrize("action,body", [("approve", {}), ("flag", {"reason": "Incomplete"})])
def test_cross_region_audit_verification_is_404(client, org, headers, make_audit,
                                                action, body):
    foreign = make_audit(entity_id=org.other_branch.id, status="pending_verification")
    res = client.post(f"/api/v1/verification/audits/{foreign.id}/{action}",
                      json=body, headers=headers(org.regional_manager))
    assert res.status_code == 404
    assert _db.session.get(Audit, foreign.id).status == "pending_verification"


@pytest.mark.integration
def test_health_probe_needs_no_caller(client):
    res = client.get("/api/v1/health/ready")
    assert res.status_code == 200
    assert res.get_json()["status"] == "ok"


@pytest.mark.integration
def test_liveness_reports_database(client):
    res = client.get("/api/v1/health/live")
    assert res.status_code == 200
    assert res.get_json()["checks"]["database"]["status"] == "ok"


# ═════════════════════════════════════════════════════════════════════════════
# 2. PLANS & AUDITS
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.integration
def test_plan_create_and_activate(client, org, headers, template):
    res = client.post("/api/v1/audit-plans", json={
        "name": "Weekly walk-through",
        "template_id": template.id,
        "entity_type": "branch",
        "recurrence_pattern": {"type": "recurring", "frequency": "weekly",
                               "days_of_week": [1, 4]},
        "scope": {"type": "specific", "entity_ids": [org.branch.id]},
        "assignment_strategy": "auto_round_robin",
    }, headers=headers(org.audit_manager))
    assert res.status_code == 201
    plan = res.get_json()
    assert plan["status"] == "draft"

    res = client.post(f"/api/v1/audit-plans/{plan['id']}/activate",
                      headers=headers(org.audit_manager))
    assert res.status_code == 200
    body = res.get_json()
    assert body["plan"]["status"] == "active"
    assert body["created"] > 0
    assert {a.entity_id for a in Audit.query.filter_by(plan_id=plan["id"])} == {org.branch.id}

    res = client.get(f"/api/v1/audit-plans/{plan['id']}", headers=headers(org.auditor))
    assert res.get_json()["next_audit_date"] is not None


@pytest.mark.integration
def test_plan_validation_error_is_422(client, org, headers, template):
    res = client.post("/api/v1/audit-plans", json={"template_id": template.id},
                      headers=headers(org.audit_manager))
    assert res.status_code == 422
    assert "name" in res.get_json()["details"]


@pytest.mark.integration
def test_create_audit_missing_fields_is_400(client, org, headers):
    res = client.post("/api/v1/audits", json={"entity_type": "branch"},
                      headers=headers(org.audit_manager))
    assert res.status_code == 400
    assert set(res.get_json()["details"]) == {"entity_id", "template_id", "scheduled_date"}


@pytest.mark.integration
def test_auditor_lists_only_own_audits(client, org, headers, make_audit):
    mine = make_audit()
    make_audit(auditor_id=org.second_auditor.id)
    res = client.get("/api/v1/audits", headers=headers(org.auditor))
    assert [a["id"] for a in res.get_json()["items"]] == [mine.id]


# ═════════════════════════════════════════════════════════════════════════════
# 3. END-TO-END FLOW
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.integration
def test_audit_to_closed_capa_flow(client, org, headers, make_audit):
    audit = make_audit()
    auditor, manager, verifier = (headers(org.auditor), headers(org.branch_manager),
                                  headers(org.regional_manager))

    assert client.post(f"/api/v1/audits/{audit.id}/start", headers=auditor).status_code == 200
    res = client.post(f"/api/v1/audits/{audit.id}/responses",
                      json={"responses": RESPONSES, "submit": True}, headers=auditor)
    assert res.status_code == 200
    capa_id = res.get_json()["capas"][0]["id"]

    # gate: no evidence yet
    res = client.post(f"/api/v1/capas/{capa_id}/submit", headers=manager)
    assert res.status_code == 422

    res = client.post(f"/api/v1/capas/{capa_id}/evidence",
                      json={"reference": "evidence/x/y/sign.jpg"}, headers=manager)
    assert res.status_code == 201
    assert client.post(f"/api/v1/capas/{capa_id}/submit", headers=manager).status_code == 200

    res = client.post(f"/api/v1/verification/capas/{capa_id}/reject",
                      json={"reason": ""}, headers=verifier)
    assert res.status_code == 400

    res = client.post(f"/api/v1/verification/capas/{capa_id}/approve", headers=verifier)
    assert res.status_code == 200
    assert res.get_json()["status"] == "closed"

    res = client.post(f"/api/v1/verification/audits/{audit.id}/approve", headers=verifier)
    assert res.status_code == 200
    assert res.get_json()["status"] == "approved"

    res = client.get(f"/api/v1/capas/{capa_id}/activity", headers=manager)
    actions = [a["action"] for a in res.get_json()["items"]]
    assert actions[0] == "created"
    assert actions[-1] == "audit_finalized"

    res = client.get(f"/api/v1/health-scores/branch/{org.branch.id}", headers=manager)
    assert res.status_code == 200
    assert res.get_json()["label"]


@pytest.mark.integration
def test_sub_task_flow_for_staff(client, org, headers, make_capa):
    capa = make_capa()
    res = client.post(f"/api/v1/capas/{capa.id}/sub-tasks",
                      json={"assigned_to_user_id": org.staff.id, "description": "Clean vent"},
                      headers=headers(org.branch_manager))
    assert res.status_code == 201
    sid = res.get_json()["id"]

    staff = headers(org.staff)
    res = client.patch(f"/api/v1/capas/{capa.id}/sub-tasks/{sid}",
                       json={"status": "in_progress"}, headers=staff)
    assert res.status_code == 200
    res = client.post(f"/api/v1/capas/{capa.id}/sub-tasks/{sid}/evidence",
                      json={"reference": "evidence/x/y/vent.jpg"}, headers=staff)
    assert res.status_code == 201
    res = client.patch(f"/api/v1/capas/{capa.id}/sub-tasks/{sid}",
                       json={"status": "completed"}, headers=staff)
    assert res.get_json()["completed_at"] is not None

    # staff may work sub-tasks but not submit the CAPA
    assert client.post(f"/api/v1/capas/{capa.id}/submit", headers=staff).status_code == 403


# ═════════════════════════════════════════════════════════════════════════════
# 4. QUEUE, SCORES, SWEEPS, NOTIFICATIONS
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.integration
def test_verification_queue_is_scoped(client, org, headers, make_audit):
    make_audit(status="pending_verification")
    make_audit(status="pending_verification", entity_id=org.other_branch.id)
    res = client.get("/api/v1/verification/queue", headers=headers(org.regional_manager))
    assert res.status_code == 200
    assert [q["entity_id"] for q in res.get_json()["items"]] == [org.branch.id]


@pytest.mark.integration
def test_health_score_read_and_recalculate(client, org, headers):
    hdrs = headers(org.regional_manager)
    assert client.get(f"/api/v1/health-scores/branch/{org.branch.id}",
                      headers=hdrs).status_code == 404

    res = client.post(f"/api/v1/health-scores/branch/{org.branch.id}/recalculate", headers=hdrs)
    assert res.status_code == 200
    assert res.get_json()["score"] == 60.0

    res = client.post("/api/v1/health-scores/warehouse/1/recalculate", headers=hdrs)
    assert res.status_code == 422


@pytest.mark.integration
def test_sweeps_need_sweep_permission(client, org, headers, make_capa):
    make_capa(priority="low", status="pending_verification", evidence=["evidence/a/b/c"])

    assert client.post("/api/v1/sweeps/escalation",
                       headers=headers(org.regional_manager)).status_code == 403
    res = client.post("/api/v1/sweeps/auto-approval", headers=headers(org.audit_manager))
    assert res.status_code == 200
    assert res.get_json()["auto_approved"] == 1
    assert CAPA.query.one().status == "closed"


@pytest.mark.integration
def test_scheduler_jobs_endpoints(client, org, headers):
    hdrs = headers(org.admin)
    res = client.get("/api/v1/scheduler/jobs", headers=hdrs)
    assert res.get_json()["total"] == 4

    res = client.post("/api/v1/scheduler/jobs/capa_escalation_sweep/trigger", headers=hdrs)
    assert res.get_json()["status"] == "success"
    assert client.post("/api/v1/scheduler/jobs/nope/trigger", headers=hdrs).status_code == 404

    res = client.patch("/api/v1/scheduler/jobs/health_score_batch/toggle",
                       json={"enabled": False}, headers=hdrs)
    assert res.get_json()["is_enabled"] is False
    assert client.patch("/api/v1/scheduler/jobs/health_score_batch/toggle", json={},
                        headers=hdrs).status_code == 400


@pytest.mark.integration
def test_notifications_for_caller(client, org, headers, make_capa):
    make_capa(status="pending_verification", evidence=["evidence/a/b/c"])
    capa = CAPA.query.one()
    verifier = headers(org.regional_manager)
    client.post(f"/api/v1/verification/capas/{capa.id}/reject",
                json={"reason": "Blurry"}, headers=verifier)

    manager = headers(org.branch_manager)
    res = client.get("/api/v1/notifications", headers=manager)
    body = res.get_json()
    assert body["unread_count"] == 1
    note_id = body["items"][0]["id"]

    assert client.post(f"/api/v1/notifications/{note_id}/read",
                       headers=verifier).status_code == 404
    res = client.post(f"/api/v1/notifications/{note_id}/read", headers=manager)
    assert res.get_json()["is_read"] is True
