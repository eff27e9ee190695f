"""
Audit State Machine.

    scheduled → in_progress → submitted → pending_verification → approved | rejected
    scheduled | in_progress → overdue        (time based)
    overdue → in_progress                    (late start)
    any pre-approval state → cancelled       (explicit, terminal)

Submitting the checklist generates findings and CAPAs; an audit whose
submission produced no CAPAs goes straight to ``pending_verification``.
Approval and flagging live in ``verification``.
"""

import logging

from compliance.core.exceptions import NotFoundError, ValidationError
from compliance.models import db
from compliance.models.audit import ENTITY_TYPES, Audit, AuditResult, validate_audit_transition
from compliance.services import capa_generation, checklist_scoring, directory
from compliance.services.codes import next_audit_code
from compliance.services.notification import NotificationService
from compliance.services.template_catalog import get_active_template, get_template, item_index
from compliance.utils.helpers import parse_date, utcnow

logger = logging.getLogger(__name__)


def get_audit(audit_id):
    audit = db.session.get(Audit, audit_id)
    if not audit:
        raise NotFoundError(resource="Audit", resource_id=audit_id)
    return audit


def list_audits(scope=None, *, status=None, entity_type=None, entity_id=None, auditor_id=None):
    """Audits visible to ``scope`` (a RoleScope), newest scheduled first."""
    q = Audit.query
    if scope is not None:
        q = scope.filter_audits(q)
    if status:
        q = q.filter(Audit.status == status)
    if entity_type:
        q = q.filter(Audit.entity_type == entity_type)
    if entity_id:
        q = q.filter(Audit.entity_id == entity_id)
    if auditor_id:
        q = q.filter(Audit.auditor_id == auditor_id)
    return q.order_by(Audit.scheduled_date.desc(), Audit.id.desc())


def _transition(audit, new_status):
    if not validate_audit_transition(audit.status, new_status):
        raise ValidationError(
            f"Cannot move audit {audit.code} from {audit.status} to {new_status}",
            details={"status": audit.status, "target": new_status},
        )
    old = audit.status
    audit.status = new_status
    logger.info("Audit %s: %s → %s", audit.code, old, new_status, extra={"audit_id": audit.id})


def create_audit(data, created_by=None, *, now=None):
    """Create an ad-hoc audit outside any plan."""
    now = now or utcnow()
    entity_type = data.get("entity_type")
    if entity_type not in ENTITY_TYPES:
        raise ValidationError("Invalid entity type",
                              details={"entity_type": f"Must be one of {sorted(ENTITY_TYPES)}"})
    entity = directory.get_entity(entity_type, data.get("entity_id"))
    template = get_active_template(data.get("template_id"), entity_type)
    scheduled_date = parse_date(data.get("scheduled_date"))
    if not scheduled_date:
        raise ValidationError("scheduled_date is required",
                              details={"scheduled_date": "Use YYYY-MM-DD"})
    auditor_id = data.get("auditor_id")
    if auditor_id is not None:
        auditor = directory.get_user(auditor_id)
        if auditor.role != "auditor" or auditor.status != "active":
            raise ValidationError("Assigned user is not an active auditor",
                                  details={"auditor_id": auditor_id})

    audit = Audit(
        code=next_audit_code(now),
        template_id=template.id,
        entity_type=entity_type,
        entity_id=entity.id,
        auditor_id=auditor_id,
        scheduled_date=scheduled_date,
        status="scheduled",
        notes=data.get("notes", ""),
        created_by=created_by,
    )
    db.session.add(audit)
    db.session.commit()
    logger.info("Audit created: %s", audit.code, extra={"audit_id": audit.id})
    if auditor_id:
        NotificationService.notify(
            auditor_id,
            type="audit_assigned",
            title=f"Audit {audit.code} assigned",
            message=f"{entity.name} on {scheduled_date.isoformat()}.",
            link_to=f"/audits/{audit.id}",
        )
    return audit


def start_audit(audit_id, *, now=None):
    now = now or utcnow()
    audit = get_audit(audit_id)
    _transition(audit, "in_progress")
    audit.started_at = now
    db.session.commit()
    return audit


def cancel_audit(audit_id, reason=""):
    audit = get_audit(audit_id)
    _transition(audit, "cancelled")
    if reason:
        audit.notes = f"{audit.notes}\nCancelled: {reason}".strip()
    db.session.commit()
    return audit


def _upsert_results(audit, template, responses):
    items = item_index(template)
    existing = {r.item_id: r for r in AuditResult.query.filter_by(audit_id=audit.id)}
    unknown = [r.get("item_id") for r in responses if r.get("item_id") not in items]
    if unknown:
        raise ValidationError("Responses reference unknown checklist items",
                              details={"item_ids": unknown})
    invalid = {}
    for entry in responses:
        error = checklist_scoring.response_error(items[entry["item_id"]][1],
                                                 entry.get("response"))
        if error:
            invalid[entry["item_id"]] = error
    if invalid:
        raise ValidationError("Invalid checklist responses", details=invalid)

    for entry in responses:
        item_id = entry["item_id"]
        section, item = items[item_id]
        result = existing.get(item_id)
        if result is None:
            result = AuditResult(audit_id=audit.id, section_id=section.get("id", ""),
                                 item_id=item_id, evidence_urls=[])
            db.session.add(result)
            existing[item_id] = result
        if "response" in entry:
            result.response = entry["response"]
        if "evidence_urls" in entry:
            result.evidence_urls = list(entry["evidence_urls"] or [])
        if "notes" in entry:
            result.notes = entry["notes"] or ""
        result.points_earned = checklist_scoring.item_points(item, result)
    return existing


def record_checklist_responses(audit_id, responses, *, submit=False, now=None):
    """Store checklist responses for an in-progress audit.

    ``responses`` is a list of ``{"item_id", "response", "evidence_urls", "notes"}``.
    With ``submit=True`` the audit is submitted in the same call.
    """
    audit = get_audit(audit_id)
    if audit.status != "in_progress":
        raise ValidationError(f"Responses can only be recorded while in progress "
                              f"(audit is {audit.status})")
    template = get_template(audit.template_id)
    try:
        _upsert_results(audit, template, responses or [])
    except ValidationError:
        db.session.rollback()
        raise
    db.session.commit()
    if submit:
        return submit_audit(audit_id, now=now)
    return {"audit": audit.to_dict(), "capas": []}


def submit_audit(audit_id, *, now=None):
    """Finalize the checklist: validate, generate findings/CAPAs, advance status."""
    now = now or utcnow()
    audit = get_audit(audit_id)
    if not validate_audit_transition(audit.status, "submitted"):
        raise ValidationError(f"Cannot submit audit {audit.code} in status {audit.status}")
    template = get_template(audit.template_id)
    results = {r.item_id: r for r in AuditResult.query.filter_by(audit_id=audit.id)}
    checklist_scoring.validate_submission(template, results)

    try:
        _transition(audit, "submitted")
        audit.completed_at = now
        capas = capa_generation.generate_for_audit(audit, template, now=now)
        if not capas:
            _transition(audit, "pending_verification")
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    capa_generation.notify_assignees(capas)
    return {"audit": audit.to_dict(), "capas": [c.to_dict() for c in capas]}


def mark_overdue_audits(*, today=None):
    """Move every ``scheduled`` audit whose date has passed to ``overdue``.

    Returns ``{"checked", "marked_overdue"}``.
    """
    today = today or utcnow().date()
    stats = {"checked": 0, "marked_overdue": 0}
    ids = [
        row[0] for row in db.session.query(Audit.id)
        .filter(Audit.status == "scheduled", Audit.scheduled_date < today)
        .order_by(Audit.id)
    ]
    for audit_id in ids:
        stats["checked"] += 1
        try:
            audit = (
                Audit.query.filter_by(id=audit_id)
                .with_for_update()
                .populate_existing()
                .first()
            )
            # re-check under the row lock
            if audit is None or audit.status != "scheduled":
                db.session.rollback()
                continue
            _transition(audit, "overdue")
            db.session.commit()
            stats["marked_overdue"] += 1
        except Exception:
            db.session.rollback()
            logger.exception("Overdue sweep failed for audit", extra={"audit_id": audit_id})
    return stats


def audit_detail(audit_id):
    """Audit with its results, findings, CAPAs and a live score preview."""
    audit = get_audit(audit_id)
    template = get_template(audit.template_id)
    results = {r.item_id: r for r in audit.results}
    d = audit.to_dict()
    d["results"] = [r.to_dict() for r in results.values()]
    d["findings"] = [f.to_dict() for f in audit.findings]
    d["capas"] = [c.to_dict() for c in audit.capas]
    d["completion"] = checklist_scoring.completion_stats(template, results)
    d["score_preview"] = checklist_scoring.calculate_score(template, results)
    return d
