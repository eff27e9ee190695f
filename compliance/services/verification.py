"""
Verification Authority.

Human-facing gate over CAPAs and audits:

    approve_capa    pending_verification → closed, finding resolved
    reject_capa     pending_verification → rejected (reason required), assignee notified
    approve_audit   submitted | pending_verification → approved when every CAPA is
                    closed / approved; findings resolved, audit scored, health
                    score recalculated
    flag_audit      submitted | pending_verification → rejected, audit managers notified

The verification queue runs the auto-approval sweep before it is read, so
audits that became ready through auto-closed CAPAs are listed.
"""

import logging

from compliance.core.exceptions import ValidationError
from compliance.models import db
from compliance.models.audit import Audit, AuditResult, validate_audit_transition
from compliance.models.finding import CAPA_CLOSED_STATUSES
from compliance.services import checklist_scoring, directory, health_score
from compliance.services.activity import log_activity
from compliance.services.audit_service import get_audit
from compliance.services.auto_approval import run_auto_approval_sweep
from compliance.services.capa_service import lock_capa, move_capa, rollback_on_error
from compliance.services.notification import NotificationService
from compliance.services.template_catalog import get_template
from compliance.utils.helpers import utcnow

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# CAPA verification
# ═════════════════════════════════════════════════════════════════════════════


def _resolve_finding(finding, now):
    if finding is not None and finding.status != "resolved":
        finding.status = "resolved"
        finding.resolved_at = now


@rollback_on_error
def approve_capa(capa_id, verifier_id, notes="", *, now=None):
    now = now or utcnow()
    capa = lock_capa(capa_id)
    move_capa(capa, "closed")
    capa.closed_at = now
    log_activity(capa, verifier_id, "approved", notes or "Verified and closed", now=now)
    _resolve_finding(capa.finding, now)
    db.session.commit()

    if capa.assigned_to:
        NotificationService.notify(
            capa.assigned_to,
            type="capa_approved",
            title=f"CAPA {capa.code} approved",
            message="Your corrective action has been verified and closed.",
            link_to=f"/capa/{capa.id}",
        )
    return capa


@rollback_on_error
def reject_capa(capa_id, verifier_id, reason, *, now=None):
    """Send a CAPA back for rework. ``reason`` is stored verbatim."""
    now = now or utcnow()
    if not reason or not reason.strip():
        raise ValidationError("A rejection reason is required.",
                              details={"reason": "Required"})
    capa = lock_capa(capa_id)
    move_capa(capa, "rejected")
    log_activity(capa, verifier_id, "rejected", reason, now=now)
    db.session.commit()

    if capa.assigned_to:
        NotificationService.notify(
            capa.assigned_to,
            type="capa_rejected",
            title=f"CAPA {capa.code} requires rework",
            message=reason,
            link_to=f"/capa/{capa.id}",
        )
    return capa


# ═════════════════════════════════════════════════════════════════════════════
# Audit verification
# ═════════════════════════════════════════════════════════════════════════════


def _lock_audit(audit_id):
    audit = Audit.query.filter_by(id=audit_id).with_for_update().populate_existing().first()
    if audit is None:
        get_audit(audit_id)
    return audit


def _finalize_recipient(audit):
    """Branch / BCK manager, or the first audit manager for suppliers."""
    return directory.responsible_user_id(audit.entity_type, audit.entity_id)


@rollback_on_error
def approve_audit(audit_id, verifier_id, *, now=None):
    """Finalize an audit whose CAPAs are all closed.

    Scores the audit, resolves its findings, logs ``audit_finalized`` on each
    CAPA, notifies the entity owner and recalculates the entity's health score.
    """
    now = now or utcnow()
    audit = _lock_audit(audit_id)
    if not validate_audit_transition(audit.status, "approved"):
        raise ValidationError(f"Cannot approve audit {audit.code} in status {audit.status}")

    capas = audit.capas.all()
    pending = [c.code for c in capas if c.status not in CAPA_CLOSED_STATUSES]
    if pending:
        raise ValidationError(
            f"CAPA pending: {len(pending)} CAPA(s) must be closed before the audit "
            f"can be approved.",
            details={"pending_capas": pending},
        )

    template = get_template(audit.template_id)
    results = {r.item_id: r for r in AuditResult.query.filter_by(audit_id=audit.id)}
    scored = checklist_scoring.calculate_score(template, results)

    audit.status = "approved"
    audit.score = scored["total_score"]
    audit.pass_fail = scored["pass_fail"]
    if audit.completed_at is None:
        audit.completed_at = now
    for finding in audit.findings:
        _resolve_finding(finding, now)
    for capa in capas:
        log_activity(capa, verifier_id, "audit_finalized",
                     f"Audit {audit.code} approved", now=now)
    db.session.commit()
    logger.info("Audit %s approved (score %.1f, %s)", audit.code, audit.score, audit.pass_fail,
                extra={"audit_id": audit.id})

    recipient = _finalize_recipient(audit)
    if recipient:
        NotificationService.notify(
            recipient,
            type="audit_finalized",
            title=f"Audit {audit.code} finalized",
            message=f"Final score {audit.score} ({audit.pass_fail}).",
            link_to=f"/audits/{audit.id}",
        )

    health_score.recalculate_health_score(audit.entity_type, audit.entity_id, now=now)
    return audit


@rollback_on_error
def flag_audit(audit_id, verifier_id, reason, *, now=None):
    """Send an audit back. CAPA state is left untouched."""
    if not reason or not reason.strip():
        raise ValidationError("A reason is required to flag an audit.",
                              details={"reason": "Required"})
    audit = _lock_audit(audit_id)
    if not validate_audit_transition(audit.status, "rejected"):
        raise ValidationError(f"Cannot flag audit {audit.code} in status {audit.status}")
    audit.status = "rejected"
    audit.notes = f"{audit.notes or ''}\nFlagged: {reason}".strip()
    db.session.commit()
    logger.info("Audit %s flagged by %s", audit.code, verifier_id, extra={"audit_id": audit.id})

    NotificationService.notify_users(
        [u.id for u in directory.get_users_by_role("audit_manager")],
        type="audit_flagged",
        title=f"Audit {audit.code} flagged",
        message=reason,
        link_to=f"/audits/{audit.id}",
    )
    return audit


# ═════════════════════════════════════════════════════════════════════════════
# Queue
# ═════════════════════════════════════════════════════════════════════════════


def get_verification_queue(scope=None, *, now=None):
    """Audits awaiting human verification, newest first.

    Runs the auto-approval sweep first so the queue reflects auto-closed CAPAs.
    """
    now = now or utcnow()
    run_auto_approval_sweep(now=now)

    q = Audit.query.filter(Audit.status == "pending_verification")
    if scope is not None:
        q = scope.filter_audits(q)
    audits = q.order_by(Audit.completed_at.desc(), Audit.id.desc()).all()

    queue = []
    for audit in audits:
        capas = audit.capas.all()
        d = audit.to_dict()
        d["entity_name"] = directory.entity_display_name(audit.entity_type, audit.entity_id)
        d["findings_count"] = audit.findings.count()
        d["capa_count"] = len(capas)
        d["capas_closed"] = sum(1 for c in capas if c.status in CAPA_CLOSED_STATUSES)
        d["capas_pending"] = sum(1 for c in capas if c.status == "pending_verification")
        d["is_overdue"] = any(
            c.status not in CAPA_CLOSED_STATUSES and c.due_date < now.date() for c in capas
        )
        queue.append(d)
    return queue
