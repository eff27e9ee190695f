"""
Auto-Approval Sweep.

Closes low-risk CAPAs awaiting verification without a human verifier, and
promotes audits whose CAPAs are all resolved enough to ``pending_verification``.

    CAPA pending_verification
      AND priority ∈ AUTO_APPROVE_PRIORITIES (low, medium)
      AND evidence_count ≥ 1
        → closed, ``system`` activity "auto_approved", finding resolved

    Audit touched by an auto-closed CAPA
      AND status == submitted
      AND every CAPA ∈ {closed, approved, pending_verification}
        → pending_verification

High and critical CAPAs are never closed here, whatever their evidence.
"""

import logging

from flask import current_app

from compliance.models import db
from compliance.models.audit import Audit
from compliance.models.finding import CAPA
from compliance.services.activity import log_activity
from compliance.services.capa_service import lock_capa
from compliance.utils.helpers import utcnow

logger = logging.getLogger(__name__)

DEFAULT_AUTO_APPROVE_PRIORITIES = ("low", "medium")
READY_CAPA_STATUSES = {"closed", "approved", "pending_verification"}


def auto_approve_priorities():
    priorities = current_app.config.get("AUTO_APPROVE_PRIORITIES", DEFAULT_AUTO_APPROVE_PRIORITIES)
    # high / critical always need a human verifier
    return [p for p in priorities if p not in ("high", "critical")]


def _auto_close_one(capa_id, priorities, now):
    """Close one CAPA if it still qualifies. Returns its audit_id or None."""
    capa = lock_capa(capa_id)
    if (capa.status != "pending_verification"
            or capa.priority not in priorities
            or capa.evidence_count < 1):
        db.session.rollback()
        return None

    capa.status = "closed"
    capa.closed_at = now
    log_activity(capa, None, "auto_approved",
                 f"Auto-approved ({capa.priority} priority, "
                 f"{capa.evidence_count} evidence item(s))", now=now)
    if capa.finding and capa.finding.status != "resolved":
        capa.finding.status = "resolved"
        capa.finding.resolved_at = now
    db.session.commit()
    logger.info("CAPA %s auto-approved", capa.code, extra={"capa_id": capa.id})
    return capa.audit_id


def audit_ready_for_verification(audit):
    """True when no CAPA of ``audit`` is still open, in progress or reworked."""
    statuses = {row[0] for row in db.session.query(CAPA.status).filter(CAPA.audit_id == audit.id)}
    return statuses <= READY_CAPA_STATUSES


def _promote_audit(audit_id):
    audit = (
        Audit.query.filter_by(id=audit_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if audit is None or audit.status != "submitted" or not audit_ready_for_verification(audit):
        db.session.rollback()
        return False
    audit.status = "pending_verification"
    db.session.commit()
    logger.info("Audit %s: submitted → pending_verification (all CAPAs resolved)",
                audit.code, extra={"audit_id": audit.id})
    return True


def run_auto_approval_sweep(*, now=None):
    """Auto-close eligible CAPAs, then advance the audits they belong to.

    Returns ``{"checked", "auto_approved", "audits_ready", "failed"}``.
    """
    now = now or utcnow()
    priorities = auto_approve_priorities()
    stats = {"checked": 0, "auto_approved": 0, "audits_ready": 0, "failed": 0}
    if not priorities:
        return stats

    candidate_ids = [
        row[0] for row in db.session.query(CAPA.id)
        .filter(CAPA.status == "pending_verification", CAPA.priority.in_(priorities))
        .order_by(CAPA.id.asc())
    ]
    touched_audits = []
    for capa_id in candidate_ids:
        stats["checked"] += 1
        try:
            audit_id = _auto_close_one(capa_id, priorities, now)
        except Exception:
            db.session.rollback()
            stats["failed"] += 1
            logger.exception("Auto-approval failed for CAPA", extra={"capa_id": capa_id})
            continue
        if audit_id is not None:
            stats["auto_approved"] += 1
            if audit_id not in touched_audits:
                touched_audits.append(audit_id)

    for audit_id in touched_audits:
        try:
            if _promote_audit(audit_id):
                stats["audits_ready"] += 1
        except Exception:
            db.session.rollback()
            stats["failed"] += 1
            logger.exception("Audit readiness check failed", extra={"audit_id": audit_id})

    logger.info("Auto-approval sweep: %s", stats)
    return stats
