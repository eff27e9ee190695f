"""
Finding & CAPA generation.

Runs once per audit, when its checklist is submitted. Every failing item
(pass_fail "fail", rating ≤ 2, checklist with an unchecked entry) and every
item carrying a manual note gets exactly one Finding and, in the same
transaction, exactly one CAPA:

    severity   critical item → critical; section weight ≥ 25 → high; else medium
    priority   = severity
    due_date   = creation date + 3 / 7 / 14 / 30 days (critical / high / medium / low)
    assignee   branch / bck manager, or the first active audit manager for suppliers
"""

import logging
from datetime import timedelta

from compliance.core.exceptions import InvariantViolation
from compliance.models import db
from compliance.models.audit import AuditResult
from compliance.models.finding import CAPA, SEVERITY_DUE_DAYS, Finding
from compliance.services import checklist_scoring, directory
from compliance.services.activity import log_activity
from compliance.services.codes import next_capa_code, next_finding_code
from compliance.services.notification import NotificationService
from compliance.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def capa_due_date(severity, created_at):
    """Due date for a CAPA created at ``created_at`` with finding ``severity``."""
    return (created_at + timedelta(days=SEVERITY_DUE_DAYS[severity])).date()


def _needs_finding(item, result):
    if result is None:
        return False
    if checklist_scoring.is_failed_for_finding(item, result):
        return True
    return bool((result.notes or "").strip())


def _finding_description(item, result):
    note = (result.notes or "").strip()
    return note or f"Non-conformance: {item.get('text', item['id'])}"


def create_capa_for_finding(finding, audit, *, now=None):
    """Create the single CAPA for ``finding``. Adds to the session, no commit."""
    now = now or utcnow()
    if CAPA.query.filter_by(finding_id=finding.id).count():
        raise InvariantViolation(f"Finding {finding.code} already has a CAPA")

    capa = CAPA(
        code=next_capa_code(now),
        finding_id=finding.id,
        audit_id=audit.id,
        entity_type=audit.entity_type,
        entity_id=audit.entity_id,
        description=finding.description,
        assigned_to=directory.responsible_user_id(audit.entity_type, audit.entity_id),
        due_date=capa_due_date(finding.severity, now),
        status="open",
        priority=finding.severity,
        evidence_urls=[],
        sub_tasks=[],
        created_at=now,
    )
    db.session.add(capa)
    db.session.flush()
    log_activity(capa, None, "created", f"Created from finding {finding.code}", now=now)
    return capa


def generate_for_audit(audit, template, *, now=None):
    """Create findings and CAPAs for a submitted audit. No commit.

    Returns the list of created CAPAs.
    """
    now = now or utcnow()
    if audit.findings.count():
        raise InvariantViolation(f"Findings already generated for audit {audit.code}")

    results = {r.item_id: r for r in AuditResult.query.filter_by(audit_id=audit.id)}
    capas = []
    for section, item in template.iter_items():
        result = results.get(item["id"])
        if not _needs_finding(item, result):
            continue
        finding = Finding(
            code=next_finding_code(now),
            audit_id=audit.id,
            item_id=item["id"],
            section_name=section.get("name", ""),
            category=item.get("category") or section.get("name", ""),
            severity=checklist_scoring.determine_severity(item, section),
            description=_finding_description(item, result),
            evidence_urls=list(result.evidence_urls or []),
            status="open",
            created_at=now,
        )
        db.session.add(finding)
        db.session.flush()
        capas.append(create_capa_for_finding(finding, audit, now=now))

    logger.info("Generated %d findings/CAPAs for %s", len(capas), audit.code,
                extra={"audit_id": audit.id})
    return capas


def notify_assignees(capas):
    """Tell each assignee about their new CAPAs. Best effort."""
    for capa in capas:
        if capa.assigned_to:
            NotificationService.notify(
                capa.assigned_to,
                type="capa_assigned",
                title=f"New CAPA {capa.code}",
                message=f"{capa.priority.title()} priority CAPA due {capa.due_date.isoformat()}.",
                link_to=f"/capa/{capa.id}",
            )
