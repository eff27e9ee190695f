"""
Escalation Sweep.

Promotes overdue, unresolved CAPAs to ``escalated`` and notifies managers.

For every CAPA in {open, in_progress}:
    days_past_due = floor((now - due_date at 00:00 UTC) / 1 day)
    if days_past_due >= ESCALATION_THRESHOLD_DAYS (3):
        → escalated, ``system`` activity "auto_escalated", notify
          branch / bck: regional managers of the entity's region
          supplier:     every audit manager

The status guard is re-checked under the row lock, so re-running the sweep
(or overlapping runs) never escalates or notifies twice. One record's
failure is logged and the sweep carries on.

Usage:
    from compliance.services.escalation import run_escalation_sweep
    stats = run_escalation_sweep()
"""

from __future__ import annotations

import logging
from datetime import datetime

from flask import current_app

from compliance.models import db
from compliance.models.finding import CAPA, CAPA_ACTIVE_STATUSES
from compliance.services import directory
from compliance.services.activity import log_activity
from compliance.services.capa_service import lock_capa
from compliance.services.notification import NotificationService
from compliance.utils.helpers import start_of_day, utcnow

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_DAYS = 3


def days_past_due(due_date, now: datetime) -> int:
    """Whole days elapsed since the start of ``due_date`` (negative if not yet due)."""
    return (now - start_of_day(due_date)).days


def _escalation_recipients(capa) -> list[int]:
    return [u.id for u in directory.verifiers_for_entity(capa.entity_type, capa.entity_id)]


def _escalate_one(capa_id: int, now: datetime, threshold: int) -> tuple[bool, int]:
    """Escalate one CAPA if it still qualifies. Returns (escalated, notified)."""
    capa = lock_capa(capa_id)
    if capa.status not in CAPA_ACTIVE_STATUSES:
        db.session.rollback()
        return False, 0
    overdue = days_past_due(capa.due_date, now)
    if overdue < threshold:
        db.session.rollback()
        return False, 0

    old_status = capa.status
    capa.status = "escalated"
    log_activity(capa, None, "auto_escalated",
                 f"Auto-escalated: overdue by {overdue} days", now=now)
    db.session.commit()
    logger.info("CAPA %s escalated (%s → escalated, %d days overdue)",
                capa.code, old_status, overdue, extra={"capa_id": capa.id})

    entity_name = directory.entity_display_name(capa.entity_type, capa.entity_id)
    notified = NotificationService.notify_users(
        _escalation_recipients(capa),
        type="capa_escalated",
        title=f"CAPA {capa.code} escalated",
        message=f"{capa.priority.title()} priority CAPA at {entity_name} is overdue by "
                f"{overdue} days.",
        link_to=f"/capa/{capa.id}",
    )
    return True, notified


def run_escalation_sweep(*, now: datetime | None = None) -> dict:
    """Scan open / in-progress CAPAs and escalate overdue ones.

    Returns ``{"checked", "escalated", "notified", "failed"}``.
    """
    now = now or utcnow()
    threshold = current_app.config.get("ESCALATION_THRESHOLD_DAYS", DEFAULT_THRESHOLD_DAYS)
    stats = {"checked": 0, "escalated": 0, "notified": 0, "failed": 0}

    candidate_ids = [
        row[0] for row in db.session.query(CAPA.id)
        .filter(CAPA.status.in_(sorted(CAPA_ACTIVE_STATUSES)),
                CAPA.due_date < now.date())
        .order_by(CAPA.due_date.asc(), CAPA.id.asc())
    ]
    for capa_id in candidate_ids:
        stats["checked"] += 1
        try:
            escalated, notified = _escalate_one(capa_id, now, threshold)
        except Exception:
            db.session.rollback()
            stats["failed"] += 1
            logger.exception("Escalation failed for CAPA", extra={"capa_id": capa_id})
            continue
        if escalated:
            stats["escalated"] += 1
            stats["notified"] += notified

    logger.info("Escalation sweep: %s", stats)
    return stats
