"""
CAPA State Machine (with embedded sub-tasks).

    open → in_progress → pending_verification → closed | rejected
    open | in_progress → escalated               (escalation sweep only)
    escalated → in_progress | pending_verification
    rejected → pending_verification              (rework resubmission)

Entering ``pending_verification`` (first submission or resubmission) is
gated on:
    (a) every sub-task ``completed`` (when any exist)
    (b) at least one evidence item across the CAPA and its sub-tasks

Sub-tasks: pending → in_progress → completed. ``completed_at`` is set once.
A sub-task can be deleted only while ``pending``. The ``sub_tasks`` list is
replaced as a whole on every write.

Every mutating operation reads the CAPA under a row lock and re-checks its
status guard before writing.
"""

import functools
import logging
import uuid

from compliance.core.exceptions import NotFoundError, ValidationError
from compliance.models import db
from compliance.models.finding import (
    CAPA,
    CAPA_CLOSED_STATUSES,
    validate_capa_transition,
    validate_subtask_transition,
)
from compliance.services import directory
from compliance.services.activity import activities_for, log_activity
from compliance.services.notification import NotificationService
from compliance.utils.helpers import utcnow

logger = logging.getLogger(__name__)

SUBTASKS_INCOMPLETE = "All sub-tasks must be completed first."
EVIDENCE_MISSING = "Upload at least one piece of evidence before submitting."


# ═════════════════════════════════════════════════════════════════════════════
# Lookups
# ═════════════════════════════════════════════════════════════════════════════


def get_capa(capa_id):
    capa = db.session.get(CAPA, capa_id)
    if not capa:
        raise NotFoundError(resource="CAPA", resource_id=capa_id)
    return capa


def lock_capa(capa_id):
    """Load a CAPA with ``SELECT ... FOR UPDATE`` (a no-op on SQLite)."""
    capa = CAPA.query.filter_by(id=capa_id).with_for_update().populate_existing().first()
    if not capa:
        raise NotFoundError(resource="CAPA", resource_id=capa_id)
    return capa


def list_capas(scope=None, *, status=None, priority=None, entity_type=None,
               audit_id=None, assigned_to=None):
    q = CAPA.query
    if scope is not None:
        q = scope.filter_capas(q)
    if status:
        q = q.filter(CAPA.status == status)
    if priority:
        q = q.filter(CAPA.priority == priority)
    if entity_type:
        q = q.filter(CAPA.entity_type == entity_type)
    if audit_id:
        q = q.filter(CAPA.audit_id == audit_id)
    if assigned_to:
        q = q.filter(CAPA.assigned_to == assigned_to)
    return q.order_by(CAPA.due_date.asc(), CAPA.id.asc())


def get_activity(capa_id):
    get_capa(capa_id)
    return activities_for(capa_id)


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════


def move_capa(capa, new_status):
    if not validate_capa_transition(capa.status, new_status):
        raise ValidationError(
            f"Cannot move CAPA {capa.code} from {capa.status} to {new_status}",
            details={"status": capa.status, "target": new_status},
        )
    old = capa.status
    capa.status = new_status
    logger.info("CAPA %s: %s → %s", capa.code, old, new_status, extra={"capa_id": capa.id})
    return old


def _ensure_editable(capa):
    if capa.status in CAPA_CLOSED_STATUSES:
        raise ValidationError(f"CAPA {capa.code} is {capa.status} and can no longer be edited")


def check_submission_gate(capa):
    """Raise ValidationError with the user-facing reason if the gate is closed."""
    sub_tasks = capa.sub_tasks or []
    if sub_tasks and any(t.get("status") != "completed" for t in sub_tasks):
        raise ValidationError(SUBTASKS_INCOMPLETE)
    if capa.evidence_count < 1:
        raise ValidationError(EVIDENCE_MISSING)


def rollback_on_error(fn):
    """Roll back the session when a guard or lookup fails mid-operation."""
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (ValidationError, NotFoundError):
            db.session.rollback()
            raise
    return wrapper


@rollback_on_error
def start_capa(capa_id, user_id, *, now=None):
    now = now or utcnow()
    capa = lock_capa(capa_id)
    move_capa(capa, "in_progress")
    if capa.finding and capa.finding.status == "open":
        capa.finding.status = "in_progress"
    log_activity(capa, user_id, "started", "Work started", now=now)
    db.session.commit()
    return capa


def _notify_verifiers(capa, resubmitted):
    verb = "resubmitted" if resubmitted else "submitted"
    recipients = [u.id for u in directory.verifiers_for_entity(capa.entity_type, capa.entity_id)]
    NotificationService.notify_users(
        recipients,
        type="capa_submitted",
        title=f"CAPA {capa.code} {verb} for verification",
        message=capa.description[:200] if capa.description else "",
        link_to=f"/verification/capa/{capa.id}",
    )


@rollback_on_error
def submit_for_verification(capa_id, user_id, *, now=None):
    """Move a CAPA to ``pending_verification`` if the gate allows it.

    From ``rejected`` this is a rework resubmission and is logged as
    ``resubmitted``; otherwise as ``submitted``.
    """
    now = now or utcnow()
    capa = lock_capa(capa_id)
    if not validate_capa_transition(capa.status, "pending_verification"):
        raise ValidationError(
            f"Cannot submit CAPA {capa.code} for verification from {capa.status}",
        )
    check_submission_gate(capa)
    resubmitted = capa.status == "rejected"
    move_capa(capa, "pending_verification")
    if capa.finding and capa.finding.status == "open":
        capa.finding.status = "in_progress"
    log_activity(
        capa, user_id,
        "resubmitted" if resubmitted else "submitted",
        f"Submitted for verification with {capa.evidence_count} evidence item(s)",
        now=now,
    )
    db.session.commit()
    _notify_verifiers(capa, resubmitted)
    return capa


@rollback_on_error
def resubmit_capa(capa_id, user_id, *, now=None):
    """Rework resubmission of a rejected CAPA."""
    capa = get_capa(capa_id)
    if capa.status != "rejected":
        raise ValidationError(f"Only rejected CAPAs can be resubmitted (CAPA is {capa.status})")
    return submit_for_verification(capa_id, user_id, now=now)


# ═════════════════════════════════════════════════════════════════════════════
# Evidence & notes
# ═════════════════════════════════════════════════════════════════════════════


@rollback_on_error
def add_evidence(capa_id, user_id, reference, *, now=None):
    if not reference:
        raise ValidationError("Evidence reference is required")
    capa = lock_capa(capa_id)
    _ensure_editable(capa)
    capa.evidence_urls = list(capa.evidence_urls or []) + [reference]
    log_activity(capa, user_id, "evidence_added", reference, now=now)
    db.session.commit()
    return capa


@rollback_on_error
def remove_evidence(capa_id, user_id, reference, *, now=None):
    capa = lock_capa(capa_id)
    _ensure_editable(capa)
    if capa.status == "pending_verification":
        raise ValidationError("Evidence cannot be removed while the CAPA awaits verification.")
    current = list(capa.evidence_urls or [])
    if reference not in current:
        raise NotFoundError(resource="Evidence", resource_id=reference)
    current.remove(reference)
    capa.evidence_urls = current
    log_activity(capa, user_id, "evidence_removed", reference, now=now)
    db.session.commit()
    return capa


@rollback_on_error
def update_notes(capa_id, user_id, notes, *, now=None):
    capa = lock_capa(capa_id)
    _ensure_editable(capa)
    capa.notes = notes or ""
    log_activity(capa, user_id, "notes_updated", "", now=now)
    db.session.commit()
    return capa


# ═════════════════════════════════════════════════════════════════════════════
# Sub-tasks
# ═════════════════════════════════════════════════════════════════════════════


def _find_sub_task(capa, sub_task_id):
    for task in capa.sub_tasks or []:
        if task.get("id") == sub_task_id:
            return task
    raise NotFoundError(resource="SubTask", resource_id=sub_task_id)


def _replace_sub_task(capa, updated):
    capa.sub_tasks = [
        updated if t.get("id") == updated["id"] else t
        for t in (capa.sub_tasks or [])
    ]


@rollback_on_error
def add_sub_task(capa_id, user_id, assigned_to_user_id, description, *, now=None):
    now = now or utcnow()
    if not (description or "").strip():
        raise ValidationError("Sub-task description is required")
    capa = lock_capa(capa_id)
    _ensure_editable(capa)
    if capa.status == "pending_verification":
        raise ValidationError("Sub-tasks cannot be added while the CAPA awaits verification.")
    directory.get_user(assigned_to_user_id)
    task = {
        "id": uuid.uuid4().hex,
        "assigned_to_user_id": assigned_to_user_id,
        "description": description.strip(),
        "status": "pending",
        "evidence_urls": [],
        "completed_at": None,
        "created_at": now.isoformat(),
    }
    capa.sub_tasks = list(capa.sub_tasks or []) + [task]
    log_activity(capa, user_id, "subtask_added", task["description"], now=now)
    db.session.commit()

    NotificationService.notify(
        assigned_to_user_id,
        type="subtask_assigned",
        title=f"Sub-task assigned on {capa.code}",
        message=task["description"],
        link_to=f"/capa/{capa.id}",
    )
    return task


@rollback_on_error
def update_sub_task_status(capa_id, sub_task_id, user_id, new_status, *, now=None):
    now = now or utcnow()
    capa = lock_capa(capa_id)
    _ensure_editable(capa)
    task = dict(_find_sub_task(capa, sub_task_id))
    if not validate_subtask_transition(task.get("status"), new_status):
        raise ValidationError(
            f"Cannot move sub-task from {task.get('status')} to {new_status}",
        )
    task["status"] = new_status
    if new_status == "completed" and not task.get("completed_at"):
        task["completed_at"] = now.isoformat()
    _replace_sub_task(capa, task)
    log_activity(capa, user_id, f"subtask_{new_status}", task["description"], now=now)
    db.session.commit()
    return task


@rollback_on_error
def add_sub_task_evidence(capa_id, sub_task_id, user_id, reference, *, now=None):
    if not reference:
        raise ValidationError("Evidence reference is required")
    capa = lock_capa(capa_id)
    _ensure_editable(capa)
    task = dict(_find_sub_task(capa, sub_task_id))
    task["evidence_urls"] = list(task.get("evidence_urls") or []) + [reference]
    _replace_sub_task(capa, task)
    log_activity(capa, user_id, "subtask_evidence_added", reference, now=now)
    db.session.commit()
    return task


@rollback_on_error
def delete_sub_task(capa_id, sub_task_id, user_id, *, now=None):
    capa = lock_capa(capa_id)
    _ensure_editable(capa)
    task = _find_sub_task(capa, sub_task_id)
    if task.get("status") != "pending":
        raise ValidationError("Only pending sub-tasks can be deleted.")
    capa.sub_tasks = [t for t in capa.sub_tasks if t.get("id") != sub_task_id]
    log_activity(capa, user_id, "subtask_deleted", task.get("description", ""), now=now)
    db.session.commit()
