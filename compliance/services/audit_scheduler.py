"""
Audit Scheduler: expands audit plans into concrete audits.

An active plan resolves to:
    scope      → entity ids (explicit list, or every active entity of the type)
    recurrence → ISO dates inside [today, today + horizon]
and produces one Audit per (date × entity), skipping pairs the plan already
generated. Auditors are assigned per the plan's strategy:

    assign_specific   the plan's fixed auditor
    auto_round_robin  active auditors ordered by (scheduled audit count, name),
                      computed once per run and advanced per assignment
    manual            left unassigned

Expansion fails fast with ValidationError when the plan yields no dates or
no entities; nothing is written in that case.
"""

import logging
from collections import defaultdict
from datetime import timedelta

from flask import current_app
from sqlalchemy import func

from compliance.core.exceptions import NotFoundError, ValidationError
from compliance.models import db
from compliance.models.audit import (
    ASSIGNMENT_STRATEGIES,
    ENTITY_TYPES,
    RECURRENCE_FREQUENCIES,
    RECURRENCE_TYPES,
    SCOPE_TYPES,
    Audit,
    AuditPlan,
    validate_plan_transition,
)
from compliance.models.directory import User
from compliance.services import directory
from compliance.services.codes import next_audit_code
from compliance.services.notification import NotificationService
from compliance.services.template_catalog import get_active_template
from compliance.utils.helpers import parse_date, utcnow

logger = logging.getLogger(__name__)

DEFAULT_HORIZON_DAYS = 30
PLAN_FIELDS = (
    "name", "description", "template_id", "entity_type", "recurrence_pattern",
    "scope", "assignment_strategy", "assigned_auditor_id",
)


# ═════════════════════════════════════════════════════════════════════════════
# Plan CRUD
# ═════════════════════════════════════════════════════════════════════════════


def get_plan(plan_id):
    plan = db.session.get(AuditPlan, plan_id)
    if not plan:
        raise NotFoundError(resource="AuditPlan", resource_id=plan_id)
    return plan


def list_plans(status=None, entity_type=None):
    q = AuditPlan.query
    if status:
        q = q.filter_by(status=status)
    if entity_type:
        q = q.filter_by(entity_type=entity_type)
    return q.order_by(AuditPlan.created_at.desc(), AuditPlan.id.desc()).all()


def _validate_plan_fields(plan):
    errors = {}
    if not (plan.name or "").strip():
        errors["name"] = "Name is required"
    if plan.entity_type not in ENTITY_TYPES:
        errors["entity_type"] = f"Must be one of {sorted(ENTITY_TYPES)}"
    if plan.assignment_strategy not in ASSIGNMENT_STRATEGIES:
        errors["assignment_strategy"] = f"Must be one of {sorted(ASSIGNMENT_STRATEGIES)}"
    elif plan.assignment_strategy == "assign_specific" and not plan.assigned_auditor_id:
        errors["assigned_auditor_id"] = "Required for assign_specific"

    pattern = plan.recurrence_pattern or {}
    if pattern.get("type") not in RECURRENCE_TYPES:
        errors["recurrence_pattern"] = f"type must be one of {sorted(RECURRENCE_TYPES)}"
    elif pattern["type"] == "one_time" and not parse_date(pattern.get("scheduled_date")):
        errors["recurrence_pattern"] = "scheduled_date is required for one_time plans"
    elif pattern["type"] == "recurring" and pattern.get("frequency") not in RECURRENCE_FREQUENCIES:
        errors["recurrence_pattern"] = f"frequency must be one of {sorted(RECURRENCE_FREQUENCIES)}"

    scope = plan.scope or {}
    if scope.get("type") not in SCOPE_TYPES:
        errors["scope"] = f"type must be one of {sorted(SCOPE_TYPES)}"

    if errors:
        raise ValidationError("Invalid audit plan", details=errors)
    get_active_template(plan.template_id, plan.entity_type)


def create_plan(data, created_by=None):
    """Create a plan in ``draft``. Activation is a separate step."""
    plan = AuditPlan(
        name=data.get("name", ""),
        description=data.get("description", ""),
        template_id=data.get("template_id"),
        entity_type=data.get("entity_type"),
        recurrence_pattern=data.get("recurrence_pattern") or {},
        scope=data.get("scope") or {"type": "all"},
        assignment_strategy=data.get("assignment_strategy", "manual"),
        assigned_auditor_id=data.get("assigned_auditor_id"),
        status="draft",
        created_by=created_by,
    )
    _validate_plan_fields(plan)
    db.session.add(plan)
    db.session.commit()
    logger.info("Audit plan created: %s", plan.name, extra={"plan_id": plan.id})
    return plan


def update_plan(plan_id, data):
    plan = get_plan(plan_id)
    if plan.status == "completed":
        raise ValidationError("Completed plans cannot be edited")
    for field in PLAN_FIELDS:
        if field in data:
            setattr(plan, field, data[field])
    try:
        _validate_plan_fields(plan)
    except (ValidationError, NotFoundError):
        db.session.rollback()
        raise
    db.session.commit()
    return plan


def delete_plan(plan_id):
    plan = get_plan(plan_id)
    if plan.status != "draft":
        raise ValidationError("Only draft plans can be deleted")
    db.session.delete(plan)
    db.session.commit()
    logger.info("Audit plan deleted", extra={"plan_id": plan_id})


# ═════════════════════════════════════════════════════════════════════════════
# Expansion
# ═════════════════════════════════════════════════════════════════════════════


def _js_weekday(day):
    """0 = Sunday … 6 = Saturday."""
    return (day.weekday() + 1) % 7


def resolve_dates(pattern, today, horizon_days):
    """Dates a recurrence pattern produces inside ``[today, today + horizon]``."""
    pattern = pattern or {}
    window_end = today + timedelta(days=horizon_days)

    if pattern.get("type") == "one_time":
        day = parse_date(pattern.get("scheduled_date"))
        if day and today <= day <= window_end:
            return [day]
        return []

    if pattern.get("type") != "recurring":
        return []

    start = max(today, parse_date(pattern.get("start_date")) or today)
    end = min(window_end, parse_date(pattern.get("end_date")) or window_end)
    frequency = pattern.get("frequency")
    days_of_week = set(pattern.get("days_of_week") or [])
    day_of_month = pattern.get("day_of_month")

    dates = []
    day = start
    while day <= end:
        if frequency == "daily":
            dates.append(day)
        elif frequency == "weekly" and _js_weekday(day) in days_of_week:
            dates.append(day)
        elif frequency == "monthly" and day.day == day_of_month:
            dates.append(day)
        day += timedelta(days=1)
    return dates


def resolve_scope(plan):
    """Active entity ids a plan covers.

    Explicit ids that are unknown, inactive or of another entity type are
    dropped, so a ``specific`` scope naming only such ids resolves to nothing.
    """
    scope = plan.scope or {}
    active = directory.active_entity_ids(plan.entity_type)
    if scope.get("type") != "specific":
        return active

    known = set(active)
    ids, skipped = [], []
    for raw in scope.get("entity_ids") or []:
        try:
            entity_id = int(raw)
        except (TypeError, ValueError):
            skipped.append(raw)
            continue
        if entity_id not in known:
            skipped.append(entity_id)
        elif entity_id not in ids:
            ids.append(entity_id)
    if skipped:
        logger.warning("Plan %s scope skips unknown or inactive %s ids: %s",
                       plan.id, plan.entity_type, skipped, extra={"plan_id": plan.id})
    return ids


def _round_robin_pool():
    """Active auditors ordered by (scheduled audit count, name)."""
    counts = dict(
        db.session.query(Audit.auditor_id, func.count(Audit.id))
        .filter(Audit.status == "scheduled", Audit.auditor_id.isnot(None))
        .group_by(Audit.auditor_id)
        .all()
    )
    auditors = directory.get_users_by_role("auditor")
    return sorted(auditors, key=lambda u: (counts.get(u.id, 0), u.full_name, u.id))


class _AuditorAssigner:
    """Hands out auditor ids for one expansion run."""

    def __init__(self, plan):
        self.strategy = plan.assignment_strategy
        self.fixed_id = plan.assigned_auditor_id
        self.pool = []
        self._cursor = 0
        if self.strategy == "assign_specific":
            auditor = db.session.get(User, self.fixed_id) if self.fixed_id else None
            if not auditor or auditor.status != "active":
                raise ValidationError("Assigned auditor is missing or inactive",
                                      details={"assigned_auditor_id": self.fixed_id})
        elif self.strategy == "auto_round_robin":
            self.pool = _round_robin_pool()
            if not self.pool:
                raise ValidationError("No active auditors available for round-robin assignment")

    def next(self):
        if self.strategy == "assign_specific":
            return self.fixed_id
        if self.strategy == "auto_round_robin":
            auditor = self.pool[self._cursor % len(self.pool)]
            self._cursor += 1
            return auditor.id
        return None


def _expand(plan, today, now):
    horizon = current_app.config.get("PLAN_EXPANSION_HORIZON_DAYS", DEFAULT_HORIZON_DAYS)
    dates = resolve_dates(plan.recurrence_pattern, today, horizon)
    if not dates:
        raise ValidationError(
            "Plan generates no audit dates within the next "
            f"{horizon} days",
            details={"recurrence_pattern": plan.recurrence_pattern},
        )
    entity_ids = resolve_scope(plan)
    if not entity_ids:
        raise ValidationError("Plan scope resolves to no entities",
                              details={"scope": plan.scope})
    template = get_active_template(plan.template_id, plan.entity_type)
    assigner = _AuditorAssigner(plan)

    existing = {
        (row.entity_id, row.scheduled_date)
        for row in db.session.query(Audit.entity_id, Audit.scheduled_date)
        .filter(Audit.plan_id == plan.id)
    }

    created = []
    for day in dates:
        for entity_id in entity_ids:
            if (entity_id, day) in existing:
                continue
            audit = Audit(
                code=next_audit_code(now),
                plan_id=plan.id,
                template_id=template.id,
                entity_type=plan.entity_type,
                entity_id=entity_id,
                auditor_id=assigner.next(),
                scheduled_date=day,
                status="scheduled",
                created_by=plan.created_by,
            )
            db.session.add(audit)
            db.session.flush()
            created.append(audit)
    plan.last_expanded_at = now
    return created


def _notify_auditors(audits):
    per_auditor = defaultdict(list)
    for audit in audits:
        if audit.auditor_id:
            per_auditor[audit.auditor_id].append(audit)
    for auditor_id, assigned in per_auditor.items():
        first = min(a.scheduled_date for a in assigned)
        NotificationService.notify(
            auditor_id,
            type="audit_assigned",
            title="New audits assigned",
            message=f"{len(assigned)} audit(s) scheduled for you, starting {first.isoformat()}.",
            link_to="/audits",
        )


def expand_plan(plan_id, *, today=None, now=None):
    """Generate audits for an already-active plan.

    Returns ``{"plan_id", "created", "audits"}``.
    """
    now = now or utcnow()
    today = today or now.date()
    plan = get_plan(plan_id)
    if plan.status != "active":
        raise ValidationError(f"Only active plans generate audits (plan is {plan.status})")
    try:
        created = _expand(plan, today, now)
    except (ValidationError, NotFoundError):
        db.session.rollback()
        raise
    db.session.commit()
    logger.info("Plan expanded: %d audits created", len(created), extra={"plan_id": plan.id})
    _notify_auditors(created)
    return {"plan_id": plan.id, "created": len(created), "audits": [a.to_dict() for a in created]}


def activate_plan(plan_id, *, today=None, now=None):
    """Activate a draft or paused plan and expand it.

    The plan is persisted as ``active`` only if expansion succeeds.
    """
    now = now or utcnow()
    today = today or now.date()
    plan = get_plan(plan_id)
    if not validate_plan_transition(plan.status, "active"):
        raise ValidationError(f"Cannot activate a plan in status {plan.status}")
    plan.status = "active"
    try:
        created = _expand(plan, today, now)
    except (ValidationError, NotFoundError):
        db.session.rollback()
        raise
    db.session.commit()
    logger.info("Plan activated: %d audits created", len(created), extra={"plan_id": plan.id})
    _notify_auditors(created)
    return {"plan": plan.to_dict(), "created": len(created),
            "audits": [a.to_dict() for a in created]}


def pause_plan(plan_id):
    plan = get_plan(plan_id)
    if not validate_plan_transition(plan.status, "paused"):
        raise ValidationError(f"Cannot pause a plan in status {plan.status}")
    plan.status = "paused"
    db.session.commit()
    logger.info("Plan paused", extra={"plan_id": plan.id})
    return plan


def expand_active_plans(*, today=None, now=None):
    """Roll every active plan's horizon forward. Used by the scheduler."""
    now = now or utcnow()
    today = today or now.date()
    stats = {"plans": 0, "created": 0, "failed": 0}
    plan_ids = [p.id for p in AuditPlan.query.filter_by(status="active").order_by(AuditPlan.id)]
    for plan_id in plan_ids:
        stats["plans"] += 1
        try:
            stats["created"] += expand_plan(plan_id, today=today, now=now)["created"]
        except ValidationError as exc:
            # an active plan whose window has run dry is not an error for the sweep
            logger.info("Plan not expanded: %s", exc, extra={"plan_id": plan_id})
        except Exception:
            db.session.rollback()
            stats["failed"] += 1
            logger.exception("Plan expansion failed", extra={"plan_id": plan_id})
    return stats


def get_next_audit_date(plan_id, *, today=None):
    """Earliest upcoming scheduled audit date for a plan, else its next pattern date."""
    today = today or utcnow().date()
    plan = get_plan(plan_id)
    upcoming = (
        db.session.query(func.min(Audit.scheduled_date))
        .filter(Audit.plan_id == plan.id, Audit.status == "scheduled",
                Audit.scheduled_date >= today)
        .scalar()
    )
    if upcoming:
        return upcoming
    horizon = current_app.config.get("PLAN_EXPANSION_HORIZON_DAYS", DEFAULT_HORIZON_DAYS)
    dates = resolve_dates(plan.recurrence_pattern, today, horizon)
    return dates[0] if dates else None
