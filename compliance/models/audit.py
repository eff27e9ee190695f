"""
Compliance Workflow & Scoring Engine
Audit domain models.

Models:
    - AuditPlan: recurrence + scope + assignment strategy that generates audits
    - Audit: one scheduled compliance check of one entity against one template
    - AuditResult: one recorded checklist response per template item

Status lifecycles:
    AuditPlan: draft → active ⇄ paused → completed
    Audit:     scheduled → in_progress → submitted → pending_verification
               → approved | rejected
               scheduled | in_progress → overdue (time based)
               any pre-approval state → cancelled
"""

from datetime import datetime, timezone

from compliance.models import db


# ── Constants ────────────────────────────────────────────────────────────────

ENTITY_TYPES = {"branch", "bck", "supplier"}

PLAN_STATUSES = {"draft", "active", "paused", "completed"}
ASSIGNMENT_STRATEGIES = {"auto_round_robin", "assign_specific", "manual"}
RECURRENCE_TYPES = {"one_time", "recurring"}
RECURRENCE_FREQUENCIES = {"daily", "weekly", "monthly"}
SCOPE_TYPES = {"all", "specific"}

AUDIT_STATUSES = {
    "scheduled", "in_progress", "submitted", "pending_verification",
    "approved", "rejected", "overdue", "cancelled",
}

PLAN_TRANSITIONS = {
    "draft":     ["active"],
    "active":    ["paused", "completed"],
    "paused":    ["active", "completed"],
    "completed": [],
}

AUDIT_TRANSITIONS = {
    "scheduled":            ["in_progress", "overdue", "cancelled"],
    "overdue":              ["in_progress", "cancelled"],
    "in_progress":          ["submitted", "overdue", "cancelled"],
    "submitted":            ["pending_verification", "approved", "rejected", "cancelled"],
    "pending_verification": ["approved", "rejected", "cancelled"],
    "approved":             [],
    "rejected":             [],
    "cancelled":            [],
}


def validate_plan_transition(old_status, new_status):
    """Return True if AuditPlan status transition is valid."""
    return new_status in PLAN_TRANSITIONS.get(old_status, [])


def validate_audit_transition(old_status, new_status):
    """Return True if Audit status transition is valid."""
    return new_status in AUDIT_TRANSITIONS.get(old_status, [])


class AuditPlan(db.Model):
    """
    Recurrence template that expands into concrete audits.

    recurrence_pattern::

        {"type": "one_time", "scheduled_date": "2025-03-01"}
        {"type": "recurring", "frequency": "weekly", "days_of_week": [1, 3],
         "start_date": "2025-03-01", "end_date": "2025-06-30"}

    ``days_of_week`` uses 0 = Sunday … 6 = Saturday.

    scope::

        {"type": "all"}
        {"type": "specific", "entity_ids": [3, 7]}
    """

    __tablename__ = "audit_plans"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    template_id = db.Column(db.Integer, db.ForeignKey("audit_templates.id", ondelete="RESTRICT"),
                            nullable=False)
    entity_type = db.Column(db.String(20), nullable=False, comment="branch, bck, supplier")
    recurrence_pattern = db.Column(db.JSON, nullable=False, default=dict)
    scope = db.Column(db.JSON, nullable=False, default=lambda: {"type": "all"})
    assignment_strategy = db.Column(db.String(30), nullable=False, default="manual",
                                    comment="auto_round_robin, assign_specific, manual")
    assigned_auditor_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                                    nullable=True)
    status = db.Column(db.String(20), nullable=False, default="draft",
                       comment="draft, active, paused, completed")
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    last_expanded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    audits = db.relationship("Audit", backref="plan", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "template_id": self.template_id,
            "entity_type": self.entity_type,
            "recurrence_pattern": self.recurrence_pattern,
            "scope": self.scope,
            "assignment_strategy": self.assignment_strategy,
            "assigned_auditor_id": self.assigned_auditor_id,
            "status": self.status,
            "created_by": self.created_by,
            "last_expanded_at": self.last_expanded_at.isoformat() if self.last_expanded_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<AuditPlan {self.id}: {self.name} [{self.status}]>"


class Audit(db.Model):
    """
    One compliance check of one entity.

    Business rules:
    - ``code`` (AUD-YYYY-NNNNN) is allocated once and never changes.
    - ``score`` / ``pass_fail`` are written only when status reaches ``approved``.
    """

    __tablename__ = "audits"
    __table_args__ = (
        db.Index("ix_audits_entity", "entity_type", "entity_id"),
        db.Index("ix_audits_status_date", "status", "scheduled_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20), unique=True, nullable=False, comment="AUD-YYYY-NNNNN")
    plan_id = db.Column(db.Integer, db.ForeignKey("audit_plans.id", ondelete="SET NULL"),
                        nullable=True, index=True)
    template_id = db.Column(db.Integer, db.ForeignKey("audit_templates.id", ondelete="RESTRICT"),
                            nullable=False)
    entity_type = db.Column(db.String(20), nullable=False, comment="branch, bck, supplier")
    entity_id = db.Column(db.Integer, nullable=False)
    auditor_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                           nullable=True, index=True)
    scheduled_date = db.Column(db.Date, nullable=False)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    status = db.Column(db.String(30), nullable=False, default="scheduled")
    score = db.Column(db.Float, nullable=True)
    pass_fail = db.Column(db.String(10), nullable=True, comment="pass, fail")
    notes = db.Column(db.Text, default="")
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    template = db.relationship("AuditTemplate")
    results = db.relationship("AuditResult", backref="audit", lazy="dynamic",
                              cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "plan_id": self.plan_id,
            "template_id": self.template_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "auditor_id": self.auditor_id,
            "scheduled_date": self.scheduled_date.isoformat() if self.scheduled_date else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "status": self.status,
            "score": self.score,
            "pass_fail": self.pass_fail,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Audit {self.code} [{self.status}]>"


class AuditResult(db.Model):
    """Recorded response to one checklist item."""

    __tablename__ = "audit_results"
    __table_args__ = (
        db.UniqueConstraint("audit_id", "item_id", name="uq_audit_result_item"),
    )

    id = db.Column(db.Integer, primary_key=True)
    audit_id = db.Column(db.Integer, db.ForeignKey("audits.id", ondelete="CASCADE"),
                         nullable=False, index=True)
    section_id = db.Column(db.String(50), nullable=False)
    item_id = db.Column(db.String(50), nullable=False)
    response = db.Column(db.JSON, nullable=True,
                         comment="pass/fail string, rating int, number, text or {label: checked}")
    evidence_urls = db.Column(db.JSON, default=list)
    notes = db.Column(db.Text, default="", comment="Manual finding note entered by the auditor")
    points_earned = db.Column(db.Float, default=0.0)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "audit_id": self.audit_id,
            "section_id": self.section_id,
            "item_id": self.item_id,
            "response": self.response,
            "evidence_urls": self.evidence_urls or [],
            "notes": self.notes,
            "points_earned": self.points_earned,
        }
