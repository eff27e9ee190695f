"""
Compliance Workflow & Scoring Engine
Finding / CAPA domain models.

Models:
    - Finding: non-conformance tied to one checklist item of one audit
    - CAPA: corrective and preventive action, 1:1 with a Finding
    - CAPAActivity: append-only CAPA activity log

Sub-tasks are embedded in ``CAPA.sub_tasks`` as an ordered list of dicts and
are always replaced as a whole list on write, never mutated in place.
"""

from datetime import datetime, timezone

from compliance.models import db


# ── Constants ────────────────────────────────────────────────────────────────

SEVERITIES = {"low", "medium", "high", "critical"}
FINDING_STATUSES = {"open", "in_progress", "resolved", "closed"}

CAPA_STATUSES = {
    "open", "in_progress", "pending_verification",
    "approved", "rejected", "escalated", "closed",
}
CAPA_CLOSED_STATUSES = {"closed", "approved"}
CAPA_ACTIVE_STATUSES = {"open", "in_progress"}

SUBTASK_STATUSES = {"pending", "in_progress", "completed"}

# Days from creation until a CAPA is due, by finding severity
SEVERITY_DUE_DAYS = {
    "critical": 3,
    "high": 7,
    "medium": 14,
    "low": 30,
}

SYSTEM_USER = "system"

CAPA_TRANSITIONS = {
    "open":                 ["in_progress", "pending_verification", "escalated"],
    "in_progress":          ["pending_verification", "escalated"],
    "escalated":            ["in_progress", "pending_verification"],
    "pending_verification": ["closed", "approved", "rejected"],
    "rejected":             ["pending_verification"],
    "approved":             [],
    "closed":               [],
}

SUBTASK_TRANSITIONS = {
    "pending":     ["in_progress"],
    "in_progress": ["completed"],
    "completed":   [],
}


def validate_capa_transition(old_status, new_status):
    """Return True if CAPA status transition is valid."""
    return new_status in CAPA_TRANSITIONS.get(old_status, [])


def validate_subtask_transition(old_status, new_status):
    """Return True if SubTask status transition is valid."""
    return new_status in SUBTASK_TRANSITIONS.get(old_status, [])


class Finding(db.Model):
    __tablename__ = "findings"
    __table_args__ = (
        db.UniqueConstraint("audit_id", "item_id", name="uq_finding_audit_item"),
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20), unique=True, nullable=False, comment="FND-YYYY-NNNNN")
    audit_id = db.Column(db.Integer, db.ForeignKey("audits.id", ondelete="CASCADE"),
                         nullable=False, index=True)
    item_id = db.Column(db.String(50), nullable=False)
    section_name = db.Column(db.String(200), default="")
    category = db.Column(db.String(100), default="")
    severity = db.Column(db.String(20), nullable=False, comment="low, medium, high, critical")
    description = db.Column(db.Text, default="")
    evidence_urls = db.Column(db.JSON, default=list)
    status = db.Column(db.String(20), nullable=False, default="open",
                       comment="open, in_progress, resolved, closed")
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    audit = db.relationship("Audit", backref=db.backref("findings", lazy="dynamic"))

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "audit_id": self.audit_id,
            "item_id": self.item_id,
            "section_name": self.section_name,
            "category": self.category,
            "severity": self.severity,
            "description": self.description,
            "evidence_urls": self.evidence_urls or [],
            "status": self.status,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Finding {self.code} [{self.severity}/{self.status}]>"


class CAPA(db.Model):
    """
    Corrective and preventive action for exactly one Finding.

    Business rules:
    - ``due_date`` = creation date + SEVERITY_DUE_DAYS[priority].
    - ``entity_type`` / ``entity_id`` are denormalised from the audit.
    - Entering ``pending_verification`` requires every sub-task completed
      and at least one evidence item across the CAPA and its sub-tasks.
    """

    __tablename__ = "capas"
    __table_args__ = (
        db.Index("ix_capas_entity", "entity_type", "entity_id"),
        db.Index("ix_capas_status_due", "status", "due_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20), unique=True, nullable=False, comment="CPA-YYYY-NNNNN")
    finding_id = db.Column(db.Integer, db.ForeignKey("findings.id", ondelete="CASCADE"),
                           nullable=False, unique=True)
    audit_id = db.Column(db.Integer, db.ForeignKey("audits.id", ondelete="CASCADE"),
                         nullable=False, index=True)
    entity_type = db.Column(db.String(20), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)
    description = db.Column(db.Text, default="")
    assigned_to = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                            nullable=True, index=True)
    due_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(30), nullable=False, default="open")
    priority = db.Column(db.String(20), nullable=False, comment="Mirrors finding severity")
    evidence_urls = db.Column(db.JSON, default=list, comment="Ordered opaque evidence references")
    notes = db.Column(db.Text, default="")
    sub_tasks = db.Column(db.JSON, default=list,
                          comment="[{id, assigned_to_user_id, description, status, "
                                  "evidence_urls, completed_at, created_at}]")
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    finding = db.relationship("Finding", backref=db.backref("capa", uselist=False))
    audit = db.relationship("Audit", backref=db.backref("capas", lazy="dynamic"))
    activities = db.relationship("CAPAActivity", backref="capa", lazy="dynamic",
                                 order_by="CAPAActivity.id", cascade="all, delete-orphan")

    @property
    def evidence_count(self):
        total = len(self.evidence_urls or [])
        for task in self.sub_tasks or []:
            total += len(task.get("evidence_urls") or [])
        return total

    def to_dict(self, include_activity=False):
        d = {
            "id": self.id,
            "code": self.code,
            "finding_id": self.finding_id,
            "audit_id": self.audit_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "description": self.description,
            "assigned_to": self.assigned_to,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "status": self.status,
            "priority": self.priority,
            "evidence_urls": self.evidence_urls or [],
            "notes": self.notes,
            "sub_tasks": self.sub_tasks or [],
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_activity:
            d["activity"] = [a.to_dict() for a in self.activities]
        return d

    def __repr__(self):
        return f"<CAPA {self.code} [{self.priority}/{self.status}]>"


class CAPAActivity(db.Model):
    """
    Append-only CAPA activity entry.

    Records are never updated or deleted. ``user_id`` holds the acting
    user's id as a string, or ``"system"`` for sweep-driven actions.
    """

    __tablename__ = "capa_activities"

    id = db.Column(db.Integer, primary_key=True)
    capa_id = db.Column(db.Integer, db.ForeignKey("capas.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    user_id = db.Column(db.String(50), nullable=False, comment="User id or 'system'")
    action = db.Column(db.String(50), nullable=False,
                       comment="created, started, submitted, resubmitted, approved, rejected, "
                               "auto_escalated, auto_approved, audit_finalized, subtask_*, ...")
    details = db.Column(db.Text, default="")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False,
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "capa_id": self.capa_id,
            "user_id": self.user_id,
            "action": self.action,
            "details": self.details,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<CAPAActivity {self.capa_id}:{self.action}>"
