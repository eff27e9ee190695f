"""
Compliance Workflow & Scoring Engine
Audit template model.

A template is consumed read-only by the engine: ``checklist_json`` holds
weighted sections of scored items, ``scoring_config`` the pass rules.

checklist_json shape::

    {"sections": [
        {"id": "s1", "name": "Hygiene", "weight": 40, "items": [
            {"id": "i1", "text": "Hands washed", "type": "pass_fail",
             "points": 10, "critical": true, "evidence_required": "none"}
        ]}
    ]}

scoring_config shape::

    {"pass_threshold": 70, "critical_fail_rule": true, "weighted": true}
"""

from datetime import datetime, timezone

from compliance.models import db


ITEM_TYPES = {"pass_fail", "rating", "numeric", "photo", "text", "checklist"}
EVIDENCE_REQUIREMENTS = {"none", "optional", "required_1", "required_2"}

DEFAULT_SCORING_CONFIG = {
    "pass_threshold": 70,
    "critical_fail_rule": True,
    "weighted": True,
}


class AuditTemplate(db.Model):
    __tablename__ = "audit_templates"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(30), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    entity_type = db.Column(db.String(20), nullable=False, comment="branch, bck, supplier")
    version = db.Column(db.Integer, default=1)
    status = db.Column(db.String(20), default="active", comment="draft, active, archived")
    checklist_json = db.Column(db.JSON, default=lambda: {"sections": []})
    scoring_config = db.Column(db.JSON, default=lambda: dict(DEFAULT_SCORING_CONFIG))

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    @property
    def sections(self):
        return (self.checklist_json or {}).get("sections", [])

    def iter_items(self):
        """Yield ``(section, item)`` pairs in template order."""
        for section in self.sections:
            for item in section.get("items", []):
                yield section, item

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "entity_type": self.entity_type,
            "version": self.version,
            "status": self.status,
            "checklist_json": self.checklist_json,
            "scoring_config": self.scoring_config,
        }

    def __repr__(self):
        return f"<AuditTemplate {self.code} v{self.version}>"
