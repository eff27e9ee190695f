"""
Compliance Workflow & Scoring Engine
Notification model.

Each workflow event fans out to one Notification row per recipient. Rows
are only ever marked read, never edited.
"""

from compliance.models import db
from compliance.utils.helpers import isoformat_or_none, utcnow


NOTIFICATION_TYPES = {
    "capa_assigned",
    "capa_escalated",
    "capa_submitted",
    "capa_approved",
    "capa_rejected",
    "subtask_assigned",
    "audit_assigned",
    "audit_finalized",
    "audit_flagged",
    "supplier_suspended",
    "system",
}


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
                        nullable=False, index=True, comment="Recipient")
    type = db.Column(db.String(40), default="system")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    link_to = db.Column(db.String(300), comment="Client route for the source record")

    is_read = db.Column(db.Boolean, default=False, index=True)
    read_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def mark_read(self):
        if not self.is_read:
            self.is_read = True
            self.read_at = utcnow()

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "link_to": self.link_to,
            "is_read": self.is_read,
            "read_at": isoformat_or_none(self.read_at),
            "created_at": isoformat_or_none(self.created_at),
        }

    def __repr__(self):
        return f"<Notification #{self.id} user={self.user_id} {self.type}>"
