"""
Compliance Workflow & Scoring Engine
Health / quality score snapshot model.

One live record per (entity_type, entity_id); recalculation overwrites it in
place. ``calculated_at`` is the only "as of" signal.
"""

from datetime import datetime, timezone

from compliance.models import db


class HealthScoreRecord(db.Model):
    __tablename__ = "health_scores"
    __table_args__ = (
        db.UniqueConstraint("entity_type", "entity_id", name="uq_health_score_entity"),
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(20), nullable=False, comment="branch, bck, supplier")
    entity_id = db.Column(db.Integer, nullable=False)
    score = db.Column(db.Float, nullable=False)
    components = db.Column(db.JSON, nullable=False, default=dict,
                           comment="Named component scores, 0-100 each")
    calculated_at = db.Column(db.DateTime(timezone=True), nullable=False,
                              default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "score": self.score,
            "components": self.components or {},
            "calculated_at": self.calculated_at.isoformat() if self.calculated_at else None,
        }

    def __repr__(self):
        return f"<HealthScoreRecord {self.entity_type}:{self.entity_id}={self.score}>"
