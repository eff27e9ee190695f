"""
Compliance Workflow & Scoring Engine
Sweep schedule model.

One ScheduledJob row per registered sweep: how often it runs, whether it is
paused, and what happened on its most recent run.
"""

from datetime import timedelta

from compliance.models import db
from compliance.utils.helpers import ensure_utc, isoformat_or_none, utcnow


JOB_STATUSES = {"active", "paused"}
RUN_STATUSES = {"success", "failed", "skipped"}


class ScheduledJob(db.Model):
    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), nullable=False, unique=True,
                         comment="capa_escalation_sweep, health_score_batch, ...")
    description = db.Column(db.String(500), default="")
    interval_seconds = db.Column(db.Integer, nullable=False, default=3600)
    status = db.Column(db.String(20), default="active", comment="active | paused")
    is_enabled = db.Column(db.Boolean, default=True)

    # ── Last run ──
    last_run_at = db.Column(db.DateTime(timezone=True))
    last_run_status = db.Column(db.String(20), comment="success | failed | skipped")
    last_run_duration_ms = db.Column(db.Integer)
    last_run_result = db.Column(db.JSON, comment="Sweep stats returned by the handler")
    last_error = db.Column(db.Text)

    # ── Totals ──
    run_count = db.Column(db.Integer, default=0)
    error_count = db.Column(db.Integer, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def is_due(self, now=None):
        """Enabled, and never run or last run at least one interval ago."""
        if not self.is_enabled:
            return False
        if self.last_run_at is None:
            return True
        elapsed = (now or utcnow()) - ensure_utc(self.last_run_at)
        return elapsed >= timedelta(seconds=self.interval_seconds)

    def record_run(self, *, status="success", duration_ms=0, result=None, error=None):
        self.last_run_at = utcnow()
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.last_error = str(error) if error else None

    def to_dict(self):
        data = {c: getattr(self, c) for c in (
            "id", "job_name", "description", "interval_seconds", "status", "is_enabled",
            "last_run_status", "last_run_duration_ms", "last_run_result", "last_error",
            "run_count", "error_count",
        )}
        for stamp in ("last_run_at", "created_at", "updated_at"):
            data[stamp] = isoformat_or_none(getattr(self, stamp))
        return data

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} {self.status}>"
