"""
Compliance Workflow & Scoring Engine
Scheduler Service.

Runs the periodic sweeps (escalation, auto-approval, overdue audits, score
batch) on fixed intervals.

    @register_job("capa_escalation_sweep")   # registers handler + interval
    SchedulerService.run_job(name)           # one guarded execution
    SchedulerService.run_due_jobs()          # everything whose interval elapsed

Every registered job has a ScheduledJob row holding its interval, enabled
flag and last-run summary. A job never runs twice at once within a process:
the second caller gets ``status="skipped"``.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from flask import Flask, has_app_context
from sqlalchemy.exc import SQLAlchemyError

from compliance.models import db
from compliance.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)

HOUR = 3600

DEFAULT_INTERVALS = {
    "capa_escalation_sweep": HOUR,
    "capa_auto_approval_sweep": HOUR,
    "audit_overdue_sweep": 24 * HOUR,
    "health_score_batch": 6 * HOUR,
}


@dataclass
class RegisteredJob:
    name: str
    handler: Callable
    interval_seconds: int
    lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def description(self) -> str:
        return (self.handler.__doc__ or f"Sweep {self.name}").strip()


_jobs: dict[str, RegisteredJob] = {}
# shared with tests that simulate an in-flight run
_job_locks: dict[str, threading.Lock] = {}


def register_job(name: str, interval_seconds: int | None = None):
    """Register ``fn(app)`` as the handler for job ``name``."""
    def wrap(fn: Callable) -> Callable:
        job = RegisteredJob(name, fn, interval_seconds or DEFAULT_INTERVALS.get(name, HOUR))
        _jobs[name] = job
        _job_locks[name] = job.lock
        return fn
    return wrap


def get_registered_jobs() -> dict[str, Callable]:
    return {name: job.handler for name, job in _jobs.items()}


def _outcome(job_name, status, duration_ms=0, result=None, error=None) -> dict:
    return {
        "job_name": job_name,
        "status": status,
        "duration_ms": duration_ms,
        "result": result,
        "error": error,
    }


class SchedulerService:
    """Class-level scheduler bound to one Flask app."""

    _app: Flask | None = None
    _running = False
    _thread: threading.Thread | None = None
    _stop_event: threading.Event | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("Scheduler bound: %d jobs (%s)", len(_jobs), ", ".join(sorted(_jobs)))
        if app.config.get("SCHEDULER_ENABLED"):
            cls.start()

    @classmethod
    def _context(cls):
        # requests, CLI commands and tests already carry an app context
        return nullcontext() if has_app_context() else cls._app.app_context()

    @staticmethod
    def _row(job_name: str) -> ScheduledJob | None:
        return ScheduledJob.query.filter_by(job_name=job_name).first()

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Insert a ScheduledJob row for every registered job that lacks one."""
        if cls._app is None:
            return []

        with cls._context():
            known = {name for (name,) in db.session.query(ScheduledJob.job_name)}
            rows = [
                ScheduledJob(
                    job_name=job.name,
                    description=job.description,
                    interval_seconds=job.interval_seconds,
                    status="active",
                    is_enabled=True,
                )
                for job in _jobs.values() if job.name not in known
            ]
            if rows:
                db.session.add_all(rows)
                db.session.commit()
                logger.info("Seeded %d scheduled job rows", len(rows))
        return rows

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Run one job now.

        Returns ``{job_name, status, duration_ms, result, error}`` where status
        is success, failed, skipped (already running) or error (unknown job or
        no bound app).
        """
        job = _jobs.get(job_name)
        if job is None:
            return _outcome(job_name, "error", error=f"Unknown job: {job_name}")
        if cls._app is None:
            return _outcome(job_name, "error", error="Scheduler not initialized")

        if not job.lock.acquire(blocking=False):
            logger.info("Skipping %s: previous run still in progress", job_name,
                        extra={"job_name": job_name})
            return _outcome(job_name, "skipped")

        try:
            with cls._context():
                outcome = cls._execute(job)
                cls._store_outcome(outcome)
        finally:
            job.lock.release()

        logger.info("Job %s -> %s", job_name, outcome["status"],
                    extra={"job_name": job_name, "duration_ms": outcome["duration_ms"]})
        return outcome

    @classmethod
    def _execute(cls, job: RegisteredJob) -> dict:
        started = time.monotonic()
        try:
            result = job.handler(cls._app)
        except Exception as exc:
            # handler errors are recorded on the job row, never raised
            db.session.rollback()
            logger.exception("Job %s raised", job.name, extra={"job_name": job.name})
            elapsed = int((time.monotonic() - started) * 1000)
            return _outcome(job.name, "failed", elapsed, error=str(exc))
        elapsed = int((time.monotonic() - started) * 1000)
        return _outcome(job.name, "success", elapsed, result=result)

    @classmethod
    def _store_outcome(cls, outcome: dict) -> None:
        row = cls._row(outcome["job_name"])
        if row is None:
            return
        result = outcome["result"]
        row.record_run(
            status=outcome["status"],
            duration_ms=outcome["duration_ms"],
            result=result if isinstance(result, dict) else {"output": str(result)},
            error=outcome["error"],
        )
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Could not store run of %s", outcome["job_name"],
                             extra={"job_name": outcome["job_name"]})

    @classmethod
    def run_due_jobs(cls, now: datetime | None = None) -> list[dict]:
        """Run every enabled job whose interval has elapsed, in row order."""
        now = now or datetime.now(timezone.utc)
        with cls._context():
            rows = ScheduledJob.query.order_by(ScheduledJob.id).all()
            due = [r.job_name for r in rows if r.job_name in _jobs and r.is_due(now)]
        return [cls.run_job(name) for name in due]

    @classmethod
    def list_jobs(cls) -> list[dict]:
        listing = []
        for name, job in _jobs.items():
            row = cls._row(name)
            listing.append({
                "job_name": name,
                "registered": True,
                "interval_seconds": job.interval_seconds,
                "db_record": row.to_dict() if row else None,
            })
        return listing

    @classmethod
    def get_job_status(cls, job_name: str) -> dict | None:
        row = cls._row(job_name)
        return row.to_dict() if row else None

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Pause or resume a job. Returns None for unknown names."""
        row = cls._row(job_name)
        if row is None:
            return None
        row.is_enabled = enabled
        row.status = "active" if enabled else "paused"
        db.session.commit()
        logger.info("Job %s is now %s", job_name, row.status, extra={"job_name": job_name})
        return row.to_dict()

    # ── Background thread ───────────────────────────────────────────────────

    @classmethod
    def start(cls) -> None:
        if cls._running or cls._app is None:
            return
        cls._stop_event = threading.Event()
        cls._thread = threading.Thread(target=cls._loop, name="compliance-scheduler",
                                       daemon=True)
        cls._running = True
        cls._thread.start()
        logger.info("Scheduler loop started, tick %ss",
                    cls._app.config.get("SCHEDULER_TICK_SECONDS", 60))

    @classmethod
    def stop(cls) -> None:
        if cls._stop_event is not None:
            cls._stop_event.set()
        if cls._thread is not None:
            cls._thread.join(timeout=5)
        cls._thread = None
        cls._running = False

    @classmethod
    def _loop(cls) -> None:
        tick = cls._app.config.get("SCHEDULER_TICK_SECONDS", 60)
        cls.ensure_jobs_registered()
        while not cls._stop_event.is_set():
            try:
                cls.run_due_jobs()
            except Exception:
                logger.exception("Scheduler tick failed")
            cls._stop_event.wait(tick)
