"""
Compliance Workflow & Scoring Engine
Sweep & Scheduler Blueprint.

Endpoints:
    POST  /api/v1/sweeps/escalation                     run escalation sweep
    POST  /api/v1/sweeps/auto-approval                  run auto-approval sweep
    POST  /api/v1/sweeps/overdue-audits                 mark past-date audits overdue
    POST  /api/v1/sweeps/health-scores                  batch health score recalculation
    GET   /api/v1/scheduler/jobs                        registered jobs + run history
    GET   /api/v1/scheduler/jobs/<name>                 one job record
    POST  /api/v1/scheduler/jobs/<name>/trigger         run a job now
    PATCH /api/v1/scheduler/jobs/<name>/toggle          enable / disable a job
"""

import logging

from flask import Blueprint, jsonify

from compliance.blueprints import json_body, register_error_handlers, require
from compliance.services.audit_service import mark_overdue_audits
from compliance.services.auto_approval import run_auto_approval_sweep
from compliance.services.escalation import run_escalation_sweep
from compliance.services.health_score import recalculate_all
from compliance.services.scheduler_service import SchedulerService
from compliance.utils.errors import E, api_error

logger = logging.getLogger(__name__)

sweep_bp = Blueprint("sweeps", __name__, url_prefix="/api/v1")
register_error_handlers(sweep_bp)


# ═══════════════════════════════════════════════════════════════════════════
#  MANUAL SWEEPS
# ═══════════════════════════════════════════════════════════════════════════

@sweep_bp.route("/sweeps/escalation", methods=["POST"])
def escalation():
    require("sweep_run")
    return jsonify(run_escalation_sweep())


@sweep_bp.route("/sweeps/auto-approval", methods=["POST"])
def auto_approval():
    require("sweep_run")
    return jsonify(run_auto_approval_sweep())


@sweep_bp.route("/sweeps/overdue-audits", methods=["POST"])
def overdue_audits():
    require("sweep_run")
    return jsonify(mark_overdue_audits())


@sweep_bp.route("/sweeps/health-scores", methods=["POST"])
def health_scores():
    require("sweep_run")
    return jsonify(recalculate_all())


# ═══════════════════════════════════════════════════════════════════════════
#  SCHEDULER
# ═══════════════════════════════════════════════════════════════════════════

@sweep_bp.route("/scheduler/jobs", methods=["GET"])
def list_scheduled_jobs():
    """List all registered jobs with their status."""
    require("job_manage")
    SchedulerService.ensure_jobs_registered()
    jobs = SchedulerService.list_jobs()
    return jsonify({"jobs": jobs, "total": len(jobs)})


@sweep_bp.route("/scheduler/jobs/<job_name>", methods=["GET"])
def get_job_status(job_name):
    """Get status of a specific scheduled job."""
    require("job_manage")
    job = SchedulerService.get_job_status(job_name)
    if not job:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(job)


@sweep_bp.route("/scheduler/jobs/<job_name>/trigger", methods=["POST"])
def trigger_job(job_name):
    """Manually trigger a scheduled job."""
    require("job_manage")
    SchedulerService.ensure_jobs_registered()
    result = SchedulerService.run_job(job_name)
    if result.get("status") == "error" and "Unknown job" in result.get("error", ""):
        return api_error(E.NOT_FOUND, result["error"])
    return jsonify(result)


@sweep_bp.route("/scheduler/jobs/<job_name>/toggle", methods=["PATCH"])
def toggle_job_status(job_name):
    """Enable or disable a scheduled job."""
    require("job_manage")
    enabled = json_body().get("enabled")
    if enabled is None:
        return api_error(E.VALIDATION_REQUIRED, "'enabled' field is required (true/false)")

    SchedulerService.ensure_jobs_registered()
    result = SchedulerService.toggle_job(job_name, bool(enabled))
    if not result:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(result)
