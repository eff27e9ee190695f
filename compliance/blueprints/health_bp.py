"""
Probe endpoints for the load balancer and the container runtime.

    GET /api/v1/health/ready   process is up (no I/O)
    GET /api/v1/health/live    database round-trip + scheduler state

Neither endpoint needs an ``X-User-Id`` caller.
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from compliance.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


def _database_check():
    started = time.perf_counter()
    try:
        db.session.execute(db.text("SELECT 1"))
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Liveness probe: database unreachable: %s", exc)
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok", "latency_ms": round((time.perf_counter() - started) * 1000, 1)}


def _scheduler_check():
    scheduler = current_app.extensions.get("scheduler")
    return {
        "enabled": bool(current_app.config.get("SCHEDULER_ENABLED")),
        "running": bool(scheduler is not None and scheduler._running),
    }


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"})


@health_bp.route("/live", methods=["GET"])
def live():
    checks = {
        "database": _database_check(),
        "scheduler": _scheduler_check(),
        "app": {"debug": current_app.debug, "testing": current_app.testing},
    }
    healthy = checks["database"]["status"] == "ok"
    return (jsonify({"status": "ok" if healthy else "degraded", "checks": checks}),
            200 if healthy else 503)
