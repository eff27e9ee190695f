"""
Compliance Workflow & Scoring Engine
Flask Application Factory.

Usage:
    from compliance import create_app
    app = create_app()           # APP_ENV or "development"
    app = create_app("testing")
"""

import importlib
import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event
from sqlalchemy.exc import SQLAlchemyError

from compliance.config import config
from compliance.middleware.logging_config import configure_logging, init_request_logging
from compliance.middleware.rate_limiter import init_rate_limits
from compliance.models import db
from compliance.utils.errors import E, api_error

logger = logging.getLogger(__name__)

migrate = Migrate()
# storage comes from RATELIMIT_STORAGE_URI; limits are attached per blueprint
limiter = Limiter(key_func=get_remote_address, default_limits=[])

_MODEL_MODULES = (
    "directory",
    "template",
    "audit",
    "finding",
    "health_score",
    "notification",
    "scheduling",
)

_BLUEPRINTS = (
    ("plan_bp", "plan_bp"),
    ("audit_bp", "audit_bp"),
    ("capa_bp", "capa_bp"),
    ("verification_bp", "verification_bp"),
    ("health_score_bp", "health_score_bp"),
    ("sweep_bp", "sweep_bp"),
    ("evidence_bp", "evidence_bp"),
    ("notification_bp", "notification_bp"),
    ("health_bp", "health_bp"),
)

_BODY_TYPES = ("json", "multipart/form-data")


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """SQLite ignores REFERENCES unless asked per connection."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _init_extensions(app):
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    # empty CORS_ORIGINS (production default) means same-origin only
    origins = app.config.get("CORS_ORIGINS", "*")
    if origins == "*":
        CORS(app)
    elif origins:
        CORS(app, origins=[o.strip() for o in origins.split(",") if o.strip()])


def _init_schema(app):
    for name in _MODEL_MODULES:
        importlib.import_module(f"compliance.models.{name}")

    # migrations own the schema in production; create_all covers fresh dev/test databases
    with app.app_context():
        try:
            db.create_all()
        except SQLAlchemyError as exc:
            app.logger.warning("Schema bootstrap skipped: %s", exc)


def _register_blueprints(app):
    for module_name, attr in _BLUEPRINTS:
        module = importlib.import_module(f"compliance.blueprints.{module_name}")
        app.register_blueprint(getattr(module, attr))


def _register_request_guards(app):
    app.config.setdefault("MAX_CONTENT_LENGTH", 16 * 1024 * 1024)

    @app.before_request
    def _require_known_body_type():
        if request.method not in ("POST", "PUT", "PATCH") or not request.path.startswith("/api/"):
            return None
        content_type = request.content_type or ""
        if request.data and not any(t in content_type for t in _BODY_TYPES):
            return api_error(
                E.VALIDATION_INVALID,
                "Request body must be JSON or multipart/form-data",
                status=415,
            )
        return None


def _register_error_handlers(app):
    @app.errorhandler(404)
    def _not_found(e):
        return api_error(E.NOT_FOUND, f"No route for {request.path}")

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(413)
    def _too_large(e):
        return api_error(E.VALIDATION_INVALID, "Upload exceeds MAX_CONTENT_LENGTH", status=413)

    @app.errorhandler(429)
    def _rate_limited(e):
        return api_error(E.RULE_VIOLATION, "Too many requests",
                         status=429, details={"limit": str(e.description)})

    @app.errorhandler(500)
    def _server_error(e):
        logger.error("Unhandled error on %s %s", request.method, request.path, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")


def _register_cli(app):
    @app.cli.command("run-sweeps")
    def run_sweeps_cmd():
        """Run the escalation and auto-approval sweeps once."""
        from compliance.services.auto_approval import run_auto_approval_sweep
        from compliance.services.escalation import run_escalation_sweep

        logger.info("Escalation sweep: %s", run_escalation_sweep())
        logger.info("Auto-approval sweep: %s", run_auto_approval_sweep())

    @app.cli.command("recalculate-scores")
    def recalculate_scores_cmd():
        """Recompute health / quality scores for every branch, BCK and supplier."""
        from compliance.services.health_score import recalculate_all

        logger.info("Health score batch: %s", recalculate_all())


def create_app(config_name=None):
    """
    Build the application.

    Args:
        config_name: "development", "testing" or "production".
                     Falls back to APP_ENV, then "development".
    """
    config_name = config_name or os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    config_cls = config[config_name]
    # ProductionConfig checks its required env vars when instantiated
    app.config.from_object(config_cls() if config_name == "production" else config_cls)

    configure_logging(app)
    init_request_logging(app)

    _init_extensions(app)
    _register_request_guards(app)
    _init_schema(app)
    _register_blueprints(app)
    _register_error_handlers(app)
    _register_cli(app)
    init_rate_limits(app, limiter)

    # job handlers register themselves on import
    importlib.import_module("compliance.services.scheduled_jobs")
    from compliance.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    return app
