"""
Compliance Workflow & Scoring Engine
Configuration classes for the Flask app factory.

Every engine threshold can be overridden from the environment; the defaults
are the documented business rules (3-day escalation, 90-day score window,
60-day repeat-finding window, supplier suspension below 60).

Usage:
    app.config.from_object(config[os.getenv("APP_ENV", "development")])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
instance_dir = os.path.join(basedir, "instance")


def _env_int(name, default):
    return int(os.getenv(name, str(default)))


def _env_flag(name, default):
    return os.getenv(name, "true" if default else "false").strip().lower() in ("1", "true", "yes")


def _env_list(name, default):
    return tuple(v.strip() for v in os.getenv(name, default).split(",") if v.strip())


def _database_url(fallback):
    # hosted Postgres providers still hand out postgres:// URLs
    url = os.getenv("DATABASE_URL", "")
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url or fallback


class Config:
    """Settings shared by every environment."""

    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False
    LOG_LEVEL = os.getenv("LOG_LEVEL")

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")

    # ── Audit planning & CAPA workflow ──
    PLAN_EXPANSION_HORIZON_DAYS = _env_int("PLAN_EXPANSION_HORIZON_DAYS", 30)
    ESCALATION_THRESHOLD_DAYS = _env_int("ESCALATION_THRESHOLD_DAYS", 3)
    AUTO_APPROVE_PRIORITIES = _env_list("AUTO_APPROVE_PRIORITIES", "low,medium")

    # ── Health / quality scoring ──
    HEALTH_SCORE_WINDOW_DAYS = _env_int("HEALTH_SCORE_WINDOW_DAYS", 90)
    REPEAT_FINDING_WINDOW_DAYS = _env_int("REPEAT_FINDING_WINDOW_DAYS", 60)
    SUPPLIER_SUSPENSION_THRESHOLD = float(os.getenv("SUPPLIER_SUSPENSION_THRESHOLD", "60"))

    # ── Sweeps ──
    SCHEDULER_ENABLED = _env_flag("SCHEDULER_ENABLED", False)
    SCHEDULER_TICK_SECONDS = _env_int("SCHEDULER_TICK_SECONDS", 60)

    # ── Evidence ──
    EVIDENCE_ROOT = os.getenv("EVIDENCE_ROOT", os.path.join(instance_dir, "evidence"))
    EVIDENCE_URL_TTL_SECONDS = _env_int("EVIDENCE_URL_TTL_SECONDS", 900)


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(
        f"sqlite:///{os.path.join(instance_dir, 'compliance_dev.db')}"
    )


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = "test-secret-key"
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    RATELIMIT_ENABLED = False
    SCHEDULER_ENABLED = False


class ProductionConfig(Config):
    """Production: Postgres, explicit secrets, scheduler on unless disabled."""

    SQLALCHEMY_DATABASE_URI = _database_url(None)
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SCHEDULER_ENABLED = _env_flag("SCHEDULER_ENABLED", True)
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": _env_int("DB_POOL_SIZE", 5),
        "max_overflow": _env_int("DB_MAX_OVERFLOW", 10),
        "pool_recycle": 300,
        # sweeps lock rows one at a time; a stuck statement should not hold them
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        missing = [name for name, value in (
            ("DATABASE_URL", self.SQLALCHEMY_DATABASE_URI),
            ("SECRET_KEY", os.getenv("SECRET_KEY")),
        ) if not value]
        if missing:
            raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
