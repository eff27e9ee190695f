"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in compliance/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from compliance.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

SWEEP_LIMIT = "6/minute"
WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Sweep / scheduler triggers: 6/minute (full table scans)
        - Workflow endpoints:         60/minute
        - Health-score reads:         200/minute
        - Health probes:              exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("sweeps")
    if bp:
        limiter.limit(SWEEP_LIMIT)(bp)

    for bp_name in ("audit_plans", "audits", "capas", "verification", "evidence",
                    "notifications"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("health_scores")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured: sweeps: %s, workflow: %s, scores: %s",
        SWEEP_LIMIT, WRITE_LIMIT, READ_LIMIT,
    )
