"""
Compliance Workflow & Scoring Engine
Blueprint helpers: pagination, caller scope and shared error handlers.

Every API request identifies its caller with an ``X-User-Id`` header. The
caller's RoleScope is resolved once per request and cached on ``g``.
"""

import logging

from flask import g, request
from sqlalchemy.exc import SQLAlchemyError

from compliance.core.exceptions import (
    NotFoundError,
    PermissionDenied,
    Unauthenticated,
    ValidationError,
)
from compliance.models import db
from compliance.services.role_scope import resolve_scope
from compliance.utils.errors import E, api_error

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"


def _int_arg(name, default):
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default


def paginate_query(query, default_limit=200, max_limit=1000):
    """``(items, total)`` for ``?limit=&offset=``; limit is capped at ``max_limit``."""
    total = query.count()
    limit = min(_int_arg("limit", default_limit), max_limit)
    offset = max(_int_arg("offset", 0), 0)
    return query.limit(limit).offset(offset).all(), total


def current_scope():
    """The caller's RoleScope, resolved from ``X-User-Id`` once per request."""
    raw = request.headers.get(USER_HEADER, "").strip()
    if not raw:
        raise Unauthenticated(f"{USER_HEADER} header is required")
    try:
        user_id = int(raw)
    except ValueError:
        raise Unauthenticated(f"{USER_HEADER} must be a numeric user id") from None
    # g outlives the request when an app context is reused (CLI, tests)
    cached = g.get("scope")
    if cached is not None and cached.user_id == user_id:
        return cached
    try:
        g.scope = resolve_scope(user_id)
    except NotFoundError:
        raise Unauthenticated(f"Unknown user {user_id}") from None
    return g.scope


def require(operation):
    """Resolve the caller's scope and assert it may perform ``operation``."""
    scope = current_scope()
    scope.require(operation)
    return scope


def json_body():
    return request.get_json(silent=True) or {}


def register_error_handlers(bp):
    """Map engine exceptions to JSON responses for one blueprint."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error):
        return api_error(E.RULE_VIOLATION, error.message, details=error.details)

    @bp.errorhandler(Unauthenticated)
    def _handle_unauthenticated(error):
        return api_error(E.UNAUTHENTICATED, str(error))

    @bp.errorhandler(PermissionDenied)
    def _handle_forbidden(error):
        return api_error(E.FORBIDDEN, str(error))

    @bp.errorhandler(SQLAlchemyError)
    def _handle_db_error(error):
        db.session.rollback()
        logger.exception("Database error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.DATABASE, "Database error")

    return bp
