"""JSON error envelope used by every blueprint.

    {"error": "<human message>", "code": "ERR_...", "details": {...}}

``details`` is omitted when empty. The HTTP status follows from the code
unless the caller overrides it:

    return api_error(E.VALIDATION_REQUIRED, "reason is required")
    return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Error codes clients can switch on."""

    # 400: the request itself is malformed
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # 422: well-formed, but a workflow rule refuses it
    RULE_VIOLATION = "ERR_RULE_VIOLATION"

    NOT_FOUND = "ERR_NOT_FOUND"
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"

    # 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


STATUS_FOR_CODE: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.RULE_VIOLATION: 422,
    E.NOT_FOUND: 404,
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(code: str, message: str, *, status: int | None = None,
              details: dict | None = None):
    """Build ``(response, status)`` for a Flask view to return."""
    payload: dict = {"error": message, "code": code}
    if details:
        payload["details"] = details
    return jsonify(payload), status or STATUS_FOR_CODE.get(code, 400)
