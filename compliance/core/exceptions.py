"""
Engine-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from compliance.core.exceptions import NotFoundError, PermissionDenied, ValidationError

    raise NotFoundError(resource="CAPA", resource_id=42)
    raise ValidationError("All sub-tasks must be completed first.")
"""


class NotFoundError(Exception):
    """Raised when a referenced record does not exist.

    Reported distinctly from validation failures so callers can tell
    "this doesn't exist" apart from "can't do this yet".

    Args:
        resource: Human-readable model/entity name (e.g. "Audit", "CAPA").
        resource_id: The key that was looked up. Included in logs, not in HTTP response.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when a transition or input violates a business rule.

    The message is the user-displayable reason (e.g. missing evidence,
    incomplete sub-tasks, wrong source state). The operation that raised it
    has made no state change.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InvariantViolation(Exception):
    """Raised when stored data contradicts an engine invariant.

    Signals a programming-logic bug (e.g. a second CAPA for one Finding),
    never a user error. Blueprints do not translate it; it surfaces as 500.
    """


class PermissionDenied(Exception):
    """Raised when the caller's role does not allow an operation.

    Maps to HTTP 403 in blueprint error handlers.
    """

    def __init__(self, user_id, role, operation) -> None:
        super().__init__(f"Role '{role}' may not perform '{operation}'")
        self.user_id = user_id
        self.role = role
        self.operation = operation


class Unauthenticated(Exception):
    """Raised when a request carries no usable caller identity (HTTP 401)."""
