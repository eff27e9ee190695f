"""
Compliance Workflow & Scoring Engine
Notification Blueprint.

Endpoints:
    GET  /api/v1/notifications              caller's notifications (?unread_only=1)
    POST /api/v1/notifications/<id>/read    mark one notification read
"""

from flask import Blueprint, jsonify, request

from compliance.blueprints import current_scope, register_error_handlers
from compliance.services.notification import NotificationService
from compliance.utils.errors import E, api_error

notification_bp = Blueprint("notifications", __name__, url_prefix="/api/v1/notifications")
register_error_handlers(notification_bp)


@notification_bp.route("", methods=["GET"])
def list_notifications():
    scope = current_scope()
    unread_only = request.args.get("unread_only", "").lower() in ("1", "true", "yes")
    try:
        limit = min(int(request.args.get("limit", 50)), 200)
        offset = max(int(request.args.get("offset", 0)), 0)
    except ValueError:
        return api_error(E.VALIDATION_INVALID, "limit and offset must be integers")
    items, total = NotificationService.list_for_user(
        scope.user_id, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread_count": NotificationService.unread_count(scope.user_id),
    })


@notification_bp.route("/<int:notification_id>/read", methods=["POST"])
def mark_read(notification_id):
    scope = current_scope()
    notif = NotificationService.mark_read(notification_id, scope.user_id)
    if notif is None:
        return api_error(E.NOT_FOUND, f"Notification id={notification_id} not found")
    return jsonify(notif.to_dict())
