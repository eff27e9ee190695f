"""
Compliance Workflow & Scoring Engine
Audit Blueprint.

Endpoints:
    GET  /api/v1/audits                      scoped, paginated audit list
    POST /api/v1/audits                      create ad-hoc audit
    GET  /api/v1/audits/<id>                 audit + results, findings, CAPAs
    POST /api/v1/audits/<id>/start           scheduled | overdue → in_progress
    POST /api/v1/audits/<id>/responses       record checklist responses
    POST /api/v1/audits/<id>/submit          submit checklist (generates CAPAs)
    POST /api/v1/audits/<id>/cancel          cancel
"""

import logging

from flask import Blueprint, jsonify, request

from compliance.blueprints import (
    current_scope,
    json_body,
    paginate_query,
    register_error_handlers,
    require,
)
from compliance.core.exceptions import NotFoundError
from compliance.services import audit_service
from compliance.utils.errors import E, api_error

logger = logging.getLogger(__name__)

audit_bp = Blueprint("audits", __name__, url_prefix="/api/v1/audits")
register_error_handlers(audit_bp)


def _visible_audit(scope, audit_id):
    """Load an audit the caller can see; others look like missing records."""
    audit = audit_service.list_audits(scope).filter_by(id=audit_id).first()
    if audit is None:
        raise NotFoundError(resource="Audit", resource_id=audit_id)
    return audit


@audit_bp.route("", methods=["GET"])
def list_audits():
    scope = current_scope()
    q = audit_service.list_audits(
        scope,
        status=request.args.get("status"),
        entity_type=request.args.get("entity_type"),
        entity_id=request.args.get("entity_id", type=int),
        auditor_id=request.args.get("auditor_id", type=int),
    )
    items, total = paginate_query(q)
    return jsonify({"items": [a.to_dict() for a in items], "total": total})


@audit_bp.route("", methods=["POST"])
def create_audit():
    scope = require("audit_create")
    data = json_body()
    missing = [f for f in ("entity_type", "entity_id", "template_id", "scheduled_date")
               if data.get(f) in (None, "")]
    if missing:
        return api_error(E.VALIDATION_REQUIRED, f"Missing fields: {', '.join(missing)}",
                         details={f: "Required" for f in missing})
    audit = audit_service.create_audit(data, created_by=scope.user_id)
    return jsonify(audit.to_dict()), 201


@audit_bp.route("/<int:audit_id>", methods=["GET"])
def get_audit(audit_id):
    scope = current_scope()
    _visible_audit(scope, audit_id)
    return jsonify(audit_service.audit_detail(audit_id))


@audit_bp.route("/<int:audit_id>/start", methods=["POST"])
def start_audit(audit_id):
    scope = require("audit_execute")
    _visible_audit(scope, audit_id)
    audit = audit_service.start_audit(audit_id)
    return jsonify(audit.to_dict())


@audit_bp.route("/<int:audit_id>/responses", methods=["POST"])
def record_responses(audit_id):
    scope = require("audit_execute")
    _visible_audit(scope, audit_id)
    data = json_body()
    responses = data.get("responses")
    if not isinstance(responses, list):
        return api_error(E.VALIDATION_INVALID, "responses must be a list")
    result = audit_service.record_checklist_responses(
        audit_id, responses, submit=bool(data.get("submit")),
    )
    return jsonify(result)


@audit_bp.route("/<int:audit_id>/submit", methods=["POST"])
def submit_audit(audit_id):
    scope = require("audit_execute")
    _visible_audit(scope, audit_id)
    return jsonify(audit_service.submit_audit(audit_id))


@audit_bp.route("/<int:audit_id>/cancel", methods=["POST"])
def cancel_audit(audit_id):
    require("audit_create")
    audit = audit_service.cancel_audit(audit_id, reason=json_body().get("reason", ""))
    return jsonify(audit.to_dict())
