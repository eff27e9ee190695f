"""
Compliance Workflow & Scoring Engine
Verification Blueprint.

Endpoints:
    GET  /api/v1/verification/queue                    audits awaiting verification
    POST /api/v1/verification/capas/<id>/approve       close a CAPA
    POST /api/v1/verification/capas/<id>/reject        send a CAPA back (reason required)
    POST /api/v1/verification/audits/<id>/approve      finalize an audit
    POST /api/v1/verification/audits/<id>/flag         flag an audit (reason required)

Records outside the caller's scope answer 404.
"""

from flask import Blueprint, jsonify

from compliance.blueprints import json_body, register_error_handlers, require
from compliance.core.exceptions import NotFoundError
from compliance.services import audit_service, capa_service, verification
from compliance.utils.errors import E, api_error

verification_bp = Blueprint("verification", __name__, url_prefix="/api/v1/verification")
register_error_handlers(verification_bp)


def _visible_capa(scope, capa_id):
    if capa_service.list_capas(scope).filter_by(id=capa_id).first() is None:
        raise NotFoundError(resource="CAPA", resource_id=capa_id)


def _visible_audit(scope, audit_id):
    if audit_service.list_audits(scope).filter_by(id=audit_id).first() is None:
        raise NotFoundError(resource="Audit", resource_id=audit_id)


@verification_bp.route("/queue", methods=["GET"])
def get_queue():
    scope = require("audit_verify")
    queue = verification.get_verification_queue(scope)
    return jsonify({"items": queue, "total": len(queue)})


@verification_bp.route("/capas/<int:capa_id>/approve", methods=["POST"])
def approve_capa(capa_id):
    scope = require("capa_verify")
    _visible_capa(scope, capa_id)
    capa = verification.approve_capa(capa_id, scope.user_id, json_body().get("notes", ""))
    return jsonify(capa.to_dict())


@verification_bp.route("/capas/<int:capa_id>/reject", methods=["POST"])
def reject_capa(capa_id):
    scope = require("capa_verify")
    _visible_capa(scope, capa_id)
    reason = (json_body().get("reason") or "").strip()
    if not reason:
        return api_error(E.VALIDATION_REQUIRED, "reason is required")
    capa = verification.reject_capa(capa_id, scope.user_id, reason)
    return jsonify(capa.to_dict())


@verification_bp.route("/audits/<int:audit_id>/approve", methods=["POST"])
def approve_audit(audit_id):
    scope = require("audit_verify")
    _visible_audit(scope, audit_id)
    audit = verification.approve_audit(audit_id, scope.user_id)
    return jsonify(audit.to_dict())


@verification_bp.route("/audits/<int:audit_id>/flag", methods=["POST"])
def flag_audit(audit_id):
    scope = require("audit_verify")
    _visible_audit(scope, audit_id)
    reason = (json_body().get("reason") or "").strip()
    if not reason:
        return api_error(E.VALIDATION_REQUIRED, "reason is required")
    audit = verification.flag_audit(audit_id, scope.user_id, reason)
    return jsonify(audit.to_dict())
