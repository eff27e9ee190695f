"""
Compliance Workflow & Scoring Engine
CAPA Blueprint.

Endpoints:
    GET    /api/v1/capas                                   scoped CAPA list
    GET    /api/v1/capas/<id>                              CAPA + activity log
    GET    /api/v1/capas/<id>/activity                     activity log
    POST   /api/v1/capas/<id>/start                        open | escalated → in_progress
    POST   /api/v1/capas/<id>/submit                       → pending_verification (gated)
    POST   /api/v1/capas/<id>/resubmit                     rejected → pending_verification
    POST   /api/v1/capas/<id>/evidence                     attach evidence (reference or file)
    DELETE /api/v1/capas/<id>/evidence                     detach evidence reference
    PUT    /api/v1/capas/<id>/notes                        replace notes
    POST   /api/v1/capas/<id>/sub-tasks                    add sub-task
    PATCH  /api/v1/capas/<id>/sub-tasks/<sid>              advance sub-task status
    POST   /api/v1/capas/<id>/sub-tasks/<sid>/evidence     attach sub-task evidence
    DELETE /api/v1/capas/<id>/sub-tasks/<sid>              delete pending sub-task
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
from compliance.integrations.evidence_store import get_evidence_store
from compliance.services import capa_service
from compliance.utils.errors import E, api_error

logger = logging.getLogger(__name__)

capa_bp = Blueprint("capas", __name__, url_prefix="/api/v1/capas")
register_error_handlers(capa_bp)


def _visible_capa(scope, capa_id):
    capa = capa_service.list_capas(scope).filter_by(id=capa_id).first()
    if capa is None:
        raise NotFoundError(resource="CAPA", resource_id=capa_id)
    return capa


def _evidence_reference(owner_id, item_id):
    """Reference from a multipart ``file`` upload or a JSON ``reference``."""
    upload = request.files.get("file")
    if upload is not None:
        return get_evidence_store().upload(owner_id, item_id, upload).reference
    return (json_body().get("reference") or "").strip()


@capa_bp.route("", methods=["GET"])
def list_capas():
    scope = current_scope()
    q = capa_service.list_capas(
        scope,
        status=request.args.get("status"),
        priority=request.args.get("priority"),
        entity_type=request.args.get("entity_type"),
        audit_id=request.args.get("audit_id", type=int),
        assigned_to=request.args.get("assigned_to", type=int),
    )
    items, total = paginate_query(q)
    return jsonify({"items": [c.to_dict() for c in items], "total": total})


@capa_bp.route("/<int:capa_id>", methods=["GET"])
def get_capa(capa_id):
    capa = _visible_capa(current_scope(), capa_id)
    return jsonify(capa.to_dict(include_activity=True))


@capa_bp.route("/<int:capa_id>/activity", methods=["GET"])
def get_activity(capa_id):
    _visible_capa(current_scope(), capa_id)
    entries = capa_service.get_activity(capa_id)
    return jsonify({"items": [a.to_dict() for a in entries], "total": len(entries)})


# ═════════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═════════════════════════════════════════════════════════════════════════════


@capa_bp.route("/<int:capa_id>/start", methods=["POST"])
def start_capa(capa_id):
    scope = require("capa_work")
    _visible_capa(scope, capa_id)
    return jsonify(capa_service.start_capa(capa_id, scope.user_id).to_dict())


@capa_bp.route("/<int:capa_id>/submit", methods=["POST"])
def submit_capa(capa_id):
    scope = require("capa_work")
    _visible_capa(scope, capa_id)
    return jsonify(capa_service.submit_for_verification(capa_id, scope.user_id).to_dict())


@capa_bp.route("/<int:capa_id>/resubmit", methods=["POST"])
def resubmit_capa(capa_id):
    scope = require("capa_work")
    _visible_capa(scope, capa_id)
    return jsonify(capa_service.resubmit_capa(capa_id, scope.user_id).to_dict())


@capa_bp.route("/<int:capa_id>/evidence", methods=["POST"])
def add_evidence(capa_id):
    scope = require("capa_work")
    _visible_capa(scope, capa_id)
    reference = _evidence_reference(f"capa-{capa_id}", "capa")
    if not reference:
        return api_error(E.VALIDATION_REQUIRED, "Provide a file or an evidence reference")
    capa = capa_service.add_evidence(capa_id, scope.user_id, reference)
    return jsonify(capa.to_dict()), 201


@capa_bp.route("/<int:capa_id>/evidence", methods=["DELETE"])
def remove_evidence(capa_id):
    scope = require("capa_work")
    _visible_capa(scope, capa_id)
    reference = (json_body().get("reference") or "").strip()
    if not reference:
        return api_error(E.VALIDATION_REQUIRED, "reference is required")
    return jsonify(capa_service.remove_evidence(capa_id, scope.user_id, reference).to_dict())


@capa_bp.route("/<int:capa_id>/notes", methods=["PUT"])
def update_notes(capa_id):
    scope = require("capa_work")
    _visible_capa(scope, capa_id)
    capa = capa_service.update_notes(capa_id, scope.user_id, json_body().get("notes", ""))
    return jsonify(capa.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# Sub-tasks
# ═════════════════════════════════════════════════════════════════════════════


@capa_bp.route("/<int:capa_id>/sub-tasks", methods=["POST"])
def add_sub_task(capa_id):
    scope = require("capa_work")
    _visible_capa(scope, capa_id)
    data = json_body()
    assignee = data.get("assigned_to_user_id")
    if not assignee:
        return api_error(E.VALIDATION_REQUIRED, "assigned_to_user_id is required")
    task = capa_service.add_sub_task(capa_id, scope.user_id, assignee, data.get("description", ""))
    return jsonify(task), 201


@capa_bp.route("/<int:capa_id>/sub-tasks/<sub_task_id>", methods=["PATCH"])
def update_sub_task(capa_id, sub_task_id):
    scope = require("subtask_work")
    _visible_capa(scope, capa_id)
    status = json_body().get("status")
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    task = capa_service.update_sub_task_status(capa_id, sub_task_id, scope.user_id, status)
    return jsonify(task)


@capa_bp.route("/<int:capa_id>/sub-tasks/<sub_task_id>/evidence", methods=["POST"])
def add_sub_task_evidence(capa_id, sub_task_id):
    scope = require("subtask_work")
    _visible_capa(scope, capa_id)
    reference = _evidence_reference(f"capa-{capa_id}", sub_task_id)
    if not reference:
        return api_error(E.VALIDATION_REQUIRED, "Provide a file or an evidence reference")
    task = capa_service.add_sub_task_evidence(capa_id, sub_task_id, scope.user_id, reference)
    return jsonify(task), 201


@capa_bp.route("/<int:capa_id>/sub-tasks/<sub_task_id>", methods=["DELETE"])
def delete_sub_task(capa_id, sub_task_id):
    scope = require("capa_work")
    _visible_capa(scope, capa_id)
    capa_service.delete_sub_task(capa_id, sub_task_id, scope.user_id)
    return jsonify({"deleted": True})
