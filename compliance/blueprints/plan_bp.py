"""
Compliance Workflow & Scoring Engine
Audit Plan Blueprint.

Endpoints:
    GET    /api/v1/audit-plans                   list plans
    POST   /api/v1/audit-plans                   create plan (draft)
    GET    /api/v1/audit-plans/<id>              read plan + next audit date
    PUT    /api/v1/audit-plans/<id>              update plan
    DELETE /api/v1/audit-plans/<id>              delete draft plan
    POST   /api/v1/audit-plans/<id>/activate     activate + expand
    POST   /api/v1/audit-plans/<id>/expand       expand an active plan
    POST   /api/v1/audit-plans/<id>/pause        pause plan
"""

import logging

from flask import Blueprint, jsonify, request

from compliance.blueprints import current_scope, json_body, register_error_handlers, require
from compliance.services import audit_scheduler

logger = logging.getLogger(__name__)

plan_bp = Blueprint("audit_plans", __name__, url_prefix="/api/v1/audit-plans")
register_error_handlers(plan_bp)


@plan_bp.route("", methods=["GET"])
def list_plans():
    current_scope()
    plans = audit_scheduler.list_plans(
        status=request.args.get("status"),
        entity_type=request.args.get("entity_type"),
    )
    return jsonify({"items": [p.to_dict() for p in plans], "total": len(plans)})


@plan_bp.route("", methods=["POST"])
def create_plan():
    scope = require("plan_manage")
    plan = audit_scheduler.create_plan(json_body(), created_by=scope.user_id)
    return jsonify(plan.to_dict()), 201


@plan_bp.route("/<int:plan_id>", methods=["GET"])
def get_plan(plan_id):
    current_scope()
    plan = audit_scheduler.get_plan(plan_id)
    d = plan.to_dict()
    next_date = audit_scheduler.get_next_audit_date(plan_id)
    d["next_audit_date"] = next_date.isoformat() if next_date else None
    d["audit_count"] = plan.audits.count()
    return jsonify(d)


@plan_bp.route("/<int:plan_id>", methods=["PUT"])
def update_plan(plan_id):
    require("plan_manage")
    plan = audit_scheduler.update_plan(plan_id, json_body())
    return jsonify(plan.to_dict())


@plan_bp.route("/<int:plan_id>", methods=["DELETE"])
def delete_plan(plan_id):
    require("plan_manage")
    audit_scheduler.delete_plan(plan_id)
    return jsonify({"deleted": True}), 200


@plan_bp.route("/<int:plan_id>/activate", methods=["POST"])
def activate_plan(plan_id):
    require("plan_manage")
    return jsonify(audit_scheduler.activate_plan(plan_id))


@plan_bp.route("/<int:plan_id>/expand", methods=["POST"])
def expand_plan(plan_id):
    require("plan_manage")
    return jsonify(audit_scheduler.expand_plan(plan_id))


@plan_bp.route("/<int:plan_id>/pause", methods=["POST"])
def pause_plan(plan_id):
    require("plan_manage")
    plan = audit_scheduler.pause_plan(plan_id)
    return jsonify(plan.to_dict())
