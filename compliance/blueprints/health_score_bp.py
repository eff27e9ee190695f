"""
Compliance Workflow & Scoring Engine
Health Score Blueprint.

Endpoints:
    GET  /api/v1/health-scores/<entity_type>/<id>               current score record
    POST /api/v1/health-scores/<entity_type>/<id>/recalculate   recompute now
"""

from flask import Blueprint, jsonify

from compliance.blueprints import current_scope, register_error_handlers, require
from compliance.services import health_score

health_score_bp = Blueprint("health_scores", __name__, url_prefix="/api/v1/health-scores")
register_error_handlers(health_score_bp)


@health_score_bp.route("/<entity_type>/<int:entity_id>", methods=["GET"])
def get_score(entity_type, entity_id):
    current_scope()
    return jsonify(health_score.get_health_score(entity_type, entity_id))


@health_score_bp.route("/<entity_type>/<int:entity_id>/recalculate", methods=["POST"])
def recalculate(entity_type, entity_id):
    require("health_recalculate")
    health_score.recalculate_health_score(entity_type, entity_id)
    return jsonify(health_score.get_health_score(entity_type, entity_id))
