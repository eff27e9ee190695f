"""
Compliance Workflow & Scoring Engine
Evidence Blueprint.

Endpoints:
    POST /api/v1/evidence        multipart upload (file, owner_id, item_id) → reference
    GET  /api/v1/evidence/url    ?ref=... → short-lived signed URL
    GET  /api/v1/evidence/file   ?ref=&expires=&sig= → file content (signature checked)
"""

import logging

from flask import Blueprint, jsonify, request, send_file

from compliance.blueprints import current_scope, register_error_handlers
from compliance.integrations.evidence_store import get_evidence_store, verify_signature
from compliance.utils.errors import E, api_error

logger = logging.getLogger(__name__)

evidence_bp = Blueprint("evidence", __name__, url_prefix="/api/v1/evidence")
register_error_handlers(evidence_bp)


@evidence_bp.route("", methods=["POST"])
def upload():
    current_scope()
    upload_file = request.files.get("file")
    if upload_file is None:
        return api_error(E.VALIDATION_REQUIRED, "file is required")
    owner_id = request.form.get("owner_id", "")
    item_id = request.form.get("item_id", "")
    result = get_evidence_store().upload(owner_id, item_id, upload_file)
    return jsonify({
        "reference": result.reference,
        "sha256": result.sha256,
        "size_bytes": result.size_bytes,
        "filename": result.filename,
    }), 201


@evidence_bp.route("/url", methods=["GET"])
def resolve():
    current_scope()
    reference = request.args.get("ref", "")
    if not reference:
        return api_error(E.VALIDATION_REQUIRED, "ref is required")
    signed = get_evidence_store().resolve(reference)
    return jsonify({"url": signed.url, "expires": signed.expires})


@evidence_bp.route("/file", methods=["GET"])
def fetch():
    """Serve a file behind a signed URL. The signature is the credential."""
    reference = request.args.get("ref", "")
    if not verify_signature(reference, request.args.get("expires"), request.args.get("sig")):
        return api_error(E.FORBIDDEN, "Invalid or expired evidence link")
    stream = get_evidence_store().open(reference)
    return send_file(stream, download_name=reference.rsplit("/", 1)[-1])
