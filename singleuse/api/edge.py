"""Access validation endpoint for edge workers and reverse proxies.

Mounts served by this module:

- POST /edge/validate
    - Body: {"url": "<signed URL as requested>"}
    - 200: {"decision": "allow", "id": ...}  -> continue to fetch
    - 403: {"decision": "deny", "reason": "denied"}
    - 503: {"decision": "deny", "reason": "unavailable"}

Each call consumes the grant on success. Reasons are collapsed unless
EXPOSE_DENY_REASONS is enabled.
"""

from flask import current_app, jsonify, request

from singleuse.api import api_bp
from singleuse.edge import http_status, public_reason
from singleuse.error_utils import error_response
from singleuse.services import build_validator
from singleuse.validator import AccessRequest


@api_bp.route("/edge/validate", methods=["POST"])
def edge_validate():
    """Validate and redeem a signed URL."""
    payload = request.get_json(silent=True)
    url = payload.get("url") if isinstance(payload, dict) else None
    if not isinstance(url, str) or not url:
        return error_response("BadRequest", "Expected {\"url\": str}", 400)

    decision = build_validator().validate(AccessRequest.from_url(url))
    if decision.allowed:
        return jsonify({"decision": "allow", "id": decision.grant_id}), 200

    reason = public_reason(decision, bool(current_app.config.get("EXPOSE_DENY_REASONS")))
    response = jsonify({"decision": "deny", "reason": reason})
    response.headers["Cache-Control"] = "no-store"
    return response, http_status(decision)
