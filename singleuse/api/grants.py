"""Grant issuance endpoints.

Mounts served by this module:

- POST /grants
    - Body: {"resourcePath": str, "ttl": int (seconds, optional)}
    - 201: {"signedUrl", "id", "resourcePath", "expiresAt"}
    - 400: InvalidTtlError / InvalidResourcePathError
    - 500/503: IssuanceFailedError
- GET /grants?file=<path>&timeout=<seconds>
    - Query-string form of the same operation for simple clients.
- GET /grants/<grant_id>
    - Diagnostics lookup. Never consumes the grant. Only served when
      ISSUER_API_KEY is configured.

When ISSUER_API_KEY is configured, callers must send it as a bearer token.
"""

import hmac
from functools import wraps

import structlog
from flask import current_app, jsonify, request

from singleuse import limiter
from singleuse.api import api_bp
from singleuse.error_utils import error_response
from singleuse.issuer import (
    InvalidResourcePathError,
    InvalidTtlError,
    IssuanceFailedError,
)
from singleuse.services import build_issuer, grant_store
from singleuse.store import StoreUnavailable

logger = structlog.get_logger(__name__)


def require_issuer_key(f):
    """Decorator to require ISSUER_API_KEY when one is configured."""

    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected_key = (current_app.config.get("ISSUER_API_KEY") or "").strip()
        if not expected_key:
            return f(*args, **kwargs)

        auth_header = request.headers.get("Authorization", "")
        provided_key = ""
        if auth_header.startswith("Bearer "):
            provided_key = auth_header[7:].strip()

        if not hmac.compare_digest(provided_key.encode(), expected_key.encode()):
            logger.warning("issuer_auth_failed", remote_addr=request.remote_addr)
            return error_response("Unauthorized", "Unauthorized", 401)

        return f(*args, **kwargs)

    return decorated_function


def _issue_limit():
    return current_app.config.get("RATELIMIT_ISSUE", "30 per minute")


def _issue(resource_path, ttl):
    try:
        signed = build_issuer().issue(resource_path, ttl)
    except (InvalidTtlError, InvalidResourcePathError) as e:
        return error_response(type(e).__name__, str(e), 400)
    except IssuanceFailedError as e:
        status = 503 if e.retryable else 500
        return error_response("IssuanceFailedError", str(e), status)
    return jsonify(signed.to_dict()), 201


@api_bp.route("/grants", methods=["POST"])
@limiter.limit(_issue_limit)
@require_issuer_key
def create_grant():
    """Issue a single-use grant and return its signed URL."""
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return error_response("BadRequest", "Expected a JSON object body", 400)

    ttl = payload.get("ttl")
    if ttl is None:
        ttl = current_app.config.get("GRANT_DEFAULT_TTL", 300)
    return _issue(payload.get("resourcePath"), ttl)


@api_bp.route("/grants", methods=["GET"])
@limiter.limit(_issue_limit)
@require_issuer_key
def create_grant_from_query():
    """Query-string variant of POST /grants (``file`` and ``timeout``)."""
    resource_path = request.args.get("file")
    raw_timeout = request.args.get("timeout")
    if raw_timeout is None:
        ttl = current_app.config.get("GRANT_DEFAULT_TTL", 300)
    else:
        try:
            ttl = int(raw_timeout)
        except ValueError:
            return error_response("InvalidTtlError", "timeout must be an integer", 400)
    return _issue(resource_path, ttl)


@api_bp.route("/grants/<grant_id>", methods=["GET"])
@require_issuer_key
def get_grant(grant_id: str):
    """Return the stored grant record for diagnostics."""
    # Without a key this would let anyone probe grant ids
    if not (current_app.config.get("ISSUER_API_KEY") or "").strip():
        return error_response("NotFound", "Not found", 404)
    try:
        grant = grant_store().get(grant_id)
    except StoreUnavailable:
        return error_response("StoreUnavailable", "Grant store unavailable", 503)
    if grant is None:
        return error_response("NotFound", "Grant not found", 404)
    return jsonify(grant.to_dict())
