"""Viewer-request hook for the content-delivery edge.

``handler(event, context)`` receives a CloudFront viewer-request event,
validates the signed URL and either returns the request unchanged (the fetch
continues) or a response that ends it.

Denials are reported to the caller as a coarse category so that responses do
not reveal whether an id was never issued, already used or expired. The exact
reason is logged. ``TemporarilyUnavailable`` keeps its own 503 status so
clients know a retry with a fresh grant may work.
"""
from urllib.parse import urlencode

import structlog

from singleuse.services import build_validator
from singleuse.validator import AccessRequest, Decision, DenyReason

logger = structlog.get_logger(__name__)

DENIED = "denied"
UNAVAILABLE = "unavailable"

_app = None


def get_app():
    """Create the Flask app once per process; edge runtimes reuse processes."""
    global _app
    if _app is None:
        from singleuse import create_app

        _app = create_app(role="edge")
    return _app


def public_reason(decision: Decision, expose: bool = False) -> str | None:
    if decision.allowed:
        return None
    if expose:
        return decision.reason.value
    if decision.reason is DenyReason.TEMPORARILY_UNAVAILABLE:
        return UNAVAILABLE
    return DENIED


def http_status(decision: Decision) -> int:
    if decision.allowed:
        return 200
    if decision.reason is DenyReason.TEMPORARILY_UNAVAILABLE:
        return 503
    return 403


def _response(status: int, description: str, headers: dict | None = None) -> dict:
    out_headers = {"cache-control": [{"key": "Cache-Control", "value": "no-store"}]}
    out_headers.update(headers or {})
    return {
        "status": str(status),
        "statusDescription": description,
        "headers": out_headers,
    }


def bad_request_response(detail: str) -> dict:
    return _response(400, f"Bad Request: {detail}")


def deny_response(decision: Decision, config) -> dict:
    reason = public_reason(decision, bool(config.get("EXPOSE_DENY_REASONS")))
    status = http_status(decision)
    redirect_url = config.get("REAUTH_REDIRECT_URL")
    if redirect_url and status == 403:
        location = f"{redirect_url}?{urlencode({'err': reason})}"
        return _response(
            302, "Found", {"location": [{"key": "Location", "value": location}]}
        )
    if status == 503:
        return _response(503, "Service Unavailable")
    return _response(403, "Forbidden")


def _extract_request(event) -> dict | None:
    try:
        request = event["Records"][0]["cf"]["request"]
    except (KeyError, IndexError, TypeError):
        return None
    if not isinstance(request, dict) or "uri" not in request:
        return None
    return request


def validate_event(event, app) -> dict:
    """Validate one viewer-request event inside ``app``'s context."""
    request = _extract_request(event)
    if request is None:
        logger.warning("edge_request_rejected", detail="invalid event shape")
        return bad_request_response("Invalid parameters")

    access = AccessRequest(path=request["uri"], query=request.get("querystring") or "")
    decision = build_validator(app).validate(access)
    if decision.allowed:
        return request
    return deny_response(decision, app.config)


def handler(event, context=None):
    app = get_app()
    with app.app_context():
        return validate_event(event, app)
