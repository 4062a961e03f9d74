"""
JSON error bodies and error logging for the API.

Domain failures are answered with ``error_response(code, message, status)``;
``code`` is the stable machine-readable name (``InvalidTtlError``,
``IssuanceFailedError`` ...). Anything unexpected goes through
``handle_api_exception`` so the full context is logged and the caller only
sees a generic message.
"""

import logging
import sys
from typing import Any

from flask import g, has_app_context, jsonify


def _exception_fields(exc_info) -> dict:
    if isinstance(exc_info, BaseException):
        exc = exc_info
    elif isinstance(exc_info, tuple):
        exc = exc_info[1]
    elif exc_info is True:
        exc = sys.exc_info()[1]
    else:
        exc = None
    if exc is None:
        return {}
    return {"exception_type": type(exc).__name__, "exception_message": str(exc)}


def safe_log_error(
    logger: logging.Logger,
    message: str,
    exc_info: bool | BaseException | tuple | None = True,
    level: int = logging.ERROR,
    **extra_context: Any,
) -> None:
    """Log ``message`` with exception details and ``extra_context`` as structured extras."""
    extra = {"error_context": extra_context, **_exception_fields(exc_info)}
    if has_app_context() and g.get("request_id"):
        extra["request_id"] = g.request_id
    logger.log(level, message, exc_info=exc_info or None, extra=extra)


def error_response(code: str, message: str, status_code: int):
    """Build a JSON error response with a stable machine-readable code."""
    body = {"success": False, "error": code, "message": message}
    request_id = g.get("request_id") if has_app_context() else None
    if request_id:
        body["request_id"] = request_id
    return jsonify(body), status_code


def handle_api_exception(
    logger: logging.Logger,
    message: str,
    status_code: int = 500,
    public_message: str | None = None,
    exc_info: bool | BaseException | tuple | None = True,
    **extra_context: Any,
):
    """Log an unexpected failure and return a generic JSON error."""
    safe_log_error(logger, message, exc_info=exc_info, **extra_context)
    if public_message is None:
        public_message = (
            "An internal error occurred. Please try again later."
            if status_code >= 500
            else "The request could not be completed."
        )
    return error_response("InternalError", public_message, status_code)
