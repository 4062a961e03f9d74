"""
structlog setup shared by the API process, the edge hook and Celery workers.

Every process writes one JSON file named after its role (``web.json``,
``edge.json``, ``worker.json``) plus a shared ``error.json`` for WARNING and
above. Signatures, keys and tokens are redacted before any handler sees them,
including the ``Signature=`` parameter of signed URLs that end up in events.

    configure_structlog(app, role="web")
    configure_structlog_celery(instance_path)

    logger = structlog.get_logger(__name__)
    logger.info("access_denied", reason="Expired", grant_id=grant_id)
"""
import logging
import os
import re
import sys
from logging.handlers import RotatingFileHandler

import structlog
from pythonjsonlogger.json import JsonFormatter

SENSITIVE_KEYS = {
    "password",
    "api_key",
    "secret",
    "token",
    "signature",
    "authorization",
    "cookie",
}
REDACTED = "***REDACTED***"

_SIGNATURE_PARAM = re.compile(r"(Signature=)[^&\s]+")

# 20 MB per file, 5 backups
_MAX_BYTES = 20 * 1024 * 1024
_BACKUP_COUNT = 5

_configured = False


def get_log_dir(instance_path: str, override: str | None = None) -> str:
    """Return (and create) the log directory: override, then LOG_DIR, then <instance>/logs."""
    log_dir = override or os.environ.get("LOG_DIR") or os.path.join(instance_path, "logs")
    os.makedirs(log_dir, exist_ok=True)
    return log_dir


def get_log_level(app_config: dict | None = None) -> int:
    name = (app_config or {}).get("LOG_LEVEL") or os.environ.get("LOG_LEVEL", "INFO")
    return getattr(logging, str(name).upper(), logging.INFO)


def _add_request_context(logger, method_name, event_dict):
    from flask import g, has_request_context, request

    if has_request_context():
        event_dict.setdefault("request_id", g.get("request_id"))
        event_dict.setdefault("path", request.path)
        event_dict.setdefault("remote_addr", request.remote_addr)
    return event_dict


def _add_celery_context(logger, method_name, event_dict):
    from celery import current_task

    if current_task and current_task.request.id:
        event_dict.setdefault("task_id", current_task.request.id)
        event_dict.setdefault("task_name", current_task.name)
    return event_dict


def _censor_sensitive_data(logger, method_name, event_dict):
    """Redact sensitive keys and signed-URL signatures."""
    for key, value in list(event_dict.items()):
        if any(sensitive in key.lower() for sensitive in SENSITIVE_KEYS):
            event_dict[key] = REDACTED
        elif isinstance(value, str) and "Signature=" in value:
            event_dict[key] = _SIGNATURE_PARAM.sub(rf"\g<1>{REDACTED}", value)
    return event_dict


def _json_file_handler(path: str, level: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT)
    handler.setLevel(level)
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "name": "logger"},
        )
    )
    return handler


def _log_paths(log_dir: str, role: str) -> dict:
    return {
        "log_dir": log_dir,
        "app_log": os.path.join(log_dir, f"{role}.json"),
        "error_log": os.path.join(log_dir, "error.json"),
    }


def _route_stdlib_logging(log_dir: str, role: str, level: int) -> dict:
    paths = _log_paths(log_dir, role)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(_json_file_handler(paths["app_log"], level))
    root.addHandler(_json_file_handler(paths["error_log"], logging.WARNING))
    root.addHandler(console)

    # Per-query SQL only at DEBUG
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if level <= logging.DEBUG else logging.WARNING
    )
    logging.getLogger("werkzeug").setLevel(max(level, logging.WARNING))
    return paths


def _structlog_to_stdlib(level: int, context_processors: list) -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_logger_name,
            *context_processors,
            _censor_sensitive_data,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_structlog(app, role: str = "web") -> dict:
    """Configure logging for a Flask process.

    Under TESTING nothing is written to disk and the returned paths are empty.
    Otherwise returns the log directory and the two JSON file paths.
    """
    global _configured

    if app.config.get("TESTING"):
        if not _configured:
            structlog.configure(
                processors=[
                    structlog.processors.add_log_level,
                    _censor_sensitive_data,
                    structlog.dev.ConsoleRenderer(colors=False),
                ],
                wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
                logger_factory=structlog.PrintLoggerFactory(),
                cache_logger_on_first_use=True,
            )
            _configured = True
        return {"log_dir": "", "app_log": "", "error_log": ""}

    log_dir = get_log_dir(app.instance_path)
    if _configured:
        return _log_paths(log_dir, role)

    level = get_log_level(app.config)
    paths = _route_stdlib_logging(log_dir, role, level)
    _structlog_to_stdlib(level, [_add_request_context])
    structlog.contextvars.bind_contextvars(role=role)
    _configured = True
    structlog.get_logger(__name__).debug("logging_configured", role=role, **paths)
    return paths


def configure_structlog_celery(instance_path: str) -> None:
    global _configured

    if _configured:
        return
    level = get_log_level()
    _route_stdlib_logging(get_log_dir(instance_path), "worker", level)
    _structlog_to_stdlib(level, [_add_celery_context])
    structlog.contextvars.bind_contextvars(role="worker")
    _configured = True
