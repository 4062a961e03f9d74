"""
Celery application for background maintenance of the grant table.

The only periodic job is the retention sweep, scheduled on Beat when
GRANT_SWEEP_ENABLED is set. Validation and issuance never go through Celery.
"""
import os

from celery import Celery
from celery.signals import after_setup_logger, after_setup_task_logger

from config.settings import Config

SWEEP_TASK = "singleuse.tasks.grant_sweep.sweep_expired_grants_task"


def _instance_path() -> str:
    repo_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    return os.environ.get("SINGLEUSE_INSTANCE_PATH") or os.path.join(repo_root, "instance")


def _beat_schedule(config) -> dict:
    if not config.GRANT_SWEEP_ENABLED:
        return {}
    return {
        "sweep-expired-grants": {
            "task": SWEEP_TASK,
            "schedule": float(config.GRANT_SWEEP_INTERVAL_SECONDS),
            "args": (config.GRANT_SWEEP_RETENTION_SECONDS,),
        }
    }


def make_celery(app_name=__name__):
    """Create the Celery app from the shared Config."""
    config = Config()
    app = Celery(
        app_name,
        broker=config.CELERY_BROKER_URL,
        backend=config.CELERY_RESULT_BACKEND,
        include=["singleuse.tasks.grant_sweep"],
    )
    app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        broker_connection_retry_on_startup=True,
        beat_schedule=_beat_schedule(config),
    )
    return app


celery_app = make_celery()


@after_setup_logger.connect
@after_setup_task_logger.connect
def _configure_worker_logging(*args, **kwargs):  # pragma: no cover - logging init
    from singleuse.structured_logging import configure_structlog_celery

    configure_structlog_celery(_instance_path())
