"""
Celery task for deleting long-expired grants.
Runs as a scheduled task via Celery Beat when GRANT_SWEEP_ENABLED is set.

Only rows whose signed expiry is already in the past are removed, so a swept
id can only ever be presented with an expired URL and is rejected before the
store is consulted.
"""
import time

import structlog
from celery import shared_task

from singleuse.services import get_clock, grant_store
from singleuse.store import StoreUnavailable

logger = structlog.get_logger(__name__)


def sweep_expired_grants(app, retention_seconds: int) -> dict:
    """Delete grants that expired more than ``retention_seconds`` ago."""
    retention_seconds = max(0, int(retention_seconds))
    cutoff = int(get_clock(app)()) - retention_seconds

    logger.info(
        "grant_sweep_started", retention_seconds=retention_seconds, cutoff=cutoff
    )
    deleted = grant_store(app).sweep_expired(cutoff)
    logger.info("grant_sweep_complete", deleted=deleted, cutoff=cutoff)
    return {"deleted": deleted, "cutoff": cutoff}


@shared_task(bind=True)
def sweep_expired_grants_task(self, retention_seconds: int = 86400):
    """
    Celery entry point for the retention sweep.

    Args:
        retention_seconds: How long after expiry a grant is kept for audit

    Returns:
        dict: Sweep statistics
    """
    from singleuse import create_app

    app = create_app()
    started = time.monotonic()
    try:
        result = sweep_expired_grants(app, retention_seconds)
    except StoreUnavailable as e:
        logger.error("grant_sweep_failed", error=str(e))
        return {"error": str(e), "deleted": 0}
    result["duration_seconds"] = round(time.monotonic() - started, 3)
    return result
