#!/usr/bin/env python3
"""
Start a Celery worker (or Beat, with ``beat`` as the first argument) for the
grant retention sweep.

    python celery_worker.py worker --loglevel=info
    python celery_worker.py beat
"""
from singleuse.tasks.celery_app import celery_app

if __name__ == "__main__":
    celery_app.start()
