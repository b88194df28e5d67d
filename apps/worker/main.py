"""
Celery worker entry point.

Runs the subscription maintenance tasks registered in the API tree:

    celery -A main worker --beat --loglevel=info
"""
import os
import sys

# The API tree holds the task registry; in the container it is mounted at /api.
API_DIR = os.environ.get("API_DIR", os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "api"))
sys.path.insert(0, API_DIR)

from core.logging import setup_logging  # noqa: E402
from tasks import celery_app  # noqa: E402

setup_logging()

app = celery_app


@celery_app.task(name="worker.health_check")
def health_check():
    """Liveness probe for the worker pool."""
    return {"status": "ok"}
