"""
Celery worker entry point.

Imports the Celery app and the power profile tasks from the API module:

    celery -A main worker --loglevel=info
"""
import sys
import os

# Make the API package importable whether running in the container (/api)
# or from a checkout (apps/api next to apps/worker).
_API_DIR = os.environ.get(
    "POWER_CURVE_API_DIR",
    os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "api")),
)
if _API_DIR not in sys.path:
    sys.path.insert(0, _API_DIR)

from tasks import celery_app  # noqa: E402

celery_app.autodiscover_tasks(['tasks'])


@celery_app.task(name="worker.health_check")
def health_check():
    """Health check task"""
    return {"status": "ok"}
