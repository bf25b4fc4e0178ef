"""CallBridge Worker Tasks."""

# Import all tasks to register them with Celery
from callbridge_worker.tasks import ingest  # noqa: F401
