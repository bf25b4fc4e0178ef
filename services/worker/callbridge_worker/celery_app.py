"""Celery application configuration for CallBridge Worker."""

from celery import Celery
from celery.signals import setup_logging

from callbridge_core.config import get_settings
from callbridge_core.observability.logging import configure_logging

settings = get_settings()

app = Celery(
    "callbridge_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "callbridge_worker.tasks.ingest",
    ],
)

# Celery configuration
app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Task execution
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Time limits (seconds); initial syncs of a full year can be long
    task_soft_time_limit=3300,
    task_time_limit=3600,
    # Queue routing
    task_routes={
        "ingest.process_webhook_message": {"queue": "webhooks"},
        "ingest.*": {"queue": "ingest"},
    },
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,
)

# Beat schedule for periodic tasks
app.conf.beat_schedule = {
    # Incremental sync of every configured account
    "sync-all-accounts-periodic": {
        "task": "ingest.sync_all_accounts",
        "schedule": settings.sync_interval_minutes * 60.0,
        "args": (),
    },
}


@setup_logging.connect
def configure_worker_logging(**kwargs) -> None:
    """Replace Celery's logging setup with structured logging."""
    configure_logging(
        level=settings.log_level,
        json_format=settings.log_json,
        service_name="callbridge-worker",
    )


if __name__ == "__main__":
    app.start()
