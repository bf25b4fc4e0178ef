"""CallBridge Worker: Celery tasks for feed synchronization."""
