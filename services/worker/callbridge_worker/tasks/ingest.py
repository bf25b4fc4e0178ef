"""Ingest tasks for synchronizing source accounts and webhook deliveries."""

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from callbridge_core.config import Settings, get_settings
from callbridge_core.domain.models import SyncSession, SyncStatus
from callbridge_core.domain.services.ingest import ingest_webhook_message
from callbridge_core.domain.services.sync import (
    SyncAlreadyRunningError,
    SyncOptions,
    SyncOrchestrator,
    SyncProgress,
)
from callbridge_core.domain.timeutil import utcnow
from callbridge_core.infra.db import Database
from callbridge_core.observability.metrics import MetricsMonitoringSink
from callbridge_core.providers.base import ExternalMessage
from callbridge_worker.celery_app import app
from callbridge_worker.sources import SourceClientConfigError, load_source_client

logger = logging.getLogger(__name__)

# A pending/running session untouched for this long is treated as abandoned
STALE_SESSION_AFTER = timedelta(hours=1)


def get_database(settings: Optional[Settings] = None) -> Database:
    """Build the store handle for a task run."""
    return Database.from_settings(settings or get_settings())


def find_active_session(database: Database, account_id: str) -> Optional[str]:
    """Id of a recent pending/running session for the account, if any.

    Guards against two workers syncing the same account; each worker has
    its own orchestrator, so the in-process check alone is not enough.
    """
    cutoff = utcnow() - STALE_SESSION_AFTER
    with database.session_factory() as db:
        row = (
            db.query(SyncSession.id)
            .filter(
                SyncSession.source_account_id == account_id,
                SyncSession.status.in_([SyncStatus.PENDING, SyncStatus.RUNNING]),
                SyncSession.updated_at >= cutoff,
            )
            .first()
        )
        return row[0] if row is not None else None


async def _run_sync(
    orchestrator: SyncOrchestrator, account_id: str, options: SyncOptions
) -> SyncProgress:
    session_id = await orchestrator.start_sync(account_id, options)
    return await orchestrator.wait_for_completion(session_id)


@app.task(name="ingest.sync_account", bind=True)
def sync_account(
    self,
    account_id: str,
    sync_type: str = "incremental",
    max_pages: Optional[int] = None,
) -> dict:
    """Run one sync session for a source account to completion.

    Args:
        account_id: Source account to sync.
        sync_type: "initial", "incremental" or "manual".
        max_pages: Optional page limit; the next cursor is kept for resuming.

    Returns:
        Dictionary with the session status and counters.
    """
    settings = get_settings()
    database = get_database(settings)

    try:
        running = find_active_session(database, account_id)
        if running is not None:
            return {
                "status": "skipped",
                "account_id": account_id,
                "reason": f"sync {running} already in progress",
            }

        orchestrator = SyncOrchestrator(
            session_factory=database.session_factory,
            source_client=load_source_client(settings),
            settings=settings,
            monitoring_sink=MetricsMonitoringSink(),
        )
        options = SyncOptions(sync_type=sync_type, max_pages=max_pages)
        progress = asyncio.run(_run_sync(orchestrator, account_id, options))

        return {
            "status": "success" if progress.status == SyncStatus.COMPLETED else "error",
            "account_id": account_id,
            "session_id": progress.session_id,
            "sync_status": progress.status,
            "counters": progress.counters.to_dict(),
            "error": progress.error_message,
        }

    except SyncAlreadyRunningError as e:
        return {"status": "skipped", "account_id": account_id, "reason": str(e)}
    except (SourceClientConfigError, ValueError) as e:
        return {"status": "error", "account_id": account_id, "error": str(e)}
    except Exception as e:
        logger.exception(f"Sync task failed for account {account_id}")
        return {"status": "error", "account_id": account_id, "error": str(e)}
    finally:
        database.dispose()


@app.task(name="ingest.sync_all_accounts", bind=True)
def sync_all_accounts(self) -> dict:
    """Queue an incremental sync for every configured account.

    Returns:
        Dictionary with the queued task ids per account.
    """
    settings = get_settings()
    queued = {}

    for account_id in settings.sync_account_ids:
        result = app.send_task(
            "ingest.sync_account",
            kwargs={"account_id": account_id, "sync_type": "incremental"},
        )
        queued[account_id] = result.id

    logger.info(f"Queued incremental sync for {len(queued)} account(s)")
    return {"status": "success", "accounts_queued": len(queued), "tasks": queued}


@app.task(name="ingest.process_webhook_message", bind=True)
def process_webhook_message(self, account_id: str, payload: dict) -> dict:
    """Ingest one pushed message through the single-message path.

    Args:
        account_id: Source account the push belongs to.
        payload: The normalized message as JSON (see ExternalMessage.from_dict).

    Returns:
        Dictionary with the ingest outcome.
    """
    try:
        message = ExternalMessage.from_dict(payload)
    except (ValueError, TypeError) as e:
        return {"status": "error", "account_id": account_id, "error": f"invalid payload: {e}"}

    settings = get_settings()
    database = get_database(settings)
    try:
        with database.session_factory() as db:
            result = ingest_webhook_message(db, message, account_id, settings=settings)
        return {"status": "success", "account_id": account_id, "result": result.to_dict()}
    except Exception as e:
        logger.exception(f"Webhook ingest failed for external message {message.external_id}")
        return {"status": "error", "account_id": account_id, "error": str(e)}
    finally:
        database.dispose()
