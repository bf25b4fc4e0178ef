"""Batch synchronization of a source account's message feed.

The SyncOrchestrator pulls pages from a MessageSourceClient and runs every
message through the IngestService, one database transaction per message.
Each run is tracked by a SyncSession row, which is the source of truth for
resuming; an in-memory registry holds live progress for polling.

State machine: pending -> running -> completed | failed | cancelled

Usage:
    orchestrator = SyncOrchestrator(
        session_factory=database.session_factory,
        source_client=client,
    )
    session_id = await orchestrator.start_sync("acct-1", SyncOptions(sync_type="initial"))

    progress = orchestrator.get_progress(session_id)
    print(progress.status, progress.counters.messages_processed)

    orchestrator.cancel_sync(session_id)
"""

import asyncio
import copy
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

from callbridge_core.config import Settings, get_settings
from callbridge_core.domain.models import (
    ConversationSyncMetadata,
    SyncSession,
    SyncStatus,
    SyncType,
)
from callbridge_core.domain.services.classifiers import MessageClassifier
from callbridge_core.domain.services.identity import MatchWeights
from callbridge_core.domain.services.ingest import (
    IngestOptions,
    IngestResult,
    IngestService,
    IngestStatus,
)
from callbridge_core.domain.timeutil import to_naive_utc, utcnow
from callbridge_core.observability.logging import SyncContext, get_logger
from callbridge_core.observability.metrics import MonitoringSink
from callbridge_core.providers.base import (
    ExternalMessage,
    FetchPageRequest,
    MessageSourceClient,
)

logger = get_logger(__name__)

# Bounded per-run error log kept in live progress
MAX_ERROR_LOG_ENTRIES = 100


# =============================================================================
# ERRORS
# =============================================================================


class SyncError(Exception):
    """Base error for sync operations."""

    pass


class SyncAlreadyRunningError(SyncError):
    """Raised when an account already has a pending or running sync."""

    def __init__(self, account_id: str, session_id: str):
        super().__init__(f"sync {session_id} is already in progress for account '{account_id}'")
        self.account_id = account_id
        self.session_id = session_id


class SyncNotFoundError(SyncError):
    """Raised when a sync session does not exist."""

    pass


class ErrorBudgetExceededError(SyncError):
    """Raised when per-message errors reach the session's error budget."""

    pass


# =============================================================================
# DATA STRUCTURES
# =============================================================================


@dataclass
class SyncOptions:
    """Caller-supplied parameters for a sync run.

    start_time, end_time and cursor are only honored for manual syncs;
    initial and incremental syncs derive them.
    """

    sync_type: str = SyncType.INCREMENTAL
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    cursor: Optional[str] = None
    page_size: Optional[int] = None
    max_pages: Optional[int] = None
    create_customers: bool = True
    fuzzy_match: bool = True
    min_confidence: Optional[float] = None
    detect_duplicates: bool = True

    def to_dict(self) -> dict:
        """Convert to a JSON-serializable dictionary."""
        data = asdict(self)
        for key in ("start_time", "end_time"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class SyncCounters:
    """Running totals for one sync session."""

    messages_processed: int = 0
    customers_created: int = 0
    customers_matched: int = 0
    conversations_created: int = 0
    conversations_updated: int = 0
    conversations_merged: int = 0
    duplicates_skipped: int = 0
    malformed_skipped: int = 0
    errors_encountered: int = 0
    pages_processed: int = 0

    def apply(self, result: IngestResult) -> None:
        """Count the outcome of one ingested message."""
        if result.status == IngestStatus.DUPLICATE:
            self.duplicates_skipped += 1
        elif result.status == IngestStatus.MALFORMED:
            self.malformed_skipped += 1
        elif result.status == IngestStatus.IMPORTED:
            self.messages_processed += 1
            if result.customer_created:
                self.customers_created += 1
            elif result.customer_matched:
                self.customers_matched += 1
            if result.conversation_created:
                self.conversations_created += 1
            else:
                self.conversations_updated += 1
            self.conversations_merged += len(result.merged_conversation_ids)

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: SyncSession) -> "SyncCounters":
        return cls(**{f.name: getattr(row, f.name) or 0 for f in fields(cls)})

    def write_to(self, row: SyncSession) -> None:
        for name, value in self.to_dict().items():
            setattr(row, name, value)


@dataclass
class SyncErrorEntry:
    """One entry of a run's error log."""

    timestamp: datetime
    error: str
    severity: str = "error"  # "warning", "error" or "critical"
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "error": self.error,
            "severity": self.severity,
            "context": self.context,
        }


@dataclass
class SyncProgress:
    """Snapshot of a sync session's progress."""

    session_id: str
    account_id: str
    sync_type: str
    status: str
    counters: SyncCounters = field(default_factory=SyncCounters)
    current_page: int = 0
    cancel_requested: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None
    messages_per_second: float = 0.0
    last_cursor: Optional[str] = None
    last_message_date: Optional[datetime] = None
    error_message: Optional[str] = None
    errors: list[SyncErrorEntry] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in SyncStatus.TERMINAL

    @classmethod
    def from_row(cls, row: SyncSession) -> "SyncProgress":
        """Rebuild a snapshot from a persisted SyncSession."""
        return cls(
            session_id=row.id,
            account_id=row.source_account_id,
            sync_type=row.sync_type,
            status=row.status,
            counters=SyncCounters.from_row(row),
            current_page=row.pages_processed or 0,
            started_at=row.started_at,
            completed_at=row.completed_at,
            last_updated_at=row.updated_at,
            last_cursor=row.last_cursor,
            last_message_date=row.last_message_date,
            error_message=row.error_message,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""

        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value is not None else None

        return {
            "session_id": self.session_id,
            "account_id": self.account_id,
            "sync_type": self.sync_type,
            "status": self.status,
            "counters": self.counters.to_dict(),
            "current_page": self.current_page,
            "cancel_requested": self.cancel_requested,
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
            "last_updated_at": iso(self.last_updated_at),
            "messages_per_second": self.messages_per_second,
            "last_cursor": self.last_cursor,
            "last_message_date": iso(self.last_message_date),
            "error_message": self.error_message,
            "errors": [e.to_dict() for e in self.errors],
        }


class ErrorBudget:
    """Per-message error allowance for one sync run.

    Counts either every error in the run (default) or only consecutive
    errors, in which case a successful message resets the tally.
    """

    def __init__(self, max_errors: int = 5, consecutive: bool = False):
        if max_errors < 1:
            raise ValueError("max_errors must be at least 1")
        self.max_errors = max_errors
        self.consecutive = consecutive
        self.count = 0

    @property
    def exhausted(self) -> bool:
        return self.count >= self.max_errors

    def record_error(self) -> bool:
        """Count an error; returns True once the budget is exhausted."""
        self.count += 1
        return self.exhausted

    def record_success(self) -> None:
        if self.consecutive:
            self.count = 0


@dataclass
class _SyncParams:
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    cursor: Optional[str]
    page_size: int
    max_pages: Optional[int]


@dataclass
class _SyncRun:
    progress: SyncProgress
    cancel_event: asyncio.Event
    loop: Optional[asyncio.AbstractEventLoop] = None
    task: Optional[asyncio.Task] = None
    finished_at: Optional[float] = None  # time.monotonic()


# =============================================================================
# ORCHESTRATOR
# =============================================================================


class SyncOrchestrator:
    """Runs and tracks paginated sync sessions, at most one per account."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        source_client: MessageSourceClient,
        settings: Optional[Settings] = None,
        monitoring_sink: Optional[MonitoringSink] = None,
        classifier: Optional[MessageClassifier] = None,
        match_weights: Optional[MatchWeights] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the orchestrator.

        Args:
            session_factory: Opens one database session per run.
            source_client: Fetches pages from the external provider.
            settings: Application settings; defaults to get_settings().
            monitoring_sink: Receives counters after each page and at the end.
            classifier: Message classifier passed to the ingest path.
            match_weights: Fuzzy identity match weights.
            clock: Returns the current naive UTC time.
        """
        self.session_factory = session_factory
        self.source_client = source_client
        self.settings = settings or get_settings()
        self.monitoring_sink = monitoring_sink
        self.classifier = classifier
        self.match_weights = match_weights
        self.clock = clock

        self._lock = threading.Lock()
        self._runs: dict[str, _SyncRun] = {}

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def start_sync(self, account_id: str, options: Optional[SyncOptions] = None) -> str:
        """Create a sync session and start it in the background.

        Args:
            account_id: The source account to sync.
            options: Sync parameters; defaults to an incremental sync.

        Returns:
            The new session id.

        Raises:
            SyncAlreadyRunningError: If the account has an unfinished sync.
            ValueError: If the sync type is unknown.
        """
        options = options or SyncOptions()
        if options.sync_type not in SyncType.ALL:
            raise ValueError(f"unknown sync type: {options.sync_type!r}")

        self._prune_finished()
        session_id = str(uuid.uuid4())
        now = self.clock()
        run = _SyncRun(
            progress=SyncProgress(
                session_id=session_id,
                account_id=account_id,
                sync_type=options.sync_type,
                status=SyncStatus.PENDING,
                last_updated_at=now,
            ),
            cancel_event=asyncio.Event(),
            loop=asyncio.get_running_loop(),
        )

        with self._lock:
            for other in self._runs.values():
                if other.progress.account_id == account_id and other.progress.status in (
                    SyncStatus.PENDING,
                    SyncStatus.RUNNING,
                ):
                    raise SyncAlreadyRunningError(account_id, other.progress.session_id)
            self._runs[session_id] = run

        try:
            with self.session_factory() as db:
                db.add(
                    SyncSession(
                        id=session_id,
                        source_account_id=account_id,
                        sync_type=options.sync_type,
                        status=SyncStatus.PENDING,
                        options_json=options.to_dict(),
                    )
                )
                db.commit()
        except Exception:
            with self._lock:
                self._runs.pop(session_id, None)
            raise

        run.task = asyncio.create_task(self._run(run, options))
        logger.info(
            "Sync session started",
            context=SyncContext(session_id, account_id, options.sync_type),
        )
        return session_id

    def get_progress(self, session_id: str) -> Optional[SyncProgress]:
        """Snapshot of a session's progress, or None if it does not exist.

        Live runs are read from the registry; older sessions are rebuilt
        from their SyncSession row.
        """
        self._prune_finished()
        with self._lock:
            run = self._runs.get(session_id)
            if run is not None:
                return copy.deepcopy(run.progress)

        with self.session_factory() as db:
            row = db.get(SyncSession, session_id)
            return SyncProgress.from_row(row) if row is not None else None

    def cancel_sync(self, session_id: str) -> bool:
        """Request cancellation of a live session.

        Cancellation is checked before each page fetch; a page in flight is
        always finished first. Safe to call from any thread.

        Returns:
            True if the request was accepted, False if the session is not
            live or already finished.
        """
        with self._lock:
            run = self._runs.get(session_id)
            if run is None or run.progress.is_terminal:
                return False
            run.progress.cancel_requested = True

        self._wake(run)
        logger.info("Sync cancellation requested", context=SyncContext(session_id=session_id))
        return True

    async def wait_for_completion(
        self, session_id: str, timeout: Optional[float] = None
    ) -> SyncProgress:
        """Wait for a session to reach a terminal state.

        Raises:
            SyncNotFoundError: If the session does not exist.
            asyncio.TimeoutError: If the timeout elapses first.
        """
        with self._lock:
            run = self._runs.get(session_id)
            task = run.task if run is not None else None

        if task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout)
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise

        progress = self.get_progress(session_id)
        if progress is None:
            raise SyncNotFoundError(f"sync session '{session_id}' not found")
        return progress

    def list_sessions(self, account_id: str, limit: int = 20) -> list[SyncProgress]:
        """Most recent sessions for an account, newest first."""
        with self.session_factory() as db:
            rows = (
                db.query(SyncSession)
                .filter_by(source_account_id=account_id)
                .order_by(SyncSession.created_at.desc())
                .limit(limit)
                .all()
            )
            return [SyncProgress.from_row(row) for row in rows]

    async def shutdown(self) -> None:
        """Cancel all live sessions and wait for them to finish."""
        with self._lock:
            live = [r for r in self._runs.values() if not r.progress.is_terminal]
            for run in live:
                run.progress.cancel_requested = True

        for run in live:
            self._wake(run)
        tasks = [r.task for r in live if r.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Run loop
    # -------------------------------------------------------------------------

    async def _run(self, run: _SyncRun, options: SyncOptions) -> None:
        session_id = run.progress.session_id
        account_id = run.progress.account_id
        context = SyncContext(session_id, account_id, options.sync_type)
        counters = SyncCounters()
        last_message_date: Optional[datetime] = None

        db = self.session_factory()
        try:
            params = self._resolve_params(db, account_id, session_id, options)
            self._mark_running(db, run)

            service = IngestService(
                db,
                settings=self.settings,
                classifier=self.classifier,
                match_weights=self.match_weights,
            )
            ingest_options = IngestOptions(
                create_customers=options.create_customers,
                fuzzy_match=options.fuzzy_match,
                min_confidence=options.min_confidence,
                detect_duplicates=options.detect_duplicates,
                sync_session_id=session_id,
                sync_type=options.sync_type,
            )
            budget = ErrorBudget(
                max_errors=self.settings.sync_error_budget,
                consecutive=self.settings.sync_error_budget_consecutive,
            )
            delay = self.settings.sync_inter_batch_delay_ms / 1000

            cursor = params.cursor
            last_cursor = cursor
            status = SyncStatus.COMPLETED

            while True:
                if self._cancel_requested(run):
                    status = SyncStatus.CANCELLED
                    break
                if params.max_pages is not None and counters.pages_processed >= params.max_pages:
                    last_cursor = cursor
                    logger.info("Page limit reached", context=context, next_cursor=cursor)
                    break

                page_number = counters.pages_processed + 1
                with self._lock:
                    run.progress.current_page = page_number

                page = await self.source_client.fetch_page(
                    account_id,
                    FetchPageRequest(
                        cursor=cursor,
                        start_time=params.start_time,
                        end_time=params.end_time,
                        page_size=params.page_size,
                    ),
                )

                for message in page.messages:
                    sent_at = self._process_message(
                        db, run, service, message, account_id, ingest_options,
                        budget, counters, page_number,
                    )
                    if sent_at is not None and (
                        last_message_date is None or sent_at > last_message_date
                    ):
                        last_message_date = sent_at

                counters.pages_processed += 1
                last_cursor = cursor
                self._persist_page(db, run, counters)

                logger.info(
                    "Page processed",
                    context=context,
                    page=page_number,
                    page_messages=len(page.messages),
                    messages_processed=counters.messages_processed,
                    errors_encountered=counters.errors_encountered,
                )

                cursor = page.next_cursor
                if not cursor:
                    break

                await self._pause(run, delay)

            # An empty run keeps the previous resume point
            self._finish(
                db, run, status, counters,
                last_cursor=last_cursor,
                last_message_date=last_message_date or params.start_time,
            )
        except ErrorBudgetExceededError as e:
            logger.error("Sync aborted: error budget exhausted", context=context)
            self._finish(db, run, SyncStatus.FAILED, counters, error_message=str(e))
        except asyncio.CancelledError:
            self._finish(
                db, run, SyncStatus.CANCELLED, counters, error_message="sync task cancelled"
            )
            raise
        except Exception as e:
            logger.error(f"Sync failed: {e}", context=context, exc_info=True)
            self._record_error(run, str(e), severity="critical")
            self._finish(db, run, SyncStatus.FAILED, counters, error_message=str(e))
        finally:
            db.close()
            with self._lock:
                run.finished_at = time.monotonic()

    def _process_message(
        self,
        db: Session,
        run: _SyncRun,
        service: IngestService,
        message: ExternalMessage,
        account_id: str,
        ingest_options: IngestOptions,
        budget: ErrorBudget,
        counters: SyncCounters,
        page_number: int,
    ) -> Optional[datetime]:
        """Ingest one message in its own transaction.

        Returns the message timestamp when it was imported or recognized as
        a duplicate, None otherwise.

        Raises:
            ErrorBudgetExceededError: When this error exhausts the budget.
        """
        try:
            result = service.ingest_message(message, account_id, ingest_options)
            db.commit()
        except Exception as e:
            db.rollback()
            counters.errors_encountered += 1
            self._record_error(
                run,
                str(e),
                context={"external_id": message.external_id, "page": page_number},
            )
            logger.warning(
                f"Failed to ingest external message {message.external_id}: {e}",
                context=SyncContext(run.progress.session_id, account_id),
            )
            self._publish_counters(run, counters)
            if budget.record_error():
                raise ErrorBudgetExceededError(
                    f"error budget of {budget.max_errors} exhausted "
                    f"after {counters.errors_encountered} errors"
                ) from e
            return None

        counters.apply(result)
        self._publish_counters(run, counters)

        if result.status == IngestStatus.MALFORMED:
            self._record_error(
                run,
                result.reason or "malformed message",
                severity="warning",
                context={"external_id": message.external_id, "page": page_number},
            )
            return None

        budget.record_success()
        return to_naive_utc(message.timestamp)

    def _cancel_requested(self, run: _SyncRun) -> bool:
        with self._lock:
            return run.progress.cancel_requested

    def _wake(self, run: _SyncRun) -> None:
        """Set the run's cancel event on the loop that owns it."""
        if run.loop is None or run.loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is run.loop:
            run.cancel_event.set()
        else:
            run.loop.call_soon_threadsafe(run.cancel_event.set)

    async def _pause(self, run: _SyncRun, delay: float) -> None:
        """Inter-batch delay that returns early on cancellation."""
        if delay <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(run.cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _resolve_params(
        self, db: Session, account_id: str, session_id: str, options: SyncOptions
    ) -> _SyncParams:
        now = self.clock()
        page_size = min(
            options.page_size or self.settings.sync_page_size,
            self.settings.sync_max_page_size,
        )
        start_time: Optional[datetime] = None
        end_time: Optional[datetime] = None
        cursor: Optional[str] = None

        if options.sync_type == SyncType.INITIAL:
            start_time = now - timedelta(days=self.settings.sync_max_history_days)
        elif options.sync_type == SyncType.INCREMENTAL:
            previous = (
                db.query(SyncSession)
                .filter(
                    SyncSession.source_account_id == account_id,
                    SyncSession.status == SyncStatus.COMPLETED,
                    SyncSession.id != session_id,
                )
                .order_by(SyncSession.completed_at.desc())
                .first()
            )
            lookback = now - timedelta(hours=self.settings.sync_incremental_lookback_hours)
            if previous is not None:
                start_time = previous.last_message_date or lookback
                cursor = previous.last_cursor
            else:
                start_time = lookback
        else:
            start_time = to_naive_utc(options.start_time)
            end_time = to_naive_utc(options.end_time)
            cursor = options.cursor

        return _SyncParams(
            start_time=start_time,
            end_time=end_time,
            cursor=cursor,
            page_size=page_size,
            max_pages=options.max_pages,
        )

    def _mark_running(self, db: Session, run: _SyncRun) -> None:
        now = self.clock()
        row = db.get(SyncSession, run.progress.session_id)
        row.status = SyncStatus.RUNNING
        row.started_at = now
        db.commit()

        with self._lock:
            run.progress.status = SyncStatus.RUNNING
            run.progress.started_at = now
            run.progress.last_updated_at = now

    def _publish_counters(self, run: _SyncRun, counters: SyncCounters) -> None:
        now = self.clock()
        with self._lock:
            progress = run.progress
            progress.counters = copy.copy(counters)
            progress.last_updated_at = now
            if progress.started_at is not None:
                elapsed = (now - progress.started_at).total_seconds()
                if elapsed > 0:
                    progress.messages_per_second = counters.messages_processed / elapsed

    def _record_error(
        self,
        run: _SyncRun,
        error: str,
        severity: str = "error",
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        entry = SyncErrorEntry(
            timestamp=self.clock(), error=error, severity=severity, context=context or {}
        )
        with self._lock:
            errors = run.progress.errors
            errors.append(entry)
            if len(errors) > MAX_ERROR_LOG_ENTRIES:
                del errors[: len(errors) - MAX_ERROR_LOG_ENTRIES]

    def _persist_page(self, db: Session, run: _SyncRun, counters: SyncCounters) -> None:
        row = db.get(SyncSession, run.progress.session_id)
        counters.write_to(row)
        db.commit()

        self._publish_counters(run, counters)
        if self.monitoring_sink is not None:
            try:
                self.monitoring_sink.record_page(
                    run.progress.session_id, run.progress.account_id, counters.to_dict()
                )
            except Exception as e:
                logger.warning(f"Monitoring sink failed on page: {e}")

    def _finish(
        self,
        db: Session,
        run: _SyncRun,
        status: str,
        counters: SyncCounters,
        error_message: Optional[str] = None,
        last_cursor: Optional[str] = None,
        last_message_date: Optional[datetime] = None,
    ) -> None:
        """Freeze counters and move the session to a terminal state."""
        session_id = run.progress.session_id
        now = self.clock()
        completed = status == SyncStatus.COMPLETED

        try:
            db.rollback()
            row = db.get(SyncSession, session_id)
            row.status = status
            row.completed_at = now
            row.error_message = error_message
            counters.write_to(row)
            if completed:
                row.last_cursor = last_cursor
                row.last_message_date = last_message_date
            db.query(ConversationSyncMetadata).filter_by(sync_session_id=session_id).update(
                {ConversationSyncMetadata.completed_at: now}, synchronize_session=False
            )
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(
                f"Failed to persist final state of sync session: {e}",
                context=SyncContext(session_id=session_id),
            )

        with self._lock:
            progress = run.progress
            progress.status = status
            progress.counters = copy.copy(counters)
            progress.completed_at = now
            progress.last_updated_at = now
            progress.error_message = error_message
            if completed:
                progress.last_cursor = last_cursor
                progress.last_message_date = last_message_date

        if self.monitoring_sink is not None:
            try:
                self.monitoring_sink.record_completion(
                    session_id, run.progress.account_id, status, counters.to_dict()
                )
            except Exception as e:
                logger.warning(f"Monitoring sink failed on completion: {e}")

        logger.info(
            "Sync session finished",
            context=SyncContext(session_id, run.progress.account_id, run.progress.sync_type),
            status=status,
            **counters.to_dict(),
        )

    def _prune_finished(self) -> None:
        """Drop finished runs older than the retention period from the registry."""
        retention = self.settings.sync_progress_retention_seconds
        cutoff = time.monotonic() - retention
        with self._lock:
            expired = [
                session_id
                for session_id, run in self._runs.items()
                if run.finished_at is not None and run.finished_at <= cutoff
            ]
            for session_id in expired:
                del self._runs[session_id]
