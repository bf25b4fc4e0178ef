"""Single-message ingestion.

The per-message path shared by the batch sync loop and webhook delivery:

    validate -> DuplicateDetector -> IdentityResolver
             -> ConversationResolver -> MessageImporter

Both ingestion modes go through IngestService.ingest_message, so dedup and
threading behave the same regardless of how a message arrived.

Usage:
    service = IngestService(db=session)
    result = service.ingest_message(external_message, account_id="acct-1")
    session.commit()

    # Or, for a pushed message, in its own transaction:
    result = ingest_webhook_message(session, external_message, "acct-1")
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.orm import Session

from callbridge_core.config import Settings, get_settings
from callbridge_core.domain.models import Message, SyncType
from callbridge_core.domain.services.classifiers import (
    KeywordMessageClassifier,
    MessageClassifier,
)
from callbridge_core.domain.services.conversation_threading import (
    ConversationResolver,
    ThreadAction,
)
from callbridge_core.domain.services.duplicate_detection import (
    DuplicateCheckResult,
    DuplicateDetector,
)
from callbridge_core.domain.services.identity import (
    IdentityResolver,
    MatchType,
    MatchWeights,
)
from callbridge_core.domain.services.message_import import (
    MessageImporter,
    MessageImportError,
)
from callbridge_core.domain.services.phone import try_normalize_phone
from callbridge_core.providers.base import ExternalMessage

logger = logging.getLogger(__name__)


class IngestStatus(str):
    """Outcome of ingesting one message."""

    IMPORTED = "imported"
    DUPLICATE = "duplicate"
    MALFORMED = "malformed"


@dataclass
class IngestOptions:
    """Per-call knobs for dedup and identity resolution.

    sync_session_id and sync_type are set by the batch sync loop; when
    present, every imported or duplicate message is counted in the
    session's per-conversation ledger.
    """

    create_customers: bool = True
    fuzzy_match: bool = True
    min_confidence: Optional[float] = None
    detect_duplicates: bool = True
    sync_session_id: Optional[str] = None
    sync_type: Optional[str] = None

    def to_config(self) -> dict:
        """Options worth recording alongside a sync ledger entry."""
        return {
            "create_customers": self.create_customers,
            "fuzzy_match": self.fuzzy_match,
            "min_confidence": self.min_confidence,
            "detect_duplicates": self.detect_duplicates,
        }


@dataclass
class IngestResult:
    """Outcome of ingesting one message."""

    status: str
    external_id: str
    message_id: Optional[int] = None
    customer_id: Optional[int] = None
    conversation_id: Optional[int] = None
    customer_match_type: Optional[str] = None
    thread_action: Optional[str] = None
    merged_conversation_ids: list[int] = field(default_factory=list)
    duplicate: Optional[DuplicateCheckResult] = None
    reason: Optional[str] = None

    @property
    def customer_created(self) -> bool:
        return self.customer_match_type == MatchType.CREATED

    @property
    def customer_matched(self) -> bool:
        return self.customer_match_type in (MatchType.EXACT, MatchType.FUZZY)

    @property
    def conversation_created(self) -> bool:
        return self.thread_action == ThreadAction.CREATED

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "status": self.status,
            "external_id": self.external_id,
            "message_id": self.message_id,
            "customer_id": self.customer_id,
            "conversation_id": self.conversation_id,
            "customer_match_type": self.customer_match_type,
            "thread_action": self.thread_action,
            "merged_conversation_ids": self.merged_conversation_ids,
            "reason": self.reason,
        }


def find_malformed_reason(message: ExternalMessage) -> Optional[str]:
    """Return why a message cannot be ingested, or None if it is well formed."""
    if not message.external_id:
        return "missing external id"
    if not message.phone_number:
        return "missing phone number"
    if not message.text or not message.text.strip():
        return "missing message body"
    if try_normalize_phone(message.phone_number) is None:
        return f"invalid phone number: {message.phone_number!r}"
    return None


class IngestService:
    """Runs one external message through the full ingestion path."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        classifier: Optional[MessageClassifier] = None,
        match_weights: Optional[MatchWeights] = None,
    ):
        """Initialize the service and its components on one session.

        Args:
            db: SQLAlchemy database session; the caller owns the transaction.
            settings: Application settings; defaults to get_settings().
            classifier: Message classifier shared by threading and import.
            match_weights: Fuzzy identity match weights.
        """
        self.db = db
        self.settings = settings or get_settings()
        classifier = classifier or KeywordMessageClassifier()

        self.platform = self.settings.source_platform
        self.detector = DuplicateDetector(db, window_hours=self.settings.duplicate_window_hours)
        self.identity = IdentityResolver(db, weights=match_weights)
        self.threading = ConversationResolver(
            db,
            classifier=classifier,
            reactivation_hours=self.settings.conversation_reactivation_hours,
            merge_window_days=self.settings.conversation_merge_window_days,
        )
        self.importer = MessageImporter(db, platform=self.platform, classifier=classifier)

    def ingest_message(
        self,
        message: ExternalMessage,
        account_id: str,
        options: Optional[IngestOptions] = None,
    ) -> IngestResult:
        """Ingest one message. Writes are flushed, not committed.

        Malformed and duplicate messages are reported through the result
        status; processing failures raise.

        Raises:
            MessageImportError: If no customer could be resolved or the
                message could not be persisted.
        """
        options = options or IngestOptions()

        reason = find_malformed_reason(message)
        if reason is not None:
            logger.warning(f"Skipping malformed external message {message.external_id!r}: {reason}")
            return IngestResult(
                status=IngestStatus.MALFORMED,
                external_id=message.external_id,
                reason=reason,
            )

        duplicate = self.detector.is_duplicate(
            message, account_id, content_match=options.detect_duplicates
        )
        if duplicate.is_duplicate:
            self._record_duplicate(message, duplicate, options)
            return IngestResult(
                status=IngestStatus.DUPLICATE,
                external_id=message.external_id,
                message_id=duplicate.matched_message_id,
                duplicate=duplicate,
                reason=f"duplicate by {duplicate.match_type}",
            )

        min_confidence = options.min_confidence
        if min_confidence is None:
            min_confidence = self.settings.customer_min_confidence

        match = self.identity.resolve_customer(
            message.phone_number,
            name=message.contact_name,
            email=message.contact_email,
            create_if_missing=options.create_customers,
            fuzzy_match=options.fuzzy_match,
            min_confidence=min_confidence,
        )
        if match.customer is None:
            raise MessageImportError(
                f"no customer for external message {message.external_id}: {match.reasoning}"
            )

        resolution = self.threading.resolve_conversation(
            customer_id=match.customer.id,
            phone=message.phone_number,
            platform=self.platform,
            message_body=message.text,
            external_thread_id=message.thread_id,
            message_at=message.timestamp,
        )

        row = self.importer.import_message(
            conversation_id=resolution.conversation.id,
            message=message,
            account_id=account_id,
            customer_id=match.customer.id,
        )
        if options.sync_session_id is not None:
            self.importer.record_sync(
                resolution.conversation.id,
                message,
                options.sync_session_id,
                options.sync_type or SyncType.MANUAL,
                sync_config=options.to_config(),
            )

        return IngestResult(
            status=IngestStatus.IMPORTED,
            external_id=message.external_id,
            message_id=row.id,
            customer_id=match.customer.id,
            conversation_id=resolution.conversation.id,
            customer_match_type=match.match_type,
            thread_action=resolution.action,
            merged_conversation_ids=list(resolution.merged_ids),
            duplicate=duplicate,
        )

    def _record_duplicate(
        self,
        message: ExternalMessage,
        duplicate: DuplicateCheckResult,
        options: IngestOptions,
    ) -> None:
        if options.sync_session_id is None or duplicate.matched_message_id is None:
            return
        matched = self.db.get(Message, duplicate.matched_message_id)
        if matched is None:
            return
        self.importer.record_sync(
            matched.conversation_id,
            message,
            options.sync_session_id,
            options.sync_type or SyncType.MANUAL,
            imported=False,
            sync_config=options.to_config(),
        )


def ingest_webhook_message(
    db: Session,
    message: ExternalMessage,
    account_id: str,
    settings: Optional[Settings] = None,
    options: Optional[IngestOptions] = None,
) -> IngestResult:
    """Ingest a pushed message in its own transaction.

    Commits on success, rolls back and re-raises on failure.
    """
    service = IngestService(db, settings=settings)
    try:
        result = service.ingest_message(message, account_id, options)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        f"Webhook message {message.external_id} for account {account_id}: {result.status}"
    )
    return result
