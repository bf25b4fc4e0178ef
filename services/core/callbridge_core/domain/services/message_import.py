"""Message persistence.

Writes one imported message: the Message row, its ExternalIdMapping, and
the PhoneMapping contact bookkeeping. Batch syncs also keep a
per-conversation ledger (ConversationSyncMetadata) of what each session
imported. Routing decisions (customer and conversation) are made upstream;
writes are flushed into the caller's transaction and the caller commits or
rolls back the message as a unit.
"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from callbridge_core.domain.models import (
    ConversationSyncMetadata,
    ExternalIdMapping,
    Message,
    PhoneMapping,
)
from callbridge_core.domain.services.classifiers import (
    KeywordMessageClassifier,
    MessageClassifier,
)
from callbridge_core.domain.services.phone import normalize_phone
from callbridge_core.domain.timeutil import to_naive_utc
from callbridge_core.providers.base import ExternalMessage, MessageDirection

logger = logging.getLogger(__name__)


class MessageImportError(Exception):
    """Raised when a message cannot be persisted."""

    pass


class DuplicateExternalIdError(MessageImportError):
    """Raised when an external id is already mapped for the source account.

    Duplicates are filtered before import, so this signals a dedup bug
    rather than a retryable condition.
    """

    def __init__(self, external_id: str, account_id: str):
        super().__init__(
            f"external message '{external_id}' is already imported for account '{account_id}'"
        )
        self.external_id = external_id
        self.account_id = account_id


class MessageImporter:
    """Persists messages and their mapping side tables."""

    def __init__(
        self,
        db: Session,
        platform: str = "voice_sms",
        classifier: Optional[MessageClassifier] = None,
    ):
        self.db = db
        self.platform = platform
        self.classifier = classifier or KeywordMessageClassifier()

    def import_message(
        self,
        conversation_id: int,
        message: ExternalMessage,
        account_id: str,
        customer_id: Optional[int] = None,
    ) -> Message:
        """Persist an external message into a conversation.

        Args:
            conversation_id: The conversation that owns the message.
            message: The external message.
            account_id: The source account it came from.
            customer_id: Customer to link the phone mapping to, if unlinked.

        Returns:
            The new Message (flushed, not committed).

        Raises:
            DuplicateExternalIdError: If the external id is already mapped.
            InvalidPhoneNumberError: If the phone number has no digits.
        """
        existing = (
            self.db.query(ExternalIdMapping.id)
            .filter_by(external_message_id=message.external_id, source_account_id=account_id)
            .first()
        )
        if existing is not None:
            raise DuplicateExternalIdError(message.external_id, account_id)

        normalized = normalize_phone(message.phone_number)
        sent_at = to_naive_utc(message.timestamp)

        row = Message(
            conversation_id=conversation_id,
            direction=MessageDirection(message.direction).value,
            content=message.text,
            message_type=message.message_type or "sms",
            platform=self.platform,
            sent_at=sent_at,
            attachments_json=list(message.attachments) or None,
            is_emergency=self.classifier.is_emergency(message.text),
        )
        self.db.add(row)
        self.db.flush()

        mapping = ExternalIdMapping(
            external_message_id=message.external_id,
            source_account_id=account_id,
            message_id=row.id,
            external_thread_id=message.thread_id,
            external_message_date=sent_at,
        )
        self.db.add(mapping)
        try:
            self.db.flush()
        except IntegrityError as e:
            raise DuplicateExternalIdError(message.external_id, account_id) from e

        self._upsert_phone_mapping(account_id, normalized, message.phone_number, sent_at, customer_id)

        logger.debug(
            f"Imported external message {message.external_id} as message {row.id} "
            f"in conversation {conversation_id}"
        )
        return row

    def _upsert_phone_mapping(
        self,
        account_id: str,
        normalized_phone: str,
        raw_phone: str,
        contact_at,
        customer_id: Optional[int],
    ) -> PhoneMapping:
        mapping = (
            self.db.query(PhoneMapping)
            .filter_by(source_account_id=account_id, normalized_phone=normalized_phone)
            .first()
        )

        if mapping is None:
            mapping = PhoneMapping(
                source_account_id=account_id,
                normalized_phone=normalized_phone,
                raw_phone=raw_phone,
                customer_id=customer_id,
                is_active=True,
                first_contact_at=contact_at,
                last_contact_at=contact_at,
                message_count=1,
            )
            self.db.add(mapping)
        else:
            mapping.message_count += 1
            if contact_at > mapping.last_contact_at:
                mapping.last_contact_at = contact_at
            if contact_at < mapping.first_contact_at:
                mapping.first_contact_at = contact_at
            if mapping.customer_id is None and customer_id is not None:
                mapping.customer_id = customer_id

        self.db.flush()
        return mapping

    def record_sync(
        self,
        conversation_id: int,
        message: ExternalMessage,
        sync_session_id: str,
        sync_type: str,
        imported: bool = True,
        sync_config: Optional[dict] = None,
    ) -> ConversationSyncMetadata:
        """Count a message against the session's ledger entry for a conversation.

        Args:
            conversation_id: The conversation the message landed in (or, for a
                duplicate, the conversation of the matched message).
            message: The external message.
            sync_session_id: The running SyncSession.
            sync_type: The session's sync type.
            imported: False when the message was skipped as a duplicate.
            sync_config: Ingest options in effect, stored on first write.

        Returns:
            The ledger entry (flushed, not committed).
        """
        entry = (
            self.db.query(ConversationSyncMetadata)
            .filter_by(sync_session_id=sync_session_id, conversation_id=conversation_id)
            .first()
        )
        if entry is None:
            entry = ConversationSyncMetadata(
                conversation_id=conversation_id,
                sync_session_id=sync_session_id,
                sync_type=sync_type,
                sync_source=self.platform,
                messages_imported=0,
                duplicates_skipped=0,
                sync_config=sync_config,
            )
            self.db.add(entry)

        if not imported:
            entry.duplicates_skipped += 1
        else:
            entry.messages_imported += 1
            sent_at = to_naive_utc(message.timestamp)
            if entry.last_synced_timestamp is None or sent_at >= entry.last_synced_timestamp:
                entry.last_synced_message_id = message.external_id
                entry.last_synced_timestamp = sent_at

        self.db.flush()
        return entry
