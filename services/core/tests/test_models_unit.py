"""Unit tests for SQLAlchemy models.

These tests verify that models can be created, relationships work,
and constraints are properly enforced using an in-memory SQLite database.
"""

from datetime import datetime

import pytest
from sqlalchemy.exc import IntegrityError

from callbridge_core.domain.models import (
    Conversation,
    ConversationStatus,
    ConversationSyncMetadata,
    ExternalIdMapping,
    PhoneMapping,
    Priority,
    SyncSession,
    SyncStatus,
    SyncType,
)
from factories import create_conversation, create_customer, create_message, create_response


class TestCustomerModel:
    """Tests for the Customer model."""

    def test_create_customer(self, db_session):
        customer = create_customer(db_session, first_name="Jane", last_name="Doe")

        assert customer.id is not None
        assert customer.is_active is True
        assert customer.created_at is not None
        assert customer.full_name == "Jane Doe"


class TestConversationModel:
    """Tests for the Conversation model."""

    def test_create_conversation_defaults(self, db_session):
        customer = create_customer(db_session)
        conversation = create_conversation(db_session, customer)

        assert conversation.status == ConversationStatus.ACTIVE
        assert conversation.priority == Priority.MEDIUM
        assert conversation.is_emergency is False
        assert conversation.customer is customer
        assert customer.conversations == [conversation]

    def test_messages_and_responses_relationships(self, db_session):
        customer = create_customer(db_session)
        conversation = create_conversation(db_session, customer)
        message = create_message(db_session, conversation, content="Leaking tap")
        response = create_response(db_session, conversation)

        db_session.refresh(conversation)

        assert conversation.messages == [message]
        assert conversation.responses == [response]
        assert message.conversation is conversation

    def test_conversation_requires_existing_customer(self, db_session):
        db_session.add(
            Conversation(customer_id=9999, phone_number="+15551234567", platform="voice_sms")
        )

        with pytest.raises(IntegrityError):
            db_session.flush()
        db_session.rollback()


class TestExternalIdMappingModel:
    """Tests for the ExternalIdMapping model."""

    def _mapping(self, message_id, external_id="gv-1", account_id="acct-1"):
        return ExternalIdMapping(
            external_message_id=external_id,
            source_account_id=account_id,
            message_id=message_id,
        )

    def test_external_id_unique_per_account(self, db_session):
        conversation = create_conversation(db_session, create_customer(db_session))
        message = create_message(db_session, conversation)
        db_session.add(self._mapping(message.id))
        db_session.flush()

        db_session.add(self._mapping(message.id))
        with pytest.raises(IntegrityError):
            db_session.flush()
        db_session.rollback()

    def test_same_external_id_on_another_account(self, db_session):
        conversation = create_conversation(db_session, create_customer(db_session))
        message = create_message(db_session, conversation)

        db_session.add_all([self._mapping(message.id), self._mapping(message.id, account_id="acct-2")])
        db_session.flush()

        assert db_session.query(ExternalIdMapping).count() == 2


class TestPhoneMappingModel:
    """Tests for the PhoneMapping model."""

    def test_phone_unique_per_account(self, db_session):
        when = datetime(2024, 6, 1)
        for _ in range(2):
            db_session.add(
                PhoneMapping(
                    source_account_id="acct-1",
                    normalized_phone="+15551234567",
                    first_contact_at=when,
                    last_contact_at=when,
                )
            )

        with pytest.raises(IntegrityError):
            db_session.flush()
        db_session.rollback()


class TestSyncSessionModel:
    """Tests for the SyncSession model."""

    def test_counter_defaults(self, db_session):
        row = SyncSession(id="session-1", source_account_id="acct-1", sync_type=SyncType.INITIAL)
        db_session.add(row)
        db_session.flush()

        assert row.status == SyncStatus.PENDING
        assert row.messages_processed == 0
        assert row.errors_encountered == 0
        assert row.last_cursor is None

    def test_terminal_statuses(self):
        assert SyncStatus.COMPLETED in SyncStatus.TERMINAL
        assert SyncStatus.FAILED in SyncStatus.TERMINAL
        assert SyncStatus.CANCELLED in SyncStatus.TERMINAL
        assert SyncStatus.RUNNING not in SyncStatus.TERMINAL


class TestConversationSyncMetadataModel:
    """Tests for the ConversationSyncMetadata model."""

    def test_one_entry_per_session_and_conversation(self, db_session):
        conversation = create_conversation(db_session, create_customer(db_session))
        db_session.add(SyncSession(id="session-1", source_account_id="acct-1", sync_type=SyncType.MANUAL))
        db_session.flush()
        for _ in range(2):
            db_session.add(
                ConversationSyncMetadata(
                    conversation_id=conversation.id,
                    sync_session_id="session-1",
                    sync_type=SyncType.MANUAL,
                    sync_source="voice_sms",
                )
            )

        with pytest.raises(IntegrityError):
            db_session.flush()
        db_session.rollback()

    def test_counter_defaults(self, db_session):
        conversation = create_conversation(db_session, create_customer(db_session))
        db_session.add(SyncSession(id="session-1", source_account_id="acct-1", sync_type=SyncType.MANUAL))
        entry = ConversationSyncMetadata(
            conversation_id=conversation.id,
            sync_session_id="session-1",
            sync_type=SyncType.MANUAL,
            sync_source="voice_sms",
        )
        db_session.add(entry)
        db_session.flush()

        assert entry.messages_imported == 0
        assert entry.duplicates_skipped == 0
        assert entry.completed_at is None
