"""Domain models for CallBridge.

SQLAlchemy ORM models for customers, conversation threads, imported
messages, the external-id and phone mapping side tables, and sync sessions.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from callbridge_core.domain.timeutil import utcnow


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


# =============================================================================
# ENUMS
# =============================================================================


class ConversationStatus(str):
    """Conversation lifecycle values."""

    ACTIVE = "active"
    RESOLVED = "resolved"
    ARCHIVED = "archived"


class Priority(str):
    """Conversation priority values."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EMERGENCY = "emergency"


class MessageDirection(str):
    """Message direction values."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class SyncType(str):
    """Sync session type values."""

    INITIAL = "initial"
    INCREMENTAL = "incremental"
    MANUAL = "manual"

    ALL = (INITIAL, INCREMENTAL, MANUAL)


class SyncStatus(str):
    """Sync session status values."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    TERMINAL = (COMPLETED, FAILED, CANCELLED)


# =============================================================================
# MODELS
# =============================================================================


class Customer(Base):
    """A customer identity, keyed in practice by phone number."""

    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # E.164
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    alternate_phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("idx_customer_phone", "phone"),
        Index("idx_customer_alternate_phone", "alternate_phone"),
    )

    # Relationships
    conversations: Mapped[list["Conversation"]] = relationship(back_populates="customer")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Conversation(Base):
    """A thread of messages with one customer over one number on one platform.

    At most one conversation per (customer_id, phone_number, platform) is
    active at a time.
    """

    __tablename__ = "conversations"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("customers.id"), nullable=False
    )
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ConversationStatus.ACTIVE
    )
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default=Priority.MEDIUM)
    is_emergency: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    external_thread_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    original_phone_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("idx_conversation_key", "customer_id", "phone_number", "platform", "status"),
        Index("idx_conversation_phone", "phone_number"),
    )

    # Relationships
    customer: Mapped["Customer"] = relationship(back_populates="conversations")
    messages: Mapped[list["Message"]] = relationship(back_populates="conversation")
    responses: Mapped[list["ConversationResponse"]] = relationship(
        back_populates="conversation"
    )


class Message(Base):
    """An imported message, owned by exactly one conversation."""

    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("conversations.id"), nullable=False
    )
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    message_type: Mapped[str] = mapped_column(String(16), nullable=False, default="sms")
    platform: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # ["https://...", ...]
    attachments_json: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    is_emergency: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_message_conversation_sent", "conversation_id", "sent_at"),
    )

    # Relationships
    conversation: Mapped["Conversation"] = relationship(back_populates="messages")


class ConversationResponse(Base):
    """A reply record produced for a conversation (e.g. a drafted response)."""

    __tablename__ = "conversation_responses"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("conversations.id"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    # Relationships
    conversation: Mapped["Conversation"] = relationship(back_populates="responses")


class ExternalIdMapping(Base):
    """Maps a provider message id, per source account, to the imported message."""

    __tablename__ = "external_id_mappings"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    external_message_id: Mapped[str] = mapped_column(String(128), nullable=False)
    source_account_id: Mapped[str] = mapped_column(String(128), nullable=False)
    message_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("messages.id"), nullable=False
    )
    external_thread_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    external_message_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "external_message_id", "source_account_id", name="uq_external_message"
        ),
        Index("idx_external_mapping_message", "message_id"),
    )


class PhoneMapping(Base):
    """First/last contact bookkeeping for a phone number on a source account."""

    __tablename__ = "phone_mappings"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    source_account_id: Mapped[str] = mapped_column(String(128), nullable=False)
    normalized_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    raw_phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    customer_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("customers.id"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    first_contact_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_contact_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("source_account_id", "normalized_phone", name="uq_phone_mapping"),
    )


class SyncSession(Base):
    """One run of the batch synchronization loop for one source account."""

    __tablename__ = "sync_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)  # UUID
    source_account_id: Mapped[str] = mapped_column(String(128), nullable=False)
    sync_type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=SyncStatus.PENDING)

    # Counters
    messages_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    customers_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    customers_matched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conversations_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conversations_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conversations_merged: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duplicates_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    malformed_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors_encountered: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pages_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Resume point, recorded on completion
    last_cursor: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    last_message_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    options_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("idx_sync_session_account_status", "source_account_id", "status"),
    )


class ConversationSyncMetadata(Base):
    """What one sync session imported into one conversation."""

    __tablename__ = "conversation_sync_metadata"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("conversations.id"), nullable=False
    )
    sync_session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("sync_sessions.id"), nullable=False
    )
    sync_type: Mapped[str] = mapped_column(String(16), nullable=False)
    sync_source: Mapped[str] = mapped_column(String(32), nullable=False)

    messages_imported: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duplicates_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_synced_message_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    last_synced_timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # {"detect_duplicates": true, "create_customers": true, ...}
    sync_config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("sync_session_id", "conversation_id", name="uq_conversation_sync"),
        Index("idx_conversation_sync_conversation", "conversation_id"),
    )
