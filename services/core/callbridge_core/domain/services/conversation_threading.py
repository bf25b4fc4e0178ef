"""Conversation threading.

Maps a (customer, phone, platform) key to the conversation a new message
belongs to. Decision order:

1. Reuse the active conversation. If a race left several active, they are
   merged into the most recently updated one.
2. Reactivate a resolved conversation whose last message is recent, when
   the new message reads as a follow-up or carries no body.
3. Merge: several non-archived conversations for the key created within
   the merge window are folded into the most recently updated one.
4. Create a new active conversation, prioritized from the message body.

After every call exactly one active conversation exists for the key.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from callbridge_core.domain.models import (
    Conversation,
    ConversationResponse,
    ConversationStatus,
    Message,
)
from callbridge_core.domain.services.classifiers import (
    KeywordMessageClassifier,
    MessageClassifier,
)
from callbridge_core.domain.services.phone import normalize_phone
from callbridge_core.domain.timeutil import to_naive_utc, utcnow

logger = logging.getLogger(__name__)


class ThreadAction(str):
    """What the resolver did to produce the conversation."""

    REUSED = "reused"
    REACTIVATED = "reactivated"
    MERGED = "merged"
    CREATED = "created"


@dataclass
class ConversationResolution:
    """Outcome of resolving a conversation."""

    conversation: Conversation
    is_new: bool
    action: str
    reasoning: str
    merged_ids: list[int] = field(default_factory=list)


class ConversationResolver:
    """Finds, reactivates, merges or creates conversation threads."""

    def __init__(
        self,
        db: Session,
        classifier: Optional[MessageClassifier] = None,
        reactivation_hours: int = 24,
        merge_window_days: int = 7,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the resolver.

        Args:
            db: SQLAlchemy database session.
            classifier: Follow-up and priority classifier.
            reactivation_hours: How recent a resolved conversation's last
                message must be for it to be reactivated.
            merge_window_days: Creation window for merging duplicates.
            clock: Returns the current naive UTC time.
        """
        self.db = db
        self.classifier = classifier or KeywordMessageClassifier()
        self.reactivation_window = timedelta(hours=reactivation_hours)
        self.merge_window = timedelta(days=merge_window_days)
        self.clock = clock

    def resolve_conversation(
        self,
        customer_id: int,
        phone: str,
        platform: str,
        message_body: Optional[str] = None,
        external_thread_id: Optional[str] = None,
        message_at: Optional[datetime] = None,
    ) -> ConversationResolution:
        """Resolve the conversation for a new message.

        Args:
            customer_id: The resolved customer.
            phone: Phone number in any common format.
            platform: Messaging platform, e.g. "voice_sms".
            message_body: Text of the new message, if any.
            external_thread_id: Provider thread id, recorded on the thread.
            message_at: When the message was sent; defaults to now.

        Returns:
            The resolution, whose conversation is active.
        """
        normalized = normalize_phone(phone)
        now = self.clock()
        message_at = to_naive_utc(message_at) or now

        base = self.db.query(Conversation).filter(
            Conversation.customer_id == customer_id,
            Conversation.phone_number == normalized,
            Conversation.platform == platform,
        )

        # 1. Reuse active
        active = (
            base.filter(Conversation.status == ConversationStatus.ACTIVE)
            .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
            .all()
        )
        if active:
            canonical, others = active[0], active[1:]
            if others:
                merged_ids = self._merge(canonical, others)
                self._touch(canonical, message_at, external_thread_id)
                return ConversationResolution(
                    conversation=canonical,
                    is_new=False,
                    action=ThreadAction.MERGED,
                    reasoning=f"Merged {len(merged_ids)} concurrently active conversations",
                    merged_ids=merged_ids,
                )
            self._touch(canonical, message_at, external_thread_id)
            return ConversationResolution(
                conversation=canonical,
                is_new=False,
                action=ThreadAction.REUSED,
                reasoning="Found existing active conversation",
            )

        # 2. Reactivate recent
        recent = (
            base.filter(
                Conversation.status == ConversationStatus.RESOLVED,
                Conversation.last_message_at.is_not(None),
                Conversation.last_message_at >= now - self.reactivation_window,
            )
            .order_by(Conversation.last_message_at.desc(), Conversation.id.desc())
            .first()
        )
        if recent is not None and (
            message_body is None or self.classifier.is_follow_up(message_body)
        ):
            recent.status = ConversationStatus.ACTIVE
            self._touch(recent, message_at, external_thread_id)
            logger.info(f"Reactivated conversation {recent.id} for customer {customer_id}")
            return ConversationResolution(
                conversation=recent,
                is_new=False,
                action=ThreadAction.REACTIVATED,
                reasoning="Reactivated recent conversation",
            )

        # 3. Merge duplicates
        candidates = (
            base.filter(
                Conversation.status != ConversationStatus.ARCHIVED,
                Conversation.created_at >= now - self.merge_window,
            )
            .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
            .all()
        )
        if len(candidates) > 1:
            canonical, others = candidates[0], candidates[1:]
            merged_ids = self._merge(canonical, others)
            canonical.status = ConversationStatus.ACTIVE
            self._touch(canonical, message_at, external_thread_id)
            return ConversationResolution(
                conversation=canonical,
                is_new=False,
                action=ThreadAction.MERGED,
                reasoning="Merged duplicate conversations",
                merged_ids=merged_ids,
            )

        # 4. Create new
        priority = self.classifier.priority(message_body)
        conversation = Conversation(
            customer_id=customer_id,
            phone_number=normalized,
            platform=platform,
            status=ConversationStatus.ACTIVE,
            priority=priority,
            is_emergency=self.classifier.is_emergency(message_body),
            last_message_at=message_at,
            external_thread_id=external_thread_id,
            original_phone_number=phone,
        )
        self.db.add(conversation)
        self.db.flush()

        logger.info(
            f"Created conversation {conversation.id} for customer {customer_id} "
            f"(priority={priority})"
        )
        return ConversationResolution(
            conversation=conversation,
            is_new=True,
            action=ThreadAction.CREATED,
            reasoning="Created new conversation thread",
        )

    def _touch(
        self,
        conversation: Conversation,
        message_at: datetime,
        external_thread_id: Optional[str],
    ) -> None:
        if conversation.last_message_at is None or message_at > conversation.last_message_at:
            conversation.last_message_at = message_at
        if external_thread_id and not conversation.external_thread_id:
            conversation.external_thread_id = external_thread_id
        conversation.updated_at = self.clock()
        self.db.flush()

    def _merge(self, canonical: Conversation, others: list[Conversation]) -> list[int]:
        """Fold conversations into the canonical one and archive them.

        Messages and response records are re-pointed; the canonical
        conversation keeps the latest last_message_at of the group.
        """
        merged_ids = [c.id for c in others]

        self.db.query(Message).filter(Message.conversation_id.in_(merged_ids)).update(
            {Message.conversation_id: canonical.id}, synchronize_session="fetch"
        )
        self.db.query(ConversationResponse).filter(
            ConversationResponse.conversation_id.in_(merged_ids)
        ).update(
            {ConversationResponse.conversation_id: canonical.id},
            synchronize_session="fetch",
        )

        for other in others:
            if other.last_message_at is not None and (
                canonical.last_message_at is None
                or other.last_message_at > canonical.last_message_at
            ):
                canonical.last_message_at = other.last_message_at
            if other.is_emergency:
                canonical.is_emergency = True
            other.status = ConversationStatus.ARCHIVED

        self.db.flush()
        logger.info(f"Merged conversations {merged_ids} into {canonical.id}")
        return merged_ids
