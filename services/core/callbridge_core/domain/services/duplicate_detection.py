"""Duplicate detection for incoming external messages.

Two checks, in order:
1. Exact: the (external id, source account) pair is already mapped.
2. Fuzzy: a stored message on the same normalized phone with identical
   content and direction was sent within the duplicate window. This catches
   provider redelivery under a new id and webhook/poll races.

Detection fails open: if a lookup raises, the message is treated as new so
that a legitimate message is never silently dropped.

Usage:
    detector = DuplicateDetector(db=session)
    result = detector.is_duplicate(external_message, account_id="acct-1")
    if result.is_duplicate:
        print(result.match_type, result.matched_message_id)
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from callbridge_core.domain.models import Conversation, ExternalIdMapping, Message
from callbridge_core.domain.services.phone import normalize_phone
from callbridge_core.domain.timeutil import to_naive_utc
from callbridge_core.providers.base import ExternalMessage, MessageDirection

logger = logging.getLogger(__name__)

EXACT_MATCH_CONFIDENCE = 1.0
FUZZY_MATCH_CONFIDENCE = 0.9


# =============================================================================
# DATA STRUCTURES
# =============================================================================


class DuplicateMatchType(str):
    """How a duplicate was detected."""

    EXTERNAL_ID = "external_id"
    CONTENT = "content"


@dataclass
class DuplicateCheckResult:
    """Outcome of a duplicate check."""

    is_duplicate: bool
    matched_message_id: Optional[int] = None
    confidence: float = 0.0
    match_type: Optional[str] = None

    @classmethod
    def not_duplicate(cls) -> "DuplicateCheckResult":
        return cls(is_duplicate=False)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "is_duplicate": self.is_duplicate,
            "matched_message_id": self.matched_message_id,
            "confidence": self.confidence,
            "match_type": self.match_type,
        }


# =============================================================================
# SERVICE
# =============================================================================


class DuplicateDetector:
    """Decides whether an external message was already imported."""

    def __init__(self, db: Session, window_hours: int = 24):
        """Initialize the detector.

        Args:
            db: SQLAlchemy database session.
            window_hours: Tolerance either side of the message timestamp for
                the content-based check.
        """
        self.db = db
        self.window = timedelta(hours=window_hours)

    def is_duplicate(
        self, message: ExternalMessage, account_id: str, content_match: bool = True
    ) -> DuplicateCheckResult:
        """Check whether a message was already imported.

        Args:
            message: The incoming external message.
            account_id: The source account it was fetched for.
            content_match: Also look for the same content within the window;
                the external id lookup always runs.

        Returns:
            The check result. Never raises.
        """
        try:
            exact = self._find_by_external_id(message.external_id, account_id)
            if exact is not None:
                return DuplicateCheckResult(
                    is_duplicate=True,
                    matched_message_id=exact,
                    confidence=EXACT_MATCH_CONFIDENCE,
                    match_type=DuplicateMatchType.EXTERNAL_ID,
                )

            fuzzy = self._find_by_content(message) if content_match else None
            if fuzzy is not None:
                logger.info(
                    f"Content duplicate for external message {message.external_id}: "
                    f"matches message {fuzzy}"
                )
                return DuplicateCheckResult(
                    is_duplicate=True,
                    matched_message_id=fuzzy,
                    confidence=FUZZY_MATCH_CONFIDENCE,
                    match_type=DuplicateMatchType.CONTENT,
                )
        except Exception as e:
            logger.warning(
                f"Duplicate check failed for external message {message.external_id}, "
                f"treating as new: {e}"
            )

        return DuplicateCheckResult.not_duplicate()

    def _find_by_external_id(self, external_id: str, account_id: str) -> Optional[int]:
        mapping = (
            self.db.query(ExternalIdMapping)
            .filter_by(external_message_id=external_id, source_account_id=account_id)
            .first()
        )
        return mapping.message_id if mapping is not None else None

    def _find_by_content(self, message: ExternalMessage) -> Optional[int]:
        phone = normalize_phone(message.phone_number)
        sent_at = to_naive_utc(message.timestamp)

        match = (
            self.db.query(Message.id)
            .join(Conversation, Message.conversation_id == Conversation.id)
            .filter(
                Conversation.phone_number == phone,
                Message.content == message.text,
                Message.direction == MessageDirection(message.direction).value,
                Message.sent_at >= sent_at - self.window,
                Message.sent_at <= sent_at + self.window,
            )
            .order_by(Message.id)
            .first()
        )
        return match[0] if match is not None else None
