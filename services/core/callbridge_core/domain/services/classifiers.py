"""Message content classifiers.

Keyword heuristics used while threading messages: follow-up detection for
reactivating a resolved conversation, and priority detection for new ones.
The keyword lists are business heuristics, not contracts; swap in another
MessageClassifier to change them.
"""

from abc import ABC, abstractmethod
from typing import Optional, Sequence

from callbridge_core.domain.models import Priority


EMERGENCY_KEYWORDS = (
    "emergency",
    "urgent",
    "flooding",
    "burst pipe",
    "no water",
    "sewage backup",
    "gas leak",
    "water everywhere",
    "help asap",
)

HIGH_PRIORITY_KEYWORDS = (
    "asap",
    "today",
    "right away",
    "immediately",
    "cannot wait",
    "broken",
    "not working",
    "stopped working",
)

FOLLOW_UP_KEYWORDS = (
    "follow up",
    "followup",
    "update",
    "still",
    "yet",
    "same issue",
    "problem",
    "not fixed",
    "still broken",
    "again",
    "back",
)


class MessageClassifier(ABC):
    """Strategy for content-based message classification."""

    @abstractmethod
    def is_follow_up(self, body: Optional[str]) -> bool:
        """Whether the message continues an earlier conversation."""
        ...

    @abstractmethod
    def is_emergency(self, body: Optional[str]) -> bool:
        """Whether the message reports an emergency."""
        ...

    @abstractmethod
    def priority(self, body: Optional[str]) -> str:
        """Priority for a new conversation started by this message."""
        ...


class KeywordMessageClassifier(MessageClassifier):
    """Case-insensitive substring matching against keyword lists."""

    def __init__(
        self,
        emergency_keywords: Sequence[str] = EMERGENCY_KEYWORDS,
        high_priority_keywords: Sequence[str] = HIGH_PRIORITY_KEYWORDS,
        follow_up_keywords: Sequence[str] = FOLLOW_UP_KEYWORDS,
    ):
        self.emergency_keywords = tuple(k.lower() for k in emergency_keywords)
        self.high_priority_keywords = tuple(k.lower() for k in high_priority_keywords)
        self.follow_up_keywords = tuple(k.lower() for k in follow_up_keywords)

    @staticmethod
    def _contains_any(body: Optional[str], keywords: Sequence[str]) -> bool:
        if not body:
            return False
        text = body.lower()
        return any(keyword in text for keyword in keywords)

    def is_follow_up(self, body: Optional[str]) -> bool:
        return self._contains_any(body, self.follow_up_keywords)

    def is_emergency(self, body: Optional[str]) -> bool:
        return self._contains_any(body, self.emergency_keywords)

    def priority(self, body: Optional[str]) -> str:
        if self.is_emergency(body):
            return Priority.EMERGENCY
        if self._contains_any(body, self.high_priority_keywords):
            return Priority.HIGH
        return Priority.MEDIUM
