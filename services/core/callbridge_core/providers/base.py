"""Message source interface and DTOs.

The external voice/SMS provider is reached through a MessageSourceClient.
Token handling, HTTP transport and retries live inside concrete clients;
the sync engine only sees normalized pages of ExternalMessage objects.

Usage:
    class VoiceApiClient(MessageSourceClient):
        async def fetch_page(self, account_id, request):
            payload = await self._get("/messages", ...)
            return MessagePage(
                messages=[ExternalMessage.from_dict(m) for m in payload["messages"]],
                next_cursor=payload.get("nextPageToken"),
            )
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


# =============================================================================
# ENUMS
# =============================================================================


class MessageDirection(str, Enum):
    """Direction of a message relative to the business."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


# =============================================================================
# ERRORS
# =============================================================================


class SourceFetchError(Exception):
    """Raised by a source client once its own retries are exhausted."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class ExternalMessage:
    """A message as delivered by the provider.

    Transient: it is mapped into a Message row and never stored as-is.
    """

    external_id: str
    thread_id: Optional[str]
    phone_number: str
    direction: MessageDirection
    text: str
    timestamp: datetime

    # Optional fields
    attachments: list[str] = field(default_factory=list)
    message_type: str = "sms"
    contact_name: Optional[str] = None
    contact_email: Optional[str] = None
    raw_data: Optional[dict] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExternalMessage":
        """Build a message from a JSON-style payload.

        Accepts both snake_case and the provider's camelCase keys. Missing
        required values are kept empty so that the ingest path can report
        the message as malformed instead of failing here.

        Raises:
            ValueError: If the direction or timestamp cannot be parsed.
        """
        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        elif isinstance(timestamp, (int, float)):
            # Epoch milliseconds
            timestamp = datetime.fromtimestamp(timestamp / 1000)
        if not isinstance(timestamp, datetime):
            raise ValueError("timestamp is required")

        return cls(
            external_id=str(data.get("id") or data.get("external_id") or ""),
            thread_id=data.get("thread_id") or data.get("threadId"),
            phone_number=data.get("phone_number") or data.get("phoneNumber") or "",
            direction=MessageDirection(data.get("direction", MessageDirection.INBOUND.value)),
            text=data.get("text") or data.get("body") or "",
            timestamp=timestamp,
            attachments=list(data.get("attachments") or []),
            message_type=data.get("type") or data.get("message_type") or "sms",
            contact_name=data.get("contact_name") or data.get("contactName"),
            contact_email=data.get("contact_email") or data.get("contactEmail"),
            raw_data=data,
        )


@dataclass
class FetchPageRequest:
    """Parameters for fetching one page of messages."""

    cursor: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    page_size: int = 50


@dataclass
class MessagePage:
    """One page of messages plus the cursor for the next page."""

    messages: list[ExternalMessage]
    next_cursor: Optional[str] = None


# =============================================================================
# SOURCE CLIENT INTERFACE
# =============================================================================


class MessageSourceClient(ABC):
    """Abstract client for the external message feed.

    Implementations must be idempotent under retry: fetching the same page
    twice returns the same messages.
    """

    @abstractmethod
    async def fetch_page(self, account_id: str, request: FetchPageRequest) -> MessagePage:
        """Fetch one page of messages for a source account.

        Args:
            account_id: The source account (provider token) id.
            request: Cursor, time range and page size.

        Returns:
            The page of messages and the next cursor, if any.

        Raises:
            SourceFetchError: When the page cannot be fetched.
        """
        ...
