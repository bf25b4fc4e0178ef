"""Message source integrations for CallBridge.

- Base: abstract source client interface and DTOs
"""

from callbridge_core.providers.base import (
    ExternalMessage,
    FetchPageRequest,
    MessageDirection,
    MessagePage,
    MessageSourceClient,
    SourceFetchError,
)

__all__ = [
    "ExternalMessage",
    "FetchPageRequest",
    "MessageDirection",
    "MessagePage",
    "MessageSourceClient",
    "SourceFetchError",
]
