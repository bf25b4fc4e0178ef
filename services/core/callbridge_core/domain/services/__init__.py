"""Domain services for CallBridge."""

from callbridge_core.domain.services.classifiers import (
    KeywordMessageClassifier,
    MessageClassifier,
)
from callbridge_core.domain.services.conversation_threading import (
    ConversationResolution,
    ConversationResolver,
)
from callbridge_core.domain.services.duplicate_detection import (
    DuplicateCheckResult,
    DuplicateDetector,
)
from callbridge_core.domain.services.identity import (
    CustomerMatchResult,
    IdentityResolver,
    MatchType,
    MatchWeights,
)
from callbridge_core.domain.services.ingest import (
    IngestOptions,
    IngestResult,
    IngestService,
    ingest_webhook_message,
)
from callbridge_core.domain.services.message_import import (
    DuplicateExternalIdError,
    MessageImporter,
    MessageImportError,
)
from callbridge_core.domain.services.phone import InvalidPhoneNumberError, normalize_phone
from callbridge_core.domain.services.sync import (
    SyncAlreadyRunningError,
    SyncOptions,
    SyncOrchestrator,
    SyncProgress,
)

__all__ = [
    "ConversationResolution",
    "ConversationResolver",
    "CustomerMatchResult",
    "DuplicateCheckResult",
    "DuplicateDetector",
    "DuplicateExternalIdError",
    "IdentityResolver",
    "IngestOptions",
    "IngestResult",
    "IngestService",
    "InvalidPhoneNumberError",
    "KeywordMessageClassifier",
    "MatchType",
    "MatchWeights",
    "MessageClassifier",
    "MessageImporter",
    "MessageImportError",
    "SyncAlreadyRunningError",
    "SyncOptions",
    "SyncOrchestrator",
    "SyncProgress",
    "ingest_webhook_message",
    "normalize_phone",
]
