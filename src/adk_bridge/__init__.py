from .accumulator import ConversationState, merge_delta
from .bridge import ChatBridge, document_summary
from .client import AdkClient
from .config import BridgeConfig
from .documents import DocumentFile, DocumentProcessor
from .errors import (
    AdkConnectionError,
    AdkError,
    AdkHTTPError,
    AdkMalformedFrameError,
    AdkProtocolError,
    AdkSessionExpiredError,
    AdkSessionNotFoundError,
    AdkStreamAbortedError,
    AdkTimeoutError,
    DocumentProcessingError,
    SessionValidationError,
    describe_error,
)
from .framing import FrameDecoder, decode_line, iter_records
from .logging import get_logger, setup_logging
from .models import (
    ConversationTurn,
    DocumentResults,
    DocumentUpload,
    Finish,
    HealthStatus,
    KnowledgeBaseAnswer,
    KnowledgeBaseQuery,
    ProtocolRecord,
    Session,
    StreamError,
    StreamEvent,
    TextDelta,
    TextEnd,
    TextStart,
    TokenUsage,
    UsageMetadata,
)
from .sessions import FileSessionStorage, MemorySessionStorage, SessionStorage, SessionStore
from .stream import StreamAdapter
from .transport import HttpTransport, RetryPolicy, Transport

__all__ = [
    "AdkClient",
    "AdkConnectionError",
    "AdkError",
    "AdkHTTPError",
    "AdkMalformedFrameError",
    "AdkProtocolError",
    "AdkSessionExpiredError",
    "AdkSessionNotFoundError",
    "AdkStreamAbortedError",
    "AdkTimeoutError",
    "BridgeConfig",
    "ChatBridge",
    "ConversationState",
    "ConversationTurn",
    "DocumentFile",
    "DocumentProcessingError",
    "DocumentProcessor",
    "DocumentResults",
    "DocumentUpload",
    "FileSessionStorage",
    "Finish",
    "FrameDecoder",
    "HealthStatus",
    "HttpTransport",
    "KnowledgeBaseAnswer",
    "KnowledgeBaseQuery",
    "MemorySessionStorage",
    "ProtocolRecord",
    "RetryPolicy",
    "Session",
    "SessionStorage",
    "SessionStore",
    "SessionValidationError",
    "StreamAdapter",
    "StreamError",
    "StreamEvent",
    "TextDelta",
    "TextEnd",
    "TextStart",
    "TokenUsage",
    "Transport",
    "UsageMetadata",
    "decode_line",
    "describe_error",
    "document_summary",
    "get_logger",
    "iter_records",
    "merge_delta",
    "setup_logging",
]
