from __future__ import annotations

from typing import Any


class AdkError(Exception):
    """Base exception for the adk-bridge package."""


class AdkTimeoutError(AdkError):
    """Raised when a request exceeds its hard timeout. Never retried."""


class AdkConnectionError(AdkError):
    """Raised when a transient connection failure outlives the retry policy."""

    def __init__(self, message: str, *, attempts: int = 1) -> None:
        super().__init__(message)
        self.attempts = attempts


class AdkHTTPError(AdkError):
    """Raised when the runtime answers with a non-2xx status."""

    def __init__(
        self,
        message: str,
        *,
        status: int,
        body: Any = None,
    ) -> None:
        """Create an HTTP error.

        Args:
            message: Human-readable description.
            status: HTTP status code returned by the runtime.
            body: Decoded JSON body when available, raw text otherwise.
        """
        super().__init__(message)
        self.status = status
        self.body = body

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status < 500


class AdkSessionNotFoundError(AdkHTTPError):
    """Raised when the runtime no longer knows a session id."""


class AdkSessionExpiredError(AdkError):
    """Raised when a cached session is older than the freshness window."""

    def __init__(self, message: str, *, session_id: str, age_seconds: float) -> None:
        super().__init__(message)
        self.session_id = session_id
        self.age_seconds = age_seconds


class AdkProtocolError(AdkError):
    """Raised when a runtime response body does not match the wire protocol."""


class AdkMalformedFrameError(AdkProtocolError):
    """Raised for one undecodable stream line. Recovered inside the decoder."""

    def __init__(self, message: str, *, line: str) -> None:
        super().__init__(message)
        self.line = line


class AdkStreamAbortedError(AdkError):
    """Raised when the consumer cancels a stream before it terminated."""


class SessionValidationError(AdkError):
    """Raised when a persisted session handle has an invalid structure."""


class DocumentProcessingError(AdkError):
    """Raised when the runtime reports a document as failed."""

    def __init__(self, message: str, *, upload_id: str) -> None:
        super().__init__(message)
        self.upload_id = upload_id


def describe_error(exc: BaseException) -> tuple[str, str]:
    """Map an exception to a failure class and one human-readable message.

    Hosts show the message to users; transport internals stay in the logs.
    """
    if isinstance(exc, AdkTimeoutError):
        return "timeout", "The assistant took too long to respond. Please try again."
    if isinstance(exc, AdkConnectionError):
        return "connection", "Could not reach the assistant service. Check your connection and retry."
    if isinstance(exc, AdkSessionNotFoundError):
        return "session", "Your conversation session was lost. A new one will be started."
    if isinstance(exc, AdkHTTPError):
        if exc.status >= 500:
            return "http", "The assistant service is temporarily unavailable. Please try again."
        return "http", f"The assistant service rejected the request (status {exc.status})."
    if isinstance(exc, AdkSessionExpiredError):
        return "session", "Your conversation session expired. A new one will be started."
    if isinstance(exc, AdkProtocolError):
        return "protocol", "The assistant sent an unexpected response. Please try again."
    if isinstance(exc, DocumentProcessingError):
        return "document", "The document could not be processed. Try a clearer copy."
    if isinstance(exc, AdkStreamAbortedError):
        return "aborted", "The response was cancelled."
    return "unknown", "Something went wrong while talking to the assistant."
