from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Annotated, Any, Literal, TypeAlias, Union

from pydantic import BaseModel, ConfigDict, Field

from .protocol import extract_actions, extract_text


class _WireModel(BaseModel):
    """Base for models parsed from camelCase runtime JSON."""

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Serialize back to the runtime's camelCase shape."""
        return self.model_dump(by_alias=True, mode="json")


class Session(_WireModel):
    """Runtime-owned conversation session.

    Attributes:
        id: Session identifier assigned by the runtime.
        app_name: Agent application the session belongs to.
        user_id: Client identity the session was created for.
        state: Opaque runtime state map.
        events: Ordered runtime event log.
        last_update_time: Last runtime-side update, epoch seconds.
    """

    id: str
    app_name: str = Field(alias="appName")
    user_id: str = Field(alias="userId")
    state: dict[str, Any] = Field(default_factory=dict)
    events: list[dict[str, Any]] = Field(default_factory=list)
    last_update_time: float = Field(alias="lastUpdateTime")


class ConversationTurn(BaseModel):
    """One user message or one assistant reply."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    text: str


class UsageMetadata(_WireModel):
    """Token accounting reported on stream records."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    prompt_token_count: int | None = Field(default=None, alias="promptTokenCount")
    candidates_token_count: int | None = Field(default=None, alias="candidatesTokenCount")
    thoughts_token_count: int | None = Field(default=None, alias="thoughtsTokenCount")
    total_token_count: int | None = Field(default=None, alias="totalTokenCount")


class ProtocolRecord(BaseModel):
    """One decoded `data:` frame of the run stream.

    Attributes:
        text: Concatenated text of all content parts in this frame.
        partial: True when the runtime marks the frame as a partial fragment.
        complete: True when the frame ends the turn (carries a finish reason).
        author: Agent that produced the frame.
        invocation_id: Runtime invocation the frame belongs to.
        event_id: Runtime event id.
        timestamp: Runtime event timestamp, epoch seconds.
        usage: Token usage when reported.
        finish_reason: Finish reason on the completion frame.
        state_delta: Runtime-proposed partial state update.
        artifact_delta: Runtime-proposed artifact changes.
        raw: Full decoded JSON payload.
    """

    text: str = ""
    partial: bool = False
    complete: bool = False
    author: str | None = None
    invocation_id: str | None = None
    event_id: str | None = None
    timestamp: float | None = None
    usage: UsageMetadata | None = None
    finish_reason: str | None = None
    state_delta: dict[str, Any] = Field(default_factory=dict)
    artifact_delta: dict[str, Any] = Field(default_factory=dict)
    raw: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ProtocolRecord:
        """Build a record from one decoded stream JSON object."""
        actions = extract_actions(payload)
        usage = payload.get("usageMetadata")
        finish_reason = payload.get("finishReason")
        state_delta = actions.get("stateDelta")
        artifact_delta = actions.get("artifactDelta")
        timestamp = payload.get("timestamp")
        return cls(
            text=extract_text(payload),
            partial=bool(payload.get("partial", False)),
            complete=bool(finish_reason),
            author=_optional_str(payload.get("author")),
            invocation_id=_optional_str(payload.get("invocationId")),
            event_id=_optional_str(payload.get("id")),
            timestamp=timestamp if isinstance(timestamp, (int, float)) else None,
            usage=UsageMetadata.model_validate(usage) if isinstance(usage, dict) else None,
            finish_reason=_optional_str(finish_reason),
            state_delta=state_delta if isinstance(state_delta, dict) else {},
            artifact_delta=artifact_delta if isinstance(artifact_delta, dict) else {},
            raw=payload,
        )


class TokenUsage(BaseModel):
    """Usage summary attached to a finish event."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_metadata(cls, usage: UsageMetadata | None) -> TokenUsage:
        if usage is None:
            return cls()
        prompt = usage.prompt_token_count or 0
        completion = usage.candidates_token_count or 0
        total = usage.total_token_count if usage.total_token_count is not None else prompt + completion
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


class TextStart(BaseModel):
    type: Literal["text-start"] = "text-start"
    id: str


class TextDelta(BaseModel):
    type: Literal["text-delta"] = "text-delta"
    id: str
    delta: str


class TextEnd(BaseModel):
    type: Literal["text-end"] = "text-end"
    id: str


class Finish(BaseModel):
    type: Literal["finish"] = "finish"
    finish_reason: str = "stop"
    usage: TokenUsage = Field(default_factory=TokenUsage)


class StreamError(BaseModel):
    """Terminal error event. `error` is safe to show to end users."""

    type: Literal["error"] = "error"
    error: str
    kind: str = "unknown"


#: Event emitted by the stream adapter, discriminated on ``type``.
StreamEvent: TypeAlias = Annotated[
    Union[TextStart, TextDelta, TextEnd, Finish, StreamError],
    Field(discriminator="type"),
]


class HealthStatus(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: str = "unknown"


DocumentStatus: TypeAlias = Literal["pending", "processing", "completed", "failed"]


class DocumentResults(_WireModel):
    """Fields extracted from a processed document."""

    document_type: str = Field(alias="documentType")
    extracted_data: dict[str, Any] = Field(default_factory=dict, alias="extractedData")
    validation_status: Literal["valid", "invalid"] = Field(alias="validationStatus")
    errors: list[str] = Field(default_factory=list)
    confidence: float = 0.0


class DocumentUpload(_WireModel):
    """Upload handle tracked by the document-processing collaborator."""

    id: str
    session_id: str = Field(default="", alias="sessionId")
    filename: str = ""
    mime_type: str = Field(default="", alias="mimeType")
    size: int = 0
    status: DocumentStatus = "pending"
    upload_url: str | None = Field(default=None, alias="uploadUrl")
    results: DocumentResults | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")


class KnowledgeBaseAnswer(BaseModel):
    answer: str = ""
    citations: list[Any] = Field(default_factory=list)
    documents: list[Any] | None = None
    error: str | None = None


#: Opaque knowledge-base collaborator: question in, answer out.
KnowledgeBaseQuery: TypeAlias = Callable[[str], Awaitable[KnowledgeBaseAnswer]]


def _optional_str(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None
