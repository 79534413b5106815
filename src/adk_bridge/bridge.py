from __future__ import annotations

from typing import Any

import httpx

from .accumulator import ConversationState
from .client import AdkClient
from .config import SESSION_MAX_AGE_SECONDS, BridgeConfig
from .documents import DocumentProcessor
from .logging import get_logger
from .models import DocumentUpload, HealthStatus, KnowledgeBaseAnswer, KnowledgeBaseQuery, Session
from .sessions import FileSessionStorage, SessionStorage, SessionStore
from .stream import StreamAdapter

logger = get_logger(__name__)

DOCUMENTS_STATE_KEY = "documents"


class ChatBridge:
    """Conversation worker exposing the agent runtime to a chat surface.

    One instance owns one session, one turn list and one accumulated state.
    It expects one user message at a time: `send()` refuses to start a new
    turn while a consumer is still reading the previous stream, and closes a
    previous stream that was abandoned before it terminated.
    """

    def __init__(
        self,
        client: AdkClient,
        *,
        storage: SessionStorage | None = None,
        state: ConversationState | None = None,
        knowledge_base: KnowledgeBaseQuery | None = None,
        session_max_age: float = SESSION_MAX_AGE_SECONDS,
        stream_buffer: int = 64,
        document_batch_size: int = 3,
    ) -> None:
        self._client = client
        self._sessions = SessionStore(client, storage=storage, max_age=session_max_age)
        self._state = state if state is not None else ConversationState()
        self._knowledge_base = knowledge_base
        self._stream_buffer = stream_buffer
        self._documents = DocumentProcessor(client, batch_size=document_batch_size)
        self._active: StreamAdapter | None = None

    @classmethod
    def from_config(
        cls,
        config: BridgeConfig,
        *,
        knowledge_base: KnowledgeBaseQuery | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> ChatBridge:
        """Create a bridge and its client from one config object."""
        client = AdkClient.from_config(config, http_transport=http_transport)
        storage = FileSessionStorage(config.session_file) if config.session_file else None
        return cls(
            client,
            storage=storage,
            knowledge_base=knowledge_base,
            session_max_age=config.session_max_age,
            stream_buffer=config.stream_buffer,
            document_batch_size=config.document_batch_size,
        )

    @property
    def client(self) -> AdkClient:
        return self._client

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    @property
    def documents(self) -> DocumentProcessor:
        """Document processor sharing this bridge's client."""
        return self._documents

    @property
    def state(self) -> ConversationState:
        return self._state

    async def __aenter__(self) -> ChatBridge:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Cancel any running stream and close the client."""
        if self._active is not None and not self._active.done:
            await self._active.aclose()
        self._active = None
        await self._client.close()

    async def get_or_create_session(self) -> Session:
        return await self._sessions.get_or_create()

    async def send(self, text: str) -> StreamAdapter:
        """Send one user message and return its event stream.

        Session failures raise here; transport failures during the turn
        arrive as a single `error` event on the returned stream. A previous
        turn that nobody is reading any more is closed first.
        """
        previous = self._active
        if previous is not None and not previous.done:
            if previous.reading:
                raise RuntimeError("previous turn is still streaming; finish or close it first")
            logger.info("turn_abandoned", chars=len(previous.text))
            await previous.aclose()
        session = await self.get_or_create_session()
        self._state.append_turn("user", text)
        records = self._client.send_message(
            session.id,
            text,
            state_delta=self._state.outgoing_state_delta(),
        )
        logger.info("turn_started", session_id=session.id, turns=len(self._state.turns))
        self._active = StreamAdapter(records, state=self._state, max_buffer=self._stream_buffer)
        return self._active

    async def ask(self, text: str) -> str:
        """Send one message and return the complete assistant reply."""
        stream = await self.send(text)
        return await stream.reply()

    def clear_session(self) -> None:
        """Forget the session handle and the local conversation."""
        self._sessions.clear()
        self._state.reset()

    async def delete_session(self) -> None:
        """Delete the current session on the runtime, then clear locally."""
        current = self._sessions.current
        if current is not None:
            await self._client.delete_session(current.id)
        self.clear_session()

    async def health_check(self) -> HealthStatus:
        return await self._client.health_check()

    async def ask_knowledge_base(self, question: str) -> KnowledgeBaseAnswer:
        """Query the knowledge-base collaborator; failures come back as `error`."""
        if self._knowledge_base is None:
            return KnowledgeBaseAnswer(error="knowledge base is not configured")
        try:
            return await self._knowledge_base(question)
        except Exception as exc:
            logger.warning("knowledge_base_failed", error=f"{exc.__class__.__name__}: {exc}")
            return KnowledgeBaseAnswer(error="The knowledge base could not answer right now.")

    async def send_document_results(self, upload: DocumentUpload) -> StreamAdapter | None:
        """Fold a processed document into state and the conversation.

        Returns None while the upload has no results yet.
        """
        summary = document_summary(upload)
        if summary is None or upload.results is None:
            return None
        self._state.merge(
            {DOCUMENTS_STATE_KEY: {upload.results.document_type: upload.results.extracted_data}}
        )
        return await self.send(summary)


def document_summary(upload: DocumentUpload) -> str | None:
    """Render a completed upload's extracted fields as a user message."""
    if upload.status != "completed" or upload.results is None:
        return None
    results = upload.results
    lines = [f"I uploaded my {results.document_type} ({upload.filename or upload.id})."]
    if results.extracted_data:
        lines.append("Extracted details:")
        lines.extend(f"- {key}: {value}" for key, value in results.extracted_data.items())
    if results.validation_status == "invalid":
        lines.append("The document did not pass validation.")
        lines.extend(f"- {error}" for error in results.errors)
    return "\n".join(lines)
