from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from .config import BridgeConfig
from .errors import AdkHTTPError, AdkProtocolError, AdkSessionNotFoundError
from .framing import iter_records
from .logging import get_logger
from .models import DocumentUpload, HealthStatus, ProtocolRecord, Session
from .protocol import (
    DOCUMENT_STATUS_PATH,
    DOCUMENT_UPLOAD_PATH,
    HEALTH_PATH,
    LIST_APPS_PATH,
    RUN_SSE_PATH,
    make_run_request,
    session_path,
    sessions_path,
)
from .transport import HttpTransport, RetryPolicy, Transport

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class AdkClient:
    """Async client for the agent runtime's HTTP API."""

    def __init__(
        self,
        transport: Transport,
        *,
        app_name: str,
        user_id: str,
    ) -> None:
        """Create a client bound to a transport.

        Args:
            transport: Transport carrying requests to the runtime.
            app_name: Agent application name.
            user_id: Client identity used for session paths and run requests.
        """
        if not app_name:
            raise ValueError("app_name must not be empty")
        if not user_id:
            raise ValueError("user_id must not be empty")
        self._transport = transport
        self._app_name = app_name
        self._user_id = user_id

    @classmethod
    def from_config(
        cls,
        config: BridgeConfig,
        *,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> AdkClient:
        """Create a client with an `HttpTransport` configured from `config`."""
        transport = HttpTransport(
            config.base_url,
            timeout=config.timeout,
            retry=RetryPolicy(
                max_retries=config.retries,
                base_delay=config.backoff_base,
                max_delay=config.backoff_max,
            ),
            http_transport=http_transport,
        )
        return cls(transport, app_name=config.app_name, user_id=config.user_id)

    @property
    def app_name(self) -> str:
        return self._app_name

    @property
    def user_id(self) -> str:
        return self._user_id

    async def __aenter__(self) -> AdkClient:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._transport.close()

    async def create_session(self) -> Session:
        """Create a new runtime session for this client's user."""
        response = await self._transport.request(
            "POST", sessions_path(self._app_name, self._user_id)
        )
        session = _parse(Session, response, "create session")
        logger.info("session_created", session_id=session.id)
        return session

    async def get_session(self, session_id: str) -> Session:
        """Fetch a session; raises `AdkSessionNotFoundError` on 404."""
        try:
            response = await self._transport.request(
                "GET", session_path(self._app_name, self._user_id, session_id)
            )
        except AdkHTTPError as exc:
            if exc.status == 404:
                raise AdkSessionNotFoundError(
                    f"session {session_id!r} not found",
                    status=exc.status,
                    body=exc.body,
                ) from exc
            raise
        return _parse(Session, response, "get session")

    async def delete_session(self, session_id: str) -> None:
        await self._transport.request(
            "DELETE", session_path(self._app_name, self._user_id, session_id)
        )
        logger.info("session_deleted", session_id=session_id)

    async def send_message(
        self,
        session_id: str,
        text: str,
        *,
        state_delta: Mapping[str, Any] | None = None,
    ) -> AsyncIterator[ProtocolRecord]:
        """Send one user message and yield decoded stream records lazily.

        Records are produced as body chunks arrive; nothing buffers the full
        response. Closing the iterator closes the HTTP response.
        """
        payload = make_run_request(
            app_name=self._app_name,
            user_id=self._user_id,
            session_id=session_id,
            text=text,
            state_delta=dict(state_delta) if state_delta is not None else None,
        )
        logger.debug(
            "run_request",
            session_id=session_id,
            state_keys=sorted(payload.get("stateDelta", {})),
        )
        records = iter_records(self._transport.stream("POST", RUN_SSE_PATH, json=payload))
        try:
            async for record in records:
                yield record
        finally:
            await records.aclose()

    async def upload_document(
        self,
        session_id: str,
        filename: str,
        content: bytes,
        *,
        mime_type: str = "application/octet-stream",
    ) -> DocumentUpload:
        """Upload one document for processing by the runtime."""
        response = await self._transport.request(
            "POST",
            DOCUMENT_UPLOAD_PATH,
            files={"file": (filename, content, mime_type)},
            data={"sessionId": session_id},
        )
        upload = _parse(DocumentUpload, response, "upload document")
        logger.info("document_uploaded", upload_id=upload.id, filename=filename)
        return upload

    async def get_document_status(self, upload_id: str) -> DocumentUpload:
        response = await self._transport.request(
            "GET", DOCUMENT_STATUS_PATH, params={"uploadId": upload_id}
        )
        return _parse(DocumentUpload, response, "get document status")

    async def health_check(self) -> HealthStatus:
        response = await self._transport.request("GET", HEALTH_PATH)
        return _parse(HealthStatus, response, "health check")

    async def list_apps(self) -> list[str]:
        response = await self._transport.request("GET", LIST_APPS_PATH)
        body = _json(response, "list apps")
        if not isinstance(body, list) or not all(isinstance(item, str) for item in body):
            raise AdkProtocolError("list apps returned a non-list body")
        return body


def _json(response: httpx.Response, operation: str) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise AdkProtocolError(f"{operation} returned invalid JSON") from exc


def _parse(model: type[ModelT], response: httpx.Response, operation: str) -> ModelT:
    body = _json(response, operation)
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        raise AdkProtocolError(
            f"{operation} returned an unexpected body: {exc.error_count()} validation error(s)"
        ) from exc
