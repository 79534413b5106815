from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx

from .errors import AdkConnectionError, AdkHTTPError, AdkTimeoutError
from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Transient failures worth another attempt. Timeouts are never retried.
RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    ConnectionError,
)

TIMEOUT_ERRORS: tuple[type[BaseException], ...] = (
    asyncio.TimeoutError,
    httpx.TimeoutException,
)


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient connection failures.

    Attributes:
        max_retries: Extra attempts after the first one.
        base_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound for any single delay.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Delay after failed attempt number `attempt` (0-based)."""
        return min(self.base_delay * (2**attempt), self.max_delay)


class Transport(ABC):
    """Abstract HTTP transport used by `AdkClient`."""

    @abstractmethod
    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Mapping[str, str] | None = None,
        files: Mapping[str, Any] | None = None,
        data: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        """Send one request and return a successful (2xx) response."""
        raise NotImplementedError

    @abstractmethod
    def stream(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
    ) -> AsyncIterator[bytes]:
        """Send one request and lazily yield the response body chunks."""
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Release connection resources."""
        raise NotImplementedError


class HttpTransport(Transport):
    """httpx-backed transport with hard timeouts and connection retries."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        retry: RetryPolicy | None = None,
        headers: Mapping[str, str] | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Configure the transport.

        Args:
            base_url: Root URL of the agent runtime.
            timeout: Hard timeout per attempt; for streams, per body read.
            retry: Retry policy for transient connection failures.
            headers: Extra headers sent with every request.
            http_transport: Optional httpx transport (tests inject a mock).
        """
        if not base_url:
            raise ValueError("base_url must not be empty")
        self._timeout = timeout
        self._retry = retry if retry is not None else RetryPolicy()
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Accept": "application/json", **(headers or {})},
            timeout=httpx.Timeout(timeout),
            transport=http_transport,
        )

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def retry(self) -> RetryPolicy:
        return self._retry

    async def __aenter__(self) -> HttpTransport:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Mapping[str, str] | None = None,
        files: Mapping[str, Any] | None = None,
        data: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        label = f"{method} {path}"
        response = await self._send_with_retry(
            label,
            lambda: self._client.request(
                method,
                path,
                json=json,
                params=params,
                files=files,
                data=data,
            ),
        )
        if response.is_error:
            raise _http_error(label, response)
        return response

    async def stream(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
    ) -> AsyncIterator[bytes]:
        label = f"{method} {path}"
        request = self._client.build_request(
            method,
            path,
            json=json,
            headers={"Accept": "text/event-stream"},
        )
        response = await self._send_with_retry(
            label,
            lambda: self._client.send(request, stream=True),
        )
        try:
            if response.is_error:
                await response.aread()
                raise _http_error(label, response)
            chunks = response.aiter_bytes()
            while True:
                try:
                    chunk = await asyncio.wait_for(chunks.__anext__(), timeout=self._timeout)
                except StopAsyncIteration:
                    break
                except TIMEOUT_ERRORS as exc:
                    raise AdkTimeoutError(
                        f"{label} stream stalled for more than {self._timeout:.1f}s"
                    ) from exc
                except RETRYABLE_ERRORS as exc:
                    raise AdkConnectionError(
                        f"{label} stream interrupted ({exc.__class__.__name__}: {exc})"
                    ) from exc
                except httpx.HTTPError as exc:
                    raise AdkConnectionError(
                        f"{label} stream failed ({exc.__class__.__name__}: {exc})"
                    ) from exc
                if chunk:
                    yield chunk
        finally:
            await response.aclose()

    async def _send_with_retry(
        self,
        label: str,
        send: Callable[[], Awaitable[T]],
    ) -> T:
        retries = self._retry.max_retries
        last: BaseException | None = None
        for attempt in range(retries + 1):
            try:
                return await asyncio.wait_for(send(), timeout=self._timeout)
            except TIMEOUT_ERRORS as exc:
                logger.warning("request_timeout", request=label, timeout=self._timeout)
                raise AdkTimeoutError(
                    f"{label} timed out after {self._timeout:.1f}s"
                ) from exc
            except RETRYABLE_ERRORS as exc:
                last = exc
                if attempt >= retries:
                    break
                delay = self._retry.delay_for(attempt)
                logger.warning(
                    "request_retry",
                    request=label,
                    attempt=attempt + 1,
                    delay=delay,
                    error=f"{exc.__class__.__name__}: {exc}",
                )
                await asyncio.sleep(delay)
            except httpx.HTTPError as exc:
                # Other httpx failures are not transient.
                logger.warning(
                    "request_failed",
                    request=label,
                    error=f"{exc.__class__.__name__}: {exc}",
                )
                raise AdkConnectionError(
                    f"{label} failed ({exc.__class__.__name__}: {exc})",
                    attempts=attempt + 1,
                ) from exc
        raise AdkConnectionError(
            f"{label} failed after {retries + 1} attempt(s)"
            f" ({last.__class__.__name__}: {last})",
            attempts=retries + 1,
        ) from last


def response_body(response: httpx.Response) -> Any:
    """Decode a response body as JSON, falling back to text."""
    try:
        return response.json()
    except ValueError:
        return response.text


def _http_error(label: str, response: httpx.Response) -> AdkHTTPError:
    reason = response.reason_phrase or "error"
    return AdkHTTPError(
        f"{label} failed: {response.status_code} {reason}",
        status=response.status_code,
        body=response_body(response),
    )
