from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator

import httpx
import pytest

from adk_bridge.errors import AdkConnectionError, AdkHTTPError, AdkTimeoutError
from adk_bridge.transport import HttpTransport, RetryPolicy


def _transport(handler, *, timeout: float = 1.0, retries: int = 2, base_delay: float = 0.01) -> HttpTransport:
    return HttpTransport(
        "http://runtime.test",
        timeout=timeout,
        retry=RetryPolicy(max_retries=retries, base_delay=base_delay),
        http_transport=httpx.MockTransport(handler),
    )


def test_http_transport_requires_base_url() -> None:
    with pytest.raises(ValueError):
        HttpTransport("")


def test_retry_policy_doubles_delay_and_caps() -> None:
    policy = RetryPolicy(max_retries=5, base_delay=0.5, max_delay=3.0)
    assert [policy.delay_for(i) for i in range(5)] == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_connection_errors_are_retried_with_backoff() -> None:
    attempts: list[float] = []
    base_delay = 0.05

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(time.monotonic())
        if len(attempts) <= 2:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"status": "ok"})

    async def _run() -> httpx.Response:
        async with _transport(handler, retries=2, base_delay=base_delay) as transport:
            return await transport.request("GET", "/health")

    started = time.monotonic()
    response = asyncio.run(_run())
    elapsed = time.monotonic() - started

    assert response.json() == {"status": "ok"}
    assert len(attempts) == 3
    assert elapsed >= base_delay + 2 * base_delay
    assert attempts[1] - attempts[0] >= base_delay
    assert attempts[2] - attempts[1] >= 2 * base_delay


def test_connection_errors_exhaust_retries() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        raise httpx.ConnectError("connection refused", request=request)

    async def _run() -> None:
        async with _transport(handler, retries=2) as transport:
            with pytest.raises(AdkConnectionError) as exc_info:
                await transport.request("GET", "/health")
        assert exc_info.value.attempts == 3
        assert "ConnectError" in str(exc_info.value)

    asyncio.run(_run())
    assert calls == 3


def test_timeout_is_not_retried() -> None:
    calls = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        await asyncio.sleep(1.0)
        return httpx.Response(200, json={})

    async def _run() -> None:
        async with _transport(handler, timeout=0.05, retries=3) as transport:
            with pytest.raises(AdkTimeoutError):
                await transport.request("GET", "/health")

    asyncio.run(_run())
    assert calls == 1


def test_non_2xx_raises_typed_error_with_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"detail": "overloaded"})

    async def _run() -> None:
        async with _transport(handler) as transport:
            with pytest.raises(AdkHTTPError) as exc_info:
                await transport.request("GET", "/health")
        assert exc_info.value.status == 503
        assert exc_info.value.body == {"detail": "overloaded"}
        assert not exc_info.value.is_client_error

    asyncio.run(_run())


def test_stream_yields_chunks_lazily() -> None:
    produced: list[int] = []

    async def body() -> AsyncIterator[bytes]:
        for i in range(3):
            produced.append(i)
            yield f"chunk-{i}\n".encode()

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["accept"] == "text/event-stream"
        return httpx.Response(200, content=body())

    async def _run() -> None:
        async with _transport(handler) as transport:
            stream = transport.stream("POST", "/run_sse", json={"x": 1})
            first = await stream.__anext__()
            assert first == b"chunk-0\n"
            assert produced == [0]
            rest = [chunk async for chunk in stream]
            assert rest == [b"chunk-1\n", b"chunk-2\n"]

    asyncio.run(_run())


def test_stream_error_status_raises_before_any_chunk() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="no such session")

    async def _run() -> None:
        async with _transport(handler) as transport:
            with pytest.raises(AdkHTTPError) as exc_info:
                async for _ in transport.stream("POST", "/run_sse", json={}):
                    pass
        assert exc_info.value.status == 404
        assert exc_info.value.body == "no such session"

    asyncio.run(_run())


def test_stalled_stream_raises_timeout() -> None:
    async def body() -> AsyncIterator[bytes]:
        yield b"data: {}\n"
        await asyncio.sleep(1.0)
        yield b"late\n"

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body())

    async def _run() -> list[bytes]:
        seen: list[bytes] = []
        async with _transport(handler, timeout=0.05) as transport:
            with pytest.raises(AdkTimeoutError):
                async for chunk in transport.stream("POST", "/run_sse", json={}):
                    seen.append(chunk)
        return seen

    assert asyncio.run(_run()) == [b"data: {}\n"]


def test_non_transient_httpx_errors_are_typed_and_not_retried() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        raise httpx.UnsupportedProtocol("unsupported scheme", request=request)

    async def _run() -> None:
        async with _transport(handler, retries=3) as transport:
            with pytest.raises(AdkConnectionError) as exc_info:
                await transport.request("GET", "/health")
        assert exc_info.value.attempts == 1
        assert isinstance(exc_info.value.__cause__, httpx.UnsupportedProtocol)

    asyncio.run(_run())
    assert calls == 1


def test_stream_read_errors_are_typed() -> None:
    async def body() -> AsyncIterator[bytes]:
        yield b"data: {}\n"
        raise httpx.DecodingError("malformed gzip body")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body())

    async def _run() -> None:
        async with _transport(handler) as transport:
            with pytest.raises(AdkConnectionError):
                async for _ in transport.stream("POST", "/run_sse", json={}):
                    pass

    asyncio.run(_run())
