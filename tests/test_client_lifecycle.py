from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping
from typing import Any

import httpx
import pytest

from adk_bridge.bridge import ChatBridge
from adk_bridge.client import AdkClient
from adk_bridge.stream import StreamAdapter
from adk_bridge.transport import Transport


class CountingTransport(Transport):
    def __init__(self) -> None:
        self.close_calls = 0
        self.stream_closed = False

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
        return httpx.Response(
            200,
            json={"id": "s1", "appName": "orchestrator", "userId": "u-1", "lastUpdateTime": 0.0},
        )

    async def stream(self, method: str, path: str, *, json: Any = None) -> AsyncIterator[bytes]:
        try:
            while True:
                yield b'data: {"content":{"parts":[{"text":"."}]},"partial":true}\n'
                await asyncio.sleep(0)
        finally:
            self.stream_closed = True

    async def close(self) -> None:
        self.close_calls += 1


def test_async_with_closes_transport() -> None:
    async def _run() -> CountingTransport:
        transport = CountingTransport()
        async with AdkClient(transport, app_name="orchestrator", user_id="u-1") as client:
            assert client.app_name == "orchestrator"
        return transport

    assert asyncio.run(_run()).close_calls == 1


def test_bridge_close_cancels_active_stream() -> None:
    async def _run() -> tuple[CountingTransport, bool]:
        transport = CountingTransport()
        bridge = ChatBridge(AdkClient(transport, app_name="orchestrator", user_id="u-1"))
        stream = await bridge.send("hello")
        events = stream.__aiter__()
        await events.__anext__()
        await events.__anext__()
        await bridge.close()
        return transport, stream.aborted

    transport, aborted = asyncio.run(_run())
    assert aborted
    assert transport.stream_closed
    assert transport.close_calls == 1


def test_bridge_close_after_finished_turn_only_closes_client() -> None:
    class OneShotTransport(CountingTransport):
        async def stream(self, method: str, path: str, *, json: Any = None) -> AsyncIterator[bytes]:
            yield b'data: {"content":{"parts":[{"text":"done"}]},"finishReason":"STOP"}\n'

    async def _run() -> tuple[OneShotTransport, str]:
        transport = OneShotTransport()
        async with ChatBridge(AdkClient(transport, app_name="orchestrator", user_id="u-1")) as bridge:
            reply = await bridge.ask("hello")
        return transport, reply

    transport, reply = asyncio.run(_run())
    assert reply == "done"
    assert transport.close_calls == 1


def test_send_closes_turn_abandoned_with_break() -> None:
    async def _run() -> tuple[StreamAdapter, StreamAdapter, bool, list[tuple[str, str]]]:
        transport = CountingTransport()
        bridge = ChatBridge(
            AdkClient(transport, app_name="orchestrator", user_id="u-1"), stream_buffer=4
        )
        first = await bridge.send("hello")
        async for event in first:
            if event.type == "text-delta":
                break
        second = await bridge.send("are you there?")
        released = transport.stream_closed
        turns = [(turn.role, turn.text) for turn in bridge.state.turns]
        await bridge.close()
        return first, second, released, turns

    first, second, released, turns = asyncio.run(_run())
    assert released
    assert first.aborted
    assert second is not first
    assert turns == [("user", "hello"), ("user", "are you there?")]


def test_send_refuses_while_consumer_is_reading() -> None:
    class StalledTransport(CountingTransport):
        async def stream(self, method: str, path: str, *, json: Any = None) -> AsyncIterator[bytes]:
            try:
                yield b'data: {"content":{"parts":[{"text":"thinking"}]},"partial":true}\n'
                await asyncio.Event().wait()
            finally:
                self.stream_closed = True

    async def _run() -> tuple[list[str], StreamAdapter, StalledTransport]:
        transport = StalledTransport()
        bridge = ChatBridge(AdkClient(transport, app_name="orchestrator", user_id="u-1"))
        stream = await bridge.send("hello")
        consumer = asyncio.create_task(stream.collect())
        for _ in range(100):
            if stream.reading and stream.text:
                break
            await asyncio.sleep(0)
        with pytest.raises(RuntimeError):
            await bridge.send("again")
        await stream.aclose()
        events = await asyncio.wait_for(consumer, timeout=1.0)
        await bridge.close()
        return [event.type for event in events], stream, transport

    types, stream, transport = asyncio.run(_run())
    assert types == ["text-start", "text-delta"]
    assert stream.aborted
    assert transport.stream_closed
