from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable

import pytest

from adk_bridge.accumulator import ConversationState
from adk_bridge.errors import AdkConnectionError, AdkStreamAbortedError
from adk_bridge.models import (
    Finish,
    ProtocolRecord,
    StreamError,
    TextDelta,
    TextEnd,
    TextStart,
    UsageMetadata,
)
from adk_bridge.stream import StreamAdapter


def _partial(text: str) -> ProtocolRecord:
    return ProtocolRecord(text=text, partial=True)


def _complete(text: str = "", **kwargs) -> ProtocolRecord:
    return ProtocolRecord(text=text, complete=True, finish_reason="STOP", **kwargs)


class RecordSource:
    """Async record source that remembers how far it was read and whether it was closed."""

    def __init__(self, records: Iterable[ProtocolRecord], *, fail_with: Exception | None = None) -> None:
        self._records = list(records)
        self._fail_with = fail_with
        self.produced = 0
        self.closed = False

    async def _iterate(self) -> AsyncIterator[ProtocolRecord]:
        try:
            for record in self._records:
                await asyncio.sleep(0)
                self.produced += 1
                yield record
            if self._fail_with is not None:
                raise self._fail_with
        finally:
            self.closed = True

    def __call__(self) -> AsyncIterator[ProtocolRecord]:
        return self._iterate()


def _types(events) -> list[str]:
    return [event.type for event in events]


def test_events_are_ordered_start_deltas_end_finish() -> None:
    source = RecordSource(
        [
            _partial("Hi "),
            _partial("Alice!"),
            _complete(usage=UsageMetadata(prompt_token_count=7, candidates_token_count=3)),
        ]
    )

    async def _run() -> tuple[list, StreamAdapter]:
        adapter = StreamAdapter(source())
        return await adapter.collect(), adapter

    events, adapter = asyncio.run(_run())
    assert _types(events) == ["text-start", "text-delta", "text-delta", "text-end", "finish"]
    assert isinstance(events[0], TextStart) and events[0].id == "text-1"
    assert [e.delta for e in events if isinstance(e, TextDelta)] == ["Hi ", "Alice!"]
    assert isinstance(events[-1], Finish)
    assert events[-1].finish_reason == "STOP"
    assert events[-1].usage.total_tokens == 10
    assert adapter.text == "Hi Alice!"
    assert adapter.done and not adapter.aborted
    assert source.closed


def test_error_mid_stream_emits_single_error_event() -> None:
    source = RecordSource([_partial("Hi ")], fail_with=AdkConnectionError("reset by peer"))

    async def _run() -> tuple[list, StreamAdapter]:
        adapter = StreamAdapter(source())
        return await adapter.collect(), adapter

    events, adapter = asyncio.run(_run())
    assert _types(events) == ["text-start", "text-delta", "error"]
    error = events[-1]
    assert isinstance(error, StreamError)
    assert error.kind == "connection"
    assert "reset by peer" not in error.error
    assert isinstance(adapter.error, AdkConnectionError)
    assert adapter.finish is None
    assert not any(isinstance(e, (TextEnd, Finish)) for e in events)


def test_reading_stops_after_completion_record() -> None:
    source = RecordSource([_partial("done"), _complete(), _partial("ignored"), _partial("also ignored")])

    async def _run() -> list:
        return await StreamAdapter(source()).collect()

    events = asyncio.run(_run())
    assert _types(events)[-1] == "finish"
    assert source.produced == 2
    assert source.closed


def test_stream_without_completion_record_finishes_with_stop() -> None:
    source = RecordSource([_partial("partial only")])

    async def _run() -> list:
        return await StreamAdapter(source()).collect()

    events = asyncio.run(_run())
    assert _types(events) == ["text-start", "text-delta", "text-end", "finish"]
    assert events[-1].finish_reason == "stop"


def test_aggregate_replay_is_not_emitted_twice() -> None:
    source = RecordSource(
        [
            _partial("Hi "),
            _partial("Alice!"),
            ProtocolRecord(text="Hi Alice!", partial=False),
            _complete(),
        ]
    )

    async def _run() -> tuple[list, StreamAdapter]:
        adapter = StreamAdapter(source())
        return await adapter.collect(), adapter

    events, adapter = asyncio.run(_run())
    assert [e.delta for e in events if isinstance(e, TextDelta)] == ["Hi ", "Alice!"]
    assert adapter.text == "Hi Alice!"


def test_aggregate_extending_streamed_text_emits_only_the_suffix() -> None:
    source = RecordSource(
        [
            _partial("Hi "),
            _partial("Alice!"),
            _complete("Hi Alice! Welcome."),
        ]
    )

    async def _run() -> tuple[list, StreamAdapter]:
        adapter = StreamAdapter(source())
        return await adapter.collect(), adapter

    events, adapter = asyncio.run(_run())
    assert [e.delta for e in events if isinstance(e, TextDelta)] == ["Hi ", "Alice!", " Welcome."]
    assert adapter.text == "Hi Alice! Welcome."


def test_unrelated_final_text_is_emitted_whole() -> None:
    source = RecordSource([_partial("Hi "), _complete("Goodbye.")])

    async def _run() -> StreamAdapter:
        adapter = StreamAdapter(source())
        await adapter.collect()
        return adapter

    assert asyncio.run(_run()).text == "Hi Goodbye."


def test_close_wakes_consumer_waiting_in_another_task() -> None:
    released: list[bool] = []

    async def stalled() -> AsyncIterator[ProtocolRecord]:
        try:
            yield _partial("thinking")
            await asyncio.Event().wait()
        finally:
            released.append(True)

    async def _run() -> tuple[list, StreamAdapter]:
        adapter = StreamAdapter(stalled())
        consumer = asyncio.create_task(adapter.collect())
        for _ in range(100):
            if adapter.reading and adapter.text:
                break
            await asyncio.sleep(0)
        assert adapter.reading
        await adapter.aclose()
        return await asyncio.wait_for(consumer, timeout=1.0), adapter

    events, adapter = asyncio.run(_run())
    assert _types(events) == ["text-start", "text-delta"]
    assert adapter.aborted
    assert released == [True]


def test_state_deltas_are_merged_and_reply_is_recorded() -> None:
    state = ConversationState({"profile": {"locale": "en"}})
    state.append_turn("user", "Hello, my name is Alice")
    source = RecordSource(
        [
            ProtocolRecord(text="Hi ", partial=True, state_delta={"profile": {"name": "Alice"}}),
            _partial("Alice!"),
            _complete(state_delta={"step": "greeted"}),
        ]
    )

    async def _run() -> str:
        return await StreamAdapter(source(), state=state).reply()

    assert asyncio.run(_run()) == "Hi Alice!"
    assert state.state == {"profile": {"locale": "en", "name": "Alice"}, "step": "greeted"}
    assert [(turn.role, turn.text) for turn in state.turns] == [
        ("user", "Hello, my name is Alice"),
        ("assistant", "Hi Alice!"),
    ]


def test_failed_stream_does_not_record_assistant_turn() -> None:
    state = ConversationState()
    source = RecordSource([_partial("Hi")], fail_with=AdkConnectionError("gone"))

    async def _run() -> None:
        with pytest.raises(AdkConnectionError):
            await StreamAdapter(source(), state=state).reply()

    asyncio.run(_run())
    assert state.turns == ()


def test_closing_early_cancels_producer_and_closes_source() -> None:
    source = RecordSource(_partial(str(i)) for i in range(1000))

    async def _run() -> StreamAdapter:
        adapter = StreamAdapter(source(), max_buffer=4)
        events = adapter.__aiter__()
        assert isinstance(await events.__anext__(), TextStart)
        assert isinstance(await events.__anext__(), TextDelta)
        await adapter.aclose()
        return adapter

    adapter = asyncio.run(_run())
    assert adapter.aborted
    assert adapter.done
    assert source.closed
    assert source.produced < 1000


def test_reply_after_close_raises_aborted() -> None:
    source = RecordSource(_partial(str(i)) for i in range(50))

    async def _run() -> None:
        adapter = StreamAdapter(source())
        await adapter.aclose()
        assert adapter.aborted
        with pytest.raises(AdkStreamAbortedError):
            await adapter.reply()

    asyncio.run(_run())
    assert source.produced == 0


def test_only_one_consumer_is_allowed() -> None:
    source = RecordSource([_complete("x")])

    async def _run() -> None:
        adapter = StreamAdapter(source())
        adapter.__aiter__()
        with pytest.raises(RuntimeError):
            adapter.__aiter__()
        await adapter.aclose()

    asyncio.run(_run())
    assert source.produced == 0
