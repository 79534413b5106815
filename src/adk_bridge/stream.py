from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from .accumulator import ConversationState
from .errors import AdkStreamAbortedError, describe_error
from .logging import get_logger
from .models import (
    Finish,
    ProtocolRecord,
    StreamError,
    StreamEvent,
    TextDelta,
    TextEnd,
    TextStart,
    TokenUsage,
)

logger = get_logger(__name__)

DEFAULT_TEXT_ID = "text-1"

_SOURCE_END = object()
_CLOSED = object()


@dataclass(slots=True)
class _SourceFailure:
    error: BaseException


class StreamAdapter:
    """Single-consumer bridge from protocol records to ordered chat events.

    A producer task pulls records from the source into a bounded queue; the
    consumer side turns them into `text-start`, `text-delta`, `text-end`,
    `finish` or `error` events. Exactly one terminal event (`finish` or
    `error`) is emitted. Closing the adapter early cancels the producer and
    closes the source, which releases the HTTP response. A consumer that
    breaks out of `async for` must still call `aclose()` (or use `async
    with`); `ChatBridge` does this for an abandoned turn before the next one.
    """

    def __init__(
        self,
        records: AsyncIterator[ProtocolRecord],
        *,
        state: ConversationState | None = None,
        text_id: str = DEFAULT_TEXT_ID,
        max_buffer: int = 64,
    ) -> None:
        self._records = records
        self._state = state
        self._text_id = text_id
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=max_buffer)
        self._task: asyncio.Task[None] | None = None
        self._events: AsyncIterator[StreamEvent] | None = None
        self._fragments: list[str] = []
        self._pending_aggregate = ""
        self._finish: Finish | None = None
        self._error: BaseException | None = None
        self._aborted = False
        self._reading = False

    @property
    def text(self) -> str:
        """Assistant text emitted so far."""
        return "".join(self._fragments)

    @property
    def finish(self) -> Finish | None:
        return self._finish

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reading(self) -> bool:
        """True while a consumer is waiting for the next event."""
        return self._reading

    @property
    def done(self) -> bool:
        return self._finish is not None or self._error is not None or self._aborted

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        if self._events is not None:
            raise RuntimeError("StreamAdapter supports only one events consumer")
        if self._aborted:
            raise AdkStreamAbortedError("stream was closed before it was consumed")
        self._events = self._iter_events()
        return self._events

    async def __aenter__(self) -> StreamAdapter:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Stop consuming; cancels the producer and releases the source.

        A consumer parked on the next event in another task is woken and
        its iteration ends without a terminal event.
        """
        reading = self._reading
        if self._events is not None and not reading:
            aclose = getattr(self._events, "aclose", None)
            if aclose is not None:
                await aclose()
        if not self.done:
            self._aborted = True
        await self._shutdown()
        if reading:
            while not self._queue.empty():
                self._queue.get_nowait()
            self._queue.put_nowait(_CLOSED)

    async def collect(self) -> list[StreamEvent]:
        """Drain the stream into a list of events."""
        return [event async for event in self]

    async def reply(self) -> str:
        """Drain the stream and return the assembled assistant text.

        Raises the underlying error when the stream failed, or
        `AdkStreamAbortedError` when it was closed before completing.
        """
        async for _ in self:
            pass
        if self._error is not None:
            raise self._error
        if self._finish is None:
            raise AdkStreamAbortedError("stream closed before completion")
        return self.text

    def _ensure_started(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        outcome: object = _SOURCE_END
        try:
            async for record in self._records:
                await self._queue.put(record)
                if record.complete:
                    break
        except Exception as exc:
            outcome = _SourceFailure(exc)
        finally:
            await self._close_source()
        await self._queue.put(outcome)

    async def _iter_events(self) -> AsyncIterator[StreamEvent]:
        self._ensure_started()
        try:
            yield TextStart(id=self._text_id)
            finish: Finish | None = None
            while finish is None:
                self._reading = True
                try:
                    item = await self._queue.get()
                finally:
                    self._reading = False
                if item is _CLOSED:
                    return
                if isinstance(item, _SourceFailure):
                    event = self._fail(item.error)
                    yield event
                    return
                if item is _SOURCE_END:
                    logger.info("stream_ended_without_completion", chars=len(self.text))
                    finish = Finish(finish_reason="stop")
                    break
                if not isinstance(item, ProtocolRecord):
                    raise TypeError(f"unexpected stream item: {item!r}")
                delta = self._apply(item)
                if delta:
                    yield TextDelta(id=self._text_id, delta=delta)
                if item.complete:
                    finish = Finish(
                        finish_reason=item.finish_reason or "stop",
                        usage=TokenUsage.from_metadata(item.usage),
                    )
            yield TextEnd(id=self._text_id)
            self._finish = finish
            if self._state is not None:
                self._state.append_turn("assistant", self.text)
            yield finish
        finally:
            if not self.done:
                self._aborted = True
                logger.info("stream_aborted", chars=len(self.text))
            await self._shutdown()

    def _apply(self, record: ProtocolRecord) -> str:
        """Apply side effects of one record and return the text to emit."""
        if record.state_delta and self._state is not None:
            self._state.merge(record.state_delta)
        text = record.text
        if not text:
            return ""
        if record.partial:
            self._pending_aggregate += text
        else:
            # A non-partial frame may carry the aggregate of the partials before it.
            pending = self._pending_aggregate
            self._pending_aggregate = ""
            if pending and text.startswith(pending):
                text = text[len(pending):]
                if not text:
                    return ""
        self._fragments.append(text)
        return text

    def _fail(self, error: BaseException) -> StreamError:
        self._error = error
        kind, message = describe_error(error)
        logger.warning(
            "stream_failed",
            kind=kind,
            error=f"{error.__class__.__name__}: {error}",
        )
        return StreamError(error=message, kind=kind)

    async def _shutdown(self) -> None:
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if task is None:
            await self._close_source()

    async def _close_source(self) -> None:
        aclose = getattr(self._records, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as exc:
            logger.warning("stream_source_close_failed", error=f"{exc.__class__.__name__}: {exc}")
