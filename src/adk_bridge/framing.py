from __future__ import annotations

import codecs
import json
from collections.abc import AsyncIterator
from typing import Any

from .errors import AdkMalformedFrameError
from .logging import get_logger
from .models import ProtocolRecord
from .protocol import is_done_sentinel, strip_data_prefix

logger = get_logger(__name__)

_PREVIEW_CHARS = 120


def decode_line(line: str) -> ProtocolRecord | None:
    """Decode one stream line into a record.

    Returns None for lines without the `data:` marker, blank payloads and
    the end-of-stream sentinel. Raises `AdkMalformedFrameError` when the
    payload is not a JSON object.
    """
    payload = strip_data_prefix(line)
    if not payload or is_done_sentinel(payload):
        return None
    try:
        data: Any = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise AdkMalformedFrameError(
            f"invalid JSON in stream frame: {exc.msg}", line=line
        ) from exc
    if not isinstance(data, dict):
        raise AdkMalformedFrameError(
            f"stream frame is {type(data).__name__}, expected object", line=line
        )
    return ProtocolRecord.from_payload(data)


class FrameDecoder:
    """Incremental decoder for the line-delimited `data: <json>` stream.

    Chunks may split lines (and multi-byte characters) anywhere; a record is
    produced only once its terminating newline arrives, or at `flush()`.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.dropped = 0

    def feed(self, chunk: bytes | str) -> list[ProtocolRecord]:
        """Append a chunk and return records for every completed line."""
        if isinstance(chunk, (bytes, bytearray)):
            chunk = self._utf8.decode(bytes(chunk))
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._decode_all(lines)

    def flush(self) -> list[ProtocolRecord]:
        """Decode whatever is left in the buffer at end of input."""
        self._buffer += self._utf8.decode(b"", final=True)
        leftover = self._buffer
        self._buffer = ""
        if not leftover.strip():
            return []
        return self._decode_all([leftover])

    def _decode_all(self, lines: list[str]) -> list[ProtocolRecord]:
        records: list[ProtocolRecord] = []
        for line in lines:
            try:
                record = decode_line(line)
            except AdkMalformedFrameError as exc:
                self.dropped += 1
                logger.warning(
                    "stream_frame_dropped",
                    reason=str(exc),
                    preview=exc.line[:_PREVIEW_CHARS],
                )
                continue
            if record is not None:
                records.append(record)
        return records


async def iter_records(chunks: AsyncIterator[bytes]) -> AsyncIterator[ProtocolRecord]:
    """Lazily decode an async byte-chunk iterator into protocol records."""
    decoder = FrameDecoder()
    try:
        async for chunk in chunks:
            for record in decoder.feed(chunk):
                yield record
        for record in decoder.flush():
            yield record
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()
