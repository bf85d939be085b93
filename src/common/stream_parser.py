"""Incremental parser for token-delta event streams.

The streaming-chat upstream answers with a body of server-sent-event lines:

    : keep-alive comment
    data: {"choices":[{"delta":{"content":"Hel"}}]}
    data: {"choices":[{"delta":{"content":"lo"}}]}
    data: [DONE]

Transport reads split this body at arbitrary byte offsets, so the parser keeps
a carry-over buffer between calls and only looks at complete lines.

Parse failures are not dropped: the failing line goes back onto the carry-over
buffer and is retried on the next chunk, joined with the lines that follow it
(a payload may legitimately contain a newline). A line that never becomes
parseable keeps growing the carry-over until ``max_carry_over`` is exceeded,
at which point ``ProtocolParseError`` is raised.
"""

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Iterator
from typing import Any, Final

from src.common.errors import ProtocolParseError
from src.common.frames import ContentDelta, ErrorFrame, Frame, Terminator

logger = logging.getLogger(__name__)

DATA_PREFIX: Final[str] = "data: "
DONE_SENTINEL: Final[str] = "[DONE]"
DEFAULT_MAX_CARRY_OVER: Final[int] = 1024 * 1024  # characters


def _frame_from_payload(payload: Any) -> Frame | None:
    """Extract a frame from one decoded chat-completion chunk."""
    if not isinstance(payload, dict):
        return None

    error = payload.get("error")
    if error:
        if isinstance(error, dict):
            return ErrorFrame(
                message=error.get("message") or "Upstream error",
                code=error.get("code"),
                error_type=error.get("type"),
            )
        return ErrorFrame(message=str(error))

    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if isinstance(content, str) and content:
        return ContentDelta(text=content)
    return None


class StreamFrameParser:
    """Turns successive transport buffers into a forward-only frame sequence.

    Thread-safety: not thread-safe; feed it from the read loop that owns it.

    Example:
        ```python
        parser = StreamFrameParser()
        async for chunk in response.content.iter_any():
            for frame in parser.feed(chunk):
                handle(frame)
        for frame in parser.flush():
            handle(frame)
        ```
    """

    def __init__(self, max_carry_over: int = DEFAULT_MAX_CARRY_OVER) -> None:
        """Initialize parser.

        Args:
            max_carry_over: Maximum carry-over size in characters before the
                stream is declared unparseable

        Raises:
            ValueError: If max_carry_over is not positive
        """
        if max_carry_over <= 0:
            raise ValueError(f"max_carry_over must be positive, got {max_carry_over}")

        self.max_carry_over = max_carry_over
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._done = False

    @property
    def done(self) -> bool:
        """True once the terminal sentinel has been seen."""
        return self._done

    @property
    def carry_over(self) -> str:
        """Unconsumed text retained for the next call."""
        return self._buffer

    def feed(self, chunk: bytes | str) -> Iterator[Frame]:
        """Add one transport buffer and return the frames it completes.

        The chunk is appended immediately; frames are extracted lazily as the
        returned iterator is consumed.

        Args:
            chunk: Raw bytes (UTF-8) or already-decoded text

        Returns:
            Iterator over the frames completed by this chunk

        Raises:
            ProtocolParseError: While iterating, if the carry-over outgrows
                max_carry_over
        """
        if self._done:
            return iter(())

        if isinstance(chunk, bytes):
            self._buffer += self._decoder.decode(chunk)
        else:
            self._buffer += chunk

        return self._extract()

    def flush(self) -> Iterator[Frame]:
        """Drain the carry-over once after the upstream closes.

        Best effort: every remaining line (including a final unterminated one)
        goes through the usual line handling; lines that still fail to parse
        are dropped. The carry-over is discarded afterwards.
        """
        if self._done:
            self._buffer = ""
            return

        self._buffer += self._decoder.decode(b"", final=True)
        lines = self._buffer.split("\n")
        self._buffer = ""

        index = 0
        while index < len(lines):
            line = lines[index].rstrip("\r")
            index += 1
            payload = self._payload_of(line)
            if payload is None:
                continue
            if payload == DONE_SENTINEL:
                self._done = True
                yield Terminator()
                return

            try:
                parsed, consumed = json.loads(payload), 0
            except json.JSONDecodeError:
                parsed, consumed = self._join_continuations(payload, lines[index:])
            if consumed < 0:
                logger.debug("Dropping unparseable line at stream end", extra={"length": len(line)})
                continue
            index += consumed
            frame = _frame_from_payload(parsed)
            if frame is not None:
                yield frame

    def _extract(self) -> Iterator[Frame]:
        while not self._done:
            newline_index = self._buffer.find("\n")
            if newline_index == -1:
                break

            raw_line = self._buffer[:newline_index]
            self._buffer = self._buffer[newline_index + 1 :]
            line = raw_line.rstrip("\r")

            payload = self._payload_of(line)
            if payload is None:
                continue

            if payload == DONE_SENTINEL:
                self._done = True
                self._buffer = ""
                yield Terminator()
                return

            try:
                parsed, consumed = json.loads(payload), 0
            except json.JSONDecodeError:
                pending = self._buffer.split("\n")[:-1]
                parsed, consumed = self._join_continuations(payload, pending)
            if consumed < 0:
                # Retry on the next chunk
                self._buffer = raw_line + "\n" + self._buffer
                break

            for _ in range(consumed):
                self._buffer = self._buffer[self._buffer.index("\n") + 1 :]

            frame = _frame_from_payload(parsed)
            if frame is not None:
                yield frame

        self._check_bound()

    def _check_bound(self) -> None:
        if len(self._buffer) > self.max_carry_over:
            size = len(self._buffer)
            self._buffer = ""
            self._done = True
            raise ProtocolParseError(
                f"Stream carry-over exceeded {self.max_carry_over} characters "
                f"({size}) without a parseable frame"
            )

    @staticmethod
    def _payload_of(line: str) -> str | None:
        """Return the payload of a data line, or None for lines to skip."""
        if not line.strip() or line.startswith(":"):
            return None
        if not line.startswith(DATA_PREFIX):
            return None
        return line[len(DATA_PREFIX) :].strip()

    @staticmethod
    def _join_continuations(payload: str, following: list[str]) -> tuple[Any, int]:
        """Retry a failed payload joined with the complete lines after it.

        Returns:
            (parsed value, number of following lines consumed), or (None, -1)
            if no join produced valid JSON
        """
        candidate = payload
        for consumed, line in enumerate(following, start=1):
            candidate = candidate + "\n" + line.rstrip("\r")
            try:
                return json.loads(candidate), consumed
            except json.JSONDecodeError:
                continue
        return None, -1


async def iter_frames(
    chunks: AsyncIterable[bytes],
    parser: StreamFrameParser | None = None,
) -> AsyncIterator[Frame]:
    """Yield frames from an async byte-chunk source.

    Stops after the terminator; otherwise flushes the carry-over once the
    source is exhausted.

    Args:
        chunks: Async iterable of transport buffers
        parser: Optional parser instance (a new one is created if omitted)
    """
    parser = parser or StreamFrameParser()
    async for chunk in chunks:
        for frame in parser.feed(chunk):
            yield frame
        if parser.done:
            return

    for frame in parser.flush():
        yield frame
