"""Text chat over the relay's streaming chat proxy.

``StreamingChatClient`` posts the conversation to ``POST /chat`` and yields
parsed frames from the SSE body. ``ChatSession`` keeps the transcript and
folds content deltas into one assistant message per turn.
"""

import base64
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import aiohttp

from src.client.session import Message
from src.common.errors import (
    TransportEstablishmentError,
    UpstreamError,
    error_for_status,
)
from src.common.frames import ContentDelta, ErrorFrame, Frame, Terminator
from src.common.stream_parser import StreamFrameParser, iter_frames

logger = logging.getLogger(__name__)

MessageStore = Callable[[Message], Awaitable[None] | None]


async def _error_message(response: aiohttp.ClientResponse) -> str:
    try:
        body = await response.json(content_type=None)
    except (aiohttp.ContentTypeError, ValueError):
        return response.reason or f"HTTP {response.status}"
    if isinstance(body, dict) and isinstance(body.get("error"), str):
        return body["error"]
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return str(body["error"].get("message", body["error"]))
    return response.reason or f"HTTP {response.status}"


class StreamingChatClient:
    """HTTP client for the streaming chat endpoint."""

    def __init__(
        self,
        url: str,
        session: aiohttp.ClientSession | None = None,
        request_timeout_s: float = 60.0,
        max_carry_over: int | None = None,
    ) -> None:
        """Initialize chat client.

        Args:
            url: Chat endpoint (e.g., http://localhost:8081/chat)
            session: Shared aiohttp session (one is created lazily if omitted)
            request_timeout_s: Total timeout for one streamed response
            max_carry_over: Parser buffer bound, in characters
        """
        self.url = url
        self.request_timeout_s = request_timeout_s
        self.max_carry_over = max_carry_over
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _new_parser(self) -> StreamFrameParser:
        if self.max_carry_over is None:
            return StreamFrameParser()
        return StreamFrameParser(max_carry_over=self.max_carry_over)

    async def stream(self, messages: list[dict[str, str]]) -> AsyncIterator[Frame]:
        """Send the conversation and yield frames as the response streams in.

        Raises:
            TransportEstablishmentError: If the endpoint cannot be reached
            RateLimitError: On HTTP 429
            QuotaError: On HTTP 402
            UpstreamError: On any other non-2xx response
            ProtocolParseError: If the stream overflows the parser buffer
        """
        session = self._get_session()
        timeout = aiohttp.ClientTimeout(total=self.request_timeout_s)
        try:
            response = await session.post(self.url, json={"messages": messages}, timeout=timeout)
        except aiohttp.ClientError as e:
            raise TransportEstablishmentError(f"Chat endpoint unreachable: {e}") from e

        async with response:
            if response.status >= 300:
                raise error_for_status(response.status, await _error_message(response))

            chunks = response.content.iter_any()
            async for frame in iter_frames(chunks, self._new_parser()):
                yield frame

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


class ChatSession:
    """Text conversation with one outstanding assistant reply at a time."""

    def __init__(
        self,
        client: StreamingChatClient,
        store: MessageStore | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.messages: list[Message] = []
        self.in_progress: Message | None = None

    @property
    def is_busy(self) -> bool:
        return self.in_progress is not None

    async def send_text_message(
        self,
        text: str,
        media_url: str | None = None,
        on_delta: Callable[[str], Any] | None = None,
    ) -> Message:
        """Send a user message and stream the assistant reply.

        Args:
            text: User message
            media_url: Optional attachment reference stored on the user message
            on_delta: Called with each text delta as it arrives

        Returns:
            The finalized assistant message

        Raises:
            RuntimeError: If a reply is already streaming
            ValueError: If text is empty
        """
        if self.in_progress is not None:
            raise RuntimeError("A reply is already streaming")
        if not text.strip():
            raise ValueError("Message text is empty")

        user_message = Message(role="user", content=text, media_url=media_url, final=True)
        self.messages.append(user_message)
        await self._persist(user_message)

        history = [message.as_api_message() for message in self.messages]
        reply = Message(role="assistant")
        self.in_progress = reply
        self.messages.append(reply)

        try:
            async for frame in self.client.stream(history):
                if isinstance(frame, ContentDelta):
                    reply.append(frame.text)
                    if on_delta is not None:
                        on_delta(frame.text)
                elif isinstance(frame, ErrorFrame):
                    raise UpstreamError(frame.message, code=frame.code)
                elif isinstance(frame, Terminator):
                    break
        except Exception:
            logger.warning(
                "Chat reply interrupted",
                extra={"message_id": reply.message_id, "received_chars": len(reply.content)},
            )
            raise
        finally:
            reply.finalize()
            self.in_progress = None
            # An empty reply would be resent as an assistant turn on retry
            if not reply.content:
                self.messages.remove(reply)

        if reply.content:
            await self._persist(reply)
        return reply

    async def _persist(self, message: Message) -> None:
        if self.store is None:
            return
        try:
            result = self.store(message)
            if result is not None:
                await result
        except Exception:
            logger.exception("Failed to persist message", extra={"message_id": message.message_id})


class SpeechToTextClient:
    """Client for the relay's transcription endpoint."""

    def __init__(self, url: str, session: aiohttp.ClientSession | None = None) -> None:
        """Initialize transcription client.

        Args:
            url: Transcription endpoint (e.g., http://localhost:8081/transcribe)
            session: Shared aiohttp session (one is created lazily if omitted)
        """
        self.url = url
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def transcribe(self, audio: bytes, mime_type: str = "audio/wav") -> str:
        """Transcribe a recorded clip.

        Raises:
            ValueError: If audio is empty
            TransportEstablishmentError: If the endpoint cannot be reached
            UpstreamError: If transcription fails
        """
        if not audio:
            raise ValueError("Audio is empty")

        payload = {"audio": base64.b64encode(audio).decode("ascii"), "mime_type": mime_type}
        try:
            async with self._get_session().post(self.url, json=payload) as response:
                if response.status >= 300:
                    raise error_for_status(response.status, await _error_message(response))
                body = await response.json()
        except aiohttp.ClientError as e:
            raise TransportEstablishmentError(f"Transcription endpoint unreachable: {e}") from e

        text = body.get("text", "") if isinstance(body, dict) else ""
        logger.debug("Transcribed audio", extra={"bytes": len(audio), "chars": len(text)})
        return text

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
