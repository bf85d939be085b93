"""Voice conversation session management.

Owns the lifecycle of one realtime voice session at a time: microphone
capture, the relay transport, assistant audio playback, and the transcript.

Lifecycle:
    IDLE → CONNECTING → OPEN → CLOSING → CLOSED

CONNECTING may also go straight to CLOSED when establishment fails. A closed
Session is never reused; ``start_session()`` always builds a new one, with its
own microphone capture and playback queue.
"""

import asyncio
import functools
import inspect
import json
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from src.client.audio.capture import AudioCapture
from src.client.audio.codec import decode_audio_delta
from src.client.audio.playback import AudioPlaybackQueue
from src.client.events import EventEmitter, SessionEvent
from src.client.transport import RealtimeTransport
from src.common.errors import (
    MicrophonePermissionError,
    RateLimitError,
    TransportEstablishmentError,
    UpstreamError,
)
from src.common.frames import (
    AudioDelta,
    ErrorFrame,
    Frame,
    FrameKind,
    FunctionCall,
    SessionCreated,
    TranscriptDelta,
    TranscriptDone,
    UserTranscriptDone,
    frame_from_event,
)
from src.relay.protocol import (
    ConversationItemCreateEvent,
    InputAudioAppendEvent,
    ResponseCreateEvent,
)

logger = logging.getLogger(__name__)

TransportConnector = Callable[[], Awaitable[RealtimeTransport]]
CaptureFactory = Callable[[Callable[[str], None]], AudioCapture]
PlaybackFactory = Callable[[], AudioPlaybackQueue]
ToolHandler = Callable[[dict[str, Any]], Any]

RATE_LIMIT_CODE = "rate_limit_exceeded"


class SessionState(Enum):
    """Session lifecycle states."""

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {SessionState.CONNECTING, SessionState.CLOSED},
    SessionState.CONNECTING: {SessionState.OPEN, SessionState.CLOSING, SessionState.CLOSED},
    SessionState.OPEN: {SessionState.CLOSING},
    SessionState.CLOSING: {SessionState.CLOSED},
    SessionState.CLOSED: set(),
}


@dataclass
class Message:
    """One transcript entry.

    Assistant messages are built incrementally from deltas and become
    immutable once finalized.
    """

    role: str
    content: str = ""
    media_url: str | None = None
    created_at: float = field(default_factory=time.time)
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    final: bool = False

    def append(self, delta: str) -> None:
        """Append streamed text.

        Raises:
            RuntimeError: If the message has been finalized
        """
        if self.final:
            raise RuntimeError(f"Message {self.message_id} is final")
        self.content += delta

    def finalize(self) -> None:
        self.final = True

    def as_api_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class SessionResources:
    """Per-session handles, released together at teardown."""

    transport: RealtimeTransport | None = None
    capture: AudioCapture | None = None
    playback: AudioPlaybackQueue | None = None
    outbound: asyncio.Queue[str] = field(default_factory=lambda: asyncio.Queue(maxsize=64))
    tasks: set[asyncio.Task[None]] = field(default_factory=set)
    frames_sent: int = 0
    frames_muted: int = 0
    frames_dropped: int = 0


@dataclass
class Session:
    """State of one voice conversation."""

    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: SessionState = SessionState.IDLE
    messages: list[Message] = field(default_factory=list)
    muted: bool = False
    in_progress: Message | None = None
    listening: bool = False
    speaking: bool = False
    resources: SessionResources = field(default_factory=SessionResources, repr=False, compare=False)

    @property
    def is_active(self) -> bool:
        return self.state in (SessionState.CONNECTING, SessionState.OPEN)

    def transition_to(self, new_state: SessionState) -> None:
        """Move to new_state.

        Raises:
            ValueError: If the transition is not allowed
        """
        if new_state not in VALID_TRANSITIONS[self.state]:
            raise ValueError(
                f"Invalid session transition: {self.state.value} → {new_state.value}"
            )
        old_state = self.state
        self.state = new_state
        logger.info(
            f"Session state: {old_state.value} → {new_state.value}",
            extra={"session_id": self.session_id},
        )


class VoiceSessionManager:
    """Runs realtime voice sessions against the relay.

    Example:
        ```python
        manager = VoiceSessionManager(
            connector=lambda: WebSocketRealtimeTransport.connect("ws://localhost:8080"),
            capture_factory=lambda on_frame: AudioCapture(on_frame),
            playback_factory=lambda: AudioPlaybackQueue(SoundDeviceSink()),
        )
        manager.events.on(SessionEvent.MESSAGE_APPENDED, print)
        await manager.start_session()
        ...
        await manager.stop_session()
        ```
    """

    def __init__(
        self,
        connector: TransportConnector,
        capture_factory: CaptureFactory,
        playback_factory: PlaybackFactory,
        tool_handlers: dict[str, ToolHandler] | None = None,
        emitter: EventEmitter | None = None,
        ready_timeout_s: float = 10.0,
    ) -> None:
        """Initialize session manager.

        Args:
            connector: Opens a transport to the relay
            capture_factory: Builds a microphone capture delivering base64 frames
            playback_factory: Builds the assistant audio queue for each session
            tool_handlers: Function-call handlers keyed by tool name
            emitter: UI event emitter (a new one is created if omitted)
            ready_timeout_s: Bound on waiting for session.created
        """
        self._connector = connector
        self._capture_factory = capture_factory
        self._playback_factory = playback_factory
        self.tool_handlers: dict[str, ToolHandler] = dict(tool_handlers or {})
        self.events = emitter or EventEmitter()
        self.ready_timeout_s = ready_timeout_s
        self.session: Session | None = None

        self._handlers: dict[FrameKind, Callable[[Session, Any], Awaitable[None]]] = {
            FrameKind.AUDIO_DELTA: self._handle_audio_delta,
            FrameKind.TRANSCRIPT_DELTA: self._handle_transcript_delta,
            FrameKind.TRANSCRIPT_DONE: self._handle_transcript_done,
            FrameKind.USER_TRANSCRIPT_DONE: self._handle_user_transcript,
            FrameKind.SPEECH_STARTED: self._handle_speech_started,
            FrameKind.SPEECH_STOPPED: self._handle_speech_stopped,
            FrameKind.FUNCTION_CALL: self._handle_function_call,
            FrameKind.ERROR: self._handle_error,
        }

    def register_tool(self, name: str, handler: ToolHandler) -> None:
        self.tool_handlers[name] = handler

    # Lifecycle

    async def start_session(self) -> Session:
        """Start a new voice session, or return the one already active.

        Any failure while connecting releases what was acquired and leaves the
        session CLOSED before the error propagates.

        Returns:
            The active Session (CLOSED if stop_session() ran meanwhile)

        Raises:
            MicrophonePermissionError: If the microphone cannot be acquired
            TransportEstablishmentError: If the relay session cannot be opened
        """
        if self.session is not None and self.session.is_active:
            return self.session

        session = Session()
        self.session = session
        self._set_state(session, SessionState.CONNECTING)

        try:
            await self._establish(session)
        except (Exception, asyncio.CancelledError):
            await self._teardown(session, failed=True)
            raise
        return session

    async def _establish(self, session: Session) -> None:
        resources = session.resources
        capture = self._capture_factory(functools.partial(self._on_captured_frame, session))
        resources.capture = capture
        try:
            capture.open()
        except MicrophonePermissionError:
            logger.warning("Microphone permission denied", extra={"session_id": session.session_id})
            raise

        playback = self._playback_factory()
        playback.on_playing_changed = functools.partial(self._on_playing_changed, session)
        resources.playback = playback

        try:
            transport = await self._connector()
        except TransportEstablishmentError:
            raise
        except (OSError, TimeoutError) as e:
            raise TransportEstablishmentError(f"Failed to open relay connection: {e}") from e

        if not self._is_current(session, SessionState.CONNECTING):
            # stop_session() ran while connecting
            await transport.close()
            return
        resources.transport = transport

        events = transport.events()
        try:
            await asyncio.wait_for(self._await_session_created(session, events), self.ready_timeout_s)
        except (TimeoutError, ConnectionError) as e:
            if not self._is_current(session, SessionState.CONNECTING):
                # stop_session() closed the transport under us
                return
            if isinstance(e, TransportEstablishmentError):
                raise
            raise TransportEstablishmentError(f"Realtime session was not created: {e}") from e

        if not self._is_current(session, SessionState.CONNECTING):
            return

        # Frames captured before OPEN are discarded by _on_captured_frame
        capture.start()
        self._set_state(session, SessionState.OPEN)
        self._spawn(session, self._reader(session, events), "session-reader")
        self._spawn(session, self._sender(session), "session-sender")

        logger.info("Voice session open", extra={"session_id": session.session_id})

    async def stop_session(self) -> None:
        """Stop the current session. Idempotent."""
        if self.session is None:
            return
        await self._teardown(self.session)

    def toggle_mute(self) -> bool:
        """Flip the microphone mute flag.

        Returns:
            The new muted state

        Raises:
            RuntimeError: If there is no active session
        """
        session = self.session
        if session is None or not session.is_active:
            raise RuntimeError("No active voice session")
        session.muted = not session.muted
        logger.info("Microphone muted" if session.muted else "Microphone unmuted")
        return session.muted

    async def send_text_message(self, text: str) -> Message:
        """Send a typed user message into the voice conversation.

        Raises:
            RuntimeError: If the session is not open
            ValueError: If text is empty
        """
        session = self.session
        if session is None or session.state != SessionState.OPEN:
            raise RuntimeError("Voice session is not open")
        if not text.strip():
            raise ValueError("Message text is empty")

        message = Message(role="user", content=text, final=True)
        self._append_message(session, message)

        transport = self._require_transport(session)
        await transport.send_event(ConversationItemCreateEvent.user_text(text))
        await transport.send_event(ResponseCreateEvent())
        return message

    # Frame dispatch

    async def on_frame(self, frame: Frame) -> None:
        """Apply one server frame to the current session.

        Errors while handling a frame are logged and do not end the session.
        """
        session = self.session
        if session is None or not session.is_active:
            return

        handler = self._handlers.get(frame.kind)
        if handler is None:
            logger.debug("Frame ignored", extra={"kind": frame.kind.value})
            return

        try:
            await handler(session, frame)
        except Exception:
            logger.exception(
                "Error handling frame",
                extra={"kind": frame.kind.value, "session_id": session.session_id},
            )

    async def _handle_audio_delta(self, session: Session, frame: AudioDelta) -> None:
        playback = session.resources.playback
        if playback is not None:
            playback.enqueue(decode_audio_delta(frame.delta_b64))

    async def _handle_transcript_delta(self, session: Session, frame: TranscriptDelta) -> None:
        if session.in_progress is None:
            session.in_progress = Message(role="assistant")
        session.in_progress.append(frame.delta)
        self.events.emit(SessionEvent.MESSAGE_UPDATED, session.in_progress)

    async def _handle_transcript_done(self, session: Session, frame: TranscriptDone) -> None:
        message = session.in_progress
        session.in_progress = None
        if message is None:
            if not frame.transcript:
                return
            message = Message(role="assistant")
        if not message.content and frame.transcript:
            message.append(frame.transcript)
        message.finalize()
        self._append_message(session, message)

    async def _handle_user_transcript(self, session: Session, frame: UserTranscriptDone) -> None:
        if not frame.transcript.strip():
            return
        self._append_message(session, Message(role="user", content=frame.transcript, final=True))

    async def _handle_speech_started(self, session: Session, frame: Frame) -> None:
        self._set_listening(session, True)
        # Barge-in: the user interrupted, drop queued assistant audio
        playback = session.resources.playback
        discarded = playback.clear() if playback is not None else 0
        if discarded:
            logger.info("Barge-in", extra={"discarded": discarded, "session_id": session.session_id})

    async def _handle_speech_stopped(self, session: Session, frame: Frame) -> None:
        self._set_listening(session, False)

    async def _handle_function_call(self, session: Session, frame: FunctionCall) -> None:
        handler = self.tool_handlers.get(frame.name)
        if handler is None:
            logger.warning("No handler for function call", extra={"function": frame.name})
            return

        try:
            arguments = json.loads(frame.arguments) if frame.arguments else {}
        except json.JSONDecodeError as e:
            logger.warning(
                "Malformed function call arguments",
                extra={"function": frame.name, "error": str(e)},
            )
            return

        logger.info("Function call", extra={"function": frame.name, "call_id": frame.call_id})
        result = handler(arguments)
        if inspect.isawaitable(result):
            result = await result

        if result is None or frame.call_id is None:
            return
        if not self._is_current(session, SessionState.OPEN):
            return

        output = result if isinstance(result, str) else json.dumps(result)
        transport = self._require_transport(session)
        await transport.send_event(ConversationItemCreateEvent.function_output(frame.call_id, output))
        await transport.send_event(ResponseCreateEvent())

    async def _handle_error(self, session: Session, frame: ErrorFrame) -> None:
        error_class = RateLimitError if frame.code == RATE_LIMIT_CODE else UpstreamError
        error = error_class(frame.message, code=frame.code)
        logger.warning(
            f"Upstream error: {frame.message}",
            extra={"code": frame.code, "session_id": session.session_id},
        )
        self.events.emit(SessionEvent.ERROR, error)

    # Tasks

    async def _await_session_created(self, session: Session, events: Any) -> None:
        async for event in events:
            frame = frame_from_event(event)
            await self.on_frame(frame)
            if isinstance(frame, SessionCreated):
                logger.debug(
                    "Realtime session created",
                    extra={"session_id": session.session_id, "upstream_id": frame.session_id},
                )
                return
        raise ConnectionError("Relay closed before session.created")

    async def _reader(self, session: Session, events: Any) -> None:
        try:
            async for event in events:
                await self.on_frame(frame_from_event(event))
                if not self._is_current(session, SessionState.OPEN):
                    return
            logger.info("Relay closed the session", extra={"session_id": session.session_id})
        except ConnectionError as e:
            logger.warning(f"Relay connection lost: {e}", extra={"session_id": session.session_id})
            self.events.emit(SessionEvent.ERROR, e)

        await self._teardown(session)

    async def _sender(self, session: Session) -> None:
        resources = session.resources
        while True:
            audio = await resources.outbound.get()
            if resources.transport is None:
                return
            try:
                await resources.transport.send_event(InputAudioAppendEvent(audio=audio))
            except ConnectionError as e:
                logger.warning(f"Audio send failed: {e}", extra={"session_id": session.session_id})
                return
            resources.frames_sent += 1

    def _on_captured_frame(self, session: Session, audio: str) -> None:
        """Receive one base64 PCM16 frame from capture (event loop thread)."""
        if session.state != SessionState.OPEN:
            return
        resources = session.resources
        if session.muted:
            resources.frames_muted += 1
            return
        try:
            resources.outbound.put_nowait(audio)
        except asyncio.QueueFull:
            resources.frames_dropped += 1
            logger.debug("Outbound audio queue full, frame dropped")

    def _spawn(self, session: Session, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.create_task(coro, name=f"{name}-{session.session_id[:8]}")
        session.resources.tasks.add(task)

    def _require_transport(self, session: Session) -> RealtimeTransport:
        transport = session.resources.transport
        if transport is None:
            raise RuntimeError("Voice session has no transport")
        return transport

    # Teardown

    async def _teardown(self, session: Session, failed: bool = False) -> None:
        """Release every session resource exactly once.

        Args:
            session: Session to close
            failed: Establishment failed; a CONNECTING session skips CLOSING
        """
        if session.state in (SessionState.CLOSING, SessionState.CLOSED):
            return

        if session.state == SessionState.IDLE or (failed and session.state == SessionState.CONNECTING):
            self._set_state(session, SessionState.CLOSED)
        else:
            self._set_state(session, SessionState.CLOSING)

        resources = session.resources
        current = asyncio.current_task()
        tasks = [task for task in resources.tasks if task is not current]
        resources.tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        transport, resources.transport = resources.transport, None
        if transport is not None:
            await transport.close()

        capture, resources.capture = resources.capture, None
        if capture is not None:
            capture.stop()

        playback, resources.playback = resources.playback, None
        if playback is not None:
            await playback.close()

        if session.in_progress is not None:
            partial, session.in_progress = session.in_progress, None
            if partial.content:
                partial.finalize()
                self._append_message(session, partial)

        self._set_listening(session, False)
        if session.speaking:
            session.speaking = False
            self.events.emit(SessionEvent.SPEAKING_CHANGED, False)

        if session.state == SessionState.CLOSING:
            self._set_state(session, SessionState.CLOSED)

        logger.info(
            "Voice session closed",
            extra={
                "session_id": session.session_id,
                "frames_sent": resources.frames_sent,
                "frames_muted": resources.frames_muted,
                "messages": len(session.messages),
            },
        )

    # Helpers

    def _is_current(self, session: Session, state: SessionState) -> bool:
        return self.session is session and session.state == state

    def _set_state(self, session: Session, state: SessionState) -> None:
        session.transition_to(state)
        self.events.emit(SessionEvent.STATE_CHANGED, state)

    def _set_listening(self, session: Session, listening: bool) -> None:
        if session.listening == listening:
            return
        session.listening = listening
        self.events.emit(SessionEvent.LISTENING_CHANGED, listening)

    def _append_message(self, session: Session, message: Message) -> None:
        session.messages.append(message)
        self.events.emit(SessionEvent.MESSAGE_APPENDED, message)

    def _on_playing_changed(self, session: Session, playing: bool) -> None:
        if session.speaking == playing:
            return
        if playing and not session.is_active:
            return
        session.speaking = playing
        self.events.emit(SessionEvent.SPEAKING_CHANGED, playing)
