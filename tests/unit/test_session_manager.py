"""Unit tests for the voice session manager.

Tests the session state machine, teardown convergence, mute gating, frame
dispatch, barge-in, and tool calls against an in-memory transport.
"""

import asyncio
import base64
from collections.abc import Awaitable, Callable
from typing import Any
from unittest.mock import MagicMock

import numpy as np
import pytest

from src.client.audio.capture import AudioCapture
from src.client.audio.playback import AudioPlaybackQueue
from src.client.events import EventEmitter, SessionEvent
from src.client.session import (
    Message,
    Session,
    SessionState,
    VoiceSessionManager,
)
from src.client.transport import RealtimeTransport
from src.common.errors import (
    MicrophonePermissionError,
    RateLimitError,
    TransportEstablishmentError,
    UpstreamError,
)
from src.common.frames import FunctionCall, TranscriptDelta
from tests.unit.fakes import FakeInputStream, FakeTransport, MemorySink, wait_until

SESSION_CREATED = {"type": "session.created", "session": {"id": "sess_1"}}
PCM_B64 = base64.b64encode(b"\x01\x00\x02\x00").decode()


class Harness:
    """A VoiceSessionManager wired to fakes, recording UI events."""

    def __init__(
        self,
        transport: FakeTransport | None = None,
        connector: Callable[[], Awaitable[RealtimeTransport]] | None = None,
        tool_handlers: dict[str, Any] | None = None,
        microphone_error: Exception | None = None,
        stream_start_error: Exception | None = None,
        ready_timeout_s: float = 0.5,
    ) -> None:
        self.transport = transport or FakeTransport([SESSION_CREATED])
        self.captures: list[AudioCapture] = []
        self.sinks: list[MemorySink] = []
        self.playbacks: list[AudioPlaybackQueue] = []
        self.events: list[tuple[SessionEvent, Any]] = []

        async def default_connector() -> RealtimeTransport:
            return self.transport

        def capture_factory(on_frame: Callable[[str], None]) -> AudioCapture:
            def stream_factory(**kwargs: Any) -> FakeInputStream:
                if microphone_error is not None:
                    raise microphone_error
                stream = FakeInputStream(**kwargs)
                if stream_start_error is not None:
                    stream.start = MagicMock(side_effect=stream_start_error)  # type: ignore[method-assign]
                return stream

            capture = AudioCapture(on_frame, frame_samples=4, stream_factory=stream_factory)
            self.captures.append(capture)
            return capture

        def playback_factory() -> AudioPlaybackQueue:
            sink = MemorySink(block=True)
            playback = AudioPlaybackQueue(sink)
            self.sinks.append(sink)
            self.playbacks.append(playback)
            return playback

        emitter = EventEmitter()
        for event in SessionEvent:
            emitter.on(event, lambda payload, event=event: self.events.append((event, payload)))

        self.manager = VoiceSessionManager(
            connector=connector or default_connector,
            capture_factory=capture_factory,
            playback_factory=playback_factory,
            tool_handlers=tool_handlers,
            emitter=emitter,
            ready_timeout_s=ready_timeout_s,
        )

    def payloads(self, event: SessionEvent) -> list[Any]:
        return [payload for kind, payload in self.events if kind == event]

    async def open(self) -> Session:
        session = await self.manager.start_session()
        assert session.state == SessionState.OPEN
        return session

    @property
    def sink(self) -> MemorySink:
        return self.sinks[-1]

    async def close(self) -> None:
        await self.manager.stop_session()


class TestSessionModel:
    """Test Session and Message data types."""

    def test_valid_transitions(self) -> None:
        """Test the full IDLE to CLOSED path is accepted."""
        session = Session()
        for state in (SessionState.CONNECTING, SessionState.OPEN, SessionState.CLOSING, SessionState.CLOSED):
            session.transition_to(state)
        assert session.state == SessionState.CLOSED

    def test_invalid_transitions(self) -> None:
        """Test transitions outside the table raise ValueError."""
        session = Session()
        with pytest.raises(ValueError, match="Invalid session transition"):
            session.transition_to(SessionState.OPEN)

        session.transition_to(SessionState.CLOSED)
        with pytest.raises(ValueError):
            session.transition_to(SessionState.CONNECTING)

    def test_sessions_have_unique_ids(self) -> None:
        """Test every session gets its own id."""
        assert Session().session_id != Session().session_id

    def test_message_append_and_finalize(self) -> None:
        """Test a finalized message rejects further deltas."""
        message = Message(role="assistant")
        message.append("Hel")
        message.append("lo")
        message.finalize()

        assert message.content == "Hello"
        assert message.final
        with pytest.raises(RuntimeError, match="final"):
            message.append("!")

    def test_message_api_shape(self) -> None:
        """Test messages serialize to role and content only."""
        message = Message(role="user", content="Hi", media_url="https://example.test/cv.pdf")
        assert message.as_api_message() == {"role": "user", "content": "Hi"}


class TestLifecycle:
    """Test start/stop and failure paths."""

    @pytest.mark.asyncio
    async def test_start_opens_session(self) -> None:
        """Test start_session acquires the microphone and opens on session.created."""
        harness = Harness()
        session = await harness.open()

        assert harness.payloads(SessionEvent.STATE_CHANGED) == [
            SessionState.CONNECTING,
            SessionState.OPEN,
        ]
        assert harness.captures[0].is_running
        assert session.muted is False
        await harness.close()

    @pytest.mark.asyncio
    async def test_start_is_noop_while_active(self) -> None:
        """Test a second start returns the active session."""
        harness = Harness()
        session = await harness.open()

        assert await harness.manager.start_session() is session
        assert len(harness.captures) == 1
        await harness.close()

    @pytest.mark.asyncio
    async def test_microphone_denied(self) -> None:
        """Test a denied microphone closes the session before connecting."""
        harness = Harness(microphone_error=PermissionError("denied"))

        with pytest.raises(MicrophonePermissionError):
            await harness.manager.start_session()

        assert harness.manager.session is not None
        assert harness.manager.session.state == SessionState.CLOSED
        assert harness.payloads(SessionEvent.STATE_CHANGED) == [
            SessionState.CONNECTING,
            SessionState.CLOSED,
        ]
        assert harness.captures[0].frames_captured == 0

    @pytest.mark.asyncio
    async def test_connect_failure_releases_microphone(self) -> None:
        """Test a failed connect closes the session and releases the microphone."""
        async def refuse() -> RealtimeTransport:
            raise TransportEstablishmentError("relay down")

        harness = Harness(connector=refuse)

        with pytest.raises(TransportEstablishmentError, match="relay down"):
            await harness.manager.start_session()

        assert harness.manager.session.state == SessionState.CLOSED  # type: ignore[union-attr]
        assert not harness.captures[0].is_open

    @pytest.mark.asyncio
    async def test_os_error_from_connector_is_wrapped(self) -> None:
        """Test a socket error from the connector becomes TransportEstablishmentError."""
        async def refuse() -> RealtimeTransport:
            raise OSError("refused")

        harness = Harness(connector=refuse)

        with pytest.raises(TransportEstablishmentError):
            await harness.manager.start_session()

    @pytest.mark.asyncio
    async def test_unknown_input_device_closes_session(self) -> None:
        """Test a device lookup error fails start and does not block a retry."""
        harness = Harness(microphone_error=ValueError("No input device matching 'nosuch'"))

        with pytest.raises(MicrophonePermissionError, match="nosuch"):
            await harness.manager.start_session()
        first = harness.manager.session
        assert first is not None and first.state == SessionState.CLOSED

        with pytest.raises(MicrophonePermissionError):
            await harness.manager.start_session()
        assert harness.manager.session is not first
        assert harness.manager.session.state == SessionState.CLOSED  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_unexpected_connector_error_closes_session(self) -> None:
        """Test an unexpected connector error still releases everything."""
        async def broken() -> RealtimeTransport:
            raise RuntimeError("connector bug")

        harness = Harness(connector=broken)

        with pytest.raises(RuntimeError, match="connector bug"):
            await harness.manager.start_session()

        session = harness.manager.session
        assert session is not None and session.state == SessionState.CLOSED
        assert not session.is_active
        assert not harness.captures[0].is_open
        assert harness.sinks[0].closed
        assert session.resources.playback is None

    @pytest.mark.asyncio
    async def test_capture_start_failure_releases_everything(self) -> None:
        """Test a microphone that fails to start leaves no open transport or tasks."""
        harness = Harness(stream_start_error=OSError("device busy"))

        with pytest.raises(OSError, match="device busy"):
            await harness.manager.start_session()

        session = harness.manager.session
        assert session is not None and session.state == SessionState.CLOSED
        assert harness.transport.close_count == 1
        assert not harness.captures[0].is_open
        assert not session.resources.tasks
        assert SessionState.OPEN not in harness.payloads(SessionEvent.STATE_CHANGED)

    @pytest.mark.asyncio
    async def test_playback_queue_per_session(self) -> None:
        """Test each session gets its own playback queue, closed at teardown."""
        transports = [FakeTransport([SESSION_CREATED]), FakeTransport([SESSION_CREATED])]

        async def connect() -> RealtimeTransport:
            return transports.pop(0)

        harness = Harness(connector=connect)
        first = await harness.open()
        first_playback = first.resources.playback
        await harness.manager.stop_session()

        second = await harness.open()

        assert first.resources.playback is None
        assert harness.sinks[0].closed
        assert second.resources.playback is not None
        assert second.resources.playback is not first_playback
        assert len(harness.playbacks) == 2
        with pytest.raises(RuntimeError, match="closed"):
            first_playback.enqueue(b"\x00\x00")  # type: ignore[union-attr]
        await harness.close()

    @pytest.mark.asyncio
    async def test_session_created_timeout(self) -> None:
        """Test a relay that never reports session.created fails establishment."""
        transport = FakeTransport()
        harness = Harness(transport=transport, ready_timeout_s=0.05)

        with pytest.raises(TransportEstablishmentError, match="not created"):
            await harness.manager.start_session()

        assert harness.manager.session.state == SessionState.CLOSED  # type: ignore[union-attr]
        assert transport.close_count == 1
        assert not harness.captures[0].is_open

    @pytest.mark.asyncio
    async def test_relay_closes_before_session_created(self) -> None:
        """Test a relay that closes before session.created fails establishment."""
        transport = FakeTransport()
        transport.drop()
        harness = Harness(transport=transport)

        with pytest.raises(TransportEstablishmentError):
            await harness.manager.start_session()

        assert harness.manager.session.state == SessionState.CLOSED  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_stop_session(self) -> None:
        """Test teardown releases everything and passes through CLOSING."""
        harness = Harness()
        session = await harness.open()

        await harness.manager.stop_session()

        assert session.state == SessionState.CLOSED
        assert harness.transport.close_count == 1
        assert not harness.captures[0].is_open
        assert not session.resources.tasks
        assert harness.payloads(SessionEvent.STATE_CHANGED) == [
            SessionState.CONNECTING,
            SessionState.OPEN,
            SessionState.CLOSING,
            SessionState.CLOSED,
        ]

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self) -> None:
        """Test repeated stops tear down once."""
        harness = Harness()
        await harness.open()

        await asyncio.gather(harness.manager.stop_session(), harness.manager.stop_session())
        await harness.manager.stop_session()

        assert harness.transport.close_count == 1
        assert harness.payloads(SessionEvent.STATE_CHANGED).count(SessionState.CLOSED) == 1

    @pytest.mark.asyncio
    async def test_stop_without_session(self) -> None:
        harness = Harness()
        await harness.manager.stop_session()
        assert harness.manager.session is None

    @pytest.mark.asyncio
    async def test_stop_while_connecting(self) -> None:
        """Test a connect that completes after stop_session() is discarded."""
        transport = FakeTransport([SESSION_CREATED])
        gate = asyncio.Event()

        async def slow_connect() -> RealtimeTransport:
            await gate.wait()
            return transport

        harness = Harness(transport=transport, connector=slow_connect)
        start = asyncio.create_task(harness.manager.start_session())
        await wait_until(lambda: harness.manager.session is not None)

        await harness.manager.stop_session()
        gate.set()
        session = await asyncio.wait_for(start, 1.0)

        assert session.state == SessionState.CLOSED
        assert transport.close_count == 1
        assert not harness.captures[0].is_open

    @pytest.mark.asyncio
    async def test_restart_creates_new_session(self) -> None:
        """Test a start after stop builds a fresh session."""
        first_transport = FakeTransport([SESSION_CREATED])
        second_transport = FakeTransport([SESSION_CREATED])
        transports = [first_transport, second_transport]

        async def connect() -> RealtimeTransport:
            return transports.pop(0)

        harness = Harness(connector=connect)
        first = await harness.open()
        await harness.manager.stop_session()
        second = await harness.open()

        assert second is not first
        assert second.session_id != first.session_id
        assert first.state == SessionState.CLOSED
        assert len(harness.captures) == 2
        await harness.close()

    @pytest.mark.asyncio
    async def test_upstream_close_mid_turn(self) -> None:
        """Test the relay dropping mid-response tears the session down."""
        harness = Harness()
        session = await harness.open()

        harness.transport.push({"type": "response.audio_transcript.delta", "delta": "You could"})
        await wait_until(lambda: session.in_progress is not None)
        harness.transport.drop()
        await wait_until(lambda: session.state == SessionState.CLOSED)

        assert not harness.captures[0].is_open
        assert session.in_progress is None
        assert session.messages[-1].content == "You could"
        assert session.messages[-1].final


class TestAudio:
    """Test microphone gating and playback interaction."""

    @pytest.mark.asyncio
    async def test_captured_frames_are_sent(self) -> None:
        """Test captured frames go out as input_audio_buffer.append."""
        harness = Harness()
        session = await harness.open()

        harness.captures[0].deliver(np.zeros(4, dtype=np.float32))
        await wait_until(lambda: session.resources.frames_sent == 1)

        append = harness.transport.sent[0]
        assert append["type"] == "input_audio_buffer.append"
        assert base64.b64decode(append["audio"]) == b"\x00" * 8
        await harness.close()

    @pytest.mark.asyncio
    async def test_mute_drops_frames_but_capture_continues(self) -> None:
        """Test muted frames are counted and dropped while capture keeps running."""
        harness = Harness()
        session = await harness.open()

        assert harness.manager.toggle_mute() is True
        harness.captures[0].deliver(np.zeros(4, dtype=np.float32))
        harness.captures[0].deliver(np.zeros(4, dtype=np.float32))
        await asyncio.sleep(0.01)

        assert harness.captures[0].frames_captured == 2
        assert session.resources.frames_muted == 2
        assert harness.transport.sent == []

        assert harness.manager.toggle_mute() is False
        harness.captures[0].deliver(np.zeros(4, dtype=np.float32))
        await wait_until(lambda: session.resources.frames_sent == 1)
        await harness.close()

    @pytest.mark.asyncio
    async def test_toggle_mute_without_session(self) -> None:
        """Test toggle_mute without a session raises RuntimeError."""
        harness = Harness()

        with pytest.raises(RuntimeError, match="No active"):
            harness.manager.toggle_mute()

        await harness.open()
        await harness.manager.stop_session()
        with pytest.raises(RuntimeError, match="No active"):
            harness.manager.toggle_mute()

    @pytest.mark.asyncio
    async def test_audio_delta_plays_and_sets_speaking(self) -> None:
        """Test audio deltas are played and drive the speaking indicator."""
        harness = Harness()
        session = await harness.open()

        harness.transport.push({"type": "response.audio.delta", "delta": PCM_B64})
        await wait_until(lambda: session.speaking)

        assert harness.payloads(SessionEvent.SPEAKING_CHANGED) == [True]
        harness.sink.release()
        await wait_until(lambda: not session.speaking)
        assert harness.sink.written == [b"\x01\x00\x02\x00"]
        await harness.close()

    @pytest.mark.asyncio
    async def test_speech_started_barges_in(self) -> None:
        """Test user speech clears queued assistant audio immediately."""
        harness = Harness()
        session = await harness.open()

        for _ in range(3):
            harness.transport.push({"type": "response.audio.delta", "delta": PCM_B64})
        await wait_until(lambda: session.speaking)

        harness.transport.push({"type": "input_audio_buffer.speech_started"})
        await wait_until(lambda: session.listening)

        assert not session.speaking
        assert session.resources.playback is not None
        assert session.resources.playback.pending == 0
        assert harness.sink.aborts == 1
        assert harness.payloads(SessionEvent.SPEAKING_CHANGED) == [True, False]

        harness.transport.push({"type": "input_audio_buffer.speech_stopped"})
        await wait_until(lambda: not session.listening)
        assert harness.payloads(SessionEvent.LISTENING_CHANGED) == [True, False]
        await harness.close()

    @pytest.mark.asyncio
    async def test_malformed_audio_delta_is_contained(self) -> None:
        """Test an undecodable delta is skipped without closing the session."""
        harness = Harness()
        session = await harness.open()

        harness.transport.push({"type": "response.audio.delta", "delta": "***"})
        harness.transport.push({"type": "input_audio_buffer.speech_started"})
        await wait_until(lambda: session.listening)

        assert session.state == SessionState.OPEN
        await harness.close()


class TestTranscript:
    """Test transcript assembly."""

    @pytest.mark.asyncio
    async def test_assistant_deltas_build_one_message(self) -> None:
        """Test transcript deltas accumulate into one assistant message."""
        harness = Harness()
        session = await harness.open()

        deltas = ["Have you ", "considered ", "nursing?"]
        for delta in deltas:
            harness.transport.push({"type": "response.audio_transcript.delta", "delta": delta})
        harness.transport.push(
            {"type": "response.audio_transcript.done", "transcript": "Have you considered nursing?"}
        )
        await wait_until(lambda: len(session.messages) == 1)

        message = session.messages[0]
        assert message.role == "assistant"
        assert message.content == "".join(deltas)
        assert message.final
        assert session.in_progress is None
        assert len(harness.payloads(SessionEvent.MESSAGE_UPDATED)) == 3
        assert harness.payloads(SessionEvent.MESSAGE_APPENDED) == [message]
        await harness.close()

    @pytest.mark.asyncio
    async def test_done_without_deltas_uses_transcript(self) -> None:
        """Test the done transcript is used when no delta arrived."""
        harness = Harness()
        session = await harness.open()

        harness.transport.push({"type": "response.audio_transcript.done", "transcript": "Hello!"})
        await wait_until(lambda: len(session.messages) == 1)

        assert session.messages[0].content == "Hello!"
        await harness.close()

    @pytest.mark.asyncio
    async def test_empty_done_without_deltas_is_ignored(self) -> None:
        """Test an empty done transcript appends nothing."""
        harness = Harness()
        session = await harness.open()

        await harness.manager.on_frame(TranscriptDelta(delta="x"))
        assert session.in_progress is not None
        harness.transport.push({"type": "response.audio_transcript.done"})
        harness.transport.push({"type": "response.audio_transcript.done"})
        await wait_until(lambda: len(session.messages) == 1)
        await asyncio.sleep(0.01)

        assert [m.content for m in session.messages] == ["x"]
        await harness.close()

    @pytest.mark.asyncio
    async def test_user_transcript(self) -> None:
        """Test user transcripts are appended and blank ones ignored."""
        harness = Harness()
        session = await harness.open()

        harness.transport.push(
            {
                "type": "conversation.item.input_audio_transcription.completed",
                "transcript": "I like biology",
            }
        )
        harness.transport.push(
            {"type": "conversation.item.input_audio_transcription.completed", "transcript": "  "}
        )
        await wait_until(lambda: len(session.messages) == 1)
        await asyncio.sleep(0.01)

        assert len(session.messages) == 1
        assert session.messages[0].role == "user"
        assert session.messages[0].content == "I like biology"
        await harness.close()

    @pytest.mark.asyncio
    async def test_send_text_message(self) -> None:
        """Test typed text is appended and sent with response.create."""
        harness = Harness()
        session = await harness.open()

        message = await harness.manager.send_text_message("What jobs suit me?")

        assert session.messages == [message]
        assert message.role == "user" and message.final
        assert harness.transport.sent_types() == ["conversation.item.create", "response.create"]
        item = harness.transport.sent[0]["item"]
        assert item["content"] == [{"type": "input_text", "text": "What jobs suit me?"}]
        await harness.close()

    @pytest.mark.asyncio
    async def test_send_text_requires_open_session(self) -> None:
        """Test typed text without an open session raises RuntimeError."""
        harness = Harness()
        with pytest.raises(RuntimeError, match="not open"):
            await harness.manager.send_text_message("hi")

        await harness.open()
        with pytest.raises(ValueError):
            await harness.manager.send_text_message("   ")
        await harness.close()


class TestDispatch:
    """Test tool calls, errors, and unknown frames."""

    @pytest.mark.asyncio
    async def test_function_call_result_sent_back(self) -> None:
        """Test a tool result is returned followed by response.create."""
        calls: list[dict[str, Any]] = []

        def start_interview(arguments: dict[str, Any]) -> dict[str, Any]:
            calls.append(arguments)
            return {"status": "started"}

        harness = Harness(tool_handlers={"start_mock_interview": start_interview})
        await harness.open()

        harness.transport.push(
            {
                "type": "response.function_call_arguments.done",
                "name": "start_mock_interview",
                "arguments": '{"role": "data analyst"}',
                "call_id": "call_9",
            }
        )
        await wait_until(lambda: len(harness.transport.sent) == 2)

        assert calls == [{"role": "data analyst"}]
        assert harness.transport.sent_types() == ["conversation.item.create", "response.create"]
        item = harness.transport.sent[0]["item"]
        assert item == {
            "type": "function_call_output",
            "call_id": "call_9",
            "output": '{"status": "started"}',
        }
        await harness.close()

    @pytest.mark.asyncio
    async def test_async_handler(self) -> None:
        """Test coroutine tool handlers are awaited."""
        async def feedback(arguments: dict[str, Any]) -> str:
            await asyncio.sleep(0)
            return "noted"

        harness = Harness(tool_handlers={"provide_interview_feedback": feedback})
        await harness.open()

        harness.transport.push(
            {
                "type": "response.function_call_arguments.done",
                "name": "provide_interview_feedback",
                "arguments": "{}",
                "call_id": "call_1",
            }
        )
        await wait_until(lambda: len(harness.transport.sent) == 2)

        assert harness.transport.sent[0]["item"]["output"] == "noted"
        await harness.close()

    @pytest.mark.asyncio
    async def test_none_result_and_unknown_tool_send_nothing(self) -> None:
        """Test tools returning None and unknown tools send nothing back."""
        seen: list[str] = []
        harness = Harness(tool_handlers={"quiet": lambda arguments: seen.append("quiet")})
        session = await harness.open()

        for name in ("quiet", "missing"):
            harness.transport.push(
                {"type": "response.function_call_arguments.done", "name": name, "call_id": "c"}
            )
        harness.transport.push({"type": "input_audio_buffer.speech_started"})
        await wait_until(lambda: session.listening)

        assert seen == ["quiet"]
        assert harness.transport.sent == []
        await harness.close()

    @pytest.mark.asyncio
    async def test_handler_exception_keeps_session_open(self) -> None:
        """Test a failing tool handler does not close the session."""
        def broken(arguments: dict[str, Any]) -> str:
            raise KeyError("role")

        harness = Harness(tool_handlers={"start_mock_interview": broken})
        session = await harness.open()

        await harness.manager.on_frame(
            FunctionCall(name="start_mock_interview", arguments="{}", call_id="c")
        )
        await harness.manager.on_frame(
            FunctionCall(name="start_mock_interview", arguments="{not json", call_id="c")
        )

        assert session.state == SessionState.OPEN
        await harness.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("code", "error_class"),
        [("rate_limit_exceeded", RateLimitError), ("server_error", UpstreamError)],
    )
    async def test_error_frames_emit_ui_errors(
        self, code: str, error_class: type[UpstreamError]
    ) -> None:
        """Test upstream error frames reach ERROR listeners as typed errors."""
        harness = Harness()
        session = await harness.open()

        harness.transport.push({"type": "error", "error": {"message": "Slow down", "code": code}})
        await wait_until(lambda: bool(harness.payloads(SessionEvent.ERROR)))

        error = harness.payloads(SessionEvent.ERROR)[0]
        assert type(error) is error_class
        assert error.code == code
        assert error.message == "Slow down"
        assert session.state == SessionState.OPEN
        await harness.close()

    @pytest.mark.asyncio
    async def test_unknown_events_are_ignored(self) -> None:
        """Test unknown event types are ignored."""
        harness = Harness()
        session = await harness.open()

        harness.transport.push({"type": "rate_limits.updated"})
        harness.transport.push({"type": "response.done"})
        harness.transport.push({"type": "input_audio_buffer.speech_started"})
        await wait_until(lambda: session.listening)

        assert session.state == SessionState.OPEN
        await harness.close()

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_break_dispatch(self) -> None:
        """Test a failing listener does not stop frame dispatch."""
        harness = Harness()

        def broken(payload: Any) -> None:
            raise RuntimeError("ui crashed")

        harness.manager.events.on(SessionEvent.LISTENING_CHANGED, broken)
        session = await harness.open()

        harness.transport.push({"type": "input_audio_buffer.speech_started"})
        await wait_until(lambda: session.listening)

        assert harness.payloads(SessionEvent.LISTENING_CHANGED) == [True]
        await harness.close()


class TestEventEmitter:
    """Test EventEmitter subscription handling."""

    def test_on_off_emit(self) -> None:
        """Test removed listeners stop receiving and a second off is harmless."""
        emitter = EventEmitter()
        received: list[Any] = []

        emitter.on(SessionEvent.ERROR, received.append)
        emitter.emit(SessionEvent.ERROR, "first")
        emitter.off(SessionEvent.ERROR, received.append)
        emitter.emit(SessionEvent.ERROR, "second")
        emitter.off(SessionEvent.ERROR, received.append)

        assert received == ["first"]
