"""Frame variants decoded from the realtime and streaming-chat transports.

Every frame is a frozen dataclass tagged with a ``FrameKind``. Realtime JSON
events are mapped by their ``type`` field; anything not listed here becomes an
``UnknownFrame`` so that callers can log it instead of silently dropping it.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class FrameKind(Enum):
    """Finite set of frame kinds understood by the session layer."""

    SESSION_CREATED = "session_created"
    SESSION_UPDATED = "session_updated"
    AUDIO_DELTA = "audio_delta"
    TRANSCRIPT_DELTA = "transcript_delta"
    TRANSCRIPT_DONE = "transcript_done"
    USER_TRANSCRIPT_DONE = "user_transcript_done"
    SPEECH_STARTED = "speech_started"
    SPEECH_STOPPED = "speech_stopped"
    FUNCTION_CALL = "function_call"
    RESPONSE_DONE = "response_done"
    ERROR = "error"
    CONTENT_DELTA = "content_delta"
    TERMINATOR = "terminator"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SessionCreated:
    session_id: str | None = None
    kind: FrameKind = field(default=FrameKind.SESSION_CREATED, init=False)


@dataclass(frozen=True)
class SessionUpdated:
    kind: FrameKind = field(default=FrameKind.SESSION_UPDATED, init=False)


@dataclass(frozen=True)
class AudioDelta:
    """Base64-encoded PCM16 audio for the assistant's current turn."""

    delta_b64: str
    kind: FrameKind = field(default=FrameKind.AUDIO_DELTA, init=False)


@dataclass(frozen=True)
class TranscriptDelta:
    """Incremental assistant transcript text."""

    delta: str
    kind: FrameKind = field(default=FrameKind.TRANSCRIPT_DELTA, init=False)


@dataclass(frozen=True)
class TranscriptDone:
    """Assistant transcript for the turn is complete."""

    transcript: str = ""
    kind: FrameKind = field(default=FrameKind.TRANSCRIPT_DONE, init=False)


@dataclass(frozen=True)
class UserTranscriptDone:
    """Transcription of the user's spoken turn is complete."""

    transcript: str = ""
    kind: FrameKind = field(default=FrameKind.USER_TRANSCRIPT_DONE, init=False)


@dataclass(frozen=True)
class SpeechStarted:
    kind: FrameKind = field(default=FrameKind.SPEECH_STARTED, init=False)


@dataclass(frozen=True)
class SpeechStopped:
    kind: FrameKind = field(default=FrameKind.SPEECH_STOPPED, init=False)


@dataclass(frozen=True)
class FunctionCall:
    """Tool invocation with its complete JSON argument string."""

    name: str
    arguments: str = "{}"
    call_id: str | None = None
    kind: FrameKind = field(default=FrameKind.FUNCTION_CALL, init=False)


@dataclass(frozen=True)
class ResponseDone:
    kind: FrameKind = field(default=FrameKind.RESPONSE_DONE, init=False)


@dataclass(frozen=True)
class ErrorFrame:
    """Error reported in-band by the upstream provider."""

    message: str
    code: str | None = None
    error_type: str | None = None
    kind: FrameKind = field(default=FrameKind.ERROR, init=False)


@dataclass(frozen=True)
class ContentDelta:
    """Text increment from the streaming-chat transport."""

    text: str
    kind: FrameKind = field(default=FrameKind.CONTENT_DELTA, init=False)


@dataclass(frozen=True)
class Terminator:
    """End of the current streamed turn."""

    kind: FrameKind = field(default=FrameKind.TERMINATOR, init=False)


@dataclass(frozen=True)
class UnknownFrame:
    """Event whose type is not part of the known set."""

    event_type: str | None
    payload: dict[str, Any] = field(default_factory=dict, compare=False)
    kind: FrameKind = field(default=FrameKind.UNKNOWN, init=False)


Frame = (
    SessionCreated
    | SessionUpdated
    | AudioDelta
    | TranscriptDelta
    | TranscriptDone
    | UserTranscriptDone
    | SpeechStarted
    | SpeechStopped
    | FunctionCall
    | ResponseDone
    | ErrorFrame
    | ContentDelta
    | Terminator
    | UnknownFrame
)


def _error_frame(event: dict[str, Any]) -> ErrorFrame:
    error = event.get("error") or {}
    if not isinstance(error, dict):
        return ErrorFrame(message=str(error))
    return ErrorFrame(
        message=error.get("message") or "An error occurred",
        code=error.get("code"),
        error_type=error.get("type"),
    )


def frame_from_event(event: dict[str, Any]) -> Frame:
    """Map a realtime JSON event onto its frame variant.

    Args:
        event: Decoded server→client event

    Returns:
        Frame variant; ``UnknownFrame`` for unrecognised types or for known
        delta events that are missing their payload
    """
    event_type = event.get("type")

    if event_type == "session.created":
        session = event.get("session") or {}
        return SessionCreated(session_id=session.get("id") if isinstance(session, dict) else None)
    if event_type == "session.updated":
        return SessionUpdated()
    if event_type == "response.audio.delta" and event.get("delta"):
        return AudioDelta(delta_b64=event["delta"])
    if event_type == "response.audio_transcript.delta" and event.get("delta"):
        return TranscriptDelta(delta=event["delta"])
    if event_type == "response.audio_transcript.done":
        return TranscriptDone(transcript=event.get("transcript") or "")
    if event_type == "conversation.item.input_audio_transcription.completed":
        return UserTranscriptDone(transcript=event.get("transcript") or "")
    if event_type == "input_audio_buffer.speech_started":
        return SpeechStarted()
    if event_type == "input_audio_buffer.speech_stopped":
        return SpeechStopped()
    if event_type == "response.function_call_arguments.done":
        return FunctionCall(
            name=event.get("name") or "",
            arguments=event.get("arguments") or "{}",
            call_id=event.get("call_id"),
        )
    if event_type == "response.done":
        return ResponseDone()
    if event_type == "error":
        return _error_frame(event)

    return UnknownFrame(event_type=event_type, payload=event)
