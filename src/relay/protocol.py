"""Realtime event models exchanged over the relay.

The relay is schema-agnostic for forwarded traffic: it only inspects the
``type`` field of upstream events. These models describe the client→server
events the code base constructs itself (the session.update handshake and the
events the client session layer sends).
"""

from typing import Any, Literal

from pydantic import BaseModel, Field

from src.relay.config import SessionUpdateConfig

SESSION_CREATED = "session.created"


class TurnDetection(BaseModel):
    """Server VAD settings inside a session.update."""

    type: str = "server_vad"
    threshold: float = 0.5
    prefix_padding_ms: int = 300
    silence_duration_ms: int = 800


class InputAudioTranscription(BaseModel):
    """Transcription model used for the user's audio."""

    model: str = "whisper-1"


class SessionSettings(BaseModel):
    """Session body of a session.update event."""

    modalities: list[str]
    instructions: str
    voice: str
    input_audio_format: str
    output_audio_format: str
    input_audio_transcription: InputAudioTranscription
    turn_detection: TurnDetection
    tools: list[dict[str, Any]] = Field(default_factory=list)
    tool_choice: str = "auto"
    temperature: float = 0.8
    max_response_output_tokens: int | str = 4096


class SessionUpdateEvent(BaseModel):
    """Relay → upstream: one-time session configuration handshake."""

    type: Literal["session.update"] = "session.update"
    session: SessionSettings


class InputAudioAppendEvent(BaseModel):
    """Client → upstream: base64 PCM16 audio from the microphone."""

    type: Literal["input_audio_buffer.append"] = "input_audio_buffer.append"
    audio: str = Field(..., min_length=1, description="Base64-encoded PCM16 audio")


class ConversationItem(BaseModel):
    """Conversation item carried by conversation.item.create."""

    type: Literal["message", "function_call_output"] = "message"
    role: Literal["user", "assistant", "system"] | None = "user"
    content: list[dict[str, Any]] | None = None
    call_id: str | None = None
    output: str | None = None


class ConversationItemCreateEvent(BaseModel):
    """Client → upstream: add an item (typed text or tool output)."""

    type: Literal["conversation.item.create"] = "conversation.item.create"
    item: ConversationItem

    @classmethod
    def user_text(cls, text: str) -> "ConversationItemCreateEvent":
        """Build an event carrying a typed user message."""
        return cls(
            item=ConversationItem(
                type="message",
                role="user",
                content=[{"type": "input_text", "text": text}],
            )
        )

    @classmethod
    def function_output(cls, call_id: str, output: str) -> "ConversationItemCreateEvent":
        """Build an event carrying a tool result."""
        return cls(
            item=ConversationItem(
                type="function_call_output",
                role=None,
                call_id=call_id,
                output=output,
            )
        )


class ResponseCreateEvent(BaseModel):
    """Client → upstream: ask the model to respond now."""

    type: Literal["response.create"] = "response.create"


def build_session_update(config: SessionUpdateConfig) -> SessionUpdateEvent:
    """Build the session.update handshake from configuration.

    Args:
        config: Session configuration section

    Returns:
        Event ready to serialize with ``model_dump_json(exclude_none=True)``
    """
    detection = config.turn_detection
    return SessionUpdateEvent(
        session=SessionSettings(
            modalities=list(config.modalities),
            instructions=config.instructions,
            voice=config.voice,
            input_audio_format=config.input_audio_format,
            output_audio_format=config.output_audio_format,
            input_audio_transcription=InputAudioTranscription(model=config.transcription_model),
            turn_detection=TurnDetection(
                type=detection.type,
                threshold=detection.threshold,
                prefix_padding_ms=detection.prefix_padding_ms,
                silence_duration_ms=detection.silence_duration_ms,
            ),
            tools=[dict(tool) for tool in config.tools],
            tool_choice=config.tool_choice,
            temperature=config.temperature,
            max_response_output_tokens=config.max_response_output_tokens,
        )
    )
