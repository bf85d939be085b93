"""Configuration schema for the relay server.

Defines Pydantic models for loading and validating relay configuration from
YAML files and environment variables.
"""

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

DEFAULT_INSTRUCTIONS = """You are an expert AI Career Counsellor having a real-time voice conversation.

Your role is to:
- Help users explore career options and provide personalized guidance
- Assist with job interview preparation and mock interviews
- Offer resume and cover letter advice
- Provide insights on industry trends and skill development
- Guide career transitions and professional growth strategies

Be conversational, supportive, and encouraging. Keep responses concise since this is a voice conversation.
Ask follow-up questions to better understand the user's situation.
When doing mock interviews, role-play as an interviewer and provide constructive feedback."""

DEFAULT_CHAT_SYSTEM_PROMPT = (
    "You are an expert AI Career Counsellor. Help users explore career options, prepare for "
    "interviews, improve their resumes and cover letters, and plan skill development. "
    "Be supportive, specific, and concise, and ask follow-up questions when the user's "
    "situation is unclear."
)

DEFAULT_TOOLS: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "start_mock_interview",
        "description": "Start a mock interview session for a specific role",
        "parameters": {
            "type": "object",
            "properties": {
                "role": {
                    "type": "string",
                    "description": "The job role to practice interviewing for",
                },
                "difficulty": {
                    "type": "string",
                    "enum": ["easy", "medium", "hard"],
                    "description": "Interview difficulty level",
                },
            },
            "required": ["role"],
        },
    },
    {
        "type": "function",
        "name": "provide_interview_feedback",
        "description": "Provide detailed feedback on the user's interview responses",
        "parameters": {
            "type": "object",
            "properties": {
                "strengths": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "What the user did well",
                },
                "improvements": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Areas for improvement",
                },
                "overall_score": {
                    "type": "number",
                    "description": "Overall score from 1-10",
                },
            },
            "required": ["strengths", "improvements", "overall_score"],
        },
    },
]


class ServerConfig(BaseModel):
    """Client-facing WebSocket server configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=8080, ge=1024, le=65535, description="WebSocket bind port")
    max_connections: int = Field(default=100, ge=1, description="Maximum concurrent relays")
    max_message_bytes: int = Field(
        default=2**20, ge=1024, description="Maximum WebSocket message size"
    )

    @property
    def http_port(self) -> int:
        """HTTP port (health, chat, transcription) is the next port up."""
        return self.port + 1


class UpstreamConfig(BaseModel):
    """Upstream realtime endpoint configuration."""

    url: str = Field(
        default="wss://api.openai.com/v1/realtime",
        description="Realtime WebSocket endpoint",
    )
    model: str = Field(
        default="gpt-4o-realtime-preview-2024-10-01",
        description="Realtime model name (sent as ?model=)",
    )
    api_key: str | None = Field(default=None, description="Upstream API key")
    beta_header: str = Field(default="realtime=v1", description="OpenAI-Beta header value")
    connect_timeout_s: float = Field(
        default=10.0,
        gt=0,
        description="Bound on upstream connect plus session.created wait",
    )

    @property
    def endpoint(self) -> str:
        """Full upstream URL including the model query parameter."""
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}model={self.model}"

    def headers(self) -> dict[str, str]:
        """Headers sent with the upstream WebSocket handshake."""
        headers = {"OpenAI-Beta": self.beta_header}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers


class TurnDetectionConfig(BaseModel):
    """Server-side voice activity detection thresholds."""

    type: str = Field(default="server_vad", description="Turn detection mode")
    threshold: float = Field(default=0.5, ge=0.0, le=1.0, description="VAD activation threshold")
    prefix_padding_ms: int = Field(default=300, ge=0, description="Audio kept before speech")
    silence_duration_ms: int = Field(default=800, ge=0, description="Silence that ends a turn")


class SessionUpdateConfig(BaseModel):
    """Contents of the session.update handshake injected by the relay."""

    modalities: list[str] = Field(default_factory=lambda: ["text", "audio"])
    instructions: str = Field(default=DEFAULT_INSTRUCTIONS)
    voice: str = Field(default="alloy")
    input_audio_format: str = Field(default="pcm16")
    output_audio_format: str = Field(default="pcm16")
    transcription_model: str = Field(default="whisper-1")
    turn_detection: TurnDetectionConfig = Field(default_factory=TurnDetectionConfig)
    tools: list[dict[str, Any]] = Field(default_factory=lambda: [dict(t) for t in DEFAULT_TOOLS])
    tool_choice: str = Field(default="auto")
    temperature: float = Field(default=0.8, ge=0.6, le=1.2)
    max_response_output_tokens: int | str = Field(default=4096)

    @field_validator("input_audio_format", "output_audio_format")
    @classmethod
    def validate_audio_format(cls, v: str) -> str:
        """Validate that the audio format is one the realtime API accepts."""
        valid_formats = ["pcm16", "g711_ulaw", "g711_alaw"]
        if v not in valid_formats:
            raise ValueError(f"Audio format must be one of {valid_formats}, got '{v}'")
        return v

    @field_validator("max_response_output_tokens")
    @classmethod
    def validate_max_tokens(cls, v: int | str) -> int | str:
        """Validate output token limit (positive int or 'inf')."""
        if isinstance(v, str):
            if v != "inf":
                raise ValueError(f"max_response_output_tokens must be an integer or 'inf', got '{v}'")
            return v
        if v < 1:
            raise ValueError(f"max_response_output_tokens must be positive, got {v}")
        return v


class ChatConfig(BaseModel):
    """Upstream streaming chat-completions configuration."""

    url: str = Field(
        default="https://api.openai.com/v1/chat/completions",
        description="Chat completions endpoint",
    )
    model: str = Field(default="gpt-4o-mini", description="Chat model name")
    api_key: str | None = Field(default=None, description="Chat API key")
    system_prompt: str = Field(default=DEFAULT_CHAT_SYSTEM_PROMPT)
    request_timeout_s: float = Field(default=60.0, gt=0, description="Total request timeout")


class TranscriptionConfig(BaseModel):
    """Upstream speech-to-text configuration."""

    url: str = Field(
        default="https://api.openai.com/v1/audio/transcriptions",
        description="Transcription endpoint",
    )
    model: str = Field(default="whisper-1", description="Transcription model name")
    max_audio_bytes: int = Field(
        default=25 * 1024 * 1024, ge=1, description="Largest decoded audio accepted"
    )


class RelayConfig(BaseModel):
    """Root relay configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    session: SessionUpdateConfig = Field(default_factory=SessionUpdateConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    transcription: TranscriptionConfig = Field(default_factory=TranscriptionConfig)

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    graceful_shutdown_timeout_s: int = Field(
        default=10,
        ge=1,
        description="Graceful shutdown timeout in seconds",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @staticmethod
    def apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
        """Apply environment variable overrides onto raw config data.

        Args:
            data: Raw configuration mapping (modified in place)

        Returns:
            The same mapping, for chaining
        """
        if api_key := os.getenv("OPENAI_API_KEY"):
            data.setdefault("upstream", {})["api_key"] = api_key
            data.setdefault("chat", {}).setdefault("api_key", api_key)

        if realtime_url := os.getenv("REALTIME_URL"):
            data.setdefault("upstream", {})["url"] = realtime_url

        if realtime_model := os.getenv("REALTIME_MODEL"):
            data.setdefault("upstream", {})["model"] = realtime_model

        if chat_api_key := os.getenv("CHAT_API_KEY"):
            data.setdefault("chat", {})["api_key"] = chat_api_key

        if chat_url := os.getenv("CHAT_URL"):
            data.setdefault("chat", {})["url"] = chat_url

        if relay_port := os.getenv("RELAY_PORT"):
            data.setdefault("server", {})["port"] = int(relay_port)

        if log_level := os.getenv("LOG_LEVEL"):
            data["log_level"] = log_level

        return data

    @classmethod
    def from_yaml(cls, path: Path) -> "RelayConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        return cls.model_validate(cls.apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "RelayConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment overrides apply in both cases.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(cls.apply_env_overrides({}))
