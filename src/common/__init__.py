"""Common utilities and type definitions.

This package provides the frame types, error taxonomy, and incremental stream
parser shared by the relay server and the client session layer.
"""

from src.common.errors import (
    MicrophonePermissionError,
    ProtocolParseError,
    QuotaError,
    RateLimitError,
    RelayError,
    TransportEstablishmentError,
    UpstreamError,
)
from src.common.frames import Frame, FrameKind, frame_from_event
from src.common.stream_parser import StreamFrameParser, iter_frames

__all__ = [
    "Frame",
    "FrameKind",
    "frame_from_event",
    "StreamFrameParser",
    "iter_frames",
    "RelayError",
    "MicrophonePermissionError",
    "TransportEstablishmentError",
    "ProtocolParseError",
    "UpstreamError",
    "RateLimitError",
    "QuotaError",
]
