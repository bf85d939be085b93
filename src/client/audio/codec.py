"""PCM16 wire codec for the realtime audio protocol.

Handles conversion between float32 device samples and the base64 PCM16
encoding used by ``input_audio_buffer.append`` and ``response.audio.delta``.

Wire format:
    - Sample rate: 24kHz
    - Channels: mono
    - Bit depth: 16-bit signed integer (little endian)
    - Capture frame: 4096 samples (~170ms)
"""

import base64
import logging
import struct
from typing import Any, Final, cast

import numpy as np
from numpy.typing import NDArray
from scipy import signal

logger = logging.getLogger(__name__)

# Audio constants
SAMPLE_RATE_HZ: Final[int] = 24000
CHANNELS: Final[int] = 1
BYTES_PER_SAMPLE: Final[int] = 2
FRAME_SAMPLES: Final[int] = 4096


def float32_to_pcm16(samples: NDArray[np.float32]) -> bytes:
    """Convert float samples in [-1, 1] to little-endian PCM16 bytes.

    Out-of-range samples are clipped. Negative values scale by 0x8000 and
    positive by 0x7FFF so both ends map onto the full int16 range.
    """
    clipped = np.clip(np.asarray(samples, dtype=np.float32).reshape(-1), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 0x8000, clipped * 0x7FFF)
    return scaled.astype("<i2").tobytes()


def pcm16_to_float32(pcm: bytes) -> NDArray[np.float32]:
    """Convert little-endian PCM16 bytes to float samples in [-1, 1).

    Raises:
        ValueError: If the byte count is odd
    """
    if len(pcm) % BYTES_PER_SAMPLE != 0:
        raise ValueError(
            f"PCM16 data must be a multiple of 2 bytes, got {len(pcm)} bytes"
        )
    return np.frombuffer(pcm, dtype="<i2").astype(np.float32) / 32768.0


def encode_audio_for_api(samples: NDArray[np.float32]) -> str:
    """Encode float samples as base64 PCM16 for input_audio_buffer.append."""
    return base64.b64encode(float32_to_pcm16(samples)).decode("ascii")


def decode_audio_delta(encoded: str) -> bytes:
    """Decode a base64 ``response.audio.delta`` payload to PCM16 bytes.

    Raises:
        ValueError: If decoding fails or the result is not whole samples
    """
    try:
        pcm = base64.b64decode(encoded, validate=True)
    except Exception as e:
        raise ValueError(f"Failed to decode base64 audio delta: {e}") from e

    if len(pcm) % BYTES_PER_SAMPLE != 0:
        raise ValueError(f"Decoded audio is not whole PCM16 samples: {len(pcm)} bytes")
    return pcm


def create_wav_from_pcm(pcm: bytes, sample_rate: int = SAMPLE_RATE_HZ) -> bytes:
    """Wrap mono PCM16 bytes in a 44-byte RIFF/WAVE header.

    Args:
        pcm: Raw PCM16 little-endian samples
        sample_rate: Sample rate in Hz

    Returns:
        Complete WAV file bytes
    """
    byte_rate = sample_rate * CHANNELS * BYTES_PER_SAMPLE
    block_align = CHANNELS * BYTES_PER_SAMPLE
    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + len(pcm),
        b"WAVE",
        b"fmt ",
        16,  # PCM fmt chunk size
        1,  # PCM format
        CHANNELS,
        sample_rate,
        byte_rate,
        block_align,
        BYTES_PER_SAMPLE * 8,
        b"data",
        len(pcm),
    )
    return header + pcm


class AudioResampler:
    """FFT resampler for capture devices that do not run at the wire rate.

    Example:
        ```python
        # Device captures at 48kHz, wire format is 24kHz
        resampler = AudioResampler(source_rate=48000, target_rate=24000)
        block_24k = resampler.process(block_48k)
        ```
    """

    def __init__(self, source_rate: int, target_rate: int = SAMPLE_RATE_HZ) -> None:
        """Initialize resampler.

        Raises:
            ValueError: If sample rates are invalid
        """
        if source_rate <= 0 or target_rate <= 0:
            raise ValueError(
                f"Sample rates must be positive: source={source_rate}, target={target_rate}"
            )

        self.source_rate = source_rate
        self.target_rate = target_rate
        self.ratio = target_rate / source_rate

        logger.debug(
            f"Resampler initialized: {source_rate}Hz → {target_rate}Hz (ratio={self.ratio:.4f})"
        )

    @property
    def is_passthrough(self) -> bool:
        return self.source_rate == self.target_rate

    def process(self, samples: NDArray[np.float32]) -> NDArray[np.float32]:
        """Resample one block of float samples."""
        samples = np.asarray(samples, dtype=np.float32).reshape(-1)
        if self.is_passthrough or samples.size == 0:
            return samples

        output_length = max(1, int(round(samples.size * self.ratio)))
        # scipy.signal.resample returns ndarray with Any dtype
        resampled = cast(NDArray[Any], signal.resample(samples, output_length))
        return resampled.astype(np.float32)
