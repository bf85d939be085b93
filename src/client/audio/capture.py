"""Microphone capture producing base64 PCM16 frames for the realtime upstream.

PortAudio delivers fixed-size float32 blocks on its own thread; each block is
handed to the event loop with ``call_soon_threadsafe`` and encoded there, so
``on_frame`` always runs on the loop thread.

The device handle is owned exclusively by one ``AudioCapture``: ``open()``
acquires it, ``stop()`` releases it, and a second ``open()`` before ``stop()``
is rejected.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import numpy as np

from src.client.audio.codec import (
    CHANNELS,
    FRAME_SAMPLES,
    SAMPLE_RATE_HZ,
    AudioResampler,
    encode_audio_for_api,
)
from src.common.errors import MicrophonePermissionError

logger = logging.getLogger(__name__)

StreamFactory = Callable[..., Any]


def _sounddevice_input_stream(**kwargs: Any) -> Any:
    """Open a sounddevice InputStream, mapping PortAudio failures."""
    import sounddevice as sd

    try:
        return sd.InputStream(**kwargs)
    except sd.PortAudioError as e:
        raise MicrophonePermissionError(f"Microphone unavailable: {e}") from e


class AudioCapture:
    """Captures microphone audio and emits encoded wire frames.

    Example:
        ```python
        capture = AudioCapture(on_frame=lambda b64: send_append(b64))
        capture.open()      # acquire device (may raise MicrophonePermissionError)
        capture.start()     # begin delivering frames
        ...
        capture.stop()      # release device
        ```
    """

    def __init__(
        self,
        on_frame: Callable[[str], None],
        device: int | str | None = None,
        device_sample_rate: int = SAMPLE_RATE_HZ,
        frame_samples: int = FRAME_SAMPLES,
        stream_factory: StreamFactory | None = None,
    ) -> None:
        """Initialize capture.

        Args:
            on_frame: Called on the event loop with each base64 PCM16 frame
            device: Optional input device name/index
            device_sample_rate: Rate to open the device at (resampled to 24kHz)
            frame_samples: Samples per delivered block at the device rate
            stream_factory: Override for creating the input stream (tests)
        """
        if frame_samples <= 0:
            raise ValueError(f"frame_samples must be positive, got {frame_samples}")

        self.on_frame = on_frame
        self.device = device
        self.device_sample_rate = device_sample_rate
        self.frame_samples = frame_samples
        self._stream_factory = stream_factory or _sounddevice_input_stream
        self._resampler = AudioResampler(device_sample_rate, SAMPLE_RATE_HZ)

        self._stream: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._running = False
        self.frames_captured = 0

    @property
    def is_open(self) -> bool:
        """True while the device handle is held."""
        return self._stream is not None

    @property
    def is_running(self) -> bool:
        return self._running

    def open(self) -> None:
        """Acquire the input device.

        Must be called from the event loop thread.

        Raises:
            MicrophonePermissionError: If the device cannot be opened
            RuntimeError: If this capture already holds the device
        """
        if self._stream is not None:
            raise RuntimeError("Audio capture already holds the input device")

        self._loop = asyncio.get_running_loop()
        try:
            self._stream = self._stream_factory(
                samplerate=self.device_sample_rate,
                channels=CHANNELS,
                dtype="float32",
                blocksize=self.frame_samples,
                device=self.device,
                callback=self._callback,
            )
        except MicrophonePermissionError:
            raise
        except (OSError, ValueError) as e:
            # sounddevice raises ValueError for an unknown or invalid device
            raise MicrophonePermissionError(f"Microphone unavailable: {e}") from e

        logger.info(
            "Microphone acquired",
            extra={"device": self.device, "sample_rate": self.device_sample_rate},
        )

    def start(self) -> None:
        """Begin delivering frames.

        Raises:
            RuntimeError: If the device has not been opened
        """
        if self._stream is None:
            raise RuntimeError("Audio capture is not open")
        if self._running:
            return
        self._running = True
        self._stream.start()

    def stop(self) -> None:
        """Stop capture and release the device. Safe to call repeatedly."""
        self._running = False
        stream, self._stream = self._stream, None
        if stream is None:
            return

        try:
            stream.stop()
        except Exception as e:
            logger.warning("Error stopping input stream", extra={"error": str(e)})
        finally:
            stream.close()

        logger.info("Microphone released", extra={"frames_captured": self.frames_captured})

    def _callback(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        """PortAudio callback (audio thread)."""
        if status:
            logger.debug("Input stream status", extra={"status": str(status)})
        if not self._running or self._loop is None:
            return
        self._loop.call_soon_threadsafe(self.deliver, np.array(indata, dtype=np.float32, copy=True))

    def deliver(self, block: np.ndarray) -> None:
        """Encode one captured block and pass it to ``on_frame`` (loop thread)."""
        if not self._running:
            return

        samples = self._resampler.process(block[:, 0] if block.ndim > 1 else block)
        self.frames_captured += 1
        self.on_frame(encode_audio_for_api(samples))
