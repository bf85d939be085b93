"""Unit tests for microphone capture.

A fake input stream replaces sounddevice; blocks are pushed through the
PortAudio callback the capture registers.
"""

import asyncio
import base64

import numpy as np
import pytest

from src.client.audio.capture import AudioCapture
from src.common.errors import MicrophonePermissionError
from tests.unit.fakes import FakeInputStream, wait_until


def make_capture(frames: list[str], **kwargs: object) -> tuple[AudioCapture, list[FakeInputStream]]:
    streams: list[FakeInputStream] = []

    def factory(**stream_kwargs: object) -> FakeInputStream:
        stream = FakeInputStream(**stream_kwargs)
        streams.append(stream)
        return stream

    capture = AudioCapture(frames.append, stream_factory=factory, **kwargs)  # type: ignore[arg-type]
    return capture, streams


class TestAudioCapture:
    """Test AudioCapture lifecycle and frame delivery."""

    @pytest.mark.asyncio
    async def test_open_configures_stream(self) -> None:
        """Test the device is opened as 24kHz mono float32 with the frame blocksize."""
        capture, streams = make_capture([])
        capture.open()

        assert capture.is_open
        kwargs = streams[0].kwargs
        assert kwargs["samplerate"] == 24000
        assert kwargs["channels"] == 1
        assert kwargs["dtype"] == "float32"
        assert kwargs["blocksize"] == 4096
        capture.stop()

    @pytest.mark.asyncio
    async def test_callback_delivers_encoded_frames(self) -> None:
        """Test callback blocks reach on_frame as base64 PCM16 on the loop."""
        frames: list[str] = []
        capture, streams = make_capture(frames, frame_samples=4)
        capture.open()
        capture.start()

        block = np.array([[0.0], [1.0], [-1.0], [0.0]], dtype=np.float32)
        streams[0].callback(block, 4, None, None)
        await wait_until(lambda: len(frames) == 1)

        pcm = np.frombuffer(base64.b64decode(frames[0]), dtype="<i2")
        assert pcm.tolist() == [0, 32767, -32768, 0]
        assert capture.frames_captured == 1
        capture.stop()

    @pytest.mark.asyncio
    async def test_callback_from_other_thread(self) -> None:
        """Test blocks from the PortAudio thread are delivered on the loop."""
        frames: list[str] = []
        capture, streams = make_capture(frames, frame_samples=2)
        capture.open()
        capture.start()

        block = np.zeros((2, 1), dtype=np.float32)
        await asyncio.to_thread(streams[0].callback, block, 2, None, None)
        await wait_until(lambda: len(frames) == 1)
        capture.stop()

    @pytest.mark.asyncio
    async def test_no_frames_before_start_or_after_stop(self) -> None:
        """Test blocks outside start() and stop() are discarded."""
        frames: list[str] = []
        capture, streams = make_capture(frames, frame_samples=2)
        capture.open()
        callback = streams[0].callback
        block = np.zeros((2, 1), dtype=np.float32)

        callback(block, 2, None, None)
        capture.start()
        capture.stop()
        callback(block, 2, None, None)
        await asyncio.sleep(0.01)

        assert frames == []

    @pytest.mark.asyncio
    async def test_resamples_device_rate(self) -> None:
        """Test a 48kHz device block is resampled to 24kHz."""
        frames: list[str] = []
        capture, streams = make_capture(frames, device_sample_rate=48000, frame_samples=8)
        capture.open()
        capture.start()

        streams[0].callback(np.zeros((8, 1), dtype=np.float32), 8, None, None)
        await wait_until(lambda: len(frames) == 1)

        assert len(base64.b64decode(frames[0])) == 4 * 2
        capture.stop()

    @pytest.mark.asyncio
    async def test_stop_releases_device_once(self) -> None:
        """Test stop() closes the stream once and is idempotent."""
        capture, streams = make_capture([])
        capture.open()
        capture.start()

        capture.stop()
        capture.stop()

        assert streams[0].stopped
        assert streams[0].closed
        assert not capture.is_open
        assert not capture.is_running

    @pytest.mark.asyncio
    async def test_second_open_rejected(self) -> None:
        """Test the device is held exclusively until stop()."""
        capture, streams = make_capture([])
        capture.open()

        with pytest.raises(RuntimeError, match="already holds"):
            capture.open()

        capture.stop()
        capture.open()
        assert len(streams) == 2
        capture.stop()

    def test_start_without_open(self) -> None:
        capture, _ = make_capture([])
        with pytest.raises(RuntimeError, match="not open"):
            capture.start()

    @pytest.mark.asyncio
    async def test_permission_denied(self) -> None:
        """Test a denied device maps to MicrophonePermissionError."""
        def deny(**kwargs: object) -> FakeInputStream:
            raise PermissionError("denied")

        capture = AudioCapture(lambda frame: None, stream_factory=deny)

        with pytest.raises(MicrophonePermissionError):
            capture.open()
        assert not capture.is_open

    @pytest.mark.asyncio
    async def test_unknown_device(self) -> None:
        """Test an invalid device name maps to MicrophonePermissionError."""

        def unknown(**kwargs: object) -> FakeInputStream:
            raise ValueError("No input device matching 'USB Mic'")

        capture = AudioCapture(lambda frame: None, device="USB Mic", stream_factory=unknown)

        with pytest.raises(MicrophonePermissionError, match="USB Mic"):
            capture.open()
        assert not capture.is_open

    def test_invalid_frame_size(self) -> None:
        with pytest.raises(ValueError):
            AudioCapture(lambda frame: None, frame_samples=0)
