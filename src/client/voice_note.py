"""Recorded voice notes for the text chat.

A voice note is a short microphone clip that is wrapped as WAV, sent to the
relay's transcription endpoint, and used as the text of the next chat message.
"""

import asyncio
import logging
from collections.abc import Callable

import numpy as np

from src.client.audio.capture import AudioCapture
from src.client.audio.codec import (
    SAMPLE_RATE_HZ,
    create_wav_from_pcm,
    decode_audio_delta,
    pcm16_to_float32,
)
from src.client.chat import SpeechToTextClient

logger = logging.getLogger(__name__)

CaptureFactory = Callable[[Callable[[str], None]], AudioCapture]

# Peak amplitude below which a clip is treated as silence
SILENCE_PEAK = 0.01


class VoiceNoteRecorder:
    """Records a fixed-length clip and transcribes it.

    Example:
        ```python
        recorder = VoiceNoteRecorder(
            SpeechToTextClient("http://localhost:8081/transcribe"),
            capture_factory=lambda on_frame: AudioCapture(on_frame),
        )
        text = await recorder.record_and_transcribe(5.0)
        ```
    """

    def __init__(
        self,
        transcriber: SpeechToTextClient,
        capture_factory: CaptureFactory,
        silence_peak: float = SILENCE_PEAK,
    ) -> None:
        """Initialize recorder.

        Args:
            transcriber: Client for the transcription endpoint
            capture_factory: Builds a microphone capture delivering base64 frames
            silence_peak: Clips whose peak stays below this are not transcribed
        """
        self.transcriber = transcriber
        self._capture_factory = capture_factory
        self.silence_peak = silence_peak

    async def record(self, seconds: float) -> bytes:
        """Record from the microphone for ``seconds``.

        Returns:
            Captured PCM16 little-endian mono audio at 24kHz

        Raises:
            MicrophonePermissionError: If the microphone cannot be acquired
            ValueError: If seconds is not positive
        """
        if seconds <= 0:
            raise ValueError(f"Recording length must be positive, got {seconds}")

        frames: list[str] = []
        capture = self._capture_factory(frames.append)
        capture.open()
        try:
            capture.start()
            await asyncio.sleep(seconds)
        finally:
            capture.stop()

        return b"".join(decode_audio_delta(frame) for frame in frames)

    def is_silent(self, pcm: bytes) -> bool:
        samples = pcm16_to_float32(pcm)
        return samples.size == 0 or float(np.max(np.abs(samples))) < self.silence_peak

    async def record_and_transcribe(self, seconds: float) -> str:
        """Record a clip and return its transcription.

        Returns:
            Transcribed text, or "" if nothing audible was recorded

        Raises:
            MicrophonePermissionError: If the microphone cannot be acquired
            TransportEstablishmentError: If the transcription endpoint is unreachable
            UpstreamError: If transcription fails
        """
        pcm = await self.record(seconds)
        if self.is_silent(pcm):
            logger.info("Voice note was silent", extra={"bytes": len(pcm)})
            return ""

        wav = create_wav_from_pcm(pcm, SAMPLE_RATE_HZ)
        return await self.transcriber.transcribe(wav, mime_type="audio/wav")
