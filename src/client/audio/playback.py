"""Sequential playback of assistant audio chunks.

Chunks are queued in arrival order and written to an output sink back to
back. The queue reports a boolean "playing" signal that drives the speaking
indicator, and ``clear()`` implements barge-in: the chunk being played is
aborted and everything still queued is discarded.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from src.client.audio.codec import CHANNELS, SAMPLE_RATE_HZ

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AudioChunk:
    """PCM16 audio tagged with its arrival position."""

    sequence: int
    pcm: bytes


class AudioSink(ABC):
    """Audio output device abstraction."""

    @abstractmethod
    async def write(self, pcm: bytes) -> None:
        """Play PCM16 audio, returning once it has been handed to the device."""
        pass

    def abort(self) -> None:
        """Drop any audio the device has buffered but not yet played."""
        pass

    async def close(self) -> None:
        """Release the output device."""
        pass


class SoundDeviceSink(AudioSink):
    """Plays PCM16 through a sounddevice RawOutputStream."""

    def __init__(self, sample_rate: int = SAMPLE_RATE_HZ, device: int | str | None = None) -> None:
        self.sample_rate = sample_rate
        self.device = device
        self._stream: Any = None

    def _ensure_stream(self) -> Any:
        if self._stream is None:
            import sounddevice as sd

            self._stream = sd.RawOutputStream(
                samplerate=self.sample_rate,
                channels=CHANNELS,
                dtype="int16",
                device=self.device,
            )
        if not self._stream.active:
            self._stream.start()
        return self._stream

    async def write(self, pcm: bytes) -> None:
        stream = self._ensure_stream()
        # RawOutputStream.write blocks until the data fits the device buffer
        await asyncio.to_thread(stream.write, pcm)

    def abort(self) -> None:
        if self._stream is not None and self._stream.active:
            self._stream.abort()

    async def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.abort()
            stream.close()


class AudioPlaybackQueue:
    """Plays queued audio chunks in order and reports speaking state.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        sink: AudioSink,
        on_playing_changed: Callable[[bool], None] | None = None,
    ) -> None:
        """Initialize playback queue.

        Args:
            sink: Output device
            on_playing_changed: Called with True/False when playback starts/stops
        """
        self.sink = sink
        self.on_playing_changed = on_playing_changed
        self._queue: asyncio.Queue[AudioChunk] = asyncio.Queue()
        self._sequence = 0
        self._playing = False
        self._player: asyncio.Task[None] | None = None
        self._current: asyncio.Task[None] | None = None
        self._closed = False

        self.chunks_played = 0
        self.chunks_discarded = 0

    @property
    def is_playing(self) -> bool:
        """True while a chunk is being written to the sink."""
        return self._playing

    @property
    def pending(self) -> int:
        """Number of queued chunks not yet started."""
        return self._queue.qsize()

    def enqueue(self, pcm: bytes) -> AudioChunk:
        """Queue decoded PCM16 audio for playback.

        Args:
            pcm: PCM16 little-endian mono samples

        Returns:
            The queued chunk with its sequence number

        Raises:
            RuntimeError: If the queue has been closed
        """
        if self._closed:
            raise RuntimeError("Playback queue is closed")

        self._sequence += 1
        chunk = AudioChunk(sequence=self._sequence, pcm=pcm)
        self._queue.put_nowait(chunk)

        if self._player is None or self._player.done():
            self._player = asyncio.create_task(self._play_loop(), name="audio-playback")
        return chunk

    def clear(self) -> int:
        """Stop the current chunk and discard everything queued.

        Returns:
            Number of chunks discarded (including an interrupted one)
        """
        discarded = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            discarded += 1

        if self._current is not None and not self._current.done():
            self._current.cancel()
            self.sink.abort()
            discarded += 1

        self.chunks_discarded += discarded
        self._set_playing(False)

        if discarded:
            logger.debug("Playback cleared", extra={"discarded": discarded})
        return discarded

    async def close(self) -> None:
        """Clear, stop the player task, and release the sink. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self.clear()

        if self._player is not None:
            self._player.cancel()
            await asyncio.gather(self._player, return_exceptions=True)
            self._player = None

        await self.sink.close()

    async def _play_loop(self) -> None:
        while True:
            chunk = await self._queue.get()
            self._set_playing(True)

            self._current = asyncio.create_task(self.sink.write(chunk.pcm))
            # asyncio.wait does not raise when clear() cancels the write
            await asyncio.wait({self._current})
            current, self._current = self._current, None

            if not current.cancelled():
                error = current.exception()
                if error is not None:
                    logger.error(
                        "Audio playback failed",
                        extra={"sequence": chunk.sequence, "error": str(error)},
                    )
                else:
                    self.chunks_played += 1

            if self._queue.empty():
                self._set_playing(False)

    def _set_playing(self, playing: bool) -> None:
        if self._playing == playing:
            return
        self._playing = playing
        if self.on_playing_changed is not None:
            try:
                self.on_playing_changed(playing)
            except Exception as e:
                logger.warning("Playing-state listener failed", extra={"error": str(e)})
