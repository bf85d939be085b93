"""Audio utilities for microphone capture, wire encoding, and playback.

This module provides the PCM16 codec used on the realtime wire (24kHz mono,
base64), device capture via sounddevice, and the ordered playback queue that
drives the speaking indicator.
"""

from .capture import AudioCapture
from .codec import (
    AudioResampler,
    create_wav_from_pcm,
    decode_audio_delta,
    encode_audio_for_api,
    float32_to_pcm16,
    pcm16_to_float32,
)
from .playback import AudioChunk, AudioPlaybackQueue, AudioSink, SoundDeviceSink

__all__ = [
    "AudioCapture",
    "AudioChunk",
    "AudioPlaybackQueue",
    "AudioSink",
    "SoundDeviceSink",
    "AudioResampler",
    "create_wav_from_pcm",
    "decode_audio_delta",
    "encode_audio_for_api",
    "float32_to_pcm16",
    "pcm16_to_float32",
]
