"""Audio configuration constants.

Centralizes audio formats shared by capture, playback and the realtime
transport.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class AudioConfig:
    """Audio format constants."""

    # Realtime wire format: PCM16 mono
    REALTIME_SAMPLE_RATE: int = 24000
    PCM16_BYTES_PER_SAMPLE: int = 2

    # Recognition input
    STT_SAMPLE_RATE: int = 16000

    # Capture settings
    TAP_BUFFER_SIZE: int = 4096
    DEFAULT_CHUNK_SIZE: int = 1024
    DEFAULT_CHANNELS: int = 1
    FALLBACK_CAPTURE_RATE: int = 48000

    # Typical speech RMS sits around 0.01-0.3; scale into 0..1
    LEVEL_GAIN: float = 5.0
