"""Audio I/O infrastructure for capture, playback and session routing.

This module provides interfaces and implementations for:
- Audio session configuration (category, mode, speaker routing)
- Audio capture from microphones and playback to speakers
- In-memory and file-backed implementations for tests and headless runs
- Format conversion for the realtime transport

The sounddevice implementations live in ``real_audio`` and are loaded by
``AudioComponentFactory`` on demand.
"""

from .audio_config import AudioConfig
from .audio_utils import (
    buffer_duration,
    convert_for_realtime,
    downmix_to_mono,
    float_to_pcm16,
    pcm16_to_float,
    resample_audio,
    rms_level,
)
from .factory import AudioComponentFactory
from .interfaces import AudioCapture, AudioPlayer
from .mock_audio import (
    FileAudioCapture,
    FileAudioPlayer,
    InMemoryAudioCapture,
    InMemoryAudioPlayer,
    SimulatedAudioHardware,
)
from .realtime_audio import RealtimeAudioIO
from .session_manager import (
    AudioCategory,
    AudioHardware,
    AudioMode,
    AudioRoute,
    AudioSessionManager,
    CategoryOption,
    InterruptionType,
    OutputMode,
    RouteChangeReason,
    RouteOutput,
    SessionConfiguration,
)

__all__ = [
    # Configuration
    "AudioConfig",
    # Utilities
    "buffer_duration",
    "convert_for_realtime",
    "downmix_to_mono",
    "float_to_pcm16",
    "pcm16_to_float",
    "resample_audio",
    "rms_level",
    # Factory
    "AudioComponentFactory",
    # Interfaces
    "AudioCapture",
    "AudioPlayer",
    "AudioHardware",
    # Session routing
    "AudioSessionManager",
    "AudioCategory",
    "AudioMode",
    "AudioRoute",
    "CategoryOption",
    "InterruptionType",
    "OutputMode",
    "RouteChangeReason",
    "RouteOutput",
    "SessionConfiguration",
    # Realtime
    "RealtimeAudioIO",
    # In-memory implementations
    "FileAudioCapture",
    "FileAudioPlayer",
    "InMemoryAudioCapture",
    "InMemoryAudioPlayer",
    "SimulatedAudioHardware",
]
