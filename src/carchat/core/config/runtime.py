"""
Runtime configuration sections for CarChat.

Contains the pipeline, realtime, audio, recognition, synthesis and provider
configuration classes.
"""

from dataclasses import dataclass, field
from typing import Dict

from .base import REALTIME_SAMPLE_RATE


@dataclass
class PipelineConfig:
    """Turn-based pipeline behavior."""

    # Force-completes a speak() whose completion callback never fires
    synthesis_watchdog_s: float = 15.0
    request_timeout_s: float = 300.0
    sentence_pattern: str = r"[.!?] "
    max_tokens: int = 4096


@dataclass
class RealtimeConfig:
    """Full-duplex realtime session configuration."""

    proxy_url: str = "ws://localhost:54321/functions/v1/realtime-proxy"
    sample_rate: int = REALTIME_SAMPLE_RATE
    voice: str = "alloy"
    openai_model: str = "gpt-4o-realtime-preview"
    gemini_model: str = "gemini-2.0-flash-live-001"
    transcription_model: str = "whisper-1"
    vad_threshold: float = 0.5
    prefix_padding_ms: int = 300
    silence_duration_ms: int = 500
    tap_buffer_size: int = 4096
    level_gain: float = 5.0


@dataclass
class AudioSessionConfig:
    """Audio hardware session configuration."""

    listening_recheck_delay_s: float = 0.25
    default_output_mode: str = "speakerphone"
    capture_block_size: int = 1024


@dataclass
class STTConfig:
    """Speech recognition configuration."""

    pace: str = "balanced"  # fast | balanced | patient
    language: str = "en"
    whisper_model: str = "whisper-1"
    sample_rate: int = 16000


@dataclass
class TTSConfig:
    """Speech synthesis configuration."""

    engine: str = "system"  # system | openai | elevenlabs
    openai_voice: str = "nova"
    openai_model: str = "tts-1"
    elevenlabs_voice_id: str = "21m00Tcm4TlvDq8ikWAM"
    elevenlabs_model: str = "eleven_flash_v2_5"
    request_timeout_s: float = 20.0
    system_rate: int = 180


@dataclass
class ProvidersConfig:
    """Model backend configuration."""

    models: Dict[str, str] = field(default_factory=dict)
    openclaw_base_url: str = ""
    ollama_base_url: str = "http://localhost:11434"
    # Major version of the host platform, gates the on-device backend
    platform_version: int = 0
