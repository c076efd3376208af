"""
Configuration management for CarChat.

Provides a clean public API for all configuration components.
"""

from .base import ENV_PREFIX, REALTIME_SAMPLE_RATE, Environment
from .main import Config
from .runtime import (
    AudioSessionConfig,
    PipelineConfig,
    ProvidersConfig,
    RealtimeConfig,
    STTConfig,
    TTSConfig,
)
from .yaml_loader import YAMLConfigLoader

__all__ = [
    # Main class
    "Config",
    # Base
    "Environment",
    "ENV_PREFIX",
    "REALTIME_SAMPLE_RATE",
    # Sections
    "AudioSessionConfig",
    "PipelineConfig",
    "ProvidersConfig",
    "RealtimeConfig",
    "STTConfig",
    "TTSConfig",
    # Loading
    "YAMLConfigLoader",
]
