"""
Base configuration infrastructure for CarChat.

Contains constants shared by the configuration sections and the Environment
enum.
"""

import logging
from enum import Enum

logger = logging.getLogger(__name__)

ENV_PREFIX = "CARCHAT_"
DEFAULT_RUNTIME_YAML = "configs/runtime.yaml"

# Realtime audio is always PCM16 mono at this rate on the wire
REALTIME_SAMPLE_RATE = 24000


class Environment(Enum):
    """Environment types for configuration."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"
