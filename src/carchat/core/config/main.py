"""
Main configuration class for CarChat.

Configuration is layered: dataclass defaults, then ``configs/runtime.yaml``,
then ``CARCHAT_*`` environment variables. Nested sections are addressed in
environment variables with a double underscore, e.g.
``CARCHAT_PIPELINE__SYNTHESIS_WATCHDOG_S=10``.
"""

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .base import DEFAULT_RUNTIME_YAML, ENV_PREFIX, Environment
from .runtime import (
    AudioSessionConfig,
    PipelineConfig,
    ProvidersConfig,
    RealtimeConfig,
    STTConfig,
    TTSConfig,
)
from .yaml_loader import YAMLConfigLoader

logger = logging.getLogger(__name__)

_SECTIONS = ("pipeline", "realtime", "audio", "stt", "tts", "providers")


@dataclass
class Config:
    """Main configuration class for CarChat."""

    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False
    log_level: str = "INFO"
    json_logs: bool = False

    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    audio: AudioSessionConfig = field(default_factory=AudioSessionConfig)
    stt: STTConfig = field(default_factory=STTConfig)
    tts: TTSConfig = field(default_factory=TTSConfig)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)

    runtime_yaml: Optional[Path] = None

    def __post_init__(self) -> None:
        """Apply runtime.yaml and environment-specific defaults."""
        # Tests must not depend on whatever runtime.yaml sits in the cwd
        if self.environment != Environment.TESTING:
            self._load_from_runtime_yaml()

        if self.environment == Environment.PRODUCTION:
            self.debug = False
            self.json_logs = True
        elif self.environment == Environment.TESTING:
            self.debug = True
            self.audio.listening_recheck_delay_s = 0.01

    def _load_from_runtime_yaml(self) -> None:
        """Load configuration from runtime.yaml if available."""
        runtime_path = self.runtime_yaml or Path(DEFAULT_RUNTIME_YAML)
        if not runtime_path.exists():
            return

        data = YAMLConfigLoader.load_yaml_safe(runtime_path)
        self.apply_dict(data)
        logger.debug(f"Loaded runtime configuration from {runtime_path}")

    def apply_dict(self, data: Dict[str, Any]) -> None:
        """Overlay a nested dictionary onto the current configuration."""
        if "debug" in data:
            self.debug = bool(data["debug"])
        if "log_level" in data:
            self.log_level = str(data["log_level"])
        if "json_logs" in data:
            self.json_logs = bool(data["json_logs"])

        for section_name in _SECTIONS:
            section_data = data.get(section_name) or {}
            if not isinstance(section_data, dict):
                logger.warning(f"Ignoring non-mapping section '{section_name}'")
                continue
            section = getattr(self, section_name)
            known = {f.name for f in fields(section)}
            for key, value in section_data.items():
                if key not in known:
                    logger.warning(f"Unknown config key {section_name}.{key}")
                    continue
                setattr(section, key, value)

    @classmethod
    def from_file(cls, config_path: Union[str, Path]) -> "Config":
        """Load configuration from a YAML file."""
        config_path = Path(config_path)
        data = YAMLConfigLoader.load_yaml(config_path)

        environment = Environment(data.get("environment", "development"))
        config = cls(environment=environment, runtime_yaml=config_path)
        if environment == Environment.TESTING:
            config.apply_dict(data)
        return config

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""

        def getenv_bool(name: str, default: bool) -> bool:
            v = os.getenv(name)
            return default if v is None else v.lower() in {"1", "true", "yes", "on"}

        def getenv_int(name: str, default: int) -> int:
            v = os.getenv(name)
            return default if v is None else int(v)

        def getenv_float(name: str, default: float) -> float:
            v = os.getenv(name)
            return default if v is None else float(v)

        def getenv_str(name: str, default: str) -> str:
            return os.getenv(name, default)

        env = Environment(getenv_str(f"{ENV_PREFIX}ENV", "development"))
        config = cls(environment=env)

        # CARCHAT_* env overrides layered on top of defaults and runtime.yaml
        config.debug = getenv_bool(f"{ENV_PREFIX}DEBUG", config.debug)
        config.log_level = getenv_str(f"{ENV_PREFIX}LOG_LEVEL", config.log_level)
        config.json_logs = getenv_bool(f"{ENV_PREFIX}JSON_LOGS", config.json_logs)

        for section_name in _SECTIONS:
            section = getattr(config, section_name)
            for f in fields(section):
                name = f"{ENV_PREFIX}{section_name.upper()}__{f.name.upper()}"
                current = getattr(section, f.name)
                if isinstance(current, bool):
                    value: Any = getenv_bool(name, current)
                elif isinstance(current, int):
                    value = getenv_int(name, current)
                elif isinstance(current, float):
                    value = getenv_float(name, current)
                elif isinstance(current, str):
                    value = getenv_str(name, current)
                else:
                    continue
                setattr(section, f.name, value)

        # Per-backend model overrides, e.g. CARCHAT_MODEL__OPENAI=gpt-4o-mini
        model_prefix = f"{ENV_PREFIX}MODEL__"
        for key, value in os.environ.items():
            if key.startswith(model_prefix) and value:
                config.providers.models[key[len(model_prefix) :].lower()] = value

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        data: Dict[str, Any] = {
            "environment": self.environment.value,
            "debug": self.debug,
            "log_level": self.log_level,
            "json_logs": self.json_logs,
        }
        for section_name in _SECTIONS:
            data[section_name] = asdict(getattr(self, section_name))
        return data

    def save(self, config_path: Union[str, Path]) -> None:
        """Save configuration to YAML file."""
        YAMLConfigLoader.save_yaml(self.to_dict(), Path(config_path))
