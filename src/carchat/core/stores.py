"""
Credential and settings stores.

The voice core only reads secrets and preferences through these narrow
interfaces; where they are persisted is up to the host application. In-memory
stores back the tests, the environment store backs the CLI, and the YAML
settings store persists preferences between CLI runs.
"""

import logging
import os
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from .audio_io.session_manager import OutputMode
from .config.yaml_loader import YAMLConfigLoader
from .llm.providers import BackendIdentifier

logger = logging.getLogger(__name__)

SELECTED_BACKEND_KEY = "selected_backend"
LAST_WORKING_BACKEND_KEY = "last_working_backend"
OUTPUT_MODE_KEY = "output_mode"
OPENCLAW_BASE_URL_KEY = "openclaw_base_url"
VOICE_ID_KEY_PREFIX = "voice_id."
DEVICE_ID_KEY = "device_id"

ELEVENLABS_CREDENTIAL_KEY = "carchat.apikey.elevenlabs"
REALTIME_TOKEN_KEY = "carchat.auth.token"


class CredentialStore(ABC):
    """Async secret storage keyed by string."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the secret stored under ``key``, if any."""

    @abstractmethod
    async def save(self, key: str, value: str) -> None:
        """Store a secret."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a secret. Missing keys are ignored."""

    async def has(self, key: str) -> bool:
        value = await self.get(key)
        return bool(value and value.strip())

    async def get_for(self, backend: BackendIdentifier) -> Optional[str]:
        return await self.get(backend.credential_key)

    async def has_for(self, backend: BackendIdentifier) -> bool:
        return await self.has(backend.credential_key)


class InMemoryCredentialStore(CredentialStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._values: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    async def save(self, key: str, value: str) -> None:
        self._values[key] = value

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)


class EnvironmentCredentialStore(CredentialStore):
    """Reads secrets from conventional environment variables.

    Saved values override the environment for the lifetime of the store and
    are never written back to the process environment.
    """

    ENV_NAMES: Dict[str, tuple] = {
        BackendIdentifier.OPENAI.credential_key: ("OPENAI_API_KEY",),
        BackendIdentifier.ANTHROPIC.credential_key: ("ANTHROPIC_API_KEY",),
        BackendIdentifier.GEMINI.credential_key: ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
        BackendIdentifier.GROK.credential_key: ("XAI_API_KEY",),
        BackendIdentifier.OPENCLAW.credential_key: ("OPENCLAW_API_KEY",),
        ELEVENLABS_CREDENTIAL_KEY: ("ELEVENLABS_API_KEY",),
        REALTIME_TOKEN_KEY: ("CARCHAT_AUTH_TOKEN",),
    }

    def __init__(self) -> None:
        self._overrides: Dict[str, Optional[str]] = {}

    async def get(self, key: str) -> Optional[str]:
        if key in self._overrides:
            return self._overrides[key]
        for name in self.ENV_NAMES.get(key, ()):
            value = os.getenv(name)
            if value:
                return value
        return None

    async def save(self, key: str, value: str) -> None:
        self._overrides[key] = value

    async def delete(self, key: str) -> None:
        self._overrides[key] = None


class SettingsStore(ABC):
    """Synchronous preference storage with typed accessors."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the raw value stored under ``key``."""

    @abstractmethod
    def set(self, key: str, value: Optional[str]) -> None:
        """Store a raw value; None removes the key."""

    def _get_backend(self, key: str) -> Optional[BackendIdentifier]:
        raw = self.get(key)
        if not raw:
            return None
        try:
            return BackendIdentifier(raw)
        except ValueError:
            logger.warning(f"Ignoring unknown backend '{raw}' stored under {key}")
            return None

    @property
    def selected_backend(self) -> Optional[BackendIdentifier]:
        return self._get_backend(SELECTED_BACKEND_KEY)

    @selected_backend.setter
    def selected_backend(self, backend: Optional[BackendIdentifier]) -> None:
        self.set(SELECTED_BACKEND_KEY, backend.value if backend else None)

    @property
    def last_working_backend(self) -> Optional[BackendIdentifier]:
        return self._get_backend(LAST_WORKING_BACKEND_KEY)

    @last_working_backend.setter
    def last_working_backend(self, backend: Optional[BackendIdentifier]) -> None:
        self.set(LAST_WORKING_BACKEND_KEY, backend.value if backend else None)

    @property
    def output_mode(self) -> OutputMode:
        raw = self.get(OUTPUT_MODE_KEY)
        try:
            return OutputMode(raw) if raw else OutputMode.SPEAKERPHONE
        except ValueError:
            return OutputMode.SPEAKERPHONE

    @output_mode.setter
    def output_mode(self, mode: OutputMode) -> None:
        self.set(OUTPUT_MODE_KEY, mode.value)

    @property
    def openclaw_base_url(self) -> str:
        return (self.get(OPENCLAW_BASE_URL_KEY) or "").strip()

    @openclaw_base_url.setter
    def openclaw_base_url(self, url: str) -> None:
        self.set(OPENCLAW_BASE_URL_KEY, url)

    def voice_id(self, persona: str) -> Optional[str]:
        return self.get(f"{VOICE_ID_KEY_PREFIX}{persona}")

    def set_voice_id(self, persona: str, voice_id: Optional[str]) -> None:
        self.set(f"{VOICE_ID_KEY_PREFIX}{persona}", voice_id)

    @property
    def device_id(self) -> str:
        """Stable per-install identifier, created on first use."""
        value = self.get(DEVICE_ID_KEY)
        if not value:
            value = str(uuid.uuid4())
            self.set(DEVICE_ID_KEY, value)
        return value


class InMemorySettingsStore(SettingsStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._values: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: Optional[str]) -> None:
        if value is None:
            self._values.pop(key, None)
        else:
            self._values[key] = value


class YamlSettingsStore(SettingsStore):
    """Settings persisted to a YAML file, written on every change."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._values: Dict[str, str] = {
            str(k): str(v)
            for k, v in YAMLConfigLoader.load_yaml_safe(self.path).items()
            if v is not None
        }

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: Optional[str]) -> None:
        if value is None:
            self._values.pop(key, None)
        else:
            self._values[key] = value
        YAMLConfigLoader.save_yaml(dict(self._values), self.path)
