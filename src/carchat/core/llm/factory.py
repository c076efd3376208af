"""
Factory for creating model backend clients.

Construction never touches the network: a missing credential or an
unsupported platform fails here, before any request is made.
"""

import logging
from typing import Callable, Dict, Optional

from ..config import ProvidersConfig
from ..exceptions import ConfigurationMissingError
from .providers import (
    DEFAULT_REQUEST_TIMEOUT_S,
    AnthropicBackend,
    AppleFoundationBackend,
    BackendIdentifier,
    GeminiBackend,
    GrokBackend,
    ModelBackend,
    OllamaBackend,
    OpenAIBackend,
    OpenClawBackend,
    require_credential,
)

logger = logging.getLogger(__name__)

_Builder = Callable[[Optional[str], str], ModelBackend]


class ModelBackendFactory:
    """Factory for creating model backend instances."""

    def __init__(
        self,
        providers_config: Optional[ProvidersConfig] = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_S,
        max_tokens: int = 4096,
    ):
        self.providers_config = providers_config or ProvidersConfig()
        self.request_timeout = request_timeout
        self.max_tokens = max_tokens
        self._builders: Dict[BackendIdentifier, _Builder] = {
            BackendIdentifier.OPENAI: self._build_openai,
            BackendIdentifier.GROK: self._build_grok,
            BackendIdentifier.ANTHROPIC: self._build_anthropic,
            BackendIdentifier.GEMINI: self._build_gemini,
            BackendIdentifier.OLLAMA: self._build_ollama,
            BackendIdentifier.APPLE: self._build_apple,
            BackendIdentifier.OPENCLAW: self._build_openclaw,
        }

    def model_for(self, identifier: BackendIdentifier, model: Optional[str] = None) -> str:
        """Resolve the model name: explicit, then configured, then default."""
        return (
            model
            or self.providers_config.models.get(identifier.value)
            or identifier.default_model
        )

    def create(
        self,
        identifier: BackendIdentifier,
        credential: Optional[str] = None,
        model: Optional[str] = None,
        platform_version: Optional[int] = None,
    ) -> ModelBackend:
        """Create a backend client.

        Raises:
            InvalidCredentialError: The backend needs a credential and none was given
            ConfigurationMissingError: The backend cannot run on this platform or
                lacks required settings
        """
        if platform_version is None:
            platform_version = self.providers_config.platform_version

        if not identifier.is_supported_on(platform_version):
            raise ConfigurationMissingError(
                f"{identifier.display_name} needs iOS "
                f"{identifier.platform_version_gate} or later",
                component="factory",
            )

        builder = self._builders[identifier]
        instance = builder(credential, self.model_for(identifier, model))
        logger.info(f"Created {identifier.value} backend with model {instance.model}")
        return instance

    def _build_openai(self, credential: Optional[str], model: str) -> ModelBackend:
        api_key = require_credential(BackendIdentifier.OPENAI, credential)
        return OpenAIBackend(api_key, model, timeout=self.request_timeout)

    def _build_grok(self, credential: Optional[str], model: str) -> ModelBackend:
        api_key = require_credential(BackendIdentifier.GROK, credential)
        return GrokBackend(api_key, model, timeout=self.request_timeout)

    def _build_anthropic(self, credential: Optional[str], model: str) -> ModelBackend:
        api_key = require_credential(BackendIdentifier.ANTHROPIC, credential)
        return AnthropicBackend(
            api_key, model, timeout=self.request_timeout, max_tokens=self.max_tokens
        )

    def _build_gemini(self, credential: Optional[str], model: str) -> ModelBackend:
        api_key = require_credential(BackendIdentifier.GEMINI, credential)
        return GeminiBackend(api_key, model, timeout=self.request_timeout)

    def _build_ollama(self, credential: Optional[str], model: str) -> ModelBackend:
        return OllamaBackend(
            model,
            base_url=self.providers_config.ollama_base_url,
            timeout=self.request_timeout,
        )

    def _build_apple(self, credential: Optional[str], model: str) -> ModelBackend:
        return AppleFoundationBackend(
            model,
            base_url=self.providers_config.ollama_base_url,
            timeout=self.request_timeout,
        )

    def _build_openclaw(self, credential: Optional[str], model: str) -> ModelBackend:
        base_url = self.providers_config.openclaw_base_url.strip()
        if not base_url:
            raise ConfigurationMissingError(
                "OpenClaw needs a gateway URL", component="factory"
            )
        token = credential.strip() if credential and credential.strip() else None
        return OpenClawBackend(
            base_url, api_key=token, model=model, timeout=self.request_timeout
        )


def create_backend(
    identifier: BackendIdentifier,
    credential: Optional[str] = None,
    model: Optional[str] = None,
    platform_version: Optional[int] = None,
    providers_config: Optional[ProvidersConfig] = None,
) -> ModelBackend:
    """Create a backend client with default factory settings."""
    factory = ModelBackendFactory(providers_config)
    return factory.create(identifier, credential, model, platform_version)
