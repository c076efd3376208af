"""
Model backends, wire translation and provider selection for CarChat.
"""

from .access_policy import (
    FALLBACK_ORDER,
    FallbackHints,
    FallbackReason,
    ProviderAccessPolicy,
    ProviderSurface,
    ResolutionResult,
    configuration_probe,
    fallback_message,
    mark_backend_as_working,
    resolve,
    runtime_probe,
)
from .factory import ModelBackendFactory, create_backend
from .providers import (
    AnthropicBackend,
    AppleFoundationBackend,
    BackendIdentifier,
    GeminiBackend,
    GrokBackend,
    ModelBackend,
    OllamaBackend,
    OpenAIBackend,
    OpenClawBackend,
)
from .tiers import SubscriptionTier

__all__ = [
    "BackendIdentifier",
    "ModelBackend",
    "OpenAIBackend",
    "GrokBackend",
    "AnthropicBackend",
    "GeminiBackend",
    "OllamaBackend",
    "AppleFoundationBackend",
    "OpenClawBackend",
    "ModelBackendFactory",
    "create_backend",
    "SubscriptionTier",
    "ProviderAccessPolicy",
    "ProviderSurface",
    "FallbackReason",
    "FallbackHints",
    "ResolutionResult",
    "FALLBACK_ORDER",
    "resolve",
    "fallback_message",
    "configuration_probe",
    "runtime_probe",
    "mark_backend_as_working",
]
