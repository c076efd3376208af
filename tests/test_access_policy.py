"""
Tests for provider access policy, tiers and the backend factory.
"""

from typing import Iterable

import pytest

from carchat.core.exceptions import (
    ConfigurationMissingError,
    InvalidCredentialError,
)
from carchat.core.llm import (
    AppleFoundationBackend,
    BackendIdentifier,
    FallbackHints,
    FallbackReason,
    ModelBackendFactory,
    OllamaBackend,
    OpenAIBackend,
    ProviderAccessPolicy,
    ProviderSurface,
    SubscriptionTier,
    configuration_probe,
    mark_backend_as_working,
    resolve,
)
from carchat.core.config import ProvidersConfig
from carchat.core.stores import InMemoryCredentialStore, InMemorySettingsStore

PHONE = ProviderSurface.PHONE


def configured(*backends: BackendIdentifier):
    allowed = set(backends)

    async def probe(backend: BackendIdentifier) -> bool:
        return backend in allowed

    return probe


def unavailable(backends: Iterable[BackendIdentifier]):
    blocked = set(backends)

    async def probe(backend: BackendIdentifier) -> bool:
        return backend not in blocked

    return probe


async def everything(backend: BackendIdentifier) -> bool:
    return True


class TestTiers:
    """Test subscription tier eligibility."""

    def test_free_tier_only_allows_openai(self) -> None:
        """Free tier is limited to a single backend."""
        assert SubscriptionTier.FREE.available_backends == [BackendIdentifier.OPENAI]
        assert not SubscriptionTier.FREE.supports_realtime

    def test_standard_tier_excludes_local_backends(self) -> None:
        """Standard tier offers the hosted backends only."""
        tier = SubscriptionTier.STANDARD
        assert tier.allows(BackendIdentifier.ANTHROPIC)
        assert not tier.allows(BackendIdentifier.APPLE)
        assert not tier.allows(BackendIdentifier.OLLAMA)

    def test_byok_allows_everything(self) -> None:
        """BYOK users may pick any backend."""
        assert SubscriptionTier.BYOK.available_backends == list(BackendIdentifier)
        assert SubscriptionTier.BYOK.supports_realtime

    def test_display_names(self) -> None:
        """Tiers carry the names shown in the paywall."""
        assert SubscriptionTier.FREE.display_name == "Free"
        assert SubscriptionTier.BYOK.display_name == "Power User"

    def test_backend_capabilities(self) -> None:
        """Backends describe their model and transport needs."""
        capabilities = OllamaBackend(model="llama3.2").get_capabilities()
        assert capabilities == {
            "backend": "ollama",
            "model": "llama3.2",
            "supports_streaming": True,
            "supports_realtime_voice": False,
            "requires_internet": False,
        }


class TestProviderAccessPolicy:
    """Test backend resolution and fallback."""

    def test_apple_ui_visibility_uses_tier_and_platform(self) -> None:
        """Apple backend is shown only on an allowing tier and a new enough OS."""
        policy = ProviderAccessPolicy()
        apple = BackendIdentifier.APPLE

        assert policy.can_show_in_ui(apple, SubscriptionTier.PREMIUM, PHONE, 26)
        assert not policy.can_show_in_ui(apple, SubscriptionTier.STANDARD, PHONE, 26)
        assert not policy.can_show_in_ui(apple, SubscriptionTier.PREMIUM, PHONE, 18)

    def test_statically_unavailable_backend_is_hidden(self) -> None:
        """A backend flagged unavailable is never offered."""
        policy = ProviderAccessPolicy(availability={BackendIdentifier.APPLE: False})
        assert not policy.can_show_in_ui(
            BackendIdentifier.APPLE, SubscriptionTier.PREMIUM, PHONE, 26
        )

    @pytest.mark.asyncio
    async def test_apple_runtime_gating_enforces_eligibility(self) -> None:
        """Runtime use requires tier and platform eligibility."""
        policy = ProviderAccessPolicy()
        apple = BackendIdentifier.APPLE

        assert await policy.can_use_at_runtime(
            apple, SubscriptionTier.PREMIUM, PHONE, 26, everything
        )
        assert not await policy.can_use_at_runtime(
            apple, SubscriptionTier.FREE, PHONE, 26, everything
        )
        assert not await policy.can_use_at_runtime(
            apple, SubscriptionTier.PREMIUM, PHONE, 18, everything
        )

    @pytest.mark.asyncio
    async def test_runtime_use_checks_runtime_probe(self) -> None:
        """An unreachable backend cannot be used even when configured."""
        policy = ProviderAccessPolicy()
        assert not await policy.can_use_at_runtime(
            BackendIdentifier.APPLE,
            SubscriptionTier.PREMIUM,
            PHONE,
            26,
            everything,
            unavailable([BackendIdentifier.APPLE]),
        )
        assert await policy.can_use_at_runtime(
            BackendIdentifier.OPENAI,
            SubscriptionTier.PREMIUM,
            PHONE,
            26,
            configured(BackendIdentifier.OPENAI),
        )

    @pytest.mark.asyncio
    async def test_usable_request_is_not_replaced(self) -> None:
        """A usable requested backend resolves to itself."""
        result = await resolve(
            BackendIdentifier.ANTHROPIC,
            SubscriptionTier.STANDARD,
            PHONE,
            18,
            configured(BackendIdentifier.ANTHROPIC),
        )
        assert not result.did_fallback
        assert result.effective is BackendIdentifier.ANTHROPIC
        assert result.fallback_reason is None
        assert result.message is None

    @pytest.mark.asyncio
    async def test_fallback_skips_missing_configuration(self) -> None:
        """Unconfigured candidates are skipped in the fixed order."""
        result = await resolve(
            BackendIdentifier.APPLE,
            SubscriptionTier.PREMIUM,
            PHONE,
            18,
            configured(BackendIdentifier.GEMINI),
        )
        assert result.did_fallback
        assert result.effective is BackendIdentifier.GEMINI
        assert result.fallback_reason is FallbackReason.PLATFORM_UNSUPPORTED
        assert result.message == (
            "Apple Intelligence needs iOS 26 or later. Using Google Gemini."
        )

    @pytest.mark.asyncio
    async def test_fallback_when_runtime_unavailable(self) -> None:
        """An unreachable backend falls back as unavailable."""
        result = await resolve(
            BackendIdentifier.APPLE,
            SubscriptionTier.PREMIUM,
            PHONE,
            26,
            configured(BackendIdentifier.OPENAI, BackendIdentifier.APPLE),
            unavailable([BackendIdentifier.APPLE]),
        )
        assert result.did_fallback
        assert result.effective is BackendIdentifier.OPENAI
        assert result.fallback_reason is FallbackReason.BACKEND_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_last_working_backend_is_preferred(self) -> None:
        """The last backend that completed a reply is tried first."""
        result = await resolve(
            BackendIdentifier.APPLE,
            SubscriptionTier.PREMIUM,
            PHONE,
            18,
            configured(BackendIdentifier.GROK, BackendIdentifier.OPENAI),
            hints=FallbackHints(last_working=BackendIdentifier.GROK),
        )
        assert result.effective is BackendIdentifier.GROK
        assert result.fallback_reason is FallbackReason.PLATFORM_UNSUPPORTED

    @pytest.mark.asyncio
    async def test_tier_restriction_falls_back_to_allowed_backend(self) -> None:
        """A free user asking for Apple gets OpenAI."""
        result = await resolve(
            BackendIdentifier.APPLE,
            SubscriptionTier.FREE,
            PHONE,
            26,
            everything,
        )
        assert result.effective is BackendIdentifier.OPENAI
        assert result.fallback_reason is FallbackReason.TIER_RESTRICTED
        assert "needs Premium or BYOK" in result.message

    @pytest.mark.asyncio
    async def test_missing_configuration_reason(self) -> None:
        """A backend without a key falls back for missing configuration."""
        result = await resolve(
            BackendIdentifier.ANTHROPIC,
            SubscriptionTier.BYOK,
            PHONE,
            18,
            configured(BackendIdentifier.OPENAI),
        )
        assert result.effective is BackendIdentifier.OPENAI
        assert result.fallback_reason is FallbackReason.MISSING_CONFIGURATION

    @pytest.mark.asyncio
    async def test_no_usable_backend_raises(self) -> None:
        """Resolution fails when nothing is configured."""
        with pytest.raises(ConfigurationMissingError) as exc_info:
            await resolve(
                BackendIdentifier.OPENAI,
                SubscriptionTier.BYOK,
                PHONE,
                18,
                configured(),
            )
        assert exc_info.value.message == "No configured providers are available right now"

    def test_candidates_order(self) -> None:
        """Candidates list hints first, never repeat and never the request."""
        policy = ProviderAccessPolicy()
        candidates = policy.candidates(
            BackendIdentifier.OPENAI,
            FallbackHints(
                last_working=BackendIdentifier.GEMINI,
                selected=BackendIdentifier.GEMINI,
            ),
        )
        assert candidates == [
            BackendIdentifier.GEMINI,
            BackendIdentifier.ANTHROPIC,
            BackendIdentifier.GROK,
            BackendIdentifier.OPENCLAW,
            BackendIdentifier.OLLAMA,
        ]

    def test_selected_apple_is_never_a_fallback(self) -> None:
        """A stored Apple selection is not used as a fallback candidate."""
        policy = ProviderAccessPolicy()
        candidates = policy.candidates(
            BackendIdentifier.ANTHROPIC,
            FallbackHints(selected=BackendIdentifier.APPLE),
        )
        assert BackendIdentifier.APPLE not in candidates

    @pytest.mark.asyncio
    async def test_configuration_probe(self) -> None:
        """Configuration comes from the credential and settings stores."""
        credentials = InMemoryCredentialStore(
            {BackendIdentifier.OPENAI.credential_key: "sk-test"}
        )
        settings = InMemorySettingsStore()
        probe = configuration_probe(credentials, settings)

        assert await probe(BackendIdentifier.OPENAI)
        assert not await probe(BackendIdentifier.ANTHROPIC)
        assert await probe(BackendIdentifier.OLLAMA)
        assert not await probe(BackendIdentifier.OPENCLAW)

        settings.openclaw_base_url = "http://gateway.local:8080"
        assert await probe(BackendIdentifier.OPENCLAW)

    def test_mark_backend_as_working(self) -> None:
        """The working backend is persisted as a fallback hint."""
        settings = InMemorySettingsStore()
        mark_backend_as_working(settings, BackendIdentifier.GEMINI)

        assert settings.last_working_backend is BackendIdentifier.GEMINI
        assert FallbackHints.from_settings(settings).last_working is BackendIdentifier.GEMINI


class TestModelBackendFactory:
    """Test backend construction."""

    def test_apple_is_gated_by_platform(self) -> None:
        """Apple backend cannot be created below its platform gate."""
        factory = ModelBackendFactory()
        with pytest.raises(ConfigurationMissingError):
            factory.create(BackendIdentifier.APPLE, platform_version=18)

        backend = factory.create(BackendIdentifier.APPLE, platform_version=26)
        assert isinstance(backend, AppleFoundationBackend)
        assert backend.identifier is BackendIdentifier.APPLE

    def test_missing_credential_is_rejected(self) -> None:
        """Hosted backends need a non-empty key."""
        factory = ModelBackendFactory()
        with pytest.raises(InvalidCredentialError):
            factory.create(BackendIdentifier.OPENAI, "   ")
        with pytest.raises(InvalidCredentialError):
            factory.create(BackendIdentifier.ANTHROPIC, None)

    def test_model_resolution(self) -> None:
        """Explicit model wins over configured model over the default."""
        factory = ModelBackendFactory(ProvidersConfig(models={"openai": "gpt-4o-mini"}))

        configured_backend = factory.create(BackendIdentifier.OPENAI, "sk-test")
        explicit_backend = factory.create(BackendIdentifier.OPENAI, "sk-test", model="o3")
        default_backend = factory.create(BackendIdentifier.OLLAMA)

        assert isinstance(configured_backend, OpenAIBackend)
        assert configured_backend.model == "gpt-4o-mini"
        assert explicit_backend.model == "o3"
        assert isinstance(default_backend, OllamaBackend)
        assert default_backend.model == "llama3.2"

    def test_openclaw_needs_gateway_url(self) -> None:
        """OpenClaw cannot be created without a gateway URL."""
        with pytest.raises(ConfigurationMissingError):
            ModelBackendFactory().create(BackendIdentifier.OPENCLAW)

    def test_backend_parse(self) -> None:
        """Backend names parse case-insensitively."""
        assert BackendIdentifier.parse(" Gemini ") is BackendIdentifier.GEMINI
        with pytest.raises(ValueError):
            BackendIdentifier.parse("watson")
