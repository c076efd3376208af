"""
Provider access policy.

Decides which backend serves a request. A requested backend is used when it
is eligible (statically available, allowed by the tier, supported on this
platform), reachable and configured. Otherwise exactly one fallback reason is
chosen by fixed priority and the first usable candidate takes over:

    last known working -> user's selected backend -> fixed order

Runtime reachability and configuration are injected as async probes, so the
policy itself does no I/O.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, List, Mapping, Optional, Sequence

from ..exceptions import CarChatError, ConfigurationMissingError
from ..logging import get_logger
from .providers import BackendIdentifier
from .tiers import SubscriptionTier

if TYPE_CHECKING:
    from ..stores import CredentialStore, SettingsStore
    from .factory import ModelBackendFactory

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)

Probe = Callable[[BackendIdentifier], Awaitable[bool]]

FALLBACK_ORDER: Sequence[BackendIdentifier] = (
    BackendIdentifier.OPENAI,
    BackendIdentifier.ANTHROPIC,
    BackendIdentifier.GEMINI,
    BackendIdentifier.GROK,
    BackendIdentifier.OPENCLAW,
    BackendIdentifier.OLLAMA,
)


class ProviderSurface(Enum):
    """Where the conversation is presented."""

    PHONE = "phone"
    HEAD_UNIT = "head_unit"
    WATCH = "watch"


class FallbackReason(Enum):
    """Why the requested backend was replaced, in priority order."""

    TIER_RESTRICTED = "tier_restricted"
    PLATFORM_UNSUPPORTED = "platform_unsupported"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    MISSING_CONFIGURATION = "missing_configuration"


@dataclass(frozen=True)
class ResolutionResult:
    requested: BackendIdentifier
    effective: BackendIdentifier
    fallback_reason: Optional[FallbackReason] = None
    message: Optional[str] = None

    @property
    def did_fallback(self) -> bool:
        return self.requested != self.effective


@dataclass(frozen=True)
class FallbackHints:
    """Stored preferences consulted before the fixed fallback order."""

    last_working: Optional[BackendIdentifier] = None
    selected: Optional[BackendIdentifier] = None

    @classmethod
    def from_settings(cls, settings: "SettingsStore") -> "FallbackHints":
        return cls(
            last_working=settings.last_working_backend,
            selected=settings.selected_backend,
        )


async def always_available(backend: BackendIdentifier) -> bool:
    return True


class ProviderAccessPolicy:
    """Pure resolution of requested backend to usable backend."""

    def __init__(
        self,
        fallback_order: Sequence[BackendIdentifier] = FALLBACK_ORDER,
        availability: Optional[Mapping[BackendIdentifier, bool]] = None,
    ):
        self.fallback_order = tuple(fallback_order)
        self._availability = dict(availability or {})

    def is_statically_available(self, backend: BackendIdentifier) -> bool:
        return self._availability.get(backend, backend.is_currently_available)

    def is_eligible(
        self,
        backend: BackendIdentifier,
        tier: SubscriptionTier,
        platform_version: int,
    ) -> bool:
        return (
            self.is_statically_available(backend)
            and tier.allows(backend)
            and backend.is_supported_on(platform_version)
        )

    def can_show_in_ui(
        self,
        backend: BackendIdentifier,
        tier: SubscriptionTier,
        surface: ProviderSurface,
        platform_version: int,
    ) -> bool:
        """Whether a backend may be offered for selection. No probes involved."""
        return self.is_eligible(backend, tier, platform_version)

    async def can_use_at_runtime(
        self,
        backend: BackendIdentifier,
        tier: SubscriptionTier,
        surface: ProviderSurface,
        platform_version: int,
        is_configured: Probe,
        is_runtime_available: Probe = always_available,
    ) -> bool:
        if not self.is_eligible(backend, tier, platform_version):
            return False
        if not await is_runtime_available(backend):
            return False
        return await is_configured(backend)

    async def fallback_reason(
        self,
        backend: BackendIdentifier,
        tier: SubscriptionTier,
        platform_version: int,
        is_configured: Probe,
        is_runtime_available: Probe = always_available,
    ) -> FallbackReason:
        if not tier.allows(backend):
            return FallbackReason.TIER_RESTRICTED
        if not backend.is_supported_on(platform_version):
            return FallbackReason.PLATFORM_UNSUPPORTED
        if not self.is_statically_available(backend):
            return FallbackReason.BACKEND_UNAVAILABLE
        if not await is_runtime_available(backend):
            return FallbackReason.BACKEND_UNAVAILABLE
        if not await is_configured(backend):
            return FallbackReason.MISSING_CONFIGURATION
        return FallbackReason.BACKEND_UNAVAILABLE

    def candidates(
        self,
        requested: BackendIdentifier,
        hints: Optional[FallbackHints] = None,
    ) -> List[BackendIdentifier]:
        """Ordered, de-duplicated fallback candidates excluding ``requested``."""
        ordered: List[BackendIdentifier] = []
        if hints is not None:
            if hints.last_working is not None:
                ordered.append(hints.last_working)
            # The on-device backend is never a fallback from a stored selection
            if hints.selected is not None and hints.selected is not BackendIdentifier.APPLE:
                ordered.append(hints.selected)
        ordered.extend(self.fallback_order)

        result: List[BackendIdentifier] = []
        for candidate in ordered:
            if candidate is requested or candidate in result:
                continue
            result.append(candidate)
        return result

    async def resolve(
        self,
        requested: BackendIdentifier,
        tier: SubscriptionTier,
        surface: ProviderSurface,
        platform_version: int,
        is_configured: Probe,
        is_runtime_available: Probe = always_available,
        hints: Optional[FallbackHints] = None,
    ) -> ResolutionResult:
        """Resolve the backend that will serve a request.

        Raises:
            ConfigurationMissingError: No candidate passes the checks
        """
        if await self.can_use_at_runtime(
            requested,
            tier,
            surface,
            platform_version,
            is_configured,
            is_runtime_available,
        ):
            return ResolutionResult(requested=requested, effective=requested)

        reason = await self.fallback_reason(
            requested, tier, platform_version, is_configured, is_runtime_available
        )

        for candidate in self.candidates(requested, hints):
            if await self.can_use_at_runtime(
                candidate,
                tier,
                surface,
                platform_version,
                is_configured,
                is_runtime_available,
            ):
                structured_logger.log_fallback(
                    requested.value,
                    candidate.value,
                    reason.value,
                    tier=tier.value,
                    surface=surface.value,
                )
                return ResolutionResult(
                    requested=requested,
                    effective=candidate,
                    fallback_reason=reason,
                    message=fallback_message(requested, candidate, reason),
                )

        logger.warning(
            f"No usable backend for {requested.value} on tier {tier.value} "
            f"(reason: {reason.value})"
        )
        raise ConfigurationMissingError(
            "No configured providers are available right now",
            component="access_policy",
        )


def fallback_message(
    requested: BackendIdentifier,
    effective: BackendIdentifier,
    reason: FallbackReason,
) -> str:
    """Human-readable notice shown when a fallback happens."""
    if reason is FallbackReason.TIER_RESTRICTED:
        return (
            f"{requested.display_name} needs Premium or BYOK. "
            f"Using {effective.display_name}."
        )
    if reason is FallbackReason.PLATFORM_UNSUPPORTED:
        return (
            f"{requested.display_name} needs iOS {requested.platform_version_gate} "
            f"or later. Using {effective.display_name}."
        )
    if reason is FallbackReason.MISSING_CONFIGURATION:
        return (
            f"{requested.display_name} is not configured. "
            f"Using {effective.display_name}. Add or update your key in Settings."
        )
    return (
        f"{requested.display_name} is unavailable right now. "
        f"Using {effective.display_name}. You can switch providers in Settings."
    )


_default_policy = ProviderAccessPolicy()


async def resolve(
    requested: BackendIdentifier,
    tier: SubscriptionTier,
    surface: ProviderSurface,
    platform_version: int,
    is_configured: Probe,
    is_runtime_available: Probe = always_available,
    hints: Optional[FallbackHints] = None,
) -> ResolutionResult:
    """Resolve with the default policy and fallback order."""
    return await _default_policy.resolve(
        requested,
        tier,
        surface,
        platform_version,
        is_configured,
        is_runtime_available,
        hints,
    )


# Probe builders over the host's stores


def configuration_probe(
    credentials: "CredentialStore", settings: Optional["SettingsStore"] = None
) -> Probe:
    """Probe reporting whether a backend has what it needs to be created."""

    async def is_configured(backend: BackendIdentifier) -> bool:
        if backend is BackendIdentifier.OPENCLAW:
            return bool(settings and settings.openclaw_base_url)
        if backend.requires_credential:
            try:
                return await credentials.has_for(backend)
            except Exception as e:
                logger.warning(f"Credential lookup for {backend.value} failed: {e}")
                return False
        return True

    return is_configured


def runtime_probe(factory: "ModelBackendFactory", platform_version: int) -> Probe:
    """Probe reporting live availability.

    Only the on-device backend is actually probed: it must be constructible
    on this platform and answer its credential check.
    """

    async def is_runtime_available(backend: BackendIdentifier) -> bool:
        if backend is not BackendIdentifier.APPLE:
            return True
        try:
            client = factory.create(backend, platform_version=platform_version)
        except CarChatError as e:
            logger.debug(f"On-device backend unavailable: {e}")
            return False
        try:
            return await client.validate_credential()
        finally:
            await client.aclose()

    return is_runtime_available


def mark_backend_as_working(settings: "SettingsStore", backend: BackendIdentifier) -> None:
    """Record the backend that last completed a reply."""
    settings.last_working_backend = backend
