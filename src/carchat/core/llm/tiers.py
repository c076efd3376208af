"""Subscription tiers and the model backends each one may use."""

from enum import Enum
from typing import List

from .providers import BackendIdentifier


class SubscriptionTier(Enum):
    """Subscription tiers gating backend eligibility."""

    FREE = "free"
    STANDARD = "standard"
    PREMIUM = "premium"
    BYOK = "byok"

    @property
    def display_name(self) -> str:
        return {
            SubscriptionTier.FREE: "Free",
            SubscriptionTier.STANDARD: "Standard",
            SubscriptionTier.PREMIUM: "Premium",
            SubscriptionTier.BYOK: "Power User",
        }[self]

    @property
    def available_backends(self) -> List[BackendIdentifier]:
        """Backends this tier allows, in declaration order."""
        if self is SubscriptionTier.FREE:
            return [BackendIdentifier.OPENAI]
        if self is SubscriptionTier.STANDARD:
            return [
                BackendIdentifier.OPENAI,
                BackendIdentifier.ANTHROPIC,
                BackendIdentifier.GEMINI,
                BackendIdentifier.GROK,
            ]
        if self is SubscriptionTier.PREMIUM:
            return [b for b in BackendIdentifier if b.is_currently_available]
        return list(BackendIdentifier)

    def allows(self, backend: BackendIdentifier) -> bool:
        return backend in self.available_backends

    @property
    def supports_realtime(self) -> bool:
        return self in (SubscriptionTier.PREMIUM, SubscriptionTier.BYOK)
