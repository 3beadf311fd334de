"""Domain exceptions raised across the decision engine."""

from typing import Optional


class VoiceRouterError(Exception):
    """Base class for all engine errors."""


class ProviderError(VoiceRouterError):
    """A single invocation against a provider failed."""

    def __init__(self, provider_id: str, message: str) -> None:
        super().__init__(f"{provider_id}: {message}")
        self.provider_id = provider_id


class ProviderTimeoutError(ProviderError):
    """The provider did not answer within the latency budget."""


class ProviderRateLimitError(ProviderError):
    """The provider rejected the request with a rate limit."""


class ProviderUnavailableError(ProviderError):
    """The provider returned a server-side error or refused the connection."""


class ProviderInvocationError(VoiceRouterError):
    """Every attempt within the turn failed; the turn cannot produce a model result."""

    def __init__(self, attempts: list[ProviderError]) -> None:
        summary = "; ".join(str(a) for a in attempts) or "no attempts made"
        super().__init__(f"All provider attempts failed: {summary}")
        self.attempts = attempts


class RoutingExhaustedError(VoiceRouterError):
    """No provider is available at any tier."""

    def __init__(self, requested_tier: str, checked: Optional[list[str]] = None) -> None:
        super().__init__(
            f"No available provider for tier '{requested_tier}' or any fallback tier "
            f"(checked: {checked or []})"
        )
        self.requested_tier = requested_tier
        self.checked = checked or []


class ConversationNotFoundError(VoiceRouterError):
    """No active conversation exists for the call id."""


class InvalidTransitionError(VoiceRouterError):
    """Raised when a transition is not valid from the current phase."""
