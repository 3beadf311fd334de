"""
Model provider interface and registry.

Every third-party model API is reached through a ``ModelProvider`` adapter.
The routing engine only sees this interface; wire clients live outside the
decision engine. Providers are registered on a ``ProviderRegistry`` instance
that is injected into the engine, keyed by provider id and tagged with tier.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from voice_router.config import ProviderSpec
from voice_router.errors import ProviderError, ProviderUnavailableError
from voice_router.schemas.routing_schema import InvocationResult, ModelTier, PromptContext

logger = logging.getLogger(__name__)


class ModelProvider(ABC):
    """Adapter for one provider's model API."""

    supports_probe: bool = False

    def __init__(self, provider_id: str) -> None:
        self.provider_id = provider_id

    @abstractmethod
    async def invoke(
        self, model: str, prompt_context: PromptContext, timeout: float
    ) -> InvocationResult:
        """Run one structured-output completion.

        Raises:
            ProviderError: any subclass, on timeout, rate limit or server error.
        """

    async def probe(self) -> bool:
        """Cheap health check used as the half-open trial when supported."""
        return True


@dataclass(frozen=True)
class RegisteredModel:
    provider_id: str
    model_id: str
    tier: ModelTier
    cost_per_1k_tokens: float
    provider: ModelProvider


class ProviderRegistry:
    """Provider/model catalog with tier lookup."""

    def __init__(self) -> None:
        self._models: list[RegisteredModel] = []

    def register(self, spec: ProviderSpec, provider: ModelProvider) -> None:
        if provider.provider_id != spec.provider_id:
            raise ValueError(
                f"Adapter id {provider.provider_id!r} does not match spec {spec.provider_id!r}"
            )
        self._models.append(RegisteredModel(
            provider_id=spec.provider_id,
            model_id=spec.model_id,
            tier=ModelTier(spec.tier),
            cost_per_1k_tokens=spec.cost_per_1k_tokens,
            provider=provider,
        ))
        logger.debug("Provider registered: %s/%s (%s)", spec.provider_id, spec.model_id, spec.tier)

    @classmethod
    def from_specs(
        cls,
        specs: Iterable[ProviderSpec],
        factory: Callable[[ProviderSpec], ModelProvider],
    ) -> "ProviderRegistry":
        registry = cls()
        for spec in specs:
            registry.register(spec, factory(spec))
        return registry

    def get(self, provider_id: str, model_id: Optional[str] = None) -> RegisteredModel:
        """Look up a registered model.

        Raises:
            KeyError: If no such provider/model is registered.
        """
        for entry in self._models:
            if entry.provider_id == provider_id and model_id in (None, entry.model_id):
                return entry
        registered = [f"{m.provider_id}/{m.model_id}" for m in self._models]
        raise KeyError(f"Provider '{provider_id}' not registered. Available: {registered}")

    def candidates(self, tier: ModelTier) -> list[RegisteredModel]:
        return [m for m in self._models if m.tier == tier]

    def all(self) -> list[RegisteredModel]:
        return list(self._models)

    def known_ids(self) -> list[str]:
        """Provider and model ids; used to keep them out of log redaction."""
        ids: list[str] = []
        for m in self._models:
            ids.extend([m.provider_id, m.model_id])
        return ids


Responder = Callable[[PromptContext], Any]


class ScriptedProvider(ModelProvider):
    """
    In-process provider for the console simulator and tests.

    ``responder`` maps a prompt context to a ModelResult, a dict, or a JSON
    string. Failures can be queued with ``fail_next`` or made permanent with
    ``set_down``; ``latency`` is simulated with ``asyncio.sleep``.
    """

    supports_probe = True

    def __init__(
        self,
        provider_id: str,
        responder: Responder,
        latency: float = 0.0,
        tokens_per_call: int = 120,
    ) -> None:
        super().__init__(provider_id)
        self.responder = responder
        self.latency = latency
        self.tokens_per_call = tokens_per_call
        self.down = False
        self.probe_healthy = True
        self.calls: list[tuple[str, PromptContext]] = []
        self.probe_calls = 0
        self._pending_failures: deque[ProviderError] = deque()

    def fail_next(self, count: int = 1, error: Optional[ProviderError] = None) -> None:
        for _ in range(count):
            self._pending_failures.append(
                error or ProviderUnavailableError(self.provider_id, "simulated outage")
            )

    def set_down(self, down: bool = True) -> None:
        self.down = down
        self.probe_healthy = not down

    async def invoke(
        self, model: str, prompt_context: PromptContext, timeout: float
    ) -> InvocationResult:
        self.calls.append((model, prompt_context))
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.down:
            raise ProviderUnavailableError(self.provider_id, "simulated outage")
        if self._pending_failures:
            raise self._pending_failures.popleft()
        return InvocationResult(
            result=self.responder(prompt_context),
            tokens_used=self.tokens_per_call,
            latency=self.latency,
        )

    async def probe(self) -> bool:
        self.probe_calls += 1
        return self.probe_healthy
