"""Shared test fixtures and helpers."""

import dataclasses
from datetime import date
from typing import Any, Callable, Optional

import pytest

from voice_router.config import (
    AppConfig,
    BreakerConfig,
    CacheConfig,
    DialogConfig,
    LatencyBudgetConfig,
    ProviderSpec,
    RoutingConfig,
    SlotPolicyConfig,
)
from voice_router.conversation.slot_manager import Slots
from voice_router.conversation.state_machine import DialogStateMachine
from voice_router.privacy.redaction import Redactor
from voice_router.routing.providers import ProviderRegistry, ScriptedProvider
from voice_router.schemas.routing_schema import CallerIntent, ModelResult, PromptContext

TODAY = date(2025, 6, 2)

TEST_PROVIDERS = (
    ProviderSpec("fast_a", "small-1", "primary", 0.1),
    ProviderSpec("fast_b", "small-2", "primary", 0.1),
    ProviderSpec("mid", "medium-1", "enhanced", 1.0),
    ProviderSpec("big", "large-1", "premium", 3.0),
)


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_config(
    providers: tuple[ProviderSpec, ...] = TEST_PROVIDERS,
    slots: Optional[dict[str, Any]] = None,
    dialog: Optional[dict[str, Any]] = None,
    routing: Optional[dict[str, Any]] = None,
    breaker: Optional[dict[str, Any]] = None,
    cache: Optional[dict[str, Any]] = None,
    latency: Optional[dict[str, Any]] = None,
) -> AppConfig:
    """AppConfig with defaults, overriding individual fields per sub-config."""
    return AppConfig(
        slots=dataclasses.replace(SlotPolicyConfig(), **(slots or {})),
        dialog=dataclasses.replace(DialogConfig(), **(dialog or {})),
        routing=dataclasses.replace(RoutingConfig(), **(routing or {})),
        breaker=dataclasses.replace(
            BreakerConfig(), **{"failure_threshold": 3, "cooldown_seconds": 10.0, **(breaker or {})}
        ),
        cache=dataclasses.replace(CacheConfig(), **(cache or {})),
        latency=dataclasses.replace(LatencyBudgetConfig(), **(latency or {})),
        providers=providers,
    )


def static_responder(**fields: Any) -> Callable[[PromptContext], ModelResult]:
    """Responder that always returns the same ModelResult."""
    result = ModelResult(**fields)
    return lambda context: result


def build_registry(
    config: AppConfig, responder: Callable[[PromptContext], Any]
) -> ProviderRegistry:
    return ProviderRegistry.from_specs(
        config.providers, lambda spec: ScriptedProvider(spec.provider_id, responder)
    )


def extraction(**values: tuple[Any, float]) -> dict[str, dict[str, Any]]:
    """Shorthand for an ``extracted`` mapping: extraction(date_of_birth=("1985-03-04", 0.9))."""
    return {name: {"value": v, "confidence": c} for name, (v, c) in values.items()}


def booking_result(**values: tuple[Any, float]) -> ModelResult:
    return ModelResult(
        reply="Thanks. What else can you tell me?",
        intent=CallerIntent.PROVIDE_INFO,
        extracted=extraction(**values),
        confidence=0.9,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def redactor():
    return Redactor(salt="test-salt", allowlist=["small-1", "small-2", "medium-1", "large-1"])


@pytest.fixture
def slots(config):
    return Slots(config.slots, today=lambda: TODAY)


@pytest.fixture
def state_machine():
    return DialogStateMachine()
