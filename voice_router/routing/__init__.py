from voice_router.routing.cache import ResponseCache
from voice_router.routing.engine import RoutedTurn, RoutingEngine, RoutingState, TurnRequest
from voice_router.routing.health import CircuitState, HealthMonitor
from voice_router.routing.providers import ModelProvider, ProviderRegistry, ScriptedProvider

__all__ = [
    "RoutingEngine",
    "RoutingState",
    "TurnRequest",
    "RoutedTurn",
    "HealthMonitor",
    "CircuitState",
    "ResponseCache",
    "ModelProvider",
    "ProviderRegistry",
    "ScriptedProvider",
]
