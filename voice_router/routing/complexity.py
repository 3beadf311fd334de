"""Turn complexity and latency-requirement scoring."""

from typing import Optional

from voice_router.config import RoutingConfig
from voice_router.schemas.routing_schema import LatencyRequirement
from voice_router.utils import clamp

# Counts at which a component saturates
CLARIFICATIONS_SATURATE = 3
AMBIGUITY_SATURATES = 2


def complexity_score(
    config: RoutingConfig,
    missing_required: int,
    required_total: int,
    clarification_count: int,
    ambiguity_markers: int,
    pattern_failure_rate: float,
) -> float:
    """Weighted 0..1 estimate of how hard this turn is for a cheap model."""
    unfilled = missing_required / required_total if required_total else 0.0
    clarifications = min(clarification_count / CLARIFICATIONS_SATURATE, 1.0)
    ambiguity = min(ambiguity_markers / AMBIGUITY_SATURATES, 1.0)
    score = (
        config.weight_unfilled * unfilled
        + config.weight_clarifications * clarifications
        + config.weight_ambiguity * ambiguity
        + config.weight_history * clamp(pattern_failure_rate)
    )
    return round(clamp(score), 6)


def turn_pattern(phase: str, missing: list[str]) -> str:
    """Key used to track historical failure rates for similar turns."""
    return f"{phase}:{missing[0] if missing else 'none'}"


def derive_latency_requirement(
    elapsed_fraction: float, phase: str, hint: Optional[LatencyRequirement] = None
) -> LatencyRequirement:
    """Tighten the latency budget as the call runs out of wall-clock time."""
    if hint is not None:
        return hint
    if elapsed_fraction >= 0.9:
        return LatencyRequirement.EMERGENCY
    if elapsed_fraction >= 0.75:
        return LatencyRequirement.CRITICAL
    if phase == "confirmation":
        return LatencyRequirement.LOW
    return LatencyRequirement.STANDARD
