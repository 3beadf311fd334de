"""
Centralized configuration with environment variable overrides.

Every threshold the decision engine consults lives here: required slots,
promotion thresholds, latency budgets, breaker and cache tuning. Config
objects are frozen and passed explicitly into the engine; the module-level
``settings`` instance exists for entry points only.
"""

import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

KNOWN_SLOTS = (
    "patient_name_or_callback",
    "date_of_birth",
    "provider_preference",
    "insurance_plan",
    "appointment_type",
    "preferred_schedule",
    "special_requirements",
)

TIER_ORDER = ("primary", "enhanced", "premium", "specialized")
COST_MODES = ("balanced", "aggressive", "quality_first", "emergency")
QUALITY_LEVELS = ("standard", "high", "maximum", "specialized")


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid integer for {env_var}: {raw!r}"
        ) from None


def _safe_float(env_var: str, default: str) -> float:
    """Parse a float from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid float for {env_var}: {raw!r}"
        ) from None


def _csv_tuple(env_var: str, default: str) -> tuple[str, ...]:
    """Parse a comma-separated env var into a tuple of stripped, non-empty items."""
    raw = os.getenv(env_var, default)
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class SlotPolicyConfig:
    """Intake policy: which slots are required and how sure we must be."""

    required_slots: tuple[str, ...] = _csv_tuple(
        "REQUIRED_SLOTS", "patient_name_or_callback,date_of_birth,appointment_type"
    )
    min_slot_confidence: float = _safe_float("MIN_SLOT_CONFIDENCE", "0.5")
    readiness_threshold: float = _safe_float("READINESS_THRESHOLD", "0.8")
    max_slot_retries: int = _safe_int("MAX_SLOT_RETRIES", "3")


@dataclass(frozen=True)
class DialogConfig:
    """Turn and time budgets for a single call."""

    max_turns: int = _safe_int("MAX_TURNS", "24")
    max_call_duration_sec: float = _safe_float("MAX_CALL_DURATION", "600.0")
    history_size: int = _safe_int("TURN_HISTORY_SIZE", "12")
    idle_timeout_sec: float = _safe_float("IDLE_TIMEOUT", "300.0")
    max_consent_attempts: int = _safe_int("MAX_CONSENT_ATTEMPTS", "2")
    max_consecutive_failures: int = _safe_int("MAX_CONSECUTIVE_FAILURES", "2")
    practice_name: str = os.getenv("PRACTICE_NAME", "Riverside Family Health")


@dataclass(frozen=True)
class LatencyBudgetConfig:
    """Per-request latency budget in seconds for each LatencyRequirement."""

    standard: float = _safe_float("LATENCY_BUDGET_STANDARD", "0.7")
    low: float = _safe_float("LATENCY_BUDGET_LOW", "0.4")
    critical: float = _safe_float("LATENCY_BUDGET_CRITICAL", "0.2")
    emergency: float = _safe_float("LATENCY_BUDGET_EMERGENCY", "0.15")
    # Whole-turn allowance as a multiple of the per-request budget (covers one failover retry)
    turn_budget_multiplier: float = _safe_float("TURN_BUDGET_MULTIPLIER", "2.0")

    def for_requirement(self, requirement: str) -> float:
        return getattr(self, requirement)


@dataclass(frozen=True)
class RoutingConfig:
    """Promotion thresholds and complexity weighting."""

    complexity_promotion_threshold: float = _safe_float("COMPLEXITY_PROMOTION_THRESHOLD", "0.8")
    confidence_floor: float = _safe_float("CONFIDENCE_FLOOR", "0.6")
    context_turns_for_cache: int = _safe_int("CACHE_CONTEXT_TURNS", "2")
    failover_retry_enabled: bool = os.getenv("FAILOVER_RETRY", "true").lower() == "true"
    weight_unfilled: float = _safe_float("COMPLEXITY_WEIGHT_UNFILLED", "0.35")
    weight_clarifications: float = _safe_float("COMPLEXITY_WEIGHT_CLARIFICATIONS", "0.25")
    weight_ambiguity: float = _safe_float("COMPLEXITY_WEIGHT_AMBIGUITY", "0.25")
    weight_history: float = _safe_float("COMPLEXITY_WEIGHT_HISTORY", "0.15")
    cost_optimization: str = os.getenv("COST_OPTIMIZATION", "balanced").lower()
    quality_requirement: str = os.getenv("QUALITY_REQUIREMENT", "standard").lower()


@dataclass(frozen=True)
class BreakerConfig:
    """Circuit breaker thresholds shared by every provider."""

    failure_threshold: int = _safe_int("BREAKER_FAILURE_THRESHOLD", "5")
    failure_rate_threshold: float = _safe_float("BREAKER_FAILURE_RATE", "0.5")
    min_requests_for_rate: int = _safe_int("BREAKER_MIN_REQUESTS", "10")
    window_seconds: float = _safe_float("BREAKER_WINDOW", "60.0")
    cooldown_seconds: float = _safe_float("BREAKER_COOLDOWN", "30.0")
    backoff_multiplier: float = _safe_float("BREAKER_BACKOFF_MULTIPLIER", "2.0")
    max_cooldown_seconds: float = _safe_float("BREAKER_MAX_COOLDOWN", "300.0")
    probe_timeout_seconds: float = _safe_float("BREAKER_PROBE_TIMEOUT", "2.0")


@dataclass(frozen=True)
class CacheConfig:
    """Semantic response cache tuning."""

    similarity_threshold: float = _safe_float("CACHE_SIMILARITY_THRESHOLD", "0.85")
    ttl_seconds: float = _safe_float("CACHE_TTL", "300.0")
    capacity: int = _safe_int("CACHE_CAPACITY", "1024")
    shards: int = _safe_int("CACHE_SHARDS", "16")


@dataclass(frozen=True)
class RedactionConfig:
    """Redaction boundary settings."""

    hash_salt: str = os.getenv("REDACTION_SALT", "change-me-in-production")
    min_detector_confidence: float = _safe_float("REDACTION_MIN_CONFIDENCE", "0.7")


@dataclass(frozen=True)
class ProviderSpec:
    """One routable provider/model pair."""

    provider_id: str
    model_id: str
    tier: str
    cost_per_1k_tokens: float = 0.0


DEFAULT_PROVIDERS: tuple[ProviderSpec, ...] = (
    ProviderSpec("azure_openai", "gpt-4o-mini", "primary", 0.15),
    ProviderSpec("aws_bedrock", "claude-3-sonnet", "enhanced", 3.0),
    ProviderSpec("google_vertex", "gemini-1.5-pro", "premium", 3.5),
)


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    slots: SlotPolicyConfig = field(default_factory=SlotPolicyConfig)
    dialog: DialogConfig = field(default_factory=DialogConfig)
    latency: LatencyBudgetConfig = field(default_factory=LatencyBudgetConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    breaker: BreakerConfig = field(default_factory=BreakerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    redaction: RedactionConfig = field(default_factory=RedactionConfig)
    providers: tuple[ProviderSpec, ...] = DEFAULT_PROVIDERS
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    service_name: str = os.getenv("SERVICE_NAME", "voice-intake-router")


def _check_unit_interval(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be between 0.0 and 1.0, got {value}")


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    unknown = [s for s in config.slots.required_slots if s not in KNOWN_SLOTS]
    if unknown:
        raise ValueError(f"REQUIRED_SLOTS contains unknown slots: {unknown}")

    for name, value in [
        ("MIN_SLOT_CONFIDENCE", config.slots.min_slot_confidence),
        ("READINESS_THRESHOLD", config.slots.readiness_threshold),
        ("COMPLEXITY_PROMOTION_THRESHOLD", config.routing.complexity_promotion_threshold),
        ("CONFIDENCE_FLOOR", config.routing.confidence_floor),
        ("BREAKER_FAILURE_RATE", config.breaker.failure_rate_threshold),
        ("CACHE_SIMILARITY_THRESHOLD", config.cache.similarity_threshold),
        ("REDACTION_MIN_CONFIDENCE", config.redaction.min_detector_confidence),
    ]:
        _check_unit_interval(name, value)

    if config.slots.max_slot_retries < 1:
        raise ValueError(
            f"MAX_SLOT_RETRIES must be >= 1, got {config.slots.max_slot_retries}"
        )
    if config.dialog.max_turns < 1:
        raise ValueError(f"MAX_TURNS must be >= 1, got {config.dialog.max_turns}")
    if config.dialog.max_call_duration_sec <= 0:
        raise ValueError(
            f"MAX_CALL_DURATION must be > 0, got {config.dialog.max_call_duration_sec}"
        )
    if config.dialog.history_size < 1:
        raise ValueError(
            f"TURN_HISTORY_SIZE must be >= 1, got {config.dialog.history_size}"
        )
    if config.dialog.max_consent_attempts < 1:
        raise ValueError(
            "MAX_CONSENT_ATTEMPTS must be >= 1, "
            f"got {config.dialog.max_consent_attempts}"
        )

    for level in ("standard", "low", "critical", "emergency"):
        budget = config.latency.for_requirement(level)
        if budget <= 0:
            raise ValueError(f"LATENCY_BUDGET_{level.upper()} must be > 0, got {budget}")
    if config.latency.turn_budget_multiplier < 1.0:
        raise ValueError(
            "TURN_BUDGET_MULTIPLIER must be >= 1.0, "
            f"got {config.latency.turn_budget_multiplier}"
        )

    if config.breaker.failure_threshold < 1:
        raise ValueError(
            f"BREAKER_FAILURE_THRESHOLD must be >= 1, got {config.breaker.failure_threshold}"
        )
    if config.breaker.cooldown_seconds <= 0:
        raise ValueError(
            f"BREAKER_COOLDOWN must be > 0, got {config.breaker.cooldown_seconds}"
        )
    if config.breaker.backoff_multiplier < 1.0:
        raise ValueError(
            "BREAKER_BACKOFF_MULTIPLIER must be >= 1.0, "
            f"got {config.breaker.backoff_multiplier}"
        )

    if config.cache.capacity < 1:
        raise ValueError(f"CACHE_CAPACITY must be >= 1, got {config.cache.capacity}")
    if config.cache.shards < 1:
        raise ValueError(f"CACHE_SHARDS must be >= 1, got {config.cache.shards}")
    if config.cache.ttl_seconds <= 0:
        raise ValueError(f"CACHE_TTL must be > 0, got {config.cache.ttl_seconds}")

    if config.routing.cost_optimization not in COST_MODES:
        raise ValueError(
            f"COST_OPTIMIZATION must be one of {COST_MODES}, "
            f"got {config.routing.cost_optimization!r}"
        )
    if config.routing.quality_requirement not in QUALITY_LEVELS:
        raise ValueError(
            f"QUALITY_REQUIREMENT must be one of {QUALITY_LEVELS}, "
            f"got {config.routing.quality_requirement!r}"
        )

    if not config.providers:
        raise ValueError("At least one provider must be configured")
    for spec in config.providers:
        if spec.tier not in TIER_ORDER:
            raise ValueError(
                f"Provider {spec.provider_id!r} has unknown tier {spec.tier!r}"
            )


def load_config() -> AppConfig:
    """Load and validate application configuration."""
    config = AppConfig()
    _validate_config(config)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger.info(
        "Configuration loaded for '%s' (%d providers)",
        config.service_name, len(config.providers),
    )
    return config


# Singleton instance for entry points
settings = load_config()
