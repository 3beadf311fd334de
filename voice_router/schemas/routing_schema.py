"""Routing, model invocation and structured model output schemas."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ModelTier(str, Enum):
    PRIMARY = "primary"
    ENHANCED = "enhanced"
    PREMIUM = "premium"
    SPECIALIZED = "specialized"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


_TIER_RANK = {
    ModelTier.PRIMARY: 0,
    ModelTier.ENHANCED: 1,
    ModelTier.PREMIUM: 2,
    ModelTier.SPECIALIZED: 3,
}

# Tiers reachable by automatic promotion; specialized is requested explicitly
PROMOTION_LADDER = (ModelTier.PRIMARY, ModelTier.ENHANCED, ModelTier.PREMIUM)


class LatencyRequirement(str, Enum):
    STANDARD = "standard"
    LOW = "low"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


class QualityRequirement(str, Enum):
    STANDARD = "standard"
    HIGH = "high"
    MAXIMUM = "maximum"
    SPECIALIZED = "specialized"


# Lowest tier allowed to answer a turn with the given quality requirement
QUALITY_FLOOR = {
    QualityRequirement.STANDARD: ModelTier.PRIMARY,
    QualityRequirement.HIGH: ModelTier.ENHANCED,
    QualityRequirement.MAXIMUM: ModelTier.PREMIUM,
    QualityRequirement.SPECIALIZED: ModelTier.SPECIALIZED,
}


class CostOptimization(str, Enum):
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"
    QUALITY_FIRST = "quality_first"
    EMERGENCY = "emergency"


class RoutingReason(str, Enum):
    INITIAL_SELECTION = "initial-selection"
    STICKINESS = "stickiness"
    PROMOTION_BY_COMPLEXITY = "promotion-by-complexity"
    PROMOTION_BY_LOW_CONFIDENCE = "promotion-by-low-confidence"
    FALLBACK_AFTER_BREAKER_OPEN = "fallback-after-breaker-open"
    FAILOVER_AFTER_ERROR = "failover-after-error"
    CACHE_HIT = "cache-hit"


class CallerIntent(str, Enum):
    BOOK = "book"
    PROVIDE_INFO = "provide_info"
    CONFIRM = "confirm"
    DISPUTE = "dispute"
    CANCEL = "cancel"
    ESCALATE = "escalate"
    REPEAT = "repeat"
    UNCLEAR = "unclear"


class ExtractedField(BaseModel):
    """One slot value proposed by the model for this turn."""

    value: Any = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class ModelResult(BaseModel):
    """Structured output every provider adapter must produce."""

    reply: str = ""
    intent: CallerIntent = CallerIntent.UNCLEAR
    extracted: dict[str, ExtractedField] = Field(default_factory=dict)
    disputed_fields: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    parse_error: Optional[str] = None

    @classmethod
    def unparseable(cls, error: str) -> "ModelResult":
        return cls(parse_error=error, confidence=0.0)

    def extraction_confidence(self) -> float:
        """Mean confidence of extracted fields, falling back to the model's own score."""
        if self.extracted:
            scores = [f.confidence for f in self.extracted.values()]
            return sum(scores) / len(scores)
        return self.confidence


class PromptContext(BaseModel):
    """Redacted context handed to a provider; never carries raw personal data."""

    call_id: str
    phase: str
    instructions: str
    caller_input: str
    recent_turns: list[str] = Field(default_factory=list)
    missing_slots: list[str] = Field(default_factory=list)
    filled_slots: list[str] = Field(default_factory=list)


class RoutingHints(BaseModel):
    """Optional caller-supplied overrides for a single turn."""

    complexity_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    latency_requirement: Optional[LatencyRequirement] = None
    tier: Optional[ModelTier] = None
    quality_requirement: Optional[QualityRequirement] = None
    cost_optimization: Optional[CostOptimization] = None


class RoutingDecision(BaseModel):
    """Outcome of provider/model selection for one turn."""

    model_config = ConfigDict(protected_namespaces=())

    provider_id: str
    model_id: str
    tier: ModelTier
    reason: RoutingReason
    complexity_score: float
    confidence_score: float
    latency_requirement: LatencyRequirement = LatencyRequirement.STANDARD
    latency_budget: float = 0.0
    degraded: bool = False
    attempt: int = 1
    cost_optimization: CostOptimization = CostOptimization.BALANCED
    cost_per_1k_tokens: float = 0.0


class InvocationResult(BaseModel):
    """What a provider adapter returns for a successful invocation."""

    result: Any
    tokens_used: int = 0
    latency: float = 0.0
