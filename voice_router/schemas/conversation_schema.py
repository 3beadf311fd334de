"""Turn history, readiness and dialog response schemas."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from voice_router.schemas.routing_schema import RoutingDecision


class CompletionType(str, Enum):
    SUCCESS = "success"
    ESCALATION = "escalation"
    TIMEOUT = "timeout"
    TECHNICAL_ERROR = "technical_error"
    CALLER_DISCONNECT = "caller_disconnect"


class WarningSeverity(str, Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ValidationWarning(BaseModel):
    """A non-fatal problem with extracted or collected data."""

    severity: WarningSeverity = WarningSeverity.MEDIUM
    message: str
    affected_field: Optional[str] = None
    recommended_action: Optional[str] = None


class ReadinessReport(BaseModel):
    """Whether the collected slots are good enough for a scheduling handoff."""

    ready: bool
    missing: list[str] = Field(default_factory=list)
    confidence_score: float = 0.0


class SlotQualityMetrics(BaseModel):
    """How cleanly the slots of one call were collected."""

    first_turn_accuracy: float = 0.0
    average_slot_confidence: float = 0.0
    clarification_turns: int = 0
    efficiency_score: float = 0.0


class ModelUsageSummary(BaseModel):
    """Per-call usage of one provider/model, for cost and latency review."""

    model_config = ConfigDict(protected_namespaces=())

    provider_id: str
    model_id: str
    turn_count: int = 0
    tokens_used: int = 0
    estimated_cost: float = 0.0
    avg_response_time: float = 0.0

    def add_turn(self, tokens: int, cost: float, latency: float) -> None:
        self.avg_response_time = (
            (self.avg_response_time * self.turn_count + latency) / (self.turn_count + 1)
        )
        self.turn_count += 1
        self.tokens_used += tokens
        self.estimated_cost += cost


class TurnRecord(BaseModel):
    """A single redacted turn in the conversation history."""

    turn_number: int
    phase: str
    caller_input: str
    reply: str
    timestamp: datetime
    routing: Optional[RoutingDecision] = None
    cache_hit: bool = False
    latency: float = 0.0
    tokens_used: int = 0
    extraction_confidence: Optional[float] = None
    warnings: list[str] = Field(default_factory=list)
    error: Optional[str] = None


class DialogResponse(BaseModel):
    """What the presentation layer renders into a voice reply."""

    call_id: str
    prompt: str
    phase: str
    directives: dict[str, Any] = Field(default_factory=dict)
    completion_type: Optional[CompletionType] = None
    warnings: list[ValidationWarning] = Field(default_factory=list)
    routing_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.completion_type is not None
