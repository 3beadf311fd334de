"""
Per-turn provider/model selection.

For every turn the engine:

1. scores complexity (or takes the caller's hint),
2. reads the previous turn's extraction confidence,
3. decides whether to stay on the sticky provider or promote/fall back,
4. answers from the semantic cache when it can,
5. otherwise picks an available candidate, degrading to lower tiers and,
   only as a last resort, higher ones,
6. invokes it within the turn's latency budget, records the outcome in the
   health monitor and metrics, and caches the redacted result.

A failed invocation is retried once on a failover provider if the turn
budget still allows it.

Usage:
    engine = RoutingEngine(config, registry, health, cache, metrics)
    routed = await engine.route(request, context.routing)
    routed.result.reply
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pydantic import ValidationError

from voice_router.config import AppConfig
from voice_router.errors import (
    ProviderError,
    ProviderInvocationError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RoutingExhaustedError,
)
from voice_router.evaluation.metrics import RoutingMetrics
from voice_router.privacy.redaction import PERSONAL_FIELDS
from voice_router.routing.cache import ResponseCache, context_hash
from voice_router.routing.complexity import (
    complexity_score,
    derive_latency_requirement,
    turn_pattern,
)
from voice_router.routing.health import HealthMonitor
from voice_router.routing.providers import ProviderRegistry, RegisteredModel
from voice_router.schemas.routing_schema import (
    PROMOTION_LADDER,
    QUALITY_FLOOR,
    CostOptimization,
    InvocationResult,
    LatencyRequirement,
    ModelResult,
    ModelTier,
    PromptContext,
    QualityRequirement,
    RoutingDecision,
    RoutingHints,
    RoutingReason,
)
from voice_router.utils import normalize_utterance

logger = logging.getLogger(__name__)


@dataclass
class RoutingState:
    """Per-call routing memory; owned by the conversation context."""

    provider_id: Optional[str] = None
    model_id: Optional[str] = None
    tier: Optional[ModelTier] = None
    last_promotion_turn: Optional[int] = None
    last_confidence: Optional[float] = None
    complexity_trace: list[float] = field(default_factory=list)
    confidence_trace: list[float] = field(default_factory=list)
    decisions: list[RoutingDecision] = field(default_factory=list)


@dataclass
class TurnRequest:
    """Everything the engine needs about one turn; text is already redacted."""

    call_id: str
    turn_number: int
    phase: str
    prompt_context: PromptContext
    missing_required: list[str]
    required_total: int
    clarification_count: int = 0
    ambiguity_markers: int = 0
    elapsed_fraction: float = 0.0
    input_has_personal_data: bool = False
    hints: Optional[RoutingHints] = None
    conversation_type: str = "unclassified"


@dataclass
class RoutedTurn:
    result: ModelResult
    decision: RoutingDecision
    cache_hit: bool = False
    latency: float = 0.0
    tokens_used: int = 0
    cost: float = 0.0


def parse_model_output(raw: Any) -> ModelResult:
    """Coerce provider output into a ModelResult; malformed output becomes an empty result."""
    try:
        if isinstance(raw, ModelResult):
            return raw
        if isinstance(raw, (str, bytes)):
            return ModelResult.model_validate_json(raw)
        return ModelResult.model_validate(raw)
    except ValidationError as exc:
        logger.warning("Unparseable model output (%d validation errors)", exc.error_count())
        return ModelResult.unparseable(f"{exc.error_count()} validation errors")


def _is_valid_cached(payload: dict[str, Any]) -> bool:
    try:
        ModelResult.model_validate(payload)
    except ValidationError:
        return False
    return True


def _tier_order(desired: ModelTier) -> list[ModelTier]:
    """Desired tier first, then lower tiers, then higher tiers as a last resort."""
    ladder = list(PROMOTION_LADDER)
    if desired not in ladder:
        return [desired] + list(reversed(ladder))
    index = ladder.index(desired)
    lower = list(reversed(ladder[:index]))
    higher = ladder[index + 1:]
    return [desired] + lower + higher


def _next_tier_up(tier: ModelTier) -> ModelTier:
    if tier not in PROMOTION_LADDER:
        return tier
    index = PROMOTION_LADDER.index(tier)
    return PROMOTION_LADDER[min(index + 1, len(PROMOTION_LADDER) - 1)]


class RoutingEngine:
    """Selects, invokes and learns from providers for each dialog turn."""

    def __init__(
        self,
        config: AppConfig,
        registry: ProviderRegistry,
        health: HealthMonitor,
        cache: ResponseCache,
        metrics: RoutingMetrics,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.registry = registry
        self.health = health
        self.cache = cache
        self.metrics = metrics
        self._clock = clock

    # ------------------------------------------------------------------ #
    # Decision
    # ------------------------------------------------------------------ #

    def _score(self, request: TurnRequest, pattern: str) -> float:
        if request.hints is not None and request.hints.complexity_score is not None:
            return request.hints.complexity_score
        return complexity_score(
            self.config.routing,
            missing_required=len(request.missing_required),
            required_total=request.required_total,
            clarification_count=request.clarification_count,
            ambiguity_markers=request.ambiguity_markers,
            pattern_failure_rate=self.metrics.pattern_failure_rate(pattern),
        )

    def _cost_mode(self, request: TurnRequest) -> CostOptimization:
        if request.hints is not None and request.hints.cost_optimization is not None:
            return request.hints.cost_optimization
        return CostOptimization(self.config.routing.cost_optimization)

    def _quality_floor(self, request: TurnRequest) -> ModelTier:
        if request.hints is not None and request.hints.quality_requirement is not None:
            return QUALITY_FLOOR[request.hints.quality_requirement]
        return QUALITY_FLOOR[QualityRequirement(self.config.routing.quality_requirement)]

    def _sticky_on(self, state: RoutingState, tier: ModelTier) -> bool:
        return (
            state.tier == tier
            and state.provider_id is not None
            and self.health.is_available(state.provider_id)
        )

    def _desired(
        self,
        state: RoutingState,
        request: TurnRequest,
        complexity: float,
        confidence: float,
        cost_mode: CostOptimization = CostOptimization.BALANCED,
    ) -> tuple[ModelTier, RoutingReason]:
        """Pick the tier for this turn, then lift it to the quality floor if needed."""
        tier, reason = self._desired_by_signals(state, request, complexity, confidence, cost_mode)
        floor = self._quality_floor(request)
        if floor.rank > tier.rank:
            if self._sticky_on(state, floor):
                return floor, RoutingReason.STICKINESS
            return floor, RoutingReason.INITIAL_SELECTION
        return tier, reason

    def _desired_by_signals(
        self,
        state: RoutingState,
        request: TurnRequest,
        complexity: float,
        confidence: float,
        cost_mode: CostOptimization,
    ) -> tuple[ModelTier, RoutingReason]:
        routing = self.config.routing
        hinted = request.hints.tier if request.hints is not None else None
        if hinted is not None:
            if self._sticky_on(state, hinted):
                return hinted, RoutingReason.STICKINESS
            return hinted, RoutingReason.INITIAL_SELECTION

        # Emergency cost mode pins the cheapest tier; aggressive keeps only the
        # low-confidence promotion
        if cost_mode == CostOptimization.EMERGENCY and state.tier not in (None, ModelTier.PRIMARY):
            return ModelTier.PRIMARY, RoutingReason.INITIAL_SELECTION
        promote_on_complexity = cost_mode not in (
            CostOptimization.AGGRESSIVE, CostOptimization.EMERGENCY
        )
        promote_on_confidence = cost_mode != CostOptimization.EMERGENCY

        if state.tier is None or state.provider_id is None:
            if promote_on_complexity and complexity >= routing.complexity_promotion_threshold:
                return _next_tier_up(ModelTier.PRIMARY), RoutingReason.PROMOTION_BY_COMPLEXITY
            return ModelTier.PRIMARY, RoutingReason.INITIAL_SELECTION

        promoted = _next_tier_up(state.tier)
        if (
            promote_on_complexity
            and complexity >= routing.complexity_promotion_threshold
            and promoted != state.tier
        ):
            return promoted, RoutingReason.PROMOTION_BY_COMPLEXITY
        if (
            promote_on_confidence
            and confidence < routing.confidence_floor
            and promoted != state.tier
        ):
            return promoted, RoutingReason.PROMOTION_BY_LOW_CONFIDENCE
        if not self.health.is_available(state.provider_id):
            return state.tier, RoutingReason.FALLBACK_AFTER_BREAKER_OPEN
        return state.tier, RoutingReason.STICKINESS

    def _intended_model(self, state: RoutingState, tier: ModelTier) -> tuple[str, str]:
        if state.provider_id and state.model_id and state.tier == tier:
            return state.provider_id, state.model_id
        candidates = self.registry.candidates(tier) or self.registry.all()
        return candidates[0].provider_id, candidates[0].model_id

    def _ordered_candidates(
        self,
        tier: ModelTier,
        state: RoutingState,
        exclude: set[str],
        requirement: LatencyRequirement,
        cost_mode: CostOptimization = CostOptimization.BALANCED,
    ) -> list[RegisteredModel]:
        """Available candidates in one tier, best first.

        Emergency latency sorts by observed mean latency. Otherwise the sticky
        provider leads and cost breaks ties, except under aggressive or
        emergency cost modes where the cheapest model always leads and under
        quality-first where the lowest recent error rate does.
        """
        candidates = [
            c for c in self.registry.candidates(tier)
            if c.provider_id not in exclude and self.health.is_available(c.provider_id)
        ]
        if requirement == LatencyRequirement.EMERGENCY:
            stats = self.health.snapshot()
            candidates.sort(
                key=lambda c: stats.get(c.provider_id, {}).get("latency_mean", 0.0)
            )
        elif cost_mode in (CostOptimization.AGGRESSIVE, CostOptimization.EMERGENCY):
            candidates.sort(
                key=lambda c: (c.cost_per_1k_tokens, c.provider_id != state.provider_id)
            )
        elif cost_mode == CostOptimization.QUALITY_FIRST:
            stats = self.health.snapshot()
            candidates.sort(
                key=lambda c: (
                    c.provider_id != state.provider_id,
                    stats.get(c.provider_id, {}).get("error_rate", 0.0),
                )
            )
        else:
            candidates.sort(
                key=lambda c: (c.provider_id != state.provider_id, c.cost_per_1k_tokens)
            )
        return candidates

    async def _select(
        self,
        desired: ModelTier,
        state: RoutingState,
        exclude: set[str],
        requirement: LatencyRequirement,
        cost_mode: CostOptimization = CostOptimization.BALANCED,
    ) -> RegisteredModel:
        checked: list[str] = []
        for tier in _tier_order(desired):
            for candidate in self._ordered_candidates(tier, state, exclude, requirement, cost_mode):
                checked.append(candidate.provider_id)
                probe = candidate.provider.probe if candidate.provider.supports_probe else None
                if await self.health.check_available(candidate.provider_id, probe):
                    if tier != desired:
                        logger.warning(
                            "Degraded from tier %s to %s (%s)",
                            desired.value, tier.value, candidate.provider_id,
                        )
                    return candidate
        raise RoutingExhaustedError(desired.value, checked)

    # ------------------------------------------------------------------ #
    # Invocation
    # ------------------------------------------------------------------ #

    async def _call_and_record(
        self, candidate: RegisteredModel, request: TurnRequest, timeout: float
    ) -> InvocationResult:
        started = self._clock()
        success = False
        tokens = 0
        try:
            result = await asyncio.wait_for(
                candidate.provider.invoke(candidate.model_id, request.prompt_context, timeout),
                timeout=timeout,
            )
            success = True
            tokens = result.tokens_used
            return result
        except asyncio.TimeoutError:
            raise ProviderTimeoutError(
                candidate.provider_id, f"no answer within {timeout:.2f}s"
            ) from None
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderUnavailableError(
                candidate.provider_id, f"{type(exc).__name__}: {exc}"
            ) from exc
        finally:
            latency = self._clock() - started
            self.health.record_outcome(candidate.provider_id, success, latency)
            self.metrics.record_invocation(
                candidate.provider_id,
                candidate.model_id,
                success,
                latency,
                tokens_used=tokens,
                cost_per_1k_tokens=candidate.cost_per_1k_tokens,
                tier=candidate.tier.value,
                conversation_type=request.conversation_type,
            )

    async def _invoke(
        self, candidate: RegisteredModel, request: TurnRequest, timeout: float
    ) -> InvocationResult:
        # Shielded so a cancelled turn still records the outcome of the in-flight call
        task = asyncio.ensure_future(self._call_and_record(candidate, request, timeout))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            logger.info(
                "Turn cancelled; %s result will be recorded and discarded",
                candidate.provider_id,
            )
            task.add_done_callback(_consume_exception)
            raise

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def route(self, request: TurnRequest, state: RoutingState) -> RoutedTurn:
        """Route one turn.

        Raises:
            RoutingExhaustedError: No provider is available at any tier.
            ProviderInvocationError: Every attempt within the turn failed.
        """
        turn_started = self._clock()
        pattern = turn_pattern(request.phase, request.missing_required)
        complexity = self._score(request, pattern)
        confidence = state.last_confidence if state.last_confidence is not None else 1.0
        requirement = derive_latency_requirement(
            request.elapsed_fraction,
            request.phase,
            request.hints.latency_requirement if request.hints is not None else None,
        )
        budget = self.config.latency.for_requirement(requirement.value)
        deadline = turn_started + budget * self.config.latency.turn_budget_multiplier

        cost_mode = self._cost_mode(request)
        desired, reason = self._desired(state, request, complexity, confidence, cost_mode)
        state.complexity_trace.append(complexity)
        state.confidence_trace.append(confidence)

        fingerprint = normalize_utterance(request.prompt_context.caller_input)
        ctx_hash = context_hash(
            request.phase,
            request.missing_required,
            request.prompt_context.recent_turns[-self.config.routing.context_turns_for_cache:],
        )

        if not request.input_has_personal_data:
            cached = self.cache.lookup(fingerprint, ctx_hash, validate=_is_valid_cached)
            if cached is not None:
                provider_id, model_id = self._intended_model(state, desired)
                decision = RoutingDecision(
                    provider_id=provider_id,
                    model_id=model_id,
                    tier=desired,
                    reason=RoutingReason.CACHE_HIT,
                    complexity_score=complexity,
                    confidence_score=confidence,
                    latency_requirement=requirement,
                    latency_budget=budget,
                    cost_optimization=cost_mode,
                )
                result = ModelResult.model_validate(cached)
                self.metrics.record_cache_hit(
                    provider_id,
                    model_id,
                    tier=desired.value,
                    conversation_type=request.conversation_type,
                )
                self._finish(state, decision, result, pattern)
                logger.info("Turn %d answered from cache", request.turn_number)
                return RoutedTurn(result=result, decision=decision, cache_hit=True)

        attempts: list[ProviderError] = []
        tried: set[str] = set()
        attempt = 1
        while True:
            try:
                candidate = await self._select(desired, state, tried, requirement, cost_mode)
            except RoutingExhaustedError:
                self.metrics.record_pattern(pattern, False)
                if attempts:
                    raise ProviderInvocationError(attempts) from None
                raise

            if attempt > 1:
                decision_reason = RoutingReason.FAILOVER_AFTER_ERROR
            elif reason == RoutingReason.STICKINESS and candidate.provider_id != state.provider_id:
                # A healthy sticky provider was passed over for cost or latency
                if state.provider_id is not None and self.health.is_available(state.provider_id):
                    decision_reason = RoutingReason.INITIAL_SELECTION
                else:
                    decision_reason = RoutingReason.FALLBACK_AFTER_BREAKER_OPEN
            else:
                decision_reason = reason
            decision = RoutingDecision(
                provider_id=candidate.provider_id,
                model_id=candidate.model_id,
                tier=candidate.tier,
                reason=decision_reason,
                complexity_score=complexity,
                confidence_score=confidence,
                latency_requirement=requirement,
                latency_budget=budget,
                degraded=candidate.tier != desired,
                attempt=attempt,
                cost_optimization=cost_mode,
                cost_per_1k_tokens=candidate.cost_per_1k_tokens,
            )
            logger.info(
                "Turn %d routed to %s/%s (%s, tier %s, complexity %.2f, confidence %.2f)",
                request.turn_number, candidate.provider_id, candidate.model_id,
                decision_reason.value, candidate.tier.value, complexity, confidence,
            )

            remaining = deadline - self._clock()
            timeout = max(min(budget, remaining), 0.001)
            try:
                invocation = await self._invoke(candidate, request, timeout)
            except ProviderError as exc:
                logger.warning("Attempt %d on %s failed: %s", attempt, candidate.provider_id, exc)
                attempts.append(exc)
                tried.add(candidate.provider_id)
                retry_allowed = (
                    self.config.routing.failover_retry_enabled
                    and attempt == 1
                    and deadline - self._clock() > 0
                )
                if not retry_allowed:
                    self.metrics.record_decision(decision_reason.value)
                    state.decisions.append(decision)
                    self.metrics.record_pattern(pattern, False)
                    raise ProviderInvocationError(attempts) from exc
                self.metrics.record_decision(decision_reason.value)
                state.decisions.append(decision)
                attempt += 1
                continue

            result = parse_model_output(invocation.result)
            if decision_reason not in (RoutingReason.STICKINESS, RoutingReason.INITIAL_SELECTION):
                state.last_promotion_turn = request.turn_number
            state.provider_id = candidate.provider_id
            state.model_id = candidate.model_id
            state.tier = candidate.tier
            self._finish(state, decision, result, pattern)
            self._maybe_cache(request, result, fingerprint, ctx_hash)
            return RoutedTurn(
                result=result,
                decision=decision,
                latency=invocation.latency or (self._clock() - turn_started),
                tokens_used=invocation.tokens_used,
                cost=invocation.tokens_used / 1000 * candidate.cost_per_1k_tokens,
            )

    def _finish(
        self, state: RoutingState, decision: RoutingDecision, result: ModelResult, pattern: str
    ) -> None:
        state.decisions.append(decision)
        state.last_confidence = 0.0 if result.parse_error else result.extraction_confidence()
        self.metrics.record_decision(decision.reason.value)
        self.metrics.record_pattern(
            pattern,
            result.parse_error is None
            and state.last_confidence >= self.config.routing.confidence_floor,
        )

    def _maybe_cache(
        self, request: TurnRequest, result: ModelResult, fingerprint: str, ctx_hash: str
    ) -> None:
        if request.input_has_personal_data or result.parse_error is not None:
            return
        if any(name in PERSONAL_FIELDS for name in result.extracted):
            return
        self.cache.store(fingerprint, ctx_hash, result.model_dump(mode="json"))


def _consume_exception(task: "asyncio.Future[Any]") -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Discarded in-flight failure after cancellation: %s", task.exception())
