"""
Turn orchestrator for intake calls.

The dialog manager owns every ConversationContext. For each caller turn it:

1. serialises on the call's lock and enforces turn/time limits,
2. sanitises the utterance through the redaction boundary,
3. handles deterministic signals (consent, cancel, escalate, repeat),
4. routes the redacted turn through the RoutingEngine,
5. rehydrates the reply, merges extracted slots and scores readiness,
6. advances the phase machine and hands a redacted record to persistence.

The caller always gets a response: provider failures turn into an apology
and, once repeated or exhausted, a scripted transfer to staff.

Usage:
    manager = DialogManager(settings, registry)
    greeting = await manager.initiate_conversation("CA-01", "+15550107788")
    reply = await manager.process_turn("CA-01", "yes that's fine")
"""

import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Optional

from voice_router.config import AppConfig
from voice_router.conversation.context_store import ContextStore, ConversationContext
from voice_router.conversation.signals import (
    Answer,
    CallerSignal,
    check_reply,
    classify_answer,
    count_ambiguity_markers,
    detect_signal,
)
from voice_router.conversation.slot_manager import Slots
from voice_router.conversation.state_machine import DialogStateMachine, DialogTrigger, Phase
from voice_router.errors import (
    ConversationNotFoundError,
    ProviderInvocationError,
    RoutingExhaustedError,
)
from voice_router.evaluation.metrics import RoutingMetrics
from voice_router.logging_context import configure_log_redaction, get_call_logger, set_call_id
from voice_router.persistence import (
    LoggingPersistenceSink,
    PersistenceDispatcher,
    PersistenceSink,
)
from voice_router.privacy.redaction import PiiCategory, RedactionResult, Redactor
from voice_router.prompts.prompt_templates import (
    APOLOGY_RETRY,
    CANCEL_MESSAGE,
    CONSENT_REASK,
    HANDOFF_MESSAGE,
    INTENT_PROMPT,
    build_clarification_prompt,
    build_dispute_prompt,
    build_greeting,
    build_readback_prompt,
    build_slot_question,
    escalation_message,
)
from voice_router.prompts.system_prompts import build_system_prompt
from voice_router.routing.cache import ResponseCache
from voice_router.routing.engine import RoutedTurn, RoutingEngine, TurnRequest
from voice_router.routing.health import HealthMonitor
from voice_router.routing.providers import ProviderRegistry
from voice_router.schemas.appointment_schema import HandoffPayload
from voice_router.schemas.conversation_schema import (
    CompletionType,
    DialogResponse,
    ReadinessReport,
    TurnRecord,
    ValidationWarning,
    WarningSeverity,
)
from voice_router.schemas.routing_schema import (
    CallerIntent,
    ExtractedField,
    ModelResult,
    PromptContext,
    RoutingHints,
)

logger = get_call_logger(__name__)

COMPLETED_RETENTION = 100
UNCLASSIFIED = "unclassified"

_ESCALATION_TRIGGERS = {
    CompletionType.ESCALATION: DialogTrigger.ESCALATION_REQUESTED,
    CompletionType.TIMEOUT: DialogTrigger.LIMIT_EXCEEDED,
    CompletionType.TECHNICAL_ERROR: DialogTrigger.TECHNICAL_FAILURE,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _TurnOutcome:
    prompt: str
    directives: dict[str, Any] = field(default_factory=dict)
    warnings: list[ValidationWarning] = field(default_factory=list)
    routed: Optional[RoutedTurn] = None
    error: Optional[str] = None
    completion: Optional[CompletionType] = None


class DialogManager:
    """Drives intake calls from greeting to handoff or escalation."""

    def __init__(
        self,
        config: AppConfig,
        registry: ProviderRegistry,
        *,
        health: Optional[HealthMonitor] = None,
        cache: Optional[ResponseCache] = None,
        metrics: Optional[RoutingMetrics] = None,
        sink: Optional[PersistenceSink] = None,
        redactor: Optional[Redactor] = None,
        clock: Callable[[], float] = time.monotonic,
        today: Optional[Callable[[], date]] = None,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.config = config
        self.redactor = redactor or Redactor(
            config.redaction.hash_salt,
            config.redaction.min_detector_confidence,
            allowlist=registry.known_ids(),
        )
        configure_log_redaction(self.redactor)
        self.health = health or HealthMonitor(config.breaker, clock)
        self.cache = cache or ResponseCache(config.cache, self.redactor, clock)
        self.metrics = metrics or RoutingMetrics(clock)
        self.engine = RoutingEngine(
            config, registry, self.health, self.cache, self.metrics, clock
        )
        self.store = ContextStore(config.dialog.idle_timeout_sec, clock)
        self.persistence = PersistenceDispatcher(sink or LoggingPersistenceSink())
        self._clock = clock
        self._today = today
        self._now = now
        self._completed: "OrderedDict[str, dict[str, Any]]" = OrderedDict()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def initiate_conversation(self, call_id: str, caller_number: str = "") -> DialogResponse:
        """Create the call context and return the consent greeting."""
        set_call_id(call_id)
        existing = self.store.get(call_id)
        if existing is not None:
            logger.warning("Call already active; repeating last prompt")
            return self._response(existing, existing.last_prompt)

        now = self._clock()
        caller_token = (
            self.redactor.token_for(PiiCategory.PHONE, caller_number) if caller_number else ""
        )
        context = ConversationContext(
            call_id=call_id,
            caller_token=caller_token,
            slots=Slots(self.config.slots, today=self._today),
            state_machine=DialogStateMachine(),
            history=deque(maxlen=self.config.dialog.history_size),
            started_at=now,
            last_activity=now,
            sensitive_terms={caller_number} if caller_number else set(),
        )
        context.last_prompt = build_greeting(self.config.dialog.practice_name)
        self.store.add(context)
        logger.info("Call started (caller %s)", caller_token or "unknown")
        return self._response(context, context.last_prompt, directives={"action": "listen"})

    async def complete_conversation(
        self, call_id: str, completion_type: CompletionType
    ) -> DialogResponse:
        """End a call from outside the dialog, e.g. on hang-up.

        Raises:
            ConversationNotFoundError: If the call is not active.
            InvalidTransitionError: If ``SUCCESS`` is requested before confirmation.
        """
        set_call_id(call_id)
        context = self.store.require(call_id)
        async with context.lock:
            if context.phase == Phase.COMPLETION:
                return self._response(context, "")
            self._drive_to_completion(context, completion_type)
            self._close(context, completion_type)
            return self._response(context, "", directives={"action": "end_call"})

    def _drive_to_completion(self, context: ConversationContext, completion_type: CompletionType) -> None:
        sm = context.state_machine
        if completion_type == CompletionType.CALLER_DISCONNECT:
            sm.transition(DialogTrigger.CALLER_CANCELLED)
            return
        if completion_type == CompletionType.SUCCESS:
            if sm.current_phase == Phase.CONFIRMATION:
                context.slots.confirm_all()
                sm.transition(DialogTrigger.CALLER_CONFIRMED)
            sm.transition(DialogTrigger.HANDOFF_COMPLETE)
            return
        if sm.current_phase != Phase.ESCALATION:
            sm.transition(_ESCALATION_TRIGGERS[completion_type])
        sm.transition(DialogTrigger.ESCALATION_COMPLETE)

    def _close(self, context: ConversationContext, completion_type: CompletionType) -> None:
        """Flush the final record to persistence and evict the call."""
        context.completion_type = completion_type
        snapshot = self._snapshot(context)
        self.persistence.dispatch(
            context.call_id,
            {"event": "call_completed", **snapshot},
            {
                "turns": context.turn_count,
                "duration": self._clock() - context.started_at,
                "slot_stats": context.slots.get_stats(),
                "slot_quality": (
                    context.slots.quality(context.clarification_count).model_dump()
                ),
                "model_usage": [u.model_dump() for u in context.model_usage.values()],
            },
        )
        self.store.remove(context.call_id)
        self._completed[context.call_id] = snapshot
        while len(self._completed) > COMPLETED_RETENTION:
            self._completed.popitem(last=False)
        logger.info(
            "Call completed: %s after %d turns (%s)",
            completion_type.value, context.turn_count,
            " -> ".join(context.state_machine.get_phase_trace()),
        )

    async def reap_idle(self) -> list[str]:
        """Complete every call idle past the configured timeout."""
        reaped = []
        for call_id in self.store.find_idle():
            try:
                await self.complete_conversation(call_id, CompletionType.TIMEOUT)
            except ConversationNotFoundError:
                continue
            reaped.append(call_id)
        return reaped

    def start_reaper(self, interval: float = 30.0) -> None:
        async def _reap(call_id: str) -> None:
            try:
                await self.complete_conversation(call_id, CompletionType.TIMEOUT)
            except ConversationNotFoundError:
                logger.debug("Idle call already gone")

        self.store.start_reaper(_reap, interval)

    async def shutdown(self) -> None:
        await self.store.stop_reaper()
        await self.persistence.drain()

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def get_conversation_state(self, call_id: str) -> dict[str, Any]:
        """Redacted snapshot of an active or recently completed call.

        Raises:
            ConversationNotFoundError: If the call is unknown.
        """
        context = self.store.get(call_id)
        if context is not None:
            return self._snapshot(context)
        if call_id in self._completed:
            return self._completed[call_id]
        raise ConversationNotFoundError(f"No conversation for call '{call_id}'")

    def validate_handoff_readiness(self, call_id: str) -> ReadinessReport:
        return self.store.require(call_id).slots.readiness()

    def _snapshot(self, context: ConversationContext) -> dict[str, Any]:
        routing = context.routing
        return {
            "call_id": context.call_id,
            "caller": context.caller_token,
            "phase": context.phase.value,
            "phase_trace": context.state_machine.get_phase_trace(),
            "turn_count": context.turn_count,
            "completion_type": (
                context.completion_type.value if context.completion_type else None
            ),
            "consent": {
                "recording": context.consent.recording,
                "data_processing": context.consent.data_processing,
                "granted_at": (
                    context.consent.granted_at.isoformat() if context.consent.granted_at else None
                ),
            },
            "slots": context.slots.redacted_snapshot(self.redactor),
            "readiness": context.slots.readiness().model_dump(),
            "routing": {
                "provider_id": routing.provider_id,
                "model_id": routing.model_id,
                "tier": routing.tier.value if routing.tier else None,
                "last_promotion_turn": routing.last_promotion_turn,
                "decisions": [d.model_dump(mode="json") for d in routing.decisions],
            },
            "slot_quality": context.slots.quality(context.clarification_count).model_dump(),
            "usage": [u.model_dump() for u in context.model_usage.values()],
            "history": [t.model_dump(mode="json") for t in context.history],
        }

    # ------------------------------------------------------------------ #
    # Turn processing
    # ------------------------------------------------------------------ #

    async def process_turn(
        self, call_id: str, raw_input: str, hints: Optional[RoutingHints] = None
    ) -> DialogResponse:
        """Process one caller utterance and return what to say next."""
        set_call_id(call_id)
        context = self.store.get(call_id)
        if context is None:
            logger.warning("Turn for unknown call; starting a new conversation")
            return await self.initiate_conversation(call_id)

        async with context.lock:
            if context.phase == Phase.COMPLETION:
                return self._response(context, "")

            context.turn_count += 1
            context.last_activity = self._clock()
            phase_at_start = context.phase
            redaction = self.redactor.sanitize(raw_input, known_terms=context.known_terms())
            self._remember_names(context, redaction)

            outcome = await self._dispatch(context, raw_input, redaction, hints)

            if outcome.completion is None:
                context.last_prompt = outcome.prompt
            self._record_turn(context, phase_at_start, redaction, outcome)
            if outcome.completion is not None:
                self._close(context, outcome.completion)
            routing_reason = outcome.routed.decision.reason.value if outcome.routed else None
            return self._response(
                context,
                outcome.prompt,
                directives=outcome.directives,
                warnings=outcome.warnings,
                routing_reason=routing_reason,
            )

    async def _dispatch(
        self,
        context: ConversationContext,
        raw_input: str,
        redaction: RedactionResult,
        hints: Optional[RoutingHints],
    ) -> _TurnOutcome:
        dialog = self.config.dialog
        elapsed = self._clock() - context.started_at
        if context.turn_count > dialog.max_turns or elapsed > dialog.max_call_duration_sec:
            logger.warning("Call limits exceeded (turn %d, %.0fs)", context.turn_count, elapsed)
            return self._escalate(context, CompletionType.TIMEOUT, "timeout")

        signal = detect_signal(raw_input)
        if signal.signal == CallerSignal.ESCALATE:
            return self._escalate(
                context, CompletionType.ESCALATION, "emergency" if signal.emergency else "requested"
            )
        if signal.signal == CallerSignal.CANCEL:
            return self._cancel(context)
        if signal.signal == CallerSignal.REPEAT:
            return _TurnOutcome(prompt=context.last_prompt)

        if context.phase == Phase.GREETING:
            return self._handle_consent(context, raw_input)
        return await self._handle_model_turn(context, raw_input, redaction, hints)

    # ------------------------------------------------------------------ #
    # Phase handlers
    # ------------------------------------------------------------------ #

    def _handle_consent(self, context: ConversationContext, raw_input: str) -> _TurnOutcome:
        answer = classify_answer(raw_input)
        if answer == Answer.AFFIRM:
            context.consent.recording = True
            context.consent.data_processing = True
            context.consent.granted_at = self._now()
            context.state_machine.transition(DialogTrigger.CONSENT_GRANTED)
            logger.info("Consent captured")
            return _TurnOutcome(prompt=INTENT_PROMPT)

        if answer == Answer.NEGATE:
            logger.info("Consent declined")
            return self._escalate(
                context, CompletionType.ESCALATION, "consent_declined",
                trigger=DialogTrigger.CONSENT_DECLINED,
            )

        context.consent.attempts += 1
        context.clarification_count += 1
        if context.consent.attempts >= self.config.dialog.max_consent_attempts:
            return self._escalate(
                context, CompletionType.ESCALATION, "consent_declined",
                trigger=DialogTrigger.CONSENT_UNRESOLVED,
            )
        return _TurnOutcome(prompt=CONSENT_REASK)

    async def _handle_model_turn(
        self,
        context: ConversationContext,
        raw_input: str,
        redaction: RedactionResult,
        hints: Optional[RoutingHints],
    ) -> _TurnOutcome:
        slots = context.slots
        missing = slots.get_missing()
        request = TurnRequest(
            call_id=context.call_id,
            turn_number=context.turn_count,
            phase=context.phase.value,
            prompt_context=PromptContext(
                call_id=context.call_id,
                phase=context.phase.value,
                instructions=build_system_prompt(
                    context.phase.value, self.config.dialog.practice_name
                ),
                caller_input=redaction.text,
                recent_turns=[
                    f"caller: {t.caller_input} | agent: {t.reply}" for t in context.history
                ],
                missing_slots=missing,
                filled_slots=slots.filled_names(),
            ),
            missing_required=missing,
            required_total=len(self.config.slots.required_slots),
            clarification_count=context.clarification_count,
            ambiguity_markers=count_ambiguity_markers(raw_input),
            elapsed_fraction=(
                (self._clock() - context.started_at) / self.config.dialog.max_call_duration_sec
            ),
            input_has_personal_data=redaction.redacted,
            hints=hints,
            conversation_type=self._conversation_type(context),
        )

        try:
            routed = await self.engine.route(request, context.routing)
        except RoutingExhaustedError as exc:
            logger.error("Routing exhausted: %s", exc)
            outcome = self._escalate(context, CompletionType.TECHNICAL_ERROR, "technical_error")
            outcome.error = "routing_exhausted"
            return outcome
        except ProviderInvocationError as exc:
            context.consecutive_failures += 1
            logger.warning(
                "Turn failed (%d consecutive): %s", context.consecutive_failures, exc
            )
            if context.consecutive_failures >= self.config.dialog.max_consecutive_failures:
                outcome = self._escalate(
                    context, CompletionType.TECHNICAL_ERROR, "technical_error"
                )
            else:
                context.clarification_count += 1
                outcome = _TurnOutcome(prompt=APOLOGY_RETRY)
            outcome.error = "provider_invocation_failed"
            return outcome

        context.consecutive_failures = 0
        context.record_usage(
            routed.decision.provider_id,
            routed.decision.model_id,
            routed.tokens_used,
            routed.cost,
            routed.latency,
        )
        result = self._rehydrate(routed.result, redaction)

        if result.parse_error is not None:
            context.clarification_count += 1
            return _TurnOutcome(prompt=APOLOGY_RETRY, routed=routed, error="unparseable_output")
        if result.intent == CallerIntent.ESCALATE:
            outcome = self._escalate(context, CompletionType.ESCALATION, "requested")
            outcome.routed = routed
            return outcome
        if result.intent == CallerIntent.CANCEL:
            outcome = self._cancel(context)
            outcome.routed = routed
            return outcome

        if context.phase == Phase.CONFIRMATION:
            outcome = self._handle_confirmation(context, raw_input, result)
        else:
            outcome = self._handle_collection(context, result)
        outcome.routed = routed
        return outcome

    def _rehydrate(self, result: ModelResult, redaction: RedactionResult) -> ModelResult:
        """Swap this turn's tokens back into the reply and extracted values."""
        if not redaction.token_map:
            return result
        extracted = {
            name: ExtractedField(
                value=(
                    self.redactor.restore(f.value, redaction.token_map)
                    if isinstance(f.value, str) else f.value
                ),
                confidence=f.confidence,
            )
            for name, f in result.extracted.items()
        }
        return result.model_copy(update={
            "reply": self.redactor.restore(result.reply, redaction.token_map),
            "extracted": extracted,
        })

    def _handle_collection(self, context: ConversationContext, result: ModelResult) -> _TurnOutcome:
        slots = context.slots
        sm = context.state_machine
        if sm.current_phase == Phase.INTENT_CLASSIFICATION:
            if result.intent in (CallerIntent.BOOK, CallerIntent.PROVIDE_INFO) or result.extracted:
                sm.transition(DialogTrigger.BOOKING_INTENT)
            else:
                context.clarification_count += 1
                return _TurnOutcome(prompt=self._voice_safe(result.reply, INTENT_PROMPT))

        if result.disputed_fields:
            slots.dispute(result.disputed_fields)
        slots.apply_extraction(result.extracted, turn=context.turn_count)
        warnings = [w for w in slots.last_warnings if w.severity != WarningSeverity.LOW]

        readiness = slots.readiness()
        if readiness.ready:
            sm.transition(DialogTrigger.SLOTS_READY)
            return _TurnOutcome(prompt=build_readback_prompt(slots.summary()), warnings=warnings)

        next_slot = slots.get_next_missing()
        if next_slot is not None and slots.has_exceeded_retries(next_slot.name) and warnings:
            logger.warning("Retries exhausted for slot %s", next_slot.name)
            outcome = self._escalate(
                context, CompletionType.ESCALATION, "slot_retries_exhausted"
            )
            outcome.warnings = warnings
            return outcome

        if warnings:
            context.clarification_count += 1
            return _TurnOutcome(
                prompt=build_clarification_prompt(
                    warnings, next_slot.display_name if next_slot else None
                ),
                warnings=warnings,
            )

        if next_slot is not None:
            fallback = build_slot_question(next_slot.display_name)
        else:
            # Required slots are filled but their mean confidence is below the bar
            low = min(
                self.config.slots.required_slots,
                key=lambda name: slots.slots[name].confidence,
            )
            slots.dispute([low])
            context.clarification_count += 1
            defn = slots.get_definition(low)
            return _TurnOutcome(prompt=build_slot_question(defn.display_name if defn else low))
        return _TurnOutcome(prompt=self._voice_safe(result.reply, fallback))

    def _handle_confirmation(
        self, context: ConversationContext, raw_input: str, result: ModelResult
    ) -> _TurnOutcome:
        slots = context.slots
        sm = context.state_machine
        answer = classify_answer(raw_input)
        disputed = result.intent == CallerIntent.DISPUTE or bool(result.disputed_fields)
        confirmed = result.intent == CallerIntent.CONFIRM or (
            answer == Answer.AFFIRM and result.intent != CallerIntent.DISPUTE
        )

        if disputed or (answer == Answer.NEGATE and not confirmed):
            cleared = slots.dispute(result.disputed_fields)
            slots.apply_extraction(result.extracted, turn=context.turn_count)
            sm.transition(DialogTrigger.CALLER_DISPUTED)
            if slots.readiness().ready:
                sm.transition(DialogTrigger.SLOTS_READY)
                return _TurnOutcome(prompt=build_readback_prompt(slots.summary()))
            names = [
                d.display_name for d in slots.SLOT_DEFINITIONS if d.name in cleared
            ]
            if not names:
                next_slot = slots.get_next_missing()
                names = [next_slot.display_name] if next_slot else []
            return _TurnOutcome(prompt=build_dispute_prompt(names))

        if confirmed:
            readiness = slots.readiness()
            if not readiness.ready:
                # Values changed underneath the read-back; collect again
                sm.transition(DialogTrigger.CALLER_DISPUTED)
                next_slot = slots.get_next_missing()
                return _TurnOutcome(
                    prompt=build_slot_question(next_slot.display_name) if next_slot
                    else APOLOGY_RETRY
                )
            slots.confirm_all()
            sm.transition(DialogTrigger.CALLER_CONFIRMED)
            payload = HandoffPayload(
                call_id=context.call_id,
                slots=slots.to_handoff_dict(),
                confidence_score=readiness.confidence_score,
                warnings=[w.message for w in slots.warnings],
            )
            sm.transition(DialogTrigger.HANDOFF_COMPLETE)
            logger.info("Handoff ready (confidence %.2f)", readiness.confidence_score)
            return _TurnOutcome(
                prompt=HANDOFF_MESSAGE,
                directives={"action": "handoff", "payload": payload.model_dump(mode="json")},
                completion=CompletionType.SUCCESS,
            )

        if result.extracted:
            # Details added during the read-back are merged and read back again
            slots.apply_extraction(result.extracted, turn=context.turn_count)
            if slots.readiness().ready:
                return _TurnOutcome(prompt=build_readback_prompt(slots.summary()))
            sm.transition(DialogTrigger.CALLER_DISPUTED)
            next_slot = slots.get_next_missing()
            return _TurnOutcome(
                prompt=build_slot_question(next_slot.display_name) if next_slot
                else APOLOGY_RETRY
            )

        context.clarification_count += 1
        return _TurnOutcome(prompt=build_readback_prompt(slots.summary()))

    # ------------------------------------------------------------------ #
    # Terminal paths
    # ------------------------------------------------------------------ #

    def _escalate(
        self,
        context: ConversationContext,
        completion_type: CompletionType,
        reason: str,
        trigger: Optional[DialogTrigger] = None,
    ) -> _TurnOutcome:
        sm = context.state_machine
        sm.transition(trigger or _ESCALATION_TRIGGERS[completion_type])
        sm.transition(DialogTrigger.ESCALATION_COMPLETE)
        logger.info("Escalating to staff (%s)", reason)
        return _TurnOutcome(
            prompt=escalation_message(reason),
            directives={
                "action": "transfer",
                "reason": reason,
                "summary": context.slots.redacted_summary(self.redactor),
            },
            completion=completion_type,
        )

    def _cancel(self, context: ConversationContext) -> _TurnOutcome:
        context.state_machine.transition(DialogTrigger.CALLER_CANCELLED)
        logger.info("Caller cancelled the call")
        return _TurnOutcome(
            prompt=CANCEL_MESSAGE,
            directives={"action": "end_call"},
            completion=CompletionType.CALLER_DISCONNECT,
        )

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    def _conversation_type(context: ConversationContext) -> str:
        if context.slots.is_filled("appointment_type"):
            return str(context.slots.slots["appointment_type"].value)
        return UNCLASSIFIED

    @staticmethod
    def _voice_safe(reply: str, fallback: str) -> str:
        if not reply.strip():
            return fallback
        violations = check_reply(reply)
        if violations:
            logger.warning("Model reply replaced: %s", violations)
            return fallback
        return reply

    def _remember_names(self, context: ConversationContext, redaction: RedactionResult) -> None:
        for token, original in redaction.token_map.items():
            if token.upper().startswith(f"[{PiiCategory.NAME.value}:"):
                context.sensitive_terms.add(original)

    def _record_turn(
        self,
        context: ConversationContext,
        phase: Phase,
        redaction: RedactionResult,
        outcome: _TurnOutcome,
    ) -> None:
        terms = context.known_terms()
        routed = outcome.routed
        record = TurnRecord(
            turn_number=context.turn_count,
            phase=phase.value,
            caller_input=redaction.text,
            reply=self.redactor.redact(outcome.prompt, terms),
            timestamp=self._now(),
            routing=routed.decision if routed else None,
            cache_hit=routed.cache_hit if routed else False,
            latency=routed.latency if routed else 0.0,
            tokens_used=routed.tokens_used if routed else 0,
            extraction_confidence=(
                routed.result.extraction_confidence() if routed else None
            ),
            warnings=[self.redactor.redact(w.message, terms) for w in outcome.warnings],
            error=outcome.error,
        )
        context.add_turn(record)
        self.persistence.dispatch(
            context.call_id,
            record.model_dump(mode="json"),
            {
                "phase_after": context.phase.value,
                "cache_hit": record.cache_hit,
                "latency": record.latency,
                "tokens_used": record.tokens_used,
            },
        )

    def _response(
        self,
        context: ConversationContext,
        prompt: str,
        directives: Optional[dict[str, Any]] = None,
        warnings: Optional[list[ValidationWarning]] = None,
        routing_reason: Optional[str] = None,
    ) -> DialogResponse:
        return DialogResponse(
            call_id=context.call_id,
            prompt=prompt,
            phase=context.phase.value,
            directives=directives or {},
            completion_type=context.completion_type,
            warnings=warnings or [],
            routing_reason=routing_reason,
        )
