"""Integration tests: dialog manager + routing + redaction + persistence together."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import pytest

from voice_router.conversation.dialog_manager import DialogManager
from voice_router.evaluation.metrics import MetricsGrouping
from voice_router.errors import ConversationNotFoundError, InvalidTransitionError
from voice_router.persistence import InMemoryPersistenceSink, PersistenceSink
from voice_router.privacy.redaction import TOKEN_PATTERN
from voice_router.prompts.prompt_templates import (
    APOLOGY_RETRY,
    CANCEL_MESSAGE,
    CONSENT_REASK,
    ESCALATION_MESSAGES,
    FALLBACK_MESSAGE,
    HANDOFF_MESSAGE,
    INTENT_PROMPT,
)
from voice_router.schemas.conversation_schema import CompletionType
from voice_router.schemas.routing_schema import CallerIntent, ModelResult, RoutingHints

from tests.conftest import TODAY, booking_result, build_registry, extraction, make_config

CALL_ID = "CA-100"


class Script:
    """Responder that plays results back in order; callable steps receive the prompt context."""

    def __init__(self, *steps: Any) -> None:
        self.steps = list(steps)
        self.contexts = []

    def __call__(self, context):
        self.contexts.append(context)
        if not self.steps:
            return ModelResult(
                reply="Could you tell me a bit more?", intent=CallerIntent.UNCLEAR, confidence=0.9
            )
        step = self.steps.pop(0)
        return step(context) if callable(step) else step


def token_in(text: str, category: str) -> str:
    return next(t for t in TOKEN_PATTERN.findall(text) if t.upper().startswith(f"[{category}:"))


BOOK_PHYSICAL = ModelResult(
    reply="Sure, I can help with that. Could I get the patient's name?",
    intent=CallerIntent.BOOK,
    extracted=extraction(appointment_type=("annual physical", 0.9)),
    confidence=0.9,
)


def give_name(context) -> ModelResult:
    return ModelResult(
        reply="Thanks. And the date of birth?",
        intent=CallerIntent.PROVIDE_INFO,
        extracted=extraction(patient_name_or_callback=(token_in(context.caller_input, "NAME"), 0.9)),
        confidence=0.9,
    )


def give_dob(context) -> ModelResult:
    return ModelResult(
        reply="Got it.",
        intent=CallerIntent.PROVIDE_INFO,
        extracted=extraction(date_of_birth=(token_in(context.caller_input, "DATE"), 0.9)),
        confidence=0.9,
    )


CONFIRMED = ModelResult(reply="Great.", intent=CallerIntent.CONFIRM, confidence=0.95)


def make_manager(
    clock,
    redactor,
    script: Callable[[Any], Any],
    sink: Optional[PersistenceSink] = None,
    now: Optional[Callable[[], datetime]] = None,
    **config,
):
    app_config = make_config(**config)
    extra = {"now": now} if now is not None else {}
    return DialogManager(
        app_config,
        build_registry(app_config, script),
        sink=sink or InMemoryPersistenceSink(),
        redactor=redactor,
        clock=clock,
        today=lambda: TODAY,
        **extra,
    )


async def start_and_consent(manager: DialogManager, call_id: str = CALL_ID) -> None:
    await manager.initiate_conversation(call_id, "+1 555 010 7788")
    response = await manager.process_turn(call_id, "yes that's fine")
    assert response.prompt == INTENT_PROMPT


async def reach_confirmation(manager: DialogManager) -> None:
    await start_and_consent(manager)
    await manager.process_turn(CALL_ID, "I need to book an annual physical")
    await manager.process_turn(CALL_ID, "my name is Maria Lopez")
    response = await manager.process_turn(CALL_ID, "Maria Lopez was born March 4th, 1985")
    assert response.phase == "confirmation"


@pytest.mark.asyncio
class TestFullBookingFlow:
    """Simulate a complete intake call from greeting to handoff."""

    async def test_happy_path(self, clock, redactor):
        script = Script(BOOK_PHYSICAL, give_name, give_dob, CONFIRMED)
        sink = InMemoryPersistenceSink()
        manager = make_manager(clock, redactor, script, sink=sink)

        greeting = await manager.initiate_conversation(CALL_ID, "+1 555 010 7788")
        assert "recorded" in greeting.prompt
        assert greeting.phase == "greeting"
        assert greeting.directives == {"action": "listen"}

        consent = await manager.process_turn(CALL_ID, "yes that's fine")
        assert consent.phase == "intent_classification"
        assert script.contexts == []

        intent = await manager.process_turn(CALL_ID, "I need to book an annual physical")
        assert intent.phase == "slot_filling"
        assert intent.prompt == BOOK_PHYSICAL.reply
        assert intent.routing_reason == "initial-selection"

        await manager.process_turn(CALL_ID, "my name is Maria Lopez")
        readback = await manager.process_turn(CALL_ID, "Maria Lopez was born March 4th, 1985")
        assert readback.phase == "confirmation"
        assert "Maria Lopez" in readback.prompt
        assert "March 04, 1985" in readback.prompt
        assert readback.prompt.endswith("Is that all correct?")

        done = await manager.process_turn(CALL_ID, "yes that's right")
        assert done.prompt == HANDOFF_MESSAGE
        assert done.completion_type == CompletionType.SUCCESS
        assert done.is_terminal
        assert done.phase == "completion"
        assert done.directives["action"] == "handoff"
        payload = done.directives["payload"]
        assert payload["call_id"] == CALL_ID
        assert payload["slots"] == {
            "patient_name_or_callback": "Maria Lopez",
            "date_of_birth": "March 04, 1985",
            "appointment_type": "annual physical",
        }
        assert payload["confidence_score"] == pytest.approx(0.9)

    async def test_providers_only_see_redacted_text(self, clock, redactor):
        script = Script(BOOK_PHYSICAL, give_name, give_dob, CONFIRMED)
        manager = make_manager(clock, redactor, script)
        await reach_confirmation(manager)
        for context in script.contexts:
            assert "Maria" not in context.caller_input
            assert "March" not in context.caller_input
            assert all("Maria" not in turn for turn in context.recent_turns)

    async def test_persisted_records_are_redacted(self, clock, redactor):
        script = Script(BOOK_PHYSICAL, give_name, give_dob, CONFIRMED)
        sink = InMemoryPersistenceSink()
        manager = make_manager(clock, redactor, script, sink=sink)
        await reach_confirmation(manager)
        await manager.process_turn(CALL_ID, "yes that's right")
        await manager.persistence.drain()

        records = sink.for_call(CALL_ID)
        assert len(records) == 6
        assert records[-1]["turn"]["event"] == "call_completed"
        assert records[-1]["turn"]["completion_type"] == "success"
        dumped = json.dumps(records, default=str)
        for raw in ("Maria", "Lopez", "March 04", "March 4th", "010 7788"):
            assert raw not in dumped

    async def test_state_after_completion(self, clock, redactor):
        script = Script(BOOK_PHYSICAL, give_name, give_dob, CONFIRMED)
        manager = make_manager(clock, redactor, script)
        await reach_confirmation(manager)
        await manager.process_turn(CALL_ID, "yes that's right")

        state = manager.get_conversation_state(CALL_ID)
        assert state["phase"] == "completion"
        assert state["completion_type"] == "success"
        assert state["phase_trace"] == [
            "greeting", "intent_classification", "slot_filling",
            "confirmation", "handoff", "completion",
        ]
        assert state["consent"]["recording"]
        assert state["slots"]["patient_name_or_callback"]["value"].startswith("[NAME:")
        assert state["slots"]["patient_name_or_callback"]["status"] == "confirmed"
        assert state["slots"]["appointment_type"]["value"] == "annual physical"
        assert state["caller"].startswith("[PHONE:")
        assert state["routing"]["provider_id"] == "fast_a"
        assert len(state["routing"]["decisions"]) == 4
        assert state["turn_count"] == 5

    async def test_dispute_returns_to_slot_filling(self, clock, redactor):
        disputed = ModelResult(
            reply="Sorry about that.",
            intent=CallerIntent.DISPUTE,
            disputed_fields=["date_of_birth"],
            confidence=0.9,
        )
        script = Script(BOOK_PHYSICAL, give_name, give_dob, disputed)
        manager = make_manager(clock, redactor, script)
        await reach_confirmation(manager)

        response = await manager.process_turn(CALL_ID, "no, the date of birth is wrong")
        assert response.phase == "slot_filling"
        assert response.prompt == "No problem. What's the correct date of birth?"
        report = manager.validate_handoff_readiness(CALL_ID)
        assert not report.ready
        assert report.missing == ["date_of_birth"]

    async def test_readback_repeated_when_answer_unclear(self, clock, redactor):
        unclear = ModelResult(reply="", intent=CallerIntent.UNCLEAR, confidence=0.9)
        script = Script(BOOK_PHYSICAL, give_name, give_dob, unclear)
        manager = make_manager(clock, redactor, script)
        await reach_confirmation(manager)

        response = await manager.process_turn(CALL_ID, "hmm let me think")
        assert response.phase == "confirmation"
        assert response.prompt.startswith("Here's what I have")
        assert not response.is_terminal

    async def test_optional_detail_during_readback(self, clock, redactor):
        def name_and_dob(context) -> ModelResult:
            return ModelResult(
                reply="Thanks.",
                intent=CallerIntent.PROVIDE_INFO,
                extracted=extraction(
                    patient_name_or_callback=(token_in(context.caller_input, "NAME"), 0.9),
                    date_of_birth=(token_in(context.caller_input, "DATE"), 0.9),
                ),
                confidence=0.9,
            )

        script = Script(name_and_dob, booking_result(provider_preference=("Dr. Kim", 0.6)))
        manager = make_manager(
            clock, redactor, script,
            slots={"required_slots": ("patient_name_or_callback", "date_of_birth")},
        )
        await start_and_consent(manager)

        first = await manager.process_turn(
            CALL_ID, "my name is Maria Lopez and I was born March 4th, 1985"
        )
        assert first.phase == "confirmation"
        second = await manager.process_turn(CALL_ID, "and I'd like to see Dr. Kim")
        assert second.phase == "confirmation"
        assert "Dr. Kim" in second.prompt
        assert second.prompt.endswith("Is that all correct?")

        report = manager.validate_handoff_readiness(CALL_ID)
        assert report.ready
        assert report.missing == []
        slot = manager.store.require(CALL_ID).slots.slots["provider_preference"]
        assert slot.value == "Dr. Kim"
        assert slot.confidence == pytest.approx(0.6)


@pytest.mark.asyncio
class TestConsent:
    async def test_declined(self, clock, redactor):
        manager = make_manager(clock, redactor, Script())
        await manager.initiate_conversation(CALL_ID)
        response = await manager.process_turn(CALL_ID, "no thanks")
        assert response.completion_type == CompletionType.ESCALATION
        assert response.directives["action"] == "transfer"
        assert response.directives["reason"] == "consent_declined"

    async def test_unclear_twice_escalates(self, clock, redactor):
        manager = make_manager(clock, redactor, Script())
        await manager.initiate_conversation(CALL_ID)
        first = await manager.process_turn(CALL_ID, "hmm")
        assert first.prompt == CONSENT_REASK
        assert first.phase == "greeting"
        second = await manager.process_turn(CALL_ID, "what is this about")
        assert second.completion_type == CompletionType.ESCALATION
        assert manager.get_conversation_state(CALL_ID)["phase_trace"][-2:] == [
            "escalation", "completion",
        ]

    async def test_consent_never_reaches_a_provider(self, clock, redactor):
        script = Script()
        manager = make_manager(clock, redactor, script)
        await start_and_consent(manager)
        assert script.contexts == []

    async def test_consent_time_comes_from_injected_clock(self, clock, redactor):
        granted = datetime(2025, 6, 2, 14, 30, tzinfo=timezone.utc)
        manager = make_manager(clock, redactor, Script(), now=lambda: granted)
        await start_and_consent(manager)
        context = manager.store.require(CALL_ID)
        assert context.consent.granted_at == granted
        assert context.history[-1].timestamp == granted
        state = manager.get_conversation_state(CALL_ID)
        assert state["consent"]["granted_at"] == granted.isoformat()


@pytest.mark.asyncio
class TestCallerSignals:
    async def test_cancel(self, clock, redactor):
        manager = make_manager(clock, redactor, Script())
        await start_and_consent(manager)
        response = await manager.process_turn(CALL_ID, "never mind, forget it")
        assert response.prompt == CANCEL_MESSAGE
        assert response.completion_type == CompletionType.CALLER_DISCONNECT
        assert response.directives == {"action": "end_call"}

    async def test_past_cancellation_is_a_booking_request(self, clock, redactor):
        script = Script(ModelResult(
            reply="Happy to book a follow-up. Could I get the patient's name?",
            intent=CallerIntent.BOOK,
            confidence=0.9,
        ))
        manager = make_manager(clock, redactor, script)
        await start_and_consent(manager)
        response = await manager.process_turn(
            CALL_ID, "I had to cancel last month, can I book a follow-up"
        )
        assert response.prompt != CANCEL_MESSAGE
        assert response.completion_type is None
        assert response.phase == "slot_filling"
        assert len(script.contexts) == 1

    async def test_repeat_replays_last_prompt(self, clock, redactor):
        script = Script()
        manager = make_manager(clock, redactor, script)
        await start_and_consent(manager)
        response = await manager.process_turn(CALL_ID, "sorry, could you say that again?")
        assert response.prompt == INTENT_PROMPT
        assert response.phase == "intent_classification"
        assert script.contexts == []

    async def test_emergency(self, clock, redactor):
        manager = make_manager(clock, redactor, Script())
        await start_and_consent(manager)
        response = await manager.process_turn(CALL_ID, "I'm having chest pain right now")
        assert "911" in response.prompt
        assert response.completion_type == CompletionType.ESCALATION
        assert response.directives["reason"] == "emergency"

    async def test_emergency_during_greeting(self, clock, redactor):
        manager = make_manager(clock, redactor, Script())
        await manager.initiate_conversation(CALL_ID)
        response = await manager.process_turn(CALL_ID, "this is an emergency")
        assert response.directives["reason"] == "emergency"

    async def test_human_request(self, clock, redactor):
        manager = make_manager(clock, redactor, Script())
        await start_and_consent(manager)
        response = await manager.process_turn(CALL_ID, "can I talk to a person please")
        assert response.directives["reason"] == "requested"
        assert response.completion_type == CompletionType.ESCALATION

    async def test_model_escalate_intent(self, clock, redactor):
        script = Script(ModelResult(intent=CallerIntent.ESCALATE, confidence=0.9))
        manager = make_manager(clock, redactor, script)
        await start_and_consent(manager)
        response = await manager.process_turn(CALL_ID, "I would rather sort this out with staff")
        assert response.completion_type == CompletionType.ESCALATION


@pytest.mark.asyncio
class TestFailures:
    async def test_all_breakers_open(self, clock, redactor):
        manager = make_manager(clock, redactor, Script())
        await start_and_consent(manager)
        for provider_id in ("fast_a", "fast_b", "mid", "big"):
            for _ in range(3):
                manager.health.record_outcome(provider_id, success=False, latency=0.1)
        response = await manager.process_turn(CALL_ID, "I need to book an annual physical")
        assert response.prompt == FALLBACK_MESSAGE
        assert response.completion_type == CompletionType.TECHNICAL_ERROR

    async def test_repeated_invocation_failures(self, clock, redactor):
        sink = InMemoryPersistenceSink()
        manager = make_manager(clock, redactor, Script(), sink=sink)
        await start_and_consent(manager)
        for provider_id in ("fast_a", "fast_b"):
            manager.engine.registry.get(provider_id).provider.fail_next(2)

        first = await manager.process_turn(CALL_ID, "I need to book an annual physical")
        assert first.prompt == APOLOGY_RETRY
        assert not first.is_terminal
        second = await manager.process_turn(CALL_ID, "an annual physical please")
        assert second.completion_type == CompletionType.TECHNICAL_ERROR

        await manager.persistence.drain()
        errors = [r["turn"].get("error") for r in sink.for_call(CALL_ID)]
        assert errors.count("provider_invocation_failed") == 2

    async def test_connection_error_in_adapter_apologises(self, clock, redactor):
        def dropped(context):
            raise ConnectionResetError("socket closed")

        sink = InMemoryPersistenceSink()
        manager = make_manager(clock, redactor, dropped, sink=sink)
        await start_and_consent(manager)
        response = await manager.process_turn(CALL_ID, "I need a physical")
        assert response.prompt == APOLOGY_RETRY
        assert not response.is_terminal
        assert manager.health.snapshot()["fast_a"]["consecutive_failures"] >= 1
        await manager.persistence.drain()
        assert sink.for_call(CALL_ID)[-1]["turn"]["error"] == "provider_invocation_failed"

    async def test_failed_turn_then_success_resets(self, clock, redactor):
        manager = make_manager(clock, redactor, Script(BOOK_PHYSICAL))
        await start_and_consent(manager)
        for provider_id in ("fast_a", "fast_b"):
            manager.engine.registry.get(provider_id).provider.fail_next()
        await manager.process_turn(CALL_ID, "I need to book an annual physical")
        response = await manager.process_turn(CALL_ID, "an annual physical please")
        assert response.phase == "slot_filling"
        assert manager.store.require(CALL_ID).consecutive_failures == 0

    async def test_unparseable_output(self, clock, redactor):
        manager = make_manager(clock, redactor, Script("definitely not json"))
        await start_and_consent(manager)
        response = await manager.process_turn(CALL_ID, "I need to book an annual physical")
        assert response.prompt == APOLOGY_RETRY
        assert response.phase == "intent_classification"

    async def test_unsafe_reply_replaced(self, clock, redactor):
        script = Script(ModelResult(reply="As an AI, I cannot help.", intent=CallerIntent.UNCLEAR))
        manager = make_manager(clock, redactor, script)
        await start_and_consent(manager)
        response = await manager.process_turn(CALL_ID, "what services do you offer")
        assert response.prompt == INTENT_PROMPT

    async def test_turn_limit(self, clock, redactor):
        manager = make_manager(clock, redactor, Script(BOOK_PHYSICAL), dialog={"max_turns": 2})
        await start_and_consent(manager)
        await manager.process_turn(CALL_ID, "I need to book an annual physical")
        response = await manager.process_turn(CALL_ID, "my name is Maria Lopez")
        assert response.completion_type == CompletionType.TIMEOUT
        assert response.directives["reason"] == "timeout"

    async def test_call_duration_limit(self, clock, redactor):
        manager = make_manager(clock, redactor, Script())
        await start_and_consent(manager)
        clock.advance(manager.config.dialog.max_call_duration_sec + 1)
        response = await manager.process_turn(CALL_ID, "I need to book an annual physical")
        assert response.completion_type == CompletionType.TIMEOUT

    async def test_slot_retries_exhausted(self, clock, redactor):
        bad_name = ModelResult(
            reply="Sorry?",
            intent=CallerIntent.PROVIDE_INFO,
            extracted=extraction(patient_name_or_callback=("x", 0.9)),
            confidence=0.9,
        )
        script = Script(BOOK_PHYSICAL, bad_name, bad_name, bad_name)
        manager = make_manager(clock, redactor, script)
        await start_and_consent(manager)
        await manager.process_turn(CALL_ID, "I need to book an annual physical")

        first = await manager.process_turn(CALL_ID, "hmm")
        assert first.prompt.startswith("Sorry, I couldn't quite use the patient name or callback")
        assert first.warnings
        await manager.process_turn(CALL_ID, "erm")
        last = await manager.process_turn(CALL_ID, "well")
        assert last.completion_type == CompletionType.ESCALATION
        assert last.directives["reason"] == "slot_retries_exhausted"
        assert last.prompt == ESCALATION_MESSAGES["slot_retries_exhausted"]

    async def test_persistence_failure_does_not_break_the_call(self, clock, redactor, caplog):
        class FailingSink(PersistenceSink):
            async def persist(self, call_id, redacted_turn, metrics):
                raise RuntimeError("disk full")

        manager = make_manager(clock, redactor, Script(), sink=FailingSink())
        with caplog.at_level(logging.ERROR, logger="voice_router.persistence"):
            await start_and_consent(manager)
            await manager.persistence.drain()
        assert "Persistence failed" in caplog.text


@pytest.mark.asyncio
class TestRoutingThroughDialog:
    async def test_complexity_hint_promotes(self, clock, redactor):
        manager = make_manager(clock, redactor, Script(BOOK_PHYSICAL))
        await start_and_consent(manager)
        response = await manager.process_turn(
            CALL_ID, "I need to book an annual physical", hints=RoutingHints(complexity_score=0.9)
        )
        assert response.routing_reason == "promotion-by-complexity"
        assert manager.get_conversation_state(CALL_ID)["routing"]["tier"] == "enhanced"

    async def test_breaker_fallback_mid_call(self, clock, redactor):
        script = Script(BOOK_PHYSICAL, give_name)
        manager = make_manager(clock, redactor, script)
        await start_and_consent(manager)
        await manager.process_turn(CALL_ID, "I need to book an annual physical")
        for _ in range(3):
            manager.health.record_outcome("fast_a", success=False, latency=0.1)
        response = await manager.process_turn(CALL_ID, "my name is Maria Lopez")
        assert response.routing_reason == "fallback-after-breaker-open"
        assert manager.get_conversation_state(CALL_ID)["routing"]["provider_id"] == "fast_b"

    async def test_usage_and_slot_quality_reported(self, clock, redactor):
        script = Script(BOOK_PHYSICAL, give_name, give_dob, CONFIRMED)
        sink = InMemoryPersistenceSink()
        manager = make_manager(clock, redactor, script, sink=sink)
        await reach_confirmation(manager)
        await manager.process_turn(CALL_ID, "yes that's right")

        state = manager.get_conversation_state(CALL_ID)
        assert len(state["usage"]) == 1
        usage = state["usage"][0]
        assert (usage["provider_id"], usage["model_id"]) == ("fast_a", "small-1")
        assert usage["turn_count"] == 4
        assert usage["tokens_used"] == 480
        assert usage["estimated_cost"] == pytest.approx(0.048)

        quality = state["slot_quality"]
        assert quality["first_turn_accuracy"] == 1.0
        assert quality["average_slot_confidence"] == pytest.approx(0.9)
        assert quality["clarification_turns"] == 0
        assert quality["efficiency_score"] == 1.0

        await manager.persistence.drain()
        final_metrics = sink.for_call(CALL_ID)[-1]["metrics"]
        assert final_metrics["slot_quality"] == quality
        assert final_metrics["model_usage"] == state["usage"]

    async def test_conversation_type_follows_appointment_type(self, clock, redactor):
        script = Script(BOOK_PHYSICAL, give_name)
        manager = make_manager(clock, redactor, script)
        await start_and_consent(manager)
        await manager.process_turn(CALL_ID, "I need to book an annual physical")
        await manager.process_turn(CALL_ID, "my name is Maria Lopez")
        report = manager.metrics.performance(group_by=MetricsGrouping.CONVERSATION_TYPE)
        assert report["unclassified"]["requests"] == 1
        assert report["annual physical"]["requests"] == 1


@pytest.mark.asyncio
class TestLifecycle:
    async def test_unknown_call_starts_conversation(self, clock, redactor):
        manager = make_manager(clock, redactor, Script())
        response = await manager.process_turn("CA-new", "hello?")
        assert response.phase == "greeting"
        assert "recorded" in response.prompt

    async def test_initiate_twice_repeats_prompt(self, clock, redactor):
        manager = make_manager(clock, redactor, Script())
        first = await manager.initiate_conversation(CALL_ID)
        second = await manager.initiate_conversation(CALL_ID)
        assert second.prompt == first.prompt
        assert len(manager.store) == 1

    async def test_complete_conversation(self, clock, redactor):
        manager = make_manager(clock, redactor, Script())
        await start_and_consent(manager)
        response = await manager.complete_conversation(CALL_ID, CompletionType.CALLER_DISCONNECT)
        assert response.completion_type == CompletionType.CALLER_DISCONNECT
        assert response.directives == {"action": "end_call"}
        assert manager.store.get(CALL_ID) is None
        assert manager.get_conversation_state(CALL_ID)["completion_type"] == "caller_disconnect"

    async def test_success_requires_confirmation(self, clock, redactor):
        manager = make_manager(clock, redactor, Script())
        await manager.initiate_conversation(CALL_ID)
        with pytest.raises(InvalidTransitionError):
            await manager.complete_conversation(CALL_ID, CompletionType.SUCCESS)

    async def test_complete_unknown_call(self, clock, redactor):
        manager = make_manager(clock, redactor, Script())
        with pytest.raises(ConversationNotFoundError):
            await manager.complete_conversation("CA-missing", CompletionType.TIMEOUT)

    async def test_state_of_unknown_call(self, clock, redactor):
        manager = make_manager(clock, redactor, Script())
        with pytest.raises(ConversationNotFoundError):
            manager.get_conversation_state("CA-missing")

    async def test_reap_idle(self, clock, redactor):
        manager = make_manager(clock, redactor, Script())
        await manager.initiate_conversation("CA-idle")
        await manager.initiate_conversation("CA-busy")
        clock.advance(manager.config.dialog.idle_timeout_sec - 1)
        await manager.process_turn("CA-busy", "yes")
        clock.advance(1)
        assert await manager.reap_idle() == ["CA-idle"]
        assert manager.get_conversation_state("CA-idle")["completion_type"] == "timeout"
        assert manager.store.get("CA-busy") is not None

    async def test_shutdown_drains_persistence(self, clock, redactor):
        sink = InMemoryPersistenceSink()
        manager = make_manager(clock, redactor, Script(), sink=sink)
        await start_and_consent(manager)
        await manager.shutdown()
        assert manager.persistence.pending == 0
        assert len(sink.for_call(CALL_ID)) == 1
