"""Tests for import chains and module integrity.

Ensures all public modules can be imported without errors and
that re-exports from __init__.py files work correctly.
"""

import pytest


class TestSchemaImports:
    def test_import_conversation_schema(self):
        from voice_router.schemas.conversation_schema import (
            CompletionType, DialogResponse, ReadinessReport, TurnRecord,
        )
        assert CompletionType.CALLER_DISCONNECT == "caller_disconnect"
        assert DialogResponse(call_id="c", prompt="", phase="greeting").is_terminal is False

    def test_import_appointment_schema(self):
        from voice_router.schemas.appointment_schema import HandoffPayload, PreferredSchedule
        assert PreferredSchedule().describe() == "no preference"

    def test_import_routing_schema(self):
        from voice_router.schemas.routing_schema import (
            PROMOTION_LADDER, QUALITY_FLOOR, CostOptimization, ModelResult, ModelTier,
            QualityRequirement, RoutingReason,
        )
        assert PROMOTION_LADDER[0] == ModelTier.PRIMARY
        assert ModelTier.SPECIALIZED not in PROMOTION_LADDER
        assert RoutingReason.CACHE_HIT == "cache-hit"
        assert ModelResult().intent == "unclear"
        assert QUALITY_FLOOR[QualityRequirement.HIGH] == ModelTier.ENHANCED
        assert CostOptimization("quality_first") == CostOptimization.QUALITY_FIRST


class TestConversationImports:
    def test_import_state_machine(self):
        from voice_router.conversation.state_machine import DialogStateMachine, Phase
        sm = DialogStateMachine()
        assert sm.current_phase == Phase.GREETING

    def test_import_slot_manager(self):
        from voice_router.config import SlotPolicyConfig
        from voice_router.conversation.slot_manager import Slots, SlotStatus
        slots = Slots(SlotPolicyConfig())
        assert slots.slots["date_of_birth"].status == SlotStatus.EMPTY

    def test_import_conversation_package(self):
        from voice_router.conversation import DialogManager, DialogStateMachine, Slots
        assert DialogManager is not None


class TestRoutingImports:
    def test_import_routing_package(self):
        from voice_router.routing import (
            CircuitState, HealthMonitor, ProviderRegistry, ResponseCache, RoutingEngine,
        )
        assert CircuitState.HALF_OPEN == "half_open"

    def test_provider_interface_is_abstract(self):
        from voice_router.routing.providers import ModelProvider
        with pytest.raises(TypeError):
            ModelProvider("nope")


class TestRegistry:
    def test_lookup_by_tier(self, config):
        from tests.conftest import build_registry, static_responder
        from voice_router.schemas.routing_schema import ModelTier
        registry = build_registry(config, static_responder())
        assert [m.provider_id for m in registry.candidates(ModelTier.PRIMARY)] == ["fast_a", "fast_b"]
        assert registry.candidates(ModelTier.SPECIALIZED) == []

    def test_get_unknown_provider_raises(self, config):
        from tests.conftest import build_registry, static_responder
        registry = build_registry(config, static_responder())
        with pytest.raises(KeyError, match="not registered"):
            registry.get("nonexistent_provider")

    def test_adapter_id_must_match_spec(self, config):
        from voice_router.routing.providers import ProviderRegistry, ScriptedProvider
        registry = ProviderRegistry()
        with pytest.raises(ValueError, match="does not match"):
            registry.register(config.providers[0], ScriptedProvider("other", lambda c: {}))

    def test_known_ids(self, config):
        from tests.conftest import build_registry, static_responder
        registry = build_registry(config, static_responder())
        assert "small-1" in registry.known_ids()
        assert "big" in registry.known_ids()


class TestPromptImports:
    def test_import_system_prompts(self):
        from voice_router.prompts.system_prompts import build_system_prompt
        prompt = build_system_prompt("slot_filling", "Riverside Family Health")
        assert "Riverside Family Health" in prompt
        assert '"confidence"' in prompt

    def test_unknown_phase_uses_slot_filling(self):
        from voice_router.prompts.system_prompts import PHASE_INSTRUCTIONS, build_system_prompt
        assert PHASE_INSTRUCTIONS["slot_filling"] in build_system_prompt("handoff", "x")

    def test_import_prompt_templates(self):
        from voice_router.prompts.prompt_templates import (
            build_dispute_prompt, build_slot_question, escalation_message,
        )
        assert build_slot_question("date of birth") == "Could I get the patient's date of birth?"
        assert "911" in escalation_message("emergency")
        assert escalation_message("unknown-reason") == escalation_message("requested")
        assert build_dispute_prompt([]).startswith("No problem")


class TestEvalImports:
    def test_import_metrics(self):
        from voice_router.evaluation import MetricsGrouping, RoutingMetrics
        assert RoutingMetrics().summary() == {"models": {}, "reasons": {}}
        assert RoutingMetrics().performance(group_by=MetricsGrouping.MODEL) == {}


class TestConfigImport:
    def test_import_config(self):
        from voice_router.config import settings
        assert settings.slots.required_slots
        assert settings.providers
        assert settings.slots.max_slot_retries >= 1
