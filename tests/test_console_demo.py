"""Tests for the offline console simulator and its rule-based responder."""

import pytest

from console_demo import ConsoleSession, keyword_responder
from voice_router.schemas.routing_schema import CallerIntent, PromptContext

from tests.conftest import make_config


def _context(text: str, phase: str = "slot_filling", missing=None) -> PromptContext:
    return PromptContext(
        call_id="console-test",
        phase=phase,
        instructions="",
        caller_input=text,
        missing_slots=missing if missing is not None else ["patient_name_or_callback"],
    )


class TestKeywordResponder:
    def test_extracts_appointment_type(self):
        result = keyword_responder(_context("I'd like to book an annual physical"))
        assert result.intent == CallerIntent.BOOK
        assert result.extracted["appointment_type"].value == "annual physical"
        assert result.reply == "Got it. Could I get the patient's name or callback number?"

    def test_copies_name_token(self):
        result = keyword_responder(_context("my name is [NAME:0a1b2c3d]"))
        assert result.extracted["patient_name_or_callback"].value == "[NAME:0a1b2c3d]"

    def test_date_token_needs_birth_context(self):
        result = keyword_responder(_context("next week on [DATE:0a1b2c3d]"))
        assert "date_of_birth" not in result.extracted
        result = keyword_responder(_context("she was born [DATE:0a1b2c3d]"))
        assert result.extracted["date_of_birth"].value == "[DATE:0a1b2c3d]"

    def test_hedged_input_lowers_confidence(self):
        result = keyword_responder(_context("maybe a checkup, I think"))
        assert result.confidence == pytest.approx(0.55)
        assert result.extracted["appointment_type"].confidence == pytest.approx(0.53)

    def test_confirmation_phase(self):
        assert keyword_responder(_context("yes", phase="confirmation")).intent == CallerIntent.CONFIRM
        assert keyword_responder(_context("no", phase="confirmation")).intent == CallerIntent.DISPUTE


@pytest.mark.asyncio
class TestConsoleSession:
    async def test_booking_scenario_completes(self, capsys):
        session = ConsoleSession(config=make_config(), scenario="booking")
        await session.run_scenario("booking")
        state = session.manager.get_conversation_state(session.call_id)
        assert state["completion_type"] == "success"
        out = capsys.readouterr().out
        assert "[Agent]" in out
        assert "ROUTING PERFORMANCE REPORT" in out

    async def test_outage_scenario_fails_over(self):
        session = ConsoleSession(config=make_config(), scenario="outage")
        await session.run_scenario("outage")
        state = session.manager.get_conversation_state(session.call_id)
        assert state["completion_type"] == "success"
        assert any(d["reason"] == "failover-after-error" for d in state["routing"]["decisions"])

    async def test_unknown_scenario(self, capsys):
        session = ConsoleSession(config=make_config())
        await session.run_scenario("nope")
        assert "Unknown scenario" in capsys.readouterr().out
