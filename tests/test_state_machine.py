"""Tests for the dialog phase state machine."""

from datetime import datetime, timedelta, timezone

import pytest

from voice_router.conversation.state_machine import (
    DialogStateMachine,
    DialogTrigger,
    Phase,
)
from voice_router.errors import InvalidTransitionError


def _to_confirmation(sm: DialogStateMachine) -> None:
    sm.transition(DialogTrigger.CONSENT_GRANTED)
    sm.transition(DialogTrigger.BOOKING_INTENT)
    sm.transition(DialogTrigger.SLOTS_READY)


class TestInitialState:
    def test_starts_in_greeting(self, state_machine):
        assert state_machine.current_phase == Phase.GREETING

    def test_initial_history_has_one_entry(self, state_machine):
        history = state_machine.get_history()
        assert len(history) == 1
        assert history[0].trigger is None

    def test_not_terminal_at_start(self, state_machine):
        assert not state_machine.is_terminal()


class TestGreeting:
    def test_consent_granted_moves_to_intent(self, state_machine):
        assert state_machine.transition(DialogTrigger.CONSENT_GRANTED) == Phase.INTENT_CLASSIFICATION

    def test_consent_declined_escalates(self, state_machine):
        assert state_machine.transition(DialogTrigger.CONSENT_DECLINED) == Phase.ESCALATION

    def test_consent_unresolved_escalates(self, state_machine):
        assert state_machine.transition(DialogTrigger.CONSENT_UNRESOLVED) == Phase.ESCALATION

    def test_cannot_skip_to_slot_filling(self, state_machine):
        with pytest.raises(InvalidTransitionError):
            state_machine.transition(DialogTrigger.BOOKING_INTENT)

    def test_rejected_transition_leaves_phase_unchanged(self, state_machine):
        with pytest.raises(InvalidTransitionError):
            state_machine.transition(DialogTrigger.SLOTS_READY)
        assert state_machine.current_phase == Phase.GREETING
        assert len(state_machine.get_history()) == 1


class TestCollectionFlow:
    def test_booking_intent_to_slot_filling(self, state_machine):
        state_machine.transition(DialogTrigger.CONSENT_GRANTED)
        assert state_machine.transition(DialogTrigger.BOOKING_INTENT) == Phase.SLOT_FILLING

    def test_slots_ready_to_confirmation(self, state_machine):
        _to_confirmation(state_machine)
        assert state_machine.current_phase == Phase.CONFIRMATION

    def test_dispute_returns_to_slot_filling(self, state_machine):
        _to_confirmation(state_machine)
        assert state_machine.transition(DialogTrigger.CALLER_DISPUTED) == Phase.SLOT_FILLING

    def test_confirmation_then_handoff_completes(self, state_machine):
        _to_confirmation(state_machine)
        state_machine.transition(DialogTrigger.CALLER_CONFIRMED)
        assert state_machine.current_phase == Phase.HANDOFF
        state_machine.transition(DialogTrigger.HANDOFF_COMPLETE)
        assert state_machine.is_terminal()

    def test_handoff_requires_confirmation(self, state_machine):
        state_machine.transition(DialogTrigger.CONSENT_GRANTED)
        state_machine.transition(DialogTrigger.BOOKING_INTENT)
        with pytest.raises(InvalidTransitionError):
            state_machine.transition(DialogTrigger.CALLER_CONFIRMED)


class TestWildcardTransitions:
    @pytest.mark.parametrize("trigger", [
        DialogTrigger.ESCALATION_REQUESTED,
        DialogTrigger.LIMIT_EXCEEDED,
        DialogTrigger.TECHNICAL_FAILURE,
    ])
    def test_escalation_from_slot_filling(self, state_machine, trigger):
        state_machine.transition(DialogTrigger.CONSENT_GRANTED)
        state_machine.transition(DialogTrigger.BOOKING_INTENT)
        assert state_machine.transition(trigger) == Phase.ESCALATION

    def test_escalation_from_greeting(self, state_machine):
        assert state_machine.transition(DialogTrigger.ESCALATION_REQUESTED) == Phase.ESCALATION

    def test_cancel_from_confirmation_completes(self, state_machine):
        _to_confirmation(state_machine)
        assert state_machine.transition(DialogTrigger.CALLER_CANCELLED) == Phase.COMPLETION

    def test_no_escalation_while_already_escalating(self, state_machine):
        state_machine.transition(DialogTrigger.ESCALATION_REQUESTED)
        assert not state_machine.can_transition(DialogTrigger.LIMIT_EXCEEDED)

    def test_escalation_completes(self, state_machine):
        state_machine.transition(DialogTrigger.TECHNICAL_FAILURE)
        assert state_machine.transition(DialogTrigger.ESCALATION_COMPLETE) == Phase.COMPLETION


class TestTerminalPhase:
    def test_nothing_leaves_completion(self, state_machine):
        state_machine.transition(DialogTrigger.CALLER_CANCELLED)
        assert state_machine.get_valid_triggers() == []
        for trigger in DialogTrigger:
            assert not state_machine.can_transition(trigger)

    def test_transition_after_completion_raises(self, state_machine):
        state_machine.transition(DialogTrigger.CALLER_CANCELLED)
        with pytest.raises(InvalidTransitionError, match="completion"):
            state_machine.transition(DialogTrigger.ESCALATION_REQUESTED)


class TestHistory:
    def test_phase_trace(self, state_machine):
        _to_confirmation(state_machine)
        state_machine.transition(DialogTrigger.CALLER_DISPUTED)
        assert state_machine.get_phase_trace() == [
            "greeting", "intent_classification", "slot_filling", "confirmation", "slot_filling",
        ]

    def test_history_records_triggers_and_times(self):
        start = datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)
        ticks = iter(start + timedelta(seconds=i) for i in range(10))
        sm = DialogStateMachine(now=lambda: next(ticks))
        sm.transition(DialogTrigger.CONSENT_GRANTED)
        history = sm.get_history()
        assert history[1].trigger == DialogTrigger.CONSENT_GRANTED
        assert history[1].entered_at == start + timedelta(seconds=1)

    def test_get_history_returns_copy(self, state_machine):
        state_machine.get_history().clear()
        assert len(state_machine.get_history()) == 1

    def test_valid_triggers_from_greeting(self, state_machine):
        valid = set(state_machine.get_valid_triggers())
        assert DialogTrigger.CONSENT_GRANTED in valid
        assert DialogTrigger.CALLER_CANCELLED in valid
        assert DialogTrigger.SLOTS_READY not in valid
