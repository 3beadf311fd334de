"""
Finite state machine for the intake dialog phases.

Every call moves through an explicit phase graph:

    greeting -> intent_classification -> slot_filling -> confirmation
             -> {handoff | escalation} -> completion

Escalation and cancellation are reachable from any phase that is not yet
complete. Anything not listed in TRANSITIONS is rejected, so the dialog stays
deterministic on top of probabilistic model output.

Usage:
    sm = DialogStateMachine()
    sm.transition(DialogTrigger.CONSENT_GRANTED)
    assert sm.current_phase == Phase.INTENT_CLASSIFICATION
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from voice_router.errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    """All phases of an intake call."""
    GREETING = "greeting"
    INTENT_CLASSIFICATION = "intent_classification"
    SLOT_FILLING = "slot_filling"
    CONFIRMATION = "confirmation"
    HANDOFF = "handoff"
    ESCALATION = "escalation"
    COMPLETION = "completion"


class DialogTrigger(str, Enum):
    """Events that cause phase transitions."""
    CONSENT_GRANTED = "consent_granted"
    CONSENT_DECLINED = "consent_declined"
    CONSENT_UNRESOLVED = "consent_unresolved"
    BOOKING_INTENT = "booking_intent"
    SLOTS_READY = "slots_ready"
    CALLER_CONFIRMED = "caller_confirmed"
    CALLER_DISPUTED = "caller_disputed"
    HANDOFF_COMPLETE = "handoff_complete"
    ESCALATION_REQUESTED = "escalation_requested"
    LIMIT_EXCEEDED = "limit_exceeded"
    TECHNICAL_FAILURE = "technical_failure"
    ESCALATION_COMPLETE = "escalation_complete"
    CALLER_CANCELLED = "caller_cancelled"


@dataclass
class Transition:
    """A single valid phase transition. ``from_phase=None`` matches any open phase."""
    from_phase: Optional[Phase]
    to_phase: Phase
    trigger: DialogTrigger


@dataclass
class PhaseEntry:
    """Recorded history entry for a phase visit."""
    phase: Phase
    entered_at: datetime
    trigger: Optional[DialogTrigger] = None


class DialogStateMachine:
    """Deterministic phase tracker for one call."""

    TRANSITIONS: list[Transition] = [
        # --- Greeting / consent ---
        Transition(Phase.GREETING, Phase.INTENT_CLASSIFICATION, DialogTrigger.CONSENT_GRANTED),
        Transition(Phase.GREETING, Phase.ESCALATION, DialogTrigger.CONSENT_DECLINED),
        Transition(Phase.GREETING, Phase.ESCALATION, DialogTrigger.CONSENT_UNRESOLVED),

        # --- Collection ---
        Transition(Phase.INTENT_CLASSIFICATION, Phase.SLOT_FILLING, DialogTrigger.BOOKING_INTENT),
        Transition(Phase.SLOT_FILLING, Phase.CONFIRMATION, DialogTrigger.SLOTS_READY),

        # --- Confirmation gate ---
        Transition(Phase.CONFIRMATION, Phase.HANDOFF, DialogTrigger.CALLER_CONFIRMED),
        Transition(Phase.CONFIRMATION, Phase.SLOT_FILLING, DialogTrigger.CALLER_DISPUTED),

        # --- Terminal paths ---
        Transition(Phase.HANDOFF, Phase.COMPLETION, DialogTrigger.HANDOFF_COMPLETE),
        Transition(Phase.ESCALATION, Phase.COMPLETION, DialogTrigger.ESCALATION_COMPLETE),

        # --- From any open phase ---
        Transition(None, Phase.ESCALATION, DialogTrigger.ESCALATION_REQUESTED),
        Transition(None, Phase.ESCALATION, DialogTrigger.LIMIT_EXCEEDED),
        Transition(None, Phase.ESCALATION, DialogTrigger.TECHNICAL_FAILURE),
        Transition(None, Phase.COMPLETION, DialogTrigger.CALLER_CANCELLED),
    ]

    def __init__(self, now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)) -> None:
        self._now = now
        self._current_phase = Phase.GREETING
        self._history: list[PhaseEntry] = [PhaseEntry(phase=Phase.GREETING, entered_at=now())]

    @property
    def current_phase(self) -> Phase:
        return self._current_phase

    def _matches(self, t: Transition, trigger: DialogTrigger) -> bool:
        if t.trigger != trigger:
            return False
        if t.from_phase is None:
            return (
                self._current_phase != Phase.COMPLETION
                and self._current_phase != t.to_phase
            )
        return t.from_phase == self._current_phase

    def can_transition(self, trigger: DialogTrigger) -> bool:
        return any(self._matches(t, trigger) for t in self.TRANSITIONS)

    def transition(self, trigger: DialogTrigger) -> Phase:
        """
        Execute a phase transition.

        Raises:
            InvalidTransitionError: If no valid transition exists.
        """
        for t in self.TRANSITIONS:
            if self._matches(t, trigger):
                old_phase = self._current_phase
                self._current_phase = t.to_phase
                self._history.append(PhaseEntry(
                    phase=self._current_phase,
                    entered_at=self._now(),
                    trigger=trigger,
                ))
                logger.debug(
                    "Phase transition: %s -> %s (trigger: %s)",
                    old_phase.value, self._current_phase.value, trigger.value,
                )
                return self._current_phase

        valid = [t.value for t in self.get_valid_triggers()]
        raise InvalidTransitionError(
            f"No valid transition from '{self._current_phase.value}' "
            f"with trigger '{trigger.value}'. Valid triggers: {valid}"
        )

    def get_valid_triggers(self) -> list[DialogTrigger]:
        """Return all triggers valid from the current phase."""
        return [t.trigger for t in self.TRANSITIONS if self._matches(t, t.trigger)]

    def get_history(self) -> list[PhaseEntry]:
        return list(self._history)

    def get_phase_trace(self) -> list[str]:
        """Return ordered list of phase names visited."""
        return [entry.phase.value for entry in self._history]

    def is_terminal(self) -> bool:
        return self._current_phase == Phase.COMPLETION
