"""
Offline console simulator: runs intake calls through the real decision engine.

Uses the real dialog manager, redaction boundary, routing engine, health
monitor and cache, with three in-process simulated providers standing in for
the model APIs. No API keys, no network calls.

Usage:
    python console_demo.py
    python console_demo.py --scenario booking
    python console_demo.py --scenario promotion
    python console_demo.py --scenario outage
"""

import argparse
import asyncio
import re
import sys
from typing import Optional

from voice_router.config import AppConfig, settings
from voice_router.conversation.dialog_manager import DialogManager
from voice_router.conversation.signals import AMBIGUITY_MARKERS, Answer, classify_answer
from voice_router.conversation.slot_manager import Slots, match_appointment_type
from voice_router.persistence import InMemoryPersistenceSink
from voice_router.routing.providers import ProviderRegistry, ScriptedProvider
from voice_router.schemas.conversation_schema import DialogResponse
from voice_router.schemas.routing_schema import (
    CallerIntent,
    ModelResult,
    ModelTier,
    PromptContext,
    RoutingHints,
)

BLUE = "\033[94m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
DIM = "\033[2m"
RESET = "\033[0m"
BOLD = "\033[1m"

_NAME_TOKEN = re.compile(r"\[NAME:[0-9a-f]{8}\]")
_PHONE_TOKEN = re.compile(r"\[PHONE:[0-9a-f]{8}\]")
_DATE_TOKEN = re.compile(r"\[DATE:[0-9a-f]{8}\]")
_TIME_WORDS = ("morning", "afternoon", "evening", "earliest", "asap", "first available")


def keyword_responder(context: PromptContext) -> ModelResult:
    """Rule-based stand-in for a model: reads redacted input, emits structured output."""
    text = context.caller_input
    lower = text.lower()
    hedged = any(marker in lower for marker in AMBIGUITY_MARKERS)
    base = 0.55 if hedged else 0.9
    extracted: dict[str, dict] = {}

    if context.phase == "confirmation":
        answer = classify_answer(text)
        intent = {
            Answer.AFFIRM: CallerIntent.CONFIRM,
            Answer.NEGATE: CallerIntent.DISPUTE,
        }.get(answer, CallerIntent.UNCLEAR)
        return ModelResult(reply="", intent=intent, confidence=base)

    name = _NAME_TOKEN.search(text) or _PHONE_TOKEN.search(text)
    if name:
        extracted["patient_name_or_callback"] = {"value": name.group(), "confidence": base}
    dob = _DATE_TOKEN.search(text)
    if dob and ("birth" in lower or "born" in lower or "date_of_birth" in context.missing_slots[:1]):
        extracted["date_of_birth"] = {"value": dob.group(), "confidence": base}
    appointment = match_appointment_type(text)
    if appointment:
        extracted["appointment_type"] = {"value": appointment, "confidence": base - 0.02}
    if any(word in lower for word in _TIME_WORDS):
        extracted["preferred_schedule"] = {"value": text, "confidence": base - 0.1}

    intent = CallerIntent.BOOK if extracted or "book" in lower else CallerIntent.UNCLEAR
    remaining = [s for s in context.missing_slots if s not in extracted]
    reply = ""
    if remaining:
        defn = Slots.get_definition(remaining[0])
        label = defn.display_name if defn else remaining[0]
        reply = f"Got it. Could I get the patient's {label}?"
    return ModelResult(
        reply=reply, intent=intent, extracted=extracted,
        confidence=base,
    )


def build_registry(config: AppConfig, latency: float = 0.01) -> ProviderRegistry:
    return ProviderRegistry.from_specs(
        config.providers,
        lambda spec: ScriptedProvider(spec.provider_id, keyword_responder, latency=latency),
    )


class ConsoleSession:
    """Plays a call through the dialog manager in the terminal."""

    # Pre-scripted scenarios for --scenario flag: (caller text, routing hints)
    SCENARIOS: dict[str, list[tuple[str, Optional[RoutingHints]]]] = {
        "booking": [
            ("yes, that's fine", None),
            ("I'd like to book an annual physical", None),
            ("my name is Maria Lopez", None),
            ("her date of birth is March 4th, 1985", None),
            ("yes, that's all correct", None),
        ],
        "promotion": [
            ("sure", None),
            ("um I think maybe a checkup or something, I'm not sure", None),
            ("my name is Daniel Reyes", RoutingHints(complexity_score=0.9)),
            ("he was born on 12/02/1990", None),
            ("it's for an annual physical", None),
            ("yes that's right", None),
        ],
        "outage": [
            ("okay", None),
            ("I need to book a follow up", None),
            ("my name is Priya Natarajan", None),
            ("date of birth 1979-07-21", None),
            ("yes", None),
        ],
    }

    MAX_INPUT_LENGTH = 500

    def __init__(self, config: AppConfig = settings, scenario: Optional[str] = None) -> None:
        self.config = config
        self.registry = build_registry(config)
        self.sink = InMemoryPersistenceSink()
        self.manager = DialogManager(config, self.registry, sink=self.sink)
        self.call_id = f"console-{scenario or 'interactive'}"
        if scenario == "outage":
            primary = self.registry.candidates(ModelTier.PRIMARY)[0]
            primary.provider.set_down()

    def agent_say(self, text: str) -> None:
        print(f"{GREEN}{BOLD}[Agent]{RESET} {GREEN}{text}{RESET}")

    def system_log(self, text: str) -> None:
        print(f"{DIM}  >> {text}{RESET}")

    def _show(self, response: DialogResponse) -> None:
        if response.prompt:
            self.agent_say(response.prompt)
        details = f"Phase: {response.phase}"
        if response.routing_reason:
            details += f" | routing: {response.routing_reason}"
        if response.completion_type:
            details += f" | completed: {response.completion_type.value}"
        self.system_log(details)
        for warning in response.warnings:
            self.system_log(f"{YELLOW}warning: {warning.message}{RESET}")
        if response.directives.get("action") in ("handoff", "transfer"):
            self.system_log(f"Directive: {response.directives['action']}")

    def _banner(self, title: str) -> None:
        print()
        print(f"{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  VOICE INTAKE ROUTER - {title}{RESET}")
        print(f"{BOLD}  Practice: {self.config.dialog.practice_name}{RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")
        print()

    def _footer(self) -> None:
        state = self.manager.get_conversation_state(self.call_id)
        print(f"\n{BOLD}{'=' * 60}{RESET}")
        print(f"{DIM}  Phase trace: {' -> '.join(state['phase_trace'])}{RESET}")
        for decision in state["routing"]["decisions"]:
            print(
                f"{DIM}  Routed: {decision['provider_id']}/{decision['model_id']} "
                f"({decision['reason']}, attempt {decision['attempt']}){RESET}"
            )
        print(f"{DIM}  Persisted records: {len(self.sink.for_call(self.call_id))}{RESET}")
        print(self.manager.metrics.format_report())

    async def run_scenario(self, scenario: str) -> None:
        """Auto-play a pre-scripted scenario for demo purposes."""
        steps = self.SCENARIOS.get(scenario)
        if not steps:
            print(f"{RED}Unknown scenario: {scenario}{RESET}")
            return

        self._banner(f"Scenario: {scenario}")
        self._show(await self.manager.initiate_conversation(self.call_id, "+1 555 010 7788"))
        for text, hints in steps:
            print(f"\n{BLUE}[Caller] {RESET}{text}")
            response = await self.manager.process_turn(self.call_id, text, hints)
            self._show(response)
            if response.is_terminal:
                break
        await self.manager.shutdown()
        self._footer()

    async def run(self) -> None:
        self._banner("Console Demo (type 'quit' to exit)")
        response = await self.manager.initiate_conversation(self.call_id, "")
        self._show(response)

        while not response.is_terminal:
            user_input = (await asyncio.to_thread(input, f"\n{BLUE}[Caller] {RESET}")).strip()
            if not user_input:
                continue
            if user_input.lower() in ("quit", "exit", "q"):
                print(f"\n{DIM}Session ended.{RESET}")
                return
            if len(user_input) > self.MAX_INPUT_LENGTH:
                self.agent_say("That was quite long. Could you keep it brief for me?")
                continue
            response = await self.manager.process_turn(self.call_id, user_input)
            self._show(response)

        await self.manager.shutdown()
        self._footer()


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Offline intake call simulator.")
    parser.add_argument(
        "--scenario",
        choices=sorted(ConsoleSession.SCENARIOS),
        default=None,
        help="Auto-play a scripted call instead of reading from stdin.",
    )
    args = parser.parse_args(argv)

    session = ConsoleSession(scenario=args.scenario)
    if args.scenario:
        asyncio.run(session.run_scenario(args.scenario))
    else:
        asyncio.run(session.run())


if __name__ == "__main__":
    main(sys.argv[1:])
