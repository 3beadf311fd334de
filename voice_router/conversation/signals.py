"""
Deterministic caller-signal detection.

Some caller utterances must never depend on a model round trip: consent
answers, requests for a human, cancelling the call, asking to hear the last
prompt again. These are matched here with keyword rules before routing, and
the same module checks model replies for voice-persona violations after.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class CallerSignal(str, Enum):
    NONE = "none"
    ESCALATE = "escalate"
    CANCEL = "cancel"
    REPEAT = "repeat"


class Answer(str, Enum):
    AFFIRM = "affirm"
    NEGATE = "negate"
    UNCLEAR = "unclear"


@dataclass
class SignalResult:
    """Outcome of signal detection for one utterance."""
    signal: CallerSignal
    matched: Optional[str] = None
    emergency: bool = False

    @property
    def detected(self) -> bool:
        return self.signal != CallerSignal.NONE


EMERGENCY_KEYWORDS = [
    "chest pain", "can't breathe", "cannot breathe", "trouble breathing",
    "bleeding", "overdose", "stroke", "unconscious", "suicidal", "emergency",
]

HUMAN_KEYWORDS = [
    "real person", "speak to a person", "talk to a person", "speak to someone",
    "talk to someone", "human", "operator", "receptionist", "representative",
    "manager", "supervisor",
]

# Matched against whole clauses once leading and trailing fillers are stripped
CANCEL_PHRASES = [
    "never mind", "nevermind", "forget it", "forget about it", "cancel", "cancel that",
    "cancel the call", "cancel this call", "hang up", "i'm hanging up", "end the call",
    "goodbye", "bye", "bye bye",
]

CLAUSE_FILLERS = [
    "you know what", "thank you", "thanks", "actually", "okay", "ok", "oh", "um", "uh",
    "well", "no", "just", "please", "sorry", "then",
]

REPEAT_KEYWORDS = [
    "repeat that", "say that again", "say again", "come again", "what did you say",
    "didn't catch", "did not catch", "pardon",
]

AMBIGUITY_MARKERS = [
    "maybe", "not sure", "i think", "i guess", "either", "or something",
    "something like", "sort of", "kind of", "i don't know", "don't remember",
    "probably", "possibly", "actually", "wait", "um", "uh", "whatever",
]

_NEGATIVE = [
    "no", "nope", "nah", "don't", "do not", "not okay", "not ok", "decline",
    "rather not", "wrong", "incorrect", "that's not", "not right",
]
_POSITIVE = [
    "yes", "yeah", "yep", "yup", "sure", "okay", "ok", "fine", "agree", "consent",
    "go ahead", "absolutely", "of course", "correct", "right", "sounds good", "perfect",
]

FORBIDDEN_REPLY_PATTERNS = [
    "as an ai", "as a language model", "i'm just a computer", "i am an ai",
]
FORMATTING_VIOLATIONS = ["- ", "* ", "1. ", "## ", "**", "```"]


def _phrase(keyword: str) -> re.Pattern:
    return re.compile(rf"(?<![\w']){re.escape(keyword)}(?![\w'])", re.IGNORECASE)


_PATTERNS: dict[str, re.Pattern] = {
    kw: _phrase(kw)
    for kw in (
        EMERGENCY_KEYWORDS + HUMAN_KEYWORDS + REPEAT_KEYWORDS
        + AMBIGUITY_MARKERS + _NEGATIVE + _POSITIVE
    )
}

_CLAUSE_SPLIT = re.compile(r"[,.;:!?]+|\s+(?:and|but|so)\s+", re.IGNORECASE)
_FILLER = "|".join(re.escape(f) for f in CLAUSE_FILLERS)
_LEADING_FILLERS = re.compile(rf"^(?:(?:{_FILLER})\s+)+")
_TRAILING_FILLERS = re.compile(rf"(?:\s+(?:{_FILLER}))+$")


def _first_match(text: str, keywords: list[str]) -> Optional[str]:
    for keyword in keywords:
        if _PATTERNS[keyword].search(text):
            return keyword
    return None


def _cancel_phrase(text: str) -> Optional[str]:
    """Return the cancel phrase when some clause of ``text`` is nothing but one."""
    for clause in _CLAUSE_SPLIT.split(text.lower().replace("\u2019", "'")):
        clause = " ".join(clause.split())
        clause = _TRAILING_FILLERS.sub("", _LEADING_FILLERS.sub("", clause))
        if clause in CANCEL_PHRASES:
            return clause
    return None


def detect_signal(text: str) -> SignalResult:
    """
    Escalation beats cancellation beats repeat.

    Emergency, human and repeat keywords match anywhere in the utterance.
    Cancellation only counts when a whole clause is a cancel phrase.
    """
    matched = _first_match(text, EMERGENCY_KEYWORDS)
    if matched:
        logger.info("Emergency keyword detected: '%s'", matched)
        return SignalResult(CallerSignal.ESCALATE, matched, emergency=True)

    matched = _first_match(text, HUMAN_KEYWORDS)
    if matched:
        logger.info("Caller asked for a human: '%s'", matched)
        return SignalResult(CallerSignal.ESCALATE, matched)

    matched = _cancel_phrase(text)
    if matched:
        return SignalResult(CallerSignal.CANCEL, matched)

    matched = _first_match(text, REPEAT_KEYWORDS)
    if matched:
        return SignalResult(CallerSignal.REPEAT, matched)

    return SignalResult(CallerSignal.NONE)


def classify_answer(text: str) -> Answer:
    """Yes/no classification for consent and read-back confirmation."""
    if _first_match(text, ["i don't know", "not sure"]):
        return Answer.UNCLEAR
    negative = _first_match(text, _NEGATIVE)
    positive = _first_match(text, _POSITIVE)
    if negative and not positive:
        return Answer.NEGATE
    if positive and not negative:
        return Answer.AFFIRM
    if negative and positive:
        # "yes, but the date is wrong" corrects rather than confirms
        return Answer.NEGATE
    return Answer.UNCLEAR


def count_ambiguity_markers(text: str) -> int:
    return sum(1 for marker in AMBIGUITY_MARKERS if _PATTERNS[marker].search(text))


def check_reply(text: str) -> list[str]:
    """Return the voice-persona violations found in a model reply."""
    violations = []
    lower = text.lower()
    for pattern in FORBIDDEN_REPLY_PATTERNS:
        if pattern in lower:
            violations.append(f"persona_break: '{pattern}'")
    for fmt in FORMATTING_VIOLATIONS:
        if fmt in text:
            violations.append(f"formatting: '{fmt.strip()}'")
    return violations
