"""
Appointment slot model with confidence-aware merging and readiness scoring.

Model output is merged field by field. A value already held with higher
confidence is never replaced by a lower-confidence one, and malformed values
are rejected with a ValidationWarning rather than an exception. The dialog has
to survive partial or garbage extraction.

Usage:
    slots = Slots(policy)
    slots.apply_extraction({"date_of_birth": ExtractedField(value="1985-03-04", confidence=0.9)})
    report = slots.readiness()
    if report.ready:
        summary = slots.summary()
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from pydantic import ValidationError

from voice_router.config import SlotPolicyConfig
from voice_router.privacy.redaction import PERSONAL_FIELDS, Redactor
from voice_router.schemas.appointment_schema import PreferredSchedule, TimeOfDay
from voice_router.schemas.conversation_schema import (
    ReadinessReport,
    SlotQualityMetrics,
    ValidationWarning,
    WarningSeverity,
)
from voice_router.schemas.routing_schema import ExtractedField
from voice_router.utils import clamp, count_digits, normalize_phone, parse_date

logger = logging.getLogger(__name__)

MIN_NAME_LENGTH = 2
MIN_PHONE_DIGITS = 7
MAX_PHONE_DIGITS = 15
MAX_AGE_YEARS = 120

APPOINTMENT_TYPES: dict[str, list[str]] = {
    "new patient visit": ["new patient", "first visit", "establish care"],
    "follow-up": ["follow up", "follow-up", "followup", "check on", "results"],
    "annual physical": ["physical", "annual", "yearly", "checkup", "check-up", "wellness"],
    "sick visit": ["sick", "fever", "cough", "flu", "pain", "infection", "rash"],
    "vaccination": ["vaccine", "vaccination", "shot", "immunization", "booster"],
    "lab work": ["lab", "blood work", "bloodwork", "blood test"],
    "specialist consult": ["specialist", "consult", "referral", "cardiology", "dermatology"],
    "telehealth": ["telehealth", "video visit", "virtual", "phone visit"],
}

_TIME_OF_DAY_WORDS = {
    "morning": TimeOfDay.MORNING,
    "afternoon": TimeOfDay.AFTERNOON,
    "evening": TimeOfDay.EVENING,
    "earliest": TimeOfDay.EARLIEST_AVAILABLE,
    "asap": TimeOfDay.EARLIEST_AVAILABLE,
    "first available": TimeOfDay.EARLIEST_AVAILABLE,
}


class SlotStatus(str, Enum):
    """Lifecycle status of a slot value."""

    EMPTY = "empty"
    COLLECTED = "collected"
    FILLED = "filled"
    CONFIRMED = "confirmed"
    DISPUTED = "disputed"


# A validator returns (normalized_value, None) or (None, problem_description)
Validator = Callable[[Any, date], tuple[Any, Optional[str]]]


def match_appointment_type(text: str) -> Optional[str]:
    """Map free text onto a canonical appointment type, or None."""
    lower = text.lower().strip()
    for canonical, synonyms in APPOINTMENT_TYPES.items():
        if canonical in lower or (len(lower) >= 3 and lower in canonical):
            return canonical
        if any(s in lower for s in synonyms):
            return canonical
    return None


def _validate_name_or_callback(value: Any, today: date) -> tuple[Any, Optional[str]]:
    text = str(value).strip()
    if Redactor.is_token(text):
        return None, "value is still a redaction token"
    if count_digits(text) >= MIN_PHONE_DIGITS:
        digits = count_digits(text)
        if digits > MAX_PHONE_DIGITS:
            return None, f"callback number has {digits} digits"
        return normalize_phone(text), None
    if len(text) < MIN_NAME_LENGTH or not any(ch.isalpha() for ch in text):
        return None, f"'{text}' is not a usable name or callback number"
    return text.title(), None


def _validate_date_of_birth(value: Any, today: date) -> tuple[Any, Optional[str]]:
    parsed = value if isinstance(value, date) else parse_date(str(value))
    if parsed is None:
        return None, f"'{value}' is not a recognisable date"
    if parsed > today:
        return None, "date of birth is in the future"
    if today.year - parsed.year > MAX_AGE_YEARS:
        return None, f"date of birth is more than {MAX_AGE_YEARS} years ago"
    return parsed, None


def _validate_text(value: Any, today: date) -> tuple[Any, Optional[str]]:
    text = str(value).strip()
    if len(text) < MIN_NAME_LENGTH:
        return None, f"'{text}' is too short"
    return text, None


def _validate_appointment_type(value: Any, today: date) -> tuple[Any, Optional[str]]:
    matched = match_appointment_type(str(value))
    if matched is None:
        return None, f"'{value}' is not an appointment type we book"
    return matched, None


def _parse_schedule_text(text: str) -> Optional[PreferredSchedule]:
    lower = text.lower()
    parsed = parse_date(text)
    time_of_day = next(
        (tod for word, tod in _TIME_OF_DAY_WORDS.items() if word in lower),
        TimeOfDay.NO_PREFERENCE,
    )
    if parsed is None and time_of_day == TimeOfDay.NO_PREFERENCE:
        return None
    return PreferredSchedule(preferred_date=parsed, time_of_day=time_of_day)


def _validate_schedule(value: Any, today: date) -> tuple[Any, Optional[str]]:
    if isinstance(value, PreferredSchedule):
        schedule = value
    elif isinstance(value, dict):
        try:
            schedule = PreferredSchedule.model_validate(value)
        except ValidationError as exc:
            return None, f"schedule is malformed ({exc.error_count()} errors)"
    else:
        schedule = _parse_schedule_text(str(value))
        if schedule is None:
            return None, f"'{value}' is not a schedule preference we understand"

    if schedule.range_start and schedule.range_end and schedule.range_start > schedule.range_end:
        return None, "schedule range ends before it starts"
    earliest = schedule.earliest_date()
    if earliest is not None and earliest < today:
        return None, "requested date is in the past"
    return schedule, None


@dataclass(frozen=True)
class SlotDefinition:
    """Schema for a single slot to collect."""

    name: str
    display_name: str
    validator: Validator
    prompt_hint: str = ""
    personal: bool = False


@dataclass
class SlotValue:
    """Current state and history of a collected slot."""

    value: Any = None
    confidence: float = 0.0
    status: SlotStatus = SlotStatus.EMPTY
    attempts: int = 0
    source_turn: Optional[int] = None
    correction_history: list[str] = field(default_factory=list)


class Slots:
    """
    Collected appointment data for one call.

    Required-set membership and confidence thresholds come from
    ``SlotPolicyConfig`` so different intake policies share one model.
    """

    SLOT_DEFINITIONS: list[SlotDefinition] = [
        SlotDefinition(
            name="patient_name_or_callback",
            display_name="name or callback number",
            validator=_validate_name_or_callback,
            prompt_hint="Ask for the patient's name, or a callback number",
            personal=True,
        ),
        SlotDefinition(
            name="date_of_birth",
            display_name="date of birth",
            validator=_validate_date_of_birth,
            prompt_hint="Ask for the patient's date of birth",
            personal=True,
        ),
        SlotDefinition(
            name="appointment_type",
            display_name="reason for the visit",
            validator=_validate_appointment_type,
            prompt_hint="Ask what the appointment is for",
        ),
        SlotDefinition(
            name="preferred_schedule",
            display_name="preferred day and time",
            validator=_validate_schedule,
            prompt_hint="Ask when they would like to come in",
        ),
        SlotDefinition(
            name="provider_preference",
            display_name="preferred provider",
            validator=_validate_text,
            prompt_hint="Ask if they have a preferred doctor",
        ),
        SlotDefinition(
            name="insurance_plan",
            display_name="insurance plan",
            validator=_validate_text,
            prompt_hint="Ask which insurance plan they have",
        ),
        SlotDefinition(
            name="special_requirements",
            display_name="special requirements",
            validator=_validate_text,
            prompt_hint="Ask if they need any accommodations",
            personal=True,
        ),
    ]

    def __init__(
        self,
        policy: SlotPolicyConfig,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self.policy = policy
        self._today = today or date.today
        self.slots: dict[str, SlotValue] = {
            defn.name: SlotValue() for defn in self.SLOT_DEFINITIONS
        }
        self.warnings: list[ValidationWarning] = []
        self.last_warnings: list[ValidationWarning] = []

    @classmethod
    def get_definition(cls, name: str) -> Optional[SlotDefinition]:
        for defn in cls.SLOT_DEFINITIONS:
            if defn.name == name:
                return defn
        return None

    # ------------------------------------------------------------------ #
    # Merging
    # ------------------------------------------------------------------ #

    @staticmethod
    def _coerce(raw: Any) -> tuple[Any, float]:
        if isinstance(raw, ExtractedField):
            return raw.value, raw.confidence
        if isinstance(raw, Mapping):
            return raw.get("value"), float(raw.get("confidence", 0.0))
        if isinstance(raw, tuple) and len(raw) == 2:
            return raw[0], float(raw[1])
        return raw, 0.0

    def apply_extraction(
        self, partial: Mapping[str, Any], turn: Optional[int] = None
    ) -> "Slots":
        """Merge newly extracted fields; lower confidence never displaces higher."""
        today = self._today()
        warnings: list[ValidationWarning] = []

        for name, raw in partial.items():
            defn = self.get_definition(name)
            if defn is None:
                warnings.append(ValidationWarning(
                    severity=WarningSeverity.LOW,
                    message=f"Ignored unknown field '{name}'",
                    affected_field=name,
                ))
                continue

            value, confidence = self._coerce(raw)
            if value is None or (isinstance(value, str) and not value.strip()):
                continue
            confidence = clamp(confidence)

            slot = self.slots[name]
            slot.attempts += 1
            normalized, problem = defn.validator(value, today)
            if problem is not None:
                logger.debug("Slot '%s' rejected: %s", name, problem)
                warnings.append(ValidationWarning(
                    severity=WarningSeverity.MEDIUM,
                    message=f"The {defn.display_name} could not be used: {problem}",
                    affected_field=name,
                    recommended_action=defn.prompt_hint,
                ))
                continue

            if slot.value is not None and slot.confidence > confidence:
                logger.debug(
                    "Slot '%s' kept existing value (%.2f > %.2f)",
                    name, slot.confidence, confidence,
                )
                continue

            if slot.value is not None and slot.value != normalized:
                slot.correction_history.append(self.display_value(name))
            slot.value = normalized
            slot.confidence = confidence
            slot.source_turn = turn
            slot.status = (
                SlotStatus.FILLED if confidence >= self.policy.min_slot_confidence
                else SlotStatus.COLLECTED
            )

        warnings.extend(self._cross_field_warnings())
        self.last_warnings = warnings
        self.warnings.extend(warnings)
        return self

    def _cross_field_warnings(self) -> list[ValidationWarning]:
        dob = self.slots["date_of_birth"].value
        schedule = self.slots["preferred_schedule"].value
        if not isinstance(dob, date) or not isinstance(schedule, PreferredSchedule):
            return []
        earliest = schedule.earliest_date()
        if earliest is None or earliest >= dob:
            return []
        self._clear("preferred_schedule", SlotStatus.EMPTY)
        return [ValidationWarning(
            severity=WarningSeverity.HIGH,
            message="The requested appointment date is before the date of birth",
            affected_field="preferred_schedule",
            recommended_action="Ask again when they would like to come in",
        )]

    def _clear(self, name: str, status: SlotStatus) -> None:
        slot = self.slots[name]
        if slot.value is not None:
            slot.correction_history.append(self.display_value(name))
        slot.value = None
        slot.confidence = 0.0
        slot.status = status

    def dispute(self, names: list[str]) -> list[str]:
        """Clear values the caller says are wrong so they get collected again."""
        cleared = []
        for name in names:
            if name in self.slots and self.slots[name].value is not None:
                self._clear(name, SlotStatus.DISPUTED)
                cleared.append(name)
        logger.info("Caller disputed %d slot(s): %s", len(cleared), cleared)
        return cleared

    def confirm_all(self) -> None:
        """Mark filled slots as confirmed after explicit caller approval."""
        for name in self.slots:
            if self.is_filled(name):
                self.slots[name].status = SlotStatus.CONFIRMED
        logger.info("All filled slots confirmed by caller")

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def is_filled(self, name: str) -> bool:
        slot = self.slots[name]
        return slot.value is not None and slot.confidence >= self.policy.min_slot_confidence

    def get_missing(self) -> list[str]:
        """Required slots that are not filled, in collection order."""
        required = set(self.policy.required_slots)
        return [
            d.name for d in self.SLOT_DEFINITIONS
            if d.name in required and not self.is_filled(d.name)
        ]

    def get_next_missing(self) -> Optional[SlotDefinition]:
        missing = self.get_missing()
        return self.get_definition(missing[0]) if missing else None

    def readiness(self) -> ReadinessReport:
        """Ready iff every required slot is filled and their mean confidence clears the bar."""
        missing = self.get_missing()
        filled_required = [
            self.slots[name].confidence
            for name in self.policy.required_slots
            if self.is_filled(name)
        ]
        if not self.policy.required_slots:
            score = 1.0
        elif filled_required:
            score = sum(filled_required) / len(filled_required)
        else:
            score = 0.0

        threshold = self.policy.readiness_threshold
        meets = score >= threshold or math.isclose(score, threshold, abs_tol=1e-9)
        return ReadinessReport(
            ready=not missing and meets,
            missing=missing,
            confidence_score=round(score, 6),
        )

    def has_exceeded_retries(self, name: str) -> bool:
        return self.slots[name].attempts >= self.policy.max_slot_retries

    def display_value(self, name: str) -> str:
        value = self.slots[name].value
        if value is None:
            return ""
        if isinstance(value, PreferredSchedule):
            return value.describe()
        if isinstance(value, date):
            return value.strftime("%B %d, %Y")
        return str(value)

    def filled_names(self) -> list[str]:
        return [d.name for d in self.SLOT_DEFINITIONS if self.is_filled(d.name)]

    def known_personal_terms(self) -> list[str]:
        """Personal values given so far; later mentions get redacted without cues."""
        terms = []
        for defn in self.SLOT_DEFINITIONS:
            if defn.personal and self.slots[defn.name].value is not None:
                terms.append(self.display_value(defn.name))
        return terms

    def summary(self) -> str:
        """Generate read-back text for the confirmation step."""
        parts = [
            f"{d.display_name} {self.display_value(d.name)}"
            for d in self.SLOT_DEFINITIONS
            if self.is_filled(d.name)
        ]
        if not parts:
            return "I don't have any details yet."
        return "Here's what I have: " + ", ".join(parts) + "."

    def redacted_summary(self, redactor: Redactor) -> str:
        return redactor.redact(self.summary(), known_terms=self.known_personal_terms())

    def redacted_snapshot(self, redactor: Redactor) -> dict[str, dict[str, Any]]:
        """Log-safe view of every slot."""
        snapshot = {}
        for defn in self.SLOT_DEFINITIONS:
            slot = self.slots[defn.name]
            shown: Optional[str] = None
            if slot.value is not None:
                display = self.display_value(defn.name)
                category = PERSONAL_FIELDS.get(defn.name)
                shown = (
                    redactor.token_for(category, display) if category is not None
                    else redactor.redact(display)
                )
            snapshot[defn.name] = {
                "value": shown,
                "confidence": slot.confidence,
                "status": slot.status.value,
            }
        return snapshot

    def to_handoff_dict(self) -> dict[str, str]:
        """Export filled slot values for the scheduling handoff."""
        return {
            d.name: self.display_value(d.name)
            for d in self.SLOT_DEFINITIONS
            if self.is_filled(d.name)
        }

    def get_stats(self) -> dict[str, Any]:
        """Slot collection statistics for evaluation."""
        total_attempts = sum(s.attempts for s in self.slots.values())
        corrections = sum(len(s.correction_history) for s in self.slots.values())
        required = len(self.policy.required_slots)
        filled = sum(1 for name in self.policy.required_slots if self.is_filled(name))
        return {
            "total_attempts": total_attempts,
            "total_corrections": corrections,
            "slots_filled": filled,
            "slots_required": required,
            "fill_rate": filled / required if required else 0,
            "warnings": len(self.warnings),
        }

    def quality(self, clarification_turns: int = 0) -> SlotQualityMetrics:
        """
        Collection quality across every filled slot.

        First-turn accuracy counts slots filled on their first attempt and
        never corrected. Efficiency is filled slots over filled slots plus
        clarification turns and corrections, so a call with no rework scores 1.0.
        """
        filled = [self.slots[name] for name in self.filled_names()]
        if not filled:
            return SlotQualityMetrics(clarification_turns=clarification_turns)
        first_time = sum(1 for s in filled if s.attempts == 1 and not s.correction_history)
        corrections = sum(len(s.correction_history) for s in self.slots.values())
        return SlotQualityMetrics(
            first_turn_accuracy=first_time / len(filled),
            average_slot_confidence=sum(s.confidence for s in filled) / len(filled),
            clarification_turns=clarification_turns,
            efficiency_score=len(filled) / (len(filled) + clarification_turns + corrections),
        )
