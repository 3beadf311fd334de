"""Scripted caller-facing lines that never depend on a model round trip."""

from typing import Optional

from voice_router.schemas.conversation_schema import ValidationWarning

FALLBACK_MESSAGE = (
    "I'm sorry, I'm having some trouble on my end. "
    "Let me connect you with a member of our team."
)

APOLOGY_RETRY = "Sorry, I didn't quite get that. Could you say that again?"

CONSENT_REASK = (
    "Sorry, I just need a yes or no. Is it okay if this call is recorded "
    "and your details are used to book your appointment?"
)

INTENT_PROMPT = "Thank you. How can I help you today?"

HANDOFF_MESSAGE = (
    "Perfect, I've passed your details to our scheduling team. "
    "They'll confirm your appointment shortly. Thanks for calling!"
)

CANCEL_MESSAGE = "No problem at all. Thanks for calling, goodbye."

ESCALATION_MESSAGES: dict[str, str] = {
    "emergency": (
        "If this is a medical emergency, please hang up and dial 911. "
        "I'm connecting you with our staff right now."
    ),
    "requested": "Of course, let me transfer you to a member of our team.",
    "consent_declined": (
        "No problem. Let me connect you with a member of our team who can help you directly."
    ),
    "timeout": (
        "I want to make sure you get taken care of, so I'm connecting you "
        "with a member of our team."
    ),
    "slot_retries_exhausted": (
        "I'm having trouble getting that detail right, so let me connect you "
        "with a member of our team who can finish your booking."
    ),
    "technical_error": FALLBACK_MESSAGE,
}


def build_greeting(practice_name: str) -> str:
    return (
        f"Thanks for calling {practice_name}. This call may be recorded, and the "
        f"details you share are used to book your appointment. Is that okay with you?"
    )


def build_slot_question(display_name: str) -> str:
    return f"Could I get the patient's {display_name}?"


def build_clarification_prompt(
    warnings: list[ValidationWarning], next_display_name: Optional[str]
) -> str:
    """Turn the first validation warning into a short re-ask."""
    if not warnings:
        return build_slot_question(next_display_name) if next_display_name else APOLOGY_RETRY
    field = warnings[0].affected_field or "that"
    label = field.replace("_", " ")
    return f"Sorry, I couldn't quite use the {label} you gave me. Could you say it again?"


def build_readback_prompt(summary: str) -> str:
    return f"{summary} Is that all correct?"


def build_dispute_prompt(display_names: list[str]) -> str:
    if not display_names:
        return "No problem. What would you like to change?"
    return f"No problem. What's the correct {display_names[0]}?"


def escalation_message(reason: str) -> str:
    return ESCALATION_MESSAGES.get(reason, ESCALATION_MESSAGES["requested"])
