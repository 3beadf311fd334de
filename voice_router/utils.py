"""Shared utilities used across the decision engine."""

import re
from datetime import date, datetime
from typing import Optional

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%m-%d-%Y",
    "%d %B %Y",
    "%B %d %Y",
    "%B %d, %Y",
    "%b %d %Y",
    "%b %d, %Y",
)

_ORDINAL_SUFFIX = re.compile(r"(\d{1,2})(st|nd|rd|th)\b", re.IGNORECASE)


def normalize_phone(value: str) -> str:
    """Normalize a phone number by stripping everything except digits and a leading +.

    Examples:
        >>> normalize_phone("(555) 010-7788")
        '5550107788'
        >>> normalize_phone("+1 555 010 7788")
        '+15550107788'
    """
    value = value.strip()
    if value.startswith("+"):
        return "+" + re.sub(r"[^\d]", "", value[1:])
    return re.sub(r"[^\d]", "", value)


def count_digits(value: str) -> int:
    return sum(ch.isdigit() for ch in value)


def parse_date(value: str) -> Optional[date]:
    """Parse a spoken or written date into a ``date``, or None if unrecognised.

    Ordinal suffixes and a leading "the"/"of" are tolerated so that
    transcribed speech such as "March 3rd, 1985" parses.
    """
    cleaned = _ORDINAL_SUFFIX.sub(r"\1", value.strip())
    cleaned = re.sub(r"\b(the|of)\b", " ", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    return None


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def normalize_utterance(text: str) -> str:
    """Lowercase and collapse whitespace/punctuation for fingerprinting."""
    lowered = text.lower()
    lowered = re.sub(r"[^\w\[\]:\s]", " ", lowered)
    return re.sub(r"\s+", " ", lowered).strip()
