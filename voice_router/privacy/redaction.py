"""
Redaction boundary for everything that leaves the decision engine.

Personal spans (names, phone numbers, dates of birth, e-mail addresses,
member/record identifiers) are replaced with category-tagged tokens such as
``[PHONE:3fa9c2d1]``. Tokens are keyed HMAC digests, so the same value always
produces the same token while the value itself cannot be recovered from it.

Two guarantees the rest of the engine relies on:

* idempotence: existing tokens are never re-detected, so
  ``sanitize(sanitize(x).text).text == sanitize(x).text``;
* fail-closed: a span the detectors flag with low confidence is masked as
  ``[REDACTED:...]`` instead of being passed through.

Usage:
    redactor = Redactor(salt="s3cret")
    result = redactor.sanitize("my name is Maria Lopez, call 555-010-7788")
    result.text       # 'my name is [NAME:...], call [PHONE:...]'
    result.token_map  # token -> original, kept in memory for this turn only
"""

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import BaseModel

from voice_router.utils import count_digits, normalize_phone, parse_date

logger = logging.getLogger(__name__)


class PiiCategory(str, Enum):
    NAME = "NAME"
    PHONE = "PHONE"
    DATE = "DATE"
    EMAIL = "EMAIL"
    IDENTIFIER = "IDENTIFIER"
    UNCLASSIFIED = "REDACTED"


TOKEN_PATTERN = re.compile(
    r"\[(?:NAME|PHONE|DATE|EMAIL|IDENTIFIER|REDACTED):[0-9a-f]{8}\]", re.IGNORECASE
)

# Structured fields whose values are personal regardless of content
PERSONAL_FIELDS: dict[str, PiiCategory] = {
    "patient_name_or_callback": PiiCategory.NAME,
    "date_of_birth": PiiCategory.DATE,
    "special_requirements": PiiCategory.UNCLASSIFIED,
    "caller_number": PiiCategory.PHONE,
}

_MONTHS = (
    r"(?:jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|"
    r"aug(?:ust)?|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)"
)

_EMAIL = re.compile(r"\b[\w.+-]+@[\w-]+(?:\.[\w-]+)+\b")
_PHONE = re.compile(r"(?<![\w\]])\+?\d[\d\s().-]{5,}\d(?![\w\[])")
_NUMERIC_DATE = re.compile(r"\b(?:\d{4}-\d{1,2}-\d{1,2}|\d{1,2}[/.-]\d{1,2}[/.-]\d{2,4})\b")
_SPOKEN_DATE = re.compile(
    rf"\b(?:{_MONTHS}\.?\s+\d{{1,2}}(?:st|nd|rd|th)?,?\s+\d{{4}}"
    rf"|\d{{1,2}}(?:st|nd|rd|th)?\s+(?:of\s+)?{_MONTHS}\.?,?\s+\d{{4}})\b",
    re.IGNORECASE,
)
_MIXED_IDENTIFIER = re.compile(
    r"\b(?=[A-Za-z0-9-]*\d)(?=[A-Za-z0-9-]*[A-Za-z])[A-Za-z0-9]+(?:-[A-Za-z0-9]+)*\b"
)
_DIGIT_RUN = re.compile(r"\b\d{4,}\b")

_STRONG_NAME_CUES = re.compile(
    r"\b(?:my name is|my name's|name is|name's|patient name is|patient's name is|"
    r"the patient is|spelled)\s+",
    re.IGNORECASE,
)
_WEAK_NAME_CUES = re.compile(r"\b(?:i'm|i am|this is|it's|call me)\s+", re.IGNORECASE)
_WORD = re.compile(r"[A-Za-z][A-Za-z'-]*")

# Words that end a name capture; a cue followed by one of these is not a name
_NOT_NAME_WORDS = frozenset({
    "a", "an", "the", "and", "or", "but", "to", "for", "of", "on", "in", "at", "with",
    "my", "your", "his", "her", "their", "our", "me", "you", "it", "is", "was", "be",
    "not", "just", "so", "very", "really", "still", "also", "here", "there", "again",
    "sure", "fine", "good", "great", "okay", "ok", "yes", "no", "sorry", "afraid",
    "looking", "calling", "trying", "wondering", "hoping", "going", "having", "about",
    "interested", "new", "returning", "available", "free", "busy", "urgent", "correct",
    "happy", "glad", "able", "unable", "ready", "done", "pleased", "unsure", "confused",
    "back", "well", "alright", "all", "only", "already", "currently", "one", "an",
    "existing", "due", "supposed", "allowed", "reaching", "sorry", "concerned",
    "right", "wrong", "that", "this", "what", "who", "because", "since", "from",
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
    "today", "tomorrow", "morning", "afternoon", "evening", "next", "last", "dr",
    "doctor", "january", "february", "march", "april", "june", "july", "august",
    "september", "october", "november", "december", "patient", "appointment",
})
_MAX_NAME_WORDS = 3


@dataclass(frozen=True)
class DetectedSpan:
    start: int
    end: int
    category: PiiCategory
    confidence: float


@dataclass
class RedactionResult:
    """Redacted text plus the in-memory token map for the current turn."""

    text: str
    token_map: dict[str, str] = field(default_factory=dict)

    @property
    def redacted(self) -> bool:
        return bool(self.token_map)


class Redactor:
    """Detects personal spans and replaces them with stable, non-reversible tokens."""

    def __init__(
        self, salt: str, min_confidence: float = 0.7, allowlist: Iterable[str] = ()
    ) -> None:
        self._key = salt.encode("utf-8")
        self.min_confidence = min_confidence
        # Operational identifiers (provider and model ids) that look like record numbers
        self._allowlist = [
            re.compile(rf"(?<![\w-]){re.escape(term)}(?![\w-])", re.IGNORECASE)
            for term in allowlist if term
        ]

    # ------------------------------------------------------------------ #
    # Tokens
    # ------------------------------------------------------------------ #

    def token_for(self, category: PiiCategory, value: str) -> str:
        normalized = self._normalize(category, value)
        digest = hmac.new(
            self._key, f"{category.value}:{normalized}".encode("utf-8"), hashlib.sha256
        ).hexdigest()[:8]
        return f"[{category.value}:{digest}]"

    @staticmethod
    def _normalize(category: PiiCategory, value: str) -> str:
        if category == PiiCategory.PHONE:
            return normalize_phone(value)
        if category == PiiCategory.DATE:
            parsed = parse_date(value)
            if parsed is not None:
                return parsed.isoformat()
        return re.sub(r"\s+", " ", value.strip().lower())

    @staticmethod
    def is_token(text: str) -> bool:
        return TOKEN_PATTERN.fullmatch(text.strip()) is not None

    # ------------------------------------------------------------------ #
    # Detection
    # ------------------------------------------------------------------ #

    def _detect(self, segment: str, known_terms: Iterable[str]) -> list[DetectedSpan]:
        spans: list[DetectedSpan] = []

        for match in _EMAIL.finditer(segment):
            spans.append(DetectedSpan(match.start(), match.end(), PiiCategory.EMAIL, 0.99))

        for pattern in (_NUMERIC_DATE, _SPOKEN_DATE):
            for match in pattern.finditer(segment):
                spans.append(DetectedSpan(match.start(), match.end(), PiiCategory.DATE, 0.95))

        for match in _PHONE.finditer(segment):
            digits = count_digits(match.group())
            if 7 <= digits <= 15:
                spans.append(DetectedSpan(match.start(), match.end(), PiiCategory.PHONE, 0.95))

        for match in _MIXED_IDENTIFIER.finditer(segment):
            if len(match.group()) >= 5:
                spans.append(
                    DetectedSpan(match.start(), match.end(), PiiCategory.IDENTIFIER, 0.85)
                )

        # Bare digit runs are personal more often than not, but unclassifiable
        for match in _DIGIT_RUN.finditer(segment):
            spans.append(DetectedSpan(match.start(), match.end(), PiiCategory.IDENTIFIER, 0.5))

        spans.extend(self._detect_names(segment))

        for term in known_terms:
            term = term.strip()
            if len(term) < 2 or self.is_token(term):
                continue
            for match in re.finditer(rf"\b{re.escape(term)}\b", segment, re.IGNORECASE):
                spans.append(DetectedSpan(match.start(), match.end(), PiiCategory.NAME, 1.0))

        if self._allowlist:
            safe = [m.span() for p in self._allowlist for m in p.finditer(segment)]
            spans = [
                s for s in spans
                if not any(lo <= s.start and s.end <= hi for lo, hi in safe)
            ]
        return spans

    def _detect_names(self, segment: str) -> list[DetectedSpan]:
        spans: list[DetectedSpan] = []
        for cues, strong in ((_STRONG_NAME_CUES, True), (_WEAK_NAME_CUES, False)):
            for cue in cues.finditer(segment):
                span = self._capture_name(segment, cue.end(), strong)
                if span is not None:
                    spans.append(span)
        return spans

    def _capture_name(self, segment: str, pos: int, strong: bool) -> Optional[DetectedSpan]:
        start = end = pos
        words: list[str] = []
        while len(words) < _MAX_NAME_WORDS:
            match = _WORD.match(segment, pos)
            if match is None:
                break
            word = match.group()
            if word.lower() in _NOT_NAME_WORDS or word.lower().endswith("ing"):
                break
            words.append(word)
            end = match.end()
            pos = end
            while pos < len(segment) and segment[pos] == " ":
                pos += 1
        if not words:
            return None

        capitalized = all(w[0].isupper() for w in words)
        if strong:
            confidence = 0.95 if capitalized else 0.75
        else:
            confidence = 0.8 if capitalized else 0.4
        return DetectedSpan(start, end, PiiCategory.NAME, confidence)

    @staticmethod
    def _merge(spans: list[DetectedSpan]) -> list[DetectedSpan]:
        """Union overlapping spans so no fragment of a detection survives."""
        merged: list[DetectedSpan] = []
        for span in sorted(spans, key=lambda s: (s.start, -s.end)):
            if merged and span.start < merged[-1].end:
                last = merged[-1]
                winner = last if last.confidence >= span.confidence else span
                merged[-1] = DetectedSpan(
                    last.start,
                    max(last.end, span.end),
                    winner.category,
                    max(last.confidence, span.confidence),
                )
            else:
                merged.append(span)
        return merged

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def sanitize(self, text: str, known_terms: Iterable[str] = ()) -> RedactionResult:
        """Replace personal spans in ``text`` with tokens.

        ``known_terms`` are values the caller already gave in this call (for
        example their name); any later mention is redacted even without a cue.
        """
        if not text:
            return RedactionResult(text="")

        terms = list(known_terms)
        token_map: dict[str, str] = {}
        pieces: list[str] = []
        cursor = 0
        for existing in TOKEN_PATTERN.finditer(text):
            pieces.append(self._sanitize_segment(text[cursor:existing.start()], terms, token_map))
            pieces.append(existing.group())
            cursor = existing.end()
        pieces.append(self._sanitize_segment(text[cursor:], terms, token_map))
        return RedactionResult(text="".join(pieces), token_map=token_map)

    def _sanitize_segment(
        self, segment: str, known_terms: list[str], token_map: dict[str, str]
    ) -> str:
        if not segment:
            return segment
        spans = self._merge(self._detect(segment, known_terms))
        if not spans:
            return segment

        out: list[str] = []
        cursor = 0
        for span in spans:
            original = segment[span.start:span.end]
            category = (
                span.category if span.confidence >= self.min_confidence
                else PiiCategory.UNCLASSIFIED
            )
            token = self.token_for(category, original)
            token_map[token] = original
            out.append(segment[cursor:span.start])
            out.append(token)
            cursor = span.end
        out.append(segment[cursor:])
        return "".join(out)

    def redact(self, text: str, known_terms: Iterable[str] = ()) -> str:
        return self.sanitize(text, known_terms).text

    def redact_payload(self, payload: Any, known_terms: Iterable[str] = ()) -> Any:
        """Recursively redact a structured payload (dicts, lists, pydantic models)."""
        terms = list(known_terms)
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")
        if isinstance(payload, dict):
            redacted: dict[str, Any] = {}
            for key, value in payload.items():
                category = PERSONAL_FIELDS.get(str(key))
                if category is not None and value is not None:
                    if isinstance(value, str) and self.is_token(value):
                        redacted[key] = value
                    else:
                        redacted[key] = self.token_for(category, str(value))
                else:
                    redacted[key] = self.redact_payload(value, terms)
            return redacted
        if isinstance(payload, (list, tuple)):
            return [self.redact_payload(item, terms) for item in payload]
        if isinstance(payload, str):
            return self.redact(payload, terms)
        return payload

    @staticmethod
    def restore(text: str, token_map: dict[str, str]) -> str:
        """Rehydrate tokens from this turn's map, e.g. in a reply read back to the caller."""
        for token, original in token_map.items():
            text = text.replace(token, original)
        return text

    @staticmethod
    def strip_tokens(text: str, replacement: str = "") -> str:
        stripped = TOKEN_PATTERN.sub(replacement, text)
        return re.sub(r"\s{2,}", " ", stripped).strip()

    def contains_personal_data(self, text: str) -> bool:
        return self.redact(text) != text
