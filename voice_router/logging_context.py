"""Correlation ID and redaction logging context.

Provides a call_id-aware logger that attaches a correlation ID to every
log message and runs the rendered message through the redaction boundary,
so a caller's journey can be traced without personal data reaching the logs.

Usage:
    from voice_router.logging_context import get_call_logger, set_call_id

    set_call_id("CA-9f2c")
    logger = get_call_logger(__name__)
    logger.info("Caller said %s", text)  # -> personal spans replaced by tokens
"""

import logging
from contextvars import ContextVar
from typing import Optional

from voice_router.privacy.redaction import Redactor

_call_id: ContextVar[str] = ContextVar("call_id", default="NO_CALL_ID")
_redactor: Optional[Redactor] = None


def set_call_id(call_id: str) -> None:
    """Set the correlation ID for the current async context."""
    _call_id.set(call_id)


def get_call_id() -> str:
    """Retrieve the current correlation ID."""
    return _call_id.get()


def configure_log_redaction(redactor: Redactor) -> None:
    """Select the redactor used by every RedactionFilter."""
    global _redactor
    _redactor = redactor


class CallIdFilter(logging.Filter):
    """Injects call_id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.call_id = _call_id.get()  # type: ignore[attr-defined]
        return True


class RedactionFilter(logging.Filter):
    """Renders the record message and replaces personal spans with tokens.

    With no redactor configured every digit run and cue-word name is still
    masked by a throwaway redactor; records are never passed through raw.
    """

    _fallback = Redactor(salt="log-fallback")

    def filter(self, record: logging.LogRecord) -> bool:
        redactor = _redactor or self._fallback
        record.msg = redactor.redact(record.getMessage())
        record.args = None
        return True


def get_call_logger(name: str) -> logging.Logger:
    """Return a logger with the CallIdFilter and RedactionFilter attached.

    The call-id filter adds ``call_id`` to each record so formatters can
    include ``%(call_id)s`` in their format string.
    """
    logger = logging.getLogger(name)
    if not any(isinstance(f, CallIdFilter) for f in logger.filters):
        logger.addFilter(CallIdFilter())
    if not any(isinstance(f, RedactionFilter) for f in logger.filters):
        logger.addFilter(RedactionFilter())
    return logger
