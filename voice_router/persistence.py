"""
Transcript persistence sinks.

The dialog hands every redacted turn to a sink without waiting for it:
a slow or failing storage backend must never hold up the caller. Failures
are logged and dropped.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any

logger = logging.getLogger(__name__)


class PersistenceSink(ABC):
    """Destination for redacted turn records."""

    @abstractmethod
    async def persist(
        self, call_id: str, redacted_turn: dict[str, Any], metrics: dict[str, Any]
    ) -> None:
        ...


class InMemoryPersistenceSink(PersistenceSink):
    """Keeps records in a list; used by tests and the console simulator."""

    def __init__(self) -> None:
        self.records: list[dict[str, Any]] = []

    async def persist(
        self, call_id: str, redacted_turn: dict[str, Any], metrics: dict[str, Any]
    ) -> None:
        self.records.append({"call_id": call_id, "turn": redacted_turn, "metrics": metrics})

    def for_call(self, call_id: str) -> list[dict[str, Any]]:
        return [r for r in self.records if r["call_id"] == call_id]


class LoggingPersistenceSink(PersistenceSink):
    """Writes each record as one JSON log line."""

    def __init__(self, logger_name: str = "voice_router.transcripts") -> None:
        self._logger = logging.getLogger(logger_name)

    async def persist(
        self, call_id: str, redacted_turn: dict[str, Any], metrics: dict[str, Any]
    ) -> None:
        self._logger.info(
            "%s",
            json.dumps({"call_id": call_id, "turn": redacted_turn, "metrics": metrics},
                       default=str, sort_keys=True),
        )


class PersistenceDispatcher:
    """Schedules sink writes as background tasks and logs their failures."""

    def __init__(self, sink: PersistenceSink) -> None:
        self.sink = sink
        self._pending: set[asyncio.Task] = set()

    def dispatch(
        self, call_id: str, redacted_turn: dict[str, Any], metrics: dict[str, Any]
    ) -> None:
        task = asyncio.create_task(self.sink.persist(call_id, redacted_turn, metrics))
        self._pending.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Persistence failed: %s: %s", type(exc).__name__, exc)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for outstanding writes; used at shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
