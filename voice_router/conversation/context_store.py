"""
Per-call conversation state and the store that owns it.

A ConversationContext is created when a call starts and evicted when the call
reaches completion or sits idle past ``DialogConfig.idle_timeout_sec``. Turns
for one call are serialised by the context's own ``asyncio.Lock``; the store's
lock only guards the id -> context map.
"""

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional

from voice_router.conversation.slot_manager import Slots
from voice_router.conversation.state_machine import DialogStateMachine, Phase
from voice_router.errors import ConversationNotFoundError
from voice_router.routing.engine import RoutingState
from voice_router.schemas.conversation_schema import (
    CompletionType,
    ModelUsageSummary,
    TurnRecord,
)

logger = logging.getLogger(__name__)


@dataclass
class ConsentState:
    recording: bool = False
    data_processing: bool = False
    granted_at: Optional[datetime] = None
    attempts: int = 0


@dataclass
class ConversationContext:
    """Everything the dialog knows about one active call."""

    call_id: str
    caller_token: str
    slots: Slots
    state_machine: DialogStateMachine
    history: deque
    started_at: float
    last_activity: float
    routing: RoutingState = field(default_factory=RoutingState)
    consent: ConsentState = field(default_factory=ConsentState)
    turn_count: int = 0
    clarification_count: int = 0
    consecutive_failures: int = 0
    completion_type: Optional[CompletionType] = None
    last_prompt: str = ""
    sensitive_terms: set[str] = field(default_factory=set)
    model_usage: dict[tuple[str, str], ModelUsageSummary] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def phase(self) -> Phase:
        return self.state_machine.current_phase

    def add_turn(self, record: TurnRecord) -> None:
        self.history.append(record)

    def record_usage(
        self, provider_id: str, model_id: str, tokens: int, cost: float, latency: float
    ) -> None:
        key = (provider_id, model_id)
        usage = self.model_usage.get(key)
        if usage is None:
            usage = self.model_usage[key] = ModelUsageSummary(
                provider_id=provider_id, model_id=model_id
            )
        usage.add_turn(tokens, cost, latency)

    def known_terms(self) -> list[str]:
        """Values this caller has given that must be redacted wherever they reappear."""
        return sorted(self.sensitive_terms | set(self.slots.known_personal_terms()))


class ContextStore:
    """Map of active calls with an idle-timeout reaper."""

    def __init__(self, idle_timeout: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._contexts: dict[str, ConversationContext] = {}
        self._lock = threading.Lock()
        self._reaper: Optional[asyncio.Task] = None

    def add(self, context: ConversationContext) -> None:
        with self._lock:
            self._contexts[context.call_id] = context

    def get(self, call_id: str) -> Optional[ConversationContext]:
        with self._lock:
            return self._contexts.get(call_id)

    def require(self, call_id: str) -> ConversationContext:
        """
        Raises:
            ConversationNotFoundError: If the call is not active.
        """
        context = self.get(call_id)
        if context is None:
            raise ConversationNotFoundError(f"No active conversation for call '{call_id}'")
        return context

    def remove(self, call_id: str) -> Optional[ConversationContext]:
        with self._lock:
            return self._contexts.pop(call_id, None)

    def active_ids(self) -> list[str]:
        with self._lock:
            return list(self._contexts)

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)

    def find_idle(self) -> list[str]:
        now = self._clock()
        with self._lock:
            return [
                call_id for call_id, ctx in self._contexts.items()
                if now - ctx.last_activity >= self.idle_timeout
            ]

    def start_reaper(
        self, on_idle: Callable[[str], Awaitable[None]], interval: float = 30.0
    ) -> asyncio.Task:
        """Run ``on_idle`` for every idle call every ``interval`` seconds."""

        async def _loop() -> None:
            while True:
                await asyncio.sleep(interval)
                for call_id in self.find_idle():
                    logger.info("Reaping idle call %s", call_id)
                    await on_idle(call_id)

        if self._reaper is None or self._reaper.done():
            self._reaper = asyncio.create_task(_loop())
        return self._reaper

    async def stop_reaper(self) -> None:
        if self._reaper is not None:
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
            self._reaper = None
