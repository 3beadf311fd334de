"""
Per-provider circuit breaking.

Each provider gets its own three-state breaker guarded by its own lock, so a
slow provider never serialises health checks for the others.

- CLOSED: outcomes are recorded in a rolling window. The breaker opens on
  ``failure_threshold`` consecutive failures inside the window, or once the
  window holds ``min_requests_for_rate`` outcomes and the failure rate
  reaches ``failure_rate_threshold``.
- OPEN: unavailable until the cooldown elapses.
- HALF_OPEN: exactly one trial is let through. Success closes the breaker
  and clears its counters; failure reopens it with the cooldown multiplied
  by ``backoff_multiplier`` (capped at ``max_cooldown_seconds``).

Usage:
    monitor = HealthMonitor(settings.breaker)
    if await monitor.check_available("aws_bedrock", provider.probe):
        ...
        monitor.record_outcome("aws_bedrock", success=True, latency=0.31)
"""

import asyncio
import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from voice_router.config import BreakerConfig
from voice_router.errors import VoiceRouterError

logger = logging.getLogger(__name__)

Probe = Callable[[], Awaitable[bool]]


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class Outcome:
    at: float
    success: bool
    latency: float


@dataclass
class ProviderHealth:
    """Breaker state and rolling outcome window for one provider."""
    provider_id: str
    cooldown: float
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    last_failure_at: Optional[float] = None
    opened_at: Optional[float] = None
    reopen_count: int = 0
    trial_in_flight: bool = False
    window: deque = field(default_factory=deque)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class HealthMonitor:
    """Thread-safe registry of per-provider breakers."""

    def __init__(self, config: BreakerConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self.config = config
        self._clock = clock
        self._entries: dict[str, ProviderHealth] = {}
        # Guards creation of entries only; state changes use the per-provider lock
        self._entries_lock = threading.Lock()

    def _entry(self, provider_id: str) -> ProviderHealth:
        entry = self._entries.get(provider_id)
        if entry is None:
            with self._entries_lock:
                entry = self._entries.setdefault(
                    provider_id,
                    ProviderHealth(provider_id=provider_id, cooldown=self.config.cooldown_seconds),
                )
        return entry

    # ------------------------------------------------------------------ #
    # Internal transitions (caller holds entry.lock)
    # ------------------------------------------------------------------ #

    def _prune(self, entry: ProviderHealth, now: float) -> None:
        horizon = now - self.config.window_seconds
        while entry.window and entry.window[0].at < horizon:
            entry.window.popleft()

    def _refresh(self, entry: ProviderHealth, now: float) -> None:
        if entry.state == CircuitState.OPEN and entry.opened_at is not None:
            if now - entry.opened_at >= entry.cooldown:
                entry.state = CircuitState.HALF_OPEN
                entry.trial_in_flight = False
                logger.info("Circuit %s: OPEN -> HALF_OPEN", entry.provider_id)

    def _open(self, entry: ProviderHealth, now: float, reason: str) -> None:
        entry.state = CircuitState.OPEN
        entry.opened_at = now
        entry.trial_in_flight = False
        logger.warning(
            "Circuit %s: -> OPEN for %.1fs (%s)", entry.provider_id, entry.cooldown, reason
        )

    def _close(self, entry: ProviderHealth) -> None:
        entry.state = CircuitState.CLOSED
        entry.consecutive_failures = 0
        entry.reopen_count = 0
        entry.cooldown = self.config.cooldown_seconds
        entry.trial_in_flight = False
        entry.opened_at = None
        entry.window.clear()
        logger.info("Circuit %s: HALF_OPEN -> CLOSED (recovered)", entry.provider_id)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def state(self, provider_id: str) -> CircuitState:
        entry = self._entry(provider_id)
        with entry.lock:
            self._refresh(entry, self._clock())
            return entry.state

    def is_available(self, provider_id: str) -> bool:
        """True when the provider would accept a request right now. Does not claim a trial."""
        entry = self._entry(provider_id)
        with entry.lock:
            self._refresh(entry, self._clock())
            if entry.state == CircuitState.CLOSED:
                return True
            return entry.state == CircuitState.HALF_OPEN and not entry.trial_in_flight

    def acquire(self, provider_id: str) -> bool:
        """Claim permission to send one request; in half-open only one caller wins."""
        entry = self._entry(provider_id)
        with entry.lock:
            self._refresh(entry, self._clock())
            if entry.state == CircuitState.CLOSED:
                return True
            if entry.state == CircuitState.HALF_OPEN and not entry.trial_in_flight:
                entry.trial_in_flight = True
                logger.info("Circuit %s: half-open trial granted", provider_id)
                return True
            return False

    async def check_available(self, provider_id: str, probe: Optional[Probe] = None) -> bool:
        """
        Claim a request slot, running ``probe`` as the half-open trial if given.

        Returns True when the caller may invoke the provider. A failed or
        raising probe counts as the trial failure and reopens the breaker.
        A cancelled probe also reopens it before the cancellation propagates,
        so the trial is never left claimed.
        """
        if not self.acquire(provider_id):
            return False
        if probe is None or self.state(provider_id) != CircuitState.HALF_OPEN:
            return True

        started = self._clock()
        try:
            healthy = await asyncio.wait_for(probe(), timeout=self.config.probe_timeout_seconds)
        except asyncio.CancelledError:
            logger.info("Probe for %s cancelled; reopening circuit", provider_id)
            self.record_outcome(provider_id, False, self._clock() - started)
            raise
        except (asyncio.TimeoutError, VoiceRouterError, OSError) as exc:
            logger.warning("Probe for %s failed: %s", provider_id, exc)
            healthy = False
        except Exception:
            logger.exception("Probe for %s raised unexpectedly", provider_id)
            healthy = False
        self.record_outcome(provider_id, bool(healthy), self._clock() - started)
        return bool(healthy)

    def record_outcome(self, provider_id: str, success: bool, latency: float) -> None:
        entry = self._entry(provider_id)
        with entry.lock:
            now = self._clock()
            self._refresh(entry, now)
            entry.window.append(Outcome(at=now, success=success, latency=latency))
            self._prune(entry, now)

            if success:
                entry.consecutive_failures = 0
                if entry.state == CircuitState.HALF_OPEN:
                    self._close(entry)
                return

            if (
                entry.last_failure_at is not None
                and now - entry.last_failure_at > self.config.window_seconds
            ):
                entry.consecutive_failures = 0
            entry.consecutive_failures += 1
            entry.last_failure_at = now

            if entry.state == CircuitState.HALF_OPEN:
                entry.reopen_count += 1
                entry.cooldown = min(
                    self.config.cooldown_seconds
                    * self.config.backoff_multiplier ** entry.reopen_count,
                    self.config.max_cooldown_seconds,
                )
                self._open(entry, now, "half-open trial failed")
            elif entry.state == CircuitState.CLOSED:
                if entry.consecutive_failures >= self.config.failure_threshold:
                    self._open(entry, now, f"{entry.consecutive_failures} consecutive failures")
                elif len(entry.window) >= self.config.min_requests_for_rate:
                    failures = sum(1 for o in entry.window if not o.success)
                    rate = failures / len(entry.window)
                    if rate >= self.config.failure_rate_threshold:
                        self._open(entry, now, f"failure rate {rate:.0%}")

    def reset(self, provider_id: str) -> None:
        entry = self._entry(provider_id)
        with entry.lock:
            entry.state = CircuitState.CLOSED
            entry.consecutive_failures = 0
            entry.last_failure_at = None
            entry.opened_at = None
            entry.reopen_count = 0
            entry.cooldown = self.config.cooldown_seconds
            entry.trial_in_flight = False
            entry.window.clear()

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Per-provider breaker state and rolling window statistics."""
        report: dict[str, dict[str, Any]] = {}
        for provider_id in list(self._entries):
            entry = self._entries[provider_id]
            with entry.lock:
                now = self._clock()
                self._refresh(entry, now)
                self._prune(entry, now)
                latencies = sorted(o.latency for o in entry.window)
                count = len(entry.window)
                failures = sum(1 for o in entry.window if not o.success)
                p95 = latencies[max(math.ceil(0.95 * count) - 1, 0)] if latencies else 0.0
                report[provider_id] = {
                    "state": entry.state.value,
                    "consecutive_failures": entry.consecutive_failures,
                    "request_count": count,
                    "error_rate": failures / count if count else 0.0,
                    "latency_mean": sum(latencies) / count if count else 0.0,
                    "latency_p95": p95,
                    "cooldown": entry.cooldown,
                    "reopen_count": entry.reopen_count,
                }
        return report
