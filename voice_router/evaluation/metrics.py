"""
Routing performance signals.

Per (provider, model) usage counters feed the cost/latency report, and
per-pattern outcome windows feed back into the complexity score: a turn
pattern that keeps failing on cheap models gets promoted sooner.

Every invocation and cache hit is also kept in a bounded event log so
``performance()`` can aggregate a time range grouped by provider, model,
tier or conversation type.
"""

import logging
import math
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

PATTERN_WINDOW = 50
LATENCY_WINDOW = 500
EVENT_WINDOW = 10_000


class MetricsGrouping(str, Enum):
    PROVIDER = "provider"
    MODEL = "model"
    TIER = "tier"
    CONVERSATION_TYPE = "conversation_type"


@dataclass(frozen=True)
class InvocationEvent:
    """One invocation or cache hit, timestamped on the metrics clock."""

    at: float
    provider_id: str
    model_id: str
    tier: str
    conversation_type: str
    success: bool
    latency: float
    tokens: int = 0
    cost: float = 0.0
    cache_hit: bool = False

    def group_key(self, group_by: MetricsGrouping) -> str:
        if group_by == MetricsGrouping.MODEL:
            return f"{self.provider_id}/{self.model_id}"
        if group_by == MetricsGrouping.TIER:
            return self.tier or "unknown"
        if group_by == MetricsGrouping.CONVERSATION_TYPE:
            return self.conversation_type or "unclassified"
        return self.provider_id


@dataclass
class ModelUsage:
    """Counters for one provider/model pair."""

    provider_id: str
    model_id: str
    requests: int = 0
    successes: int = 0
    failures: int = 0
    cache_hits: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    latencies: deque = field(default_factory=lambda: deque(maxlen=LATENCY_WINDOW))
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def success_rate(self) -> float:
        return self.successes / self.requests if self.requests else 0.0

    @property
    def avg_latency(self) -> float:
        return sum(self.latencies) / len(self.latencies) if self.latencies else 0.0


class RoutingMetrics:
    """Thread-safe usage, outcome and decision counters for the routing engine."""

    def __init__(
        self, clock: Callable[[], float] = time.monotonic, event_window: int = EVENT_WINDOW
    ) -> None:
        self._clock = clock
        self._usage: dict[tuple[str, str], ModelUsage] = {}
        self._patterns: dict[str, deque] = {}
        self._reasons: Counter = Counter()
        self._events: deque[InvocationEvent] = deque(maxlen=event_window)
        self._events_lock = threading.Lock()
        # Guards dict membership only; counters use per-key locks
        self._keys_lock = threading.Lock()

    def _usage_for(self, provider_id: str, model_id: str) -> ModelUsage:
        key = (provider_id, model_id)
        usage = self._usage.get(key)
        if usage is None:
            with self._keys_lock:
                usage = self._usage.setdefault(key, ModelUsage(provider_id, model_id))
        return usage

    def record_invocation(
        self,
        provider_id: str,
        model_id: str,
        success: bool,
        latency: float,
        tokens_used: int = 0,
        cost_per_1k_tokens: float = 0.0,
        tier: str = "",
        conversation_type: str = "",
    ) -> None:
        cost = tokens_used / 1000 * cost_per_1k_tokens
        usage = self._usage_for(provider_id, model_id)
        with usage.lock:
            usage.requests += 1
            if success:
                usage.successes += 1
            else:
                usage.failures += 1
            usage.total_tokens += tokens_used
            usage.total_cost += cost
            usage.latencies.append(latency)
        self._log_event(InvocationEvent(
            at=self._clock(),
            provider_id=provider_id,
            model_id=model_id,
            tier=tier,
            conversation_type=conversation_type,
            success=success,
            latency=latency,
            tokens=tokens_used,
            cost=cost,
        ))

    def record_cache_hit(
        self, provider_id: str, model_id: str, tier: str = "", conversation_type: str = ""
    ) -> None:
        """A cache hit counts as a zero-latency success for the model it stood in for."""
        usage = self._usage_for(provider_id, model_id)
        with usage.lock:
            usage.requests += 1
            usage.successes += 1
            usage.cache_hits += 1
            usage.latencies.append(0.0)
        self._log_event(InvocationEvent(
            at=self._clock(),
            provider_id=provider_id,
            model_id=model_id,
            tier=tier,
            conversation_type=conversation_type,
            success=True,
            latency=0.0,
            cache_hit=True,
        ))

    def _log_event(self, event: InvocationEvent) -> None:
        with self._events_lock:
            self._events.append(event)

    def record_pattern(self, pattern: str, success: bool) -> None:
        with self._keys_lock:
            window = self._patterns.setdefault(pattern, deque(maxlen=PATTERN_WINDOW))
            window.append(success)

    def pattern_failure_rate(self, pattern: str) -> float:
        with self._keys_lock:
            window = self._patterns.get(pattern)
            if not window:
                return 0.0
            return sum(1 for ok in window if not ok) / len(window)

    def record_decision(self, reason: str) -> None:
        with self._keys_lock:
            self._reasons[reason] += 1

    def usage(self, provider_id: str, model_id: str) -> dict[str, Any]:
        usage = self._usage_for(provider_id, model_id)
        with usage.lock:
            return {
                "requests": usage.requests,
                "successes": usage.successes,
                "failures": usage.failures,
                "cache_hits": usage.cache_hits,
                "total_tokens": usage.total_tokens,
                "total_cost": round(usage.total_cost, 6),
                "success_rate": usage.success_rate,
                "avg_latency": usage.avg_latency,
            }

    def performance(
        self,
        since: Optional[float] = None,
        until: Optional[float] = None,
        group_by: MetricsGrouping = MetricsGrouping.PROVIDER,
    ) -> dict[str, dict[str, Any]]:
        """
        Aggregate logged events in ``[since, until]`` (metrics clock seconds).

        Either bound may be omitted. Only events still held in the bounded
        log are counted.
        """
        with self._events_lock:
            events = [
                e for e in self._events
                if (since is None or e.at >= since) and (until is None or e.at <= until)
            ]

        groups: dict[str, list[InvocationEvent]] = {}
        for event in events:
            groups.setdefault(event.group_key(group_by), []).append(event)

        report: dict[str, dict[str, Any]] = {}
        for key, members in groups.items():
            latencies = sorted(e.latency for e in members)
            count = len(members)
            successes = sum(1 for e in members if e.success)
            report[key] = {
                "requests": count,
                "successes": successes,
                "failures": count - successes,
                "cache_hits": sum(1 for e in members if e.cache_hit),
                "success_rate": successes / count,
                "avg_latency": sum(latencies) / count,
                "p95_latency": latencies[max(math.ceil(0.95 * count) - 1, 0)],
                "total_tokens": sum(e.tokens for e in members),
                "total_cost": round(sum(e.cost for e in members), 6),
            }
        return report

    def performance_last(
        self, seconds: float, group_by: MetricsGrouping = MetricsGrouping.PROVIDER
    ) -> dict[str, dict[str, Any]]:
        return self.performance(since=self._clock() - seconds, group_by=group_by)

    def summary(self) -> dict[str, Any]:
        with self._keys_lock:
            keys = list(self._usage)
            reasons = dict(self._reasons)
        return {
            "models": {f"{p}/{m}": self.usage(p, m) for p, m in keys},
            "reasons": reasons,
        }

    def format_report(self) -> str:
        """Format routing metrics into a human-readable report."""
        data = self.summary()
        lines = [
            "=" * 60,
            "ROUTING PERFORMANCE REPORT",
            "=" * 60,
            "",
            "MODELS",
        ]
        if not data["models"]:
            lines.append("  (no invocations recorded)")
        for name, usage in sorted(data["models"].items()):
            lines.extend([
                f"  {name}",
                f"    Requests:      {usage['requests']}  (cache hits: {usage['cache_hits']})",
                f"    Success rate:  {usage['success_rate']:.1%}",
                f"    Avg latency:   {usage['avg_latency'] * 1000:.0f}ms",
                f"    Tokens / cost: {usage['total_tokens']} / ${usage['total_cost']:.4f}",
            ])
        lines.extend(["", "DECISIONS"])
        if not data["reasons"]:
            lines.append("  (no routing decisions recorded)")
        for reason, count in sorted(data["reasons"].items(), key=lambda kv: -kv[1]):
            lines.append(f"  {reason:<30} {count}")
        lines.append("=" * 60)
        return "\n".join(lines)
