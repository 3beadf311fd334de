"""
Semantic response cache for redacted model results.

Entries are keyed by a redacted utterance fingerprint plus a hash of the
dialog context (phase, missing slots, recent redacted turns). A lookup first
tries the exact (context hash, fingerprint) key, then falls back to any entry
with the same context hash whose fingerprint scores at least that entry's
threshold under rapidfuzz's token-sort ratio. The threshold defaults to
``similarity_threshold`` and can be set per entry on store. Entries are
sharded by context hash, one lock per shard, with LRU eviction and TTL expiry.

Nothing that looks personal is stored or returned: the redaction boundary is
consulted on both paths and a refusal counts as a miss.
"""

import copy
import hashlib
import json
import logging
import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from rapidfuzz import fuzz, process

from voice_router.config import CacheConfig
from voice_router.privacy.redaction import TOKEN_PATTERN, Redactor

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    fingerprint: str
    context_hash: str
    response: dict[str, Any]
    threshold: float
    created_at: float
    expires_at: float
    access_count: int = 0
    last_access: float = 0.0


@dataclass
class _Shard:
    entries: "OrderedDict[tuple[str, str], CacheEntry]" = field(default_factory=OrderedDict)
    lock: threading.Lock = field(default_factory=threading.Lock)
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    refusals: int = 0


def context_hash(*parts: Any) -> str:
    """Stable short hash of the dialog context a response depends on."""
    payload = json.dumps(parts, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


class ResponseCache:
    """Thread-safe, sharded, similarity-matched LRU cache."""

    def __init__(
        self,
        config: CacheConfig,
        redactor: Redactor,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._redactor = redactor
        self._clock = clock
        self._shards = [_Shard() for _ in range(config.shards)]
        self._shard_capacity = max(1, math.ceil(config.capacity / config.shards))

    def _shard(self, ctx_hash: str) -> _Shard:
        index = int(hashlib.sha256(ctx_hash.encode("utf-8")).hexdigest()[:8], 16)
        return self._shards[index % len(self._shards)]

    def _is_personal(self, text: str) -> bool:
        return bool(TOKEN_PATTERN.search(text)) or self._redactor.contains_personal_data(text)

    def _response_is_personal(self, response: Any) -> bool:
        if not isinstance(response, dict):
            return True
        return self._is_personal(json.dumps(response, sort_keys=True, default=str))

    def _match(
        self, shard: _Shard, fingerprint: str, ctx_hash: str, now: float
    ) -> tuple[Optional[tuple[str, str]], float]:
        """Exact key first, then the most similar entry clearing its own threshold.

        Caller holds ``shard.lock``. Expired entries seen on the way are dropped.
        """
        exact = (ctx_hash, fingerprint)
        entry = shard.entries.get(exact)
        if entry is not None:
            if entry.expires_at > now:
                return exact, 100.0
            del shard.entries[exact]
            shard.expirations += 1

        candidates: dict[tuple[str, str], str] = {}
        for key, entry in list(shard.entries.items()):
            if entry.context_hash != ctx_hash:
                continue
            if entry.expires_at <= now:
                del shard.entries[key]
                shard.expirations += 1
                continue
            candidates[key] = entry.fingerprint
        if not candidates:
            return None, 0.0

        cutoff = min(shard.entries[key].threshold for key in candidates) * 100
        for _, score, key in process.extract(
            fingerprint,
            candidates,
            scorer=fuzz.token_sort_ratio,
            score_cutoff=cutoff,
            limit=None,
        ):
            if score >= shard.entries[key].threshold * 100:
                return key, score
        return None, 0.0

    def lookup(
        self,
        fingerprint: str,
        ctx_hash: str,
        validate: Optional[Callable[[dict[str, Any]], bool]] = None,
    ) -> Optional[dict[str, Any]]:
        """Return a copy of the best matching cached response, or None.

        ``validate`` rejects corrupt payloads; a rejected entry is dropped and
        the lookup counts as a miss.
        """
        shard = self._shard(ctx_hash)
        if self._is_personal(fingerprint):
            with shard.lock:
                shard.refusals += 1
                shard.misses += 1
            return None

        now = self._clock()
        with shard.lock:
            key, score = self._match(shard, fingerprint, ctx_hash, now)
            if key is None:
                shard.misses += 1
                return None

            entry = shard.entries[key]
            if self._response_is_personal(entry.response):
                logger.warning("Dropping cache entry that failed the personal-data check")
                del shard.entries[key]
                shard.refusals += 1
                shard.misses += 1
                return None
            if validate is not None and not validate(entry.response):
                logger.warning("Dropping corrupt cache entry")
                del shard.entries[key]
                shard.misses += 1
                return None

            shard.entries.move_to_end(key)
            entry.access_count += 1
            entry.last_access = now
            shard.hits += 1
            logger.debug("Cache hit (similarity %.1f)", score)
            return copy.deepcopy(entry.response)

    def store(
        self,
        fingerprint: str,
        ctx_hash: str,
        response: dict[str, Any],
        ttl: Optional[float] = None,
        threshold: Optional[float] = None,
    ) -> bool:
        """Store a redacted response. Returns False when refused.

        ``threshold`` overrides the configured similarity bar for this entry.
        """
        shard = self._shard(ctx_hash)
        if self._is_personal(fingerprint) or self._response_is_personal(response):
            with shard.lock:
                shard.refusals += 1
            logger.debug("Refused to cache response containing personal data")
            return False

        now = self._clock()
        entry = CacheEntry(
            fingerprint=fingerprint,
            context_hash=ctx_hash,
            response=copy.deepcopy(response),
            threshold=threshold if threshold is not None else self.config.similarity_threshold,
            created_at=now,
            expires_at=now + (ttl if ttl is not None else self.config.ttl_seconds),
            last_access=now,
        )
        key = (ctx_hash, fingerprint)
        with shard.lock:
            shard.entries[key] = entry
            shard.entries.move_to_end(key)
            while len(shard.entries) > self._shard_capacity:
                shard.entries.popitem(last=False)
                shard.evictions += 1
        return True

    def purge_expired(self) -> int:
        now = self._clock()
        purged = 0
        for shard in self._shards:
            with shard.lock:
                for key, entry in list(shard.entries.items()):
                    if entry.expires_at <= now:
                        del shard.entries[key]
                        shard.expirations += 1
                        purged += 1
        return purged

    def clear(self) -> None:
        for shard in self._shards:
            with shard.lock:
                shard.entries.clear()

    def stats(self) -> dict[str, Any]:
        totals = {"hits": 0, "misses": 0, "evictions": 0, "expirations": 0,
                  "refusals": 0, "size": 0}
        for shard in self._shards:
            with shard.lock:
                totals["hits"] += shard.hits
                totals["misses"] += shard.misses
                totals["evictions"] += shard.evictions
                totals["expirations"] += shard.expirations
                totals["refusals"] += shard.refusals
                totals["size"] += len(shard.entries)
        lookups = totals["hits"] + totals["misses"]
        totals["hit_rate"] = totals["hits"] / lookups if lookups else 0.0
        return totals
