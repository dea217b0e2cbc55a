# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Render snapshot cache: bounded size, per-entry TTL, oldest-insertion eviction.

Pure Python module: no browser dependencies.

Keys are canonical (query/fragment-stripped) URLs, see ``prerender.cache_key``.
Entries are replaced wholesale on refresh and never mutated.  Reads do not
reorder entries: eviction follows insertion order, not access order.

Shared by every render completion, so the store is guarded by a lock.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass

from . import RenderResult

logger = logging.getLogger("prerender.cache")

DEFAULT_MAX_ENTRIES = 1000
DEFAULT_TTL = 86400.0  # 24 hours


# ---------------------------------------------------------------------------
# Cache entry
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """A cached render result with its insertion time."""

    key: str
    value: RenderResult
    inserted_at: float  # time.monotonic()

    def is_expired(self, ttl: float, now: float | None = None) -> bool:
        now = time.monotonic() if now is None else now
        return (now - self.inserted_at) > ttl


# ---------------------------------------------------------------------------
# Cache stats (observability)
# ---------------------------------------------------------------------------


@dataclass
class CacheStats:
    """Counters for cache behaviour: exposed on /health."""

    hits: int = 0
    misses: int = 0
    stores: int = 0
    ttl_expirations: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def as_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "stores": self.stores,
            "ttl_expirations": self.ttl_expirations,
            "evictions": self.evictions,
            "hit_rate": round(self.hit_rate, 3),
        }


# ---------------------------------------------------------------------------
# RenderCache
# ---------------------------------------------------------------------------


class RenderCache:
    """Key -> RenderResult store with size and age bounds.

    TTL is checked lazily on lookup; size is enforced on every ``set``.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES, ttl: float = DEFAULT_TTL) -> None:
        if max_entries <= 0:
            raise ValueError(f"max_entries must be > 0, got {max_entries}")
        if ttl <= 0:
            raise ValueError(f"ttl must be > 0, got {ttl}")
        self._max_entries = max_entries
        self._ttl = ttl
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._stats = CacheStats()

    # -- Lookup --

    def get(self, key: str) -> RenderResult | None:
        """Return the cached result for *key*, or None if missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return None
            if entry.is_expired(self._ttl):
                del self._entries[key]
                self._stats.ttl_expirations += 1
                self._stats.misses += 1
                logger.debug("Cache TTL expired: %s", key)
                return None
            self._stats.hits += 1
            return entry.value

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.is_expired(self._ttl)

    # -- Store --

    def set(self, key: str, value: RenderResult) -> None:
        """Insert or replace *key*; a replacement counts as a fresh insertion."""
        entry = CacheEntry(key=key, value=value, inserted_at=time.monotonic())
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = entry
            self._stats.stores += 1

            # Evict oldest if over capacity
            while len(self._entries) > self._max_entries:
                evicted_key, _ = self._entries.popitem(last=False)
                self._stats.evictions += 1
                logger.debug("Cache eviction: %s", evicted_key)

            size = len(self._entries)
        logger.debug("Cache store: key=%s size=%d", key, size)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def close(self) -> None:
        """Teardown hook: drop every entry.  The cache stays usable afterwards."""
        self.clear()
        logger.info("Render cache closed")

    # -- Introspection --

    @property
    def stats(self) -> CacheStats:
        return self._stats

    @property
    def max_entries(self) -> int:
        return self._max_entries

    @property
    def ttl(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
