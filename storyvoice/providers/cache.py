"""In-memory audio cache for synthesized segments.

Responsibilities:
- Build stable cache keys from normalized text, voice, and settings fingerprint.
- Bound memory with LRU eviction and per-entry TTL expiry.
- Track basic cache telemetry (hits/misses) for run diagnostics.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from hashlib import sha256
import threading
from time import monotonic
from typing import Callable


def normalize_cache_text(text: str) -> str:
    """Collapse whitespace so cosmetic spacing changes do not miss the cache."""

    return " ".join(text.split())


def make_cache_key(text: str, voice_id: str, settings_fingerprint: str) -> str:
    """Build a deterministic cache key for one synthesis request."""

    identity = "\x1f".join(
        (normalize_cache_text(text), voice_id.strip(), settings_fingerprint)
    )
    return f"audio:{sha256(identity.encode('utf-8')).hexdigest()}"


@dataclass(slots=True)
class _CacheEntry:
    value: bytes
    expires_at: float | None


@dataclass(slots=True)
class AudioCache:
    """LRU + TTL cache keyed by content hash.

    Attributes:
        max_entries: Entry count above which the least recently used entry is evicted.
        default_ttl_seconds: TTL applied when `set` receives none; `None` never expires.
        clock: Monotonic clock used for expiry checks.
        hits: Number of successful lookups.
        misses: Number of lookups that found nothing or an expired entry.
    """

    max_entries: int = 500
    default_ttl_seconds: float | None = 7 * 24 * 3600.0
    clock: Callable[[], float] = monotonic
    hits: int = 0
    misses: int = 0
    _entries: OrderedDict[str, _CacheEntry] = field(default_factory=OrderedDict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def get(self, cache_key: str) -> bytes | None:
        """Return a cached payload and update hit/miss counters."""

        with self._lock:
            entry = self._entries.get(cache_key)
            has_ttl = entry is not None and entry.expires_at is not None
            if has_ttl and entry.expires_at <= self.clock():
                del self._entries[cache_key]
                entry = None
            if entry is None:
                self.misses += 1
                return None
            self._entries.move_to_end(cache_key)
            self.hits += 1
            return entry.value

    def set(self, cache_key: str, value: bytes, ttl_seconds: float | None = None) -> None:
        """Store a payload; identical keys overwrite idempotently."""

        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        expires_at = None if ttl is None else self.clock() + ttl
        with self._lock:
            self._entries[cache_key] = _CacheEntry(value=bytes(value), expires_at=expires_at)
            self._entries.move_to_end(cache_key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, cache_key: object) -> bool:
        return cache_key in self._entries

    def hit_rate(self) -> float:
        """Return cache hit rate for current cache lifecycle."""

        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / float(total)
