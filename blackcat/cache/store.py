"""
In-process caching layer for remote API results.
Segmented, bounded, TTL-based; entries optionally zlib-compressed.
Values are stored as JSON bytes, so every hit returns a fresh copy.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import zlib
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from ..config import COMPRESSION_THRESHOLD_BYTES, DEFAULT_SEGMENT_MAX_ENTRIES
from ..errors import CacheCorruption

logger = logging.getLogger("blackcat.cache")


class _Miss:
    """Sentinel returned by CacheStore.get when nothing usable is stored."""
    _instance: Optional["_Miss"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS = _Miss()

Params = Union[Mapping[str, Any], Iterable[tuple[str, Any]], None]


def derive_key(base: str, params: Params = None) -> str:
    """
    Build a cache key from an operation identifier and its parameters.
    Parameters are sorted by name so argument order never matters.
    """
    if params is None:
        pairs: list[tuple[str, Any]] = []
    elif isinstance(params, Mapping):
        pairs = list(params.items())
    else:
        pairs = list(params)
    parts = [base] + [f"{name}={value}" for name, value in sorted(pairs, key=lambda p: p[0])]
    return "|".join(parts).lower()


@dataclass
class CacheEntry:
    key: str
    payload: bytes
    created_at: float
    ttl: float
    compressed: bool
    size_bytes: int

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl


class CacheSegment:
    """A named, independently bounded partition of the store."""

    def __init__(self, name: str, max_entries: int):
        if max_entries < 1:
            raise ValueError(f"Segment {name} needs max_entries >= 1, got {max_entries}")
        self.name = name
        self.max_entries = max_entries
        self.lock = threading.Lock()
        self.entries: dict[str, CacheEntry] = {}
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expirations = 0
        self.corruptions = 0

    def __len__(self) -> int:
        return len(self.entries)

    def evict_oldest(self) -> None:
        """Drop the entry created first. Caller holds the lock."""
        oldest = min(self.entries.values(), key=lambda e: e.created_at)
        del self.entries[oldest.key]
        self.evictions += 1
        logger.debug(f"Evicted {self.name}/{oldest.key} (capacity {self.max_entries})")

    def stats(self) -> dict:
        return {
            "entries": len(self.entries),
            "max_entries": self.max_entries,
            "bytes": sum(e.size_bytes for e in self.entries.values()),
            "compressed_entries": sum(1 for e in self.entries.values() if e.compressed),
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "corruptions": self.corruptions,
        }


class CacheStore:
    """
    Ephemeral cache shared by every worker of an access layer.
    Features:
      - Named segments with their own capacity bound
      - TTL expiry checked lazily on read
      - Eviction of the oldest entries when a segment is full
      - Optional compression for large payloads
      - Thread-safe: one lock per segment, eviction + insert is atomic
    """

    def __init__(
        self,
        segments: Optional[Mapping[str, int]] = None,
        default_max_entries: int = DEFAULT_SEGMENT_MAX_ENTRIES,
        compression_threshold: int = COMPRESSION_THRESHOLD_BYTES,
        clock: Callable[[], float] = time.time,
    ):
        self.default_max_entries = default_max_entries
        self.compression_threshold = compression_threshold
        self._clock = clock
        self._registry_lock = threading.Lock()
        self._segments: dict[str, CacheSegment] = {}
        for name, max_entries in (segments or {}).items():
            self.configure_segment(name, max_entries)

    # ── Segments ────────────────────────────────────────────────────────────

    def configure_segment(self, name: str, max_entries: int) -> CacheSegment:
        """Create a segment, or resize an existing one (trimming if needed)."""
        with self._registry_lock:
            segment = self._segments.get(name)
            if segment is None:
                segment = CacheSegment(name, max_entries)
                self._segments[name] = segment
                return segment
        if max_entries < 1:
            raise ValueError(f"Segment {name} needs max_entries >= 1, got {max_entries}")
        with segment.lock:
            segment.max_entries = max_entries
            while len(segment) > segment.max_entries:
                segment.evict_oldest()
        return segment

    def _segment(self, name: str) -> CacheSegment:
        with self._registry_lock:
            segment = self._segments.get(name)
            if segment is None:
                segment = CacheSegment(name, self.default_max_entries)
                self._segments[name] = segment
            return segment

    def segments(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._segments)

    # ── Read / write ────────────────────────────────────────────────────────

    def get(self, segment: str, key: str) -> Any:
        """
        Return the cached value, or MISS if absent, expired or corrupt.
        Expired and corrupt entries are evicted under the same lock as the read.
        """
        seg = self._segment(segment)
        with seg.lock:
            entry = seg.entries.get(key)
            if entry is None:
                seg.misses += 1
                logger.debug(f"Cache miss: {segment}/{key}")
                return MISS

            if entry.is_expired(self._clock()):
                del seg.entries[key]
                seg.expirations += 1
                seg.misses += 1
                logger.debug(f"Cache expired: {segment}/{key}")
                return MISS

            try:
                value = self._decode(segment, key, entry.payload, entry.compressed)
            except CacheCorruption as e:
                del seg.entries[key]
                seg.corruptions += 1
                seg.misses += 1
                logger.warning(f"{e} — entry evicted")
                return MISS

            seg.hits += 1
            logger.debug(f"Cache hit: {segment}/{key}")
            return value

    def put(
        self,
        segment: str,
        key: str,
        value: Any,
        ttl: float,
        compress: bool = False,
    ) -> CacheEntry:
        """Store a value, evicting the oldest entries if the segment is full."""
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")

        payload, compressed, size = self._encode(value, compress)
        seg = self._segment(segment)

        with seg.lock:
            entry = CacheEntry(
                key=key,
                payload=payload,
                created_at=self._clock(),
                ttl=ttl,
                compressed=compressed,
                size_bytes=size,
            )
            if key not in seg.entries:
                while len(seg.entries) >= seg.max_entries:
                    seg.evict_oldest()
            seg.entries[key] = entry

        logger.debug(
            f"Cached {segment}/{key} ({size} bytes{', compressed' if compressed else ''})"
        )
        return entry

    def invalidate(self, segment: str, key: Optional[str] = None) -> int:
        """Remove one entry, or every entry of the segment when key is None."""
        seg = self._segment(segment)
        with seg.lock:
            if key is None:
                removed = len(seg.entries)
                seg.entries.clear()
            else:
                removed = 1 if seg.entries.pop(key, None) is not None else 0
        if removed:
            logger.debug(f"Invalidated {removed} entries in {segment}")
        return removed

    def clear(self) -> int:
        """Empty every segment."""
        return sum(self.invalidate(name) for name in self.segments())

    def purge_expired(self) -> int:
        """Remove expired entries from every segment."""
        now = self._clock()
        removed = 0
        for name in self.segments():
            seg = self._segment(name)
            with seg.lock:
                expired = [k for k, e in seg.entries.items() if e.is_expired(now)]
                for k in expired:
                    del seg.entries[k]
                seg.expirations += len(expired)
                removed += len(expired)
        if removed:
            logger.info(f"Purged {removed} expired cache entries.")
        return removed

    def size(self, segment: str) -> int:
        seg = self._segment(segment)
        with seg.lock:
            return len(seg.entries)

    def entry(self, segment: str, key: str) -> Optional[CacheEntry]:
        """Peek at the stored entry without touching counters or expiry."""
        seg = self._segment(segment)
        with seg.lock:
            return seg.entries.get(key)

    def stats(self) -> dict[str, dict]:
        """Per-segment counters for cache inspection commands."""
        result = {}
        for name in self.segments():
            seg = self._segment(name)
            with seg.lock:
                result[name] = seg.stats()
        return result

    # ── Encoding ────────────────────────────────────────────────────────────

    def _encode(self, value: Any, compress: bool) -> tuple[bytes, bool, int]:
        raw = json.dumps(value, default=str).encode("utf-8")
        if compress and len(raw) > self.compression_threshold:
            packed = zlib.compress(raw)
            if len(packed) < len(raw):
                return packed, True, len(packed)
        return raw, False, len(raw)

    @staticmethod
    def _decode(segment: str, key: str, payload: bytes, compressed: bool) -> Any:
        try:
            raw = zlib.decompress(payload) if compressed else payload
            return json.loads(raw.decode("utf-8"))
        except (zlib.error, UnicodeDecodeError, ValueError, TypeError) as e:
            raise CacheCorruption(segment, key, e) from e
