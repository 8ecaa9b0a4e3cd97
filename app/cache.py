import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

MAX_CACHE_SIZE = 1000
EVICTION_RATIO = 0.1


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    created_at: float
    expires_at: float
    ttl: int


def generate_key(prefix, params=None):
    """Build a stable key from a prefix and an unordered mapping of params."""
    parts = []
    for name in sorted(params or {}):
        value = params[name]
        if value is None:
            continue
        parts.append(f"{name}={str(value).lower().strip()}")

    if not parts:
        return prefix
    return f"{prefix}_{'_'.join(parts)}"


class TTLCache:
    def __init__(self, max_size=MAX_CACHE_SIZE, eviction_ratio=EVICTION_RATIO, clock=time.time):
        self.store: dict[str, CacheEntry] = {}
        self.lock = threading.Lock()
        self.max_size = max_size
        self.eviction_batch = math.ceil(max_size * eviction_ratio)
        self.clock = clock
        self.hits = 0
        self.misses = 0
        self.sets = 0
        self.evictions = 0

    def get(self, key):
        with self.lock:
            entry = self.store.get(key)
            if entry is not None:
                if self.clock() < entry.expires_at:
                    self.hits += 1
                    return entry.value
                del self.store[key]

            self.misses += 1
        return None

    def has(self, key):
        with self.lock:
            entry = self.store.get(key)
            if entry is None:
                return False
            if self.clock() < entry.expires_at:
                return True
            del self.store[key]
            return False

    def set(self, key, value, ttl):
        with self.lock:
            if len(self.store) >= self.max_size:
                self._evict_oldest()

            now = self.clock()
            self.store[key] = CacheEntry(
                value=value,
                created_at=now,
                expires_at=now + ttl,
                ttl=ttl,
            )
            self.sets += 1

    def delete(self, key):
        with self.lock:
            return self.store.pop(key, None) is not None

    def clear(self):
        with self.lock:
            size = len(self.store)
            self.store.clear()
        logger.info("Cleared %d cache entries", size)

    def remaining_ttl(self, key):
        with self.lock:
            entry = self.store.get(key)
            if entry is None:
                return 0
            return max(0, math.ceil(entry.expires_at - self.clock()))

    def _evict_oldest(self):
        # caller holds self.lock; sorted() is stable so ties keep insertion order
        oldest = sorted(self.store.items(), key=lambda item: item[1].created_at)
        for key, _ in oldest[:self.eviction_batch]:
            del self.store[key]
            self.evictions += 1
        logger.info("Evicted %d oldest cache entries", min(self.eviction_batch, len(oldest)))

    def reset_stats(self):
        with self.lock:
            self.hits = self.misses = self.sets = self.evictions = 0

    def stats(self):
        with self.lock:
            lookups = self.hits + self.misses
            hit_rate = f"{self.hits / lookups * 100:.2f}%" if lookups else "0%"
            return {
                "hits": self.hits,
                "misses": self.misses,
                "sets": self.sets,
                "evictions": self.evictions,
                "size": len(self.store),
                "max_size": self.max_size,
                "hit_rate": hit_rate,
            }
