"""
Query-embedding cache.

Bounded LRU that maps (provider, model, language, question) to the computed
query embedding so repeated questions skip the upstream embedding call.

Design:
- OrderedDict gives O(1) lookup, move-to-end and pop-oldest
- Strict recency eviction once size exceeds max_size
- Vectors are copied on put and on get: callers normalize in place
- Thread-safe with a single lock held only for the dictionary update
"""

from __future__ import annotations

from collections import OrderedDict
from threading import Lock
from typing import Any, Dict, Optional, Sequence

import numpy as np
from loguru import logger

from ragchat import metrics


def make_cache_key(provider: str, model: str, lang: str, question: str) -> str:
    return f"{provider}:{model}:{lang}:{question}"


class EmbeddingCache:
    """
    LRU cache for query embeddings.

    Thread-safe with lock-based synchronization.
    """

    def __init__(self, max_size: int = 256):
        """
        Initialize cache.

        Args:
            max_size: Maximum number of entries before LRU eviction (>= 1)
        """
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self._entries: "OrderedDict[str, np.ndarray]" = OrderedDict()
        self._lock = Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: str) -> Optional[np.ndarray]:
        """
        Return a copy of the cached vector and mark it most recently used.

        Returns:
            Vector copy, or None when the key is not cached
        """
        with self._lock:
            vec = self._entries.get(key)
            if vec is None:
                self.misses += 1
                metrics.cache_misses.labels(cache_type="query_embedding").inc()
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            out = vec.copy()
        metrics.cache_hits.labels(cache_type="query_embedding").inc()
        return out

    def put(self, key: str, vector: Sequence[float]) -> None:
        """Store a copy of vector; evict the least recently used entry when full."""
        stored = np.array(vector, dtype=np.float32, copy=True)
        evicted = False
        with self._lock:
            if key in self._entries:
                self._entries[key] = stored
                self._entries.move_to_end(key)
                return
            self._entries[key] = stored
            if len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
                self.evictions += 1
                evicted = True
            size = len(self._entries)
        if evicted:
            metrics.cache_evictions.labels(cache_type="query_embedding").inc()
            logger.debug(f"Embedding cache eviction: LRU removed, size={size}")
        metrics.cache_size.labels(cache_type="query_embedding").set(size)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self) -> list:
        """Keys from least to most recently used."""
        with self._lock:
            return list(self._entries.keys())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        metrics.cache_size.labels(cache_type="query_embedding").set(0)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self.hits + self.misses
            hit_rate = (self.hits / total * 100) if total > 0 else 0.0
            return {
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate_pct": round(hit_rate, 2),
                "size": len(self._entries),
                "capacity": self.max_size,
                "evictions": self.evictions,
            }

    def __repr__(self) -> str:
        s = self.stats()
        return f"EmbeddingCache(size={s['size']}/{s['capacity']}, hits={s['hits']}, hit_rate={s['hit_rate_pct']}%)"
