"""
Simple In-Memory Caching System
TTL cache for short-lived lookups such as exchange rates
"""

import time
import logging
from typing import Any, Optional, Dict

logger = logging.getLogger(__name__)


class SimpleCache:
    """In-memory cache with TTL support"""

    def __init__(self, default_ttl: int = 300):
        self._cache: Dict[str, Dict[str, Any]] = {}
        self.default_ttl = default_ttl
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "evictions": 0}

    def get(self, key: str, default: Any = None) -> Any:
        """Get value from cache"""
        entry = self._cache.get(key)
        if entry is not None:
            if entry["expires_at"] > time.monotonic():
                self.stats["hits"] += 1
                return entry["value"]
            # Expired
            del self._cache[key]
            self.stats["evictions"] += 1

        self.stats["misses"] += 1
        return default

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Set value in cache with TTL"""
        if ttl is None:
            ttl = self.default_ttl

        self._cache[key] = {
            "value": value,
            "expires_at": time.monotonic() + ttl,
        }
        self.stats["sets"] += 1

