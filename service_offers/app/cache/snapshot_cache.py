"""
In-process TTL cache of rule snapshots.
"""

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from ..rules.models import RuleSnapshot


class SnapshotCache:
    """Holds the latest snapshot per organization for ``ttl_seconds``."""

    def __init__(self, ttl_seconds: float = 15.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, RuleSnapshot]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, organization_id: str) -> Optional[RuleSnapshot]:
        with self._lock:
            entry = self._entries.get(organization_id)
            if entry is None or self._clock() - entry[0] >= self.ttl_seconds:
                self._entries.pop(organization_id, None)
                self.misses += 1
                return None
            self.hits += 1
            return entry[1]

    def put(self, snapshot: RuleSnapshot) -> None:
        if self.ttl_seconds <= 0:
            return
        with self._lock:
            current = self._entries.get(snapshot.organization_id)
            # Never replace a newer generation with an older one
            if current is not None and current[1].generation > snapshot.generation:
                return
            self._entries[snapshot.organization_id] = (self._clock(), snapshot)

    def invalidate(self, organization_id: Optional[str] = None) -> int:
        with self._lock:
            if organization_id is None:
                count = len(self._entries)
                self._entries.clear()
                return count
            return 1 if self._entries.pop(organization_id, None) is not None else 0

    def stats(self) -> Dict[str, float]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "entries": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": self.hits / total if total else 0.0,
                "ttl_seconds": self.ttl_seconds,
            }
