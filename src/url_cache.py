"""
Time-bounded cache of discovered direct media URLs, keyed by channel.

Only the "discover" extraction mode uses it. Expiry is checked inline on
every get(); sweep() exists purely to keep memory tidy.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    url: str
    discovered_at: float


class StreamUrlCache:
    def __init__(self, ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        # Held only for single dict operations, never across I/O
        self._lock = threading.Lock()

    def _is_stale(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.discovered_at >= self.ttl

    def get(self, channel_id: str) -> Optional[str]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(channel_id)
            if entry is None:
                return None
            if self._is_stale(entry, now):
                # Only drop the entry we looked at; a concurrent put may have replaced it
                if self._entries.get(channel_id) is entry:
                    del self._entries[channel_id]
                return None
            return entry.url

    def put(self, channel_id: str, url: str):
        with self._lock:
            self._entries[channel_id] = CacheEntry(url=url, discovered_at=self._clock())

    def invalidate(self, channel_id: str) -> bool:
        with self._lock:
            removed = self._entries.pop(channel_id, None) is not None
        if removed:
            logger.debug(f"Invalidated cached stream URL for {channel_id}")
        return removed

    def sweep(self) -> int:
        """Remove every expired entry, returning how many were dropped."""
        now = self._clock()
        with self._lock:
            stale = [cid for cid, entry in self._entries.items()
                     if self._is_stale(entry, now)]
            for cid in stale:
                del self._entries[cid]
        if stale:
            logger.debug(f"Swept {len(stale)} expired stream URLs")
        return len(stale)

    def snapshot(self) -> Dict[str, float]:
        """Channel -> age in seconds, for stats."""
        now = self._clock()
        with self._lock:
            return {cid: round(now - entry.discovered_at, 1)
                    for cid, entry in self._entries.items()}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, channel_id: str) -> bool:
        return self.get(channel_id) is not None
