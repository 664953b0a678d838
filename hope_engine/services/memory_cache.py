"""
TTL- and capacity-bounded cache of assembled per-user memory blobs.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ..utils.config import CacheConfig
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class CacheEntry:
    payload: Any
    last_updated: float


class MemoryCache:
    """In-process cache keyed by ``user_id:version``.

    Entries expire ``ttl_seconds`` after they were written. At capacity the
    single entry with the oldest write time is evicted. A background task
    sweeps expired entries independently of request traffic.
    """

    def __init__(self, config: CacheConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._sweeper: Optional[asyncio.Task] = None
        self.hits = 0
        self.misses = 0

    @staticmethod
    def cache_key(user_id: str, version: Optional[str] = None) -> str:
        return f"{user_id}:{version or 'latest'}"

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.last_updated > self.config.ttl_seconds

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if self._expired(entry, self._clock()):
            del self._entries[key]
            self.misses += 1
            logger.debug(f'Memory cache entry expired: {key}')
            return None
        self.hits += 1
        return entry.payload

    def set(self, key: str, payload: Any) -> None:
        if key not in self._entries and len(self._entries) >= self.config.max_entries:
            oldest = min(self._entries, key=lambda k: self._entries[k].last_updated)
            del self._entries[oldest]
            logger.debug(f'Memory cache at capacity, evicted {oldest}')
        self._entries[key] = CacheEntry(payload=payload, last_updated=self._clock())

    def invalidate(self, user_id: str) -> int:
        """Drop every entry for user_id. Returns the number removed."""
        prefix = f'{user_id}:'
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        if keys:
            logger.info(f'Invalidated {len(keys)} memory cache entries for user {user_id}')
        return len(keys)

    def sweep(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if self._expired(entry, now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f'Memory cache sweep evicted {len(expired)} entries')
        return len(expired)

    async def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())
            logger.info(f'Memory cache sweep started (every {self.config.sweep_interval_seconds}s)')

    async def stop(self) -> None:
        if self._sweeper:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.config.sweep_interval_seconds)
                self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f'Memory cache sweep failed: {e}')

    def stats(self) -> Dict[str, Any]:
        return {
            'entries': len(self._entries),
            'max_entries': self.config.max_entries,
            'ttl_seconds': self.config.ttl_seconds,
            'hits': self.hits,
            'misses': self.misses,
            'sweeper_running': self._sweeper is not None and not self._sweeper.done(),
        }
