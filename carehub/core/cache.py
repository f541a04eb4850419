"""
Time-bounded cache owned by a single resolver (or service) instance.

Keys are tuples whose first element is the user id so that every entry of a
user can be dropped at once after a grant mutation.
"""

import asyncio
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)

_MISSING = object()


class TTLCache:
    def __init__(
        self,
        ttl_seconds: float,
        max_size: int = 1000,
        clock: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[Hashable, Tuple[Any, float]] = {}
        self._in_flight: Dict[Hashable, asyncio.Future] = {}
        self._generation = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _is_fresh(self, stored_at: float, now: float) -> bool:
        return now - stored_at < self.ttl_seconds

    def get(self, key: Hashable, default: Any = None) -> Any:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            value, stored_at = entry
            if not self._is_fresh(stored_at, now):
                del self._entries[key]
                return default
            return value

    def set(self, key: Hashable, value: Any) -> None:
        now = self._clock()
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size:
                self._evict(now)
            self._entries[key] = (value, now)

    def _evict(self, now: float) -> None:
        stale = [k for k, (_, stored_at) in self._entries.items() if not self._is_fresh(stored_at, now)]
        for k in stale:
            del self._entries[k]
        if len(self._entries) >= self.max_size:
            oldest = min(self._entries, key=lambda k: self._entries[k][1])
            del self._entries[oldest]

    def invalidate(self, predicate: Callable[[Hashable], bool]) -> int:
        """Drop every entry whose key matches. Returns the number removed."""
        with self._lock:
            self._generation += 1
            doomed = [k for k in self._entries if predicate(k)]
            for k in doomed:
                del self._entries[k]
        if doomed:
            logger.debug(f"{self.name}: invalidated {len(doomed)} entries")
        return len(doomed)

    def invalidate_user(self, user_id: str) -> int:
        return self.invalidate(lambda key: isinstance(key, tuple) and len(key) > 0 and key[0] == user_id)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries.clear()

    async def get_or_load(self, key: Hashable, loader: Callable[[], Awaitable[Any]]) -> Any:
        """
        Return the cached value for key, loading it once if missing or stale.

        Concurrent callers for the same key share one in-flight load. A loader
        exception is not cached; it is raised to every waiter.
        """
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value

        pending = self._in_flight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        with self._lock:
            generation = self._generation
        try:
            value = await loader()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unawaited future does not warn.
            future.exception()
            raise
        else:
            future.set_result(value)
            with self._lock:
                stale_load = generation != self._generation
            if not stale_load:
                self.set(key, value)
            return value
        finally:
            self._in_flight.pop(key, None)
