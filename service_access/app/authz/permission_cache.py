"""
In-process permission cache with TTL, capacity bound and per-user invalidation.
"""

import asyncio
import contextlib
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set, Tuple, TYPE_CHECKING

from shared.logging import get_logger
from .models import AuthorizationDecision

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


DEFAULT_TTL_SECONDS = 300.0
DEFAULT_MAX_ENTRIES = 1000
DEFAULT_SWEEP_INTERVAL_SECONDS = 300.0

# (user_id, caller_ip). The IP slot is None for roles without IP
# restrictions so every caller shares one entry.
CacheKey = Tuple[str, Optional[str]]


@dataclass
class CacheEntry:
    """Cached snapshot with its freshness window."""
    key: CacheKey
    snapshot: AuthorizationDecision
    inserted_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class PermissionCache:
    """Thread-safe cache of resolved authorization snapshots.

    Writes may carry a generation token taken with :meth:`generation` before
    the role was fetched. If the user was invalidated after that token was
    issued the write is dropped, so a slow fetch can never resurrect a role
    that was revoked while it was in flight.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional["MetricsCollector"] = None,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")

        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.sweep_interval_seconds = sweep_interval_seconds
        self.logger = get_logger("access.permission_cache")
        self.metrics = metrics
        self._clock = clock
        self._lock = threading.Lock()

        # Insertion order doubles as inserted_at order for eviction
        self._entries: "OrderedDict[CacheKey, CacheEntry]" = OrderedDict()
        self._by_user: Dict[str, Set[CacheKey]] = {}

        # Invalidation bookkeeping for generation-guarded writes
        self._epoch = 0
        self._invalidated: Dict[str, Tuple[int, float]] = {}
        self._stale_floor = 0

        self._sweep_task: Optional[asyncio.Task] = None

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._invalidations = 0
        self._stale_writes = 0

    @staticmethod
    def make_key(user_id: str, caller_ip: Optional[str], ip_restricted: bool) -> CacheKey:
        if ip_restricted:
            return (user_id, caller_ip or "")
        return (user_id, None)

    def get(self, user_id: str, caller_ip: Optional[str]) -> Optional[AuthorizationDecision]:
        """Return the live snapshot for the caller, or None on miss."""
        candidates = [(user_id, None), (user_id, caller_ip or "")]

        with self._lock:
            now = self._clock()
            snapshot = None
            for key in candidates:
                entry = self._entries.get(key)
                if entry is None:
                    continue
                if entry.is_expired(now):
                    self._remove(key)
                    continue
                snapshot = entry.snapshot
                break

            if snapshot is None:
                self._misses += 1
            else:
                self._hits += 1

        self._record_lookup(snapshot is not None)
        return snapshot

    def generation(self) -> int:
        """Token to pass to :meth:`set` for writes that follow a role fetch."""
        with self._lock:
            return self._epoch

    def set(
        self,
        user_id: str,
        caller_ip: Optional[str],
        snapshot: AuthorizationDecision,
        ttl: Optional[float] = None,
        generation: Optional[int] = None,
    ) -> bool:
        """Store a snapshot, replacing any entry under the same key.

        Returns False when the write was dropped because the user was
        invalidated after ``generation`` was taken, or the TTL is not positive.
        """
        ttl = self.ttl_seconds if ttl is None else ttl
        if ttl <= 0:
            return False

        key = self.make_key(user_id, caller_ip, snapshot.ip_restricted)

        with self._lock:
            if generation is not None and self._is_stale(user_id, generation):
                self._stale_writes += 1
                stale = True
            else:
                stale = False
                now = self._clock()
                if key in self._entries:
                    self._remove(key)
                while len(self._entries) >= self.max_entries:
                    self._evict_oldest()

                self._entries[key] = CacheEntry(
                    key=key,
                    snapshot=snapshot,
                    inserted_at=now,
                    expires_at=now + ttl,
                )
                self._by_user.setdefault(user_id, set()).add(key)

        if stale:
            self.logger.debug("Dropped stale permission cache write", user_id=user_id, generation=generation)
            return False
        return True

    def invalidate(self, user_id: str) -> int:
        """Remove every entry for a user. Returns the number removed."""
        with self._lock:
            self._epoch += 1
            self._invalidated[user_id] = (self._epoch, self._clock())
            keys = self._by_user.pop(user_id, set())
            for key in keys:
                self._entries.pop(key, None)
            self._invalidations += 1

        self.logger.info("Invalidated permission cache", user_id=user_id, removed=len(keys))
        return len(keys)

    def clear(self) -> None:
        """Drop all entries. Outstanding generation tokens become stale."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._by_user.clear()
            self._epoch += 1
            self._stale_floor = self._epoch
            self._invalidated.clear()

        self.logger.info("Permission cache cleared", removed=count)

    def sweep(self) -> int:
        """Remove expired entries. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                self._remove(key)

            # Forget old invalidation stamps; tokens older than the newest
            # forgotten stamp are then treated as stale.
            cutoff = now - self.ttl_seconds
            for user_id, (stamp, at) in list(self._invalidated.items()):
                if at <= cutoff:
                    self._stale_floor = max(self._stale_floor, stamp)
                    del self._invalidated[user_id]

        if expired:
            self.logger.debug("Swept expired permission cache entries", removed=len(expired))
        return len(expired)

    async def start(self) -> None:
        """Start the periodic sweep task."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        self.logger.info("Permission cache sweeper started", interval=self.sweep_interval_seconds)

    async def stop(self) -> None:
        """Stop the periodic sweep task."""
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self.logger.info("Permission cache sweeper stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.sweep()
            except Exception as exc:
                self.logger.error("Permission cache sweep failed", error=str(exc))

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            total = self._hits + self._misses
            return {
                "entries": len(self._entries),
                "users": len(self._by_user),
                "max_entries": self.max_entries,
                "ttl_seconds": self.ttl_seconds,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / total, 4) if total else 0.0,
                "evictions": self._evictions,
                "invalidations": self._invalidations,
                "stale_writes": self._stale_writes,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # Helpers below expect the lock to be held.

    def _is_stale(self, user_id: str, generation: int) -> bool:
        if generation < self._stale_floor:
            return True
        stamp = self._invalidated.get(user_id)
        return stamp is not None and stamp[0] > generation

    def _remove(self, key: CacheKey) -> None:
        self._entries.pop(key, None)
        user_keys = self._by_user.get(key[0])
        if user_keys is not None:
            user_keys.discard(key)
            if not user_keys:
                del self._by_user[key[0]]

    def _evict_oldest(self) -> None:
        self._remove(next(iter(self._entries)))
        self._evictions += 1

    def _record_lookup(self, hit: bool) -> None:
        if not self.metrics:
            return
        try:
            self.metrics.increment_counter("permission_cache_lookups_total", result="hit" if hit else "miss")
        except Exception as exc:  # pragma: no cover - metrics failures never affect lookups
            self.logger.debug("Failed to record cache metrics", error=str(exc))
