"""
Short-TTL cache for idempotent read responses.
"""

import asyncio
import contextlib
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, NamedTuple, Optional, TYPE_CHECKING

from shared.logging import get_logger
from ..dedup.keys import Params, query_string

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


class RouteClass(str, Enum):
    """Freshness class of a cacheable route."""
    REFERENCE = "reference"
    LISTING = "listing"
    DEFAULT = "default"


DEFAULT_ROUTE_TTLS: Dict[RouteClass, float] = {
    RouteClass.REFERENCE: 300.0,
    RouteClass.LISTING: 30.0,
    RouteClass.DEFAULT: 60.0,
}


class RouteKey(NamedTuple):
    route: str
    query: str = ""
    user_id: Optional[str] = None

    def __str__(self) -> str:
        key = f"{self.route}?{self.query}" if self.query else self.route
        return f"{key}@{self.user_id}" if self.user_id is not None else key


def make_route_key(route: str, params: Params = None, user_id: Optional[str] = None) -> RouteKey:
    """Key for a read: route, sorted query string and, for caller-scoped routes, the user."""
    return RouteKey(route.rstrip("/") or "/", query_string(params), user_id)


@dataclass(frozen=True)
class CacheLookup:
    hit: bool
    payload: Any = None
    age_seconds: float = 0.0


MISS = CacheLookup(hit=False)


@dataclass
class _Stored:
    payload: Any
    stored_at: float
    expires_at: float


class ResponseCache:
    """In-process response cache with per-route-class TTLs.

    Entries are evicted oldest-stored first when the cache is full and are
    dropped lazily on lookup once expired; a periodic sweep reclaims the
    rest.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        sweep_interval_seconds: float = 300.0,
        ttls: Optional[Mapping[RouteClass, float]] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional["MetricsCollector"] = None,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")

        self.max_entries = max_entries
        self.sweep_interval_seconds = sweep_interval_seconds
        self.ttls: Dict[RouteClass, float] = dict(DEFAULT_ROUTE_TTLS)
        self.ttls.update(ttls or {})
        self.metrics = metrics
        self.logger = get_logger("access.response_cache")
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[RouteKey, _Stored]" = OrderedDict()
        self._sweeper: Optional[asyncio.Task] = None
        self._hits = 0
        self._misses = 0

    def ttl_for(self, route_class: RouteClass) -> float:
        return self.ttls.get(route_class, self.ttls[RouteClass.DEFAULT])

    def get(self, key: RouteKey) -> CacheLookup:
        now = self._clock()
        with self._lock:
            stored = self._entries.get(key)
            if stored is not None and now >= stored.expires_at:
                del self._entries[key]
                stored = None
            if stored is None:
                self._misses += 1
            else:
                self._hits += 1

        if stored is None:
            self._record("miss")
            return MISS

        self._record("hit")
        return CacheLookup(hit=True, payload=stored.payload, age_seconds=max(0.0, now - stored.stored_at))

    def set(self, key: RouteKey, payload: Any, ttl: Optional[float] = None) -> None:
        """Store ``payload`` under ``key``. A non-positive ttl stores nothing."""
        ttl = self.ttls[RouteClass.DEFAULT] if ttl is None else ttl
        if ttl <= 0:
            return

        now = self._clock()
        with self._lock:
            self._entries.pop(key, None)
            while len(self._entries) >= self.max_entries:
                self._entries.popitem(last=False)
            self._entries[key] = _Stored(payload=payload, stored_at=now, expires_at=now + ttl)

    def invalidate_route(self, route: str) -> int:
        """Drop every cached response for ``route`` and its sub-routes."""
        route = route.rstrip("/") or "/"
        prefix = route if route == "/" else route + "/"
        with self._lock:
            doomed = [k for k in self._entries if k.route == route or k.route.startswith(prefix)]
            for key in doomed:
                del self._entries[key]

        if doomed:
            self.logger.debug("Invalidated route", route=route, removed=len(doomed))
        return len(doomed)

    def invalidate_user(self, user_id: str) -> int:
        """Drop every caller-scoped response cached for ``user_id``."""
        with self._lock:
            doomed = [k for k in self._entries if k.user_id == user_id]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        self.logger.info("Response cache cleared")

    def sweep(self) -> int:
        """Remove expired entries. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, stored in self._entries.items() if now >= stored.expires_at]
            for key in expired:
                del self._entries[key]

        if expired:
            self.logger.debug("Swept expired responses", removed=len(expired))
        return len(expired)

    async def start(self) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.sweep()
            except Exception as exc:
                self.logger.error("Response cache sweep failed", error=str(exc))

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            size = len(self._entries)
            hits, misses = self._hits, self._misses
        total = hits + misses
        return {
            "size": size,
            "max_entries": self.max_entries,
            "hits": hits,
            "misses": misses,
            "hit_rate": round(hits / total, 4) if total else 0.0,
            "ttls": {route_class.value: ttl for route_class, ttl in self.ttls.items()},
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _record(self, result: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("response_cache_lookups_total", result=result)
