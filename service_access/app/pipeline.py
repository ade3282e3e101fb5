"""
Per-request composition of admission, deduplication and response caching.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from shared.logging import get_logger
from .admission.queue import AdmissionQueue
from .caching.response_cache import ResponseCache, RouteClass, make_route_key
from .dedup.deduplicator import RequestDeduplicator
from .dedup.keys import Params, canonical_request_key

T = TypeVar("T")


class CacheStatus(str, Enum):
    HIT = "HIT"
    MISS = "MISS"


@dataclass(frozen=True)
class ReadResult:
    payload: Any
    status: CacheStatus
    age_seconds: float = 0.0


class RequestPipeline:
    """Runs a request through the load-protection stages.

    Admission applies to every request; the response cache and the
    deduplicator only to idempotent reads. Authorization sits between the
    two and is performed by the caller once :meth:`handle` admits it.
    """

    def __init__(
        self,
        deduplicator: RequestDeduplicator,
        response_cache: Optional[ResponseCache] = None,
        admission: Optional[AdmissionQueue] = None,
    ):
        self.deduplicator = deduplicator
        self.response_cache = response_cache
        self.admission = admission
        self.logger = get_logger("access.pipeline")

    async def handle(
        self,
        client_id: str,
        continuation: Callable[[], Awaitable[T]],
        timeout: Optional[float] = None,
    ) -> T:
        """Run ``continuation`` once admitted. Without a queue, runs it directly."""
        if self.admission is None:
            return await continuation()
        return await self.admission.admit(client_id, continuation, timeout)

    async def cached_read(
        self,
        route: str,
        params: Params,
        produce: Callable[[], Awaitable[Any]],
        user_id: Optional[str] = None,
        route_class: RouteClass = RouteClass.DEFAULT,
    ) -> ReadResult:
        """Serve a read from cache, or compute it once for all concurrent callers.

        Failed computations are not cached; the error reaches every caller
        that joined the computation.
        """
        key = make_route_key(route, params, user_id)

        if self.response_cache is not None:
            lookup = self._lookup(key)
            if lookup is not None and lookup.hit:
                return ReadResult(lookup.payload, CacheStatus.HIT, lookup.age_seconds)

        async def produce_and_store() -> Any:
            payload = await produce()
            self._store(key, payload, route_class)
            return payload

        dedup_key = canonical_request_key("GET", route, params, user_id)
        payload = await self.deduplicator.dedupe(dedup_key, produce_and_store)
        return ReadResult(payload, CacheStatus.MISS)

    def _lookup(self, key):
        try:
            return self.response_cache.get(key)
        except Exception as exc:
            self.logger.error("Response cache lookup failed", key=str(key), error=str(exc))
            return None

    def _store(self, key, payload: Any, route_class: RouteClass) -> None:
        if self.response_cache is None:
            return
        try:
            self.response_cache.set(key, payload, self.response_cache.ttl_for(route_class))
        except Exception as exc:
            self.logger.error("Response cache write failed", key=str(key), error=str(exc))
