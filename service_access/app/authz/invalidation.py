"""
Cache invalidation hook for role mutations.
"""

from typing import Iterable, Optional, Tuple, TYPE_CHECKING

from shared.logging import get_logger
from .permission_cache import PermissionCache

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..caching.response_cache import ResponseCache


class CacheInvalidationHook:
    """Drops cached state for a user whose role was created, changed or removed.

    Role stores call :meth:`invalidate` synchronously before reporting a
    mutation as successful. Permission cache removal is mandatory and any
    failure propagates to the mutating call. Response cache purging is best
    effort.
    """

    def __init__(
        self,
        permission_cache: PermissionCache,
        response_cache: Optional["ResponseCache"] = None,
        purge_routes: Iterable[str] = (),
    ):
        self.permission_cache = permission_cache
        self.response_cache = response_cache
        self.purge_routes: Tuple[str, ...] = tuple(purge_routes)
        self.logger = get_logger("access.invalidation")

    def invalidate(self, user_id: str) -> int:
        removed = self.permission_cache.invalidate(user_id)

        if self.response_cache is not None:
            try:
                purged = self.response_cache.invalidate_user(user_id)
                for route in self.purge_routes:
                    purged += self.response_cache.invalidate_route(route)
            except Exception as exc:
                self.logger.warning("Response cache purge failed", user_id=user_id, error=str(exc))
            else:
                if purged:
                    self.logger.debug("Purged cached responses", user_id=user_id, purged=purged)

        return removed
