"""
Authorization resolution: permission cache first, role store on miss.
"""

import time
from datetime import datetime
from typing import Callable, Optional, TYPE_CHECKING

from shared.errors import AuthorizationDeniedError, PermissionDeniedError
from shared.logging import get_logger
from .models import AuthorizationDecision, DenialReason, RoleRecord, as_utc, utcnow
from .permission_cache import PermissionCache
from .permissions import Permission
from .role_store import RoleStore
from .validity import evaluate

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


class AuthorizationService:
    """Resolves authorization decisions for callers.

    Cache problems never fail open: a failing lookup is treated as a miss
    and the decision is recomputed from the role store.
    """

    def __init__(
        self,
        role_store: RoleStore,
        cache: PermissionCache,
        *,
        clock: Callable[[], datetime] = utcnow,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.role_store = role_store
        self.cache = cache
        self.metrics = metrics
        self.logger = get_logger("access.authorization")
        self._clock = clock

    async def authorize(self, user_id: str, caller_ip: Optional[str]) -> AuthorizationDecision:
        """Return the current decision for ``user_id`` calling from ``caller_ip``."""
        start = time.perf_counter()

        cached = self._cache_get(user_id, caller_ip)
        if cached is not None:
            self._record(cached, "cache", time.perf_counter() - start)
            return cached

        # Taken before the fetch so an invalidation racing with it wins
        generation = self.cache.generation()
        role = await self.role_store.get_role(user_id)
        now = self._clock()

        if role is None:
            decision = AuthorizationDecision.denied(DenialReason.NO_ROLE)
        else:
            decision = evaluate(role, now, caller_ip)

        self._cache_set(user_id, caller_ip, decision, role, now, generation)
        self._record(decision, "store", time.perf_counter() - start)
        return decision

    async def require(
        self,
        user_id: str,
        caller_ip: Optional[str],
        permission: Optional[Permission] = None,
    ) -> AuthorizationDecision:
        """Like :meth:`authorize` but raises on denial or a missing permission."""
        decision = await self.authorize(user_id, caller_ip)

        if not decision.allowed:
            reason = decision.reason.value if decision.reason else DenialReason.NO_ROLE.value
            self.logger.info("Authorization denied", user_id=user_id, reason=reason)
            raise AuthorizationDeniedError(reason, details={"user_id": user_id})

        if permission is not None and not decision.grants(permission):
            self.logger.info("Permission denied", user_id=user_id, permission=permission.value)
            raise PermissionDeniedError(permission.value, {"user_id": user_id})

        return decision

    def _ttl_for(self, decision: AuthorizationDecision, role: Optional[RoleRecord], now: datetime) -> float:
        ttl = self.cache.ttl_seconds
        # An authorized snapshot must not outlive the role's own expiry
        if decision.allowed and role is not None and role.expires_at is not None:
            remaining = (as_utc(role.expires_at) - as_utc(now)).total_seconds()
            ttl = min(ttl, remaining)
        return ttl

    def _cache_get(self, user_id: str, caller_ip: Optional[str]) -> Optional[AuthorizationDecision]:
        try:
            return self.cache.get(user_id, caller_ip)
        except Exception as exc:
            self.logger.error("Permission cache lookup failed", user_id=user_id, error=str(exc))
            return None

    def _cache_set(
        self,
        user_id: str,
        caller_ip: Optional[str],
        decision: AuthorizationDecision,
        role: Optional[RoleRecord],
        now: datetime,
        generation: int,
    ) -> None:
        try:
            self.cache.set(
                user_id,
                caller_ip,
                decision,
                ttl=self._ttl_for(decision, role, now),
                generation=generation,
            )
        except Exception as exc:
            self.logger.error("Permission cache write failed", user_id=user_id, error=str(exc))

    def _record(self, decision: AuthorizationDecision, source: str, duration: float) -> None:
        if not self.metrics:
            return
        outcome = "allowed" if decision.allowed else decision.reason.value
        self.metrics.increment_counter("authorization_decisions_total", decision=outcome)
        self.metrics.observe_histogram("authorization_duration_seconds", duration, source=source)
