"""
Access Core service: role administration, authorization checks and diagnostics.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, Query, Request
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import AccessCoreException, AuthenticationError, RoleNotFoundError
from shared.logging import set_caller_context

from .admission.queue import AdmissionQueue, RateLimiter
from .authz.invalidation import CacheInvalidationHook
from .authz.models import (
    AuthorizationCheckResponse, AuthorizationDecision, RoleCreateRequest, RoleResponse, RoleUpdateRequest,
)
from .authz.permission_cache import PermissionCache
from .authz.permissions import Permission, RoleKind
from .authz.role_store import InMemoryRoleStore
from .authz.service import AuthorizationService
from .caching.response_cache import ResponseCache, RouteClass
from .dedup.deduplicator import RequestDeduplicator
from .pipeline import ReadResult, RequestPipeline

ROLES_ROUTE = "/admin/roles"

# Never queued behind the rate limiter
UNTHROTTLED_PATHS = frozenset({"/health", "/metrics"})


@dataclass(frozen=True)
class CallerIdentity:
    user_id: str
    caller_ip: Optional[str]


async def resolve_caller(request: Request) -> CallerIdentity:
    """Resolve the authenticated caller.

    Upstream authentication either sets ``request.state.user_id`` or forwards
    ``X-User-Id``. The caller IP is the transport peer address; deployments
    behind a trusted proxy override this dependency.
    """
    user_id = getattr(request.state, "user_id", None) or request.headers.get("X-User-Id")
    if not user_id:
        raise AuthenticationError("Missing caller identity")

    caller_ip = request.client.host if request.client else None
    set_caller_context(user_id=user_id)
    return CallerIdentity(user_id=user_id, caller_ip=caller_ip)


def _cached_json(result: ReadResult) -> JSONResponse:
    return JSONResponse(
        content=result.payload,
        headers={"X-Cache": result.status.value, "Age": str(int(result.age_seconds))},
    )


class AccessService(BaseService):
    """Access Core service implementation."""

    def __init__(self, rate_limiter: Optional[RateLimiter] = None, config: Optional[ServiceConfig] = None):
        super().__init__("access", 8020, config)
        cfg = self.config

        self.permission_cache = PermissionCache(
            cfg.permission_cache_ttl_seconds,
            cfg.permission_cache_max_entries,
            cfg.permission_cache_sweep_seconds,
            metrics=self.metrics,
        )
        self.response_cache = ResponseCache(
            cfg.response_cache_max_entries,
            cfg.response_cache_sweep_seconds,
            ttls={
                RouteClass.REFERENCE: cfg.response_cache_reference_ttl_seconds,
                RouteClass.LISTING: cfg.response_cache_listing_ttl_seconds,
                RouteClass.DEFAULT: cfg.response_cache_default_ttl_seconds,
            },
            metrics=self.metrics,
        )
        self.invalidation_hook = CacheInvalidationHook(
            self.permission_cache,
            self.response_cache,
            purge_routes=(ROLES_ROUTE,),
        )
        self.role_store = InMemoryRoleStore(self.invalidation_hook)
        self.authorization = AuthorizationService(self.role_store, self.permission_cache, metrics=self.metrics)
        self.deduplicator = RequestDeduplicator(cfg.dedup_max_wait_seconds, metrics=self.metrics)

        self.admission: Optional[AdmissionQueue] = None
        if rate_limiter is not None:
            self.admission = AdmissionQueue(
                rate_limiter,
                cfg.admission_queue_capacity,
                cfg.admission_queue_timeout_seconds,
                metrics=self.metrics,
            )
            self._setup_admission_middleware()

        self.pipeline = RequestPipeline(self.deduplicator, self.response_cache, self.admission)

        self._setup_access_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.access_service = self

    def _setup_admission_middleware(self):
        """Queue requests the rate limiter rejects instead of failing them."""

        @self.app.middleware("http")
        async def admit_request(request: Request, call_next):
            if request.url.path in UNTHROTTLED_PATHS:
                return await call_next(request)

            client_id = request.headers.get("X-User-Id") or (request.client.host if request.client else "unknown")
            try:
                return await self.pipeline.handle(client_id, lambda: call_next(request))
            except AccessCoreException as exc:
                # Raised outside the router, so the app exception handlers never see it
                return self.error_response(exc)

    async def _require(self, caller: CallerIdentity, permission: Permission) -> AuthorizationDecision:
        return await self.authorization.require(caller.user_id, caller.caller_ip, permission)

    def _setup_access_routes(self):
        """Set up access-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "access",
                "message": "Access Core - Authorization & Admission Service",
                "version": "1.0.0",
                "capabilities": ["authorization", "permission_cache", "deduplication", "admission", "response_cache"],
            }

        @self.app.post(ROLES_ROUTE, status_code=201, response_model=RoleResponse)
        async def create_role(request: RoleCreateRequest, caller: CallerIdentity = Depends(resolve_caller)):
            """Grant a role to a user."""
            await self._require(caller, Permission.CREATE_ADMINS)

            if request.granted_by is None:
                request = request.model_copy(update={"granted_by": caller.user_id})
            record = await self.role_store.create(request)
            return RoleResponse.from_record(record)

        @self.app.get(ROLES_ROUTE)
        async def list_roles(caller: CallerIdentity = Depends(resolve_caller)):
            """List all roles. Served from the response cache when fresh."""
            await self._require(caller, Permission.VIEW_ADMINS)

            async def produce() -> Dict[str, Any]:
                records = await self.role_store.list_roles()
                return {
                    "roles": [RoleResponse.from_record(r).model_dump(mode="json") for r in records],
                    "total": len(records),
                }

            result = await self.pipeline.cached_read(ROLES_ROUTE, None, produce, route_class=RouteClass.LISTING)
            return _cached_json(result)

        @self.app.get(ROLES_ROUTE + "/{user_id}")
        async def get_role(user_id: str, caller: CallerIdentity = Depends(resolve_caller)):
            """Get one user's role."""
            await self._require(caller, Permission.VIEW_ADMINS)

            async def produce() -> Dict[str, Any]:
                record = await self.role_store.get_role(user_id)
                if record is None:
                    raise RoleNotFoundError(user_id)
                return RoleResponse.from_record(record).model_dump(mode="json")

            result = await self.pipeline.cached_read(f"{ROLES_ROUTE}/{user_id}", None, produce)
            return _cached_json(result)

        @self.app.put(ROLES_ROUTE + "/{user_id}", response_model=RoleResponse)
        async def update_role(
            user_id: str,
            request: RoleUpdateRequest,
            caller: CallerIdentity = Depends(resolve_caller),
        ):
            """Update a user's role."""
            await self._require(caller, Permission.EDIT_ADMINS)

            record = await self.role_store.update(user_id, request)
            return RoleResponse.from_record(record)

        @self.app.delete(ROLES_ROUTE + "/{user_id}")
        async def delete_role(user_id: str, caller: CallerIdentity = Depends(resolve_caller)):
            """Revoke a user's role."""
            await self._require(caller, Permission.DELETE_ADMINS)

            await self.role_store.delete(user_id)
            return {"success": True, "message": "Role deleted successfully"}

        @self.app.get("/authz/check", response_model=AuthorizationCheckResponse)
        async def check_authorization(
            permission: Optional[Permission] = Query(None, description="Catalog permission to test"),
            caller: CallerIdentity = Depends(resolve_caller),
        ):
            """Report the caller's current authorization decision."""
            decision = await self.authorization.authorize(caller.user_id, caller.caller_ip)

            allowed = decision.allowed
            if permission is not None:
                allowed = decision.grants(permission)

            granted = []
            if decision.allowed:
                granted = list(Permission) if decision.role == RoleKind.SUPER_ADMIN else decision.permissions.granted()

            return AuthorizationCheckResponse(
                user_id=caller.user_id,
                allowed=allowed,
                reason=decision.reason,
                role=decision.role,
                permission=permission,
                permissions=granted,
            )

        @self.app.get("/diagnostics/cache")
        async def cache_diagnostics(caller: CallerIdentity = Depends(resolve_caller)):
            """Permission cache, response cache and dedup statistics."""
            await self._require(caller, Permission.VIEW_LOGS)
            return {
                "permission_cache": self.permission_cache.stats(),
                "response_cache": self.response_cache.stats(),
                "deduplicator": self.deduplicator.stats(),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

        @self.app.get("/diagnostics/queue")
        async def queue_diagnostics(caller: CallerIdentity = Depends(resolve_caller)):
            """Admission queue status per client."""
            await self._require(caller, Permission.VIEW_LOGS)
            if self.admission is None:
                return {"enabled": False, "depth": 0, "clients": {}}
            return {"enabled": True, **self.admission.status()}

    async def _check_dependencies(self) -> Dict[str, str]:
        """Report in-process component state."""
        return {
            "permission_cache": "ok",
            "response_cache": "ok",
            "admission": "ok" if self.admission is not None else "disabled",
        }

    async def start(self):
        """Start access service background tasks."""
        await self.permission_cache.start()
        await self.response_cache.start()
        if self.admission is not None:
            await self.admission.start(self.config.admission_tick_seconds, self.config.admission_tick_budget)

        bootstrap = self.config.bootstrap_super_admin
        if bootstrap and await self.role_store.get_role(bootstrap) is None:
            await self.role_store.create(
                RoleCreateRequest(user_id=bootstrap, role=RoleKind.SUPER_ADMIN, granted_by="bootstrap")
            )
            self.logger.info("Bootstrapped super admin", user_id=bootstrap)

        self.logger.info("Access service started")

    async def stop(self):
        """Stop access service background tasks."""
        if self.admission is not None:
            await self.admission.stop()
        await self.response_cache.stop()
        await self.permission_cache.stop()

        self.logger.info("Access service stopped")


def create_app(rate_limiter: Optional[RateLimiter] = None, config: Optional[ServiceConfig] = None):
    """Create access service application."""
    service = AccessService(rate_limiter=rate_limiter, config=config)
    return service.app


if __name__ == "__main__":
    service = AccessService()
    service.run()
