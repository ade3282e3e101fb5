"""
Role storage interface and in-memory implementation.
"""

import dataclasses
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol

from shared.errors import RoleNotFoundError, ValidationError
from shared.logging import get_logger
from .invalidation import CacheInvalidationHook
from .ip_match import validate_allowed_ips
from .models import RoleCreateRequest, RoleRecord, RoleUpdateRequest, utcnow
from .permissions import validate_permissions_for_role


class RoleStore(Protocol):
    """Read side of role persistence used by the authorization service."""

    async def get_role(self, user_id: str) -> Optional[RoleRecord]:
        ...


class InMemoryRoleStore:
    """Role store kept in process memory.

    Every mutation validates its input, writes the record and runs the
    invalidation hook before returning, so a read issued after the call
    returns never sees a decision cached for the previous role.
    """

    def __init__(
        self,
        invalidation_hook: Optional[CacheInvalidationHook] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.invalidation_hook = invalidation_hook
        self.logger = get_logger("access.role_store")
        self._clock = clock
        self._roles: Dict[str, RoleRecord] = {}

    async def get_role(self, user_id: str) -> Optional[RoleRecord]:
        return self._roles.get(user_id)

    async def list_roles(self) -> List[RoleRecord]:
        return sorted(self._roles.values(), key=lambda r: r.user_id)

    async def create(self, request: RoleCreateRequest) -> RoleRecord:
        """Create a role for a user who has none."""
        if request.user_id in self._roles:
            raise ValidationError(
                f"Role already exists for user {request.user_id}",
                {"user_id": request.user_id},
                code="ROLE_EXISTS",
            )

        allowed_ips = validate_allowed_ips(request.allowed_ips)
        validate_permissions_for_role(request.role, request.permissions)

        now = self._clock()
        record = RoleRecord(
            user_id=request.user_id,
            role=request.role,
            permissions=request.permissions,
            expires_at=request.expires_at,
            active=request.active,
            allowed_ips=allowed_ips,
            granted_by=request.granted_by,
            created_at=now,
            updated_at=now,
        )
        self._commit(record.user_id, record)

        self.logger.info("Role created", user_id=record.user_id, role=record.role.value)
        return record

    async def update(self, user_id: str, request: RoleUpdateRequest) -> RoleRecord:
        """Apply the fields set on ``request`` to an existing role."""
        current = self._roles.get(user_id)
        if current is None:
            raise RoleNotFoundError(user_id)

        changes = request.model_dump(exclude_unset=True)
        # model_dump flattens nested models; take the typed value back
        if "permissions" in changes:
            changes["permissions"] = request.permissions
        if changes.get("allowed_ips") is not None:
            changes["allowed_ips"] = validate_allowed_ips(changes["allowed_ips"])
        elif "allowed_ips" in changes:
            changes["allowed_ips"] = ()
        for required in ("role", "permissions", "active"):
            if required in changes and changes[required] is None:
                del changes[required]

        record = dataclasses.replace(current, updated_at=self._clock(), **changes)
        validate_permissions_for_role(record.role, record.permissions)

        self._commit(user_id, record)

        self.logger.info("Role updated", user_id=user_id, fields=sorted(changes))
        return record

    async def delete(self, user_id: str) -> RoleRecord:
        """Remove a user's role."""
        record = self._roles.get(user_id)
        if record is None:
            raise RoleNotFoundError(user_id)

        self._commit(user_id, None)

        self.logger.info("Role deleted", user_id=user_id)
        return record

    def _invalidate(self, user_id: str) -> None:
        if self.invalidation_hook is not None:
            self.invalidation_hook.invalidate(user_id)

    def _commit(self, user_id: str, record: Optional[RoleRecord]) -> None:
        """Write ``record`` (None deletes) and invalidate, undoing the write if invalidation fails."""
        previous = self._roles.get(user_id)
        if record is None:
            self._roles.pop(user_id, None)
        else:
            self._roles[user_id] = record

        try:
            self._invalidate(user_id)
        except Exception:
            if previous is None:
                self._roles.pop(user_id, None)
            else:
                self._roles[user_id] = previous
            self.logger.error("Cache invalidation failed; role change rolled back", user_id=user_id)
            raise
