"""
Role and authorization decision models.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from .permissions import Permission, Permissions, RoleKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DenialReason(str, Enum):
    """Why a role does not currently grant access."""
    INACTIVE = "inactive"
    EXPIRED = "expired"
    IP_RESTRICTED = "ip_restricted"
    NO_ROLE = "no_role"


@dataclass(frozen=True)
class RoleRecord:
    """Role as persisted by the role store. Read-only to the core."""
    user_id: str
    role: RoleKind = RoleKind.ADMIN
    permissions: Permissions = field(default_factory=Permissions)
    expires_at: Optional[datetime] = None
    active: bool = True
    allowed_ips: Tuple[str, ...] = ()
    granted_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def ip_restricted(self) -> bool:
        return bool(self.allowed_ips)


@dataclass(frozen=True)
class AuthorizationDecision:
    """Resolved authorization snapshot; the value stored in the permission cache."""
    allowed: bool
    reason: Optional[DenialReason] = None
    role: Optional[RoleKind] = None
    permissions: Optional[Permissions] = None
    ip_restricted: bool = False

    @classmethod
    def authorized(cls, role: RoleRecord) -> "AuthorizationDecision":
        return cls(
            allowed=True,
            role=role.role,
            permissions=role.permissions,
            ip_restricted=role.ip_restricted,
        )

    @classmethod
    def denied(cls, reason: DenialReason, role: Optional[RoleRecord] = None) -> "AuthorizationDecision":
        return cls(
            allowed=False,
            reason=reason,
            role=role.role if role else None,
            ip_restricted=role.ip_restricted if role else False,
        )

    def grants(self, permission: Permission) -> bool:
        """Whether this decision covers a specific catalog permission."""
        if not self.allowed:
            return False
        if self.role == RoleKind.SUPER_ADMIN:
            return True
        return self.permissions is not None and self.permissions.has(permission)


class RoleCreateRequest(BaseModel):
    """Request model for creating a role."""
    user_id: str = Field(..., min_length=1, description="User the role belongs to")
    role: RoleKind = Field(RoleKind.ADMIN, description="Role tier")
    permissions: Permissions = Field(default_factory=Permissions, description="Granted permissions")
    expires_at: Optional[datetime] = Field(None, description="When the role stops granting access")
    active: bool = Field(True, description="Whether the role is enabled")
    allowed_ips: List[str] = Field(default_factory=list, description="Address literals or CIDR prefixes")
    granted_by: Optional[str] = Field(None, description="User who granted the role")

    @field_validator("expires_at")
    @classmethod
    def _normalize_expiry(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None


class RoleUpdateRequest(BaseModel):
    """Request model for updating a role. Unset fields are left unchanged."""
    role: Optional[RoleKind] = Field(None, description="Role tier")
    permissions: Optional[Permissions] = Field(None, description="Granted permissions")
    expires_at: Optional[datetime] = Field(None, description="When the role stops granting access")
    active: Optional[bool] = Field(None, description="Whether the role is enabled")
    allowed_ips: Optional[List[str]] = Field(None, description="Address literals or CIDR prefixes")

    @field_validator("expires_at")
    @classmethod
    def _normalize_expiry(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None


class RoleResponse(BaseModel):
    """Response model for role operations."""
    user_id: str
    role: RoleKind
    permissions: Permissions
    expires_at: Optional[datetime]
    active: bool
    allowed_ips: List[str]
    granted_by: Optional[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: RoleRecord) -> "RoleResponse":
        return cls(
            user_id=record.user_id,
            role=record.role,
            permissions=record.permissions,
            expires_at=record.expires_at,
            active=record.active,
            allowed_ips=list(record.allowed_ips),
            granted_by=record.granted_by,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class AuthorizationCheckResponse(BaseModel):
    """Response model for an authorization check."""
    user_id: str
    allowed: bool
    reason: Optional[DenialReason] = None
    role: Optional[RoleKind] = None
    permission: Optional[Permission] = None
    permissions: List[Permission] = Field(default_factory=list)
