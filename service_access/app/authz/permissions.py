"""
Permission catalog and role-tier constraints.
"""

from enum import Enum
from typing import FrozenSet, Iterable, List

from pydantic import BaseModel, ConfigDict

from shared.errors import PermissionNotAllowedError


class Permission(str, Enum):
    """Closed catalog of grantable permissions."""

    # User management
    VIEW_USERS = "view_users"
    EDIT_USERS = "edit_users"
    DELETE_USERS = "delete_users"
    BAN_USERS = "ban_users"
    UNBAN_USERS = "unban_users"

    # Image management
    VIEW_IMAGES = "view_images"
    EDIT_IMAGES = "edit_images"
    DELETE_IMAGES = "delete_images"
    MODERATE_IMAGES = "moderate_images"

    # Category management
    VIEW_CATEGORIES = "view_categories"
    CREATE_CATEGORIES = "create_categories"
    EDIT_CATEGORIES = "edit_categories"
    DELETE_CATEGORIES = "delete_categories"

    # Admin management
    VIEW_ADMINS = "view_admins"
    CREATE_ADMINS = "create_admins"
    EDIT_ADMINS = "edit_admins"
    DELETE_ADMINS = "delete_admins"

    # Dashboard & analytics
    VIEW_DASHBOARD = "view_dashboard"
    VIEW_ANALYTICS = "view_analytics"

    # Collections and favorites
    VIEW_COLLECTIONS = "view_collections"
    MANAGE_COLLECTIONS = "manage_collections"
    MANAGE_FAVORITES = "manage_favorites"

    # Moderation, system and logs
    MODERATE_CONTENT = "moderate_content"
    VIEW_LOGS = "view_logs"
    EXPORT_DATA = "export_data"
    MANAGE_SETTINGS = "manage_settings"

    # Legacy coarse-grained flags
    MANAGE_USERS = "manage_users"
    MANAGE_IMAGES = "manage_images"
    MANAGE_CATEGORIES = "manage_categories"
    MANAGE_ADMINS = "manage_admins"


class Permissions(BaseModel):
    """Named boolean per catalog permission.

    Unknown keys are rejected, so a permission bag can never carry a name
    outside the catalog.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    view_users: bool = False
    edit_users: bool = False
    delete_users: bool = False
    ban_users: bool = False
    unban_users: bool = False

    view_images: bool = False
    edit_images: bool = False
    delete_images: bool = False
    moderate_images: bool = False

    view_categories: bool = False
    create_categories: bool = False
    edit_categories: bool = False
    delete_categories: bool = False

    view_admins: bool = False
    create_admins: bool = False
    edit_admins: bool = False
    delete_admins: bool = False

    view_dashboard: bool = True
    view_analytics: bool = False

    view_collections: bool = False
    manage_collections: bool = False
    manage_favorites: bool = False

    moderate_content: bool = False
    view_logs: bool = False
    export_data: bool = False
    manage_settings: bool = False

    manage_users: bool = False
    manage_images: bool = False
    manage_categories: bool = False
    manage_admins: bool = False

    def has(self, permission: Permission) -> bool:
        return bool(getattr(self, permission.value))

    def granted(self) -> List[Permission]:
        """Permissions set to true, in catalog order."""
        return [p for p in Permission if self.has(p)]

    @classmethod
    def of(cls, permissions: Iterable[Permission]) -> "Permissions":
        """Build a bag with exactly the given permissions granted."""
        wanted = {p.value for p in permissions}
        return cls(**{p.value: p.value in wanted for p in Permission})


class RoleKind(str, Enum):
    """Role tiers, from most to least privileged."""

    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MODERATOR = "moderator"


MODERATOR_PERMISSIONS: FrozenSet[Permission] = frozenset({
    Permission.VIEW_DASHBOARD,
    Permission.VIEW_ANALYTICS,
    Permission.VIEW_USERS,
    Permission.VIEW_IMAGES,
    Permission.VIEW_CATEGORIES,
    Permission.VIEW_COLLECTIONS,
    Permission.MODERATE_IMAGES,
    Permission.MODERATE_CONTENT,
    Permission.MANAGE_FAVORITES,
    Permission.VIEW_LOGS,
})

ADMIN_PERMISSIONS: FrozenSet[Permission] = MODERATOR_PERMISSIONS | frozenset({
    Permission.EDIT_USERS,
    Permission.DELETE_USERS,
    Permission.BAN_USERS,
    Permission.UNBAN_USERS,
    Permission.EDIT_IMAGES,
    Permission.DELETE_IMAGES,
    Permission.CREATE_CATEGORIES,
    Permission.EDIT_CATEGORIES,
    Permission.DELETE_CATEGORIES,
    Permission.MANAGE_COLLECTIONS,
    Permission.EXPORT_DATA,
    Permission.MANAGE_SETTINGS,
    Permission.VIEW_ADMINS,
})

# Only super admins may delegate these
ADMIN_MANAGEMENT_PERMISSIONS: FrozenSet[Permission] = frozenset({
    Permission.CREATE_ADMINS,
    Permission.EDIT_ADMINS,
    Permission.DELETE_ADMINS,
})


def allowed_permissions(role: RoleKind) -> FrozenSet[Permission]:
    """Permissions a role tier may hold."""
    if role == RoleKind.SUPER_ADMIN:
        return frozenset(Permission)
    if role == RoleKind.ADMIN:
        return ADMIN_PERMISSIONS
    return MODERATOR_PERMISSIONS


def validate_permissions_for_role(role: RoleKind, permissions: Permissions) -> None:
    """Reject permission grants the role tier may not hold.

    Every violation is collected so the caller sees the full list at once.
    """
    if role == RoleKind.SUPER_ADMIN:
        return

    allowed = allowed_permissions(role)
    errors = []
    for permission in permissions.granted():
        if permission in ADMIN_MANAGEMENT_PERMISSIONS:
            errors.append(
                f"Permission '{permission.value}' is only allowed for super_admin role."
            )
        elif permission not in allowed:
            errors.append(
                f"Permission '{permission.value}' is not allowed for role '{role.value}'."
            )

    if errors:
        raise PermissionNotAllowedError(role.value, errors)
