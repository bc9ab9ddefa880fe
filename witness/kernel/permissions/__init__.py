"""
Permission Core - project-scoped RBAC.
"""

from witness.kernel.permissions.permission_service import (
    Permission,
    PermissionService,
    ROLE_PERMISSIONS,
    has_permission,
    require_permission,
)

__all__ = [
    "Permission",
    "PermissionService",
    "ROLE_PERMISSIONS",
    "has_permission",
    "require_permission",
]
