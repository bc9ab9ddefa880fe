"""
Permission service for project-scoped RBAC.

Roles are held per project (ProjectMember.role, with the project owner always
resolving to "owner"). Each role grants a fixed set of permissions; core
services check permissions against the explicit Actor they are handed.
"""

import uuid
from enum import Enum
from typing import Dict, FrozenSet, Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from witness.errors import NotFoundError, PermissionDeniedError
from witness.kernel.identity.actor import Actor
from witness.kernel.models.project import Project, ProjectMember, ProjectRole
from witness.kernel.models.user import User


class Permission(str, Enum):
    VIEW = "view"
    REVIEW = "review"
    VALIDATE = "validate"
    MANAGE_RECORDS = "manage_records"
    DELETE_RECORDS = "delete_records"
    SUGGEST_EDITS = "suggest_edits"
    MANAGE_FIELDS = "manage_fields"
    MANAGE_MEMBERS = "manage_members"
    MANAGE_PROJECT = "manage_project"
    MANAGE_CREDITS = "manage_credits"
    REQUEST_AUDIT = "request_audit"
    FLAG_AUDIT = "flag_audit"


_ALL = frozenset(Permission)

ROLE_PERMISSIONS: Dict[str, FrozenSet[Permission]] = {
    ProjectRole.OWNER.value: _ALL,
    ProjectRole.ADMIN.value: _ALL - {Permission.MANAGE_PROJECT},
    ProjectRole.EDITOR.value: frozenset({
        Permission.VIEW,
        Permission.REVIEW,
        Permission.VALIDATE,
        Permission.MANAGE_RECORDS,
        Permission.SUGGEST_EDITS,
        Permission.FLAG_AUDIT,
    }),
    ProjectRole.REVIEWER.value: frozenset({
        Permission.VIEW,
        Permission.REVIEW,
        Permission.MANAGE_RECORDS,
        Permission.SUGGEST_EDITS,
    }),
    ProjectRole.VALIDATOR.value: frozenset({
        Permission.VIEW,
        Permission.VALIDATE,
        Permission.SUGGEST_EDITS,
        Permission.REQUEST_AUDIT,
        Permission.FLAG_AUDIT,
    }),
    ProjectRole.ANALYST.value: frozenset({
        Permission.VIEW,
        Permission.REVIEW,
        Permission.VALIDATE,
        Permission.MANAGE_RECORDS,
        Permission.SUGGEST_EDITS,
        Permission.FLAG_AUDIT,
    }),
    ProjectRole.VIEWER.value: frozenset({Permission.VIEW}),
}


def has_permission(role: Optional[str], permission: Permission) -> bool:
    """Check whether a project role grants a permission."""
    if role is None:
        return False
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


def require_permission(
    actor: Actor,
    *permissions: Permission,
    project_id: Optional[uuid.UUID] = None,
    message: Optional[str] = None,
) -> None:
    """
    Raise PermissionDeniedError unless the actor's role grants at least one
    of the given permissions.

    When `project_id` is given the actor must have been resolved for that
    project; a role from another project grants nothing here.
    """
    if project_id is not None and actor.project_id != project_id:
        raise PermissionDeniedError(
            "Not a member of this project",
            {"project_id": str(project_id)},
        )
    if any(has_permission(actor.role, p) for p in permissions):
        return
    wanted = " or ".join(p.value for p in permissions)
    raise PermissionDeniedError(
        message or f"Role '{actor.role or 'none'}' lacks permission: {wanted}",
        {"role": actor.role, "required": [p.value for p in permissions]},
    )


class PermissionService:
    """
    Role provider: resolves who a user is inside a project.

    Usage:
        actor = await PermissionService(session).resolve_actor(user_id, project_id)
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_project_role(
        self,
        user_id: uuid.UUID,
        project_id: uuid.UUID,
    ) -> Optional[str]:
        """
        Resolve a user's role in a project.

        The project owner is always "owner"; otherwise the membership role,
        or None for non-members.
        """
        project = await self.session.get(Project, project_id)
        if project is None or project.is_deleted:
            return None
        if project.owner_id == user_id:
            return ProjectRole.OWNER.value

        result = await self.session.execute(
            select(ProjectMember.role).where(
                and_(
                    ProjectMember.project_id == project_id,
                    ProjectMember.user_id == user_id,
                )
            )
        )
        role = result.scalar_one_or_none()
        return str(role) if role is not None else None

    async def resolve_actor(
        self,
        user_id: uuid.UUID,
        project_id: Optional[uuid.UUID] = None,
    ) -> Actor:
        """Build the Actor for a user, optionally scoped to a project."""
        user = await self.session.get(User, user_id)
        if user is None or not user.is_active:
            raise NotFoundError("User not found", {"user_id": str(user_id)})

        role = None
        if project_id is not None:
            role = await self.get_project_role(user_id, project_id)

        return Actor(
            id=user.id,
            role=role,
            project_id=project_id,
            is_verifier=user.is_verifier,
        )

    async def check_permission(
        self,
        user_id: uuid.UUID,
        project_id: uuid.UUID,
        permission: Permission,
    ) -> bool:
        role = await self.get_project_role(user_id, project_id)
        return has_permission(role, permission)
