"""
Request-scoped dependencies: the database session, the signed-in user and the
Actor (user plus project role) every core operation is called with.
"""

import uuid
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from witness.database import get_db
from witness.errors import NotFoundError
from witness.kernel.identity.actor import Actor
from witness.kernel.identity.jwt import verify_access_token
from witness.kernel.models.record import Record
from witness.kernel.models.user import User
from witness.kernel.permissions.permission_service import PermissionService

bearer = HTTPBearer(auto_error=False)

DbSession = Annotated[AsyncSession, Depends(get_db)]
Credentials = Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer)]


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _user_from_token(db: AsyncSession, credentials: Optional[HTTPAuthorizationCredentials]):
    """Returns (user, problem); problem is the 401 detail when there is no usable user."""
    if credentials is None:
        return None, "Not authenticated"
    payload = verify_access_token(credentials.credentials)
    if payload is None:
        return None, "Invalid or expired token"
    user = await db.get(User, payload.user_id)
    if user is None:
        return None, "User not found"
    return user, None


async def get_current_user_optional(credentials: Credentials, db: DbSession) -> Optional[User]:
    """Signed-in active user, or None for anonymous guest submissions."""
    user, _ = await _user_from_token(db, credentials)
    if user is None or not user.is_active:
        return None
    return user


async def get_current_user(credentials: Credentials, db: DbSession) -> User:
    user, problem = await _user_from_token(db, credentials)
    if user is None:
        raise _unauthorized(problem)
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is disabled")
    return user


CurrentUser = Annotated[User, Depends(get_current_user)]
OptionalUser = Annotated[Optional[User], Depends(get_current_user_optional)]


async def actor_for(db: AsyncSession, user: User, project_id: Optional[uuid.UUID]) -> Actor:
    """Resolve the acting user's role inside a project."""
    return await PermissionService(db).resolve_actor(user.id, project_id)


async def get_project_actor(
    project_id: uuid.UUID,
    user: CurrentUser,
    db: DbSession,
) -> Actor:
    """Actor for routes under /projects/{project_id}."""
    return await actor_for(db, user, project_id)


ProjectActor = Annotated[Actor, Depends(get_project_actor)]


async def get_verifier_actor(user: CurrentUser, db: DbSession) -> Actor:
    """Actor for the cross-project verifier queue."""
    return await actor_for(db, user, None)


VerifierActor = Annotated[Actor, Depends(get_verifier_actor)]


async def get_record_actor(
    record_id: uuid.UUID,
    user: CurrentUser,
    db: DbSession,
) -> Actor:
    """Actor for routes under /records/{record_id}, scoped to the record's project."""
    project_id = await db.scalar(select(Record.project_id).where(Record.id == record_id))
    if project_id is None:
        raise NotFoundError("Record not found", {"record_id": str(record_id)})
    return await actor_for(db, user, project_id)


RecordActor = Annotated[Actor, Depends(get_record_actor)]
