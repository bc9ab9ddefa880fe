"""
Project and schema registry endpoints.
"""

import uuid
from typing import List

from fastapi import APIRouter, Query, Response, status

from witness.api.deps import CurrentUser, DbSession, ProjectActor
from witness.engines.schema.registry import SchemaRegistry
from witness.engines.schema.visibility import FormMode
from witness.errors import NotFoundError, ValidationError
from witness.kernel.models.project import Project
from witness.kernel.models.schema import RecordType
from witness.kernel.permissions.permission_service import Permission, require_permission
from witness.schemas.project import (
    FieldCreate,
    FieldGroupCreate,
    FieldGroupResponse,
    FieldGroupUpdate,
    FieldResponse,
    FieldUpdate,
    MemberAuditRightsUpdate,
    MemberCreate,
    MemberResponse,
    ProjectCreate,
    ProjectResponse,
    RecordTypeCreate,
    RecordTypeResponse,
    RecordTypeUpdate,
)

router = APIRouter()


async def _record_type_in_project(db, project_id: uuid.UUID, record_type_id: uuid.UUID) -> RecordType:
    record_type = await db.get(RecordType, record_type_id)
    if record_type is None or record_type.project_id != project_id:
        raise NotFoundError("Record type not found", {"record_type_id": str(record_type_id)})
    return record_type


@router.post("", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
async def create_project(data: ProjectCreate, user: CurrentUser, db: DbSession):
    """Create a project owned by the caller."""
    project = await SchemaRegistry(db).create_project(owner_id=user.id, **data.model_dump())
    return ProjectResponse.model_validate(project)


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(project_id: uuid.UUID, actor: ProjectActor, db: DbSession):
    require_permission(actor, Permission.VIEW, project_id=project_id)
    project = await db.get(Project, project_id)
    if project is None:
        raise NotFoundError("Project not found", {"project_id": str(project_id)})
    return ProjectResponse.model_validate(project)


@router.post("/{project_id}/members", response_model=MemberResponse, status_code=status.HTTP_201_CREATED)
async def add_member(project_id: uuid.UUID, data: MemberCreate, actor: ProjectActor, db: DbSession):
    member = await SchemaRegistry(db).add_member(project_id, data.user_id, data.role, actor)
    return MemberResponse.model_validate(member)


@router.patch("/{project_id}/members/{user_id}/audit-rights", response_model=MemberResponse)
async def update_member_audit_rights(
    project_id: uuid.UUID,
    user_id: uuid.UUID,
    data: MemberAuditRightsUpdate,
    actor: ProjectActor,
    db: DbSession,
):
    member = await SchemaRegistry(db).update_member_audit_rights(
        project_id, user_id, actor, **data.model_dump(),
    )
    return MemberResponse.model_validate(member)


# Record types

@router.post(
    "/{project_id}/record-types",
    response_model=RecordTypeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_record_type(project_id: uuid.UUID, data: RecordTypeCreate, actor: ProjectActor, db: DbSession):
    settings = data.model_dump(exclude={"slug", "name"})
    record_type = await SchemaRegistry(db).create_record_type(
        project_id, actor, slug=data.slug, name=data.name, **settings,
    )
    return RecordTypeResponse.model_validate(record_type)


@router.get("/{project_id}/record-types/{record_type_id}", response_model=RecordTypeResponse)
async def get_record_type(project_id: uuid.UUID, record_type_id: uuid.UUID, actor: ProjectActor, db: DbSession):
    require_permission(actor, Permission.VIEW, project_id=project_id)
    record_type = await _record_type_in_project(db, project_id, record_type_id)
    return RecordTypeResponse.model_validate(record_type)


@router.patch("/{project_id}/record-types/{record_type_id}", response_model=RecordTypeResponse)
async def update_record_type(
    project_id: uuid.UUID,
    record_type_id: uuid.UUID,
    data: RecordTypeUpdate,
    actor: ProjectActor,
    db: DbSession,
):
    await _record_type_in_project(db, project_id, record_type_id)
    record_type = await SchemaRegistry(db).update_record_type(
        record_type_id, actor, **data.model_dump(exclude_unset=True),
    )
    return RecordTypeResponse.model_validate(record_type)


@router.get("/{project_id}/record-types/{record_type_id}/fields", response_model=List[FieldResponse])
async def effective_fields(
    project_id: uuid.UUID,
    record_type_id: uuid.UUID,
    actor: ProjectActor,
    db: DbSession,
    mode: FormMode = Query(FormMode.REVIEW, description="Form the field set is rendered for"),
):
    """The effective field set for a form mode, in display order."""
    require_permission(actor, Permission.VIEW, project_id=project_id)
    await _record_type_in_project(db, project_id, record_type_id)
    fields = await SchemaRegistry(db).get_effective_fields(record_type_id, mode)
    return [FieldResponse.model_validate(f) for f in fields]


# Field groups

@router.post(
    "/{project_id}/record-types/{record_type_id}/groups",
    response_model=FieldGroupResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_field_group(
    project_id: uuid.UUID,
    record_type_id: uuid.UUID,
    data: FieldGroupCreate,
    actor: ProjectActor,
    db: DbSession,
):
    await _record_type_in_project(db, project_id, record_type_id)
    group = await SchemaRegistry(db).create_field_group(
        record_type_id, actor, **data.model_dump(),
    )
    return FieldGroupResponse.model_validate(group)


@router.patch("/{project_id}/groups/{group_id}", response_model=FieldGroupResponse)
async def update_field_group(
    project_id: uuid.UUID,
    group_id: uuid.UUID,
    data: FieldGroupUpdate,
    actor: ProjectActor,
    db: DbSession,
):
    group = await SchemaRegistry(db).update_field_group(group_id, actor, **data.model_dump(exclude_unset=True))
    return FieldGroupResponse.model_validate(group)


@router.delete("/{project_id}/groups/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_field_group(project_id: uuid.UUID, group_id: uuid.UUID, actor: ProjectActor, db: DbSession):
    await SchemaRegistry(db).delete_field_group(group_id, actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Field definitions

@router.post(
    "/{project_id}/record-types/{record_type_id}/field-definitions",
    response_model=FieldResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_field(
    project_id: uuid.UUID,
    record_type_id: uuid.UUID,
    data: FieldCreate,
    actor: ProjectActor,
    db: DbSession,
):
    await _record_type_in_project(db, project_id, record_type_id)
    field = await SchemaRegistry(db).create_field(record_type_id, actor, **data.model_dump())
    return FieldResponse.model_validate(field)


@router.patch("/{project_id}/field-definitions/{field_id}", response_model=FieldResponse)
async def update_field(
    project_id: uuid.UUID,
    field_id: uuid.UUID,
    data: FieldUpdate,
    actor: ProjectActor,
    db: DbSession,
):
    changes = data.model_dump(exclude_unset=True)
    if "slug" in changes:
        raise ValidationError("Field slugs cannot be changed")
    field = await SchemaRegistry(db).update_field(field_id, actor, **changes)
    return FieldResponse.model_validate(field)


@router.delete("/{project_id}/field-definitions/{field_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_field(project_id: uuid.UUID, field_id: uuid.UUID, actor: ProjectActor, db: DbSession):
    """Delete a field definition. Values already stored on records are kept."""
    await SchemaRegistry(db).delete_field(field_id, actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
