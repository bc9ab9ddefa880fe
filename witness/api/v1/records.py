"""
Record endpoints: submission, data edits, workflow transitions and field verification.
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Query, status

from witness.api.deps import CurrentUser, DbSession, OptionalUser, ProjectActor, RecordActor, actor_for
from witness.engines.records.record_store import RecordStore
from witness.engines.records.review_lock import ReviewLockService
from witness.kernel.permissions.permission_service import Permission, require_permission
from witness.orchestration.state_machine import WorkflowEngine
from witness.schemas.record import (
    EventResponse,
    GuestSubmit,
    LockRequest,
    LockStatusResponse,
    RecordDataUpdate,
    RecordResponse,
    RecordSubmit,
    TransitionRequest,
    ValidationIssueResponse,
)

router = APIRouter()


@router.post(
    "/projects/{project_id}/records",
    response_model=RecordResponse,
    status_code=status.HTTP_201_CREATED,
)
async def submit_record(project_id: uuid.UUID, data: RecordSubmit, actor: ProjectActor, db: DbSession):
    """Member submission; lands in pending_review, or draft when as_draft is set."""
    record = await RecordStore(db).submit_record(
        data.record_type_id,
        data.data,
        submitter=actor,
        as_draft=data.as_draft,
    )
    return RecordResponse.model_validate(record)


@router.post(
    "/record-types/{record_type_id}/guest-submissions",
    response_model=RecordResponse,
    status_code=status.HTTP_201_CREATED,
)
async def guest_submit(record_type_id: uuid.UUID, data: GuestSubmit, user: OptionalUser, db: DbSession):
    """Public guest form. Signed-in callers are still recorded as guests here."""
    record = await RecordStore(db).submit_record(
        record_type_id,
        data.data,
        guest_name=data.guest_name or (user.full_name if user else None),
        guest_email=str(data.guest_email) if data.guest_email else (user.email if user else None),
    )
    return RecordResponse.model_validate(record)


@router.get("/projects/{project_id}/records", response_model=List[RecordResponse])
async def list_records(
    project_id: uuid.UUID,
    actor: ProjectActor,
    db: DbSession,
    status_filter: Optional[str] = Query(None, alias="status"),
    record_type_id: Optional[uuid.UUID] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
):
    require_permission(actor, Permission.VIEW, project_id=project_id)
    records = await RecordStore(db).list_records(
        project_id,
        status=status_filter,
        record_type_id=record_type_id,
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    return [RecordResponse.model_validate(r) for r in records]


@router.get("/records/{record_id}", response_model=RecordResponse)
async def get_record(record_id: uuid.UUID, actor: RecordActor, db: DbSession):
    record = await RecordStore(db).get_record(record_id)
    require_permission(actor, Permission.VIEW, project_id=record.project_id)
    return RecordResponse.model_validate(record)


@router.patch("/records/{record_id}/data", response_model=RecordResponse)
async def update_record_data(record_id: uuid.UUID, data: RecordDataUpdate, actor: RecordActor, db: DbSession):
    record = await RecordStore(db).update_record_data(record_id, actor, data.changes)
    return RecordResponse.model_validate(record)


@router.post("/records/{record_id}/transitions", response_model=RecordResponse)
async def transition_record(record_id: uuid.UUID, data: TransitionRequest, actor: RecordActor, db: DbSession):
    """Apply a workflow action (submit, approve, return_to_review, reject, validate)."""
    record = await WorkflowEngine(db).transition(record_id, data.action, actor, data.payload)
    return RecordResponse.model_validate(record)


@router.get("/records/{record_id}/lock", response_model=LockStatusResponse)
async def get_lock_status(record_id: uuid.UUID, actor: RecordActor, db: DbSession):
    lock = await ReviewLockService(db).status(record_id, actor)
    return LockStatusResponse.model_validate(lock)


@router.post("/records/{record_id}/lock", response_model=LockStatusResponse)
async def acquire_lock(record_id: uuid.UUID, actor: RecordActor, db: DbSession, data: Optional[LockRequest] = None):
    """Take the review lock, or extend one you hold with `extend`."""
    extend = data.extend if data else False
    lock = await ReviewLockService(db).acquire(record_id, actor, extend=extend)
    return LockStatusResponse.model_validate(lock)


@router.delete("/records/{record_id}/lock", response_model=LockStatusResponse)
async def release_lock(record_id: uuid.UUID, actor: RecordActor, db: DbSession):
    lock = await ReviewLockService(db).release(record_id, actor)
    return LockStatusResponse.model_validate(lock)


@router.post("/records/{record_id}/fields/{field_slug}/verification", response_model=RecordResponse)
async def verify_field(record_id: uuid.UUID, field_slug: str, actor: RecordActor, db: DbSession):
    record = await RecordStore(db).verify_field(record_id, field_slug, actor)
    return RecordResponse.model_validate(record)


@router.delete("/records/{record_id}/fields/{field_slug}/verification", response_model=RecordResponse)
async def unverify_field(record_id: uuid.UUID, field_slug: str, actor: RecordActor, db: DbSession):
    record = await RecordStore(db).unverify_field(record_id, field_slug, actor)
    return RecordResponse.model_validate(record)


@router.get("/records/{record_id}/issues", response_model=List[ValidationIssueResponse])
async def list_validation_issues(
    record_id: uuid.UUID,
    actor: RecordActor,
    db: DbSession,
    unresolved_only: bool = Query(False),
):
    require_permission(actor, Permission.VIEW, project_id=actor.project_id)
    issues = await RecordStore(db).list_validation_issues(record_id, unresolved_only=unresolved_only)
    return [ValidationIssueResponse.model_validate(i) for i in issues]


@router.post("/issues/{issue_id}/resolve", response_model=ValidationIssueResponse)
async def resolve_issue(issue_id: uuid.UUID, user: CurrentUser, db: DbSession):
    store = RecordStore(db)
    issue = await store.get_issue(issue_id)
    record = await store.get_record(issue.record_id)
    actor = await actor_for(db, user, record.project_id)
    issue = await store.resolve_issue(issue_id, actor)
    return ValidationIssueResponse.model_validate(issue)


@router.get("/records/{record_id}/history", response_model=List[EventResponse])
async def record_history(
    record_id: uuid.UUID,
    actor: RecordActor,
    db: DbSession,
    limit: int = Query(100, ge=1, le=500),
):
    """The record's audit trail, newest first."""
    require_permission(actor, Permission.VIEW, project_id=actor.project_id)
    events = await RecordStore(db).history(record_id, limit=limit)
    return [EventResponse.model_validate(e) for e in events]
