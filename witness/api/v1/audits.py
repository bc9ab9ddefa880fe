"""
Third-party verification endpoints.

Requests are made from inside a project; verifiers work a cross-project queue.
"""

import uuid
from typing import List

from fastapi import APIRouter, Query, status

from witness.api.deps import CurrentUser, DbSession, ProjectActor, RecordActor, VerifierActor, actor_for
from witness.engines.audit.audit_service import AuditService
from witness.engines.audit.verification_level import LEVEL_NAMES, VerificationLevelService
from witness.errors import NotFoundError, PermissionDeniedError
from witness.kernel.models.project import Project
from witness.kernel.permissions.permission_service import Permission, require_permission
from witness.schemas.audit import (
    AuditComplete,
    AuditRequestCreate,
    ReasonBody,
    VerificationRequestResponse,
    VerificationResultResponse,
)

router = APIRouter()


@router.post(
    "/records/{record_id}/audits",
    response_model=VerificationRequestResponse,
    status_code=status.HTTP_201_CREATED,
)
async def request_audit(record_id: uuid.UUID, data: AuditRequestCreate, actor: RecordActor, db: DbSession):
    """Ask for an independent verification of a published record."""
    request = await AuditService(db).request_audit(
        record_id,
        actor,
        scope=data.scope,
        items=data.items,
        all_items=data.all_items,
        priority=data.priority,
        notes=data.notes,
    )
    return VerificationRequestResponse.model_validate(request)


@router.get("/projects/{project_id}/audit-usage")
async def audit_usage(project_id: uuid.UUID, actor: ProjectActor, db: DbSession):
    """This month's verification requests against the caller's cap."""
    require_permission(actor, Permission.VIEW, project_id=project_id)
    project = await db.get(Project, project_id)
    if project is None:
        raise NotFoundError("Project not found", {"project_id": str(project_id)})
    service = AuditService(db)
    member = await service.member_for(project_id, actor.id)
    return await service.monthly_usage(project, member)


@router.get("/records/{record_id}/audits", response_model=List[VerificationRequestResponse])
async def list_record_audits(record_id: uuid.UUID, actor: RecordActor, db: DbSession):
    require_permission(actor, Permission.VIEW, project_id=actor.project_id)
    requests = await AuditService(db).requests_for_record(record_id)
    return [VerificationRequestResponse.model_validate(r) for r in requests]


@router.get("/records/{record_id}/verification-level")
async def get_verification_level(record_id: uuid.UUID, actor: RecordActor, db: DbSession):
    require_permission(actor, Permission.VIEW, project_id=actor.project_id)
    record = await AuditService(db).get_record(record_id)
    level = await VerificationLevelService.compute(db, record)
    return {"record_id": record.id, "level": level, "label": LEVEL_NAMES[level]}


@router.get("/audits/queue", response_model=List[VerificationRequestResponse])
async def open_queue(actor: VerifierActor, db: DbSession, limit: int = Query(50, ge=1, le=200)):
    """Unclaimed requests for verifiers, urgent first."""
    if not actor.is_verifier:
        raise PermissionDeniedError("Only verifiers can see the verification queue")
    requests = await AuditService(db).open_queue(limit=limit)
    return [VerificationRequestResponse.model_validate(r) for r in requests]


@router.post("/audits/{request_id}/assign", response_model=VerificationRequestResponse)
async def assign_request(request_id: uuid.UUID, actor: VerifierActor, db: DbSession):
    request = await AuditService(db).assign_request(request_id, actor)
    return VerificationRequestResponse.model_validate(request)


@router.post("/audits/{request_id}/complete", response_model=VerificationRequestResponse)
async def complete_audit(request_id: uuid.UUID, data: AuditComplete, actor: VerifierActor, db: DbSession):
    request = await AuditService(db).complete_audit(
        request_id,
        actor,
        outcome=data.outcome,
        results=[r.model_dump() for r in data.results],
        notes=data.notes,
        issues_found=data.issues_found,
    )
    return VerificationRequestResponse.model_validate(request)


@router.post("/audits/{request_id}/reject", response_model=VerificationRequestResponse)
async def reject_request(request_id: uuid.UUID, data: ReasonBody, actor: VerifierActor, db: DbSession):
    """Give back a request the verifier cannot work."""
    request = await AuditService(db).reject_request(request_id, actor, data.reason)
    return VerificationRequestResponse.model_validate(request)


@router.get("/audits/{request_id}/results", response_model=List[VerificationResultResponse])
async def list_results(request_id: uuid.UUID, user: CurrentUser, db: DbSession):
    service = AuditService(db)
    request = await service.get_request(request_id)
    if request.assigned_to != user.id:
        actor = await actor_for(db, user, request.project_id)
        require_permission(actor, Permission.VIEW, project_id=request.project_id)
    results = await service.results_for_request(request_id)
    return [VerificationResultResponse.model_validate(r) for r in results]


@router.post("/audit-results/{result_id}/unverify", response_model=VerificationResultResponse)
async def unverify_result(result_id: uuid.UUID, data: ReasonBody, user: CurrentUser, db: DbSession):
    service = AuditService(db)
    result = await service.get_result(result_id)
    actor = await actor_for(db, user, (await service.get_record(result.record_id)).project_id)
    result = await service.unverify_result(result_id, actor, data.reason)
    return VerificationResultResponse.model_validate(result)
