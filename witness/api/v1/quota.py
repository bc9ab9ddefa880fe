"""
AI quota and project credit endpoints.
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Query, status

from witness.api.deps import DbSession, ProjectActor
from witness.engines.quota.governor import QuotaGovernor, QuotaStatus
from witness.kernel.permissions.permission_service import Permission, require_permission
from witness.schemas.audit import CreditGrant, CreditTransactionResponse, UsageRecord, UsageRecorded

router = APIRouter()


@router.get("/{project_id}/ai-quota", response_model=QuotaStatus)
async def check_quota(
    project_id: uuid.UUID,
    actor: ProjectActor,
    db: DbSession,
    operation_type: Optional[str] = Query(None),
):
    """Whether the caller may run one more AI operation of this type."""
    require_permission(actor, Permission.VIEW, project_id=project_id)
    return await QuotaGovernor(db).check_quota(actor.id, project_id, operation_type)


@router.post("/{project_id}/ai-usage", response_model=UsageRecorded, status_code=status.HTTP_201_CREATED)
async def record_usage(project_id: uuid.UUID, data: UsageRecord, actor: ProjectActor, db: DbSession):
    """Gate and record one AI operation, charging credits when the tier requires it."""
    require_permission(actor, Permission.VIEW, project_id=project_id)
    governor = QuotaGovernor(db)
    await governor.require_quota(actor.id, project_id, data.operation_type)
    recorded = await governor.record_usage(
        actor.id,
        project_id,
        data.operation_type,
        meta=data.model_dump(exclude={"operation_type"}),
    )
    return UsageRecorded(**recorded)


@router.get("/{project_id}/ai-usage/summary")
async def usage_summary(
    project_id: uuid.UUID,
    actor: ProjectActor,
    db: DbSession,
    operation_type: Optional[str] = Query(None),
):
    require_permission(actor, Permission.VIEW, project_id=project_id)
    return await QuotaGovernor(db).usage_summary(actor.id, project_id, operation_type)


@router.post(
    "/{project_id}/credits",
    response_model=CreditTransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_credits(project_id: uuid.UUID, data: CreditGrant, actor: ProjectActor, db: DbSession):
    transaction = await QuotaGovernor(db).add_credits(
        project_id,
        data.amount,
        actor,
        transaction_type=data.transaction_type,
        description=data.description,
    )
    return CreditTransactionResponse.model_validate(transaction)


@router.get("/{project_id}/credits/transactions", response_model=List[CreditTransactionResponse])
async def list_transactions(
    project_id: uuid.UUID,
    actor: ProjectActor,
    db: DbSession,
    limit: int = Query(100, ge=1, le=500),
):
    require_permission(actor, Permission.MANAGE_CREDITS, project_id=project_id)
    transactions = await QuotaGovernor(db).transactions(project_id, limit=limit)
    return [CreditTransactionResponse.model_validate(t) for t in transactions]
