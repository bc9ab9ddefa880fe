"""
Edit suggestion endpoints for published records.
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Query, status

from witness.api.deps import CurrentUser, DbSession, RecordActor, actor_for
from witness.kernel.models.record import Record
from witness.kernel.permissions.permission_service import Permission, require_permission
from witness.orchestration.edit_suggestions import EditSuggestionService
from witness.schemas.record import EditSuggestionCreate, EditSuggestionResponse, EditSuggestionReview

router = APIRouter()


@router.post(
    "/records/{record_id}/edit-suggestions",
    response_model=EditSuggestionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def suggest_edit(record_id: uuid.UUID, data: EditSuggestionCreate, actor: RecordActor, db: DbSession):
    suggestion = await EditSuggestionService(db).suggest_edit(
        record_id, data.field_slug, data.suggested_value, actor, reason=data.reason,
    )
    return EditSuggestionResponse.model_validate(suggestion)


@router.get("/records/{record_id}/edit-suggestions", response_model=List[EditSuggestionResponse])
async def list_suggestions(
    record_id: uuid.UUID,
    actor: RecordActor,
    db: DbSession,
    status_filter: Optional[str] = Query(None, alias="status"),
):
    require_permission(actor, Permission.VIEW, project_id=actor.project_id)
    suggestions = await EditSuggestionService(db).list_for_record(record_id, status=status_filter)
    return [EditSuggestionResponse.model_validate(s) for s in suggestions]


@router.post("/edit-suggestions/{suggestion_id}/review", response_model=EditSuggestionResponse)
async def review_suggestion(
    suggestion_id: uuid.UUID,
    data: EditSuggestionReview,
    user: CurrentUser,
    db: DbSession,
):
    """Approve or reject. The second distinct approval applies the edit."""
    service = EditSuggestionService(db)
    suggestion = await service.get_suggestion(suggestion_id)
    project_id = (await db.get(Record, suggestion.record_id)).project_id
    actor = await actor_for(db, user, project_id)
    suggestion = await service.review_suggestion(
        suggestion_id, actor, approve=data.approve, notes=data.notes, reason=data.reason,
    )
    return EditSuggestionResponse.model_validate(suggestion)
