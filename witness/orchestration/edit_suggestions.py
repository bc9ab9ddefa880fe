"""
Edit suggestions on published records.

pending -> first_review -> approved, with rejected reachable from both open
states. The two approvals must come from different reviewers and neither may
be the suggester. Approval writes the suggested value into the record and
drops that field's verification.
"""

import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from witness.errors import (
    ConcurrencyError,
    NotFoundError,
    PermissionDeniedError,
    StateError,
    ValidationError,
)
from witness.kernel.events.event_store import EventStore
from witness.kernel.identity.actor import Actor
from witness.kernel.models.base import utcnow
from witness.kernel.models.event_log import EventType
from witness.kernel.models.record import (
    EditSuggestion,
    EditSuggestionStatus,
    Record,
    RecordStatus,
)
from witness.kernel.models.schema import FieldDefinition
from witness.kernel.permissions.permission_service import Permission, require_permission
from witness.engines.schema.field_types import check_value, coerce_field_type, parse_field_config
from witness.engines.schema.visibility import is_empty
from witness.logging_config import get_logger

logger = get_logger(__name__)

OPEN_SUGGESTION_STATUSES = (
    EditSuggestionStatus.PENDING.value,
    EditSuggestionStatus.FIRST_REVIEW.value,
)


class EditSuggestionService:
    """Suggest, review and apply edits to verified records."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.event_store = EventStore(session)

    async def get_suggestion(self, suggestion_id: uuid.UUID) -> EditSuggestion:
        suggestion = await self.session.get(EditSuggestion, suggestion_id)
        if suggestion is None:
            raise NotFoundError("Edit suggestion not found", {"suggestion_id": str(suggestion_id)})
        return suggestion

    async def list_for_record(
        self,
        record_id: uuid.UUID,
        status: Optional[str] = None,
    ) -> List[EditSuggestion]:
        query = select(EditSuggestion).where(EditSuggestion.record_id == record_id)
        if status:
            query = query.where(EditSuggestion.status == status)
        result = await self.session.execute(query.order_by(EditSuggestion.created_at.desc()))
        return list(result.scalars().all())

    async def _get_record(self, record_id: uuid.UUID) -> Record:
        record = await self.session.get(Record, record_id)
        if record is None:
            raise NotFoundError("Record not found", {"record_id": str(record_id)})
        return record

    async def _get_field(self, record: Record, field_slug: str) -> FieldDefinition:
        field = (
            await self.session.execute(
                select(FieldDefinition).where(
                    FieldDefinition.record_type_id == record.record_type_id,
                    FieldDefinition.slug == field_slug,
                )
            )
        ).scalar_one_or_none()
        if field is None:
            raise ValidationError(f"Unknown field: {field_slug}", {"field": field_slug})
        return field

    async def suggest_edit(
        self,
        record_id: uuid.UUID,
        field_slug: str,
        suggested_value: Any,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> EditSuggestion:
        record = await self._get_record(record_id)
        require_permission(actor, Permission.SUGGEST_EDITS, project_id=record.project_id)
        if record.status != RecordStatus.VERIFIED.value:
            raise StateError(
                "Edits can only be suggested on published records",
                {"status": record.status},
            )
        field = await self._get_field(record, field_slug)
        current = (record.data or {}).get(field_slug)
        if current == suggested_value:
            raise ValidationError("The suggested value is the same as the current value")
        if not is_empty(suggested_value):
            ftype = coerce_field_type(field.field_type)
            problem = check_value(ftype, parse_field_config(ftype, field.config), suggested_value)
            if problem:
                raise ValidationError(problem, {"field": field_slug})

        suggestion = EditSuggestion(
            record_id=record.id,
            field_slug=field_slug,
            current_value=current,
            suggested_value=suggested_value,
            reason=reason,
            status=EditSuggestionStatus.PENDING.value,
            suggested_by=actor.id,
        )
        self.session.add(suggestion)
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.EDIT_SUGGESTED,
            entity_type="record",
            entity_id=record.id,
            user_id=actor.id,
            payload={"suggestion_id": suggestion.id, "field_slug": field_slug},
        )
        return suggestion

    async def review_suggestion(
        self,
        suggestion_id: uuid.UUID,
        actor: Actor,
        approve: bool,
        notes: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> EditSuggestion:
        suggestion = await self.get_suggestion(suggestion_id)
        record = await self._get_record(suggestion.record_id)
        require_permission(actor, Permission.REVIEW, project_id=record.project_id)

        status = suggestion.status
        if status not in OPEN_SUGGESTION_STATUSES:
            raise StateError(f"This suggestion is already {status}", {"status": status})
        if suggestion.suggested_by == actor.id:
            raise PermissionDeniedError("You cannot review your own suggestion")
        if suggestion.first_reviewed_by == actor.id:
            raise PermissionDeniedError("You already reviewed this suggestion; awaiting another analyst")

        if not approve:
            return await self._reject(suggestion, record, actor, reason)

        now = utcnow()
        if status == EditSuggestionStatus.PENDING.value:
            await self._compare_and_set(
                suggestion,
                status,
                {
                    "status": EditSuggestionStatus.FIRST_REVIEW.value,
                    "first_reviewed_by": actor.id,
                    "first_reviewed_at": now,
                    "first_review_notes": notes,
                },
            )
            await self._log_review(suggestion, record, actor, "approve")
            return suggestion

        if record.status != RecordStatus.VERIFIED.value:
            raise StateError(
                "The record is no longer published; the suggestion cannot be applied",
                {"status": record.status},
            )
        await self._compare_and_set(
            suggestion,
            status,
            {
                "status": EditSuggestionStatus.APPROVED.value,
                "second_reviewed_by": actor.id,
                "second_reviewed_at": now,
                "second_review_notes": notes,
                "applied_at": now,
            },
            EditSuggestion.first_reviewed_by != actor.id,
        )
        await self._log_review(suggestion, record, actor, "approve")
        await self._apply(suggestion, record, actor)
        return suggestion

    async def _reject(
        self,
        suggestion: EditSuggestion,
        record: Record,
        actor: Actor,
        reason: Optional[str],
    ) -> EditSuggestion:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A rejection reason is required")

        values: Dict[str, Any] = {
            "status": EditSuggestionStatus.REJECTED.value,
            "rejection_reason": reason,
        }
        now = utcnow()
        if suggestion.status == EditSuggestionStatus.PENDING.value:
            values.update(first_reviewed_by=actor.id, first_reviewed_at=now)
        else:
            values.update(second_reviewed_by=actor.id, second_reviewed_at=now)
        await self._compare_and_set(suggestion, suggestion.status, values)

        await self.event_store.log(
            event_type=EventType.EDIT_SUGGESTION_REJECTED,
            entity_type="record",
            entity_id=record.id,
            user_id=actor.id,
            payload={"suggestion_id": suggestion.id, "reason": reason},
        )
        return suggestion

    async def _apply(self, suggestion: EditSuggestion, record: Record, actor: Actor) -> None:
        """Write the suggested value and drop the field's verification."""
        record.data = {**(record.data or {}), suggestion.field_slug: suggestion.suggested_value}
        was_verified = suggestion.field_slug in (record.verified_fields or {})
        if was_verified:
            record.verified_fields = {
                slug: entry for slug, entry in record.verified_fields.items()
                if slug != suggestion.field_slug
            }
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.EDIT_SUGGESTION_APPLIED,
            entity_type="record",
            entity_id=record.id,
            user_id=actor.id,
            payload={
                "suggestion_id": suggestion.id,
                "field_slug": suggestion.field_slug,
                "old_value": suggestion.current_value,
                "new_value": suggestion.suggested_value,
            },
        )
        if was_verified:
            await self.event_store.log(
                event_type=EventType.FIELD_VERIFICATION_REVOKED,
                entity_type="record",
                entity_id=record.id,
                user_id=actor.id,
                payload={"field_slug": suggestion.field_slug, "reason": "edit_applied"},
            )
        logger.info(
            "Edit suggestion applied",
            extra={"record_id": str(record.id), "suggestion_id": str(suggestion.id)},
        )

    async def _log_review(self, suggestion: EditSuggestion, record: Record, actor: Actor, decision: str) -> None:
        await self.event_store.log(
            event_type=EventType.EDIT_SUGGESTION_REVIEWED,
            entity_type="record",
            entity_id=record.id,
            user_id=actor.id,
            payload={
                "suggestion_id": suggestion.id,
                "decision": decision,
                "status": suggestion.status,
            },
        )

    async def _compare_and_set(
        self,
        suggestion: EditSuggestion,
        expected_status: str,
        values: Dict[str, Any],
        *conditions,
    ) -> None:
        stmt = (
            update(EditSuggestion)
            .where(
                EditSuggestion.id == suggestion.id,
                EditSuggestion.status == expected_status,
                *conditions,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            raise ConcurrencyError(
                "The suggestion was changed by someone else; reload and try again",
                {"expected_status": expected_status},
            )
        await self.session.refresh(suggestion)
