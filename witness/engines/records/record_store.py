"""
Record Store - record payloads, per-field verification and validation issues.

Status is never written here (see witness.orchestration.state_machine);
this service owns `data`, `verified_fields` and the issue list.
"""

import hashlib
import json
import uuid
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from witness.errors import NotFoundError, PermissionDeniedError, StateError, ValidationError
from witness.kernel.events.event_store import EventStore
from witness.kernel.identity.actor import Actor
from witness.kernel.models.base import utcnow
from witness.kernel.models.event_log import EventLog, EventType
from witness.kernel.models.record import Record, RecordStatus, TERMINAL_STATUSES, ValidationIssue
from witness.kernel.models.schema import FieldDefinition, RecordType
from witness.kernel.permissions.permission_service import Permission, require_permission
from witness.engines.evidence.evidence_store import EvidenceStore, field_is_supported
from witness.engines.records.review_lock import ensure_not_locked
from witness.engines.schema.registry import SchemaRegistry
from witness.engines.schema.visibility import FormMode, is_empty
from witness.logging_config import get_logger

logger = get_logger(__name__)

# Statuses in which the payload may still be edited
EDITABLE_STATUSES = frozenset({
    RecordStatus.DRAFT.value,
    RecordStatus.PENDING_REVIEW.value,
    RecordStatus.FIRST_REVIEW.value,
    RecordStatus.SECOND_REVIEW.value,
    RecordStatus.PENDING_VALIDATION.value,
    RecordStatus.FIRST_VALIDATION.value,
})


def compute_data_hash(data: Mapping[str, Any]) -> str:
    """sha256 over a canonical JSON rendering of the payload."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def is_verified(record: Record, slug: str) -> bool:
    entry = (record.verified_fields or {}).get(slug)
    return isinstance(entry, dict) and bool(entry.get("verified"))


def unverified_publish_fields(record: Record, fields: List[FieldDefinition]) -> List[str]:
    """Fields that must be verified before publication but are not."""
    data = record.data or {}
    return [
        f.slug for f in fields
        if f.require_verified_for_publish
        and not is_empty(data.get(f.slug))
        and not is_verified(record, f.slug)
    ]


def quote_requirement_problems(
    record: Record,
    record_type: RecordType,
    fields: List[FieldDefinition],
    quotes: List[Any],
    sources_by_id: Dict[uuid.UUID, Any],
) -> List[Dict[str, str]]:
    """
    Evidence gaps that block a review approval.

    With `require_quotes_for_review`, every field that requires a quote and has
    a value needs a linked quote. With `require_sources_for_quotes`, every
    quote on the record needs a source with a URL.
    """
    problems: List[Dict[str, str]] = []
    data = record.data or {}
    if record_type.require_quotes_for_review:
        for f in fields:
            if not f.requires_quote or is_empty(data.get(f.slug)):
                continue
            if not field_is_supported(f, quotes, sources_by_id):
                problems.append({"field": f.slug, "message": f"{f.name} needs a supporting quote"})
    if record_type.require_sources_for_quotes:
        for q in quotes:
            source = sources_by_id.get(q.source_id) if q.source_id else None
            if source is None or not source.has_url:
                problems.append({"quote": str(q.id), "message": "Quote has no source URL"})
    return problems


class RecordStore:
    """Service for record payloads and field-level verification."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.event_store = EventStore(session)
        self.registry = SchemaRegistry(session)
        self.evidence = EvidenceStore(session)

    async def get_record(self, record_id: uuid.UUID) -> Record:
        record = await self.session.get(Record, record_id)
        if record is None:
            raise NotFoundError("Record not found", {"record_id": str(record_id)})
        return record

    async def list_records(
        self,
        project_id: uuid.UUID,
        status: Optional[str] = None,
        record_type_id: Optional[uuid.UUID] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Record]:
        query = select(Record).where(Record.project_id == project_id)
        if status:
            query = query.where(Record.status == status)
        if record_type_id:
            query = query.where(Record.record_type_id == record_type_id)
        query = query.order_by(Record.created_at.desc()).offset(offset).limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def submit_record(
        self,
        record_type_id: uuid.UUID,
        data: Dict[str, Any],
        submitter: Optional[Actor] = None,
        guest_name: Optional[str] = None,
        guest_email: Optional[str] = None,
        as_draft: bool = False,
    ) -> Record:
        """
        Create a record from a guest or member submission.

        Guests are validated against the guest form; members against the review
        form. Members may save a draft, which skips the required-field check
        until it is submitted.
        """
        record_type = await self.registry.get_record_type(record_type_id)

        if submitter is None:
            if not record_type.guest_form_enabled:
                raise PermissionDeniedError("Guest submissions are disabled for this record type")
            if as_draft:
                raise ValidationError("Guests cannot save drafts")
            mode = FormMode.GUEST
        else:
            require_permission(submitter, Permission.VIEW, project_id=record_type.project_id)
            mode = FormMode.REVIEW

        check = SchemaRegistry.check_submission(record_type, data, mode)
        errors = check.errors
        if as_draft:
            required_slugs = {f.slug for f in record_type.fields if f.is_required}
            errors = [
                e for e in errors
                if not (e["field"] in required_slugs and is_empty(data.get(e["field"])))
            ]
        if errors:
            raise ValidationError("Submission is invalid", {"errors": errors})

        status = RecordStatus.DRAFT if as_draft else RecordStatus.PENDING_REVIEW
        record = Record(
            record_type_id=record_type.id,
            project_id=record_type.project_id,
            data=dict(data),
            status=status.value,
            verified_fields={},
            submitted_by=submitter.id if submitter else None,
            guest_name=guest_name if submitter is None else None,
            guest_email=guest_email if submitter is None else None,
            review_cycle=1,
            validation_session=0,
            verification_level=0,
        )
        self.session.add(record)
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.RECORD_SUBMITTED,
            entity_type="record",
            entity_id=record.id,
            user_id=submitter.id if submitter else None,
            payload={
                "project_id": record.project_id,
                "record_type_id": record.record_type_id,
                "status": status.value,
                "guest": submitter is None,
            },
        )
        logger.info(
            "Record submitted",
            extra={
                "record_id": str(record.id),
                "project_id": str(record.project_id),
                "status": status.value,
            },
        )
        return record

    async def update_record_data(
        self,
        record_id: uuid.UUID,
        actor: Actor,
        changes: Dict[str, Any],
    ) -> Record:
        """
        Merge `changes` into the payload. Edited fields lose their verification.
        """
        record = await self.get_record(record_id)
        if actor.id != record.submitted_by or record.status != RecordStatus.DRAFT:
            require_permission(actor, Permission.MANAGE_RECORDS, project_id=record.project_id)
        if record.status not in EDITABLE_STATUSES:
            raise StateError(
                f"Record data cannot be edited while {record.status}",
                {"status": record.status},
            )
        ensure_not_locked(record, actor)
        if not changes:
            return record

        record_type = await self.registry.get_record_type(record.record_type_id)
        merged = {**(record.data or {}), **changes}
        check = SchemaRegistry.check_submission(record_type, merged, FormMode.REVIEW)
        # Only the edited slugs are checked; stored values of deleted fields stay
        errors = [e for e in check.errors if e["field"] in changes]
        if record.status == RecordStatus.DRAFT:
            errors = [e for e in errors if not is_empty(merged.get(e["field"]))]
        if errors:
            raise ValidationError("Record data is invalid", {"errors": errors})

        changed = [slug for slug, value in changes.items() if (record.data or {}).get(slug) != value]
        record.data = merged
        if changed:
            record.verified_fields = {
                slug: entry for slug, entry in (record.verified_fields or {}).items()
                if slug not in changed
            }
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.RECORD_DATA_UPDATED,
            entity_type="record",
            entity_id=record.id,
            user_id=actor.id,
            payload={"fields": changed, "project_id": record.project_id},
        )
        return record

    async def verify_field(self, record_id: uuid.UUID, field_slug: str, actor: Actor) -> Record:
        """Mark a field verified. Requires the evidence the field demands."""
        record = await self.get_record(record_id)
        require_permission(
            actor, Permission.REVIEW, Permission.VALIDATE, project_id=record.project_id,
        )
        if record.status in (RecordStatus.DRAFT, RecordStatus.REJECTED):
            raise StateError(
                f"Fields cannot be verified while {record.status}",
                {"status": record.status},
            )
        field = await self._get_field(record, field_slug)
        if not await self.evidence.is_field_supported(record, field):
            message = f"{field.name} requires a linked quote"
            if field.requires_source_for_quote:
                message += " with a source URL"
            raise ValidationError(message, {"field": field_slug})

        record.verified_fields = {
            **(record.verified_fields or {}),
            field_slug: {"verified": True, "by": str(actor.id), "at": utcnow().isoformat()},
        }
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.FIELD_VERIFIED,
            entity_type="record",
            entity_id=record.id,
            user_id=actor.id,
            payload={"field_slug": field_slug},
        )
        return record

    async def unverify_field(self, record_id: uuid.UUID, field_slug: str, actor: Actor) -> Record:
        record = await self.get_record(record_id)
        require_permission(
            actor, Permission.REVIEW, Permission.VALIDATE, project_id=record.project_id,
        )
        if record.status == RecordStatus.REJECTED:
            raise StateError("Rejected records cannot change", {"status": record.status})
        if field_slug not in (record.verified_fields or {}):
            return record

        record.verified_fields = {
            slug: entry for slug, entry in record.verified_fields.items() if slug != field_slug
        }
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.FIELD_UNVERIFIED,
            entity_type="record",
            entity_id=record.id,
            user_id=actor.id,
            payload={"field_slug": field_slug},
        )
        return record

    async def _get_field(self, record: Record, field_slug: str) -> FieldDefinition:
        result = await self.session.execute(
            select(FieldDefinition).where(
                and_(
                    FieldDefinition.record_type_id == record.record_type_id,
                    FieldDefinition.slug == field_slug,
                )
            )
        )
        field = result.scalar_one_or_none()
        if field is None:
            raise ValidationError(f"Unknown field: {field_slug}", {"field": field_slug})
        return field

    # Validation issues

    async def list_validation_issues(
        self,
        record_id: uuid.UUID,
        unresolved_only: bool = False,
    ) -> List[ValidationIssue]:
        query = select(ValidationIssue).where(ValidationIssue.record_id == record_id)
        if unresolved_only:
            query = query.where(ValidationIssue.resolved_at.is_(None))
        query = query.order_by(ValidationIssue.session_number, ValidationIssue.created_at)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_issue(self, issue_id: uuid.UUID) -> ValidationIssue:
        issue = await self.session.get(ValidationIssue, issue_id)
        if issue is None:
            raise NotFoundError("Validation issue not found", {"issue_id": str(issue_id)})
        return issue

    async def resolve_issue(self, issue_id: uuid.UUID, actor: Actor) -> ValidationIssue:
        issue = await self.get_issue(issue_id)
        record = await self.get_record(issue.record_id)
        require_permission(actor, Permission.MANAGE_RECORDS, project_id=record.project_id)
        if record.status in TERMINAL_STATUSES:
            raise StateError("Issues on a closed record cannot change", {"status": record.status})
        if issue.is_resolved:
            return issue

        issue.resolved_by = actor.id
        issue.resolved_at = utcnow()
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.VALIDATION_ISSUE_RESOLVED,
            entity_type="record",
            entity_id=record.id,
            user_id=actor.id,
            payload={"issue_id": issue.id, "item_type": issue.item_type, "item_id": issue.item_id},
        )
        return issue

    async def history(self, record_id: uuid.UUID, limit: int = 100) -> List[EventLog]:
        """The record's audit trail, newest first."""
        return await self.event_store.get_entity_history("record", record_id, limit=limit)
