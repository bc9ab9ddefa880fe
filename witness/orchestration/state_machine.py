"""
State machine for the record verification workflow.

draft -> pending_review -> first_review -> second_review -> pending_validation
-> first_validation -> verified, with rejected reachable from every open state
and return_to_review sending validation-stage records back to first_review.

Valid transitions and which permission may trigger them are defined here.
Every status write is a compare-and-swap on the expected current status, and
the two-distinct-person checks re-read the first checker inside the same
UPDATE statement.
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from witness.errors import (
    ConcurrencyError,
    NotFoundError,
    PermissionDeniedError,
    StateError,
    ValidationError,
    WitnessError,
)
from witness.kernel.events.event_store import EventStore
from witness.kernel.identity.actor import Actor
from witness.kernel.models.base import utcnow
from witness.kernel.models.event_log import EventType
from witness.kernel.models.project import Project
from witness.kernel.models.record import Record, RecordStatus, ValidationIssue
from witness.kernel.permissions.permission_service import (
    Permission,
    has_permission,
    require_permission,
)
from witness.engines.audit.verification_level import VerificationLevelService
from witness.engines.evidence.evidence_store import EvidenceStore
from witness.engines.records.record_store import (
    quote_requirement_problems,
    unverified_publish_fields,
)
from witness.engines.records.review_lock import ensure_not_locked
from witness.engines.schema.registry import SchemaRegistry
from witness.engines.schema.visibility import FormMode, effective_fields, is_empty
from witness.logging_config import get_logger

logger = get_logger(__name__)


class RecordAction(str, Enum):
    SUBMIT = "submit"
    APPROVE = "approve"
    RETURN_TO_REVIEW = "return_to_review"
    REJECT = "reject"
    VALIDATE = "validate"


S = RecordStatus

# Valid transitions: (from_status, to_status) -> permissions that may trigger.
# An empty set marks a system transition no actor can request directly.
_TRANSITIONS: Dict[Tuple[str, str], FrozenSet[Permission]] = {
    (S.DRAFT.value, S.PENDING_REVIEW.value): frozenset({Permission.VIEW}),
    # Review stage
    (S.PENDING_REVIEW.value, S.FIRST_REVIEW.value): frozenset({Permission.REVIEW}),
    (S.FIRST_REVIEW.value, S.SECOND_REVIEW.value): frozenset({Permission.REVIEW}),
    # System promotion into the validation queue
    (S.SECOND_REVIEW.value, S.PENDING_VALIDATION.value): frozenset(),
    # Validation stage
    (S.PENDING_VALIDATION.value, S.FIRST_VALIDATION.value): frozenset({Permission.VALIDATE}),
    (S.FIRST_VALIDATION.value, S.VERIFIED.value): frozenset({Permission.VALIDATE}),
    (S.PENDING_VALIDATION.value, S.FIRST_REVIEW.value): frozenset({Permission.VALIDATE}),
    (S.FIRST_VALIDATION.value, S.FIRST_REVIEW.value): frozenset({Permission.VALIDATE}),
    # Rejection from any open state
    (S.PENDING_REVIEW.value, S.REJECTED.value): frozenset({Permission.REVIEW, Permission.VALIDATE}),
    (S.FIRST_REVIEW.value, S.REJECTED.value): frozenset({Permission.REVIEW, Permission.VALIDATE}),
    (S.SECOND_REVIEW.value, S.REJECTED.value): frozenset({Permission.REVIEW, Permission.VALIDATE}),
    (S.PENDING_VALIDATION.value, S.REJECTED.value): frozenset({Permission.REVIEW, Permission.VALIDATE}),
    (S.FIRST_VALIDATION.value, S.REJECTED.value): frozenset({Permission.REVIEW, Permission.VALIDATE}),
}

# Statuses the validation stage accepts (second_review is promoted first)
VALIDATION_STAGE = (
    S.SECOND_REVIEW.value,
    S.PENDING_VALIDATION.value,
    S.FIRST_VALIDATION.value,
)

CHECKLIST_ITEM_TYPES = ("field", "quote", "timeline", "source", "media")


def valid_transitions(from_status: str) -> List[str]:
    """Return the statuses reachable from `from_status` in one step."""
    return sorted({t for (f, t) in _TRANSITIONS if f == from_status})


def can_transition(role: Optional[str], from_status: str, to_status: str) -> bool:
    """Check if a project role may move a record from_status -> to_status."""
    allowed = _TRANSITIONS.get((from_status, to_status))
    if not allowed:
        return False
    return any(has_permission(role, p) for p in allowed)


class ChecklistItem(BaseModel):
    """One line of a validator's item-level checklist."""

    model_config = ConfigDict(extra="forbid")

    item_type: str
    item_id: str = Field(..., min_length=1)
    checked: bool = False
    reason: Optional[str] = None


@dataclass
class ChecklistReview:
    """A validator's checklist matched against the items on display."""
    items: List[ChecklistItem]
    unchecked: List[ChecklistItem]
    missing: List[Dict[str, str]]


def _parse_checklist(raw: Any) -> List[ChecklistItem]:
    if raw is None:
        raise ValidationError("A validation checklist is required", {"items": []})
    if not isinstance(raw, list):
        raise ValidationError("items must be a list")
    try:
        items = [ChecklistItem.model_validate(item) for item in raw]
    except PydanticValidationError as exc:
        raise ValidationError(
            "Malformed checklist item",
            {"errors": [{"loc": ".".join(map(str, e["loc"])), "msg": e["msg"]} for e in exc.errors()]},
        )
    for item in items:
        if item.item_type not in CHECKLIST_ITEM_TYPES:
            raise ValidationError(
                f"Unknown checklist item type: {item.item_type}",
                {"allowed": list(CHECKLIST_ITEM_TYPES)},
            )
    return items


class WorkflowEngine:
    """
    Service that performs record transitions with audit logging.

    Usage:
        engine = WorkflowEngine(session)
        record = await engine.transition(record_id, "approve", actor, {"notes": "..."})
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.event_store = EventStore(session)
        self.registry = SchemaRegistry(session)
        self.evidence = EvidenceStore(session)

    async def transition(
        self,
        record_id: uuid.UUID,
        action: str,
        actor: Actor,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> Record:
        """Apply one workflow action. All-or-nothing within the caller's transaction."""
        try:
            action = RecordAction(action)
        except ValueError:
            raise ValidationError(
                f"Unknown action: {action}",
                {"allowed": [a.value for a in RecordAction]},
            )
        payload = dict(payload or {})

        record = await self.session.get(Record, record_id)
        if record is None:
            raise NotFoundError("Record not found", {"record_id": str(record_id)})
        if actor.project_id != record.project_id:
            raise PermissionDeniedError("Not a member of this project", {"project_id": str(record.project_id)})
        ensure_not_locked(record, actor)

        handlers = {
            RecordAction.SUBMIT: self._submit,
            RecordAction.APPROVE: self._approve,
            RecordAction.RETURN_TO_REVIEW: self._return_to_review,
            RecordAction.REJECT: self._reject,
            RecordAction.VALIDATE: self._validate,
        }
        from_status = record.status
        try:
            return await handlers[action](record, actor, payload)
        except WitnessError as exc:
            logger.info(
                "Workflow action refused: %s",
                exc.message,
                extra={
                    "record_id": str(record_id),
                    "action": action.value,
                    "from_status": from_status,
                    "user_id": str(actor.id),
                    "code": exc.code,
                },
            )
            raise

    # Actions

    async def _submit(self, record: Record, actor: Actor, payload: Dict[str, Any]) -> Record:
        self._require_status(record, RecordAction.SUBMIT, (S.DRAFT.value,))
        self._require_transition(actor, S.DRAFT.value, S.PENDING_REVIEW.value)
        if actor.id != record.submitted_by:
            require_permission(actor, Permission.MANAGE_RECORDS, project_id=record.project_id)

        record_type = await self.registry.get_record_type(record.record_type_id)
        SchemaRegistry.validate_submission(record_type, record.data or {}, FormMode.REVIEW)

        return await self._move(record, actor, RecordAction.SUBMIT, S.PENDING_REVIEW.value, {})

    async def _approve(self, record: Record, actor: Actor, payload: Dict[str, Any]) -> Record:
        status = self._require_status(
            record, RecordAction.APPROVE, (S.PENDING_REVIEW.value, S.FIRST_REVIEW.value),
        )
        target = S.FIRST_REVIEW.value if status == S.PENDING_REVIEW.value else S.SECOND_REVIEW.value
        self._require_transition(actor, status, target)

        if status == S.FIRST_REVIEW.value and record.first_verified_by == actor.id:
            raise PermissionDeniedError(
                "You already reviewed this record; awaiting another analyst",
                {"first_verified_by": str(record.first_verified_by)},
            )

        record_type = await self.registry.get_record_type(record.record_type_id)
        if not actor.has_role(*(record_type.quote_bypass_roles or [])):
            quotes = await self.evidence.quotes_for_record(record.id)
            sources = {s.id: s for s in await self.evidence.sources_for_record(record.id)}
            problems = quote_requirement_problems(record, record_type, record_type.fields, quotes, sources)
            if problems:
                raise ValidationError("Evidence requirements are not met", {"errors": problems})

        notes = payload.get("notes")
        now = utcnow()
        if target == S.FIRST_REVIEW.value:
            values = {
                "first_verified_by": actor.id,
                "first_verified_at": now,
                "first_review_notes": notes,
            }
            return await self._move(record, actor, RecordAction.APPROVE, target, values)

        values = {
            "second_verified_by": actor.id,
            "second_verified_at": now,
            "second_review_notes": notes,
        }
        return await self._move(
            record, actor, RecordAction.APPROVE, target, values,
            distinct_from="first_verified_by",
        )

    async def _reject(self, record: Record, actor: Actor, payload: Dict[str, Any]) -> Record:
        reason = (payload.get("reason") or "").strip()
        if not reason:
            raise ValidationError("A rejection reason is required")
        status = self._require_status(
            record,
            RecordAction.REJECT,
            tuple(f for (f, t) in _TRANSITIONS if t == S.REJECTED.value),
        )
        self._require_transition(actor, status, S.REJECTED.value)

        values = {
            "rejection_reason": reason,
            "rejected_by": actor.id,
            "rejected_at": utcnow(),
        }
        record = await self._move(record, actor, RecordAction.REJECT, S.REJECTED.value, values)
        await VerificationLevelService.refresh(self.session, record)
        return record

    async def _validate(self, record: Record, actor: Actor, payload: Dict[str, Any]) -> Record:
        require_permission(actor, Permission.VALIDATE, project_id=record.project_id)
        self._require_status(record, RecordAction.VALIDATE, VALIDATION_STAGE)
        await self._check_validator(record, actor)

        review = await self._review_checklist(record, payload.get("items"))
        if review.missing:
            raise ValidationError(
                "Every displayed item must be on the checklist",
                {"missing": review.missing},
            )
        if review.unchecked:
            raise ValidationError(
                "All items must be checked to validate; use return_to_review instead",
                {"unchecked": [i.model_dump() for i in review.unchecked]},
            )

        record = await self._promote_if_needed(record, actor)
        status = RecordStatus(record.status).value
        notes = payload.get("notes")
        now = utcnow()

        if status == S.PENDING_VALIDATION.value:
            self._require_transition(actor, status, S.FIRST_VALIDATION.value)
            values = {
                "first_validated_by": actor.id,
                "first_validated_at": now,
                "validation_notes": notes,
            }
            return await self._move(record, actor, RecordAction.VALIDATE, S.FIRST_VALIDATION.value, values)

        self._require_transition(actor, status, S.VERIFIED.value)
        if record.first_validated_by == actor.id:
            raise PermissionDeniedError(
                "You already validated this record; awaiting another validator",
                {"first_validated_by": str(record.first_validated_by)},
            )

        record_type = await self.registry.get_record_type(record.record_type_id)
        bypass = actor.has_role(*(record_type.validation_bypass_roles or []))
        if record_type.require_all_fields_verified and not bypass:
            pending = unverified_publish_fields(record, record_type.fields)
            if pending:
                raise ValidationError(
                    "Fields must be verified before publication",
                    {"fields": pending},
                )

        values = {
            "second_validated_by": actor.id,
            "second_validated_at": now,
            "published_at": now,
        }
        if notes:
            values["validation_notes"] = notes
        record = await self._move(
            record, actor, RecordAction.VALIDATE, S.VERIFIED.value, values,
            distinct_from="first_validated_by",
        )
        await VerificationLevelService.refresh(self.session, record)
        logger.info(
            "Record published",
            extra={"record_id": str(record.id), "project_id": str(record.project_id)},
        )
        return record

    async def _return_to_review(self, record: Record, actor: Actor, payload: Dict[str, Any]) -> Record:
        require_permission(actor, Permission.VALIDATE, project_id=record.project_id)
        self._require_status(record, RecordAction.RETURN_TO_REVIEW, VALIDATION_STAGE)
        await self._check_validator(record, actor)

        review = await self._review_checklist(record, payload.get("items"))
        if review.missing:
            raise ValidationError(
                "Every displayed item must be on the checklist",
                {"missing": review.missing},
            )
        if not review.unchecked:
            raise ValidationError("Uncheck at least one item to return the record for review")
        without_reason = [i.item_id for i in review.unchecked if not (i.reason or "").strip()]
        if without_reason:
            raise ValidationError(
                "Each unchecked item needs a reason",
                {"items": without_reason},
            )

        record = await self._promote_if_needed(record, actor)
        status = RecordStatus(record.status).value
        self._require_transition(actor, status, S.FIRST_REVIEW.value)

        session_number = (record.validation_session or 0) + 1
        values = {
            "second_verified_by": None,
            "second_verified_at": None,
            "second_review_notes": None,
            "first_validated_by": None,
            "first_validated_at": None,
            "second_validated_by": None,
            "second_validated_at": None,
            "review_cycle": (record.review_cycle or 1) + 1,
            "validation_session": session_number,
        }
        record = await self._move(record, actor, RecordAction.RETURN_TO_REVIEW, S.FIRST_REVIEW.value, values)

        now = utcnow()
        for item in review.unchecked:
            self.session.add(
                ValidationIssue(
                    record_id=record.id,
                    session_number=session_number,
                    item_type=item.item_type,
                    item_id=item.item_id,
                    reason=item.reason.strip(),
                    created_by=actor.id,
                    created_at=now,
                )
            )
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.VALIDATION_ISSUE_RAISED,
            entity_type="record",
            entity_id=record.id,
            user_id=actor.id,
            payload={
                "session_number": session_number,
                "issues": [
                    {"item_type": i.item_type, "item_id": i.item_id, "reason": i.reason}
                    for i in review.unchecked
                ],
            },
        )
        return record

    # Helpers

    def _require_status(self, record: Record, action: RecordAction, allowed: Sequence[str]) -> str:
        status = RecordStatus(record.status).value
        if status not in allowed:
            raise StateError(
                f"Cannot {action.value} a record that is {status}",
                {"status": status, "action": action.value},
            )
        return status

    def _require_transition(self, actor: Actor, from_status: str, to_status: str) -> None:
        if not can_transition(actor.role, from_status, to_status):
            raise PermissionDeniedError(
                f"Role '{actor.role or 'none'}' cannot move a record from {from_status} to {to_status}",
                {"role": actor.role, "from": from_status, "to": to_status},
            )

    async def _check_validator(self, record: Record, actor: Actor) -> None:
        project = await self.session.get(Project, record.project_id)
        if project is None or not project.require_different_validator:
            return
        involved: Set[Optional[uuid.UUID]] = {
            record.submitted_by,
            record.first_verified_by,
            record.second_verified_by,
        }
        if actor.id in involved:
            raise PermissionDeniedError(
                "Validators must differ from the submitter and both reviewers",
            )

    async def _review_checklist(self, record: Record, raw_items: Any) -> ChecklistReview:
        """Match the submitted checklist against the items on display."""
        items = _parse_checklist(raw_items)

        record_type = await self.registry.get_record_type(record.record_type_id)
        data = record.data or {}
        displayed: List[Tuple[str, str]] = [
            ("field", f.slug)
            for f in effective_fields(record_type.fields, FormMode.VALIDATION, data)
            if not is_empty(data.get(f.slug))
        ]
        displayed += [("quote", str(q.id)) for q in await self.evidence.quotes_for_record(record.id)]
        displayed += [("source", str(s.id)) for s in await self.evidence.sources_for_record(record.id)]

        present = {(i.item_type, i.item_id) for i in items}
        missing = [
            {"item_type": item_type, "item_id": item_id}
            for item_type, item_id in displayed
            if (item_type, item_id) not in present
        ]
        return ChecklistReview(
            items=items,
            unchecked=[i for i in items if not i.checked],
            missing=missing,
        )

    async def _promote_if_needed(self, record: Record, actor: Actor) -> Record:
        """Move a second_review record into the validation queue (system step)."""
        if RecordStatus(record.status).value != S.SECOND_REVIEW.value:
            return record
        await self._compare_and_set(record, S.SECOND_REVIEW.value, {"status": S.PENDING_VALIDATION.value})
        await self.event_store.log(
            event_type=EventType.RECORD_STATUS_CHANGED,
            entity_type="record",
            entity_id=record.id,
            user_id=None,
            payload={
                "from_status": S.SECOND_REVIEW.value,
                "to_status": S.PENDING_VALIDATION.value,
                "action": "promote",
                "automatic": True,
                "triggered_by": actor.id,
                "project_id": record.project_id,
            },
        )
        return record

    async def _move(
        self,
        record: Record,
        actor: Actor,
        action: RecordAction,
        to_status: str,
        values: Dict[str, Any],
        distinct_from: Optional[str] = None,
    ) -> Record:
        from_status = RecordStatus(record.status).value
        if to_status not in valid_transitions(from_status):
            raise StateError(f"Invalid transition: {from_status} -> {to_status}")

        conditions = []
        if distinct_from is not None:
            conditions.append(getattr(Record, distinct_from) != actor.id)
        await self._compare_and_set(
            record,
            from_status,
            {**values, "status": to_status},
            conditions,
            actor=actor,
            distinct_from=distinct_from,
        )

        await self.event_store.log(
            event_type=EventType.RECORD_STATUS_CHANGED,
            entity_type="record",
            entity_id=record.id,
            user_id=actor.id,
            payload={
                "from_status": from_status,
                "to_status": to_status,
                "action": action.value,
                "review_cycle": record.review_cycle,
                "project_id": record.project_id,
            },
        )
        logger.info(
            "Record transitioned",
            extra={
                "record_id": str(record.id),
                "from_status": from_status,
                "to_status": to_status,
                "actor_id": str(actor.id),
            },
        )
        return record

    async def _compare_and_set(
        self,
        record: Record,
        expected_status: str,
        values: Dict[str, Any],
        conditions: Optional[List[Any]] = None,
        actor: Optional[Actor] = None,
        distinct_from: Optional[str] = None,
    ) -> None:
        """
        UPDATE the record only if it is still in `expected_status` (and every
        extra condition holds). Refreshes `record` on success.
        """
        stmt = (
            update(Record)
            .where(Record.id == record.id, Record.status == expected_status, *(conditions or []))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 1:
            await self.session.refresh(record)
            return

        current = (
            await self.session.execute(
                select(Record.status, Record.first_verified_by, Record.first_validated_by)
                .where(Record.id == record.id)
            )
        ).one()
        if (
            distinct_from is not None
            and actor is not None
            and current.status == expected_status
        ):
            if getattr(current, distinct_from) == actor.id:
                raise PermissionDeniedError(
                    "The same person cannot perform both checks; awaiting another analyst",
                )
        logger.warning(
            "Record changed concurrently",
            extra={"record_id": str(record.id), "expected": expected_status, "found": current.status},
        )
        raise ConcurrencyError(
            "The record was changed by someone else; reload and try again",
            {"expected_status": expected_status, "current_status": current.status},
        )
