"""
Third-party audit service.

Published records can be sent to an independent verifier. A request covers
either the whole record (scope=record) or a list of fields, quotes and
sources (scope=data). Verifiers claim requests from a shared queue, then
complete them with per-item results or reject them as unworkable.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update, and_, or_, func
from sqlalchemy.ext.asyncio import AsyncSession

from witness.config import get_settings
from witness.errors import (
    ConcurrencyError,
    NotFoundError,
    PermissionDeniedError,
    QuotaExceededError,
    StateError,
    ValidationError,
)
from witness.kernel.events.event_store import EventStore
from witness.kernel.identity.actor import Actor
from witness.kernel.models.base import utcnow
from witness.kernel.models.event_log import EventType
from witness.kernel.models.project import Project, ProjectMember
from witness.kernel.models.record import Record, RecordStatus
from witness.kernel.models.user import User
from witness.kernel.models.verification import (
    ACTIVE_AUDIT_STATUSES,
    AuditOutcome,
    AuditPriority,
    AuditScope,
    AuditStatus,
    VerificationRequest,
    VerificationResult,
)
from witness.kernel.permissions.permission_service import Permission, require_permission
from witness.engines.audit.verification_level import VerificationLevelService
from witness.engines.evidence.evidence_store import EvidenceStore
from witness.engines.records.record_store import compute_data_hash
from witness.engines.schema.visibility import is_empty
from witness.logging_config import get_logger

logger = get_logger(__name__)

AUDIT_ITEM_TYPES = ("field", "quote", "source")


class AuditItemResult(BaseModel):
    """The verifier's finding for one item."""

    model_config = ConfigDict(extra="forbid")

    item_type: str = "record"
    item_id: Optional[str] = None
    verified: bool
    notes: Optional[str] = None
    caveats: Optional[str] = None
    issues: List[str] = Field(default_factory=list)


def month_bounds(now: datetime) -> Tuple[datetime, datetime]:
    """Start of the current UTC month and start of the next one."""
    now = now.astimezone(timezone.utc)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def _item_key(item: Dict[str, Any]) -> Tuple[str, str]:
    return item["type"], str(item["id"])


class AuditService:
    """Service for third-party verification requests and results."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.event_store = EventStore(session)
        self.evidence = EvidenceStore(session)

    # Loading

    async def get_request(self, request_id: uuid.UUID) -> VerificationRequest:
        request = await self.session.get(VerificationRequest, request_id)
        if request is None:
            raise NotFoundError("Verification request not found", {"request_id": str(request_id)})
        return request

    async def get_record(self, record_id: uuid.UUID) -> Record:
        record = await self.session.get(Record, record_id)
        if record is None:
            raise NotFoundError("Record not found", {"record_id": str(record_id)})
        return record

    async def get_result(self, result_id: uuid.UUID) -> VerificationResult:
        result = await self.session.get(VerificationResult, result_id)
        if result is None:
            raise NotFoundError("Verification result not found", {"result_id": str(result_id)})
        return result

    async def results_for_request(self, request_id: uuid.UUID) -> List[VerificationResult]:
        result = await self.session.execute(
            select(VerificationResult)
            .where(VerificationResult.request_id == request_id)
            .order_by(VerificationResult.verified_at)
        )
        return list(result.scalars().all())

    async def requests_for_record(self, record_id: uuid.UUID) -> List[VerificationRequest]:
        result = await self.session.execute(
            select(VerificationRequest)
            .where(VerificationRequest.record_id == record_id)
            .order_by(VerificationRequest.requested_at.desc())
        )
        return list(result.scalars().all())

    async def open_queue(self, limit: int = 50) -> List[VerificationRequest]:
        """Unclaimed requests, urgent first, oldest first within a priority."""
        result = await self.session.execute(
            select(VerificationRequest)
            .where(
                and_(
                    VerificationRequest.status == AuditStatus.PENDING.value,
                    VerificationRequest.assigned_to.is_(None),
                )
            )
            .order_by(
                (VerificationRequest.priority == AuditPriority.URGENT.value).desc(),
                VerificationRequest.requested_at,
            )
            .limit(limit)
        )
        return list(result.scalars().all())

    # Requesting

    async def member_for(self, project_id: uuid.UUID, user_id: uuid.UUID) -> Optional[ProjectMember]:
        result = await self.session.execute(
            select(ProjectMember).where(
                and_(ProjectMember.project_id == project_id, ProjectMember.user_id == user_id)
            )
        )
        return result.scalar_one_or_none()

    async def monthly_usage(self, project: Project, member: Optional[ProjectMember] = None) -> Dict[str, Any]:
        """
        Requests made this month against the project. A member's override
        replaces the project cap for that member only; usage stays project-wide.
        """
        start, end = month_bounds(utcnow())
        used = (
            await self.session.execute(
                select(func.count(VerificationRequest.id)).where(
                    and_(
                        VerificationRequest.project_id == project.id,
                        VerificationRequest.requested_at >= start,
                    )
                )
            )
        ).scalar_one()
        limit = project.audit_quota_monthly
        if member is not None and member.verification_quota_override is not None:
            limit = member.verification_quota_override
        return {
            "used": used,
            "limit": limit,
            "remaining": max(limit - used, 0),
            "reset_at": end,
        }

    async def request_audit(
        self,
        record_id: uuid.UUID,
        actor: Actor,
        scope: str = AuditScope.RECORD.value,
        items: Optional[List[Dict[str, Any]]] = None,
        all_items: bool = False,
        priority: str = AuditPriority.NORMAL.value,
        notes: Optional[str] = None,
    ) -> VerificationRequest:
        record = await self.get_record(record_id)
        require_permission(actor, Permission.REQUEST_AUDIT, project_id=record.project_id)
        project = await self.session.get(Project, record.project_id)
        member = None
        if actor.id != project.owner_id:
            member = await self.member_for(project.id, actor.id)
            if member is None or not member.can_request_verification:
                raise PermissionDeniedError(
                    "You do not have permission to request verification",
                    {"project_id": str(project.id)},
                )

        if record.status != RecordStatus.VERIFIED.value:
            raise StateError(
                "Only published records can be sent for third-party verification",
                {"status": record.status},
            )
        try:
            scope = AuditScope(scope).value
            priority = AuditPriority(priority).value
        except ValueError as exc:
            raise ValidationError(str(exc))

        active = (
            await self.session.execute(
                select(VerificationRequest.id).where(
                    and_(
                        VerificationRequest.record_id == record.id,
                        VerificationRequest.status.in_(ACTIVE_AUDIT_STATUSES),
                    )
                )
            )
        ).first()
        if active is not None:
            raise StateError(
                "This record already has an open verification request",
                {"request_id": str(active[0])},
            )

        usage = await self.monthly_usage(project, member)
        if usage["remaining"] <= 0:
            raise QuotaExceededError(
                f"Monthly verification request limit reached ({usage['limit']}/month)",
                window="month",
                limit=usage["limit"],
                reset_at=usage["reset_at"],
            )

        if scope == AuditScope.DATA.value:
            items_to_verify = await self._resolve_items(record, items, all_items)
        else:
            items_to_verify = []

        request = VerificationRequest(
            record_id=record.id,
            project_id=record.project_id,
            scope=scope,
            items_to_verify=items_to_verify,
            status=AuditStatus.PENDING.value,
            priority=priority,
            request_notes=notes,
            requested_by=actor.id,
            requested_at=utcnow(),
            issues_found=[],
        )
        self.session.add(request)
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.AUDIT_REQUESTED,
            entity_type="record",
            entity_id=record.id,
            user_id=actor.id,
            payload={
                "request_id": request.id,
                "scope": scope,
                "priority": priority,
                "item_count": len(items_to_verify),
                "project_id": record.project_id,
            },
        )
        logger.info(
            "Verification requested",
            extra={"record_id": str(record.id), "verification_request_id": str(request.id), "scope": scope},
        )
        await VerificationLevelService.refresh(self.session, record)
        return request

    async def _resolve_items(
        self,
        record: Record,
        items: Optional[List[Dict[str, Any]]],
        all_items: bool,
    ) -> List[Dict[str, Any]]:
        """Normalize and check the items of a data-scope request."""
        fields = await self.evidence.field_definitions(record.record_type_id)
        quotes = await self.evidence.quotes_for_record(record.id)
        sources = await self.evidence.sources_for_record(record.id)
        data = record.data or {}

        available = {
            "field": [f.slug for f in fields if not is_empty(data.get(f.slug))],
            "quote": [str(q.id) for q in quotes],
            "source": [str(s.id) for s in sources],
        }

        if all_items:
            resolved = [
                {"type": item_type, "id": item_id}
                for item_type in AUDIT_ITEM_TYPES
                for item_id in available[item_type]
            ]
            if not resolved:
                raise ValidationError("This record has nothing to verify")
            return resolved

        if not items:
            raise ValidationError("A data verification needs items to verify, or all_items")

        resolved: List[Dict[str, Any]] = []
        unknown: List[Dict[str, Any]] = []
        known = {
            "field": {f.slug for f in fields},
            "quote": set(available["quote"]),
            "source": set(available["source"]),
        }
        for raw in items:
            item_type = raw.get("type")
            item_id = raw.get("id", raw.get("field_slug"))
            if item_type not in AUDIT_ITEM_TYPES or item_id is None:
                raise ValidationError(
                    "Each item needs a type (field, quote or source) and an id",
                    {"item": raw},
                )
            item = {"type": item_type, "id": str(item_id)}
            if item["id"] not in known[item_type]:
                unknown.append(item)
            elif item not in resolved:
                resolved.append(item)
        if unknown:
            raise ValidationError("Some items do not exist on this record", {"unknown": unknown})
        return resolved

    # Verifier actions

    async def assign_request(self, request_id: uuid.UUID, actor: Actor) -> VerificationRequest:
        """Claim a pending request for the acting verifier."""
        if not actor.is_verifier:
            raise PermissionDeniedError("Only verifiers can claim verification requests")
        request = await self.get_request(request_id)
        if request.assigned_to == actor.id and request.status == AuditStatus.IN_PROGRESS.value:
            return request
        if request.assigned_to is not None and request.assigned_to != actor.id:
            raise ConcurrencyError("This request is already assigned to another verifier")
        if request.status != AuditStatus.PENDING.value:
            raise StateError(
                f"Cannot claim a request that is {request.status}",
                {"status": request.status},
            )

        user = await self.session.get(User, actor.id)
        max_concurrent = (
            user.verifier_max_concurrent if user is not None
            else get_settings().verifier_max_concurrent_default
        )
        active = (
            await self.session.execute(
                select(func.count(VerificationRequest.id)).where(
                    and_(
                        VerificationRequest.assigned_to == actor.id,
                        VerificationRequest.status == AuditStatus.IN_PROGRESS.value,
                    )
                )
            )
        ).scalar_one()
        if active >= max_concurrent:
            raise StateError(
                f"You already have {active} verifications in progress (limit {max_concurrent})",
                {"active": active, "limit": max_concurrent},
            )

        now = utcnow()
        stmt = (
            update(VerificationRequest)
            .where(
                VerificationRequest.id == request.id,
                VerificationRequest.status == AuditStatus.PENDING.value,
                or_(
                    VerificationRequest.assigned_to.is_(None),
                    VerificationRequest.assigned_to == actor.id,
                ),
            )
            .values(
                assigned_to=actor.id,
                assigned_at=now,
                status=AuditStatus.IN_PROGRESS.value,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            logger.warning(
                "Verification request claimed concurrently",
                extra={"verification_request_id": str(request.id), "verifier_id": str(actor.id)},
            )
            raise ConcurrencyError("This request is already assigned to another verifier")
        await self.session.refresh(request)

        await self.event_store.log(
            event_type=EventType.AUDIT_ASSIGNED,
            entity_type="record",
            entity_id=request.record_id,
            user_id=actor.id,
            payload={"request_id": request.id},
        )
        return request

    async def _assigned_request(self, request_id: uuid.UUID, actor: Actor) -> VerificationRequest:
        request = await self.get_request(request_id)
        if request.assigned_to != actor.id:
            raise PermissionDeniedError("Only the assigned verifier can act on this request")
        if request.status != AuditStatus.IN_PROGRESS.value:
            raise StateError(
                f"Request is {request.status}, not in progress",
                {"status": request.status},
            )
        return request

    async def complete_audit(
        self,
        request_id: uuid.UUID,
        actor: Actor,
        outcome: str,
        results: List[Dict[str, Any]],
        notes: Optional[str] = None,
        issues_found: Optional[List[str]] = None,
    ) -> VerificationRequest:
        request = await self._assigned_request(request_id, actor)
        try:
            outcome = AuditOutcome(outcome).value
        except ValueError:
            raise ValidationError(
                f"Unknown outcome: {outcome}",
                {"allowed": [o.value for o in AuditOutcome]},
            )
        try:
            parsed = [AuditItemResult.model_validate(r) for r in results or []]
        except PydanticValidationError as exc:
            raise ValidationError(
                "Malformed verification result",
                {"errors": [{"loc": ".".join(map(str, e["loc"])), "msg": e["msg"]} for e in exc.errors()]},
            )

        if request.scope == AuditScope.RECORD.value:
            if len(parsed) != 1 or parsed[0].item_type != "record":
                raise ValidationError("A record verification takes exactly one record-level result")
        else:
            expected = {_item_key(i) for i in request.items_to_verify}
            given = [(r.item_type, r.item_id or "") for r in parsed]
            if len(given) != len(set(given)) or set(given) != expected:
                raise ValidationError(
                    "Provide exactly one result per requested item",
                    {
                        "missing": [{"type": t, "id": i} for t, i in sorted(expected - set(given))],
                        "unexpected": [{"type": t, "id": i} for t, i in sorted(set(given) - expected)],
                    },
                )

        if outcome == AuditOutcome.PASSED.value and any(not r.verified for r in parsed):
            raise ValidationError("An audit with unverified items cannot pass; use partial or failed")

        now = utcnow()
        stmt = (
            update(VerificationRequest)
            .where(
                VerificationRequest.id == request.id,
                VerificationRequest.status == AuditStatus.IN_PROGRESS.value,
                VerificationRequest.assigned_to == actor.id,
            )
            .values(
                status=AuditStatus.COMPLETED.value,
                outcome=outcome,
                verifier_notes=notes,
                issues_found=list(issues_found or []),
                completed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if (await self.session.execute(stmt)).rowcount != 1:
            raise ConcurrencyError("The request changed while you were completing it; reload")
        await self.session.refresh(request)

        for r in parsed:
            self.session.add(
                VerificationResult(
                    request_id=request.id,
                    record_id=request.record_id,
                    item_type=r.item_type,
                    item_id=r.item_id,
                    verified=r.verified,
                    notes=r.notes,
                    caveats=r.caveats,
                    issues=list(r.issues),
                    verified_by=actor.id,
                    verified_at=now,
                )
            )

        record = await self.get_record(request.record_id)
        if request.scope == AuditScope.RECORD.value and outcome == AuditOutcome.PASSED.value:
            record.verified_data_hash = compute_data_hash(record.data or {})
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.AUDIT_COMPLETED,
            entity_type="record",
            entity_id=record.id,
            user_id=actor.id,
            payload={
                "request_id": request.id,
                "outcome": outcome,
                "result_count": len(parsed),
                "issues_found": list(issues_found or []),
            },
        )
        logger.info(
            "Verification completed",
            extra={"record_id": str(record.id), "verification_request_id": str(request.id), "outcome": outcome},
        )
        await VerificationLevelService.refresh(self.session, record)
        return request

    async def reject_request(self, request_id: uuid.UUID, actor: Actor, reason: str) -> VerificationRequest:
        """The assignee gives the request back as unworkable."""
        request = await self._assigned_request(request_id, actor)
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A rejection reason is required")

        stmt = (
            update(VerificationRequest)
            .where(
                VerificationRequest.id == request.id,
                VerificationRequest.status == AuditStatus.IN_PROGRESS.value,
                VerificationRequest.assigned_to == actor.id,
            )
            .values(
                status=AuditStatus.REJECTED.value,
                rejection_reason=reason,
                rejected_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if (await self.session.execute(stmt)).rowcount != 1:
            raise ConcurrencyError("The request changed while you were rejecting it; reload")
        await self.session.refresh(request)

        await self.event_store.log(
            event_type=EventType.AUDIT_REJECTED,
            entity_type="record",
            entity_id=request.record_id,
            user_id=actor.id,
            payload={"request_id": request.id, "reason": reason},
        )
        record = await self.get_record(request.record_id)
        await VerificationLevelService.refresh(self.session, record)
        return request

    async def unverify_result(self, result_id: uuid.UUID, actor: Actor, reason: str) -> VerificationResult:
        """Flag a data-level result as no longer verified."""
        result = await self.get_result(result_id)
        record = await self.get_record(result.record_id)
        require_permission(actor, Permission.FLAG_AUDIT, project_id=record.project_id)
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to unverify a result")
        if result.item_type == "record":
            raise ValidationError("Only item-level results can be unverified")
        if not result.verified:
            return result

        result.verified = False
        result.issues = list(result.issues or []) + [reason]
        result.unverified_by = actor.id
        result.unverified_at = utcnow()
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.AUDIT_RESULT_UNVERIFIED,
            entity_type="record",
            entity_id=record.id,
            user_id=actor.id,
            payload={"result_id": result.id, "request_id": result.request_id, "reason": reason},
        )
        await VerificationLevelService.refresh(self.session, record)
        return result
