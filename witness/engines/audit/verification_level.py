"""
Verification level - a projection of a record's publication and audit history.

    0  Unverified          not published
    1  Self-Verified       published, no live third-party audit
    2  Audit-Ready         an audit is pending, in progress, or completed
                           without a full pass
    3  3rd Party Verified  a completed audit passed on every audited item

The level is cached on Record.verification_level and rewritten only by
VerificationLevelService.refresh after a history write.
"""

import uuid
from collections import defaultdict
from typing import Dict, Iterable, List, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from witness.kernel.events.event_store import EventStore
from witness.kernel.models.event_log import EventType
from witness.kernel.models.record import Record, RecordStatus
from witness.kernel.models.verification import (
    AuditOutcome,
    AuditScope,
    AuditStatus,
    VerificationRequest,
    VerificationResult,
)
from witness.logging_config import get_logger

logger = get_logger(__name__)

LEVEL_NAMES = {
    0: "Unverified",
    1: "Self-Verified",
    2: "Audit-Ready",
    3: "3rd Party Verified",
}


def audit_passed(request: VerificationRequest, results: Sequence[VerificationResult]) -> bool:
    """A completed, passed audit whose results all still stand."""
    if request.status != AuditStatus.COMPLETED.value or request.outcome != AuditOutcome.PASSED.value:
        return False
    if not results:
        return False
    if request.scope == AuditScope.RECORD.value:
        return any(r.verified for r in results)
    return all(r.verified for r in results)


def compute_verification_level(
    record_status: str,
    requests: Iterable[VerificationRequest],
    results: Iterable[VerificationResult],
) -> int:
    """Pure level computation from status plus audit history."""
    if record_status != RecordStatus.VERIFIED.value:
        return 0

    by_request: Dict[uuid.UUID, List[VerificationResult]] = defaultdict(list)
    for result in results:
        by_request[result.request_id].append(result)

    live = False
    for request in requests:
        if audit_passed(request, by_request.get(request.id, [])):
            return 3
        if request.status != AuditStatus.REJECTED.value:
            live = True
    return 2 if live else 1


class VerificationLevelService:
    """Recomputes and caches a record's verification level."""

    @classmethod
    async def compute(cls, db: AsyncSession, record: Record) -> int:
        requests = (
            await db.execute(
                select(VerificationRequest).where(VerificationRequest.record_id == record.id)
            )
        ).scalars().all()
        results = (
            await db.execute(
                select(VerificationResult).where(VerificationResult.record_id == record.id)
            )
        ).scalars().all()
        return compute_verification_level(RecordStatus(record.status).value, requests, results)

    @classmethod
    async def refresh(cls, db: AsyncSession, record: Record) -> int:
        """Recompute the level and store it when it changed."""
        await db.flush()
        level = await cls.compute(db, record)
        previous = record.verification_level
        if level == previous:
            return level

        record.verification_level = level
        await db.flush()
        await EventStore(db).log(
            event_type=EventType.VERIFICATION_LEVEL_CHANGED,
            entity_type="record",
            entity_id=record.id,
            user_id=None,
            payload={"from_level": previous, "to_level": level, "label": LEVEL_NAMES[level]},
        )
        logger.info(
            "Verification level changed",
            extra={"record_id": str(record.id), "from_level": previous, "to_level": level},
        )
        return level
