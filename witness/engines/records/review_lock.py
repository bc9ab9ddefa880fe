"""
Review locks.

A reviewer takes a record for a fixed period so two people do not work the
same record at once. While someone else holds a live lock, data edits and
workflow actions on the record are refused. An expired lock counts as no lock.
Owners and admins may take over or release anyone's lock.
"""

import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from witness.config import get_settings
from witness.errors import NotFoundError, PermissionDeniedError, RecordLockedError
from witness.kernel.events.event_store import EventStore
from witness.kernel.identity.actor import Actor
from witness.kernel.models.base import as_utc, utcnow
from witness.kernel.models.event_log import EventType
from witness.kernel.models.record import Record
from witness.kernel.permissions.permission_service import Permission, has_permission, require_permission
from witness.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class LockStatus:
    is_locked: bool
    locked_by: Optional[uuid.UUID] = None
    locked_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    remaining_minutes: Optional[int] = None


def lock_status(record: Record, now: Optional[datetime] = None) -> LockStatus:
    now = now or utcnow()
    expires_at = as_utc(record.lock_expires_at)
    if record.locked_by is None or expires_at is None or expires_at <= now:
        return LockStatus(is_locked=False)
    return LockStatus(
        is_locked=True,
        locked_by=record.locked_by,
        locked_at=as_utc(record.locked_at),
        expires_at=expires_at,
        remaining_minutes=math.ceil((expires_at - now).total_seconds() / 60),
    )


def can_break_locks(actor: Actor) -> bool:
    return has_permission(actor.role, Permission.MANAGE_MEMBERS)


def ensure_not_locked(record: Record, actor: Actor) -> None:
    """Refuse a write while another reviewer holds a live lock."""
    status = lock_status(record)
    if status.is_locked and status.locked_by != actor.id and not can_break_locks(actor):
        raise _locked_error(status)


def _locked_error(status: LockStatus) -> RecordLockedError:
    return RecordLockedError(
        "The record is locked by another reviewer",
        {
            "locked_by": str(status.locked_by),
            "expires_at": status.expires_at,
            "remaining_minutes": status.remaining_minutes,
        },
    )


class ReviewLockService:
    """Acquire, extend and release review locks with compare-and-swap updates."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.event_store = EventStore(session)

    async def _get_record(self, record_id: uuid.UUID) -> Record:
        record = await self.session.get(Record, record_id)
        if record is None:
            raise NotFoundError("Record not found", {"record_id": str(record_id)})
        return record

    async def status(self, record_id: uuid.UUID, actor: Actor) -> LockStatus:
        record = await self._get_record(record_id)
        require_permission(actor, Permission.VIEW, project_id=record.project_id)
        return lock_status(record)

    async def acquire(self, record_id: uuid.UUID, actor: Actor, extend: bool = False) -> LockStatus:
        """
        Take the lock, or push out the expiry of a lock the actor already holds.

        With `extend` the actor must be the current holder. Without it the lock
        must be free, expired or already the actor's, unless the actor may
        break locks.
        """
        record = await self._get_record(record_id)
        require_permission(
            actor, Permission.REVIEW, Permission.VALIDATE, Permission.MANAGE_RECORDS,
            project_id=record.project_id,
        )
        now = utcnow()
        current = lock_status(record, now)
        previous_holder = current.locked_by
        expires_at = now + timedelta(minutes=get_settings().review_lock_minutes)
        locked_at = current.locked_at if current.locked_by == actor.id else now

        held_by_actor = Record.locked_by == actor.id
        if extend:
            conditions = [held_by_actor]
        elif can_break_locks(actor):
            conditions = []
        else:
            conditions = [or_(Record.locked_by.is_(None), Record.lock_expires_at <= now, held_by_actor)]

        result = await self.session.execute(
            update(Record)
            .where(Record.id == record.id, *conditions)
            .values(locked_by=actor.id, locked_at=locked_at, lock_expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        await self.session.refresh(record)
        if result.rowcount != 1:
            current = lock_status(record, now)
            if current.is_locked and current.locked_by != actor.id:
                raise _locked_error(current)
            raise PermissionDeniedError("Cannot extend a lock you do not hold")

        payload = {"expires_at": expires_at, "extended": extend, "project_id": record.project_id}
        if previous_holder is not None and previous_holder != actor.id:
            payload["taken_from"] = previous_holder
        await self.event_store.log(
            event_type=EventType.RECORD_LOCKED,
            entity_type="record",
            entity_id=record.id,
            user_id=actor.id,
            payload=payload,
        )
        logger.info(
            "Review lock extended" if extend else "Review lock acquired",
            extra={"record_id": str(record.id), "user_id": str(actor.id), "expires_at": expires_at.isoformat()},
        )
        return lock_status(record, now)

    async def release(self, record_id: uuid.UUID, actor: Actor) -> LockStatus:
        record = await self._get_record(record_id)
        require_permission(actor, Permission.VIEW, project_id=record.project_id)
        now = utcnow()
        previous_holder = lock_status(record, now).locked_by

        conditions = []
        if not can_break_locks(actor):
            conditions.append(
                or_(Record.locked_by.is_(None), Record.locked_by == actor.id, Record.lock_expires_at <= now)
            )
        result = await self.session.execute(
            update(Record)
            .where(Record.id == record.id, *conditions)
            .values(locked_by=None, locked_at=None, lock_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.session.refresh(record)
        if result.rowcount != 1:
            current = lock_status(record, now)
            raise PermissionDeniedError(
                "You can only release your own lock",
                {"locked_by": str(current.locked_by)},
            )

        if previous_holder is not None:
            await self.event_store.log(
                event_type=EventType.RECORD_UNLOCKED,
                entity_type="record",
                entity_id=record.id,
                user_id=actor.id,
                payload={"released_for": previous_holder, "project_id": record.project_id},
            )
            logger.info("Review lock released", extra={"record_id": str(record.id), "user_id": str(actor.id)})
        return LockStatus(is_locked=False)
