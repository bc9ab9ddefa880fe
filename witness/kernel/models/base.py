"""
Declarative base, shared column mixins and time helpers for the ledger models.

All timestamps are stored timezone-aware and in UTC. SQLite drops the offset on
the way back, so anything that compares stored times against `utcnow()` goes
through `as_utc` first (quota windows, claim ages, audit months).
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Uuid, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def generate_uuid() -> uuid.UUID:
    return uuid.uuid4()


class Base(DeclarativeBase):
    # Native UUID on Postgres, CHAR(32) on SQLite
    type_annotation_map = {uuid.UUID: Uuid()}


class TimestampMixin:
    """created_at / updated_at, filled by the ORM and by the server as a fallback."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )


class SoftDeleteMixin:
    """Archived rows keep their history; lookups treat them as gone."""

    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
