"""
Evidence models: sources and the quotes drawn from them.
"""

import uuid
from enum import Enum
from typing import List, Optional

from sqlalchemy import ForeignKey, Integer, JSON, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from witness.kernel.models.base import Base, TimestampMixin, generate_uuid


class SourceType(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    OFFICIAL = "official"
    MEDIA = "media"
    OTHER = "other"


class Source(Base, TimestampMixin):
    """Provenance for quotes attached to a record."""

    __tablename__ = "sources"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    source_type: Mapped[SourceType] = mapped_column(
        String(20),
        default=SourceType.OTHER,
        nullable=False,
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        ForeignKey("users.id"),
        nullable=True,
    )

    @property
    def has_url(self) -> bool:
        return bool(self.url and self.url.strip())

    def __repr__(self) -> str:
        return f"<Source {self.id} {self.url}>"


class Quote(Base, TimestampMixin):
    """
    Evidentiary text attached to a record.

    `linked_fields` is an ordered, duplicate-free list of field slugs the quote
    supports. Always assign a new list; in-place mutation is not tracked.
    """

    __tablename__ = "quotes"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    source_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        ForeignKey("sources.id", ondelete="SET NULL"),
        nullable=True,
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    linked_fields: Mapped[List[str]] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        ForeignKey("users.id"),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Quote {self.id} fields={self.linked_fields}>"
