"""
Record, validation issue and edit suggestion models.

A Record is one documented incident moving through the review/validation
workflow. Its `status` is only ever written by the workflow engine through
compare-and-swap updates; `verification_level` is a cache recomputed by the
audit subsystem.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, JSON, String, Text, Uuid, Index
from sqlalchemy.orm import Mapped, mapped_column

from witness.kernel.models.base import Base, TimestampMixin, generate_uuid


class RecordStatus(str, Enum):
    """Workflow states of a record."""
    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    FIRST_REVIEW = "first_review"
    SECOND_REVIEW = "second_review"
    PENDING_VALIDATION = "pending_validation"
    FIRST_VALIDATION = "first_validation"
    VERIFIED = "verified"
    REJECTED = "rejected"


TERMINAL_STATUSES = frozenset({RecordStatus.VERIFIED.value, RecordStatus.REJECTED.value})


class Record(Base, TimestampMixin):
    """An incident record undergoing verification."""

    __tablename__ = "records"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    record_type_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("record_types.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    data: Mapped[Dict[str, Any]] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )
    status: Mapped[RecordStatus] = mapped_column(
        String(30),
        default=RecordStatus.PENDING_REVIEW,
        nullable=False,
        index=True,
    )
    # slug -> {"verified": bool, "by": user id, "at": iso timestamp}
    verified_fields: Mapped[Dict[str, Any]] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )

    # Submitter: a member or a guest
    submitted_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        ForeignKey("users.id"),
        nullable=True,
    )
    guest_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    guest_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Review stage
    first_verified_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(), ForeignKey("users.id"), nullable=True)
    first_verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    first_review_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    second_verified_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(), ForeignKey("users.id"), nullable=True)
    second_verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    second_review_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Validation stage
    first_validated_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(), ForeignKey("users.id"), nullable=True)
    first_validated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    second_validated_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(), ForeignKey("users.id"), nullable=True)
    second_validated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    validation_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Rejection
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejected_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(), ForeignKey("users.id"), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    review_cycle: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    validation_session: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Publication and audit
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_data_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    verification_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Advisory review lock; expired locks count as released
    locked_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(), ForeignKey("users.id"), nullable=True)
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    lock_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_records_project_status", "project_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Record {self.id} {self.status}>"


class ValidationIssue(Base):
    """An item a validator flagged when returning a record to review."""

    __tablename__ = "validation_issues"

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
    session_number: Mapped[int] = mapped_column(Integer, nullable=False)
    item_type: Mapped[str] = mapped_column(String(20), nullable=False)
    item_id: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)

    created_by: Mapped[uuid.UUID] = mapped_column(Uuid(), ForeignKey("users.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(), ForeignKey("users.id"), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


class EditSuggestionStatus(str, Enum):
    PENDING = "pending"
    FIRST_REVIEW = "first_review"
    APPROVED = "approved"
    REJECTED = "rejected"


class EditSuggestion(Base, TimestampMixin):
    """A proposed change to one field of a verified record."""

    __tablename__ = "edit_suggestions"

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
    field_slug: Mapped[str] = mapped_column(String(100), nullable=False)
    current_value: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    suggested_value: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[EditSuggestionStatus] = mapped_column(
        String(20),
        default=EditSuggestionStatus.PENDING,
        nullable=False,
        index=True,
    )
    suggested_by: Mapped[uuid.UUID] = mapped_column(Uuid(), ForeignKey("users.id"), nullable=False)

    first_reviewed_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(), ForeignKey("users.id"), nullable=True)
    first_reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    first_review_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    second_reviewed_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(), ForeignKey("users.id"), nullable=True)
    second_reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    second_review_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    applied_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
