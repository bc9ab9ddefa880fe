"""
Third-party verification models - independent audit requests and their results.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, JSON, String, Text, Uuid, Index
from sqlalchemy.orm import Mapped, mapped_column

from witness.kernel.models.base import Base, TimestampMixin, generate_uuid


class AuditScope(str, Enum):
    RECORD = "record"
    DATA = "data"


class AuditStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"


ACTIVE_AUDIT_STATUSES = (AuditStatus.PENDING.value, AuditStatus.IN_PROGRESS.value)


class AuditPriority(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"


class AuditOutcome(str, Enum):
    PASSED = "passed"
    PARTIAL = "partial"
    FAILED = "failed"


class VerificationRequest(Base, TimestampMixin):
    """
    A request for an independent verifier to audit a published record.

    For scope=data, `items_to_verify` lists {"type": field|quote|source,
    "id": ...} entries (fields are referenced by slug).
    """

    __tablename__ = "verification_requests"

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
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    scope: Mapped[AuditScope] = mapped_column(String(10), nullable=False)
    items_to_verify: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    status: Mapped[AuditStatus] = mapped_column(
        String(20),
        default=AuditStatus.PENDING,
        nullable=False,
    )
    priority: Mapped[AuditPriority] = mapped_column(
        String(10),
        default=AuditPriority.NORMAL,
        nullable=False,
    )
    request_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    requested_by: Mapped[uuid.UUID] = mapped_column(Uuid(), ForeignKey("users.id"), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    assigned_to: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(), ForeignKey("users.id"), nullable=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    outcome: Mapped[Optional[AuditOutcome]] = mapped_column(String(10), nullable=True)
    verifier_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    issues_found: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_verification_requests_record_status", "record_id", "status"),
        Index("ix_verification_requests_project_time", "project_id", "requested_at"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_AUDIT_STATUSES


class VerificationResult(Base):
    """
    The verifier's finding on one audited item (or the whole record).

    item_type is "record" for record-scope audits.
    """

    __tablename__ = "verification_results"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("verification_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    item_type: Mapped[str] = mapped_column(String(10), nullable=False)
    item_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    verified: Mapped[bool] = mapped_column(Boolean, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    caveats: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    issues: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)

    verified_by: Mapped[uuid.UUID] = mapped_column(Uuid(), ForeignKey("users.id"), nullable=False)
    verified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    unverified_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(), ForeignKey("users.id"), nullable=True)
    unverified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
