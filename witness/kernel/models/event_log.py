"""
The ledger's history: one row per state change, written in the transaction that
made the change and never updated afterwards.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, String, Index, JSON, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from witness.kernel.models.base import Base, generate_uuid, utcnow


class EventType(str, Enum):
    """Dotted names, grouped by the component that emits them."""

    # Schema registry
    PROJECT_CREATED = "project.created"
    MEMBER_ADDED = "project.member_added"
    MEMBER_AUDIT_RIGHTS_UPDATED = "project.member_audit_rights_updated"
    RECORD_TYPE_CREATED = "record_type.created"
    RECORD_TYPE_UPDATED = "record_type.updated"
    FIELD_GROUP_CREATED = "field_group.created"
    FIELD_GROUP_UPDATED = "field_group.updated"
    FIELD_GROUP_DELETED = "field_group.deleted"
    FIELD_CREATED = "field.created"
    FIELD_UPDATED = "field.updated"
    FIELD_DELETED = "field.deleted"

    # Records
    RECORD_SUBMITTED = "record.submitted"
    RECORD_DATA_UPDATED = "record.data_updated"
    RECORD_STATUS_CHANGED = "record.status_changed"
    FIELD_VERIFIED = "record.field_verified"
    FIELD_UNVERIFIED = "record.field_unverified"
    FIELD_VERIFICATION_REVOKED = "record.field_verification_revoked"
    RECORD_LOCKED = "record.locked"
    RECORD_UNLOCKED = "record.unlocked"
    VALIDATION_ISSUE_RAISED = "record.validation_issue_raised"
    VALIDATION_ISSUE_RESOLVED = "record.validation_issue_resolved"

    # Evidence
    SOURCE_ADDED = "source.added"
    SOURCE_UPDATED = "source.updated"
    SOURCE_REMOVED = "source.removed"
    QUOTE_ADDED = "quote.added"
    QUOTE_UPDATED = "quote.updated"
    QUOTE_REMOVED = "quote.removed"
    QUOTE_LINKED = "quote.linked"
    QUOTE_UNLINKED = "quote.unlinked"

    # Edit suggestions
    EDIT_SUGGESTED = "edit_suggestion.created"
    EDIT_SUGGESTION_REVIEWED = "edit_suggestion.reviewed"
    EDIT_SUGGESTION_APPLIED = "edit_suggestion.applied"
    EDIT_SUGGESTION_REJECTED = "edit_suggestion.rejected"

    # Third-party audits
    AUDIT_REQUESTED = "audit.requested"
    AUDIT_ASSIGNED = "audit.assigned"
    AUDIT_COMPLETED = "audit.completed"
    AUDIT_REJECTED = "audit.rejected"
    AUDIT_RESULT_UNVERIFIED = "audit.result_unverified"
    VERIFICATION_LEVEL_CHANGED = "audit.level_changed"

    # Quota and credits
    AI_USAGE_RECORDED = "ai.usage_recorded"
    AI_QUOTA_DENIED = "ai.quota_denied"
    CREDITS_ADDED = "credits.added"


class EventLog(Base):
    """Append-only. Rows are inserted by EventStore.log and never touched again."""

    __tablename__ = "event_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )

    # Event identification
    event_type: Mapped[EventType] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )

    # Entity reference
    entity_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        nullable=False,
        index=True,
    )

    # Actor
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        nullable=True,  # System events have no user
        index=True,
    )

    # Event data
    payload: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )

    request_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )

    # Timestamp (immutable)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True,
    )

    __table_args__ = (
        Index("ix_event_logs_entity", "entity_type", "entity_id"),
        Index("ix_event_logs_user_time", "user_id", "created_at"),
        Index("ix_event_logs_type_time", "event_type", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<EventLog {self.event_type} {self.entity_type}:{self.entity_id}>"
