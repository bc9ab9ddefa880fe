"""
SQLAlchemy models for the Witness Ledger core.
"""

from witness.kernel.models.base import Base, TimestampMixin, SoftDeleteMixin
from witness.kernel.models.user import User
from witness.kernel.models.project import Project, ProjectMember, ProjectRole
from witness.kernel.models.schema import (
    RecordType,
    FieldGroup,
    FieldDefinition,
    FieldType,
    FieldWidth,
)
from witness.kernel.models.record import (
    Record,
    RecordStatus,
    TERMINAL_STATUSES,
    ValidationIssue,
    EditSuggestion,
    EditSuggestionStatus,
)
from witness.kernel.models.evidence import Quote, Source, SourceType
from witness.kernel.models.verification import (
    VerificationRequest,
    VerificationResult,
    AuditScope,
    AuditStatus,
    AuditPriority,
    AuditOutcome,
    ACTIVE_AUDIT_STATUSES,
)
from witness.kernel.models.usage import (
    RateLimitTier,
    AIUsage,
    ProjectCredits,
    CreditTransaction,
    CreditTransactionType,
)
from witness.kernel.models.event_log import EventLog, EventType

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "SoftDeleteMixin",
    # Identity and projects
    "User",
    "Project",
    "ProjectMember",
    "ProjectRole",
    # Schema registry
    "RecordType",
    "FieldGroup",
    "FieldDefinition",
    "FieldType",
    "FieldWidth",
    # Records
    "Record",
    "RecordStatus",
    "TERMINAL_STATUSES",
    "ValidationIssue",
    "EditSuggestion",
    "EditSuggestionStatus",
    # Evidence
    "Quote",
    "Source",
    "SourceType",
    # Audits
    "VerificationRequest",
    "VerificationResult",
    "AuditScope",
    "AuditStatus",
    "AuditPriority",
    "AuditOutcome",
    "ACTIVE_AUDIT_STATUSES",
    # Quota
    "RateLimitTier",
    "AIUsage",
    "ProjectCredits",
    "CreditTransaction",
    "CreditTransactionType",
    # Events
    "EventLog",
    "EventType",
]
