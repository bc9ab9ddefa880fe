"""
Pydantic schemas for API request/response validation.
"""

from witness.schemas.common import ErrorResponse, HealthResponse
from witness.schemas.project import (
    ProjectCreate,
    ProjectResponse,
    MemberCreate,
    MemberResponse,
    RecordTypeCreate,
    RecordTypeUpdate,
    RecordTypeResponse,
    FieldGroupCreate,
    FieldGroupUpdate,
    FieldGroupResponse,
    FieldCreate,
    FieldUpdate,
    FieldResponse,
)
from witness.schemas.record import (
    RecordSubmit,
    GuestSubmit,
    RecordDataUpdate,
    TransitionRequest,
    RecordResponse,
    ValidationIssueResponse,
    EventResponse,
    SourceCreate,
    SourceUpdate,
    SourceResponse,
    QuoteCreate,
    QuoteUpdate,
    QuoteResponse,
    RemovalResponse,
    EditSuggestionCreate,
    EditSuggestionReview,
    EditSuggestionResponse,
)
from witness.schemas.audit import (
    AuditRequestCreate,
    AuditComplete,
    AuditResultInput,
    ReasonBody,
    VerificationRequestResponse,
    VerificationResultResponse,
    UsageRecord,
    UsageRecorded,
    CreditGrant,
    CreditTransactionResponse,
)
