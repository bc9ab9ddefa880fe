"""
Record, workflow and evidence schemas.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, computed_field

from witness.engines.records.record_store import compute_data_hash


class RecordSubmit(BaseModel):
    """Member submission. Guests use GuestSubmit."""

    record_type_id: uuid.UUID
    data: Dict[str, Any] = Field(default_factory=dict)
    as_draft: bool = False


class GuestSubmit(BaseModel):
    data: Dict[str, Any] = Field(default_factory=dict)
    guest_name: Optional[str] = Field(None, max_length=255)
    guest_email: Optional[EmailStr] = None


class RecordDataUpdate(BaseModel):
    changes: Dict[str, Any]


class TransitionRequest(BaseModel):
    """
    A workflow action.

    payload carries action-specific input: `notes` for approve, `reason` for
    reject, and `items` (the validation checklist) for validate and
    return_to_review.
    """

    action: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class RecordResponse(BaseModel):
    id: uuid.UUID
    record_type_id: uuid.UUID
    project_id: uuid.UUID
    status: str
    data: Dict[str, Any]
    verified_fields: Dict[str, Any]
    submitted_by: Optional[uuid.UUID] = None
    guest_name: Optional[str] = None
    first_verified_by: Optional[uuid.UUID] = None
    first_verified_at: Optional[datetime] = None
    second_verified_by: Optional[uuid.UUID] = None
    second_verified_at: Optional[datetime] = None
    first_validated_by: Optional[uuid.UUID] = None
    first_validated_at: Optional[datetime] = None
    second_validated_by: Optional[uuid.UUID] = None
    second_validated_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    review_cycle: int
    published_at: Optional[datetime] = None
    verification_level: int
    verified_data_hash: Optional[str] = Field(None, exclude=True)
    created_at: datetime
    updated_at: datetime

    @computed_field
    @property
    def data_changed_since_audit(self) -> bool:
        """True once the payload differs from what the last passed audit signed off on."""
        if self.verified_data_hash is None:
            return False
        return compute_data_hash(self.data) != self.verified_data_hash

    class Config:
        from_attributes = True


class LockRequest(BaseModel):
    extend: bool = False


class LockStatusResponse(BaseModel):
    is_locked: bool
    locked_by: Optional[uuid.UUID] = None
    locked_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    remaining_minutes: Optional[int] = None

    class Config:
        from_attributes = True


class ValidationIssueResponse(BaseModel):
    id: uuid.UUID
    record_id: uuid.UUID
    session_number: int
    item_type: str
    item_id: str
    reason: str
    created_by: uuid.UUID
    created_at: datetime
    resolved_by: Optional[uuid.UUID] = None
    resolved_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class EventResponse(BaseModel):
    id: uuid.UUID
    event_type: str
    user_id: Optional[uuid.UUID] = None
    payload: Dict[str, Any]
    request_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class SourceCreate(BaseModel):
    url: Optional[str] = None
    title: Optional[str] = Field(None, max_length=500)
    source_type: str = "other"
    notes: Optional[str] = None


class SourceUpdate(BaseModel):
    url: Optional[str] = None
    title: Optional[str] = Field(None, max_length=500)
    source_type: Optional[str] = None
    notes: Optional[str] = None


class SourceResponse(BaseModel):
    id: uuid.UUID
    record_id: uuid.UUID
    url: Optional[str] = None
    title: Optional[str] = None
    source_type: str
    notes: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class QuoteCreate(BaseModel):
    text: str = Field(..., min_length=1)
    source_id: Optional[uuid.UUID] = None
    linked_fields: List[str] = Field(default_factory=list)


class QuoteUpdate(BaseModel):
    text: Optional[str] = Field(None, min_length=1)
    source_id: Optional[uuid.UUID] = None
    clear_source: bool = False


class QuoteResponse(BaseModel):
    id: uuid.UUID
    record_id: uuid.UUID
    source_id: Optional[uuid.UUID] = None
    text: str
    linked_fields: List[str]
    sort_order: int
    created_at: datetime

    class Config:
        from_attributes = True


class RemovalResponse(BaseModel):
    """Result of removing evidence: field verifications that lost their support."""

    revoked_fields: List[str]


class EditSuggestionCreate(BaseModel):
    field_slug: str
    suggested_value: Any = None
    reason: Optional[str] = None


class EditSuggestionReview(BaseModel):
    approve: bool
    notes: Optional[str] = None
    reason: Optional[str] = None


class EditSuggestionResponse(BaseModel):
    id: uuid.UUID
    record_id: uuid.UUID
    field_slug: str
    current_value: Any = None
    suggested_value: Any = None
    reason: Optional[str] = None
    status: str
    suggested_by: uuid.UUID
    first_reviewed_by: Optional[uuid.UUID] = None
    second_reviewed_by: Optional[uuid.UUID] = None
    rejection_reason: Optional[str] = None
    applied_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True
