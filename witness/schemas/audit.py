"""
Third-party audit and AI quota schemas.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class AuditRequestCreate(BaseModel):
    scope: str = "record"
    items: Optional[List[Dict[str, Any]]] = None
    all_items: bool = False
    priority: str = "normal"
    notes: Optional[str] = None


class AuditResultInput(BaseModel):
    item_type: str = "record"
    item_id: Optional[str] = None
    verified: bool
    notes: Optional[str] = None
    caveats: Optional[str] = None
    issues: List[str] = Field(default_factory=list)


class AuditComplete(BaseModel):
    outcome: str
    results: List[AuditResultInput]
    notes: Optional[str] = None
    issues_found: List[str] = Field(default_factory=list)


class ReasonBody(BaseModel):
    reason: str = Field(..., min_length=1)


class VerificationRequestResponse(BaseModel):
    id: uuid.UUID
    record_id: uuid.UUID
    project_id: uuid.UUID
    scope: str
    items_to_verify: List[Dict[str, Any]]
    status: str
    priority: str
    request_notes: Optional[str] = None
    requested_by: uuid.UUID
    requested_at: datetime
    assigned_to: Optional[uuid.UUID] = None
    assigned_at: Optional[datetime] = None
    outcome: Optional[str] = None
    verifier_notes: Optional[str] = None
    issues_found: List[str]
    completed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    class Config:
        from_attributes = True


class VerificationResultResponse(BaseModel):
    id: uuid.UUID
    request_id: uuid.UUID
    record_id: uuid.UUID
    item_type: str
    item_id: Optional[str] = None
    verified: bool
    notes: Optional[str] = None
    caveats: Optional[str] = None
    issues: List[str]
    verified_by: uuid.UUID
    verified_at: datetime
    unverified_by: Optional[uuid.UUID] = None
    unverified_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class UsageRecord(BaseModel):
    operation_type: Optional[str] = None
    model_name: Optional[str] = None
    input_tokens: Optional[int] = Field(None, ge=0)
    output_tokens: Optional[int] = Field(None, ge=0)
    response_time_ms: Optional[int] = Field(None, ge=0)
    record_type_id: Optional[uuid.UUID] = None


class UsageRecorded(BaseModel):
    usage_id: uuid.UUID
    credits_used: int


class CreditGrant(BaseModel):
    amount: int = Field(..., gt=0)
    transaction_type: str = "purchase"
    description: Optional[str] = None


class CreditTransactionResponse(BaseModel):
    id: uuid.UUID
    project_id: uuid.UUID
    transaction_type: str
    amount: int
    balance_after: int
    description: Optional[str] = None
    ai_usage_id: Optional[uuid.UUID] = None
    created_by: Optional[uuid.UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True
