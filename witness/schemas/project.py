"""
Project and schema registry schemas.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ProjectCreate(BaseModel):
    """Project creation request."""

    slug: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    is_public: bool = False
    require_different_validator: bool = False
    audit_quota_monthly: Optional[int] = Field(None, ge=0)


class ProjectResponse(BaseModel):
    id: uuid.UUID
    slug: str
    name: str
    description: Optional[str]
    is_public: bool
    owner_id: uuid.UUID
    require_different_validator: bool
    audit_quota_monthly: int
    created_at: datetime

    class Config:
        from_attributes = True


class MemberCreate(BaseModel):
    user_id: uuid.UUID
    role: str


class MemberAuditRightsUpdate(BaseModel):
    """Per-member audit rights. `clear_quota_override` returns the member to the project cap."""

    can_request_verification: Optional[bool] = None
    verification_quota_override: Optional[int] = Field(None, ge=0)
    clear_quota_override: bool = False


class MemberResponse(BaseModel):
    id: uuid.UUID
    project_id: uuid.UUID
    user_id: uuid.UUID
    role: str
    invited_by: Optional[uuid.UUID] = None
    can_request_verification: bool = True
    verification_quota_override: Optional[int] = None

    class Config:
        from_attributes = True


class RecordTypeCreate(BaseModel):
    """Record type creation request. Workflow settings default to the strict path."""

    slug: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=255)
    name_plural: Optional[str] = None
    description: Optional[str] = None
    require_quotes_for_review: bool = True
    require_sources_for_quotes: bool = False
    require_all_fields_verified: bool = True
    quote_bypass_roles: List[str] = Field(default_factory=list)
    validation_bypass_roles: List[str] = Field(default_factory=list)
    guest_form_enabled: bool = False


class RecordTypeUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    name_plural: Optional[str] = None
    description: Optional[str] = None
    require_quotes_for_review: Optional[bool] = None
    require_sources_for_quotes: Optional[bool] = None
    require_all_fields_verified: Optional[bool] = None
    quote_bypass_roles: Optional[List[str]] = None
    validation_bypass_roles: Optional[List[str]] = None
    guest_form_enabled: Optional[bool] = None


class RecordTypeResponse(BaseModel):
    id: uuid.UUID
    project_id: uuid.UUID
    slug: str
    name: str
    name_plural: Optional[str] = None
    description: Optional[str] = None
    require_quotes_for_review: bool
    require_sources_for_quotes: bool
    require_all_fields_verified: bool
    quote_bypass_roles: List[str]
    validation_bypass_roles: List[str]
    guest_form_enabled: bool

    class Config:
        from_attributes = True


class FieldGroupCreate(BaseModel):
    slug: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    sort_order: int = 0
    collapsed_by_default: bool = False
    show_in_review_form: bool = True


class FieldGroupUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    sort_order: Optional[int] = None
    collapsed_by_default: Optional[bool] = None
    show_in_review_form: Optional[bool] = None


class FieldGroupResponse(BaseModel):
    id: uuid.UUID
    record_type_id: uuid.UUID
    slug: str
    name: str
    description: Optional[str] = None
    sort_order: int
    collapsed_by_default: bool
    show_in_review_form: bool

    class Config:
        from_attributes = True


class FieldCreate(BaseModel):
    """Field definition request. `config` is checked against the model for `field_type`."""

    slug: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=255)
    field_type: str
    description: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    field_group_id: Optional[uuid.UUID] = None
    width: str = "full"
    is_required: bool = False
    requires_quote: bool = False
    requires_source_for_quote: bool = False
    require_verified_for_publish: bool = False
    show_in_guest_form: bool = True
    show_in_review_form: bool = True
    show_in_validation_form: bool = True
    show_in_public_view: bool = True
    sort_order: int = 0


class FieldUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    field_type: Optional[str] = None
    description: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    field_group_id: Optional[uuid.UUID] = None
    width: Optional[str] = None
    is_required: Optional[bool] = None
    requires_quote: Optional[bool] = None
    requires_source_for_quote: Optional[bool] = None
    require_verified_for_publish: Optional[bool] = None
    show_in_guest_form: Optional[bool] = None
    show_in_review_form: Optional[bool] = None
    show_in_validation_form: Optional[bool] = None
    show_in_public_view: Optional[bool] = None
    sort_order: Optional[int] = None


class FieldResponse(BaseModel):
    id: uuid.UUID
    record_type_id: uuid.UUID
    field_group_id: Optional[uuid.UUID] = None
    slug: str
    name: str
    description: Optional[str] = None
    field_type: str
    config: Dict[str, Any]
    width: str
    is_required: bool
    requires_quote: bool
    requires_source_for_quote: bool
    require_verified_for_publish: bool
    show_in_guest_form: bool
    show_in_review_form: bool
    show_in_validation_form: bool
    show_in_public_view: bool
    sort_order: int

    class Config:
        from_attributes = True
