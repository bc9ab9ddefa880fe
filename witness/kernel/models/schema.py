"""
Schema registry models: record types, field groups and field definitions.
"""

import uuid
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import Boolean, ForeignKey, Integer, JSON, String, Text, Uuid, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from witness.kernel.models.base import Base, TimestampMixin, generate_uuid

if TYPE_CHECKING:
    from witness.kernel.models.project import Project


class FieldType(str, Enum):
    """Closed set of field types a record type can declare."""
    TEXT = "text"
    TEXTAREA = "textarea"
    NUMBER = "number"
    DATE = "date"
    DATETIME = "datetime"
    BOOLEAN = "boolean"
    SELECT = "select"
    MULTI_SELECT = "multi_select"
    RADIO = "radio"
    CHECKBOX_GROUP = "checkbox_group"
    URL = "url"
    EMAIL = "email"
    LOCATION = "location"
    RICH_TEXT = "rich_text"
    # Composite types
    PERSON = "person"
    TRI_STATE = "tri_state"
    MEDIA = "media"
    INCIDENT_TYPES = "incident_types"
    VIOLATIONS = "violations"
    RECORD_LINK = "record_link"
    CUSTOM_FIELDS = "custom_fields"


class FieldWidth(str, Enum):
    FULL = "full"
    HALF = "half"
    THIRD = "third"


class RecordType(Base, TimestampMixin):
    """
    A kind of record inside a project (e.g. "incident", "detention").

    Carries the workflow settings consulted by the verification engine.
    """

    __tablename__ = "record_types"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    slug: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    name_plural: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    # Workflow settings
    require_quotes_for_review: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    require_sources_for_quotes: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    require_all_fields_verified: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    quote_bypass_roles: Mapped[List[str]] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    validation_bypass_roles: Mapped[List[str]] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    guest_form_enabled: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    project: Mapped["Project"] = relationship(
        "Project",
        back_populates="record_types",
    )
    field_groups: Mapped[List["FieldGroup"]] = relationship(
        "FieldGroup",
        back_populates="record_type",
        cascade="all, delete-orphan",
        order_by="FieldGroup.sort_order",
    )
    fields: Mapped[List["FieldDefinition"]] = relationship(
        "FieldDefinition",
        back_populates="record_type",
        cascade="all, delete-orphan",
        order_by="FieldDefinition.sort_order",
    )

    __table_args__ = (
        UniqueConstraint("project_id", "slug", name="uq_record_types_project_slug"),
    )

    def __repr__(self) -> str:
        return f"<RecordType {self.slug}>"


class FieldGroup(Base, TimestampMixin):
    """Visual grouping of fields on a form."""

    __tablename__ = "field_groups"

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
    slug: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    sort_order: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    collapsed_by_default: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    show_in_review_form: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    record_type: Mapped["RecordType"] = relationship(
        "RecordType",
        back_populates="field_groups",
    )

    __table_args__ = (
        UniqueConstraint("record_type_id", "slug", name="uq_field_groups_type_slug"),
    )


class FieldDefinition(Base, TimestampMixin):
    """
    A typed slot in a record's data payload.

    The slug is the key in Record.data and never changes after creation.
    Deleting a definition leaves stored values in place.
    """

    __tablename__ = "field_definitions"

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
    field_group_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        ForeignKey("field_groups.id", ondelete="SET NULL"),
        nullable=True,
    )

    slug: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    field_type: Mapped[FieldType] = mapped_column(
        String(50),
        nullable=False,
    )
    config: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )

    # Validation
    is_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    requires_quote: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    requires_source_for_quote: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    require_verified_for_publish: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Visibility per mode
    show_in_guest_form: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    show_in_review_form: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    show_in_validation_form: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    show_in_public_view: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Layout
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    width: Mapped[FieldWidth] = mapped_column(
        String(10),
        default=FieldWidth.FULL,
        nullable=False,
    )

    record_type: Mapped["RecordType"] = relationship(
        "RecordType",
        back_populates="fields",
    )
    field_group: Mapped[Optional["FieldGroup"]] = relationship("FieldGroup")

    __table_args__ = (
        UniqueConstraint("record_type_id", "slug", name="uq_field_definitions_type_slug"),
    )

    def __repr__(self) -> str:
        return f"<FieldDefinition {self.slug} ({self.field_type})>"
