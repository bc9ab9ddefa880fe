"""
Project and membership models.
"""

import uuid
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import Boolean, ForeignKey, Integer, String, Text, Uuid, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from witness.kernel.models.base import Base, TimestampMixin, SoftDeleteMixin, generate_uuid

if TYPE_CHECKING:
    from witness.kernel.models.user import User
    from witness.kernel.models.schema import RecordType


class ProjectRole(str, Enum):
    """Roles a user can hold inside a project."""
    OWNER = "owner"
    ADMIN = "admin"
    EDITOR = "editor"
    REVIEWER = "reviewer"
    VALIDATOR = "validator"
    ANALYST = "analyst"
    VIEWER = "viewer"


class Project(Base, TimestampMixin, SoftDeleteMixin):
    """Top-level container for record types, records and credits."""

    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    slug: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        index=True,
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
    is_public: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )

    # Workflow settings
    require_different_validator: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    audit_quota_monthly: Mapped[int] = mapped_column(
        Integer,
        default=5,
        nullable=False,
    )

    owner: Mapped["User"] = relationship(
        "User",
        back_populates="owned_projects",
        foreign_keys=[owner_id],
    )
    members: Mapped[List["ProjectMember"]] = relationship(
        "ProjectMember",
        back_populates="project",
        cascade="all, delete-orphan",
    )
    record_types: Mapped[List["RecordType"]] = relationship(
        "RecordType",
        back_populates="project",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Project {self.slug}>"


class ProjectMember(Base, TimestampMixin):
    """A user's role inside a project."""

    __tablename__ = "project_members"

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
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )
    role: Mapped[ProjectRole] = mapped_column(
        String(50),
        default=ProjectRole.VIEWER,
        nullable=False,
    )
    invited_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        ForeignKey("users.id"),
        nullable=True,
    )
    # Owners may withhold audit requests from a member or cap them separately
    can_request_verification: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    verification_quota_override: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )

    project: Mapped["Project"] = relationship(
        "Project",
        back_populates="members",
    )
    user: Mapped["User"] = relationship(
        "User",
        back_populates="memberships",
        foreign_keys=[user_id],
    )

    __table_args__ = (
        UniqueConstraint("project_id", "user_id", name="uq_project_members_project_user"),
    )

    def __repr__(self) -> str:
        return f"<ProjectMember project={self.project_id} user={self.user_id} role={self.role}>"
