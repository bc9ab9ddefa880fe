"""
User model for identity references.

Accounts are provisioned by the external identity provider; the core only keeps
what it needs to attribute actions, pick an AI tier and gate verifier work.
"""

import uuid
from typing import TYPE_CHECKING, List

from sqlalchemy import Boolean, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from witness.kernel.models.base import Base, TimestampMixin, generate_uuid

if TYPE_CHECKING:
    from witness.kernel.models.project import Project, ProjectMember


class User(Base, TimestampMixin):
    """User account model."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        index=True,
        nullable=False,
    )
    full_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    # AI quota tier (name of a RateLimitTier row)
    ai_tier: Mapped[str] = mapped_column(
        String(50),
        default="free",
        nullable=False,
    )

    # Independent third-party verifier
    is_verifier: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    verifier_max_concurrent: Mapped[int] = mapped_column(
        Integer,
        default=5,
        nullable=False,
    )

    owned_projects: Mapped[List["Project"]] = relationship(
        "Project",
        back_populates="owner",
        foreign_keys="Project.owner_id",
    )
    memberships: Mapped[List["ProjectMember"]] = relationship(
        "ProjectMember",
        back_populates="user",
        foreign_keys="ProjectMember.user_id",
    )

    def __repr__(self) -> str:
        return f"<User {self.email}>"
