"""
AI quota and credit ledger models.

Ledger invariant: ProjectCredits.balance == sum(CreditTransaction.amount) for
the project. Balances only change through the quota governor.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, Uuid, Index
from sqlalchemy.orm import Mapped, mapped_column

from witness.kernel.models.base import Base, TimestampMixin, generate_uuid, utcnow


class RateLimitTier(Base, TimestampMixin):
    """Per-tier request ceilings and credit pricing."""

    __tablename__ = "rate_limit_tiers"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    tier_name: Mapped[str] = mapped_column(
        String(50),
        unique=True,
        nullable=False,
    )
    requests_per_hour: Mapped[int] = mapped_column(Integer, nullable=False)
    requests_per_day: Mapped[int] = mapped_column(Integer, nullable=False)
    requests_per_month: Mapped[int] = mapped_column(Integer, nullable=False)
    requires_credits: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    credits_per_request: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class AIUsage(Base):
    """One AI-assisted operation, counted against the rate windows."""

    __tablename__ = "ai_usage"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("users.id"),
        nullable=False,
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    operation_type: Mapped[str] = mapped_column(String(50), nullable=False)
    record_type_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(), nullable=True)

    model_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    input_tokens: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    output_tokens: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    response_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    credits_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    was_free_tier: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Set in Python so window boundaries and stored times agree to the microsecond
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_ai_usage_user_op_time", "user_id", "operation_type", "created_at"),
    )


class ProjectCredits(Base, TimestampMixin):
    """Spendable AI credit balance of a project."""

    __tablename__ = "project_credits"

    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("projects.id", ondelete="CASCADE"),
        primary_key=True,
    )
    balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lifetime_purchased: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lifetime_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class CreditTransactionType(str, Enum):
    PURCHASE = "purchase"
    BONUS = "bonus"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    REFUND = "refund"
    USAGE = "usage"


class CreditTransaction(Base):
    """Signed ledger entry. Usage entries are negative."""

    __tablename__ = "credit_transactions"

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
    transaction_type: Mapped[CreditTransactionType] = mapped_column(String(30), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ai_usage_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        ForeignKey("ai_usage.id"),
        nullable=True,
    )
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        ForeignKey("users.id"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
