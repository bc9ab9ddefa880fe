"""
Quota & Credit Governor - multi-window AI rate limits plus a project credit ledger.

Limits come from the user's tier and are counted per (user, operation type)
over trailing windows:

- hour   (1 hour)
- day    (24 hours)
- month  (30 days)

The tightest exhausted window is reported first. Tiers that require credits
charge the project balance on every recorded use; every balance change is a
signed CreditTransaction, so balance == sum(transaction.amount) at all times.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import and_, case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from witness.config import get_settings
from witness.errors import (
    InsufficientCreditsError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
)
from witness.kernel.events.event_store import EventStore
from witness.kernel.identity.actor import Actor
from witness.kernel.models.base import as_utc, utcnow
from witness.kernel.models.event_log import EventType
from witness.kernel.models.usage import (
    AIUsage,
    CreditTransaction,
    CreditTransactionType,
    ProjectCredits,
    RateLimitTier,
)
from witness.kernel.models.user import User
from witness.kernel.permissions.permission_service import Permission, require_permission
from witness.logging_config import get_logger

logger = get_logger(__name__)

WINDOWS = (
    ("hour", timedelta(hours=1), "Hourly", "hour"),
    ("day", timedelta(hours=24), "Daily", "day"),
    ("month", timedelta(days=30), "Monthly", "month"),
)

GRANT_TYPES = frozenset({
    CreditTransactionType.PURCHASE.value,
    CreditTransactionType.BONUS.value,
    CreditTransactionType.ADMIN_ADJUSTMENT.value,
    CreditTransactionType.REFUND.value,
})


@dataclass(frozen=True)
class TierLimits:
    name: str
    requests_per_hour: int
    requests_per_day: int
    requests_per_month: int
    requires_credits: bool = False
    credits_per_request: int = 0

    def limit_for(self, window: str) -> int:
        return {
            "hour": self.requests_per_hour,
            "day": self.requests_per_day,
            "month": self.requests_per_month,
        }[window]

    @property
    def cost(self) -> int:
        return self.credits_per_request if self.requires_credits else 0


class QuotaStatus(BaseModel):
    """Outcome of a quota check."""

    allowed: bool
    remaining: int
    reset_at: Optional[datetime] = None
    tier: str
    reason: Optional[str] = None
    window: Optional[str] = None
    limit: Optional[int] = None
    credits_remaining: Optional[int] = None
    credits_required: int = 0
    hourly_remaining: int = 0
    daily_remaining: int = 0


def _as_uuid(value):
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def free_tier() -> TierLimits:
    settings = get_settings()
    return TierLimits(
        name=settings.default_ai_tier,
        requests_per_hour=settings.free_requests_per_hour,
        requests_per_day=settings.free_requests_per_day,
        requests_per_month=settings.free_requests_per_month,
    )


def evaluate_windows(
    tier: TierLimits,
    counts: Dict[str, int],
    anchors: Dict[str, Optional[datetime]],
) -> QuotaStatus:
    """
    Apply tier limits to window counts.

    Pure function. `counts` and `anchors` are keyed by window name. An anchor is
    the time of the counted event whose expiry frees the next slot: the oldest
    event, or for a window holding more events than its limit, the
    (count - limit + 1)-th oldest. reset_at is anchor + window length.
    """
    remaining = {
        name: tier.limit_for(name) - counts.get(name, 0)
        for name, _, _, _ in WINDOWS
    }
    for name, length, label, unit in WINDOWS:
        if remaining[name] <= 0:
            started = anchors.get(name)
            return QuotaStatus(
                allowed=False,
                remaining=0,
                reset_at=as_utc(started) + length if started else None,
                tier=tier.name,
                reason=f"{label} limit reached ({tier.limit_for(name)}/{unit})",
                window=name,
                limit=tier.limit_for(name),
                hourly_remaining=max(remaining["hour"], 0),
                daily_remaining=max(remaining["day"], 0),
            )

    binding = min(WINDOWS, key=lambda w: remaining[w[0]])
    started = anchors.get(binding[0])
    return QuotaStatus(
        allowed=True,
        remaining=remaining[binding[0]],
        reset_at=as_utc(started) + binding[1] if started else None,
        tier=tier.name,
        hourly_remaining=remaining["hour"],
        daily_remaining=remaining["day"],
    )


class QuotaGovernor:
    """Gatekeeper and ledger for AI-assisted operations."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.event_store = EventStore(session)

    async def resolve_tier(self, user: User) -> TierLimits:
        tier_name = user.ai_tier or get_settings().default_ai_tier
        row = (
            await self.session.execute(
                select(RateLimitTier).where(RateLimitTier.tier_name == tier_name)
            )
        ).scalar_one_or_none()
        if row is None:
            if tier_name != get_settings().default_ai_tier:
                logger.warning(
                    "Unknown AI tier, using free tier",
                    extra={"user_id": str(user.id), "tier": tier_name},
                )
            return free_tier()
        return TierLimits(
            name=row.tier_name,
            requests_per_hour=row.requests_per_hour,
            requests_per_day=row.requests_per_day,
            requests_per_month=row.requests_per_month,
            requires_credits=row.requires_credits,
            credits_per_request=row.credits_per_request,
        )

    async def window_usage(self, user_id: uuid.UUID, operation_type: str, now: Optional[datetime] = None):
        """Counts and oldest event per window in one aggregate query."""
        now = now or utcnow()
        starts = {name: now - length for name, length, _, _ in WINDOWS}
        columns = []
        for name, _, _, _ in WINDOWS:
            in_window = AIUsage.created_at >= starts[name]
            columns.append(func.count(case((in_window, 1))))
            columns.append(func.min(case((in_window, AIUsage.created_at))))

        row = (
            await self.session.execute(
                select(*columns).where(
                    and_(
                        AIUsage.user_id == user_id,
                        AIUsage.operation_type == operation_type,
                        AIUsage.created_at >= starts["month"],
                    )
                )
            )
        ).one()

        counts: Dict[str, int] = {}
        oldest: Dict[str, Optional[datetime]] = {}
        for i, (name, _, _, _) in enumerate(WINDOWS):
            counts[name] = row[2 * i] or 0
            oldest[name] = as_utc(row[2 * i + 1]) if row[2 * i + 1] is not None else None
        return counts, oldest

    async def _nth_event_since(
        self,
        user_id: uuid.UUID,
        operation_type: str,
        since: datetime,
        offset: int,
    ) -> Optional[datetime]:
        created = await self.session.scalar(
            select(AIUsage.created_at)
            .where(
                AIUsage.user_id == user_id,
                AIUsage.operation_type == operation_type,
                AIUsage.created_at >= since,
            )
            .order_by(AIUsage.created_at)
            .offset(offset)
            .limit(1)
        )
        return as_utc(created)

    async def get_balance(self, project_id: uuid.UUID) -> int:
        balance = (
            await self.session.execute(
                select(ProjectCredits.balance).where(ProjectCredits.project_id == project_id)
            )
        ).scalar_one_or_none()
        return balance or 0

    async def check_quota(
        self,
        user_id: uuid.UUID,
        project_id: uuid.UUID,
        operation_type: Optional[str] = None,
    ) -> QuotaStatus:
        operation_type = operation_type or get_settings().quota_default_operation
        user = await self.session.get(User, user_id)
        if user is None:
            return QuotaStatus(allowed=False, remaining=0, reset_at=utcnow(), tier="none", reason="User not found")

        tier = await self.resolve_tier(user)
        now = utcnow()
        counts, anchors = await self.window_usage(user.id, operation_type, now)
        for name, length, _, _ in WINDOWS:
            # Over-full window (tier downgrade, racing writers): the oldest
            # expiry still leaves it full.
            excess = counts[name] - tier.limit_for(name)
            if excess > 0:
                anchors[name] = await self._nth_event_since(user.id, operation_type, now - length, excess)
        status = evaluate_windows(tier, counts, anchors)
        balance = await self.get_balance(project_id)
        status.credits_remaining = balance
        status.credits_required = tier.cost

        if status.allowed and tier.cost > 0 and balance < tier.cost:
            status.allowed = False
            status.window = "credits"
            status.reason = f"Insufficient project credits (need {tier.cost}, have {balance})"
        return status

    async def require_quota(
        self,
        user_id: uuid.UUID,
        project_id: uuid.UUID,
        operation_type: Optional[str] = None,
    ) -> QuotaStatus:
        """Check the quota and raise when the operation may not run."""
        status = await self.check_quota(user_id, project_id, operation_type)
        if status.allowed:
            return status

        await self.event_store.log(
            event_type=EventType.AI_QUOTA_DENIED,
            entity_type="project",
            entity_id=project_id,
            user_id=user_id,
            payload={
                "operation_type": operation_type or get_settings().quota_default_operation,
                "tier": status.tier,
                "window": status.window,
                "reason": status.reason,
            },
        )
        logger.info(
            "AI quota denied",
            extra={"user_id": str(user_id), "project_id": str(project_id), "reason": status.reason},
        )
        if status.window == "credits":
            raise InsufficientCreditsError(
                status.reason,
                balance=status.credits_remaining or 0,
                required=status.credits_required,
            )
        if status.tier == "none":
            raise NotFoundError(status.reason, {"user_id": str(user_id)})
        raise QuotaExceededError(
            status.reason,
            window=status.window,
            limit=status.limit,
            reset_at=status.reset_at,
        )

    async def record_usage(
        self,
        user_id: uuid.UUID,
        project_id: uuid.UUID,
        operation_type: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Record one AI operation and charge the project if the tier requires it.

        The balance decrement is a single conditional UPDATE, so two concurrent
        uses can never take the balance below zero.
        """
        operation_type = operation_type or get_settings().quota_default_operation
        meta = meta or {}
        user = await self.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found", {"user_id": str(user_id)})
        tier = await self.resolve_tier(user)
        cost = tier.cost

        balance_after = None
        if cost > 0:
            result = await self.session.execute(
                update(ProjectCredits)
                .where(
                    ProjectCredits.project_id == project_id,
                    ProjectCredits.balance >= cost,
                )
                .values(
                    balance=ProjectCredits.balance - cost,
                    lifetime_used=ProjectCredits.lifetime_used + cost,
                )
                .returning(ProjectCredits.balance)
                .execution_options(synchronize_session=False)
            )
            balance_after = result.scalar_one_or_none()
            if balance_after is None:
                balance = await self.get_balance(project_id)
                raise InsufficientCreditsError(
                    f"Insufficient project credits (need {cost}, have {balance})",
                    balance=balance,
                    required=cost,
                )

        usage = AIUsage(
            user_id=user.id,
            project_id=project_id,
            operation_type=operation_type,
            record_type_id=_as_uuid(meta.get("record_type_id")),
            model_name=meta.get("model_name"),
            input_tokens=meta.get("input_tokens"),
            output_tokens=meta.get("output_tokens"),
            response_time_ms=meta.get("response_time_ms"),
            credits_used=cost,
            was_free_tier=cost == 0,
            created_at=utcnow(),
        )
        self.session.add(usage)
        await self.session.flush()

        if cost > 0:
            self.session.add(
                CreditTransaction(
                    project_id=project_id,
                    transaction_type=CreditTransactionType.USAGE.value,
                    amount=-cost,
                    balance_after=balance_after,
                    description=f"AI {operation_type}",
                    ai_usage_id=usage.id,
                    created_by=user.id,
                )
            )
            await self.session.flush()

        await self.event_store.log(
            event_type=EventType.AI_USAGE_RECORDED,
            entity_type="project",
            entity_id=project_id,
            user_id=user.id,
            payload={
                "usage_id": usage.id,
                "operation_type": operation_type,
                "tier": tier.name,
                "credits_used": cost,
            },
        )
        return {"usage_id": usage.id, "credits_used": cost}

    async def add_credits(
        self,
        project_id: uuid.UUID,
        amount: int,
        actor: Actor,
        transaction_type: str = CreditTransactionType.PURCHASE.value,
        description: Optional[str] = None,
    ) -> CreditTransaction:
        require_permission(actor, Permission.MANAGE_CREDITS, project_id=project_id)
        if transaction_type not in GRANT_TYPES:
            raise ValidationError(
                f"Invalid credit transaction type: {transaction_type}",
                {"allowed": sorted(GRANT_TYPES)},
            )
        if amount <= 0:
            raise ValidationError("Credit amount must be positive")

        credits = await self.session.get(ProjectCredits, project_id)
        if credits is None:
            credits = ProjectCredits(project_id=project_id, balance=0, lifetime_purchased=0, lifetime_used=0)
            self.session.add(credits)
            await self.session.flush()

        purchased = amount if transaction_type == CreditTransactionType.PURCHASE.value else 0
        balance_after = (
            await self.session.execute(
                update(ProjectCredits)
                .where(ProjectCredits.project_id == project_id)
                .values(
                    balance=ProjectCredits.balance + amount,
                    lifetime_purchased=ProjectCredits.lifetime_purchased + purchased,
                )
                .returning(ProjectCredits.balance)
                .execution_options(synchronize_session=False)
            )
        ).scalar_one()
        await self.session.refresh(credits)

        transaction = CreditTransaction(
            project_id=project_id,
            transaction_type=transaction_type,
            amount=amount,
            balance_after=balance_after,
            description=description,
            created_by=actor.id,
        )
        self.session.add(transaction)
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.CREDITS_ADDED,
            entity_type="project",
            entity_id=project_id,
            user_id=actor.id,
            payload={
                "transaction_id": transaction.id,
                "transaction_type": transaction_type,
                "amount": amount,
                "balance_after": balance_after,
            },
        )
        logger.info(
            "Credits added",
            extra={"project_id": str(project_id), "amount": amount, "balance_after": balance_after},
        )
        return transaction

    async def transactions(self, project_id: uuid.UUID, limit: int = 100) -> List[CreditTransaction]:
        result = await self.session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.project_id == project_id)
            .order_by(CreditTransaction.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def ledger_total(self, project_id: uuid.UUID) -> int:
        total = (
            await self.session.execute(
                select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
                    CreditTransaction.project_id == project_id
                )
            )
        ).scalar_one()
        return int(total)

    async def usage_summary(
        self,
        user_id: uuid.UUID,
        project_id: uuid.UUID,
        operation_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        operation_type = operation_type or get_settings().quota_default_operation
        user = await self.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found", {"user_id": str(user_id)})
        tier = await self.resolve_tier(user)
        counts, _ = await self.window_usage(user.id, operation_type)
        credits = await self.session.get(ProjectCredits, project_id, populate_existing=True)

        return {
            "tier": tier.name,
            "operation_type": operation_type,
            "usage": {
                name: {"used": counts[name], "limit": tier.limit_for(name)}
                for name, _, _, _ in WINDOWS
            },
            "requires_credits": tier.requires_credits,
            "credits_per_request": tier.credits_per_request,
            "balance": credits.balance if credits else 0,
            "lifetime_purchased": credits.lifetime_purchased if credits else 0,
            "lifetime_used": credits.lifetime_used if credits else 0,
        }
