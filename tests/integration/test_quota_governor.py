"""
Integration tests for the AI quota and credit governor.
"""

import uuid
from datetime import timedelta

import pytest
import pytest_asyncio

from witness.engines.quota import QuotaGovernor
from witness.errors import (
    InsufficientCreditsError,
    NotFoundError,
    PermissionDeniedError,
    QuotaExceededError,
    ValidationError,
)
from witness.kernel.models.base import as_utc, utcnow
from witness.kernel.models.usage import AIUsage, RateLimitTier


async def add_usage(session, user, project, minutes_ago, operation_type="template_generation"):
    usage = AIUsage(
        user_id=user.id,
        project_id=project.id,
        operation_type=operation_type,
        created_at=utcnow() - timedelta(minutes=minutes_ago),
    )
    session.add(usage)
    await session.flush()
    return usage


@pytest_asyncio.fixture
async def pro_tier(db_session, users):
    tier = RateLimitTier(
        tier_name="pro",
        requests_per_hour=100,
        requests_per_day=500,
        requests_per_month=5000,
        requires_credits=True,
        credits_per_request=2,
    )
    db_session.add(tier)
    users["analyst_a"].ai_tier = "pro"
    await db_session.flush()
    return tier


class TestFreeTier:
    @pytest.mark.asyncio
    async def test_fresh_user_allowed(self, db_session, users, project):
        status = await QuotaGovernor(db_session).check_quota(users["analyst_a"].id, project.id)
        assert status.allowed is True
        assert status.tier == "free"
        assert status.remaining == 3
        assert status.credits_required == 0

    @pytest.mark.asyncio
    async def test_hourly_limit(self, db_session, users, project):
        user = users["analyst_a"]
        oldest = await add_usage(db_session, user, project, 50)
        await add_usage(db_session, user, project, 30)
        await add_usage(db_session, user, project, 5)

        governor = QuotaGovernor(db_session)
        status = await governor.check_quota(user.id, project.id)
        assert status.allowed is False
        assert status.reason == "Hourly limit reached (3/hour)"
        assert status.window == "hour"
        assert status.reset_at == as_utc(oldest.created_at) + timedelta(hours=1)

        with pytest.raises(QuotaExceededError) as exc_info:
            await governor.require_quota(user.id, project.id)
        assert exc_info.value.limit == 3

    @pytest.mark.asyncio
    async def test_overfull_hour_resets_when_enough_events_expire(self, db_session, users, project):
        user = users["analyst_a"]
        events = [await add_usage(db_session, user, project, minutes_ago) for minutes_ago in (50, 40, 30, 20, 10)]

        status = await QuotaGovernor(db_session).check_quota(user.id, project.id)
        assert status.allowed is False
        assert status.window == "hour"
        # Five in the window against a limit of three: three must age out.
        assert status.reset_at == as_utc(events[2].created_at) + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_old_usage_falls_out_of_hour(self, db_session, users, project):
        user = users["analyst_a"]
        for minutes_ago in (90, 120, 180):
            await add_usage(db_session, user, project, minutes_ago)
        status = await QuotaGovernor(db_session).check_quota(user.id, project.id)
        assert status.allowed is True
        assert status.hourly_remaining == 3
        assert status.daily_remaining == 7

    @pytest.mark.asyncio
    async def test_windows_are_per_operation(self, db_session, users, project):
        user = users["analyst_a"]
        for minutes_ago in (1, 2, 3):
            await add_usage(db_session, user, project, minutes_ago, operation_type="field_suggestion")
        status = await QuotaGovernor(db_session).check_quota(user.id, project.id)
        assert status.allowed is True

    @pytest.mark.asyncio
    async def test_record_usage_counts(self, db_session, users, project):
        governor = QuotaGovernor(db_session)
        user = users["analyst_b"]
        result = await governor.record_usage(user.id, project.id, meta={"model_name": "gpt-4o", "input_tokens": 512})
        assert result["credits_used"] == 0

        usage = await db_session.get(AIUsage, result["usage_id"])
        assert usage.was_free_tier is True
        assert usage.input_tokens == 512

        summary = await governor.usage_summary(user.id, project.id)
        assert summary["usage"]["hour"] == {"used": 1, "limit": 3}
        assert summary["balance"] == 0

    @pytest.mark.asyncio
    async def test_unknown_user(self, db_session, project):
        governor = QuotaGovernor(db_session)
        status = await governor.check_quota(uuid.uuid4(), project.id)
        assert status.allowed is False
        assert status.reason == "User not found"
        with pytest.raises(NotFoundError):
            await governor.record_usage(uuid.uuid4(), project.id)


class TestCredits:
    @pytest.mark.asyncio
    async def test_paid_tier_needs_credits(self, db_session, users, project, pro_tier):
        governor = QuotaGovernor(db_session)
        user = users["analyst_a"]
        status = await governor.check_quota(user.id, project.id)
        assert status.allowed is False
        assert status.window == "credits"
        assert status.credits_required == 2

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await governor.require_quota(user.id, project.id)
        assert exc_info.value.required == 2
        assert exc_info.value.balance == 0

    @pytest.mark.asyncio
    async def test_usage_charges_project(self, db_session, users, project, actors, pro_tier):
        governor = QuotaGovernor(db_session)
        user = users["analyst_a"]
        await governor.add_credits(project.id, 3, actors["owner"], description="Starter pack")
        assert await governor.get_balance(project.id) == 3

        result = await governor.record_usage(user.id, project.id)
        assert result["credits_used"] == 2
        assert await governor.get_balance(project.id) == 1

        with pytest.raises(InsufficientCreditsError):
            await governor.record_usage(user.id, project.id)
        assert await governor.get_balance(project.id) == 1
        assert await governor.ledger_total(project.id) == 1

        summary = await governor.usage_summary(user.id, project.id)
        assert summary["lifetime_purchased"] == 3
        assert summary["lifetime_used"] == 2
        assert summary["requires_credits"] is True

        transactions = await governor.transactions(project.id)
        assert sorted(t.amount for t in transactions) == [-2, 3]
        charge = next(t for t in transactions if t.amount < 0)
        assert charge.ai_usage_id == result["usage_id"]
        assert charge.balance_after == 1

    @pytest.mark.asyncio
    async def test_bonus_is_not_purchased(self, db_session, project, actors):
        governor = QuotaGovernor(db_session)
        transaction = await governor.add_credits(project.id, 5, actors["owner"], transaction_type="bonus")
        assert transaction.balance_after == 5
        (only,) = await governor.transactions(project.id)
        assert only.transaction_type == "bonus"

    @pytest.mark.asyncio
    async def test_only_managers_add_credits(self, db_session, project, actors):
        with pytest.raises(PermissionDeniedError):
            await QuotaGovernor(db_session).add_credits(project.id, 5, actors["analyst_a"])

    @pytest.mark.asyncio
    async def test_grant_validation(self, db_session, project, actors):
        governor = QuotaGovernor(db_session)
        with pytest.raises(ValidationError):
            await governor.add_credits(project.id, 5, actors["owner"], transaction_type="usage")
        with pytest.raises(ValidationError):
            await governor.add_credits(project.id, 0, actors["owner"])
