"""
Integration tests for the record workflow: two-person review, item-level
validation, return_to_review and publication.
"""

import pytest
import pytest_asyncio
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from witness.engines.records.record_store import RecordStore
from witness.errors import ConcurrencyError, PermissionDeniedError, StateError, ValidationError
from witness.kernel.models.event_log import EventLog, EventType
from witness.kernel.models.record import Record, RecordStatus
from witness.orchestration import WorkflowEngine


async def review_twice(engine, record, actors):
    await engine.transition(record.id, "approve", actors["analyst_a"], {"notes": "Sources check out"})
    return await engine.transition(record.id, "approve", actors["analyst_b"])


class TestReviewStage:
    @pytest.mark.asyncio
    async def test_first_approval(self, db_session, record, evidence, actors):
        engine = WorkflowEngine(db_session)
        record = await engine.transition(record.id, "approve", actors["analyst_a"], {"notes": "ok"})
        assert record.status == RecordStatus.FIRST_REVIEW.value
        assert record.first_verified_by == actors["analyst_a"].id
        assert record.first_review_notes == "ok"

    @pytest.mark.asyncio
    async def test_same_reviewer_cannot_approve_twice(self, db_session, record, evidence, actors):
        engine = WorkflowEngine(db_session)
        await engine.transition(record.id, "approve", actors["analyst_a"])
        with pytest.raises(PermissionDeniedError):
            await engine.transition(record.id, "approve", actors["analyst_a"])
        assert record.status == RecordStatus.FIRST_REVIEW.value

    @pytest.mark.asyncio
    async def test_second_reviewer_moves_to_second_review(self, db_session, record, evidence, actors):
        engine = WorkflowEngine(db_session)
        record = await review_twice(engine, record, actors)
        assert record.status == RecordStatus.SECOND_REVIEW.value
        assert record.second_verified_by == actors["analyst_b"].id

    @pytest.mark.asyncio
    async def test_missing_quote_blocks_approval(self, db_session, record, actors):
        with pytest.raises(ValidationError) as exc_info:
            await WorkflowEngine(db_session).transition(record.id, "approve", actors["analyst_a"])
        assert exc_info.value.details["errors"][0]["field"] == "summary"

    @pytest.mark.asyncio
    async def test_validator_cannot_approve_review(self, db_session, record, evidence, actors):
        with pytest.raises(PermissionDeniedError):
            await WorkflowEngine(db_session).transition(record.id, "approve", actors["validator_a"])

    @pytest.mark.asyncio
    async def test_unknown_action(self, db_session, record, actors):
        with pytest.raises(ValidationError):
            await WorkflowEngine(db_session).transition(record.id, "publish", actors["owner"])

    @pytest.mark.asyncio
    async def test_reject_requires_reason(self, db_session, record, actors):
        engine = WorkflowEngine(db_session)
        with pytest.raises(ValidationError):
            await engine.transition(record.id, "reject", actors["analyst_a"], {"reason": "  "})
        record = await engine.transition(record.id, "reject", actors["analyst_a"], {"reason": "Duplicate"})
        assert record.status == RecordStatus.REJECTED.value
        assert record.rejected_by == actors["analyst_a"].id

    @pytest.mark.asyncio
    async def test_rejected_record_is_terminal(self, db_session, record, actors):
        engine = WorkflowEngine(db_session)
        await engine.transition(record.id, "reject", actors["analyst_a"], {"reason": "Spam"})
        with pytest.raises(StateError):
            await engine.transition(record.id, "approve", actors["analyst_b"])

    @pytest.mark.asyncio
    async def test_outsider_is_refused(self, db_session, record, actors):
        with pytest.raises(PermissionDeniedError):
            await WorkflowEngine(db_session).transition(record.id, "approve", actors["verifier"])


class TestDrafts:
    @pytest.mark.asyncio
    async def test_draft_skips_required_until_submitted(self, db_session, incident_type, actors):
        store = RecordStore(db_session)
        draft = await store.submit_record(
            incident_type.id, {"city": "Springfield"}, submitter=actors["analyst_a"], as_draft=True,
        )
        assert draft.status == RecordStatus.DRAFT.value

        engine = WorkflowEngine(db_session)
        with pytest.raises(ValidationError):
            await engine.transition(draft.id, "submit", actors["analyst_a"])

        await store.update_record_data(draft.id, actors["analyst_a"], {"title": "Stop on 5th Ave"})
        submitted = await engine.transition(draft.id, "submit", actors["analyst_a"])
        assert submitted.status == RecordStatus.PENDING_REVIEW.value


class TestValidationStage:
    @pytest.mark.asyncio
    async def test_validate_with_unchecked_items_fails(
        self, db_session, record, evidence, actors, make_checklist,
    ):
        engine = WorkflowEngine(db_session)
        await review_twice(engine, record, actors)
        items = make_checklist(record, evidence["quotes"], [evidence["source"]], unchecked={"city": "Wrong city"})
        with pytest.raises(ValidationError) as exc_info:
            await engine.transition(record.id, "validate", actors["validator_a"], {"items": items})
        assert exc_info.value.details["unchecked"][0]["item_id"] == "city"
        assert record.status == RecordStatus.SECOND_REVIEW.value

    @pytest.mark.asyncio
    async def test_checklist_must_cover_every_displayed_item(
        self, db_session, record, evidence, actors, make_checklist,
    ):
        engine = WorkflowEngine(db_session)
        await review_twice(engine, record, actors)
        items = make_checklist(record, evidence["quotes"], [])
        with pytest.raises(ValidationError) as exc_info:
            await engine.transition(record.id, "validate", actors["validator_a"], {"items": items})
        assert exc_info.value.details["missing"] == [
            {"item_type": "source", "item_id": str(evidence["source"].id)},
        ]

    @pytest.mark.asyncio
    async def test_return_to_review_raises_issues(
        self, db_session, record, evidence, actors, make_checklist,
    ):
        engine = WorkflowEngine(db_session)
        await review_twice(engine, record, actors)
        quote = evidence["quotes"][1]
        items = make_checklist(
            record,
            evidence["quotes"],
            [evidence["source"]],
            unchecked={"incident_date": "Date contradicts the source", str(quote.id): "Not in the article"},
        )
        assert len(items) == 8

        record = await engine.transition(record.id, "return_to_review", actors["validator_a"], {"items": items})
        assert record.status == RecordStatus.FIRST_REVIEW.value
        assert record.validation_session == 1
        assert record.review_cycle == 2
        assert record.second_verified_by is None
        assert record.first_verified_by == actors["analyst_a"].id

        issues = await RecordStore(db_session).list_validation_issues(record.id)
        assert len(issues) == 2
        assert {(i.item_type, i.item_id) for i in issues} == {
            ("field", "incident_date"),
            ("quote", str(quote.id)),
        }
        assert all(i.session_number == 1 for i in issues)

    @pytest.mark.asyncio
    async def test_return_needs_reasons(self, db_session, record, evidence, actors, make_checklist):
        engine = WorkflowEngine(db_session)
        await review_twice(engine, record, actors)
        items = make_checklist(record, evidence["quotes"], [evidence["source"]], unchecked={"city": ""})
        with pytest.raises(ValidationError):
            await engine.transition(record.id, "return_to_review", actors["validator_a"], {"items": items})

    @pytest.mark.asyncio
    async def test_two_validators_publish(self, db_session, record, evidence, actors, make_checklist):
        engine = WorkflowEngine(db_session)
        await review_twice(engine, record, actors)
        items = make_checklist(record, evidence["quotes"], [evidence["source"]])

        record = await engine.transition(record.id, "validate", actors["validator_a"], {"items": items})
        assert record.status == RecordStatus.FIRST_VALIDATION.value

        with pytest.raises(PermissionDeniedError):
            await engine.transition(record.id, "validate", actors["validator_a"], {"items": items})

        record = await engine.transition(record.id, "validate", actors["validator_b"], {"items": items})
        assert record.status == RecordStatus.VERIFIED.value
        assert record.published_at is not None
        assert record.verification_level == 1

        await db_session.flush()
        promotion = (
            await db_session.execute(
                select(EventLog).where(
                    EventLog.entity_id == record.id,
                    EventLog.event_type == EventType.RECORD_STATUS_CHANGED.value,
                )
            )
        ).scalars().all()
        automatic = [e for e in promotion if e.payload.get("action") == "promote"]
        assert len(automatic) == 1
        assert automatic[0].user_id is None

    @pytest.mark.asyncio
    async def test_publish_requires_verified_fields(
        self, db_session, record, evidence, actors, make_checklist, incident_type,
    ):
        from witness.engines.schema.registry import SchemaRegistry

        summary = next(f for f in incident_type.fields if f.slug == "summary")
        await SchemaRegistry(db_session).update_field(
            summary.id, actors["owner"], require_verified_for_publish=True,
        )
        engine = WorkflowEngine(db_session)
        await review_twice(engine, record, actors)
        items = make_checklist(record, evidence["quotes"], [evidence["source"]])
        await engine.transition(record.id, "validate", actors["validator_a"], {"items": items})

        with pytest.raises(ValidationError) as exc_info:
            await engine.transition(record.id, "validate", actors["validator_b"], {"items": items})
        assert exc_info.value.details["fields"] == ["summary"]

        await RecordStore(db_session).verify_field(record.id, "summary", actors["validator_b"])
        record = await engine.transition(record.id, "validate", actors["validator_b"], {"items": items})
        assert record.status == RecordStatus.VERIFIED.value

    @pytest.mark.asyncio
    async def test_different_validator_setting(
        self, db_session, project, record, evidence, actors, make_checklist,
    ):
        project.require_different_validator = True
        await db_session.flush()
        engine = WorkflowEngine(db_session)
        await review_twice(engine, record, actors)
        items = make_checklist(record, evidence["quotes"], [evidence["source"]])
        with pytest.raises(PermissionDeniedError):
            await engine.transition(record.id, "validate", actors["analyst_a"], {"items": items})
        record = await engine.transition(record.id, "validate", actors["validator_a"], {"items": items})
        assert record.status == RecordStatus.FIRST_VALIDATION.value


@pytest_asyncio.fixture
async def other_session(db_engine):
    """A second connection to the same database, standing in for a concurrent request."""
    session_maker = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with session_maker() as session:
        yield session
        await session.rollback()


class TestConcurrentTransitions:
    @pytest.mark.asyncio
    async def test_stale_approval_loses(self, db_session, other_session, record, evidence, actors):
        await db_session.commit()
        stale = await other_session.get(Record, record.id)
        assert stale.status == RecordStatus.PENDING_REVIEW.value

        await WorkflowEngine(db_session).transition(record.id, "approve", actors["analyst_a"])
        await db_session.commit()

        with pytest.raises(ConcurrencyError) as exc_info:
            await WorkflowEngine(other_session).transition(record.id, "approve", actors["analyst_b"])
        assert exc_info.value.details == {"expected_status": "pending_review", "current_status": "first_review"}
        await other_session.rollback()

        current = await other_session.get(Record, record.id, populate_existing=True)
        assert current.status == RecordStatus.FIRST_REVIEW.value
        assert current.first_verified_by == actors["analyst_a"].id
        assert current.second_verified_by is None

    @pytest.mark.asyncio
    async def test_first_reviewer_rechecked_in_the_update(self, db_session, other_session, record, evidence, actors):
        await WorkflowEngine(db_session).transition(record.id, "approve", actors["analyst_b"])
        await db_session.commit()
        stale = await other_session.get(Record, record.id)
        assert stale.first_verified_by == actors["analyst_b"].id

        # Another request hands the first review to analyst_a after the stale read.
        await db_session.execute(
            update(Record).where(Record.id == record.id).values(first_verified_by=actors["analyst_a"].id)
        )
        await db_session.commit()

        with pytest.raises(PermissionDeniedError):
            await WorkflowEngine(other_session).transition(record.id, "approve", actors["analyst_a"])
        await other_session.rollback()

        current = await other_session.get(Record, record.id, populate_existing=True)
        assert current.status == RecordStatus.FIRST_REVIEW.value
        assert current.second_verified_by is None

    @pytest.mark.asyncio
    async def test_second_review_race(self, db_session, other_session, record, evidence, actors):
        await WorkflowEngine(db_session).transition(record.id, "approve", actors["analyst_a"])
        await db_session.commit()
        stale = await other_session.get(Record, record.id)
        assert stale.status == RecordStatus.FIRST_REVIEW.value

        await WorkflowEngine(db_session).transition(record.id, "approve", actors["analyst_b"])
        await db_session.commit()

        with pytest.raises(ConcurrencyError) as exc_info:
            await WorkflowEngine(other_session).transition(record.id, "approve", actors["owner"])
        assert exc_info.value.details["current_status"] == RecordStatus.SECOND_REVIEW.value
        await other_session.rollback()

        current = await other_session.get(Record, record.id, populate_existing=True)
        assert current.second_verified_by == actors["analyst_b"].id
        history = (
            await other_session.execute(
                select(EventLog).where(
                    EventLog.entity_id == record.id,
                    EventLog.event_type == EventType.RECORD_STATUS_CHANGED.value,
                )
            )
        ).scalars().all()
        assert [e.user_id for e in history].count(actors["owner"].id) == 0
