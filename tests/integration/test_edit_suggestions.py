"""Integration tests for edit suggestions on published records."""

import pytest

from witness.errors import PermissionDeniedError, StateError, ValidationError
from witness.kernel.models.event_log import EventType
from witness.orchestration import EditSuggestionService, EditSuggestionStatus
from witness.engines.records.record_store import RecordStore


class TestSuggesting:
    @pytest.mark.asyncio
    async def test_suggest_on_published_record(self, db_session, published_record, actors):
        suggestion = await EditSuggestionService(db_session).suggest_edit(
            published_record.id, "city", "Shelbyville", actors["validator_a"], reason="Court docket says so",
        )
        assert suggestion.status == EditSuggestionStatus.PENDING.value
        assert suggestion.current_value == "Springfield"
        assert suggestion.suggested_by == actors["validator_a"].id

    @pytest.mark.asyncio
    async def test_record_must_be_published(self, db_session, record, actors):
        with pytest.raises(StateError):
            await EditSuggestionService(db_session).suggest_edit(record.id, "city", "Shelbyville", actors["analyst_a"])

    @pytest.mark.asyncio
    async def test_value_must_change(self, db_session, published_record, actors):
        with pytest.raises(ValidationError):
            await EditSuggestionService(db_session).suggest_edit(
                published_record.id, "city", "Springfield", actors["analyst_a"],
            )

    @pytest.mark.asyncio
    async def test_value_is_type_checked(self, db_session, published_record, actors):
        with pytest.raises(ValidationError):
            await EditSuggestionService(db_session).suggest_edit(
                published_record.id, "title", "x" * 201, actors["analyst_a"],
            )

    @pytest.mark.asyncio
    async def test_unknown_field(self, db_session, published_record, actors):
        with pytest.raises(ValidationError):
            await EditSuggestionService(db_session).suggest_edit(
                published_record.id, "badge_no", "123", actors["analyst_a"],
            )

    @pytest.mark.asyncio
    async def test_viewer_cannot_suggest(self, db_session, published_record, actors):
        with pytest.raises(PermissionDeniedError):
            await EditSuggestionService(db_session).suggest_edit(
                published_record.id, "city", "Shelbyville", actors["viewer"],
            )


class TestReviewing:
    async def _suggest(self, db_session, published_record, actors):
        return await EditSuggestionService(db_session).suggest_edit(
            published_record.id, "city", "Shelbyville", actors["validator_a"],
        )

    @pytest.mark.asyncio
    async def test_two_approvals_apply_the_edit(self, db_session, published_record, actors):
        service = EditSuggestionService(db_session)
        suggestion = await self._suggest(db_session, published_record, actors)

        suggestion = await service.review_suggestion(suggestion.id, actors["analyst_a"], approve=True, notes="ok")
        assert suggestion.status == EditSuggestionStatus.FIRST_REVIEW.value
        assert published_record.data["city"] == "Springfield"

        suggestion = await service.review_suggestion(suggestion.id, actors["analyst_b"], approve=True)
        assert suggestion.status == EditSuggestionStatus.APPROVED.value
        assert suggestion.applied_at is not None
        assert published_record.data["city"] == "Shelbyville"
        assert "city" not in published_record.verified_fields

        history = await RecordStore(db_session).history(published_record.id)
        revoked = [e for e in history if e.event_type == EventType.FIELD_VERIFICATION_REVOKED.value]
        assert revoked[0].payload == {"field_slug": "city", "reason": "edit_applied"}

    @pytest.mark.asyncio
    async def test_suggester_cannot_review(self, db_session, published_record, actors):
        suggestion = await EditSuggestionService(db_session).suggest_edit(
            published_record.id, "city", "Shelbyville", actors["analyst_a"],
        )
        with pytest.raises(PermissionDeniedError):
            await EditSuggestionService(db_session).review_suggestion(suggestion.id, actors["analyst_a"], approve=True)

    @pytest.mark.asyncio
    async def test_same_reviewer_twice(self, db_session, published_record, actors):
        service = EditSuggestionService(db_session)
        suggestion = await self._suggest(db_session, published_record, actors)
        await service.review_suggestion(suggestion.id, actors["analyst_a"], approve=True)
        with pytest.raises(PermissionDeniedError):
            await service.review_suggestion(suggestion.id, actors["analyst_a"], approve=True)

    @pytest.mark.asyncio
    async def test_validator_cannot_review(self, db_session, published_record, actors):
        suggestion = await EditSuggestionService(db_session).suggest_edit(
            published_record.id, "city", "Shelbyville", actors["analyst_a"],
        )
        with pytest.raises(PermissionDeniedError):
            await EditSuggestionService(db_session).review_suggestion(
                suggestion.id, actors["validator_b"], approve=True,
            )

    @pytest.mark.asyncio
    async def test_reject_needs_reason_and_closes(self, db_session, published_record, actors):
        service = EditSuggestionService(db_session)
        suggestion = await self._suggest(db_session, published_record, actors)
        with pytest.raises(ValidationError):
            await service.review_suggestion(suggestion.id, actors["analyst_a"], approve=False)

        suggestion = await service.review_suggestion(
            suggestion.id, actors["analyst_a"], approve=False, reason="No supporting source",
        )
        assert suggestion.status == EditSuggestionStatus.REJECTED.value
        assert suggestion.first_reviewed_by == actors["analyst_a"].id

        with pytest.raises(StateError):
            await service.review_suggestion(suggestion.id, actors["analyst_b"], approve=True)
        assert published_record.data["city"] == "Springfield"

    @pytest.mark.asyncio
    async def test_list_for_record(self, db_session, published_record, actors):
        service = EditSuggestionService(db_session)
        suggestion = await self._suggest(db_session, published_record, actors)
        assert [s.id for s in await service.list_for_record(published_record.id)] == [suggestion.id]
        assert await service.list_for_record(published_record.id, status="approved") == []
