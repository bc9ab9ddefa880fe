"""
Integration tests for third-party audits and the verification level they drive.
"""

import pytest

from witness.engines.audit import AuditService
from witness.engines.records.record_store import compute_data_hash
from witness.engines.schema.registry import SchemaRegistry
from witness.errors import (
    ConcurrencyError,
    NotFoundError,
    PermissionDeniedError,
    QuotaExceededError,
    StateError,
    ValidationError,
)
from witness.kernel.models.user import User
from witness.kernel.permissions.permission_service import PermissionService
from witness.schemas.record import RecordResponse


async def claimed(service, request, actors):
    return await service.assign_request(request.id, actors["verifier"])


class TestRequesting:
    @pytest.mark.asyncio
    async def test_record_must_be_published(self, db_session, record, actors):
        with pytest.raises(StateError):
            await AuditService(db_session).request_audit(record.id, actors["owner"])

    @pytest.mark.asyncio
    async def test_analyst_cannot_request(self, db_session, published_record, actors):
        with pytest.raises(PermissionDeniedError):
            await AuditService(db_session).request_audit(published_record.id, actors["analyst_a"])

    @pytest.mark.asyncio
    async def test_request_moves_to_audit_ready(self, db_session, published_record, actors):
        service = AuditService(db_session)
        request = await service.request_audit(
            published_record.id,
            actors["validator_a"],
            scope="data",
            items=[{"type": "field", "id": "title"}, {"type": "field", "field_slug": "city"}],
            priority="urgent",
        )
        assert request.status == "pending"
        assert request.items_to_verify == [
            {"type": "field", "id": "title"},
            {"type": "field", "id": "city"},
        ]
        assert published_record.verification_level == 2

    @pytest.mark.asyncio
    async def test_all_items_expansion(self, db_session, published_record, actors):
        request = await AuditService(db_session).request_audit(
            published_record.id, actors["owner"], scope="data", all_items=True,
        )
        assert [i["id"] for i in request.items_to_verify] == [
            "title", "incident_date", "city", "summary", "force_used",
        ]

    @pytest.mark.asyncio
    async def test_unknown_item_refused(self, db_session, published_record, actors):
        with pytest.raises(ValidationError) as exc_info:
            await AuditService(db_session).request_audit(
                published_record.id, actors["owner"], scope="data",
                items=[{"type": "field", "id": "badge_no"}],
            )
        assert exc_info.value.details["unknown"] == [{"type": "field", "id": "badge_no"}]

    @pytest.mark.asyncio
    async def test_one_open_request_per_record(self, db_session, published_record, actors):
        service = AuditService(db_session)
        await service.request_audit(published_record.id, actors["owner"])
        with pytest.raises(StateError):
            await service.request_audit(published_record.id, actors["owner"])

    @pytest.mark.asyncio
    async def test_monthly_quota(self, db_session, project, published_record, actors):
        project.audit_quota_monthly = 1
        await db_session.flush()
        service = AuditService(db_session)
        request = await service.request_audit(published_record.id, actors["owner"])
        await claimed(service, request, actors)
        await service.reject_request(request.id, actors["verifier"], "Sources are paywalled")
        assert published_record.verification_level == 1

        with pytest.raises(QuotaExceededError) as exc_info:
            await service.request_audit(published_record.id, actors["owner"])
        assert exc_info.value.window == "month"
        assert exc_info.value.limit == 1

        usage = await service.monthly_usage(project)
        assert usage["used"] == 1
        assert usage["remaining"] == 0

    @pytest.mark.asyncio
    async def test_member_without_audit_rights_is_refused(self, db_session, project, published_record, users, actors):
        await SchemaRegistry(db_session).update_member_audit_rights(
            project.id, users["validator_a"].id, actors["owner"], can_request_verification=False,
        )
        service = AuditService(db_session)
        with pytest.raises(PermissionDeniedError):
            await service.request_audit(published_record.id, actors["validator_a"])

        request = await service.request_audit(published_record.id, actors["validator_b"])
        assert request.requested_by == users["validator_b"].id

    @pytest.mark.asyncio
    async def test_owner_needs_no_membership_row(self, db_session, project, published_record, actors):
        service = AuditService(db_session)
        assert await service.member_for(project.id, actors["owner"].id) is None
        request = await service.request_audit(published_record.id, actors["owner"])
        assert request.status == "pending"

    @pytest.mark.asyncio
    async def test_member_quota_override(self, db_session, project, published_record, users, actors):
        registry = SchemaRegistry(db_session)
        member = await registry.update_member_audit_rights(
            project.id, users["validator_a"].id, actors["owner"], verification_quota_override=0,
        )
        service = AuditService(db_session)
        with pytest.raises(QuotaExceededError) as exc_info:
            await service.request_audit(published_record.id, actors["validator_a"])
        assert exc_info.value.limit == 0

        usage = await service.monthly_usage(project, member)
        assert usage["limit"] == 0
        assert (await service.monthly_usage(project))["limit"] == project.audit_quota_monthly

        member = await registry.update_member_audit_rights(
            project.id, users["validator_a"].id, actors["owner"], clear_quota_override=True,
        )
        assert member.verification_quota_override is None
        request = await service.request_audit(published_record.id, actors["validator_a"])
        assert request.requested_by == users["validator_a"].id

    @pytest.mark.asyncio
    async def test_only_member_managers_change_audit_rights(self, db_session, project, users, actors):
        registry = SchemaRegistry(db_session)
        with pytest.raises(PermissionDeniedError):
            await registry.update_member_audit_rights(
                project.id, users["validator_a"].id, actors["analyst_a"], can_request_verification=False,
            )
        with pytest.raises(NotFoundError):
            await registry.update_member_audit_rights(
                project.id, users["verifier"].id, actors["owner"], can_request_verification=False,
            )
        with pytest.raises(ValidationError):
            await registry.update_member_audit_rights(
                project.id, users["validator_a"].id, actors["owner"], verification_quota_override=-1,
            )


class TestVerifierQueue:
    @pytest.mark.asyncio
    async def test_urgent_first(self, db_session, published_record, incident_type, incident_data, actors, users):
        from witness.kernel.models.record import Record

        other = Record(
            record_type_id=incident_type.id,
            project_id=incident_type.project_id,
            data=dict(incident_data),
            status="verified",
            verified_fields={},
            submitted_by=users["owner"].id,
            verification_level=1,
        )
        db_session.add(other)
        await db_session.flush()

        service = AuditService(db_session)
        normal = await service.request_audit(published_record.id, actors["owner"])
        urgent = await service.request_audit(other.id, actors["owner"], priority="urgent")
        queue = await service.open_queue()
        assert [r.id for r in queue] == [urgent.id, normal.id]

    @pytest.mark.asyncio
    async def test_only_verifiers_claim(self, db_session, published_record, actors):
        service = AuditService(db_session)
        request = await service.request_audit(published_record.id, actors["owner"])
        with pytest.raises(PermissionDeniedError):
            await service.assign_request(request.id, actors["owner"])

    @pytest.mark.asyncio
    async def test_claim_is_idempotent_and_exclusive(self, db_session, published_record, actors, users):
        service = AuditService(db_session)
        request = await service.request_audit(published_record.id, actors["owner"])
        first = await claimed(service, request, actors)
        again = await claimed(service, request, actors)
        assert first.assigned_to == again.assigned_to == users["verifier"].id
        assert again.status == "in_progress"

        rival = User(email="rival@example.com", full_name="Rival", is_verifier=True)
        db_session.add(rival)
        await db_session.flush()
        rival_actor = await PermissionService(db_session).resolve_actor(rival.id)
        with pytest.raises(ConcurrencyError):
            await service.assign_request(request.id, rival_actor)

    @pytest.mark.asyncio
    async def test_concurrency_cap(self, db_session, project, published_record, incident_type, incident_data, actors, users):
        from witness.kernel.models.record import Record

        project.audit_quota_monthly = 10
        service = AuditService(db_session)
        requests = []
        for _ in range(3):
            extra = Record(
                record_type_id=incident_type.id,
                project_id=incident_type.project_id,
                data=dict(incident_data),
                status="verified",
                verified_fields={},
                submitted_by=users["owner"].id,
                verification_level=1,
            )
            db_session.add(extra)
            await db_session.flush()
            requests.append(await service.request_audit(extra.id, actors["owner"]))

        await claimed(service, requests[0], actors)
        await claimed(service, requests[1], actors)
        with pytest.raises(StateError):
            await claimed(service, requests[2], actors)


class TestCompletion:
    @pytest.mark.asyncio
    async def test_partial_audit_stays_audit_ready(self, db_session, published_record, actors):
        service = AuditService(db_session)
        request = await service.request_audit(
            published_record.id, actors["owner"], scope="data",
            items=[{"type": "field", "id": "title"}, {"type": "field", "id": "city"}],
        )
        await claimed(service, request, actors)
        request = await service.complete_audit(
            request.id,
            actors["verifier"],
            outcome="partial",
            results=[
                {"item_type": "field", "item_id": "title", "verified": True},
                {"item_type": "field", "item_id": "city", "verified": False, "issues": ["Wrong city"]},
            ],
        )
        assert request.status == "completed"
        assert published_record.verification_level == 2
        assert len(await service.results_for_request(request.id)) == 2

    @pytest.mark.asyncio
    async def test_passed_audit_is_level_three(self, db_session, published_record, actors):
        service = AuditService(db_session)
        request = await service.request_audit(published_record.id, actors["owner"])
        await claimed(service, request, actors)
        await service.complete_audit(
            request.id, actors["verifier"], outcome="passed",
            results=[{"item_type": "record", "verified": True, "notes": "Matches court filings"}],
        )
        assert published_record.verification_level == 3
        assert published_record.verified_data_hash == compute_data_hash(published_record.data)

    @pytest.mark.asyncio
    async def test_response_flags_data_changed_after_audit(self, db_session, published_record, actors):
        assert RecordResponse.model_validate(published_record).data_changed_since_audit is False

        service = AuditService(db_session)
        request = await service.request_audit(published_record.id, actors["owner"])
        await claimed(service, request, actors)
        await service.complete_audit(
            request.id, actors["verifier"], outcome="passed",
            results=[{"item_type": "record", "verified": True}],
        )
        body = RecordResponse.model_validate(published_record).model_dump()
        assert body["data_changed_since_audit"] is False
        assert "verified_data_hash" not in body

        published_record.data = {**published_record.data, "city": "Elsewhere"}
        assert RecordResponse.model_validate(published_record).data_changed_since_audit is True

    @pytest.mark.asyncio
    async def test_passed_needs_every_item_verified(self, db_session, published_record, actors):
        service = AuditService(db_session)
        request = await service.request_audit(
            published_record.id, actors["owner"], scope="data", items=[{"type": "field", "id": "title"}],
        )
        await claimed(service, request, actors)
        with pytest.raises(ValidationError):
            await service.complete_audit(
                request.id, actors["verifier"], outcome="passed",
                results=[{"item_type": "field", "item_id": "title", "verified": False}],
            )

    @pytest.mark.asyncio
    async def test_results_must_match_items(self, db_session, published_record, actors):
        service = AuditService(db_session)
        request = await service.request_audit(
            published_record.id, actors["owner"], scope="data",
            items=[{"type": "field", "id": "title"}, {"type": "field", "id": "city"}],
        )
        await claimed(service, request, actors)
        with pytest.raises(ValidationError) as exc_info:
            await service.complete_audit(
                request.id, actors["verifier"], outcome="passed",
                results=[{"item_type": "field", "item_id": "title", "verified": True}],
            )
        assert exc_info.value.details["missing"] == [{"type": "field", "id": "city"}]

    @pytest.mark.asyncio
    async def test_only_assignee_completes(self, db_session, published_record, actors):
        service = AuditService(db_session)
        request = await service.request_audit(published_record.id, actors["owner"])
        with pytest.raises(PermissionDeniedError):
            await service.complete_audit(
                request.id, actors["verifier"], outcome="passed",
                results=[{"item_type": "record", "verified": True}],
            )

    @pytest.mark.asyncio
    async def test_unverify_result_drops_level(self, db_session, published_record, actors):
        service = AuditService(db_session)
        request = await service.request_audit(
            published_record.id, actors["owner"], scope="data",
            items=[{"type": "field", "id": "title"}, {"type": "field", "id": "city"}],
        )
        await claimed(service, request, actors)
        await service.complete_audit(
            request.id, actors["verifier"], outcome="passed",
            results=[
                {"item_type": "field", "item_id": "title", "verified": True},
                {"item_type": "field", "item_id": "city", "verified": True},
            ],
        )
        assert published_record.verification_level == 3

        results = await service.results_for_request(request.id)
        city = next(r for r in results if r.item_id == "city")
        with pytest.raises(ValidationError):
            await service.unverify_result(city.id, actors["validator_a"], "  ")
        result = await service.unverify_result(city.id, actors["validator_a"], "City was corrected")
        assert result.verified is False
        assert result.issues == ["City was corrected"]
        assert published_record.verification_level == 2
