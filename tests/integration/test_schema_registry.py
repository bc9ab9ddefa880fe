"""
Integration tests for the schema registry: projects, members, record types,
field groups and field definitions.
"""

import pytest

from witness.engines.records.record_store import RecordStore
from witness.engines.schema.registry import SchemaRegistry
from witness.engines.schema.visibility import FormMode
from witness.errors import NotFoundError, PermissionDeniedError, ValidationError
from witness.kernel.models.event_log import EventType
from witness.kernel.models.project import ProjectMember
from witness.kernel.models.usage import ProjectCredits


class TestProjects:
    @pytest.mark.asyncio
    async def test_create_project_opens_a_credit_account(self, db_session, users):
        project = await SchemaRegistry(db_session).create_project(
            owner_id=users["owner"].id, slug="jail_deaths", name="Jail Deaths",
        )
        await db_session.flush()
        credits = await db_session.get(ProjectCredits, project.id)
        assert credits.balance == 0
        assert project.audit_quota_monthly == 5

    @pytest.mark.asyncio
    async def test_slug_rules(self, db_session, users, project):
        registry = SchemaRegistry(db_session)
        with pytest.raises(ValidationError):
            await registry.create_project(owner_id=users["owner"].id, slug="Bad Slug", name="x")
        with pytest.raises(ValidationError):
            await registry.create_project(owner_id=users["owner"].id, slug=project.slug, name="Again")

    @pytest.mark.asyncio
    async def test_add_member_changes_role(self, db_session, project, users, actors):
        registry = SchemaRegistry(db_session)
        member = await registry.add_member(project.id, users["viewer"].id, "editor", actors["owner"])
        assert isinstance(member, ProjectMember)
        assert member.role == "editor"

    @pytest.mark.asyncio
    async def test_owner_role_cannot_be_granted(self, db_session, project, users, actors):
        with pytest.raises(ValidationError):
            await SchemaRegistry(db_session).add_member(project.id, users["viewer"].id, "owner", actors["owner"])

    @pytest.mark.asyncio
    async def test_analyst_cannot_manage_members(self, db_session, project, users, actors):
        with pytest.raises(PermissionDeniedError):
            await SchemaRegistry(db_session).add_member(project.id, users["viewer"].id, "editor", actors["analyst_a"])


class TestRecordTypes:
    @pytest.mark.asyncio
    async def test_duplicate_slug(self, db_session, project, incident_type, actors):
        with pytest.raises(ValidationError):
            await SchemaRegistry(db_session).create_record_type(project.id, actors["owner"], "incident", "Again")

    @pytest.mark.asyncio
    async def test_unknown_setting(self, db_session, project, actors):
        with pytest.raises(ValidationError) as exc_info:
            await SchemaRegistry(db_session).create_record_type(
                project.id, actors["owner"], "lawsuit", "Lawsuit", require_quotes=True,
            )
        assert exc_info.value.details["unknown"] == ["require_quotes"]

    @pytest.mark.asyncio
    async def test_bypass_roles_are_checked(self, db_session, incident_type, actors):
        registry = SchemaRegistry(db_session)
        with pytest.raises(ValidationError):
            await registry.update_record_type(incident_type.id, actors["owner"], quote_bypass_roles=["superuser"])
        updated = await registry.update_record_type(
            incident_type.id, actors["owner"], quote_bypass_roles=["admin", "admin"],
        )
        assert updated.quote_bypass_roles == ["admin"]

    @pytest.mark.asyncio
    async def test_slug_is_immutable(self, db_session, incident_type, actors):
        with pytest.raises(ValidationError):
            await SchemaRegistry(db_session).update_record_type(incident_type.id, actors["owner"], slug="event")

    @pytest.mark.asyncio
    async def test_analyst_cannot_edit_schema(self, db_session, incident_type, actors):
        with pytest.raises(PermissionDeniedError):
            await SchemaRegistry(db_session).update_record_type(incident_type.id, actors["analyst_a"], name="x")


class TestFields:
    @pytest.mark.asyncio
    async def test_duplicate_field(self, db_session, incident_type, actors):
        with pytest.raises(ValidationError):
            await SchemaRegistry(db_session).create_field(incident_type.id, actors["owner"], "city", "City", "text")

    @pytest.mark.asyncio
    async def test_unknown_config_key(self, db_session, incident_type, actors):
        with pytest.raises(ValidationError):
            await SchemaRegistry(db_session).create_field(
                incident_type.id, actors["owner"], "agency", "Agency", "text", config={"maxlength": 10},
            )

    @pytest.mark.asyncio
    async def test_invalid_pattern_refused_on_write(self, db_session, incident_type, actors):
        registry = SchemaRegistry(db_session)
        with pytest.raises(ValidationError) as exc_info:
            await registry.create_field(
                incident_type.id, actors["owner"], "case_no", "Case number", "text", config={"pattern": "(unclosed"},
            )
        assert exc_info.value.details["errors"][0]["loc"] == "pattern"

        city = next(f for f in incident_type.fields if f.slug == "city")
        with pytest.raises(ValidationError):
            await registry.update_field(city.id, actors["owner"], config={"pattern": "[a-"})

    @pytest.mark.asyncio
    async def test_unknown_field_type(self, db_session, incident_type, actors):
        with pytest.raises(ValidationError):
            await SchemaRegistry(db_session).create_field(
                incident_type.id, actors["owner"], "agency", "Agency", "colour",
            )

    @pytest.mark.asyncio
    async def test_field_cannot_depend_on_itself(self, db_session, incident_type, actors):
        with pytest.raises(ValidationError):
            await SchemaRegistry(db_session).create_field(
                incident_type.id, actors["owner"], "agency", "Agency", "text",
                config={"show_when": {"field": "agency", "operator": "is_not_empty"}},
            )

    @pytest.mark.asyncio
    async def test_update_config_and_slug(self, db_session, incident_type, actors):
        registry = SchemaRegistry(db_session)
        city = next(f for f in incident_type.fields if f.slug == "city")
        updated = await registry.update_field(city.id, actors["owner"], config={"max_length": 50}, is_required=True)
        assert updated.config["max_length"] == 50
        assert updated.is_required is True
        with pytest.raises(ValidationError):
            await registry.update_field(city.id, actors["owner"], slug="town")

    @pytest.mark.asyncio
    async def test_tightened_evidence_rule_revokes_unsupported_verifications(
        self, db_session, incident_type, record, evidence, actors,
    ):
        records = RecordStore(db_session)
        await records.verify_field(record.id, "city", actors["analyst_a"])
        await records.verify_field(record.id, "summary", actors["analyst_a"])

        registry = SchemaRegistry(db_session)
        fields = {f.slug: f for f in incident_type.fields}
        await registry.update_field(fields["city"].id, actors["owner"], requires_quote=True)
        await registry.update_field(fields["summary"].id, actors["owner"], requires_source_for_quote=True)

        assert "city" not in record.verified_fields
        assert record.verified_fields["summary"]["verified"] is True

        history = await records.history(record.id)
        revoked = [e for e in history if e.event_type == EventType.FIELD_VERIFICATION_REVOKED.value]
        assert [e.payload for e in revoked] == [{"field_slug": "city", "reason": "requirement_changed"}]

    @pytest.mark.asyncio
    async def test_delete_field(self, db_session, incident_type, actors):
        registry = SchemaRegistry(db_session)
        city = next(f for f in incident_type.fields if f.slug == "city")
        await registry.delete_field(city.id, actors["owner"])
        record_type = await registry.get_record_type(incident_type.id)
        assert "city" not in [f.slug for f in record_type.fields]
        with pytest.raises(NotFoundError):
            await registry.delete_field(city.id, actors["owner"])


class TestFieldGroups:
    @pytest.mark.asyncio
    async def test_group_lifecycle(self, db_session, incident_type, actors):
        registry = SchemaRegistry(db_session)
        group = await registry.create_field_group(
            incident_type.id, actors["owner"], "where", "Where", sort_order=1,
        )
        city = next(f for f in incident_type.fields if f.slug == "city")
        await registry.update_field(city.id, actors["owner"], field_group_id=group.id)
        assert city.field_group_id == group.id

        group = await registry.update_field_group(group.id, actors["owner"], collapsed_by_default=True)
        assert group.collapsed_by_default is True

        await registry.delete_field_group(group.id, actors["owner"])
        assert city.field_group_id is None

    @pytest.mark.asyncio
    async def test_group_from_another_type_refused(self, db_session, project, incident_type, actors):
        registry = SchemaRegistry(db_session)
        other = await registry.create_record_type(project.id, actors["owner"], "lawsuit", "Lawsuit")
        group = await registry.create_field_group(other.id, actors["owner"], "court", "Court")
        with pytest.raises(ValidationError):
            await registry.create_field(
                incident_type.id, actors["owner"], "docket", "Docket", "text", field_group_id=group.id,
            )


class TestEffectiveFields:
    @pytest.mark.asyncio
    async def test_visibility_follows_data(self, db_session, incident_type):
        registry = SchemaRegistry(db_session)
        hidden = await registry.get_effective_fields(incident_type.id, FormMode.REVIEW, {"force_used": False})
        shown = await registry.get_effective_fields(incident_type.id, FormMode.REVIEW, {"force_used": True})
        assert [f.slug for f in hidden] == ["title", "incident_date", "city", "summary", "force_used"]
        assert [f.slug for f in shown][-1] == "injuries"

    @pytest.mark.asyncio
    async def test_mode_flags(self, db_session, incident_type, actors):
        registry = SchemaRegistry(db_session)
        summary = next(f for f in incident_type.fields if f.slug == "summary")
        await registry.update_field(summary.id, actors["owner"], show_in_public_view=False)
        public = await registry.get_effective_fields(incident_type.id, FormMode.PUBLIC, {})
        assert "summary" not in [f.slug for f in public]

    @pytest.mark.asyncio
    async def test_check_submission_collects_every_error(self, db_session, incident_type):
        check = SchemaRegistry.check_submission(
            incident_type,
            {"incident_date": "next tuesday", "force_used": True, "injuries": -1},
        )
        assert check.valid is False
        assert [e["field"] for e in check.errors] == ["title", "incident_date", "injuries"]
