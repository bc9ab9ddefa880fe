"""
Schema Registry - projects, record types, field groups and field definitions.

Schema writes require the `manage_fields` permission (owner/admin). Field
configs are parsed into their typed model on write; slugs never change after
creation.
"""

import re
import uuid
from dataclasses import dataclass, field as dc_field
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from witness.config import get_settings
from witness.errors import NotFoundError, ValidationError
from witness.kernel.events.event_store import EventStore
from witness.kernel.identity.actor import Actor
from witness.kernel.models.event_log import EventType
from witness.kernel.models.project import Project, ProjectMember, ProjectRole
from witness.kernel.models.record import Record
from witness.kernel.models.schema import FieldDefinition, FieldGroup, FieldWidth, RecordType
from witness.kernel.models.usage import ProjectCredits
from witness.kernel.permissions.permission_service import Permission, require_permission
from witness.engines.evidence.evidence_store import EvidenceStore
from witness.engines.schema.field_types import (
    check_value,
    coerce_field_type,
    dump_field_config,
    parse_field_config,
)
from witness.engines.schema.visibility import FormMode, effective_fields, is_empty
from witness.logging_config import get_logger

logger = get_logger(__name__)

SLUG_RE = re.compile(r"^[a-z][a-z0-9_]{0,99}$")

RECORD_TYPE_SETTINGS = (
    "name",
    "name_plural",
    "description",
    "require_quotes_for_review",
    "require_sources_for_quotes",
    "require_all_fields_verified",
    "quote_bypass_roles",
    "validation_bypass_roles",
    "guest_form_enabled",
)

FIELD_ATTRIBUTES = (
    "name",
    "description",
    "is_required",
    "requires_quote",
    "requires_source_for_quote",
    "require_verified_for_publish",
    "show_in_guest_form",
    "show_in_review_form",
    "show_in_validation_form",
    "show_in_public_view",
    "sort_order",
)

GROUP_ATTRIBUTES = (
    "name",
    "description",
    "sort_order",
    "collapsed_by_default",
    "show_in_review_form",
)


@dataclass
class SubmissionCheck:
    """Outcome of validating a payload against a record type."""
    valid: bool
    errors: List[Dict[str, str]] = dc_field(default_factory=list)


def _check_slug(slug: str, what: str) -> None:
    if not slug or not SLUG_RE.match(slug):
        raise ValidationError(
            f"Invalid {what} slug '{slug}': use lowercase letters, digits and underscores",
            {"slug": slug},
        )


def _check_roles(roles: Any, setting: str) -> List[str]:
    allowed = {r.value for r in ProjectRole}
    if not isinstance(roles, list) or any(r not in allowed for r in roles):
        raise ValidationError(
            f"{setting} must be a list of project roles",
            {"setting": setting, "allowed": sorted(allowed)},
        )
    return list(dict.fromkeys(roles))


class SchemaRegistry:
    """Service for project and record-type schema management."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.event_store = EventStore(session)

    # Projects

    async def create_project(
        self,
        owner_id: uuid.UUID,
        slug: str,
        name: str,
        description: Optional[str] = None,
        is_public: bool = False,
        require_different_validator: bool = False,
        audit_quota_monthly: Optional[int] = None,
    ) -> Project:
        _check_slug(slug, "project")
        existing = await self.session.execute(select(Project.id).where(Project.slug == slug))
        if existing.scalar_one_or_none() is not None:
            raise ValidationError(f"Project slug '{slug}' is already taken", {"slug": slug})

        project = Project(
            slug=slug,
            name=name,
            description=description,
            is_public=is_public,
            owner_id=owner_id,
            require_different_validator=require_different_validator,
            audit_quota_monthly=(
                audit_quota_monthly
                if audit_quota_monthly is not None
                else get_settings().audit_quota_monthly_default
            ),
        )
        self.session.add(project)
        await self.session.flush()
        self.session.add(ProjectCredits(project_id=project.id, balance=0))

        await self.event_store.log(
            event_type=EventType.PROJECT_CREATED,
            entity_type="project",
            entity_id=project.id,
            user_id=owner_id,
            payload={"slug": slug, "name": name},
        )
        logger.info("Project created", extra={"project_id": str(project.id), "slug": slug})
        return project

    async def add_member(
        self,
        project_id: uuid.UUID,
        user_id: uuid.UUID,
        role: str,
        actor: Actor,
    ) -> ProjectMember:
        """Add a member, or change the role of an existing one."""
        require_permission(actor, Permission.MANAGE_MEMBERS, project_id=project_id)
        try:
            role = ProjectRole(role).value
        except ValueError:
            raise ValidationError(f"Unknown role: {role}", {"role": role})
        if role == ProjectRole.OWNER.value:
            raise ValidationError("A project has exactly one owner")

        result = await self.session.execute(
            select(ProjectMember).where(
                and_(
                    ProjectMember.project_id == project_id,
                    ProjectMember.user_id == user_id,
                )
            )
        )
        member = result.scalar_one_or_none()
        if member is None:
            member = ProjectMember(
                project_id=project_id,
                user_id=user_id,
                role=role,
                invited_by=actor.id,
            )
            self.session.add(member)
        else:
            member.role = role
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.MEMBER_ADDED,
            entity_type="project",
            entity_id=project_id,
            user_id=actor.id,
            payload={"member_id": user_id, "role": role},
        )
        return member

    async def update_member_audit_rights(
        self,
        project_id: uuid.UUID,
        user_id: uuid.UUID,
        actor: Actor,
        can_request_verification: Optional[bool] = None,
        verification_quota_override: Optional[int] = None,
        clear_quota_override: bool = False,
    ) -> ProjectMember:
        """
        Allow or withhold third-party audit requests for one member, and give
        them their own monthly cap in place of the project's.
        """
        require_permission(actor, Permission.MANAGE_MEMBERS, project_id=project_id)
        if verification_quota_override is not None and verification_quota_override < 0:
            raise ValidationError("verification_quota_override must be zero or more")

        result = await self.session.execute(
            select(ProjectMember).where(
                and_(
                    ProjectMember.project_id == project_id,
                    ProjectMember.user_id == user_id,
                )
            )
        )
        member = result.scalar_one_or_none()
        if member is None:
            raise NotFoundError("Member not found", {"user_id": str(user_id)})

        if can_request_verification is not None:
            member.can_request_verification = can_request_verification
        if clear_quota_override:
            member.verification_quota_override = None
        elif verification_quota_override is not None:
            member.verification_quota_override = verification_quota_override
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.MEMBER_AUDIT_RIGHTS_UPDATED,
            entity_type="project",
            entity_id=project_id,
            user_id=actor.id,
            payload={
                "member_id": user_id,
                "can_request_verification": member.can_request_verification,
                "verification_quota_override": member.verification_quota_override,
            },
        )
        return member

    # Record types

    async def create_record_type(
        self,
        project_id: uuid.UUID,
        actor: Actor,
        slug: str,
        name: str,
        **settings: Any,
    ) -> RecordType:
        require_permission(actor, Permission.MANAGE_FIELDS, project_id=project_id)
        _check_slug(slug, "record type")
        existing = await self.session.execute(
            select(RecordType.id).where(
                and_(RecordType.project_id == project_id, RecordType.slug == slug)
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise ValidationError(f"Record type '{slug}' already exists", {"slug": slug})

        record_type = RecordType(project_id=project_id, slug=slug, name=name)
        self._apply_record_type_settings(record_type, settings)
        self.session.add(record_type)
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.RECORD_TYPE_CREATED,
            entity_type="record_type",
            entity_id=record_type.id,
            user_id=actor.id,
            payload={"project_id": project_id, "slug": slug},
        )
        logger.info(
            "Record type created",
            extra={"project_id": str(project_id), "record_type_id": str(record_type.id)},
        )
        return record_type

    async def update_record_type(
        self,
        record_type_id: uuid.UUID,
        actor: Actor,
        **changes: Any,
    ) -> RecordType:
        record_type = await self._get_record_type_row(record_type_id)
        require_permission(actor, Permission.MANAGE_FIELDS, project_id=record_type.project_id)
        if "slug" in changes and changes["slug"] != record_type.slug:
            raise ValidationError("Record type slug cannot be changed")
        changes.pop("slug", None)
        self._apply_record_type_settings(record_type, changes)
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.RECORD_TYPE_UPDATED,
            entity_type="record_type",
            entity_id=record_type.id,
            user_id=actor.id,
            payload={"changes": sorted(changes)},
        )
        return record_type

    def _apply_record_type_settings(self, record_type: RecordType, settings: Mapping[str, Any]) -> None:
        unknown = set(settings) - set(RECORD_TYPE_SETTINGS)
        if unknown:
            raise ValidationError(
                f"Unknown record type settings: {', '.join(sorted(unknown))}",
                {"unknown": sorted(unknown)},
            )
        for key, value in settings.items():
            if key in ("quote_bypass_roles", "validation_bypass_roles"):
                value = _check_roles(value, key)
            setattr(record_type, key, value)

    async def get_record_type(self, record_type_id: uuid.UUID) -> RecordType:
        """Load a record type with its fields and groups."""
        result = await self.session.execute(
            select(RecordType)
            .where(RecordType.id == record_type_id)
            .options(
                selectinload(RecordType.fields),
                selectinload(RecordType.field_groups),
            )
            .execution_options(populate_existing=True)
        )
        record_type = result.scalar_one_or_none()
        if record_type is None:
            raise NotFoundError("Record type not found", {"record_type_id": str(record_type_id)})
        return record_type

    async def _get_record_type_row(self, record_type_id: uuid.UUID) -> RecordType:
        record_type = await self.session.get(RecordType, record_type_id)
        if record_type is None:
            raise NotFoundError("Record type not found", {"record_type_id": str(record_type_id)})
        return record_type

    # Field groups

    async def create_field_group(
        self,
        record_type_id: uuid.UUID,
        actor: Actor,
        slug: str,
        name: str,
        **attrs: Any,
    ) -> FieldGroup:
        record_type = await self._get_record_type_row(record_type_id)
        require_permission(actor, Permission.MANAGE_FIELDS, project_id=record_type.project_id)
        _check_slug(slug, "field group")
        existing = await self.session.execute(
            select(FieldGroup.id).where(
                and_(FieldGroup.record_type_id == record_type_id, FieldGroup.slug == slug)
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise ValidationError(f"Field group '{slug}' already exists", {"slug": slug})

        group = FieldGroup(record_type_id=record_type_id, slug=slug, name=name)
        self._apply_attrs(group, attrs, GROUP_ATTRIBUTES, "field group")
        self.session.add(group)
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.FIELD_GROUP_CREATED,
            entity_type="record_type",
            entity_id=record_type_id,
            user_id=actor.id,
            payload={"field_group_id": group.id, "slug": slug},
        )
        return group

    async def update_field_group(
        self,
        group_id: uuid.UUID,
        actor: Actor,
        **attrs: Any,
    ) -> FieldGroup:
        group = await self._get_group(group_id)
        record_type = await self._get_record_type_row(group.record_type_id)
        require_permission(actor, Permission.MANAGE_FIELDS, project_id=record_type.project_id)
        self._apply_attrs(group, attrs, GROUP_ATTRIBUTES, "field group")
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.FIELD_GROUP_UPDATED,
            entity_type="record_type",
            entity_id=record_type.id,
            user_id=actor.id,
            payload={"field_group_id": group.id, "changes": sorted(attrs)},
        )
        return group

    async def delete_field_group(self, group_id: uuid.UUID, actor: Actor) -> None:
        """Delete a group. Its fields become ungrouped."""
        group = await self._get_group(group_id)
        record_type = await self._get_record_type_row(group.record_type_id)
        require_permission(actor, Permission.MANAGE_FIELDS, project_id=record_type.project_id)

        result = await self.session.execute(
            select(FieldDefinition).where(FieldDefinition.field_group_id == group_id)
        )
        for field in result.scalars().all():
            field.field_group_id = None
        await self.session.delete(group)
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.FIELD_GROUP_DELETED,
            entity_type="record_type",
            entity_id=record_type.id,
            user_id=actor.id,
            payload={"field_group_id": group_id, "slug": group.slug},
        )

    async def _get_group(self, group_id: uuid.UUID) -> FieldGroup:
        group = await self.session.get(FieldGroup, group_id)
        if group is None:
            raise NotFoundError("Field group not found", {"field_group_id": str(group_id)})
        return group

    # Field definitions

    async def create_field(
        self,
        record_type_id: uuid.UUID,
        actor: Actor,
        slug: str,
        name: str,
        field_type: str,
        config: Optional[Dict[str, Any]] = None,
        field_group_id: Optional[uuid.UUID] = None,
        width: str = FieldWidth.FULL.value,
        **attrs: Any,
    ) -> FieldDefinition:
        record_type = await self._get_record_type_row(record_type_id)
        require_permission(actor, Permission.MANAGE_FIELDS, project_id=record_type.project_id)
        _check_slug(slug, "field")
        ftype = coerce_field_type(field_type)
        parsed = parse_field_config(ftype, config)
        self._check_show_when(slug, parsed.show_when.field if parsed.show_when else None)

        existing = await self.session.execute(
            select(FieldDefinition.id).where(
                and_(
                    FieldDefinition.record_type_id == record_type_id,
                    FieldDefinition.slug == slug,
                )
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise ValidationError(f"Field '{slug}' already exists", {"slug": slug})

        if field_group_id is not None:
            await self._check_group(record_type_id, field_group_id)

        field = FieldDefinition(
            record_type_id=record_type_id,
            field_group_id=field_group_id,
            slug=slug,
            name=name,
            field_type=ftype.value,
            config=dump_field_config(parsed),
            width=self._check_width(width),
        )
        self._apply_attrs(field, attrs, FIELD_ATTRIBUTES, "field")
        self.session.add(field)
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.FIELD_CREATED,
            entity_type="record_type",
            entity_id=record_type_id,
            user_id=actor.id,
            payload={"field_id": field.id, "slug": slug, "field_type": ftype.value},
        )
        logger.info(
            "Field created",
            extra={"record_type_id": str(record_type_id), "field_slug": slug},
        )
        return field

    async def update_field(
        self,
        field_id: uuid.UUID,
        actor: Actor,
        **changes: Any,
    ) -> FieldDefinition:
        field = await self._get_field(field_id)
        record_type = await self._get_record_type_row(field.record_type_id)
        require_permission(actor, Permission.MANAGE_FIELDS, project_id=record_type.project_id)

        if "slug" in changes and changes["slug"] != field.slug:
            raise ValidationError("Field slug cannot be changed", {"slug": field.slug})
        changes.pop("slug", None)

        if "field_type" in changes or "config" in changes:
            ftype = coerce_field_type(changes.pop("field_type", field.field_type))
            raw_config = changes.pop("config", field.config)
            parsed = parse_field_config(ftype, raw_config)
            self._check_show_when(field.slug, parsed.show_when.field if parsed.show_when else None)
            field.field_type = ftype.value
            field.config = dump_field_config(parsed)

        if "field_group_id" in changes:
            group_id = changes.pop("field_group_id")
            if group_id is not None:
                await self._check_group(field.record_type_id, group_id)
            field.field_group_id = group_id

        if "width" in changes:
            field.width = self._check_width(changes.pop("width"))

        evidence_rule = (field.requires_quote, field.requires_source_for_quote)
        self._apply_attrs(field, changes, FIELD_ATTRIBUTES, "field")
        await self.session.flush()
        if (field.requires_quote, field.requires_source_for_quote) != evidence_rule:
            await self._recheck_field_support(field, actor)

        await self.event_store.log(
            event_type=EventType.FIELD_UPDATED,
            entity_type="record_type",
            entity_id=record_type.id,
            user_id=actor.id,
            payload={"field_id": field.id, "slug": field.slug},
        )
        return field

    async def _recheck_field_support(self, field: FieldDefinition, actor: Actor) -> None:
        """Revoke verifications of `field` that its new evidence rule no longer backs."""
        records = await self.session.scalars(
            select(Record).where(Record.record_type_id == field.record_type_id)
        )
        evidence = EvidenceStore(self.session)
        for record in records.all():
            entry = (record.verified_fields or {}).get(field.slug)
            if isinstance(entry, dict) and entry.get("verified"):
                await evidence.revoke_unsupported(record, actor, reason="requirement_changed")

    async def delete_field(self, field_id: uuid.UUID, actor: Actor) -> None:
        """Delete a definition. Values already stored under its slug are kept."""
        field = await self._get_field(field_id)
        record_type = await self._get_record_type_row(field.record_type_id)
        require_permission(actor, Permission.MANAGE_FIELDS, project_id=record_type.project_id)
        slug = field.slug
        await self.session.delete(field)
        await self.session.flush()

        await self.event_store.log(
            event_type=EventType.FIELD_DELETED,
            entity_type="record_type",
            entity_id=record_type.id,
            user_id=actor.id,
            payload={"field_id": field_id, "slug": slug},
        )

    async def _get_field(self, field_id: uuid.UUID) -> FieldDefinition:
        field = await self.session.get(FieldDefinition, field_id)
        if field is None:
            raise NotFoundError("Field not found", {"field_id": str(field_id)})
        return field

    async def _check_group(self, record_type_id: uuid.UUID, group_id: uuid.UUID) -> None:
        group = await self.session.get(FieldGroup, group_id)
        if group is None or group.record_type_id != record_type_id:
            raise ValidationError(
                "Field group does not belong to this record type",
                {"field_group_id": str(group_id)},
            )

    @staticmethod
    def _check_show_when(slug: str, depends_on: Optional[str]) -> None:
        if depends_on is not None and depends_on == slug:
            raise ValidationError("A field cannot depend on itself", {"slug": slug})

    @staticmethod
    def _check_width(width: str) -> str:
        try:
            return FieldWidth(width).value
        except ValueError:
            raise ValidationError(f"Unknown width: {width}", {"width": width})

    @staticmethod
    def _apply_attrs(target: Any, attrs: Mapping[str, Any], allowed: tuple, what: str) -> None:
        unknown = set(attrs) - set(allowed)
        if unknown:
            raise ValidationError(
                f"Unknown {what} attributes: {', '.join(sorted(unknown))}",
                {"unknown": sorted(unknown)},
            )
        for key, value in attrs.items():
            setattr(target, key, value)

    # Queries and validation

    async def get_effective_fields(
        self,
        record_type_id: uuid.UUID,
        mode: FormMode,
        data: Optional[Mapping[str, Any]] = None,
    ) -> List[FieldDefinition]:
        """Fields shown for (record type, mode), ordered by sort_order."""
        record_type = await self.get_record_type(record_type_id)
        return effective_fields(record_type.fields, FormMode(mode), data)

    @staticmethod
    def check_submission(
        record_type: RecordType,
        data: Mapping[str, Any],
        mode: FormMode = FormMode.GUEST,
    ) -> SubmissionCheck:
        """
        Validate a payload against the record type's fields.

        Only fields shown in `mode` and visible under their show_when rule are
        required or value-checked. Slugs with no definition are refused.
        """
        errors: List[Dict[str, str]] = []
        known = {f.slug for f in record_type.fields}
        for slug in data:
            if slug not in known:
                errors.append({"field": slug, "message": "is not a field of this record type"})

        for field in effective_fields(record_type.fields, FormMode(mode), data):
            value = data.get(field.slug)
            if is_empty(value):
                if field.is_required:
                    errors.append({"field": field.slug, "message": f"{field.name} is required"})
                continue
            parsed = parse_field_config(field.field_type, field.config)
            problem = check_value(coerce_field_type(field.field_type), parsed, value)
            if problem:
                errors.append({"field": field.slug, "message": f"{field.name} {problem}"})

        return SubmissionCheck(valid=not errors, errors=errors)

    @classmethod
    def validate_submission(
        cls,
        record_type: RecordType,
        data: Mapping[str, Any],
        mode: FormMode = FormMode.GUEST,
    ) -> None:
        """Raise ValidationError listing every problem with the payload."""
        check = cls.check_submission(record_type, data, mode)
        if not check.valid:
            raise ValidationError("Submission is invalid", {"errors": check.errors})
