"""
Pytest fixtures for Witness Ledger tests.

Every test gets its own file-based SQLite database so sessions opened by the
services share the same tables.
"""

import os
import tempfile
import uuid
from typing import AsyncGenerator, Dict, List

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from witness.engines.evidence.evidence_store import EvidenceStore
from witness.engines.records.record_store import RecordStore
from witness.engines.schema.registry import SchemaRegistry
from witness.kernel.identity.actor import Actor
from witness.kernel.models import Base
from witness.kernel.models.project import Project
from witness.kernel.models.record import Record, RecordStatus
from witness.kernel.models.schema import RecordType
from witness.kernel.models.user import User
from witness.kernel.permissions.permission_service import PermissionService


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create a throwaway SQLite database."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{path}",
        echo=False,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()
    os.unlink(path)


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    session_maker = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with session_maker() as session:
        yield session
        await session.rollback()


async def _make_user(session: AsyncSession, name: str, **extra) -> User:
    user = User(
        id=uuid.uuid4(),
        email=f"{name}@example.com",
        full_name=name.replace("_", " ").title(),
        **extra,
    )
    session.add(user)
    await session.flush()
    return user


@pytest_asyncio.fixture
async def users(db_session: AsyncSession) -> Dict[str, User]:
    """Owner, two analysts, two validators, a viewer and an outside verifier."""
    return {
        "owner": await _make_user(db_session, "owner"),
        "analyst_a": await _make_user(db_session, "analyst_a"),
        "analyst_b": await _make_user(db_session, "analyst_b"),
        "validator_a": await _make_user(db_session, "validator_a"),
        "validator_b": await _make_user(db_session, "validator_b"),
        "viewer": await _make_user(db_session, "viewer"),
        "verifier": await _make_user(db_session, "verifier", is_verifier=True, verifier_max_concurrent=2),
    }


@pytest_asyncio.fixture
async def project(db_session: AsyncSession, users: Dict[str, User]) -> Project:
    """A project with one member per role."""
    registry = SchemaRegistry(db_session)
    project = await registry.create_project(
        owner_id=users["owner"].id,
        slug="police_misconduct",
        name="Police Misconduct Archive",
        audit_quota_monthly=3,
    )
    owner = await PermissionService(db_session).resolve_actor(users["owner"].id, project.id)
    for key, role in (
        ("analyst_a", "analyst"),
        ("analyst_b", "analyst"),
        ("validator_a", "validator"),
        ("validator_b", "validator"),
        ("viewer", "viewer"),
    ):
        await registry.add_member(project.id, users[key].id, role, owner)
    return project


@pytest_asyncio.fixture
async def actors(db_session: AsyncSession, users: Dict[str, User], project: Project) -> Dict[str, Actor]:
    """Project-scoped actors keyed like `users`."""
    service = PermissionService(db_session)
    resolved = {key: await service.resolve_actor(user.id, project.id) for key, user in users.items()}
    resolved["verifier"] = await service.resolve_actor(users["verifier"].id)
    return resolved


@pytest_asyncio.fixture
async def incident_type(db_session: AsyncSession, project: Project, actors: Dict[str, Actor]) -> RecordType:
    """
    An incident record type with six fields.

    `summary` needs a supporting quote; `injuries` only shows when
    `force_used` is true.
    """
    registry = SchemaRegistry(db_session)
    owner = actors["owner"]
    record_type = await registry.create_record_type(
        project.id,
        owner,
        slug="incident",
        name="Incident",
        require_quotes_for_review=True,
        require_all_fields_verified=True,
        guest_form_enabled=True,
    )
    await registry.create_field(
        record_type.id, owner, "title", "Title", "text",
        config={"max_length": 200}, is_required=True, sort_order=1,
    )
    await registry.create_field(record_type.id, owner, "incident_date", "Date", "date", sort_order=2)
    await registry.create_field(record_type.id, owner, "city", "City", "text", sort_order=3)
    await registry.create_field(
        record_type.id, owner, "summary", "Summary", "textarea",
        requires_quote=True, sort_order=4,
    )
    await registry.create_field(record_type.id, owner, "force_used", "Force used", "boolean", sort_order=5)
    await registry.create_field(
        record_type.id, owner, "injuries", "Injuries", "number",
        config={"min": 0, "show_when": {"field": "force_used", "operator": "equals", "value": True}},
        is_required=True, sort_order=6,
    )
    return await registry.get_record_type(record_type.id)


@pytest.fixture
def incident_data() -> dict:
    return {
        "title": "Arrest at Main St",
        "incident_date": "2024-03-02",
        "city": "Springfield",
        "summary": "Witnesses describe a traffic stop that escalated.",
        "force_used": False,
    }


@pytest_asyncio.fixture
async def record(
    db_session: AsyncSession,
    incident_type: RecordType,
    actors: Dict[str, Actor],
    incident_data: dict,
) -> Record:
    """A member-submitted record in pending_review."""
    return await RecordStore(db_session).submit_record(incident_type.id, incident_data, submitter=actors["owner"])


@pytest_asyncio.fixture
async def evidence(db_session: AsyncSession, record: Record, actors: Dict[str, Actor]) -> dict:
    """One source and two quotes; both quotes support `summary`."""
    store = EvidenceStore(db_session)
    editor = actors["analyst_a"]
    source = await store.add_source(
        record.id, editor, url="https://news.example.com/main-st", title="Local news", source_type="media",
    )
    quote_1 = await store.add_quote(
        record.id, editor, "Officers pulled the driver out of the car.",
        source_id=source.id, linked_fields=["summary"],
    )
    quote_2 = await store.add_quote(
        record.id, editor, "The stop lasted twenty minutes.", linked_fields=["summary"],
    )
    return {"source": source, "quotes": [quote_1, quote_2]}


@pytest_asyncio.fixture
async def published_record(
    db_session: AsyncSession,
    incident_type: RecordType,
    users: Dict[str, User],
    incident_data: dict,
) -> Record:
    """A record already through review and validation."""
    record = Record(
        record_type_id=incident_type.id,
        project_id=incident_type.project_id,
        data=dict(incident_data),
        status=RecordStatus.VERIFIED.value,
        verified_fields={"city": {"verified": True, "by": str(users["analyst_a"].id), "at": "2024-03-05T10:00:00+00:00"}},
        submitted_by=users["owner"].id,
        first_verified_by=users["analyst_a"].id,
        second_verified_by=users["analyst_b"].id,
        first_validated_by=users["validator_a"].id,
        second_validated_by=users["validator_b"].id,
        verification_level=1,
    )
    db_session.add(record)
    await db_session.flush()
    return record


def _checklist(
    record: Record,
    quotes: List,
    sources: List,
    unchecked: Dict[str, str] = None,
    fields: List[str] = None,
) -> List[dict]:
    """
    Build a validator checklist covering every displayed item.

    `unchecked` maps item ids to the reason they were left unchecked.
    """
    unchecked = unchecked or {}
    data = record.data or {}
    slugs = fields if fields is not None else [slug for slug, value in data.items() if value not in (None, "", [], {})]
    items = [("field", slug) for slug in slugs]
    items += [("quote", str(q.id)) for q in quotes]
    items += [("source", str(s.id)) for s in sources]
    return [
        {
            "item_type": item_type,
            "item_id": item_id,
            "checked": item_id not in unchecked,
            "reason": unchecked.get(item_id),
        }
        for item_type, item_id in items
    ]


@pytest.fixture
def make_checklist():
    return _checklist
