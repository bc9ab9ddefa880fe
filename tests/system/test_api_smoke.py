"""
System smoke test: the HTTP surface in-process with SQLite.

Covers health, bearer auth, project and schema setup, member submission,
the first review step, record history, review locks and AI quota enforcement.
Uses a temp file DB so the app and the fixtures share one database.
"""

import os
import tempfile
import uuid
from typing import AsyncGenerator, Dict

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
_tmp.close()
TEST_DB_PATH = _tmp.name
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{TEST_DB_PATH}"
# Force config reload so the app uses the test DB
from witness.config import get_settings
get_settings.cache_clear()

from witness.kernel.identity.jwt import create_access_token
from witness.kernel.models import Base
from witness.kernel.models.user import User
from witness.main import app
from witness.database import get_db


TEST_ENGINE = create_async_engine(
    f"sqlite+aiosqlite:///{TEST_DB_PATH}",
    echo=False,
    connect_args={"check_same_thread": False},
)
TEST_SESSION_MAKER = async_sessionmaker(
    TEST_ENGINE,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with TEST_SESSION_MAKER() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@pytest_asyncio.fixture
async def client():
    """Async client bound to the test database."""
    async with TEST_ENGINE.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    app.dependency_overrides[get_db] = override_get_db
    try:
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
        ) as ac:
            yield ac
    finally:
        app.dependency_overrides.pop(get_db, None)


@pytest_asyncio.fixture
async def people(client) -> Dict[str, dict]:
    """Users provisioned by the identity provider, with bearer headers."""
    tag = uuid.uuid4().hex[:8]
    people = {}
    async with TEST_SESSION_MAKER() as session:
        for key in ("owner", "analyst_a", "analyst_b"):
            user = User(email=f"{key}-{tag}@example.com", full_name=key.replace("_", " ").title())
            session.add(user)
            await session.flush()
            people[key] = {
                "id": str(user.id),
                "headers": {"Authorization": f"Bearer {create_access_token(user.id)}"},
            }
        await session.commit()
    return people


async def setup_project(client: AsyncClient, people: Dict[str, dict]) -> dict:
    owner = people["owner"]["headers"]
    r = await client.post(
        "/api/v1/projects",
        json={"slug": f"archive_{uuid.uuid4().hex[:8]}", "name": "Archive"},
        headers=owner,
    )
    assert r.status_code == 201, r.text
    project_id = r.json()["id"]

    for key in ("analyst_a", "analyst_b"):
        r = await client.post(
            f"/api/v1/projects/{project_id}/members",
            json={"user_id": people[key]["id"], "role": "analyst"},
            headers=owner,
        )
        assert r.status_code == 201, r.text

    r = await client.post(
        f"/api/v1/projects/{project_id}/record-types",
        json={"slug": "incident", "name": "Incident", "require_quotes_for_review": False},
        headers=owner,
    )
    assert r.status_code == 201, r.text
    record_type_id = r.json()["id"]

    r = await client.post(
        f"/api/v1/projects/{project_id}/record-types/{record_type_id}/field-definitions",
        json={"slug": "title", "name": "Title", "field_type": "text", "is_required": True},
        headers=owner,
    )
    assert r.status_code == 201, r.text
    return {"project_id": project_id, "record_type_id": record_type_id}


def pytest_sessionfinish(session, exitstatus):
    try:
        if os.path.exists(TEST_DB_PATH):
            os.unlink(TEST_DB_PATH)
    except OSError:
        pass


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_requires_bearer_token(client: AsyncClient):
    r = await client.post("/api/v1/projects", json={"slug": "nope", "name": "Nope"})
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_submission_and_first_review(client: AsyncClient, people):
    ids = await setup_project(client, people)
    project_id = ids["project_id"]
    analyst_a = people["analyst_a"]["headers"]

    r = await client.post(
        f"/api/v1/projects/{project_id}/records",
        json={"record_type_id": ids["record_type_id"], "data": {}},
        headers=analyst_a,
    )
    assert r.status_code == 400
    assert r.json()["code"] == "validation_error"

    r = await client.post(
        f"/api/v1/projects/{project_id}/records",
        json={"record_type_id": ids["record_type_id"], "data": {"title": "Stop on Main St"}},
        headers=people["owner"]["headers"],
    )
    assert r.status_code == 201, r.text
    record = r.json()
    assert record["status"] == "pending_review"
    assert record["verification_level"] == 0

    r = await client.post(
        f"/api/v1/records/{record['id']}/transitions",
        json={"action": "approve", "payload": {"notes": "Looks right"}},
        headers=analyst_a,
    )
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "first_review"

    r = await client.post(
        f"/api/v1/records/{record['id']}/transitions",
        json={"action": "approve"},
        headers=analyst_a,
    )
    assert r.status_code == 403
    assert r.json()["code"] == "permission_denied"

    r = await client.get(f"/api/v1/records/{record['id']}/history", headers=analyst_a)
    assert r.status_code == 200
    event_types = [e["event_type"] for e in r.json()]
    assert "record.submitted" in event_types
    assert "record.status_changed" in event_types


@pytest.mark.asyncio
async def test_ai_quota_enforced(client: AsyncClient, people):
    ids = await setup_project(client, people)
    url = f"/api/v1/projects/{ids['project_id']}/ai-usage"
    headers = people["analyst_b"]["headers"]

    for _ in range(3):
        r = await client.post(url, json={"model_name": "gpt-4o"}, headers=headers)
        assert r.status_code == 201, r.text
        assert r.json()["credits_used"] == 0

    r = await client.post(url, json={}, headers=headers)
    assert r.status_code == 429
    body = r.json()
    assert body["code"] == "quota_exceeded"
    assert body["window"] == "hour"

    r = await client.get(f"/api/v1/projects/{ids['project_id']}/ai-quota", headers=headers)
    assert r.status_code == 200
    assert r.json()["allowed"] is False


@pytest.mark.asyncio
async def test_review_lock_over_http(client: AsyncClient, people):
    ids = await setup_project(client, people)
    analyst_a = people["analyst_a"]["headers"]
    analyst_b = people["analyst_b"]["headers"]

    r = await client.post(
        f"/api/v1/projects/{ids['project_id']}/records",
        json={"record_type_id": ids["record_type_id"], "data": {"title": "Raid on Elm St"}},
        headers=people["owner"]["headers"],
    )
    assert r.status_code == 201, r.text
    record = r.json()
    assert record["data_changed_since_audit"] is False
    assert "verified_data_hash" not in record

    r = await client.post(f"/api/v1/records/{record['id']}/lock", headers=analyst_a)
    assert r.status_code == 200, r.text
    assert r.json()["is_locked"] is True

    r = await client.post(
        f"/api/v1/records/{record['id']}/transitions",
        json={"action": "approve"},
        headers=analyst_b,
    )
    assert r.status_code == 423
    assert r.json()["code"] == "record_locked"

    r = await client.get(f"/api/v1/records/{record['id']}/lock", headers=analyst_b)
    assert r.json()["locked_by"] == people["analyst_a"]["id"]

    r = await client.delete(f"/api/v1/records/{record['id']}/lock", headers=analyst_a)
    assert r.status_code == 200
    assert r.json()["is_locked"] is False
