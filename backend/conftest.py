"""Pytest configuration: set test env before any app imports so DB, storage and JWT use test values."""

import asyncio
import os
import tempfile
import uuid
from typing import Dict, Iterable, Optional, Tuple

import pytest

# Set before app.db.session or app.config are used so engine and settings use test paths
_tmp = tempfile.mkdtemp(prefix="attachbox_test_")
os.environ.setdefault("ATTACHBOX_DB_PATH", os.path.join(_tmp, "test.db"))
os.environ.setdefault("ATTACHBOX_STORAGE_BASE_PATH", os.path.join(_tmp, "storage"))
os.environ.setdefault("ATTACHBOX_JWT_SECRET", "test-jwt-secret-at-least-32-characters-long")
# Signed URLs point back at the TestClient host
os.environ.setdefault("ATTACHBOX_PUBLIC_BASE_URL", "http://testserver")
os.environ.setdefault("ATTACHBOX_ADMIN_USERNAME", "admin")


@pytest.fixture(scope="session")
def db_loop():
    """Session-scoped event loop for DB init."""
    loop = asyncio.new_event_loop()
    yield loop
    loop.close()


@pytest.fixture(scope="session")
def init_test_db(db_loop):
    """Create tables once per test session."""
    from app.db.session import init_db

    db_loop.run_until_complete(init_db())


@pytest.fixture
def session_factory(init_test_db):
    """Yield get_session so tests can use async with session_factory() as session."""
    from app.db.session import get_session
    return get_session


@pytest.fixture
def client(init_test_db):
    """TestClient with lifespan (admin bootstrap) and rate limiting off."""
    from fastapi.testclient import TestClient

    from app.main import app

    app.state.limiter.enabled = False
    with TestClient(app) as c:
        yield c


def _auth(user_id: int) -> Dict[str, str]:
    from app.auth.jwt import create_access_token

    return {"Authorization": f"Bearer {create_access_token(str(user_id))}"}


@pytest.fixture
def make_user(init_test_db):
    """Factory: create a user with its library. Returns (user_id, auth headers)."""
    from app.db.session import get_session
    from app.users.service import create_user

    def _make(quota_mb: Optional[int] = None, is_admin: bool = False) -> Tuple[int, Dict[str, str]]:
        async def _create() -> int:
            async with get_session() as session:
                user = await create_user(
                    session,
                    f"user-{uuid.uuid4().hex[:10]}",
                    is_admin=is_admin,
                    storage_quota_mb=quota_mb,
                )
                return user.id

        user_id = asyncio.run(_create())
        return user_id, _auth(user_id)

    return _make


@pytest.fixture
def make_group(init_test_db):
    """Factory: create a group library owned by owner_id with members. Returns the group id."""
    from app.db.session import get_session
    from app.users.models import User
    from app.users.service import create_group

    def _make(owner_id: int, member_ids: Iterable[int] = ()) -> int:
        group_id = uuid.uuid4().int % 1_000_000_000

        async def _create() -> None:
            async with get_session() as session:
                owner = await session.get(User, owner_id)
                members = [await session.get(User, uid) for uid in member_ids]
                await create_group(session, group_id, owner, members)

        asyncio.run(_create())
        return group_id

    return _make
