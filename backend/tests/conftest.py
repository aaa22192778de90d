# tests/conftest.py — Shared test fixtures
import os
import uuid
from http.cookies import SimpleCookie
from typing import Optional

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_ACCESS_SECRET"] = "test-access-secret-for-unit-tests-only-min-32-chars"
os.environ["JWT_REFRESH_SECRET"] = "test-refresh-secret-for-unit-tests-only-min-32-chars"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["REFRESH_TOKEN_BCRYPT_ROUNDS"] = "4"
os.environ["ENVIRONMENT"] = "test"

from config import get_settings

get_settings.cache_clear()

from models import Base, User, ProjectMember, ProjectRole
from auth import ACCESS, PublicAccount, TokenPayload, get_password_hasher, get_token_issuer
from database import get_db_session
from main import app

DEFAULT_PASSWORD = "Str0ng!Pass"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine):
    return async_sessionmaker(
        db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(session_factory):
    """HTTP test client with overridden DB dependency"""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ============================================================
# ACCOUNTS
# ============================================================

async def make_account(
    db_session,
    username: str,
    password: str = DEFAULT_PASSWORD,
    is_active: bool = True,
) -> User:
    user = User(
        id=str(uuid.uuid4()),
        email=f"{username}@kanban.dev",
        username=username,
        first_name=username.capitalize(),
        last_name="Tester",
        password_hash=get_password_hasher().hash_blocking(password),
        is_active=is_active,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def owner(db_session):
    return await make_account(db_session, "owner")


@pytest_asyncio.fixture
async def admin(db_session):
    return await make_account(db_session, "admin")


@pytest_asyncio.fixture
async def member(db_session):
    return await make_account(db_session, "member")


@pytest_asyncio.fixture
async def outsider(db_session):
    return await make_account(db_session, "outsider")


def public(user: User) -> PublicAccount:
    return PublicAccount.model_validate(user)


def get_auth_headers(user: User) -> dict:
    """Bearer header carrying a freshly signed access token for the user"""
    token = get_token_issuer().sign(TokenPayload(sub=user.id, email=user.email), ACCESS)
    return {"Authorization": f"Bearer {token}"}


def cookie_from(response, name: str) -> Optional[str]:
    """Value of a Set-Cookie header on the response, or None"""
    for header in response.headers.get_list("set-cookie"):
        jar = SimpleCookie()
        jar.load(header)
        if name in jar:
            return jar[name].value
    return None


# ============================================================
# PROJECTS
# ============================================================

async def create_project(client: AsyncClient, user: User, name: str = "Kanban Core", key: str = "KAN") -> dict:
    res = await client.post(
        "/api/v1/projects",
        json={"name": name, "key": key, "description": "Core board"},
        headers=get_auth_headers(user),
    )
    assert res.status_code == 201, res.text
    return res.json()


async def add_member(db_session, project_id: str, user: User, role: ProjectRole) -> ProjectMember:
    membership = ProjectMember(project_id=project_id, user_id=user.id, role=role)
    db_session.add(membership)
    await db_session.commit()
    return membership


def status_id(project: dict, name: str) -> str:
    return next(s["id"] for s in project["board"]["statuses"] if s["name"] == name)


async def create_ticket(client: AsyncClient, user: User, project: dict, title: str, column: str = "To Do") -> dict:
    res = await client.post(
        f"/api/v1/projects/{project['id']}/tickets",
        json={"title": title, "status_id": status_id(project, column)},
        headers=get_auth_headers(user),
    )
    assert res.status_code == 201, res.text
    return res.json()


@pytest_asyncio.fixture
async def project(client, db_session, owner, admin, member):
    """Project owned by `owner` with `admin` (ADMIN) and `member` (MEMBER)"""
    data = await create_project(client, owner)
    await add_member(db_session, data["id"], admin, ProjectRole.ADMIN)
    await add_member(db_session, data["id"], member, ProjectRole.MEMBER)
    return data
