"""Test fixtures."""

import os

os.environ.setdefault("ENCRYPTION_KEY", "0123456789abcdef0123456789abcdef")
os.environ.setdefault("JOB_QUEUE_ENABLED", "false")

from typing import AsyncGenerator, Optional

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.database import Base, get_db
from app.main import app
from app.models import IntegrationAccount, Platform, Tenant
from app.services.auth import create_tenant_token
from app.services.crypto import EncryptionService
from app.services.jobs import job_queue
from app.services.notification import notification_service

# Use SQLite for tests (no external DB needed for unit tests)
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
TENANT_SLUG = "test-tenant"

test_engine = create_async_engine(TEST_DB_URL, echo=False, poolclass=NullPool)
test_session = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with test_session() as session:
        yield session


app.dependency_overrides[get_db] = override_get_db
job_queue.session_factory = test_session


@pytest.fixture(autouse=True)
def reset_notifications():
    notification_service.reset()
    yield
    notification_service.reset()


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with test_session() as session:
        yield session


@pytest_asyncio.fixture
async def tenant(db: AsyncSession) -> Tenant:
    tenant = Tenant(slug=TENANT_SLUG, name="Test Company")
    db.add(tenant)
    await db.commit()
    await db.refresh(tenant)
    return tenant


@pytest.fixture
def auth_headers() -> dict:
    token = create_tenant_token("admin@example.com", TENANT_SLUG, role="admin")
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def _make_account(
    db: AsyncSession,
    tenant: Tenant,
    platform: Platform,
    account_id: str = "acct-1",
    account_name: str = "Test Account",
    settings: Optional[dict] = None,
    is_active: bool = True,
    **secrets,
) -> IntegrationAccount:
    """Integration account with the given plain-text secrets encrypted."""
    account = IntegrationAccount(
        tenant_id=tenant.id,
        platform=platform.value,
        account_id=account_id,
        account_name=account_name,
        settings=settings or {},
        is_active=is_active,
        **{name: EncryptionService.encrypt_optional(value) for name, value in secrets.items()},
    )
    db.add(account)
    await db.commit()
    await db.refresh(account)
    return account


def _mock_transport(routes: dict, calls: Optional[list] = None) -> httpx.MockTransport:
    """``{(METHOD, path): (status, json)}`` → MockTransport; unknown routes answer 404."""

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        key = (request.method, request.url.path)
        if key not in routes:
            return httpx.Response(404, json={"error": {"message": "Not found"}})
        status, body = routes[key]
        return httpx.Response(status, json=body)

    return httpx.MockTransport(handler)


@pytest.fixture
def make_account(db: AsyncSession, tenant: Tenant):
    async def factory(platform: Platform, **kwargs) -> IntegrationAccount:
        return await _make_account(db, tenant, platform, **kwargs)
    return factory


@pytest.fixture
def mock_transport():
    return _mock_transport


@pytest.fixture
def session_factory():
    return test_session
