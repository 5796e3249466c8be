"""
Pytest configuration and fixtures for the Salla merchant app tests.
"""

import os
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

# Set test environment variables before importing app
os.environ.setdefault("SALLA_CLIENT_ID", "test-client-id")
os.environ.setdefault("SALLA_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-32chars-long!")
os.environ.setdefault("APP_URL", "http://testserver")
os.environ["REDIS_URL"] = ""

from app.database import AsyncSessionLocal, Base, engine, get_db  # noqa: E402
from app.main import app  # noqa: E402
from app.models import User  # noqa: E402
from app.routes.oauth import get_salla_client  # noqa: E402
from app.services.salla_client import SallaClient, TokenResponse  # noqa: E402
from app.services.token_store import TokenStore  # noqa: E402


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
async def db():
    """Create a fresh database for each test."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture
def mock_salla():
    """Salla client double; async methods are AsyncMocks."""
    client = MagicMock(spec=SallaClient)
    client.get_authorization_url.return_value = "https://accounts.salla.sa/oauth2/auth?state=x"
    client.exchange_code.return_value = TokenResponse(
        access_token="ory_at_issued-access",
        refresh_token="ory_rt_issued-refresh",
        expires_in=1209600,
    )
    client.refresh.return_value = TokenResponse(
        access_token="ory_at_refreshed-access",
        refresh_token="ory_rt_refreshed-refresh",
        expires_in=1209600,
    )
    client.get_resource_owner.return_value = {
        "id": 181690847,
        "name": "Test Merchant",
        "email": "merchant@example.com",
        "mobile": "555454545",
        "role": "user",
        "created_at": "2018-04-28 17:46:25",
        "merchant": {"id": 633170215, "name": "Test Store"},
    }
    client.fetch_resource.return_value = {"status": 200, "data": {"id": 633170215, "name": "Test Store"}}
    return client


@pytest.fixture
async def client(db, mock_salla):
    """Create a test client with database and provider overrides."""

    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_salla_client] = lambda: mock_salla
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    """Create a user with a stored token record."""

    async def _make_user(
        email: str = "merchant@example.com",
        access_token: str = "ory_at_stored-access",
        refresh_token: str = "ory_rt_stored-refresh",
        expires_in: int = 3600,
        expired: bool = False,
    ):
        user = User(email=email, name="Test Merchant", salla_id="181690847")
        db.add(user)
        await db.commit()
        await db.refresh(user)

        record = await TokenStore(db).upsert(
            user_id=user.id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=expires_in,
            merchant=633170215,
        )
        if expired:
            record.expires_at = datetime.now(timezone.utc) - timedelta(minutes=5)
            await db.commit()
            await db.refresh(record)
        return user, record

    return _make_user
