"""
Pytest configuration and fixtures
"""

import os

# Settings are read at import time; keep tests off PostgreSQL and the real KDF cost
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENCRYPTION_KEY", "test-master-secret")
os.environ.setdefault("KDF_ITERATIONS", "1000")

from datetime import time, timedelta
from typing import AsyncGenerator
from urllib.parse import parse_qsl

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from core.clock import utcnow
from core.retry import RetryPolicy, linear_backoff
from credentials.cipher import CredentialCipher
from models import (
    Base,
    User,
    Source,
    SourceApi,
    SourceSelectedApi,
    DestinationType,
    Destination,
    Schedule,
    Frequency,
    CredentialStatus,
)
from schemas.credentials import DestinationCredentials

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,  # one shared in-memory database per test
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def cipher():
    """Cipher with a cheap KDF; the algorithm is identical to production"""
    return CredentialCipher("test-master-secret", iterations=1000)


@pytest.fixture
def sleeps():
    """Delays requested by retry policies (nothing actually sleeps)"""
    return []


@pytest.fixture
def retry_policy(sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    return RetryPolicy(max_attempts=3, backoff=linear_backoff(1.0), sleep=fake_sleep)


# ============================================================================
# Scripted provider endpoints
# ============================================================================

class FakeProvider:
    """
    Scripted HTTP provider for httpx.MockTransport.

    Queued responses are served in order; the last one repeats. A queued
    exception is raised instead of answering.
    """

    def __init__(self):
        self.requests = []
        self.responses = []

    def queue(self, *responses):
        self.responses.extend(responses)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        # Fresh copy so a repeated response can be served more than once
        return httpx.Response(
            response.status_code, headers=response.headers, content=response.content
        )

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)

    @property
    def calls(self):
        return len(self.requests)

    def form(self, index=-1):
        return dict(parse_qsl(self.requests[index].content.decode()))


@pytest.fixture
def provider():
    return FakeProvider()


def token_response(access_token="access-1", refresh_token="refresh-1", expires_in=3600):
    body = {"access_token": access_token, "token_type": "Bearer"}
    if refresh_token is not None:
        body["refresh_token"] = refresh_token
    if expires_in is not None:
        body["expires_in"] = expires_in
    return httpx.Response(200, json=body)


@pytest.fixture
def token_json():
    return token_response


# ============================================================================
# Seed data
# ============================================================================

@pytest_asyncio.fixture
async def user(db_session):
    user = User(email="owner@example.com")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def oauth_type(db_session):
    destination_type = DestinationType(
        name="GoogleDrive",
        requires_oauth=True,
        oauth_config={
            "auth_url": "https://accounts.example.com/o/oauth2/auth",
            "token_url": "https://accounts.example.com/token",
            "required_scopes": ["drive.file", "offline_access"],
        },
    )
    db_session.add(destination_type)
    await db_session.commit()
    return destination_type


@pytest_asyncio.fixture
async def oauth_destination(db_session, user, oauth_type, cipher):
    credentials = DestinationCredentials.from_plain(
        {
            "clientId": "client-123",
            "clientSecret": "client-secret-xyz",
            "redirectUri": "https://app.example.com/oauth/callback",
            "folderId": "folder-1",
        },
        cipher,
    )
    destination = Destination(
        user_id=user.id,
        destination_type=oauth_type,
        file_format="json",
        credentials=credentials.to_storage(),
    )
    db_session.add(destination)
    await db_session.commit()
    return destination


@pytest.fixture
def authorize_destination(db_session, cipher):
    """Put a destination straight into AUTHORIZED with the given tokens"""

    async def _authorize(destination, access_token="access-0", refresh_token="refresh-0",
                         expires_in=timedelta(hours=1)):
        credentials = DestinationCredentials.from_storage(destination.credentials)
        credentials.secrets.access_token = cipher.encrypt(access_token)
        credentials.secrets.refresh_token = (
            cipher.encrypt(refresh_token) if refresh_token else None
        )
        credentials.token_expires_at = utcnow() + expires_in
        credentials.status = CredentialStatus.AUTHORIZED
        destination.credentials = credentials.to_storage()
        await db_session.commit()
        return destination

    return _authorize


@pytest_asyncio.fixture
async def source(db_session, user):
    orders = SourceApi(name="orders", endpoint="orders")
    source = Source(
        user_id=user.id,
        credentials={"shopName": "demo-shop", "accessToken": "shpat_test"},
    )
    source.selected_apis.append(
        SourceSelectedApi(api=orders, selected_fields=["id", "created_at", "total_price"])
    )
    db_session.add(source)
    await db_session.commit()
    return source


@pytest_asyncio.fixture
async def schedule(db_session, user, source, oauth_destination):
    schedule = Schedule(
        user_id=user.id,
        source_id=source.id,
        destination=oauth_destination,
        frequency=Frequency.DAILY,
        time_of_day=time(9, 0),
    )
    db_session.add(schedule)
    await db_session.commit()
    return schedule


@pytest.fixture
def mock_orders():
    """Records as the source client returns them"""
    return {
        "orders": [
            {"id": 1001, "created_at": "2024-01-15T10:00:00Z", "total_price": "99.90"},
            {"id": 1002, "created_at": "2024-01-15T11:00:00Z", "total_price": "19.99"},
        ]
    }
