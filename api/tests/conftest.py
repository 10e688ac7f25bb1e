"""Shared fixtures for TravelPoint API tests.

Provides an in-memory SQLite session factory, settings with billing
enabled, a FastAPI app wired to both through dependency overrides, an
async httpx client and bearer-token helpers.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from datetime import UTC, date, datetime

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Set JWT_SECRET env var BEFORE importing application modules so the
# AuthenticationMiddleware verifies tokens with a deterministic secret.
_TEST_JWT_SECRET = "test-secret-key-for-travelpoint-tests"
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from travelpoint_core.state.database import create_tables, get_local_engine, make_session_factory  # noqa: E402
from travelpoint_core.state.repository import AgencyRepository, GroupRepository  # noqa: E402

from api.config import APISettings  # noqa: E402
from api.dependencies import get_session_factory, get_settings  # noqa: E402
from api.main import create_app  # noqa: E402
from api.security import TokenManager  # noqa: E402

AGENCY_ID = "agency-1"
OTHER_AGENCY_ID = "agency-2"
APP_URL = "https://app.travelpoint.test"

_token_manager = TokenManager(SecretStr(os.environ["JWT_SECRET"]))


def make_auth_headers(
    role: str = "owner",
    *,
    agency_id: str | None = AGENCY_ID,
    sub: str = "user-owner",
    email: str | None = "owner@agency.test",
) -> dict[str, str]:
    """Return ``Authorization`` headers carrying a valid token."""
    token = _token_manager.generate_token(sub, email=email, agency_id=agency_id, role=role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def auth_headers():
    """Return the :func:`make_auth_headers` factory."""
    return make_auth_headers


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return settings with billing enabled and fake Stripe keys."""
    return APISettings(
        database_url="sqlite+aiosqlite://",
        cors_origins=["http://localhost:3000"],
        app_url=APP_URL,
        jwt_secret=SecretStr(os.environ["JWT_SECRET"]),
        billing_enabled=True,
        stripe_secret_key=SecretStr("sk_test_xxx"),
        stripe_webhook_secret=SecretStr("whsec_test_xxx"),
        stripe_price_solo_groups="price_solo",
        stripe_price_pro="price_pro",
        ledger_max_retries=2,
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Provide a session factory bound to a fresh in-memory database."""
    engine = get_local_engine(":memory:")
    await create_tables(engine)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def agency(session_factory: async_sessionmaker[AsyncSession]) -> str:
    """Seed two agencies and return the id of the first."""
    async with session_factory() as session:
        agencies = AgencyRepository(session)
        await agencies.create(
            "Cruceros del Sol",
            agency_id=AGENCY_ID,
            contact_email="hola@sol.test",
            created_at=datetime(2024, 1, 1, tzinfo=UTC),
        )
        await agencies.create("Other Travel", agency_id=OTHER_AGENCY_ID, created_at=datetime(2024, 6, 1, tzinfo=UTC))
        await session.commit()
    return AGENCY_ID


@pytest_asyncio.fixture
async def group_id(session_factory: async_sessionmaker[AsyncSession], agency: str) -> str:
    async with session_factory() as session:
        group = await GroupRepository(session, agency).create(
            "Caribbean 2026", ship_name="Wonder of the Seas", sail_date=date(2026, 9, 1)
        )
        await session.commit()
        return group.id


# ---------------------------------------------------------------------------
# FastAPI app and client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(test_settings: APISettings, session_factory: async_sessionmaker[AsyncSession]):
    """Create a FastAPI app bound to the in-memory database and test settings."""
    application = create_app()
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
