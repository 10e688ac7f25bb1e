"""Shared fixtures for travelpoint_core tests.

Database fixtures use an in-memory SQLite database via aiosqlite so the
suite runs without a PostgreSQL instance.  ``JSONB`` columns fall back to
``JSON`` through the dialect variant declared on the tables.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import date
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from travelpoint_core.ledger.models import CabinAccount, PaymentDeadline
from travelpoint_core.state.database import create_tables, get_local_engine, make_session_factory


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Provide a session factory bound to a fresh in-memory database."""
    engine = get_local_engine(":memory:")
    await create_tables(engine)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def async_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture()
def today() -> date:
    return date(2026, 3, 1)


@pytest.fixture()
def cabin() -> CabinAccount:
    """A 1000 + 100 cabin with three 275 instalments (cumulative 275/550/825)."""
    return CabinAccount(
        cabin_number="8123",
        subtotal_cad=Decimal("1000.00"),
        gratuities_cad=Decimal("100.00"),
        payment_deadlines=[
            PaymentDeadline(label="Initial deposit", due_date=date(2026, 4, 1), amount_cad=Decimal("275.00")),
            PaymentDeadline(label="Second payment", due_date=date(2026, 6, 1), amount_cad=Decimal("275.00")),
            PaymentDeadline(label="Final payment", due_date=date(2026, 8, 1), amount_cad=Decimal("275.00")),
        ],
    )
