"""Shared fixtures for CLI tests.

Commands open their own engine from ``--database-url``, so the fixtures
build a throwaway SQLite file under ``tmp_path`` and seed it through the
travelpoint_core repositories before the command runs.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from pathlib import Path

import pytest
from travelpoint_core.state.database import create_tables, get_local_engine, make_session_factory
from travelpoint_core.state.repository import AgencyRepository
from travelpoint_core.state.tables import GroupTable


async def _seed(db_path: Path, orphaned_groups: int) -> None:
    engine = get_local_engine(db_path)
    try:
        await create_tables(engine)
        factory = make_session_factory(engine)
        async with factory() as session:
            repo = AgencyRepository(session)
            await repo.create("Legacy Cruises", agency_id="agency-legacy", created_at=datetime(2023, 1, 1, tzinfo=UTC))
            await repo.create("Harbour Travel", agency_id="agency-new", created_at=datetime(2025, 6, 1, tzinfo=UTC))
            for i in range(orphaned_groups):
                session.add(GroupTable(id=f"orphan-{i:03d}", agency_id=None, name=f"Sailing {i}"))
            session.add(GroupTable(id="owned-001", agency_id="agency-new", name="Owned sailing"))
            await session.commit()
    finally:
        await engine.dispose()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "state.db"


@pytest.fixture()
def database_url(db_path: Path) -> str:
    """URL of an empty (table-less) database file."""
    return f"sqlite+aiosqlite:///{db_path}"


@pytest.fixture()
def seeded_url(db_path: Path, database_url: str) -> str:
    """URL of a database with two agencies and three groups missing ``agency_id``."""
    asyncio.run(_seed(db_path, orphaned_groups=3))
    return database_url
