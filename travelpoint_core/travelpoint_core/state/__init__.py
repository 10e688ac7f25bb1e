"""Persistence layer: ORM tables, engine helpers, repositories, reconciler."""

from __future__ import annotations

from travelpoint_core.state.database import create_tables, get_engine, get_local_engine, get_session, make_session_factory
from travelpoint_core.state.tables import Base

__all__ = [
    "Base",
    "create_tables",
    "get_engine",
    "get_local_engine",
    "get_session",
    "make_session_factory",
]
