"""FastAPI dependency injection for settings, database sessions and caller identity."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Callable
from typing import Annotated

from fastapi import Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from travelpoint_core.billing.plans import PLAN_LABELS, Feature, get_required_plan, is_feature_enabled
from travelpoint_core.errors import FailedPrecondition, NotFound, PermissionDenied, Unauthenticated
from travelpoint_core.state.database import get_engine, make_session_factory
from travelpoint_core.state.repository import AgencyRepository

from api.config import APISettings, load_api_settings
from api.services.billing_service import effective_plan_for

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = make_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by operations that manage their own transactions (the webhook,
    and ledger writes that retry on version conflicts).
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_db_session(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on exception.

    Tenant isolation is enforced by the repositories, which all take the
    caller's ``agency_id``; this session itself is not tenant-scoped.
    """
    session = session_factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Caller identity (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


class Caller(BaseModel):
    """Authenticated caller as seen by route handlers and services."""

    uid: str
    email: str | None = None
    agency_id: str | None = None
    role: str = "agent"


def get_caller(request: Request) -> Caller:
    """Build the :class:`Caller` from ``request.state``."""
    sub = getattr(request.state, "sub", None)
    if sub is None:
        raise Unauthenticated("No caller identity on request")
    return Caller(
        uid=sub,
        email=getattr(request.state, "email", None),
        agency_id=getattr(request.state, "agency_id", None),
        role=getattr(request.state, "role", None) or "agent",
    )


CallerDep = Annotated[Caller, Depends(get_caller)]


def get_agency_id(caller: CallerDep) -> str:
    """Return the caller's agency or fail with ``FailedPrecondition``."""
    if not caller.agency_id:
        raise FailedPrecondition(
            f"User {caller.uid} is not linked to an agency",
            public_message="No agency is linked to this account",
        )
    return caller.agency_id


AgencyDep = Annotated[str, Depends(get_agency_id)]


def get_user_identity(caller: CallerDep) -> str:
    return caller.uid


UserDep = Annotated[str, Depends(get_user_identity)]

# ---------------------------------------------------------------------------
# Plan feature gating
# ---------------------------------------------------------------------------


def require_feature(feature: Feature) -> Callable[..., None]:
    """Return a FastAPI dependency that enforces a plan feature gate.

    Resolves the agency's effective plan and raises ``PermissionDenied``
    with an upgrade hint if *feature* is not included.

    Usage::

        @router.post("/some-endpoint")
        async def some_endpoint(
            ...,
            _gate: None = Depends(require_feature(Feature.BULK_IMPORT)),
        ):
            ...
    """

    async def _gate(session: SessionDep, agency_id: AgencyDep) -> None:
        agency = await AgencyRepository(session).get(agency_id)
        if agency is None:
            raise NotFound(f"Agency {agency_id} not found", public_message="Agency not found")

        plan = effective_plan_for(agency)
        if not is_feature_enabled(plan, feature):
            required = get_required_plan(feature)
            raise PermissionDenied(
                f"Feature '{feature.value}' is not on plan '{plan.value}'",
                public_message=(
                    f"Feature '{feature.value}' requires the {PLAN_LABELS[required]} plan or above. "
                    "Please upgrade to access this feature."
                ),
            )

    return _gate  # type: ignore[return-value]
