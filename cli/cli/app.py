"""TravelPoint CLI application -- Typer-based operator interface.

Provides commands for database setup, agency plan overrides and the
idempotent reconcile-schema repair.  Human-readable output goes to
*stderr* via Rich; ``--json`` writes machine-readable results to stdout so
that scripts can compose cleanly.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import typer
from rich.console import Console
from rich.markup import escape
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from travelpoint_core.billing.plans import Plan
from travelpoint_core.billing.state_machine import effective_plan
from travelpoint_core.errors import ServiceError
from travelpoint_core.state.database import create_tables, get_engine, make_session_factory
from travelpoint_core.state.reconcile import MAX_BATCH_SIZE, ReconcileReport, reconcile_schema, verify_schema
from travelpoint_core.state.repository import AgencyRepository, billing_state_from_row
from travelpoint_core.state.tables import AgencyTable

from cli.display import display_agency, display_reconcile_report, display_verify_results

T = TypeVar("T")

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="travelpoint",
    help="TravelPoint - cruise group payments operator tooling",
    no_args_is_help=True,
)
console = Console(stderr=True)

_DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///.travelpoint/state.db"

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str = _DEFAULT_DATABASE_URL


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str = typer.Option(
        _DEFAULT_DATABASE_URL,
        "--database-url",
        help="SQLAlchemy async database URL.",
        envvar="API_DATABASE_URL",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run_with_db(fn: Callable[[async_sessionmaker[AsyncSession]], Awaitable[T]]) -> T:
    """Run *fn* against a fresh engine and dispose of the engine afterwards."""

    async def runner() -> T:
        engine = get_engine(_database_url)
        try:
            return await fn(make_session_factory(engine))
        finally:
            await engine.dispose()

    return asyncio.run(runner())


def _fail(message: str) -> typer.Exit:
    console.print(f"[red]{escape(message)}[/red]")
    return typer.Exit(code=1)


def _agency_view(row: AgencyTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "name": row.name,
        "billing_status": row.billing_status,
        "billing_plan_key": row.billing_plan_key,
        "plan_override": row.plan_key,
        "effective_plan": effective_plan(billing_state_from_row(row), row.plan_key).value,
    }


def _emit_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


# ---------------------------------------------------------------------------
# init-db / create-agency / set-plan
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create any missing tables.  Safe to run repeatedly."""

    async def _create() -> None:
        engine = get_engine(_database_url)
        try:
            await create_tables(engine)
        finally:
            await engine.dispose()

    asyncio.run(_create())
    console.print("[green]Database tables created/verified.[/green]")


@app.command("create-agency")
def create_agency(
    name: str = typer.Argument(..., help="Display name of the agency."),
    agency_id: str | None = typer.Option(None, "--id", help="Explicit agency id (generated if omitted)."),
    contact_email: str | None = typer.Option(None, "--contact-email", help="Contact email for billing."),
) -> None:
    """Create an agency."""

    async def _create(session_factory: async_sessionmaker[AsyncSession]) -> dict[str, Any]:
        async with session_factory() as session:
            row = await AgencyRepository(session).create(name, agency_id=agency_id, contact_email=contact_email)
            await session.commit()
            return _agency_view(row)

    try:
        agency = _run_with_db(_create)
    except SQLAlchemyError as exc:
        raise _fail(f"Failed to create agency: {exc}") from exc

    if _json_output:
        _emit_json(agency)
    else:
        display_agency(console, agency)


@app.command("set-plan")
def set_plan(
    agency_id: str = typer.Argument(..., help="Agency to update."),
    plan: str = typer.Argument(..., help="Plan key (trial, solo_groups, pro, enterprise) or 'none' to clear."),
) -> None:
    """Set or clear the manual plan override of an agency.

    The override applies only while the agency has no live Stripe
    subscription.
    """
    plan_key: str | None
    if plan.lower() == "none":
        plan_key = None
    else:
        try:
            plan_key = Plan(plan.lower()).value
        except ValueError:
            valid = ", ".join(p.value for p in Plan)
            raise _fail(f"Unknown plan '{plan}'. Valid plans: {valid}, none") from None

    async def _set(session_factory: async_sessionmaker[AsyncSession]) -> dict[str, Any] | None:
        async with session_factory() as session:
            row = await AgencyRepository(session).set_plan_override(agency_id, plan_key)
            if row is None:
                return None
            await session.commit()
            return _agency_view(row)

    agency = _run_with_db(_set)
    if agency is None:
        raise _fail(f"Agency '{agency_id}' not found")

    if _json_output:
        _emit_json(agency)
    else:
        display_agency(console, agency)


# ---------------------------------------------------------------------------
# reconcile-schema / verify-schema
# ---------------------------------------------------------------------------


@app.command("reconcile-schema")
def reconcile_schema_command(
    collection: str = typer.Option(..., "--collection", "-c", help="Collection (table) to repair."),
    field: str = typer.Option("agency_id", "--field", "-f", help="Field that must be present."),
    value: str | None = typer.Option(
        None,
        "--value",
        help="Value to fill in.  Defaults to the oldest agency for agency_id.",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only count rows missing the field."),
    batch_size: int = typer.Option(
        MAX_BATCH_SIZE,
        "--batch-size",
        min=1,
        max=MAX_BATCH_SIZE,
        help="Rows per committed batch.",
    ),
) -> None:
    """Fill a missing field on every row of a collection, in committed batches.

    Re-running after an interruption finishes the job; re-running after
    success changes nothing.
    """

    async def _reconcile(session_factory: async_sessionmaker[AsyncSession]) -> ReconcileReport:
        return await reconcile_schema(
            session_factory,
            collection,
            field,
            value,
            batch_size=batch_size,
            dry_run=dry_run,
        )

    try:
        report = _run_with_db(_reconcile)
    except ServiceError as exc:
        raise _fail(f"Cannot reconcile: {exc}") from exc

    if _json_output:
        _emit_json(report.model_dump())
    else:
        display_reconcile_report(console, report)

    if report.error:
        raise typer.Exit(code=1)


@app.command("verify-schema")
def verify_schema_command(
    field: str = typer.Option("agency_id", "--field", "-f", help="Field every row must carry."),
) -> None:
    """Dry-run the reconcile over every collection; exit 1 if any row is missing the field."""

    async def _verify(session_factory: async_sessionmaker[AsyncSession]) -> list[ReconcileReport]:
        return await verify_schema(session_factory, field)

    try:
        reports = _run_with_db(_verify)
    except ServiceError as exc:
        raise _fail(f"Cannot verify: {exc}") from exc

    if _json_output:
        _emit_json([r.model_dump() for r in reports])
    else:
        display_verify_results(console, reports)

    if any(r.scanned_missing for r in reports):
        raise typer.Exit(code=1)
