"""Idempotent batch repair of rows missing a required field.

``reconcile_schema`` fills a NULL (or empty) column on every row of a
collection, committing in sequential batches of at most 500 rows.  Each
batch re-selects rows that are still missing the field, so an interrupted
run is finished simply by running it again, and a run over an already
reconciled collection changes nothing.  ``dry_run`` only counts.

The canonical use is assigning ``agency_id`` to rows created before the
platform became multi-tenant; in that case the value defaults to the
oldest agency.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy import Column, String, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from travelpoint_core.errors import FailedPrecondition, InvalidArgument
from travelpoint_core.state.repository import AgencyRepository
from travelpoint_core.state.tables import (
    Base,
    BookingTable,
    GroupTable,
    PaymentRequestTable,
    PaymentTable,
    UserTable,
)

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 500

# Collections that may carry legacy rows without a tenant.
RECONCILE_TARGETS: dict[str, type[Base]] = {
    "groups": GroupTable,
    "bookings": BookingTable,
    "payments": PaymentTable,
    "payment_requests": PaymentRequestTable,
    "users": UserTable,
}

# Former collection names still accepted on the command line.
_COLLECTION_ALIASES: dict[str, str] = {
    "families": "bookings",
    "paymentRequests": "payment_requests",
}


class ReconcileReport(BaseModel):
    """Outcome of one reconcile run."""

    collection: str
    field: str
    value: str | None = None
    scanned_missing: int = Field(default=0, description="Rows missing the field when the run started.")
    updated: int = Field(default=0, description="Rows repaired by committed batches.")
    batches_committed: int = 0
    dry_run: bool = False
    error: str | None = Field(default=None, description="Failure that aborted the run, if any.")

    @property
    def remaining(self) -> int:
        return max(self.scanned_missing - self.updated, 0)

    @property
    def ok(self) -> bool:
        return self.error is None


def resolve_collection(collection: str) -> str:
    """Return the canonical collection name or raise :class:`InvalidArgument`."""
    name = _COLLECTION_ALIASES.get(collection, collection)
    if name not in RECONCILE_TARGETS:
        raise InvalidArgument(
            f"Unknown collection '{collection}'. Valid: {sorted(RECONCILE_TARGETS)}",
            public_message="Unknown collection",
        )
    return name


def _resolve_column(table: type[Base], field: str) -> Column[Any]:
    columns = table.__table__.c
    if field not in columns:
        raise InvalidArgument(
            f"'{field}' is not a column of {table.__tablename__}",
            public_message="Unknown field",
        )
    column = columns[field]
    if column.primary_key or not column.nullable:
        raise InvalidArgument(
            f"'{field}' on {table.__tablename__} can never be missing",
            public_message="Field cannot be reconciled",
        )
    if not isinstance(column.type, String):
        raise InvalidArgument(
            f"'{field}' on {table.__tablename__} is not a text field",
            public_message="Only text fields can be reconciled",
        )
    return column


async def _default_value(session: AsyncSession, field: str) -> str:
    if field != "agency_id":
        raise InvalidArgument(
            f"A value is required to reconcile '{field}'",
            public_message="A value is required",
        )
    agency = await AgencyRepository(session).get_oldest()
    if agency is None:
        raise FailedPrecondition("No agency exists to assign orphaned rows to")
    return agency.id


async def _require_agency(session: AsyncSession, agency_id: str) -> None:
    if await AgencyRepository(session).get(agency_id) is None:
        raise FailedPrecondition(
            f"Agency '{agency_id}' does not exist",
            public_message="Unknown agency",
        )


async def reconcile_schema(
    session_factory: async_sessionmaker[AsyncSession],
    collection: str,
    field: str,
    value: str | None = None,
    *,
    batch_size: int = MAX_BATCH_SIZE,
    dry_run: bool = False,
    log: logging.Logger | None = None,
) -> ReconcileReport:
    """Fill *field* on every row of *collection* where it is missing.

    Parameters
    ----------
    session_factory:
        Factory producing sessions; each batch runs in its own session.
    collection:
        Registered collection name (see :data:`RECONCILE_TARGETS`).
    field:
        Nullable text column to fill.
    value:
        Value to write.  Defaults to the oldest agency for ``agency_id``.
    batch_size:
        Rows per committed batch, between 1 and 500.
    dry_run:
        Count missing rows without writing anything.
    log:
        Logger to report progress to; defaults to this module's logger.

    Returns
    -------
    ReconcileReport
        Counts of missing and updated rows.  When a batch fails it is
        rolled back, earlier batches stay committed, and ``error`` is set.

    Raises
    ------
    InvalidArgument
        Unknown collection or field, bad batch size, or a missing or blank
        value.
    FailedPrecondition
        ``agency_id`` was requested without a value and no agency exists, or
        the given ``agency_id`` names no agency.
    """
    log = log or logger
    name = resolve_collection(collection)
    table = RECONCILE_TARGETS[name]
    column = _resolve_column(table, field)
    if not 1 <= batch_size <= MAX_BATCH_SIZE:
        raise InvalidArgument(
            f"batch_size must be between 1 and {MAX_BATCH_SIZE}, got {batch_size}",
            public_message="Invalid batch size",
        )
    if value is not None and not value.strip():
        raise InvalidArgument(
            f"Refusing to write a blank value into {name}.{field}",
            public_message="Value cannot be blank",
        )

    pk = next(iter(table.__table__.primary_key.columns))
    missing = or_(column.is_(None), column == "")
    version_col = table.__mapper__.version_id_col

    async with session_factory() as session:
        count_result = await session.execute(select(func.count()).select_from(table).where(missing))
        scanned = int(count_result.scalar_one())
        if value is not None and field == "agency_id":
            await _require_agency(session, value)
        if value is None and scanned and not dry_run:
            value = await _default_value(session, field)

    report = ReconcileReport(collection=name, field=field, value=value, scanned_missing=scanned, dry_run=dry_run)
    if dry_run or scanned == 0:
        log.info("reconcile %s.%s: %d row(s) missing (dry_run=%s)", name, field, scanned, dry_run)
        return report

    values: dict[str, object] = {field: value}
    if version_col is not None:
        values[version_col.key] = version_col + 1

    while True:
        async with session_factory() as session:
            try:
                id_result = await session.execute(select(pk).where(missing).order_by(pk).limit(batch_size))
                ids: Sequence[object] = list(id_result.scalars().all())
                if not ids:
                    break
                result = await session.execute(
                    update(table.__table__).where(pk.in_(ids)).where(missing).values(values)
                )
                changed = result.rowcount
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                log.error(
                    "reconcile %s.%s aborted after %d batch(es), %d row(s): %s",
                    name,
                    field,
                    report.batches_committed,
                    report.updated,
                    exc,
                )
                report.error = str(exc)
                break

        report.updated += changed
        report.batches_committed += 1
        log.info("reconcile %s.%s: batch %d committed (%d rows)", name, field, report.batches_committed, changed)
        if len(ids) < batch_size:
            break

    return report


async def verify_schema(
    session_factory: async_sessionmaker[AsyncSession],
    field: str = "agency_id",
) -> list[ReconcileReport]:
    """Dry-run :func:`reconcile_schema` over every registered collection."""
    reports: list[ReconcileReport] = []
    for name, table in RECONCILE_TARGETS.items():
        if field not in table.__table__.c:
            continue
        reports.append(await reconcile_schema(session_factory, name, field, dry_run=True))
    return reports
