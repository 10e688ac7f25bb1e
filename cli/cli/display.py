"""Rich output formatting for the TravelPoint CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from travelpoint_core.state.reconcile import ReconcileReport


def _outcome(report: ReconcileReport) -> str:
    """Return a colour-coded one-word outcome for a report."""
    if report.error:
        return "[red]FAILED[/red]"
    if report.dry_run:
        return "[yellow]MISSING[/yellow]" if report.scanned_missing else "[green]OK[/green]"
    if report.updated < report.scanned_missing:
        return "[yellow]PARTIAL[/yellow]"
    return "[green]REPAIRED[/green]" if report.updated else "[green]OK[/green]"


# ---------------------------------------------------------------------------
# Reconcile
# ---------------------------------------------------------------------------


def display_reconcile_report(console: Console, report: ReconcileReport) -> None:
    """Render the result of a single reconcile run.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    report:
        The report returned by ``reconcile_schema``.
    """
    mode = "dry run" if report.dry_run else "write"
    lines = [
        f"[bold]Collection:[/bold] {report.collection}",
        f"[bold]Field:[/bold]      {report.field}",
        f"[bold]Value:[/bold]      {report.value if report.value is not None else '-'}",
        f"[bold]Mode:[/bold]       {mode}",
        "",
        f"Missing at start:  {report.scanned_missing}",
        f"Rows updated:      {report.updated}",
        f"Batches committed: {report.batches_committed}",
        f"Outcome:           {_outcome(report)}",
    ]
    if report.error:
        lines += ["", f"[red]Error:[/red] {report.error}"]

    border = "red" if report.error else "blue"
    console.print(Panel("\n".join(lines), title="Reconcile Schema", border_style=border, expand=False))


def display_verify_results(console: Console, reports: list[ReconcileReport]) -> None:
    """Render a per-collection table of rows missing the verified field."""
    if not reports:
        console.print("[dim]No collections carry this field.[/dim]")
        return

    field = reports[0].field
    table = Table(title=f"Rows missing '{field}'", show_lines=False, pad_edge=True, expand=False)
    table.add_column("Collection", style="bold")
    table.add_column("Missing", justify="right")
    table.add_column("Status")

    for report in reports:
        table.add_row(report.collection, str(report.scanned_missing), _outcome(report))

    console.print(table)

    total = sum(r.scanned_missing for r in reports)
    if total:
        console.print(f"[yellow]{total} row(s) need reconciling.[/yellow]")
    else:
        console.print("[green]All collections are consistent.[/green]")


# ---------------------------------------------------------------------------
# Agencies
# ---------------------------------------------------------------------------


def display_agency(console: Console, agency: dict[str, Any]) -> None:
    """Render an agency's plan and billing status."""
    table = Table(show_header=False, expand=False, box=None)
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_row("Agency", f"{agency['name']} ({agency['id']})")
    table.add_row("Billing status", agency["billing_status"])
    table.add_row("Subscription plan", agency.get("billing_plan_key") or "-")
    table.add_row("Plan override", agency.get("plan_override") or "-")
    table.add_row("Effective plan", f"[cyan]{agency['effective_plan']}[/cyan]")
    console.print(table)
