"""Rich output formatting for the Luisterslim CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from quota_engine.catalog import PlanCatalog
    from quota_engine.quota import UsageSnapshot
    from quota_engine.reconciliation import ReconciliationReport


def _usage_colour(used_ms: int, quota_ms: int) -> str:
    if quota_ms <= 0 or used_ms >= quota_ms:
        return "red"
    if used_ms * 10 >= quota_ms * 8:
        return "yellow"
    return "green"


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


def display_catalog(console: Console, catalog: PlanCatalog) -> None:
    """Render plans and top-up packs as two tables."""
    plans = Table(title="Plans", show_lines=False)
    plans.add_column("Code", style="bold")
    plans.add_column("Name")
    plans.add_column("Minutes / month", justify="right")
    plans.add_column("Purchasable", justify="center")

    for plan in catalog.get_plans():
        marker = " (default)" if plan.is_default else ""
        plans.add_row(
            plan.code + marker,
            plan.name,
            str(plan.quota_minutes),
            "[green]yes[/green]" if plan.purchasable else "[dim]no[/dim]",
        )
    console.print(plans)

    top_ups = Table(title="Top-ups", show_lines=False)
    top_ups.add_column("Id", style="bold")
    top_ups.add_column("Label")
    top_ups.add_column("Minutes", justify="right")
    top_ups.add_column("Purchasable", justify="center")

    for top_up in catalog.get_top_ups():
        top_ups.add_row(
            top_up.top_up_id,
            top_up.label,
            str(top_up.minutes_granted),
            "[green]yes[/green]" if top_up.purchasable else "[dim]no[/dim]",
        )
    console.print(top_ups)


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


def display_usage_snapshot(console: Console, snapshot: UsageSnapshot) -> None:
    """Render one account's quota and usage for the current period.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    snapshot:
        The usage snapshot to display.
    """
    colour = _usage_colour(snapshot.used_ms, snapshot.quota_ms)
    lines = [
        f"[bold]Account:[/bold]   {snapshot.account_id}",
        f"[bold]Plan:[/bold]      {snapshot.plan_name} ({snapshot.plan_code})",
        f"[bold]Period:[/bold]    {snapshot.period_id}  {snapshot.period_starts_at} -> {snapshot.period_ends_at}",
        f"[bold]Quota:[/bold]     {snapshot.quota_minutes} min "
        f"({snapshot.base_quota_minutes} base + {snapshot.bonus_minutes} top-up)",
        f"[bold]Used:[/bold]      [{colour}]{snapshot.used_minutes} min[/{colour}]",
        f"[bold]Remaining:[/bold] {snapshot.remaining_minutes} min",
    ]
    console.print(Panel("\n".join(lines), title="Usage", border_style="blue"))


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def display_reconciliation_report(console: Console, report: ReconciliationReport) -> None:
    """Render the reconciliation summary, unmatched artifacts and drifted periods."""
    scope = report.account_id or "all accounts"
    status = "[green]consistent[/green]" if report.consistent else "[yellow]findings[/yellow]"
    console.print(
        Panel(
            f"[bold]Scope:[/bold]     {scope}\n"
            f"[bold]Generated:[/bold] {report.generated_at}\n"
            f"[bold]Artifacts:[/bold] {report.artifacts_checked} checked, "
            f"{report.unmatched_artifact_count} without usage event\n"
            f"[bold]Status:[/bold]    {status}",
            title="Ledger Reconciliation",
            border_style="blue",
        )
    )

    if report.unmatched_artifacts:
        table = Table(title="Artifacts without usage event")
        table.add_column("Artifact", style="bold")
        table.add_column("Account")
        table.add_column("Duration (ms)", justify="right")
        table.add_column("Received")
        for artifact in report.unmatched_artifacts:
            table.add_row(
                artifact.artifact_id,
                artifact.account_id,
                str(artifact.duration_ms),
                artifact.created_at,
            )
        console.print(table)

    if report.drifted_periods:
        table = Table(title="[red]Period counter drift[/red]")
        table.add_column("Account", style="bold")
        table.add_column("Period")
        table.add_column("Counter (ms)", justify="right")
        table.add_column("Events (ms)", justify="right")
        table.add_column("Difference", justify="right", style="red")
        for drift in report.drifted_periods:
            table.add_row(
                drift.account_id,
                drift.period_id,
                str(drift.used_ms),
                str(drift.event_ms),
                f"{drift.difference_ms:+d}",
            )
        console.print(table)
