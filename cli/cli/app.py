"""Luisterslim operator CLI -- Typer-based maintenance interface.

Provides commands to create the ledger schema, inspect the plan catalog,
set per-plan quota overrides, show an account's usage and run the ledger
reconciliation report.  Human-readable output goes to *stderr* via Rich;
``--json`` mode writes machine-readable JSON to *stdout*.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any

import typer
from rich.console import Console

from cli.display import (
    display_catalog,
    display_reconciliation_report,
    display_usage_snapshot,
)

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="luisterslim",
    help="Luisterslim - usage quota and billing ledger maintenance",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str | None = None


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Ledger database URL (defaults to LUISTERSLIM_DATABASE_URL).",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _settings() -> Any:
    from quota_engine.config import load_settings

    settings = load_settings()
    if _database_url:
        settings = settings.model_copy(update={"database_url": _database_url})
    return settings


def _emit_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


async def _with_session(settings: Any, work: Any) -> Any:
    """Open an engine for *settings*, run ``work(session)`` in one transaction and dispose."""
    from quota_engine.state.database import get_engine, get_session

    engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    try:
        async with get_session(engine) as session:
            return await work(session)
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command(name="init-db")
def init_db() -> None:
    """Create the ledger tables (SQLite local mode)."""
    from quota_engine.state.database import get_engine
    from quota_engine.state.sqlite_adapter import create_local_tables

    settings = _settings()
    if not settings.database_url.startswith("sqlite"):
        console.print(
            "[red]init-db only manages SQLite ledgers; "
            "create the PostgreSQL schema from quota_engine.state.tables.[/red]"
        )
        raise typer.Exit(code=1)

    async def _run() -> None:
        engine = get_engine(settings.database_url)
        try:
            await create_local_tables(engine)
        finally:
            await engine.dispose()

    asyncio.run(_run())
    console.print(f"[green]Ledger tables ready[/green] ({settings.database_url})")


@app.command(name="catalog")
def show_catalog() -> None:
    """List plans and top-up packs."""
    from quota_engine.catalog import build_catalog
    from quota_engine.config import load_catalog_settings

    catalog = build_catalog(load_catalog_settings())
    if _json_output:
        _emit_json(
            {
                "plans": [
                    {
                        "code": p.code,
                        "name": p.name,
                        "quota_minutes": p.quota_minutes,
                        "purchasable": p.purchasable,
                        "is_default": p.is_default,
                    }
                    for p in catalog.get_plans()
                ],
                "top_ups": [
                    {
                        "top_up_id": t.top_up_id,
                        "minutes_granted": t.minutes_granted,
                        "purchasable": t.purchasable,
                    }
                    for t in catalog.get_top_ups()
                ],
            }
        )
        return
    display_catalog(console, catalog)


@app.command(name="set-plan-quota")
def set_plan_quota(
    plan_code: str = typer.Argument(..., help="Plan code, e.g. 'basic'."),
    minutes: int = typer.Argument(..., help="Monthly quota in minutes; 0 removes the override's effect."),
) -> None:
    """Override a plan's monthly quota.

    The override applies to accounts the next time their subscription is
    synced; existing assignments keep their stored quota until then.
    """
    from quota_engine.catalog import minutes_to_ms
    from quota_engine.state.repository import PlanQuotaOverrideRepository

    if minutes < 0:
        console.print("[red]Minutes must be zero or positive.[/red]")
        raise typer.Exit(code=1)

    code = plan_code.strip().lower()

    async def _work(session: Any) -> None:
        await PlanQuotaOverrideRepository(session).set_quota_ms(code, minutes_to_ms(minutes))

    asyncio.run(_with_session(_settings(), _work))
    if _json_output:
        _emit_json({"plan_code": code, "monthly_quota_minutes": minutes})
    else:
        console.print(f"Quota override for [bold]{code}[/bold] set to {minutes} minutes")


@app.command(name="usage")
def show_usage(
    account_id: str = typer.Argument(..., help="Account to inspect."),
) -> None:
    """Show the current period's quota and usage of an account."""
    from quota_engine.catalog import build_catalog
    from quota_engine.config import load_catalog_settings
    from quota_engine.errors import UnprovisionedAccountError
    from quota_engine.quota import QuotaReconciler

    settings = _settings()
    catalog = build_catalog(load_catalog_settings())

    async def _work(session: Any) -> Any:
        reconciler = QuotaReconciler(
            session,
            catalog,
            account_id=account_id,
            top_up_window_days=settings.top_up_window_days,
        )
        return await reconciler.get_usage_snapshot()

    try:
        snapshot = asyncio.run(_with_session(settings, _work))
    except UnprovisionedAccountError:
        console.print(f"[red]Account {account_id} has no plan assignment.[/red]")
        raise typer.Exit(code=1)

    if _json_output:
        _emit_json(snapshot.model_dump())
    else:
        display_usage_snapshot(console, snapshot)


@app.command(name="reconcile")
def reconcile(
    account_id: str | None = typer.Option(None, "--account", help="Limit the report to one account."),
    since: datetime | None = typer.Option(None, "--since", help="Only check artifacts received after this instant."),
    limit: int = typer.Option(100, "--limit", help="Maximum unmatched artifacts listed."),
) -> None:
    """Report artifacts without usage events and drifting period counters.

    Exits with status 2 when period drift is found.
    """
    from quota_engine.reconciliation import LedgerReconciler

    async def _work(session: Any) -> Any:
        return await LedgerReconciler(session, account_id=account_id).build_report(since=since, limit=limit)

    report = asyncio.run(_with_session(_settings(), _work))
    if _json_output:
        _emit_json(report.model_dump())
    else:
        display_reconciliation_report(console, report)

    if report.drifted_periods:
        raise typer.Exit(code=2)
