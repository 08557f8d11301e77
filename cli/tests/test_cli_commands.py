"""Tests for the luisterslim CLI commands."""

from __future__ import annotations

import json
from typing import Any

from cli.app import app
from quota_engine.catalog import build_catalog
from quota_engine.config import CatalogSettings
from quota_engine.quota import QuotaReconciler
from quota_engine.state.repository import (
    PlanAssignmentRepository,
    PlanQuotaOverrideRepository,
    UsageLedgerRepository,
)
from typer.testing import CliRunner

ACCOUNT = "acct-cli"


def _invoke(runner: CliRunner, database_url: str, *args: str) -> Any:
    return runner.invoke(app, ["--database-url", database_url, *args])


async def _provision(session: Any) -> None:
    await PlanAssignmentRepository(session, ACCOUNT).ensure_default("starter", 900 * 60_000, renew_day=1)


async def _noop(session: Any) -> None:
    return None


# ---------------------------------------------------------------------------
# init-db
# ---------------------------------------------------------------------------


class TestInitDb:
    def test_creates_sqlite_ledger(self, runner: CliRunner, database_url: str, seed) -> None:
        result = _invoke(runner, database_url, "init-db")
        assert result.exit_code == 0, result.output
        assert "Ledger tables ready" in result.output

        async def _read(session: Any) -> int | None:
            return await PlanQuotaOverrideRepository(session).get_quota_ms("free")

        assert seed(_read) is None

    def test_refuses_postgres(self, runner: CliRunner) -> None:
        result = runner.invoke(app, ["--database-url", "postgresql+asyncpg://u:p@db/ledger", "init-db"])
        assert result.exit_code == 1
        assert "SQLite" in result.output


# ---------------------------------------------------------------------------
# catalog
# ---------------------------------------------------------------------------


class TestCatalog:
    def test_json(self, runner: CliRunner) -> None:
        result = runner.invoke(app, ["--json", "catalog"])
        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert [p["code"] for p in payload["plans"]] == ["free", "starter", "pro", "team"]
        assert [t["minutes_granted"] for t in payload["top_ups"]] == [60, 180]
        assert payload["plans"][0]["is_default"] is True

    def test_table(self, runner: CliRunner) -> None:
        result = runner.invoke(app, ["catalog"])
        assert result.exit_code == 0
        assert "Plans" in result.output
        assert "topup-60" in result.output


# ---------------------------------------------------------------------------
# set-plan-quota
# ---------------------------------------------------------------------------


class TestSetPlanQuota:
    def test_sets_override(self, runner: CliRunner, database_url: str, seed) -> None:
        seed(_noop)
        result = _invoke(runner, database_url, "--json", "set-plan-quota", " PRO ", "42")
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == {"plan_code": "pro", "monthly_quota_minutes": 42}

        async def _read(session: Any) -> int | None:
            return await PlanQuotaOverrideRepository(session).get_quota_ms("pro")

        assert seed(_read) == 42 * 60_000

    def test_overwrites_override(self, runner: CliRunner, database_url: str, seed) -> None:
        seed(_noop)
        _invoke(runner, database_url, "set-plan-quota", "team", "100")
        result = _invoke(runner, database_url, "set-plan-quota", "team", "200")
        assert result.exit_code == 0
        assert "200 minutes" in result.output

        async def _read(session: Any) -> int | None:
            return await PlanQuotaOverrideRepository(session).get_quota_ms("team")

        assert seed(_read) == 200 * 60_000

    def test_negative_minutes(self, runner: CliRunner, database_url: str) -> None:
        result = _invoke(runner, database_url, "set-plan-quota", "pro", "--", "-5")
        assert result.exit_code == 1


# ---------------------------------------------------------------------------
# usage
# ---------------------------------------------------------------------------


class TestUsage:
    def test_unprovisioned(self, runner: CliRunner, database_url: str, seed) -> None:
        seed(_noop)
        result = _invoke(runner, database_url, "usage", "acct-nobody")
        assert result.exit_code == 1
        assert "no plan assignment" in result.output

    def test_snapshot_json(self, runner: CliRunner, database_url: str, seed) -> None:
        async def _work(session: Any) -> None:
            await _provision(session)
            reconciler = QuotaReconciler(session, build_catalog(CatalogSettings()), account_id=ACCOUNT)
            await reconciler.debit_usage(30 * 60_000, "tr-1")

        seed(_work)
        result = _invoke(runner, database_url, "--json", "usage", ACCOUNT)
        assert result.exit_code == 0, result.output
        snapshot = json.loads(result.stdout)
        assert snapshot["plan_code"] == "starter"
        assert snapshot["used_minutes"] == 30
        assert snapshot["remaining_minutes"] == 870

    def test_snapshot_panel(self, runner: CliRunner, database_url: str, seed) -> None:
        seed(_provision)
        result = _invoke(runner, database_url, "usage", ACCOUNT)
        assert result.exit_code == 0, result.output
        assert ACCOUNT in result.output


# ---------------------------------------------------------------------------
# reconcile
# ---------------------------------------------------------------------------


class TestReconcile:
    def test_clean_ledger(self, runner: CliRunner, database_url: str, seed) -> None:
        seed(_provision)
        result = _invoke(runner, database_url, "--json", "reconcile", "--account", ACCOUNT)
        assert result.exit_code == 0, result.output
        report = json.loads(result.stdout)
        assert report["account_id"] == ACCOUNT
        assert report["unmatched_artifact_count"] == 0
        assert report["drifted_periods"] == []

    def test_unmatched_artifacts_listed(self, runner: CliRunner, database_url: str, seed) -> None:
        async def _work(session: Any) -> None:
            await UsageLedgerRepository(session, ACCOUNT).record_artifact("tr-orphan", 5_000)

        seed(_work)
        result = _invoke(runner, database_url, "--json", "reconcile", "--limit", "10")
        assert result.exit_code == 0, result.output
        report = json.loads(result.stdout)
        assert report["unmatched_artifact_count"] == 1
        assert report["unmatched_artifacts"][0]["artifact_id"] == "tr-orphan"

    def test_drift_exits_2(self, runner: CliRunner, database_url: str, seed) -> None:
        async def _work(session: Any) -> None:
            ledger = UsageLedgerRepository(session, ACCOUNT)
            await ledger.ensure_period_row("2026-03")
            await ledger.try_debit("2026-03", 1_000, quota_ms=10_000)

        seed(_work)
        result = _invoke(runner, database_url, "reconcile", "--account", ACCOUNT)
        assert result.exit_code == 2
        assert "2026-03" in result.output
