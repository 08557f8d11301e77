"""Reconciliation endpoint: ledger consistency for the calling account."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Query
from quota_engine.reconciliation import LedgerReconciler, ReconciliationReport

from api.dependencies import AccountIdDep, SessionDep

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


@router.get("/report", response_model=ReconciliationReport)
async def get_reconciliation_report(
    session: SessionDep,
    account_id: AccountIdDep,
    since: datetime | None = Query(default=None, description="Only check artifacts received after this instant"),
    limit: int = Query(default=100, ge=1, le=1000),
) -> ReconciliationReport:
    """List artifacts without a usage event and periods whose counter drifts from its events."""
    return await LedgerReconciler(session, account_id=account_id).build_report(since=since, limit=limit)
