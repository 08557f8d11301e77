"""Usage endpoints: the quota snapshot and artifact debits."""

from __future__ import annotations

import logging

from fastapi import APIRouter
from quota_engine.catalog import ms_to_minutes
from quota_engine.duration import parse_audio_length_to_ms
from quota_engine.errors import QuotaExceededError
from quota_engine.period import to_utc_iso
from quota_engine.quota import DebitResult, QuotaReconciler
from quota_engine.state.repository import UsageLedgerRepository

from api.dependencies import AccountDep, CatalogDep, SessionDep, SettingsDep
from api.schemas import DebitRequest, UsageDetail, UsagePlanInfo, UsageResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage", tags=["usage"])


@router.get("", response_model=UsageResponse)
async def get_usage(
    session: SessionDep,
    catalog: CatalogDep,
    settings: SettingsDep,
    account: AccountDep,
) -> UsageResponse:
    """Return the current period's quota, usage and per-transcript debits."""
    reconciler = QuotaReconciler(
        session,
        catalog,
        account_id=account.account_id,
        top_up_window_days=settings.top_up_window_days,
    )
    snapshot = await reconciler.get_usage_snapshot()
    events = await UsageLedgerRepository(session, account.account_id).list_events(snapshot.period_id)

    plan = catalog.find_plan(snapshot.plan_code)
    plan_info = UsagePlanInfo(
        code=snapshot.plan_code,
        name=plan.name if plan is not None else snapshot.plan_code,
        quota_minutes=ms_to_minutes(snapshot.base_quota_ms),
        description=plan.description if plan is not None else "",
    )
    used_percentage = (
        min(100.0, round(snapshot.used_ms / snapshot.quota_ms * 100, 1)) if snapshot.quota_ms > 0 else 100.0
    )

    return UsageResponse(
        usage=snapshot,
        plan=plan_info,
        used_percentage=used_percentage,
        details=[
            UsageDetail(
                event_id=e.event_id,
                transcript_id=e.transcript_id,
                delta_ms=int(e.delta_ms),
                minutes=ms_to_minutes(e.delta_ms),
                created_at=to_utc_iso(e.created_at),
            )
            for e in events
        ],
    )


@router.post("/debits", response_model=DebitResult)
async def debit_usage(
    body: DebitRequest,
    session: SessionDep,
    catalog: CatalogDep,
    settings: SettingsDep,
    account: AccountDep,
) -> DebitResult:
    """Debit the duration of a transcribed artifact from the account's quota.

    The artifact receipt is stored before the debit and kept whether or not
    the debit succeeds.  A refused debit returns 402.
    """
    delta_ms = body.delta_ms if body.delta_ms is not None else parse_audio_length_to_ms(body.audio_length)
    if delta_ms <= 0:
        raise ValueError(f"Unparseable audio length: {body.audio_length!r}")

    ledger = UsageLedgerRepository(session, account.account_id)
    if not await ledger.record_artifact(body.transcript_id, delta_ms):
        logger.info("Artifact %s resubmitted for debit by account %s", body.transcript_id, account.account_id)

    reconciler = QuotaReconciler(
        session,
        catalog,
        account_id=account.account_id,
        top_up_window_days=settings.top_up_window_days,
    )
    result = await reconciler.debit_usage(delta_ms, body.transcript_id, event_id=body.event_id)
    if not result.accepted:
        # Keep the artifact receipt; the rejection itself writes nothing.
        await session.commit()
        raise QuotaExceededError(
            account.account_id,
            requested_ms=delta_ms,
            remaining_ms=result.remaining_ms,
            quota_ms=result.quota_ms,
        )
    return result
