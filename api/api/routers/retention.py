"""Retention endpoints: view and change how long transcripts are kept."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException
from quota_engine.audit import record_audit_event
from quota_engine.period import to_utc_iso
from quota_engine.retention import (
    RetentionOption,
    canonical_plan_name,
    find_option,
    option_locked_for_plan,
    option_payload_for_plan,
    select_option_for_plan,
    to_canonical_plan,
)
from quota_engine.state.repository import PlanAssignmentRepository, RetentionSettingRepository
from quota_engine.state.tables import RetentionSettingTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import AccountDep, SessionDep
from api.schemas import RetentionOptionResponse, RetentionResponse, RetentionUpdateRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/retention", tags=["retention"])


async def _plan_code(session: AsyncSession, account_id: str) -> str:
    assignment = await PlanAssignmentRepository(session, account_id).get()
    if assignment is None:
        raise HTTPException(status_code=409, detail="Account has no plan assignment")
    return assignment.plan_code


def _build_response(
    plan_code: str,
    option: RetentionOption,
    stored: RetentionSettingTable | None,
) -> RetentionResponse:
    canonical = to_canonical_plan(plan_code)
    return RetentionResponse(
        plan=canonical.value,
        plan_name=canonical_plan_name(canonical),
        selected_option_id=option.option_id,
        retention_days=option.days,
        options=[RetentionOptionResponse(**payload) for payload in option_payload_for_plan(canonical)],
        next_deletion_at=(
            to_utc_iso(stored.next_deletion_at) if stored is not None and stored.next_deletion_at else None
        ),
        last_deletion_at=(
            to_utc_iso(stored.last_deletion_at) if stored is not None and stored.last_deletion_at else None
        ),
    )


@router.get("", response_model=RetentionResponse)
async def get_retention(session: SessionDep, account: AccountDep) -> RetentionResponse:
    """Return the retention options for the account's plan and the active choice.

    A stored choice the plan no longer allows is clamped into range and
    the clamped value is persisted.
    """
    plan_code = await _plan_code(session, account.account_id)
    canonical = to_canonical_plan(plan_code)
    repo = RetentionSettingRepository(session, account.account_id)
    stored = await repo.get()

    option = select_option_for_plan(canonical, stored.option_id if stored is not None else None)
    if stored is None or stored.option_id != option.option_id or stored.plan_code != canonical.value:
        await repo.upsert_selection(canonical.value, option.option_id, option.days)
        if stored is not None and stored.option_id != option.option_id:
            logger.info(
                "Clamped retention of account %s from %s to %s for plan %s",
                account.account_id,
                stored.option_id,
                option.option_id,
                canonical.value,
            )
        stored = await repo.get()

    return _build_response(plan_code, option, stored)


@router.patch("", response_model=RetentionResponse)
async def update_retention(
    body: RetentionUpdateRequest,
    session: SessionDep,
    account: AccountDep,
) -> RetentionResponse:
    """Select a retention option.  Options outside the plan's tier are refused."""
    option = find_option(body.option_id)
    if option is None:
        raise HTTPException(status_code=400, detail=f"Unknown retention option: {body.option_id}")

    plan_code = await _plan_code(session, account.account_id)
    canonical = to_canonical_plan(plan_code)
    if option_locked_for_plan(option, canonical):
        raise HTTPException(
            status_code=403,
            detail=f"Retention option {option.option_id} requires a higher plan than {canonical.value}",
        )

    repo = RetentionSettingRepository(session, account.account_id)
    await repo.upsert_selection(canonical.value, option.option_id, option.days)
    await record_audit_event(
        session,
        account.account_id,
        "retention.updated",
        entity_type="retention_setting",
        entity_id=option.option_id,
        metadata={"plan": canonical.value, "retention_days": option.days},
    )
    logger.info("Account %s selected retention option %s", account.account_id, option.option_id)
    return _build_response(plan_code, option, await repo.get())
