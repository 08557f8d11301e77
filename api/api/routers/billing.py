"""Billing endpoints: catalog, billing state, client sync, top-up checkout, webhooks."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Header, HTTPException, Request
from quota_engine.period import to_utc_iso
from quota_engine.quota import QuotaReconciler
from quota_engine.state.repository import ExternalSubscriptionRepository, PlanAssignmentRepository
from quota_engine.subscriptions import SubscriptionEvent, SyncResult
from quota_engine.topups import TopUpClaim

from api.dependencies import (
    AccountDep,
    CatalogDep,
    GatewayDep,
    RequiredGatewayDep,
    SessionDep,
    SettingsDep,
    get_session_factory,
)
from api.schemas import (
    BillingStateResponse,
    CatalogPlanResponse,
    CatalogResponse,
    CatalogTopUpResponse,
    CreateTopUpRequest,
    CreateTopUpResponse,
    SubscriptionStateResponse,
    SyncSubscriptionRequest,
    SyncTopUpRequest,
    SyncTopUpResponse,
)
from api.services.billing_service import BillingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


@router.get("/catalog", response_model=CatalogResponse)
async def get_catalog(catalog: CatalogDep) -> CatalogResponse:
    """Return plans and top-up packs with their minutes and purchasability."""
    return CatalogResponse(
        plans=[
            CatalogPlanResponse(
                code=p.code,
                name=p.name,
                description=p.description,
                quota_minutes=p.quota_minutes,
                amount_cents=p.amount_cents,
                currency=p.currency,
                retention_option_id=p.retention_option_id,
                purchasable=p.purchasable,
                is_default=p.is_default,
            )
            for p in catalog.get_plans()
        ],
        top_ups=[
            CatalogTopUpResponse(
                top_up_id=t.top_up_id,
                label=t.label,
                description=t.description,
                minutes_granted=t.minutes_granted,
                amount_cents=t.amount_cents,
                currency=t.currency,
                purchasable=t.purchasable,
            )
            for t in catalog.get_top_ups()
        ],
    )


@router.get("/state", response_model=BillingStateResponse)
async def get_billing_state(
    session: SessionDep,
    catalog: CatalogDep,
    settings: SettingsDep,
    account: AccountDep,
) -> BillingStateResponse:
    """Return the plan assignment, the mirrored subscription and the usage snapshot."""
    assignment = await PlanAssignmentRepository(session, account.account_id).get()
    if assignment is None:
        raise HTTPException(status_code=409, detail="Account has no plan assignment")
    subscription = await ExternalSubscriptionRepository(session, account.account_id).get()
    snapshot = await QuotaReconciler(
        session,
        catalog,
        account_id=account.account_id,
        top_up_window_days=settings.top_up_window_days,
    ).get_usage_snapshot()

    return BillingStateResponse(
        plan_code=assignment.plan_code,
        renew_day=assignment.renew_day,
        timezone=assignment.timezone,
        subscription=(
            SubscriptionStateResponse(
                external_subscription_id=subscription.external_subscription_id,
                plan_code=subscription.plan_code,
                status=subscription.status,
                current_period_end=(
                    to_utc_iso(subscription.current_period_end) if subscription.current_period_end else None
                ),
            )
            if subscription is not None
            else None
        ),
        usage=snapshot,
    )


@router.post("/sync-subscription", response_model=SyncResult)
async def sync_subscription(
    body: SyncSubscriptionRequest,
    session: SessionDep,
    catalog: CatalogDep,
    settings: SettingsDep,
    gateway: GatewayDep,
    account: AccountDep,
) -> SyncResult:
    """Apply a subscription change reported by the client after checkout."""
    event = SubscriptionEvent.from_payload(body.model_dump())
    service = BillingService(session, catalog, settings, gateway)  # type: ignore[arg-type]
    return await service.sync_client_subscription(account.account_id, event)


@router.post("/sync-topup", response_model=SyncTopUpResponse)
async def sync_top_up(
    body: SyncTopUpRequest,
    session: SessionDep,
    catalog: CatalogDep,
    settings: SettingsDep,
    gateway: GatewayDep,
    account: AccountDep,
) -> SyncTopUpResponse:
    """Credit a top-up reported by the client after payment."""
    claim = TopUpClaim.from_payload(body.model_dump())
    service = BillingService(session, catalog, settings, gateway)  # type: ignore[arg-type]
    result = await service.sync_client_top_up(account.account_id, claim)
    snapshot = await QuotaReconciler(
        session,
        catalog,
        account_id=account.account_id,
        top_up_window_days=settings.top_up_window_days,
    ).get_usage_snapshot()
    return SyncTopUpResponse(
        created=result.created,
        minutes_granted=result.minutes_granted,
        credited_period_id=result.credited_period_id,
        usage=snapshot,
    )


@router.post("/topups", response_model=CreateTopUpResponse)
async def create_top_up(
    body: CreateTopUpRequest,
    session: SessionDep,
    catalog: CatalogDep,
    settings: SettingsDep,
    gateway: RequiredGatewayDep,
    account: AccountDep,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> dict[str, Any]:
    """Create a Stripe invoice for a top-up pack and return payment-sheet credentials."""
    service = BillingService(session, catalog, settings, gateway)  # type: ignore[arg-type]
    return await service.create_top_up_checkout(
        account.account_id,
        body.top_up_id,
        email=account.email,
        name=account.name,
        idempotency_key=idempotency_key,
    )


@router.post("/webhooks")
async def stripe_webhook(
    request: Request,
    settings: SettingsDep,
    catalog: CatalogDep,
) -> dict[str, str]:
    """Handle incoming Stripe webhook events.

    Validates the webhook signature using the configured webhook secret and
    dispatches the event to the billing service.  This endpoint bypasses
    bearer authentication (validated via Stripe signature instead).
    Handling failures return 500 so that Stripe redelivers the event.
    """
    if not settings.billing_enabled:
        return {"status": "billing_disabled"}

    body = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing Stripe signature")

    try:
        import stripe

        stripe.api_key = settings.stripe_secret_key.get_secret_value()
        event = stripe.Webhook.construct_event(
            payload=body,
            sig_header=sig_header,
            secret=settings.stripe_webhook_secret.get_secret_value(),
        )
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except Exception as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise HTTPException(status_code=400, detail="Signature verification failed")

    session_factory = get_session_factory()
    async with session_factory() as session:
        service = BillingService(session, catalog, settings)
        try:
            webhook_result = await service.handle_webhook_event(event)
            await session.commit()
        except Exception:
            await session.rollback()
            logger.exception("Error handling Stripe webhook event %s", event.get("type", "unknown"))
            raise HTTPException(status_code=500, detail="Webhook handling failed")

    return webhook_result
