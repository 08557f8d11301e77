"""Stripe billing integration service.

Provides customer management, top-up invoice creation, verified
client-side sync of subscriptions and top-ups, and webhook event
processing.  Ledger changes are delegated to the engine's
:class:`~quota_engine.subscriptions.SubscriptionSync` and
:class:`~quota_engine.topups.TopUpCreditor`.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from quota_engine.catalog import PlanCatalog
from quota_engine.errors import InvalidBillingEventError
from quota_engine.state.repository import BillingCustomerRepository
from quota_engine.subscriptions import (
    SubscriptionEvent,
    SubscriptionSync,
    SyncResult,
    SyncVerification,
    provision_default_plan,
)
from quota_engine.topups import TopUpClaim, TopUpCreditor, TopUpCreditResult, TopUpVerification
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import APISettings
from api.services.stripe_gateway import StripeBillingGateway, stripe_field, stripe_id

logger = logging.getLogger(__name__)


def _metadata_value(obj: Any, *keys: str) -> str | None:
    metadata = stripe_field(obj, "metadata")
    for key in keys:
        value = stripe_field(metadata, key)
        if value:
            return str(value)
    return None


def _first_line(invoice: Any) -> Any:
    lines = stripe_field(stripe_field(invoice, "lines"), "data") or []
    return lines[0] if lines else None


def _line_price_id(line: Any) -> str | None:
    price = stripe_field(line, "price")
    if price is None:
        # Newer API versions nest the price under ``pricing.price_details``.
        price = stripe_field(stripe_field(stripe_field(line, "pricing"), "price_details"), "price")
    return stripe_id(price)


def _invoice_subscription_id(invoice: Any) -> str | None:
    subscription = stripe_field(invoice, "subscription")
    if subscription is None:
        details = stripe_field(stripe_field(invoice, "parent"), "subscription_details")
        subscription = stripe_field(details, "subscription")
    return stripe_id(subscription)


class BillingService:
    """Stripe billing operations.

    Parameters
    ----------
    session:
        Active database session.
    catalog:
        The process-wide plan catalog.
    settings:
        API settings containing Stripe configuration.
    gateway:
        Stripe gateway; ``None`` when billing is disabled.
    """

    def __init__(
        self,
        session: AsyncSession,
        catalog: PlanCatalog,
        settings: APISettings,
        gateway: StripeBillingGateway | None = None,
    ) -> None:
        self._session = session
        self._catalog = catalog
        self._settings = settings
        self._gateway = gateway
        self._customers = BillingCustomerRepository(session)

    def _require_gateway(self) -> StripeBillingGateway:
        if self._gateway is None:
            raise RuntimeError("Billing gateway is not configured")
        return self._gateway

    # ------------------------------------------------------------------
    # Customers and checkout
    # ------------------------------------------------------------------

    async def get_or_create_customer(
        self,
        account_id: str,
        email: str | None = None,
        name: str | None = None,
    ) -> str:
        """Return the Stripe customer id of *account_id*, creating one if needed."""
        existing = await self._customers.get_customer_id(account_id)
        if existing:
            return existing

        customer_id = await self._require_gateway().create_customer(account_id=account_id, email=email, name=name)
        if not await self._customers.link(account_id, customer_id):
            # A concurrent request linked a customer first; use theirs.
            stored = await self._customers.get_customer_id(account_id)
            logger.warning(
                "Account %s already linked to %s; Stripe customer %s is orphaned",
                account_id,
                stored,
                customer_id,
            )
            return stored or customer_id
        return customer_id

    async def create_top_up_checkout(
        self,
        account_id: str,
        top_up_id: str,
        *,
        email: str | None = None,
        name: str | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Create a payable Stripe invoice for a top-up pack.

        Returns
        -------
        dict
            ``client_secret``, ``customer``, ``ephemeral_key``,
            ``top_up_id``, ``invoice_id``, ``payment_intent_id`` and
            ``minutes_granted`` for the mobile payment sheet.
        """
        top_up = self._catalog.find_top_up(top_up_id)
        if top_up is None:
            raise InvalidBillingEventError(f"Unknown top-up: {top_up_id}")
        if not top_up.purchasable or top_up.stripe_price_id is None:
            raise InvalidBillingEventError(f"Top-up {top_up.top_up_id} is not available for purchase")

        gateway = self._require_gateway()
        customer_id = await self.get_or_create_customer(account_id, email=email, name=name)
        invoice = await gateway.create_top_up_invoice(
            customer_id=customer_id,
            account_id=account_id,
            top_up_id=top_up.top_up_id,
            price_id=top_up.stripe_price_id,
            description=top_up.label,
            idempotency_key=idempotency_key or f"topup-{account_id}-{uuid.uuid4().hex}",
        )
        ephemeral_key = await gateway.create_ephemeral_key(customer_id)

        logger.info(
            "Created top-up invoice %s (%s) for account %s",
            invoice.invoice_id,
            top_up.top_up_id,
            account_id,
        )
        return {
            "client_secret": invoice.client_secret,
            "customer": customer_id,
            "ephemeral_key": ephemeral_key,
            "top_up_id": top_up.top_up_id,
            "invoice_id": invoice.invoice_id,
            "payment_intent_id": invoice.payment_intent_id,
            "minutes_granted": top_up.minutes_granted,
        }

    # ------------------------------------------------------------------
    # Client-reported events
    # ------------------------------------------------------------------

    async def sync_client_subscription(self, account_id: str, event: SubscriptionEvent) -> SyncResult:
        """Apply a subscription change reported by the client app.

        With ``verify_client_claims`` on, the subscription is confirmed
        with Stripe first: it must belong to the account's linked customer
        and its price must be the claimed plan's.
        """
        verify = None
        if self._settings.verify_client_claims:
            verify = SyncVerification(expected_customer_id=await self._customers.get_customer_id(account_id))
        sync = SubscriptionSync(self._session, self._catalog, self._gateway, account_id=account_id)
        return await sync.sync(event, verify=verify)

    async def sync_client_top_up(self, account_id: str, claim: TopUpClaim) -> TopUpCreditResult:
        """Credit a top-up reported by the client app.

        With ``verify_client_claims`` on, the claim must name the payment
        intent that settled the claimed invoice.
        """
        verify = None
        if self._settings.verify_client_claims:
            verify = TopUpVerification(expected_customer_id=await self._customers.get_customer_id(account_id))
        creditor = TopUpCreditor(self._session, self._catalog, self._gateway, account_id=account_id)
        return await creditor.credit_top_up(claim, verify=verify)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def resolve_account_id(self, data_object: Any) -> str | None:
        """Find the account an event belongs to: metadata first, then the customer mapping."""
        account_id = _metadata_value(data_object, "account_id", "accountId")
        if account_id:
            return account_id
        customer_id = stripe_id(stripe_field(data_object, "customer"))
        if customer_id:
            return await self._customers.find_account_id(customer_id)
        return None

    async def handle_webhook_event(self, event: Any) -> dict[str, str]:
        """Process a Stripe webhook event.

        Supported events:
        - ``invoice.paid`` (subscription renewal or top-up purchase)
        - ``customer.subscription.updated``
        - ``customer.subscription.deleted``
        - ``invoice.payment_failed``

        Parameters
        ----------
        event:
            The verified Stripe event.

        Returns
        -------
        dict
            Contains ``status`` (``processed`` or ``ignored``) and, when
            ignored, a ``reason``.
        """
        event_type = stripe_field(event, "type") or ""
        data_object = stripe_field(stripe_field(event, "data"), "object") or {}

        handlers = {
            "invoice.paid": self._handle_invoice_paid,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_failed": self._handle_invoice_failed,
        }
        handler = handlers.get(event_type)
        if handler is None:
            logger.debug("Unhandled Stripe event type: %s", event_type)
            return {"status": "ignored", "reason": "unhandled_event_type"}

        account_id = await self.resolve_account_id(data_object)
        if account_id is None:
            logger.warning(
                "Stripe webhook event type=%s has no resolvable account (customer=%s); skipping",
                event_type,
                stripe_id(stripe_field(data_object, "customer")),
            )
            return {"status": "ignored", "reason": "unknown_account"}

        # Stripe may report a purchase before the account ever called the API.
        await provision_default_plan(self._session, self._catalog, account_id, self._settings.default_timezone)
        return await handler(account_id, data_object)

    async def _sync(self, account_id: str, payload: dict[str, Any]) -> dict[str, str]:
        event = SubscriptionEvent.from_payload(payload)
        await SubscriptionSync(self._session, self._catalog, account_id=account_id).sync(event)
        return {"status": "processed"}

    async def _handle_invoice_paid(self, account_id: str, invoice: Any) -> dict[str, str]:
        line = _first_line(invoice)
        price_id = _line_price_id(line)
        subscription_id = _invoice_subscription_id(invoice)

        if subscription_id:
            plan = self._catalog.find_plan_by_price_id(price_id)
            plan_code = plan.code if plan is not None else _metadata_value(invoice, "plan_code", "planCode")
            if not plan_code:
                logger.warning("Paid invoice %s matches no plan (price %s)", stripe_field(invoice, "id"), price_id)
                return {"status": "ignored", "reason": "unknown_plan"}
            return await self._sync(
                account_id,
                {
                    "plan_code": plan_code,
                    "external_subscription_id": subscription_id,
                    "current_period_end": stripe_field(stripe_field(line, "period"), "end"),
                    "status": "active",
                },
            )

        top_up_id = _metadata_value(invoice, "top_up_id", "topUpId")
        if not top_up_id:
            return {"status": "ignored", "reason": "not_a_top_up"}

        top_up = self._catalog.find_top_up_by_price_id(price_id)
        claim = TopUpClaim.from_payload(
            {
                "top_up_id": top_up_id,
                "external_invoice_id": stripe_field(invoice, "id"),
                "external_payment_id": stripe_id(stripe_field(invoice, "payment_intent")),
                "minutes_granted": top_up.minutes_granted if top_up is not None else None,
            }
        )
        await TopUpCreditor(self._session, self._catalog, account_id=account_id).credit_top_up(claim)
        return {"status": "processed"}

    async def _handle_subscription_updated(self, account_id: str, subscription: Any) -> dict[str, str]:
        items = stripe_field(stripe_field(subscription, "items"), "data") or []
        item = items[0] if items else None
        price_id = stripe_id(stripe_field(item, "price"))
        plan = self._catalog.find_plan_by_price_id(price_id)
        plan_code = plan.code if plan is not None else _metadata_value(subscription, "plan_code", "planCode")
        if not plan_code:
            logger.warning("Subscription %s matches no plan (price %s)", stripe_field(subscription, "id"), price_id)
            return {"status": "ignored", "reason": "unknown_plan"}

        period_end = stripe_field(subscription, "current_period_end") or stripe_field(item, "current_period_end")
        return await self._sync(
            account_id,
            {
                "plan_code": plan_code,
                "external_subscription_id": stripe_field(subscription, "id"),
                "current_period_end": period_end,
                "status": stripe_field(subscription, "status") or "active",
            },
        )

    async def _handle_subscription_deleted(self, account_id: str, subscription: Any) -> dict[str, str]:
        return await self._sync(
            account_id,
            {
                "plan_code": self._catalog.default_plan().code,
                "external_subscription_id": stripe_field(subscription, "id"),
                "current_period_end": None,
                "status": "canceled",
            },
        )

    async def _handle_invoice_failed(self, account_id: str, invoice: Any) -> dict[str, str]:
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            return {"status": "ignored", "reason": "not_a_subscription"}
        logger.warning("Payment failed for account %s (invoice %s)", account_id, stripe_field(invoice, "id"))
        return await self._sync(
            account_id,
            {
                "plan_code": self._catalog.default_plan().code,
                "external_subscription_id": subscription_id,
                "current_period_end": None,
                "status": "past_due",
            },
        )
