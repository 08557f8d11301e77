"""Stripe implementation of the engine's billing gateway.

All Stripe SDK calls made by the service go through
:class:`StripeBillingGateway`.  SDK errors are translated into the
engine's verification errors: a missing object is a permanent rejection,
network and rate-limit failures are retryable.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel
from quota_engine.errors import BillingUnavailableError, VerificationRejectedError
from quota_engine.gateway import ExternalPayment, ExternalSubscription

from api.config import APISettings

logger = logging.getLogger(__name__)


def stripe_field(obj: Any, name: str) -> Any:
    """Read *name* from a Stripe object or a plain dict (webhook payloads)."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def stripe_id(value: Any) -> str | None:
    """Return the id of an expandable field (either an id string or an object)."""
    if value is None or isinstance(value, str):
        return value or None
    return stripe_field(value, "id")


def _string_map(value: Any) -> dict[str, str]:
    if not value:
        return {}
    return {str(k): str(v) for k, v in dict(value).items() if v is not None}


class TopUpInvoice(BaseModel):
    """A finalized Stripe invoice for a top-up pack, ready for client payment."""

    invoice_id: str
    payment_intent_id: str
    client_secret: str


class StripeBillingGateway:
    """Billing gateway backed by the Stripe Python SDK.

    The SDK is synchronous; every call runs in a worker thread through
    :func:`asyncio.to_thread` so debits sharing the event loop keep moving
    while Stripe answers.

    Parameters
    ----------
    settings:
        API settings carrying the Stripe secret key and API version.
    """

    def __init__(self, settings: APISettings) -> None:
        self._settings = settings

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await asyncio.to_thread(fn, *args, **kwargs)

    def _translate(self, stripe: Any, exc: Exception, what: str) -> Exception:
        if isinstance(exc, stripe.InvalidRequestError):
            logger.warning("Stripe rejected lookup of %s: %s", what, exc)
            return VerificationRejectedError(f"Unknown {what}")
        if isinstance(exc, stripe.APIConnectionError | stripe.RateLimitError):
            logger.warning("Stripe unreachable while loading %s: %s", what, exc)
            return BillingUnavailableError(f"Billing system unavailable while loading {what}")
        logger.error("Stripe error while loading %s: %s", what, exc)
        return BillingUnavailableError(f"Billing system error while loading {what}")

    async def retrieve_subscription(self, subscription_id: str) -> ExternalSubscription:
        stripe = self._get_stripe()
        try:
            sub = await self._call(stripe.Subscription.retrieve, subscription_id)
        except stripe.StripeError as exc:
            raise self._translate(stripe, exc, f"subscription {subscription_id}") from exc

        items = stripe_field(stripe_field(sub, "items"), "data") or []
        price_id = stripe_id(stripe_field(items[0], "price")) if items else None
        period_end = stripe_field(sub, "current_period_end")
        return ExternalSubscription(
            subscription_id=stripe_field(sub, "id") or subscription_id,
            customer_id=stripe_id(stripe_field(sub, "customer")),
            status=stripe_field(sub, "status") or "unknown",
            current_period_end=datetime.fromtimestamp(period_end, tz=UTC) if period_end else None,
            price_id=price_id,
        )

    async def retrieve_payment_intent(self, payment_id: str) -> ExternalPayment:
        """Fetch a payment intent with its invoice expanded.

        The checkout stamps ``account_id`` and ``top_up_id`` on the invoice,
        so the invoice metadata is merged under the intent's own.
        """
        stripe = self._get_stripe()
        try:
            intent = await self._call(stripe.PaymentIntent.retrieve, payment_id, expand=["invoice"])
        except stripe.StripeError as exc:
            raise self._translate(stripe, exc, f"payment {payment_id}") from exc

        invoice = stripe_field(intent, "invoice")
        metadata: dict[str, str] = {}
        if invoice is not None and not isinstance(invoice, str):
            metadata.update(_string_map(stripe_field(invoice, "metadata")))
        metadata.update(_string_map(stripe_field(intent, "metadata")))

        return ExternalPayment(
            payment_id=stripe_field(intent, "id") or payment_id,
            customer_id=stripe_id(stripe_field(intent, "customer")),
            status=stripe_field(intent, "status") or "unknown",
            invoice_id=stripe_id(invoice),
            metadata=metadata,
        )

    async def create_customer(
        self,
        *,
        account_id: str,
        email: str | None = None,
        name: str | None = None,
    ) -> str:
        stripe = self._get_stripe()
        params: dict[str, Any] = {"metadata": {"account_id": account_id}}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        customer = await self._call(stripe.Customer.create, **params)
        logger.info("Created Stripe customer %s for account %s", customer["id"], account_id)
        return str(customer["id"])

    async def create_ephemeral_key(self, customer_id: str) -> str:
        stripe = self._get_stripe()
        key = await self._call(
            stripe.EphemeralKey.create,
            customer=customer_id,
            stripe_version=self._settings.stripe_api_version,
        )
        return str(key["secret"])

    async def create_top_up_invoice(
        self,
        *,
        customer_id: str,
        account_id: str,
        top_up_id: str,
        price_id: str,
        description: str,
        idempotency_key: str,
    ) -> TopUpInvoice:
        """Create, finalize and return a one-off invoice for a top-up pack.

        The invoice carries ``account_id`` and ``top_up_id`` metadata so that
        the ``invoice.paid`` webhook can credit it.

        Raises
        ------
        BillingUnavailableError
            If Stripe did not return a payable payment intent.
        """
        stripe = self._get_stripe()
        metadata = {"account_id": account_id, "top_up_id": top_up_id}

        await self._call(
            stripe.InvoiceItem.create,
            customer=customer_id,
            price=price_id,
            metadata=metadata,
            idempotency_key=f"{idempotency_key}:invoiceitem",
        )
        draft = await self._call(
            stripe.Invoice.create,
            customer=customer_id,
            collection_method="charge_automatically",
            pending_invoice_items_behavior="include",
            auto_advance=False,
            metadata=metadata,
            description=description,
            idempotency_key=f"{idempotency_key}:invoice",
        )
        invoice = await self._call(stripe.Invoice.finalize_invoice, draft["id"], expand=["payment_intent"])

        payment_intent = stripe_field(invoice, "payment_intent")
        payment_intent_id = stripe_id(payment_intent)
        client_secret = None if isinstance(payment_intent, str) else stripe_field(payment_intent, "client_secret")
        if not client_secret and payment_intent_id:
            fetched = await self._call(stripe.PaymentIntent.retrieve, payment_intent_id)
            client_secret = stripe_field(fetched, "client_secret")

        if not payment_intent_id or not client_secret:
            logger.error("Stripe invoice %s has no payable payment intent", invoice["id"])
            raise BillingUnavailableError("Stripe returned no payment intent for the top-up invoice")

        return TopUpInvoice(
            invoice_id=str(invoice["id"]),
            payment_intent_id=payment_intent_id,
            client_secret=client_secret,
        )
