"""Interface to the external billing system.

The engine never talks to Stripe directly.  Verification paths depend on a
:class:`BillingGateway` and treat its answers as authoritative for
payment and subscription state.  Implementations raise
:class:`~quota_engine.errors.BillingUnavailableError` when the billing
system cannot be reached and
:class:`~quota_engine.errors.VerificationRejectedError` when the object
does not exist.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol


@dataclass(frozen=True)
class ExternalSubscription:
    """A subscription as reported by the billing system.

    ``price_id`` is the price of the first subscription item, which
    identifies the plan being paid for.
    """

    subscription_id: str
    customer_id: str | None
    status: str
    current_period_end: datetime | None = None
    price_id: str | None = None


@dataclass(frozen=True)
class ExternalPayment:
    """A payment intent as reported by the billing system.

    ``invoice_id`` is the invoice the payment settles and ``metadata``
    carries the ``account_id`` and ``top_up_id`` stamped on it at checkout.
    """

    payment_id: str
    customer_id: str | None
    status: str
    invoice_id: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


class BillingGateway(Protocol):
    """Protocol for the billing-system calls the engine relies on."""

    async def retrieve_subscription(self, subscription_id: str) -> ExternalSubscription:
        """Fetch a subscription by id."""
        ...

    async def retrieve_payment_intent(self, payment_id: str) -> ExternalPayment:
        """Fetch a payment intent by id."""
        ...

    async def create_customer(
        self,
        *,
        account_id: str,
        email: str | None = None,
        name: str | None = None,
    ) -> str:
        """Create a customer and return its id."""
        ...

    async def create_ephemeral_key(self, customer_id: str) -> str:
        """Create a short-lived client credential for *customer_id*."""
        ...
