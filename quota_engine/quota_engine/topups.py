"""Crediting of purchased top-up packs.

A top-up credit is keyed on the external invoice id.  Crediting the same
invoice twice is a successful no-op (``created=False``), which makes the
operation safe to call from both the client-side confirmation path and
the webhook path for the same purchase.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from quota_engine.audit import record_audit_event
from quota_engine.catalog import PlanCatalog, minutes_to_ms
from quota_engine.errors import (
    BillingUnavailableError,
    InvalidBillingEventError,
    UnprovisionedAccountError,
    VerificationRejectedError,
)
from quota_engine.gateway import BillingGateway
from quota_engine.period import current_period
from quota_engine.state.repository import PlanAssignmentRepository, TopUpLedgerRepository

logger = logging.getLogger(__name__)

# Payment intent states that mean the money is (or will be) collected.
PAID_PAYMENT_STATUSES = frozenset({"succeeded", "requires_capture"})


class TopUpClaim(BaseModel):
    """A report that a top-up pack was paid for."""

    top_up_id: str = Field(..., min_length=1)
    external_invoice_id: str = Field(..., min_length=1)
    external_payment_id: str | None = None
    minutes_granted: int | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> TopUpClaim:
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            fields = ", ".join(str(err["loc"][0]) for err in exc.errors() if err["loc"])
            raise InvalidBillingEventError(f"Invalid top-up event: {fields}") from exc


class TopUpVerification(BaseModel):
    """Request to confirm a claim against the billing system before crediting."""

    expected_customer_id: str | None = None


class TopUpCreditResult(BaseModel):
    created: bool
    top_up_id: str
    external_invoice_id: str
    minutes_granted: int
    ms_granted: int
    credited_period_id: str


class TopUpCreditor:
    """Applies top-up claims to the ledger of one account."""

    def __init__(
        self,
        session: AsyncSession,
        catalog: PlanCatalog,
        gateway: BillingGateway | None = None,
        *,
        account_id: str,
    ) -> None:
        self._session = session
        self._catalog = catalog
        self._gateway = gateway
        self._account_id = account_id

    async def credit_top_up(
        self,
        claim: TopUpClaim,
        verify: TopUpVerification | None = None,
        now: datetime | None = None,
    ) -> TopUpCreditResult:
        """Record the credit described by *claim*.

        Parameters
        ----------
        claim:
            The top-up pack and the invoice that paid for it.
        verify:
            When given, the claim must carry a payment id.  The payment is
            fetched from the billing system and must belong to
            ``verify.expected_customer_id``, be paid, and have settled
            ``claim.external_invoice_id`` for ``claim.top_up_id``.
        now:
            Evaluation instant used to stamp the credited period.

        Raises
        ------
        InvalidBillingEventError
            Unknown pack without an explicit minute count, a credit of
            zero minutes, or a verified claim without a payment id.
        VerificationRejectedError
            The billing system contradicts the claim.
        BillingUnavailableError
            The billing system could not be consulted.
        UnprovisionedAccountError
            The account has no plan assignment.
        """
        top_up = self._catalog.find_top_up(claim.top_up_id)
        if top_up is None and claim.minutes_granted is None:
            raise InvalidBillingEventError(f"Unknown top-up: {claim.top_up_id}")

        if verify is not None:
            if not claim.external_payment_id:
                logger.warning(
                    "Top-up claim for invoice %s on account %s has no payment id, refusing credit",
                    claim.external_invoice_id,
                    self._account_id,
                )
                raise InvalidBillingEventError("external_payment_id is required to verify a top-up")
            await self._verify_payment(claim, verify)

        assignment = await PlanAssignmentRepository(self._session, self._account_id).get()
        if assignment is None:
            raise UnprovisionedAccountError(self._account_id)

        period = current_period(assignment.timezone, assignment.renew_day, now)
        if claim.minutes_granted is not None:
            minutes = claim.minutes_granted
        else:
            assert top_up is not None
            minutes = top_up.minutes_granted
        ms_granted = minutes_to_ms(minutes)
        if ms_granted <= 0:
            raise InvalidBillingEventError(f"Top-up {claim.top_up_id} grants no minutes")

        created = await TopUpLedgerRepository(self._session, self._account_id).credit(
            external_invoice_id=claim.external_invoice_id,
            top_up_id=claim.top_up_id,
            minutes_granted=minutes,
            external_payment_id=claim.external_payment_id,
            credited_period_id=period.period_id,
        )

        if created:
            logger.info(
                "Credited top-up %s (%d min) to account %s for period %s",
                claim.top_up_id,
                minutes,
                self._account_id,
                period.period_id,
            )
            await record_audit_event(
                self._session,
                self._account_id,
                "topup.credited",
                entity_type="invoice",
                entity_id=claim.external_invoice_id,
                metadata={"top_up_id": claim.top_up_id, "minutes": minutes, "period_id": period.period_id},
            )
        else:
            logger.info(
                "Top-up invoice %s already credited to account %s",
                claim.external_invoice_id,
                self._account_id,
            )

        return TopUpCreditResult(
            created=created,
            top_up_id=claim.top_up_id,
            external_invoice_id=claim.external_invoice_id,
            minutes_granted=minutes,
            ms_granted=ms_granted,
            credited_period_id=period.period_id,
        )

    async def _verify_payment(self, claim: TopUpClaim, verify: TopUpVerification) -> None:
        if self._gateway is None:
            raise BillingUnavailableError("No billing gateway configured for verification")

        payment_id = claim.external_payment_id
        assert payment_id is not None
        payment = await self._gateway.retrieve_payment_intent(payment_id)
        if (
            payment.customer_id
            and verify.expected_customer_id
            and payment.customer_id != verify.expected_customer_id
        ):
            logger.warning(
                "Payment %s belongs to customer %s, not %s (account %s)",
                payment_id,
                payment.customer_id,
                verify.expected_customer_id,
                self._account_id,
            )
            raise VerificationRejectedError("Payment does not belong to this account")
        if payment.status not in PAID_PAYMENT_STATUSES:
            logger.warning("Payment %s has status %s, refusing credit", payment_id, payment.status)
            raise VerificationRejectedError(f"Payment is not complete (status {payment.status})")

        # The invoice id is the idempotence key, so the payment must have
        # settled exactly the invoice being claimed.
        if payment.invoice_id != claim.external_invoice_id:
            logger.warning(
                "Payment %s settles invoice %s, not claimed invoice %s (account %s)",
                payment_id,
                payment.invoice_id,
                claim.external_invoice_id,
                self._account_id,
            )
            raise VerificationRejectedError("Payment was not made for this invoice")
        paid_top_up = payment.metadata.get("top_up_id", "")
        if paid_top_up.strip().lower() != claim.top_up_id.strip().lower():
            logger.warning(
                "Payment %s bought top-up %r, claim names %r (account %s)",
                payment_id,
                paid_top_up,
                claim.top_up_id,
                self._account_id,
            )
            raise VerificationRejectedError("Payment was not made for this top-up")
        paid_account = payment.metadata.get("account_id")
        if paid_account and paid_account != self._account_id:
            logger.warning("Payment %s was made for account %s, not %s", payment_id, paid_account, self._account_id)
            raise VerificationRejectedError("Payment does not belong to this account")
