"""Tests for quota_engine.topups -- idempotent, verified top-up credits."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest
from quota_engine.catalog import PlanCatalog
from quota_engine.errors import (
    BillingUnavailableError,
    InvalidBillingEventError,
    UnprovisionedAccountError,
    VerificationRejectedError,
)
from quota_engine.gateway import ExternalPayment
from quota_engine.state.repository import AuditRepository, TopUpLedgerRepository
from quota_engine.topups import TopUpClaim, TopUpCreditor, TopUpVerification
from sqlalchemy.ext.asyncio import AsyncSession

NOW = datetime(2026, 3, 15, tzinfo=UTC)


def _gateway(
    customer_id: str | None = "cus_1",
    status: str = "succeeded",
    invoice_id: str | None = "in_1",
    metadata: dict[str, str] | None = None,
) -> AsyncMock:
    gateway = AsyncMock()
    gateway.retrieve_payment_intent.return_value = ExternalPayment(
        payment_id="pi_1",
        customer_id=customer_id,
        status=status,
        invoice_id=invoice_id,
        metadata={"account_id": "acct-1", "top_up_id": "topup-60"} if metadata is None else metadata,
    )
    return gateway


class TestTopUpClaim:
    def test_from_payload_missing_fields(self) -> None:
        with pytest.raises(InvalidBillingEventError, match="external_invoice_id"):
            TopUpClaim.from_payload({"top_up_id": "topup-60"})

    def test_invalid_claim_is_a_value_error(self) -> None:
        with pytest.raises(ValueError):
            TopUpClaim.from_payload({})


class TestCreditTopUp:
    @pytest.mark.asyncio
    async def test_credit_from_catalog(self, session: AsyncSession, catalog: PlanCatalog, provision) -> None:
        await provision(session)
        creditor = TopUpCreditor(session, catalog, account_id="acct-1")
        result = await creditor.credit_top_up(
            TopUpClaim(top_up_id="topup-180", external_invoice_id="in_1"),
            now=NOW,
        )
        assert result.created
        assert result.minutes_granted == 180
        assert result.ms_granted == 180 * 60_000
        assert result.credited_period_id == "2026-03"

        entries = await AuditRepository(session, "acct-1").list_entries()
        assert [e.action for e in entries] == ["topup.credited"]

    @pytest.mark.asyncio
    async def test_replay_is_noop(self, session: AsyncSession, catalog: PlanCatalog, provision) -> None:
        await provision(session)
        creditor = TopUpCreditor(session, catalog, account_id="acct-1")
        claim = TopUpClaim(top_up_id="topup-60", external_invoice_id="in_1", external_payment_id="pi_1")

        first = await creditor.credit_top_up(claim, now=NOW)
        second = await creditor.credit_top_up(claim, now=NOW)

        assert first.created
        assert not second.created
        assert second.minutes_granted == 60
        repo = TopUpLedgerRepository(session, "acct-1")
        assert len(await repo.list_credits()) == 1
        assert await repo.sum_bonus_ms(since=datetime(2000, 1, 1, tzinfo=UTC)) == 60 * 60_000
        assert len(await AuditRepository(session, "acct-1").list_entries()) == 1

    @pytest.mark.asyncio
    async def test_explicit_minutes_for_unknown_pack(
        self, session: AsyncSession, catalog: PlanCatalog, provision
    ) -> None:
        await provision(session)
        result = await TopUpCreditor(session, catalog, account_id="acct-1").credit_top_up(
            TopUpClaim(top_up_id="promo-15", external_invoice_id="in_promo", minutes_granted=15),
            now=NOW,
        )
        assert result.created
        assert result.minutes_granted == 15

    @pytest.mark.asyncio
    async def test_unknown_pack_without_minutes(
        self, session: AsyncSession, catalog: PlanCatalog, provision
    ) -> None:
        await provision(session)
        with pytest.raises(InvalidBillingEventError, match="Unknown top-up"):
            await TopUpCreditor(session, catalog, account_id="acct-1").credit_top_up(
                TopUpClaim(top_up_id="topup-999", external_invoice_id="in_1")
            )

    @pytest.mark.asyncio
    async def test_zero_minutes_rejected(self, session: AsyncSession, catalog: PlanCatalog, provision) -> None:
        await provision(session)
        with pytest.raises(InvalidBillingEventError):
            await TopUpCreditor(session, catalog, account_id="acct-1").credit_top_up(
                TopUpClaim(top_up_id="topup-60", external_invoice_id="in_1", minutes_granted=0)
            )

    @pytest.mark.asyncio
    async def test_unprovisioned_account(self, session: AsyncSession, catalog: PlanCatalog) -> None:
        with pytest.raises(UnprovisionedAccountError):
            await TopUpCreditor(session, catalog, account_id="ghost").credit_top_up(
                TopUpClaim(top_up_id="topup-60", external_invoice_id="in_1")
            )


class TestVerification:
    @pytest.mark.asyncio
    async def test_verified_payment_is_credited(self, session: AsyncSession, catalog: PlanCatalog, provision) -> None:
        await provision(session)
        gateway = _gateway()
        result = await TopUpCreditor(session, catalog, gateway, account_id="acct-1").credit_top_up(
            TopUpClaim(top_up_id="topup-60", external_invoice_id="in_1", external_payment_id="pi_1"),
            verify=TopUpVerification(expected_customer_id="cus_1"),
        )
        assert result.created
        gateway.retrieve_payment_intent.assert_awaited_once_with("pi_1")

    @pytest.mark.asyncio
    async def test_foreign_customer_rejected(self, session: AsyncSession, catalog: PlanCatalog, provision) -> None:
        await provision(session)
        creditor = TopUpCreditor(session, catalog, _gateway(customer_id="cus_other"), account_id="acct-1")
        with pytest.raises(VerificationRejectedError):
            await creditor.credit_top_up(
                TopUpClaim(top_up_id="topup-60", external_invoice_id="in_1", external_payment_id="pi_1"),
                verify=TopUpVerification(expected_customer_id="cus_1"),
            )
        assert await TopUpLedgerRepository(session, "acct-1").get("in_1") is None

    @pytest.mark.asyncio
    async def test_unpaid_status_rejected(self, session: AsyncSession, catalog: PlanCatalog, provision) -> None:
        await provision(session)
        creditor = TopUpCreditor(session, catalog, _gateway(status="requires_payment_method"), account_id="acct-1")
        with pytest.raises(VerificationRejectedError, match="not complete"):
            await creditor.credit_top_up(
                TopUpClaim(top_up_id="topup-60", external_invoice_id="in_1", external_payment_id="pi_1"),
                verify=TopUpVerification(expected_customer_id="cus_1"),
            )

    @pytest.mark.asyncio
    async def test_unlinked_account_passes_on_status(
        self, session: AsyncSession, catalog: PlanCatalog, provision
    ) -> None:
        await provision(session)
        creditor = TopUpCreditor(session, catalog, _gateway(customer_id="cus_9"), account_id="acct-1")
        result = await creditor.credit_top_up(
            TopUpClaim(top_up_id="topup-60", external_invoice_id="in_1", external_payment_id="pi_1"),
            verify=TopUpVerification(expected_customer_id=None),
        )
        assert result.created

    @pytest.mark.asyncio
    async def test_gateway_outage_propagates(self, session: AsyncSession, catalog: PlanCatalog, provision) -> None:
        await provision(session)
        gateway = AsyncMock()
        gateway.retrieve_payment_intent.side_effect = BillingUnavailableError("timeout")
        creditor = TopUpCreditor(session, catalog, gateway, account_id="acct-1")
        with pytest.raises(BillingUnavailableError) as excinfo:
            await creditor.credit_top_up(
                TopUpClaim(top_up_id="topup-60", external_invoice_id="in_1", external_payment_id="pi_1"),
                verify=TopUpVerification(expected_customer_id="cus_1"),
            )
        assert excinfo.value.retryable

    @pytest.mark.asyncio
    async def test_verification_without_gateway(self, session: AsyncSession, catalog: PlanCatalog, provision) -> None:
        await provision(session)
        with pytest.raises(BillingUnavailableError):
            await TopUpCreditor(session, catalog, account_id="acct-1").credit_top_up(
                TopUpClaim(top_up_id="topup-60", external_invoice_id="in_1", external_payment_id="pi_1"),
                verify=TopUpVerification(expected_customer_id="cus_1"),
            )

    @pytest.mark.asyncio
    async def test_missing_payment_id_rejected(
        self, session: AsyncSession, catalog: PlanCatalog, provision
    ) -> None:
        await provision(session)
        gateway = _gateway()
        with pytest.raises(InvalidBillingEventError, match="external_payment_id"):
            await TopUpCreditor(session, catalog, gateway, account_id="acct-1").credit_top_up(
                TopUpClaim(top_up_id="topup-180", external_invoice_id="in_1"),
                verify=TopUpVerification(expected_customer_id="cus_1"),
            )
        gateway.retrieve_payment_intent.assert_not_awaited()
        assert await TopUpLedgerRepository(session, "acct-1").list_credits() == []

    @pytest.mark.asyncio
    async def test_payment_reused_for_other_invoice_rejected(
        self, session: AsyncSession, catalog: PlanCatalog, provision
    ) -> None:
        await provision(session)
        creditor = TopUpCreditor(session, catalog, _gateway(), account_id="acct-1")
        verify = TopUpVerification(expected_customer_id="cus_1")
        first = await creditor.credit_top_up(
            TopUpClaim(top_up_id="topup-60", external_invoice_id="in_1", external_payment_id="pi_1"),
            verify=verify,
        )
        assert first.created

        for invoice_id in ("in_x0", "in_x1"):
            with pytest.raises(VerificationRejectedError, match="this invoice"):
                await creditor.credit_top_up(
                    TopUpClaim(top_up_id="topup-60", external_invoice_id=invoice_id, external_payment_id="pi_1"),
                    verify=verify,
                )
        repo = TopUpLedgerRepository(session, "acct-1")
        assert [c.external_invoice_id for c in await repo.list_credits()] == ["in_1"]

    @pytest.mark.asyncio
    async def test_payment_without_invoice_rejected(
        self, session: AsyncSession, catalog: PlanCatalog, provision
    ) -> None:
        await provision(session)
        creditor = TopUpCreditor(session, catalog, _gateway(invoice_id=None), account_id="acct-1")
        with pytest.raises(VerificationRejectedError):
            await creditor.credit_top_up(
                TopUpClaim(top_up_id="topup-60", external_invoice_id="in_1", external_payment_id="pi_1"),
                verify=TopUpVerification(expected_customer_id="cus_1"),
            )

    @pytest.mark.asyncio
    async def test_larger_pack_than_paid_rejected(
        self, session: AsyncSession, catalog: PlanCatalog, provision
    ) -> None:
        await provision(session)
        creditor = TopUpCreditor(session, catalog, _gateway(), account_id="acct-1")
        with pytest.raises(VerificationRejectedError, match="this top-up"):
            await creditor.credit_top_up(
                TopUpClaim(top_up_id="topup-180", external_invoice_id="in_1", external_payment_id="pi_1"),
                verify=TopUpVerification(expected_customer_id="cus_1"),
            )
        assert await TopUpLedgerRepository(session, "acct-1").get("in_1") is None

    @pytest.mark.asyncio
    async def test_pack_match_ignores_case(self, session: AsyncSession, catalog: PlanCatalog, provision) -> None:
        await provision(session)
        gateway = _gateway(metadata={"top_up_id": "TOPUP-60"})
        result = await TopUpCreditor(session, catalog, gateway, account_id="acct-1").credit_top_up(
            TopUpClaim(top_up_id=" topup-60 ", external_invoice_id="in_1", external_payment_id="pi_1"),
            verify=TopUpVerification(expected_customer_id="cus_1"),
        )
        assert result.created

    @pytest.mark.asyncio
    async def test_payment_for_other_account_rejected(
        self, session: AsyncSession, catalog: PlanCatalog, provision
    ) -> None:
        await provision(session)
        gateway = _gateway(metadata={"account_id": "acct-2", "top_up_id": "topup-60"})
        with pytest.raises(VerificationRejectedError, match="belong"):
            await TopUpCreditor(session, catalog, gateway, account_id="acct-1").credit_top_up(
                TopUpClaim(top_up_id="topup-60", external_invoice_id="in_1", external_payment_id="pi_1"),
                verify=TopUpVerification(expected_customer_id=None),
            )
