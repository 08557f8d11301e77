"""Tests for api/api/routers/billing.py (client-facing endpoints)

Covers:
- GET /billing/catalog: plans, top-ups, purchasability
- GET /billing/state: assignment, mirrored subscription, usage
- POST /billing/sync-subscription: verified and unverified sync, rejection,
  billing outage, gateway missing
- POST /billing/sync-topup: credit, replay, verification
- POST /billing/topups: invoice checkout, idempotency key, billing disabled
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from api.config import APISettings
from api.dependencies import get_settings
from api.services.stripe_gateway import TopUpInvoice
from fastapi import FastAPI
from httpx import AsyncClient
from quota_engine.errors import BillingUnavailableError
from quota_engine.gateway import ExternalPayment, ExternalSubscription


def _subscription(
    status: str = "active",
    customer_id: str | None = "cus_1",
    price_id: str | None = "price_pro",
) -> ExternalSubscription:
    return ExternalSubscription(subscription_id="sub_1", customer_id=customer_id, status=status, price_id=price_id)


def _payment(invoice_id: str, top_up_id: str, status: str = "succeeded") -> ExternalPayment:
    return ExternalPayment(
        payment_id="pi_1",
        customer_id="cus_1",
        status=status,
        invoice_id=invoice_id,
        metadata={"account_id": "acct-api-1", "top_up_id": top_up_id},
    )


def _unverified(app: FastAPI, settings: APISettings) -> None:
    relaxed = settings.model_copy(update={"verify_client_claims": False})
    app.dependency_overrides[get_settings] = lambda: relaxed


# ---------------------------------------------------------------------------
# Catalog and state
# ---------------------------------------------------------------------------


class TestCatalog:
    @pytest.mark.asyncio
    async def test_catalog(self, client: AsyncClient, auth_headers: dict[str, str]) -> None:
        resp = await client.get("/api/v1/billing/catalog", headers=auth_headers)
        assert resp.status_code == 200
        body = resp.json()

        plans = {p["code"]: p for p in body["plans"]}
        assert list(plans) == ["free", "starter", "pro", "team"]
        assert plans["free"]["purchasable"] is False
        assert plans["free"]["is_default"] is True
        assert plans["team"]["quota_minutes"] == 3600
        assert plans["pro"]["purchasable"] is True

        top_ups = {t["top_up_id"]: t["minutes_granted"] for t in body["top_ups"]}
        assert top_ups == {"topup-60": 60, "topup-180": 180}

    @pytest.mark.asyncio
    async def test_catalog_requires_auth(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/billing/catalog")
        assert resp.status_code == 401


class TestBillingState:
    @pytest.mark.asyncio
    async def test_state_after_first_contact(self, client: AsyncClient, auth_headers: dict[str, str]) -> None:
        resp = await client.get("/api/v1/billing/state", headers=auth_headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["plan_code"] == "free"
        assert body["renew_day"] >= 1
        assert body["subscription"] is None
        assert body["usage"]["quota_minutes"] == 600

    @pytest.mark.asyncio
    async def test_state_after_sync(
        self,
        app: FastAPI,
        client: AsyncClient,
        auth_headers: dict[str, str],
        test_settings: APISettings,
    ) -> None:
        _unverified(app, test_settings)
        await client.post(
            "/api/v1/billing/sync-subscription",
            json={
                "plan_code": "team",
                "external_subscription_id": "sub_1",
                "current_period_end": 1775001600,
            },
            headers=auth_headers,
        )
        body = (await client.get("/api/v1/billing/state", headers=auth_headers)).json()
        assert body["plan_code"] == "team"
        assert body["subscription"]["external_subscription_id"] == "sub_1"
        assert body["subscription"]["current_period_end"].startswith("2026-04-01T00:00:00")
        assert body["usage"]["quota_minutes"] == 3600


# ---------------------------------------------------------------------------
# Subscription sync
# ---------------------------------------------------------------------------


class TestSyncSubscription:
    @pytest.mark.asyncio
    async def test_verified_sync(
        self,
        app: FastAPI,
        client: AsyncClient,
        auth_headers: dict[str, str],
        mock_gateway: AsyncMock,
    ) -> None:
        mock_gateway.retrieve_subscription.return_value = _subscription()
        app.state.billing_gateway = mock_gateway

        resp = await client.post(
            "/api/v1/billing/sync-subscription",
            json={"plan_code": "pro", "external_subscription_id": "sub_1"},
            headers=auth_headers,
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["plan_code"] == "pro"
        assert body["base_quota_ms"] == 1800 * 60_000
        mock_gateway.retrieve_subscription.assert_awaited_once_with("sub_1")

    @pytest.mark.asyncio
    async def test_inactive_subscription_is_422(
        self,
        app: FastAPI,
        client: AsyncClient,
        auth_headers: dict[str, str],
        mock_gateway: AsyncMock,
    ) -> None:
        mock_gateway.retrieve_subscription.return_value = _subscription(status="canceled")
        app.state.billing_gateway = mock_gateway

        resp = await client.post(
            "/api/v1/billing/sync-subscription",
            json={"plan_code": "team", "external_subscription_id": "sub_1"},
            headers=auth_headers,
        )
        assert resp.status_code == 422
        assert resp.json()["code"] == "verification_rejected"

        state = (await client.get("/api/v1/billing/state", headers=auth_headers)).json()
        assert state["plan_code"] == "free"

    @pytest.mark.asyncio
    async def test_claimed_plan_must_match_subscription_price(
        self,
        app: FastAPI,
        client: AsyncClient,
        auth_headers: dict[str, str],
        mock_gateway: AsyncMock,
    ) -> None:
        mock_gateway.retrieve_subscription.return_value = _subscription(price_id="price_starter")
        app.state.billing_gateway = mock_gateway

        resp = await client.post(
            "/api/v1/billing/sync-subscription",
            json={"plan_code": "team", "external_subscription_id": "sub_1"},
            headers=auth_headers,
        )
        assert resp.status_code == 422

        state = (await client.get("/api/v1/billing/state", headers=auth_headers)).json()
        assert state["plan_code"] == "free"
        assert state["usage"]["quota_minutes"] == 600

    @pytest.mark.asyncio
    async def test_billing_outage_is_503(
        self,
        app: FastAPI,
        client: AsyncClient,
        auth_headers: dict[str, str],
        mock_gateway: AsyncMock,
    ) -> None:
        mock_gateway.retrieve_subscription.side_effect = BillingUnavailableError("timeout")
        app.state.billing_gateway = mock_gateway

        resp = await client.post(
            "/api/v1/billing/sync-subscription",
            json={"plan_code": "pro", "external_subscription_id": "sub_1"},
            headers=auth_headers,
        )
        assert resp.status_code == 503
        assert resp.json()["code"] == "billing_unavailable"

    @pytest.mark.asyncio
    async def test_verification_without_gateway_is_503(
        self, client: AsyncClient, auth_headers: dict[str, str]
    ) -> None:
        resp = await client.post(
            "/api/v1/billing/sync-subscription",
            json={"plan_code": "pro", "external_subscription_id": "sub_1"},
            headers=auth_headers,
        )
        assert resp.status_code == 503

    @pytest.mark.asyncio
    async def test_unverified_sync(
        self,
        app: FastAPI,
        client: AsyncClient,
        auth_headers: dict[str, str],
        test_settings: APISettings,
    ) -> None:
        _unverified(app, test_settings)
        resp = await client.post(
            "/api/v1/billing/sync-subscription",
            json={"plan_code": "starter", "external_subscription_id": "sub_9", "status": "trialing"},
            headers=auth_headers,
        )
        assert resp.status_code == 200
        assert resp.json()["plan_code"] == "starter"

    @pytest.mark.asyncio
    async def test_bad_period_end_is_400(
        self,
        app: FastAPI,
        client: AsyncClient,
        auth_headers: dict[str, str],
        test_settings: APISettings,
    ) -> None:
        _unverified(app, test_settings)
        resp = await client.post(
            "/api/v1/billing/sync-subscription",
            json={"plan_code": "pro", "external_subscription_id": "sub_1", "current_period_end": "soon"},
            headers=auth_headers,
        )
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Top-up sync
# ---------------------------------------------------------------------------


class TestSyncTopUp:
    @pytest.mark.asyncio
    async def test_credit_and_replay(
        self,
        app: FastAPI,
        client: AsyncClient,
        auth_headers: dict[str, str],
        test_settings: APISettings,
    ) -> None:
        _unverified(app, test_settings)
        payload = {"top_up_id": "topup-60", "external_invoice_id": "in_1"}

        first = await client.post("/api/v1/billing/sync-topup", json=payload, headers=auth_headers)
        assert first.status_code == 200
        body = first.json()
        assert body["created"] is True
        assert body["minutes_granted"] == 60
        assert body["usage"]["bonus_minutes"] == 60
        assert body["usage"]["quota_minutes"] == 660

        replay = (await client.post("/api/v1/billing/sync-topup", json=payload, headers=auth_headers)).json()
        assert replay["created"] is False
        assert replay["usage"]["quota_minutes"] == 660

    @pytest.mark.asyncio
    async def test_verified_payment(
        self,
        app: FastAPI,
        client: AsyncClient,
        auth_headers: dict[str, str],
        mock_gateway: AsyncMock,
    ) -> None:
        mock_gateway.retrieve_payment_intent.return_value = _payment("in_2", "topup-180")
        app.state.billing_gateway = mock_gateway

        resp = await client.post(
            "/api/v1/billing/sync-topup",
            json={"top_up_id": "topup-180", "external_invoice_id": "in_2", "external_payment_id": "pi_1"},
            headers=auth_headers,
        )
        assert resp.status_code == 200
        assert resp.json()["minutes_granted"] == 180
        mock_gateway.retrieve_payment_intent.assert_awaited_once_with("pi_1")

    @pytest.mark.asyncio
    async def test_unpaid_payment_is_422(
        self,
        app: FastAPI,
        client: AsyncClient,
        auth_headers: dict[str, str],
        mock_gateway: AsyncMock,
    ) -> None:
        mock_gateway.retrieve_payment_intent.return_value = _payment(
            "in_3", "topup-60", status="requires_payment_method"
        )
        app.state.billing_gateway = mock_gateway

        resp = await client.post(
            "/api/v1/billing/sync-topup",
            json={"top_up_id": "topup-60", "external_invoice_id": "in_3", "external_payment_id": "pi_1"},
            headers=auth_headers,
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_verified_claim_requires_payment_id(
        self,
        app: FastAPI,
        client: AsyncClient,
        auth_headers: dict[str, str],
        mock_gateway: AsyncMock,
    ) -> None:
        app.state.billing_gateway = mock_gateway

        for _ in range(3):
            resp = await client.post(
                "/api/v1/billing/sync-topup",
                json={"top_up_id": "topup-180", "external_invoice_id": "in_fake"},
                headers=auth_headers,
            )
            assert resp.status_code == 400
            assert "external_payment_id" in resp.json()["detail"]

        mock_gateway.retrieve_payment_intent.assert_not_awaited()
        usage = (await client.get("/api/v1/usage", headers=auth_headers)).json()["usage"]
        assert usage["quota_minutes"] == 600

    @pytest.mark.asyncio
    async def test_payment_cannot_credit_other_invoices(
        self,
        app: FastAPI,
        client: AsyncClient,
        auth_headers: dict[str, str],
        mock_gateway: AsyncMock,
    ) -> None:
        mock_gateway.retrieve_payment_intent.return_value = _payment("in_paid", "topup-180")
        app.state.billing_gateway = mock_gateway

        paid = await client.post(
            "/api/v1/billing/sync-topup",
            json={"top_up_id": "topup-180", "external_invoice_id": "in_paid", "external_payment_id": "pi_1"},
            headers=auth_headers,
        )
        assert paid.status_code == 200

        for invoice_id in ("in_x0", "in_x1", "in_x2"):
            resp = await client.post(
                "/api/v1/billing/sync-topup",
                json={"top_up_id": "topup-180", "external_invoice_id": invoice_id, "external_payment_id": "pi_1"},
                headers=auth_headers,
            )
            assert resp.status_code == 422

        usage = (await client.get("/api/v1/usage", headers=auth_headers)).json()["usage"]
        assert usage["quota_minutes"] == 780

    @pytest.mark.asyncio
    async def test_unknown_pack_is_400(
        self,
        app: FastAPI,
        client: AsyncClient,
        auth_headers: dict[str, str],
        test_settings: APISettings,
    ) -> None:
        _unverified(app, test_settings)
        resp = await client.post(
            "/api/v1/billing/sync-topup",
            json={"top_up_id": "topup-9000", "external_invoice_id": "in_4"},
            headers=auth_headers,
        )
        assert resp.status_code == 400
        assert "Unknown top-up" in resp.json()["detail"]


# ---------------------------------------------------------------------------
# Top-up checkout
# ---------------------------------------------------------------------------


class TestTopUpCheckout:
    @pytest.mark.asyncio
    async def test_billing_disabled_is_503(self, client: AsyncClient, auth_headers: dict[str, str]) -> None:
        resp = await client.post("/api/v1/billing/topups", json={"top_up_id": "topup-60"}, headers=auth_headers)
        assert resp.status_code == 503

    @pytest.mark.asyncio
    async def test_checkout(
        self,
        app: FastAPI,
        client: AsyncClient,
        auth_headers: dict[str, str],
        mock_gateway: AsyncMock,
    ) -> None:
        mock_gateway.create_top_up_invoice.return_value = TopUpInvoice(
            invoice_id="in_new", payment_intent_id="pi_new", client_secret="pi_new_secret"
        )
        app.state.billing_gateway = mock_gateway

        resp = await client.post(
            "/api/v1/billing/topups",
            json={"top_up_id": "topup-60"},
            headers={**auth_headers, "Idempotency-Key": "key-1"},
        )
        assert resp.status_code == 200
        assert resp.json() == {
            "client_secret": "pi_new_secret",
            "customer": "cus_new",
            "ephemeral_key": "ek_test_secret",
            "top_up_id": "topup-60",
            "invoice_id": "in_new",
            "payment_intent_id": "pi_new",
            "minutes_granted": 60,
        }
        mock_gateway.create_customer.assert_awaited_once_with(
            account_id="acct-api-1", email="ann@example.com", name="Ann de Vries"
        )
        kwargs = mock_gateway.create_top_up_invoice.await_args.kwargs
        assert kwargs["price_id"] == "price_topup_60"
        assert kwargs["idempotency_key"] == "key-1"

    @pytest.mark.asyncio
    async def test_customer_reused(
        self,
        app: FastAPI,
        client: AsyncClient,
        auth_headers: dict[str, str],
        mock_gateway: AsyncMock,
    ) -> None:
        mock_gateway.create_top_up_invoice.return_value = TopUpInvoice(
            invoice_id="in_new", payment_intent_id="pi_new", client_secret="secret"
        )
        app.state.billing_gateway = mock_gateway

        for _ in range(2):
            resp = await client.post(
                "/api/v1/billing/topups", json={"top_up_id": "topup-180"}, headers=auth_headers
            )
            assert resp.status_code == 200
        assert mock_gateway.create_customer.await_count == 1

    @pytest.mark.asyncio
    async def test_unknown_pack(
        self,
        app: FastAPI,
        client: AsyncClient,
        auth_headers: dict[str, str],
        mock_gateway: AsyncMock,
    ) -> None:
        app.state.billing_gateway = mock_gateway
        resp = await client.post("/api/v1/billing/topups", json={"top_up_id": "nope"}, headers=auth_headers)
        assert resp.status_code == 400
        mock_gateway.create_customer.assert_not_called()
