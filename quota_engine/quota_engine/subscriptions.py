"""Subscription sync: applying plan changes reported by the billing system.

A sync event names the plan an account should be on and the external
subscription that pays for it.  Applying it:

1. optionally confirms the subscription with the billing gateway,
2. resolves the plan's base quota through the quota strategy chain,
3. upserts the plan assignment (renewal anchor untouched),
4. mirrors the external subscription record,
5. reconciles the retention setting with the new plan.

Every step is an upsert, so replaying an event converges on the same
state.  Verification happens before the first write.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from quota_engine.audit import record_audit_event
from quota_engine.catalog import PlanCatalog
from quota_engine.errors import (
    BillingUnavailableError,
    InvalidBillingEventError,
    VerificationRejectedError,
)
from quota_engine.gateway import BillingGateway
from quota_engine.plan_quota import (
    DEFAULT_QUOTA_STRATEGIES,
    QuotaLookup,
    QuotaStrategy,
    resolve_plan_quota,
)
from quota_engine.retention import select_option_for_plan, to_canonical_plan
from quota_engine.state.repository import (
    ExternalSubscriptionRepository,
    PlanAssignmentRepository,
    PlanQuotaOverrideRepository,
    RetentionSettingRepository,
)

logger = logging.getLogger(__name__)

# Subscription states under which a client-reported plan is honoured.
SYNCABLE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing", "past_due", "incomplete"})

# Epoch values above this are milliseconds rather than seconds (year 5138 in seconds).
_EPOCH_MS_THRESHOLD = 100_000_000_000


def _parse_period_end(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)
    if isinstance(value, bool):
        raise ValueError("current_period_end must be a timestamp")
    if isinstance(value, int | float):
        seconds = value / 1000 if value > _EPOCH_MS_THRESHOLD else value
        return datetime.fromtimestamp(seconds, tz=UTC)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return _parse_period_end(int(text))
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        return _parse_period_end(parsed)
    raise ValueError(f"Unsupported current_period_end: {value!r}")


class SubscriptionEvent(BaseModel):
    """A plan change reported for one account."""

    plan_code: str = Field(..., min_length=1)
    external_subscription_id: str = Field(..., min_length=1)
    current_period_end: datetime | None = None
    status: str = "active"

    @field_validator("plan_code")
    @classmethod
    def _normalize_plan_code(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("current_period_end", mode="before")
    @classmethod
    def _normalize_period_end(cls, v: Any) -> datetime | None:
        return _parse_period_end(v)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> SubscriptionEvent:
        """Validate *payload*, reporting missing or malformed fields as a caller error."""
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            fields = ", ".join(str(err["loc"][0]) for err in exc.errors() if err["loc"])
            raise InvalidBillingEventError(f"Invalid subscription event: {fields}") from exc


class SyncVerification(BaseModel):
    """Request to confirm the subscription with the billing system first."""

    expected_customer_id: str | None = None


class SyncResult(BaseModel):
    plan_code: str
    base_quota_ms: int
    quota_source: str
    status: str
    retention_option_id: str
    retention_days: int


class SubscriptionSync:
    """Applies subscription events to the plan assignment of one account."""

    def __init__(
        self,
        session: AsyncSession,
        catalog: PlanCatalog,
        gateway: BillingGateway | None = None,
        *,
        account_id: str,
        strategies: Sequence[QuotaStrategy] = DEFAULT_QUOTA_STRATEGIES,
    ) -> None:
        if not account_id:
            raise InvalidBillingEventError("Subscription sync requires an account id")
        self._session = session
        self._catalog = catalog
        self._gateway = gateway
        self._account_id = account_id
        self._strategies = strategies

    async def sync(
        self,
        event: SubscriptionEvent,
        verify: SyncVerification | None = None,
    ) -> SyncResult:
        """Apply *event* to the account.

        Raises
        ------
        VerificationRejectedError
            The billing system reports a subscription in another customer's
            name, in a non-syncable state, or priced for a different plan.
        BillingUnavailableError
            Verification was requested and the billing system could not be
            consulted.
        """
        if verify is not None:
            await self._verify_subscription(event, verify)

        plans = PlanAssignmentRepository(self._session, self._account_id)
        current = await plans.get()
        resolved = await resolve_plan_quota(
            QuotaLookup(
                plan_code=event.plan_code,
                catalog=self._catalog,
                overrides=PlanQuotaOverrideRepository(self._session),
                current_quota_ms=current.base_quota_ms if current is not None else None,
            ),
            self._strategies,
        )

        await plans.upsert_plan(event.plan_code, resolved.quota_ms)
        await ExternalSubscriptionRepository(self._session, self._account_id).upsert(
            external_subscription_id=event.external_subscription_id,
            plan_code=event.plan_code,
            status=event.status,
            current_period_end=event.current_period_end,
        )

        canonical = to_canonical_plan(event.plan_code)
        retention = RetentionSettingRepository(self._session, self._account_id)
        existing = await retention.get()
        preferred = existing.option_id if existing is not None else None
        option = select_option_for_plan(canonical, preferred)
        await retention.upsert_selection(canonical.value, option.option_id, option.days)

        logger.info(
            "Synced subscription %s: account=%s plan=%s status=%s quota=%d ms (%s)",
            event.external_subscription_id,
            self._account_id,
            event.plan_code,
            event.status,
            resolved.quota_ms,
            resolved.source,
        )
        await record_audit_event(
            self._session,
            self._account_id,
            "subscription.synced",
            entity_type="subscription",
            entity_id=event.external_subscription_id,
            metadata={
                "plan_code": event.plan_code,
                "status": event.status,
                "base_quota_ms": resolved.quota_ms,
                "quota_source": resolved.source,
            },
        )

        return SyncResult(
            plan_code=event.plan_code,
            base_quota_ms=resolved.quota_ms,
            quota_source=resolved.source,
            status=event.status,
            retention_option_id=option.option_id,
            retention_days=option.days,
        )

    async def _verify_subscription(self, event: SubscriptionEvent, verify: SyncVerification) -> None:
        if self._gateway is None:
            raise BillingUnavailableError("No billing gateway configured for verification")

        subscription_id = event.external_subscription_id
        subscription = await self._gateway.retrieve_subscription(subscription_id)
        if (
            subscription.customer_id
            and verify.expected_customer_id
            and subscription.customer_id != verify.expected_customer_id
        ):
            logger.warning(
                "Subscription %s belongs to customer %s, not %s (account %s)",
                subscription_id,
                subscription.customer_id,
                verify.expected_customer_id,
                self._account_id,
            )
            raise VerificationRejectedError("Subscription does not belong to this account")
        if subscription.status not in SYNCABLE_SUBSCRIPTION_STATUSES:
            logger.warning("Subscription %s has status %s, refusing sync", subscription_id, subscription.status)
            raise VerificationRejectedError(f"Subscription is not active (status {subscription.status})")

        paid_plan = self._catalog.find_plan_by_price_id(subscription.price_id)
        if paid_plan is None or paid_plan.code != event.plan_code:
            logger.warning(
                "Subscription %s pays price %s, claim names plan %s (account %s)",
                subscription_id,
                subscription.price_id,
                event.plan_code,
                self._account_id,
            )
            raise VerificationRejectedError("Subscription does not pay for the claimed plan")


async def provision_default_plan(
    session: AsyncSession,
    catalog: PlanCatalog,
    account_id: str,
    timezone: str = "UTC",
) -> bool:
    """Give *account_id* the catalog's default plan unless it already has one.

    Returns ``True`` when a plan assignment was created.
    """
    default = catalog.default_plan()
    resolved = await resolve_plan_quota(
        QuotaLookup(
            plan_code=default.code,
            catalog=catalog,
            overrides=PlanQuotaOverrideRepository(session),
        )
    )
    return await PlanAssignmentRepository(session, account_id).ensure_default(
        default.code,
        resolved.quota_ms,
        renew_day=1,
        timezone=timezone or "UTC",
    )
