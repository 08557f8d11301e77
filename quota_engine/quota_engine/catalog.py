"""Plan and top-up catalog.

The catalog is assembled once at process start from the static plan and
top-up definitions plus the Stripe price identifiers found in
:class:`~quota_engine.config.CatalogSettings`.  The resulting
:class:`PlanCatalog` is immutable and handed to every component that needs
it; nothing in this module keeps it in a global.

Plans::

    free     600 min   (default, no Stripe price)
    starter  900 min   STRIPE_PRICE_PLAN_BASIC_ID
    pro     1800 min   STRIPE_PRICE_PLAN_STARTER
    team    3600 min   STRIPE_PRICE_PLAN_TEAM

Top-ups::

    topup-60    60 min   STRIPE_PRICE_TOPUP_60
    topup-180  180 min   STRIPE_PRICE_TOPUP_180
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from quota_engine.config import CatalogSettings

logger = logging.getLogger(__name__)

MINUTE_MS = 60_000

# Last-resort base quota when neither the catalog nor the account has one.
FREE_TIER_FALLBACK_MINUTES = 600


def ms_to_minutes(ms: int | float) -> int:
    """Convert milliseconds to whole minutes, rounding half up, never negative."""
    return max(0, int((ms + MINUTE_MS // 2) // MINUTE_MS))


def minutes_to_ms(minutes: int | float) -> int:
    """Convert minutes to milliseconds, never negative."""
    return max(0, int(minutes * MINUTE_MS))


def _normalize_code(code: str | None) -> str:
    return (code or "").strip().lower()


@dataclass(frozen=True)
class Plan:
    """A subscription plan with its monthly quota."""

    code: str
    name: str
    quota_minutes: int
    description: str = ""
    stripe_price_id: str | None = None
    amount_cents: int | None = None
    currency: str = "eur"
    retention_option_id: str = "30d"
    is_default: bool = False

    @property
    def quota_ms(self) -> int:
        return minutes_to_ms(self.quota_minutes)

    @property
    def purchasable(self) -> bool:
        """A plan without a Stripe price can be assigned but not bought."""
        return bool(self.stripe_price_id)


@dataclass(frozen=True)
class TopUp:
    """A one-time pack of bonus minutes."""

    top_up_id: str
    label: str
    minutes_granted: int
    description: str = ""
    stripe_price_id: str | None = None
    amount_cents: int | None = None
    currency: str = "eur"

    @property
    def ms_granted(self) -> int:
        return minutes_to_ms(self.minutes_granted)

    @property
    def purchasable(self) -> bool:
        return bool(self.stripe_price_id)


class PlanCatalog:
    """Read-only lookup over plans and top-up packs.

    Lookups are linear scans; the catalog holds a handful of entries and
    is never mutated after construction, so concurrent readers need no
    synchronisation.
    """

    def __init__(self, plans: list[Plan] | tuple[Plan, ...], top_ups: list[TopUp] | tuple[TopUp, ...]) -> None:
        if not plans:
            raise ValueError("A plan catalog needs at least one plan")
        self._plans: tuple[Plan, ...] = tuple(plans)
        self._top_ups: tuple[TopUp, ...] = tuple(top_ups)

    def get_plans(self) -> tuple[Plan, ...]:
        return self._plans

    def get_top_ups(self) -> tuple[TopUp, ...]:
        return self._top_ups

    def find_plan(self, code: str | None) -> Plan | None:
        wanted = _normalize_code(code)
        if not wanted:
            return None
        for plan in self._plans:
            if plan.code == wanted:
                return plan
        return None

    def find_plan_by_price_id(self, price_id: str | None) -> Plan | None:
        if not price_id:
            return None
        for plan in self._plans:
            if plan.stripe_price_id and plan.stripe_price_id == price_id:
                return plan
        return None

    def find_top_up(self, top_up_id: str | None) -> TopUp | None:
        wanted = _normalize_code(top_up_id)
        if not wanted:
            return None
        for top_up in self._top_ups:
            if top_up.top_up_id == wanted:
                return top_up
        return None

    def find_top_up_by_price_id(self, price_id: str | None) -> TopUp | None:
        if not price_id:
            return None
        for top_up in self._top_ups:
            if top_up.stripe_price_id and top_up.stripe_price_id == price_id:
                return top_up
        return None

    def default_plan(self) -> Plan:
        """Return the plan flagged as default, or the first plan listed."""
        for plan in self._plans:
            if plan.is_default:
                return plan
        return self._plans[0]


# ---------------------------------------------------------------------------
# Static definitions
# ---------------------------------------------------------------------------

# (plan, name of the CatalogSettings field holding its Stripe price id)
_PLAN_DEFINITIONS: tuple[tuple[Plan, str | None], ...] = (
    (
        Plan(
            code="free",
            name="Gratis",
            description="10 uur per maand, voldoende om het platform uit te proberen.",
            quota_minutes=600,
            retention_option_id="30d",
            is_default=True,
        ),
        None,
    ),
    (
        Plan(
            code="starter",
            name="Starter",
            description="Uitgebreide functies voor starters en zelfstandigen.",
            quota_minutes=900,
            amount_cents=1299,
            retention_option_id="30d",
        ),
        "stripe_price_plan_basic_id",
    ),
    (
        Plan(
            code="pro",
            name="Pro",
            description="Voor professionals die wekelijks meerdere transcripties maken.",
            quota_minutes=1800,
            amount_cents=2499,
            retention_option_id="90d",
        ),
        "stripe_price_plan_starter",
    ),
    (
        Plan(
            code="team",
            name="Team",
            description="Samenwerken binnen teams met ruime marges.",
            quota_minutes=3600,
            amount_cents=4999,
            retention_option_id="180d",
        ),
        "stripe_price_plan_team",
    ),
)

_TOP_UP_DEFINITIONS: tuple[tuple[TopUp, str | None], ...] = (
    (
        TopUp(
            top_up_id="topup-60",
            label="60 extra minuten",
            description="Een uur extra transcriptietijd voor deze periode.",
            minutes_granted=60,
            amount_cents=499,
        ),
        "stripe_price_topup_60",
    ),
    (
        TopUp(
            top_up_id="topup-180",
            label="180 extra minuten",
            description="Voor als je tijdelijk veel extra interviews moet uitwerken.",
            minutes_granted=180,
            amount_cents=1299,
        ),
        "stripe_price_topup_180",
    ),
)


def _price_for(settings: CatalogSettings, field_name: str | None) -> str | None:
    if field_name is None:
        return None
    value = getattr(settings, field_name, "") or ""
    return value.strip() or None


def build_catalog(settings: CatalogSettings | None = None) -> PlanCatalog:
    """Assemble the catalog, resolving Stripe price ids from *settings*.

    Parameters
    ----------
    settings:
        Price configuration.  ``None`` builds a catalog without any Stripe
        prices (every entry listed, none purchasable).

    Returns
    -------
    PlanCatalog
        The immutable catalog for this process.
    """
    settings = settings or CatalogSettings.model_construct()
    plans = [
        _with_price(plan, _price_for(settings, field_name))  # type: ignore[arg-type]
        for plan, field_name in _PLAN_DEFINITIONS
    ]
    top_ups = [
        _with_price(top_up, _price_for(settings, field_name))  # type: ignore[arg-type]
        for top_up, field_name in _TOP_UP_DEFINITIONS
    ]

    unpriced = [p.code for p in plans if not p.is_default and not p.purchasable]
    unpriced += [t.top_up_id for t in top_ups if not t.purchasable]
    if unpriced:
        logger.warning("Catalog entries without a Stripe price (not purchasable): %s", ", ".join(unpriced))

    return PlanCatalog(plans, top_ups)


def _with_price(entry: Plan | TopUp, price_id: str | None) -> Plan | TopUp:
    return replace(entry, stripe_price_id=price_id)
