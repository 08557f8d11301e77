"""Resolution of the base quota a plan grants.

The quota is resolved by an explicit, ordered list of named strategies.
Each strategy returns a millisecond value or ``None``; the first value
wins and the winning strategy's name is reported alongside it::

    dynamic_config     operator override in ``plan_quota_overrides`` (> 0)
    static_catalog     the catalog's listed quota (> 0)
    preserve_existing  the account's current base quota (> 0)
    free_tier_default  the catalog's free plan, else 600 minutes
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from quota_engine.catalog import FREE_TIER_FALLBACK_MINUTES, PlanCatalog, minutes_to_ms
from quota_engine.state.repository import PlanQuotaOverrideRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaLookup:
    """Inputs available to every strategy."""

    plan_code: str
    catalog: PlanCatalog
    overrides: PlanQuotaOverrideRepository
    current_quota_ms: int | None = None


@dataclass(frozen=True)
class QuotaStrategy:
    """A named step in the resolution chain."""

    name: str
    resolve: Callable[[QuotaLookup], Awaitable[int | None]]


@dataclass(frozen=True)
class ResolvedQuota:
    quota_ms: int
    source: str


def _positive(value: int | None) -> int | None:
    return value if value is not None and value > 0 else None


async def _from_dynamic_config(lookup: QuotaLookup) -> int | None:
    return _positive(await lookup.overrides.get_quota_ms(lookup.plan_code))


async def _from_static_catalog(lookup: QuotaLookup) -> int | None:
    plan = lookup.catalog.find_plan(lookup.plan_code)
    return _positive(plan.quota_ms) if plan is not None else None


async def _from_existing_assignment(lookup: QuotaLookup) -> int | None:
    return _positive(lookup.current_quota_ms)


async def _from_free_tier(lookup: QuotaLookup) -> int | None:
    free = lookup.catalog.find_plan("free")
    if free is not None and free.quota_ms > 0:
        return free.quota_ms
    return minutes_to_ms(FREE_TIER_FALLBACK_MINUTES)


DEFAULT_QUOTA_STRATEGIES: tuple[QuotaStrategy, ...] = (
    QuotaStrategy("dynamic_config", _from_dynamic_config),
    QuotaStrategy("static_catalog", _from_static_catalog),
    QuotaStrategy("preserve_existing", _from_existing_assignment),
    QuotaStrategy("free_tier_default", _from_free_tier),
)


async def resolve_plan_quota(
    lookup: QuotaLookup,
    strategies: Sequence[QuotaStrategy] = DEFAULT_QUOTA_STRATEGIES,
) -> ResolvedQuota:
    """Evaluate *strategies* in order and return the first value found.

    Raises
    ------
    LookupError
        If every strategy returned ``None`` (only possible with a custom
        strategy list that omits the free-tier default).
    """
    for strategy in strategies:
        value = await strategy.resolve(lookup)
        if value is not None:
            logger.debug("Plan %s quota %d ms from %s", lookup.plan_code, value, strategy.name)
            return ResolvedQuota(quota_ms=value, source=strategy.name)
    raise LookupError(f"No quota strategy produced a value for plan {lookup.plan_code!r}")
