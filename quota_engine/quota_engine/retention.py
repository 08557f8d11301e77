"""Data-retention options and their availability per plan.

Plans collapse onto three canonical retention tiers::

    free                        -> free
    starter, basic              -> basic
    pro, premium, team, enterprise -> premium

Each retention option lists the canonical tiers allowed to select it.  An
option outside the account's tier is *locked*: it may still be stored (a
downgrade keeps the user's earlier choice) but the API refuses to select
it and the retention settings view clamps it back into range.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class CanonicalPlan(str, Enum):
    """Retention tier derived from a plan code."""

    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"


_CANONICAL_NAMES: dict[CanonicalPlan, str] = {
    CanonicalPlan.FREE: "Free",
    CanonicalPlan.BASIC: "Basic",
    CanonicalPlan.PREMIUM: "Premium",
}

_PLAN_CANONICAL_MAP: dict[str, CanonicalPlan] = {
    "free": CanonicalPlan.FREE,
    "starter": CanonicalPlan.BASIC,
    "basic": CanonicalPlan.BASIC,
    "pro": CanonicalPlan.PREMIUM,
    "premium": CanonicalPlan.PREMIUM,
    "team": CanonicalPlan.PREMIUM,
    "enterprise": CanonicalPlan.PREMIUM,
}


@dataclass(frozen=True)
class RetentionOption:
    """A selectable retention window."""

    option_id: str
    label: str
    days: int
    description: str
    plans: frozenset[CanonicalPlan]


RETENTION_OPTIONS: tuple[RetentionOption, ...] = (
    RetentionOption(
        option_id="30d",
        label="30 dagen",
        days=30,
        description="Standaard-herinnering van 30 dagen voor elk account.",
        plans=frozenset({CanonicalPlan.FREE, CanonicalPlan.BASIC, CanonicalPlan.PREMIUM}),
    ),
    RetentionOption(
        option_id="90d",
        label="90 dagen",
        days=90,
        description="Bewaar transcripts voor een kwartaal voor audits.",
        plans=frozenset({CanonicalPlan.BASIC, CanonicalPlan.PREMIUM}),
    ),
    RetentionOption(
        option_id="180d",
        label="180 dagen",
        days=180,
        description="Halve-jaar retention voor teams met langere projecten.",
        plans=frozenset({CanonicalPlan.BASIC, CanonicalPlan.PREMIUM}),
    ),
    RetentionOption(
        option_id="365d",
        label="365 dagen",
        days=365,
        description="Volledig jaar archief (vereist Premium-plan).",
        plans=frozenset({CanonicalPlan.PREMIUM}),
    ),
)


def to_canonical_plan(plan_code: str | None) -> CanonicalPlan:
    """Map any plan code onto its retention tier; unknown codes are ``free``."""
    normalized = (plan_code or "").strip().lower()
    return _PLAN_CANONICAL_MAP.get(normalized, CanonicalPlan.FREE)


def canonical_plan_name(plan: CanonicalPlan) -> str:
    return _CANONICAL_NAMES[plan]


def find_option(option_id: str | None) -> RetentionOption | None:
    if not option_id:
        return None
    for option in RETENTION_OPTIONS:
        if option.option_id == option_id:
            return option
    return None


def _allowed_options(plan_code: str | CanonicalPlan | None) -> list[RetentionOption]:
    canonical = plan_code if isinstance(plan_code, CanonicalPlan) else to_canonical_plan(plan_code)
    return sorted(
        (opt for opt in RETENTION_OPTIONS if canonical in opt.plans),
        key=lambda opt: opt.days,
    )


def option_locked_for_plan(option: RetentionOption, plan_code: str | CanonicalPlan | None) -> bool:
    canonical = plan_code if isinstance(plan_code, CanonicalPlan) else to_canonical_plan(plan_code)
    return canonical not in option.plans


def default_option_for_plan(plan_code: str | CanonicalPlan | None) -> RetentionOption:
    """Return the shortest retention window the plan allows."""
    allowed = _allowed_options(plan_code)
    return allowed[0] if allowed else RETENTION_OPTIONS[0]


def select_option_for_plan(
    plan_code: str | CanonicalPlan | None,
    preferred_option_id: str | None = None,
) -> RetentionOption:
    """Choose the retention option to apply for *plan_code*.

    The preferred option is kept when the plan allows it.  A locked
    preference falls back to the longest allowed window that is not longer
    than the preference; otherwise the plan default is used.
    """
    allowed = _allowed_options(plan_code)
    if not allowed:
        return RETENTION_OPTIONS[0]

    preferred = find_option(preferred_option_id)
    if preferred is not None:
        if not option_locked_for_plan(preferred, plan_code):
            return preferred
        for option in reversed(allowed):
            if option.days <= preferred.days:
                return option

    return allowed[0]


def option_payload_for_plan(plan_code: str | CanonicalPlan | None) -> list[dict[str, Any]]:
    """Serialise every option with ``locked`` and ``default_for_plan`` flags."""
    default = default_option_for_plan(plan_code)
    return [
        {
            "id": option.option_id,
            "label": option.label,
            "days": option.days,
            "description": option.description,
            "locked": option_locked_for_plan(option, plan_code),
            "default_for_plan": option.option_id == default.option_id,
        }
        for option in RETENTION_OPTIONS
    ]
