"""Billing-period calculation.

A period is a one-month window anchored on a renewal day-of-month in the
account's timezone.  The renewal day is clamped to ``1..28`` so that every
month has a valid anchor.  Period identifiers are deterministic:

* ``"YYYY-MM"`` when the renewal day is 1,
* ``"YYYY-MM-DD"`` (the local start date) otherwise.

All boundaries are returned as timezone-aware UTC datetimes together with
their ISO-8601 rendering at millisecond precision.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_TIMEZONE = "UTC"
MIN_RENEW_DAY = 1
MAX_RENEW_DAY = 28


@dataclass(frozen=True)
class BillingPeriod:
    """The usage period containing a given instant."""

    period_id: str
    start: datetime
    end: datetime
    timezone: str
    renew_day: int

    @property
    def start_iso(self) -> str:
        return to_utc_iso(self.start)

    @property
    def end_iso(self) -> str:
        return to_utc_iso(self.end)

    def contains(self, instant: datetime) -> bool:
        """Return ``True`` if *instant* falls inside ``[start, end)``."""
        return self.start <= _as_utc(instant) < self.end


def clamp_renew_day(renew_day: Any) -> int:
    """Coerce *renew_day* into ``1..28``; missing or non-numeric values read as 1."""
    try:
        day = int(renew_day or MIN_RENEW_DAY)
    except (TypeError, ValueError):
        return MIN_RENEW_DAY
    return max(MIN_RENEW_DAY, min(MAX_RENEW_DAY, day))


def to_utc_iso(instant: datetime) -> str:
    """Render *instant* as UTC ISO-8601 with milliseconds and a ``Z`` suffix."""
    return _as_utc(instant).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def current_period(
    timezone: str | None,
    renew_day: Any,
    now: datetime | None = None,
) -> BillingPeriod:
    """Compute the billing period that contains *now*.

    Parameters
    ----------
    timezone:
        IANA timezone name.  Empty or ``None`` means ``UTC``.
    renew_day:
        Day of month on which the period renews.  Clamped to ``1..28``.
    now:
        The instant to evaluate.  Defaults to the current wall-clock time.
        Naive datetimes are interpreted as UTC.

    Returns
    -------
    BillingPeriod
        Identifier and ``[start, end)`` boundaries of the period.

    Raises
    ------
    ValueError
        If *timezone* is not a known IANA zone.
    """
    tz_name = timezone or DEFAULT_TIMEZONE
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {tz_name!r}") from exc

    day = clamp_renew_day(renew_day)
    local_now = _as_utc(now or datetime.now(UTC)).astimezone(tz)

    start_local = datetime(local_now.year, local_now.month, day, tzinfo=tz)
    if local_now < start_local:
        year, month = _shift_month(local_now.year, local_now.month, -1)
        start_local = datetime(year, month, day, tzinfo=tz)

    next_year, next_month = _shift_month(start_local.year, start_local.month, 1)
    end_local = datetime(next_year, next_month, day, tzinfo=tz)

    if day == 1:
        period_id = f"{start_local.year:04d}-{start_local.month:02d}"
    else:
        period_id = f"{start_local.year:04d}-{start_local.month:02d}-{day:02d}"

    return BillingPeriod(
        period_id=period_id,
        start=start_local.astimezone(UTC),
        end=end_local.astimezone(UTC),
        timezone=tz_name,
        renew_day=day,
    )


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def _as_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=UTC)
    return instant.astimezone(UTC)
