"""Ledger consistency report.

Two kinds of disagreement are surfaced:

* **Unmatched artifacts**: artifacts submitted for debit that never got a
  usage event.  Expected after a quota rejection; anything else points at
  a failure between storing the artifact and debiting it.
* **Period drift**: usage periods whose ``used_ms`` differs from the sum of
  their usage events.  Should never happen.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from quota_engine.period import to_utc_iso
from quota_engine.state.repository import ReconciliationRepository

logger = logging.getLogger(__name__)


class UnmatchedArtifact(BaseModel):
    artifact_id: str
    account_id: str
    duration_ms: int
    created_at: str


class DriftedPeriod(BaseModel):
    account_id: str
    period_id: str
    used_ms: int
    event_ms: int

    @property
    def difference_ms(self) -> int:
        return self.used_ms - self.event_ms


class ReconciliationReport(BaseModel):
    generated_at: str
    account_id: str | None = None
    artifacts_checked: int = 0
    unmatched_artifact_count: int = 0
    unmatched_artifacts: list[UnmatchedArtifact] = Field(default_factory=list)
    drifted_periods: list[DriftedPeriod] = Field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return self.unmatched_artifact_count == 0 and not self.drifted_periods


class LedgerReconciler:
    """Builds :class:`ReconciliationReport` for one account or all accounts."""

    def __init__(self, session: AsyncSession, account_id: str | None = None) -> None:
        self._account_id = account_id
        self._repo = ReconciliationRepository(session, account_id)

    async def build_report(self, since: datetime | None = None, limit: int = 500) -> ReconciliationReport:
        """Compare artifacts, usage events and period counters.

        Parameters
        ----------
        since:
            Only artifacts received at or after this instant are checked.
        limit:
            Maximum number of unmatched artifacts listed.  The count is
            never truncated.
        """
        if since is not None:
            since = since.replace(tzinfo=UTC) if since.tzinfo is None else since.astimezone(UTC)

        checked = await self._repo.count_artifacts(since)
        unmatched_rows = await self._repo.find_unmatched_artifacts(since, limit=limit)
        unmatched_count = len(unmatched_rows)
        if unmatched_count >= limit:
            unmatched_count = len(await self._repo.find_unmatched_artifacts(since, limit=checked or limit))
        drift = await self._repo.find_period_drift()

        report = ReconciliationReport(
            generated_at=to_utc_iso(datetime.now(UTC)),
            account_id=self._account_id,
            artifacts_checked=checked,
            unmatched_artifact_count=unmatched_count,
            unmatched_artifacts=[
                UnmatchedArtifact(
                    artifact_id=row.artifact_id,
                    account_id=row.account_id,
                    duration_ms=int(row.duration_ms),
                    created_at=to_utc_iso(row.created_at),
                )
                for row in unmatched_rows
            ],
            drifted_periods=[
                DriftedPeriod(
                    account_id=d.account_id,
                    period_id=d.period_id,
                    used_ms=d.used_ms,
                    event_ms=d.event_ms,
                )
                for d in drift
            ],
        )

        if report.drifted_periods:
            logger.error(
                "Usage counters drift from event log in %d period(s): %s",
                len(report.drifted_periods),
                ", ".join(f"{d.account_id}/{d.period_id}" for d in report.drifted_periods),
            )
        if unmatched_count:
            logger.info("%d of %d artifacts have no usage event", unmatched_count, checked)
        return report
