"""State persistence layer for the usage and billing ledger."""

from quota_engine.state.database import get_engine, get_session
from quota_engine.state.repository import (
    AuditRepository,
    BillingCustomerRepository,
    ExternalSubscriptionRepository,
    PlanAssignmentRepository,
    PlanQuotaOverrideRepository,
    ReconciliationRepository,
    RetentionSettingRepository,
    TopUpLedgerRepository,
    UsageLedgerRepository,
)

__all__ = [
    "AuditRepository",
    "BillingCustomerRepository",
    "ExternalSubscriptionRepository",
    "PlanAssignmentRepository",
    "PlanQuotaOverrideRepository",
    "ReconciliationRepository",
    "RetentionSettingRepository",
    "TopUpLedgerRepository",
    "UsageLedgerRepository",
    "get_engine",
    "get_session",
]
