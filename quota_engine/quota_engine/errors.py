"""Typed failures raised by the quota engine.

The HTTP layer maps each of these to a distinct response so that clients
can tell "over quota" apart from "something broke".
"""

from __future__ import annotations


class QuotaEngineError(Exception):
    """Base exception for all quota engine errors."""


class UnprovisionedAccountError(QuotaEngineError):
    """The account has no plan assignment."""

    def __init__(self, account_id: str) -> None:
        super().__init__(f"Account has no plan assignment: {account_id}")
        self.account_id = account_id


class QuotaExceededError(QuotaEngineError):
    """A debit would push usage past the effective quota."""

    def __init__(self, account_id: str, requested_ms: int, remaining_ms: int, quota_ms: int) -> None:
        super().__init__(
            f"Quota exceeded for account {account_id}: requested {requested_ms} ms, {remaining_ms} ms remaining"
        )
        self.account_id = account_id
        self.requested_ms = requested_ms
        self.remaining_ms = remaining_ms
        self.quota_ms = quota_ms


class InvalidBillingEventError(QuotaEngineError, ValueError):
    """A subscription or top-up event is malformed (caller error)."""


class ExternalVerificationError(QuotaEngineError):
    """The billing system rejected or could not confirm an event."""

    retryable: bool = False


class VerificationRejectedError(ExternalVerificationError):
    """The billing system answered, and the answer does not support the claim."""

    retryable = False


class BillingUnavailableError(ExternalVerificationError):
    """The billing system could not be reached; the caller may retry."""

    retryable = True
