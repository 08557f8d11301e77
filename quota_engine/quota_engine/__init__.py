"""Usage-quota and billing ledger engine."""

__version__ = "0.1.0"
