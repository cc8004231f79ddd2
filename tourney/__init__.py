"""Tournament lifecycle and wallet ledger engine."""

__version__ = "0.1.0"
