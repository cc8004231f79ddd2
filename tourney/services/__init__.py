"""Business logic services."""

from tourney.services.ledger import Ledger, Reconciliation, RefundSummary

__all__ = [
    "Ledger",
    "Reconciliation",
    "RefundSummary",
]
