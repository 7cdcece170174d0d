"""Read receipts and room-state reconciliation for ledger-backed chat rooms."""

__version__ = "0.1.0"
