"""Order tracking, wallet ledger and Tap payment reconciliation for a laundry service."""

__version__ = "1.0.0"
