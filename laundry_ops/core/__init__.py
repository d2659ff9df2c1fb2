"""Core order, wallet and payment services."""
from .order_tracking import OrderTracker
from .outbox import OutboxPublisher
from .payment_cleanup import PaymentDataCleaner
from .payments import OrderPaymentService
from .reconciliation import PaymentReconciler
from .wallet import WalletLedger

__all__ = [
    "OrderPaymentService",
    "OrderTracker",
    "OutboxPublisher",
    "PaymentDataCleaner",
    "PaymentReconciler",
    "WalletLedger",
]
