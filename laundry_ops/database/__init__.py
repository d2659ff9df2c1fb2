"""Database package for laundry operations."""
from .connection import close_db, get_session_factory, init_db
from .models import (
    Base,
    DriverAssignment,
    DriverPhoto,
    IssueReport,
    Order,
    OrderHistory,
    OrderProcessing,
    OrderUpdate,
    OutboxEvent,
    PaymentRecord,
    PaymentSyncRun,
    ProcessingItemDetail,
    Wallet,
    WalletTransaction,
)

__all__ = [
    "Base",
    "DriverAssignment",
    "DriverPhoto",
    "IssueReport",
    "Order",
    "OrderHistory",
    "OrderProcessing",
    "OrderUpdate",
    "OutboxEvent",
    "PaymentRecord",
    "PaymentSyncRun",
    "ProcessingItemDetail",
    "Wallet",
    "WalletTransaction",
    "close_db",
    "get_session_factory",
    "init_db",
]
