"""
Domain layer: status vocabularies, the order transition table, audit metadata
types and the payment status aggregator.

Nothing in this package touches the database, the gateway or the network.
"""
from .enums import OrderPaymentStatus, OrderStatus, PaymentMethod, PaymentStatus
from .payment_summary import PaymentLine, PaymentSummary, summarize_payments
from .transitions import can_transition, validate_transition

__all__ = [
    "OrderPaymentStatus",
    "OrderStatus",
    "PaymentLine",
    "PaymentMethod",
    "PaymentStatus",
    "PaymentSummary",
    "can_transition",
    "summarize_payments",
    "validate_transition",
]
