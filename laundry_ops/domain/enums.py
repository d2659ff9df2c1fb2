"""
Closed status vocabularies for orders, payments and the wallet ledger.

Every status column in the database is one of these enums; free-form
strings never reach the state machine.
"""

from enum import Enum


class OrderStatus(str, Enum):
    """
    Order lifecycle states.

    State machine (happy path):
    ORDER_PLACED → CONFIRMED → PICKUP_ASSIGNED → PICKUP_IN_PROGRESS → PICKUP_COMPLETED
        → RECEIVED_AT_FACILITY → PROCESSING_STARTED → PROCESSING_COMPLETED
        → READY_FOR_DELIVERY → DELIVERY_ASSIGNED → DELIVERY_IN_PROGRESS → DELIVERED

    Side branches: PICKUP_FAILED, DELIVERY_FAILED, QUALITY_CHECK, CANCELLED, REFUNDED.
    """

    ORDER_PLACED = "ORDER_PLACED"
    CONFIRMED = "CONFIRMED"
    PICKUP_ASSIGNED = "PICKUP_ASSIGNED"
    PICKUP_IN_PROGRESS = "PICKUP_IN_PROGRESS"
    PICKUP_COMPLETED = "PICKUP_COMPLETED"
    PICKUP_FAILED = "PICKUP_FAILED"
    RECEIVED_AT_FACILITY = "RECEIVED_AT_FACILITY"
    PROCESSING_STARTED = "PROCESSING_STARTED"
    PROCESSING_COMPLETED = "PROCESSING_COMPLETED"
    QUALITY_CHECK = "QUALITY_CHECK"
    READY_FOR_DELIVERY = "READY_FOR_DELIVERY"
    DELIVERY_ASSIGNED = "DELIVERY_ASSIGNED"
    DELIVERY_IN_PROGRESS = "DELIVERY_IN_PROGRESS"
    DELIVERED = "DELIVERED"
    DELIVERY_FAILED = "DELIVERY_FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, Enum):
    """Status of a single payment attempt (one PaymentRecord)."""

    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    PARTIAL_REFUND = "PARTIAL_REFUND"


# Money was captured for these records; they only change through refund fields.
SETTLED_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.PAID, PaymentStatus.REFUNDED, PaymentStatus.PARTIAL_REFUND}
)


class OrderPaymentStatus(str, Enum):
    """Order-level payment projection derived from all of the order's records."""

    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    WALLET = "WALLET"
    CARD = "CARD"
    CASH = "CASH"
    BANK_TRANSFER = "BANK_TRANSFER"
    TAP_PAY = "TAP_PAY"
    TAP_INVOICE = "TAP_INVOICE"
    APPLE_PAY = "APPLE_PAY"
    GOOGLE_PAY = "GOOGLE_PAY"
    SAMSUNG_PAY = "SAMSUNG_PAY"


# Methods whose status is owned by the Tap gateway and can be reconciled.
GATEWAY_PAYMENT_METHODS = frozenset({PaymentMethod.TAP_PAY, PaymentMethod.TAP_INVOICE})


class TransactionType(str, Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    PAYMENT = "PAYMENT"
    REFUND = "REFUND"
    ADJUSTMENT = "ADJUSTMENT"
    TRANSFER = "TRANSFER"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class EntryDirection(str, Enum):
    """Whether a ledger entry adds to (CREDIT) or takes from (DEBIT) the balance."""

    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class StaffRole(str, Enum):
    SUPER_ADMIN = "SUPER_ADMIN"
    OPERATION_MANAGER = "OPERATION_MANAGER"
    DRIVER = "DRIVER"
    FACILITY_TEAM = "FACILITY_TEAM"
    SYSTEM = "SYSTEM"


class AssignmentType(str, Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


class DriverAssignmentStatus(str, Enum):
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    RESCHEDULED = "RESCHEDULED"
    FAILED = "FAILED"


class ProcessingStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    QUALITY_CHECK = "QUALITY_CHECK"
    READY_FOR_DELIVERY = "READY_FOR_DELIVERY"
    ISSUE_REPORTED = "ISSUE_REPORTED"


class ItemStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    ISSUE_REPORTED = "ISSUE_REPORTED"


class IssueStatus(str, Enum):
    REPORTED = "REPORTED"
    INVESTIGATING = "INVESTIGATING"
    RESOLVED = "RESOLVED"
    ESCALATED = "ESCALATED"


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class HistoryAction(str, Enum):
    """Kinds of OrderHistory entries."""

    STATUS_CHANGE = "status_change"
    DRIVER_ASSIGNMENT = "driver_assignment"
    PROCESSING_UPDATE = "processing_update"
    ISSUE_REPORTED = "issue_reported"
    NOTE_ADDED = "note_added"
    INVOICE_GENERATED = "invoice_generated"
    PAYMENT_UPDATED = "payment_updated"
    PAYMENT_STATUS_RECALCULATED = "payment_status_recalculated"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"


class DriverAction(str, Enum):
    START_PICKUP = "start_pickup"
    COMPLETE_PICKUP = "complete_pickup"
    FAIL_PICKUP = "fail_pickup"
    DROP_OFF = "drop_off"
    START_DELIVERY = "start_delivery"
    COMPLETE_DELIVERY = "complete_delivery"
    FAIL_DELIVERY = "fail_delivery"


class FacilityAction(str, Enum):
    RECEIVE_ORDER = "receive_order"
    START_PROCESSING = "start_processing"
    COMPLETE_PROCESSING = "complete_processing"
    QUALITY_CHECK = "quality_check"
    READY_FOR_DELIVERY = "ready_for_delivery"
    GENERATE_INVOICE = "generate_invoice"


class OperationsAction(str, Enum):
    CONFIRM_ORDER = "confirm_order"
    ASSIGN_PICKUP_DRIVER = "assign_pickup_driver"
    ASSIGN_DELIVERY_DRIVER = "assign_delivery_driver"
    CANCEL_ORDER = "cancel_order"


class CleanupAction(str, Enum):
    EXTRACTED_TAP_ID = "EXTRACTED_TAP_ID"
    NORMALIZED_TAP_REFERENCE = "NORMALIZED_TAP_REFERENCE"
    FIXED_INCONSISTENT_DATA = "FIXED_INCONSISTENT_DATA"
    NO_CHANGE = "NO_CHANGE"
    ERROR = "ERROR"
