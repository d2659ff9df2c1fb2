"""SQLAlchemy database models for orders, payments and the wallet ledger."""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from laundry_ops.domain.enums import (
    AssignmentType,
    DriverAssignmentStatus,
    EntryDirection,
    HistoryAction,
    IssueSeverity,
    IssueStatus,
    ItemStatus,
    OrderPaymentStatus,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    ProcessingStatus,
    TransactionStatus,
    TransactionType,
)

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite has no BIGINT autoincrement; keep integer ids there.
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def status_enum(enum_cls: Any) -> Enum:
    """Closed enum column stored as a short string."""
    return Enum(enum_cls, native_enum=False, length=32, validate_strings=True)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Order(Base):
    """
    Customer orders.

    Orders are never deleted; ``status`` only moves along the transition table
    and ``payment_status`` is a projection recomputed from payment_records.
    """

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    order_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    customer_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    status: Mapped[OrderStatus] = mapped_column(
        status_enum(OrderStatus), nullable=False, default=OrderStatus.ORDER_PLACED, index=True
    )
    payment_status: Mapped[OrderPaymentStatus] = mapped_column(
        status_enum(OrderPaymentStatus), nullable=False, default=OrderPaymentStatus.PENDING
    )
    payment_method: Mapped[Optional[PaymentMethod]] = mapped_column(
        status_enum(PaymentMethod), nullable=True
    )
    invoice_total_fils: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BHD")
    invoice_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pickup_start_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    pickup_end_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    delivery_start_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    delivery_end_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("invoice_total_fils >= 0", name="non_negative_invoice_total"),
        Index("idx_orders_customer_status", "customer_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, number={self.order_number}, "
            f"status={self.status}, payment_status={self.payment_status})>"
        )


class OrderHistory(Base):
    """
    Order audit trail.

    One row per status transition or administrative action. Immutable once written.
    """

    __tablename__ = "order_history"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    staff_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    action: Mapped[HistoryAction] = mapped_column(status_enum(HistoryAction), nullable=False)
    old_value: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    new_value: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meta: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    __table_args__ = (Index("idx_order_history_order_created", "order_id", "created_at"),)

    def __repr__(self) -> str:
        """String representation of OrderHistory."""
        return f"<OrderHistory(id={self.id}, order_id={self.order_id}, action={self.action})>"


class OrderUpdate(Base):
    """Status change log, one row per transition."""

    __tablename__ = "order_updates"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    staff_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    old_status: Mapped[OrderStatus] = mapped_column(status_enum(OrderStatus), nullable=False)
    new_status: Mapped[OrderStatus] = mapped_column(status_enum(OrderStatus), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class DriverAssignment(Base):
    """Pickup or delivery job assigned to a driver."""

    __tablename__ = "driver_assignments"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    driver_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    assignment_type: Mapped[AssignmentType] = mapped_column(
        status_enum(AssignmentType), nullable=False
    )
    status: Mapped[DriverAssignmentStatus] = mapped_column(
        status_enum(DriverAssignmentStatus),
        nullable=False,
        default=DriverAssignmentStatus.ASSIGNED,
    )
    estimated_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    actual_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        """String representation of DriverAssignment."""
        return (
            f"<DriverAssignment(id={self.id}, order_id={self.order_id}, "
            f"type={self.assignment_type}, status={self.status})>"
        )


class DriverPhoto(Base):
    """Photo evidence attached to a driver action (stored elsewhere, referenced by URL)."""

    __tablename__ = "driver_photos"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    driver_assignment_id: Mapped[int] = mapped_column(
        ForeignKey("driver_assignments.id"), nullable=False, index=True
    )
    photo_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    photo_type: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class OrderProcessing(Base):
    """Facility processing record, one per order."""

    __tablename__ = "order_processing"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), nullable=False, unique=True)
    staff_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    processing_status: Mapped[ProcessingStatus] = mapped_column(
        status_enum(ProcessingStatus), nullable=False, default=ProcessingStatus.PENDING
    )
    total_pieces: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_weight: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    processing_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    quality_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "quality_score IS NULL OR (quality_score >= 1 AND quality_score <= 10)",
            name="valid_quality_score",
        ),
    )


class ProcessingItemDetail(Base):
    """Per-item processing progress within an OrderProcessing."""

    __tablename__ = "processing_item_details"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    order_processing_id: Mapped[int] = mapped_column(
        ForeignKey("order_processing.id"), nullable=False, index=True
    )
    item_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    processed_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[ItemStatus] = mapped_column(
        status_enum(ItemStatus), nullable=False, default=ItemStatus.PENDING
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class IssueReport(Base):
    """Quality issue raised by the facility team."""

    __tablename__ = "issue_reports"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    order_processing_id: Mapped[int] = mapped_column(
        ForeignKey("order_processing.id"), nullable=False, index=True
    )
    processing_item_detail_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("processing_item_details.id"), nullable=True
    )
    staff_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    issue_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[IssueStatus] = mapped_column(
        status_enum(IssueStatus), nullable=False, default=IssueStatus.REPORTED
    )
    severity: Mapped[IssueSeverity] = mapped_column(
        status_enum(IssueSeverity), nullable=False, default=IssueSeverity.MEDIUM
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    resolution: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class Wallet(Base):
    """
    Customer wallet.

    ``balance_fils`` always equals the balance_after of the COMPLETED
    transaction with the highest ledger_sequence. Writers lock this row.
    """

    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    balance_fils: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BHD")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    ledger_sequence: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_transaction_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("balance_fils >= 0", name="non_negative_balance"),
        CheckConstraint("length(currency) = 3", name="valid_wallet_currency"),
    )

    def __repr__(self) -> str:
        """String representation of Wallet."""
        return (
            f"<Wallet(id={self.id}, customer_id={self.customer_id}, "
            f"balance={self.balance_fils}, active={self.is_active})>"
        )


class WalletTransaction(Base):
    """
    Append-only wallet ledger entry.

    balance_after_fils = balance_before_fils + signed_amount_fils. PENDING
    entries carry placeholder snapshots until they complete.
    """

    __tablename__ = "wallet_transactions"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    wallet_id: Mapped[int] = mapped_column(ForeignKey("wallets.id"), nullable=False, index=True)
    transaction_type: Mapped[TransactionType] = mapped_column(
        status_enum(TransactionType), nullable=False
    )
    direction: Mapped[EntryDirection] = mapped_column(status_enum(EntryDirection), nullable=False)
    amount_fils: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_before_fils: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after_fils: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        status_enum(TransactionStatus), nullable=False, index=True
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    meta: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JSONType, nullable=True)
    ledger_sequence: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    __table_args__ = (
        CheckConstraint("amount_fils >= 0", name="non_negative_transaction_amount"),
        Index("idx_wallet_transactions_wallet_seq", "wallet_id", "ledger_sequence", unique=True),
    )

    @property
    def signed_amount_fils(self) -> int:
        return self.amount_fils if self.direction == EntryDirection.CREDIT else -self.amount_fils

    def __repr__(self) -> str:
        """String representation of WalletTransaction."""
        return (
            f"<WalletTransaction(id={self.id}, wallet_id={self.wallet_id}, "
            f"type={self.transaction_type}, amount={self.amount_fils}, status={self.status})>"
        )


class PaymentRecord(Base):
    """
    One row per payment attempt (gateway charge, invoice, wallet debit, cash...).

    Immutable once settled except for the refund fields.
    """

    __tablename__ = "payment_records"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    order_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("orders.id"), nullable=True, index=True
    )
    wallet_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("wallet_transactions.id"), nullable=True
    )
    amount_fils: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BHD")
    payment_method: Mapped[PaymentMethod] = mapped_column(
        status_enum(PaymentMethod), nullable=False
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        status_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True
    )
    tap_charge_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    tap_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    tap_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    tap_response: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    meta: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JSONType, nullable=True)
    refund_amount_fils: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    pending_refund_fils: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    refund_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount_fils >= 0", name="non_negative_payment_amount"),
        CheckConstraint("refund_amount_fils >= 0", name="non_negative_refund_amount"),
        CheckConstraint("pending_refund_fils >= 0", name="non_negative_pending_refund"),
        Index("idx_payment_records_method_status", "payment_method", "payment_status"),
    )

    @property
    def gateway_charge_id(self) -> Optional[str]:
        """Charge id used to poll TAP_PAY records."""
        return self.tap_charge_id or self.tap_transaction_id

    def __repr__(self) -> str:
        """String representation of PaymentRecord."""
        return (
            f"<PaymentRecord(id={self.id}, order_id={self.order_id}, "
            f"method={self.payment_method}, amount={self.amount_fils}, "
            f"status={self.payment_status})>"
        )


class PaymentSyncRun(Base):
    """
    Batch payment sync run tracking.

    Stores the report of every scheduled or manual batch sync against the gateway.
    """

    __tablename__ = "payment_sync_runs"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    trigger: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    total_checked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status_mismatches: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('in_progress', 'completed', 'failed')",
            name="valid_sync_run_status",
        ),
        Index("idx_payment_sync_runs_started", "started_at"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentSyncRun."""
        return (
            f"<PaymentSyncRun(id={self.id}, trigger={self.trigger}, status={self.status}, "
            f"updated={self.updated}, errors={self.error_count})>"
        )


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Notification events are written in the same transaction as the order or
    payment change, then delivered asynchronously by the outbox publisher.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    published_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index(
            "idx_outbox_unpublished",
            "published",
            "created_at",
            postgresql_where=text("NOT published"),
        ),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )
