"""
Pydantic schemas for API request/response models.

All money fields are integer minor units (fils).
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from laundry_ops.domain.enums import (
    DriverAction,
    EntryDirection,
    FacilityAction,
    HistoryAction,
    IssueSeverity,
    IssueStatus,
    OperationsAction,
    OrderPaymentStatus,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    TransactionStatus,
    TransactionType,
)


class _ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# Orders


class TransitionRequest(BaseModel):
    new_status: OrderStatus
    notes: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class DriverActionRequest(BaseModel):
    action: DriverAction
    notes: Optional[str] = None
    photo_url: Optional[str] = Field(default=None, max_length=1024)


class ProcessingDetails(BaseModel):
    total_pieces: Optional[int] = Field(default=None, ge=0)
    total_weight: Optional[float] = Field(default=None, ge=0)
    processing_notes: Optional[str] = None
    quality_score: Optional[int] = Field(default=None, ge=1, le=10)


class FacilityActionRequest(BaseModel):
    action: FacilityAction
    processing: Optional[ProcessingDetails] = None
    invoice_total_fils: Optional[int] = Field(default=None, ge=0)


class OperationsActionRequest(BaseModel):
    action: OperationsAction
    driver_id: Optional[int] = None
    estimated_time: Optional[datetime] = None
    notes: Optional[str] = None


class NoteRequest(BaseModel):
    note: str = Field(..., min_length=1)
    is_internal: bool = True


class IssueReportRequest(BaseModel):
    issue_type: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1)
    severity: IssueSeverity = IssueSeverity.MEDIUM
    item_id: Optional[int] = None


class OrderResponse(_ORMModel):
    id: int
    order_number: str
    customer_id: int
    status: OrderStatus
    payment_status: OrderPaymentStatus
    payment_method: Optional[PaymentMethod] = None
    invoice_total_fils: int
    currency: str
    invoice_generated: bool
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class OrderHistoryResponse(_ORMModel):
    id: int
    order_id: int
    staff_id: Optional[int] = None
    action: HistoryAction
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="meta")
    created_at: datetime


class IssueReportResponse(_ORMModel):
    id: int
    order_processing_id: int
    processing_item_detail_id: Optional[int] = None
    issue_type: str
    status: IssueStatus
    severity: IssueSeverity
    description: str
    created_at: datetime


class PaymentSummaryResponse(BaseModel):
    order_id: int
    status: OrderPaymentStatus
    invoice_total_fils: int
    total_paid_fils: int
    total_refunded_fils: int
    total_pending_fils: int
    total_failed_fils: int
    net_amount_paid_fils: int
    outstanding_fils: int
    available_for_refund_fils: int
    payment_records_count: int


# Payments


class CustomerDetails(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    email: str = Field(..., min_length=3, max_length=100)
    phone_country_code: Optional[str] = None
    phone_number: Optional[str] = None


class InvoiceItemRequest(BaseModel):
    name: str
    amount_fils: int = Field(..., gt=0)
    quantity: int = Field(default=1, ge=1)
    description: Optional[str] = None


class CreateInvoiceRequest(BaseModel):
    customer: CustomerDetails
    items: Optional[List[InvoiceItemRequest]] = None


class ResendInvoiceRequest(BaseModel):
    channels: Optional[List[str]] = None


class WalletPaymentRequest(BaseModel):
    customer_id: int
    amount_fils: Optional[int] = Field(default=None, gt=0)


class UpdatePaymentRequest(BaseModel):
    status: Optional[PaymentStatus] = None
    amount_fils: Optional[int] = Field(default=None, gt=0)
    notes: Optional[str] = None


class RefundRequest(BaseModel):
    amount_fils: int = Field(..., gt=0)
    reason: str = Field(..., min_length=3)
    to_wallet: bool = False


class PaymentRecordResponse(_ORMModel):
    id: int
    customer_id: int
    order_id: Optional[int] = None
    wallet_transaction_id: Optional[int] = None
    amount_fils: int
    currency: str
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    tap_charge_id: Optional[str] = None
    tap_transaction_id: Optional[str] = None
    tap_reference: Optional[str] = None
    refund_amount_fils: int
    pending_refund_fils: int = 0
    refund_reason: Optional[str] = None
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime


# Wallets


class CreateWalletRequest(BaseModel):
    customer_id: int
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)


class WalletTransactionRequest(BaseModel):
    transaction_type: TransactionType
    amount_fils: int = Field(..., gt=0)
    description: str = Field(..., min_length=1)
    reference: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class WalletAdjustmentRequest(BaseModel):
    reason: str = Field(..., min_length=3)
    new_balance_fils: Optional[int] = None
    delta_fils: Optional[int] = None
    admin_notes: Optional[str] = None


class WalletTransferRequest(BaseModel):
    to_wallet_id: int
    amount_fils: int = Field(..., gt=0)
    description: str = Field(..., min_length=1)


class TopUpRequest(BaseModel):
    amount_fils: int = Field(..., gt=0)
    source_id: str = Field(..., min_length=1, description="Tap token or source id (e.g. tok_...)")
    customer: CustomerDetails


class WalletResponse(_ORMModel):
    id: int
    customer_id: int
    balance_fils: int
    currency: str
    is_active: bool
    ledger_sequence: int
    last_transaction_at: Optional[datetime] = None


class WalletTransactionResponse(_ORMModel):
    id: int
    wallet_id: int
    transaction_type: TransactionType
    direction: EntryDirection
    amount_fils: int
    balance_before_fils: int
    balance_after_fils: int
    status: TransactionStatus
    description: str
    reference: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="meta")
    ledger_sequence: Optional[int] = None
    processed_at: Optional[datetime] = None
    created_at: datetime


# Admin


class SyncRequest(BaseModel):
    payment_method: Optional[PaymentMethod] = None
    payment_status: Optional[PaymentStatus] = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)
    created_after: Optional[datetime] = None


class CleanupRequest(BaseModel):
    payment_method: Optional[PaymentMethod] = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)
    batch_size: int = Field(default=50, ge=1, le=500)
    dry_run: bool = False


class SyncRunResponse(_ORMModel):
    id: int
    trigger: str
    status: str
    total_checked: int
    status_mismatches: int
    updated: int
    error_count: int
    started_at: datetime
    completed_at: Optional[datetime] = None


class WebhookResponse(BaseModel):
    status: str
    event_id: Optional[str] = None
    payment_id: Optional[int] = None
    payment_status: Optional[str] = None
    updated: Optional[bool] = None

