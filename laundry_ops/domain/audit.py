"""
Structured audit metadata.

History rows and ledger entries carry one of these models instead of a
free-form blob. The ``kind`` field discriminates the union so a stored row can
be validated back into the exact model that wrote it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from laundry_ops.domain.enums import (
    AssignmentType,
    DriverAction,
    FacilityAction,
    IssueSeverity,
    OperationsAction,
    OrderPaymentStatus,
    OrderStatus,
    PaymentStatus,
)


class _AuditBase(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=False)

    actor_id: Optional[int] = None
    actor_role: Optional[str] = None


class StatusChangeAudit(_AuditBase):
    kind: Literal["status_change"] = "status_change"
    old_status: OrderStatus
    new_status: OrderStatus
    notes: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class DriverActionAudit(_AuditBase):
    kind: Literal["driver_action"] = "driver_action"
    action: DriverAction
    assignment_id: Optional[int] = None
    photo_url: Optional[str] = None
    notes: Optional[str] = None


class FacilityActionAudit(_AuditBase):
    kind: Literal["facility_action"] = "facility_action"
    action: FacilityAction
    total_pieces: Optional[int] = None
    total_weight: Optional[float] = None
    quality_score: Optional[int] = None
    notes: Optional[str] = None


class AssignmentAudit(_AuditBase):
    kind: Literal["assignment"] = "assignment"
    action: OperationsAction
    assignment_type: AssignmentType
    driver_id: int
    assignment_id: Optional[int] = None
    estimated_time: Optional[datetime] = None


class NoteAudit(_AuditBase):
    kind: Literal["note"] = "note"
    is_internal: bool = True


class IssueReportAudit(_AuditBase):
    kind: Literal["issue_report"] = "issue_report"
    issue_report_id: int
    issue_type: str
    severity: IssueSeverity
    processing_item_detail_id: Optional[int] = None


class PaymentUpdateAudit(_AuditBase):
    kind: Literal["payment_update"] = "payment_update"
    payment_id: int
    changes: Dict[str, Any]
    notes: Optional[str] = None


class WalletAdjustmentAudit(_AuditBase):
    kind: Literal["wallet_adjustment"] = "wallet_adjustment"
    adjustment_type: Literal["MANUAL_ADMIN_ADJUSTMENT"] = "MANUAL_ADMIN_ADJUSTMENT"
    mode: Literal["absolute", "delta"]
    reason: str
    admin_email: Optional[str] = None
    admin_notes: Optional[str] = None
    previous_balance_fils: int
    new_balance_fils: int


class WalletPaymentAudit(_AuditBase):
    kind: Literal["wallet_payment"] = "wallet_payment"
    payment_id: Optional[int] = None
    order_id: Optional[int] = None
    counterparty_wallet_id: Optional[int] = None


class GatewaySyncAudit(_AuditBase):
    kind: Literal["gateway_sync"] = "gateway_sync"
    source: Literal["poll", "webhook", "top_up", "manual"]
    gateway_status: str
    previous_status: PaymentStatus
    new_status: PaymentStatus
    synced_at: datetime


class AutoAdvanceAudit(_AuditBase):
    kind: Literal["auto_advance"] = "auto_advance"
    trigger: str
    payment_status: OrderPaymentStatus


class PaymentRecalculationAudit(_AuditBase):
    kind: Literal["payment_recalculation"] = "payment_recalculation"
    previous_status: OrderPaymentStatus
    new_status: OrderPaymentStatus
    net_amount_paid_fils: int
    outstanding_fils: int
    source: str


AuditMetadata = Annotated[
    Union[
        StatusChangeAudit,
        DriverActionAudit,
        FacilityActionAudit,
        AssignmentAudit,
        NoteAudit,
        IssueReportAudit,
        PaymentUpdateAudit,
        WalletAdjustmentAudit,
        WalletPaymentAudit,
        GatewaySyncAudit,
        AutoAdvanceAudit,
        PaymentRecalculationAudit,
    ],
    Field(discriminator="kind"),
]

_audit_adapter: TypeAdapter[AuditMetadata] = TypeAdapter(AuditMetadata)


def dump_audit(audit: Optional[BaseModel]) -> Optional[Dict[str, Any]]:
    """Serialize an audit model for a JSON column."""
    if audit is None:
        return None
    return audit.model_dump(mode="json")


def load_audit(raw: Optional[Dict[str, Any]]) -> Optional[AuditMetadata]:
    """
    Validate a stored audit blob back into its model.

    Raises:
        pydantic.ValidationError: If the stored blob does not match any audit kind
    """
    if raw is None:
        return None
    return _audit_adapter.validate_python(raw)


class PaymentMetadata(BaseModel):
    """
    Schema for PaymentRecord.metadata.

    Payment metadata predates the structured audit types and still carries
    gateway payload fragments, so unknown keys are kept as-is.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    is_refund: bool = Field(default=False, alias="isRefund")
    refund_of_payment_id: Optional[int] = None
    tap_invoice_id: Optional[str] = Field(default=None, alias="tapInvoiceId")
    tap_invoice: Optional[Dict[str, Any]] = Field(default=None, alias="tapInvoice")
    sync_events: List[Dict[str, Any]] = Field(default_factory=list)
    updates: List[Dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_raw(cls, raw: Optional[Dict[str, Any]]) -> "PaymentMetadata":
        return cls.model_validate(raw or {})

    def invoice_id(self) -> Optional[str]:
        """Tap invoice id stored either flat or nested under ``tapInvoice``."""
        if self.tap_invoice_id:
            return self.tap_invoice_id
        if self.tap_invoice and self.tap_invoice.get("id"):
            return str(self.tap_invoice["id"])
        return None

    def with_sync_event(self, audit: GatewaySyncAudit) -> "PaymentMetadata":
        return self.model_copy(update={"sync_events": [*self.sync_events, dump_audit(audit)]})

    def with_update(self, audit: PaymentUpdateAudit) -> "PaymentMetadata":
        return self.model_copy(update={"updates": [*self.updates, dump_audit(audit)]})

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=False, exclude_none=True)
