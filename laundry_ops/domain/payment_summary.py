"""
Order payment status aggregation.

Pure function over an order's payment lines and its invoice total. Callers
(reconciliation, admin edits, the manual recalculation endpoint) persist the
result themselves; nothing here touches storage.

Rules:
- total_paid       = sum of settled (PAID/REFUNDED/PARTIAL_REFUND) original payments
- total_refunded   = refund_amount on those originals + PAID refund records
- net_amount_paid  = total_paid - total_refunded
- outstanding      = max(0, invoice_total - net_amount_paid)

Status:
- PAID      outstanding is zero and at least one original payment settled
- REFUNDED  something was paid and refunds brought the net to zero or below
- PARTIAL   0 < net_amount_paid < invoice_total
- FAILED    the most recent attempt failed and nothing settled
- PENDING   otherwise (no records, or only pending ones)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from laundry_ops.domain.audit import PaymentMetadata
from laundry_ops.domain.enums import (
    SETTLED_PAYMENT_STATUSES,
    OrderPaymentStatus,
    PaymentStatus,
)


@dataclass(frozen=True)
class PaymentLine:
    """The fields of a PaymentRecord the aggregator needs."""

    payment_id: int
    amount_fils: int
    status: PaymentStatus
    created_at: datetime
    refund_amount_fils: int = 0
    is_refund: bool = False

    @classmethod
    def from_record(cls, record: Any) -> "PaymentLine":
        """Build a line from a PaymentRecord row; refund records are flagged in metadata."""
        metadata = PaymentMetadata.from_raw(record.meta)
        is_refund = metadata.is_refund or metadata.refund_of_payment_id is not None
        return cls(
            payment_id=record.id,
            amount_fils=record.amount_fils,
            status=PaymentStatus(record.payment_status),
            created_at=record.created_at,
            refund_amount_fils=record.refund_amount_fils or 0,
            is_refund=is_refund,
        )


@dataclass(frozen=True)
class PaymentSummary:
    invoice_total_fils: int
    total_paid_fils: int
    total_refunded_fils: int
    total_pending_fils: int
    total_failed_fils: int
    net_amount_paid_fils: int
    outstanding_fils: int
    available_for_refund_fils: int
    payment_records_count: int
    status: OrderPaymentStatus

    @property
    def is_fully_paid(self) -> bool:
        return self.status is OrderPaymentStatus.PAID

    def to_dict(self) -> dict:
        return {
            "invoice_total_fils": self.invoice_total_fils,
            "total_paid_fils": self.total_paid_fils,
            "total_refunded_fils": self.total_refunded_fils,
            "total_pending_fils": self.total_pending_fils,
            "total_failed_fils": self.total_failed_fils,
            "net_amount_paid_fils": self.net_amount_paid_fils,
            "outstanding_fils": self.outstanding_fils,
            "available_for_refund_fils": self.available_for_refund_fils,
            "payment_records_count": self.payment_records_count,
            "status": self.status.value,
        }


def _most_recent(lines: Sequence[PaymentLine]) -> Optional[PaymentLine]:
    if not lines:
        return None
    return max(lines, key=lambda line: (line.created_at, line.payment_id))


def summarize_payments(
    lines: Iterable[PaymentLine], invoice_total_fils: int
) -> PaymentSummary:
    """
    Derive an order's payment projection.

    Args:
        lines: All payment lines of the order, in any order
        invoice_total_fils: The order's invoice total in fils

    Returns:
        PaymentSummary: Totals and the derived order payment status
    """
    lines = list(lines)
    invoice_total = max(0, invoice_total_fils or 0)

    originals = [line for line in lines if not line.is_refund]
    refunds = [line for line in lines if line.is_refund]
    settled = [line for line in originals if line.status in SETTLED_PAYMENT_STATUSES]

    total_paid = sum(line.amount_fils for line in settled)
    total_refunded = sum(line.refund_amount_fils for line in settled) + sum(
        line.amount_fils for line in refunds if line.status is PaymentStatus.PAID
    )
    total_pending = sum(
        line.amount_fils for line in originals if line.status is PaymentStatus.PENDING
    )
    total_failed = sum(
        line.amount_fils for line in originals if line.status is PaymentStatus.FAILED
    )

    net_paid = total_paid - total_refunded
    outstanding = max(0, invoice_total - net_paid)

    if settled and outstanding == 0 and net_paid > 0:
        status = OrderPaymentStatus.PAID
    elif settled and net_paid <= 0 and total_refunded > 0:
        status = OrderPaymentStatus.REFUNDED
    elif settled and outstanding == 0:
        # Zero-total invoice settled by a zero-amount record.
        status = OrderPaymentStatus.PAID
    elif 0 < net_paid < invoice_total:
        status = OrderPaymentStatus.PARTIAL
    else:
        latest = _most_recent(originals)
        if not settled and latest is not None and latest.status is PaymentStatus.FAILED:
            status = OrderPaymentStatus.FAILED
        else:
            status = OrderPaymentStatus.PENDING

    return PaymentSummary(
        invoice_total_fils=invoice_total,
        total_paid_fils=total_paid,
        total_refunded_fils=total_refunded,
        total_pending_fils=total_pending,
        total_failed_fils=total_failed,
        net_amount_paid_fils=net_paid,
        outstanding_fils=outstanding,
        available_for_refund_fils=max(0, net_paid),
        payment_records_count=len(lines),
        status=status,
    )
