"""
Order payment operations.

Owns the order-level payment projection: whenever an order's payment records
change, ``refresh_order_payment_status`` recomputes ``Order.payment_status``
with the aggregator in the same transaction, and ``advance_after_payment``
gets its chance to move the order along.

Gateway calls (charges, invoices, refunds) are always made before the storage
transaction that records their outcome is opened.
"""
import uuid
from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from laundry_ops.config import Settings, get_settings
from laundry_ops.core.order_tracking import OrderTracker
from laundry_ops.core.outbox import enqueue_notification
from laundry_ops.core.wallet import WalletLedger
from laundry_ops.database.connection import get_session_factory
from laundry_ops.database.models import Order, OrderHistory, PaymentRecord, utcnow
from laundry_ops.domain.actors import Actor
from laundry_ops.domain.audit import (
    PaymentMetadata,
    PaymentRecalculationAudit,
    PaymentUpdateAudit,
    WalletPaymentAudit,
    dump_audit,
)
from laundry_ops.domain.enums import (
    SETTLED_PAYMENT_STATUSES,
    EntryDirection,
    HistoryAction,
    PaymentMethod,
    PaymentStatus,
    StaffRole,
    TransactionType,
)
from laundry_ops.domain.payment_summary import PaymentLine, PaymentSummary, summarize_payments
from laundry_ops.exceptions import (
    ConsistencyError,
    NotFoundError,
    NotPermittedError,
    ValidationError,
)
from laundry_ops.integrations.tap_client import (
    GatewayObject,
    InvoiceItem,
    TapClient,
    TapCustomer,
    map_charge_status,
    parse_channels,
)

if TYPE_CHECKING:
    from laundry_ops.core.reconciliation import PaymentReconciler

logger = structlog.get_logger(__name__)

INVOICE_ROLES = frozenset(
    {StaffRole.SUPER_ADMIN, StaffRole.OPERATION_MANAGER, StaffRole.FACILITY_TEAM}
)


async def lock_payment(db: AsyncSession, payment_id: int) -> PaymentRecord:
    """
    Load a payment record with FOR UPDATE.

    Raises:
        NotFoundError: If the record does not exist
    """
    result = await db.execute(
        select(PaymentRecord)
        .where(PaymentRecord.id == payment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    record = result.scalar_one_or_none()
    if record is None:
        raise NotFoundError(f"Payment {payment_id} not found", payment_id=payment_id)
    return record


def _require_admin(actor: Actor, operation: str) -> None:
    if not actor.is_admin:
        raise NotPermittedError(
            f"Role {actor.role.value} cannot {operation}", role=actor.role.value
        )


class OrderPaymentService:
    """Payment operations on orders and wallets."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        gateway: Optional[TapClient] = None,
        tracker: Optional[OrderTracker] = None,
        ledger: Optional[WalletLedger] = None,
        settings: Optional[Settings] = None,
        reconciler: Optional["PaymentReconciler"] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.gateway = gateway or TapClient(settings=self.settings)
        self.tracker = tracker or OrderTracker(self.session_factory, self.settings)
        self.ledger = ledger or WalletLedger(self.session_factory, self.settings)
        self._reconciler = reconciler

    @property
    def reconciler(self) -> "PaymentReconciler":
        """Reconciler sharing this service's collaborators (built on first use)."""
        if self._reconciler is None:
            from laundry_ops.core.reconciliation import PaymentReconciler

            self._reconciler = PaymentReconciler(
                session_factory=self.session_factory,
                gateway=self.gateway,
                payments=self,
                ledger=self.ledger,
                settings=self.settings,
            )
        return self._reconciler

    @reconciler.setter
    def reconciler(self, reconciler: "PaymentReconciler") -> None:
        self._reconciler = reconciler

    # Aggregation

    @staticmethod
    async def _load_lines(db: AsyncSession, order_id: int) -> List[PaymentLine]:
        result = await db.execute(select(PaymentRecord).where(PaymentRecord.order_id == order_id))
        return [PaymentLine.from_record(record) for record in result.scalars()]

    async def refresh_order_payment_status(
        self,
        db: AsyncSession,
        order_id: int,
        source: str,
        actor: Optional[Actor] = None,
    ) -> Tuple[Order, PaymentSummary]:
        """
        Recompute and persist an order's payment status in the caller's transaction.

        A history entry is written only when the status actually changes.

        Returns:
            Tuple[Order, PaymentSummary]: The locked order and its fresh summary
        """
        order = await self.tracker.lock_order(db, order_id)
        summary = summarize_payments(await self._load_lines(db, order.id), order.invoice_total_fils)
        previous = order.payment_status
        if summary.status is previous:
            return order, summary

        actor = actor or Actor.system()
        order.payment_status = summary.status
        order.updated_at = utcnow()
        db.add(
            OrderHistory(
                order_id=order.id,
                staff_id=actor.staff_id,
                action=HistoryAction.PAYMENT_STATUS_RECALCULATED,
                old_value={"payment_status": previous.value},
                new_value={"payment_status": summary.status.value},
                description=f"Payment status changed from {previous.value} to {summary.status.value}",
                meta=dump_audit(
                    PaymentRecalculationAudit(
                        actor_id=actor.staff_id,
                        actor_role=actor.role.value,
                        previous_status=previous,
                        new_status=summary.status,
                        net_amount_paid_fils=summary.net_amount_paid_fils,
                        outstanding_fils=summary.outstanding_fils,
                        source=source,
                    )
                ),
            )
        )
        await enqueue_notification(
            db,
            "order.payment_status_changed",
            "order",
            order.id,
            {
                "order_id": order.id,
                "order_number": order.order_number,
                "customer_id": order.customer_id,
                "old_payment_status": previous.value,
                "new_payment_status": summary.status.value,
                "outstanding_fils": summary.outstanding_fils,
            },
        )
        await db.flush()

        logger.info(
            "order_payment_status_changed",
            order_id=order.id,
            old_status=previous.value,
            new_status=summary.status.value,
            net_amount_paid_fils=summary.net_amount_paid_fils,
            outstanding_fils=summary.outstanding_fils,
            source=source,
        )
        return order, summary

    async def refresh_and_advance(
        self,
        db: AsyncSession,
        order_id: int,
        source: str,
        actor: Optional[Actor] = None,
    ) -> PaymentSummary:
        """Refresh the order's payment status, then attempt the post-payment auto-advance."""
        order, summary = await self.refresh_order_payment_status(db, order_id, source, actor)
        await self.tracker.advance_after_payment(db, order, source)
        return summary

    async def recalculate_order_payment_status(
        self, order_id: int, actor: Optional[Actor] = None
    ) -> PaymentSummary:
        """
        Recompute an order's payment status on demand.

        Raises:
            NotFoundError: If the order does not exist
        """
        async with self.session_factory() as db, db.begin():
            summary = await self.refresh_and_advance(db, order_id, "manual", actor)
        logger.info(
            "order_payment_status_recalculated",
            order_id=order_id,
            status=summary.status.value,
        )
        return summary

    async def get_payment_summary(self, order_id: int) -> PaymentSummary:
        """Read-only payment summary of an order."""
        async with self.session_factory() as db:
            order = await db.get(Order, order_id)
            if order is None:
                raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
            lines = await self._load_lines(db, order.id)
        return summarize_payments(lines, order.invoice_total_fils)

    async def list_order_payments(self, order_id: int) -> List[PaymentRecord]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentRecord)
                .where(PaymentRecord.order_id == order_id)
                .order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
            )
            return list(result.scalars().all())

    async def get_payment(self, payment_id: int) -> PaymentRecord:
        async with self.session_factory() as db:
            record = await db.get(PaymentRecord, payment_id)
        if record is None:
            raise NotFoundError(f"Payment {payment_id} not found", payment_id=payment_id)
        return record

    # Wallet payments and top-ups

    async def pay_with_wallet(
        self,
        order_id: int,
        actor_customer_id: int,
        amount_fils: Optional[int] = None,
    ) -> PaymentRecord:
        """
        Pay (part of) an order from the customer's wallet.

        The payment record, the wallet debit, the order's payment status and
        the auto-advance all commit together or not at all.

        Args:
            order_id: Order to pay
            actor_customer_id: Customer paying; must own the order
            amount_fils: Amount to pay (defaults to the outstanding amount)

        Raises:
            NotPermittedError: If the customer does not own the order
            ValidationError: If nothing is outstanding or the amount exceeds it
            InsufficientBalanceError: If the wallet cannot cover the amount
        """
        async with self.session_factory() as db, db.begin():
            order = await self.tracker.lock_order(db, order_id)
            if order.customer_id != actor_customer_id:
                raise NotPermittedError(
                    f"Order {order_id} does not belong to customer {actor_customer_id}",
                    order_id=order_id,
                )
            summary = summarize_payments(
                await self._load_lines(db, order.id), order.invoice_total_fils
            )
            if summary.outstanding_fils <= 0:
                raise ValidationError(f"Order {order_id} has nothing outstanding", order_id=order_id)
            amount = summary.outstanding_fils if amount_fils is None else amount_fils
            if amount <= 0 or amount > summary.outstanding_fils:
                raise ValidationError(
                    "Amount must be positive and not exceed the outstanding amount",
                    amount_fils=amount,
                    outstanding_fils=summary.outstanding_fils,
                )

            wallet = await self.ledger.lock_wallet_for_customer(db, order.customer_id)
            record = PaymentRecord(
                customer_id=order.customer_id,
                order_id=order.id,
                amount_fils=amount,
                currency=order.currency,
                payment_method=PaymentMethod.WALLET,
                payment_status=PaymentStatus.PENDING,
                refund_amount_fils=0,
            )
            db.add(record)
            await db.flush()

            entry = await self.ledger.post_entry(
                db,
                wallet,
                TransactionType.PAYMENT,
                EntryDirection.DEBIT,
                amount,
                f"Payment for order {order.order_number}",
                reference=order.order_number,
                metadata=WalletPaymentAudit(
                    actor_id=actor_customer_id,
                    actor_role="CUSTOMER",
                    payment_id=record.id,
                    order_id=order.id,
                ),
            )
            record.wallet_transaction_id = entry.id
            record.payment_status = PaymentStatus.PAID
            record.processed_at = utcnow()
            if order.payment_method is None:
                order.payment_method = PaymentMethod.WALLET
            await db.flush()

            summary = await self.refresh_and_advance(db, order.id, "wallet_payment")
            await enqueue_notification(
                db,
                "payment.completed",
                "payment",
                record.id,
                {
                    "payment_id": record.id,
                    "order_id": order.id,
                    "customer_id": order.customer_id,
                    "amount_fils": amount,
                    "payment_method": PaymentMethod.WALLET.value,
                },
            )

        logger.info(
            "wallet_payment_completed",
            order_id=order_id,
            payment_id=record.id,
            amount_fils=amount,
            order_payment_status=summary.status.value,
        )
        return record

    async def start_wallet_top_up(
        self,
        customer_id: int,
        amount_fils: int,
        source_id: str,
        customer: TapCustomer,
    ) -> PaymentRecord:
        """
        Start a card top-up of the customer's wallet.

        The Tap charge is created first; a PENDING deposit and a TAP_PAY payment
        record are then stored. The deposit completes when the charge settles
        (webhook, poll or immediately if Tap already captured it).

        Raises:
            ValidationError: If the amount is not positive or the wallet is inactive
            GatewayError: If Tap refuses the charge
        """
        if amount_fils <= 0:
            raise ValidationError("Top-up amount must be positive", amount_fils=amount_fils)
        wallet = await self.ledger.create_wallet_for_customer(customer_id)
        if not wallet.is_active:
            raise ValidationError(f"Wallet {wallet.id} is inactive", wallet_id=wallet.id)

        reference = f"TOPUP-{customer_id}-{uuid.uuid4().hex[:12]}"
        charge = await self.gateway.create_charge(
            amount_fils=amount_fils,
            currency=wallet.currency,
            customer=customer,
            source_id=source_id,
            reference=reference,
            description="Wallet top-up",
            metadata={"customer_id": customer_id, "purpose": "wallet_top_up"},
        )

        async with self.session_factory() as db, db.begin():
            locked = await self.ledger.lock_wallet(db, wallet.id)
            pending = await self.ledger.open_pending_credit(
                db,
                locked,
                amount_fils,
                "Wallet top-up",
                reference=charge.id,
            )
            record = PaymentRecord(
                customer_id=customer_id,
                wallet_transaction_id=pending.id,
                amount_fils=amount_fils,
                currency=wallet.currency,
                payment_method=PaymentMethod.TAP_PAY,
                payment_status=PaymentStatus.PENDING,
                tap_charge_id=charge.id,
                tap_reference=reference,
                tap_response=charge.raw,
                meta={"purpose": "wallet_top_up"},
                refund_amount_fils=0,
            )
            db.add(record)
            await db.flush()

        logger.info(
            "wallet_top_up_started",
            customer_id=customer_id,
            payment_id=record.id,
            charge_id=charge.id,
            charge_status=charge.status,
        )

        mapped = map_charge_status(charge.status)
        if mapped is not PaymentStatus.PENDING:
            await self.reconciler.apply_gateway_status(
                record.id, charge.status, mapped, charge.raw, source="top_up"
            )
            record = await self.get_payment(record.id)
        return record

    # Invoices

    async def create_order_invoice(
        self,
        order_id: int,
        actor: Actor,
        customer: TapCustomer,
        items: Optional[Sequence[InvoiceItem]] = None,
    ) -> PaymentRecord:
        """
        Issue a Tap invoice for the order's outstanding amount.

        Raises:
            NotPermittedError: If the actor may not issue invoices
            ValidationError: If the order has nothing outstanding
            GatewayError: If Tap refuses the invoice
        """
        if actor.role not in INVOICE_ROLES:
            raise NotPermittedError(
                f"Role {actor.role.value} cannot issue invoices", role=actor.role.value
            )
        summary = await self.get_payment_summary(order_id)
        if summary.outstanding_fils <= 0:
            raise ValidationError(f"Order {order_id} has nothing outstanding", order_id=order_id)
        order = await self.tracker.get_order(order_id)

        invoice = await self.gateway.create_invoice(
            amount_fils=summary.outstanding_fils,
            currency=order.currency,
            customer=customer,
            order_reference=order.order_number,
            description=f"Laundry order {order.order_number}",
            items=items,
            metadata={"order_id": order.id, "customer_id": order.customer_id},
        )

        async with self.session_factory() as db, db.begin():
            locked = await self.tracker.lock_order(db, order_id)
            record = PaymentRecord(
                customer_id=locked.customer_id,
                order_id=locked.id,
                amount_fils=summary.outstanding_fils,
                currency=locked.currency,
                payment_method=PaymentMethod.TAP_INVOICE,
                payment_status=PaymentStatus.PENDING,
                tap_reference=invoice.id,
                tap_response=invoice.raw,
                meta=PaymentMetadata(tap_invoice_id=invoice.id).to_json(),
                refund_amount_fils=0,
            )
            db.add(record)
            if locked.payment_method is None:
                locked.payment_method = PaymentMethod.TAP_INVOICE
            await db.flush()
            await self.refresh_order_payment_status(db, locked.id, "invoice_created", actor)
            await enqueue_notification(
                db,
                "payment.invoice_created",
                "payment",
                record.id,
                {
                    "payment_id": record.id,
                    "order_id": locked.id,
                    "customer_id": locked.customer_id,
                    "amount_fils": record.amount_fils,
                    "invoice_url": invoice.url,
                },
            )

        logger.info(
            "order_invoice_created",
            order_id=order_id,
            payment_id=record.id,
            invoice_id=invoice.id,
            amount_fils=record.amount_fils,
        )
        return record

    async def _pending_invoice(self, payment_id: int) -> PaymentRecord:
        record = await self.get_payment(payment_id)
        if record.payment_method is not PaymentMethod.TAP_INVOICE or not record.tap_reference:
            raise ValidationError(f"Payment {payment_id} is not a Tap invoice", payment_id=payment_id)
        if record.payment_status is not PaymentStatus.PENDING:
            raise ConsistencyError(
                f"Invoice payment {payment_id} is already {record.payment_status.value}",
                payment_id=payment_id,
            )
        return record

    async def cancel_order_invoice(self, payment_id: int, actor: Actor) -> PaymentRecord:
        """
        Cancel an unpaid invoice at Tap and mark its record FAILED.

        Raises:
            ConsistencyError: If the invoice is no longer pending
            GatewayError: If Tap refuses the cancellation
        """
        if actor.role not in INVOICE_ROLES:
            raise NotPermittedError(
                f"Role {actor.role.value} cannot cancel invoices", role=actor.role.value
            )
        record = await self._pending_invoice(payment_id)
        await self.gateway.cancel_invoice(record.tap_reference)

        async with self.session_factory() as db, db.begin():
            record = await lock_payment(db, payment_id)
            if record.payment_status is PaymentStatus.PENDING:
                metadata = PaymentMetadata.from_raw(record.meta).with_update(
                    PaymentUpdateAudit(
                        actor_id=actor.staff_id,
                        actor_role=actor.role.value,
                        payment_id=record.id,
                        changes={"payment_status": {"from": "PENDING", "to": "FAILED"}},
                        notes="Invoice cancelled",
                    )
                )
                record.payment_status = PaymentStatus.FAILED
                record.failure_reason = "Invoice cancelled"
                record.meta = metadata.to_json()
                await db.flush()
                if record.order_id is not None:
                    await self.refresh_and_advance(db, record.order_id, "invoice_cancelled", actor)

        logger.info("order_invoice_cancelled", payment_id=payment_id, staff_id=actor.staff_id)
        return record

    async def resend_order_invoice(
        self, payment_id: int, channels: Optional[Sequence[str]] = None
    ) -> GatewayObject:
        """Ask Tap to send the invoice to the customer again."""
        record = await self._pending_invoice(payment_id)
        result = await self.gateway.resend_invoice(record.tap_reference, parse_channels(channels))
        logger.info("order_invoice_resent", payment_id=payment_id, invoice_id=record.tap_reference)
        return result

    # Admin edits and refunds

    async def update_payment_record(
        self,
        payment_id: int,
        actor: Actor,
        status: Optional[PaymentStatus] = None,
        amount_fils: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> PaymentRecord:
        """
        Admin correction of a payment record.

        Settled records keep their status and amount; refunds go through
        ``refund_payment``. The change is kept in the record's metadata and
        the order's payment status is recomputed.

        Raises:
            NotPermittedError: If the actor is not an admin
            ValidationError: On an invalid status or amount
            ConsistencyError: If a settled record's status or amount would change
        """
        _require_admin(actor, "edit payment records")
        if status is not None:
            try:
                status = PaymentStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown payment status: {status}")
            if status in (PaymentStatus.REFUNDED, PaymentStatus.PARTIAL_REFUND):
                raise ValidationError("Refund statuses are set by refund_payment")
        if amount_fils is not None and amount_fils < 0:
            raise ValidationError("Amount cannot be negative", amount_fils=amount_fils)

        async with self.session_factory() as db, db.begin():
            record = await lock_payment(db, payment_id)
            changes = {}
            if status is not None and status is not record.payment_status:
                changes["payment_status"] = {"from": record.payment_status.value, "to": status.value}
            if amount_fils is not None and amount_fils != record.amount_fils:
                changes["amount_fils"] = {"from": record.amount_fils, "to": amount_fils}
            if changes and record.payment_status in SETTLED_PAYMENT_STATUSES:
                raise ConsistencyError(
                    f"Payment {payment_id} is settled; only refunds can change it",
                    payment_id=payment_id,
                )
            if not changes and not notes:
                raise ValidationError("Nothing to update", payment_id=payment_id)

            audit = PaymentUpdateAudit(
                actor_id=actor.staff_id,
                actor_role=actor.role.value,
                payment_id=record.id,
                changes=changes,
                notes=notes,
            )
            record.meta = PaymentMetadata.from_raw(record.meta).with_update(audit).to_json()
            if amount_fils is not None:
                record.amount_fils = amount_fils
            if status is not None and "payment_status" in changes:
                record.payment_status = status
                if status is PaymentStatus.PAID:
                    record.processed_at = utcnow()
                    if record.wallet_transaction_id is not None:
                        await self.ledger.complete_pending_transaction(
                            db, record.wallet_transaction_id, audit
                        )
                elif status is PaymentStatus.FAILED:
                    record.failure_reason = notes or "Marked failed by admin"
                    if record.wallet_transaction_id is not None:
                        await self.ledger.fail_pending_transaction(
                            db, record.wallet_transaction_id, record.failure_reason
                        )
            await db.flush()

            if record.order_id is not None:
                db.add(
                    OrderHistory(
                        order_id=record.order_id,
                        staff_id=actor.staff_id,
                        action=HistoryAction.PAYMENT_UPDATED,
                        old_value={k: v["from"] for k, v in changes.items()},
                        new_value={k: v["to"] for k, v in changes.items()},
                        description=notes or f"Payment {record.id} updated",
                        meta=dump_audit(audit),
                    )
                )
                await self.refresh_and_advance(db, record.order_id, "admin_update", actor)

        logger.info(
            "payment_record_updated",
            payment_id=payment_id,
            staff_id=actor.staff_id,
            changes=changes,
        )
        return record

    @staticmethod
    def _refund_charge_id(record: PaymentRecord) -> Optional[str]:
        if record.gateway_charge_id:
            return record.gateway_charge_id
        charge = (record.tap_response or {}).get("charge")
        if isinstance(charge, dict) and charge.get("id"):
            return str(charge["id"])
        return None

    @staticmethod
    def _check_refundable(record: PaymentRecord, amount_fils: int) -> None:
        """Refunds in flight at Tap count against what is still refundable."""
        if record.payment_status not in (PaymentStatus.PAID, PaymentStatus.PARTIAL_REFUND):
            raise ConsistencyError(
                f"Payment {record.id} is {record.payment_status.value}; only paid payments can be refunded",
                payment_id=record.id,
            )
        available = record.amount_fils - record.refund_amount_fils - record.pending_refund_fils
        if amount_fils > available:
            raise ValidationError(
                "Refund exceeds the refundable amount",
                amount_fils=amount_fils,
                available_fils=available,
                pending_refund_fils=record.pending_refund_fils,
            )

    async def _reserve_refund(self, payment_id: int, amount_fils: int) -> None:
        async with self.session_factory() as db, db.begin():
            record = await lock_payment(db, payment_id)
            self._check_refundable(record, amount_fils)
            record.pending_refund_fils += amount_fils
        logger.info("refund_reserved", payment_id=payment_id, amount_fils=amount_fils)

    async def _release_refund(self, payment_id: int, amount_fils: int) -> None:
        async with self.session_factory() as db, db.begin():
            record = await lock_payment(db, payment_id)
            record.pending_refund_fils = max(0, record.pending_refund_fils - amount_fils)
        logger.warning("refund_reservation_released", payment_id=payment_id, amount_fils=amount_fils)

    async def refund_payment(
        self,
        payment_id: int,
        actor: Actor,
        amount_fils: int,
        reason: str,
        to_wallet: bool = False,
    ) -> PaymentRecord:
        """
        Refund (part of) a settled payment.

        Gateway payments are refunded through Tap unless ``to_wallet`` is set;
        wallet payments are always credited back to the wallet.

        Raises:
            NotPermittedError: If the actor is not an admin
            ValidationError: If the amount exceeds what is still refundable
            ConsistencyError: If the payment is not settled
            GatewayError: If Tap refuses the refund
        """
        _require_admin(actor, "refund payments")
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Refund reason is required")
        if amount_fils <= 0:
            raise ValidationError("Refund amount must be positive", amount_fils=amount_fils)

        record = await self.get_payment(payment_id)
        self._check_refundable(record, amount_fils)

        credit_wallet = to_wallet or record.payment_method is PaymentMethod.WALLET
        gateway_refund: Optional[GatewayObject] = None
        reserved = False
        if not credit_wallet and record.payment_method in (
            PaymentMethod.TAP_PAY,
            PaymentMethod.TAP_INVOICE,
        ):
            charge_id = self._refund_charge_id(record)
            if not charge_id:
                raise ValidationError(
                    f"Payment {payment_id} has no Tap charge id; refund to wallet instead",
                    payment_id=payment_id,
                )
            await self._reserve_refund(payment_id, amount_fils)
            reserved = True
            try:
                gateway_refund = await self.gateway.create_refund(
                    charge_id=charge_id,
                    amount_fils=amount_fils,
                    currency=record.currency,
                    reason=reason,
                    reference=f"REFUND-{record.id}-{uuid.uuid4().hex[:8]}",
                    metadata={"payment_id": record.id, "order_id": record.order_id},
                )
            except Exception:
                await self._release_refund(payment_id, amount_fils)
                raise
        if credit_wallet:
            await self.ledger.create_wallet_for_customer(record.customer_id, record.currency)

        async with self.session_factory() as db, db.begin():
            record = await lock_payment(db, payment_id)
            if reserved:
                record.pending_refund_fils -= amount_fils
            else:
                self._check_refundable(record, amount_fils)

            if credit_wallet:
                wallet = await self.ledger.lock_wallet_for_customer(db, record.customer_id)
                await self.ledger.post_entry(
                    db,
                    wallet,
                    TransactionType.REFUND,
                    EntryDirection.CREDIT,
                    amount_fils,
                    f"Refund of payment {record.id}: {reason}",
                    reference=str(record.id),
                    metadata=WalletPaymentAudit(
                        actor_id=actor.staff_id,
                        actor_role=actor.role.value,
                        payment_id=record.id,
                        order_id=record.order_id,
                    ),
                )

            changes = {
                "refund_amount_fils": {
                    "from": record.refund_amount_fils,
                    "to": record.refund_amount_fils + amount_fils,
                }
            }
            record.refund_amount_fils += amount_fils
            record.refund_reason = reason
            new_status = (
                PaymentStatus.REFUNDED
                if record.refund_amount_fils >= record.amount_fils
                else PaymentStatus.PARTIAL_REFUND
            )
            changes["payment_status"] = {"from": record.payment_status.value, "to": new_status.value}
            record.payment_status = new_status
            audit = PaymentUpdateAudit(
                actor_id=actor.staff_id,
                actor_role=actor.role.value,
                payment_id=record.id,
                changes={
                    **changes,
                    "refund_destination": "wallet" if credit_wallet else "original",
                    "gateway_refund_id": gateway_refund.id if gateway_refund else None,
                },
                notes=reason,
            )
            record.meta = PaymentMetadata.from_raw(record.meta).with_update(audit).to_json()
            await db.flush()

            if record.order_id is not None:
                db.add(
                    OrderHistory(
                        order_id=record.order_id,
                        staff_id=actor.staff_id,
                        action=HistoryAction.PAYMENT_UPDATED,
                        old_value={k: v["from"] for k, v in changes.items()},
                        new_value={k: v["to"] for k, v in changes.items()},
                        description=f"Refunded {amount_fils} fils: {reason}",
                        meta=dump_audit(audit),
                    )
                )
                await self.refresh_and_advance(db, record.order_id, "refund", actor)
            await enqueue_notification(
                db,
                "payment.refunded",
                "payment",
                record.id,
                {
                    "payment_id": record.id,
                    "order_id": record.order_id,
                    "customer_id": record.customer_id,
                    "refund_amount_fils": amount_fils,
                    "to_wallet": credit_wallet,
                },
            )

        logger.info(
            "payment_refunded",
            payment_id=payment_id,
            amount_fils=amount_fils,
            to_wallet=credit_wallet,
            gateway_refund_id=gateway_refund.id if gateway_refund else None,
            staff_id=actor.staff_id,
        )
        return record
