"""
Payment reconciliation against Tap.

Keeps PaymentRecord.payment_status (and through it Order.payment_status)
consistent with the gateway's authoritative state. Webhooks, the scheduled
poll and manual syncs all funnel into ``apply_gateway_status``, which only
writes when the mapped gateway status differs from the stored one; running it
twice with the same gateway answer is a no-op.
"""
import asyncio
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from laundry_ops.config import Settings, get_settings
from laundry_ops.core.outbox import enqueue_notification
from laundry_ops.core.payments import OrderPaymentService, lock_payment
from laundry_ops.core.wallet import WalletLedger
from laundry_ops.database.connection import get_session_factory
from laundry_ops.database.models import OrderHistory, PaymentRecord, PaymentSyncRun, utcnow
from laundry_ops.domain.audit import GatewaySyncAudit, PaymentMetadata, dump_audit
from laundry_ops.domain.enums import (
    GATEWAY_PAYMENT_METHODS,
    SETTLED_PAYMENT_STATUSES,
    HistoryAction,
    PaymentMethod,
    PaymentStatus,
    StaffRole,
)
from laundry_ops.exceptions import LaundryOpsError, ValidationError
from laundry_ops.integrations.tap_client import (
    GatewayObject,
    TapClient,
    map_charge_status,
    map_invoice_status,
)
from laundry_ops.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SYNC_SOURCES = ("poll", "webhook", "top_up", "manual")


@dataclass
class SyncFilters:
    """Which payment records a batch sync looks at."""

    payment_method: Optional[PaymentMethod] = None
    payment_status: Optional[PaymentStatus] = None
    limit: int = 100
    offset: int = 0
    created_after: Optional[datetime] = None


@dataclass
class StatusSyncResult:
    payment_id: int
    local_status: Optional[str] = None
    tap_status: Optional[str] = None
    mapped_status: Optional[str] = None
    status_match: bool = False
    updated: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncError:
    payment_id: int
    message: str
    error_type: str = "LaundryOpsError"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncReport:
    """Outcome of a batch sync; persisted as a PaymentSyncRun."""

    started_at: datetime
    completed_at: Optional[datetime] = None
    total_checked: int = 0
    status_mismatches: int = 0
    updated: int = 0
    errors: List[SyncError] = field(default_factory=list)
    results: List[StatusSyncResult] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    run_id: Optional[int] = None

    def summary(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "total_checked": self.total_checked,
            "status_mismatches": self.status_mismatches,
            "updated": self.updated,
            "errors": len(self.errors),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "total_checked": self.total_checked,
            "status_mismatches": self.status_mismatches,
            "updated": self.updated,
            "errors": [e.to_dict() for e in self.errors],
            "results": [r.to_dict() for r in self.results],
            "recommendations": list(self.recommendations),
        }


def correlation_id(record: PaymentRecord) -> Optional[str]:
    """Gateway id used to poll a record: charge id for TAP_PAY, invoice id for TAP_INVOICE."""
    if record.payment_method is PaymentMethod.TAP_INVOICE:
        return record.tap_reference or PaymentMetadata.from_raw(record.meta).invoice_id()
    return record.gateway_charge_id or record.tap_reference


def map_gateway_status(payment_method: PaymentMethod, gateway_status: str) -> PaymentStatus:
    if payment_method is PaymentMethod.TAP_INVOICE:
        return map_invoice_status(gateway_status)
    return map_charge_status(gateway_status)


class PaymentReconciler:
    """
    Reconciles local payment records with Tap.

    Gateway calls are made before any storage transaction is opened; the
    record is then locked and compared inside one transaction.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        gateway: Optional[TapClient] = None,
        payments: Optional[OrderPaymentService] = None,
        ledger: Optional[WalletLedger] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        """
        Initialize reconciler.

        Args:
            session_factory: Session factory (defaults to the app's)
            gateway: Tap client
            payments: Order payment service used for the order cascade
            ledger: Wallet ledger used for the top-up cascade
            settings: Settings (request delay between gateway calls)
        """
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.gateway = gateway or (payments.gateway if payments else TapClient(self.settings))
        self.ledger = ledger or (
            payments.ledger if payments else WalletLedger(self.session_factory, self.settings)
        )
        self.payments = payments or OrderPaymentService(
            session_factory=self.session_factory,
            gateway=self.gateway,
            ledger=self.ledger,
            settings=self.settings,
            reconciler=self,
        )
        logger.info("payment_reconciler_initialized")

    async def _fetch_gateway_object(self, record: PaymentRecord) -> GatewayObject:
        if record.payment_method not in GATEWAY_PAYMENT_METHODS:
            raise ValidationError(
                f"Payment {record.id} uses {record.payment_method.value}; only Tap payments sync",
                payment_id=record.id,
            )
        gateway_id = correlation_id(record)
        if not gateway_id:
            raise ValidationError(
                f"Payment {record.id} has no Tap correlation id", payment_id=record.id
            )
        if record.payment_method is PaymentMethod.TAP_INVOICE:
            return await self.gateway.get_invoice(gateway_id)
        return await self.gateway.get_charge(gateway_id)

    async def sync_single_payment_status(
        self, payment_id: int, source: str = "manual"
    ) -> StatusSyncResult:
        """
        Sync one payment record with Tap.

        Args:
            payment_id: PaymentRecord id
            source: 'manual' or 'poll'

        Returns:
            StatusSyncResult: What was compared and whether anything changed

        Raises:
            NotFoundError: If the record does not exist
            ValidationError: If the record is not a Tap payment or has no correlation id
            GatewayError: If Tap cannot be reached or refuses the lookup
        """
        record = await self.payments.get_payment(payment_id)
        gateway_object = await self._fetch_gateway_object(record)
        mapped = map_gateway_status(record.payment_method, gateway_object.status)
        return await self.apply_gateway_status(
            record.id, gateway_object.status, mapped, gateway_object.raw, source=source
        )

    async def apply_gateway_status(
        self,
        payment_id: int,
        gateway_status: str,
        mapped_status: PaymentStatus,
        raw: Optional[Dict[str, Any]] = None,
        source: str = "poll",
    ) -> StatusSyncResult:
        """
        Apply a gateway status to a payment record and cascade.

        Writes nothing when the stored status already equals ``mapped_status``.
        A settled record is never downgraded, and a final record is never
        moved back to PENDING; such mismatches are reported, not applied.

        Returns:
            StatusSyncResult: Comparison outcome
        """
        if source not in SYNC_SOURCES:
            raise ValidationError(f"Unknown sync source: {source}")
        mapped_status = PaymentStatus(mapped_status)

        async with self.session_factory() as db, db.begin():
            record = await lock_payment(db, payment_id)
            local_status = record.payment_status
            result = StatusSyncResult(
                payment_id=record.id,
                local_status=local_status.value,
                tap_status=gateway_status,
                mapped_status=mapped_status.value,
                status_match=local_status is mapped_status,
            )

            if result.status_match:
                metrics.record_sync_outcome("match")
                return result

            if local_status in SETTLED_PAYMENT_STATUSES or (
                mapped_status is PaymentStatus.PENDING
            ):
                metrics.record_sync_outcome("mismatch_blocked")
                logger.warning(
                    "payment_sync_mismatch_not_applied",
                    payment_id=record.id,
                    local_status=local_status.value,
                    tap_status=gateway_status,
                    mapped_status=mapped_status.value,
                )
                return result

            await self._apply(db, record, gateway_status, mapped_status, raw, source)
            result.updated = True

        metrics.record_sync_outcome("updated")
        logger.info(
            "payment_status_synced",
            payment_id=payment_id,
            previous_status=result.local_status,
            new_status=mapped_status.value,
            tap_status=gateway_status,
            source=source,
        )
        return result

    async def _apply(
        self,
        db: AsyncSession,
        record: PaymentRecord,
        gateway_status: str,
        mapped_status: PaymentStatus,
        raw: Optional[Dict[str, Any]],
        source: str,
    ) -> None:
        now = utcnow()
        previous = record.payment_status
        audit = GatewaySyncAudit(
            actor_role=StaffRole.SYSTEM.value,
            source=source,
            gateway_status=gateway_status,
            previous_status=previous,
            new_status=mapped_status,
            synced_at=now,
        )
        record.payment_status = mapped_status
        if raw:
            record.tap_response = raw
        record.meta = PaymentMetadata.from_raw(record.meta).with_sync_event(audit).to_json()
        if mapped_status is PaymentStatus.PAID:
            record.processed_at = now
            record.failure_reason = None
        elif mapped_status is PaymentStatus.FAILED:
            record.failure_reason = f"Tap reported {gateway_status}"
        await db.flush()

        if record.wallet_transaction_id is not None:
            if mapped_status is PaymentStatus.PAID:
                credited = await self.ledger.complete_pending_transaction(
                    db, record.wallet_transaction_id, audit
                )
                if not credited:
                    logger.warning(
                        "payment_settled_without_wallet_credit",
                        payment_id=record.id,
                        wallet_transaction_id=record.wallet_transaction_id,
                    )
            elif mapped_status is PaymentStatus.FAILED:
                await self.ledger.fail_pending_transaction(
                    db, record.wallet_transaction_id, record.failure_reason or gateway_status
                )

        if record.order_id is not None:
            db.add(
                OrderHistory(
                    order_id=record.order_id,
                    action=(
                        HistoryAction.PAYMENT_COMPLETED
                        if mapped_status is PaymentStatus.PAID
                        else HistoryAction.PAYMENT_FAILED
                    ),
                    old_value={"payment_id": record.id, "payment_status": previous.value},
                    new_value={"payment_id": record.id, "payment_status": mapped_status.value},
                    description=f"Tap reported {gateway_status} for payment {record.id}",
                    meta=dump_audit(audit),
                )
            )
            await self.payments.refresh_and_advance(db, record.order_id, source)

        await enqueue_notification(
            db,
            "payment.completed" if mapped_status is PaymentStatus.PAID else "payment.failed",
            "payment",
            record.id,
            {
                "payment_id": record.id,
                "order_id": record.order_id,
                "customer_id": record.customer_id,
                "amount_fils": record.amount_fils,
                "payment_method": record.payment_method.value,
                "payment_status": mapped_status.value,
            },
        )

    async def _load_candidates(self, filters: SyncFilters) -> List[int]:
        methods = list(GATEWAY_PAYMENT_METHODS)
        if filters.payment_method is not None:
            method = PaymentMethod(filters.payment_method)
            if method not in GATEWAY_PAYMENT_METHODS:
                raise ValidationError(f"{method.value} payments are not synced with Tap")
            methods = [method]

        stmt = select(PaymentRecord.id).where(
            PaymentRecord.payment_method.in_(methods),
            or_(
                PaymentRecord.tap_charge_id.is_not(None),
                PaymentRecord.tap_transaction_id.is_not(None),
                PaymentRecord.tap_reference.is_not(None),
            ),
        )
        if filters.payment_status is not None:
            stmt = stmt.where(PaymentRecord.payment_status == PaymentStatus(filters.payment_status))
        if filters.created_after is not None:
            stmt = stmt.where(PaymentRecord.created_at >= filters.created_after)
        stmt = (
            stmt.order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
            .limit(filters.limit)
            .offset(filters.offset)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    @staticmethod
    def _recommendations(report: SyncReport) -> List[str]:
        recommendations = []
        if report.errors:
            recommendations.append(
                f"{len(report.errors)} payment(s) could not be synced; "
                "they will be retried on the next scheduled run"
            )
        blocked = sum(1 for r in report.results if not r.status_match and not r.updated and not r.error)
        if blocked:
            recommendations.append(
                f"{blocked} payment(s) disagree with Tap but were not changed; review them manually"
            )
        if report.updated:
            recommendations.append(
                f"{report.updated} payment(s) were updated from Tap; check webhook delivery"
            )
        if not recommendations:
            recommendations.append("All checked payments match Tap")
        return recommendations

    async def _start_run(self, trigger: str, started_at: datetime) -> int:
        async with self.session_factory() as db, db.begin():
            run = PaymentSyncRun(trigger=trigger, status="in_progress", started_at=started_at)
            db.add(run)
        return run.id

    async def _finish_run(self, run_id: int, report: SyncReport, status: str = "completed") -> None:
        async with self.session_factory() as db, db.begin():
            run = await db.get(PaymentSyncRun, run_id)
            run.status = status
            run.total_checked = report.total_checked
            run.status_mismatches = report.status_mismatches
            run.updated = report.updated
            run.error_count = len(report.errors)
            run.completed_at = report.completed_at or utcnow()
            details = report.to_dict()
            # Keep stored details bounded
            details["results"] = details["results"][:100]
            details["errors"] = details["errors"][:100]
            run.details = details

    async def sync_payment_statuses(
        self, filters: Optional[SyncFilters] = None, trigger: str = "manual"
    ) -> SyncReport:
        """
        Sync a filtered batch of Tap payment records.

        Each record is synced independently: gateway and domain errors are
        recorded in the report and the batch continues. Storage errors abort
        the batch and propagate.

        Args:
            filters: Candidate filters (gateway methods with a correlation id)
            trigger: 'manual' or 'scheduled'

        Returns:
            SyncReport: Counts, per-record results, errors and recommendations
        """
        filters = filters or SyncFilters()
        source = "poll" if trigger == "scheduled" else "manual"
        start_time = time.time()
        report = SyncReport(started_at=utcnow())

        logger.info(
            "payment_sync_started",
            trigger=trigger,
            payment_method=filters.payment_method,
            payment_status=filters.payment_status,
            limit=filters.limit,
            offset=filters.offset,
        )

        candidate_ids = await self._load_candidates(filters)
        report.run_id = await self._start_run(trigger, report.started_at)

        try:
            for index, payment_id in enumerate(candidate_ids):
                if index and self.settings.payment_sync_request_delay_seconds > 0:
                    await asyncio.sleep(self.settings.payment_sync_request_delay_seconds)

                report.total_checked += 1
                try:
                    result = await self.sync_single_payment_status(payment_id, source=source)
                except LaundryOpsError as e:
                    metrics.record_sync_outcome("error")
                    logger.warning(
                        "payment_sync_record_failed",
                        payment_id=payment_id,
                        error=e.message,
                        error_type=type(e).__name__,
                    )
                    report.errors.append(
                        SyncError(payment_id=payment_id, message=e.message, error_type=type(e).__name__)
                    )
                    report.results.append(StatusSyncResult(payment_id=payment_id, error=e.message))
                    continue

                report.results.append(result)
                if not result.status_match:
                    report.status_mismatches += 1
                if result.updated:
                    report.updated += 1
        except Exception as e:
            logger.error("payment_sync_failed", run_id=report.run_id, error=str(e))
            report.completed_at = utcnow()
            report.recommendations = [f"Sync aborted: {e}"]
            try:
                await self._finish_run(report.run_id, report, status="failed")
            except Exception as mark_error:
                logger.error("payment_sync_run_not_marked_failed", error=str(mark_error))
            raise

        report.completed_at = utcnow()
        report.recommendations = self._recommendations(report)
        await self._finish_run(report.run_id, report)
        metrics.record_sync_batch(time.time() - start_time)

        logger.info(
            "payment_sync_completed",
            trigger=trigger,
            duration_seconds=round(time.time() - start_time, 3),
            **report.summary(),
        )
        return report

    async def get_recent_sync_runs(self, limit: int = 20) -> List[PaymentSyncRun]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentSyncRun)
                .order_by(PaymentSyncRun.started_at.desc(), PaymentSyncRun.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
