"""
Correlation-id cleanup for gateway payment records.

Older records sometimes carry the Tap ids only inside ``tap_response`` or the
payment metadata, or hold ``tap_reference`` as a JSON string. Reconciliation
needs the plain id columns, so this module backfills and normalizes them.
"""
import json
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from laundry_ops.database.connection import get_session_factory
from laundry_ops.database.models import PaymentRecord
from laundry_ops.domain.audit import PaymentMetadata
from laundry_ops.domain.enums import GATEWAY_PAYMENT_METHODS, CleanupAction, PaymentMethod
from laundry_ops.exceptions import NotFoundError, ValidationError
from laundry_ops.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DRY_RUN_PREFIX = "[DRY RUN] "


@dataclass
class CleanupFilters:
    payment_method: Optional[PaymentMethod] = None
    limit: int = 100
    offset: int = 0
    batch_size: int = 50
    dry_run: bool = False


@dataclass
class CleanupResult:
    payment_id: int
    action: CleanupAction
    description: str
    changes: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        return data


@dataclass
class CleanupReport:
    dry_run: bool = False
    total_processed: int = 0
    total_fixed: int = 0
    total_errors: int = 0
    results: List[CleanupResult] = field(default_factory=list)
    statistics: Dict[str, int] = field(default_factory=dict)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "total_processed": self.total_processed,
            "total_fixed": self.total_fixed,
            "total_errors": self.total_errors,
            "results": [r.to_dict() for r in self.results],
            "statistics": dict(self.statistics),
            "recommendations": list(self.recommendations),
        }


def _as_dict(value: Any) -> Optional[Dict[str, Any]]:
    """Accept a JSON column value that may have been stored as a string."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        parsed = json.loads(value)
        if isinstance(parsed, dict):
            return parsed
    raise ValueError(f"Expected a JSON object, got {type(value).__name__}")


def extract_ids_from_response(tap_response: Any) -> Dict[str, str]:
    """
    Pull Tap correlation ids out of a stored gateway response.

    Returns:
        dict: Any of ``tap_transaction_id``, ``tap_charge_id``, ``tap_reference``
    """
    response = _as_dict(tap_response)
    ids: Dict[str, str] = {}
    if not response:
        return ids

    if response.get("id"):
        ids["tap_transaction_id"] = str(response["id"])
        ids["tap_charge_id"] = str(response["id"])

    charge = response.get("charge")
    if isinstance(charge, dict) and charge.get("id"):
        ids["tap_charge_id"] = str(charge["id"])

    reference = response.get("reference")
    if isinstance(reference, str) and reference:
        ids["tap_reference"] = reference
    elif isinstance(reference, dict):
        value = reference.get("transaction") or reference.get("invoice")
        if value:
            ids["tap_reference"] = str(value)
    return ids


def normalize_tap_reference(tap_reference: Optional[str]) -> Optional[str]:
    """Unwrap a reference stored as a JSON object string; plain strings pass through."""
    if not tap_reference:
        return tap_reference
    try:
        parsed = json.loads(tap_reference)
    except ValueError:
        return tap_reference
    if isinstance(parsed, dict):
        value = parsed.get("transaction") or parsed.get("invoice") or parsed.get("id")
        return str(value) if value else tap_reference
    return tap_reference


def plan_cleanup(record: PaymentRecord) -> Tuple[CleanupAction, str, Dict[str, Any]]:
    """
    Compute the column changes a record needs.

    Returns:
        tuple: (action, description, changes); changes is empty for NO_CHANGE

    Raises:
        ValueError: If tap_response or metadata cannot be parsed
    """
    changes: Dict[str, Any] = {}
    notes: List[str] = []
    action = CleanupAction.NO_CHANGE

    tap_transaction_id = record.tap_transaction_id
    tap_charge_id = record.tap_charge_id
    tap_reference = record.tap_reference

    if record.payment_method is PaymentMethod.TAP_PAY and record.tap_response:
        extracted = extract_ids_from_response(record.tap_response)
        if not tap_transaction_id and extracted.get("tap_transaction_id"):
            tap_transaction_id = changes["tap_transaction_id"] = extracted["tap_transaction_id"]
            notes.append(f"extracted tap_transaction_id {tap_transaction_id}")
        if not tap_charge_id and extracted.get("tap_charge_id"):
            tap_charge_id = changes["tap_charge_id"] = extracted["tap_charge_id"]
            notes.append(f"extracted tap_charge_id {tap_charge_id}")
        if not tap_reference and extracted.get("tap_reference"):
            tap_reference = changes["tap_reference"] = extracted["tap_reference"]
            notes.append(f"extracted tap_reference {tap_reference}")
        if changes:
            action = CleanupAction.EXTRACTED_TAP_ID

    if record.payment_method is PaymentMethod.TAP_INVOICE and not tap_reference and record.meta:
        invoice_id = PaymentMetadata.from_raw(_as_dict(record.meta)).invoice_id()
        if invoice_id:
            tap_reference = changes["tap_reference"] = invoice_id
            notes.append(f"extracted tap_reference {invoice_id} from metadata")
            action = CleanupAction.EXTRACTED_TAP_ID

    if record.payment_method is PaymentMethod.TAP_PAY and tap_charge_id and not tap_transaction_id:
        tap_transaction_id = changes["tap_transaction_id"] = tap_charge_id
        notes.append(f"set tap_transaction_id to charge id {tap_charge_id}")
        action = CleanupAction.FIXED_INCONSISTENT_DATA

    normalized = normalize_tap_reference(tap_reference)
    if normalized != tap_reference:
        changes["tap_reference"] = normalized
        notes.append(f"normalized tap_reference to {normalized}")
        if action is CleanupAction.NO_CHANGE:
            action = CleanupAction.NORMALIZED_TAP_REFERENCE

    if not changes:
        return CleanupAction.NO_CHANGE, "No changes needed", changes
    description = "; ".join(notes)
    return action, description[:1].upper() + description[1:], changes


class PaymentDataCleaner:
    """Backfills and normalizes Tap correlation ids on payment records."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None) -> None:
        self.session_factory = session_factory or get_session_factory()

    @staticmethod
    def _clean_record(record: PaymentRecord, dry_run: bool) -> CleanupResult:
        try:
            action, description, changes = plan_cleanup(record)
        except ValueError as e:
            logger.warning("payment_cleanup_record_failed", payment_id=record.id, error=str(e))
            metrics.record_cleanup_result(CleanupAction.ERROR.value, dry_run)
            return CleanupResult(
                payment_id=record.id,
                action=CleanupAction.ERROR,
                description=f"Could not read stored gateway data: {e}",
                error=str(e),
            )

        if action is not CleanupAction.NO_CHANGE:
            if dry_run:
                description = DRY_RUN_PREFIX + description
            else:
                for column, value in changes.items():
                    setattr(record, column, value)
                logger.info("payment_record_cleaned", payment_id=record.id, changes=changes)
        metrics.record_cleanup_result(action.value, dry_run)
        return CleanupResult(
            payment_id=record.id, action=action, description=description, changes=changes
        )

    async def _candidate_ids(self, filters: CleanupFilters) -> List[int]:
        methods = list(GATEWAY_PAYMENT_METHODS)
        if filters.payment_method is not None:
            method = PaymentMethod(filters.payment_method)
            if method not in GATEWAY_PAYMENT_METHODS:
                raise ValidationError(f"{method.value} is not a Tap payment method")
            methods = [method]

        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentRecord.id)
                .where(PaymentRecord.payment_method.in_(methods))
                .order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
                .limit(filters.limit)
                .offset(filters.offset)
            )
            return list(result.scalars().all())

    async def cleanup_payment_data(self, filters: Optional[CleanupFilters] = None) -> CleanupReport:
        """
        Clean up a page of Tap payment records.

        Records are processed in batches of ``filters.batch_size``, one storage
        transaction per batch. With ``dry_run`` the same plans are computed and
        reported but nothing is written.

        Returns:
            CleanupReport: Per-record results, per-action statistics, recommendations
        """
        filters = filters or CleanupFilters()
        if filters.batch_size < 1:
            raise ValidationError("batch_size must be at least 1")

        logger.info(
            "payment_cleanup_started",
            payment_method=filters.payment_method,
            limit=filters.limit,
            offset=filters.offset,
            dry_run=filters.dry_run,
        )

        report = CleanupReport(dry_run=filters.dry_run)
        candidate_ids = await self._candidate_ids(filters)

        for start in range(0, len(candidate_ids), filters.batch_size):
            batch_ids = candidate_ids[start:start + filters.batch_size]
            async with self.session_factory() as db, db.begin():
                result = await db.execute(
                    select(PaymentRecord)
                    .where(PaymentRecord.id.in_(batch_ids))
                    .order_by(PaymentRecord.id)
                    .with_for_update()
                )
                for record in result.scalars().all():
                    report.results.append(self._clean_record(record, filters.dry_run))

        statistics = Counter(r.action.value for r in report.results)
        report.statistics = {action.value: statistics.get(action.value, 0) for action in CleanupAction}
        report.total_processed = len(report.results)
        report.total_errors = statistics.get(CleanupAction.ERROR.value, 0)
        report.total_fixed = (
            report.total_processed
            - report.total_errors
            - statistics.get(CleanupAction.NO_CHANGE.value, 0)
        )
        report.recommendations = self._recommendations(report)

        logger.info(
            "payment_cleanup_completed",
            total_processed=report.total_processed,
            total_fixed=report.total_fixed,
            total_errors=report.total_errors,
            dry_run=filters.dry_run,
        )
        return report

    @staticmethod
    def _recommendations(report: CleanupReport) -> List[str]:
        stats = report.statistics
        recommendations = []
        if report.total_fixed:
            verb = "would be" if report.dry_run else "were"
            recommendations.append(
                f"{report.total_fixed} payment record(s) {verb} cleaned up; review the changes"
            )
        if stats.get(CleanupAction.EXTRACTED_TAP_ID.value):
            recommendations.append(
                f"Extracted Tap ids for {stats[CleanupAction.EXTRACTED_TAP_ID.value]} record(s) "
                "from stored gateway data"
            )
        if stats.get(CleanupAction.NORMALIZED_TAP_REFERENCE.value):
            recommendations.append(
                f"Normalized {stats[CleanupAction.NORMALIZED_TAP_REFERENCE.value]} tap_reference "
                "value(s) stored as JSON"
            )
        if stats.get(CleanupAction.FIXED_INCONSISTENT_DATA.value):
            recommendations.append(
                f"Fixed {stats[CleanupAction.FIXED_INCONSISTENT_DATA.value]} record(s) with a "
                "charge id but no transaction id"
            )
        if report.total_errors:
            recommendations.append(
                f"{report.total_errors} record(s) could not be cleaned up; check the logs"
            )
        if report.dry_run:
            recommendations.append("Dry run: no changes were written. Run again without dry_run to apply.")
        if not recommendations:
            recommendations.append("No cleanup needed")
        return recommendations

    async def cleanup_single_payment(self, payment_id: int, dry_run: bool = False) -> CleanupResult:
        """
        Clean up one payment record.

        Raises:
            NotFoundError: If the record does not exist
            ValidationError: If the record is not a Tap payment
        """
        async with self.session_factory() as db, db.begin():
            result = await db.execute(
                select(PaymentRecord).where(PaymentRecord.id == payment_id).with_for_update()
            )
            record = result.scalar_one_or_none()
            if record is None:
                raise NotFoundError(f"Payment record {payment_id} not found", payment_id=payment_id)
            if record.payment_method not in GATEWAY_PAYMENT_METHODS:
                raise ValidationError(
                    f"Payment method {record.payment_method.value} is not a Tap payment method",
                    payment_id=payment_id,
                )
            return self._clean_record(record, dry_run)
