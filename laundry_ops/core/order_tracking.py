"""
Order tracking state machine.

Every status change goes through one path: validate against the transition
table and the actor's role, then write the new status, an OrderHistory row,
an OrderUpdate row and (for notifiable statuses) an outbox notification in a
single storage transaction. Driver, facility and operations actions are thin
layers that add their side records to the same transaction.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Type, TypeVar

import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from laundry_ops.config import Settings, get_settings
from laundry_ops.core.outbox import enqueue_notification
from laundry_ops.database.connection import get_session_factory
from laundry_ops.database.models import (
    DriverAssignment,
    DriverPhoto,
    IssueReport,
    Order,
    OrderHistory,
    OrderProcessing,
    OrderUpdate,
    ProcessingItemDetail,
    utcnow,
)
from laundry_ops.domain.actors import Actor
from laundry_ops.domain.audit import (
    AssignmentAudit,
    AutoAdvanceAudit,
    DriverActionAudit,
    FacilityActionAudit,
    IssueReportAudit,
    NoteAudit,
    StatusChangeAudit,
    dump_audit,
)
from laundry_ops.domain.enums import (
    AssignmentType,
    DriverAction,
    DriverAssignmentStatus,
    FacilityAction,
    HistoryAction,
    IssueSeverity,
    ItemStatus,
    OperationsAction,
    OrderPaymentStatus,
    OrderStatus,
    ProcessingStatus,
    StaffRole,
)
from laundry_ops.domain.transitions import NOTIFIABLE_STATUSES, team_statuses, validate_transition
from laundry_ops.exceptions import (
    InvalidTransition,
    NotFoundError,
    NotPermittedError,
    TransitionNotPermitted,
    ValidationError,
)
from laundry_ops.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

__all__ = ["Actor", "OrderTracker", "ProcessingUpdate"]

E = TypeVar("E")

# action -> (new order status, assignment type, assignment status)
DRIVER_ACTIONS = {
    DriverAction.START_PICKUP: (
        OrderStatus.PICKUP_IN_PROGRESS,
        AssignmentType.PICKUP,
        DriverAssignmentStatus.IN_PROGRESS,
    ),
    DriverAction.COMPLETE_PICKUP: (
        OrderStatus.PICKUP_COMPLETED,
        AssignmentType.PICKUP,
        DriverAssignmentStatus.COMPLETED,
    ),
    DriverAction.FAIL_PICKUP: (
        OrderStatus.PICKUP_FAILED,
        AssignmentType.PICKUP,
        DriverAssignmentStatus.FAILED,
    ),
    DriverAction.DROP_OFF: (
        OrderStatus.RECEIVED_AT_FACILITY,
        AssignmentType.PICKUP,
        DriverAssignmentStatus.COMPLETED,
    ),
    DriverAction.START_DELIVERY: (
        OrderStatus.DELIVERY_IN_PROGRESS,
        AssignmentType.DELIVERY,
        DriverAssignmentStatus.IN_PROGRESS,
    ),
    DriverAction.COMPLETE_DELIVERY: (
        OrderStatus.DELIVERED,
        AssignmentType.DELIVERY,
        DriverAssignmentStatus.COMPLETED,
    ),
    DriverAction.FAIL_DELIVERY: (
        OrderStatus.DELIVERY_FAILED,
        AssignmentType.DELIVERY,
        DriverAssignmentStatus.FAILED,
    ),
}

FACILITY_TRANSITIONS = {
    FacilityAction.RECEIVE_ORDER: OrderStatus.RECEIVED_AT_FACILITY,
    FacilityAction.START_PROCESSING: OrderStatus.PROCESSING_STARTED,
    FacilityAction.COMPLETE_PROCESSING: OrderStatus.PROCESSING_COMPLETED,
    FacilityAction.QUALITY_CHECK: OrderStatus.QUALITY_CHECK,
    FacilityAction.READY_FOR_DELIVERY: OrderStatus.READY_FOR_DELIVERY,
}

OPERATIONS_TRANSITIONS = {
    OperationsAction.CONFIRM_ORDER: OrderStatus.CONFIRMED,
    OperationsAction.ASSIGN_PICKUP_DRIVER: OrderStatus.PICKUP_ASSIGNED,
    OperationsAction.ASSIGN_DELIVERY_DRIVER: OrderStatus.DELIVERY_ASSIGNED,
    OperationsAction.CANCEL_ORDER: OrderStatus.CANCELLED,
}

FACILITY_ROLES = frozenset(
    {StaffRole.FACILITY_TEAM, StaffRole.SUPER_ADMIN, StaffRole.OPERATION_MANAGER}
)
OPEN_ASSIGNMENT_STATUSES = (DriverAssignmentStatus.ASSIGNED, DriverAssignmentStatus.IN_PROGRESS)


def _coerce(enum_cls: Type[E], value: Any, field: str) -> E:
    try:
        return enum_cls(value)  # type: ignore[call-arg]
    except ValueError:
        raise ValidationError(f"Unknown {field}: {value}", **{field: str(value)})


@dataclass
class ProcessingUpdate:
    """Facility measurements recorded with processing actions."""

    total_pieces: Optional[int] = None
    total_weight: Optional[float] = None
    processing_notes: Optional[str] = None
    quality_score: Optional[int] = None

    def validate(self) -> None:
        if self.quality_score is not None and not 1 <= self.quality_score <= 10:
            raise ValidationError(
                "Quality score must be between 1 and 10", quality_score=self.quality_score
            )
        if self.total_pieces is not None and self.total_pieces < 0:
            raise ValidationError("Total pieces cannot be negative")
        if self.total_weight is not None and self.total_weight < 0:
            raise ValidationError("Total weight cannot be negative")


class OrderTracker:
    """
    Order lifecycle service.

    Public coroutines own their storage transaction. ``advance_after_payment``
    runs inside the caller's transaction so payment settlement and the
    follow-up status change commit together.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session_factory = session_factory or get_session_factory()
        self.settings = settings or get_settings()

    @staticmethod
    async def lock_order(db: AsyncSession, order_id: int) -> Order:
        """
        Load an order row with FOR UPDATE.

        Raises:
            NotFoundError: If the order does not exist
        """
        result = await db.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
        return order

    async def apply_transition(
        self,
        db: AsyncSession,
        order: Order,
        actor: Actor,
        new_status: OrderStatus,
        notes: Optional[str] = None,
        audit: Optional[BaseModel] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> OrderHistory:
        """
        Validate and write one status change inside the caller's transaction.

        Raises:
            InvalidTransition: If ``new_status`` does not follow the current status
            TransitionNotPermitted: If the actor's role may not set ``new_status``
        """
        old_status = order.status
        try:
            validate_transition(old_status, new_status, actor.role)
        except InvalidTransition:
            metrics.record_transition_rejected("invalid_transition")
            logger.warning(
                "order_transition_rejected",
                order_id=order.id,
                current_status=old_status.value,
                requested_status=new_status.value,
                reason="invalid_transition",
            )
            raise
        except TransitionNotPermitted:
            metrics.record_transition_rejected("not_permitted")
            logger.warning(
                "order_transition_rejected",
                order_id=order.id,
                current_status=old_status.value,
                requested_status=new_status.value,
                actor_role=actor.role.value,
                reason="not_permitted",
            )
            raise

        if audit is None:
            audit = StatusChangeAudit(
                actor_id=actor.staff_id,
                actor_role=actor.role.value,
                old_status=old_status,
                new_status=new_status,
                notes=notes,
                extra=extra or {},
            )

        order.status = new_status
        order.updated_at = utcnow()
        history = OrderHistory(
            order_id=order.id,
            staff_id=actor.staff_id,
            action=HistoryAction.STATUS_CHANGE,
            old_value={"status": old_status.value},
            new_value={"status": new_status.value},
            description=notes or f"Status changed from {old_status.value} to {new_status.value}",
            meta=dump_audit(audit),
        )
        db.add(history)
        db.add(
            OrderUpdate(
                order_id=order.id,
                staff_id=actor.staff_id,
                old_status=old_status,
                new_status=new_status,
                notes=notes,
            )
        )
        if new_status in NOTIFIABLE_STATUSES:
            await enqueue_notification(
                db,
                "order.status_changed",
                "order",
                order.id,
                {
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "customer_id": order.customer_id,
                    "old_status": old_status.value,
                    "new_status": new_status.value,
                },
            )
        await db.flush()

        metrics.record_order_transition(old_status.value, new_status.value, actor.role.value)
        logger.info(
            "order_status_changed",
            order_id=order.id,
            old_status=old_status.value,
            new_status=new_status.value,
            staff_id=actor.staff_id,
            actor_role=actor.role.value,
        )
        return history

    async def transition(
        self,
        order_id: int,
        actor: Actor,
        new_status: OrderStatus,
        notes: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Order:
        """
        Move an order to ``new_status`` (admin and operations path).

        Args:
            order_id: Order id
            actor: Acting staff member
            new_status: Requested status
            notes: Optional note stored on the history and update rows
            metadata: Optional extra fields kept on the status change audit

        Returns:
            Order: The updated order

        Raises:
            NotFoundError: If the order does not exist
            InvalidTransition: If the transition is not in the table
            TransitionNotPermitted: If the actor's role may not set ``new_status``
        """
        new_status = _coerce(OrderStatus, new_status, "status")
        async with self.session_factory() as db, db.begin():
            order = await self.lock_order(db, order_id)
            await self.apply_transition(db, order, actor, new_status, notes=notes, extra=metadata)
        return order

    async def _latest_assignment(
        self,
        db: AsyncSession,
        order_id: int,
        assignment_type: AssignmentType,
        driver_id: Optional[int] = None,
    ) -> Optional[DriverAssignment]:
        stmt = select(DriverAssignment).where(
            DriverAssignment.order_id == order_id,
            DriverAssignment.assignment_type == assignment_type,
        )
        if driver_id is not None:
            stmt = stmt.where(DriverAssignment.driver_id == driver_id)
        stmt = stmt.order_by(DriverAssignment.created_at.desc(), DriverAssignment.id.desc())
        result = await db.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def driver_action(
        self,
        order_id: int,
        actor: Actor,
        action: DriverAction,
        notes: Optional[str] = None,
        photo_url: Optional[str] = None,
    ) -> Order:
        """
        Apply a driver pickup/delivery action.

        The status change, the driver's assignment update and the optional
        photo are written in one transaction.

        Raises:
            NotPermittedError: If a driver acts on an order not assigned to them
            ValidationError: If a photo is given but there is no assignment
        """
        action = _coerce(DriverAction, action, "action")
        new_status, assignment_type, assignment_status = DRIVER_ACTIONS[action]

        async with self.session_factory() as db, db.begin():
            order = await self.lock_order(db, order_id)
            driver_id = actor.staff_id if actor.role is StaffRole.DRIVER else None
            assignment = await self._latest_assignment(db, order.id, assignment_type, driver_id)
            if assignment is None and actor.role is StaffRole.DRIVER:
                raise NotPermittedError(
                    f"Driver {actor.staff_id} has no {assignment_type.value} assignment "
                    f"for order {order_id}",
                    order_id=order_id,
                    driver_id=actor.staff_id,
                )
            if assignment is None and photo_url:
                raise ValidationError("Photos require a driver assignment", order_id=order_id)

            audit = DriverActionAudit(
                actor_id=actor.staff_id,
                actor_role=actor.role.value,
                action=action,
                assignment_id=assignment.id if assignment else None,
                photo_url=photo_url,
                notes=notes,
            )
            await self.apply_transition(db, order, actor, new_status, notes=notes, audit=audit)

            if assignment is not None:
                assignment.status = assignment_status
                if assignment_status in (
                    DriverAssignmentStatus.COMPLETED,
                    DriverAssignmentStatus.FAILED,
                ):
                    assignment.actual_time = utcnow()
                if notes:
                    assignment.notes = notes
                if photo_url:
                    db.add(
                        DriverPhoto(
                            driver_assignment_id=assignment.id,
                            photo_url=photo_url,
                            photo_type=f"{action.value}_photo",
                            description=notes,
                        )
                    )

        logger.info(
            "driver_action_applied",
            order_id=order_id,
            action=action.value,
            driver_id=actor.staff_id,
            assignment_id=assignment.id if assignment else None,
            has_photo=bool(photo_url),
        )
        return order

    @staticmethod
    async def _get_processing(db: AsyncSession, order_id: int) -> Optional[OrderProcessing]:
        result = await db.execute(
            select(OrderProcessing).where(OrderProcessing.order_id == order_id)
        )
        return result.scalar_one_or_none()

    async def _upsert_processing(
        self,
        db: AsyncSession,
        order_id: int,
        actor: Actor,
        status: ProcessingStatus,
        processing: Optional[ProcessingUpdate],
    ) -> OrderProcessing:
        record = await self._get_processing(db, order_id)
        if record is None:
            record = OrderProcessing(order_id=order_id, processing_status=status)
            db.add(record)
        record.processing_status = status
        record.staff_id = actor.staff_id
        if processing is not None:
            if processing.total_pieces is not None:
                record.total_pieces = processing.total_pieces
            if processing.total_weight is not None:
                record.total_weight = processing.total_weight
            if processing.processing_notes:
                record.processing_notes = processing.processing_notes
            if processing.quality_score is not None:
                record.quality_score = processing.quality_score
        now = utcnow()
        if status is ProcessingStatus.IN_PROGRESS and record.started_at is None:
            record.started_at = now
        if status is ProcessingStatus.COMPLETED:
            record.completed_at = now
        await db.flush()
        return record

    async def facility_action(
        self,
        order_id: int,
        actor: Actor,
        action: FacilityAction,
        processing: Optional[ProcessingUpdate] = None,
        invoice_total_fils: Optional[int] = None,
    ) -> Order:
        """
        Apply a facility action.

        ``generate_invoice`` does not change the status; it marks the invoice
        generated (optionally fixing the invoice total) and notifies the customer.

        Raises:
            NotPermittedError: If the actor is not facility staff or an admin
            ValidationError: On invalid processing measurements
        """
        action = _coerce(FacilityAction, action, "action")
        if actor.role not in FACILITY_ROLES:
            raise NotPermittedError(
                f"Role {actor.role.value} cannot perform facility actions", role=actor.role.value
            )
        if processing is not None:
            processing.validate()
        if invoice_total_fils is not None and invoice_total_fils < 0:
            raise ValidationError("Invoice total cannot be negative")

        audit = FacilityActionAudit(
            actor_id=actor.staff_id,
            actor_role=actor.role.value,
            action=action,
            total_pieces=processing.total_pieces if processing else None,
            total_weight=processing.total_weight if processing else None,
            quality_score=processing.quality_score if processing else None,
            notes=processing.processing_notes if processing else None,
        )

        async with self.session_factory() as db, db.begin():
            order = await self.lock_order(db, order_id)

            if action is FacilityAction.GENERATE_INVOICE:
                await self._generate_invoice(db, order, actor, audit, invoice_total_fils)
            else:
                notes = processing.processing_notes if processing else None
                await self.apply_transition(
                    db, order, actor, FACILITY_TRANSITIONS[action], notes=notes, audit=audit
                )
                if action is FacilityAction.START_PROCESSING:
                    await self._upsert_processing(
                        db, order.id, actor, ProcessingStatus.IN_PROGRESS, processing
                    )
                elif action is FacilityAction.COMPLETE_PROCESSING:
                    await self._upsert_processing(
                        db, order.id, actor, ProcessingStatus.COMPLETED, processing
                    )
                    await enqueue_notification(
                        db,
                        "order.payment_due",
                        "order",
                        order.id,
                        {
                            "order_id": order.id,
                            "order_number": order.order_number,
                            "customer_id": order.customer_id,
                            "invoice_total_fils": order.invoice_total_fils,
                            "payment_status": order.payment_status.value,
                        },
                    )
                elif action is FacilityAction.QUALITY_CHECK:
                    await self._upsert_processing(
                        db, order.id, actor, ProcessingStatus.QUALITY_CHECK, processing
                    )
                elif action is FacilityAction.READY_FOR_DELIVERY:
                    await self._upsert_processing(
                        db, order.id, actor, ProcessingStatus.READY_FOR_DELIVERY, processing
                    )

        logger.info(
            "facility_action_applied",
            order_id=order_id,
            action=action.value,
            staff_id=actor.staff_id,
        )
        return order

    async def _generate_invoice(
        self,
        db: AsyncSession,
        order: Order,
        actor: Actor,
        audit: FacilityActionAudit,
        invoice_total_fils: Optional[int],
    ) -> None:
        old_value = {
            "invoice_generated": order.invoice_generated,
            "invoice_total_fils": order.invoice_total_fils,
        }
        order.invoice_generated = True
        if invoice_total_fils is not None:
            order.invoice_total_fils = invoice_total_fils
        order.updated_at = utcnow()
        db.add(
            OrderHistory(
                order_id=order.id,
                staff_id=actor.staff_id,
                action=HistoryAction.INVOICE_GENERATED,
                old_value=old_value,
                new_value={
                    "invoice_generated": True,
                    "invoice_total_fils": order.invoice_total_fils,
                },
                description=f"Invoice generated for order {order.order_number}",
                meta=dump_audit(audit),
            )
        )
        await enqueue_notification(
            db,
            "order.invoice_generated",
            "order",
            order.id,
            {
                "order_id": order.id,
                "order_number": order.order_number,
                "customer_id": order.customer_id,
                "invoice_total_fils": order.invoice_total_fils,
                "currency": order.currency,
            },
        )
        await db.flush()

    async def operations_action(
        self,
        order_id: int,
        actor: Actor,
        action: OperationsAction,
        driver_id: Optional[int] = None,
        estimated_time: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> Order:
        """
        Apply an operations action (confirm, assign drivers, cancel).

        Assigning a driver creates a DriverAssignment in the same transaction as
        the status change. Cancelling closes the order's open assignments.

        Raises:
            ValidationError: If an assignment action has no driver
        """
        action = _coerce(OperationsAction, action, "action")
        new_status = OPERATIONS_TRANSITIONS[action]
        assignment_type = {
            OperationsAction.ASSIGN_PICKUP_DRIVER: AssignmentType.PICKUP,
            OperationsAction.ASSIGN_DELIVERY_DRIVER: AssignmentType.DELIVERY,
        }.get(action)
        if assignment_type is not None and driver_id is None:
            raise ValidationError(f"{action.value} requires a driver_id")

        async with self.session_factory() as db, db.begin():
            order = await self.lock_order(db, order_id)
            audit: Optional[BaseModel] = None

            if assignment_type is not None:
                assignment = DriverAssignment(
                    order_id=order.id,
                    driver_id=driver_id,
                    assignment_type=assignment_type,
                    status=DriverAssignmentStatus.ASSIGNED,
                    estimated_time=estimated_time,
                    notes=notes,
                )
                db.add(assignment)
                await db.flush()
                audit = AssignmentAudit(
                    actor_id=actor.staff_id,
                    actor_role=actor.role.value,
                    action=action,
                    assignment_type=assignment_type,
                    driver_id=driver_id,
                    assignment_id=assignment.id,
                    estimated_time=estimated_time,
                )

            await self.apply_transition(db, order, actor, new_status, notes=notes, audit=audit)

            if action is OperationsAction.CANCEL_ORDER:
                result = await db.execute(
                    select(DriverAssignment).where(
                        DriverAssignment.order_id == order.id,
                        DriverAssignment.status.in_(OPEN_ASSIGNMENT_STATUSES),
                    )
                )
                for open_assignment in result.scalars():
                    open_assignment.status = DriverAssignmentStatus.CANCELLED

        logger.info(
            "operations_action_applied",
            order_id=order_id,
            action=action.value,
            driver_id=driver_id,
            staff_id=actor.staff_id,
        )
        return order

    async def add_order_note(
        self, order_id: int, actor: Actor, note: str, is_internal: bool = True
    ) -> OrderHistory:
        """Attach a note to the order's history without changing its status."""
        note = (note or "").strip()
        if not note:
            raise ValidationError("Note cannot be empty")

        async with self.session_factory() as db, db.begin():
            order = await self.lock_order(db, order_id)
            history = OrderHistory(
                order_id=order.id,
                staff_id=actor.staff_id,
                action=HistoryAction.NOTE_ADDED,
                description=note,
                meta=dump_audit(
                    NoteAudit(
                        actor_id=actor.staff_id,
                        actor_role=actor.role.value,
                        is_internal=is_internal,
                    )
                ),
            )
            db.add(history)

        logger.info("order_note_added", order_id=order_id, staff_id=actor.staff_id)
        return history

    async def record_issue_report(
        self,
        order_id: int,
        actor: Actor,
        issue_type: str,
        description: str,
        severity: IssueSeverity = IssueSeverity.MEDIUM,
        item_id: Optional[int] = None,
    ) -> IssueReport:
        """
        Record a quality issue found during processing.

        Raises:
            NotPermittedError: If the actor is not facility staff or an admin
            ValidationError: If the order has no processing record or the item
                belongs to another order
        """
        if actor.role not in FACILITY_ROLES:
            raise NotPermittedError(
                f"Role {actor.role.value} cannot report processing issues", role=actor.role.value
            )
        severity = _coerce(IssueSeverity, severity, "severity")
        if not (issue_type or "").strip() or not (description or "").strip():
            raise ValidationError("Issue type and description are required")

        async with self.session_factory() as db, db.begin():
            order = await self.lock_order(db, order_id)
            processing = await self._get_processing(db, order.id)
            if processing is None:
                raise ValidationError(
                    f"Order {order_id} has no processing record", order_id=order_id
                )

            if item_id is not None:
                item = await db.get(ProcessingItemDetail, item_id)
                if item is None or item.order_processing_id != processing.id:
                    raise ValidationError(
                        f"Item {item_id} does not belong to order {order_id}", item_id=item_id
                    )
                item.status = ItemStatus.ISSUE_REPORTED

            report = IssueReport(
                order_processing_id=processing.id,
                processing_item_detail_id=item_id,
                staff_id=actor.staff_id,
                issue_type=issue_type.strip(),
                severity=severity,
                description=description.strip(),
            )
            db.add(report)
            processing.processing_status = ProcessingStatus.ISSUE_REPORTED
            await db.flush()

            db.add(
                OrderHistory(
                    order_id=order.id,
                    staff_id=actor.staff_id,
                    action=HistoryAction.ISSUE_REPORTED,
                    description=description.strip(),
                    new_value={"issue_type": report.issue_type, "severity": severity.value},
                    meta=dump_audit(
                        IssueReportAudit(
                            actor_id=actor.staff_id,
                            actor_role=actor.role.value,
                            issue_report_id=report.id,
                            issue_type=report.issue_type,
                            severity=severity,
                            processing_item_detail_id=item_id,
                        )
                    ),
                )
            )

        logger.warning(
            "order_issue_reported",
            order_id=order_id,
            issue_report_id=report.id,
            issue_type=report.issue_type,
            severity=severity.value,
        )
        return report

    async def advance_after_payment(self, db: AsyncSession, order: Order, source: str) -> bool:
        """
        Move a paid PROCESSING_COMPLETED order to READY_FOR_DELIVERY.

        Runs inside the caller's transaction with the system actor. Disabled
        by ``auto_advance_on_payment=False``.

        Returns:
            bool: True if the order advanced
        """
        if not self.settings.auto_advance_on_payment:
            return False
        if order.status is not OrderStatus.PROCESSING_COMPLETED:
            return False
        if order.payment_status is not OrderPaymentStatus.PAID:
            return False

        actor = Actor.system()
        audit = AutoAdvanceAudit(
            actor_role=actor.role.value,
            trigger=source,
            payment_status=order.payment_status,
        )
        await self.apply_transition(
            db,
            order,
            actor,
            OrderStatus.READY_FOR_DELIVERY,
            notes="Automatically advanced after payment",
            audit=audit,
        )
        metrics.record_auto_advance()
        logger.info("order_auto_advanced", order_id=order.id, trigger=source)
        return True

    async def get_order(self, order_id: int) -> Order:
        async with self.session_factory() as db:
            order = await db.get(Order, order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
        return order

    async def get_order_history(self, order_id: int, limit: int = 100) -> List[OrderHistory]:
        """History entries of an order, newest first."""
        async with self.session_factory() as db:
            if await db.get(Order, order_id) is None:
                raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
            result = await db.execute(
                select(OrderHistory)
                .where(OrderHistory.order_id == order_id)
                .order_by(OrderHistory.created_at.desc(), OrderHistory.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_order_timeline(self, order_id: int) -> List[Dict[str, Any]]:
        """
        Status changes in chronological order.

        ``duration_seconds`` is how long the order stayed in the previous status.
        """
        async with self.session_factory() as db:
            order = await db.get(Order, order_id)
            if order is None:
                raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
            result = await db.execute(
                select(OrderUpdate)
                .where(OrderUpdate.order_id == order_id)
                .order_by(OrderUpdate.created_at, OrderUpdate.id)
            )
            updates = list(result.scalars().all())

        timeline: List[Dict[str, Any]] = []
        previous_at = order.created_at
        for update in updates:
            duration = None
            if previous_at is not None and update.created_at is not None:
                duration = (update.created_at - previous_at).total_seconds()
            timeline.append(
                {
                    "status": update.new_status.value,
                    "previous_status": update.old_status.value,
                    "changed_at": update.created_at,
                    "staff_id": update.staff_id,
                    "notes": update.notes,
                    "duration_seconds": duration,
                }
            )
            previous_at = update.created_at
        return timeline

    async def get_orders_for_team(self, role: StaffRole, limit: int = 50) -> List[Order]:
        """Orders in the given team's work queue, oldest first."""
        role = _coerce(StaffRole, role, "role")
        statuses = list(team_statuses(role))
        if not statuses:
            return []
        async with self.session_factory() as db:
            result = await db.execute(
                select(Order)
                .where(Order.status.in_(statuses))
                .order_by(Order.created_at, Order.id)
                .limit(limit)
            )
            return list(result.scalars().all())
