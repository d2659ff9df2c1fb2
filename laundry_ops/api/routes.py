"""
API routes for order tracking, payments, wallets and payment administration.

Domain errors propagate to the exception handler in ``api.main``, which maps
them to status codes; routes only translate between schemas and services.
"""
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from laundry_ops.core.order_tracking import ProcessingUpdate
from laundry_ops.core.payment_cleanup import CleanupFilters
from laundry_ops.core.reconciliation import SyncFilters
from laundry_ops.domain.actors import Actor
from laundry_ops.integrations.tap_client import InvoiceItem, TapCustomer
from laundry_ops.services import ServiceContainer

from .dependencies import get_actor, get_admin_actor, get_services
from .schemas import (
    CleanupRequest,
    CreateInvoiceRequest,
    CreateWalletRequest,
    DriverActionRequest,
    FacilityActionRequest,
    IssueReportRequest,
    IssueReportResponse,
    NoteRequest,
    OperationsActionRequest,
    OrderHistoryResponse,
    OrderResponse,
    PaymentRecordResponse,
    PaymentSummaryResponse,
    RefundRequest,
    ResendInvoiceRequest,
    SyncRequest,
    SyncRunResponse,
    TopUpRequest,
    TransitionRequest,
    UpdatePaymentRequest,
    WalletAdjustmentRequest,
    WalletPaymentRequest,
    WalletResponse,
    WalletTransactionRequest,
    WalletTransactionResponse,
    WalletTransferRequest,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

order_router = APIRouter(prefix="/orders", tags=["orders"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
wallet_router = APIRouter(prefix="/wallets", tags=["wallets"])
admin_router = APIRouter(prefix="/admin/payments", tags=["admin"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])


# Orders


@order_router.get("/queue", response_model=List[OrderResponse], summary="Orders waiting on my team")
async def team_queue(
    limit: int = Query(default=50, ge=1, le=200),
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    return await services.tracker.get_orders_for_team(actor.role, limit=limit)


@order_router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: int, services: ServiceContainer = Depends(get_services)) -> Any:
    return await services.tracker.get_order(order_id)


@order_router.post("/{order_id}/transition", response_model=OrderResponse)
async def transition_order(
    order_id: int,
    request: TransitionRequest,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    return await services.tracker.transition(
        order_id, actor, request.new_status, notes=request.notes, metadata=request.metadata
    )


@order_router.post("/{order_id}/driver-action", response_model=OrderResponse)
async def driver_action(
    order_id: int,
    request: DriverActionRequest,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    return await services.tracker.driver_action(
        order_id, actor, request.action, notes=request.notes, photo_url=request.photo_url
    )


@order_router.post("/{order_id}/facility-action", response_model=OrderResponse)
async def facility_action(
    order_id: int,
    request: FacilityActionRequest,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    processing = ProcessingUpdate(**request.processing.model_dump()) if request.processing else None
    return await services.tracker.facility_action(
        order_id,
        actor,
        request.action,
        processing=processing,
        invoice_total_fils=request.invoice_total_fils,
    )


@order_router.post("/{order_id}/operations-action", response_model=OrderResponse)
async def operations_action(
    order_id: int,
    request: OperationsActionRequest,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    return await services.tracker.operations_action(
        order_id,
        actor,
        request.action,
        driver_id=request.driver_id,
        estimated_time=request.estimated_time,
        notes=request.notes,
    )


@order_router.post(
    "/{order_id}/notes", response_model=OrderHistoryResponse, status_code=status.HTTP_201_CREATED
)
async def add_note(
    order_id: int,
    request: NoteRequest,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    return await services.tracker.add_order_note(
        order_id, actor, request.note, is_internal=request.is_internal
    )


@order_router.post(
    "/{order_id}/issues", response_model=IssueReportResponse, status_code=status.HTTP_201_CREATED
)
async def report_issue(
    order_id: int,
    request: IssueReportRequest,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    return await services.tracker.record_issue_report(
        order_id,
        actor,
        request.issue_type,
        request.description,
        severity=request.severity,
        item_id=request.item_id,
    )


@order_router.get("/{order_id}/history", response_model=List[OrderHistoryResponse])
async def order_history(
    order_id: int,
    limit: int = Query(default=100, ge=1, le=500),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    return await services.tracker.get_order_history(order_id, limit=limit)


@order_router.get("/{order_id}/timeline")
async def order_timeline(
    order_id: int, services: ServiceContainer = Depends(get_services)
) -> List[Dict[str, Any]]:
    return await services.tracker.get_order_timeline(order_id)


@order_router.get("/{order_id}/payments", response_model=List[PaymentRecordResponse])
async def order_payments(order_id: int, services: ServiceContainer = Depends(get_services)) -> Any:
    return await services.payments.list_order_payments(order_id)


@order_router.get("/{order_id}/payments/summary", response_model=PaymentSummaryResponse)
async def payment_summary(
    order_id: int, services: ServiceContainer = Depends(get_services)
) -> Dict[str, Any]:
    summary = await services.payments.get_payment_summary(order_id)
    return {"order_id": order_id, **summary.to_dict()}


@order_router.post("/{order_id}/payments/recalculate", response_model=PaymentSummaryResponse)
async def recalculate_payment_status(
    order_id: int,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    summary = await services.payments.recalculate_order_payment_status(order_id, actor=actor)
    return {"order_id": order_id, **summary.to_dict()}


@order_router.post(
    "/{order_id}/payments/wallet",
    response_model=PaymentRecordResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Pay an order from the customer's wallet",
)
async def pay_with_wallet(
    order_id: int,
    request: WalletPaymentRequest,
    services: ServiceContainer = Depends(get_services),
) -> Any:
    return await services.payments.pay_with_wallet(
        order_id, request.customer_id, amount_fils=request.amount_fils
    )


@order_router.post(
    "/{order_id}/invoice",
    response_model=PaymentRecordResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Issue a Tap invoice for the outstanding amount",
)
async def create_invoice(
    order_id: int,
    request: CreateInvoiceRequest,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    items = [InvoiceItem(**item.model_dump()) for item in request.items] if request.items else None
    return await services.payments.create_order_invoice(
        order_id, actor, TapCustomer(**request.customer.model_dump()), items=items
    )


# Payments


@payment_router.post("/invoices/{payment_id}/cancel", response_model=PaymentRecordResponse)
async def cancel_invoice(
    payment_id: int,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    return await services.payments.cancel_order_invoice(payment_id, actor)


@payment_router.post("/invoices/{payment_id}/resend")
async def resend_invoice(
    payment_id: int,
    request: ResendInvoiceRequest,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    invoice = await services.payments.resend_order_invoice(payment_id, channels=request.channels)
    logger.info("api_invoice_resent", payment_id=payment_id, staff_id=actor.staff_id)
    return {"payment_id": payment_id, "invoice_id": invoice.id, "status": invoice.status}


# Wallets


@wallet_router.post("", response_model=WalletResponse, status_code=status.HTTP_201_CREATED)
async def create_wallet(
    request: CreateWalletRequest, services: ServiceContainer = Depends(get_services)
) -> Any:
    return await services.ledger.create_wallet_for_customer(
        request.customer_id, currency=request.currency
    )


@wallet_router.get("/{customer_id}", response_model=WalletResponse)
async def get_wallet(customer_id: int, services: ServiceContainer = Depends(get_services)) -> Any:
    return await services.ledger.get_wallet(customer_id)


@wallet_router.get("/{customer_id}/transactions", response_model=List[WalletTransactionResponse])
async def wallet_history(
    customer_id: int,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    wallet = await services.ledger.get_wallet(customer_id)
    return await services.ledger.get_transaction_history(wallet.id, limit=limit, offset=offset)


@wallet_router.post(
    "/{customer_id}/transactions",
    response_model=WalletTransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def wallet_transaction(
    customer_id: int,
    request: WalletTransactionRequest,
    actor: Actor = Depends(get_admin_actor),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    wallet = await services.ledger.get_wallet(customer_id)
    return await services.ledger.process_wallet_transaction(
        wallet.id,
        request.transaction_type,
        request.amount_fils,
        request.description,
        reference=request.reference,
        metadata=request.metadata,
    )


@wallet_router.post(
    "/{customer_id}/adjust",
    response_model=WalletTransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Admin balance adjustment",
)
async def adjust_wallet(
    customer_id: int,
    request: WalletAdjustmentRequest,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    return await services.ledger.adjust_balance(
        customer_id,
        actor,
        request.reason,
        new_balance_fils=request.new_balance_fils,
        delta_fils=request.delta_fils,
        admin_notes=request.admin_notes,
        admin_email=actor.email,
    )


@wallet_router.post("/{customer_id}/transfer", response_model=List[WalletTransactionResponse])
async def transfer(
    customer_id: int,
    request: WalletTransferRequest,
    actor: Actor = Depends(get_admin_actor),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    wallet = await services.ledger.get_wallet(customer_id)
    debit, credit = await services.ledger.transfer(
        wallet.id, request.to_wallet_id, request.amount_fils, request.description
    )
    return [debit, credit]


@wallet_router.post(
    "/{customer_id}/top-up",
    response_model=PaymentRecordResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a Tap card top-up",
)
async def top_up(
    customer_id: int,
    request: TopUpRequest,
    services: ServiceContainer = Depends(get_services),
) -> Any:
    return await services.payments.start_wallet_top_up(
        customer_id,
        request.amount_fils,
        request.source_id,
        TapCustomer(**request.customer.model_dump()),
    )


# Admin payments


@admin_router.post("/sync", summary="Sync a batch of Tap payments")
async def sync_payments(
    request: SyncRequest,
    actor: Actor = Depends(get_admin_actor),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    logger.info("api_batch_sync_requested", staff_id=actor.staff_id)
    report = await services.reconciler.sync_payment_statuses(
        SyncFilters(**request.model_dump()), trigger="manual"
    )
    return report.to_dict()


@admin_router.post("/cleanup", summary="Backfill and normalize Tap correlation ids")
async def cleanup_payments(
    request: CleanupRequest,
    actor: Actor = Depends(get_admin_actor),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    report = await services.cleaner.cleanup_payment_data(CleanupFilters(**request.model_dump()))
    return report.to_dict()


@admin_router.get("/sync-runs", response_model=List[SyncRunResponse])
async def sync_runs(
    limit: int = Query(default=20, ge=1, le=100),
    actor: Actor = Depends(get_admin_actor),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    return await services.reconciler.get_recent_sync_runs(limit=limit)


@admin_router.get("/scheduler")
async def scheduler_status(
    actor: Actor = Depends(get_admin_actor),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    return services.scheduler.status()


@admin_router.post("/scheduler/run", summary="Run the scheduled sync now")
async def trigger_scheduler(
    actor: Actor = Depends(get_admin_actor),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    execution = await services.scheduler.run_once("manual")
    return execution.to_dict()


@admin_router.get("/{payment_id}", response_model=PaymentRecordResponse)
async def get_payment(
    payment_id: int,
    actor: Actor = Depends(get_admin_actor),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    return await services.payments.get_payment(payment_id)


@admin_router.post("/{payment_id}/sync", summary="Sync one payment with Tap")
async def sync_payment(
    payment_id: int,
    actor: Actor = Depends(get_admin_actor),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    result = await services.reconciler.sync_single_payment_status(payment_id)
    return result.to_dict()


@admin_router.post("/{payment_id}/cleanup")
async def cleanup_payment(
    payment_id: int,
    dry_run: bool = Query(default=False),
    actor: Actor = Depends(get_admin_actor),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    result = await services.cleaner.cleanup_single_payment(payment_id, dry_run=dry_run)
    return result.to_dict()


@admin_router.patch("/{payment_id}", response_model=PaymentRecordResponse)
async def update_payment(
    payment_id: int,
    request: UpdatePaymentRequest,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    return await services.payments.update_payment_record(
        payment_id,
        actor,
        status=request.status,
        amount_fils=request.amount_fils,
        notes=request.notes,
    )


@admin_router.post("/{payment_id}/refund", response_model=PaymentRecordResponse)
async def refund_payment(
    payment_id: int,
    request: RefundRequest,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    return await services.payments.refund_payment(
        payment_id,
        actor,
        request.amount_fils,
        request.reason,
        to_wallet=request.to_wallet,
    )


# Webhooks


@webhook_router.post("/tap", response_model=WebhookResponse, summary="Tap charge/invoice webhook")
async def tap_webhook(
    request: Request,
    hashstring: Optional[str] = Header(default=None),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    payload = await request.body()
    return await services.webhooks.process(payload, hashstring)


# Monitoring


@monitoring_router.get("/health", summary="Health check")
async def health_check(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.check_all()


@monitoring_router.get("/health/live", summary="Liveness probe")
async def liveness(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get("/health/ready", summary="Readiness probe")
async def readiness(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    result = await services.health.readiness()
    if result["status"] == "unhealthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get("/metrics", summary="Prometheus metrics")
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
