"""
Tests for payment reconciliation against Tap.
"""
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest
from sqlalchemy import func, select

from conftest import gateway_object
from laundry_ops.core.reconciliation import SyncFilters, correlation_id, map_gateway_status
from laundry_ops.database.models import (
    OrderHistory,
    OutboxEvent,
    PaymentRecord,
    WalletTransaction,
)
from laundry_ops.domain.enums import (
    HistoryAction,
    OrderPaymentStatus,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    TransactionStatus,
)
from laundry_ops.exceptions import NotFoundError, ValidationError
from laundry_ops.integrations.tap_client import GatewayError, TapClient, TapErrorType
from laundry_ops.services import build_services


async def count(session_factory: Any, model: Any) -> int:
    async with session_factory() as db:
        return int((await db.execute(select(func.count()).select_from(model))).scalar_one())


async def pending_top_up(services: Any, customer_id: int, amount_fils: int) -> int:
    """Open a pending top-up credit and return its wallet transaction id."""
    wallet = await services.ledger.create_wallet_for_customer(customer_id)
    async with services.session_factory() as db, db.begin():
        locked = await services.ledger.lock_wallet(db, wallet.id)
        pending = await services.ledger.open_pending_credit(db, locked, amount_fils, "Top-up")
    return pending.id


class TestCorrelation:
    """Test suite for choosing the gateway id to poll."""

    @pytest.mark.unit
    def test_tap_pay_prefers_charge_id(self) -> None:
        record = PaymentRecord(
            payment_method=PaymentMethod.TAP_PAY,
            tap_charge_id="chg_1",
            tap_transaction_id="chg_old",
            tap_reference="TOPUP-1",
        )

        assert correlation_id(record) == "chg_1"

    @pytest.mark.unit
    def test_tap_pay_falls_back_to_reference(self) -> None:
        record = PaymentRecord(payment_method=PaymentMethod.TAP_PAY, tap_reference="ch_1")

        assert correlation_id(record) == "ch_1"

    @pytest.mark.unit
    def test_invoice_id_from_metadata(self) -> None:
        """Invoices without tap_reference use the invoice id kept in metadata."""
        record = PaymentRecord(
            payment_method=PaymentMethod.TAP_INVOICE,
            meta={"tapInvoice": {"id": "inv_77"}},
        )

        assert correlation_id(record) == "inv_77"

    @pytest.mark.unit
    def test_status_vocabularies(self) -> None:
        """Charges and invoices use different gateway vocabularies."""
        assert map_gateway_status(PaymentMethod.TAP_PAY, "CAPTURED") is PaymentStatus.PAID
        assert map_gateway_status(PaymentMethod.TAP_PAY, "DECLINED") is PaymentStatus.FAILED
        assert map_gateway_status(PaymentMethod.TAP_PAY, "INITIATED") is PaymentStatus.PENDING
        assert map_gateway_status(PaymentMethod.TAP_INVOICE, "PAID") is PaymentStatus.PAID
        assert map_gateway_status(PaymentMethod.TAP_INVOICE, "EXPIRED") is PaymentStatus.FAILED
        assert map_gateway_status(PaymentMethod.TAP_INVOICE, "CREATED") is PaymentStatus.PENDING


class TestSyncSinglePayment:
    """Test suite for PaymentReconciler.sync_single_payment_status."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_captured_charge_settles_order(
        self, services: Any, fake_gateway: Any, create_order: Any, create_payment: Any
    ) -> None:
        """A captured charge marks the record PAID, the order PAID and auto-advances it."""
        order = await create_order(status=OrderStatus.PROCESSING_COMPLETED, invoice_total_fils=5_000)
        record = await create_payment(5_000, order_id=order.id, tap_reference="ch_1")
        fake_gateway.get_charge.return_value = gateway_object("ch_1", "CAPTURED")

        result = await services.reconciler.sync_single_payment_status(record.id)

        fake_gateway.get_charge.assert_awaited_once_with("ch_1")
        assert result.updated is True
        assert result.local_status == "PENDING"
        assert result.mapped_status == "PAID"
        stored = await services.payments.get_payment(record.id)
        assert stored.payment_status is PaymentStatus.PAID
        assert stored.processed_at is not None
        assert stored.meta["sync_events"][0]["source"] == "manual"
        settled = await services.tracker.get_order(order.id)
        assert settled.payment_status is OrderPaymentStatus.PAID
        assert settled.status is OrderStatus.READY_FOR_DELIVERY
        actions = {h.action for h in await services.tracker.get_order_history(order.id)}
        assert {
            HistoryAction.PAYMENT_COMPLETED,
            HistoryAction.PAYMENT_STATUS_RECALCULATED,
            HistoryAction.STATUS_CHANGE,
        } <= actions

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_second_sync_changes_nothing(
        self, services: Any, fake_gateway: Any, create_order: Any, create_payment: Any
    ) -> None:
        """Syncing again with the same gateway answer writes no new rows."""
        order = await create_order(status=OrderStatus.PROCESSING_COMPLETED, invoice_total_fils=5_000)
        record = await create_payment(5_000, order_id=order.id, tap_reference="ch_1")
        fake_gateway.get_charge.return_value = gateway_object("ch_1", "CAPTURED")
        await services.reconciler.sync_single_payment_status(record.id)
        history_rows = await count(services.session_factory, OrderHistory)
        outbox_rows = await count(services.session_factory, OutboxEvent)

        again = await services.reconciler.sync_single_payment_status(record.id)

        assert again.status_match is True
        assert again.updated is False
        assert await count(services.session_factory, OrderHistory) == history_rows
        assert await count(services.session_factory, OutboxEvent) == outbox_rows

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_captured_top_up_credits_wallet_once(
        self, services: Any, fake_gateway: Any, create_payment: Any
    ) -> None:
        """A captured top-up completes the pending credit exactly once."""
        pending_id = await pending_top_up(services, customer_id=500, amount_fils=3_000)
        record = await create_payment(
            3_000, tap_charge_id="chg_2", wallet_transaction_id=pending_id
        )
        fake_gateway.get_charge.return_value = gateway_object("chg_2", "CAPTURED")

        await services.reconciler.sync_single_payment_status(record.id)
        await services.reconciler.sync_single_payment_status(record.id)

        wallet = await services.ledger.get_wallet(500)
        assert wallet.balance_fils == 3_000
        async with services.session_factory() as db:
            entry = await db.get(WalletTransaction, pending_id)
        assert entry.status is TransactionStatus.COMPLETED
        assert entry.balance_after_fils == 3_000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_declined_top_up_fails_pending_credit(
        self, services: Any, fake_gateway: Any, create_payment: Any
    ) -> None:
        pending_id = await pending_top_up(services, customer_id=500, amount_fils=3_000)
        record = await create_payment(
            3_000, tap_charge_id="chg_3", wallet_transaction_id=pending_id
        )
        fake_gateway.get_charge.return_value = gateway_object("chg_3", "DECLINED")

        result = await services.reconciler.sync_single_payment_status(record.id)

        assert result.updated is True
        stored = await services.payments.get_payment(record.id)
        assert stored.payment_status is PaymentStatus.FAILED
        assert stored.failure_reason == "Tap reported DECLINED"
        assert (await services.ledger.get_wallet(500)).balance_fils == 0
        async with services.session_factory() as db:
            entry = await db.get(WalletTransaction, pending_id)
        assert entry.status is TransactionStatus.FAILED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_settled_record_is_never_downgraded(
        self, services: Any, fake_gateway: Any, create_payment: Any
    ) -> None:
        """A PAID record stays PAID even if Tap now reports a failure."""
        record = await create_payment(
            2_000, payment_status=PaymentStatus.PAID, tap_charge_id="chg_4"
        )
        fake_gateway.get_charge.return_value = gateway_object("chg_4", "VOID")

        result = await services.reconciler.sync_single_payment_status(record.id)

        assert result.status_match is False
        assert result.updated is False
        assert (await services.payments.get_payment(record.id)).payment_status is PaymentStatus.PAID

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pending_gateway_answer_is_a_match(
        self, services: Any, fake_gateway: Any, create_payment: Any
    ) -> None:
        record = await create_payment(2_000, tap_charge_id="chg_5")
        fake_gateway.get_charge.return_value = gateway_object("chg_5", "INITIATED")

        result = await services.reconciler.sync_single_payment_status(record.id)

        assert result.status_match is True
        assert result.updated is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invoice_uses_invoice_lookup(
        self, services: Any, fake_gateway: Any, create_order: Any, create_payment: Any
    ) -> None:
        """Invoices are looked up by invoice id and mapped with the invoice vocabulary."""
        order = await create_order(invoice_total_fils=7_000)
        record = await create_payment(
            7_000,
            payment_method=PaymentMethod.TAP_INVOICE,
            order_id=order.id,
            tap_reference="inv_1",
        )
        fake_gateway.get_invoice.return_value = gateway_object("inv_1", "PAID")

        result = await services.reconciler.sync_single_payment_status(record.id)

        fake_gateway.get_invoice.assert_awaited_once_with("inv_1")
        fake_gateway.get_charge.assert_not_called()
        assert result.updated is True
        assert (await services.tracker.get_order(order.id)).payment_status is OrderPaymentStatus.PAID

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_wallet_payment_cannot_sync(self, services: Any, create_payment: Any) -> None:
        record = await create_payment(1_000, payment_method=PaymentMethod.WALLET)

        with pytest.raises(ValidationError, match="only Tap payments sync"):
            await services.reconciler.sync_single_payment_status(record.id)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_correlation_id(self, services: Any, create_payment: Any) -> None:
        record = await create_payment(1_000)

        with pytest.raises(ValidationError, match="no Tap correlation id"):
            await services.reconciler.sync_single_payment_status(record.id)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_payment(self, services: Any) -> None:
        with pytest.raises(NotFoundError):
            await services.reconciler.sync_single_payment_status(404)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_source_rejected(self, services: Any) -> None:
        with pytest.raises(ValidationError, match="Unknown sync source"):
            await services.reconciler.apply_gateway_status(1, "CAPTURED", PaymentStatus.PAID, source="cron")


class TestBatchSync:
    """Test suite for PaymentReconciler.sync_payment_statuses."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_batch(
        self, services: Any, fake_gateway: Any, create_payment: Any
    ) -> None:
        """A gateway error on one record is reported and the others still sync."""
        first = await create_payment(1_000, tap_charge_id="ch_a")
        second = await create_payment(1_000, tap_charge_id="ch_b")
        third = await create_payment(1_000, tap_charge_id="ch_c")

        async def get_charge(charge_id: str) -> Any:
            if charge_id == "ch_b":
                raise GatewayError("Tap API timeout during get_charge", TapErrorType.TRANSIENT)
            return gateway_object(charge_id, "CAPTURED")

        fake_gateway.get_charge.side_effect = get_charge

        report = await services.reconciler.sync_payment_statuses()

        assert report.total_checked == 3
        assert report.updated == 2
        assert report.status_mismatches == 2
        assert len(report.errors) == 1
        assert report.errors[0].payment_id == second.id
        assert report.errors[0].error_type == "GatewayError"
        for record in (first, third):
            assert (await services.payments.get_payment(record.id)).payment_status is PaymentStatus.PAID
        assert (await services.payments.get_payment(second.id)).payment_status is PaymentStatus.PENDING

        [run] = await services.reconciler.get_recent_sync_runs()
        assert run.id == report.run_id
        assert run.status == "completed"
        assert (run.total_checked, run.updated, run.error_count) == (3, 2, 1)
        assert run.details["recommendations"] == report.recommendations

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_filters(self, services: Any, fake_gateway: Any, create_payment: Any) -> None:
        """Only gateway records matching the status and creation filters are checked."""
        await create_payment(1_000, tap_charge_id="ch_pending")
        await create_payment(1_000, payment_status=PaymentStatus.PAID, tap_charge_id="ch_paid")
        await create_payment(1_000, payment_method=PaymentMethod.WALLET)
        fake_gateway.get_charge.return_value = gateway_object("ch_pending", "INITIATED")

        report = await services.reconciler.sync_payment_statuses(
            SyncFilters(
                payment_status=PaymentStatus.PENDING,
                created_after=datetime.now(timezone.utc) - timedelta(hours=1),
            )
        )

        assert report.total_checked == 1
        assert report.updated == 0
        assert report.recommendations == ["All checked payments match Tap"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_gateway_method_filter(self, services: Any) -> None:
        with pytest.raises(ValidationError):
            await services.reconciler.sync_payment_statuses(
                SyncFilters(payment_method=PaymentMethod.CASH)
            )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unexpected_error_marks_run_failed(
        self, services: Any, create_payment: Any, mocker: Any
    ) -> None:
        """Errors outside the domain abort the batch and the run is stored as failed."""
        await create_payment(1_000, tap_charge_id="ch_x")
        mocker.patch.object(
            services.reconciler,
            "sync_single_payment_status",
            side_effect=RuntimeError("database went away"),
        )

        with pytest.raises(RuntimeError):
            await services.reconciler.sync_payment_statuses()

        [run] = await services.reconciler.get_recent_sync_runs()
        assert run.status == "failed"
        assert run.completed_at is not None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_gateway_body_is_a_record_error(
        self,
        test_settings: Any,
        session_factory: Any,
        fake_redis: Any,
        create_payment: Any,
    ) -> None:
        """A 200 body that cannot be parsed fails its own record, not the batch."""
        first = await create_payment(1_000, tap_charge_id="ch_a")
        second = await create_payment(1_000, tap_charge_id="ch_b")
        third = await create_payment(1_000, tap_charge_id="ch_c")

        def handler(request: httpx.Request) -> httpx.Response:
            charge_id = request.url.path.rsplit("/", 1)[-1]
            if charge_id == "ch_b":
                return httpx.Response(200, json={"id": "ch_b", "status": "CAPTURED", "amount": "n/a"})
            return httpx.Response(
                200, json={"id": charge_id, "status": "CAPTURED", "amount": 1, "currency": "BHD"}
            )

        gateway = TapClient(
            settings=test_settings,
            http_client=httpx.AsyncClient(
                transport=httpx.MockTransport(handler), base_url="https://api.tap.test/v2"
            ),
            retry_backoff=0,
        )
        services = build_services(
            settings=test_settings,
            session_factory=session_factory,
            gateway=gateway,
            redis_client=fake_redis,
        )

        report = await services.reconciler.sync_payment_statuses()
        await gateway.close()

        assert report.total_checked == 3
        assert report.updated == 2
        [error] = report.errors
        assert error.payment_id == second.id
        assert error.error_type == "GatewayError"
        assert "malformed" in error.message
        statuses = [
            (await services.payments.get_payment(record.id)).payment_status
            for record in (first, second, third)
        ]
        assert statuses == [PaymentStatus.PAID, PaymentStatus.PENDING, PaymentStatus.PAID]
