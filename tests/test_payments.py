"""
Tests for order payment operations.
"""
from typing import Any, List

import pytest
from sqlalchemy import func, select

from conftest import gateway_object
from laundry_ops.database.models import PaymentRecord
from laundry_ops.domain.actors import Actor
from laundry_ops.domain.enums import (
    OrderPaymentStatus,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    TransactionType,
)
from laundry_ops.exceptions import (
    ConsistencyError,
    InsufficientBalanceError,
    NotPermittedError,
    ValidationError,
)
from laundry_ops.integrations.tap_client import GatewayError, TapCustomer, TapErrorType

CUSTOMER = TapCustomer(first_name="Sara", last_name="Ali", email="sara@example.com")


async def funded_wallet(services: Any, customer_id: int, amount_fils: int) -> int:
    wallet = await services.ledger.create_wallet_for_customer(customer_id)
    await services.ledger.process_wallet_transaction(
        wallet.id, TransactionType.DEPOSIT, amount_fils, "Cash deposit"
    )
    return wallet.id


class TestWalletPayments:
    """Test suite for paying orders from the wallet."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_full_wallet_payment_advances_order(
        self, services: Any, create_order: Any
    ) -> None:
        """Paying the outstanding amount debits the wallet, marks the order PAID and advances it."""
        order = await create_order(status=OrderStatus.PROCESSING_COMPLETED, invoice_total_fils=10_000)
        await funded_wallet(services, 500, 15_000)

        record = await services.payments.pay_with_wallet(order.id, actor_customer_id=500)

        assert record.payment_method is PaymentMethod.WALLET
        assert record.payment_status is PaymentStatus.PAID
        assert record.amount_fils == 10_000
        assert record.wallet_transaction_id is not None
        assert (await services.ledger.get_wallet(500)).balance_fils == 5_000
        paid = await services.tracker.get_order(order.id)
        assert paid.payment_status is OrderPaymentStatus.PAID
        assert paid.status is OrderStatus.READY_FOR_DELIVERY

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_partial_wallet_payment(self, services: Any, create_order: Any) -> None:
        """A partial payment leaves the order PARTIAL and in place."""
        order = await create_order(status=OrderStatus.PROCESSING_COMPLETED, invoice_total_fils=10_000)
        await funded_wallet(services, 500, 15_000)

        await services.payments.pay_with_wallet(order.id, actor_customer_id=500, amount_fils=4_000)

        summary = await services.payments.get_payment_summary(order.id)
        assert summary.status is OrderPaymentStatus.PARTIAL
        assert summary.outstanding_fils == 6_000
        assert (await services.tracker.get_order(order.id)).status is OrderStatus.PROCESSING_COMPLETED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_insufficient_balance_writes_nothing(
        self, services: Any, create_order: Any
    ) -> None:
        """When the wallet cannot cover the payment, no payment record survives."""
        order = await create_order(invoice_total_fils=10_000)
        await funded_wallet(services, 500, 1_000)

        with pytest.raises(InsufficientBalanceError):
            await services.payments.pay_with_wallet(order.id, actor_customer_id=500)

        async with services.session_factory() as db:
            records = (await db.execute(select(func.count()).select_from(PaymentRecord))).scalar_one()
        assert records == 0
        assert (await services.ledger.get_wallet(500)).balance_fils == 1_000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_other_customers_order(self, services: Any, create_order: Any) -> None:
        order = await create_order(customer_id=500)
        await funded_wallet(services, 501, 50_000)

        with pytest.raises(NotPermittedError):
            await services.payments.pay_with_wallet(order.id, actor_customer_id=501)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_amount_above_outstanding(self, services: Any, create_order: Any) -> None:
        order = await create_order(invoice_total_fils=1_000)
        await funded_wallet(services, 500, 5_000)

        with pytest.raises(ValidationError, match="outstanding"):
            await services.payments.pay_with_wallet(order.id, actor_customer_id=500, amount_fils=1_001)


class TestTopUps:
    """Test suite for card top-ups of the wallet."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_initiated_top_up_stays_pending(self, services: Any, fake_gateway: Any) -> None:
        fake_gateway.create_charge.return_value = gateway_object("chg_10", "INITIATED")

        record = await services.payments.start_wallet_top_up(500, 2_000, "tok_visa", CUSTOMER)

        assert record.payment_status is PaymentStatus.PENDING
        assert record.tap_charge_id == "chg_10"
        assert record.tap_reference.startswith("TOPUP-500-")
        assert (await services.ledger.get_wallet(500)).balance_fils == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_captured_top_up_credits_immediately(
        self, services: Any, fake_gateway: Any
    ) -> None:
        fake_gateway.create_charge.return_value = gateway_object("chg_11", "CAPTURED")

        record = await services.payments.start_wallet_top_up(500, 2_000, "tok_visa", CUSTOMER)

        assert record.payment_status is PaymentStatus.PAID
        assert (await services.ledger.get_wallet(500)).balance_fils == 2_000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_positive_top_up(self, services: Any, fake_gateway: Any) -> None:
        with pytest.raises(ValidationError):
            await services.payments.start_wallet_top_up(500, 0, "tok_visa", CUSTOMER)

        fake_gateway.create_charge.assert_not_called()


class TestInvoices:
    """Test suite for Tap invoices."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_invoice_for_outstanding_amount(
        self, services: Any, fake_gateway: Any, create_order: Any, facility_staff: Actor
    ) -> None:
        order = await create_order(invoice_total_fils=7_500)
        fake_gateway.create_invoice.return_value = gateway_object(
            "inv_9", "CREATED", url="https://tap.link/inv_9"
        )

        record = await services.payments.create_order_invoice(order.id, facility_staff, CUSTOMER)

        kwargs = fake_gateway.create_invoice.await_args.kwargs
        assert kwargs["amount_fils"] == 7_500
        assert kwargs["order_reference"] == order.order_number
        assert record.payment_method is PaymentMethod.TAP_INVOICE
        assert record.payment_status is PaymentStatus.PENDING
        assert record.tap_reference == "inv_9"
        assert (await services.tracker.get_order(order.id)).payment_method is PaymentMethod.TAP_INVOICE

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_driver_cannot_invoice(
        self, services: Any, fake_gateway: Any, create_order: Any, driver: Actor
    ) -> None:
        order = await create_order()

        with pytest.raises(NotPermittedError):
            await services.payments.create_order_invoice(order.id, driver, CUSTOMER)

        fake_gateway.create_invoice.assert_not_called()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_invoice(
        self, services: Any, fake_gateway: Any, create_order: Any, create_payment: Any, admin: Actor
    ) -> None:
        """Cancelling a pending invoice fails its record and the order's payment status."""
        order = await create_order(invoice_total_fils=7_500)
        record = await create_payment(
            7_500, payment_method=PaymentMethod.TAP_INVOICE, order_id=order.id, tap_reference="inv_3"
        )
        fake_gateway.cancel_invoice.return_value = gateway_object("inv_3", "CANCELLED")

        cancelled = await services.payments.cancel_order_invoice(record.id, admin)

        fake_gateway.cancel_invoice.assert_awaited_once_with("inv_3")
        assert cancelled.payment_status is PaymentStatus.FAILED
        assert cancelled.meta["updates"][0]["notes"] == "Invoice cancelled"
        assert (await services.tracker.get_order(order.id)).payment_status is OrderPaymentStatus.FAILED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_paid_invoice_rejected(
        self, services: Any, fake_gateway: Any, create_payment: Any, admin: Actor
    ) -> None:
        record = await create_payment(
            1_000,
            payment_method=PaymentMethod.TAP_INVOICE,
            payment_status=PaymentStatus.PAID,
            tap_reference="inv_4",
        )

        with pytest.raises(ConsistencyError):
            await services.payments.cancel_order_invoice(record.id, admin)

        fake_gateway.cancel_invoice.assert_not_called()


class TestAdminEditsAndRefunds:
    """Test suite for admin payment corrections and refunds."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_wallet_payment_to_wallet(
        self, services: Any, create_order: Any, admin: Actor
    ) -> None:
        order = await create_order(invoice_total_fils=10_000)
        await funded_wallet(services, 500, 10_000)
        payment = await services.payments.pay_with_wallet(order.id, actor_customer_id=500)

        refunded = await services.payments.refund_payment(payment.id, admin, 2_000, "Damaged item")

        assert refunded.payment_status is PaymentStatus.PARTIAL_REFUND
        assert refunded.refund_amount_fils == 2_000
        assert (await services.ledger.get_wallet(500)).balance_fils == 2_000
        assert (await services.tracker.get_order(order.id)).payment_status is OrderPaymentStatus.PARTIAL

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_gateway_payment_through_tap(
        self, services: Any, fake_gateway: Any, create_payment: Any, admin: Actor
    ) -> None:
        record = await create_payment(
            5_000, payment_status=PaymentStatus.PAID, tap_charge_id="chg_20"
        )
        fake_gateway.create_refund.return_value = gateway_object("re_1", "REFUNDED")

        refunded = await services.payments.refund_payment(record.id, admin, 5_000, "Order cancelled")

        assert fake_gateway.create_refund.await_args.kwargs["charge_id"] == "chg_20"
        assert refunded.payment_status is PaymentStatus.REFUNDED
        assert refunded.meta["updates"][-1]["changes"]["gateway_refund_id"] == "re_1"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_above_available(
        self, services: Any, fake_gateway: Any, create_payment: Any, admin: Actor
    ) -> None:
        record = await create_payment(
            1_000, payment_status=PaymentStatus.PAID, tap_charge_id="chg_21", refund_amount_fils=600
        )

        with pytest.raises(ValidationError, match="refundable"):
            await services.payments.refund_payment(record.id, admin, 500, "Too much")

        fake_gateway.create_refund.assert_not_called()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_in_flight_blocks_a_second_refund(
        self, services: Any, fake_gateway: Any, create_payment: Any, admin: Actor
    ) -> None:
        """While Tap processes a refund, its amount is no longer refundable."""
        record = await create_payment(
            1_000, payment_status=PaymentStatus.PAID, tap_charge_id="chg_22"
        )
        overlapping: List[str] = []

        async def create_refund(**kwargs: Any) -> Any:
            in_flight = await services.payments.get_payment(record.id)
            assert in_flight.pending_refund_fils == 600
            with pytest.raises(ValidationError, match="refundable"):
                await services.payments.refund_payment(record.id, admin, 600, "Second click")
            overlapping.append(kwargs["reference"])
            return gateway_object("re_2", "PENDING")

        fake_gateway.create_refund.side_effect = create_refund

        refunded = await services.payments.refund_payment(record.id, admin, 600, "First click")

        assert fake_gateway.create_refund.await_count == 1
        assert len(overlapping) == 1
        assert refunded.refund_amount_fils == 600
        assert refunded.pending_refund_fils == 0
        assert refunded.payment_status is PaymentStatus.PARTIAL_REFUND

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_gateway_refund_releases_reservation(
        self, services: Any, fake_gateway: Any, create_payment: Any, admin: Actor
    ) -> None:
        record = await create_payment(
            1_000, payment_status=PaymentStatus.PAID, tap_charge_id="chg_23"
        )
        fake_gateway.create_refund.side_effect = GatewayError(
            "Refund amount exceeds charge", TapErrorType.PERMANENT, status_code=400
        )

        with pytest.raises(GatewayError):
            await services.payments.refund_payment(record.id, admin, 1_000, "Order cancelled")

        unchanged = await services.payments.get_payment(record.id)
        assert unchanged.pending_refund_fils == 0
        assert unchanged.refund_amount_fils == 0
        assert unchanged.payment_status is PaymentStatus.PAID

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_requires_admin(
        self, services: Any, create_payment: Any, facility_staff: Actor
    ) -> None:
        record = await create_payment(1_000, payment_status=PaymentStatus.PAID, tap_charge_id="c")

        with pytest.raises(NotPermittedError):
            await services.payments.refund_payment(record.id, facility_staff, 100, "Because")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_settled_record_cannot_be_edited(
        self, services: Any, create_payment: Any, admin: Actor
    ) -> None:
        record = await create_payment(1_000, payment_status=PaymentStatus.PAID, tap_charge_id="c")

        with pytest.raises(ConsistencyError):
            await services.payments.update_payment_record(
                record.id, admin, status=PaymentStatus.FAILED
            )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_admin_marks_pending_payment_paid(
        self, services: Any, create_order: Any, create_payment: Any, admin: Actor
    ) -> None:
        """An admin confirmation settles the record and recomputes the order."""
        order = await create_order(invoice_total_fils=3_000)
        record = await create_payment(3_000, payment_method=PaymentMethod.CASH, order_id=order.id)

        updated = await services.payments.update_payment_record(
            record.id, admin, status=PaymentStatus.PAID, notes="Cash received by driver"
        )

        assert updated.payment_status is PaymentStatus.PAID
        assert updated.meta["updates"][0]["changes"]["payment_status"] == {
            "from": "PENDING",
            "to": "PAID",
        }
        assert (await services.tracker.get_order(order.id)).payment_status is OrderPaymentStatus.PAID


class TestRecalculation:
    """Test suite for manual payment status recalculation."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_recalculate_repairs_projection(
        self, services: Any, create_order: Any, create_payment: Any
    ) -> None:
        order = await create_order(status=OrderStatus.PROCESSING_COMPLETED, invoice_total_fils=2_000)
        await create_payment(
            2_000, payment_method=PaymentMethod.CASH, payment_status=PaymentStatus.PAID, order_id=order.id
        )

        summary = await services.payments.recalculate_order_payment_status(order.id)

        assert summary.status is OrderPaymentStatus.PAID
        assert (await services.tracker.get_order(order.id)).status is OrderStatus.READY_FOR_DELIVERY

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_auto_advance_can_be_disabled(
        self, services: Any, test_settings: Any, create_order: Any, create_payment: Any
    ) -> None:
        services.tracker.settings = test_settings.model_copy(update={"auto_advance_on_payment": False})
        order = await create_order(status=OrderStatus.PROCESSING_COMPLETED, invoice_total_fils=2_000)
        await create_payment(
            2_000, payment_method=PaymentMethod.CASH, payment_status=PaymentStatus.PAID, order_id=order.id
        )

        await services.payments.recalculate_order_payment_status(order.id)

        reloaded = await services.tracker.get_order(order.id)
        assert reloaded.payment_status is OrderPaymentStatus.PAID
        assert reloaded.status is OrderStatus.PROCESSING_COMPLETED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_recalculate_is_idempotent(
        self, services: Any, create_order: Any, create_payment: Any
    ) -> None:
        """A second recalculation with nothing new writes no history."""
        order = await create_order(invoice_total_fils=2_000)
        await create_payment(
            1_000, payment_method=PaymentMethod.CASH, payment_status=PaymentStatus.PAID, order_id=order.id
        )

        await services.payments.recalculate_order_payment_status(order.id)
        await services.payments.recalculate_order_payment_status(order.id)

        history = await services.tracker.get_order_history(order.id)
        assert len(history) == 1
