"""
Race condition tests for concurrent wallet and refund requests.

Runs against a file-backed SQLite database with one connection per session,
so concurrent coroutines contend for the database lock the way requests
contend for row locks in Postgres.
"""
import asyncio
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from conftest import gateway_object
from laundry_ops.config import Settings
from laundry_ops.database.connection import (
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from laundry_ops.database.models import PaymentRecord, Wallet, WalletTransaction
from laundry_ops.domain.actors import Actor
from laundry_ops.domain.enums import PaymentMethod, PaymentStatus, TransactionType
from laundry_ops.exceptions import InsufficientBalanceError, ValidationError
from laundry_ops.services import ServiceContainer, build_services


@pytest_asyncio.fixture
async def race_services(
    test_settings: Settings, tmp_path: Any, fake_gateway: Any, fake_redis: Any
) -> AsyncGenerator[ServiceContainer, Any]:
    engine = create_engine_from_settings(
        test_settings.model_copy(
            update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'race.db'}"}
        )
    )
    await init_db(engine)
    container = build_services(
        settings=test_settings,
        session_factory=create_session_factory(engine),
        gateway=fake_gateway,
        redis_client=fake_redis,
    )
    yield container
    await container.notifier.close()
    await engine.dispose()


async def count_rows(services: ServiceContainer, model: Any, *criteria: Any) -> int:
    async with services.session_factory() as db:
        result = await db.execute(select(func.count()).select_from(model).where(*criteria))
        return int(result.scalar_one())


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_wallet_creation(self, race_services: ServiceContainer) -> None:
        """Concurrent creates for one customer all return the same wallet."""
        wallets = await asyncio.gather(
            *(race_services.ledger.create_wallet_for_customer(900) for _ in range(8))
        )

        assert len({wallet.id for wallet in wallets}) == 1
        assert await count_rows(race_services, Wallet, Wallet.customer_id == 900) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_withdrawals_never_overdraw(
        self, race_services: ServiceContainer
    ) -> None:
        """Withdrawals totalling more than the balance: no lost update, no overdraft."""
        ledger = race_services.ledger
        wallet = await ledger.create_wallet_for_customer(901)
        await ledger.process_wallet_transaction(
            wallet.id, TransactionType.DEPOSIT, 1_000, "Cash deposit"
        )

        results = await asyncio.gather(
            *(
                ledger.process_wallet_transaction(
                    wallet.id, TransactionType.WITHDRAWAL, 300, f"Payout {n}"
                )
                for n in range(5)
            ),
            return_exceptions=True,
        )

        succeeded = [r for r in results if isinstance(r, WalletTransaction)]
        rejected = [r for r in results if isinstance(r, InsufficientBalanceError)]
        assert (len(succeeded), len(rejected)) == (3, 2)
        assert (await ledger.get_wallet(901)).balance_fils == 100
        assert sorted(entry.balance_after_fils for entry in succeeded) == [100, 400, 700]
        assert sorted(entry.ledger_sequence for entry in succeeded) == [2, 3, 4]

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_refunds_reach_tap_once(
        self, race_services: ServiceContainer, fake_gateway: Any, admin: Actor
    ) -> None:
        """Two refunds that together exceed the payment: only one is sent to Tap."""
        record = PaymentRecord(
            customer_id=902,
            amount_fils=1_000,
            currency="BHD",
            payment_method=PaymentMethod.TAP_PAY,
            payment_status=PaymentStatus.PAID,
            tap_charge_id="chg_race",
            refund_amount_fils=0,
        )
        async with race_services.session_factory() as db, db.begin():
            db.add(record)

        async def create_refund(**kwargs: Any) -> Any:
            await asyncio.sleep(0.01)
            return gateway_object("re_race", "PENDING")

        fake_gateway.create_refund.side_effect = create_refund

        results = await asyncio.gather(
            race_services.payments.refund_payment(record.id, admin, 600, "Duplicate submit"),
            race_services.payments.refund_payment(record.id, admin, 600, "Duplicate submit"),
            return_exceptions=True,
        )

        refunded = [r for r in results if isinstance(r, PaymentRecord)]
        rejected = [r for r in results if isinstance(r, ValidationError)]
        assert (len(refunded), len(rejected)) == (1, 1)
        assert fake_gateway.create_refund.await_count == 1
        stored = await race_services.payments.get_payment(record.id)
        assert (stored.refund_amount_fils, stored.pending_refund_fils) == (600, 0)
