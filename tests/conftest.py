"""
Pytest configuration and fixtures.

Services run against an in-memory SQLite database (aiosqlite, one shared
connection) with a fake Tap gateway, so no Postgres, Redis or network access
is needed.
"""
import os
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional
from unittest.mock import AsyncMock

os.environ.setdefault("TAP_SECRET_KEY", "sk_test_fake_key_for_testing")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("PAYMENT_SYNC_REQUEST_DELAY_SECONDS", "0")
os.environ.setdefault("PAYMENT_SYNC_ENABLED", "false")
os.environ.setdefault("OUTBOX_ENABLED", "false")
os.environ.setdefault("AUTO_ADVANCE_ON_PAYMENT", "true")
os.environ.setdefault("APP_ENV", "test")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from laundry_ops.config import Settings, get_settings
from laundry_ops.database.connection import (
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from laundry_ops.database.models import Order, PaymentRecord, Wallet
from laundry_ops.domain.actors import Actor
from laundry_ops.domain.enums import (
    OrderPaymentStatus,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    StaffRole,
)
from laundry_ops.integrations.tap_client import GatewayObject, TapClient
from laundry_ops.services import ServiceContainer, build_services


def gateway_object(gateway_id: str, status: str, **extra: Any) -> GatewayObject:
    """A normalized Tap object as the fake gateway returns it."""
    raw = {"id": gateway_id, "status": status, **extra}
    return GatewayObject.from_response(raw)


@pytest.fixture
def test_settings() -> Settings:
    """Settings from the test environment above."""
    return get_settings()


@pytest_asyncio.fixture
async def session_factory(
    test_settings: Settings,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Fresh in-memory database per test."""
    engine = create_engine_from_settings(
        test_settings.model_copy(update={"database_url": "sqlite+aiosqlite://"})
    )
    await init_db(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def fake_gateway() -> AsyncMock:
    """Tap client double; tests set return values per call."""
    gateway = AsyncMock(spec=TapClient)
    gateway.circuit_state = "closed"
    gateway.verify_webhook_signature.side_effect = (
        lambda payload, signature: signature == "valid-signature"
    )
    return gateway


@pytest.fixture
def fake_redis() -> AsyncMock:
    """In-memory stand-in for the Redis dedup keys."""
    keys: dict[str, str] = {}
    redis = AsyncMock()

    async def exists(key: str) -> int:
        return int(key in keys)

    async def setex(key: str, ttl: int, value: str) -> bool:
        keys[key] = value
        return True

    redis.exists.side_effect = exists
    redis.setex.side_effect = setex
    redis.keys_store = keys
    return redis


@pytest_asyncio.fixture
async def services(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    fake_gateway: AsyncMock,
    fake_redis: AsyncMock,
) -> AsyncGenerator[ServiceContainer, Any]:
    """All services wired against the test database and the fake gateway."""
    container = build_services(
        settings=test_settings,
        session_factory=session_factory,
        gateway=fake_gateway,
        redis_client=fake_redis,
    )
    yield container
    container.scheduler.stop()
    container.outbox_publisher.stop()
    await container.notifier.close()


@pytest.fixture
def admin() -> Actor:
    return Actor(staff_id=1, role=StaffRole.SUPER_ADMIN, email="admin@example.com")


@pytest.fixture
def operations_manager() -> Actor:
    return Actor(staff_id=2, role=StaffRole.OPERATION_MANAGER)


@pytest.fixture
def facility_staff() -> Actor:
    return Actor(staff_id=3, role=StaffRole.FACILITY_TEAM)


@pytest.fixture
def driver() -> Actor:
    return Actor(staff_id=40, role=StaffRole.DRIVER)


CreateOrder = Callable[..., Awaitable[Order]]
CreatePayment = Callable[..., Awaitable[PaymentRecord]]


@pytest.fixture
def create_order(session_factory: async_sessionmaker[AsyncSession]) -> CreateOrder:
    """Insert an order directly, bypassing the state machine."""
    counter = {"n": 0}

    async def _create(
        status: OrderStatus = OrderStatus.ORDER_PLACED,
        invoice_total_fils: int = 10_000,
        customer_id: int = 500,
        payment_status: OrderPaymentStatus = OrderPaymentStatus.PENDING,
    ) -> Order:
        counter["n"] += 1
        order = Order(
            order_number=f"ORD-{counter['n']:05d}",
            customer_id=customer_id,
            status=status,
            payment_status=payment_status,
            invoice_total_fils=invoice_total_fils,
            currency="BHD",
        )
        async with session_factory() as db, db.begin():
            db.add(order)
        return order

    return _create


@pytest.fixture
def create_payment(session_factory: async_sessionmaker[AsyncSession]) -> CreatePayment:
    """Insert a payment record directly."""

    async def _create(
        amount_fils: int,
        payment_method: PaymentMethod = PaymentMethod.TAP_PAY,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        order_id: Optional[int] = None,
        customer_id: int = 500,
        **columns: Any,
    ) -> PaymentRecord:
        record = PaymentRecord(
            customer_id=customer_id,
            order_id=order_id,
            amount_fils=amount_fils,
            currency="BHD",
            payment_method=payment_method,
            payment_status=payment_status,
            refund_amount_fils=columns.pop("refund_amount_fils", 0),
            **columns,
        )
        async with session_factory() as db, db.begin():
            db.add(record)
        return record

    return _create


@pytest.fixture
def create_wallet(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Awaitable[Wallet]]:
    async def _create(customer_id: int = 500, is_active: bool = True) -> Wallet:
        wallet = Wallet(
            customer_id=customer_id,
            balance_fils=0,
            currency="BHD",
            is_active=is_active,
            ledger_sequence=0,
        )
        async with session_factory() as db, db.begin():
            db.add(wallet)
        return wallet

    return _create
