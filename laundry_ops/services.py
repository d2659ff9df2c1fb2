"""
Composition root.

Builds every service once with shared collaborators (one session factory,
one Tap client, one circuit breaker) so the API, the workers and the tests
wire things the same way.
"""
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from laundry_ops.config import Settings, get_settings
from laundry_ops.core.order_tracking import OrderTracker
from laundry_ops.core.outbox import OutboxPublisher
from laundry_ops.core.payment_cleanup import PaymentDataCleaner
from laundry_ops.core.payments import OrderPaymentService
from laundry_ops.core.reconciliation import PaymentReconciler
from laundry_ops.core.wallet import WalletLedger
from laundry_ops.database.connection import get_session_factory
from laundry_ops.integrations.notifier import Notifier
from laundry_ops.integrations.tap_client import TapClient
from laundry_ops.integrations.webhook_handler import TapWebhookHandler
from laundry_ops.monitoring.health import HealthCheck
from laundry_ops.workers.payment_sync_worker import PaymentSyncScheduler


@dataclass
class ServiceContainer:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    gateway: TapClient
    tracker: OrderTracker
    ledger: WalletLedger
    payments: OrderPaymentService
    reconciler: PaymentReconciler
    cleaner: PaymentDataCleaner
    webhooks: TapWebhookHandler
    notifier: Notifier
    outbox_publisher: OutboxPublisher
    scheduler: PaymentSyncScheduler
    health: HealthCheck

    async def aclose(self) -> None:
        """Stop background loops and close network clients."""
        self.scheduler.stop()
        self.outbox_publisher.stop()
        await self.webhooks.close()
        await self.notifier.close()
        await self.gateway.close()


def build_services(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    gateway: Optional[TapClient] = None,
    notifier: Optional[Notifier] = None,
    redis_client: Optional[aioredis.Redis] = None,
) -> ServiceContainer:
    """
    Wire all services.

    Args:
        settings: Settings (defaults to environment)
        session_factory: Session factory (defaults to the app's engine)
        gateway: Tap client (tests pass a fake)
        notifier: Notification sender
        redis_client: Redis client for webhook deduplication
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    gateway = gateway or TapClient(settings=settings)
    notifier = notifier or Notifier(settings=settings)

    tracker = OrderTracker(session_factory, settings)
    ledger = WalletLedger(session_factory, settings)
    payments = OrderPaymentService(
        session_factory=session_factory,
        gateway=gateway,
        tracker=tracker,
        ledger=ledger,
        settings=settings,
    )
    reconciler = PaymentReconciler(
        session_factory=session_factory,
        gateway=gateway,
        payments=payments,
        ledger=ledger,
        settings=settings,
    )
    payments.reconciler = reconciler

    return ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        gateway=gateway,
        tracker=tracker,
        ledger=ledger,
        payments=payments,
        reconciler=reconciler,
        cleaner=PaymentDataCleaner(session_factory),
        webhooks=TapWebhookHandler(reconciler, redis_client=redis_client),
        notifier=notifier,
        outbox_publisher=OutboxPublisher(
            session_factory=session_factory,
            publisher_func=notifier.notify,
            batch_size=settings.outbox_batch_size,
            poll_interval_seconds=settings.outbox_poll_interval_seconds,
        ),
        scheduler=PaymentSyncScheduler(
            reconciler,
            interval_seconds=settings.payment_sync_interval_seconds,
            lookback_hours=settings.payment_sync_lookback_hours,
            batch_limit=settings.payment_sync_batch_limit,
            history_size=settings.payment_sync_history_size,
        ),
        health=HealthCheck(session_factory, circuit_state=lambda: gateway.circuit_state),
    )
