"""Background workers for payment sync and notification delivery."""
from .outbox_worker import start_outbox_worker
from .payment_sync_worker import JobExecution, PaymentSyncScheduler, start_payment_sync_worker

__all__ = ["JobExecution", "PaymentSyncScheduler", "start_outbox_worker", "start_payment_sync_worker"]
