"""
Payment sync background worker.

Polls Tap for pending gateway payments on a fixed interval. Each run is a
batch sync over PENDING records created within the lookback window, so a
payment whose webhook never arrived is settled within one interval.
"""
import asyncio
import signal
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, Optional

import structlog

from laundry_ops.core.reconciliation import PaymentReconciler, SyncFilters
from laundry_ops.domain.enums import PaymentStatus
from laundry_ops.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


@dataclass
class JobExecution:
    job_id: str
    trigger: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    success: bool = False
    summary: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "trigger": self.trigger,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "success": self.success,
            "summary": dict(self.summary),
            "error": self.error,
        }


class PaymentSyncScheduler:
    """
    Runs batch payment syncs on an interval.

    Owned by whoever builds it (the API lifespan or the CLI); there is no
    module-level instance.
    """

    def __init__(
        self,
        reconciler: PaymentReconciler,
        interval_seconds: float = 300.0,
        lookback_hours: int = 24,
        batch_limit: int = 100,
        history_size: int = 100,
    ) -> None:
        """
        Initialize scheduler.

        Args:
            reconciler: Reconciler running the batch sync
            interval_seconds: Seconds between runs
            lookback_hours: Only PENDING payments newer than this are polled
            batch_limit: Max records per run
            history_size: Executions kept in memory
        """
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds
        self.lookback_hours = lookback_hours
        self.batch_limit = batch_limit
        self.history: Deque[JobExecution] = deque(maxlen=history_size)
        self.total_executions = 0
        self.next_run_at: Optional[datetime] = None
        self._running = False
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_once(self, trigger: str = "scheduled") -> JobExecution:
        """
        Run one batch sync and record it.

        Failures are captured in the returned JobExecution, not raised.
        """
        execution = JobExecution(
            job_id=uuid.uuid4().hex[:12],
            trigger=trigger,
            started_at=datetime.now(timezone.utc),
        )
        structlog.contextvars.bind_contextvars(job_id=execution.job_id)
        filters = SyncFilters(
            payment_status=PaymentStatus.PENDING,
            limit=self.batch_limit,
            created_after=execution.started_at - timedelta(hours=self.lookback_hours),
        )

        try:
            report = await self.reconciler.sync_payment_statuses(filters, trigger=trigger)
            execution.success = True
            execution.summary = report.summary()
        except Exception as e:
            execution.error = str(e)
            logger.error("payment_sync_job_failed", error=str(e), trigger=trigger)
        finally:
            execution.finished_at = datetime.now(timezone.utc)
            self.history.append(execution)
            self.total_executions += 1
            structlog.contextvars.unbind_contextvars("job_id")

        return execution

    async def start(self) -> None:
        """Run until stop() is called, syncing once per interval."""
        self._running = True
        self._stop_event.clear()
        logger.info(
            "payment_sync_scheduler_started",
            interval_seconds=self.interval_seconds,
            lookback_hours=self.lookback_hours,
        )
        try:
            while self._running:
                await self.run_once("scheduled")
                self.next_run_at = datetime.now(timezone.utc) + timedelta(
                    seconds=self.interval_seconds
                )
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            self.next_run_at = None
            logger.info("payment_sync_scheduler_stopped")

    def stop(self) -> None:
        self._running = False
        self._stop_event.set()
        logger.info("payment_sync_scheduler_stop_requested")

    def status(self) -> Dict[str, Any]:
        last = self.history[-1] if self.history else None
        return {
            "is_running": self._running,
            "interval_seconds": self.interval_seconds,
            "lookback_hours": self.lookback_hours,
            "total_executions": self.total_executions,
            "last_execution": last.to_dict() if last else None,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
        }


async def start_payment_sync_worker(interval_seconds: Optional[float] = None, once: bool = False) -> None:
    """
    Start the payment sync worker.

    Args:
        interval_seconds: Override the configured interval
        once: Run a single sync and exit
    """
    from laundry_ops.services import build_services

    setup_logging()
    services = build_services()
    scheduler = services.scheduler
    if interval_seconds is not None:
        scheduler.interval_seconds = interval_seconds

    logger.info("payment_sync_worker_starting", interval_seconds=scheduler.interval_seconds)

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("payment_sync_worker_shutdown_signal_received", signal=sig)
        scheduler.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        if once:
            execution = await scheduler.run_once("manual")
            logger.info("payment_sync_worker_run_finished", **execution.to_dict())
        else:
            await scheduler.start()
    except Exception as e:
        logger.error("payment_sync_worker_error", error=str(e))
        raise
    finally:
        await services.aclose()
        logger.info("payment_sync_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Tap payment status sync worker")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between syncs")
    parser.add_argument("--once", action="store_true", help="Run a single sync and exit")
    args = parser.parse_args()

    asyncio.run(start_payment_sync_worker(interval_seconds=args.interval, once=args.once))


if __name__ == "__main__":
    main()
