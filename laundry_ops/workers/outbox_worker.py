"""
Outbox publisher background worker.

Continuously polls the outbox table and delivers notification events.
"""
import asyncio
import signal
from typing import Any

import structlog

from laundry_ops.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_outbox_worker() -> None:
    """
    Start the outbox publisher worker.

    Runs continuously until stopped.
    """
    from laundry_ops.services import build_services

    setup_logging()
    services = build_services()
    publisher = services.outbox_publisher

    logger.info("outbox_worker_starting")

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_worker_shutdown_signal_received", signal=sig)
        publisher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_worker_error", error=str(e))
        raise
    finally:
        await services.aclose()
        logger.info("outbox_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_worker())


if __name__ == "__main__":
    main()
