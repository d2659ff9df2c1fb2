"""
Transactional outbox for customer notifications.

Events are written to the database in the same transaction as the order or
payment change, then delivered asynchronously. A delivery failure never rolls
back the change that produced the event; the event is retried on a later poll.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from laundry_ops.database.connection import get_session_factory
from laundry_ops.database.models import OutboxEvent, utcnow
from laundry_ops.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PublisherFunc = Callable[[Dict[str, Any]], Awaitable[Any]]


async def enqueue_notification(
    db: AsyncSession,
    event_type: str,
    aggregate_type: str,
    aggregate_id: Any,
    payload: Dict[str, Any],
) -> OutboxEvent:
    """
    Write a notification event inside the caller's transaction.

    Args:
        db: Session with an open transaction
        event_type: Event name (e.g., 'order.status_changed')
        aggregate_type: 'order', 'payment' or 'wallet'
        aggregate_id: Id of the changed entity
        payload: JSON-serializable event body

    Returns:
        OutboxEvent: The pending event
    """
    event = OutboxEvent(
        aggregate_id=str(aggregate_id),
        aggregate_type=aggregate_type,
        event_type=event_type,
        payload=payload,
        published=False,
        attempts=0,
    )
    db.add(event)
    await db.flush()
    logger.debug(
        "outbox_event_enqueued",
        event_type=event_type,
        aggregate_type=aggregate_type,
        aggregate_id=str(aggregate_id),
    )
    return event


class OutboxPublisher:
    """
    Delivers events from the outbox table.

    1. Read unpublished events, oldest first
    2. Hand each one to the publisher function
    3. Mark delivered events as published
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        publisher_func: Optional[PublisherFunc] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
    ):
        """
        Initialize outbox publisher.

        Args:
            session_factory: Session factory (defaults to the app's)
            publisher_func: Coroutine delivering one event (e.g., Notifier.notify)
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval
        """
        self.session_factory = session_factory or get_session_factory()
        self.publisher_func = publisher_func or self._default_publisher
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self._running = False
        self._stop_event = asyncio.Event()

        logger.info(
            "outbox_publisher_initialized",
            batch_size=batch_size,
            poll_interval=poll_interval_seconds,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    async def _default_publisher(self, event_data: Dict[str, Any]) -> None:
        logger.info(
            "outbox_event_published_default",
            event_type=event_data.get("event_type"),
            aggregate_id=event_data.get("aggregate_id"),
        )

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.published.is_(False))
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _publish_event(self, event: OutboxEvent) -> bool:
        """
        Publish a single event.

        Returns:
            bool: True if published successfully, False otherwise
        """
        event_data = {
            "id": event.id,
            "aggregate_id": event.aggregate_id,
            "aggregate_type": event.aggregate_type,
            "event_type": event.event_type,
            "payload": event.payload,
            "created_at": event.created_at.isoformat() if event.created_at else None,
        }
        try:
            await self.publisher_func(event_data)
        except Exception as e:
            logger.error(
                "outbox_event_publish_failed",
                event_id=event.id,
                event_type=event.event_type,
                error=str(e),
            )
            return False

        metrics.record_outbox_event_published(event.event_type)
        logger.info(
            "outbox_event_published",
            event_id=event.id,
            event_type=event.event_type,
            aggregate_id=event.aggregate_id,
        )
        return True

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished events.

        Returns:
            int: Number of events published
        """
        async with self.session_factory() as db, db.begin():
            events = await self._fetch_unpublished_events(db)
            if not events:
                return 0

            logger.info("outbox_batch_processing_started", batch_size=len(events))

            published_ids: List[int] = []
            failed_ids: List[int] = []
            for event in events:
                if await self._publish_event(event):
                    published_ids.append(event.id)
                else:
                    failed_ids.append(event.id)

            if published_ids:
                await db.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.id.in_(published_ids))
                    .values(
                        published=True,
                        published_at=utcnow(),
                        attempts=OutboxEvent.attempts + 1,
                    )
                )
            if failed_ids:
                await db.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.id.in_(failed_ids))
                    .values(attempts=OutboxEvent.attempts + 1)
                )

        logger.info(
            "outbox_batch_processed",
            total=len(events),
            published=len(published_ids),
            failed=len(failed_ids),
        )
        return len(published_ids)

    async def start(self) -> None:
        """
        Run the publisher loop until stop() is called.

        Continuously polls for unpublished events and publishes them.
        """
        self._running = True
        self._stop_event.clear()
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())
                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    published_count = 0

                # Drain immediately while there is a backlog.
                delay = self.poll_interval_seconds if published_count == 0 else 0.1
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        self._stop_event.set()
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self) -> int:
        """Get count of pending unpublished events."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count())
                .select_from(OutboxEvent)
                .where(OutboxEvent.published.is_(False))
            )
            return int(result.scalar_one())
