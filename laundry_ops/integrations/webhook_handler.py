"""
Tap webhook handler with signature verification and event deduplication.

Implements:
- ``hashstring`` signature verification
- Event deduplication using Redis
- Routing through the reconciler so webhooks and polling share one path
"""
import json
import time
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import or_, select

from laundry_ops.config import get_settings
from laundry_ops.core.reconciliation import PaymentReconciler
from laundry_ops.database.models import PaymentRecord
from laundry_ops.domain.enums import PaymentMethod
from laundry_ops.exceptions import LaundryOpsError, ValidationError
from laundry_ops.integrations.tap_client import map_charge_status, map_invoice_status
from laundry_ops.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class WebhookError(LaundryOpsError):
    """Raised when a webhook cannot be authenticated or parsed."""

    error_code = "webhook_error"


class TapWebhookHandler:
    """
    Handles Tap charge and invoice webhooks.

    A delivery is identified by ``{id}:{status}``; Tap retries the same
    delivery until it gets a 2xx, and a later status for the same object is a
    new delivery.
    """

    def __init__(
        self,
        reconciler: PaymentReconciler,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            reconciler: Reconciler that applies gateway statuses
            redis_client: Optional Redis client for event deduplication
        """
        self.settings = get_settings()
        self.reconciler = reconciler
        self.redis_client = redis_client
        self._owns_redis = redis_client is None

        logger.info("webhook_handler_initialized")

    async def _ensure_redis(self) -> aioredis.Redis:
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    @staticmethod
    def _dedup_key(event_id: str) -> str:
        return f"webhook:processed:{event_id}"

    async def is_event_processed(self, event_id: str) -> bool:
        """
        Check if a webhook delivery has already been processed.

        Returns:
            bool: True if already processed; False when Redis is unreachable
        """
        try:
            redis = await self._ensure_redis()
            return bool(await redis.exists(self._dedup_key(event_id)))
        except Exception as e:
            logger.warning("webhook_dedup_check_error", error=str(e), event_id=event_id)
            # If Redis is down, process the event anyway; applying a status twice is a no-op
            return False

    async def mark_event_processed(self, event_id: str) -> None:
        try:
            redis = await self._ensure_redis()
            await redis.setex(self._dedup_key(event_id), self.settings.webhook_dedup_ttl_seconds, "1")
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), event_id=event_id)

    async def find_payment(self, gateway_id: str) -> Optional[PaymentRecord]:
        """Find the payment record whose Tap charge, transaction or reference id matches."""
        async with self.reconciler.session_factory() as db:
            result = await db.execute(
                select(PaymentRecord)
                .where(
                    or_(
                        PaymentRecord.tap_charge_id == gateway_id,
                        PaymentRecord.tap_transaction_id == gateway_id,
                        PaymentRecord.tap_reference == gateway_id,
                    )
                )
                .order_by(PaymentRecord.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    def parse(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify and decode a webhook body.

        Raises:
            WebhookError: If the signature does not match or the body is not a JSON object
            ValidationError: If ``id`` or ``status`` is missing
        """
        if not self.reconciler.gateway.verify_webhook_signature(payload, signature):
            logger.error("webhook_signature_verification_failed")
            raise WebhookError("Invalid webhook signature")
        try:
            body = json.loads(payload)
        except ValueError as e:
            raise WebhookError(f"Webhook body is not valid JSON: {e}")
        if not isinstance(body, dict):
            raise WebhookError("Webhook body must be a JSON object")
        if not body.get("id") or not body.get("status"):
            raise ValidationError("Webhook body is missing id or status")
        return body

    async def process(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Process one Tap webhook delivery.

        Args:
            payload: Raw request body
            signature: ``hashstring`` header value

        Returns:
            Dict[str, Any]: ``status`` is one of success, duplicate, not_found
        """
        start_time = time.time()
        try:
            body = self.parse(payload, signature)
        except LaundryOpsError:
            metrics.record_webhook_event("rejected", time.time() - start_time)
            raise

        gateway_id = str(body["id"])
        gateway_status = str(body["status"]).upper()
        event_id = f"{gateway_id}:{gateway_status}"

        logger.info("processing_webhook_event", event_id=event_id, object=body.get("object"))

        if await self.is_event_processed(event_id):
            logger.info("webhook_event_already_processed", event_id=event_id)
            metrics.record_webhook_event("duplicate", time.time() - start_time)
            return {"status": "duplicate", "event_id": event_id}

        record = await self.find_payment(gateway_id)
        if record is None:
            logger.warning("webhook_payment_not_found", event_id=event_id)
            metrics.record_webhook_event("not_found", time.time() - start_time)
            return {"status": "not_found", "event_id": event_id}

        if body.get("object") == "invoice" or record.payment_method is PaymentMethod.TAP_INVOICE:
            mapped = map_invoice_status(gateway_status)
        else:
            mapped = map_charge_status(gateway_status)

        try:
            result = await self.reconciler.apply_gateway_status(
                record.id, gateway_status, mapped, body, source="webhook"
            )
        except Exception as e:
            logger.error("webhook_event_processing_failed", event_id=event_id, error=str(e))
            metrics.record_webhook_event("failed", time.time() - start_time)
            raise

        await self.mark_event_processed(event_id)
        metrics.record_webhook_event("success", time.time() - start_time)
        logger.info(
            "webhook_event_processed_successfully",
            event_id=event_id,
            payment_id=record.id,
            updated=result.updated,
        )
        return {
            "status": "success",
            "event_id": event_id,
            "payment_id": record.id,
            "payment_status": result.mapped_status,
            "updated": result.updated,
        }

    async def close(self) -> None:
        """Close the Redis connection if this handler opened it."""
        if self.redis_client is not None and self._owns_redis:
            await self.redis_client.aclose()
            self.redis_client = None
