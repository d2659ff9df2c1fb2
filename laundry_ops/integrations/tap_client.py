"""
Tap Payments API client with retry logic and comprehensive error handling.

Implements:
- Exponential backoff for transient errors
- Circuit breaker pattern
- Bounded request timeout
- Gateway status vocabulary mapping
- Webhook signature verification
"""
import hashlib
import hmac
import time
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

import httpx
import structlog
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from laundry_ops.config import Settings, get_settings
from laundry_ops.domain.enums import PaymentStatus
from laundry_ops.domain.money import to_major, to_minor
from laundry_ops.exceptions import LaundryOpsError
from laundry_ops.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CHARGE_PAID_STATUSES = frozenset({"CAPTURED", "AUTHORIZED"})
CHARGE_FAILED_STATUSES = frozenset(
    {"DECLINED", "FAILED", "CANCELLED", "VOID", "EXPIRED", "ABANDONED", "RESTRICTED"}
)
INVOICE_PAID_STATUSES = frozenset({"PAID", "CLOSED"})
INVOICE_FAILED_STATUSES = frozenset({"CANCELLED", "EXPIRED", "FAILED", "DECLINED"})


def map_charge_status(gateway_status: Optional[str]) -> PaymentStatus:
    """Map a Tap charge status onto the local payment status."""
    status = (gateway_status or "").upper()
    if status in CHARGE_PAID_STATUSES:
        return PaymentStatus.PAID
    if status in CHARGE_FAILED_STATUSES:
        return PaymentStatus.FAILED
    return PaymentStatus.PENDING


def map_invoice_status(gateway_status: Optional[str]) -> PaymentStatus:
    """Map a Tap invoice status onto the local payment status."""
    status = (gateway_status or "").upper()
    if status in INVOICE_PAID_STATUSES:
        return PaymentStatus.PAID
    if status in INVOICE_FAILED_STATUSES:
        return PaymentStatus.FAILED
    return PaymentStatus.PENDING


class TapErrorType(Enum):
    """Classification of Tap errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class GatewayError(LaundryOpsError):
    """Raised when a Tap API call fails."""

    error_code = "gateway_error"

    def __init__(
        self,
        message: str,
        error_type: TapErrorType,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
        circuit_open: bool = False,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            error_type: Classification of error
            status_code: HTTP status returned by Tap, if any
            original_error: Underlying httpx exception
            circuit_open: True when the call was short-circuited
        """
        super().__init__(message, error_type=error_type.value, status_code=status_code)
        self.error_type = error_type
        self.status_code = status_code
        self.original_error = original_error
        self.circuit_open = circuit_open

    @property
    def retryable(self) -> bool:
        return not self.circuit_open and self.error_type in (
            TapErrorType.TRANSIENT,
            TapErrorType.RATE_LIMIT,
        )


class CircuitBreaker:
    """
    Circuit breaker for Tap API calls.

    Prevents cascading failures by temporarily stopping requests
    when the gateway keeps failing.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(
        self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any
    ) -> Any:
        """
        Execute coroutine function with circuit breaker protection.

        Args:
            func: Coroutine function to execute
            *args: Positional arguments
            **kwargs: Keyword arguments

        Returns:
            Function result

        Raises:
            GatewayError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayError(
                    "Circuit breaker is open",
                    TapErrorType.PERMANENT,
                    circuit_open=True,
                )

        try:
            result = await func(*args, **kwargs)
        except GatewayError as e:
            # A permanent error means the gateway answered; only outages count.
            if e.retryable:
                self.on_failure()
            else:
                self.on_success()
            raise
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class TapCustomer(BaseModel):
    """Customer block sent with charges and invoices."""

    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    email: str = Field(..., min_length=3, max_length=100)
    phone_country_code: Optional[str] = None
    phone_number: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "first_name": self.first_name.strip(),
            "last_name": self.last_name.strip(),
            "email": self.email.strip(),
        }
        if self.phone_country_code and self.phone_number:
            payload["phone"] = {
                "country_code": self.phone_country_code,
                "number": self.phone_number,
            }
        return payload


class InvoiceItem(BaseModel):
    name: str = Field(..., max_length=100)
    amount_fils: int = Field(..., ge=0)
    quantity: int = Field(default=1, ge=1)
    description: Optional[str] = Field(default=None, max_length=200)


class GatewayObject(BaseModel):
    """Normalized charge / invoice / refund returned by Tap."""

    id: str
    object: Optional[str] = None
    status: str
    amount_fils: Optional[int] = None
    currency: Optional[str] = None
    url: Optional[str] = None
    charge_id: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_response(cls, data: Any) -> "GatewayObject":
        """
        Normalize a Tap response body.

        Raises:
            GatewayError: PERMANENT, if the body does not have the expected shape
        """
        try:
            return cls._from_dict(data)
        except (ArithmeticError, AttributeError, TypeError, ValueError) as e:
            metrics.record_tap_api_error(TapErrorType.PERMANENT.value)
            logger.error(
                "tap_response_unparseable",
                gateway_id=data.get("id") if isinstance(data, dict) else None,
                error=str(e),
            )
            raise GatewayError(
                f"Tap returned a malformed response: {e}",
                TapErrorType.PERMANENT,
                original_error=e,
            )

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "GatewayObject":
        currency = data.get("currency")
        amount = data.get("amount")
        charge = data.get("charge") if isinstance(data.get("charge"), dict) else {}
        charge_id = charge.get("id")
        if charge_id is None and str(data.get("id", "")).startswith("chg_"):
            charge_id = data.get("id")
        return cls(
            id=str(data.get("id", "")),
            object=data.get("object"),
            status=str(data.get("status") or "UNKNOWN").upper(),
            amount_fils=to_minor(amount, currency or "BHD") if amount is not None else None,
            currency=currency,
            url=data.get("url") or (data.get("transaction") or {}).get("url"),
            charge_id=charge_id,
            raw=data,
        )


class TapClient:
    """
    Wrapper for the Tap Payments REST API with production-grade error handling.

    Features:
    - Automatic retry with exponential backoff (transient / rate limit only)
    - Circuit breaker pattern
    - Bounded timeout on every request
    - Comprehensive error classification
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry_backoff: float = 0.5,
    ) -> None:
        """
        Initialize Tap client.

        Args:
            settings: Optional settings (loaded from environment if omitted)
            http_client: Optional preconfigured httpx client
            circuit_breaker: Optional circuit breaker shared across clients
            retry_backoff: Multiplier for exponential retry waits (seconds)
        """
        self.settings = settings or get_settings()
        self.http_client = http_client or httpx.AsyncClient(
            base_url=self.settings.tap_api_base_url,
            timeout=self.settings.tap_timeout_seconds,
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.retry_backoff = retry_backoff
        self._headers = {
            "Authorization": f"Bearer {self.settings.tap_secret_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

        logger.info(
            "tap_client_initialized",
            base_url=self.settings.tap_api_base_url,
            timeout_seconds=self.settings.tap_timeout_seconds,
            test_mode=self.settings.is_test_mode,
        )

    @staticmethod
    def _classify_status(status_code: int) -> TapErrorType:
        """
        Classify an HTTP error status for retry logic.

        Args:
            status_code: HTTP status returned by Tap

        Returns:
            TapErrorType: Error classification
        """
        if status_code == 429:
            return TapErrorType.RATE_LIMIT
        elif status_code >= 500:
            return TapErrorType.TRANSIENT
        return TapErrorType.PERMANENT

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200] or f"HTTP {response.status_code}"
        errors = body.get("errors") if isinstance(body, dict) else None
        if errors and isinstance(errors, list):
            first = errors[0]
            return str(first.get("description") or first.get("code") or first)
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return f"HTTP {response.status_code}"

    async def _send(
        self,
        operation: str,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        headers = dict(self._headers)
        if idempotency_key:
            # Same key on every attempt; Tap answers a repeat with the original object.
            headers["Idempotency-Key"] = idempotency_key
        start_time = time.time()
        try:
            response = await self.http_client.request(
                method, path, json=json, headers=headers
            )
        except httpx.TimeoutException as e:
            metrics.record_tap_api_call(operation, "timeout", time.time() - start_time)
            metrics.record_tap_api_error(TapErrorType.TRANSIENT.value)
            logger.error("tap_api_timeout", operation=operation, path=path)
            raise GatewayError(
                f"Tap API timeout during {operation}", TapErrorType.TRANSIENT, original_error=e
            )
        except httpx.HTTPError as e:
            metrics.record_tap_api_call(operation, "connection_error", time.time() - start_time)
            metrics.record_tap_api_error(TapErrorType.TRANSIENT.value)
            logger.error("tap_api_connection_error", operation=operation, error=str(e))
            raise GatewayError(
                f"Tap API connection error during {operation}: {e}",
                TapErrorType.TRANSIENT,
                original_error=e,
            )

        duration = time.time() - start_time
        if response.status_code >= 400:
            error_type = self._classify_status(response.status_code)
            message = self._error_message(response)
            metrics.record_tap_api_call(operation, str(response.status_code), duration)
            metrics.record_tap_api_error(error_type.value)
            logger.error(
                "tap_api_error",
                operation=operation,
                status_code=response.status_code,
                error_type=error_type.value,
                error_message=message,
            )
            raise GatewayError(message, error_type, status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            metrics.record_tap_api_call(operation, "invalid_body", duration)
            raise GatewayError(
                f"Tap API returned a non-JSON body for {operation}",
                TapErrorType.TRANSIENT,
                status_code=response.status_code,
                original_error=e,
            )

        if not isinstance(data, dict):
            metrics.record_tap_api_call(operation, "invalid_body", duration)
            raise GatewayError(
                f"Tap API returned a {type(data).__name__} body for {operation}",
                TapErrorType.PERMANENT,
                status_code=response.status_code,
            )

        metrics.record_tap_api_call(operation, "success", duration)
        return data

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Send a request through the circuit breaker with retries.

        Raises:
            GatewayError: Once retries are exhausted or on a permanent error
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception(
                lambda e: isinstance(e, GatewayError) and e.retryable
            ),
            stop=stop_after_attempt(max(1, self.settings.tap_retry_max_attempts)),
            wait=wait_exponential(multiplier=self.retry_backoff, max=8),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.circuit_breaker.call(
                    self._send, operation, method, path, json, idempotency_key
                )
        raise GatewayError(f"Tap API {operation} was not attempted", TapErrorType.TRANSIENT)

    async def create_charge(
        self,
        amount_fils: int,
        currency: str,
        customer: TapCustomer,
        source_id: str,
        reference: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewayObject:
        """
        Create a Tap charge.

        Args:
            amount_fils: Amount in minor units
            currency: Currency code (e.g., 'BHD')
            customer: Customer details
            source_id: Tap token or source id (e.g., 'src_all', 'tok_...')
            reference: Local transaction reference, also sent as the idempotency key
            description: Charge description
            metadata: Optional metadata

        Returns:
            GatewayObject: Created charge

        Raises:
            GatewayError: If charge creation fails
        """
        logger.info(
            "creating_tap_charge",
            amount_fils=amount_fils,
            currency=currency,
            reference=reference,
        )
        payload = {
            "amount": float(to_major(amount_fils, currency)),
            "currency": currency.upper(),
            "customer": customer.to_payload(),
            "source": {"id": source_id},
            "redirect": {"url": self.settings.tap_redirect_url},
            "post": {"url": self.settings.tap_post_url},
            "reference": {"transaction": reference},
            "description": description,
            "metadata": metadata or {},
            "threeDSecure": True,
            "save_card": False,
        }
        charge = GatewayObject.from_response(
            await self._request(
                "create_charge", "POST", "/charges", payload, idempotency_key=reference
            )
        )
        logger.info("tap_charge_created", charge_id=charge.id, status=charge.status)
        return charge

    async def get_charge(self, charge_id: str) -> GatewayObject:
        """
        Retrieve a charge by ID.

        Raises:
            GatewayError: If retrieval fails
        """
        logger.info("retrieving_tap_charge", charge_id=charge_id)
        return GatewayObject.from_response(
            await self._request("get_charge", "GET", f"/charges/{charge_id}")
        )

    async def create_invoice(
        self,
        amount_fils: int,
        currency: str,
        customer: TapCustomer,
        order_reference: str,
        description: str,
        items: Optional[Sequence[InvoiceItem]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        channels: Sequence[str] = ("SMS", "EMAIL"),
        idempotency_key: Optional[str] = None,
    ) -> GatewayObject:
        """
        Create a Tap invoice for an order.

        Args:
            amount_fils: Invoice amount in minor units
            currency: Currency code
            customer: Customer details
            order_reference: Local order number
            description: Invoice description
            items: Optional line items (one summary line if omitted)
            metadata: Optional metadata
            channels: Notification channels Tap dispatches the invoice on
            idempotency_key: Key reused across retries (generated when omitted)

        Returns:
            GatewayObject: Created invoice (``url`` is the payment link)

        Raises:
            GatewayError: If invoice creation fails
        """
        if not items:
            items = [
                InvoiceItem(
                    name=f"Laundry order {order_reference}"[:100],
                    amount_fils=amount_fils,
                    description=f"Laundry service for order {order_reference}"[:200],
                )
            ]
        now = datetime.now(timezone.utc)
        expiry = now + timedelta(days=self.settings.tap_invoice_expiry_days)
        amount = float(to_major(amount_fils, currency))
        payload: Dict[str, Any] = {
            "amount": amount,
            "currency": currency.upper(),
            "customer": customer.to_payload(),
            "order": {
                "amount": amount,
                "currency": currency.upper(),
                "items": [
                    {
                        "name": item.name,
                        "description": item.description or item.name,
                        "currency": currency.upper(),
                        "amount": float(to_major(item.amount_fils, currency)),
                        "quantity": item.quantity,
                    }
                    for item in items
                ],
            },
            "redirect": {"url": self.settings.tap_redirect_url},
            "post": {"url": self.settings.tap_post_url},
            "reference": {"invoice": f"INV-{order_reference}", "order": order_reference},
            "description": description,
            "metadata": metadata or {},
            "notifications": {"dispatch": True, "channels": list(channels)},
            "due": int(expiry.timestamp() * 1000),
            "expiry": int(expiry.timestamp() * 1000),
        }
        idempotency_key = idempotency_key or f"INV-{order_reference}-{uuid.uuid4().hex[:12]}"
        logger.info(
            "creating_tap_invoice",
            amount_fils=amount_fils,
            currency=currency,
            order_reference=order_reference,
            items=len(items),
        )
        invoice = GatewayObject.from_response(
            await self._request(
                "create_invoice",
                "POST",
                "/invoices/",
                payload,
                idempotency_key=idempotency_key,
            )
        )
        logger.info("tap_invoice_created", invoice_id=invoice.id, status=invoice.status)
        return invoice

    async def get_invoice(self, invoice_id: str) -> GatewayObject:
        """
        Retrieve an invoice by ID.

        Raises:
            GatewayError: If retrieval fails
        """
        logger.info("retrieving_tap_invoice", invoice_id=invoice_id)
        return GatewayObject.from_response(
            await self._request("get_invoice", "GET", f"/invoices/{invoice_id}")
        )

    async def cancel_invoice(self, invoice_id: str) -> GatewayObject:
        """
        Cancel an unpaid invoice.

        Raises:
            GatewayError: If cancellation fails
        """
        logger.info("cancelling_tap_invoice", invoice_id=invoice_id)
        data = await self._request("cancel_invoice", "DELETE", f"/invoices/{invoice_id}")
        data.setdefault("id", invoice_id)
        data.setdefault("status", "CANCELLED")
        return GatewayObject.from_response(data)

    async def resend_invoice(
        self, invoice_id: str, channels: Sequence[str] = ("SMS", "EMAIL")
    ) -> GatewayObject:
        """
        Ask Tap to re-dispatch an invoice to the customer.

        Raises:
            GatewayError: If the reminder fails
        """
        logger.info("resending_tap_invoice", invoice_id=invoice_id, channels=list(channels))
        data = await self._request(
            "resend_invoice",
            "POST",
            f"/invoices/{invoice_id}/remind",
            {"notifications": {"channels": list(channels), "dispatch": True}},
        )
        data.setdefault("id", invoice_id)
        data.setdefault("status", "SENT")
        return GatewayObject.from_response(data)

    async def create_refund(
        self,
        charge_id: str,
        amount_fils: int,
        currency: str,
        reason: str,
        reference: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewayObject:
        """
        Refund (part of) a captured charge.

        Raises:
            GatewayError: If refund creation fails
        """
        logger.info(
            "creating_tap_refund",
            charge_id=charge_id,
            amount_fils=amount_fils,
            reference=reference,
        )
        payload = {
            "charge_id": charge_id,
            "amount": float(to_major(amount_fils, currency)),
            "currency": currency.upper(),
            "reason": reason,
            "reference": {"merchant": reference},
            "metadata": metadata or {},
            "post": {"url": self.settings.tap_post_url},
        }
        refund = GatewayObject.from_response(
            await self._request(
                "create_refund", "POST", "/refunds", payload, idempotency_key=reference
            )
        )
        logger.info("tap_refund_created", refund_id=refund.id, status=refund.status)
        return refund

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        """
        Verify the ``hashstring`` header of a Tap webhook.

        Args:
            payload: Raw request body
            signature: Hex HMAC-SHA256 digest sent by Tap

        Returns:
            bool: True if the signature matches
        """
        if not signature:
            return False
        expected = hmac.new(
            self.settings.webhook_secret.encode("utf-8"), payload, hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

    @property
    def circuit_state(self) -> str:
        return self.circuit_breaker.state

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self.http_client.aclose()


def parse_channels(raw: Optional[Sequence[str]]) -> Sequence[str]:
    """Normalize notification channel names, defaulting to SMS and EMAIL."""
    if not raw:
        return ("SMS", "EMAIL")
    return tuple(channel.upper() for channel in raw)
