"""
Tests for the Tap API client.

Requests go through ``httpx.MockTransport`` so retries, error classification
and the circuit breaker run for real without network access.
"""
import hashlib
import hmac
import json
import time
from typing import Any, Callable, List

import httpx
import pytest

from laundry_ops.config import Settings
from laundry_ops.integrations.tap_client import (
    CircuitBreaker,
    GatewayError,
    TapClient,
    TapCustomer,
    TapErrorType,
)

CUSTOMER = TapCustomer(first_name="Sara", last_name="Ali", email="sara@example.com")


def make_client(
    settings: Settings,
    handler: Callable[[httpx.Request], httpx.Response],
    circuit_breaker: Any = None,
) -> TapClient:
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://api.tap.test/v2"
    )
    return TapClient(
        settings=settings,
        http_client=http_client,
        circuit_breaker=circuit_breaker,
        retry_backoff=0,
    )


class TestRequests:
    """Test suite for request building and response parsing."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_charge_payload(self, test_settings: Settings) -> None:
        """Amounts go out in major units and come back in fils."""
        seen: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200, json={"id": "chg_1", "status": "initiated", "amount": 1.5, "currency": "BHD"}
            )

        client = make_client(test_settings, handler)
        charge = await client.create_charge(
            amount_fils=1_500,
            currency="bhd",
            customer=CUSTOMER,
            source_id="src_all",
            reference="TOPUP-1",
            description="Wallet top-up",
        )
        await client.close()

        [request] = seen
        body = json.loads(request.content)
        assert request.method == "POST"
        assert request.url.path == "/v2/charges"
        assert request.headers["Authorization"] == f"Bearer {test_settings.tap_secret_key}"
        assert body["amount"] == 1.5
        assert body["currency"] == "BHD"
        assert body["reference"] == {"transaction": "TOPUP-1"}
        assert body["customer"]["email"] == "sara@example.com"
        assert charge.status == "INITIATED"
        assert charge.amount_fils == 1_500
        assert charge.charge_id == "chg_1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invoice_link_and_items(self, test_settings: Settings) -> None:
        seen: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200, json={"id": "inv_1", "status": "CREATED", "url": "https://tap.link/inv_1"}
            )

        client = make_client(test_settings, handler)
        invoice = await client.create_invoice(
            amount_fils=7_250,
            currency="BHD",
            customer=CUSTOMER,
            order_reference="ORD-00001",
            description="Laundry order ORD-00001",
        )
        await client.close()

        body = json.loads(seen[0].content)
        assert invoice.url == "https://tap.link/inv_1"
        assert body["reference"] == {"invoice": "INV-ORD-00001", "order": "ORD-00001"}
        assert [item["amount"] for item in body["order"]["items"]] == [7.25]
        assert body["notifications"]["channels"] == ["SMS", "EMAIL"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_invoice_with_empty_body(self, test_settings: Settings) -> None:
        """Tap may answer a cancellation with an empty object."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "DELETE"
            return httpx.Response(200, json={})

        client = make_client(test_settings, handler)
        cancelled = await client.cancel_invoice("inv_2")
        await client.close()

        assert cancelled.id == "inv_2"
        assert cancelled.status == "CANCELLED"


class TestErrorHandling:
    """Test suite for retries and error classification."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retries_transient_errors(self, test_settings: Settings) -> None:
        """A 503 followed by a success returns the success."""
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(503, json={"message": "unavailable"})
            return httpx.Response(200, json={"id": "chg_1", "status": "CAPTURED"})

        client = make_client(test_settings, handler)
        charge = await client.get_charge("chg_1")
        await client.close()

        assert calls["n"] == 2
        assert charge.status == "CAPTURED"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self, test_settings: Settings) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(
                400, json={"errors": [{"code": "1117", "description": "Invalid amount"}]}
            )

        client = make_client(test_settings, handler)
        with pytest.raises(GatewayError) as exc_info:
            await client.get_charge("chg_1")
        await client.close()

        assert calls["n"] == 1
        assert exc_info.value.error_type is TapErrorType.PERMANENT
        assert exc_info.value.status_code == 400
        assert exc_info.value.message == "Invalid amount"
        assert not exc_info.value.retryable

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rate_limit_exhausts_retries(self, test_settings: Settings) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(429, text="slow down")

        client = make_client(test_settings, handler)
        with pytest.raises(GatewayError) as exc_info:
            await client.get_invoice("inv_1")
        await client.close()

        assert calls["n"] == test_settings.tap_retry_max_attempts
        assert exc_info.value.error_type is TapErrorType.RATE_LIMIT

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, test_settings: Settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(test_settings, handler)
        with pytest.raises(GatewayError) as exc_info:
            await client.get_charge("chg_1")
        await client.close()

        assert exc_info.value.error_type is TapErrorType.TRANSIENT
        assert isinstance(exc_info.value.original_error, httpx.ReadTimeout)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_circuit_opens_after_repeated_outages(self, test_settings: Settings) -> None:
        """Once open, the breaker rejects calls without reaching Tap."""
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(500, json={"message": "boom"})

        client = make_client(test_settings, handler, CircuitBreaker(failure_threshold=2))
        with pytest.raises(GatewayError):
            await client.get_charge("chg_1")
        assert client.circuit_state == "open"
        assert calls["n"] == 2

        with pytest.raises(GatewayError) as exc_info:
            await client.get_charge("chg_1")
        await client.close()

        assert exc_info.value.circuit_open
        assert calls["n"] == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_permanent_errors_do_not_trip_breaker(self, test_settings: Settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"message": "not found"})

        client = make_client(test_settings, handler, CircuitBreaker(failure_threshold=1))
        for _ in range(3):
            with pytest.raises(GatewayError):
                await client.get_charge("chg_missing")
        await client.close()

        assert client.circuit_state == "closed"


class TestWebhookSignature:
    """Test suite for webhook signature verification."""

    @pytest.mark.unit
    def test_valid_signature(self, test_settings: Settings) -> None:
        client = TapClient(settings=test_settings)
        payload = b'{"id": "chg_1", "status": "CAPTURED"}'
        signature = hmac.new(
            test_settings.webhook_secret.encode("utf-8"), payload, hashlib.sha256
        ).hexdigest()

        assert client.verify_webhook_signature(payload, signature)
        assert client.verify_webhook_signature(payload, signature.upper())

    @pytest.mark.unit
    def test_invalid_signature(self, test_settings: Settings) -> None:
        client = TapClient(settings=test_settings)

        assert not client.verify_webhook_signature(b"{}", "deadbeef")
        assert not client.verify_webhook_signature(b"{}", None)


class TestMoneyMovementSafety:
    """Test suite for retried creates and unreadable responses."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retried_charge_reuses_idempotency_key(self, test_settings: Settings) -> None:
        """A POST that timed out is retried under the same key, so Tap can dedupe it."""
        seen: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if len(seen) == 1:
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200, json={"id": "chg_1", "status": "INITIATED"})

        client = make_client(test_settings, handler)
        charge = await client.create_charge(
            amount_fils=2_000,
            currency="BHD",
            customer=CUSTOMER,
            source_id="src_all",
            reference="TOPUP-7-abc",
            description="Wallet top-up",
        )
        await client.close()

        assert charge.id == "chg_1"
        assert [request.headers.get("Idempotency-Key") for request in seen] == [
            "TOPUP-7-abc",
            "TOPUP-7-abc",
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_and_invoice_carry_keys(self, test_settings: Settings) -> None:
        seen: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "obj_1", "status": "PENDING"})

        client = make_client(test_settings, handler)
        await client.create_refund(
            charge_id="chg_1",
            amount_fils=500,
            currency="BHD",
            reason="Damaged item",
            reference="REFUND-3-1a2b3c4d",
        )
        await client.create_invoice(
            amount_fils=500,
            currency="BHD",
            customer=CUSTOMER,
            order_reference="ORD-00003",
            description="Laundry order ORD-00003",
        )
        await client.get_charge("chg_1")
        await client.close()

        refund, invoice, lookup = seen
        assert refund.headers["Idempotency-Key"] == "REFUND-3-1a2b3c4d"
        assert invoice.headers["Idempotency-Key"].startswith("INV-ORD-00003-")
        assert "Idempotency-Key" not in lookup.headers

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"id": "chg_1", "status": "CAPTURED", "amount": "n/a"},
            {"id": "chg_1", "status": "CAPTURED", "transaction": "https://tap.link"},
            ["chg_1"],
        ],
    )
    async def test_malformed_body_is_permanent(self, test_settings: Settings, body: Any) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(200, json=body)

        client = make_client(test_settings, handler)
        with pytest.raises(GatewayError) as exc_info:
            await client.get_charge("chg_1")
        await client.close()

        assert calls["n"] == 1
        assert exc_info.value.error_type is TapErrorType.PERMANENT

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_open_circuit_is_not_retried(self, test_settings: Settings, mocker: Any) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("request sent while the circuit is open")

        breaker = CircuitBreaker()
        breaker.state = "open"
        breaker.last_failure_time = time.time()
        client = make_client(test_settings, handler, breaker)
        call_spy = mocker.spy(breaker, "call")

        with pytest.raises(GatewayError) as exc_info:
            await client.get_charge("chg_1")
        await client.close()

        assert exc_info.value.circuit_open
        assert not exc_info.value.retryable
        assert call_spy.call_count == 1
