"""Tests for PaymentService retries and the HTTP payment gateway client."""

from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest

from marketplace_escrow.config import Settings
from marketplace_escrow.domain.exceptions import PaymentError, TransientPaymentError
from marketplace_escrow.services.payment_service import (
    HttpPaymentProcessor,
    PaymentProcessor,
    PaymentService,
    SimulatedPaymentProcessor,
    build_payment_processor,
)


class TestSimulatedPaymentProcessor:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(SimulatedPaymentProcessor(), PaymentProcessor)

    @pytest.mark.asyncio
    async def test_same_key_returns_first_receipt(self) -> None:
        processor = SimulatedPaymentProcessor()
        first = await processor.payout(Decimal("10.00"), "prov", "release:abc")
        second = await processor.payout(Decimal("10.00"), "prov", "release:abc")

        assert first == second
        assert processor.call_count("payout") == 2
        assert len(processor.receipts_for("payout")) == 1


class TestPaymentServiceRetries:
    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, settings: Settings) -> None:
        processor = SimulatedPaymentProcessor()
        processor.fail_next("capture", TransientPaymentError("timeout", "capture"), times=2)
        service = PaymentService(processor, settings)

        receipt = await service.capture(Decimal("99.00"), "req", "capture:1")

        assert receipt.amount == Decimal("99.00")
        assert processor.call_count("capture") == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_configured_attempts(self, settings: Settings) -> None:
        processor = SimulatedPaymentProcessor()
        processor.fail_next("payout", TransientPaymentError("timeout", "payout"), times=5)
        service = PaymentService(processor, settings)

        with pytest.raises(TransientPaymentError):
            await service.payout(Decimal("10.00"), "prov", "release:1")
        assert processor.call_count("payout") == settings.payment_retry_attempts

    @pytest.mark.asyncio
    async def test_hard_failures_are_not_retried(self, settings: Settings) -> None:
        processor = SimulatedPaymentProcessor()
        processor.fail_next("refund")
        service = PaymentService(processor, settings)

        with pytest.raises(PaymentError):
            await service.refund("ca_1", Decimal("10.00"), "refund:1")
        assert processor.call_count("refund") == 1


class TestHttpPaymentProcessor:
    @staticmethod
    def _processor(handler) -> HttpPaymentProcessor:  # noqa: ANN001
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return HttpPaymentProcessor("https://pay.test/", api_key="sk_test", client=client)

    @pytest.mark.asyncio
    async def test_capture_sends_idempotency_key(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "cap_123", "amount": "250.00"})

        receipt = await self._processor(handler).capture(Decimal("250.00"), "req-1", "capture:b1")

        assert receipt.reference == "cap_123"
        assert receipt.amount == Decimal("250.00")
        (request,) = seen
        assert request.url == "https://pay.test/v1/captures"
        assert request.headers["Idempotency-Key"] == "capture:b1"
        assert request.headers["Authorization"] == "Bearer sk_test"
        assert json.loads(request.content) == {"amount": "250.00", "account": "req-1"}

    @pytest.mark.asyncio
    async def test_refund_references_the_capture(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            return httpx.Response(201, json={"id": f"re_{body['capture']}"})

        receipt = await self._processor(handler).refund("cap_9", Decimal("5.00"), "refund:h1")

        assert receipt.reference == "re_cap_9"
        assert receipt.amount == Decimal("5.00")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [429, 500, 503])
    async def test_retryable_statuses_are_transient(self, status_code: int) -> None:
        processor = self._processor(lambda request: httpx.Response(status_code))
        with pytest.raises(TransientPaymentError):
            await processor.payout(Decimal("1.00"), "prov", "release:h1")

    @pytest.mark.asyncio
    async def test_client_errors_are_hard_failures(self) -> None:
        processor = self._processor(lambda request: httpx.Response(402, text="card declined"))
        with pytest.raises(PaymentError) as exc_info:
            await processor.capture(Decimal("1.00"), "req", "capture:b2")

        assert not isinstance(exc_info.value, TransientPaymentError)
        assert "card declined" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_transport_errors_are_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientPaymentError):
            await self._processor(handler).payout(Decimal("1.00"), "prov", "release:h2")


class TestBuildPaymentProcessor:
    def test_simulated_by_default(self, settings: Settings) -> None:
        assert isinstance(build_payment_processor(settings), SimulatedPaymentProcessor)

    def test_http_mode(self, settings: Settings) -> None:
        http_settings = settings.model_copy(update={"payment_mode": "http"})
        assert isinstance(build_payment_processor(http_settings), HttpPaymentProcessor)
