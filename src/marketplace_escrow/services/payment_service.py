"""Payment Service: moves money through an external payment processor.

The escrow ledger never talks to a processor directly. It goes through
PaymentService, which adds bounded in-process retries (tenacity) for
transient failures and structured logging around every money movement.

Two processors ship with the service:
    - SimulatedPaymentProcessor: in-memory, idempotent per key, with
      injectable failures. Used in development and tests.
    - HttpPaymentProcessor: talks to a payment gateway over HTTP (httpx),
      passing the idempotency key in the Idempotency-Key header.

Every call carries a stable idempotency key (capture:<bid_id>,
release:<hold_id>, refund:<hold_id>), so a retried request can never move
money twice.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from marketplace_escrow.domain.exceptions import PaymentError, TransientPaymentError
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from tenacity import RetryCallState

    from marketplace_escrow.config import Settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class PaymentReceipt:
    """Processor acknowledgement of a money movement."""

    reference: str
    amount: Decimal
    idempotency_key: str


@runtime_checkable
class PaymentProcessor(Protocol):
    """What the escrow ledger needs from a payment processor.

    Accounts are the party ids; mapping them to real payment methods is
    the processor's concern.
    """

    async def capture(
        self, amount: Decimal, payer_account: str, idempotency_key: str
    ) -> PaymentReceipt: ...

    async def payout(
        self, amount: Decimal, payee_account: str, idempotency_key: str
    ) -> PaymentReceipt: ...

    async def refund(
        self, capture_ref: str, amount: Decimal, idempotency_key: str
    ) -> PaymentReceipt: ...


class SimulatedPaymentProcessor:
    """In-memory processor. A repeated idempotency key returns the first receipt.

    Usage:
        processor = SimulatedPaymentProcessor()
        processor.fail_next("payout", TransientPaymentError("gateway down", "payout"))
    """

    def __init__(self) -> None:
        self._receipts: dict[str, PaymentReceipt] = {}
        self._failures: dict[str, list[Exception]] = {}
        self.calls: list[tuple[str, str]] = []
        self.performed: list[tuple[str, PaymentReceipt]] = []

    def fail_next(self, operation: str, error: Exception | None = None, times: int = 1) -> None:
        """Queue failures for the next `times` calls of an operation."""
        error = error or PaymentError(f"simulated {operation} failure", operation)
        self._failures.setdefault(operation, []).extend([error] * times)

    def call_count(self, operation: str) -> int:
        """Number of requests received for an operation, retries included."""
        return sum(1 for op, _ in self.calls if op == operation)

    def receipts_for(self, operation: str) -> list[PaymentReceipt]:
        """Distinct money movements actually performed for an operation."""
        return [r for op, r in self.performed if op == operation]

    async def capture(
        self, amount: Decimal, payer_account: str, idempotency_key: str
    ) -> PaymentReceipt:
        return self._execute("capture", amount, idempotency_key)

    async def payout(
        self, amount: Decimal, payee_account: str, idempotency_key: str
    ) -> PaymentReceipt:
        return self._execute("payout", amount, idempotency_key)

    async def refund(
        self, capture_ref: str, amount: Decimal, idempotency_key: str
    ) -> PaymentReceipt:
        return self._execute("refund", amount, idempotency_key)

    def _execute(self, operation: str, amount: Decimal, idempotency_key: str) -> PaymentReceipt:
        self.calls.append((operation, idempotency_key))
        queued = self._failures.get(operation)
        if queued:
            raise queued.pop(0)
        if idempotency_key in self._receipts:
            return self._receipts[idempotency_key]
        receipt = PaymentReceipt(
            reference=f"{operation[:2]}_{uuid.uuid4().hex[:24]}",
            amount=amount,
            idempotency_key=idempotency_key,
        )
        self._receipts[idempotency_key] = receipt
        self.performed.append((operation, receipt))
        return receipt


class HttpPaymentProcessor:
    """Payment gateway client over HTTP.

    5xx responses, 429 and transport errors are transient; any other non-2xx
    response is a hard PaymentError.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._client = client

    async def capture(
        self, amount: Decimal, payer_account: str, idempotency_key: str
    ) -> PaymentReceipt:
        return await self._post(
            "capture",
            "/v1/captures",
            {"amount": str(amount), "account": payer_account},
            idempotency_key,
        )

    async def payout(
        self, amount: Decimal, payee_account: str, idempotency_key: str
    ) -> PaymentReceipt:
        return await self._post(
            "payout",
            "/v1/payouts",
            {"amount": str(amount), "account": payee_account},
            idempotency_key,
        )

    async def refund(
        self, capture_ref: str, amount: Decimal, idempotency_key: str
    ) -> PaymentReceipt:
        return await self._post(
            "refund",
            "/v1/refunds",
            {"amount": str(amount), "capture": capture_ref},
            idempotency_key,
        )

    async def _post(
        self, operation: str, path: str, body: dict, idempotency_key: str
    ) -> PaymentReceipt:
        headers = {"Idempotency-Key": idempotency_key}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        try:
            if self._client is not None:
                response = await self._client.post(
                    f"{self._base_url}{path}", json=body, headers=headers
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(
                        f"{self._base_url}{path}", json=body, headers=headers
                    )
        except httpx.TransportError as exc:
            raise TransientPaymentError(
                f"Payment gateway unreachable: {exc}", operation, idempotency_key
            ) from exc

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientPaymentError(
                f"Payment gateway returned {response.status_code}", operation, idempotency_key
            )
        if response.status_code >= 400:
            raise PaymentError(
                f"Payment gateway rejected {operation}: {response.text}",
                operation,
                idempotency_key,
            )

        data = response.json()
        return PaymentReceipt(
            reference=str(data["id"]),
            amount=Decimal(str(data.get("amount", body["amount"]))),
            idempotency_key=idempotency_key,
        )


def build_payment_processor(settings: Settings) -> PaymentProcessor:
    """Pick the processor implementation configured by PAYMENT_MODE."""
    if settings.payment_mode == "http":
        return HttpPaymentProcessor(
            settings.payment_gateway_url,
            api_key=settings.payment_gateway_api_key,
            timeout=settings.payment_timeout_seconds,
        )
    return SimulatedPaymentProcessor()


class PaymentService:
    """Retrying, logging facade over a PaymentProcessor."""

    def __init__(self, processor: PaymentProcessor, settings: Settings) -> None:
        self._processor = processor
        self._settings = settings

    @property
    def processor(self) -> PaymentProcessor:
        return self._processor

    async def capture(
        self, amount: Decimal, payer_account: str, idempotency_key: str
    ) -> PaymentReceipt:
        receipt = await self._with_retry(
            "capture", idempotency_key, self._processor.capture, amount, payer_account
        )
        logger.info(
            "payment.captured",
            amount=str(amount),
            payer=payer_account,
            reference=receipt.reference,
            idempotency_key=idempotency_key,
        )
        return receipt

    async def payout(
        self, amount: Decimal, payee_account: str, idempotency_key: str
    ) -> PaymentReceipt:
        receipt = await self._with_retry(
            "payout", idempotency_key, self._processor.payout, amount, payee_account
        )
        logger.info(
            "payment.paid_out",
            amount=str(amount),
            payee=payee_account,
            reference=receipt.reference,
            idempotency_key=idempotency_key,
        )
        return receipt

    async def refund(
        self, capture_ref: str, amount: Decimal, idempotency_key: str
    ) -> PaymentReceipt:
        receipt = await self._with_retry(
            "refund", idempotency_key, self._processor.refund, capture_ref, amount
        )
        logger.info(
            "payment.refunded",
            amount=str(amount),
            capture_ref=capture_ref,
            reference=receipt.reference,
            idempotency_key=idempotency_key,
        )
        return receipt

    async def _with_retry(
        self, operation, idempotency_key, call, *args  # noqa: ANN001
    ) -> PaymentReceipt:
        """Run a processor call, retrying transient failures with exponential backoff."""

        def _log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                "payment.retrying",
                operation=operation,
                attempt=retry_state.attempt_number,
                idempotency_key=idempotency_key,
                error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._settings.payment_retry_attempts),
            wait=wait_exponential(
                multiplier=1,
                min=self._settings.payment_retry_wait_min,
                max=self._settings.payment_retry_wait_max,
            ),
            retry=retry_if_exception_type(TransientPaymentError),
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    receipt = await call(*args, idempotency_key=idempotency_key)
        except PaymentError as exc:
            logger.error(
                "payment.failed",
                operation=operation,
                idempotency_key=idempotency_key,
                error=exc.message,
            )
            raise
        return receipt
