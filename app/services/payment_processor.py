"""Payment processor client.

Supports two backends:
- Sandbox (development / testing): mints intent ids locally; captures are
  delivered by posting to ``/payments/webhook`` yourself
- HTTP via httpx (production): talks to the processor's REST API

Reads (intent lookups) retry with bounded exponential backoff via tenacity.
Money-moving writes (intent creation) are sent exactly once and any failure
is surfaced.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Protocol

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.config import settings
from app.utils.crypto import generate_nonce

logger = logging.getLogger(__name__)


class PaymentProcessorError(Exception):
    """The processor could not be reached or refused the request."""


@dataclass(frozen=True)
class PaymentIntent:
    intent_id: str
    amount: int
    currency: str
    status: str


class PaymentProcessor(Protocol):
    async def create_intent(
        self, amount: int, currency: str, metadata: dict
    ) -> PaymentIntent: ...

    async def get_intent(self, intent_id: str) -> PaymentIntent: ...


class SandboxPaymentProcessor:
    """In-memory processor for development and tests."""

    def __init__(self) -> None:
        self._intents: dict[str, PaymentIntent] = {}

    async def create_intent(self, amount: int, currency: str, metadata: dict) -> PaymentIntent:
        intent = PaymentIntent(
            intent_id=f"pi_{generate_nonce()}",
            amount=amount,
            currency=currency,
            status="requires_payment",
        )
        self._intents[intent.intent_id] = intent
        logger.info("Sandbox intent %s for %s %s (%s)", intent.intent_id, amount, currency, metadata)
        return intent

    async def get_intent(self, intent_id: str) -> PaymentIntent:
        intent = self._intents.get(intent_id)
        if intent is None:
            raise PaymentProcessorError(f"Unknown intent {intent_id}")
        return intent


def _intent_from(data: dict) -> PaymentIntent:
    return PaymentIntent(
        intent_id=data["id"],
        amount=data["amount"],
        currency=data["currency"],
        status=data["status"],
    )


class HttpPaymentProcessor:
    """REST client for the hosted processor."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float,
        read_retries: int,
        read_backoff: float = 0.5,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.read_retries = read_retries
        self.read_backoff = read_backoff

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

    async def create_intent(self, amount: int, currency: str, metadata: dict) -> PaymentIntent:
        # Single attempt, keyed so the processor can dedupe a retried request.
        if "job_id" in metadata:
            idempotency_key = f"{metadata['job_id']}:{metadata.get('attempt', 1)}"
        else:
            idempotency_key = str(uuid.uuid4())
        try:
            async with self._client() as client:
                response = await client.post(
                    "/intents",
                    json={"amount": amount, "currency": currency, "metadata": metadata},
                    headers={"Idempotency-Key": idempotency_key},
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise PaymentProcessorError(f"Intent creation failed: {exc}") from exc
        return _intent_from(response.json())

    async def get_intent(self, intent_id: str) -> PaymentIntent:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(httpx.HTTPError),
            stop=stop_after_attempt(self.read_retries),
            wait=wait_exponential(multiplier=self.read_backoff, max=8),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    async with self._client() as client:
                        response = await client.get(f"/intents/{intent_id}")
                        response.raise_for_status()
        except httpx.HTTPError as exc:
            raise PaymentProcessorError(f"Intent lookup failed: {exc}") from exc
        return _intent_from(response.json())


_sandbox = SandboxPaymentProcessor()


def get_payment_processor() -> PaymentProcessor:
    if settings.payment_processor_backend == "http":
        return HttpPaymentProcessor(
            settings.payment_processor_url,
            settings.payment_processor_api_key,
            settings.payment_processor_timeout_seconds,
            settings.payment_processor_read_retries,
        )
    return _sandbox
