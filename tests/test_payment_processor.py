"""Tests for the payment processor clients."""

import httpx
import pytest

from app.config import settings
from app.services.payment_processor import (
    HttpPaymentProcessor,
    PaymentProcessorError,
    SandboxPaymentProcessor,
    get_payment_processor,
)


def _http_processor(handler, retries: int = 3) -> HttpPaymentProcessor:  # type: ignore[no-untyped-def]
    processor = HttpPaymentProcessor("https://pay.test", "sk_test", 5, retries, read_backoff=0)
    transport = httpx.MockTransport(handler)
    processor._client = lambda: httpx.AsyncClient(  # type: ignore[method-assign]
        base_url=processor.base_url, transport=transport,
        headers={"Authorization": f"Bearer {processor.api_key}"},
    )
    return processor


@pytest.mark.asyncio
async def test_sandbox_round_trip() -> None:
    processor = SandboxPaymentProcessor()
    intent = await processor.create_intent(10_000, "INR", {"job_id": "j1"})
    assert intent.intent_id.startswith("pi_")
    assert intent.status == "requires_payment"
    assert (await processor.get_intent(intent.intent_id)) == intent

    with pytest.raises(PaymentProcessorError):
        await processor.get_intent("pi_unknown")


@pytest.mark.asyncio
async def test_http_create_intent_sends_idempotency_key() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200, json={"id": "pi_remote", "amount": 500, "currency": "INR", "status": "requires_payment"}
        )

    processor = _http_processor(handler)
    intent = await processor.create_intent(500, "INR", {"job_id": "job-1"})
    assert intent.intent_id == "pi_remote"
    assert seen[0].headers["Idempotency-Key"] == "job-1:1"
    assert seen[0].headers["Authorization"] == "Bearer sk_test"


@pytest.mark.asyncio
async def test_http_create_intent_not_retried() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(503)

    processor = _http_processor(handler)
    with pytest.raises(PaymentProcessorError):
        await processor.create_intent(500, "INR", {"job_id": "job-1"})
    assert calls == 1


@pytest.mark.asyncio
async def test_http_get_intent_retries_reads() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls < 3:
            return httpx.Response(502)
        return httpx.Response(
            200, json={"id": "pi_1", "amount": 500, "currency": "INR", "status": "succeeded"}
        )

    processor = _http_processor(handler, retries=3)
    intent = await processor.get_intent("pi_1")
    assert intent.status == "succeeded"
    assert calls == 3


@pytest.mark.asyncio
async def test_http_get_intent_gives_up_after_read_retries() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(503)

    processor = _http_processor(handler, retries=4)
    with pytest.raises(PaymentProcessorError, match="Intent lookup failed"):
        await processor.get_intent("pi_1")
    assert calls == 4


def test_backend_selection(monkeypatch: pytest.MonkeyPatch) -> None:
    assert isinstance(get_payment_processor(), SandboxPaymentProcessor)
    monkeypatch.setattr(settings, "payment_processor_backend", "http")
    monkeypatch.setattr(settings, "payment_processor_url", "https://pay.test")
    assert isinstance(get_payment_processor(), HttpPaymentProcessor)
