"""Tests for notification dispatch and delivery records."""

import json
import uuid

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.notification import DeliveryStatus, NotificationDelivery
from app.services import notifications
from app.utils.crypto import verify_signature


class _FailingNotifier:
    name = "failing"

    async def send(self, user_id: uuid.UUID, template_id: str, metadata: dict) -> None:
        raise RuntimeError("delivery service down")


@pytest.mark.asyncio
async def test_log_notifier_records_delivery(db_session: AsyncSession) -> None:
    user_id, job_id = uuid.uuid4(), uuid.uuid4()
    delivery = await notifications.notify(
        db_session, user_id, notifications.JOB_STARTED, {"job_id": job_id}
    )
    assert delivery is not None
    assert delivery.status == DeliveryStatus.DELIVERED
    assert delivery.backend == "log"
    assert delivery.payload == {"job_id": str(job_id)}


@pytest.mark.asyncio
async def test_failure_is_recorded_not_raised(db_session: AsyncSession) -> None:
    delivery = await notifications.notify(
        db_session, uuid.uuid4(), notifications.JOB_COMPLETED, {}, notifier=_FailingNotifier()
    )
    assert delivery.status == DeliveryStatus.FAILED
    assert "delivery service down" in delivery.last_error


@pytest.mark.asyncio
async def test_missing_recipient_is_skipped(db_session: AsyncSession) -> None:
    assert await notifications.notify(db_session, None, notifications.JOB_CANCELLED) is None
    await notifications.notify_many(db_session, [None, uuid.uuid4()], notifications.JOB_CANCELLED)
    rows = (await db_session.execute(select(NotificationDelivery))).scalars().all()
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_webhook_notifier_signs_payload() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202)

    notifier = notifications.WebhookNotifier("https://notify.test/send", "shh", 5)
    transport = httpx.MockTransport(handler)
    original = httpx.AsyncClient

    def _client(**kwargs):  # type: ignore[no-untyped-def]
        return original(transport=transport, **kwargs)

    with pytest.MonkeyPatch.context() as mp:
        mp.setattr(notifications.httpx, "AsyncClient", _client)
        user_id = uuid.uuid4()
        await notifier.send(user_id, notifications.BID_RECEIVED, {"price": 900})

    request = seen[0]
    body = request.content
    assert json.loads(body) == {
        "user_id": str(user_id), "template_id": "bid.received", "metadata": {"price": 900},
    }
    assert verify_signature("shh", request.headers["X-Signature"], request.headers["X-Timestamp"], body)


def test_get_notifier_by_backend(monkeypatch: pytest.MonkeyPatch) -> None:
    assert isinstance(notifications.get_notifier(), notifications.LogNotifier)
    monkeypatch.setattr(settings, "notification_backend", "webhook")
    monkeypatch.setattr(settings, "notification_webhook_url", "https://notify.test/send")
    assert isinstance(notifications.get_notifier(), notifications.WebhookNotifier)
