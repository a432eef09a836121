"""Notification dispatch.

Supports two backends:
- Log-only (development / testing): logs the notification instead of sending
- Webhook via httpx (production): POSTs a signed JSON payload to the
  delivery service, which owns email/SMS/push fan-out

Set NOTIFICATION_BACKEND=webhook and NOTIFICATION_WEBHOOK_URL for production.

Notifications are fire-and-forget: they are sent after the business
transaction commits, and a failure is logged, recorded, and never raised.
"""

import json
import logging
import uuid
from datetime import UTC, datetime
from typing import Protocol

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.notification import DeliveryStatus, NotificationDelivery
from app.utils.crypto import sign_payload

logger = logging.getLogger(__name__)

# Template ids understood by the delivery service.
SOFT_LOCK_STARTED = "job.soft_locked"
SOFT_LOCK_EXPIRED = "job.soft_lock_expired"
SOFT_LOCK_CONFIRMED = "job.soft_lock_confirmed"
PAYMENT_EXPIRED = "job.payment_expired"
PAYMENT_CAPTURED = "payment.captured"
PAYMENT_FAILED = "payment.failed"
PAYMENT_REFUNDED = "payment.refunded"
JOB_STARTED = "job.started"
COMPLETION_REQUESTED = "job.completion_requested"
COMPLETION_REJECTED = "job.completion_rejected"
JOB_COMPLETED = "job.completed"
JOB_CANCELLED = "job.cancelled"
BID_RECEIVED = "bid.received"
BID_COUNTERED = "bid.countered"
BID_REJECTED = "bid.rejected"
WARRANTY_ISSUE_REPORTED = "warranty.issue_reported"
WARRANTY_RESOLVED = "warranty.resolved"
WARRANTY_RELEASED = "warranty.released"
ESCROW_RULED = "payment.escrow_ruled"


class Notifier(Protocol):
    name: str

    async def send(self, user_id: uuid.UUID, template_id: str, metadata: dict) -> None: ...


class LogNotifier:
    """Development notifier: logs instead of sending."""

    name = "log"

    async def send(self, user_id: uuid.UUID, template_id: str, metadata: dict) -> None:
        logger.info("NOTIFY user=%s template=%s %s", user_id, template_id, metadata)


class WebhookNotifier:
    """Production notifier: signed POST to the delivery service."""

    name = "webhook"

    def __init__(self, url: str, secret: str, timeout: float) -> None:
        self.url = url
        self.secret = secret
        self.timeout = timeout

    async def send(self, user_id: uuid.UUID, template_id: str, metadata: dict) -> None:
        body = json.dumps(
            {"user_id": str(user_id), "template_id": template_id, "metadata": metadata},
            default=str,
        )
        timestamp = datetime.now(UTC).isoformat()
        headers = {
            "Content-Type": "application/json",
            "X-Timestamp": timestamp,
            "X-Signature": sign_payload(self.secret, timestamp, body),
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, content=body, headers=headers)
            response.raise_for_status()


def get_notifier() -> Notifier:
    if settings.notification_backend == "webhook":
        return WebhookNotifier(
            settings.notification_webhook_url,
            settings.notification_webhook_secret,
            settings.notification_timeout_seconds,
        )
    return LogNotifier()


async def notify(
    db: AsyncSession,
    user_id: uuid.UUID | None,
    template_id: str,
    metadata: dict | None = None,
    notifier: Notifier | None = None,
) -> NotificationDelivery | None:
    """Send one notification and record the attempt. Never raises."""
    if user_id is None:
        return None
    notifier = notifier or get_notifier()
    payload = {k: str(v) if isinstance(v, uuid.UUID) else v for k, v in (metadata or {}).items()}
    delivery = NotificationDelivery(
        delivery_id=uuid.uuid4(),
        user_id=user_id,
        template_id=template_id,
        payload=payload,
        backend=notifier.name,
        status=DeliveryStatus.PENDING,
        attempts=1,
    )
    try:
        await notifier.send(user_id, template_id, payload)
        delivery.status = DeliveryStatus.DELIVERED
    except Exception as exc:
        logger.exception("Notification %s to %s failed", template_id, user_id)
        delivery.status = DeliveryStatus.FAILED
        delivery.last_error = str(exc)[:500]

    try:
        db.add(delivery)
        await db.commit()
    except Exception:
        logger.exception("Could not record notification delivery %s", delivery.delivery_id)
        await db.rollback()
        return None
    return delivery


async def notify_many(
    db: AsyncSession,
    user_ids: list[uuid.UUID | None],
    template_id: str,
    metadata: dict | None = None,
) -> None:
    for user_id in user_ids:
        await notify(db, user_id, template_id, metadata)
