"""Payment endpoints: intent creation, processor webhook, payment ledger."""

import logging
import uuid

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.actor import Actor, get_actor, require_roles
from app.config import settings
from app.database import get_db
from app.models.party import ActorRole
from app.redis import get_redis
from app.schemas.payment import (
    EscrowRulingRequest,
    PaymentIntentRequest,
    PaymentResponse,
    WebhookEvent,
)
from app.services import escrow
from app.services.deadline_queue import cancel_deadline
from app.services.outcome import Rejection
from app.services.state_machine import load_job
from app.utils.crypto import is_timestamp_valid, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


@router.post("/jobs/{job_id}/payment-intent", response_model=PaymentResponse, status_code=201)
async def create_payment_intent(
    job_id: uuid.UUID,
    data: PaymentIntentRequest | None = None,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> PaymentResponse:
    """Open a processor intent for the locked price. Repeated calls return the pending intent."""
    amount = data.amount if data else None
    payment = (await escrow.create_payment_intent(db, job_id, actor, amount)).unwrap()
    return PaymentResponse.model_validate(payment)


@router.post("/payments/webhook")
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> dict:
    """Capture callbacks from the payment processor.

    Signed as HMAC-SHA256 over ``timestamp.body`` with the shared webhook
    secret. Replays of an already-applied capture are acknowledged without
    effect so the processor stops retrying.
    """
    body = await request.body()
    timestamp = request.headers.get("X-Timestamp", "")
    signature = request.headers.get("X-Signature", "")
    if not is_timestamp_valid(timestamp, settings.payment_webhook_max_age_seconds):
        raise HTTPException(status_code=401, detail="Stale or missing webhook timestamp")
    if not verify_signature(settings.payment_webhook_secret, signature, timestamp, body):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        event = WebhookEvent.model_validate_json(body)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False))

    if event.type == "capture.succeeded":
        outcome = await escrow.handle_capture_success(db, event.intent_id)
    else:
        outcome = await escrow.handle_capture_failure(db, event.intent_id, event.reason)

    if outcome.rejection == Rejection.ALREADY_DONE:
        return {"status": "duplicate", "intent_id": event.intent_id}
    payment = outcome.unwrap()
    if event.type == "capture.succeeded":
        await cancel_deadline(redis, "payment", payment.job_id)
    logger.info("Webhook %s applied to intent %s", event.type, event.intent_id)
    return {"status": "processed", "intent_id": event.intent_id, "payment_status": payment.status.value}


@router.get("/jobs/{job_id}/payments", response_model=list[PaymentResponse])
async def list_payments(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> list[PaymentResponse]:
    job = await load_job(db, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if not (
        actor.is_admin
        or (actor.role == ActorRole.DEALER and actor.actor_id == job.dealer_id)
        or (actor.role == ActorRole.TECHNICIAN and actor.actor_id == job.assigned_technician_id)
    ):
        raise HTTPException(status_code=403, detail="Not a party to this job")
    return [PaymentResponse.model_validate(p) for p in await escrow.list_payments(db, job_id)]


@router.post("/jobs/{job_id}/escrow-ruling", response_model=PaymentResponse)
async def rule_on_escrow(
    job_id: uuid.UUID,
    data: EscrowRulingRequest,
    actor: Actor = Depends(require_roles(ActorRole.ADMIN, ActorRole.SUPER_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> PaymentResponse:
    """Refund or release escrow still held on a job cancelled mid-work."""
    outcome = await escrow.rule_on_held_escrow(db, job_id, data.ruling, actor, data.note)
    return PaymentResponse.model_validate(outcome.unwrap())
