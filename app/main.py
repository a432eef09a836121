"""FastAPI application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.middleware import BodySizeLimitMiddleware, RequestLoggingMiddleware
from app.routers import bids, commission, jobs, payments, reviews, sweep, trust, warranty
from app.services.payment_processor import PaymentProcessorError

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def _recover_deadlines() -> None:
    """Re-index deadlines for soft-locked and unpaid jobs after a restart.

    ZADD is idempotent: re-adding an existing member with the same score is
    a no-op, so this is safe to call unconditionally at startup.
    """
    from sqlalchemy import select

    from app.database import async_session_factory
    from app.models.job import JobPost, JobStatus
    from app.redis import redis_client
    from app.services.deadline_queue import schedule_deadline

    try:
        async with async_session_factory() as db:
            result = await db.execute(
                select(JobPost).where(
                    JobPost.status.in_([JobStatus.SOFT_LOCKED, JobStatus.WAITING_FOR_PAYMENT])
                )
            )
            jobs_with_deadlines = list(result.scalars().all())

        redis = redis_client()
        try:
            for job in jobs_with_deadlines:
                if job.status == JobStatus.SOFT_LOCKED and job.soft_lock_expires_at:
                    await schedule_deadline(redis, "soft_lock", job.job_id, job.soft_lock_expires_at)
                elif job.payment_deadline_expires_at:
                    await schedule_deadline(
                        redis, "payment", job.job_id, job.payment_deadline_expires_at
                    )
        finally:
            await redis.aclose()
        logger.info("Deadline recovery: re-indexed %d jobs", len(jobs_with_deadlines))
    except Exception:
        logger.exception("Deadline recovery failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    sweep_task: asyncio.Task | None = None
    if settings.sweep_in_process:
        from app.services.sweep import run_sweep_loop
        await _recover_deadlines()
        sweep_task = asyncio.create_task(run_sweep_loop())

    yield

    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title="Service Marketplace Core",
    description="Job bidding, soft-lock, escrow, warranty and trust engine",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS - restrict to configured origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware (order matters, outermost first)
app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.max_request_bytes)
app.add_middleware(RequestLoggingMiddleware)

# Routers
app.include_router(jobs.router)
app.include_router(bids.router)
app.include_router(payments.router)
app.include_router(warranty.router)
app.include_router(trust.router)
app.include_router(reviews.router)
app.include_router(commission.router)
app.include_router(sweep.router)


@app.exception_handler(PaymentProcessorError)
async def payment_processor_error(request: Request, exc: PaymentProcessorError) -> JSONResponse:
    logger.error("Payment processor error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": "Payment processor unavailable"})


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
