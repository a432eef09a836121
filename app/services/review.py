"""Review business logic."""

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.actor import Actor
from app.models.job import JobStatus
from app.models.party import ActorRole, UserType
from app.models.review import JobReview, ReviewRole
from app.models.trust import TrustChangeType
from app.schemas.review import ReviewCreate
from app.services.outcome import Outcome, Rejection
from app.services.state_machine import load_job
from app.services.trust import apply_recalculation

logger = logging.getLogger(__name__)


async def _already_reviewed(db: AsyncSession, job_id: uuid.UUID, reviewer_id: uuid.UUID) -> bool:
    existing = await db.execute(
        select(JobReview.review_id).where(
            JobReview.job_id == job_id,
            JobReview.reviewer_id == reviewer_id,
        )
    )
    return existing.first() is not None


async def submit_review(
    db: AsyncSession,
    job_id: uuid.UUID,
    actor: Actor,
    data: ReviewCreate,
) -> Outcome[JobReview]:
    """Submit a review for a completed job. Each party can review the other once."""
    if not 1 <= data.rating <= 5:
        return Outcome.reject(Rejection.INVALID, "Rating must be between 1 and 5")

    job = await load_job(db, job_id)
    if job is None:
        return Outcome.reject(Rejection.NOT_FOUND, "Job not found")
    if job.status != JobStatus.COMPLETED:
        return Outcome.reject(Rejection.CONFLICT, "Can only review completed jobs")

    # Determine reviewer/reviewee and role
    if actor.role == ActorRole.DEALER and actor.actor_id == job.dealer_id:
        reviewee_id = job.assigned_technician_id
        reviewee_type = UserType.TECHNICIAN
        role = ReviewRole.DEALER_REVIEWING_TECHNICIAN
    elif actor.role == ActorRole.TECHNICIAN and actor.actor_id == job.assigned_technician_id:
        reviewee_id = job.dealer_id
        reviewee_type = UserType.DEALER
        role = ReviewRole.TECHNICIAN_REVIEWING_DEALER
    else:
        return Outcome.reject(Rejection.FORBIDDEN, "Only parties to the job can leave reviews")

    if await _already_reviewed(db, job_id, actor.actor_id):
        return Outcome.reject(Rejection.CONFLICT, "You have already reviewed this job")

    review = JobReview(
        review_id=uuid.uuid4(),
        job_id=job_id,
        reviewer_id=actor.actor_id,
        reviewee_id=reviewee_id,
        role=role,
        rating=data.rating,
        is_complaint=data.is_complaint,
        comment=data.comment,
    )
    db.add(review)
    try:
        await db.flush()
    except IntegrityError:
        # A concurrent submission by the same reviewer committed first.
        await db.rollback()
        logger.info("Duplicate review by %s on job %s", actor.actor_id, job_id)
        return Outcome.reject(Rejection.CONFLICT, "You have already reviewed this job")

    change_type = (
        TrustChangeType.COMPLAINT_IMPACT if data.is_complaint else TrustChangeType.RATING_IMPACT
    )
    await apply_recalculation(
        db, reviewee_id, reviewee_type, change_type,
        f"{data.rating}-star review on job {job.job_number}",
    )

    await db.commit()
    await db.refresh(review)
    return Outcome.success(review)


async def list_reviews_for(db: AsyncSession, user_id: uuid.UUID, limit: int = 50) -> list[JobReview]:
    result = await db.execute(
        select(JobReview)
        .where(JobReview.reviewee_id == user_id)
        .order_by(JobReview.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
