"""Review endpoints."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.actor import Actor, get_actor
from app.database import get_db
from app.schemas.review import ReviewCreate, ReviewResponse
from app.services import review as review_service

router = APIRouter(tags=["reviews"])


@router.post("/jobs/{job_id}/reviews", response_model=ReviewResponse, status_code=201)
async def submit_review(
    job_id: uuid.UUID,
    data: ReviewCreate,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> ReviewResponse:
    """Submit a review for a completed job."""
    review = (await review_service.submit_review(db, job_id, actor, data)).unwrap()
    return ReviewResponse.model_validate(review)


@router.get("/users/{user_id}/reviews", response_model=list[ReviewResponse])
async def get_user_reviews(
    user_id: uuid.UUID,
    limit: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> list[ReviewResponse]:
    """Reviews received by a dealer or technician."""
    reviews = await review_service.list_reviews_for(db, user_id, limit)
    return [ReviewResponse.model_validate(r) for r in reviews]
