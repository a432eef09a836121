"""Review model for post-job ratings."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, Enum, ForeignKey, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, UTCDateTime, utcnow


class ReviewRole(enum.Enum):
    DEALER_REVIEWING_TECHNICIAN = "dealer_reviewing_technician"
    TECHNICIAN_REVIEWING_DEALER = "technician_reviewing_dealer"


class JobReview(Base):
    __tablename__ = "job_reviews"
    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_job_reviews_rating"),
        UniqueConstraint("job_id", "reviewer_id", name="uq_job_reviews_job_reviewer"),
    )

    review_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("job_posts.job_id", ondelete="RESTRICT"), nullable=False
    )
    reviewer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    reviewee_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    role: Mapped[ReviewRole] = mapped_column(
        Enum(ReviewRole, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    # A complaint counts against the reviewee's trust score.
    is_complaint: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
