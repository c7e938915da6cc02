import logging
from typing import Optional

from sqlalchemy import func
from sqlmodel import Session, select

from .errors import Forbidden, NotFound, Validation
from .models import RentalRequest, RentalStatus, Review, ReviewSummary, Tool, utcnow

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5


def has_completed_rental(session: Session, tool_id: int, reviewer_id: int) -> bool:
    rental = session.exec(
        select(RentalRequest)
        .where(RentalRequest.tool_id == tool_id)
        .where(RentalRequest.renter_id == reviewer_id)
        .where(RentalRequest.status == RentalStatus.completed)
    ).first()
    return rental is not None


def submit_review(
    session: Session,
    tool_id: int,
    reviewer_id: int,
    rating: int,
    comment: Optional[str] = None,
) -> Review:
    """Create or overwrite the reviewer's review of a tool.

    Only renters holding at least one completed rental of the tool may
    review it. One row per (tool, reviewer): resubmitting replaces rating,
    comment and timestamp.
    """
    if (
        isinstance(rating, bool)
        or not isinstance(rating, int)
        or not MIN_RATING <= rating <= MAX_RATING
    ):
        raise Validation(f"Rating must be {MIN_RATING} to {MAX_RATING}")

    if not session.get(Tool, tool_id):
        raise NotFound("Tool not found")

    if not has_completed_rental(session, tool_id, reviewer_id):
        raise Forbidden(
            "You can review only after the rental is completed (returned + confirmed)."
        )

    review = session.exec(
        select(Review)
        .where(Review.tool_id == tool_id)
        .where(Review.reviewer_id == reviewer_id)
    ).first()
    if review:
        review.rating = rating
        review.comment = comment
        review.created_at = utcnow()
    else:
        review = Review(
            tool_id=tool_id, reviewer_id=reviewer_id, rating=rating, comment=comment
        )
    session.add(review)
    session.commit()
    session.refresh(review)
    logger.info(
        "Review %s saved: tool=%s reviewer=%s rating=%s",
        review.id,
        tool_id,
        reviewer_id,
        rating,
    )
    return review


def list_reviews(session: Session, tool_id: int) -> list[Review]:
    return list(
        session.exec(
            select(Review)
            .where(Review.tool_id == tool_id)
            .order_by(Review.created_at.desc(), Review.id.desc())
        ).all()
    )


def review_summary(session: Session, tool_id: int) -> ReviewSummary:
    avg_rating, review_count = session.exec(
        select(func.avg(Review.rating), func.count(Review.id)).where(
            Review.tool_id == tool_id
        )
    ).one()
    return ReviewSummary(
        avg_rating=float(avg_rating or 0), review_count=int(review_count or 0)
    )
