import logging
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .errors import ForbiddenError, InvalidRequestError, NotFoundError
from .models import TERMINAL_STATUSES, Booking, Company, Review, utcnow

logger = logging.getLogger(__name__)


def _refresh_company_rating(session: Session, company_id: int) -> None:
    ratings = session.exec(select(Review.rating).where(Review.reviewee_id == company_id)).all()
    company = session.get(Company, company_id)
    if company is None:
        return
    company.total_ratings = len(ratings)
    company.aggregated_rating = sum(ratings) / len(ratings) if ratings else None
    session.add(company)


def create(
    session: Session,
    booking_id: int,
    reviewer_id: int,
    rating: int,
    comment: Optional[str] = None,
) -> Review:
    """One review per company per booking, once the booking is over.

    The reviewee is whichever side of the booking the reviewer is not.
    """
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise InvalidRequestError("INVALID_RATING", "Rating must be an integer between 1 and 5")

    booking = session.get(Booking, booking_id)
    if not booking:
        raise NotFoundError("BOOKING_NOT_FOUND", "Booking not found")
    if reviewer_id not in (booking.requester_id, booking.provider_id):
        raise ForbiddenError("NOT_BOOKING_PARTY", "Only the companies in the booking can review it")
    if booking.status not in TERMINAL_STATUSES:
        raise InvalidRequestError("BOOKING_NOT_TERMINAL", "Booking must be completed, cancelled or rejected")

    existing = session.exec(
        select(Review).where((Review.booking_id == booking_id) & (Review.reviewer_id == reviewer_id))
    ).first()
    if existing:
        raise InvalidRequestError("REVIEW_ALREADY_EXISTS", "You have already reviewed this booking")

    reviewee_id = booking.provider_id if reviewer_id == booking.requester_id else booking.requester_id
    review = Review(
        booking_id=booking_id,
        reviewer_id=reviewer_id,
        reviewee_id=reviewee_id,
        rating=rating,
        comment=comment,
    )
    session.add(review)
    try:
        session.flush()
    except IntegrityError:
        session.rollback()
        raise InvalidRequestError("REVIEW_ALREADY_EXISTS", "You have already reviewed this booking")

    _refresh_company_rating(session, reviewee_id)
    session.commit()
    session.refresh(review)
    logger.info("Review %s: company %s rated company %s %d/5", review.id, reviewer_id, reviewee_id, rating)
    return review


def summarize(reviews: List[Review]) -> Dict:
    distribution = {str(star): 0 for star in range(1, 6)}
    for r in reviews:
        distribution[str(r.rating)] += 1
    total = len(reviews)
    return {
        "average_rating": round(sum(r.rating for r in reviews) / total, 2) if total else 0.0,
        "total_ratings": total,
        "distribution": distribution,
    }


def list_for_company(session: Session, company_id: int) -> List[Review]:
    if session.get(Company, company_id) is None:
        raise NotFoundError("COMPANY_NOT_FOUND", "Company not found")
    return session.exec(
        select(Review)
        .where(Review.reviewee_id == company_id)
        .order_by(Review.created_at.desc(), Review.id.desc())
    ).all()


def list_for_booking(session: Session, booking_id: int) -> List[Review]:
    return session.exec(
        select(Review).where(Review.booking_id == booking_id).order_by(Review.id)
    ).all()


def respond(session: Session, review_id: int, company_id: int, text: str) -> Review:
    review = session.get(Review, review_id)
    if not review:
        raise NotFoundError("REVIEW_NOT_FOUND", "Review not found")
    if review.reviewee_id != company_id:
        raise ForbiddenError("NOT_REVIEWEE", "Only the reviewed company can respond")
    if review.response:
        raise InvalidRequestError("RESPONSE_ALREADY_EXISTS", "This review already has a response")
    if not text or not text.strip():
        raise InvalidRequestError("RESPONSE_REQUIRED", "Response text is required")

    review.response = text.strip()
    review.responded_at = utcnow()
    session.add(review)
    session.commit()
    session.refresh(review)
    return review
