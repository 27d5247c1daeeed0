import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.api.app.auth import CurrentUser, get_current_user, load_business, load_source
from apps.api.app.db import get_db, utc_now
from apps.api.app.errors import InvalidInput
from apps.api.app.models import Review, GeneratedResponse, ReviewStatus, Sentiment
from apps.api.app.schemas import ManualReviewReq

logger = logging.getLogger(__name__)

router = APIRouter()

MANUAL_PLATFORM = "Manual"


def response_to_dict(r: Optional[GeneratedResponse]) -> Optional[Dict[str, Any]]:
    if r is None:
        return None
    return {
        "id": str(r.id),
        "review_id": str(r.review_id),
        "response_text": r.response_text,
        "approval_status": r.approval_status,
        "ai_model_used": r.ai_model_used,
        "created_at": r.created_at.isoformat() if r.created_at else None,
        "updated_at": r.updated_at.isoformat() if r.updated_at else None,
    }


def review_to_dict(r: Review) -> Dict[str, Any]:
    return {
        "id": str(r.id),
        "business_id": str(r.business_id),
        "source_id": str(r.source_id) if r.source_id else None,
        "source_platform": r.source_platform,
        "external_review_id": r.external_review_id,
        "reviewer_name": r.reviewer_name,
        "rating": r.rating,
        "review_text": r.review_text,
        "review_date": r.review_date.isoformat() if r.review_date else None,
        "sentiment": r.sentiment,
        "status": r.status,
        "created_at": r.created_at.isoformat() if r.created_at else None,
        "response": response_to_dict(r.response),
    }


@router.get("/businesses/{business_id}/reviews")
def list_reviews(
    business_id: uuid.UUID,
    status: Optional[ReviewStatus] = None,
    sentiment: Optional[Sentiment] = None,
    source_id: Optional[uuid.UUID] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    business = load_business(db, user, business_id)
    stmt = (
        select(Review)
        .where(Review.business_id == business.id)
        .order_by(Review.review_date.desc().nulls_last(), Review.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    if status:
        stmt = stmt.where(Review.status == status.value)
    if sentiment:
        stmt = stmt.where(Review.sentiment == sentiment.value)
    if source_id:
        stmt = stmt.where(Review.source_id == source_id)
    rows = db.execute(stmt).scalars().all()
    return {
        "count": len(rows),
        "items": [review_to_dict(r) for r in rows],
    }


@router.post("/businesses/{business_id}/reviews", status_code=201)
def create_review(
    business_id: uuid.UUID,
    req: ManualReviewReq,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Manually entered review. It has no external id, so it can never be posted back."""
    business = load_business(db, user, business_id)
    source = load_source(db, req.source_id) if req.source_id else None

    name = req.reviewer_name.strip()
    if not name:
        raise InvalidInput("Reviewer name is required", details={"reviewer_name": "required"})

    review = Review(
        business_id=business.id,
        source_id=source.id if source else None,
        user_id=business.user_id,
        source_platform=source.display_name if source else MANUAL_PLATFORM,
        external_review_id=None,
        reviewer_name=name,
        rating=req.rating,
        review_text=req.review_text.strip(),
        review_date=req.review_date or utc_now(),
        status=ReviewStatus.PENDING.value,
    )
    db.add(review)
    db.commit()
    logger.info("Manual review=%s added to business=%s", review.id, business.id)
    return {
        "status": "success",
        "message": "Review added",
        "review": review_to_dict(review),
    }
