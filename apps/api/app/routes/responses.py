import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from apps.api.app.auth import CurrentUser, get_current_user, load_review, load_response
from apps.api.app.db import get_db
from apps.api.app.deps import get_gateway, get_reply_poster
from apps.api.app.lifecycle import (
    ReplyPoster, approve_response, edit_response, reject_response, regenerate_response, post_approved,
)
from apps.api.app.routes.reviews import response_to_dict, review_to_dict
from apps.api.app.schemas import EditResponseReq
from jobs.analyze.analyzer import analyze_review
from jobs.analyze.llm_gateway import ChatGateway

router = APIRouter()


@router.post("/reviews/{review_id}/analyze")
def analyze(
    review_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    gateway: ChatGateway = Depends(get_gateway),
    db: Session = Depends(get_db),
):
    review = load_review(db, user, review_id)
    response = analyze_review(db, gateway, review)
    return {
        "status": "success",
        "message": "Response generated",
        "sentiment": review.sentiment,
        "response": response_to_dict(response),
    }


@router.post("/responses/{response_id}/approve")
def approve(
    response_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    poster: ReplyPoster = Depends(get_reply_poster),
    db: Session = Depends(get_db),
):
    """
    Approval and posting are reported separately: a failed post still
    returns 200 with the approval recorded and post_error filled in.
    """
    response = load_response(db, user, response_id)
    outcome = approve_response(db, response, poster)

    if outcome.posted:
        message = "Response approved and posted"
    elif outcome.post_error is not None:
        message = f"Response approved, but posting failed: {outcome.post_error.message}"
    else:
        message = "Response approved"
    return {
        "status": "success",
        "message": message,
        **outcome.to_dict(),
        "response": response_to_dict(outcome.response),
    }


@router.put("/responses/{response_id}")
def edit(
    response_id: uuid.UUID,
    req: EditResponseReq,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    response = load_response(db, user, response_id)
    response = edit_response(db, response, req.response_text, edited_by=user.id, reason=req.edit_reason)
    return {
        "status": "success",
        "message": "Response updated and awaiting approval",
        "response": response_to_dict(response),
    }


@router.post("/responses/{response_id}/reject")
def reject(
    response_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    response = reject_response(db, load_response(db, user, response_id))
    return {
        "status": "success",
        "message": "Response rejected",
        "response": response_to_dict(response),
    }


@router.post("/responses/{response_id}/regenerate")
def regenerate(
    response_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    gateway: ChatGateway = Depends(get_gateway),
    db: Session = Depends(get_db),
):
    rejected = load_response(db, user, response_id)
    review = rejected.review
    response = regenerate_response(db, gateway, review, rejected)
    return {
        "status": "success",
        "message": "New response generated",
        "response": response_to_dict(response),
    }


@router.post("/responses/{response_id}/post")
def post(
    response_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    poster: ReplyPoster = Depends(get_reply_poster),
    db: Session = Depends(get_db),
):
    response = load_response(db, user, response_id)
    review = post_approved(db, response, poster)
    return {
        "status": "success",
        "message": "Reply posted",
        "review": review_to_dict(review),
    }
