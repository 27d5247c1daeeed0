"""
Generated-response lifecycle and reply posting.

    NoResponse -> pending -> approved            (posted, or postable)
                  pending -> rejected -> (regenerate) -> pending (new record)

Editing always puts a response back to pending.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.api.app.config import settings
from apps.api.app.credentials import CredentialCipher, find_connection, resolve_credential
from apps.api.app.errors import (
    ReviewDeskError, InvalidInput, LocationNotConfigured, NotExternallySourced, NotSupported, ResponseConflict,
)
from apps.api.app.models import (
    Review, GeneratedResponse, ResponseEdit, EnabledSource, ApprovalStatus, ReviewStatus,
)
from apps.api.app.sources import profile_for
from jobs.analyze.analyzer import generate_draft, store_draft
from jobs.analyze.llm_gateway import ChatGateway
from jobs.ingest.sources.google_business import GoogleBusinessClient

logger = logging.getLogger(__name__)


@dataclass
class ApprovalOutcome:
    response: GeneratedResponse
    post_attempted: bool = False
    posted: bool = False
    post_error: Optional[ReviewDeskError] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approved": True,
            "post_attempted": self.post_attempted,
            "posted": self.posted,
            "post_error": self.post_error.to_dict() if self.post_error else None,
        }


@dataclass
class ReplyPoster:
    """What posting a reply needs besides the database."""
    review_client: GoogleBusinessClient
    oauth_client: Any
    cipher: CredentialCipher

    def post(self, db: Session, review: Review, text: str) -> Review:
        return post_reply(db, review, text, self.review_client, self.oauth_client, self.cipher)


def post_reply(
    db: Session,
    review: Review,
    text: str,
    review_client: GoogleBusinessClient,
    oauth_client,
    cipher: CredentialCipher,
) -> Review:
    # checked before anything touches the network
    if not review.external_review_id:
        raise NotExternallySourced()
    if not text or not text.strip():
        raise InvalidInput("Reply text is empty", details={"response_text": "required"})

    source = review.source
    profile = profile_for(source.name) if source else None
    if profile is None or not profile.can_reply:
        raise NotSupported("Replies cannot be posted to this source")

    connection = find_connection(db, review.business_id, review.source_id)
    token = resolve_credential(
        db, connection, oauth_client, cipher, skew_seconds=settings.token_refresh_skew_seconds
    )

    enabled = db.execute(
        select(EnabledSource).where(
            EnabledSource.business_id == review.business_id,
            EnabledSource.source_id == review.source_id,
        )
    ).scalar_one_or_none()
    location_id = enabled.location_id if enabled else None
    account_id = (connection.meta or {}).get("account_id")
    if not location_id or not account_id:
        raise LocationNotConfigured(f"{source.display_name} location not configured")

    review_client.update_reply(token, account_id, location_id, review.external_review_id, text)

    review.status = ReviewStatus.POSTED.value
    db.commit()
    logger.info("Posted reply for review=%s to %s", review.id, source.name)
    return review


def approve_response(db: Session, response: GeneratedResponse, poster: Optional[ReplyPoster] = None) -> ApprovalOutcome:
    """
    Approve, then post when the review's source takes replies. A failed post
    leaves the approval in place and is reported on the outcome.
    """
    if response.approval_status == ApprovalStatus.REJECTED.value:
        raise ResponseConflict("A rejected response has to be regenerated, not approved")

    response.approval_status = ApprovalStatus.APPROVED.value
    db.commit()
    outcome = ApprovalOutcome(response=response)

    review = response.review
    profile = profile_for(review.source.name) if review.source else None
    if poster is None or profile is None or not profile.can_reply:
        return outcome

    outcome.post_attempted = True
    try:
        poster.post(db, review, response.response_text)
        outcome.posted = True
    except ReviewDeskError as e:
        db.rollback()
        logger.warning("Approved response=%s but posting failed: %s", response.id, e.kind)
        outcome.post_error = e
    return outcome


def post_approved(db: Session, response: GeneratedResponse, poster: ReplyPoster) -> Review:
    """Manual post of an approved response, e.g. after an automatic post failed."""
    if response.approval_status != ApprovalStatus.APPROVED.value:
        raise ResponseConflict("Only an approved response can be posted")
    return poster.post(db, response.review, response.response_text)


def edit_response(
    db: Session,
    response: GeneratedResponse,
    new_text: str,
    edited_by: uuid.UUID,
    reason: Optional[str] = None,
) -> GeneratedResponse:
    if response.approval_status == ApprovalStatus.REJECTED.value:
        raise ResponseConflict("A rejected response has to be regenerated, not edited")

    text = (new_text or "").strip()
    if not text:
        raise InvalidInput("Response text is required", details={"response_text": "required"})
    if len(text) > settings.max_response_chars:
        raise InvalidInput(
            "Response text is too long",
            details={"response_text": f"at most {settings.max_response_chars} characters"},
        )

    db.add(
        ResponseEdit(
            response_id=response.id,
            edited_by=edited_by,
            previous_text=response.response_text,
            new_text=text,
            edit_reason=reason,
        )
    )
    response.response_text = text
    # an edited reply has to be looked at again before it can go out
    response.approval_status = ApprovalStatus.PENDING.value
    db.commit()
    return response


def reject_response(db: Session, response: GeneratedResponse) -> GeneratedResponse:
    if response.approval_status == ApprovalStatus.APPROVED.value and response.review.status == ReviewStatus.POSTED.value:
        raise ResponseConflict("This reply has already been posted")
    response.approval_status = ApprovalStatus.REJECTED.value
    db.commit()
    return response


def regenerate_response(
    db: Session,
    gateway: ChatGateway,
    review: Review,
    rejected: GeneratedResponse,
) -> GeneratedResponse:
    """
    Replace a rejected response with a fresh draft. The old record is deleted
    in the same transaction that stores the new one, so a failed AI call
    leaves the rejected response where it was.
    """
    if rejected.review_id != review.id:
        raise InvalidInput("Response does not belong to this review")
    if rejected.approval_status != ApprovalStatus.REJECTED.value:
        raise ResponseConflict("Only a rejected response can be regenerated")

    draft = generate_draft(gateway, review)
    response = store_draft(db, review, draft, replacing=rejected)
    logger.info("Regenerated response for review=%s (replaced %s)", review.id, rejected.id)
    return response
