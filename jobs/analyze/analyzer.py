import argparse
import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from apps.api.app.config import settings
from apps.api.app.db import SessionLocal, engine
from apps.api.app.errors import ReviewDeskError, ResponseConflict, ProviderError
from apps.api.app.models import (
    Base, Review, GeneratedResponse, ReviewStatus, ApprovalStatus, Sentiment,
)
from jobs.analyze.llm_gateway import ChatGateway, PROMPTS_DIR, render_prompt

logger = logging.getLogger(__name__)

SENTIMENT_LABELS = {s.value for s in Sentiment}

# salutation placeholders models like to leave behind
_PLACEHOLDER = re.compile(
    r"\[(?:customer|reviewer|guest|client)?\s*name\]|\{\{?\s*(?:customer_|reviewer_)?name\s*\}?\}|<name>",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class Draft:
    sentiment: str
    response_text: str
    model: str


def parse_sentiment(content: str) -> str:
    """First word of the model answer, if it is a known label; neutral otherwise."""
    if not content:
        return Sentiment.NEUTRAL.value
    first = re.sub(r"[^a-z]", "", content.split()[0].lower())
    if first in SENTIMENT_LABELS:
        return first
    logger.warning("Unexpected sentiment label %r, defaulting to neutral", content[:40])
    return Sentiment.NEUTRAL.value


def personalize(text: str, reviewer_name: str) -> str:
    """Put the reviewer's real name in place of any placeholder and open with 'Dear <name>'."""
    name = (reviewer_name or "").strip() or "Customer"
    text = _PLACEHOLDER.sub(lambda _m: name, (text or "").strip())
    # "Dear Jane" must not pass for "Dear Janet"
    if not re.match(rf"dear {re.escape(name)}(?![\w-])", text, re.IGNORECASE):
        text = f"Dear {name},\n\n{text}"
    return text


def classify_sentiment(gateway: ChatGateway, review: Review) -> str:
    context = {"rating": review.rating, "review_text": review.review_text}
    content = gateway.complete(
        system=render_prompt(PROMPTS_DIR / "sentiment_system.jinja", context),
        user=render_prompt(PROMPTS_DIR / "sentiment_user.jinja", context),
        max_tokens=10,
        temperature=0.0,
    )
    return parse_sentiment(content)


def draft_reply(gateway: ChatGateway, review: Review, sentiment: str) -> str:
    context = {
        "business_name": review.business.name if review.business else "our business",
        "reviewer_name": review.reviewer_name,
        "rating": review.rating,
        "sentiment": sentiment,
        "review_text": review.review_text,
    }
    content = gateway.complete(
        system=render_prompt(PROMPTS_DIR / "reply_system.jinja", context),
        user=render_prompt(PROMPTS_DIR / "reply_user.jinja", context),
        temperature=0.6,
    )
    if not content:
        raise ProviderError("AI service returned an empty response")
    return personalize(content, review.reviewer_name)[: settings.max_response_chars]


def generate_draft(gateway: ChatGateway, review: Review) -> Draft:
    sentiment = classify_sentiment(gateway, review)
    text = draft_reply(gateway, review, sentiment)
    return Draft(sentiment=sentiment, response_text=text, model=gateway.model)


def store_draft(
    db: Session,
    review: Review,
    draft: Draft,
    replacing: Optional[GeneratedResponse] = None,
) -> GeneratedResponse:
    """
    Persist sentiment + status on the review and insert the pending response,
    optionally deleting the one it replaces, all in one transaction.
    """
    if replacing is not None:
        db.delete(replacing)
        # the delete has to reach the table before the insert (review_id is unique)
        db.flush()
        db.expire(review, ["response"])

    review.sentiment = draft.sentiment
    review.status = ReviewStatus.RESPONDED.value
    response = GeneratedResponse(
        review_id=review.id,
        response_text=draft.response_text,
        approval_status=ApprovalStatus.PENDING.value,
        ai_model_used=draft.model,
    )
    db.add(response)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ResponseConflict("This review already has a response") from e

    db.refresh(review)
    return response


def analyze_review(db: Session, gateway: ChatGateway, review: Review) -> GeneratedResponse:
    """Classify, draft and store. A review that already has a response is refused."""
    if review.response is not None:
        raise ResponseConflict("This review already has a response")

    logger.info("Analyzing review=%s", review.id)
    draft = generate_draft(gateway, review)
    response = store_draft(db, review, draft)
    logger.info("Analysis complete for review=%s sentiment=%s", review.id, draft.sentiment)
    return response


def select_unanalyzed(db: Session, limit: int = 25) -> List[Review]:
    """Reviews with no generated response yet, newest first."""
    subq = select(GeneratedResponse.review_id)
    stmt = (
        select(Review)
        .where(~Review.id.in_(subq))
        .order_by(Review.created_at.desc())
        .limit(limit)
    )
    return db.execute(stmt).scalars().all()


def main(batch_size: int = 25) -> None:
    Base.metadata.create_all(bind=engine)
    gateway = ChatGateway(
        settings.ai_api_url, settings.ai_api_key, settings.ai_model, timeout=settings.ai_timeout_seconds
    )

    analyzed = 0
    failed = 0

    with SessionLocal() as db:
        reviews = select_unanalyzed(db, limit=batch_size)

        for r in reviews:
            try:
                analyze_review(db, gateway, r)
                analyzed += 1
            except ReviewDeskError as e:
                db.rollback()
                failed += 1
                logger.error("Analysis failed for review=%s: %s (%s)", r.id, e.message, e.kind)
                if e.kind in ("rate_limited", "quota_exhausted", "configuration_error"):
                    break

    print(f"Selected={len(reviews)} Analyzed={analyzed} Failed={failed}")


if __name__ == "__main__":
    p = argparse.ArgumentParser()
    p.add_argument("--batch", type=int, default=25)
    args = p.parse_args()

    logging.basicConfig(level=settings.log_level)
    main(batch_size=args.batch)
