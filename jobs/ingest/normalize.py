import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

RATING_MAP = {
    "ONE": 1,
    "TWO": 2,
    "THREE": 3,
    "FOUR": 4,
    "FIVE": 5,
}
DEFAULT_RATING = 3

_FRACTION = re.compile(r"\.(\d{6})\d+")


def map_star_rating(value: Any) -> int:
    """Provider five-level enum -> 1..5. Anything unrecognised is a 3."""
    if isinstance(value, str):
        return RATING_MAP.get(value.strip().upper(), DEFAULT_RATING)
    return DEFAULT_RATING


def _to_aware_utc(dt: Optional[datetime]) -> datetime:
    if dt is None:
        return datetime.now(timezone.utc)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Optional[str]) -> datetime:
    """
    RFC 3339 timestamp ("2024-03-01T10:15:30.123456789Z") to aware UTC.
    Unparseable or missing values fall back to now.
    """
    if not value or not isinstance(value, str):
        return _to_aware_utc(None)
    text = _FRACTION.sub(r".\1", value.strip())
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return _to_aware_utc(datetime.fromisoformat(text))
    except ValueError:
        return _to_aware_utc(None)


def external_review_id(raw: Dict[str, Any]) -> Optional[str]:
    # name is accounts/{accountId}/locations/{locationId}/reviews/{reviewId}
    name = raw.get("name")
    if name:
        return str(name).rstrip("/").split("/")[-1] or None
    review_id = raw.get("reviewId")
    return str(review_id) if review_id else None


def normalize_google_business_review(
    raw: Dict[str, Any],
    business_id: uuid.UUID,
    source_id: uuid.UUID,
    user_id: uuid.UUID,
    source_platform: str,
    max_text_chars: int = 10000,
    max_name_chars: int = 200,
) -> Dict[str, Any]:
    reviewer = raw.get("reviewer") or {}
    reviewer_name = (reviewer.get("displayName") or "").strip() or "Anonymous"

    return {
        "business_id": business_id,
        "source_id": source_id,
        "user_id": user_id,
        "source_platform": source_platform,
        "external_review_id": external_review_id(raw),
        "reviewer_name": reviewer_name[:max_name_chars],
        "rating": map_star_rating(raw.get("starRating")),
        "review_text": (raw.get("comment") or "").strip()[:max_text_chars],
        "review_date": parse_timestamp(raw.get("createTime")),
        "status": "pending",
        "sentiment": None,
    }
