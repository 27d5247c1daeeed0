import logging
import uuid
from dataclasses import dataclass

from fastapi import Header
from jose import jwt, JWTError
from sqlalchemy.orm import Session

from apps.api.app.config import settings
from apps.api.app.errors import AuthenticationRequired, AccessDenied, ConfigurationError, NotFound
from apps.api.app.models import Business, Source, Review, GeneratedResponse

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "HS256"


@dataclass(frozen=True)
class CurrentUser:
    id: uuid.UUID
    is_admin: bool = False

    def can_access(self, owner_id: uuid.UUID) -> bool:
        return self.is_admin or owner_id == self.id


def decode_token(token: str) -> CurrentUser:
    if not settings.jwt_secret:
        logger.error("JWT_SECRET not configured")
        raise ConfigurationError()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[TOKEN_ALGORITHM])
        user_id = uuid.UUID(str(payload["sub"]))
    except (JWTError, KeyError, ValueError):
        raise AuthenticationRequired("Invalid or expired token")
    return CurrentUser(id=user_id, is_admin=payload.get("role") == "admin")


def get_current_user(authorization: str = Header(default="")) -> CurrentUser:
    """Dependency: require a valid bearer token."""
    if not authorization or not authorization.strip().startswith("Bearer "):
        raise AuthenticationRequired()
    token = authorization.strip().split(None, 1)[-1]
    return decode_token(token)


def load_business(db: Session, user: CurrentUser, business_id: uuid.UUID) -> Business:
    business = db.get(Business, business_id)
    if business is None:
        raise NotFound("Business not found")
    if not user.can_access(business.user_id):
        logger.warning("User %s denied access to business %s", user.id, business_id)
        raise AccessDenied()
    return business


def load_source(db: Session, source_id: uuid.UUID) -> Source:
    source = db.get(Source, source_id)
    if source is None:
        raise NotFound("Source not found")
    return source


def load_review(db: Session, user: CurrentUser, review_id: uuid.UUID) -> Review:
    review = db.get(Review, review_id)
    if review is None:
        raise NotFound("Review not found")
    if not user.can_access(review.user_id):
        logger.warning("User %s denied access to review %s", user.id, review_id)
        raise AccessDenied()
    return review


def load_response(db: Session, user: CurrentUser, response_id: uuid.UUID) -> GeneratedResponse:
    response = db.get(GeneratedResponse, response_id)
    if response is None:
        raise NotFound("Response not found")
    if not user.can_access(response.review.user_id):
        logger.warning("User %s denied access to response %s", user.id, response_id)
        raise AccessDenied()
    return response
