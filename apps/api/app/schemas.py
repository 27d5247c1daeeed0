import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, HttpUrl

from apps.api.app.config import settings


class EnableSourceReq(BaseModel):
    location_id: Optional[str] = Field(default=None, max_length=256)


class LocationReq(BaseModel):
    location_id: str = Field(min_length=1, max_length=256)
    account_id: Optional[str] = Field(default=None, min_length=1, max_length=256)


class ApiKeyConnectReq(BaseModel):
    api_key: str = Field(min_length=1, max_length=512)
    api_secret: Optional[str] = Field(default=None, max_length=512)


class UrlConnectReq(BaseModel):
    url: HttpUrl


class ManualReviewReq(BaseModel):
    source_id: Optional[uuid.UUID] = None
    reviewer_name: str = Field(min_length=1, max_length=settings.max_reviewer_name_chars)
    rating: int = Field(ge=1, le=5)
    review_text: str = Field(default="", max_length=settings.max_review_chars)
    review_date: Optional[datetime] = None


class EditResponseReq(BaseModel):
    response_text: str = Field(min_length=1, max_length=settings.max_response_chars)
    edit_reason: Optional[str] = Field(default=None, max_length=1000)
