import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    String, Text, Integer, Boolean, DateTime, UniqueConstraint, Index, ForeignKey, CheckConstraint, JSON, Uuid
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from apps.api.app.db import Base, utc_now
from typing import Optional, Dict, Any, List

JSONType = JSON().with_variant(JSONB(), "postgresql")


class ConnectionStatus(str, Enum):
    PENDING = "pending"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    RESPONDED = "responded"
    POSTED = "posted"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Business(Base):
    __tablename__ = "businesses"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)

    enabled_sources: Mapped[List["EnabledSource"]] = relationship(back_populates="business", cascade="all, delete-orphan")
    connections: Mapped[List["SourceConnection"]] = relationship(back_populates="business", cascade="all, delete-orphan")
    reviews: Mapped[List["Review"]] = relationship(back_populates="business", cascade="all, delete-orphan")


class Source(Base):
    __tablename__ = "sources"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(128), nullable=False)
    icon: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)


class EnabledSource(Base):
    __tablename__ = "enabled_sources"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    business_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False)
    source_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("sources.id"), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    # provider-specific location, e.g. the Google Business Profile location id
    location_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    business: Mapped["Business"] = relationship(back_populates="enabled_sources")
    source: Mapped["Source"] = relationship()

    __table_args__ = (
        UniqueConstraint("business_id", "source_id", name="uq_enabled_sources_business_source"),
    )


class SourceConnection(Base):
    __tablename__ = "source_connections"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    business_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False)
    source_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("sources.id"), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    connection_type: Mapped[str] = mapped_column(String(16), nullable=False)  # api_key/oauth/url
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ConnectionStatus.PENDING.value)

    encrypted_credentials: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    oauth_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    oauth_refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # "metadata" is reserved on declarative classes
    meta: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    business: Mapped["Business"] = relationship(back_populates="connections")
    source: Mapped["Source"] = relationship()

    __table_args__ = (
        UniqueConstraint("business_id", "source_id", name="uq_source_connections_business_source"),
        CheckConstraint("connection_type IN ('api_key', 'oauth', 'url')", name="ck_source_connections_type"),
        CheckConstraint("status IN ('pending', 'connected', 'disconnected')", name="ck_source_connections_status"),
    )


class OAuthState(Base):
    __tablename__ = "oauth_states"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    state_token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    business_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    source_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_oauth_states_expires_at", "expires_at"),
    )


class Review(Base):
    __tablename__ = "reviews"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    business_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False)
    source_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("sources.id"), nullable=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    source_platform: Mapped[str] = mapped_column(String(128), nullable=False)
    # null: entered locally, nothing to post back to
    external_review_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    reviewer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    review_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    review_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    sentiment: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ReviewStatus.PENDING.value)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    business: Mapped["Business"] = relationship(back_populates="reviews")
    source: Mapped[Optional["Source"]] = relationship()
    response: Mapped[Optional["GeneratedResponse"]] = relationship(
        back_populates="review", uselist=False, cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("business_id", "source_id", "external_review_id", name="uq_reviews_business_source_external"),
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_reviews_rating_range"),
        CheckConstraint("status IN ('pending', 'responded', 'posted')", name="ck_reviews_status"),
        Index("ix_reviews_business_created", "business_id", "created_at"),
    )


class GeneratedResponse(Base):
    __tablename__ = "generated_responses"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    # unique: at most one active response per review
    review_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False, unique=True)

    response_text: Mapped[str] = mapped_column(Text, nullable=False)
    approval_status: Mapped[str] = mapped_column(String(16), nullable=False, default=ApprovalStatus.PENDING.value)
    ai_model_used: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    review: Mapped["Review"] = relationship(back_populates="response")
    edits: Mapped[List["ResponseEdit"]] = relationship(
        back_populates="response", cascade="all, delete-orphan", order_by="ResponseEdit.created_at"
    )

    __table_args__ = (
        CheckConstraint("approval_status IN ('pending', 'approved', 'rejected')", name="ck_generated_responses_approval"),
    )


class ResponseEdit(Base):
    __tablename__ = "response_edits"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    response_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("generated_responses.id", ondelete="CASCADE"), nullable=False)
    edited_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    previous_text: Mapped[str] = mapped_column(Text, nullable=False)
    new_text: Mapped[str] = mapped_column(Text, nullable=False)
    edit_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)

    response: Mapped["GeneratedResponse"] = relationship(back_populates="edits")
