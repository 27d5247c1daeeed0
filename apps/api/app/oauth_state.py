"""
OAuth state ledger.

A state token is an opaque random value bound server-side to the
(user, business, source) that started the authorization. It can be
consumed once, and never after it expires.
"""
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update, delete, or_
from sqlalchemy.orm import Session

from apps.api.app.db import utc_now, as_utc
from apps.api.app.errors import InvalidState, ExpiredState
from apps.api.app.models import OAuthState

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 600


@dataclass(frozen=True)
class BoundState:
    user_id: uuid.UUID
    business_id: uuid.UUID
    source_id: uuid.UUID


def issue_state(
    db: Session,
    user_id: uuid.UUID,
    business_id: uuid.UUID,
    source_id: uuid.UUID,
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
    now: Optional[datetime] = None,
) -> str:
    now = now or utc_now()
    token = secrets.token_urlsafe(32)
    db.add(
        OAuthState(
            state_token=token,
            user_id=user_id,
            business_id=business_id,
            source_id=source_id,
            expires_at=now + timedelta(seconds=ttl_seconds),
            used=False,
        )
    )
    db.commit()
    logger.info("Issued OAuth state for user=%s business=%s source=%s", user_id, business_id, source_id)
    return token


def consume_state(db: Session, state_token: str, now: Optional[datetime] = None) -> BoundState:
    """
    Mark the state used and return what it was bound to.

    The check-and-set is a single conditional UPDATE, so two concurrent
    callbacks carrying the same state cannot both succeed.
    """
    now = now or utc_now()
    if not state_token:
        raise InvalidState()

    res = db.execute(
        update(OAuthState)
        .where(
            OAuthState.state_token == state_token,
            OAuthState.used.is_(False),
            OAuthState.expires_at > now,
        )
        .values(used=True)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    row = db.execute(
        select(OAuthState)
        .where(OAuthState.state_token == state_token)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()

    if res.rowcount != 1:
        # lost: work out why, for the log and the message
        if row is not None and not row.used and as_utc(row.expires_at) <= now:
            logger.warning("OAuth state expired (issued for business=%s)", row.business_id)
            raise ExpiredState()
        logger.warning("OAuth state unknown or already used")
        raise InvalidState()

    return BoundState(user_id=row.user_id, business_id=row.business_id, source_id=row.source_id)


def purge_expired_states(db: Session, now: Optional[datetime] = None) -> int:
    """Delete states that are used or past their expiry. Returns the number removed."""
    now = now or utc_now()
    res = db.execute(
        delete(OAuthState)
        .where(or_(OAuthState.used.is_(True), OAuthState.expires_at <= now))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return int(res.rowcount or 0)
