from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy import func, text
from sqlalchemy.orm import Session

from apps.api.app.auth import CurrentUser, get_current_user
from apps.api.app.db import SessionLocal, get_db, utc_now
from apps.api.app.errors import AccessDenied
from apps.api.app.models import Review, GeneratedResponse, SourceConnection, OAuthState

router = APIRouter()


@router.get("/ops/health")
def ops_health() -> Dict[str, Any]:
    """
    Basic liveness + DB connectivity.
    """
    with SessionLocal() as db:
        db.execute(text("SELECT 1"))
    return {
        "status": "ok",
        "time_utc": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/ops/stats")
def ops_stats(
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """
    Cross-tenant observability (admins only):
    - reviews by status, responses by approval status
    - backlog (reviews not yet analyzed)
    - connections by status, live vs. stale OAuth states
    - freshness (latest review / response)
    """
    if not user.is_admin:
        raise AccessDenied()

    reviews_by_status = dict(db.query(Review.status, func.count(Review.id)).group_by(Review.status).all())
    responses_by_status = dict(
        db.query(GeneratedResponse.approval_status, func.count(GeneratedResponse.id))
        .group_by(GeneratedResponse.approval_status)
        .all()
    )
    connections_by_status = dict(
        db.query(SourceConnection.status, func.count(SourceConnection.id)).group_by(SourceConnection.status).all()
    )

    # backlog: reviews that don't have a response yet
    backlog = (
        db.query(func.count(Review.id))
        .outerjoin(GeneratedResponse, GeneratedResponse.review_id == Review.id)
        .filter(GeneratedResponse.id.is_(None))
        .scalar()
    )

    now = utc_now()
    live_states = (
        db.query(func.count(OAuthState.id))
        .filter(OAuthState.used.is_(False), OAuthState.expires_at > now)
        .scalar()
    )
    all_states = db.query(func.count(OAuthState.id)).scalar()

    last_review_at = db.query(func.max(Review.created_at)).scalar()
    last_response_at = db.query(func.max(GeneratedResponse.created_at)).scalar()

    return {
        "time_utc": now.isoformat(),
        "totals": {
            "reviews": int(sum(reviews_by_status.values())),
            "responses": int(sum(responses_by_status.values())),
            "unanalyzed_backlog": int(backlog or 0),
        },
        "reviews_by_status": {k: int(v) for k, v in reviews_by_status.items()},
        "responses_by_approval": {k: int(v) for k, v in responses_by_status.items()},
        "connections_by_status": {k: int(v) for k, v in connections_by_status.items()},
        "oauth_states": {
            "live": int(live_states or 0),
            "purgeable": int((all_states or 0) - (live_states or 0)),
        },
        "freshness": {
            "last_review_at": last_review_at.isoformat() if last_review_at else None,
            "last_response_at": last_response_at.isoformat() if last_response_at else None,
        },
    }
