import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from sqlalchemy import select, delete
from sqlalchemy.orm import Session

from apps.api.app.auth import CurrentUser, get_current_user, load_business, load_source
from apps.api.app.config import settings
from apps.api.app.cooldown import SyncCooldown
from apps.api.app.credentials import (
    CredentialCipher, find_connection, get_connection, upsert_connection, disconnect,
)
from apps.api.app.db import get_db, insert_for, utc_now
from apps.api.app.deps import get_oauth_client, get_review_client, get_cipher, get_sync_cooldown
from apps.api.app.errors import InvalidInput, NotSupported, RateLimited
from apps.api.app.models import Source, EnabledSource, SourceConnection, ConnectionStatus
from apps.api.app.oauth import GoogleOAuthClient, start_authorization
from apps.api.app.schemas import EnableSourceReq, LocationReq, ApiKeyConnectReq, UrlConnectReq
from apps.api.app.sources import ConnectionType, SourceProfile, profile_for
from jobs.ingest.run_ingest import sync_reviews
from jobs.ingest.sources.google_business import GoogleBusinessClient

logger = logging.getLogger(__name__)

router = APIRouter()


def source_to_dict(s: Source) -> Dict[str, Any]:
    profile = profile_for(s.name)
    return {
        "id": str(s.id),
        "name": s.name,
        "display_name": s.display_name,
        "icon": s.icon,
        "connection_type": profile.connection_type.value if profile else None,
        "can_sync": bool(profile and profile.can_sync),
        "can_reply": bool(profile and profile.can_reply),
    }


def connection_to_dict(c: Optional[SourceConnection]) -> Optional[Dict[str, Any]]:
    # never expose tokens or the encrypted blob
    if c is None:
        return None
    meta = c.meta or {}
    return {
        "id": str(c.id),
        "business_id": str(c.business_id),
        "source_id": str(c.source_id),
        "connection_type": c.connection_type,
        "status": c.status,
        "has_credentials": bool(c.oauth_token or c.encrypted_credentials),
        "token_expires_at": c.token_expires_at.isoformat() if c.token_expires_at else None,
        "account_id": meta.get("account_id"),
        "url": meta.get("url"),
        "updated_at": c.updated_at.isoformat() if c.updated_at else None,
    }


def _find_enabled(db: Session, business_id: uuid.UUID, source_id: uuid.UUID) -> Optional[EnabledSource]:
    return db.execute(
        select(EnabledSource).where(
            EnabledSource.business_id == business_id,
            EnabledSource.source_id == source_id,
        )
    ).scalar_one_or_none()


def _require_profile(source: Source, connection_type: ConnectionType) -> SourceProfile:
    profile = profile_for(source.name)
    if profile is None:
        raise NotSupported(f"{source.display_name} is not a supported source")
    if profile.connection_type != connection_type:
        raise InvalidInput(
            f"{source.display_name} connects with {profile.connection_type.value}, not {connection_type.value}"
        )
    return profile


def _require_enabled(db: Session, business_id: uuid.UUID, source: Source) -> EnabledSource:
    enabled = _find_enabled(db, business_id, source.id)
    if enabled is None:
        raise InvalidInput(f"Enable {source.display_name} for this business before connecting it")
    return enabled


@router.get("/sources")
def list_sources(
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    rows = db.execute(select(Source).order_by(Source.display_name)).scalars().all()
    return {"count": len(rows), "items": [source_to_dict(s) for s in rows]}


@router.get("/businesses/{business_id}/sources")
def list_business_sources(
    business_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Catalog with this business's enablement, location and connection state."""
    business = load_business(db, user, business_id)
    enabled = {
        e.source_id: e
        for e in db.execute(select(EnabledSource).where(EnabledSource.business_id == business.id)).scalars()
    }
    connections = {
        c.source_id: c
        for c in db.execute(select(SourceConnection).where(SourceConnection.business_id == business.id)).scalars()
    }
    items = []
    for s in db.execute(select(Source).order_by(Source.display_name)).scalars():
        item = source_to_dict(s)
        item["enabled"] = s.id in enabled
        item["location_id"] = enabled[s.id].location_id if s.id in enabled else None
        item["connection"] = connection_to_dict(connections.get(s.id))
        items.append(item)
    return {"count": len(items), "items": items}


@router.post("/businesses/{business_id}/sources/{source_id}")
def enable_source(
    business_id: uuid.UUID,
    source_id: uuid.UUID,
    req: Optional[EnableSourceReq] = None,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    business = load_business(db, user, business_id)
    source = load_source(db, source_id)
    location_id = req.location_id if req else None

    now = utc_now()
    stmt = insert_for(db, EnabledSource).values(
        id=uuid.uuid4(),
        business_id=business.id,
        source_id=source.id,
        user_id=business.user_id,
        location_id=location_id,
        created_at=now,
        updated_at=now,
    )
    # a repeated enable keeps the stored location unless a new one is given
    if location_id:
        stmt = stmt.on_conflict_do_update(
            index_elements=["business_id", "source_id"],
            set_={"location_id": stmt.excluded.location_id, "updated_at": stmt.excluded.updated_at},
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=["business_id", "source_id"])
    db.execute(stmt)
    db.commit()

    enabled = _find_enabled(db, business.id, source.id)
    logger.info("Enabled source=%s for business=%s", source.name, business.id)
    return {
        "status": "success",
        "message": f"{source.display_name} enabled",
        "source_id": str(source.id),
        "location_id": enabled.location_id if enabled else None,
    }


@router.delete("/businesses/{business_id}/sources/{source_id}")
def disable_source(
    business_id: uuid.UUID,
    source_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    business = load_business(db, user, business_id)
    source = load_source(db, source_id)
    res = db.execute(
        delete(EnabledSource)
        .where(EnabledSource.business_id == business.id, EnabledSource.source_id == source.id)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.info("Disabled source=%s for business=%s removed=%s", source.name, business.id, res.rowcount)
    return {"status": "success", "message": f"{source.display_name} disabled"}


@router.put("/businesses/{business_id}/sources/{source_id}/location")
def set_location(
    business_id: uuid.UUID,
    source_id: uuid.UUID,
    req: LocationReq,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    business = load_business(db, user, business_id)
    source = load_source(db, source_id)
    enabled = _find_enabled(db, business.id, source.id)
    if enabled is None:
        raise InvalidInput(f"Enable {source.display_name} for this business first")

    connection = find_connection(db, business.id, source.id)
    if req.account_id and connection is None:
        raise InvalidInput(f"Connect {source.display_name} before setting its account")

    enabled.location_id = req.location_id
    if req.account_id:
        meta = dict(connection.meta or {})
        meta["account_id"] = req.account_id
        connection.meta = meta
    db.commit()

    return {
        "status": "success",
        "message": f"{source.display_name} location saved",
        "location_id": enabled.location_id,
        "account_id": (connection.meta or {}).get("account_id") if connection else None,
    }


@router.get("/businesses/{business_id}/sources/{source_id}/connection")
def get_source_connection(
    business_id: uuid.UUID,
    source_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    business = load_business(db, user, business_id)
    source = load_source(db, source_id)
    return connection_to_dict(get_connection(db, business.id, source.id))


@router.post("/businesses/{business_id}/sources/{source_id}/connect/api-key")
def connect_api_key(
    business_id: uuid.UUID,
    source_id: uuid.UUID,
    req: ApiKeyConnectReq,
    user: CurrentUser = Depends(get_current_user),
    cipher: CredentialCipher = Depends(get_cipher),
    db: Session = Depends(get_db),
):
    business = load_business(db, user, business_id)
    source = load_source(db, source_id)
    _require_profile(source, ConnectionType.API_KEY)
    _require_enabled(db, business.id, source)

    blob = cipher.encrypt({"api_key": req.api_key, "api_secret": req.api_secret})
    connection = upsert_connection(
        db,
        business_id=business.id,
        source_id=source.id,
        user_id=business.user_id,
        connection_type=ConnectionType.API_KEY.value,
        status=ConnectionStatus.CONNECTED.value,
        encrypted_credentials=blob,
        oauth_token=None,
        oauth_refresh_token=None,
        token_expires_at=None,
    )
    logger.info("API key connection saved for business=%s source=%s", business.id, source.name)
    return {
        "status": "success",
        "message": f"{source.display_name} connected",
        "connection": connection_to_dict(connection),
    }


@router.post("/businesses/{business_id}/sources/{source_id}/connect/url")
def connect_url(
    business_id: uuid.UUID,
    source_id: uuid.UUID,
    req: UrlConnectReq,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    business = load_business(db, user, business_id)
    source = load_source(db, source_id)
    _require_profile(source, ConnectionType.URL)
    _require_enabled(db, business.id, source)

    connection = upsert_connection(
        db,
        business_id=business.id,
        source_id=source.id,
        user_id=business.user_id,
        connection_type=ConnectionType.URL.value,
        status=ConnectionStatus.CONNECTED.value,
        encrypted_credentials=None,
        oauth_token=None,
        oauth_refresh_token=None,
        token_expires_at=None,
        meta={"url": str(req.url)},
    )
    logger.info("URL connection saved for business=%s source=%s", business.id, source.name)
    return {
        "status": "success",
        "message": f"{source.display_name} linked",
        "connection": connection_to_dict(connection),
    }


@router.post("/businesses/{business_id}/sources/{source_id}/connect/oauth")
def connect_oauth(
    business_id: uuid.UUID,
    source_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    client: GoogleOAuthClient = Depends(get_oauth_client),
    db: Session = Depends(get_db),
):
    business = load_business(db, user, business_id)
    source = load_source(db, source_id)
    # the connection belongs to the business owner even when an admin starts the flow
    auth_url = start_authorization(
        db,
        client,
        business,
        source,
        user_id=business.user_id,
        ttl_seconds=settings.oauth_state_ttl_seconds,
    )
    return {
        "status": "success",
        "message": f"Continue in the {source.display_name} window",
        "auth_url": auth_url,
    }


@router.delete("/businesses/{business_id}/sources/{source_id}/connection")
def disconnect_source(
    business_id: uuid.UUID,
    source_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    business = load_business(db, user, business_id)
    source = load_source(db, source_id)
    connection = disconnect(db, get_connection(db, business.id, source.id))
    return {
        "status": "success",
        "message": f"{source.display_name} disconnected",
        "connection": connection_to_dict(connection),
    }


@router.post("/businesses/{business_id}/sources/{source_id}/sync")
def sync_source(
    business_id: uuid.UUID,
    source_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    review_client: GoogleBusinessClient = Depends(get_review_client),
    oauth_client: GoogleOAuthClient = Depends(get_oauth_client),
    cipher: CredentialCipher = Depends(get_cipher),
    cooldown: SyncCooldown = Depends(get_sync_cooldown),
    db: Session = Depends(get_db),
):
    business = load_business(db, user, business_id)
    source = load_source(db, source_id)

    key = (business.id, source.id)
    left = cooldown.remaining(key)
    if left > 0:
        raise RateLimited(
            f"{source.display_name} was synced recently. Please wait before syncing again.",
            retry_after=int(left) + 1,
        )

    try:
        result = sync_reviews(db, business, source, review_client, oauth_client, cipher)
    except RateLimited:
        cooldown.start(key)
        raise
    cooldown.start(key)

    if result.new_reviews:
        message = f"Imported {result.new_reviews} new review(s) from {source.display_name}"
    else:
        message = f"{source.display_name} reviews are up to date"
    return {"status": "success", "message": message, **result.to_dict()}
