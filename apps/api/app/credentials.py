"""
Credential store: one SourceConnection per (business, source).
"""
import json
import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.api.app.db import insert_for, utc_now, as_utc
from apps.api.app.errors import ConfigurationError, NotFound, NotConnected, NotSupported, TokenRefreshFailed
from apps.api.app.models import SourceConnection, ConnectionStatus
from apps.api.app.sources import ConnectionType

logger = logging.getLogger(__name__)

UPSERT_FIELDS = (
    "connection_type",
    "status",
    "encrypted_credentials",
    "oauth_token",
    "oauth_refresh_token",
    "token_expires_at",
    "meta",
)


class CredentialCipher:
    """Fernet wrapper for the API key/secret blob."""

    def __init__(self, key: Optional[str]):
        self._fernet = Fernet(key.encode()) if key else None

    def _require(self) -> Fernet:
        if self._fernet is None:
            logger.error("CREDENTIALS_KEY not configured")
            raise ConfigurationError()
        return self._fernet

    def encrypt(self, payload: Dict[str, Any]) -> str:
        return self._require().encrypt(json.dumps(payload).encode("utf-8")).decode("ascii")

    def decrypt(self, blob: str) -> Dict[str, Any]:
        try:
            return json.loads(self._require().decrypt(blob.encode("ascii")))
        except InvalidToken as e:
            logger.error("Stored credentials could not be decrypted")
            raise ConfigurationError() from e


def find_connection(
    db: Session, business_id: uuid.UUID, source_id: uuid.UUID, refresh: bool = False
) -> Optional[SourceConnection]:
    stmt = select(SourceConnection).where(
        SourceConnection.business_id == business_id,
        SourceConnection.source_id == source_id,
    )
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    return db.execute(stmt).scalar_one_or_none()


def get_connection(db: Session, business_id: uuid.UUID, source_id: uuid.UUID) -> SourceConnection:
    connection = find_connection(db, business_id, source_id)
    if connection is None:
        raise NotFound("No connection for this source")
    return connection


def upsert_connection(
    db: Session,
    business_id: uuid.UUID,
    source_id: uuid.UUID,
    user_id: uuid.UUID,
    **fields: Any,
) -> SourceConnection:
    """
    Insert-or-update keyed by (business_id, source_id), as one statement.
    Fields not passed keep their stored value on update.
    """
    unknown = set(fields) - set(UPSERT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown connection fields: {sorted(unknown)}")

    now = utc_now()
    values = {_column_name(k): v for k, v in fields.items()}
    row = {
        "id": uuid.uuid4(),
        "business_id": business_id,
        "source_id": source_id,
        "user_id": user_id,
        "created_at": now,
        "updated_at": now,
        **values,
    }
    row.setdefault("status", ConnectionStatus.PENDING.value)

    # against the Table, so keys are column names ("metadata", not "meta")
    stmt = insert_for(db, SourceConnection.__table__).values(**row)
    set_ = {name: stmt.excluded[name] for name in values}
    set_["user_id"] = stmt.excluded.user_id
    set_["updated_at"] = stmt.excluded.updated_at
    stmt = stmt.on_conflict_do_update(index_elements=["business_id", "source_id"], set_=set_)
    db.execute(stmt)
    db.commit()

    return find_connection(db, business_id, source_id, refresh=True)


def _column_name(attr: str) -> str:
    return "metadata" if attr == "meta" else attr


def disconnect(db: Session, connection: SourceConnection) -> SourceConnection:
    connection.status = ConnectionStatus.DISCONNECTED.value
    connection.oauth_token = None
    connection.oauth_refresh_token = None
    connection.token_expires_at = None
    connection.encrypted_credentials = None
    db.commit()
    logger.info("Disconnected business=%s source=%s", connection.business_id, connection.source_id)
    return connection


def ensure_fresh_token(db: Session, connection: SourceConnection, oauth_client, skew_seconds: int = 60) -> str:
    """
    Access token that is valid right now, refreshing it first if its declared
    expiry has passed (or is within skew_seconds).
    """
    if not connection.oauth_token:
        raise NotConnected()

    expires_at = as_utc(connection.token_expires_at)
    now = utc_now()
    if expires_at is None or expires_at - timedelta(seconds=skew_seconds) > now:
        return connection.oauth_token

    if not connection.oauth_refresh_token:
        logger.warning("Token expired with no refresh token for connection=%s", connection.id)
        raise TokenRefreshFailed()

    logger.info("Refreshing access token for connection=%s", connection.id)
    grant = oauth_client.refresh(connection.oauth_refresh_token)

    connection.oauth_token = grant.access_token
    connection.token_expires_at = grant.expires_at(now)
    if grant.refresh_token:
        connection.oauth_refresh_token = grant.refresh_token
    db.commit()
    return connection.oauth_token


def resolve_credential(
    db: Session, connection: Optional[SourceConnection], oauth_client, cipher: CredentialCipher, skew_seconds: int = 60
) -> str:
    """Bearer credential for a provider call: fresh OAuth token, or the stored API key."""
    if connection is None or connection.status != ConnectionStatus.CONNECTED.value:
        raise NotConnected()

    if connection.connection_type == ConnectionType.OAUTH.value:
        return ensure_fresh_token(db, connection, oauth_client, skew_seconds=skew_seconds)
    if connection.connection_type == ConnectionType.API_KEY.value:
        if not connection.encrypted_credentials:
            raise NotConnected()
        return cipher.decrypt(connection.encrypted_credentials).get("api_key") or ""

    raise NotSupported("Linked pages cannot be synced")
