"""
Google OAuth authorization-code flow.

start_authorization() creates the pending connection and hands back the
consent URL; complete_authorization() is the callback side:

    Pending(code received) -> Exchanging -> Connected | Failed

Exactly one OAuthOutcome is produced per callback.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional
from urllib.parse import urlencode

import requests
from sqlalchemy import update
from sqlalchemy.orm import Session

from apps.api.app.config import Settings
from apps.api.app.credentials import upsert_connection, find_connection
from apps.api.app.db import utc_now
from apps.api.app.errors import (
    ReviewDeskError, ConfigurationError, MissingAuthCode, ProviderError, RateLimited, TokenRefreshFailed,
    NotSupported, InvalidInput,
)
from apps.api.app.http_client import send, json_body, retry_after, error_excerpt
from apps.api.app.models import Business, Source, EnabledSource, SourceConnection, ConnectionStatus
from apps.api.app.oauth_state import issue_state, consume_state
from apps.api.app.sources import ConnectionType, profile_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: Optional[str]
    expires_in: int

    def expires_at(self, now: Optional[datetime] = None) -> datetime:
        return (now or utc_now()) + timedelta(seconds=self.expires_in)


class GoogleOAuthClient:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()
        self.timeout = settings.http_timeout_seconds

    def require_credentials(self) -> None:
        if not self.settings.google_client_id or not self.settings.google_client_secret:
            logger.error("GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET not configured")
            raise ConfigurationError()

    def authorization_url(self, state: str) -> str:
        self.require_credentials()
        params = {
            "client_id": self.settings.google_client_id,
            "redirect_uri": self.settings.oauth_redirect_uri,
            "response_type": "code",
            "scope": self.settings.google_oauth_scope,
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{self.settings.google_auth_url}?{urlencode(params)}"

    def _token_request(self, data: dict) -> TokenGrant:
        r = send(
            self.session,
            "POST",
            self.settings.google_token_url,
            self.timeout,
            data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        if r.status_code == 429:
            raise RateLimited(retry_after=retry_after(r))
        if not 200 <= r.status_code < 300:
            logger.error("Token endpoint returned %s: %s", r.status_code, error_excerpt(r))
            raise ProviderError("Failed to exchange authorization code")

        body = json_body(r)
        if not body.get("access_token"):
            raise ProviderError("Token endpoint returned no access token")
        return TokenGrant(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_in=int(body.get("expires_in") or 3600),
        )

    def exchange_code(self, code: str) -> TokenGrant:
        self.require_credentials()
        return self._token_request(
            {
                "code": code,
                "client_id": self.settings.google_client_id,
                "client_secret": self.settings.google_client_secret,
                "redirect_uri": self.settings.oauth_redirect_uri,
                "grant_type": "authorization_code",
            }
        )

    def refresh(self, refresh_token: str) -> TokenGrant:
        self.require_credentials()
        try:
            return self._token_request(
                {
                    "refresh_token": refresh_token,
                    "client_id": self.settings.google_client_id,
                    "client_secret": self.settings.google_client_secret,
                    "grant_type": "refresh_token",
                }
            )
        except ProviderError as e:
            raise TokenRefreshFailed() from e

    def list_accounts(self, access_token: str) -> List[str]:
        """Business Profile account ids ("accounts/123" -> "123") visible to the token."""
        r = send(
            self.session,
            "GET",
            self.settings.google_accounts_url,
            self.timeout,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if not 200 <= r.status_code < 300:
            raise ProviderError(f"Failed to list accounts ({r.status_code})")
        accounts = json_body(r).get("accounts") or []
        return [a["name"].split("/")[-1] for a in accounts if a.get("name")]


@dataclass(frozen=True)
class OAuthOutcome:
    success: bool
    service: str
    source_name: Optional[str] = None
    message: str = ""
    kind: Optional[str] = None


def start_authorization(
    db: Session,
    client: GoogleOAuthClient,
    business: Business,
    source: Source,
    user_id: uuid.UUID,
    ttl_seconds: int,
) -> str:
    """Create the pending placeholder, issue a state and return the consent URL."""
    profile = profile_for(source.name)
    if profile is None or profile.connection_type != ConnectionType.OAUTH:
        raise InvalidInput(f"{source.display_name} does not connect with OAuth")
    if profile.oauth_provider != "google":
        raise NotSupported(f"{source.display_name} OAuth is not available yet")

    enabled = db.query(EnabledSource).filter(
        EnabledSource.business_id == business.id,
        EnabledSource.source_id == source.id,
    ).first()
    if enabled is None:
        raise InvalidInput(f"Enable {source.display_name} for this business before connecting it")

    # missing client credentials fail before anything is written
    client.require_credentials()

    existing = find_connection(db, business.id, source.id)
    if existing is None or existing.status != ConnectionStatus.CONNECTED.value or existing.connection_type != ConnectionType.OAUTH.value:
        upsert_connection(
            db,
            business_id=business.id,
            source_id=source.id,
            user_id=user_id,
            connection_type=ConnectionType.OAUTH.value,
            status=ConnectionStatus.PENDING.value,
        )

    state = issue_state(db, user_id=user_id, business_id=business.id, source_id=source.id, ttl_seconds=ttl_seconds)
    return client.authorization_url(state)


def _failed(err: ReviewDeskError, source_name: Optional[str] = None) -> OAuthOutcome:
    return OAuthOutcome(success=False, service="google", source_name=source_name, message=err.message, kind=err.kind)


def complete_authorization(
    db: Session,
    client: GoogleOAuthClient,
    code: Optional[str],
    state: Optional[str],
    error: Optional[str] = None,
) -> OAuthOutcome:
    if error:
        logger.warning("OAuth provider returned error=%s", error)
        return OAuthOutcome(success=False, service="google", message="Authorization failed", kind="provider_denied")

    try:
        if not code or not state:
            raise MissingAuthCode()
        bound = consume_state(db, state)
    except ReviewDeskError as e:
        return _failed(e)

    source = db.get(Source, bound.source_id)
    source_name = source.display_name if source else None

    try:
        grant = client.exchange_code(code)
    except ReviewDeskError as e:
        logger.error("Token exchange failed for business=%s: %s", bound.business_id, e.kind)
        return _failed(e, source_name)

    now = utc_now()
    values = {
        "oauth_token": grant.access_token,
        "token_expires_at": grant.expires_at(now),
        "status": ConnectionStatus.CONNECTED.value,
        "updated_at": now,
    }
    if grant.refresh_token:
        values["oauth_refresh_token"] = grant.refresh_token

    # user_id is part of the match so one tenant's callback can never land on another's row
    res = db.execute(
        update(SourceConnection)
        .where(
            SourceConnection.business_id == bound.business_id,
            SourceConnection.source_id == bound.source_id,
            SourceConnection.user_id == bound.user_id,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.rollback()
        logger.error("No connection row for business=%s source=%s user=%s", bound.business_id, bound.source_id, bound.user_id)
        return _failed(ProviderError("Failed to save connection. Please connect again."), source_name)
    db.commit()

    _remember_account(db, client, bound.business_id, bound.source_id, grant.access_token)

    logger.info("OAuth connection successful for business=%s source=%s", bound.business_id, source_name)
    return OAuthOutcome(success=True, service="google", source_name=source_name, message="Authorization successful")


def _remember_account(db: Session, client: GoogleOAuthClient, business_id, source_id, access_token: str) -> None:
    """Store the first Business Profile account id on the connection, if the provider lists one."""
    try:
        accounts = client.list_accounts(access_token)
    except ReviewDeskError as e:
        logger.warning("Could not list Business Profile accounts for business=%s: %s", business_id, e.message)
        return
    if not accounts:
        return

    connection = find_connection(db, business_id, source_id, refresh=True)
    if connection is None:
        return
    meta = dict(connection.meta or {})
    meta.setdefault("account_id", accounts[0])
    connection.meta = meta
    db.commit()
