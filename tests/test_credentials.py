import uuid
from datetime import timedelta

import pytest
from cryptography.fernet import Fernet

from apps.api.app.credentials import (
    CredentialCipher, upsert_connection, find_connection, get_connection, disconnect,
    ensure_fresh_token, resolve_credential,
)
from apps.api.app.db import utc_now, as_utc
from apps.api.app.errors import ConfigurationError, NotFound, NotConnected, NotSupported, TokenRefreshFailed
from apps.api.app.models import SourceConnection, ConnectionStatus
from apps.api.app.sources import SourceKind

from conftest import FakeResponse, connect_google, get_source, token_grant


def test_cipher_round_trip_and_missing_key(cipher):
    blob = cipher.encrypt({"api_key": "k-123", "api_secret": None})
    assert "k-123" not in blob
    assert cipher.decrypt(blob) == {"api_key": "k-123", "api_secret": None}

    with pytest.raises(ConfigurationError):
        CredentialCipher(None).encrypt({"api_key": "x"})


def test_decrypt_with_other_key_is_configuration_error(cipher):
    blob = cipher.encrypt({"api_key": "k"})
    with pytest.raises(ConfigurationError):
        CredentialCipher(Fernet.generate_key().decode()).decrypt(blob)


def test_upsert_keeps_one_row_per_business_source(db, business, google_source):
    first = upsert_connection(
        db, business.id, google_source.id, business.user_id, connection_type="oauth", status="pending"
    )
    second = upsert_connection(
        db,
        business.id,
        google_source.id,
        business.user_id,
        connection_type="oauth",
        status="connected",
        oauth_token="tok",
        meta={"account_id": "acc-9"},
    )

    assert second.id == first.id
    assert second.status == "connected"
    assert second.meta == {"account_id": "acc-9"}
    assert db.query(SourceConnection).count() == 1


def test_upsert_rejects_unknown_fields(db, business, google_source):
    with pytest.raises(ValueError):
        upsert_connection(db, business.id, google_source.id, business.user_id, password="x")


def test_get_connection_not_found(db, business, google_source):
    assert find_connection(db, business.id, google_source.id) is None
    with pytest.raises(NotFound):
        get_connection(db, business.id, google_source.id)


def test_disconnect_wipes_secrets(db, business, google_source):
    conn = connect_google(db, business, google_source)
    conn = disconnect(db, conn)

    assert conn.status == ConnectionStatus.DISCONNECTED.value
    assert conn.oauth_token is None
    assert conn.oauth_refresh_token is None
    assert conn.encrypted_credentials is None


def test_fresh_token_is_used_as_is(db, business, google_source, oauth_client, http):
    conn = connect_google(db, business, google_source, expires_at=utc_now() + timedelta(hours=1))
    assert ensure_fresh_token(db, conn, oauth_client) == "access-0"
    assert http.calls == []


def test_expired_token_is_refreshed_and_persisted(db, business, google_source, oauth_client, http):
    conn = connect_google(db, business, google_source, expires_at=utc_now() - timedelta(minutes=5))
    http.queue(token_grant(access_token="access-2", refresh_token=None, expires_in=1800))

    assert ensure_fresh_token(db, conn, oauth_client) == "access-2"

    call = http.calls[0]
    assert call["data"]["grant_type"] == "refresh_token"
    assert call["data"]["refresh_token"] == "refresh-1"

    stored = find_connection(db, business.id, google_source.id, refresh=True)
    assert stored.oauth_token == "access-2"
    assert stored.oauth_refresh_token == "refresh-1"
    assert as_utc(stored.token_expires_at) > utc_now() + timedelta(minutes=25)


def test_token_inside_skew_window_is_refreshed(db, business, google_source, oauth_client, http):
    conn = connect_google(db, business, google_source, expires_at=utc_now() + timedelta(seconds=30))
    http.queue(token_grant(access_token="access-3"))

    assert ensure_fresh_token(db, conn, oauth_client, skew_seconds=60) == "access-3"


def test_refresh_failure_is_token_refresh_failed(db, business, google_source, oauth_client, http):
    conn = connect_google(db, business, google_source, expires_at=utc_now() - timedelta(minutes=5))
    http.queue(FakeResponse(400, {"error": "invalid_grant"}, text='{"error": "invalid_grant"}'))

    with pytest.raises(TokenRefreshFailed):
        ensure_fresh_token(db, conn, oauth_client)


def test_expired_without_refresh_token(db, business, google_source, oauth_client, http):
    conn = connect_google(
        db, business, google_source, expires_at=utc_now() - timedelta(minutes=5), refresh_token=None
    )
    with pytest.raises(TokenRefreshFailed):
        ensure_fresh_token(db, conn, oauth_client)
    assert http.calls == []


def test_resolve_credential(db, business, oauth_client, cipher):
    yelp = get_source(db, SourceKind.YELP)
    amazon = get_source(db, SourceKind.AMAZON)

    with pytest.raises(NotConnected):
        resolve_credential(db, None, oauth_client, cipher)

    keyed = upsert_connection(
        db,
        business.id,
        yelp.id,
        business.user_id,
        connection_type="api_key",
        status="connected",
        encrypted_credentials=cipher.encrypt({"api_key": "yelp-key"}),
    )
    assert resolve_credential(db, keyed, oauth_client, cipher) == "yelp-key"

    linked = upsert_connection(
        db, business.id, amazon.id, business.user_id, connection_type="url", status="connected",
        meta={"url": "https://amazon.test/shop"},
    )
    with pytest.raises(NotSupported):
        resolve_credential(db, linked, oauth_client, cipher)

    pending = upsert_connection(
        db, business.id, yelp.id, uuid.uuid4(), connection_type="api_key", status="pending"
    )
    with pytest.raises(NotConnected):
        resolve_credential(db, pending, oauth_client, cipher)
