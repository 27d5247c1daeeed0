import uuid
from urllib.parse import urlparse, parse_qs

import pytest

from apps.api.app.credentials import find_connection
from apps.api.app.errors import InvalidInput, NotSupported
from apps.api.app.models import OAuthState, ConnectionStatus
from apps.api.app.oauth import start_authorization, complete_authorization
from apps.api.app.routes.oauth import render_outcome
from apps.api.app.sources import SourceKind

from conftest import FakeResponse, enable, get_source, token_grant


def _state_from(url):
    return parse_qs(urlparse(url).query)["state"][0]


def _start(db, oauth_client, business, source):
    return start_authorization(db, oauth_client, business, source, user_id=business.user_id, ttl_seconds=600)


def test_connect_requires_enabled_source(db, business, google_source, oauth_client):
    with pytest.raises(InvalidInput):
        _start(db, oauth_client, business, google_source)
    assert db.query(OAuthState).count() == 0


def test_authorization_url_and_pending_placeholder(db, business, google_source, oauth_client):
    enable(db, business, google_source)
    url = _start(db, oauth_client, business, google_source)

    parsed = urlparse(url)
    params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
    assert parsed.netloc == "accounts.google.com"
    assert params["client_id"] == "test-client-id"
    assert params["redirect_uri"] == "http://testserver/oauth/google/callback"
    assert params["response_type"] == "code"
    assert params["access_type"] == "offline"
    assert params["prompt"] == "consent"
    assert params["scope"].endswith("business.manage")
    # the state is opaque, never the identifiers themselves
    assert str(business.id) not in params["state"]

    conn = find_connection(db, business.id, google_source.id)
    assert conn.status == ConnectionStatus.PENDING.value
    assert conn.connection_type == "oauth"


def test_facebook_oauth_not_supported(db, business, oauth_client):
    facebook = get_source(db, SourceKind.FACEBOOK)
    enable(db, business, facebook)
    with pytest.raises(NotSupported):
        _start(db, oauth_client, business, facebook)


def test_api_key_source_cannot_start_oauth(db, business, oauth_client):
    yelp = get_source(db, SourceKind.YELP)
    enable(db, business, yelp)
    with pytest.raises(InvalidInput):
        _start(db, oauth_client, business, yelp)


def test_callback_connects_and_records_account(db, business, google_source, oauth_client, http):
    enable(db, business, google_source)
    state = _state_from(_start(db, oauth_client, business, google_source))
    http.queue(
        token_grant(access_token="access-1", refresh_token="refresh-1", expires_in=3600),
        FakeResponse(200, {"accounts": [{"name": "accounts/1234567"}]}),
    )

    outcome = complete_authorization(db, oauth_client, code="auth-code", state=state)

    assert outcome.success
    assert outcome.source_name == "Google Business"
    assert http.calls[0]["data"]["code"] == "auth-code"
    assert http.calls[0]["data"]["grant_type"] == "authorization_code"

    conn = find_connection(db, business.id, google_source.id, refresh=True)
    assert conn.status == ConnectionStatus.CONNECTED.value
    assert conn.oauth_token == "access-1"
    assert conn.oauth_refresh_token == "refresh-1"
    assert conn.token_expires_at is not None
    assert conn.meta["account_id"] == "1234567"


def test_replayed_callback_fails_without_token_exchange(db, business, google_source, oauth_client, http):
    enable(db, business, google_source)
    state = _state_from(_start(db, oauth_client, business, google_source))
    http.queue(token_grant(), FakeResponse(200, {"accounts": []}))
    assert complete_authorization(db, oauth_client, code="c1", state=state).success

    calls_before = len(http.calls)
    outcome = complete_authorization(db, oauth_client, code="c2", state=state)

    assert not outcome.success
    assert outcome.kind == "invalid_or_expired_state"
    assert len(http.calls) == calls_before


def test_provider_error_param_is_terminal(db, oauth_client, http):
    outcome = complete_authorization(db, oauth_client, code=None, state=None, error="access_denied")
    assert not outcome.success
    assert http.calls == []


def test_missing_code_or_state(db, oauth_client):
    assert complete_authorization(db, oauth_client, code=None, state="abc").kind == "missing_auth_code"
    assert complete_authorization(db, oauth_client, code="abc", state=None).kind == "missing_auth_code"


def test_failed_exchange_leaves_connection_pending(db, business, google_source, oauth_client, http):
    enable(db, business, google_source)
    state = _state_from(_start(db, oauth_client, business, google_source))
    http.queue(FakeResponse(400, {"error": "invalid_grant"}))

    outcome = complete_authorization(db, oauth_client, code="bad", state=state)

    assert not outcome.success
    assert outcome.kind == "provider_error"
    conn = find_connection(db, business.id, google_source.id, refresh=True)
    assert conn.status == ConnectionStatus.PENDING.value
    assert conn.oauth_token is None


def test_callback_never_writes_another_tenants_row(db, business, google_source, oauth_client, http):
    enable(db, business, google_source)
    state = _state_from(_start(db, oauth_client, business, google_source))

    # the row now belongs to someone else
    conn = find_connection(db, business.id, google_source.id)
    conn.user_id = uuid.uuid4()
    db.commit()

    http.queue(token_grant(access_token="stolen"))
    outcome = complete_authorization(db, oauth_client, code="c", state=state)

    assert not outcome.success
    conn = find_connection(db, business.id, google_source.id, refresh=True)
    assert conn.oauth_token is None
    assert conn.status == ConnectionStatus.PENDING.value


def test_completion_page_posts_to_app_origin_only(db, oauth_client):
    outcome = complete_authorization(db, oauth_client, code=None, state=None, error="access_denied")
    html = render_outcome(outcome)

    assert '"auth-error"' in html
    assert '"http://app.test"' in html
    assert "window.close()" in html
    assert '"*"' not in html
