import os
import uuid
from datetime import timedelta

from cryptography.fernet import Fernet

# settings are read at import time, so the environment has to be in place first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["CREDENTIALS_KEY"] = Fernet.generate_key().decode()
os.environ["GOOGLE_CLIENT_ID"] = "test-client-id"
os.environ["GOOGLE_CLIENT_SECRET"] = "test-client-secret"
os.environ["AI_API_KEY"] = "test-ai-key"
os.environ["PUBLIC_BASE_URL"] = "http://testserver"
os.environ["APP_ORIGIN"] = "http://app.test"

import pytest
from jose import jwt

from apps.api.app.config import settings
from apps.api.app.credentials import CredentialCipher, upsert_connection
from apps.api.app.db import SessionLocal, engine, utc_now
from apps.api.app.models import Base, Business, Source, EnabledSource, Review, ConnectionStatus
from apps.api.app.oauth import GoogleOAuthClient
from apps.api.app.sources import SourceKind, seed_sources
from jobs.analyze.llm_gateway import ChatGateway
from jobs.ingest.sources.google_business import GoogleBusinessClient


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, headers=None, text=""):
        self.status_code = status_code
        self._json = json_data
        self.headers = headers or {}
        self.text = text

    def json(self):
        if self._json is None:
            raise ValueError("no json body")
        return self._json


class FakeSession:
    """Stands in for requests.Session: hands out queued responses and records each call."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []

    def queue(self, *responses):
        self.responses.extend(responses)

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        if not self.responses:
            raise AssertionError(f"unexpected {method} {url}")
        r = self.responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r


def chat_reply(content):
    return FakeResponse(200, {"choices": [{"message": {"content": content}}]})


def token_grant(access_token="access-1", refresh_token="refresh-1", expires_in=3600):
    body = {"access_token": access_token, "expires_in": expires_in}
    if refresh_token:
        body["refresh_token"] = refresh_token
    return FakeResponse(200, body)


def google_review(review_id, stars="FIVE", comment="Great!", name="Jane"):
    return {
        "name": f"accounts/acc-1/locations/loc-1/reviews/{review_id}",
        "reviewId": review_id,
        "reviewer": {"displayName": name},
        "starRating": stars,
        "comment": comment,
        "createTime": "2024-03-01T10:15:30.123456789Z",
    }


def auth_header(user_id, role=None):
    claims = {"sub": str(user_id)}
    if role:
        claims["role"] = role
    return {"Authorization": "Bearer " + jwt.encode(claims, settings.jwt_secret, algorithm="HS256")}


@pytest.fixture(autouse=True)
def schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    seed_sources(session)
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user_id():
    return uuid.uuid4()


@pytest.fixture
def business(db, user_id):
    b = Business(user_id=user_id, name="Corner Bakery")
    db.add(b)
    db.commit()
    return b


def get_source(db, kind: SourceKind) -> Source:
    return db.query(Source).filter(Source.name == kind.value).one()


@pytest.fixture
def google_source(db):
    return get_source(db, SourceKind.GOOGLE_BUSINESS)


@pytest.fixture
def cipher():
    return CredentialCipher(settings.credentials_key)


@pytest.fixture
def http():
    return FakeSession()


@pytest.fixture
def oauth_client(http):
    return GoogleOAuthClient(settings, session=http)


@pytest.fixture
def review_client(http):
    return GoogleBusinessClient("https://reviews.test/v4", timeout=5, session=http)


@pytest.fixture
def gateway(http):
    return ChatGateway("https://ai.test/v1/chat/completions", settings.ai_api_key, "test-model", timeout=5, session=http)


def enable(db, business, source, location_id="loc-1"):
    e = EnabledSource(business_id=business.id, source_id=source.id, user_id=business.user_id, location_id=location_id)
    db.add(e)
    db.commit()
    return e


def connect_google(db, business, source, account_id="acc-1", expires_at=None, refresh_token="refresh-1"):
    return upsert_connection(
        db,
        business_id=business.id,
        source_id=source.id,
        user_id=business.user_id,
        connection_type="oauth",
        status=ConnectionStatus.CONNECTED.value,
        oauth_token="access-0",
        oauth_refresh_token=refresh_token,
        token_expires_at=expires_at or utc_now() + timedelta(hours=1),
        meta={"account_id": account_id} if account_id else None,
    )


def add_review(db, business, source=None, external_id=None, name="Jane", rating=5, text="Great!"):
    r = Review(
        business_id=business.id,
        source_id=source.id if source else None,
        user_id=business.user_id,
        source_platform=source.display_name if source else "Manual",
        external_review_id=external_id,
        reviewer_name=name,
        rating=rating,
        review_text=text,
    )
    db.add(r)
    db.commit()
    return r
