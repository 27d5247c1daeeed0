from datetime import timedelta, timezone

import pytest

from apps.api.app.credentials import upsert_connection
from apps.api.app.db import utc_now
from apps.api.app.errors import LocationNotConfigured, NotConnected, NotSupported, ProviderError, RateLimited
from apps.api.app.models import Review
from apps.api.app.sources import SourceKind
from jobs.ingest.normalize import map_star_rating, parse_timestamp, normalize_google_business_review
from jobs.ingest.run_ingest import sync_reviews, connected_pairs

from conftest import FakeResponse, connect_google, enable, get_source, google_review, token_grant


@pytest.mark.parametrize(
    "value,expected",
    [("FIVE", 5), ("ONE", 1), ("three", 3), ("STAR_RATING_UNSPECIFIED", 3), (None, 3), (4, 3)],
)
def test_star_rating_mapping(value, expected):
    assert map_star_rating(value) == expected


def test_parse_timestamp_handles_nanoseconds_and_garbage():
    ts = parse_timestamp("2024-03-01T10:15:30.123456789Z")
    assert ts.tzinfo is not None
    assert (ts.year, ts.month, ts.day, ts.microsecond) == (2024, 3, 1, 123456)
    assert ts.utcoffset() == timedelta(0)

    before = utc_now()
    assert parse_timestamp("not a date") >= before
    assert parse_timestamp(None).tzinfo == timezone.utc


def test_normalize_defaults_and_caps(business, google_source):
    raw = {"reviewId": "r-1", "comment": "x" * 50, "reviewer": {"displayName": "  "}}
    row = normalize_google_business_review(
        raw,
        business_id=business.id,
        source_id=google_source.id,
        user_id=business.user_id,
        source_platform="Google Business",
        max_text_chars=10,
    )
    assert row["external_review_id"] == "r-1"
    assert row["reviewer_name"] == "Anonymous"
    assert row["rating"] == 3
    assert row["review_text"] == "x" * 10
    assert row["status"] == "pending"
    assert row["sentiment"] is None


def _page(reviews, next_token=None):
    body = {"reviews": reviews}
    if next_token:
        body["nextPageToken"] = next_token
    return FakeResponse(200, body)


def test_sync_is_idempotent(db, business, google_source, review_client, oauth_client, cipher, http):
    enable(db, business, google_source, location_id="loc-1")
    connect_google(db, business, google_source, account_id="acc-1")

    http.queue(_page([google_review("r1"), google_review("r2", stars="ONE")]))
    first = sync_reviews(db, business, google_source, review_client, oauth_client, cipher)
    assert first.to_dict() == {"totalFetched": 2, "newReviews": 2}

    http.queue(_page([google_review("r1"), google_review("r2", stars="ONE")]))
    second = sync_reviews(db, business, google_source, review_client, oauth_client, cipher)
    assert second.to_dict() == {"totalFetched": 2, "newReviews": 0}

    rows = db.query(Review).order_by(Review.external_review_id).all()
    assert [(r.external_review_id, r.rating, r.status) for r in rows] == [("r1", 5, "pending"), ("r2", 1, "pending")]

    call = http.calls[0]
    assert call["method"] == "GET"
    assert call["url"].endswith("/accounts/acc-1/locations/loc-1/reviews")
    assert call["headers"]["Authorization"] == "Bearer access-0"


def test_sync_follows_pages(db, business, google_source, review_client, oauth_client, cipher, http):
    enable(db, business, google_source)
    connect_google(db, business, google_source)
    http.queue(
        _page([google_review("r1")], next_token="p2"),
        _page([google_review("r2")]),
    )

    result = sync_reviews(db, business, google_source, review_client, oauth_client, cipher)

    assert result.new_reviews == 2
    assert http.calls[1]["params"]["pageToken"] == "p2"


def test_sync_without_connection(db, business, google_source, review_client, oauth_client, cipher, http):
    enable(db, business, google_source)
    with pytest.raises(NotConnected):
        sync_reviews(db, business, google_source, review_client, oauth_client, cipher)
    assert http.calls == []


def test_sync_without_location(db, business, google_source, review_client, oauth_client, cipher, http):
    enable(db, business, google_source, location_id=None)
    connect_google(db, business, google_source)
    with pytest.raises(LocationNotConfigured):
        sync_reviews(db, business, google_source, review_client, oauth_client, cipher)
    assert http.calls == []


def test_sync_without_account(db, business, google_source, review_client, oauth_client, cipher):
    enable(db, business, google_source)
    connect_google(db, business, google_source, account_id=None)
    with pytest.raises(LocationNotConfigured):
        sync_reviews(db, business, google_source, review_client, oauth_client, cipher)


def test_api_key_source_cannot_sync(db, business, review_client, oauth_client, cipher):
    yelp = get_source(db, SourceKind.YELP)
    enable(db, business, yelp)
    upsert_connection(
        db, business.id, yelp.id, business.user_id,
        connection_type="api_key", status="connected",
        encrypted_credentials=cipher.encrypt({"api_key": "k"}),
    )
    with pytest.raises(NotSupported):
        sync_reviews(db, business, yelp, review_client, oauth_client, cipher)


def test_sync_refreshes_expired_token_first(db, business, google_source, review_client, oauth_client, cipher, http):
    enable(db, business, google_source)
    connect_google(db, business, google_source, expires_at=utc_now() - timedelta(minutes=1))
    http.queue(token_grant(access_token="access-new"), _page([]))

    sync_reviews(db, business, google_source, review_client, oauth_client, cipher)

    assert http.calls[0]["data"]["grant_type"] == "refresh_token"
    assert http.calls[1]["headers"]["Authorization"] == "Bearer access-new"


def test_rate_limit_is_distinct(db, business, google_source, review_client, oauth_client, cipher, http):
    enable(db, business, google_source)
    connect_google(db, business, google_source)
    http.queue(FakeResponse(429, {}, headers={"Retry-After": "120"}))

    with pytest.raises(RateLimited) as exc:
        sync_reviews(db, business, google_source, review_client, oauth_client, cipher)
    assert exc.value.retry_after == 120


def test_failure_on_later_page_keeps_earlier_pages(db, business, google_source, review_client, oauth_client, cipher, http):
    enable(db, business, google_source)
    connect_google(db, business, google_source)
    http.queue(
        _page([google_review("r1"), google_review("r2")], next_token="p2"),
        FakeResponse(500, {"error": "boom"}),
    )

    with pytest.raises(ProviderError):
        sync_reviews(db, business, google_source, review_client, oauth_client, cipher)
    db.rollback()
    assert db.query(Review).count() == 2

    # a retry is safe
    http.queue(_page([google_review("r1"), google_review("r2"), google_review("r3")]))
    retry = sync_reviews(db, business, google_source, review_client, oauth_client, cipher)
    assert retry.new_reviews == 1
    assert db.query(Review).count() == 3


def test_connected_pairs_only_lists_syncable_sources(db, business, google_source, cipher):
    connect_google(db, business, google_source)
    yelp = get_source(db, SourceKind.YELP)
    upsert_connection(
        db, business.id, yelp.id, business.user_id,
        connection_type="api_key", status="connected",
        encrypted_credentials=cipher.encrypt({"api_key": "k"}),
    )

    pairs = connected_pairs(db)
    assert [(b.id, s.name) for b, s in pairs] == [(business.id, "google business")]
