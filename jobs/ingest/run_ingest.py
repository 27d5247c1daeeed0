import argparse
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.api.app.config import settings
from apps.api.app.credentials import CredentialCipher, find_connection, resolve_credential
from apps.api.app.db import SessionLocal, engine, insert_for
from apps.api.app.errors import ReviewDeskError, LocationNotConfigured, NotSupported
from apps.api.app.models import Base, Business, Source, EnabledSource, Review, SourceConnection, ConnectionStatus
from apps.api.app.oauth import GoogleOAuthClient
from apps.api.app.sources import profile_for
from jobs.ingest.normalize import normalize_google_business_review
from jobs.ingest.sources.google_business import GoogleBusinessClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncResult:
    total_fetched: int
    new_reviews: int

    def to_dict(self) -> Dict[str, int]:
        return {"totalFetched": self.total_fetched, "newReviews": self.new_reviews}


def upsert_review(db: Session, row: Dict[str, Any]) -> bool:
    """
    Returns True if inserted, False if already existed.
    Uses ON CONFLICT DO NOTHING on (business_id, source_id, external_review_id).
    """
    stmt = (
        insert_for(db, Review)
        .values(**row)
        .on_conflict_do_nothing(index_elements=["business_id", "source_id", "external_review_id"])
    )
    res = db.execute(stmt)
    return res.rowcount == 1


def sync_reviews(
    db: Session,
    business: Business,
    source: Source,
    review_client: GoogleBusinessClient,
    oauth_client: GoogleOAuthClient,
    cipher: CredentialCipher,
) -> SyncResult:
    """
    Pull the provider's reviews for one (business, source) and insert the
    ones not seen before. Each page is committed as it lands, so a failure on
    a later page keeps what was already stored; a retry is always safe.
    """
    profile = profile_for(source.name)

    connection = find_connection(db, business.id, source.id)
    token = resolve_credential(
        db, connection, oauth_client, cipher, skew_seconds=settings.token_refresh_skew_seconds
    )

    if profile is None or not profile.can_sync:
        raise NotSupported(f"Review sync is not available for {source.display_name}")

    enabled = db.execute(
        select(EnabledSource).where(
            EnabledSource.business_id == business.id,
            EnabledSource.source_id == source.id,
        )
    ).scalar_one_or_none()
    location_id = enabled.location_id if enabled else None
    account_id = (connection.meta or {}).get("account_id")
    if not location_id or not account_id:
        raise LocationNotConfigured(f"{source.display_name} location not configured")

    fetched = 0
    inserted = 0
    for page in review_client.iter_review_pages(
        token,
        account_id,
        location_id,
        page_size=settings.review_page_size,
        max_pages=settings.review_max_pages,
    ):
        for raw in page:
            fetched += 1
            row = normalize_google_business_review(
                raw,
                business_id=business.id,
                source_id=source.id,
                user_id=business.user_id,
                source_platform=source.display_name,
                max_text_chars=settings.max_review_chars,
                max_name_chars=settings.max_reviewer_name_chars,
            )
            if not row["external_review_id"]:
                logger.warning("Skipping review without an id from %s", source.display_name)
                continue
            if upsert_review(db, row):
                inserted += 1
        db.commit()

    logger.info(
        "Synced business=%s source=%s fetched=%d new=%d", business.id, source.name, fetched, inserted
    )
    return SyncResult(total_fetched=fetched, new_reviews=inserted)


def connected_pairs(db: Session) -> List[Tuple[Business, Source]]:
    rows = db.execute(
        select(Business, Source)
        .join(SourceConnection, SourceConnection.business_id == Business.id)
        .join(Source, Source.id == SourceConnection.source_id)
        .where(SourceConnection.status == ConnectionStatus.CONNECTED.value)
    ).all()
    return [(b, s) for b, s in rows if (profile_for(s.name) and profile_for(s.name).can_sync)]


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--business-id", help="business UUID (with --source-id)")
    parser.add_argument("--source-id", help="source UUID (with --business-id)")
    parser.add_argument("--all", action="store_true", help="sync every connected, syncable source")
    args = parser.parse_args()

    logging.basicConfig(level=settings.log_level)

    # Ensure tables exist (safe to call repeatedly)
    Base.metadata.create_all(bind=engine)

    oauth_client = GoogleOAuthClient(settings)
    review_client = GoogleBusinessClient(settings.google_reviews_base_url, timeout=settings.http_timeout_seconds)
    cipher = CredentialCipher(settings.credentials_key)

    fetched = 0
    inserted = 0
    failed = 0

    with SessionLocal() as db:
        if args.all:
            pairs = connected_pairs(db)
        elif args.business_id and args.source_id:
            business = db.get(Business, uuid.UUID(args.business_id))
            source = db.get(Source, uuid.UUID(args.source_id))
            if business is None or source is None:
                parser.error("unknown business or source id")
            pairs = [(business, source)]
        else:
            parser.error("pass --all or both --business-id and --source-id")

        for business, source in pairs:
            try:
                result = sync_reviews(db, business, source, review_client, oauth_client, cipher)
            except ReviewDeskError as e:
                db.rollback()
                failed += 1
                logger.error("Sync failed for business=%s source=%s: %s (%s)", business.id, source.name, e.message, e.kind)
                continue
            fetched += result.total_fetched
            inserted += result.new_reviews

    print(f"Pairs={len(pairs)} Fetched={fetched} InsertedNew={inserted} Failed={failed}")


if __name__ == "__main__":
    main()
