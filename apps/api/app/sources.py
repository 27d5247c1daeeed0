from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from sqlalchemy.orm import Session

from apps.api.app.db import insert_for
from apps.api.app.models import Source


class SourceKind(str, Enum):
    GOOGLE_BUSINESS = "google business"
    FACEBOOK = "facebook"
    YELP = "yelp"
    TRUSTPILOT = "trustpilot"
    TRIPADVISOR = "tripadvisor"
    AMAZON = "amazon"


class ConnectionType(str, Enum):
    API_KEY = "api_key"
    OAUTH = "oauth"
    URL = "url"


@dataclass(frozen=True)
class SourceProfile:
    kind: SourceKind
    display_name: str
    icon: str
    connection_type: ConnectionType
    oauth_provider: Optional[str] = None
    can_sync: bool = False
    can_reply: bool = False


SOURCE_PROFILES: Dict[SourceKind, SourceProfile] = {
    SourceKind.GOOGLE_BUSINESS: SourceProfile(
        kind=SourceKind.GOOGLE_BUSINESS,
        display_name="Google Business",
        icon="map-pin",
        connection_type=ConnectionType.OAUTH,
        oauth_provider="google",
        can_sync=True,
        can_reply=True,
    ),
    # Facebook uses OAuth but has no provider client wired up yet
    SourceKind.FACEBOOK: SourceProfile(
        kind=SourceKind.FACEBOOK,
        display_name="Facebook",
        icon="facebook",
        connection_type=ConnectionType.OAUTH,
    ),
    SourceKind.YELP: SourceProfile(
        kind=SourceKind.YELP,
        display_name="Yelp",
        icon="star",
        connection_type=ConnectionType.API_KEY,
    ),
    SourceKind.TRUSTPILOT: SourceProfile(
        kind=SourceKind.TRUSTPILOT,
        display_name="Trustpilot",
        icon="shield-check",
        connection_type=ConnectionType.API_KEY,
    ),
    SourceKind.TRIPADVISOR: SourceProfile(
        kind=SourceKind.TRIPADVISOR,
        display_name="TripAdvisor",
        icon="plane",
        connection_type=ConnectionType.API_KEY,
    ),
    SourceKind.AMAZON: SourceProfile(
        kind=SourceKind.AMAZON,
        display_name="Amazon",
        icon="shopping-cart",
        connection_type=ConnectionType.URL,
    ),
}


def profile_for(source_name: Optional[str]) -> Optional[SourceProfile]:
    """Catalog profile for a stored source name, or None for unknown platforms."""
    if not source_name:
        return None
    try:
        kind = SourceKind(source_name.strip().lower())
    except ValueError:
        return None
    return SOURCE_PROFILES[kind]


def seed_sources(db: Session) -> int:
    """Insert any catalog source missing from the sources table. Returns how many were added."""
    added = 0
    for profile in SOURCE_PROFILES.values():
        stmt = (
            insert_for(db, Source)
            .values(name=profile.kind.value, display_name=profile.display_name, icon=profile.icon)
            .on_conflict_do_nothing(index_elements=["name"])
        )
        added += db.execute(stmt).rowcount or 0
    db.commit()
    return added
