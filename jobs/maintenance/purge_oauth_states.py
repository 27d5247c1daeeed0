import argparse
import logging

from apps.api.app.config import settings
from apps.api.app.db import SessionLocal, engine
from apps.api.app.models import Base
from apps.api.app.oauth_state import purge_expired_states

logger = logging.getLogger(__name__)


def main() -> None:
    argparse.ArgumentParser(description="Delete used or expired OAuth state tokens").parse_args()
    logging.basicConfig(level=settings.log_level)

    Base.metadata.create_all(bind=engine)

    with SessionLocal() as db:
        removed = purge_expired_states(db)

    logger.info("Purged %d OAuth states", removed)
    print(f"Purged={removed}")


if __name__ == "__main__":
    main()
