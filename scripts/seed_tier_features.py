"""Create the tier engine tables and seed the default feature catalogue."""

from __future__ import annotations

import argparse
import logging
import time
from typing import Callable, Optional, Sequence

from scripts._path import bootstrap

bootstrap()

from sqlalchemy.exc import OperationalError  # noqa: E402

import models  # noqa: E402,F401
from database import Base, SessionLocal, engine  # noqa: E402
from services.tier_catalog import seed_tier_feature_definitions  # noqa: E402

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _retry(operation: Callable[[], None], *, retries: int = 7, delay: float = 3.0) -> None:
    for attempt in range(1, retries + 1):
        try:
            operation()
            return
        except OperationalError as exc:
            if attempt == retries:
                raise
            logger.warning(
                "Database not ready yet (attempt %d/%d). Retrying in %.1f seconds: %s",
                attempt,
                retries,
                delay,
                exc,
            )
            time.sleep(delay)


def seed(*, overwrite: bool = False, create_tables: bool = True) -> int:
    if create_tables:
        _retry(lambda: Base.metadata.create_all(bind=engine))
        logger.info("Tier engine tables ensured.")
    session = SessionLocal()
    try:
        written = seed_tier_feature_definitions(session, overwrite=overwrite)
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
    logger.info("Seeded %d tier feature definitions (overwrite=%s).", written, overwrite)
    return written


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Seed default tier feature definitions.")
    parser.add_argument("--overwrite", action="store_true", help="Reset existing rows to the defaults.")
    parser.add_argument("--skip-create", action="store_true", help="Do not run create_all before seeding.")
    args = parser.parse_args(argv)
    seed(overwrite=args.overwrite, create_tables=not args.skip_create)


if __name__ == "__main__":
    main()
