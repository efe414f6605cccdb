"""CLI entry point for seeding default settings and the late payment fine.

Usage:
    python -m src.cli.seed
    python -m src.cli.seed --create-tables   (development databases without Alembic)

Exit Codes:
    0 - Success: defaults present
    1 - Failure: error encountered; nothing committed

Existing settings and fine types are never overwritten, so the command is
safe to re-run.
"""

import argparse
import logging
import sys
from decimal import Decimal

from dotenv import load_dotenv
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.config import AppConfig
from src.models import Base
from src.models.fine import FineCategory, FineType
from src.services.db import create_db_engine, create_session_factory
from src.services.logging import setup_server_logging
from src.services.settings_service import SettingsService

logger = logging.getLogger(__name__)

DEFAULT_LATE_FINE = {
    "fine_name": "Late Payment Fine",
    "fine_type": FineCategory.LATE_PAYMENT.value,
    "amount": Decimal("50.00"),
    "is_percentage": False,
    "grace_period_days": None,
}


def seed_defaults(db: Session) -> dict[str, int]:
    """Insert missing settings and the default late payment fine (caller commits).

    Returns:
        Counts of inserted settings and fine types
    """
    settings_inserted = SettingsService(db).seed_defaults()

    fine_types_inserted = 0
    existing = db.execute(
        select(FineType.id).where(FineType.fine_type == FineCategory.LATE_PAYMENT.value)
    ).first()
    if existing is None:
        db.add(FineType(is_active=True, **DEFAULT_LATE_FINE))
        fine_types_inserted = 1

    return {"settings": settings_inserted, "fine_types": fine_types_inserted}


def main(argv: list[str] | None = None) -> int:
    """Seed the configured database.

    Returns:
        Exit code: 0 for success, 1 for failure
    """
    parser = argparse.ArgumentParser(description="Seed billing engine defaults")
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables from the models before seeding",
    )
    args = parser.parse_args(argv)

    load_dotenv()
    config = AppConfig()
    setup_server_logging("logs/seed.log")

    try:
        if args.create_tables:
            Base.metadata.create_all(bind=create_db_engine(config.database_url))
            logger.info("Tables created")

        session_factory = create_session_factory(config.database_url)
        with session_factory() as db:
            counts = seed_defaults(db)
            db.commit()
        logger.info(
            "Seed complete: %d settings, %d fine types inserted",
            counts["settings"],
            counts["fine_types"],
        )
        return 0
    except KeyboardInterrupt:
        logger.warning("Seed interrupted by user")
        return 1
    except SQLAlchemyError as e:
        logger.error("Seed failed: %s", e, exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
