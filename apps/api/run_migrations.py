#!/usr/bin/env python3
"""
Container entry step for the API: block until the database accepts
connections, then bring the schema to the latest Alembic revision.

Exits non-zero if either step fails so the API never serves an unknown schema.

    python run_migrations.py            # wait up to 30 attempts
    MIGRATION_DB_ATTEMPTS=60 python run_migrations.py
"""

import logging
import os
import sys
import time

from dotenv import load_dotenv

load_dotenv()

from core.logging import setup_logging  # noqa: E402

logger = logging.getLogger("run_migrations")

HERE = os.path.dirname(os.path.abspath(__file__))


def wait_for_database(attempts: int, delay_s: float = 1.0) -> bool:
    from core.database import check_db_connection

    for attempt in range(1, attempts + 1):
        if check_db_connection():
            logger.info(f"Database reachable after {attempt} attempt(s)")
            return True
        logger.warning(f"Database unavailable (attempt {attempt}/{attempts})")
        time.sleep(delay_s)
    return False


def upgrade_to_head() -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(os.path.join(HERE, "alembic.ini"))
    cfg.set_main_option("script_location", os.path.join(HERE, "alembic"))
    command.upgrade(cfg, "head")


def main() -> int:
    setup_logging()
    attempts = int(os.getenv("MIGRATION_DB_ATTEMPTS", "30"))

    if not wait_for_database(attempts):
        logger.error("Database never became reachable; not migrating")
        return 1

    try:
        upgrade_to_head()
    except Exception as e:
        logger.error(f"Alembic upgrade failed: {e}", exc_info=True)
        return 1

    logger.info("Schema is at head")
    return 0


if __name__ == "__main__":
    sys.exit(main())
