"""
Apply pending SQL migrations, or report which are pending.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy import create_engine

from learnhub.config import get_settings, normalize_database_url
from learnhub.errors import ConfigurationError, MigrationError
from learnhub.migrate import MIGRATIONS_DIR, migration_status, run_migrations

logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Run database migrations")
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="Override DATABASE_URL",
    )
    parser.add_argument(
        "--dir",
        type=Path,
        default=MIGRATIONS_DIR,
        help="Folder holding the .sql migrations",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="List applied and pending migrations without applying",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    database_url = args.database_url and normalize_database_url(args.database_url)
    if not database_url:
        try:
            database_url = get_settings().database_url
        except ConfigurationError as exc:
            logger.error("%s", exc)
            return 1

    engine = create_engine(database_url, future=True)
    try:
        if args.status:
            status = migration_status(engine, args.dir)
            for name in status.applied:
                print(f"[applied] {name}")
            for name in status.pending:
                print(f"[pending] {name}")
            return 0
        applied = run_migrations(engine, args.dir)
        print(f"Applied {len(applied)} migration(s)")
        return 0
    except MigrationError as exc:
        logger.error("%s", exc)
        return 1
    finally:
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
