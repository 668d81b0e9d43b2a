"""
Process entry point: validate the environment, migrate, then serve.

Nothing binds a port until both checks pass, so a bad deploy never serves
traffic against a mismatched schema.
"""

from __future__ import annotations

import argparse
import logging
import sys

import uvicorn

from learnhub.app import create_app
from learnhub.config import get_settings
from learnhub.errors import ConfigurationError, MigrationError
from learnhub.migrate import migrate_database

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the learnhub API server")
    parser.add_argument(
        "--host",
        type=str,
        default="0.0.0.0",
        help="Interface to bind",
    )
    parser.add_argument(
        "--skip-migrations",
        action="store_true",
        help="Serve without applying pending migrations",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    try:
        settings = get_settings()
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return 1
    logging.getLogger().setLevel(settings.log_level)

    if args.skip_migrations:
        logger.warning("Skipping database migrations")
    elif not settings.use_in_memory_backends:
        try:
            migrate_database(settings.database_url)
        except MigrationError as exc:
            logger.error("Database migration failed, refusing to start: %s", exc)
            return 1

    app = create_app(settings)
    logger.info("Starting server on %s:%d (%s)", args.host, settings.port, settings.node_env)
    # uvicorn drains in-flight requests on SIGTERM/SIGINT before the
    # lifespan shutdown runs.
    uvicorn.run(
        app,
        host=args.host,
        port=settings.port,
        proxy_headers=True,
        forwarded_allow_ips="*",
        log_level=settings.log_level.lower(),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
