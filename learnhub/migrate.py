"""
Ordered SQL migration runner.

Migrations are plain ``.sql`` files applied in filename order. Statements in
a file are separated by ``--> statement-breakpoint`` lines so that drivers
which only accept one statement per call (SQLite) can run them.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    create_engine,
    insert,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from learnhub.errors import MigrationError

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"
STATEMENT_BREAKPOINT = "--> statement-breakpoint"

# Arbitrary constant shared by every runner taking the Postgres advisory lock.
ADVISORY_LOCK_ID = 727_311_004

_metadata = MetaData()

schema_migrations = Table(
    "schema_migrations",
    _metadata,
    Column("name", String(255), primary_key=True),
    Column("checksum", String(64), nullable=False),
    Column("applied_at", DateTime(timezone=True), nullable=False),
)


@dataclass(frozen=True)
class Migration:
    name: str
    path: Path
    sql: str
    checksum: str

    def statements(self) -> list[str]:
        chunks = self.sql.split(STATEMENT_BREAKPOINT)
        return [chunk.strip() for chunk in chunks if chunk.strip()]


@dataclass
class MigrationStatus:
    applied: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)


def discover_migrations(directory: Path = MIGRATIONS_DIR) -> list[Migration]:
    """Load every ``.sql`` file in ``directory`` in deterministic order."""
    if not directory.is_dir():
        raise MigrationError(f"Migrations folder not found: {directory}")
    migrations = []
    for path in sorted(directory.glob("*.sql"), key=lambda p: p.name):
        sql = path.read_text(encoding="utf-8")
        checksum = hashlib.sha256(sql.encode("utf-8")).hexdigest()
        migrations.append(
            Migration(name=path.stem, path=path, sql=sql, checksum=checksum)
        )
    return migrations


def _applied_checksums(conn: Connection) -> dict[str, str]:
    rows = conn.execute(
        select(schema_migrations.c.name, schema_migrations.c.checksum)
    ).all()
    return {name: checksum for name, checksum in rows}


def _check_drift(migrations: list[Migration], applied: dict[str, str]) -> None:
    for migration in migrations:
        recorded = applied.get(migration.name)
        if recorded is not None and recorded != migration.checksum:
            raise MigrationError(
                f"Migration {migration.name} was modified after it was applied "
                f"(recorded checksum {recorded[:12]}, file {migration.checksum[:12]})"
            )


def _apply(engine: Engine, migration: Migration) -> None:
    try:
        with engine.begin() as conn:
            for statement in migration.statements():
                conn.exec_driver_sql(statement)
            conn.execute(
                insert(schema_migrations).values(
                    name=migration.name,
                    checksum=migration.checksum,
                    applied_at=datetime.now(timezone.utc),
                )
            )
    except SQLAlchemyError as exc:
        raise MigrationError(
            f"Migration {migration.name} failed: {exc}"
        ) from exc


class _AdvisoryLock:
    """Serializes concurrent runners on Postgres; a no-op elsewhere."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self.conn: Optional[Connection] = None

    def __enter__(self):
        if self.engine.dialect.name == "postgresql":
            self.conn = self.engine.connect()
            self.conn.execute(
                text("SELECT pg_advisory_lock(:id)"), {"id": ADVISORY_LOCK_ID}
            )
        return self

    def __exit__(self, exc_type, exc, tb):
        if self.conn is not None:
            try:
                self.conn.execute(
                    text("SELECT pg_advisory_unlock(:id)"), {"id": ADVISORY_LOCK_ID}
                )
            finally:
                self.conn.close()
                self.conn = None
        return False


def run_migrations(
    engine: Engine, directory: Path = MIGRATIONS_DIR
) -> list[str]:
    """
    Apply pending migrations and return the names applied, in order.

    Already-applied migrations are skipped, so running twice is a no-op. A
    failed migration is rolled back and stops the run with MigrationError.
    """
    migrations = discover_migrations(directory)

    applied_now: list[str] = []
    try:
        with _AdvisoryLock(engine):
            _metadata.create_all(engine)
            with engine.connect() as conn:
                applied = _applied_checksums(conn)
            _check_drift(migrations, applied)

            for migration in migrations:
                if migration.name in applied:
                    continue
                logger.info("Applying migration %s", migration.name)
                _apply(engine, migration)
                applied_now.append(migration.name)
    except SQLAlchemyError as exc:
        # Connection, lock or bookkeeping failures; statement failures are
        # already translated by _apply.
        raise MigrationError(f"Could not prepare the database for migrations: {exc}") from exc

    if applied_now:
        logger.info("Applied %d migration(s)", len(applied_now))
    else:
        logger.info("Database schema is up to date")
    return applied_now


def migration_status(
    engine: Engine, directory: Path = MIGRATIONS_DIR
) -> MigrationStatus:
    migrations = discover_migrations(directory)
    try:
        _metadata.create_all(engine)
        with engine.connect() as conn:
            applied = _applied_checksums(conn)
    except SQLAlchemyError as exc:
        raise MigrationError(f"Could not read migration history: {exc}") from exc
    status = MigrationStatus()
    for migration in migrations:
        if migration.name in applied:
            status.applied.append(migration.name)
        else:
            status.pending.append(migration.name)
    return status


def migrate_database(database_url: str, directory: Path = MIGRATIONS_DIR) -> list[str]:
    """Open a short-lived engine for ``database_url`` and run migrations."""
    engine = create_engine(database_url, future=True, pool_pre_ping=True)
    try:
        return run_migrations(engine, directory)
    finally:
        engine.dispose()
