import shutil
import tempfile
import unittest
from pathlib import Path

from sqlalchemy import create_engine, inspect, text

from learnhub.errors import MigrationError
from learnhub.migrate import (
    MIGRATIONS_DIR,
    discover_migrations,
    migrate_database,
    migration_status,
    run_migrations,
)


class MigrationTestCase(unittest.TestCase):
    def setUp(self):
        self.tmpdir = Path(tempfile.mkdtemp())
        self.db_path = self.tmpdir / "learnhub.db"
        self.url = f"sqlite+pysqlite:///{self.db_path}"
        self.engine = create_engine(self.url, future=True)

    def tearDown(self):
        self.engine.dispose()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def write_migrations(self, files: dict[str, str]) -> Path:
        folder = self.tmpdir / "migrations"
        folder.mkdir(exist_ok=True)
        for name, sql in files.items():
            (folder / name).write_text(sql, encoding="utf-8")
        return folder

    def applied_names(self) -> list[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(text("SELECT name FROM schema_migrations ORDER BY name"))
            return [row[0] for row in rows]


class PackagedMigrationsTests(MigrationTestCase):
    def test_packaged_migrations_apply(self):
        applied = run_migrations(self.engine)
        self.assertEqual(applied, [m.name for m in discover_migrations(MIGRATIONS_DIR)])

        inspector = inspect(self.engine)
        tables = set(inspector.get_table_names())
        for table in ("users", "lessons", "user_progress", "subscriptions", "stripe_events"):
            self.assertIn(table, tables)
        indexes = {index["name"] for index in inspector.get_indexes("user_progress")}
        self.assertIn("user_progress_user_id_idx", indexes)
        self.assertIn("user_progress_lesson_id_idx", indexes)

    def test_rerun_is_a_no_op(self):
        first = run_migrations(self.engine)
        self.assertTrue(first)
        self.assertEqual(run_migrations(self.engine), [])
        self.assertEqual(self.applied_names(), sorted(first))

    def test_migrate_database_by_url(self):
        applied = migrate_database(self.url)
        self.assertIn("0000_initial_schema", applied)
        self.assertEqual(migrate_database(self.url), [])


class RunnerTests(MigrationTestCase):
    def test_files_apply_in_name_order(self):
        folder = self.write_migrations(
            {
                "0002_add_column.sql": "ALTER TABLE notes ADD COLUMN body TEXT",
                "0001_create.sql": "CREATE TABLE notes (id INTEGER PRIMARY KEY)",
            }
        )
        self.assertEqual(run_migrations(self.engine, folder), ["0001_create", "0002_add_column"])
        columns = {column["name"] for column in inspect(self.engine).get_columns("notes")}
        self.assertEqual(columns, {"id", "body"})

    def test_statement_breakpoints_split_statements(self):
        folder = self.write_migrations(
            {
                "0001_two_tables.sql": (
                    "CREATE TABLE a (id INTEGER PRIMARY KEY);\n"
                    "--> statement-breakpoint\n"
                    "CREATE TABLE b (id INTEGER PRIMARY KEY);\n"
                ),
            }
        )
        run_migrations(self.engine, folder)
        tables = set(inspect(self.engine).get_table_names())
        self.assertTrue({"a", "b"}.issubset(tables))

    def test_only_new_files_apply(self):
        folder = self.write_migrations({"0001_create.sql": "CREATE TABLE notes (id INTEGER)"})
        run_migrations(self.engine, folder)
        self.write_migrations({"0002_more.sql": "CREATE TABLE more_notes (id INTEGER)"})
        self.assertEqual(run_migrations(self.engine, folder), ["0002_more"])

    def test_failure_is_not_recorded(self):
        folder = self.write_migrations(
            {
                "0001_create.sql": "CREATE TABLE notes (id INTEGER)",
                "0002_broken.sql": "CREATE TABLE broken (id INTEGER",
                "0003_after.sql": "CREATE TABLE after_broken (id INTEGER)",
            }
        )
        with self.assertRaises(MigrationError) as ctx:
            run_migrations(self.engine, folder)
        self.assertIn("0002_broken", str(ctx.exception))
        self.assertEqual(self.applied_names(), ["0001_create"])
        self.assertNotIn("after_broken", inspect(self.engine).get_table_names())

    def test_modified_migration_is_rejected(self):
        folder = self.write_migrations({"0001_create.sql": "CREATE TABLE notes (id INTEGER)"})
        run_migrations(self.engine, folder)
        self.write_migrations(
            {
                "0001_create.sql": "CREATE TABLE notes (id INTEGER, body TEXT)",
                "0002_more.sql": "CREATE TABLE more_notes (id INTEGER)",
            }
        )
        with self.assertRaises(MigrationError) as ctx:
            run_migrations(self.engine, folder)
        self.assertIn("modified", str(ctx.exception))
        self.assertEqual(self.applied_names(), ["0001_create"])

    def test_missing_folder(self):
        with self.assertRaises(MigrationError):
            run_migrations(self.engine, self.tmpdir / "nope")

    def test_unreachable_database(self):
        url = f"sqlite+pysqlite:///{self.tmpdir / 'no_such_dir' / 'learnhub.db'}"
        with self.assertRaises(MigrationError):
            migrate_database(url)

        engine = create_engine(url, future=True)
        try:
            with self.assertRaises(MigrationError):
                migration_status(engine)
        finally:
            engine.dispose()

    def test_empty_folder(self):
        folder = self.write_migrations({})
        self.assertEqual(run_migrations(self.engine, folder), [])

    def test_status_reports_pending(self):
        folder = self.write_migrations(
            {
                "0001_create.sql": "CREATE TABLE notes (id INTEGER)",
                "0002_more.sql": "CREATE TABLE more_notes (id INTEGER)",
            }
        )
        status = migration_status(self.engine, folder)
        self.assertEqual(status.applied, [])
        self.assertEqual(status.pending, ["0001_create", "0002_more"])

        run_migrations(self.engine, folder)
        status = migration_status(self.engine, folder)
        self.assertEqual(status.applied, ["0001_create", "0002_more"])
        self.assertEqual(status.pending, [])


if __name__ == "__main__":
    unittest.main()
