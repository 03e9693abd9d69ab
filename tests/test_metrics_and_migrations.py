import json
import sqlite3
import tempfile
import unittest
from pathlib import Path

from manualqa.db_migrations import SqliteMigration, apply_sqlite_migrations, connect_sqlite, current_version
from manualqa.errors import PersistenceError
from manualqa.metrics import MetricsCollector

MIGRATIONS = [
    SqliteMigration(1, "create_notes", ("CREATE TABLE notes (id INTEGER PRIMARY KEY, body TEXT)",)),
    SqliteMigration(2, "add_notes_index", ("CREATE INDEX idx_notes_body ON notes(body)",)),
]


class TestMigrations(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.conn = connect_sqlite(Path(self.tmp.name) / "db.sqlite")

    def tearDown(self):
        self.conn.close()
        self.tmp.cleanup()

    def test_applies_once(self):
        self.assertEqual(apply_sqlite_migrations(self.conn, component="notes", migrations=MIGRATIONS), 2)
        # Rerunning must not try to recreate the table.
        self.assertEqual(apply_sqlite_migrations(self.conn, component="notes", migrations=MIGRATIONS), 2)
        self.assertEqual(current_version(self.conn, "notes"), 2)
        self.assertEqual(current_version(self.conn, "other"), 0)

    def test_only_new_versions_run(self):
        apply_sqlite_migrations(self.conn, component="notes", migrations=MIGRATIONS[:1])
        apply_sqlite_migrations(self.conn, component="notes", migrations=MIGRATIONS)
        names = [row[0] for row in self.conn.execute("SELECT name FROM schema_migrations ORDER BY version")]
        self.assertEqual(names, ["create_notes", "add_notes_index"])

    def test_newer_database_is_rejected(self):
        apply_sqlite_migrations(self.conn, component="notes", migrations=MIGRATIONS)
        with self.assertRaises(PersistenceError):
            apply_sqlite_migrations(self.conn, component="notes", migrations=MIGRATIONS[:1])

    def test_duplicate_versions_are_rejected(self):
        with self.assertRaises(ValueError):
            apply_sqlite_migrations(self.conn, component="notes", migrations=[MIGRATIONS[0], MIGRATIONS[0]])

    def test_failed_statement_surfaces(self):
        broken = [SqliteMigration(1, "broken", ("CREATE TABLE (",))]
        with self.assertRaises(sqlite3.Error):
            apply_sqlite_migrations(self.conn, component="broken", migrations=broken)


class TestMetricsCollector(unittest.TestCase):
    def test_summary_and_jsonl(self):
        with tempfile.TemporaryDirectory() as td:
            metrics = MetricsCollector(log_dir=td)
            metrics.record_request("/chat", 100.0, success=True)
            metrics.record_request("/chat", 300.0, success=False, error_kind="rate_limit")
            metrics.record_request("/search", 50.0, success=True)

            summary = metrics.get_summary()
            self.assertEqual(summary["throughput"]["total_requests"], 3)
            chat = summary["throughput"]["by_endpoint"]["/chat"]
            self.assertEqual(chat["requests"], 2)
            self.assertEqual(chat["failures"], 1)
            self.assertEqual(chat["avg_ms"], 200.0)
            self.assertEqual(chat["max_ms"], 300.0)
            self.assertEqual(summary["errors"]["by_kind"], {"rate_limit": 1})
            self.assertEqual(summary["errors"]["rate_percent"], 33.33)

            lines = metrics.log_path.read_text(encoding="utf-8").splitlines()
            self.assertEqual(len(lines), 3)
            self.assertEqual(json.loads(lines[1])["error_kind"], "rate_limit")

    def test_empty_summary(self):
        with tempfile.TemporaryDirectory() as td:
            summary = MetricsCollector(log_dir=td).get_summary()
            self.assertEqual(summary["latency"]["p95_ms"], 0.0)
            self.assertEqual(summary["errors"]["count"], 0)


if __name__ == "__main__":
    unittest.main()
