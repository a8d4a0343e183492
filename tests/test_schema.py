"""Tests for schema migrations and the legacy payload back-fill."""

import json
import logging
import sqlite3

import pytest

from worksync.protocols import MigrationError
from worksync.storage import MIGRATIONS, SQLiteStorage, backfill_typed_columns, run_migrations
from worksync.storage.schema import Migration, validate_table_name


def _ledger(conn):
    return [row[0] for row in conn.execute("SELECT id FROM migrations ORDER BY id")]


def _legacy_db(path, rows):
    """A database left behind by a version that only had the JSON snapshot."""
    conn = sqlite3.connect(path)
    run_migrations(conn, MIGRATIONS[:1])
    for local_id, remote_id, payload in rows:
        conn.execute(
            "INSERT INTO tasks (local_id, remote_id, payload, sync_status) VALUES (?, ?, ?, 'synced')",
            (local_id, remote_id, payload),
        )
    conn.commit()
    conn.close()


class TestRunMigrations:
    def test_fresh_database_applies_every_migration_in_order(self, tmp_path):
        conn = sqlite3.connect(tmp_path / "fresh.db")
        applied = run_migrations(conn)

        assert applied == [m.id for m in MIGRATIONS]
        assert _ledger(conn) == sorted(m.id for m in MIGRATIONS)
        conn.close()

    def test_rerun_is_a_no_op(self, tmp_path):
        conn = sqlite3.connect(tmp_path / "fresh.db")
        run_migrations(conn)

        assert run_migrations(conn) == []
        assert len(_ledger(conn)) == len(MIGRATIONS)
        conn.close()

    def test_failing_migration_leaves_no_trace(self, tmp_path):
        """A failing statement rolls back the whole migration and its ledger row."""
        migrations = [
            Migration("001_ok", ("CREATE TABLE first_table (x TEXT)",)),
            Migration("002_bad", ("CREATE TABLE second_table (y TEXT)", "THIS IS NOT SQL")),
        ]
        conn = sqlite3.connect(tmp_path / "bad.db")

        with pytest.raises(MigrationError) as exc_info:
            run_migrations(conn, migrations)

        assert exc_info.value.migration_id == "002_bad"
        assert _ledger(conn) == ["001_ok"]
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        assert "first_table" in tables
        assert "second_table" not in tables
        conn.close()

    def test_storage_records_what_it_applied(self, temp_db):
        first = SQLiteStorage(temp_db)
        second = SQLiteStorage(temp_db)

        assert first.applied_migrations == [m.id for m in MIGRATIONS]
        assert second.applied_migrations == []


class TestBackfill:
    def test_typed_columns_filled_from_snapshot(self, temp_db):
        payload = {
            "title": "Legacy task",
            "status": "In progress",
            "dueDate": "2024-03-01",
            "urgent": True,
            "estimatedLengthMinutes": 45,
            "uniqueId": "T-7",
            "projectIds": ["proj-1", "proj-2"],
        }
        _legacy_db(temp_db, [("local-1", "remote-1", json.dumps(payload))])

        storage = SQLiteStorage(temp_db)
        record = storage.get_record("task", "local-1")

        assert record.fields["title"] == "Legacy task"
        assert record.fields["status"] == "In progress"
        assert record.fields["due_date"] == "2024-03-01"
        assert record.fields["urgent"] is True
        assert record.fields["estimated_length_minutes"] == 45.0
        assert record.fields["project_ids"] == ["proj-1", "proj-2"]
        assert record.remote_unique_id == "T-7"

    def test_unparseable_snapshot_is_skipped(self, temp_db, caplog):
        _legacy_db(
            temp_db,
            [
                ("local-good", "remote-1", json.dumps({"title": "Fine"})),
                ("local-bad", "remote-2", "{not json"),
            ],
        )

        with caplog.at_level(logging.WARNING):
            storage = SQLiteStorage(temp_db)

        assert storage.get_record("task", "local-good").fields["title"] == "Fine"
        assert storage.get_record("task", "local-bad").fields["title"] is None
        assert "local-bad" in caplog.text

    def test_duplicate_unique_id_is_skipped(self, temp_db):
        _legacy_db(
            temp_db,
            [
                ("local-a", "remote-a", json.dumps({"title": "A", "unique_id": "T-1"})),
                ("local-b", "remote-b", json.dumps({"title": "B", "unique_id": "T-1"})),
            ],
        )

        storage = SQLiteStorage(temp_db)
        ids = {storage.get_record("task", lid).remote_unique_id for lid in ("local-a", "local-b")}

        assert ids == {"T-1", None}

    def test_rerun_produces_same_values(self, temp_db):
        _legacy_db(temp_db, [("local-1", "remote-1", json.dumps({"title": "Same"}))])
        storage = SQLiteStorage(temp_db)
        before = storage.get_record("task", "local-1").fields

        with storage._connect() as conn:
            counts = backfill_typed_columns(conn)

        assert counts["updated"] == 1
        assert storage.get_record("task", "local-1").fields == before


class TestTableValidation:
    def test_unknown_table_rejected(self):
        with pytest.raises(ValueError):
            validate_table_name("tasks; DROP TABLE tasks")

    def test_known_table_accepted(self):
        assert validate_table_name("time_logs") == "time_logs"
