"""Tests for the Replica facade: setup gating, status and lifecycle."""

import pytest

from conftest import TASKS_DB, make_page
from worksync import Replica
from worksync.protocols import TransientRemoteError
from worksync.remote.relay import parse_event
from worksync.sync.importer import LAST_APP_CLOSE


@pytest.fixture
def replica(settings, storage, remote, relay, sleeps):
    r = Replica(settings=settings, storage=storage, client=remote, relay=relay, sleep=sleeps.append)
    yield r
    r.stop_background()


@pytest.fixture
def offline_replica(settings, storage):
    settings.api_key = None
    return Replica(settings=settings, storage=storage)


class TestSetup:
    def test_first_run_until_setup_completes(self, replica):
        assert replica.is_first_time_setup() is True
        replica.complete_setup("remote")
        assert replica.is_first_time_setup() is False
        assert replica.get_setup_mode() == "remote"

    def test_local_mode_records_never_queued(self, replica):
        replica.complete_setup("local")

        record = replica.create_local({"title": "Offline only"})

        assert record["sync_status"] == "local_only"
        assert replica.get_pending_change_count() == 0

    def test_invalid_mode(self, replica):
        with pytest.raises(ValueError):
            replica.complete_setup("cloud")


class TestRecords:
    def test_crud_round_trip(self, replica):
        created = replica.create_local({"title": "Draft", "status": "Todo"})
        updated = replica.update_local(created["local_id"], {"status": "Doing"})
        trashed = replica.trash_local(created["local_id"])

        assert updated["fields"]["status"] == "Doing"
        assert trashed["sync_status"] == "trashed"
        assert replica.get_records() == []
        assert replica.get_record(created["local_id"])["local_id"] == created["local_id"]

    def test_counts_and_empty(self, replica):
        assert replica.is_database_empty() is True
        replica.create_local({"title": "One"})
        replica.create_local({"title": "P"}, entity_type="project")

        counts = replica.get_counts()
        assert counts["task"] == 1
        assert counts["project"] == 1
        assert replica.is_database_empty() is False

    def test_purge_rejects_negative_age(self, replica):
        with pytest.raises(ValueError):
            replica.purge_trash(-1)


class TestSyncOperations:
    def test_import_all_returns_report(self, replica, remote):
        remote.add(TASKS_DB, make_page("t1"))

        result = replica.import_all(["task"])

        assert result["success"] is True
        assert result["results"]["task"]["inserted"] == 1
        assert replica.get_sync_status()["state"] == "idle"

    def test_aborted_import_reports_offline(self, replica, remote, settings):
        settings.max_page_retries = 0
        remote.failures = [TransientRemoteError("connection refused")]

        result = replica.import_active(["task"])

        assert result["success"] is False
        assert "error" in result
        status = replica.get_sync_status()
        assert status["state"] == "offline"
        assert "Unable to reach" in status["message"]

    def test_sync_pushes_then_pulls(self, replica, remote):
        replica.create_local({"title": "Local"})
        remote.add(TASKS_DB, make_page("remote-1", edited="2030-01-01T00:00:00.000Z"))

        result = replica.sync()

        assert result["success"] is True
        assert result["push"]["pushed"] == 1
        assert result["pull"]["results"]["task"]["inserted"] >= 1
        assert len(replica.get_records()) == 2

    def test_failed_push_reflected_in_status(self, replica, remote):
        replica.create_local({"title": "Stuck"})
        remote.write_failures = [TransientRemoteError("unavailable", 503)]

        replica.drain_outbound()
        status = replica.get_sync_status()

        assert status["pending_items"] == 1
        assert status["failed_items"] == 1
        assert status["state"] == "error"
        assert "unavailable" in status["last_error"]

    def test_poll_events(self, replica, remote, relay):
        remote.add(TASKS_DB, make_page("t1"))
        relay.events = [
            parse_event({"id": "e1", "timestamp": 10, "type": "created", "entity": {"id": "t1"}})
        ]

        result = replica.poll_events()

        assert result["success"] is True
        assert result["upserted"] == 1

    def test_without_remote_everything_degrades(self, offline_replica):
        assert offline_replica.import_all()["success"] is False
        assert offline_replica.drain_outbound()["success"] is False
        assert offline_replica.poll_events()["success"] is False
        status = offline_replica.get_sync_status()
        assert status["remote_configured"] is False
        assert status["relay_configured"] is False


class TestLifecycle:
    def test_close_marks_app_close(self, replica, storage):
        replica.close()

        assert storage.get_app_state(LAST_APP_CLOSE) is not None

    def test_close_without_marking(self, replica, storage):
        replica.close(mark_close=False)

        assert storage.get_app_state(LAST_APP_CLOSE) is None

    def test_background_tasks_start_and_stop(self, replica, settings):
        settings.drain_interval = 60
        settings.poll_interval = 60

        started = replica.start_background()

        assert started == {"drain": True, "poll": True}
        assert replica.get_sync_status()["background_running"] is True
        replica.stop_background()
        assert replica.get_sync_status()["background_running"] is False

    def test_context_manager_closes(self, settings, storage, remote):
        with Replica(settings=settings, storage=storage, client=remote) as r:
            r.create_local({"title": "x"}, entity_type="task")

        assert storage.get_app_state(LAST_APP_CLOSE) is not None
