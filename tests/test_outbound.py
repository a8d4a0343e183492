"""Tests for draining the outbound change queue."""

from conftest import TASKS_DB, make_page
from worksync.protocols import PermanentRemoteError, TransientRemoteError
from worksync.remote.mapping import map_remote_page
from worksync.sync import OutboundDrainer
from worksync.types import ImportMode, SyncStatus


def _import(ctx, *pages):
    ent = ctx.settings.entity("task")
    ctx.storage.apply_page("task", [map_remote_page(ent, p) for p in pages], ImportMode.FULL.value)


class TestDrainSuccess:
    def test_create_is_pushed_and_confirmed(self, ctx, remote, storage):
        record = storage.create_local("task", {"title": "Ship it", "status": "Todo"})

        result = OutboundDrainer(ctx).drain()

        assert result.pushed == 1
        assert result.remaining == 0
        op, database_id, properties = remote.writes[0]
        assert (op, database_id) == ("create", TASKS_DB)
        assert properties["Name"] == {"title": [{"type": "text", "text": {"content": "Ship it"}}]}
        saved = storage.get_record("task", record.local_id)
        assert saved.remote_id is not None
        assert saved.sync_status == SyncStatus.SYNCED.value

    def test_update_sends_only_changed_properties(self, ctx, remote, storage):
        remote.add(TASKS_DB, make_page("r1", title="Old"))
        _import(ctx, make_page("r1", title="Old"))
        storage.update_local("task", "r1", {"title": "New"})

        OutboundDrainer(ctx).drain()

        assert remote.writes == [
            ("update", "r1", {"Name": {"title": [{"type": "text", "text": {"content": "New"}}]}})
        ]
        assert storage.get_record("task", "r1").sync_status == SyncStatus.SYNCED.value

    def test_delete_archives_remote(self, ctx, remote, storage):
        remote.add(TASKS_DB, make_page("r1"))
        _import(ctx, make_page("r1"))
        storage.trash_local("task", "r1")

        OutboundDrainer(ctx).drain()

        assert remote.writes == [("archive", "r1", None)]
        assert remote.find("r1")["in_trash"] is True
        assert storage.get_record("task", "r1").sync_status == SyncStatus.TRASHED.value

    def test_oldest_change_first(self, ctx, remote, storage):
        storage.create_local("task", {"title": "First"})
        storage.create_local("task", {"title": "Second"})

        OutboundDrainer(ctx).drain()

        titles = [w[2]["Name"]["title"][0]["text"]["content"] for w in remote.writes]
        assert titles == ["First", "Second"]

    def test_limit_bounds_the_batch(self, ctx, remote, storage):
        for i in range(3):
            storage.create_local("task", {"title": f"T{i}"})

        result = OutboundDrainer(ctx).drain(limit=2)

        assert result.pushed == 2
        assert result.remaining == 1


class TestDrainFailures:
    def test_transient_failure_keeps_entry_and_stops(self, ctx, remote, storage):
        storage.create_local("task", {"title": "A"})
        storage.create_local("task", {"title": "B"})
        remote.write_failures = [TransientRemoteError("unavailable", 503)]

        result = OutboundDrainer(ctx).drain()

        assert result.failed == 1
        assert result.pushed == 0
        assert result.remaining == 2
        (first, _) = storage.queue.list_pending()
        assert first.retry_count == 1
        assert "unavailable" in first.last_error

    def test_permanent_failure_skips_to_next(self, ctx, remote, storage):
        storage.create_local("task", {"title": "Rejected"})
        storage.create_local("task", {"title": "Fine"})
        remote.write_failures = [PermanentRemoteError("bad property", 400)]

        result = OutboundDrainer(ctx).drain()

        assert result.failed == 1
        assert result.pushed == 1
        assert result.remaining == 1

    def test_failed_entry_retried_next_cycle(self, ctx, remote, storage):
        storage.create_local("task", {"title": "Eventually"})
        remote.write_failures = [TransientRemoteError("unavailable", 503)]
        drainer = OutboundDrainer(ctx)

        drainer.drain()
        result = drainer.drain()

        assert result.pushed == 1
        assert storage.queue.count_pending() == 0

    def test_update_of_deleted_remote_trashes_local(self, ctx, remote, storage):
        _import(ctx, make_page("gone"))
        storage.update_local("task", "gone", {"title": "Edited"})

        result = OutboundDrainer(ctx).drain()

        assert result.trashed == 1
        assert storage.queue.count_pending() == 0
        assert storage.get_record("task", "gone").sync_status == SyncStatus.TRASHED.value

    def test_delete_of_missing_remote_is_dropped(self, ctx, remote, storage):
        _import(ctx, make_page("gone"))
        storage.trash_local("task", "gone")

        result = OutboundDrainer(ctx).drain()

        assert result.failed == 0
        assert storage.queue.count_pending() == 0

    def test_entity_without_database_left_queued(self, ctx, remote, storage, settings):
        settings.entity("time_log").database_id = None
        storage.create_local("time_log", {"title": "Session"})

        result = OutboundDrainer(ctx).drain()

        assert result.pushed == 0
        assert result.remaining == 1
        assert remote.writes == []


def _task_page(page_id, **properties):
    page = make_page(page_id)
    page["properties"].update(properties)
    return page


class TestPushedProperties:
    def test_clearing_flag_writes_inactive_option(self, ctx, remote, storage):
        page = _task_page("r1", Urgent={"type": "status", "status": {"name": "Urgent"}})
        remote.add(TASKS_DB, page)
        _import(ctx, page)
        storage.update_local("task", "r1", {"urgent": False})

        result = OutboundDrainer(ctx).drain()

        assert result.pushed == 1
        assert remote.writes == [("update", "r1", {"Urgent": {"status": {"name": "Not urgent"}}})]
        assert remote.find("r1")["properties"]["Urgent"] == {"status": {"name": "Not urgent"}}

    def test_editing_start_keeps_range_end(self, ctx, remote, storage):
        page = _task_page(
            "r1", Date={"type": "date", "date": {"start": "2024-01-01", "end": "2024-01-05"}}
        )
        remote.add(TASKS_DB, page)
        _import(ctx, page)
        storage.update_local("task", "r1", {"due_date": "2024-01-02"})

        OutboundDrainer(ctx).drain()

        (_, _, properties) = remote.writes[0]
        assert properties == {"Date": {"date": {"start": "2024-01-02", "end": "2024-01-05"}}}
        assert storage.get_record("task", "r1").fields["due_date_end"] == "2024-01-05"

    def test_editing_end_sends_stored_start(self, ctx, remote, storage):
        page = _task_page(
            "r1", Date={"type": "date", "date": {"start": "2024-01-01", "end": "2024-01-05"}}
        )
        remote.add(TASKS_DB, page)
        _import(ctx, page)
        storage.update_local("task", "r1", {"due_date_end": "2024-01-09"})

        result = OutboundDrainer(ctx).drain()

        assert result.failed == 0
        (_, _, properties) = remote.writes[0]
        assert properties == {"Date": {"date": {"start": "2024-01-01", "end": "2024-01-09"}}}


class TestEditsDuringCreate:
    def _intercept_create(self, remote, during):
        create = remote.create_record

        def create_and_edit(resource_id, properties):
            response = create(resource_id, properties)
            during()
            return response

        remote.create_record = create_and_edit

    def test_edit_merged_during_create_is_pushed_as_update(self, ctx, remote, storage):
        record = storage.create_local("task", {"title": "Draft"})
        self._intercept_create(
            remote, lambda: storage.update_local("task", record.local_id, {"status": "Doing"})
        )
        drainer = OutboundDrainer(ctx)

        drainer.drain()
        drainer.drain()

        ops = [w[0] for w in remote.writes]
        assert ops == ["create", "update"]
        saved = storage.get_record("task", record.local_id)
        assert remote.writes[1][1] == saved.remote_id
        assert remote.writes[1][2]["Status"] == {"status": {"name": "Doing"}}
        assert saved.sync_status == SyncStatus.SYNCED.value
        assert storage.queue.count_pending() == 0

    def test_trash_during_create_archives_new_record(self, ctx, remote, storage):
        record = storage.create_local("task", {"title": "Mistake"})
        self._intercept_create(remote, lambda: storage.trash_local("task", record.local_id))
        drainer = OutboundDrainer(ctx)

        drainer.drain()
        drainer.drain()

        saved = storage.get_record("task", record.local_id)
        assert [w[0] for w in remote.writes] == ["create", "archive"]
        assert remote.find(saved.remote_id)["in_trash"] is True
        assert storage.queue.count_pending() == 0
