"""Tests for the SQLite replica: local writes, remote upserts and the change queue."""

import pytest

from worksync.types import ChangeOperation, ImportMode, RemoteRecord, SyncStatus


def _remote(remote_id, title="Remote task", unique_id=None, status="Todo", **extra):
    return RemoteRecord(
        remote_id=remote_id,
        fields={"title": title, "status": status},
        unique_id=unique_id,
        remote_modified_at="2024-01-01T00:00:00+00:00",
        **extra,
    )


class TestLocalWrites:
    def test_create_queues_a_create(self, storage):
        record = storage.create_local("task", {"title": "Write tests", "status": "Todo"})

        assert record.local_id.startswith("local-")
        assert record.sync_status == SyncStatus.PENDING.value
        assert set(record.field_local_ts) == {"title", "status"}
        entry = storage.queue.get_entry("task", record.local_id)
        assert entry.operation == ChangeOperation.CREATE.value
        assert entry.payload == {"title": "Write tests", "status": "Todo"}

    def test_create_requires_title(self, storage):
        with pytest.raises(ValueError):
            storage.create_local("task", {"status": "Todo"})

    def test_unknown_field_rejected(self, storage):
        with pytest.raises(ValueError, match="Unknown task fields"):
            storage.create_local("task", {"title": "x", "colour": "red"})

    def test_local_only_record_is_never_queued(self, storage):
        record = storage.create_local("task", {"title": "Private"}, local_only=True)
        storage.update_local("task", record.local_id, {"status": "Doing"})

        assert storage.get_record("task", record.local_id).sync_status == "local_only"
        assert storage.queue.count_pending() == 0

    def test_project_links_written(self, storage):
        record = storage.create_local("task", {"title": "Linked", "project_ids": ["p1", "p2"]})

        assert record.fields["project_ids"] == ["p1", "p2"]
        assert storage.count_links(record.local_id) == 2

    def test_update_missing_record(self, storage):
        with pytest.raises(ValueError, match="Unable to find"):
            storage.update_local("task", "local-nope", {"title": "x"})

    def test_noop_update_stamps_nothing(self, storage):
        storage.upsert_remote("task", _remote("r1", title="Same"))
        record = storage.get_record("task", "r1")

        storage.update_local("task", "r1", {"title": "Same"})

        assert storage.queue.count_pending() == 0
        assert storage.get_record("task", "r1").field_local_ts == record.field_local_ts

    def test_update_of_synced_record_queues_only_changed_fields(self, storage):
        storage.upsert_remote("task", _remote("r1", title="Old"))

        storage.update_local("task", "r1", {"title": "New", "status": "Todo"})

        entry = storage.queue.get_entry("task", storage.get_record("task", "r1").local_id)
        assert entry.operation == ChangeOperation.UPDATE.value
        assert entry.payload == {"title": "New"}
        assert entry.remote_id == "r1"


class TestChangeQueueMerge:
    def test_repeated_edits_merge_into_one_entry(self, storage):
        storage.upsert_remote("task", _remote("r1"))
        storage.update_local("task", "r1", {"title": "A"})
        storage.update_local("task", "r1", {"status": "Doing"})
        storage.update_local("task", "r1", {"title": "B"})

        assert storage.queue.count_pending() == 1
        (entry,) = storage.queue.list_pending()
        assert entry.payload == {"title": "B", "status": "Doing"}
        assert entry.changed_fields == ["title", "status"]

    def test_edit_after_create_stays_a_create(self, storage):
        record = storage.create_local("task", {"title": "Draft"})
        storage.update_local("task", record.local_id, {"status": "Doing"})

        entry = storage.queue.get_entry("task", record.local_id)
        assert entry.operation == ChangeOperation.CREATE.value
        assert entry.payload == {"title": "Draft", "status": "Doing"}

    def test_trash_before_push_cancels_create(self, storage):
        record = storage.create_local("task", {"title": "Oops"})
        storage.trash_local("task", record.local_id)

        assert storage.queue.count_pending() == 0

    def test_trash_of_pushed_record_queues_delete(self, storage):
        storage.upsert_remote("task", _remote("r1"))
        storage.update_local("task", "r1", {"title": "Edited"})
        storage.trash_local("task", "r1")

        (entry,) = storage.queue.list_pending()
        assert entry.operation == ChangeOperation.DELETE.value
        assert entry.remote_id == "r1"

    def test_complete_keeps_entry_merged_during_push(self, storage):
        storage.upsert_remote("task", _remote("r1"))
        storage.update_local("task", "r1", {"title": "First"})
        (in_flight,) = storage.queue.list_pending()

        storage.update_local("task", "r1", {"title": "Second"})
        removed = storage.confirm_push(in_flight)

        assert removed is False
        assert storage.queue.count_pending() == 1
        assert storage.get_record("task", "r1").sync_status == SyncStatus.PENDING.value

    def test_mark_failed_counts_retries(self, storage):
        record = storage.create_local("task", {"title": "Flaky"})
        entry = storage.queue.get_entry("task", record.local_id)

        storage.queue.mark_failed(entry.id, "boom")
        retries = storage.queue.mark_failed(entry.id, "boom again")

        assert retries == 2
        status = storage.queue.get_status()
        assert status["failing"] == 1
        assert status["last_error"] == "boom again"


class TestRemoteUpserts:
    def test_unique_id_dedups_across_remote_ids(self, storage):
        storage.apply_page("task", [_remote("r1", unique_id="T-1")], ImportMode.FULL.value)
        counts = storage.apply_page(
            "task", [_remote("r1-copy", unique_id="T-1")], ImportMode.FULL.value
        )

        assert counts["skipped"] == 1
        assert storage.count_records("task") == 1

    def test_full_mode_never_overwrites(self, storage):
        storage.apply_page("task", [_remote("r1", title="Original")], ImportMode.FULL.value)
        storage.apply_page("task", [_remote("r1", title="Changed")], ImportMode.FULL.value)

        assert storage.get_record("task", "r1").fields["title"] == "Original"

    def test_upsert_keeps_local_id(self, storage):
        storage.upsert_remote("task", _remote("r1", unique_id="T-1", status="Todo"))
        local_id = storage.get_record("task", "r1").local_id

        outcome = storage.upsert_remote("task", _remote("r1", unique_id="T-1", status="Done"))

        record = storage.get_record("task", "r1")
        assert outcome == "updated"
        assert record.local_id == local_id
        assert record.fields["status"] == "Done"
        assert record.sync_status == SyncStatus.SYNCED.value

    def test_remote_overwrite_with_pending_change_is_a_conflict(self, storage):
        storage.upsert_remote("task", _remote("r1", title="Base"))
        storage.update_local("task", "r1", {"title": "Local edit"})

        storage.upsert_remote("task", _remote("r1", title="Remote edit"))

        record = storage.get_record("task", "r1")
        assert record.fields["title"] == "Remote edit"
        assert record.sync_status == SyncStatus.CONFLICT.value

    def test_archived_remote_trashes_local_row(self, storage):
        storage.upsert_remote("task", _remote("r1"))
        storage.upsert_remote("task", _remote("r1", archived=True))

        assert storage.get_records("task") == []
        assert storage.get_record("task", "r1").sync_status == SyncStatus.TRASHED.value

    def test_archived_unknown_record_not_inserted(self, storage):
        assert storage.upsert_remote("task", _remote("r9", archived=True)) == "skipped"
        assert storage.is_empty()

    def test_pending_local_delete_wins_over_remote_update(self, storage):
        storage.upsert_remote("task", _remote("r1"))
        storage.trash_local("task", "r1")

        assert storage.upsert_remote("task", _remote("r1", title="Edited remotely")) == "skipped"
        assert storage.get_record("task", "r1").sync_status == SyncStatus.TRASHED.value

    def test_relation_ids_become_links(self, storage):
        counts = storage.apply_page(
            "task", [_remote("r1", relation_ids=["p1", "p2"])], ImportMode.ACTIVE.value
        )

        assert counts["links"] == 2
        assert storage.get_record("task", "r1").fields["project_ids"] == ["p1", "p2"]

    def test_mark_trashed_by_undashed_remote_id(self, storage):
        storage.upsert_remote("task", _remote("aaaa-bbbb"))

        assert storage.mark_trashed_by_remote_id("aaaabbbb") is True
        assert storage.mark_trashed_by_remote_id("missing") is False
        assert storage.count_records("task") == 0


class TestConfirmPush:
    def test_create_ack_sets_remote_identity(self, storage):
        record = storage.create_local("task", {"title": "New"})
        (change,) = storage.queue.list_pending()

        storage.confirm_push(change, _remote("r-new", title="New", unique_id="T-9"))

        saved = storage.get_record("task", record.local_id)
        assert saved.remote_id == "r-new"
        assert saved.remote_unique_id == "T-9"
        assert saved.sync_status == SyncStatus.SYNCED.value
        assert storage.queue.count_pending() == 0

    def test_imported_copy_of_pushed_record_is_absorbed(self, storage):
        record = storage.create_local("task", {"title": "Raced"})
        (change,) = storage.queue.list_pending()
        # A delta import saw the new remote record before the push was confirmed
        storage.apply_page("task", [_remote("r-new", unique_id="T-9")], ImportMode.FULL.value)

        storage.confirm_push(change, _remote("r-new", unique_id="T-9"))

        assert storage.count_records("task") == 1
        assert storage.get_record("task", "r-new").local_id == record.local_id


class TestTrashAndPurge:
    def test_trashed_rows_excluded_by_default(self, storage):
        keep = storage.create_local("task", {"title": "Keep"}, local_only=True)
        gone = storage.create_local("task", {"title": "Gone"}, local_only=True)
        storage.trash_local("task", gone.local_id)

        ids = [r.local_id for r in storage.get_records("task")]
        assert ids == [keep.local_id]
        assert len(storage.get_records("task", include_trashed=True)) == 2

    def test_purge_skips_rows_with_undelivered_delete(self, storage):
        storage.upsert_remote("task", _remote("r1"))
        storage.trash_local("task", "r1")
        local = storage.create_local("task", {"title": "Local"}, local_only=True)
        storage.trash_local("task", local.local_id)

        assert storage.purge_trashed() == 1
        assert storage.get_record("task", "r1") is not None
        assert storage.get_record("task", local.local_id) is None

    def test_purge_respects_age_cutoff(self, storage):
        record = storage.create_local("task", {"title": "Recent"}, local_only=True)
        storage.trash_local("task", record.local_id)

        assert storage.purge_trashed("2000-01-01T00:00:00+00:00") == 0
        assert storage.get_record("task", record.local_id) is not None


class TestAppState:
    def test_round_trip_and_overwrite(self, storage):
        assert storage.get_app_state("missing", "fallback") == "fallback"
        storage.set_app_state("k", "1")
        storage.set_app_state("k", "2")
        assert storage.get_app_state("k") == "2"

    def test_json_values(self, storage):
        storage.set_app_state_json("cursors", ["a", "b"])
        assert storage.get_app_state_json("cursors") == ["a", "b"]
        assert storage.get_app_state_json("nothing", []) == []
