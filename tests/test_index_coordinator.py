"""Tests for keeping the search index in sync with the store."""
import pytest

from medi.models.schema import (ChangeKind, IndexStatus, Note, NoteChange,
                                WriteMode)
from medi.services.index_coordinator import IndexCoordinator


def _put(store, key, body=""):
    note = Note(key=key, body=body)
    return note, store.put(note, WriteMode.UPSERT)


class TestFreshness:
    """Tests for the Fresh/Stale state."""

    def test_no_index_is_stale(self, coordinator):
        assert coordinator.status() == IndexStatus.STALE

    def test_ensure_fresh_builds(self, coordinator):
        assert coordinator.ensure_fresh() is True
        assert coordinator.status() == IndexStatus.FRESH
        assert coordinator.ensure_fresh() is False

    def test_stamp_if_empty(self, coordinator):
        assert coordinator.stamp_if_empty() is True
        assert coordinator.status() == IndexStatus.FRESH
        assert coordinator.stamp_if_empty() is False

    def test_no_stamp_once_store_written(self, coordinator, note_store):
        _put(note_store, "a")
        assert coordinator.stamp_if_empty() is False
        assert coordinator.status() == IndexStatus.STALE

    def test_recorded_write_keeps_index_fresh(self, coordinator, note_store):
        coordinator.ensure_fresh()
        note, generation = _put(note_store, "a", "hello")
        assert coordinator.record(NoteChange(ChangeKind.CREATE, "a", note), generation)
        assert coordinator.status() == IndexStatus.FRESH

    def test_unrecorded_write_makes_index_stale(self, coordinator, note_store):
        coordinator.ensure_fresh()
        _put(note_store, "a", "hello")
        assert coordinator.status() == IndexStatus.STALE
        assert coordinator.search("hello") == ["a"]
        assert coordinator.status() == IndexStatus.FRESH

    def test_missed_write_breaks_the_delta_chain(self, coordinator, note_store):
        coordinator.ensure_fresh()
        _put(note_store, "a", "first")  # nobody tells the index
        note, generation = _put(note_store, "b", "second")
        assert not coordinator.record(NoteChange(ChangeKind.CREATE, "b", note), generation)
        assert coordinator.status() == IndexStatus.STALE
        assert sorted(coordinator.search("first second")) == ["a", "b"]


class TestBulk:
    """Tests for bulk change notification."""

    def _steps(self, store, count):
        steps = []
        for i in range(count):
            note, generation = _put(store, f"n{i}", "bulk")
            steps.append((NoteChange(ChangeKind.CREATE, note.key, note), generation))
        return steps

    def test_small_bulk_applies_deltas(self, note_store, search_index):
        coordinator = IndexCoordinator(note_store, search_index, bulk_delta_threshold=5)
        coordinator.ensure_fresh()
        assert coordinator.record_bulk(self._steps(note_store, 5))
        assert coordinator.status() == IndexStatus.FRESH

    def test_large_bulk_leaves_index_stale(self, note_store, search_index):
        coordinator = IndexCoordinator(note_store, search_index, bulk_delta_threshold=5)
        coordinator.ensure_fresh()
        assert not coordinator.record_bulk(self._steps(note_store, 6))
        assert coordinator.status() == IndexStatus.STALE
        assert len(coordinator.search("bulk")) == 6
        assert coordinator.status() == IndexStatus.FRESH

    def test_threshold_follows_config(self, coordinator, note_store, test_config, monkeypatch):
        monkeypatch.setattr(test_config, "bulk_delta_threshold", 1)
        coordinator.ensure_fresh()
        assert not coordinator.record_bulk(self._steps(note_store, 2))

    def test_grouped_step_counts_every_note(self, note_store, search_index):
        coordinator = IndexCoordinator(note_store, search_index, bulk_delta_threshold=2)
        for key in ("a", "b", "c"):
            _put(note_store, key, "x")
        coordinator.ensure_fresh()
        deleted, _, generation = note_store.delete_many(["a", "b", "c"])
        changes = [NoteChange(ChangeKind.DELETE, key) for key in deleted]
        assert not coordinator.record_bulk([(changes, generation)])
        assert coordinator.search("x") == []


class TestRebuild:
    """Tests for explicit and recovery rebuilds."""

    def test_rebuild_returns_count(self, coordinator, note_store):
        _put(note_store, "a")
        _put(note_store, "b")
        assert coordinator.rebuild() == 2
        assert coordinator.status() == IndexStatus.FRESH

    def test_rebuild_is_idempotent(self, coordinator, note_store, search_index):
        _put(note_store, "a", "hello [[b]]")
        _put(note_store, "b", "world")
        coordinator.rebuild()
        first = search_index.snapshot()
        coordinator.rebuild()
        assert search_index.snapshot() == first

    def test_deleted_index_file_is_rebuilt(self, coordinator, note_store, search_index):
        _put(note_store, "a", "survivor")
        coordinator.ensure_fresh()
        search_index.close()
        for suffix in ("", "-wal", "-shm"):
            path = search_index.index_path.with_name(search_index.index_path.name + suffix)
            path.unlink(missing_ok=True)
        assert coordinator.search("survivor") == ["a"]

    def test_corrupt_index_file_is_rebuilt(self, coordinator, note_store, search_index):
        _put(note_store, "a", "survivor [[b]]")
        _put(note_store, "b", "target")
        coordinator.ensure_fresh()
        search_index.close()
        for suffix in ("-wal", "-shm"):
            path = search_index.index_path.with_name(search_index.index_path.name + suffix)
            path.unlink(missing_ok=True)
        search_index.index_path.write_bytes(b"\x00garbage" * 512)

        assert coordinator.search("survivor") == ["a"]
        assert coordinator.backlinks("b") == {"a"}
        assert coordinator.status() == IndexStatus.FRESH

    def test_record_on_corrupt_index_does_not_fail_the_write(
        self, coordinator, note_store, search_index
    ):
        coordinator.ensure_fresh()
        search_index.close()
        for suffix in ("-wal", "-shm"):
            path = search_index.index_path.with_name(search_index.index_path.name + suffix)
            path.unlink(missing_ok=True)
        search_index.index_path.write_bytes(b"\x00garbage" * 512)

        note, generation = _put(note_store, "a", "kept")
        assert not coordinator.record(NoteChange(ChangeKind.CREATE, "a", note), generation)
        assert coordinator.search("kept") == ["a"]


@pytest.mark.parametrize("threshold", [0, 50])
def test_delta_and_rebuild_paths_agree(note_store, search_index, threshold):
    """Index contents do not depend on whether deltas or rebuilds produced them."""
    coordinator = IndexCoordinator(note_store, search_index, bulk_delta_threshold=threshold)
    coordinator.ensure_fresh()
    steps = []
    for key, body in (("a", "alpha [[b]]"), ("b", "beta"), ("c", "gamma [[a]]")):
        note, generation = _put(note_store, key, body)
        steps.append((NoteChange(ChangeKind.CREATE, key, note), generation))
    coordinator.record_bulk(steps)
    note, generation = _put(note_store, "a", "alpha revised")
    coordinator.record(NoteChange(ChangeKind.UPDATE, "a", note), generation)
    coordinator.ensure_fresh()
    via_updates = search_index.snapshot()

    coordinator.rebuild()
    assert search_index.snapshot() == via_updates
