"""Tests for the task operations."""
import pytest

from medi.exceptions import (ErrorCode, NoteNotFoundError, TaskNotFoundError,
                             ValidationError)
from medi.models.schema import IndexStatus, TaskStatus


@pytest.fixture
def tasks(note_service):
    note_service.create_note("a", body="note a")
    note_service.create_note("b", body="note b")
    return note_service.tasks


class TestAddAndList:
    """Tests for adding and listing tasks."""

    def test_priority_task_listed_first(self, tasks):
        assert tasks.add_task("a", "write intro") == 1
        tasks.set_priority(1)
        assert tasks.add_task("a", "fix typo") == 2
        assert [t.id for t in tasks.list_tasks()] == [1, 2]

    def test_listing_order(self, tasks):
        for description in ("one", "two", "three", "four"):
            tasks.add_task("a", description)
        tasks.set_done(1)
        tasks.set_priority(4)
        assert [t.id for t in tasks.list_tasks()] == [4, 2, 3, 1]

    def test_description_is_stripped(self, tasks):
        task_id = tasks.add_task("a", "  tidy up  ")
        assert tasks.get_task(task_id).description == "tidy up"

    def test_blank_description(self, tasks):
        with pytest.raises(ValidationError) as exc_info:
            tasks.add_task("a", "   ")
        assert exc_info.value.code == ErrorCode.TASK_VALIDATION_FAILED
        assert tasks.add_task("a", "real") == 1

    def test_non_text_description(self, tasks):
        with pytest.raises(ValidationError) as exc_info:
            tasks.add_task("a", 5)
        assert exc_info.value.code == ErrorCode.TASK_VALIDATION_FAILED

    def test_missing_note_does_not_use_an_id(self, tasks):
        with pytest.raises(NoteNotFoundError):
            tasks.add_task("ghost", "lost")
        assert tasks.add_task("a", "kept") == 1

    def test_tasks_for_note(self, tasks):
        tasks.add_task("a", "for a")
        tasks.add_task("b", "for b")
        tasks.add_task("a", "also a")
        assert [t.id for t in tasks.tasks_for_note("a")] == [1, 3]
        with pytest.raises(NoteNotFoundError):
            tasks.tasks_for_note("ghost")

    def test_ids_are_never_reused(self, tasks):
        tasks.add_task("a", "one")
        tasks.add_task("a", "two")
        tasks.delete_task(2)
        assert tasks.add_task("a", "three") == 3


class TestUpdates:
    """Tests for completing, prioritizing and deleting tasks."""

    def test_set_done(self, tasks):
        task_id = tasks.add_task("a", "finish")
        task = tasks.set_done(task_id)
        assert task.status == TaskStatus.DONE
        assert not tasks.get_task(task_id).is_open

    def test_set_done_twice_writes_once(self, tasks, note_service):
        task_id = tasks.add_task("a", "finish")
        tasks.set_done(task_id)
        generation = note_service.store.generation()
        tasks.set_done(task_id)
        assert note_service.store.generation() == generation

    def test_set_priority_twice_writes_once(self, tasks, note_service):
        task_id = tasks.add_task("a", "urgent")
        tasks.set_priority(task_id)
        generation = note_service.store.generation()
        assert tasks.set_priority(task_id).priority is True
        assert note_service.store.generation() == generation

    def test_unknown_task(self, tasks):
        with pytest.raises(TaskNotFoundError):
            tasks.set_done(42)
        with pytest.raises(TaskNotFoundError):
            tasks.set_priority(42)
        with pytest.raises(TaskNotFoundError):
            tasks.delete_task(42)

    def test_delete_task(self, tasks):
        task_id = tasks.add_task("a", "drop me")
        deleted = tasks.delete_task(task_id)
        assert deleted.id == task_id
        with pytest.raises(TaskNotFoundError):
            tasks.get_task(task_id)


class TestLifecycle:
    """Tests for how tasks follow their note and the index."""

    def test_deleting_note_deletes_its_tasks(self, tasks, note_service):
        tasks.add_task("a", "on a")
        kept = tasks.add_task("b", "on b")
        note_service.delete_note("a")
        assert [t.id for t in tasks.list_tasks()] == [kept]
        with pytest.raises(TaskNotFoundError):
            tasks.get_task(1)

    def test_reset_all_restarts_ids(self, tasks):
        tasks.add_task("a", "one")
        tasks.add_task("b", "two")
        assert tasks.reset_all() == 2
        assert tasks.list_tasks() == []
        assert tasks.add_task("a", "again") == 1

    def test_task_changes_keep_index_fresh(self, tasks, note_service):
        note_service.rebuild_index()
        task_id = tasks.add_task("a", "one")
        tasks.set_priority(task_id)
        tasks.set_done(task_id)
        tasks.delete_task(task_id)
        tasks.reset_all()
        assert note_service.index_status() == IndexStatus.FRESH

    def test_task_text_is_not_searchable(self, tasks, note_service):
        tasks.add_task("a", "zebra")
        assert note_service.search("zebra") == []

    def test_tasks_travel_with_the_note(self, tasks, note_service):
        tasks.add_task("a", "attached")
        note = note_service.get_note("a")
        assert [t.description for t in note.tasks] == ["attached"]
