"""Service layer for the per-note to-do lists."""

import logging
from typing import List, Optional

from medi.exceptions import ErrorCode, NoteNotFoundError, ValidationError
from medi.models.schema import ChangeKind, NoteChange, Task, TaskStatus
from medi.observability import traced
from medi.services.index_coordinator import IndexCoordinator
from medi.storage.note_store import NoteStore

logger = logging.getLogger(__name__)


class TaskService:
    """Adds, completes, prioritizes and removes tasks.

    Tasks are addressed by their store-wide id alone. Task changes carry
    no indexed text, so the index only has its stamp advanced.
    """

    def __init__(self, store: NoteStore, coordinator: Optional[IndexCoordinator] = None):
        self.store = store
        self.coordinator = coordinator

    def _touched(self, note_key: str, generation: Optional[int]) -> None:
        if generation is not None and self.coordinator is not None:
            self.coordinator.record(NoteChange(ChangeKind.TOUCH, note_key), generation)

    @traced("add_task")
    def add_task(self, note_key: str, description: str) -> int:
        """Attach a new open task to a note and return its id.

        Raises:
            NoteNotFoundError: If the note does not exist (no id is used up).
            ValidationError: If the description is blank or not text.
        """
        if not isinstance(description, str) or not description.strip():
            raise ValidationError(
                "Task description cannot be empty",
                field="description",
                code=ErrorCode.TASK_VALIDATION_FAILED,
            )
        task, generation = self.store.add_task(note_key, description.strip())
        self._touched(note_key, generation)
        logger.info(f"Added task {task.id} to {note_key}")
        return task.id

    def get_task(self, task_id: int) -> Task:
        return self.store.get_task(task_id)

    @traced("set_done")
    def set_done(self, task_id: int) -> Task:
        """Mark a task done. Already-done tasks are left untouched."""

        def mark(task: Task) -> bool:
            if task.status == TaskStatus.DONE:
                return False
            task.status = TaskStatus.DONE
            return True

        task, generation = self.store.update_task(task_id, mark)
        self._touched(task.note_key, generation)
        return task

    @traced("set_priority")
    def set_priority(self, task_id: int) -> Task:
        """Flag a task as priority."""

        def prioritize(task: Task) -> bool:
            if task.priority:
                return False
            task.priority = True
            return True

        task, generation = self.store.update_task(task_id, prioritize)
        self._touched(task.note_key, generation)
        return task

    @traced("delete_task")
    def delete_task(self, task_id: int) -> Task:
        task, generation = self.store.delete_task(task_id)
        self._touched(task.note_key, generation)
        logger.info(f"Deleted task {task_id} from {task.note_key}")
        return task

    @traced("list_tasks")
    def list_tasks(self) -> List[Task]:
        """All tasks: priority first, then open before done, then by id."""
        return self.store.list_tasks()

    def tasks_for_note(self, note_key: str) -> List[Task]:
        if not self.store.exists(note_key):
            raise NoteNotFoundError(note_key)
        return self.store.list_tasks(note_key=note_key)

    @traced("reset_tasks")
    def reset_all(self) -> int:
        """Delete every task and restart ids at 1; returns how many were deleted."""
        deleted, generation = self.store.reset_tasks()
        if self.coordinator is not None:
            # No note changed; only the stamp moves
            self.coordinator.record([], generation)
        logger.warning(f"Reset all tasks ({deleted} deleted)")
        return deleted
