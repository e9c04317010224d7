"""Canonical key-addressed store for notes and tasks.

The store is the sole source of truth. Every committed mutation bumps the
store generation exactly once, in the same transaction, so the derived
index can tell whether it is fresh.
"""

import datetime
import logging
from contextlib import contextmanager
from datetime import timezone
from pathlib import Path
from typing import (Callable, Iterable, Iterator, List, Optional, Tuple,
                    Union)

from sqlalchemy import delete, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from medi.config import config, sqlite_url
from medi.exceptions import (AlreadyExistsError, ErrorCode, MediError,
                             NoteNotFoundError, StoreUnavailableError,
                             TaskNotFoundError, ValidationError)
from medi.models.db_models import (GENERATION_KEY, TASK_COUNTER_KEY, DBNote,
                                   DBStoreMeta, DBTask, create_store_engine)
from medi.models.schema import (Note, SortBy, Task, TaskStatus, WriteMode,
                                ensure_timezone_aware, utc_now, validate_key)

logger = logging.getLogger(__name__)

# Mutators passed to modify()/update_task() may return False to signal
# "nothing changed"; any other return value means "write it back".
NoteMutator = Callable[[Note], Optional[bool]]
TaskMutator = Callable[[Task], Optional[bool]]


def _to_utc(dt_value: datetime.datetime) -> datetime.datetime:
    return ensure_timezone_aware(dt_value).astimezone(timezone.utc)


class StoreSnapshot:
    """A write-locked, non-moving view of the store.

    Handed out by :meth:`NoteStore.snapshot`; no other writer can commit
    while it is open.
    """

    def __init__(self, store: "NoteStore", session: Session):
        self._store = store
        self._session = session
        self.generation = store._read_generation(session)

    def notes(self) -> Iterator[Note]:
        stmt = select(DBNote).options(selectinload(DBNote.tasks)).order_by(DBNote.key)
        for db_note in self._session.scalars(stmt):
            yield self._store._note_to_model(db_note)

    def count(self) -> int:
        return self._session.scalar(select(func.count()).select_from(DBNote)) or 0


class NoteStore:
    """SQLite-backed canonical store.

    Write transactions begin with ``BEGIN IMMEDIATE`` so a writer owns the
    database write lock for its whole read-modify-write, across threads
    and processes. Reads run in deferred transactions; in WAL mode they
    proceed alongside a writer and only ever see committed records.
    """

    def __init__(
        self,
        database_path: Optional[Path] = None,
        engine: Optional[Engine] = None,
        busy_timeout: Optional[float] = None,
    ):
        """Open (and create if needed) the store.

        Args:
            database_path: Store file. If None, uses config.database_path.
            engine: Pre-configured engine; overrides database_path.
            busy_timeout: Seconds to wait for a competing writer.
                If None, uses config.busy_timeout.

        Raises:
            StoreUnavailableError: If the medium cannot be opened.
        """
        timeout = busy_timeout if busy_timeout is not None else config.busy_timeout
        if engine is None:
            self.database_path = (
                config.get_absolute_path(database_path)
                if database_path
                else config.get_absolute_path(config.database_path)
            )
        else:
            self.database_path = Path(engine.url.database or ":memory:")

        try:
            if engine is None:
                if database_path:
                    self.database_path.parent.mkdir(parents=True, exist_ok=True)
                    url = sqlite_url(self.database_path)
                else:
                    url = config.get_store_url()
                engine = create_store_engine(url, timeout)
        except (OSError, SQLAlchemyError) as e:
            raise StoreUnavailableError(
                f"Cannot open the note store at {self.database_path}",
                operation="open",
                path=str(self.database_path),
                original_error=e,
            ) from e

        self.engine = engine
        self.session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        self.write_session_factory = sessionmaker(
            bind=engine.execution_options(begin_mode="IMMEDIATE"),
            expire_on_commit=False,
        )
        logger.debug(f"Note store opened at {self.database_path}")

    def close(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def _reading(self, operation: str) -> Iterator[Session]:
        try:
            with self.session_factory() as session:
                yield session
        except MediError:
            raise
        except SQLAlchemyError as e:
            raise StoreUnavailableError(
                f"Failed to read from the note store during {operation}",
                operation=operation,
                path=str(self.database_path),
                original_error=e,
            ) from e

    @contextmanager
    def _writing(self, operation: str) -> Iterator[Session]:
        """Exclusive write transaction; rolled back unless _commit is called."""
        try:
            with self.write_session_factory() as session:
                yield session
        except MediError:
            raise
        except SQLAlchemyError as e:
            raise StoreUnavailableError(
                f"Failed to write to the note store during {operation}",
                operation=operation,
                path=str(self.database_path),
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

    def _commit(self, session: Session) -> int:
        """Bump the generation and commit; returns the new generation."""
        generation = self._increment(session, GENERATION_KEY)
        session.commit()
        return generation

    @staticmethod
    def _increment(session: Session, name: str) -> int:
        session.execute(
            update(DBStoreMeta)
            .where(DBStoreMeta.name == name)
            .values(value=DBStoreMeta.value + 1)
        )
        return session.scalar(select(DBStoreMeta.value).where(DBStoreMeta.name == name))

    @staticmethod
    def _read_generation(session: Session) -> int:
        value = session.scalar(
            select(DBStoreMeta.value).where(DBStoreMeta.name == GENERATION_KEY)
        )
        return value or 0

    @contextmanager
    def snapshot(self) -> Iterator[StoreSnapshot]:
        """Hold the store write lock and expose a consistent view.

        Nothing is written; the transaction is rolled back on exit.
        """
        with self._writing("snapshot") as session:
            # Reading the generation issues BEGIN IMMEDIATE
            yield StoreSnapshot(self, session)

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _task_to_model(db_task: DBTask) -> Task:
        return Task(
            id=db_task.id,
            note_key=db_task.note_key,
            description=db_task.description,
            status=TaskStatus(db_task.status),
            priority=bool(db_task.priority),
            created_at=ensure_timezone_aware(db_task.created_at),
        )

    def _note_to_model(self, db_note: DBNote) -> Note:
        return Note(
            key=db_note.key,
            title=db_note.title,
            body=db_note.body or "",
            tags=list(db_note.tags or []),
            created_at=ensure_timezone_aware(db_note.created_at),
            modified_at=ensure_timezone_aware(db_note.modified_at),
            tasks=[self._task_to_model(t) for t in db_note.tasks],
        )

    @staticmethod
    def _apply_note(db_note: DBNote, note: Note) -> None:
        """Copy the mutable fields of ``note`` onto its row.

        Tasks are owned by the task operations and are not touched here.
        """
        db_note.title = note.title
        db_note.body = note.body
        db_note.tags = list(note.tags)
        db_note.modified_at = _to_utc(note.modified_at)

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    def put(self, note: Note, mode: WriteMode = WriteMode.UPSERT) -> int:
        """Write a full note record.

        Args:
            note: The note to write. ``created_at`` is only used when the
                key is new; an existing note keeps its creation time.
            mode: CREATE fails on an existing key, UPDATE on a missing one,
                UPSERT never fails on either.

        Returns:
            The new store generation.
        """
        validate_key(note.key)
        with self._writing("put") as session:
            db_note = session.get(DBNote, note.key)
            if db_note is None:
                if mode == WriteMode.UPDATE:
                    raise NoteNotFoundError(note.key)
                db_note = DBNote(key=note.key, created_at=_to_utc(note.created_at))
                session.add(db_note)
            elif mode == WriteMode.CREATE:
                raise AlreadyExistsError(note.key)
            self._apply_note(db_note, note)
            generation = self._commit(session)
        logger.debug(f"put {note.key} ({mode.value}) -> generation {generation}")
        return generation

    def modify(self, key: str, fn: NoteMutator) -> Tuple[Note, Optional[int]]:
        """Read-modify-write one note under the write lock.

        ``fn`` receives the current note and mutates it in place. If it
        returns False nothing is written.

        Returns:
            (note, generation) where generation is None if nothing changed.
        """
        validate_key(key)
        with self._writing("modify") as session:
            db_note = session.get(DBNote, key)
            if db_note is None:
                raise NoteNotFoundError(key)
            note = self._note_to_model(db_note)
            if fn(note) is False:
                return note, None
            if note.key != key:
                raise ValidationError("Note keys are immutable", field="key", value=note.key)
            self._apply_note(db_note, note)
            generation = self._commit(session)
        return note, generation

    def get(self, key: str) -> Note:
        validate_key(key)
        with self._reading("get") as session:
            db_note = session.scalar(
                select(DBNote)
                .options(selectinload(DBNote.tasks))
                .where(DBNote.key == key)
            )
            if db_note is None:
                raise NoteNotFoundError(key)
            return self._note_to_model(db_note)

    def get_many(self, keys: Iterable[str]) -> List[Note]:
        """Fetch several notes in one read; missing keys are skipped.

        Results follow the order of ``keys``.
        """
        wanted = list(dict.fromkeys(keys))
        if not wanted:
            return []
        with self._reading("get_many") as session:
            rows = session.scalars(
                select(DBNote)
                .options(selectinload(DBNote.tasks))
                .where(DBNote.key.in_(wanted))
            ).all()
            by_key = {row.key: self._note_to_model(row) for row in rows}
        return [by_key[k] for k in wanted if k in by_key]

    def exists(self, key: str) -> bool:
        with self._reading("exists") as session:
            return session.get(DBNote, key) is not None

    def delete(self, key: str) -> int:
        """Delete a note and, in the same transaction, its tasks.

        Returns:
            The new store generation.
        """
        validate_key(key)
        with self._writing("delete") as session:
            db_note = session.get(DBNote, key)
            if db_note is None:
                raise NoteNotFoundError(key)
            task_count = len(db_note.tasks)
            session.delete(db_note)
            generation = self._commit(session)
        logger.debug(f"Deleted {key} with {task_count} task(s)")
        return generation

    def delete_many(self, keys: Iterable[str]) -> Tuple[List[str], List[str], Optional[int]]:
        """Delete several notes in one transaction.

        Returns:
            (deleted_keys, missing_keys, generation); generation is None
            when nothing was deleted.
        """
        deleted: List[str] = []
        missing: List[str] = []
        with self._writing("delete_many") as session:
            for key in dict.fromkeys(keys):
                db_note = session.get(DBNote, key)
                if db_note is None:
                    missing.append(key)
                    continue
                session.delete(db_note)
                deleted.append(key)
            if not deleted:
                return deleted, missing, None
            generation = self._commit(session)
        return deleted, missing, generation

    def scan(self, sort_by: Optional[Union[SortBy, str]] = None) -> Iterator[Note]:
        """Lazily iterate over every note.

        Each call opens a fresh read, so a scan can be restarted by calling
        it again.
        """
        stmt = select(DBNote).options(selectinload(DBNote.tasks))
        if sort_by is not None:
            sort_by = SortBy(sort_by)
            if sort_by == SortBy.CREATED:
                stmt = stmt.order_by(DBNote.created_at, DBNote.key)
            elif sort_by == SortBy.MODIFIED:
                stmt = stmt.order_by(DBNote.modified_at, DBNote.key)
            else:
                stmt = stmt.order_by(DBNote.key)
        with self._reading("scan") as session:
            for db_note in session.scalars(stmt.execution_options(yield_per=200)):
                yield self._note_to_model(db_note)

    def keys(self) -> List[str]:
        with self._reading("keys") as session:
            return list(session.scalars(select(DBNote.key).order_by(DBNote.key)))

    def count(self) -> int:
        with self._reading("count") as session:
            return session.scalar(select(func.count()).select_from(DBNote)) or 0

    def generation(self) -> int:
        """Current store generation (0 for a store never written)."""
        with self._reading("generation") as session:
            return self._read_generation(session)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def next_task_id(self) -> int:
        """Allocate a task id from the persisted counter.

        The store generation is left unchanged.
        """
        with self._writing("next_task_id") as session:
            task_id = self._increment(session, TASK_COUNTER_KEY)
            session.commit()
        return task_id

    def add_task(self, note_key: str, description: str) -> Tuple[Task, int]:
        """Attach a new open task to an existing note.

        The counter is only advanced when the note exists.

        Returns:
            (task, generation)
        """
        validate_key(note_key)
        with self._writing("add_task") as session:
            if session.get(DBNote, note_key) is None:
                raise NoteNotFoundError(note_key)
            task = Task(
                id=self._increment(session, TASK_COUNTER_KEY),
                note_key=note_key,
                description=description,
            )
            session.add(
                DBTask(
                    id=task.id,
                    note_key=task.note_key,
                    description=task.description,
                    status=task.status.value,
                    priority=task.priority,
                    created_at=_to_utc(task.created_at),
                )
            )
            generation = self._commit(session)
        return task, generation

    def get_task(self, task_id: int) -> Task:
        with self._reading("get_task") as session:
            db_task = session.get(DBTask, task_id)
            if db_task is None:
                raise TaskNotFoundError(task_id)
            return self._task_to_model(db_task)

    def update_task(self, task_id: int, fn: TaskMutator) -> Tuple[Task, Optional[int]]:
        """Read-modify-write one task; ``fn`` returning False skips the write."""
        with self._writing("update_task") as session:
            db_task = session.get(DBTask, task_id)
            if db_task is None:
                raise TaskNotFoundError(task_id)
            task = self._task_to_model(db_task)
            if fn(task) is False:
                return task, None
            db_task.description = task.description
            db_task.status = task.status.value
            db_task.priority = task.priority
            generation = self._commit(session)
        return task, generation

    def delete_task(self, task_id: int) -> Tuple[Task, int]:
        """Remove a task; returns the removed task and the new generation."""
        with self._writing("delete_task") as session:
            db_task = session.get(DBTask, task_id)
            if db_task is None:
                raise TaskNotFoundError(task_id)
            task = self._task_to_model(db_task)
            session.delete(db_task)
            generation = self._commit(session)
        return task, generation

    def list_tasks(self, note_key: Optional[str] = None) -> List[Task]:
        """All tasks (or one note's), priority first, open before done, by id."""
        stmt = select(DBTask)
        if note_key is not None:
            stmt = stmt.where(DBTask.note_key == note_key)
        with self._reading("list_tasks") as session:
            tasks = [self._task_to_model(t) for t in session.scalars(stmt)]
        return sorted(tasks, key=Task.sort_key)

    def reset_tasks(self) -> Tuple[int, int]:
        """Delete every task and restart id allocation at 1.

        Returns:
            (deleted_count, generation)
        """
        with self._writing("reset_tasks") as session:
            deleted = session.scalar(select(func.count()).select_from(DBTask)) or 0
            session.execute(delete(DBTask))
            session.execute(
                update(DBStoreMeta)
                .where(DBStoreMeta.name == TASK_COUNTER_KEY)
                .values(value=0)
            )
            generation = self._commit(session)
        return deleted, generation

    def stats(self) -> dict:
        """Row counts and counters, for status displays."""
        with self._reading("stats") as session:
            meta = dict(session.execute(select(DBStoreMeta.name, DBStoreMeta.value)).all())
            return {
                "notes": session.scalar(select(func.count()).select_from(DBNote)) or 0,
                "tasks": session.scalar(select(func.count()).select_from(DBTask)) or 0,
                "generation": meta.get(GENERATION_KEY, 0),
                "task_counter": meta.get(TASK_COUNTER_KEY, 0),
                "checked_at": utc_now().isoformat(),
            }
