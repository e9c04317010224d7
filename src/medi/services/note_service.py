"""Service layer for note operations.

Every write goes to the canonical store first; the committed change is
then handed to the index coordinator. Reads that need the index
(search, backlinks) make sure it is fresh before answering.
"""

import logging
from typing import (Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple,
                    Union)

from medi.exceptions import (AlreadyExistsError, BulkOperationError,
                             NoteNotFoundError)
from medi.models.schema import (ChangeKind, ConflictPolicy, ImportOutcome,
                                IndexStatus, Note, NoteChange, SortBy,
                                WriteMode, validate_key)
from medi.observability import traced
from medi.services.index_coordinator import IndexCoordinator
from medi.services.task_service import TaskService
from medi.storage.note_store import NoteStore
from medi.storage.search_index import SearchIndex

logger = logging.getLogger(__name__)

NoteRecord = Union[Note, Mapping[str, Any]]


class NoteService:
    """Service for managing notes."""

    def __init__(
        self,
        store: Optional[NoteStore] = None,
        index: Optional[SearchIndex] = None,
        coordinator: Optional[IndexCoordinator] = None,
    ):
        """Initialize the service.

        Args:
            store: Canonical store. Created from config if None.
            index: Search index. Created from config if None (ignored when
                a coordinator is given).
            coordinator: Index coordinator. Created over store and index
                if None.
        """
        self.store = store or NoteStore()
        if coordinator is None:
            coordinator = IndexCoordinator(self.store, index or SearchIndex())
        self.coordinator = coordinator
        self.index = coordinator.index
        self.tasks = TaskService(self.store, self.coordinator)
        self.coordinator.stamp_if_empty()

    def close(self) -> None:
        self.index.close()
        self.store.close()

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    @traced("create_note")
    def create_note(
        self,
        key: str,
        body: str = "",
        title: Optional[str] = None,
        tags: Iterable[str] = (),
    ) -> Note:
        """Create a new note.

        Raises:
            InvalidKeyError: If the key is not acceptable.
            AlreadyExistsError: If a note with this key exists.
        """
        validate_key(key)
        note = Note(key=key, title=title, body=body, tags=list(tags))
        generation = self.store.put(note, WriteMode.CREATE)
        self.coordinator.record(NoteChange(ChangeKind.CREATE, key, note), generation)
        logger.info(f"Created note {key}")
        return note

    @traced("get_note")
    def get_note(self, key: str) -> Note:
        return self.store.get(key)

    @traced("get_notes")
    def get_notes(self, keys: Iterable[str]) -> List[Note]:
        """Fetch several notes in the order asked for.

        Raises:
            NoteNotFoundError: For the first key that does not exist.
        """
        keys = list(keys)
        for key in keys:
            validate_key(key)
        notes = self.store.get_many(keys)
        found = {note.key for note in notes}
        for key in keys:
            if key not in found:
                raise NoteNotFoundError(key)
        return notes

    def note_exists(self, key: str) -> bool:
        return self.store.exists(key)

    @traced("list_notes")
    def list_notes(self, sort_by: Union[SortBy, str] = SortBy.KEY) -> List[Note]:
        return list(self.store.scan(sort_by=SortBy(sort_by)))

    @traced("find_by_tag")
    def find_by_tag(self, *tags: str) -> List[Note]:
        """Notes carrying any of the given tags, by key."""
        if not tags:
            return []
        return [note for note in self.store.scan(sort_by=SortBy.KEY) if note.has_any_tag(tags)]

    def count_notes(self) -> int:
        return self.store.count()

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def _modify(self, key: str, fn) -> Note:
        validate_key(key)
        note, generation = self.store.modify(key, fn)
        if generation is not None:
            self.coordinator.record(NoteChange(ChangeKind.UPDATE, key, note), generation)
        return note

    @traced("update_body")
    def update_body(self, key: str, body: str) -> Note:
        def apply(note: Note) -> bool:
            if note.body == body:
                return False
            note.set_body(body)
            return True

        return self._modify(key, apply)

    @traced("update_title")
    def update_title(self, key: str, title: Optional[str]) -> Note:
        def apply(note: Note) -> bool:
            new_title = title if title and title.strip() else None
            if note.title == new_title:
                return False
            note.set_title(new_title)
            return True

        return self._modify(key, apply)

    @traced("edit_tags")
    def edit_tags(
        self, key: str, add: Iterable[str] = (), remove: Iterable[str] = ()
    ) -> Note:
        """Add and remove tags in a single write; removals apply last."""
        add, remove = list(add), list(remove)

        def apply(note: Note) -> bool:
            changed = False
            for tag in add:
                changed = note.add_tag(tag) or changed
            for tag in remove:
                changed = note.remove_tag(tag) or changed
            return changed

        return self._modify(key, apply)

    def add_tags(self, key: str, tags: Iterable[str]) -> Note:
        return self.edit_tags(key, add=tags)

    def add_tag(self, key: str, tag: str) -> Note:
        return self.edit_tags(key, add=[tag])

    def remove_tags(self, key: str, tags: Iterable[str]) -> Note:
        return self.edit_tags(key, remove=tags)

    def remove_tag(self, key: str, tag: str) -> Note:
        return self.edit_tags(key, remove=[tag])

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    @traced("delete_note")
    def delete_note(self, key: str) -> None:
        """Delete a note and its tasks."""
        generation = self.store.delete(key)
        self.coordinator.record(NoteChange(ChangeKind.DELETE, key), generation)
        logger.info(f"Deleted note {key}")

    @traced("delete_notes")
    def delete_notes(self, keys: Iterable[str]) -> List[str]:
        """Delete several notes in one transaction.

        Returns:
            Keys that were deleted.

        Raises:
            BulkOperationError: If some keys did not exist. The existing
                ones are still deleted.
        """
        keys = list(keys)
        for key in keys:
            validate_key(key)
        deleted, missing, generation = self.store.delete_many(keys)
        if generation is not None:
            self.coordinator.record_bulk(
                [([NoteChange(ChangeKind.DELETE, key) for key in deleted], generation)]
            )
        logger.info(f"Bulk deleted {len(deleted)} notes")
        if missing:
            raise BulkOperationError(
                f"{len(missing)} of {len(deleted) + len(missing)} notes not found",
                operation="delete_notes",
                total_count=len(deleted) + len(missing),
                success_count=len(deleted),
                failed_keys=missing,
            )
        return deleted

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    @traced("export_all")
    def export_all(self, tags: Optional[Iterable[str]] = None) -> Dict[str, Dict[str, Any]]:
        """Every note as a serializable record, keyed and ordered by key.

        Args:
            tags: If given, only notes carrying any of these tags.
        """
        wanted = list(tags) if tags else None
        return {
            note.key: note.to_record()
            for note in self.store.scan(sort_by=SortBy.KEY)
            if wanted is None or note.has_any_tag(wanted)
        }

    def _import(
        self, key: str, record: NoteRecord, policy: ConflictPolicy
    ) -> Tuple[ImportOutcome, Optional[Tuple[NoteChange, int]]]:
        validate_key(key)
        if isinstance(record, Note):
            note = record.model_copy(update={"key": key, "tasks": []})
        else:
            note = Note.from_record(key, dict(record))

        try:
            generation = self.store.put(note, WriteMode.CREATE)
            return ImportOutcome.CREATED, (NoteChange(ChangeKind.CREATE, key, note), generation)
        except AlreadyExistsError:
            if policy == ConflictPolicy.FAIL:
                raise
            if policy == ConflictPolicy.SKIP:
                logger.debug(f"Import skipped existing note {key}")
                return ImportOutcome.SKIPPED, None

        def overwrite(current: Note) -> None:
            current.title = note.title
            current.body = note.body
            current.tags = list(note.tags)
            current.modified_at = note.modified_at

        try:
            # The stored note keeps its original creation time
            stored, generation = self.store.modify(key, overwrite)
        except NoteNotFoundError:
            # Deleted since the create attempt
            generation = self.store.put(note, WriteMode.UPSERT)
            return ImportOutcome.CREATED, (NoteChange(ChangeKind.CREATE, key, note), generation)
        return ImportOutcome.OVERWRITTEN, (NoteChange(ChangeKind.UPDATE, key, stored), generation)

    @traced("import_one")
    def import_one(
        self,
        key: str,
        record: NoteRecord,
        policy: Union[ConflictPolicy, str] = ConflictPolicy.SKIP,
    ) -> ImportOutcome:
        """Import one exported record (or Note) under ``key``.

        Raises:
            AlreadyExistsError: If the key exists and the policy is FAIL.
        """
        outcome, step = self._import(key, record, ConflictPolicy(policy))
        if step is not None:
            self.coordinator.record(*step)
        return outcome

    @traced("import_many")
    def import_many(
        self,
        records: Union[Mapping[str, NoteRecord], Iterable[Tuple[str, NoteRecord]]],
        policy: Union[ConflictPolicy, str] = ConflictPolicy.SKIP,
    ) -> Dict[str, ImportOutcome]:
        """Import several records; the index is told about them as a batch.

        With the FAIL policy the first conflict raises AlreadyExistsError;
        records imported before it stay imported.
        """
        policy = ConflictPolicy(policy)
        items = records.items() if isinstance(records, Mapping) else records
        outcomes: Dict[str, ImportOutcome] = {}
        steps: List[Tuple[NoteChange, int]] = []
        try:
            for key, record in items:
                outcome, step = self._import(key, record, policy)
                outcomes[key] = outcome
                if step is not None:
                    steps.append(step)
        finally:
            if steps:
                self.coordinator.record_bulk(steps)
        logger.info(
            f"Imported {len(outcomes)} records: "
            f"{sum(o == ImportOutcome.CREATED for o in outcomes.values())} created, "
            f"{sum(o == ImportOutcome.OVERWRITTEN for o in outcomes.values())} overwritten, "
            f"{sum(o == ImportOutcome.SKIPPED for o in outcomes.values())} skipped"
        )
        return outcomes

    # ------------------------------------------------------------------
    # Index
    # ------------------------------------------------------------------

    @traced("search")
    def search(self, query: str) -> List[str]:
        """Keys of matching notes, best match first."""
        return self.coordinator.search(query)

    @traced("backlinks")
    def backlinks(self, target: str) -> Set[str]:
        """Keys of notes that link to ``[[target]]``."""
        return self.coordinator.backlinks(target)

    @traced("rebuild_index")
    def rebuild_index(self) -> int:
        """Rebuild the search index now; returns the number of notes indexed."""
        return self.coordinator.rebuild()

    def index_status(self) -> IndexStatus:
        return self.coordinator.status()

    def stats(self) -> Dict[str, Any]:
        """Store counters plus index freshness."""
        stats = self.store.stats()
        stats["index"] = self.index_status().value
        return stats
