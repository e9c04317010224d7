"""Keeps the derived search index consistent with the canonical store.

The index is Fresh when its generation stamp equals the store's, Stale
otherwise. Writes try to patch the index in place; anything that cannot
be patched is left Stale and rebuilt lazily before the next read.
"""
import logging
import threading
from typing import Callable, Optional, Sequence, Tuple, TypeVar, Union

from medi.config import config
from medi.exceptions import IndexCorruptError, StoreUnavailableError
from medi.models.schema import IndexStatus, NoteChange
from medi.storage.note_store import NoteStore
from medi.storage.search_index import SearchIndex

logger = logging.getLogger(__name__)

T = TypeVar("T")

ChangeSet = Union[NoteChange, Sequence[NoteChange]]


def _size(changes: ChangeSet) -> int:
    return 1 if isinstance(changes, NoteChange) else len(changes)


class IndexCoordinator:
    """Decides between incremental deltas and full rebuilds.

    All coordinator work in one process is serialized on a re-entrant
    lock; work across processes is serialized by the store's write lock,
    which a rebuild holds for its whole duration.
    """

    def __init__(
        self,
        store: NoteStore,
        index: SearchIndex,
        bulk_delta_threshold: Optional[int] = None,
    ):
        self.store = store
        self.index = index
        self._bulk_delta_threshold = bulk_delta_threshold
        self._lock = threading.RLock()

    @property
    def bulk_delta_threshold(self) -> int:
        if self._bulk_delta_threshold is not None:
            return self._bulk_delta_threshold
        return config.bulk_delta_threshold

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _index_generation(self) -> Optional[int]:
        """Index stamp; a damaged index is reset and counts as never built."""
        try:
            return self.index.generation()
        except IndexCorruptError as e:
            logger.warning(f"Search index damaged ({e}); resetting")
            self.index.reset()
            return None

    def status(self) -> IndexStatus:
        with self._lock:
            index_generation = self._index_generation()
            if index_generation is not None and index_generation == self.store.generation():
                return IndexStatus.FRESH
            return IndexStatus.STALE

    # ------------------------------------------------------------------
    # Write notifications
    # ------------------------------------------------------------------

    def _apply(self, changes: ChangeSet, new_generation: int) -> bool:
        try:
            return self.index.apply_delta(changes, new_generation - 1, new_generation)
        except IndexCorruptError as e:
            logger.warning(f"Search index damaged during delta ({e}); resetting")
            self.index.reset()
        except StoreUnavailableError as e:
            logger.warning(f"Search index busy during delta ({e}); leaving it stale")
        return False

    def record(self, changes: ChangeSet, new_generation: int) -> bool:
        """Tell the index about a committed write.

        Applies the delta if the index was exactly one generation behind;
        otherwise the index stays Stale until the next read.

        Returns:
            Whether the index was patched.
        """
        with self._lock:
            applied = self._apply(changes, new_generation)
        if not applied:
            logger.debug(f"Index left stale at store generation {new_generation}")
        return applied

    def record_bulk(self, steps: Sequence[Tuple[ChangeSet, int]]) -> bool:
        """Tell the index about a series of committed writes, in commit order.

        Each step is the change (or changes) committed under one
        generation. Batches touching more notes than the bulk delta
        threshold skip patching entirely and leave the index Stale.

        Returns:
            Whether every step was patched.
        """
        touched = sum(_size(changes) for changes, _ in steps)
        if touched > self.bulk_delta_threshold:
            logger.info(
                f"Bulk change of {touched} notes exceeds delta threshold "
                f"{self.bulk_delta_threshold}; index will be rebuilt on next read"
            )
            return False
        with self._lock:
            for changes, generation in steps:
                if not self._apply(changes, generation):
                    logger.debug(f"Bulk delta chain broke at generation {generation}")
                    return False
        return True

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------

    def _rebuild_locked(self, force: bool) -> int:
        with self.store.snapshot() as snapshot:
            if not force and self._index_generation() == snapshot.generation:
                # Someone else rebuilt while we waited for the store lock
                return self.index.count()
            try:
                return self.index.rebuild(snapshot.notes(), snapshot.generation)
            except IndexCorruptError as e:
                logger.warning(f"Search index damaged during rebuild ({e}); resetting")
                self.index.reset()
                return self.index.rebuild(snapshot.notes(), snapshot.generation)

    def ensure_fresh(self) -> bool:
        """Rebuild synchronously if Stale.

        Returns:
            True if a rebuild ran.
        """
        with self._lock:
            index_generation = self._index_generation()
            if index_generation is not None and index_generation == self.store.generation():
                return False
            logger.info(
                f"Search index stale (index={index_generation}); rebuilding"
            )
            self._rebuild_locked(force=False)
            return True

    def stamp_if_empty(self) -> bool:
        """Stamp a never-built index over a store that has never been written.

        Writes that follow are then patched as deltas from the start.

        Returns:
            True if the index was stamped.
        """
        with self._lock:
            if self._index_generation() is not None or self.store.generation() != 0:
                return False
            return self.ensure_fresh()

    def rebuild(self) -> int:
        """Rebuild now regardless of state; returns the number of notes indexed."""
        with self._lock:
            return self._rebuild_locked(force=True)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _read(self, operation: str, fn: Callable[[], T]) -> T:
        with self._lock:
            self.ensure_fresh()
            try:
                return fn()
            except IndexCorruptError as e:
                logger.warning(f"Search index damaged during {operation} ({e}); rebuilding")
                self.index.reset()
                self._rebuild_locked(force=True)
            try:
                return fn()
            except IndexCorruptError as e:
                raise StoreUnavailableError(
                    "Search index could not be rebuilt",
                    operation=operation,
                    path=str(self.index.index_path),
                    original_error=e,
                ) from e

    def search(self, query: str):
        return self._read("search", lambda: self.index.search(query))

    def backlinks(self, target: str):
        return self._read("backlinks", lambda: self.index.backlinks(target))
