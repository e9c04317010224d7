"""Derived full-text and backlink index.

Lives in its own SQLite file next to the store. Everything in it can be
recomputed from the notes, so on any sign of damage the file is deleted
and rebuilt rather than repaired.
"""
import logging
import re
from collections import defaultdict
from contextlib import contextmanager
from pathlib import Path
from typing import (Any, Dict, Iterable, Iterator, List, Optional, Sequence,
                    Set, Tuple, Union)

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import OperationalError as SQLAlchemyOperationalError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from medi.config import config, sqlite_url
from medi.exceptions import (ErrorCode, IndexCorruptError, MediError,
                             StoreUnavailableError)
from medi.models.db_models import (INDEX_FORMAT_VERSION, DBIndexDocument,
                                   DBIndexLink, DBIndexPosting, DBIndexState,
                                   IndexBase, create_index_engine)
from medi.models.schema import ChangeKind, Note, NoteChange

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[^\W_]+")
_PHRASE_RE = re.compile(r'"([^"]*)"')

_STATE_ID = 1


def tokenize(text: str) -> List[str]:
    """Lowercase and split on anything that is not a letter or digit."""
    return _TOKEN_RE.findall(text.lower())


def note_token_positions(note: Note) -> Dict[str, List[int]]:
    """Token -> positions for a note's title, tags and body.

    Fields are laid out in that order with one empty position between
    them, so a phrase never matches across a field boundary.
    """
    fields = [note.title or "", " ".join(note.tags), note.body]
    positions: Dict[str, List[int]] = defaultdict(list)
    pos = 0
    for field in fields:
        for token in tokenize(field):
            positions[token].append(pos)
            pos += 1
        pos += 1
    return dict(positions)


def parse_query(query: str) -> Tuple[List[str], List[List[str]]]:
    """Split a query into bare terms and ``"quoted phrases"``.

    Returns:
        (terms, phrases) where each phrase is its token list. Phrases that
        tokenize to nothing are dropped; an unmatched quote is ignored.
    """
    phrases = [tokenize(p) for p in _PHRASE_RE.findall(query)]
    remainder = _PHRASE_RE.sub(" ", query)
    terms = list(dict.fromkeys(tokenize(remainder)))
    return terms, [p for p in phrases if p]


def _count_phrase(positions: Dict[str, Set[int]], phrase: List[str]) -> int:
    first, rest = phrase[0], phrase[1:]
    return sum(
        1
        for start in positions.get(first, ())
        if all(start + i + 1 in positions.get(tok, ()) for i, tok in enumerate(rest))
    )


class SearchIndex:
    """Postings and backlink edges for every note, stamped with a generation.

    The stamp records which store generation the rows reflect; the
    coordinator compares it with the store to decide freshness.
    """

    def __init__(
        self,
        index_path: Optional[Path] = None,
        busy_timeout: Optional[float] = None,
    ):
        """Open the index, recreating it if it is unreadable.

        Args:
            index_path: Index file. If None, uses config.index_path.
            busy_timeout: Seconds to wait for another writer.
                If None, uses config.busy_timeout.
        """
        self.index_path = (
            config.get_absolute_path(index_path)
            if index_path
            else config.get_absolute_path(config.index_path)
        )
        self._configured_path = not index_path
        self.busy_timeout = (
            busy_timeout if busy_timeout is not None else config.busy_timeout
        )
        try:
            self._open()
        except IndexCorruptError as e:
            logger.warning(f"Search index at {self.index_path} unusable ({e}); recreating")
            self.reset()

    def _open(self) -> None:
        try:
            if self._configured_path:
                url = config.get_index_url()
            else:
                self.index_path.parent.mkdir(parents=True, exist_ok=True)
                url = sqlite_url(self.index_path)
        except OSError as e:
            raise StoreUnavailableError(
                "Cannot create the search index directory",
                operation="open_index",
                path=str(self.index_path),
                original_error=e,
            ) from e
        self.engine = create_index_engine(url, self.busy_timeout)
        self.session_factory = sessionmaker(bind=self.engine)
        self.write_session_factory = sessionmaker(
            bind=self.engine.execution_options(begin_mode="IMMEDIATE")
        )
        with self._guard("open"):
            IndexBase.metadata.create_all(self.engine.execution_options(begin_mode="IMMEDIATE"))
            with self.write_session_factory() as session:
                state = session.get(DBIndexState, _STATE_ID)
                if state is None:
                    session.add(
                        DBIndexState(
                            id=_STATE_ID,
                            format_version=INDEX_FORMAT_VERSION,
                            generation=None,
                        )
                    )
                    session.commit()
                else:
                    self._check_format(state)

    def close(self) -> None:
        self.engine.dispose()

    def reset(self) -> None:
        """Throw the index away and start from an empty, unstamped one."""
        self._dispose()
        for suffix in ("", "-wal", "-shm", "-journal"):
            path = Path(f"{self.index_path}{suffix}")
            try:
                path.unlink()
            except FileNotFoundError:
                pass
        logger.info(f"Search index reset at {self.index_path}")
        self._open()

    def _dispose(self) -> None:
        engine = getattr(self, "engine", None)
        if engine is not None:
            engine.dispose()

    # ------------------------------------------------------------------
    # Error translation
    # ------------------------------------------------------------------

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        """Turn database errors into IndexCorruptError.

        Lock contention is not damage, so it surfaces as a transient
        StoreUnavailableError instead of triggering a reset.
        """
        try:
            yield
        except MediError:
            raise
        except SQLAlchemyOperationalError as e:
            if "locked" in str(e) or "busy" in str(e):
                raise StoreUnavailableError(
                    "Search index is busy",
                    operation=operation,
                    path=str(self.index_path),
                    original_error=e,
                ) from e
            raise IndexCorruptError(
                f"Search index unreadable during {operation}", original_error=e
            ) from e
        except SQLAlchemyError as e:
            raise IndexCorruptError(
                f"Search index unreadable during {operation}", original_error=e
            ) from e

    @staticmethod
    def _check_format(state: DBIndexState) -> None:
        if state.format_version != INDEX_FORMAT_VERSION:
            raise IndexCorruptError(
                f"Index format {state.format_version} does not match "
                f"expected {INDEX_FORMAT_VERSION}",
                code=ErrorCode.INDEX_FORMAT_MISMATCH,
            )

    def _state(self, session: Session) -> DBIndexState:
        state = session.get(DBIndexState, _STATE_ID)
        if state is None:
            raise IndexCorruptError("Index state row is missing")
        self._check_format(state)
        return state

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_note(session: Session, note: Note) -> None:
        session.execute(
            insert(DBIndexDocument), [{"key": note.key, "key_lower": note.key.lower()}]
        )
        postings = note_token_positions(note)
        if postings:
            session.execute(
                insert(DBIndexPosting),
                [
                    {
                        "token": token,
                        "note_key": note.key,
                        "frequency": len(positions),
                        "positions": " ".join(str(p) for p in positions),
                    }
                    for token, positions in postings.items()
                ],
            )
        targets = {target.lower() for target in note.links()}
        if targets:
            session.execute(
                insert(DBIndexLink),
                [{"source_key": note.key, "target": t} for t in sorted(targets)],
            )

    @staticmethod
    def _remove_note(session: Session, key: str) -> None:
        session.execute(delete(DBIndexPosting).where(DBIndexPosting.note_key == key))
        session.execute(delete(DBIndexLink).where(DBIndexLink.source_key == key))
        session.execute(delete(DBIndexDocument).where(DBIndexDocument.key == key))

    def rebuild(self, notes: Iterable[Note], generation: int) -> int:
        """Replace every derived row and stamp ``generation``, atomically.

        Returns:
            Number of notes indexed.
        """
        count = 0
        with self._guard("rebuild"), self.write_session_factory() as session:
            session.execute(delete(DBIndexPosting))
            session.execute(delete(DBIndexLink))
            session.execute(delete(DBIndexDocument))
            for note in notes:
                self._insert_note(session, note)
                count += 1
            state = session.get(DBIndexState, _STATE_ID)
            if state is None:
                state = DBIndexState(id=_STATE_ID)
                session.add(state)
            state.format_version = INDEX_FORMAT_VERSION
            state.generation = generation
            session.commit()
        logger.info(f"Search index rebuilt: {count} notes at generation {generation}")
        return count

    def apply_delta(
        self,
        change: Union[NoteChange, Sequence[NoteChange]],
        expected_generation: int,
        new_generation: int,
    ) -> bool:
        """Patch the changed notes' rows if the index sits at ``expected_generation``.

        ``change`` is one change or several committed under a single
        generation (a bulk delete). The stamp check and the row replacement
        happen in one transaction.

        Returns:
            True if applied, False if the index was at another generation.
        """
        changes = [change] if isinstance(change, NoteChange) else list(change)
        with self._guard("apply_delta"), self.write_session_factory() as session:
            result = session.execute(
                update(DBIndexState)
                .where(
                    DBIndexState.id == _STATE_ID,
                    DBIndexState.generation == expected_generation,
                    DBIndexState.format_version == INDEX_FORMAT_VERSION,
                )
                .values(generation=new_generation)
            )
            if result.rowcount != 1:
                return False
            for item in changes:
                if item.kind != ChangeKind.TOUCH:
                    self._remove_note(session, item.key)
                if item.kind in (ChangeKind.CREATE, ChangeKind.UPDATE):
                    if item.note is None:
                        raise ValueError(f"{item.kind.value} change for {item.key} has no note")
                    self._insert_note(session, item.note)
            session.commit()
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def generation(self) -> Optional[int]:
        """Generation the index reflects, or None if never built."""
        with self._guard("generation"), self.session_factory() as session:
            return self._state(session).generation

    def count(self) -> int:
        with self._guard("count"), self.session_factory() as session:
            return session.scalar(select(func.count()).select_from(DBIndexDocument)) or 0

    def search(self, query: str) -> List[str]:
        """Keys of notes matching any term or phrase, best first.

        Score is the sum of the matched terms' frequencies plus the number
        of occurrences of each phrase; ties are broken by key.
        """
        terms, phrases = parse_query(query)
        if not terms and not phrases:
            return []

        scores: Dict[str, int] = defaultdict(int)
        with self._guard("search"), self.session_factory() as session:
            self._state(session)
            if terms:
                rows = session.execute(
                    select(DBIndexPosting.note_key, DBIndexPosting.frequency).where(
                        DBIndexPosting.token.in_(terms)
                    )
                )
                for note_key, frequency in rows:
                    scores[note_key] += frequency

            for phrase in phrases:
                by_note: Dict[str, Dict[str, Set[int]]] = defaultdict(dict)
                rows = session.execute(
                    select(
                        DBIndexPosting.note_key,
                        DBIndexPosting.token,
                        DBIndexPosting.positions,
                    ).where(DBIndexPosting.token.in_(set(phrase)))
                )
                for note_key, token, positions in rows:
                    by_note[note_key][token] = {int(p) for p in positions.split()}
                for note_key, positions in by_note.items():
                    occurrences = _count_phrase(positions, phrase)
                    if occurrences:
                        scores[note_key] += occurrences

        ranked = sorted(
            ((key, score) for key, score in scores.items() if score > 0),
            key=lambda item: (-item[1], item[0]),
        )
        return [key for key, _ in ranked]

    def backlinks(self, target: str) -> Set[str]:
        """Keys of notes whose body links to ``[[target]]``.

        Matching is case-insensitive on the bracketed text. A target that
        is not a live note has no backlinks.
        """
        wanted = target.strip().lower()
        if not wanted:
            return set()
        with self._guard("backlinks"), self.session_factory() as session:
            self._state(session)
            live = session.scalar(
                select(func.count())
                .select_from(DBIndexDocument)
                .where(DBIndexDocument.key_lower == wanted)
            )
            if not live:
                return set()
            return set(
                session.scalars(
                    select(DBIndexLink.source_key).where(DBIndexLink.target == wanted)
                )
            )

    def snapshot(self) -> Dict[str, Any]:
        """Ordered dump of every derived row."""
        with self._guard("snapshot"), self.session_factory() as session:
            state = self._state(session)
            return {
                "generation": state.generation,
                "documents": list(
                    session.scalars(select(DBIndexDocument.key).order_by(DBIndexDocument.key))
                ),
                "postings": [
                    tuple(row)
                    for row in session.execute(
                        select(
                            DBIndexPosting.token,
                            DBIndexPosting.note_key,
                            DBIndexPosting.frequency,
                            DBIndexPosting.positions,
                        ).order_by(DBIndexPosting.token, DBIndexPosting.note_key)
                    )
                ],
                "links": [
                    tuple(row)
                    for row in session.execute(
                        select(DBIndexLink.source_key, DBIndexLink.target).order_by(
                            DBIndexLink.source_key, DBIndexLink.target
                        )
                    )
                ],
            }
