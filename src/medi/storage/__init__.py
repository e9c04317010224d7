"""Storage layer for medi."""

from medi.storage.markdown_parser import MarkdownParser
from medi.storage.note_store import NoteStore
from medi.storage.search_index import SearchIndex

__all__ = [
    "MarkdownParser",
    "NoteStore",
    "SearchIndex",
]
