"""
medi - a keyed markdown note store with full-text search and backlinks.

Notes live in a canonical SQLite store; the search index and the backlink
graph are derived from it and can be thrown away and rebuilt at any time.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("medi")
except PackageNotFoundError:
    __version__ = "0.6.0"
