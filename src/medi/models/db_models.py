"""SQLAlchemy database models for medi.

Two independent databases:

* the canonical store (``StoreBase``): notes, their tasks, and the
  ``store_meta`` counters (generation, task id allocation);
* the derived search index (``IndexBase``): postings, backlink edges and
  the generation the index was built against. The index file can be
  deleted at any time and is rebuilt from the store.
"""
import datetime

from sqlalchemy import (JSON, Boolean, Column, DateTime, ForeignKey, Integer,
                        String, Text, create_engine, event, text)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.pool import QueuePool

# Bump whenever the index tables or the tokenizer change; an index built
# with another version is discarded and rebuilt.
INDEX_FORMAT_VERSION = 2

GENERATION_KEY = "generation"
TASK_COUNTER_KEY = "task_counter"

StoreBase = declarative_base()
IndexBase = declarative_base()


# ---------------------------------------------------------------------------
# Canonical store
# ---------------------------------------------------------------------------


class DBNote(StoreBase):
    """Database model for a note."""
    __tablename__ = "notes"
    key = Column(String(255), primary_key=True)
    title = Column(Text, nullable=True)
    body = Column(Text, nullable=False, default="")
    tags = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False, index=True)
    modified_at = Column(DateTime, nullable=False, index=True)

    tasks = relationship(
        "DBTask",
        back_populates="note",
        cascade="all, delete-orphan",
        order_by="DBTask.id",
    )

    def __repr__(self) -> str:
        return f"<Note(key='{self.key}', title='{self.title}')>"


class DBTask(StoreBase):
    """Database model for a task owned by a note."""
    __tablename__ = "tasks"
    # Allocated from store_meta, never by SQLite, so ids are not reused
    id = Column(Integer, primary_key=True, autoincrement=False)
    note_key = Column(
        String(255),
        ForeignKey("notes.key", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    description = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default="open")
    priority = Column(Boolean, nullable=False, default=False)
    created_at = Column(
        DateTime,
        default=lambda: datetime.datetime.now(datetime.timezone.utc),
        nullable=False,
    )

    note = relationship("DBNote", back_populates="tasks")

    def __repr__(self) -> str:
        return f"<Task(id={self.id}, note_key='{self.note_key}', status='{self.status}')>"


class DBStoreMeta(StoreBase):
    """Named integer counters co-located with the notes."""
    __tablename__ = "store_meta"
    name = Column(String(64), primary_key=True)
    value = Column(Integer, nullable=False, default=0)


# ---------------------------------------------------------------------------
# Derived index
# ---------------------------------------------------------------------------


class DBIndexState(IndexBase):
    """Single row describing what the index was built from."""
    __tablename__ = "index_state"
    id = Column(Integer, primary_key=True)
    format_version = Column(Integer, nullable=False)
    generation = Column(Integer, nullable=True)


class DBIndexDocument(IndexBase):
    """A note the index currently covers."""
    __tablename__ = "index_documents"
    key = Column(String(255), primary_key=True)
    key_lower = Column(String(255), nullable=False, index=True)


class DBIndexPosting(IndexBase):
    """Occurrences of one token in one note."""
    __tablename__ = "index_postings"
    token = Column(String(255), primary_key=True)
    note_key = Column(String(255), primary_key=True, index=True)
    frequency = Column(Integer, nullable=False)
    # Space-separated token positions, for phrase matching
    positions = Column(Text, nullable=False)


class DBIndexLink(IndexBase):
    """A ``[[target]]`` reference from ``source_key``'s body."""
    __tablename__ = "index_links"
    source_key = Column(String(255), primary_key=True)
    # Lowercased bracketed text
    target = Column(String(255), primary_key=True, index=True)


# ---------------------------------------------------------------------------
# Engines
# ---------------------------------------------------------------------------


def _create_sqlite_engine(url: str, busy_timeout: float) -> Engine:
    """Create an engine with hardened SQLite settings.

    - WAL journal so readers never see a torn write and do not block
      the writer
    - NORMAL synchronous mode (durable at checkpoints, fast commits)
    - foreign keys enforced
    - pysqlite's implicit BEGIN disabled; we emit BEGIN ourselves so a
      write transaction can take the write lock up front with
      ``BEGIN IMMEDIATE`` (select it with the ``begin_mode`` execution
      option on the engine)
    """
    engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=2,
        max_overflow=4,
        pool_timeout=busy_timeout,
        pool_pre_ping=True,
        connect_args={"timeout": busy_timeout, "check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        mode = conn.get_execution_options().get("begin_mode", "DEFERRED")
        conn.exec_driver_sql(f"BEGIN {mode}")

    return engine


def create_store_engine(url: str, busy_timeout: float = 10.0) -> Engine:
    """Create the canonical store engine and make sure its schema exists."""
    engine = _create_sqlite_engine(url, busy_timeout)
    writer = engine.execution_options(begin_mode="IMMEDIATE")
    StoreBase.metadata.create_all(writer)
    with writer.begin() as conn:
        conn.execute(
            text(
                "INSERT OR IGNORE INTO store_meta (name, value) "
                "VALUES (:generation, 0), (:counter, 0)"
            ),
            {"generation": GENERATION_KEY, "counter": TASK_COUNTER_KEY},
        )
    return engine


def create_index_engine(url: str, busy_timeout: float = 10.0) -> Engine:
    """Create the search index engine (schema is managed by SearchIndex)."""
    return _create_sqlite_engine(url, busy_timeout)
