"""Data models for medi."""

import datetime
import re
from dataclasses import dataclass
from datetime import timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, field_validator

from medi.exceptions import InvalidKeyError

# [[target]]; the whole bracketed text is the target
_WIKILINK_RE = re.compile(r"\[\[([^\[\]\n]+)\]\]")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")


def validate_key(value: Any) -> str:
    """Validate that a note key is usable as a store key and a file name.

    Rejects:
    - Empty or whitespace-only keys
    - Path separators (/, \\)
    - The relative directory names "." and ".."
    - Control characters (newlines, NUL, ...)

    Returns:
        The key, unchanged.

    Raises:
        InvalidKeyError: If the key is not acceptable.
    """
    if not isinstance(value, str):
        raise InvalidKeyError(value, "key must be a string")
    if not value.strip():
        raise InvalidKeyError(value, "key cannot be empty")
    if "/" in value or "\\" in value:
        raise InvalidKeyError(value, "key cannot contain path separators")
    if value in (".", ".."):
        raise InvalidKeyError(value, "key cannot be a relative directory name")
    if _CONTROL_CHARS_RE.search(value):
        raise InvalidKeyError(value, "key cannot contain control characters")
    return value


def normalize_tags(tags: Iterable[str]) -> List[str]:
    """Strip, de-duplicate and sort a tag collection; blank tags are dropped."""
    return sorted({str(t).strip() for t in tags if str(t).strip()})


def parse_wikilinks(text: str) -> List[str]:
    """Return the ``[[target]]`` targets found in *text* (de-duped, ordered)."""
    seen = set()
    result: List[str] = []
    for m in _WIKILINK_RE.finditer(text):
        target = m.group(1).strip()
        if target and target not in seen:
            seen.add(target)
            result.append(target)
    return result


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite hands back naive datetimes; every value we store is UTC.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def parse_timestamp(value: Any) -> Optional[datetime.datetime]:
    """Parse an ISO 8601 string (or pass through a datetime) as aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        return ensure_timezone_aware(value)
    return ensure_timezone_aware(datetime.datetime.fromisoformat(str(value)))


class TaskStatus(str, Enum):
    """Lifecycle state of a task."""

    OPEN = "open"
    DONE = "done"


class SortBy(str, Enum):
    """Orderings offered by note listings."""

    KEY = "key"
    CREATED = "created"
    MODIFIED = "modified"


class WriteMode(str, Enum):
    """How a put treats an existing or missing key."""

    CREATE = "create"  # fail if the key exists
    UPDATE = "update"  # fail if the key is missing
    UPSERT = "upsert"  # insert or overwrite


class ConflictPolicy(str, Enum):
    """What an import does when the key already exists."""

    SKIP = "skip"
    OVERWRITE = "overwrite"
    FAIL = "fail"


class ImportOutcome(str, Enum):
    """Result of importing a single record."""

    CREATED = "created"
    OVERWRITTEN = "overwritten"
    SKIPPED = "skipped"


class ChangeKind(str, Enum):
    """Kinds of committed store mutation the index is told about."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    TOUCH = "touch"  # task-only change; no indexed text moved


class IndexStatus(str, Enum):
    """Freshness of the derived index relative to the store."""

    FRESH = "fresh"
    STALE = "stale"


class Task(BaseModel):
    """A to-do item owned by exactly one note."""

    id: int = Field(..., ge=1, description="Store-wide task identifier")
    note_key: str = Field(..., description="Key of the owning note")
    description: str = Field(..., description="What needs doing")
    status: TaskStatus = Field(default=TaskStatus.OPEN)
    priority: bool = Field(default=False)
    created_at: datetime.datetime = Field(default_factory=utc_now)

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("description")
    @classmethod
    def validate_description(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Task description cannot be empty")
        return v

    @property
    def is_open(self) -> bool:
        return self.status == TaskStatus.OPEN

    def sort_key(self):
        """Priority first, then open before done, then oldest id."""
        return (not self.priority, self.status != TaskStatus.OPEN, self.id)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "note_key": self.note_key,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority,
            "created_at": self.created_at.isoformat(),
        }


class Note(BaseModel):
    """A keyed markdown document with tags, timestamps and tasks."""

    key: str = Field(..., description="Unique, immutable, human-chosen key")
    title: Optional[str] = Field(default=None, description="Optional title")
    body: str = Field(default="", description="Markdown body")
    tags: List[str] = Field(default_factory=list, description="Tag set")
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was created (UTC)"
    )
    modified_at: datetime.datetime = Field(
        default_factory=utc_now, description="Last title/body/tag change (UTC)"
    )
    tasks: List[Task] = Field(
        default_factory=list, description="Tasks owned by this note"
    )

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("key")
    @classmethod
    def _validate_key(cls, v: str) -> str:
        return validate_key(v)

    @field_validator("title")
    @classmethod
    def _validate_title(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v

    @field_validator("tags")
    @classmethod
    def _validate_tags(cls, v: List[str]) -> List[str]:
        return normalize_tags(v)

    def touch(self) -> None:
        """Bump the modification time."""
        self.modified_at = utc_now()

    def set_body(self, body: str) -> None:
        self.body = body
        self.touch()

    def set_title(self, title: Optional[str]) -> None:
        self.title = title
        self.touch()

    def add_tag(self, tag: str) -> bool:
        """Add a tag; returns False when it was already present."""
        tag = tag.strip()
        if not tag or tag in self.tags:
            return False
        self.tags = self.tags + [tag]
        self.touch()
        return True

    def remove_tag(self, tag: str) -> bool:
        """Remove a tag; returns False when it was not present."""
        tag = tag.strip()
        if tag not in self.tags:
            return False
        self.tags = [t for t in self.tags if t != tag]
        self.touch()
        return True

    def has_any_tag(self, tags: Iterable[str]) -> bool:
        wanted = set(normalize_tags(tags))
        return bool(wanted.intersection(self.tags))

    def links(self) -> List[str]:
        """Targets of the ``[[...]]`` references in the body."""
        return parse_wikilinks(self.body)

    def to_record(self) -> Dict[str, Any]:
        """Serializable form used by export."""
        return {
            "key": self.key,
            "title": self.title,
            "body": self.body,
            "tags": list(self.tags),
            "created_at": self.created_at.isoformat(),
            "modified_at": self.modified_at.isoformat(),
            "tasks": [task.to_record() for task in self.tasks],
        }

    @classmethod
    def from_record(cls, key: str, record: Dict[str, Any]) -> "Note":
        """Build a note from an exported record.

        Tasks are not carried: they get fresh identifiers from the target
        store when re-added.
        """
        created_at = parse_timestamp(record.get("created_at")) or utc_now()
        modified_at = parse_timestamp(record.get("modified_at")) or created_at
        return cls(
            key=key,
            title=record.get("title"),
            body=record.get("body") or "",
            tags=record.get("tags") or [],
            created_at=created_at,
            modified_at=modified_at,
        )


@dataclass(frozen=True)
class NoteChange:
    """A committed mutation of one note, as handed to the index.

    ``note`` is the post-change state; it is None for deletions and for
    task-only changes.
    """

    kind: ChangeKind
    key: str
    note: Optional[Note] = None
