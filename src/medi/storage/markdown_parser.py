"""Markdown parsing and serialization for medi notes.

Handles conversion between Note objects and markdown files with YAML
frontmatter, as used by directory export and import.

A file is an optional frontmatter block (a ``---`` line, YAML, a closing
``---`` line) followed by the body. Everything after the closing line is
the body, byte for byte, so an export followed by an import gives back
the same text.
"""
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import frontmatter

from medi.models.schema import Note, parse_timestamp, utc_now

logger = logging.getLogger(__name__)

FRONTMATTER_KEYS = ("key", "title", "tags", "created", "modified")

_FRONTMATTER = re.compile(
    r"\A---[ \t]*\r?\n(.*?)^---[ \t]*(?:\r?\n|\Z)", re.DOTALL | re.MULTILINE
)


class MarkdownParser:
    """Parses and serializes notes as markdown with frontmatter."""

    def __init__(self):
        self.handler = frontmatter.YAMLHandler()

    def split(self, content: str) -> Tuple[Dict[str, Any], str]:
        """Separate frontmatter metadata from the verbatim body.

        Raises:
            yaml.YAMLError: If the frontmatter is not valid YAML.
            ValueError: If the frontmatter is not a mapping.
        """
        match = _FRONTMATTER.match(content)
        if match is None:
            return {}, content
        metadata = self.handler.load(match.group(1))
        if metadata is None:
            metadata = {}
        if not isinstance(metadata, dict):
            raise ValueError("Frontmatter must be a mapping")
        return metadata, content[match.end():]

    def parse_note(self, content: str, default_key: Optional[str] = None) -> Note:
        """Parse a note from markdown content with YAML frontmatter.

        Args:
            content: Raw markdown, optionally with ``---`` frontmatter.
            default_key: Key to use when the frontmatter has none
                (typically the file stem).

        Returns:
            The parsed Note. It carries no tasks.

        Raises:
            ValueError: If no key can be determined or a field is malformed.
        """
        metadata, body = self.split(content)

        key = metadata.get("key")
        key = str(key) if key is not None else default_key
        if not key:
            raise ValueError("Note key missing from frontmatter")

        title = metadata.get("title")
        if title is not None:
            title = str(title)

        tags = self._parse_tags(metadata.get("tags"))

        created_at = parse_timestamp(metadata.get("created")) or utc_now()
        modified_at = parse_timestamp(metadata.get("modified")) or created_at

        extra = [k for k in metadata if k not in FRONTMATTER_KEYS]
        if extra:
            logger.debug(f"Ignoring frontmatter fields {extra} in note {key}")

        return Note(
            key=key,
            title=title,
            body=body,
            tags=tags,
            created_at=created_at,
            modified_at=modified_at,
        )

    def render_to_markdown(self, note: Note) -> str:
        """Convert a Note to markdown with frontmatter; the body is written as is."""
        metadata: Dict[str, Any] = {"key": note.key}
        if note.title:
            metadata["title"] = note.title
        metadata["tags"] = list(note.tags)
        metadata["created"] = note.created_at.isoformat()
        metadata["modified"] = note.modified_at.isoformat()

        header = self.handler.export(metadata, sort_keys=False)
        return f"---\n{header}\n---\n{note.body}"

    @staticmethod
    def _parse_tags(raw: Any) -> List[str]:
        """Tags may be a YAML list or a comma-separated string."""
        if raw is None:
            return []
        if isinstance(raw, str):
            return [t.strip() for t in raw.split(",") if t.strip()]
        if isinstance(raw, list):
            return [str(t).strip() for t in raw if str(t).strip()]
        raise ValueError(f"Unsupported tags value: {raw!r}")
