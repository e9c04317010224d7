"""Export notes to, and import notes from, markdown directories and JSON.

Markdown exports write one ``<key>.md`` file per note with YAML
frontmatter; JSON exports write a single document holding every record,
tasks included.
"""
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import pydantic
import yaml

from medi.config import config
from medi.exceptions import ErrorCode, MediError, ValidationError
from medi.models.schema import (ConflictPolicy, ImportOutcome, Note,
                                TaskStatus, utc_now)
from medi.services.note_service import NoteService
from medi.storage.markdown_parser import MarkdownParser

logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = 1

PathLike = Union[str, Path]

# Per-file problems that mark one file failed without stopping the batch
_FILE_ERRORS = (
    OSError,
    UnicodeDecodeError,
    ValueError,
    yaml.YAMLError,
    pydantic.ValidationError,
    MediError,
)


@dataclass
class ImportReport:
    """Outcome of a batch import."""

    created: List[str] = field(default_factory=list)
    overwritten: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    # source (file name or record key) -> reason
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def imported_count(self) -> int:
        return len(self.created) + len(self.overwritten)

    @property
    def total(self) -> int:
        return self.imported_count + len(self.skipped) + len(self.failed)

    def add(self, key: str, outcome: ImportOutcome) -> None:
        {
            ImportOutcome.CREATED: self.created,
            ImportOutcome.OVERWRITTEN: self.overwritten,
            ImportOutcome.SKIPPED: self.skipped,
        }[outcome].append(key)

    def summary(self) -> str:
        return (
            f"{len(self.created)} created, {len(self.overwritten)} overwritten, "
            f"{len(self.skipped)} skipped, {len(self.failed)} failed"
        )


def _export_target(path: Optional[PathLike], default_name: Optional[str] = None) -> Path:
    """Resolve an export path, falling back to the configured export directory."""
    if path is not None:
        return Path(path).expanduser()
    if config.export_dir is None:
        raise ValidationError(
            "No export path given and MEDI_EXPORT_DIR is not set", field="path"
        )
    target = config.get_absolute_path(config.export_dir)
    return target / default_name if default_name else target


def _notes_to_export(service: NoteService, tags: Optional[Iterable[str]]) -> List[Note]:
    wanted = list(tags) if tags else None
    notes = service.list_notes()
    if wanted is None:
        return notes
    return [note for note in notes if note.has_any_tag(wanted)]


def export_to_directory(
    service: NoteService,
    path: Optional[PathLike] = None,
    tags: Optional[Iterable[str]] = None
) -> int:
    """Write one markdown file per note into ``path``.

    Args:
        service: Source of the notes.
        path: Target directory; created if missing. Defaults to the
            configured export directory.
        tags: If given, only notes carrying any of these tags.

    Returns:
        Number of files written.
    """
    target = _export_target(path)
    target.mkdir(parents=True, exist_ok=True)
    parser = MarkdownParser()
    count = 0
    for note in _notes_to_export(service, tags):
        file_path = target / f"{note.key}.md"
        with open(file_path, "w", encoding="utf-8") as f:
            f.write(parser.render_to_markdown(note))
        count += 1
    logger.info(f"Exported {count} notes to {target}")
    return count


def export_to_json(
    service: NoteService,
    path: Optional[PathLike] = None,
    tags: Optional[Iterable[str]] = None
) -> int:
    """Write every note (with its tasks) as one JSON document.

    Without a path the document goes to ``medi_export.json`` in the
    configured export directory.

    Returns:
        Number of notes written.
    """
    target = _export_target(path, "medi_export.json")
    target.parent.mkdir(parents=True, exist_ok=True)
    notes = _notes_to_export(service, tags)
    data = {
        "format_version": EXPORT_FORMAT_VERSION,
        "exported_at": utc_now().isoformat(),
        "notes": {note.key: note.to_record() for note in notes},
    }
    with open(target, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    logger.info(f"Exported {len(notes)} notes to {target}")
    return len(notes)


def _import_parsed(
    service: NoteService,
    parsed: List[Tuple[str, str, Note]],
    policy: ConflictPolicy,
    report: ImportReport,
) -> Dict[str, ImportOutcome]:
    """Import (source, key, note) triples, recording conflicts per source.

    Under the FAIL policy an existing key fails only its own source.
    """
    batch: Dict[str, Note] = {}
    for source, key, note in parsed:
        if key in batch:
            report.failed[source] = f"duplicate key '{key}' in this import"
        elif policy == ConflictPolicy.FAIL and service.note_exists(key):
            report.failed[source] = f"key '{key}' already exists"
        else:
            batch[key] = note

    effective = ConflictPolicy.SKIP if policy == ConflictPolicy.FAIL else policy
    outcomes = service.import_many(batch, effective)
    for key, outcome in outcomes.items():
        report.add(key, outcome)
    return outcomes


def import_file(
    service: NoteService,
    path: PathLike,
    key: Optional[str] = None,
    policy: Union[ConflictPolicy, str] = ConflictPolicy.SKIP,
) -> ImportOutcome:
    """Import a single markdown file.

    Args:
        key: Key for the note. Defaults to the frontmatter key, then the
            file stem.

    Raises:
        AlreadyExistsError: If the key exists and the policy is FAIL.
        ValidationError: If the file cannot be parsed.
    """
    file_path = Path(path).expanduser()
    try:
        content = file_path.read_text(encoding="utf-8")
        note = MarkdownParser().parse_note(content, default_key=file_path.stem)
    except (OSError, UnicodeDecodeError, ValueError, yaml.YAMLError) as e:
        raise ValidationError(
            f"Cannot import {file_path.name}: {e}",
            field="path",
            value=file_path.name,
            code=ErrorCode.IMPORT_MALFORMED,
        ) from e
    return service.import_one(key or note.key, note, ConflictPolicy(policy))


def import_from_directory(
    service: NoteService,
    path: PathLike,
    policy: Union[ConflictPolicy, str] = ConflictPolicy.SKIP,
) -> ImportReport:
    """Import every ``*.md`` file in ``path`` (not recursive).

    Malformed files are logged and reported as failed; they never abort
    the rest of the batch.
    """
    source_dir = Path(path).expanduser()
    if not source_dir.is_dir():
        raise ValidationError(
            f"Not a directory: {source_dir}", field="path", value=str(source_dir)
        )

    parser = MarkdownParser()
    report = ImportReport()
    parsed: List[Tuple[str, str, Note]] = []
    for file_path in sorted(source_dir.glob("*.md")):
        try:
            content = file_path.read_text(encoding="utf-8")
            note = parser.parse_note(content, default_key=file_path.stem)
        except _FILE_ERRORS as e:
            logger.warning(f"Skipping malformed file {file_path.name}: {e}")
            report.failed[file_path.name] = str(e)
            continue
        parsed.append((file_path.name, note.key, note))

    _import_parsed(service, parsed, ConflictPolicy(policy), report)
    logger.info(f"Imported from {source_dir}: {report.summary()}")
    return report


def _restore_tasks(service: NoteService, key: str, tasks: Any) -> None:
    """Re-add exported tasks to a newly created note under fresh ids.

    A malformed task is logged and dropped; the others are still restored.
    """
    if not isinstance(tasks, list):
        logger.warning(f"Dropping malformed task list for {key}: {tasks!r}")
        return
    for task in tasks:
        description = task.get("description") if isinstance(task, dict) else None
        if not isinstance(description, str) or not description.strip():
            logger.warning(f"Dropping malformed task for {key}: {task!r}")
            continue
        try:
            task_id = service.tasks.add_task(key, description)
            if task.get("priority"):
                service.tasks.set_priority(task_id)
            if task.get("status") == TaskStatus.DONE.value:
                service.tasks.set_done(task_id)
        except MediError as e:
            logger.warning(f"Could not restore task for {key}: {e}")


def import_from_json(
    service: NoteService,
    path: PathLike,
    policy: Union[ConflictPolicy, str] = ConflictPolicy.SKIP,
) -> ImportReport:
    """Import a document written by :func:`export_to_json`.

    Tasks are restored only for notes the import created, so re-running
    an import never duplicates them.
    """
    source = Path(path).expanduser()
    try:
        with open(source, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError(
            f"Cannot read export {source.name}: {e}",
            field="path",
            value=source.name,
            code=ErrorCode.IMPORT_MALFORMED,
        ) from e

    records = data.get("notes") if isinstance(data, dict) else None
    if not isinstance(records, dict):
        raise ValidationError(
            f"{source.name} is not a medi export",
            field="path",
            value=source.name,
            code=ErrorCode.IMPORT_MALFORMED,
        )

    report = ImportReport()
    parsed: List[Tuple[str, str, Note]] = []
    for key, record in records.items():
        try:
            if not isinstance(record, dict):
                raise ValueError("record is not an object")
            note = Note.from_record(key, record)
        except _FILE_ERRORS as e:
            logger.warning(f"Skipping malformed record {key!r}: {e}")
            report.failed[str(key)] = str(e)
            continue
        parsed.append((key, key, note))

    outcomes = _import_parsed(service, parsed, ConflictPolicy(policy), report)
    for key, outcome in outcomes.items():
        if outcome == ImportOutcome.CREATED:
            _restore_tasks(service, key, records[key].get("tasks") or [])
    logger.info(f"Imported from {source}: {report.summary()}")
    return report
