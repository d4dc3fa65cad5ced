# project_collector.py
# Description: Read-only scan of one project directory into normalized records per entity kind
#
# Imports
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
#
# Third-Party Imports
from loguru import logger
#
# Local Imports
from ..Utils.atomic_file_ops import read_json
from .schema_mapper import (
    CHILD_KINDS,
    INDEX_TYPE_TO_KIND,
    EntityKind,
    canonicalize_legacy_fields,
    local_id_from_code,
    parse_local_id,
    schema_for,
    unwrap_record,
)
#
########################################################################################################################
#
# Classes and Functions:

DATA_DIR = "data"
INDEX_FILE = "project.json"
TIMELINE_FILE = "timeline.json"


class CollectionError(Exception):
    """A project's index file is missing or unreadable; the project cannot be synced."""

    def __init__(self, project_path: Union[str, Path], message: str):
        super().__init__(f"{project_path}: {message}")
        self.project_path = Path(project_path)


@dataclass
class CollectedItem:
    """One logical entity and the file(s) it was read from."""
    kind: EntityKind
    record: Dict[str, Any]
    source_path: Path
    duplicate_paths: List[Path] = field(default_factory=list)

    @property
    def local_id(self) -> Any:
        return self.record.get("id")

    @property
    def code(self) -> Optional[str]:
        return self.record.get("code")


@dataclass
class CollectedProject:
    """Snapshot of one project directory."""
    path: Path
    index_path: Path
    project: Dict[str, Any]
    creator: Dict[str, Any]
    items: Dict[EntityKind, List[CollectedItem]]
    expected: Dict[EntityKind, int]
    skipped_files: List[Path] = field(default_factory=list)

    def records(self, kind: EntityKind) -> List[Dict[str, Any]]:
        return [item.record for item in self.items.get(kind, [])]

    @property
    def chapters(self) -> List[Dict[str, Any]]:
        return self.records(EntityKind.CHAPTER)

    @property
    def notes(self) -> List[Dict[str, Any]]:
        return self.records(EntityKind.NOTE)

    @property
    def refs(self) -> List[Dict[str, Any]]:
        return self.records(EntityKind.REFERENCE)

    @property
    def lore_items(self) -> List[Dict[str, Any]]:
        return self.records(EntityKind.LORE_ITEM)

    @property
    def timelines(self) -> List[Dict[str, Any]]:
        return self.records(EntityKind.TIMELINE)

    @property
    def counts(self) -> Dict[EntityKind, int]:
        return {kind: len(self.items.get(kind, [])) for kind in CHILD_KINDS}

    def drift(self) -> Dict[EntityKind, tuple]:
        """Kinds whose collected count differs from the index; values are (collected, expected)."""
        out = {}
        for kind, collected in self.counts.items():
            expected = self.expected.get(kind)
            if expected is not None and expected != collected:
                out[kind] = (collected, expected)
        return out


def index_path_for(project_path: Union[str, Path]) -> Path:
    return Path(project_path) / DATA_DIR / INDEX_FILE


def timeline_path_for(project_path: Union[str, Path]) -> Path:
    return Path(project_path) / DATA_DIR / TIMELINE_FILE


def discover_project_dirs(root: Union[str, Path]) -> List[Path]:
    """Sub-directories of the root that look like projects (they hold a `data/` folder)."""
    root = Path(root)
    if not root.is_dir():
        return []
    return sorted(
        child for child in root.iterdir()
        if child.is_dir() and not child.name.startswith(".") and (child / DATA_DIR).is_dir()
    )


def _read_index(project_path: Path) -> Dict[str, Any]:
    index_path = index_path_for(project_path)
    if not index_path.is_file():
        raise CollectionError(project_path, f"index file {index_path} is missing")
    try:
        raw = read_json(index_path)
    except (OSError, ValueError) as e:
        raise CollectionError(project_path, f"index file {index_path} is not readable JSON: {e}") from e
    if not isinstance(raw, dict) or not isinstance(raw.get("project"), dict):
        raise CollectionError(project_path, f"index file {index_path} has no project object")
    return raw


def _expected_counts(index: Dict[str, Any]) -> Dict[EntityKind, int]:
    expected = {kind: 0 for kind in INDEX_TYPE_TO_KIND.values()}
    entries = index.get("entries")
    if not isinstance(entries, list):
        return expected
    for entry in entries:
        if isinstance(entry, dict):
            kind = INDEX_TYPE_TO_KIND.get(entry.get("type"))
            if kind is not None:
                expected[kind] += 1
    return expected


def _resolve_local_id(record: Dict[str, Any]) -> Any:
    local_id = parse_local_id(record.get("id"))
    if local_id is None:
        local_id = local_id_from_code(record.get("code"))
    return local_id


def _merge_duplicate(existing: CollectedItem, duplicate: Dict[str, Any], path: Path) -> None:
    filled = []
    for key, value in duplicate.items():
        if existing.record.get(key) is None and value is not None:
            existing.record[key] = value
            filled.append(key)
    existing.duplicate_paths.append(path)
    logger.warning(
        f"Duplicate {existing.kind.value} (id={existing.local_id!r}, code={existing.code!r}) "
        f"in {existing.source_path.name} and {path.name}; keeping {existing.source_path.name}"
        + (f", filled {filled} from the duplicate" if filled else "")
    )


class _ItemAccumulator:
    """Collects items of one kind, merging duplicates by id or code."""

    def __init__(self, kind: EntityKind):
        self.kind = kind
        self.items: List[CollectedItem] = []
        self._by_id: Dict[Any, CollectedItem] = {}
        self._by_code: Dict[str, CollectedItem] = {}

    def add(self, record: Dict[str, Any], path: Path) -> None:
        local_id = record.get("id")
        code = record.get("code")
        existing = self._by_id.get(local_id)
        if existing is None and code:
            existing = self._by_code.get(code)
        if existing is not None:
            _merge_duplicate(existing, record, path)
            if existing.code and existing.code not in self._by_code:
                self._by_code[existing.code] = existing
            return
        item = CollectedItem(kind=self.kind, record=record, source_path=path)
        self.items.append(item)
        self._by_id[local_id] = item
        if code:
            self._by_code[code] = item


def _load_item(kind: EntityKind, path: Path, skipped: List[Path]) -> Optional[Dict[str, Any]]:
    try:
        raw = read_json(path)
    except (OSError, ValueError) as e:
        logger.warning(f"Skipping unreadable {kind.value} file {path}: {e}")
        skipped.append(path)
        return None
    record = unwrap_record(kind, raw)
    if not record:
        logger.warning(f"Skipping {kind.value} file {path}: not a JSON object")
        skipped.append(path)
        return None
    record = canonicalize_legacy_fields(kind, record)
    local_id = _resolve_local_id(record)
    if local_id is None and kind is EntityKind.TIMELINE:
        # at most one timeline per project
        local_id = 1
    if local_id is None:
        logger.warning(f"Skipping {kind.value} file {path}: no usable id or code")
        skipped.append(path)
        return None
    record["id"] = local_id
    return record


def collect(project_path: Union[str, Path]) -> CollectedProject:
    """
    Scan one project directory.

    Raises:
        CollectionError: the index file is absent, unparseable or has no project object.
    """
    project_path = Path(project_path)
    index = _read_index(project_path)
    project = dict(index["project"])
    project["id"] = parse_local_id(project.get("id"))
    creator = {"id": parse_local_id(project.get("creator_id"))}
    skipped: List[Path] = []
    items: Dict[EntityKind, List[CollectedItem]] = {}

    for kind in CHILD_KINDS:
        accumulator = _ItemAccumulator(kind)
        schema = schema_for(kind)
        if kind is EntityKind.TIMELINE:
            paths = [timeline_path_for(project_path)]
            paths = [p for p in paths if p.is_file()]
        else:
            folder = project_path / schema.subdir
            paths = sorted(
                p for p in folder.glob("*")
                if p.is_file() and p.suffix.lower() == ".json" and not p.name.startswith(".")
            ) if folder.is_dir() else []
        for path in paths:
            record = _load_item(kind, path, skipped)
            if record is not None:
                accumulator.add(record, path)
        items[kind] = accumulator.items

    expected = _expected_counts(index)
    collected = CollectedProject(
        path=project_path,
        index_path=index_path_for(project_path),
        project=project,
        creator=creator,
        items=items,
        expected=expected,
        skipped_files=skipped,
    )

    summary = ", ".join(f"{kind.value}={count}" for kind, count in collected.counts.items())
    logger.info(f"Collected project {project.get('code')!r} from {project_path}: {summary}")
    for kind, (got, want) in collected.drift().items():
        logger.warning(f"Project {project.get('code')!r}: {got} {kind.value} files collected vs {want} expected")
    return collected

#
# End of project_collector.py
########################################################################################################################
