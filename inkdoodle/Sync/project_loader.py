# project_loader.py
# Description: Download direction of the sync: remote store -> local project tree
#
# Imports
import asyncio
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
#
# Third-Party Imports
from loguru import logger
#
# Local Imports
from ..Utils.atomic_file_ops import atomic_write_json, read_json
from .project_collector import (
    DATA_DIR,
    discover_project_dirs,
    index_path_for,
    timeline_path_for,
)
from .remote_reader import ProjectEntries, RemoteReader
from .schema_mapper import (
    CHILD_KINDS,
    EntityKind,
    schema_for,
    to_index_entry,
    to_local_record,
)
from .sync_context import SyncContext
#
########################################################################################################################
#
# Classes and Functions:

MAX_FOLDER_NAME = 128
_FORBIDDEN_CHARS = re.compile(r'[<>:"/\\|?*]')


@dataclass
class PulledProject:
    """One project written to disk."""
    code: str
    path: Path
    counts: Dict[EntityKind, int]
    overwritten: bool = False


@dataclass
class PullResult:
    """Outcome of pulling a creator's projects from the remote store."""
    ok: bool
    projects: List[PulledProject] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def reload_needed(self) -> bool:
        return bool(self.projects)


def sanitize_folder_name(name: Optional[str]) -> str:
    """Drop characters not allowed in folder names, dash-join whitespace, cap the length."""
    if not name:
        return ""
    cleaned = _FORBIDDEN_CHARS.sub("", str(name)).strip()
    return re.sub(r"\s+", "-", cleaned)[:MAX_FOLDER_NAME]


def unique_project_path(root: Path, base_name: str) -> Path:
    """`root/base_name`, or `root/base_name-N` for the first N that is free."""
    candidate = root / base_name
    suffix = 1
    while candidate.exists():
        candidate = root / f"{base_name}-{suffix}"
        suffix += 1
    return candidate


def count_local_projects(root: Union[str, Path]) -> int:
    """Number of directories under the root that hold a project index file."""
    root = Path(root)
    if not root.is_dir():
        return 0
    count = sum(1 for child in root.iterdir() if child.is_dir() and index_path_for(child).is_file())
    logger.debug(f"Found {count} local projects under {root}")
    return count


def local_project_codes(root: Union[str, Path]) -> Dict[str, Path]:
    """Map of project code -> directory for every readable index under the root."""
    out: Dict[str, Path] = {}
    for project_dir in discover_project_dirs(root):
        try:
            index = read_json(index_path_for(project_dir))
        except (OSError, ValueError):
            continue
        project = index.get("project") if isinstance(index, dict) else None
        if isinstance(project, dict) and project.get("code"):
            out.setdefault(str(project["code"]), project_dir)
    return out


def _item_file_name(record: Dict[str, Any]) -> str:
    return f"{sanitize_folder_name(str(record.get('code') or record.get('id')))}.json"


def write_project(project_path: Path, project: Dict[str, Any],
                  children: Dict[EntityKind, List[Dict[str, Any]]],
                  prune_stale: bool = False) -> Dict[EntityKind, int]:
    """
    Write one project in the on-disk layout.

    The index holds the project object and lightweight entry summaries only;
    full item content goes to one file per item.
    """
    counts: Dict[EntityKind, int] = {}
    entries: List[Dict[str, Any]] = []
    (project_path / DATA_DIR).mkdir(parents=True, exist_ok=True)

    for kind in CHILD_KINDS:
        records = children.get(kind, [])
        counts[kind] = len(records)
        schema = schema_for(kind)
        if kind is EntityKind.TIMELINE:
            if records:
                atomic_write_json(timeline_path_for(project_path), records[0])
                if len(records) > 1:
                    logger.warning(f"Project {project.get('code')!r} has {len(records)} timelines; kept the first")
                    counts[kind] = 1
            continue

        folder = project_path / schema.subdir
        folder.mkdir(parents=True, exist_ok=True)
        written = set()
        for order_index, record in enumerate(records):
            name = _item_file_name(record)
            atomic_write_json(folder / name, record)
            written.add(name)
            entries.append(to_index_entry(kind, record, order_index))
        if prune_stale:
            for stale in folder.glob("*.json"):
                if stale.name not in written:
                    logger.info(f"Removing stale local file {stale}")
                    stale.unlink()

    atomic_write_json(index_path_for(project_path), {"project": project, "entries": entries})
    return counts


def _convert(entries: ProjectEntries) -> tuple:
    project = to_local_record(EntityKind.PROJECT, entries.project)
    children = {
        kind: [to_local_record(kind, row, parent_local_id=project.get("id")) for row in entries.rows(kind)]
        for kind in CHILD_KINDS
    }
    return project, children


async def pull_projects(context: SyncContext, reader: RemoteReader, overwrite: bool = False) -> PullResult:
    """
    Download every remote project of the context's creator into the project root.

    Projects whose code already exists locally are left alone unless
    `overwrite` is set, in which case they are rewritten in place.
    """
    if not context.has_session:
        return PullResult(ok=False, error="No authenticated creator")

    ids = await reader.get_project_ids_for_creator(context.creator_id)
    if not ids.ok:
        return PullResult(ok=False, error=f"Could not list remote projects: {ids.error}")

    root = context.project_root
    await asyncio.to_thread(root.mkdir, parents=True, exist_ok=True)
    existing = await asyncio.to_thread(local_project_codes, root)
    result = PullResult(ok=True)
    logger.info(f"Pulling {len(ids.value)} remote project(s) for creator {context.creator_id} into {root}")

    for position, remote_id in enumerate(ids.value, start=1):
        context.report("pull", position, len(ids.value), remote_id)
        if remote_id in existing and not overwrite:
            logger.debug(f"Project {remote_id} already present at {existing[remote_id]}; not overwriting")
            result.skipped.append(remote_id)
            continue

        fetched = await reader.get_project_entries(remote_id)
        if not fetched.ok:
            result.errors.append(f"{remote_id}: {fetched.error}")
            logger.error(f"Could not read project {remote_id}: {fetched.error}")
            continue
        if fetched.value.project is None:
            result.errors.append(f"{remote_id}: project row disappeared")
            continue

        project, children = _convert(fetched.value)
        overwritten = remote_id in existing
        if overwritten:
            project_path = existing[remote_id]
        else:
            base = sanitize_folder_name(project.get("title")) or sanitize_folder_name(remote_id)
            project_path = unique_project_path(root, base)

        try:
            counts = await asyncio.to_thread(write_project, project_path, project, children, overwritten)
        except OSError as e:
            result.errors.append(f"{remote_id}: {e}")
            logger.error(f"Failed writing project {remote_id} to {project_path}: {e}")
            continue

        result.projects.append(PulledProject(code=remote_id, path=project_path, counts=counts, overwritten=overwritten))
        logger.info(f"Wrote project {remote_id} to {project_path}")

    return result

#
# End of project_loader.py
########################################################################################################################
