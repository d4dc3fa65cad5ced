# reconciliation_engine.py
# Description: Upload direction of the sync: local project tree -> remote store
#
# One cycle for one creator runs, in order:
#   project pass      upsert each collected project
#   child pass        upsert chapters, notes, refs, lore and timeline of that project
#   verification      compare remote child counts with collected counts
#   deletion pass     remove remote projects (children first) missing locally
#
# Every decision is recomputed from the current disk and remote state, so a
# cycle interrupted at any point is picked up by the next one.
#
# Imports
import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple
#
# Third-Party Imports
from loguru import logger
#
# Local Imports
from ..DB.remote_store import DuplicateKeyError, RemoteStore, RemoteStoreError
from ..Utils.atomic_file_ops import atomic_update_json
from ..logging_config import loggable_params
from .project_collector import (
    CollectedItem,
    CollectedProject,
    CollectionError,
    collect,
    discover_project_dirs,
)
from .remote_reader import MATCH_FALLBACK, RemoteReader
from .schema_mapper import (
    CHILD_KINDS,
    EntityKind,
    changed_columns,
    make_public_code,
    parse_local_id,
    schema_for,
    to_remote_row,
    utc_now_iso,
)
from .sync_context import SyncContext
#
########################################################################################################################
#
# Classes and Functions:


# Upper bound on sequence numbers tried when a generated child code is taken.
MAX_CODE_CANDIDATES = 1000


class SyncOperation(Enum):
    """Mutations the engine can plan."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class KindTally:
    """Per-kind counters shown to the user."""
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    errors: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "deleted": self.deleted,
            "errors": self.errors,
        }


@dataclass
class WriteFailure:
    """A single insert/update/delete that the store rejected."""
    kind: EntityKind
    identifier: str
    operation: SyncOperation
    error: str
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VerificationMismatch:
    """Remote child count disagrees with what was collected locally."""
    project_code: str
    kind: EntityKind
    local_count: int
    remote_count: int


@dataclass
class PlannedAction:
    """One mutation, in the order the engine attempted (or, in dry-run, would attempt) it."""
    kind: EntityKind
    operation: SyncOperation
    identifier: str
    project_code: Optional[str]
    performed: bool
    ok: bool = True


@dataclass
class SyncSummary:
    """Aggregate outcome of one reconciliation cycle."""
    creator_id: Optional[int]
    dry_run: bool = False
    tallies: Dict[EntityKind, KindTally] = field(
        default_factory=lambda: {kind: KindTally() for kind in EntityKind})
    conflicts: int = 0
    skipped: int = 0
    write_failures: List[WriteFailure] = field(default_factory=list)
    mismatches: List[VerificationMismatch] = field(default_factory=list)
    collection_errors: List[str] = field(default_factory=list)
    actions: List[PlannedAction] = field(default_factory=list)
    assigned_codes: List[Tuple[EntityKind, str, Path]] = field(default_factory=list)
    lookup_failure: Optional[str] = None
    deletion_suppressed: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.lookup_failure is None

    @property
    def error_count(self) -> int:
        return sum(t.errors for t in self.tallies.values())

    def tally(self, kind: EntityKind) -> KindTally:
        return self.tallies[kind]

    def writes(self, operation: Optional[SyncOperation] = None) -> List[PlannedAction]:
        """Actions actually sent to the store (optionally of one operation)."""
        return [a for a in self.actions
                if a.performed and (operation is None or a.operation is operation)]

    def as_dict(self) -> Dict[str, Any]:
        counts = {schema_for(kind).table: tally.as_dict() for kind, tally in self.tallies.items()}
        return {
            "ok": self.ok,
            "dry_run": self.dry_run,
            "counts": counts,
            "conflicts": self.conflicts,
            "skipped": self.skipped,
            "errors": self.error_count,
            "collection_errors": list(self.collection_errors),
            "lookup_failure": self.lookup_failure,
        }


class LookupFailure(Exception):
    """A remote read failed; the rest of the creator's cycle is abandoned."""
    pass


@dataclass
class _ProjectState:
    collected: CollectedProject
    remote_id: Optional[str] = None
    children_allowed: bool = False
    wrote: bool = False
    matched_child_ids: Dict[EntityKind, Set[str]] = field(default_factory=dict)
    child_lookups_complete: Dict[EntityKind, bool] = field(default_factory=dict)


class ReconciliationEngine:
    """Pushes a creator's local projects to the remote store."""

    def __init__(self, store: RemoteStore, reader: Optional[RemoteReader] = None):
        self.store = store
        self.reader = reader or RemoteReader(store)

    # --- Entry point ---

    async def reconcile(self, context: SyncContext,
                        project_paths: Optional[List[Path]] = None) -> SyncSummary:
        """
        Run one full cycle for the context's creator.

        Args:
            context: Session (creator, project root, flags, progress callback)
            project_paths: Explicit project directories; defaults to every project under the root

        Returns:
            SyncSummary. `ok` is False only when a remote lookup failed.
        """
        start = time.monotonic()
        summary = SyncSummary(creator_id=context.creator_id, dry_run=context.dry_run)
        if not context.has_session:
            summary.lookup_failure = "No authenticated creator"
            logger.warning("Reconciliation requested without a creator session")
            return summary

        mode = "DRY-RUN" if context.dry_run else "LIVE"
        logger.info(f"Reconciliation [{mode}] starting for creator {context.creator_id} under {context.project_root}")
        try:
            creator_id = await self._effective_creator_id(context)
            known_local: Set[str] = set()

            if project_paths is None:
                project_paths = await asyncio.to_thread(discover_project_dirs, context.project_root)
            total = len(project_paths)

            for position, project_path in enumerate(project_paths, start=1):
                context.report("collect", position, total, Path(project_path).name)
                try:
                    collected = await asyncio.to_thread(collect, project_path)
                except CollectionError as e:
                    logger.warning(f"Skipping project: {e}")
                    summary.collection_errors.append(str(e))
                    continue

                context.report("projects", position, total, str(collected.project.get("code") or project_path))
                state = await self._project_pass(context, summary, collected, creator_id, known_local)
                if state.children_allowed:
                    await self._child_pass(context, summary, state, creator_id)
                    if context.prune_orphaned_children:
                        await self._prune_children(context, summary, state)
                    if state.wrote and not context.dry_run:
                        await self._verification_pass(context, summary, state)

            await self._deletion_pass(context, summary, creator_id, known_local)
        except LookupFailure as e:
            summary.lookup_failure = str(e)
            logger.error(f"Reconciliation aborted for creator {context.creator_id}: {e}")

        summary.duration_seconds = time.monotonic() - start
        context.report("done", 1, 1, "ok" if summary.ok else "failed")
        logger.info(
            f"Reconciliation [{mode}] finished for creator {context.creator_id} in "
            f"{summary.duration_seconds:.2f}s: {summary.as_dict()}")
        return summary

    # --- Helpers ---

    async def _effective_creator_id(self, context: SyncContext) -> int:
        result = await self.reader.get_creator(context.creator_id)
        if not result.ok:
            raise LookupFailure(f"creator lookup failed: {result.error}")
        if result.value is None:
            raise LookupFailure(f"creator {context.creator_id} not found in the remote store")
        return int(result.value["id"])

    async def _persist_code(self, summary: SyncSummary, kind: EntityKind, path: Path,
                            code: str, local_id: Any = None, index_path: Optional[Path] = None) -> None:
        schema = schema_for(kind)

        def set_item_code(data: Dict[str, Any]) -> Dict[str, Any]:
            target = data
            if schema.wrapper_key and isinstance(data.get(schema.wrapper_key), dict):
                target = data[schema.wrapper_key]
            target["code"] = code
            return data

        def set_index_entry_code(data: Dict[str, Any]) -> Dict[str, Any]:
            for entry in data.get("entries") or []:
                if (isinstance(entry, dict) and entry.get("type") == schema.index_type
                        and parse_local_id(entry.get("id")) == local_id and not entry.get("code")):
                    entry["code"] = code
            return data

        try:
            await asyncio.to_thread(atomic_update_json, path, set_item_code)
            if index_path is not None and schema.index_type:
                await asyncio.to_thread(atomic_update_json, index_path, set_index_entry_code)
        except (OSError, ValueError) as e:
            # The code is deterministic, so the next cycle finds the row again.
            logger.error(f"Inserted {kind.value} {code} but could not persist its code to {path}: {e}")
            return
        summary.assigned_codes.append((kind, code, path))
        logger.info(f"Assigned {kind.value} code {code} and saved it to {path.name}")

    def _record_failure(self, summary: SyncSummary, kind: EntityKind, identifier: str,
                        operation: SyncOperation, error: RemoteStoreError, params: Dict[str, Any]) -> None:
        summary.tally(kind).errors += 1
        if isinstance(error, DuplicateKeyError) or "duplicate" in str(error).lower():
            summary.conflicts += 1
        safe_params = loggable_params(params)
        summary.write_failures.append(WriteFailure(kind, identifier, operation, str(error), safe_params))
        logger.error(f"{operation.value.upper()} {kind.value} {identifier!r} failed: {error} params={safe_params}")

    async def _insert(self, summary: SyncSummary, context: SyncContext, kind: EntityKind,
                      row: Dict[str, Any], project_code: Optional[str]) -> bool:
        schema = schema_for(kind)
        identifier = str(row.get("id"))
        action = PlannedAction(kind, SyncOperation.INSERT, identifier, project_code, performed=not context.dry_run)
        summary.actions.append(action)
        if context.dry_run:
            logger.info(f"[dry-run] would INSERT {kind.value} {identifier}")
            summary.tally(kind).inserted += 1
            return True
        columns = schema.remote_columns
        statement = (f"INSERT INTO {schema.table} ({', '.join(columns)}) "
                     f"VALUES ({', '.join('?' for _ in columns)})")
        result = await self.store.try_execute(statement, [row.get(col) for col in columns])
        if not result.ok:
            action.ok = False
            self._record_failure(summary, kind, identifier, SyncOperation.INSERT, result.error, row)
            return False
        summary.tally(kind).inserted += 1
        logger.debug(f"Inserted {kind.value} {identifier}")
        return True

    async def _update(self, summary: SyncSummary, context: SyncContext, kind: EntityKind,
                      remote_id: str, row: Dict[str, Any], columns: List[str],
                      project_code: Optional[str]) -> bool:
        schema = schema_for(kind)
        action = PlannedAction(kind, SyncOperation.UPDATE, remote_id, project_code, performed=not context.dry_run)
        summary.actions.append(action)
        if context.dry_run:
            logger.info(f"[dry-run] would UPDATE {kind.value} {remote_id} columns={columns}")
            summary.tally(kind).updated += 1
            return True
        assignments = columns + ["updated_at"]
        statement = (f"UPDATE {schema.table} SET {', '.join(f'{col} = ?' for col in assignments)} "
                     f"WHERE id = ?")
        params = [row.get(col) for col in assignments] + [remote_id]
        result = await self.store.try_execute(statement, params)
        if not result.ok:
            action.ok = False
            self._record_failure(summary, kind, remote_id, SyncOperation.UPDATE, result.error, row)
            return False
        summary.tally(kind).updated += 1
        logger.debug(f"Updated {kind.value} {remote_id} ({', '.join(columns)})")
        return True

    # --- Project pass ---

    async def _project_pass(self, context: SyncContext, summary: SyncSummary, collected: CollectedProject,
                            creator_id: int, known_local: Set[str]) -> _ProjectState:
        state = _ProjectState(collected=collected)
        kind = EntityKind.PROJECT
        record = collected.project
        local_id = record.get("id")
        child_count = sum(collected.counts.values())

        local_creator = parse_local_id(record.get("creator_id"))
        if local_creator is not None and local_creator != creator_id:
            logger.warning(f"Project {record.get('code')!r} at {collected.path} belongs to creator "
                           f"{local_creator}, not {creator_id}; skipping it and its children")
            summary.conflicts += 1
            summary.skipped += 1 + child_count
            if record.get("code"):
                known_local.add(str(record["code"]))
            return state

        code = record.get("code")
        pending_code = False
        if not code:
            code = make_public_code(kind, creator_id, local_id)
            pending_code = True
            if code is None:
                logger.error(f"Project at {collected.path} has neither a code nor a usable id; skipping")
                summary.tally(kind).errors += 1
                summary.skipped += 1 + child_count
                return state
        code = str(code)
        known_local.add(code)

        info = await self.reader.get_project_info(code)
        if not info.ok:
            raise LookupFailure(f"project lookup for {code} failed: {info.error}")
        remote = info.value
        row = to_remote_row(kind, dict(record, code=code), now=utc_now_iso())
        row["creator_id"] = creator_id

        if remote is not None:
            remote_id = str(remote["id"])
            known_local.add(remote_id)
            remote_creator = parse_local_id(remote.get("creator_id"))
            if remote_creator != creator_id:
                logger.warning(f"Remote project {remote_id} is owned by creator {remote_creator}; "
                               f"not touching it from creator {creator_id}")
                summary.conflicts += 1
                summary.skipped += 1 + child_count
                return state
            state.remote_id = remote_id
            state.children_allowed = True
            changed = changed_columns(kind, remote, row)
            if changed:
                ok = await self._update(summary, context, kind, remote_id, row, changed, remote_id)
                state.wrote = state.wrote or (ok and not context.dry_run)
            else:
                summary.tally(kind).unchanged += 1
            return state

        ok = await self._insert(summary, context, kind, row, code)
        if not ok:
            logger.warning(f"Project {code} was not inserted; its {child_count} children are skipped this cycle")
            summary.skipped += child_count
            return state
        state.remote_id = code
        state.children_allowed = True
        state.wrote = not context.dry_run
        if pending_code and not context.dry_run:
            record["code"] = code
            await self._persist_code(summary, kind, collected.index_path, code)
        return state

    # --- Child pass ---

    async def _child_pass(self, context: SyncContext, summary: SyncSummary,
                          state: _ProjectState, creator_id: int) -> None:
        collected = state.collected
        for kind in CHILD_KINDS:
            items = collected.items.get(kind, [])
            state.matched_child_ids[kind] = set()
            state.child_lookups_complete[kind] = True
            for position, item in enumerate(items, start=1):
                context.report("children", position, len(items), f"{kind.value} {item.code or item.local_id}")
                await self._sync_child(context, summary, state, kind, item, creator_id)

    async def _sync_child(self, context: SyncContext, summary: SyncSummary, state: _ProjectState,
                          kind: EntityKind, item: CollectedItem, creator_id: int) -> None:
        record = item.record
        local_id = record.get("id")
        project_local_id = state.collected.project.get("id")

        item_creator = parse_local_id(record.get("creator_id"))
        if item_creator is not None and item_creator != creator_id:
            logger.error(f"{kind.value} {record.get('code') or local_id!r} in {item.source_path.name} "
                         f"belongs to creator {item_creator}; skipped")
            summary.tally(kind).errors += 1
            summary.skipped += 1
            return

        code = record.get("code")
        pending_code = False
        if not code:
            code = await self._claim_child_code(kind, state, project_local_id, local_id)
            pending_code = True
            if code is None:
                summary.tally(kind).errors += 1
                summary.skipped += 1
                return
        code = str(code)

        lookup = await self.reader.find_child(kind, code, state.remote_id, local_id)
        if not lookup.ok:
            state.child_lookups_complete[kind] = False
            raise LookupFailure(f"{kind.value} lookup for {code} failed: {lookup.error}")

        row = to_remote_row(kind, dict(record, code=code), parent_code=state.remote_id, now=utc_now_iso())
        row["creator_id"] = creator_id

        if lookup.value is not None:
            remote, matched_by = lookup.value
            remote_id = str(remote["id"])
            state.matched_child_ids[kind].add(remote_id)
            if matched_by == MATCH_FALLBACK:
                logger.warning(f"{kind.value} {code} matched remote row {remote_id!r} by local id")
            if str(remote.get("project_id")) != state.remote_id:
                logger.warning(f"{kind.value} {remote_id} belongs to project {remote.get('project_id')!r}, "
                               f"not {state.remote_id}; skipped")
                summary.conflicts += 1
                summary.skipped += 1
                return
            if parse_local_id(remote.get("creator_id")) != creator_id:
                logger.warning(f"{kind.value} {remote_id} is owned by creator {remote.get('creator_id')!r}; skipped")
                summary.conflicts += 1
                summary.skipped += 1
                return
            if pending_code and matched_by != MATCH_FALLBACK and not context.dry_run:
                record["code"] = code
                await self._persist_code(summary, kind, item.source_path, code, local_id,
                                         index_path=state.collected.index_path)
            changed = changed_columns(kind, remote, row)
            if not changed:
                summary.tally(kind).unchanged += 1
                return
            ok = await self._update(summary, context, kind, remote_id, row, changed, state.remote_id)
            state.wrote = state.wrote or (ok and not context.dry_run)
            return

        state.matched_child_ids[kind].add(code)
        ok = await self._insert(summary, context, kind, row, state.remote_id)
        if ok and not context.dry_run:
            state.wrote = True
            if pending_code:
                record["code"] = code
                await self._persist_code(summary, kind, item.source_path, code, local_id,
                                         index_path=state.collected.index_path)

    async def _claim_child_code(self, kind: EntityKind, state: _ProjectState,
                                project_local_id: Any, local_id: Any) -> Optional[str]:
        """
        Pick a public code for a child that has none yet.

        The first candidate is `<PREFIX>-<project id>-<local id>`. Project local ids
        repeat across creators, so when that code already names a row that is not
        this item (another project, or a sibling under a bumped code) the next
        sequence number is tried. A row of this project carrying the same local id
        is this item from an earlier cycle whose code write-back did not land, and
        its code is reused.
        """
        sequence = parse_local_id(local_id)
        if not isinstance(sequence, int):
            logger.warning(f"Cannot build a {kind.value} code from id={local_id!r}")
            return None
        for offset in range(MAX_CODE_CANDIDATES):
            candidate = make_public_code(kind, project_local_id, sequence + offset)
            if candidate is None:
                return None
            lookup = await self.reader.find_child(kind, candidate, state.remote_id, None)
            if not lookup.ok:
                state.child_lookups_complete[kind] = False
                raise LookupFailure(f"{kind.value} lookup for {candidate} failed: {lookup.error}")
            if lookup.value is None:
                return candidate
            remote, _ = lookup.value
            if (str(remote.get("project_id")) == state.remote_id
                    and parse_local_id(remote.get("code")) == sequence):
                return candidate
            logger.debug(f"{kind.value} code {candidate} is taken by project {remote.get('project_id')!r}")
        logger.error(f"No free {kind.value} code for local id {local_id!r} in project {state.remote_id} "
                     f"after {MAX_CODE_CANDIDATES} candidates")
        return None

    # --- Optional child pruning ---

    async def _prune_children(self, context: SyncContext, summary: SyncSummary, state: _ProjectState) -> None:
        for kind in CHILD_KINDS:
            if not state.child_lookups_complete.get(kind, False):
                continue
            result = await self.reader.get_child_ids(kind, state.remote_id)
            if not result.ok:
                raise LookupFailure(f"{kind.value} id listing for {state.remote_id} failed: {result.error}")
            matched = state.matched_child_ids.get(kind, set())
            for remote_id in result.value:
                if remote_id in matched:
                    continue
                table = schema_for(kind).table
                action = PlannedAction(kind, SyncOperation.DELETE, remote_id, state.remote_id,
                                       performed=not context.dry_run)
                summary.actions.append(action)
                if context.dry_run:
                    logger.info(f"[dry-run] would DELETE orphaned {kind.value} {remote_id}")
                    summary.tally(kind).deleted += 1
                    continue
                outcome = await self.store.try_execute(
                    f"DELETE FROM {table} WHERE id = ? AND project_id = ?", (remote_id, state.remote_id))
                if not outcome.ok:
                    action.ok = False
                    self._record_failure(summary, kind, remote_id, SyncOperation.DELETE, outcome.error,
                                         {"id": remote_id, "project_id": state.remote_id})
                    continue
                summary.tally(kind).deleted += 1
                state.wrote = True
                logger.info(f"Deleted orphaned {kind.value} {remote_id} of project {state.remote_id}")

    # --- Verification pass ---

    async def _verification_pass(self, context: SyncContext, summary: SyncSummary, state: _ProjectState) -> None:
        counts = state.collected.counts
        for position, kind in enumerate(CHILD_KINDS, start=1):
            context.report("verify", position, len(CHILD_KINDS), kind.value)
            result = await self.reader.count_children(kind, state.remote_id)
            if not result.ok:
                raise LookupFailure(f"count of {kind.value} for {state.remote_id} failed: {result.error}")
            local_count = counts.get(kind, 0)
            if result.value != local_count:
                mismatch = VerificationMismatch(state.remote_id, kind, local_count, result.value)
                summary.mismatches.append(mismatch)
                summary.conflicts += 1
                logger.warning(f"Verification mismatch for project {state.remote_id}: "
                               f"{local_count} local {kind.value} vs {result.value} remote")

    # --- Deletion pass ---

    async def _deletion_pass(self, context: SyncContext, summary: SyncSummary,
                             creator_id: int, known_local: Set[str]) -> None:
        # A project whose index could not be read has no known code, so any remote
        # project could be it. Other failures (write errors, skipped items) do not stop the pass.
        if summary.collection_errors:
            summary.deletion_suppressed = "some local projects could not be collected"
            logger.warning(f"Deletion pass suppressed: {len(summary.collection_errors)} project(s) failed collection")
            return
        if not known_local and not context.allow_empty_local_deletion:
            summary.deletion_suppressed = "no local projects"
            logger.info(f"No local projects for creator {creator_id}; deletion pass skipped")
            return

        result = await self.reader.get_project_ids_for_creator(creator_id)
        if not result.ok:
            raise LookupFailure(f"project id listing for creator {creator_id} failed: {result.error}")
        doomed = [remote_id for remote_id in result.value if remote_id not in known_local]
        if not doomed:
            return
        logger.info(f"Deletion pass for creator {creator_id}: {len(doomed)} remote project(s) missing locally")

        for position, remote_id in enumerate(doomed, start=1):
            context.report("delete", position, len(doomed), remote_id)
            await self._delete_project(context, summary, creator_id, remote_id)

    async def _delete_project(self, context: SyncContext, summary: SyncSummary,
                              creator_id: int, remote_id: str) -> None:
        for kind in CHILD_KINDS:
            summary.actions.append(PlannedAction(kind, SyncOperation.DELETE, f"{remote_id}/*", remote_id,
                                                 performed=not context.dry_run))
        summary.actions.append(PlannedAction(EntityKind.PROJECT, SyncOperation.DELETE, remote_id, remote_id,
                                             performed=not context.dry_run))

        if context.dry_run:
            for kind in CHILD_KINDS:
                counted = await self.reader.count_children(kind, remote_id)
                if not counted.ok:
                    raise LookupFailure(f"count of {kind.value} for {remote_id} failed: {counted.error}")
                summary.tally(kind).deleted += counted.value
            summary.tally(EntityKind.PROJECT).deleted += 1
            logger.info(f"[dry-run] would DELETE project {remote_id} and its children")
            return

        statements = [
            (f"DELETE FROM {schema_for(kind).table} WHERE project_id = ?", (remote_id,))
            for kind in CHILD_KINDS
        ]
        statements.append(("DELETE FROM projects WHERE id = ? AND creator_id = ?", (remote_id, creator_id)))
        try:
            rowcounts = await self.store.execute_transaction(statements)
        except RemoteStoreError as e:
            summary.actions[-1].ok = False
            self._record_failure(summary, EntityKind.PROJECT, remote_id, SyncOperation.DELETE, e,
                                 {"id": remote_id, "creator_id": creator_id})
            return
        for kind, rowcount in zip(CHILD_KINDS, rowcounts):
            summary.tally(kind).deleted += max(0, rowcount)
        summary.tally(EntityKind.PROJECT).deleted += max(0, rowcounts[-1])
        logger.info(f"Deleted remote project {remote_id} and {sum(max(0, c) for c in rowcounts[:-1])} child rows")

#
# End of reconciliation_engine.py
########################################################################################################################
