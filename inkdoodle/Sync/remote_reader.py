# remote_reader.py
# Description: Read-only queries against the remote store, reported as typed results
#
# Imports
import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar
#
# Third-Party Imports
from loguru import logger
#
# Local Imports
from ..DB.remote_store import RemoteStore, RemoteStoreError
from ..DB.sql_validation import require_columns, require_table
from ..logging_config import mask_sensitive_fields
from .schema_mapper import CHILD_KINDS, EntityKind, schema_for
#
########################################################################################################################
#
# Classes and Functions:

T = TypeVar("T")

MATCH_EXACT = "exact"
MATCH_FALLBACK = "fallback"


@dataclass
class QueryResult(Generic[T]):
    """Outcome of a read: `value` when ok, `error` otherwise."""
    ok: bool
    value: Optional[T] = None
    error: Optional[Exception] = None

    @classmethod
    def success(cls, value: Any) -> "QueryResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: Exception) -> "QueryResult":
        return cls(ok=False, error=error)


@dataclass
class ProjectEntries:
    """A project row and its children, each list in stable order."""
    project: Optional[Dict[str, Any]]
    children: Dict[EntityKind, List[Dict[str, Any]]] = field(default_factory=dict)

    def rows(self, kind: EntityKind) -> List[Dict[str, Any]]:
        return self.children.get(kind, [])

    @property
    def chapters(self) -> List[Dict[str, Any]]:
        return self.rows(EntityKind.CHAPTER)

    @property
    def notes(self) -> List[Dict[str, Any]]:
        return self.rows(EntityKind.NOTE)

    @property
    def refs(self) -> List[Dict[str, Any]]:
        return self.rows(EntityKind.REFERENCE)


def _order_clause(kind: EntityKind) -> str:
    if schema_for(kind).column("number") is not None:
        return "ORDER BY number IS NULL, number, id"
    return "ORDER BY id"


class RemoteReader:
    """Read helpers over a RemoteStore. Failures come back as QueryResult(ok=False)."""

    def __init__(self, store: RemoteStore):
        self.store = store

    async def _guarded(self, label: str, coro) -> QueryResult:
        try:
            return QueryResult.success(await coro)
        except (RemoteStoreError, ValueError) as e:
            logger.error(f"Remote query failed ({label}): {e}")
            return QueryResult.failure(e)

    # --- Generic lookups ---

    async def get_column_value(self, table: str, column: str,
                               where: Optional[Dict[str, Any]] = None) -> QueryResult[Optional[str]]:
        """First value of `column` in `table` matching `where`, as a string (None when absent)."""
        async def run():
            require_table(table)
            require_columns([column] + list((where or {}).keys()), table)
            clause, params = self._where(where)
            value = await self.store.fetch_value(f"SELECT {column} FROM {table}{clause} LIMIT 1", params)
            return None if value is None else str(value)
        return await self._guarded(f"{table}.{column}", run())

    async def get_first_row(self, table: str,
                            where: Optional[Dict[str, Any]] = None) -> QueryResult[Optional[Dict[str, Any]]]:
        async def run():
            require_table(table)
            require_columns(list((where or {}).keys()), table)
            clause, params = self._where(where)
            return await self.store.fetch_one(f"SELECT * FROM {table}{clause} LIMIT 1", params)
        return await self._guarded(f"first row of {table}", run())

    @staticmethod
    def _where(where: Optional[Dict[str, Any]]) -> Tuple[str, List[Any]]:
        if not where:
            return "", []
        return " WHERE " + " AND ".join(f"{col} = ?" for col in where), list(where.values())

    # --- Creators and projects ---

    async def get_creator(self, creator_id: int) -> QueryResult[Optional[Dict[str, Any]]]:
        result = await self.get_first_row("creators", {"id": creator_id})
        if result.ok and result.value:
            logger.debug(f"Loaded creator {mask_sensitive_fields(result.value)}")
        return result

    async def get_project_ids_for_creator(self, creator_id: int) -> QueryResult[List[str]]:
        """Public codes of every remote project owned by the creator."""
        async def run():
            rows = await self.store.fetch_all(
                "SELECT id FROM projects WHERE creator_id = ? ORDER BY id", (creator_id,))
            return [str(row["id"]) for row in rows if row.get("id") is not None]
        return await self._guarded(f"project ids for creator {creator_id}", run())

    async def get_project_info(self, project_code: str) -> QueryResult[Optional[Dict[str, Any]]]:
        """
        Look a project up by its public code, falling back to the `code` column cast to text.

        Some legacy rows carry the identifying string in the wrong column. Only when
        both lookups fail is the error returned.
        """
        exact_error = None
        try:
            row = await self.store.fetch_one("SELECT * FROM projects WHERE id = ? LIMIT 1", (project_code,))
            if row is not None:
                return QueryResult.success(row)
        except RemoteStoreError as e:
            exact_error = e
            logger.warning(f"Exact project lookup for {project_code!r} failed, trying fallback: {e}")

        try:
            row = await self.store.fetch_one(
                "SELECT * FROM projects WHERE CAST(code AS TEXT) = ? LIMIT 1", (str(project_code),))
        except RemoteStoreError as e:
            if exact_error is not None:
                logger.error(f"Both project lookups for {project_code!r} failed: {exact_error}; {e}")
                return QueryResult.failure(e)
            logger.warning(f"Fallback project lookup for {project_code!r} failed: {e}")
            return QueryResult.success(None)
        return QueryResult.success(row)

    async def get_project_entries(self, project_code: str) -> QueryResult[ProjectEntries]:
        """Resolve the project row, then read every child kind concurrently."""
        info = await self.get_project_info(project_code)
        if not info.ok:
            return QueryResult.failure(info.error)
        if info.value is None:
            return QueryResult.success(ProjectEntries(project=None))
        remote_id = info.value["id"]

        results = await asyncio.gather(*(self.get_children(kind, remote_id) for kind in CHILD_KINDS))
        entries = ProjectEntries(project=info.value)
        for kind, result in zip(CHILD_KINDS, results):
            if not result.ok:
                return QueryResult.failure(result.error)
            entries.children[kind] = result.value
        return QueryResult.success(entries)

    # --- Children ---

    async def get_children(self, kind: EntityKind, project_id: str) -> QueryResult[List[Dict[str, Any]]]:
        table = schema_for(kind).table

        async def run():
            require_table(table)
            return await self.store.fetch_all(
                f"SELECT * FROM {table} WHERE project_id = ? {_order_clause(kind)}", (project_id,))
        return await self._guarded(f"{table} of {project_id}", run())

    async def get_child_ids(self, kind: EntityKind, project_id: str) -> QueryResult[List[str]]:
        table = schema_for(kind).table

        async def run():
            require_table(table)
            rows = await self.store.fetch_all(
                f"SELECT id FROM {table} WHERE project_id = ? ORDER BY id", (project_id,))
            return [str(row["id"]) for row in rows]
        return await self._guarded(f"{table} ids of {project_id}", run())

    async def count_children(self, kind: EntityKind, project_id: str) -> QueryResult[int]:
        return await self._guarded(
            f"count of {schema_for(kind).table} for {project_id}",
            self.store.count(schema_for(kind).table, {"project_id": project_id}))

    async def find_child(self, kind: EntityKind, public_code: Optional[str], project_id: str,
                         local_id: Any) -> QueryResult[Optional[Tuple[Dict[str, Any], str]]]:
        """
        Find the remote row for a local child.

        The exact public-code match wins; otherwise a row of the same project whose
        `id` holds the local sequence number is accepted. The value is
        `(row, MATCH_EXACT | MATCH_FALLBACK)` or None when neither matched.
        """
        table = schema_for(kind).table

        async def run():
            require_table(table)
            if public_code:
                row = await self.store.fetch_one(f"SELECT * FROM {table} WHERE id = ? LIMIT 1", (public_code,))
                if row is not None:
                    return row, MATCH_EXACT
            if local_id is None:
                return None
            row = await self.store.fetch_one(
                f"SELECT * FROM {table} WHERE project_id = ? AND CAST(id AS TEXT) = ? LIMIT 1",
                (project_id, str(local_id)))
            return (row, MATCH_FALLBACK) if row is not None else None
        return await self._guarded(f"{table} lookup {public_code or local_id!r}", run())

#
# End of remote_reader.py
########################################################################################################################
