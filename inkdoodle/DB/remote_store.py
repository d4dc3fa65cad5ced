# remote_store.py
#########################################
# Remote Store Library
# Relational store that mirrors the local project tree.
#
# This library provides:
# - The schema for creators, projects and the per-project child tables
#   (chapters, notes, refs, lore, timelines), keyed on the public code
# - A bounded connection pool; every query borrows a connection and returns it
#   before the calling coroutine resumes
# - Async query helpers that run the blocking sqlite3 calls in worker threads
# - A typed error taxonomy translated from driver exceptions
#
# The store does not cascade deletes: child rows must be removed before
# their project row.
#
#########################################

import asyncio
import json
import queue
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

# Third-Party Libraries
from loguru import logger

# Local Imports
from .base_db import BaseDB
from .sql_validation import require_columns, require_table


# --- Custom Exceptions ---
class RemoteStoreError(Exception):
    """Base exception for remote store errors."""

    def __init__(self, message: str, statement: Optional[str] = None):
        super().__init__(message)
        self.statement = statement


class RemoteConnectionError(RemoteStoreError):
    """Raised when no connection could be obtained or the store is unreachable."""
    pass


class DuplicateKeyError(RemoteStoreError):
    """Raised on a unique/primary key violation."""
    pass


class ForeignKeyError(RemoteStoreError):
    """Raised when a referenced parent row does not exist."""
    pass


class NotNullError(RemoteStoreError):
    """Raised when a required column is missing."""
    pass


@dataclass
class OperationResult:
    """Typed outcome of a mutating statement."""
    ok: bool
    rowcount: int = 0
    error: Optional[RemoteStoreError] = None


# Columns stored as JSON text and decoded on read
JSON_COLUMNS = {'tags', 'events'}
# Columns stored as 0/1 and decoded to bool on read
BOOL_COLUMNS = {'pinned', 'is_active'}

Params = Union[Sequence[Any], Dict[str, Any]]


def _encode_value(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return value


def _encode_params(params: Optional[Params]) -> Union[Tuple[Any, ...], Dict[str, Any]]:
    if params is None:
        return ()
    if isinstance(params, dict):
        return {k: _encode_value(v) for k, v in params.items()}
    return tuple(_encode_value(v) for v in params)


def decode_row(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    """Convert a sqlite row into a plain dict, decoding JSON and boolean columns."""
    if row is None:
        return None
    data = dict(row)
    for key, value in data.items():
        if key in JSON_COLUMNS and isinstance(value, str):
            try:
                data[key] = json.loads(value)
            except ValueError:
                logger.debug(f"Column {key} holds non-JSON text; returning empty list")
                data[key] = []
        elif key in BOOL_COLUMNS and value is not None:
            data[key] = bool(value)
    return data


def translate_error(error: sqlite3.Error, statement: Optional[str] = None) -> RemoteStoreError:
    """Map a driver exception onto the store's error taxonomy."""
    message = str(error)
    lowered = message.lower()
    if isinstance(error, sqlite3.IntegrityError):
        if 'unique constraint' in lowered or 'primary key' in lowered:
            return DuplicateKeyError(f"duplicate key value: {message}", statement)
        if 'foreign key' in lowered:
            return ForeignKeyError(f"referenced row does not exist: {message}", statement)
        if 'not null' in lowered:
            return NotNullError(f"required field is missing: {message}", statement)
    if isinstance(error, sqlite3.OperationalError) and (
            'unable to open' in lowered or 'locked' in lowered or 'disk i/o' in lowered):
        return RemoteConnectionError(message, statement)
    return RemoteStoreError(message, statement)


# --- Database Class ---
class RemoteStore(BaseDB):
    """Relational store for creators, projects and their child entities."""

    _CURRENT_SCHEMA_VERSION = 1

    def __init__(self, db_path: Union[str, Path], client_id: str = "inkdoodle_desktop",
                 pool_size: int = 4, busy_timeout_ms: int = 5000):
        """
        Initialize the remote store.

        Args:
            db_path: Path to the SQLite database file or ':memory:'
            client_id: Client identifier for multi-client support
            pool_size: Maximum number of pooled connections
            busy_timeout_ms: How long a query waits for a free connection or a lock
        """
        self.pool_size = max(1, int(pool_size))
        self.busy_timeout_ms = busy_timeout_ms
        self._pool: "queue.LifoQueue[sqlite3.Connection]" = queue.LifoQueue(maxsize=self.pool_size)
        self._pool_lock = threading.Lock()
        self._connections: List[sqlite3.Connection] = []
        self._closed = False
        super().__init__(db_path, client_id)

    # --- Connection pool ---

    def _get_connection(self) -> sqlite3.Connection:
        conn = super()._get_connection()
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        return conn

    def _acquire(self) -> sqlite3.Connection:
        if self._closed:
            raise RemoteConnectionError("Remote store is closed")
        try:
            return self._pool.get_nowait()
        except queue.Empty:
            pass
        with self._pool_lock:
            if len(self._connections) < self.pool_size:
                try:
                    conn = self._get_connection()
                except sqlite3.Error as e:
                    raise RemoteConnectionError(f"Could not connect to {self.db_path_str}: {e}") from e
                self._connections.append(conn)
                return conn
        try:
            return self._pool.get(timeout=self.busy_timeout_ms / 1000)
        except queue.Empty:
            raise RemoteConnectionError(
                f"No free connection after {self.busy_timeout_ms} ms (pool size {self.pool_size})")

    def _release(self, conn: sqlite3.Connection) -> None:
        if self._closed:
            conn.close()
            return
        self._pool.put_nowait(conn)

    @contextmanager
    def borrow(self):
        """Borrow a pooled connection for the duration of one unit of work."""
        conn = self._acquire()
        try:
            yield conn
        finally:
            self._release(conn)

    def close(self):
        """Close every pooled connection."""
        self._closed = True
        with self._pool_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing remote store connection: {e}")
            self._connections.clear()
        logger.debug(f"Remote store {self.db_path_str} closed")

    # --- Schema ---

    def _initialize_schema(self):
        """Initialize the database schema."""
        with self.borrow() as conn:
            conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY NOT NULL
            );
            INSERT OR IGNORE INTO schema_version (version) VALUES (1);

            CREATE TABLE IF NOT EXISTS creators (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT UNIQUE,
                display_name TEXT,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                is_active INTEGER NOT NULL DEFAULT 1,
                updated_at TEXT,
                last_login_at TEXT
            );

            -- `id` is the public code; `code` is the creator-local sequence number
            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY NOT NULL,
                code TEXT,
                title TEXT NOT NULL DEFAULT '',
                creator_id INTEGER NOT NULL REFERENCES creators(id),
                created_at TEXT,
                updated_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_projects_creator ON projects(creator_id);

            CREATE TABLE IF NOT EXISTS chapters (
                id TEXT PRIMARY KEY NOT NULL,
                code TEXT,
                project_id TEXT NOT NULL REFERENCES projects(id),
                creator_id INTEGER NOT NULL REFERENCES creators(id),
                number INTEGER,
                title TEXT NOT NULL DEFAULT '',
                content TEXT NOT NULL DEFAULT '',
                status TEXT,
                summary TEXT,
                tags TEXT NOT NULL DEFAULT '[]',
                word_goal INTEGER,
                created_at TEXT,
                updated_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_chapters_project ON chapters(project_id);

            CREATE TABLE IF NOT EXISTS notes (
                id TEXT PRIMARY KEY NOT NULL,
                code TEXT,
                project_id TEXT NOT NULL REFERENCES projects(id),
                creator_id INTEGER NOT NULL REFERENCES creators(id),
                number INTEGER,
                title TEXT NOT NULL DEFAULT '',
                content TEXT NOT NULL DEFAULT '',
                tags TEXT NOT NULL DEFAULT '[]',
                category TEXT,
                pinned INTEGER NOT NULL DEFAULT 0,
                created_at TEXT,
                updated_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_notes_project ON notes(project_id);

            CREATE TABLE IF NOT EXISTS refs (
                id TEXT PRIMARY KEY NOT NULL,
                code TEXT,
                project_id TEXT NOT NULL REFERENCES projects(id),
                creator_id INTEGER NOT NULL REFERENCES creators(id),
                number INTEGER,
                title TEXT NOT NULL DEFAULT '',
                tags TEXT NOT NULL DEFAULT '[]',
                reference_type TEXT,
                summary TEXT,
                source_link TEXT,
                content TEXT NOT NULL DEFAULT '',
                created_at TEXT,
                updated_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_refs_project ON refs(project_id);

            CREATE TABLE IF NOT EXISTS lore (
                id TEXT PRIMARY KEY NOT NULL,
                code TEXT,
                project_id TEXT NOT NULL REFERENCES projects(id),
                creator_id INTEGER NOT NULL REFERENCES creators(id),
                number INTEGER,
                title TEXT NOT NULL DEFAULT '',
                content TEXT NOT NULL DEFAULT '',
                status TEXT,
                summary TEXT,
                tags TEXT NOT NULL DEFAULT '[]',
                lore_kind TEXT,
                entry1_name TEXT,
                entry1_content TEXT,
                entry2_name TEXT,
                entry2_content TEXT,
                entry3_name TEXT,
                entry3_content TEXT,
                entry4_name TEXT,
                entry4_content TEXT,
                created_at TEXT,
                updated_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_lore_project ON lore(project_id);

            CREATE TABLE IF NOT EXISTS timelines (
                id TEXT PRIMARY KEY NOT NULL,
                code TEXT,
                project_id TEXT NOT NULL REFERENCES projects(id),
                creator_id INTEGER NOT NULL REFERENCES creators(id),
                title TEXT NOT NULL DEFAULT '',
                events TEXT NOT NULL DEFAULT '[]',
                created_at TEXT,
                updated_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_timelines_project ON timelines(project_id);

            CREATE TABLE IF NOT EXISTS prefs (
                key TEXT PRIMARY KEY NOT NULL,
                value TEXT,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            );
            """)
            conn.commit()

    # --- Blocking primitives (run inside worker threads) ---

    def _run(self, statement: str, params: Optional[Params], mode: str) -> Any:
        with self.borrow() as conn:
            try:
                cursor = conn.execute(statement, _encode_params(params))
                if mode == 'one':
                    return decode_row(cursor.fetchone())
                if mode == 'all':
                    return [decode_row(row) for row in cursor.fetchall()]
                if mode == 'value':
                    row = cursor.fetchone()
                    return None if row is None else row[0]
                conn.commit()
                return cursor.rowcount
            except sqlite3.Error as e:
                conn.rollback()
                raise translate_error(e, statement) from e

    def _run_transaction(self, statements: Iterable[Tuple[str, Optional[Params]]]) -> List[int]:
        rowcounts = []
        with self.borrow() as conn:
            current = None
            try:
                for statement, params in statements:
                    current = statement
                    rowcounts.append(conn.execute(statement, _encode_params(params)).rowcount)
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise translate_error(e, current) from e
        return rowcounts

    # --- Async API ---

    async def fetch_one(self, statement: str, params: Optional[Params] = None) -> Optional[Dict[str, Any]]:
        """Return the first row of a query as a dict, or None."""
        return await asyncio.to_thread(self._run, statement, params, 'one')

    async def fetch_all(self, statement: str, params: Optional[Params] = None) -> List[Dict[str, Any]]:
        """Return every row of a query as dicts."""
        return await asyncio.to_thread(self._run, statement, params, 'all')

    async def fetch_value(self, statement: str, params: Optional[Params] = None) -> Any:
        """Return the first column of the first row, or None."""
        return await asyncio.to_thread(self._run, statement, params, 'value')

    async def count(self, table: str, where: Optional[Dict[str, Any]] = None) -> int:
        """Count rows of a whitelisted table matching simple equality filters."""
        table = require_table(table)
        where = where or {}
        columns = require_columns(list(where.keys()), table)
        statement = f"SELECT COUNT(*) FROM {table}"
        if columns:
            statement += " WHERE " + " AND ".join(f"{col} = ?" for col in columns)
        value = await self.fetch_value(statement, [where[col] for col in columns])
        return int(value or 0)

    async def execute(self, statement: str, params: Optional[Params] = None) -> int:
        """Run a mutating statement and return its rowcount. Raises RemoteStoreError."""
        return await asyncio.to_thread(self._run, statement, params, 'write')

    async def try_execute(self, statement: str, params: Optional[Params] = None) -> OperationResult:
        """Run a mutating statement and report the outcome instead of raising."""
        try:
            rowcount = await self.execute(statement, params)
        except RemoteStoreError as e:
            return OperationResult(ok=False, error=e)
        return OperationResult(ok=True, rowcount=rowcount)

    async def execute_transaction(self, statements: List[Tuple[str, Optional[Params]]]) -> List[int]:
        """Run several statements on one connection, committing them together."""
        return await asyncio.to_thread(self._run_transaction, statements)

    async def try_execute_transaction(self, statements: List[Tuple[str, Optional[Params]]]) -> OperationResult:
        """Transactional variant of try_execute; rowcount is the sum over all statements."""
        try:
            rowcounts = await self.execute_transaction(statements)
        except RemoteStoreError as e:
            return OperationResult(ok=False, error=e)
        return OperationResult(ok=True, rowcount=sum(max(0, count) for count in rowcounts))

    # --- Creator and preference helpers (used by the login collaborator) ---

    async def get_or_create_creator(self, email: str, display_name: Optional[str] = None) -> Dict[str, Any]:
        """Find a creator by e-mail (case-insensitive), creating one if absent."""
        email = (email or '').strip().lower()
        if not email or '@' not in email:
            raise ValueError("A valid e-mail address is required")
        row = await self.fetch_one("SELECT * FROM creators WHERE lower(email) = ? LIMIT 1", (email,))
        if row:
            return row
        now = datetime.now(timezone.utc).isoformat()
        await self.execute(
            "INSERT INTO creators (email, display_name, created_at, updated_at) VALUES (?, ?, ?, ?)",
            (email, display_name or email.split('@')[0], now, now))
        row = await self.fetch_one("SELECT * FROM creators WHERE lower(email) = ? LIMIT 1", (email,))
        logger.info(f"Created creator id={row['id']}")
        return row

    async def set_pref(self, key: str, value: Any) -> None:
        await self.execute(
            """INSERT INTO prefs (key, value, updated_at) VALUES (?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
            (key, json.dumps(value), datetime.now(timezone.utc).isoformat()))

    async def get_pref(self, key: str, default: Any = None) -> Any:
        raw = await self.fetch_value("SELECT value FROM prefs WHERE key = ?", (key,))
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            return raw

#
# End of remote_store.py
#######################################################################################################################
