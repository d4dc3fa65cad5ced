# base_db.py
# Description: Base class for standardized database path handling
#
"""
base_db.py
----------

Base class that provides standardized path handling for the database modules.
This ensures consistent behavior for:
- Path type handling (str vs Path)
- Memory database special case (':memory:'), shared across pooled connections
- Client ID handling
- Directory creation for file-based databases
"""

import itertools
import sqlite3
from pathlib import Path
from typing import Union
from abc import ABC, abstractmethod
from loguru import logger

_MEMORY_DB_COUNTER = itertools.count(1)


class BaseDB(ABC):
    """
    Base class for database modules providing standardized path handling.

    This class ensures consistent handling of:
    - Union[str, Path] type for db_path
    - Special ':memory:' case for in-memory databases
    - Client ID for multi-client support
    - Automatic directory creation
    """

    def __init__(self, db_path: Union[str, Path], client_id: str = "default"):
        """
        Initialize the base database with standardized path handling.

        Args:
            db_path: Path to the SQLite database file or ':memory:'
            client_id: Client identifier for multi-client support
        """
        if isinstance(db_path, Path):
            self.is_memory_db = False
            self.db_path = db_path.expanduser().resolve()
        else:
            self.is_memory_db = (db_path == ':memory:')
            if self.is_memory_db:
                self.db_path = Path(":memory:")
            else:
                self.db_path = Path(db_path).expanduser().resolve()

        # Several pooled connections must see the same in-memory database,
        # so memory databases go through a named shared-cache URI.
        if self.is_memory_db:
            self.db_path_str = f"file:inkdoodle_mem_{next(_MEMORY_DB_COUNTER)}?mode=memory&cache=shared"
            self.uses_uri = True
        else:
            self.db_path_str = str(self.db_path)
            self.uses_uri = False

        self.client_id = client_id

        if not self.is_memory_db:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error(f"Failed to create database directory {self.db_path.parent}: {e}")
                raise

        self._initialize_schema()

        logger.info(f"{self.__class__.__name__} initialized with path: {self.db_path_str} [Client: {self.client_id}]")

    @abstractmethod
    def _initialize_schema(self):
        """
        Initialize the database schema.
        Must be implemented by subclasses.
        """
        pass

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection with row factory.
        Can be overridden by subclasses for custom connection handling.
        """
        conn = sqlite3.connect(self.db_path_str, uri=self.uses_uri, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def close(self):
        """
        Close database connections if needed.
        Can be overridden by subclasses.
        """
        pass
