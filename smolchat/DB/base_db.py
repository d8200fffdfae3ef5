# base_db.py
# Description: Base class for standardized database path handling
#
"""
base_db.py
----------

Base class that provides standardized path handling for the database modules:
- Path type handling (str vs Path)
- Memory database special case (':memory:')
- Directory creation for file-based databases
- One shared connection guarded by a lock, since the session calls the store
  from the event loop and from worker threads
"""

import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

from loguru import logger

from ..exceptions import PersistenceError


class BaseDB(ABC):
    """Base class for all database modules providing standardized path handling."""

    def __init__(self, db_path: Union[str, Path]):
        """
        Args:
            db_path: Path to the SQLite database file or ':memory:'
        """
        if isinstance(db_path, Path):
            self.is_memory_db = False
            self.db_path = db_path.expanduser().resolve()
        else:
            self.is_memory_db = (db_path == ':memory:')
            if self.is_memory_db:
                self.db_path = Path(":memory:")  # Symbolic Path for consistency
            else:
                self.db_path = Path(db_path).expanduser().resolve()

        self.db_path_str = ':memory:' if self.is_memory_db else str(self.db_path)

        if not self.is_memory_db:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error(f"Failed to create database directory {self.db_path.parent}: {e}")
                raise PersistenceError(f"Cannot create database directory {self.db_path.parent}") from e

        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None

        self._initialize_schema()

        logger.info(f"{self.__class__.__name__} initialized with path: {self.db_path_str}")

    @abstractmethod
    def _initialize_schema(self):
        """
        Initialize the database schema.
        Must be implemented by subclasses.
        """
        pass

    def _get_connection(self) -> sqlite3.Connection:
        """Get the shared connection with row factory, opening it on first use."""
        if self._conn is None:
            try:
                self._conn = sqlite3.connect(self.db_path_str, check_same_thread=False)
            except sqlite3.Error as e:
                raise PersistenceError(f"Cannot open database {self.db_path_str}: {e}") from e
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements atomically; sqlite errors surface as PersistenceError."""
        with self._lock:
            conn = self._get_connection()
            try:
                with conn:
                    yield conn
            except sqlite3.Error as e:
                logger.error(f"Database error in {self.__class__.__name__}: {e}")
                raise PersistenceError(str(e)) from e

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
