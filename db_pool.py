"""SQLite connection pool shared by the service modules."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator

logger = logging.getLogger(__name__)


class SQLiteConnectionPool:
    """Thread-safe pool of SQLite connections for one database file.

    Connections are created lazily up to ``max_connections``; callers beyond
    that block until a connection is returned. Every connection has foreign
    keys enabled and a busy timeout so concurrent writers wait instead of
    failing immediately.
    """

    def __init__(self, database: str, max_connections: int = 5, busy_timeout_ms: int = 5000):
        self.database = database
        self.max_connections = max_connections
        self.busy_timeout_ms = busy_timeout_ms
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0

    @property
    def created_connections(self) -> int:
        return self._created_connections

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        return conn

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Borrow a connection; uncommitted work is rolled back on return."""
        connection = None
        try:
            connection = self._pool.get(block=False)
        except Empty:
            with self._lock:
                if self._created_connections < self.max_connections:
                    connection = self._create_connection()
                    self._created_connections += 1
                    logger.debug("Opened SQLite connection %d for %s", self._created_connections, self.database)
            if connection is None:
                connection = self._pool.get(block=True)

        try:
            yield connection
        finally:
            try:
                connection.rollback()
                self._pool.put(connection)
            except sqlite3.Error as exc:
                logger.error("Discarding broken SQLite connection: %s", exc)
                try:
                    connection.close()
                finally:
                    with self._lock:
                        self._created_connections -= 1

    def close_all(self) -> None:
        """Close every idle connection held by the pool."""
        while True:
            try:
                connection = self._pool.get(block=False)
            except Empty:
                break
            try:
                connection.close()
            except sqlite3.Error:
                logger.warning("Failed to close pooled connection", exc_info=True)
            with self._lock:
                self._created_connections -= 1
