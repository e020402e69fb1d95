"""Shared SQLite database handle and schema for protocols and runs."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Union

from ..errors import PersistenceError
from ..logging.config import get_logger

SCHEMA = """
CREATE TABLE IF NOT EXISTS protocols (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    name TEXT NOT NULL,
    name_key TEXT NOT NULL,
    description TEXT,
    steps TEXT NOT NULL,
    total_duration INTEGER NOT NULL,
    tags TEXT NOT NULL DEFAULT '[]',
    is_active INTEGER NOT NULL DEFAULT 1,
    last_run TEXT,
    run_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(owner_id, name_key)
);

CREATE TABLE IF NOT EXISTS protocol_runs (
    id TEXT PRIMARY KEY,
    protocol_id TEXT NOT NULL REFERENCES protocols(id),
    owner_id TEXT NOT NULL,
    protocol_name TEXT NOT NULL,
    steps TEXT NOT NULL,
    step_count INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'in_progress'
        CHECK (status IN ('in_progress', 'completed', 'cancelled')),
    current_step INTEGER NOT NULL DEFAULT 0,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    notes TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_protocol_runs_one_active
    ON protocol_runs(owner_id) WHERE status = 'in_progress';

CREATE INDEX IF NOT EXISTS idx_protocol_runs_owner_started
    ON protocol_runs(owner_id, started_at);

CREATE INDEX IF NOT EXISTS idx_protocol_runs_protocol_id
    ON protocol_runs(protocol_id);

CREATE INDEX IF NOT EXISTS idx_protocols_owner_id
    ON protocols(owner_id);
"""


class Database:
    """
    SQLite database shared by the definition and run stores.

    Every operation opens its own connection, so one instance can be used
    from several request threads. Write transactions use BEGIN IMMEDIATE to
    take the write lock up front; concurrent writers wait up to ``timeout``.
    """

    def __init__(self, db_path: Union[str, Path] = "protocols.db", timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.timeout = timeout
        self.logger = get_logger("protocol.database")

        self._init_database()

    def _init_database(self) -> None:
        """Create tables and indexes."""
        if self.db_path.parent and not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self.connection() as conn:
            conn.executescript(SCHEMA)

        self.logger.debug("Database initialized", db_path=str(self.db_path))

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Get database connection with proper error handling."""
        conn = None
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        except sqlite3.Error as e:
            if conn is not None and conn.in_transaction:
                conn.rollback()
            self.logger.error("Database error", db_path=str(self.db_path), error=str(e))
            raise PersistenceError(
                f"Database error: {e}",
                operation="sqlite",
                target=str(self.db_path),
            ) from e
        finally:
            if conn is not None:
                conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block as one atomic write transaction.

        Commits when the block exits normally and rolls back on any
        exception, which is re-raised.
        """
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
