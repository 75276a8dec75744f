"""
Relational persistence adapter for Quiz Whiz.

Wraps a single sqlite3 connection shared by all components. Every storage
failure surfaces as PersistenceError.
"""
import logging
import random
import sqlite3
import string
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .exceptions import PersistenceError

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    phone TEXT NOT NULL UNIQUE,
    channel_id TEXT UNIQUE,
    role TEXT NOT NULL DEFAULT 'taker',
    cohort_id TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS quizzes (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    subject TEXT NOT NULL DEFAULT '',
    cohort_id TEXT,
    status TEXT NOT NULL DEFAULT 'draft',
    created_by TEXT,
    source_chunk_id TEXT,
    created_at TEXT NOT NULL,
    sent_at TEXT
);

CREATE TABLE IF NOT EXISTS questions (
    id TEXT PRIMARY KEY,
    quiz_id TEXT NOT NULL REFERENCES quizzes(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    prompt TEXT NOT NULL,
    choices TEXT NOT NULL,
    correct_label TEXT NOT NULL,
    explanation TEXT NOT NULL DEFAULT '',
    difficulty TEXT NOT NULL DEFAULT 'easy',
    UNIQUE (quiz_id, position)
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    recipient_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    quiz_id TEXT NOT NULL REFERENCES quizzes(id) ON DELETE CASCADE,
    status TEXT NOT NULL DEFAULT 'active',
    position INTEGER NOT NULL DEFAULT 1,
    total_questions INTEGER NOT NULL,
    answers TEXT NOT NULL DEFAULT '{}',
    score INTEGER,
    start_time TEXT NOT NULL,
    end_time TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_one_active
    ON sessions (recipient_id, quiz_id) WHERE status = 'active';
CREATE INDEX IF NOT EXISTS idx_sessions_status_start ON sessions (status, start_time);

CREATE TABLE IF NOT EXISTS documents (
    id TEXT PRIMARY KEY,
    file_path TEXT NOT NULL,
    extraction_status TEXT NOT NULL DEFAULT 'pending',
    page_count INTEGER,
    extracted_text TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS content_chunks (
    id TEXT PRIMARY KEY,
    document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    chunk_index INTEGER NOT NULL,
    page_number INTEGER NOT NULL,
    content TEXT NOT NULL,
    word_count INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS quiz_distributions (
    id TEXT PRIMARY KEY,
    quiz_id TEXT NOT NULL,
    cohort_id TEXT,
    teacher_id TEXT,
    distribution_type TEXT NOT NULL,
    recipient_count INTEGER NOT NULL,
    success_count INTEGER NOT NULL,
    created_at TEXT NOT NULL
);
"""

_BASE36 = string.digits + string.ascii_uppercase


def _to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_id(prefix: str = "") -> str:
    """
    Generate an opaque identifier: prefix, base36 millisecond timestamp and a
    random suffix, all uppercase. Identifiers never contain underscores.
    """
    timestamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(random.choices(_BASE36, k=9))
    return f"{prefix}{timestamp}{suffix}".upper()


class DatabaseConnection:
    """Executes parameterized SQL against the relational store."""

    def __init__(self, path: str = ":memory:"):
        self.path = path
        self._connection: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self.logger = logging.getLogger(__name__)

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    def connect(self) -> sqlite3.Connection:
        """Open the connection and make sure the schema exists."""
        with self._lock:
            if self._connection is not None:
                return self._connection
            try:
                if self.path != ":memory:":
                    Path(self.path).parent.mkdir(parents=True, exist_ok=True)
                # Autocommit mode; transaction() issues BEGIN explicitly
                connection = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
                connection.row_factory = sqlite3.Row
                connection.execute("PRAGMA foreign_keys = ON")
                connection.executescript(SCHEMA)
            except (sqlite3.Error, OSError) as e:
                self.logger.error(f"Database connection failed: {e}")
                raise PersistenceError(f"Database connection failed: {e}") from e

            self._connection = connection
            self.logger.info(f"Database connected: {self.path}")
            return connection

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Run a read statement and return rows as dictionaries."""
        connection = self.connect()
        with self._lock:
            try:
                rows = connection.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as e:
                self.logger.error(f"Database query error: {e} | SQL: {sql.strip()} | Params: {params}")
                raise PersistenceError(f"Database query failed: {e}") from e
        return [dict(row) for row in rows]

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a single write statement in its own transaction; return affected rows."""
        with self.transaction() as cursor:
            cursor.execute(sql, tuple(params))
            return cursor.rowcount

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """
        Run several statements atomically.

        Commits when the block exits normally and rolls back on any error.
        sqlite3 errors raised inside the block are re-raised as PersistenceError.
        """
        connection = self.connect()
        with self._lock:
            cursor = connection.cursor()
            try:
                cursor.execute("BEGIN")
                yield cursor
                connection.commit()
            except sqlite3.Error as e:
                connection.rollback()
                self.logger.error(f"Transaction rolled back: {e}")
                raise PersistenceError(f"Database transaction failed: {e}") from e
            except BaseException:
                connection.rollback()
                raise
            finally:
                cursor.close()

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
                self.logger.info("Database connection closed")
