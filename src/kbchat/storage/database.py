"""SQLite persistence for documents, conversations and usage events."""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Any, Iterable, Optional

from kbchat.metrics.observability import get_logger

SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    visibility TEXT NOT NULL,
    labels TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL,
    chunk_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_documents_owner ON documents(owner_id, updated_at DESC);

CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    identity_kind TEXT NOT NULL,
    identity_value TEXT NOT NULL,
    chatbot_id TEXT NOT NULL,
    chatbot_owner_id TEXT,
    title TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    last_message_at TEXT NOT NULL,
    UNIQUE (identity_kind, identity_value, chatbot_id)
);

CREATE TABLE IF NOT EXISTS messages (
    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    sources TEXT NOT NULL DEFAULT '[]',
    timestamp TEXT NOT NULL,
    PRIMARY KEY (conversation_id, position)
);

CREATE TABLE IF NOT EXISTS usage_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    model_name TEXT NOT NULL,
    token_count INTEGER NOT NULL,
    event_type TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_usage_created ON usage_events(created_at);
CREATE INDEX IF NOT EXISTS idx_usage_user ON usage_events(user_id);
"""


class Database:
    """Owns the SQLite file; hands out one connection per session."""

    def __init__(self, path: str | Path, *, busy_timeout_seconds: float = 30.0) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._busy_timeout = busy_timeout_seconds
        self._logger = get_logger("database")
        self._init_schema()

    def _init_schema(self) -> None:
        conn = self.connect()
        try:
            # Readers never block the writer, so turns on different conversations proceed in parallel.
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
        finally:
            conn.close()
        self._logger.info("database.ready", path=str(self.path))

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.path,
            timeout=self._busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def session(self) -> "Session":
        return Session(self.connect())


class Session:
    """Transaction handle threaded explicitly through every store call of one request.

    Reads run in autocommit mode. The first write opens an immediate
    transaction, which the owner commits or rolls back exactly once when the
    session is released. Used as a context manager it commits on success and
    rolls back on any exception.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()
        self._released = False

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.commit()
        else:
            self.rollback()

    @property
    def in_transaction(self) -> bool:
        return self._conn.in_transaction

    @property
    def released(self) -> bool:
        return self._released

    def begin(self) -> None:
        self._ensure_open()
        if not self._conn.in_transaction:
            self._conn.execute("BEGIN IMMEDIATE")

    def execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        self._ensure_open()
        return self._conn.execute(sql, tuple(params))

    def fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[sqlite3.Row]:
        return self.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        return self.execute(sql, params).fetchall()

    def commit(self) -> None:
        self._release(commit=True)

    def rollback(self) -> None:
        self._release(commit=False)

    def _release(self, *, commit: bool) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        try:
            if self._conn.in_transaction:
                self._conn.execute("COMMIT" if commit else "ROLLBACK")
        finally:
            self._conn.close()

    def _ensure_open(self) -> None:
        if self._released:
            raise RuntimeError("Session has already been committed or rolled back")
