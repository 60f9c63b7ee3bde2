# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""SQLite connection wrapper with scoped transactions.

All SQL issued by the pipeline goes through :class:`Store`. A transaction is
entered with ``with store.transaction() as tx:``; its effects are committed
when the block exits normally and rolled back on any exception. Nested
transactions are mapped onto SAVEPOINTs so a stage can be composed inside a
larger unit of work.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import StoreError

logger = logging.getLogger(__name__)

Params = Sequence[Any] | dict[str, Any]

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS repository (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        path TEXT NOT NULL,
        name TEXT NOT NULL,
        local_path TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(path)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS branch (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        repository_id INTEGER NOT NULL,
        last_commit_sha TEXT,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK(status IN ('pending', 'files_processed', 'embeddings_generated')),
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (repository_id) REFERENCES repository(id) ON DELETE CASCADE,
        UNIQUE(name, repository_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS file (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        repository_id INTEGER NOT NULL,
        path TEXT NOT NULL,
        sha TEXT NOT NULL,
        name TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK(status IN ('pending', 'fetched', 'ingested', 'done')),
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (repository_id) REFERENCES repository(id) ON DELETE CASCADE,
        UNIQUE(repository_id, path, sha)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS branch_file_association (
        branch_id INTEGER NOT NULL,
        file_id INTEGER NOT NULL,
        PRIMARY KEY (branch_id, file_id),
        FOREIGN KEY (branch_id) REFERENCES branch(id) ON DELETE CASCADE,
        FOREIGN KEY (file_id) REFERENCES file(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS file_chunk (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        file_id INTEGER NOT NULL,
        content TEXT NOT NULL,
        chunk_number INTEGER NOT NULL,
        embedding BLOB,
        model_version TEXT,
        token_count INTEGER,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (file_id) REFERENCES file(id) ON DELETE CASCADE,
        UNIQUE(file_id, chunk_number)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_branch_repository ON branch(repository_id)",
    "CREATE INDEX IF NOT EXISTS idx_file_repository ON file(repository_id)",
    "CREATE INDEX IF NOT EXISTS idx_bfa_file ON branch_file_association(file_id)",
    "CREATE INDEX IF NOT EXISTS idx_chunk_file ON file_chunk(file_id)",
)


@dataclass
class RunResult:
    rowcount: int
    lastrowid: int | None


class Store:
    """Thread-safe handle over a single SQLite connection."""

    def __init__(self, db_path: Path | str, *, busy_timeout_ms: int = 60000):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self.conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                timeout=busy_timeout_ms / 1000.0,
                isolation_level=None,
            )
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot open database {self.db_path}: {exc}") from exc
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self.conn.execute("PRAGMA foreign_keys=ON;")
        if self.db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)};")
        self._init_schema()

    def _init_schema(self) -> None:
        with self.transaction() as tx:
            for statement in SCHEMA:
                tx.run(statement)
        logger.debug("Schema initialized at %s", self.db_path)

    def _execute(self, sql: str, params: Params) -> sqlite3.Cursor:
        try:
            return self.conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise StoreError(f"{exc} (query: {' '.join(sql.split())[:200]})") from exc

    def get(self, sql: str, params: Params = ()) -> sqlite3.Row | None:
        with self._lock:
            return self._execute(sql, params).fetchone()

    def all(self, sql: str, params: Params = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._execute(sql, params).fetchall()

    def run(self, sql: str, params: Params = ()) -> RunResult:
        with self._lock:
            cur = self._execute(sql, params)
            return RunResult(rowcount=cur.rowcount, lastrowid=cur.lastrowid)

    def run_many(self, sql: str, rows: Sequence[Params]) -> int:
        with self._lock:
            try:
                cur = self.conn.executemany(sql, rows)
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc
            return cur.rowcount

    @contextmanager
    def transaction(self) -> Iterator["Store"]:
        """Scoped transaction; commit on normal exit, roll back on error."""
        with self._lock:
            depth = self._depth
            savepoint = f"sp_{depth}"
            self._execute("BEGIN IMMEDIATE" if depth == 0 else f"SAVEPOINT {savepoint}", ())
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                try:
                    if depth == 0:
                        self.conn.execute("ROLLBACK")
                    else:
                        self.conn.execute(f"ROLLBACK TO {savepoint}")
                        self.conn.execute(f"RELEASE {savepoint}")
                except sqlite3.Error:
                    logger.debug("Rollback failed", exc_info=True)
                raise
            else:
                self._depth -= 1
                if depth > 0:
                    self._execute(f"RELEASE {savepoint}", ())
                    return
                try:
                    self._execute("COMMIT", ())
                except StoreError:
                    self.conn.execute("ROLLBACK")
                    raise

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def close(self) -> None:
        try:
            self.conn.close()
        except Exception:
            logger.debug("Error closing database", exc_info=True)
