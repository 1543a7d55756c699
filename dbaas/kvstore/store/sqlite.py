"""
Local SQLite store handle.

This module provides a single-file backing store for local development and
tests. It mirrors the Spanner handle's contract:

- the provisioning container is a data directory
- the database is one SQLite file inside it
- the table has the same four columns as the Spanner schema

Timestamps are assigned inside a BEGIN IMMEDIATE transaction, which holds
the database write lock, so they play the role of commit timestamps: every
write to a key gets a strictly later timestamp than the previous one.

Invariants:
    - One SQLite file per service, opened per operation
    - Writes hold the write lock from the existence read to COMMIT
    - Timestamps are fixed-width UTC text, so text order is time order
    - Multi-statement reads run inside one read transaction

How to change safely:
    - Keep the column layout identical to the Spanner table
    - Use transactions for all write operations
    - Test concurrent upserts whenever the write path changes
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .base import BackendError, run_blocking
from .provision import ProvisionStep, ProvisionTarget
from .query import (
    SQLITE_DIALECT,
    QueryDialect,
    Statement,
    format_sqlite_timestamp,
    validate_identifier,
)

if TYPE_CHECKING:
    from ..config import SqliteConfig

logger = logging.getLogger(__name__)

KV_TABLE_DDL = """
CREATE TABLE {table} (
    id TEXT NOT NULL CHECK (length(id) = 36),
    data TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (id)
) WITHOUT ROWID
""".strip()


def sanitize_database_name(database: str) -> str:
    """Keep only characters that are safe in a file name."""
    # Sanitize database name to prevent path traversal
    return "".join(c for c in database if c.isalnum() or c in "-_")


def database_path(data_dir: str, database: str) -> Path:
    """Path of the database file for a data directory and database name.

    Raises:
        ValueError: If nothing of the name survives sanitization
    """
    safe_name = sanitize_database_name(database)
    if not safe_name:
        raise ValueError(f"Invalid SQLite database name: {database!r}")
    return Path(data_dir) / f"{safe_name}.db"


def table_ddl(table: str) -> str:
    return KV_TABLE_DDL.format(table=validate_identifier(table))


def is_already_exists(exc: BaseException) -> bool:
    return isinstance(exc, sqlite3.OperationalError) and "already exists" in str(exc)


class SqliteHandle:
    """SQLite implementation of the StoreHandle protocol.

    Thread safety:
        A connection is created per operation. SQLite serializes writers
        with its database lock and WAL mode lets readers run alongside.

    Example:
        >>> handle = SqliteHandle(SqliteConfig(data_dir="/tmp/kv"))
        >>> await handle.connect()
        >>> created = await handle.upsert("kv_store", key, '{"a": 1}', timeout=5)
    """

    def __init__(self, config: SqliteConfig, max_workers: int = 16) -> None:
        """Initialize the handle.

        Args:
            config: SQLite configuration
            max_workers: Threads available for blocking calls
        """
        self.config = config
        self.max_workers = max_workers
        self.db_path = database_path(config.data_dir, config.database)
        self._executor: ThreadPoolExecutor | None = None
        self._connected = False

    @property
    def dialect(self) -> QueryDialect:
        return SQLITE_DIALECT

    @property
    def is_connected(self) -> bool:
        return self._connected

    @contextmanager
    def _get_connection(self, db_path: Path | None = None) -> Iterator[sqlite3.Connection]:
        """Open a connection to an existing database file.

        Raises:
            BackendError: If the database file does not exist
        """
        db_path = db_path or self.db_path
        if not db_path.exists():
            raise BackendError(f"SQLite database not found: {db_path}")

        conn = sqlite3.connect(
            str(db_path),
            timeout=self.config.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
            check_same_thread=False,
        )
        try:
            conn.execute(f"PRAGMA busy_timeout = {int(self.config.busy_timeout_ms)}")
            yield conn
        finally:
            conn.close()

    async def connect(self) -> None:
        """Verify the provisioned database file and start the worker pool.

        Raises:
            BackendError: If the database has not been provisioned
        """
        if self._connected:
            return
        if not self.db_path.exists():
            raise BackendError(f"SQLite database not found: {self.db_path}")

        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="sqlite"
        )
        self._connected = True
        logger.info(f"Connected to SQLite database: {self.db_path}")

    async def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        self._executor = None
        self._connected = False
        logger.info("SQLite connection closed")

    def _require_connected(self) -> None:
        if not self._connected:
            raise BackendError("Not connected to SQLite")

    async def query(
        self,
        statements: Sequence[Statement],
        timeout: float,
    ) -> list[list[tuple[Any, ...]]]:
        """Run read-only statements inside one read transaction."""
        self._require_connected()

        def run() -> list[list[tuple[Any, ...]]]:
            with self._get_connection() as conn:
                conn.execute("BEGIN")
                try:
                    results = [
                        [tuple(row) for row in conn.execute(s.sql, s.params).fetchall()]
                        for s in statements
                    ]
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
                return results

        return await run_blocking(self._executor, run, timeout, "SQLite query")

    async def upsert(self, table: str, key: str, data_json: str, timeout: float) -> bool:
        """Insert or replace a row, preserving created_at.

        The commit timestamp is max(now, previous updated_at + 1us), taken
        while holding the write lock.
        """
        self._require_connected()
        table = validate_identifier(table)

        def write() -> bool:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute(
                        f"SELECT updated_at FROM {table} WHERE id = ?", (key,)
                    ).fetchone()
                    now = datetime.now(timezone.utc)
                    if row is None:
                        stamp = format_sqlite_timestamp(now)
                        conn.execute(
                            f"INSERT INTO {table} (id, data, created_at, updated_at) "
                            "VALUES (?, ?, ?, ?)",
                            (key, data_json, stamp, stamp),
                        )
                    else:
                        previous = SQLITE_DIALECT.decode_timestamp(row[0])
                        commit_ts = max(now, previous + timedelta(microseconds=1))
                        conn.execute(
                            f"UPDATE {table} SET data = ?, updated_at = ? WHERE id = ?",
                            (data_json, format_sqlite_timestamp(commit_ts), key),
                        )
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
                return row is None

        created = await run_blocking(self._executor, write, timeout, "SQLite upsert")
        logger.debug("Upserted document", extra={"key": key, "created": created})
        return created

    async def ping(self, timeout: float) -> None:
        """Run SELECT 1."""
        results = await self.query([Statement("SELECT 1")], timeout)
        if not results or not results[0]:
            raise BackendError("Health check query returned no results")

    def provision_steps(self, target: ProvisionTarget) -> list[ProvisionStep]:
        """Directory, database file and table steps for SQLite."""
        data_dir = Path(target.container_id)
        db_path = database_path(target.container_id, target.database_id)
        table = validate_identifier(target.table_name)

        def create_database() -> None:
            conn = sqlite3.connect(str(db_path), isolation_level=None)
            try:
                conn.execute("PRAGMA journal_mode = WAL")
            finally:
                conn.close()

        def table_exists() -> bool:
            with self._get_connection(db_path) as conn:
                cursor = conn.execute(
                    "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
                    (table,),
                )
                return cursor.fetchone() is not None

        def create_table() -> None:
            with self._get_connection(db_path) as conn:
                conn.execute(table_ddl(table))

        return [
            ProvisionStep(
                resource="container",
                name=str(data_dir),
                exists=data_dir.is_dir,
                create=lambda: data_dir.mkdir(parents=True),
                already_exists=lambda exc: isinstance(exc, FileExistsError) and data_dir.is_dir(),
            ),
            ProvisionStep(
                resource="database",
                name=str(db_path),
                exists=db_path.is_file,
                create=create_database,
                already_exists=is_already_exists,
            ),
            ProvisionStep(
                resource="table",
                name=f"{db_path}:{table}",
                exists=table_exists,
                create=create_table,
                already_exists=is_already_exists,
            ),
        ]
