"""
Cloud Spanner store handle.

This module provides the production backing store. It wraps the
google-cloud-spanner client, which is synchronous, and runs every client
call on a bounded thread pool so the event loop is never blocked.

The client library detects the SPANNER_EMULATOR_HOST environment variable
and talks to the emulator when it is set, production Spanner otherwise.

Invariants:
    - One Client / Database per process, shared by all components
    - created_at and updated_at are Spanner commit timestamps
    - Upsert reads the row inside a read-write transaction, so concurrent
      writers to one key are serialized by Spanner (abort and retry)
    - Page and count statements run in one multi-use read-only snapshot

How to change safely:
    - Test against the emulator before production
    - Keep KV_TABLE_DDL identical to the documented schema
    - Do not move the existence read out of the upsert transaction
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

from google.api_core import exceptions as api_exceptions
from google.cloud import spanner
from google.cloud.spanner_admin_database_v1 import DatabaseDialect
from google.cloud.spanner_v1 import COMMIT_TIMESTAMP, KeySet, param_types

from .base import BackendError, run_blocking
from .provision import ProvisionStep, ProvisionTarget
from .query import SPANNER_DIALECT, QueryDialect, Statement, validate_identifier

if TYPE_CHECKING:
    from ..config import SpannerConfig

logger = logging.getLogger(__name__)

KV_TABLE_DDL = """
CREATE TABLE {table} (
    id STRING(36) NOT NULL,
    data JSON NOT NULL,
    created_at TIMESTAMP NOT NULL OPTIONS (allow_commit_timestamp=true),
    updated_at TIMESTAMP NOT NULL OPTIONS (allow_commit_timestamp=true)
) PRIMARY KEY (id)
""".strip()

_PARAM_TYPES = {
    "STRING": param_types.STRING,
    "INT64": param_types.INT64,
}

_TIMEOUT_ERRORS = (api_exceptions.DeadlineExceeded,)

CONNECT_TIMEOUT_SECONDS = 60.0


def table_ddl(table: str) -> str:
    """CREATE TABLE statement for the records table."""
    return KV_TABLE_DDL.format(table=validate_identifier(table))


def is_already_exists(exc: BaseException) -> bool:
    """Whether a creation error means the resource is already there."""
    if isinstance(exc, api_exceptions.AlreadyExists):
        return True
    # Concurrent DDL for the same table reports a duplicate schema name
    if isinstance(exc, api_exceptions.FailedPrecondition):
        return "Duplicate name in schema" in str(exc)
    return False


class SpannerHandle:
    """Cloud Spanner implementation of the StoreHandle protocol.

    Attributes:
        config: Spanner configuration

    Thread safety:
        The Spanner Database object and its session pool are thread-safe;
        concurrent calls each check out their own session.

    Example:
        >>> handle = SpannerHandle(SpannerConfig(project="p", instance="i", database="d"))
        >>> await handle.connect()
        >>> rows = await handle.query([Statement("SELECT 1")], timeout=5)
    """

    def __init__(self, config: SpannerConfig, max_workers: int = 16) -> None:
        """Initialize the handle.

        Args:
            config: Spanner configuration
            max_workers: Threads available for blocking client calls
        """
        self.config = config
        self.max_workers = max_workers
        self._client: Any = None
        self._database: Any = None
        self._executor: ThreadPoolExecutor | None = None
        self._connected = False

    @property
    def dialect(self) -> QueryDialect:
        return SPANNER_DIALECT

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def client(self) -> Any:
        """The Spanner client, created on first use (no network I/O)."""
        if self._client is None:
            self._client = spanner.Client(project=self.config.project)
        return self._client

    async def connect(self) -> None:
        """Open the database handle.

        Raises:
            BackendError: If the client cannot be created
        """
        if self._connected:
            return

        if self.config.emulator_host:
            logger.info(f"Connecting to Spanner emulator at: {self.config.emulator_host}")
        else:
            logger.info("Connecting to production Spanner")

        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="spanner"
        )

        def open_database() -> Any:
            instance = self.client.instance(self.config.instance)
            return instance.database(self.config.database)

        try:
            self._database = await run_blocking(
                self._executor, open_database, CONNECT_TIMEOUT_SECONDS, "open Spanner database"
            )
        except BackendError:
            self._executor.shutdown(wait=False)
            self._executor = None
            raise

        self._connected = True
        logger.info(f"Successfully connected to Spanner database: {self.config.database_path}")

    async def close(self) -> None:
        """Release the database handle and worker threads."""
        if self._executor is not None:
            self._executor.shutdown(wait=False)
        if self._client is not None:
            try:
                self._client.close()
            except Exception as e:
                logger.warning(f"Error closing Spanner client: {e}")
        self._executor = None
        self._database = None
        self._client = None
        self._connected = False
        logger.info("Spanner connection closed")

    def _require_database(self) -> Any:
        if not self._connected or self._database is None:
            raise BackendError("Not connected to Spanner")
        return self._database

    async def query(
        self,
        statements: Sequence[Statement],
        timeout: float,
    ) -> list[list[tuple[Any, ...]]]:
        """Run read-only statements in one multi-use snapshot."""
        database = self._require_database()

        def run() -> list[list[tuple[Any, ...]]]:
            results = []
            with database.snapshot(multi_use=len(statements) > 1) as snapshot:
                if len(statements) > 1:
                    snapshot.begin()
                for statement in statements:
                    types = {name: _PARAM_TYPES[kind] for name, kind in statement.types.items()}
                    rows = snapshot.execute_sql(
                        statement.sql,
                        params=statement.params or None,
                        param_types=types or None,
                        timeout=timeout,
                    )
                    results.append([tuple(row) for row in rows])
            return results

        return await run_blocking(
            self._executor, run, timeout, "Spanner query", timeout_errors=_TIMEOUT_ERRORS
        )

    async def upsert(self, table: str, key: str, data_json: str, timeout: float) -> bool:
        """Insert or replace a row inside a read-write transaction.

        The existence read takes a lock on the key, so of two concurrent
        writers one aborts and is retried by the client after the other
        commits; created_at is written only on the insert path.
        """
        database = self._require_database()

        def write(transaction: Any) -> bool:
            existing = list(
                transaction.read(table, columns=("id",), keyset=KeySet(keys=[[key]]))
            )
            if existing:
                transaction.update(
                    table,
                    columns=("id", "data", "updated_at"),
                    values=[(key, data_json, COMMIT_TIMESTAMP)],
                )
                return False
            transaction.insert(
                table,
                columns=("id", "data", "created_at", "updated_at"),
                values=[(key, data_json, COMMIT_TIMESTAMP, COMMIT_TIMESTAMP)],
            )
            return True

        created = await run_blocking(
            self._executor,
            lambda: database.run_in_transaction(write, timeout_secs=timeout),
            timeout,
            "Spanner upsert",
            timeout_errors=_TIMEOUT_ERRORS,
        )
        logger.debug("Upserted document", extra={"key": key, "created": created})
        return created

    async def ping(self, timeout: float) -> None:
        """Run SELECT 1."""
        results = await self.query([Statement("SELECT 1")], timeout)
        if not results or not results[0]:
            raise BackendError("Health check query returned no results")

    def provision_steps(self, target: ProvisionTarget) -> list[ProvisionStep]:
        """Instance, database and table steps for Spanner."""
        client = self.client
        project_path = self.config.project_path
        instance_path = f"{project_path}/instances/{target.container_id}"
        database_path = f"{instance_path}/databases/{target.database_id}"

        instance = client.instance(
            target.container_id,
            configuration_name=self.config.instance_config_path,
            display_name=f"{target.container_id} instance",
            node_count=self.config.node_count,
        )
        database = instance.database(
            target.database_id,
            database_dialect=DatabaseDialect.GOOGLE_STANDARD_SQL,
        )

        def create_instance() -> None:
            instance.create().result()

        def create_database() -> None:
            database.create().result()

        def create_table() -> None:
            database.update_ddl([table_ddl(target.table_name)]).result()

        return [
            ProvisionStep(
                resource="container",
                name=instance_path,
                exists=instance.exists,
                create=create_instance,
                already_exists=is_already_exists,
            ),
            ProvisionStep(
                resource="database",
                name=database_path,
                exists=database.exists,
                create=create_database,
                already_exists=is_already_exists,
            ),
            ProvisionStep(
                resource="table",
                name=f"{database_path}/tables/{target.table_name}",
                exists=database.table(target.table_name).exists,
                create=create_table,
                already_exists=is_already_exists,
            ),
        ]
