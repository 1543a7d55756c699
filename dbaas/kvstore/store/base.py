"""
Base protocol and types for the key-value store core.

This module defines the StoreHandle protocol that every backing store must
implement, the Record and ListResult types returned to callers, and the
error taxonomy shared by the provisioner, record store, list engine and
health probe.

Invariants:
    - Exactly zero or one Record exists per key
    - created_at is assigned once by the store's commit clock
    - updated_at advances on every write and is always >= created_at
    - Handles raise only BackendError (or BackendTimeoutError); components
      translate those into StoreError / QueryError for callers

How to change safely:
    - Protocol changes require updating every handle implementation
    - New error kinds must derive from KvStoreError and carry a stable code
    - Keep Record.to_dict() stable, the HTTP layer serializes it verbatim
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from collections.abc import Callable, Sequence
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    TYPE_CHECKING,
    Any,
    Protocol,
    TypeVar,
    runtime_checkable,
)

if TYPE_CHECKING:
    from ..config import ServerConfig
    from .provision import ProvisionStep, ProvisionTarget
    from .query import QueryDialect, Statement

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KvStoreError(Exception):
    """Base exception for all key-value store errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "KV_STORE_ERROR"
        self.details = details or {}


class ProvisionError(KvStoreError):
    """Provisioning failed; the service must not start.

    Attributes:
        step: Resource kind of the failing step (container, database, table),
            or None if the steps could not be built
    """

    def __init__(self, message: str, step: str | None = None) -> None:
        super().__init__(message, code="PROVISION_ERROR", details={"step": step})
        self.step = step


class StoreError(KvStoreError):
    """Backing-store failure during a single record operation."""

    def __init__(self, message: str, key: str | None = None, code: str = "STORE_ERROR") -> None:
        super().__init__(message, code=code, details={"key": key})
        self.key = key


class StoreTimeoutError(StoreError):
    """Record operation exceeded its timeout."""

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message, key=key, code="STORE_TIMEOUT")


class QueryError(KvStoreError):
    """Backing-store failure during list or count."""

    def __init__(self, message: str, code: str = "QUERY_ERROR") -> None:
        super().__init__(message, code=code)


class QueryTimeoutError(QueryError):
    """List or count exceeded its timeout."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="QUERY_TIMEOUT")


class InvalidInputError(KvStoreError):
    """Caller supplied a malformed key, sort token, paging value or payload.

    Raised before any backing-store access.
    """

    def __init__(self, message: str, field_name: str | None = None) -> None:
        super().__init__(message, code="INVALID_INPUT", details={"field": field_name})
        self.field_name = field_name


class BackendError(KvStoreError):
    """Failure reported by a store handle."""

    def __init__(self, message: str, code: str = "BACKEND_ERROR") -> None:
        super().__init__(message, code=code)


class BackendTimeoutError(BackendError):
    """Store handle call exceeded its deadline."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="BACKEND_TIMEOUT")


@dataclass(frozen=True)
class Record:
    """One key/value/timestamps tuple.

    Attributes:
        key: Canonical 36-character UUID string
        value: Arbitrary JSON value
        created_at: Commit timestamp of the first write (UTC)
        updated_at: Commit timestamp of the latest write (UTC)
    """

    key: str
    value: Any
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary with ISO 8601 timestamps."""
        return {
            "key": self.key,
            "value": self.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class ListResult:
    """A page of records plus the size of the filtered population."""

    records: list[Record] = field(default_factory=list)
    total_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": [record.to_dict() for record in self.records],
            "total_count": self.total_count,
        }


@runtime_checkable
class StoreHandle(Protocol):
    """Protocol for the shared connection handle to a backing store.

    One handle is created at startup and shared by every component. It must
    accept concurrent outstanding calls; implementations perform no client
    side locking beyond what the backing store's client library requires.

    Timeout contract:
        Every method that crosses into the store takes a timeout in seconds
        and raises BackendTimeoutError when it expires.

    Example:
        >>> handle = SqliteHandle(SqliteConfig(data_dir="/tmp/kv"))
        >>> await handle.connect()
        >>> created = await handle.upsert("kv_store", key, '{"a": 1}', timeout=5)
    """

    @property
    @abstractmethod
    def dialect(self) -> QueryDialect:
        """SQL dialect that statements sent to this handle must use."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether connect() has completed."""
        ...

    @abstractmethod
    async def connect(self) -> None:
        """Open the handle. Provisioning must already have completed.

        Raises:
            BackendError: If the store cannot be reached
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the handle and its worker threads."""
        ...

    @abstractmethod
    async def query(
        self,
        statements: Sequence[Statement],
        timeout: float,
    ) -> list[list[tuple[Any, ...]]]:
        """Run read-only statements against one consistent snapshot.

        Args:
            statements: Statements built by QueryBuilder for this dialect
            timeout: Deadline for the whole call in seconds

        Returns:
            One list of row tuples per statement, in order

        Raises:
            BackendTimeoutError: If the deadline expires
            BackendError: For any other store failure
        """
        ...

    @abstractmethod
    async def upsert(self, table: str, key: str, data_json: str, timeout: float) -> bool:
        """Insert or replace one row, preserving created_at.

        Args:
            table: Table name
            key: Canonical key
            data_json: Serialized JSON value
            timeout: Deadline in seconds

        Returns:
            True if the row was created, False if it replaced an existing row

        Raises:
            BackendTimeoutError: If the deadline expires
            BackendError: For any other store failure
        """
        ...

    @abstractmethod
    async def ping(self, timeout: float) -> None:
        """Minimal read-only round trip.

        Raises:
            BackendTimeoutError: If the deadline expires
            BackendError: If the store is unreachable
        """
        ...

    @abstractmethod
    def provision_steps(self, target: ProvisionTarget) -> list[ProvisionStep]:
        """Ordered check-then-create steps for container, database and table."""
        ...


async def run_blocking(
    executor: Executor | None,
    func: Callable[[], T],
    timeout: float,
    operation: str,
    timeout_errors: tuple[type[BaseException], ...] = (),
) -> T:
    """Run a blocking client call on an executor with a bounded timeout.

    Args:
        executor: Executor to run on (None uses the loop default)
        func: Zero-argument callable doing the blocking work
        timeout: Deadline in seconds
        operation: Short description used in error messages
        timeout_errors: Client exception types that also mean "timed out"

    Returns:
        Whatever func returns

    Raises:
        BackendTimeoutError: On deadline expiry
        BackendError: For any exception raised by func
    """
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(loop.run_in_executor(executor, func), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise BackendTimeoutError(f"{operation} timed out after {timeout}s") from e
    except BackendError:
        raise
    except timeout_errors as e:
        raise BackendTimeoutError(f"{operation} timed out: {e}") from e
    except Exception as e:
        raise BackendError(f"{operation} failed: {e}") from e


def create_store_handle(config: ServerConfig) -> StoreHandle:
    """Factory function to create a store handle from configuration.

    Args:
        config: Server configuration

    Returns:
        Appropriate StoreHandle implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend
    from .spanner import SpannerHandle
    from .sqlite import SqliteHandle

    if config.store_backend == StoreBackend.SPANNER:
        return SpannerHandle(config.spanner, max_workers=config.store.max_workers)
    elif config.store_backend == StoreBackend.SQLITE:
        return SqliteHandle(config.sqlite, max_workers=config.store.max_workers)
    else:
        raise ValueError(f"Unsupported store backend: {config.store_backend}")
