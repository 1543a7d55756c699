"""
Key-value store core.

This package holds everything between the request-routing layer and the
backing store:
- Resource provisioning (container, database, table)
- Record upsert and point read
- Query construction and paginated listing
- Health probing

Backing stores:
- Cloud Spanner (production, or the Spanner emulator)
- SQLite (local development and tests)

Invariants:
    - One store handle per process, injected into every component
    - Provisioning completes before any component is used
    - Caller-supplied values reach SQL only as bound parameters

How to change safely:
    - New backends must implement the StoreHandle protocol
    - Run the integration suite against SQLite and the e2e suite against
      the Spanner emulator
"""

from .base import (
    BackendError,
    BackendTimeoutError,
    InvalidInputError,
    KvStoreError,
    ListResult,
    ProvisionError,
    QueryError,
    QueryTimeoutError,
    Record,
    StoreError,
    StoreHandle,
    StoreTimeoutError,
    create_store_handle,
)
from .health import HealthProbe, HealthStatus
from .listing import ListEngine
from .provision import (
    ProvisionOutcome,
    ProvisionReport,
    Provisioner,
    ProvisionStep,
    ProvisionTarget,
)
from .query import ListRequest, QueryBuilder, SortOrder, Statement
from .records import RecordStore
from .spanner import SpannerHandle
from .sqlite import SqliteHandle

__all__ = [
    # Protocol and types
    "StoreHandle",
    "Record",
    "ListResult",
    "Statement",
    # Errors
    "KvStoreError",
    "ProvisionError",
    "StoreError",
    "StoreTimeoutError",
    "QueryError",
    "QueryTimeoutError",
    "InvalidInputError",
    "BackendError",
    "BackendTimeoutError",
    # Components
    "Provisioner",
    "ProvisionOutcome",
    "ProvisionReport",
    "ProvisionStep",
    "ProvisionTarget",
    "RecordStore",
    "QueryBuilder",
    "ListEngine",
    "ListRequest",
    "SortOrder",
    "HealthProbe",
    "HealthStatus",
    # Implementations
    "SpannerHandle",
    "SqliteHandle",
    # Factory
    "create_store_handle",
]
