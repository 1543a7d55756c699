"""
KV store service: the entry points called by the request-routing layer.

The service owns the single store handle and injects it into every
component at construction. Its lifecycle is the process lifecycle:

    open():  ensure_ready() -> handle.connect()
    close(): handle.close()

Invariants:
    - Provisioning runs to completion before the handle is connected
    - upsert/read/list/check are only valid between open() and close()
    - Exactly these five operations are exposed: ensure_ready, upsert,
      read, list, check

How to change safely:
    - Keep routing-layer concerns (status codes, parsing) out of here
    - New components must take the shared handle, never open their own
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .store.base import ListResult, Record, StoreHandle, create_store_handle
from .store.health import HealthProbe, HealthStatus
from .store.listing import ListEngine
from .store.provision import ProvisionReport, Provisioner, ProvisionTarget
from .store.query import ListRequest, SortOrder
from .store.records import RecordStore

if TYPE_CHECKING:
    from .config import ServerConfig

logger = logging.getLogger(__name__)


class KvService:
    """Provisioner, record store, list engine and health probe over one handle.

    Attributes:
        handle: Shared store handle
        target: Resources to provision
        records: Record store
        lister: List engine
        probe: Health probe

    Example:
        >>> service = KvService.from_config(ServerConfig.from_env())
        >>> await service.open()
        >>> key = await service.upsert(str(uuid.uuid4()), {"name": "Alice"})
        >>> (await service.read(key)).value
        {'name': 'Alice'}
        >>> await service.close()
    """

    def __init__(
        self,
        handle: StoreHandle,
        target: ProvisionTarget,
        operation_timeout: float = 10.0,
        provision_timeout: float = 300.0,
        health_timeout: float = 2.0,
    ) -> None:
        """Initialize the service.

        Args:
            handle: Store handle shared by all components
            target: Container, database and table to provision and use
            operation_timeout: Deadline for upsert, read and list
            provision_timeout: Deadline for each provisioning call
            health_timeout: Deadline for the health round trip
        """
        self.handle = handle
        self.target = target
        self.provisioner = Provisioner(handle.provision_steps, step_timeout=provision_timeout)
        self.records = RecordStore(handle, target.table_name, timeout=operation_timeout)
        self.lister = ListEngine(handle, target.table_name, timeout=operation_timeout)
        self.probe = HealthProbe(handle, timeout=health_timeout)

    @classmethod
    def from_config(cls, config: ServerConfig) -> KvService:
        """Create a service and its handle from server configuration."""
        return cls(
            handle=create_store_handle(config),
            target=config.provision_target,
            operation_timeout=config.store.operation_timeout_seconds,
            provision_timeout=config.store.provision_timeout_seconds,
            health_timeout=config.store.health_timeout_seconds,
        )

    async def ensure_ready(self) -> ProvisionReport:
        """Provision the container, database and table.

        Raises:
            ProvisionError: If any step fails
        """
        return await self.provisioner.ensure_ready(self.target)

    async def open(self) -> ProvisionReport:
        """Provision, then connect the shared handle.

        Raises:
            ProvisionError: If provisioning fails
            BackendError: If the handle cannot connect
        """
        report = await self.ensure_ready()
        await self.handle.connect()
        logger.info("KV service ready", extra={"table": self.target.table_name})
        return report

    async def close(self) -> None:
        await self.handle.close()

    async def upsert(self, key: str, value: Any) -> str:
        """Create or replace a record. Returns the canonical key."""
        return await self.records.upsert(key, value)

    async def read(self, key: str) -> Record | None:
        """Fetch a record, or None if absent."""
        return await self.records.read(key)

    async def list(
        self,
        request: ListRequest | None = None,
        *,
        prefix: str | None = None,
        sort: SortOrder | str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> ListResult:
        """List records.

        Either pass a ListRequest or the individual parameters; a string
        sort is parsed as a sort token.

        Raises:
            InvalidInputError: For a bad sort token or paging value
            QueryError: If the page or count fails
        """
        if request is None:
            if not isinstance(sort, SortOrder):
                sort = SortOrder.parse(sort)
            request = ListRequest(
                prefix=prefix,
                sort=sort,
                limit=limit,
                offset=0 if offset is None else offset,
            )
        return await self.lister.list(request)

    async def check(self) -> HealthStatus:
        """Probe the backing store. Never raises."""
        return await self.probe.check()
