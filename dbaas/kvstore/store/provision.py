"""
Resource provisioning for the key-value store.

Before the service accepts traffic, the container (Spanner instance or
SQLite data directory), the database and the kv_store table must exist.
Provisioning runs each step as check-then-create:

    container -> database -> table

Invariants:
    - An existence check always precedes a creation attempt
    - A resource found present is never re-created or modified
    - "Already exists" from a creation call counts as success
    - Any other failure aborts provisioning with ProvisionError
    - Re-running from step 1 after a partial failure is always safe

How to change safely:
    - New resources must be appended as steps with the same contract
    - Keep creation calls idempotent (treat AlreadyExists as success)
    - Do not add retries here; deployment decides retry policy
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Executor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .base import BackendError, BackendTimeoutError, ProvisionError, run_blocking

logger = logging.getLogger(__name__)


class ProvisionOutcome(Enum):
    """Result of one provisioning step."""

    CREATED = "created"
    ALREADY_EXISTED = "already existed"


@dataclass(frozen=True)
class ProvisionTarget:
    """Names of the resources to provision.

    Attributes:
        container_id: Spanner instance id (or SQLite data directory)
        database_id: Database id (or SQLite database file stem)
        table_name: Table holding the records
    """

    container_id: str
    database_id: str
    table_name: str


@dataclass
class ProvisionStep:
    """One check-then-create step.

    Attributes:
        resource: Resource kind ("container", "database", "table")
        name: Fully qualified resource name, for logs
        exists: Blocking callable returning whether the resource exists
        create: Blocking callable creating the resource and waiting for it
        already_exists: Predicate recognising "already exists" errors from create
    """

    resource: str
    name: str
    exists: Callable[[], bool]
    create: Callable[[], None]
    already_exists: Callable[[BaseException], bool] = field(default=lambda exc: False)


@dataclass
class ProvisionReport:
    """Outcome of each step, in execution order."""

    outcomes: dict[str, ProvisionOutcome] = field(default_factory=dict)

    @property
    def created(self) -> list[str]:
        return [r for r, o in self.outcomes.items() if o is ProvisionOutcome.CREATED]

    @property
    def already_existed(self) -> list[str]:
        return [r for r, o in self.outcomes.items() if o is ProvisionOutcome.ALREADY_EXISTED]

    def to_dict(self) -> dict[str, Any]:
        return {resource: outcome.value for resource, outcome in self.outcomes.items()}


class Provisioner:
    """Runs provisioning steps in order, single-threaded, once at startup.

    Each blocking step call runs on an executor with a bounded timeout so a
    hung admin call fails provisioning instead of hanging startup.

    Example:
        >>> provisioner = Provisioner(handle.provision_steps, step_timeout=300)
        >>> report = await provisioner.ensure_ready(target)
        >>> report.to_dict()
        {'container': 'already existed', 'database': 'already existed', 'table': 'created'}
    """

    def __init__(
        self,
        steps_for: Callable[[ProvisionTarget], list[ProvisionStep]],
        step_timeout: float = 300.0,
        executor: Executor | None = None,
    ) -> None:
        """Initialize the provisioner.

        Args:
            steps_for: Builds the ordered steps for a target
            step_timeout: Timeout for each existence check and creation call
            executor: Executor for blocking calls (loop default if None)
        """
        self._steps_for = steps_for
        self.step_timeout = step_timeout
        self._executor = executor

    async def ensure_ready(self, target: ProvisionTarget) -> ProvisionReport:
        """Ensure every resource of the target exists.

        Args:
            target: Resources to provision

        Returns:
            ProvisionReport with one outcome per resource

        Raises:
            ProvisionError: On any unrecoverable failure or timeout
        """
        logger.info(
            "Starting provisioning checks",
            extra={
                "container": target.container_id,
                "database": target.database_id,
                "table": target.table_name,
            },
        )

        try:
            steps = self._steps_for(target)
        except Exception as e:
            # e.g. the Spanner client cannot find credentials
            raise ProvisionError(f"Provisioning could not start: {e}") from e

        report = ProvisionReport()
        for step in steps:
            try:
                outcome = await self._run_step(step)
            except BackendTimeoutError as e:
                raise ProvisionError(
                    f"Provisioning {step.resource} {step.name} timed out: {e.message}",
                    step=step.resource,
                ) from e
            except BackendError as e:
                raise ProvisionError(
                    f"Provisioning {step.resource} {step.name} failed: {e.message}",
                    step=step.resource,
                ) from e

            report.outcomes[step.resource] = outcome
            logger.info(
                f"{step.resource.capitalize()} {outcome.value}: {step.name}",
                extra={
                    "resource": step.resource,
                    "resource_name": step.name,
                    "outcome": outcome.value,
                },
            )

        logger.info("Provisioning complete", extra=report.to_dict())
        return report

    async def _run_step(self, step: ProvisionStep) -> ProvisionOutcome:
        exists = await run_blocking(
            self._executor,
            step.exists,
            self.step_timeout,
            f"check {step.resource}",
        )
        if exists:
            return ProvisionOutcome.ALREADY_EXISTED

        logger.info(f"{step.resource.capitalize()} not found, creating: {step.name}")

        def create() -> ProvisionOutcome:
            try:
                step.create()
            except Exception as e:
                if step.already_exists(e):
                    logger.info(f"{step.resource.capitalize()} created concurrently: {step.name}")
                    return ProvisionOutcome.ALREADY_EXISTED
                raise
            return ProvisionOutcome.CREATED

        return await run_blocking(
            self._executor,
            create,
            self.step_timeout,
            f"create {step.resource}",
        )
