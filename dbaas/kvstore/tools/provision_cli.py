"""
Provisioning CLI tool for the KV store.

This tool prepares and inspects the backing store without starting the
server:
- ensure: Create the container, database and table if absent
- ddl: Print the table DDL for the configured backend
- health: Run one health probe against a provisioned store

Usage:
    kvstore-provision ensure [--json]
    kvstore-provision ddl
    kvstore-provision health

Configuration comes from the same environment variables as the server.

Invariants:
    - ensure never modifies a resource that already exists
    - Failures cause non-zero exit code
    - JSON output is deterministic (sorted keys)

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for deployment scripts
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from ..config import ServerConfig, StoreBackend
from ..service import KvService
from ..store.base import KvStoreError
from ..store.health import HealthStatus
from ..store.provision import ProvisionReport

logger = logging.getLogger(__name__)


class ProvisionCLI:
    """CLI tool for store provisioning.

    Example:
        >>> cli = ProvisionCLI(ServerConfig.from_env())
        >>> report = asyncio.run(cli.ensure())
        >>> print(cli.format_report(report))
    """

    def __init__(self, config: ServerConfig) -> None:
        self.config = config

    async def ensure(self) -> ProvisionReport:
        """Run provisioning once and release the handle."""
        service = KvService.from_config(self.config)
        try:
            return await service.ensure_ready()
        finally:
            await service.close()

    async def health(self) -> HealthStatus:
        """Connect to the provisioned store and probe it once."""
        service = KvService.from_config(self.config)
        try:
            await service.handle.connect()
            return await service.check()
        finally:
            await service.close()

    def ddl(self) -> str:
        """Table DDL for the configured backend."""
        if self.config.store_backend == StoreBackend.SQLITE:
            from ..store.sqlite import table_ddl
        else:
            from ..store.spanner import table_ddl
        return table_ddl(self.config.table)

    def format_report(self, report: ProvisionReport, as_json: bool = False) -> str:
        if as_json:
            return json.dumps(report.to_dict(), indent=2, sort_keys=True)
        target = self.config.provision_target
        names = {
            "container": target.container_id,
            "database": target.database_id,
            "table": target.table_name,
        }
        return "\n".join(
            f"{resource} {names.get(resource, '')}: {outcome.value}"
            for resource, outcome in report.outcomes.items()
        )


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the provisioning tool."""
    parser = argparse.ArgumentParser(description="KV store provisioning tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # ensure command
    ensure_parser = subparsers.add_parser(
        "ensure", help="Create container, database and table if absent"
    )
    ensure_parser.add_argument("--json", action="store_true", help="Print the report as JSON")

    # ddl command
    subparsers.add_parser("ddl", help="Print the table DDL for the configured backend")

    # health command
    subparsers.add_parser("health", help="Probe a provisioned store once")

    args = parser.parse_args(argv)

    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(level=config.observability.log_level.upper(), stream=sys.stderr)
    cli = ProvisionCLI(config)

    if args.command == "ensure":
        try:
            report = asyncio.run(cli.ensure())
        except KvStoreError as e:
            print(f"Provisioning FAILED: {e.message}", file=sys.stderr)
            sys.exit(1)
        print(cli.format_report(report, as_json=args.json))

    elif args.command == "ddl":
        print(cli.ddl())

    elif args.command == "health":
        try:
            status = asyncio.run(cli.health())
        except KvStoreError as e:
            status = HealthStatus.unhealthy(e.message)
        print(json.dumps(status.to_dict(), sort_keys=True))
        sys.exit(0 if status.healthy else 1)


if __name__ == "__main__":
    main()
