"""
Configuration management for the KV store service.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All optional settings have sensible defaults for local development
    - Spanner project, instance and database have no defaults and must be set
    - Every timeout is a positive number of seconds

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
    - Keep the environment variable names stable, deployments depend on them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from .store.provision import ProvisionTarget
from .store.query import validate_identifier
from .store.sqlite import sanitize_database_name

logger = logging.getLogger(__name__)


class StoreBackend(Enum):
    """Supported backing stores."""

    SPANNER = "spanner"
    SQLITE = "sqlite"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got '{raw}'") from None


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{raw}'") from None


@dataclass(frozen=True)
class SpannerConfig:
    """Cloud Spanner backend configuration.

    Attributes:
        project: GCP project id
        instance: Instance id (the provisioning container)
        database: Database id
        table: Table holding the records
        emulator_host: Emulator host:port, None for production Spanner
        instance_config: Placement config used when creating the instance
        node_count: Node count used when creating the instance
    """

    project: str = ""
    instance: str = ""
    database: str = ""
    table: str = "kv_store"
    emulator_host: str | None = None
    instance_config: str = "regional-us-central1"
    node_count: int = 1

    @classmethod
    def from_env(cls) -> SpannerConfig:
        """Load configuration from environment variables."""
        return cls(
            project=os.getenv("SPANNER_PROJECT", ""),
            instance=os.getenv("SPANNER_INSTANCE", ""),
            database=os.getenv("SPANNER_DATABASE", ""),
            table=os.getenv("KV_TABLE", "kv_store"),
            emulator_host=os.getenv("SPANNER_EMULATOR_HOST") or None,
            instance_config=os.getenv("SPANNER_INSTANCE_CONFIG", "regional-us-central1"),
            node_count=_env_int("SPANNER_NODE_COUNT", 1),
        )

    @property
    def project_path(self) -> str:
        return f"projects/{self.project}"

    @property
    def instance_path(self) -> str:
        return f"{self.project_path}/instances/{self.instance}"

    @property
    def database_path(self) -> str:
        return f"{self.instance_path}/databases/{self.database}"

    @property
    def instance_config_path(self) -> str:
        """Placement for new instances; the emulator only knows emulator-config."""
        config_id = "emulator-config" if self.emulator_host else self.instance_config
        return f"{self.project_path}/instanceConfigs/{config_id}"


@dataclass(frozen=True)
class SqliteConfig:
    """Local SQLite backend configuration.

    Attributes:
        data_dir: Directory holding the database file (the provisioning container)
        database: Database file stem
        table: Table holding the records
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "./data"
    database: str = "kvstore"
    table: str = "kv_store"
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> SqliteConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("SQLITE_DATA_DIR", "./data"),
            database=os.getenv("SQLITE_DATABASE", "kvstore"),
            table=os.getenv("KV_TABLE", "kv_store"),
            busy_timeout_ms=_env_int("SQLITE_BUSY_TIMEOUT_MS", 5000),
        )


@dataclass(frozen=True)
class StoreConfig:
    """Timeouts and worker pool shared by every store operation.

    Attributes:
        operation_timeout_seconds: Timeout for upsert, read, list and count
        provision_timeout_seconds: Timeout for each provisioning call
        health_timeout_seconds: Timeout for the health probe round trip
        max_workers: Threads available for blocking client calls
    """

    operation_timeout_seconds: float = 10.0
    provision_timeout_seconds: float = 300.0
    health_timeout_seconds: float = 2.0
    max_workers: int = 16

    @classmethod
    def from_env(cls) -> StoreConfig:
        """Load configuration from environment variables."""
        return cls(
            operation_timeout_seconds=_env_float("KV_OPERATION_TIMEOUT_SECONDS", 10.0),
            provision_timeout_seconds=_env_float("KV_PROVISION_TIMEOUT_SECONDS", 300.0),
            health_timeout_seconds=_env_float("KV_HEALTH_TIMEOUT_SECONDS", 2.0),
            max_workers=_env_int("KV_MAX_WORKERS", 16),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 3000

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        raw_port = os.getenv("SERVICE_PORT", "3000")
        try:
            port = int(raw_port)
        except ValueError:
            raise ValueError(
                f"SERVICE_PORT must be a valid port number (1-65535), got '{raw_port}'"
            ) from None
        return cls(host=os.getenv("SERVICE_HOST", "0.0.0.0"), port=port)


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        store_backend: Which backing store to use
        spanner: Spanner configuration (if store_backend is SPANNER)
        sqlite: SQLite configuration (if store_backend is SQLITE)
        store: Timeouts and worker pool
        http: HTTP server configuration
        observability: Logging configuration
    """

    store_backend: StoreBackend = StoreBackend.SPANNER
    spanner: SpannerConfig = field(default_factory=SpannerConfig)
    sqlite: SqliteConfig = field(default_factory=SqliteConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("KV_STORE_BACKEND", "spanner").lower()
        try:
            store_backend = StoreBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid KV_STORE_BACKEND '{backend_str}'. Must be one of: spanner, sqlite"
            ) from None

        config = cls(
            store_backend=store_backend,
            spanner=SpannerConfig.from_env(),
            sqlite=SqliteConfig.from_env(),
            store=StoreConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.store_backend == StoreBackend.SPANNER:
            for name, value in (
                ("SPANNER_PROJECT", self.spanner.project),
                ("SPANNER_INSTANCE", self.spanner.instance),
                ("SPANNER_DATABASE", self.spanner.database),
            ):
                if not value:
                    raise ValueError(f"{name} environment variable is required")
            if self.spanner.node_count < 1:
                raise ValueError("SPANNER_NODE_COUNT must be at least 1")
        elif self.store_backend == StoreBackend.SQLITE:
            if not self.sqlite.data_dir:
                raise ValueError("SQLITE_DATA_DIR is required when KV_STORE_BACKEND=sqlite")
            if not self.sqlite.database:
                raise ValueError("SQLITE_DATABASE is required when KV_STORE_BACKEND=sqlite")
            if not sanitize_database_name(self.sqlite.database):
                raise ValueError(
                    "SQLITE_DATABASE must contain letters, digits, '-' or '_', "
                    f"got '{self.sqlite.database}'"
                )

        try:
            validate_identifier(self.table)
        except ValueError:
            raise ValueError(f"KV_TABLE must be a plain identifier, got '{self.table}'") from None

        if not 1 <= self.http.port <= 65535:
            raise ValueError(f"SERVICE_PORT must be a valid port number (1-65535), got {self.http.port}")

        for name, value in (
            ("KV_OPERATION_TIMEOUT_SECONDS", self.store.operation_timeout_seconds),
            ("KV_PROVISION_TIMEOUT_SECONDS", self.store.provision_timeout_seconds),
            ("KV_HEALTH_TIMEOUT_SECONDS", self.store.health_timeout_seconds),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")
        if self.store.max_workers < 1:
            raise ValueError("KV_MAX_WORKERS must be at least 1")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"LOG_FORMAT must be 'json' or 'text', got '{self.observability.log_format}'"
            )

    @property
    def table(self) -> str:
        if self.store_backend == StoreBackend.SQLITE:
            return self.sqlite.table
        return self.spanner.table

    @property
    def provision_target(self) -> ProvisionTarget:
        """Resources the provisioner must ensure for the selected backend."""
        if self.store_backend == StoreBackend.SQLITE:
            return ProvisionTarget(
                container_id=self.sqlite.data_dir,
                database_id=self.sqlite.database,
                table_name=self.sqlite.table,
            )
        return ProvisionTarget(
            container_id=self.spanner.instance,
            database_id=self.spanner.database,
            table_name=self.spanner.table,
        )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "store_backend": self.store_backend.value,
                "spanner_emulator": self.spanner.emulator_host
                if self.store_backend == StoreBackend.SPANNER
                else None,
                "spanner_database": self.spanner.database_path
                if self.store_backend == StoreBackend.SPANNER
                else None,
                "sqlite_data_dir": self.sqlite.data_dir
                if self.store_backend == StoreBackend.SQLITE
                else None,
                "table": self.table,
                "http_bind": f"{self.http.host}:{self.http.port}",
                "operation_timeout_seconds": self.store.operation_timeout_seconds,
                "log_level": self.observability.log_level,
            },
        )
