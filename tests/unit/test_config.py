"""
Unit tests for environment configuration.

Tests cover:
- Required Spanner settings
- Defaults and overrides
- Validation of numbers, ports and identifiers
- Provision targets per backend
"""

import pytest

from dbaas.kvstore.config import ServerConfig, StoreBackend

ALL_VARS = [
    "KV_STORE_BACKEND",
    "SPANNER_PROJECT",
    "SPANNER_INSTANCE",
    "SPANNER_DATABASE",
    "SPANNER_EMULATOR_HOST",
    "SPANNER_INSTANCE_CONFIG",
    "SPANNER_NODE_COUNT",
    "KV_TABLE",
    "SQLITE_DATA_DIR",
    "SQLITE_DATABASE",
    "SQLITE_BUSY_TIMEOUT_MS",
    "KV_OPERATION_TIMEOUT_SECONDS",
    "KV_PROVISION_TIMEOUT_SECONDS",
    "KV_HEALTH_TIMEOUT_SECONDS",
    "KV_MAX_WORKERS",
    "SERVICE_HOST",
    "SERVICE_PORT",
    "LOG_LEVEL",
    "LOG_FORMAT",
]


@pytest.fixture
def env(monkeypatch):
    """Clean environment with the required Spanner settings."""
    for name in ALL_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SPANNER_PROJECT", "test-project")
    monkeypatch.setenv("SPANNER_INSTANCE", "test-instance")
    monkeypatch.setenv("SPANNER_DATABASE", "test-db")
    return monkeypatch


class TestServerConfig:
    """Tests for ServerConfig.from_env."""

    def test_spanner_defaults(self, env):
        config = ServerConfig.from_env()

        assert config.store_backend is StoreBackend.SPANNER
        assert config.spanner.database_path == (
            "projects/test-project/instances/test-instance/databases/test-db"
        )
        assert config.spanner.emulator_host is None
        assert config.table == "kv_store"
        assert config.http.port == 3000
        assert config.store.operation_timeout_seconds == 10.0

    @pytest.mark.parametrize("name", ["SPANNER_PROJECT", "SPANNER_INSTANCE", "SPANNER_DATABASE"])
    def test_required_spanner_settings(self, env, name):
        env.delenv(name)

        with pytest.raises(ValueError, match=f"{name} environment variable is required"):
            ServerConfig.from_env()

    def test_emulator_host(self, env):
        env.setenv("SPANNER_EMULATOR_HOST", "localhost:9010")

        config = ServerConfig.from_env()

        assert config.spanner.emulator_host == "localhost:9010"
        assert config.spanner.instance_config_path.endswith("/instanceConfigs/emulator-config")

    def test_sqlite_backend_needs_no_spanner(self, env):
        for name in ("SPANNER_PROJECT", "SPANNER_INSTANCE", "SPANNER_DATABASE"):
            env.delenv(name)
        env.setenv("KV_STORE_BACKEND", "SQLite")
        env.setenv("SQLITE_DATA_DIR", "/tmp/kv")
        env.setenv("KV_TABLE", "docs")

        config = ServerConfig.from_env()

        assert config.store_backend is StoreBackend.SQLITE
        target = config.provision_target
        assert (target.container_id, target.database_id, target.table_name) == (
            "/tmp/kv",
            "kvstore",
            "docs",
        )

    @pytest.mark.parametrize("database", ["../..", "///", ".."])
    def test_sqlite_database_name_without_safe_characters(self, env, database):
        env.setenv("KV_STORE_BACKEND", "sqlite")
        env.setenv("SQLITE_DATA_DIR", "/tmp/kv")
        env.setenv("SQLITE_DATABASE", database)

        with pytest.raises(ValueError, match="SQLITE_DATABASE"):
            ServerConfig.from_env()

    def test_sqlite_database_name_with_unsafe_characters_is_accepted(self, env):
        env.setenv("KV_STORE_BACKEND", "sqlite")
        env.setenv("SQLITE_DATA_DIR", "/tmp/kv")
        env.setenv("SQLITE_DATABASE", "../kv")

        assert ServerConfig.from_env().sqlite.database == "../kv"

    def test_spanner_provision_target(self, env):
        target = ServerConfig.from_env().provision_target

        assert (target.container_id, target.database_id, target.table_name) == (
            "test-instance",
            "test-db",
            "kv_store",
        )

    def test_unknown_backend(self, env):
        env.setenv("KV_STORE_BACKEND", "dynamo")

        with pytest.raises(ValueError, match="Invalid KV_STORE_BACKEND"):
            ServerConfig.from_env()

    @pytest.mark.parametrize("port", ["0", "70000", "http"])
    def test_invalid_port(self, env, port):
        env.setenv("SERVICE_PORT", port)

        with pytest.raises(ValueError, match="SERVICE_PORT"):
            ServerConfig.from_env()

    @pytest.mark.parametrize(
        "name,value",
        [
            ("KV_OPERATION_TIMEOUT_SECONDS", "0"),
            ("KV_HEALTH_TIMEOUT_SECONDS", "-1"),
            ("KV_PROVISION_TIMEOUT_SECONDS", "soon"),
            ("KV_MAX_WORKERS", "0"),
            ("SPANNER_NODE_COUNT", "0"),
        ],
    )
    def test_invalid_numbers(self, env, name, value):
        env.setenv(name, value)

        with pytest.raises(ValueError, match=name):
            ServerConfig.from_env()

    def test_invalid_table_name(self, env):
        env.setenv("KV_TABLE", "kv-store")

        with pytest.raises(ValueError, match="KV_TABLE"):
            ServerConfig.from_env()

    def test_invalid_log_format(self, env):
        env.setenv("LOG_FORMAT", "xml")

        with pytest.raises(ValueError, match="LOG_FORMAT"):
            ServerConfig.from_env()

    def test_overrides(self, env):
        env.setenv("KV_OPERATION_TIMEOUT_SECONDS", "2.5")
        env.setenv("KV_MAX_WORKERS", "4")
        env.setenv("SERVICE_HOST", "127.0.0.1")
        env.setenv("SERVICE_PORT", "8080")

        config = ServerConfig.from_env()

        assert config.store.operation_timeout_seconds == 2.5
        assert config.store.max_workers == 4
        assert config.http.host == "127.0.0.1"
        assert config.http.port == 8080
