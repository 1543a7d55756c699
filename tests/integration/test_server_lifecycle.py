"""
Integration tests for the server orchestrator.

Tests cover:
- Startup provisions before serving, shutdown releases the handle
- Provisioning failure aborts startup
- Logging setup
- Exit codes of the entry point
"""

import asyncio
import logging
import socket
from unittest.mock import AsyncMock

import json_log_formatter
import pytest
from aiohttp import ClientSession

from dbaas.kvstore.config import (
    HttpConfig,
    ObservabilityConfig,
    ServerConfig,
    SqliteConfig,
    StoreBackend,
)
from dbaas.kvstore.main import Server, main, setup_logging
from dbaas.kvstore.store.base import BackendError, ProvisionError
from dbaas.kvstore.store.sqlite import SqliteHandle


def free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def sqlite_config(data_dir, log_format="json", log_level="INFO"):
    return ServerConfig(
        store_backend=StoreBackend.SQLITE,
        sqlite=SqliteConfig(data_dir=data_dir, database="kv"),
        http=HttpConfig(host="127.0.0.1", port=free_port()),
        observability=ObservabilityConfig(log_level=log_level, log_format=log_format),
    )


async def wait_until_running(server, task):
    for _ in range(100):
        if task.done():
            task.result()
        if server._running:
            return
        await asyncio.sleep(0.05)
    raise AssertionError("Server did not start")


class TestServer:
    """Tests for Server start/stop."""

    @pytest.mark.asyncio
    async def test_start_serves_and_stops(self, tmp_path):
        config = sqlite_config(str(tmp_path / "data"))
        server = Server(config)
        task = asyncio.create_task(server.start())

        try:
            await wait_until_running(server, task)
            assert (tmp_path / "data" / "kv.db").is_file()

            url = f"http://127.0.0.1:{config.http.port}/health"
            async with ClientSession() as session:
                async with session.get(url) as resp:
                    assert resp.status == 200
                    assert await resp.json() == {"status": "healthy"}
        finally:
            server.request_shutdown()
            await task
            await server.stop()

        assert server.service is None
        assert not server._running

    @pytest.mark.asyncio
    async def test_provision_failure_aborts_startup(self, tmp_path):
        blocker = tmp_path / "data"
        blocker.write_text("not a directory")
        server = Server(sqlite_config(str(blocker)))

        with pytest.raises(ProvisionError) as exc_info:
            await server.start()

        assert exc_info.value.step == "container"
        assert server.service is None


class TestSetupLogging:
    """Tests for setup_logging."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    def test_json_format(self, tmp_path):
        setup_logging(sqlite_config(str(tmp_path)))

        (handler,) = logging.getLogger().handlers
        assert isinstance(handler.formatter, json_log_formatter.JSONFormatter)

    def test_text_format_and_level(self, tmp_path):
        config = sqlite_config(str(tmp_path), log_format="text", log_level="DEBUG")

        setup_logging(config)

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert not isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)


class TestMain:
    """Tests for the kvstore-server entry point."""

    @pytest.fixture(autouse=True)
    def sqlite_env(self, monkeypatch, tmp_path):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        monkeypatch.setenv("KV_STORE_BACKEND", "sqlite")
        monkeypatch.setenv("SQLITE_DATA_DIR", str(tmp_path / "data"))
        monkeypatch.setenv("SQLITE_DATABASE", "kv")
        monkeypatch.setenv("SERVICE_PORT", str(free_port()))
        monkeypatch.setenv("LOG_FORMAT", "text")
        yield tmp_path
        root.handlers = handlers
        root.setLevel(level)

    def test_provision_failure_exits_1(self, sqlite_env):
        (sqlite_env / "data").write_text("not a directory")

        with pytest.raises(SystemExit) as exc_info:
            main()

        assert exc_info.value.code == 1

    def test_connect_failure_exits_1(self, sqlite_env, monkeypatch):
        monkeypatch.setattr(
            SqliteHandle, "connect", AsyncMock(side_effect=BackendError("disk unavailable"))
        )

        with pytest.raises(SystemExit) as exc_info:
            main()

        assert exc_info.value.code == 1
        assert (sqlite_env / "data" / "kv.db").is_file()

    def test_configuration_error_exits_1(self, monkeypatch, capsys):
        monkeypatch.setenv("SERVICE_PORT", "0")

        with pytest.raises(SystemExit) as exc_info:
            main()

        assert exc_info.value.code == 1
        assert "SERVICE_PORT" in capsys.readouterr().err
