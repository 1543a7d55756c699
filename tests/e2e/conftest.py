"""
E2E test fixtures for the KV store.

These tests require a running Spanner emulator:

    docker run -p 9010:9010 -p 9020:9020 gcr.io/cloud-spanner-emulator/emulator
    SPANNER_EMULATOR_HOST=localhost:9010 KVSTORE_E2E_TESTS=1 pytest tests/e2e
"""

import os
import socket
import uuid

import pytest

from dbaas.kvstore.config import HttpConfig, ServerConfig, SpannerConfig, StoreBackend, StoreConfig
from dbaas.kvstore.service import KvService

# Skip E2E tests if not in E2E mode
E2E_ENABLED = os.environ.get("KVSTORE_E2E_TESTS", "0") == "1"

pytestmark = pytest.mark.skipif(
    not E2E_ENABLED,
    reason="E2E tests disabled. Set KVSTORE_E2E_TESTS=1 to enable."
)


def free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def emulator_host() -> str:
    host = os.environ.get("SPANNER_EMULATOR_HOST")
    if not host:
        pytest.skip("SPANNER_EMULATOR_HOST is not set")
    return host


@pytest.fixture
def server_config(emulator_host) -> ServerConfig:
    """Configuration pointing at a fresh instance on the emulator."""
    suffix = uuid.uuid4().hex[:8]
    return ServerConfig(
        store_backend=StoreBackend.SPANNER,
        spanner=SpannerConfig(
            project=os.environ.get("SPANNER_PROJECT", "test-project"),
            instance=f"kv-e2e-{suffix}",
            database=f"kv-db-{suffix}",
            emulator_host=emulator_host,
        ),
        store=StoreConfig(operation_timeout_seconds=30, provision_timeout_seconds=120),
        http=HttpConfig(host="127.0.0.1", port=free_port()),
    )


@pytest.fixture
async def service(server_config):
    """Provisioned and connected service on the emulator."""
    service = KvService.from_config(server_config)
    await service.open()
    yield service
    await service.close()
