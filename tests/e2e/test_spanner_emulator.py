"""
End-to-end tests against the Cloud Spanner emulator.

Tests cover:
- Provisioning a fresh instance, database and table, then re-running
- Commit-timestamp semantics of upsert
- Listing with prefix, sort and pagination
- Concurrent upserts to one key
- The full HTTP server
"""

import asyncio
import os
import uuid

import httpx
import pytest

from dbaas.kvstore.main import Server
from dbaas.kvstore.service import KvService

# Skip if not in E2E mode
E2E_ENABLED = os.environ.get("KVSTORE_E2E_TESTS", "0") == "1"
pytestmark = pytest.mark.skipif(
    not E2E_ENABLED, reason="E2E tests disabled. Set KVSTORE_E2E_TESTS=1 to enable."
)

KEYS = [f"abc0000{i}-0000-4000-8000-000000000000" for i in range(1, 4)] + [
    f"d000000{i}-0000-4000-8000-000000000000" for i in range(4, 6)
]


class TestProvisioning:
    """Provisioning against the emulator."""

    @pytest.mark.asyncio
    async def test_fresh_then_rerun(self, server_config):
        service = KvService.from_config(server_config)
        try:
            first = await service.ensure_ready()
            second = await service.ensure_ready()
        finally:
            await service.close()

        assert first.created == ["container", "database", "table"]
        assert second.already_existed == ["container", "database", "table"]


class TestRecords:
    """Upsert and read with commit timestamps."""

    @pytest.mark.asyncio
    async def test_replace_preserves_created_at(self, service):
        key = str(uuid.uuid4())

        await service.upsert(key, {"v": 1})
        first = await service.read(key)
        await service.upsert(key, {"v": 2})
        second = await service.read(key)

        assert second.value == {"v": 2}
        assert second.created_at == first.created_at
        assert second.updated_at > first.updated_at

    @pytest.mark.asyncio
    async def test_missing_key(self, service):
        assert await service.read(str(uuid.uuid4())) is None

    @pytest.mark.asyncio
    async def test_concurrent_upserts_same_key(self, service):
        key = str(uuid.uuid4())

        await asyncio.gather(*(service.upsert(key, {"w": i}) for i in range(5)))

        record = await service.read(key)
        assert record.value["w"] in range(5)
        assert record.created_at < record.updated_at


class TestListing:
    """Listing with the Spanner dialect."""

    @pytest.fixture
    async def populated(self, service):
        for i, key in enumerate(KEYS):
            await service.upsert(key, {"n": i})
        return service

    @pytest.mark.asyncio
    async def test_defaults(self, populated):
        result = await populated.list()

        assert [r.key for r in result.records] == KEYS
        assert result.total_count == 5

    @pytest.mark.asyncio
    async def test_prefix_and_paging(self, populated):
        result = await populated.list(prefix="abc", limit=1, offset=1)

        assert [r.key for r in result.records] == [KEYS[1]]
        assert result.total_count == 3

    @pytest.mark.asyncio
    async def test_offset_only(self, populated):
        result = await populated.list(offset=3)

        assert [r.key for r in result.records] == KEYS[3:]

    @pytest.mark.asyncio
    async def test_like_wildcards_are_literal(self, populated):
        result = await populated.list(prefix="a_c")

        assert result.total_count == 0

    @pytest.mark.asyncio
    async def test_created_desc(self, populated):
        result = await populated.list(sort="created_desc")

        assert [r.key for r in result.records] == list(reversed(KEYS))


class TestHttpServer:
    """The full server over HTTP."""

    @pytest.mark.asyncio
    async def test_server_flow(self, server_config):
        server = Server(server_config)
        task = asyncio.create_task(server.start())
        base_url = f"http://{server_config.http.host}:{server_config.http.port}"

        try:
            async with httpx.AsyncClient(base_url=base_url, timeout=30) as client:
                for _ in range(120):
                    if task.done():
                        task.result()
                    try:
                        health = await client.get("/health")
                        break
                    except httpx.TransportError:
                        await asyncio.sleep(0.5)
                else:
                    pytest.fail("Server did not start")

                assert health.status_code == 200

                key = str(uuid.uuid4())
                put = await client.put(f"/kv/{key}", json={"hello": "world"})
                assert put.status_code == 200

                got = await client.get(f"/kv/{key}")
                assert got.json() == {"id": key, "data": {"hello": "world"}}

                listed = await client.get("/kv", params={"prefix": key[:8]})
                assert listed.json()["total_count"] == 1
        finally:
            server.request_shutdown()
            await task
            await server.stop()
