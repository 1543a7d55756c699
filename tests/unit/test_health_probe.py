"""
Unit tests for HealthProbe.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from dbaas.kvstore.store.base import BackendError, BackendTimeoutError
from dbaas.kvstore.store.health import HealthProbe, HealthStatus


@pytest.fixture
def handle():
    handle = MagicMock()
    handle.is_connected = True
    handle.ping = AsyncMock(return_value=None)
    return handle


class TestHealthProbe:
    """Tests for HealthProbe.check."""

    @pytest.mark.asyncio
    async def test_healthy(self, handle):
        status = await HealthProbe(handle, timeout=1.5).check()

        assert status == HealthStatus.ok()
        assert status.to_dict() == {"status": "healthy"}
        handle.ping.assert_awaited_once_with(1.5)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            BackendError("Spanner query failed: unavailable"),
            BackendTimeoutError("Spanner query timed out after 2s"),
            RuntimeError("unexpected"),
            asyncio.TimeoutError(),
        ],
    )
    async def test_errors_become_unhealthy(self, handle, error):
        """check() never raises."""
        handle.ping.side_effect = error

        status = await HealthProbe(handle).check()

        assert not status.healthy
        assert status.reason
        assert status.to_dict()["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_reason_carries_error_description(self, handle):
        handle.ping.side_effect = BackendError("Spanner query failed: unavailable")

        status = await HealthProbe(handle).check()

        assert status.to_dict() == {
            "status": "unhealthy",
            "error": "Spanner query failed: unavailable",
        }

    @pytest.mark.asyncio
    async def test_disconnected_handle_is_unhealthy(self, handle):
        handle.is_connected = False

        status = await HealthProbe(handle).check()

        assert not status.healthy
        handle.ping.assert_not_awaited()
