"""
Health probe for the backing store.

check() runs a trivial read-only query with a short timeout. It never
raises and never provisions or mutates anything, so it is safe to call
from liveness and readiness probes as often as they like.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .base import StoreHandle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthStatus:
    """Healthy, or unhealthy with the error's description."""

    healthy: bool
    reason: str | None = None

    @classmethod
    def ok(cls) -> HealthStatus:
        return cls(healthy=True)

    @classmethod
    def unhealthy(cls, reason: str) -> HealthStatus:
        return cls(healthy=False, reason=reason)

    def to_dict(self) -> dict[str, Any]:
        if self.healthy:
            return {"status": "healthy"}
        return {"status": "unhealthy", "error": self.reason}


class HealthProbe:
    """Minimal round trip against the shared store handle."""

    def __init__(self, handle: StoreHandle, timeout: float = 2.0) -> None:
        self.handle = handle
        self.timeout = timeout

    async def check(self) -> HealthStatus:
        if not self.handle.is_connected:
            return HealthStatus.unhealthy("Store handle is not connected")
        try:
            await self.handle.ping(self.timeout)
        except Exception as e:
            logger.warning(f"Health check failed: {e}")
            return HealthStatus.unhealthy(str(e) or type(e).__name__)
        return HealthStatus.ok()
