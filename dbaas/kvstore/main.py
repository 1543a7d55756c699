"""
KV store server process.

Startup order:
1. Provision the container, database and table (fail fast on error)
2. Connect the shared store handle
3. Bind the HTTP listener

Run with ``kvstore-server`` or ``python -m dbaas.kvstore.main``. Every
setting comes from the environment; config.py lists them.

Invariants:
    - Nothing listens on the HTTP port until provisioning has completed
    - A provisioning or connect failure exits the process with status 1
    - On shutdown the listener closes before the store handle

How to change safely:
    - Keep provisioning ahead of the listener, load balancers probe /health
    - Exercise SIGTERM handling after touching the stop sequence
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter
from aiohttp import web

from .api import create_http_app
from .config import ServerConfig
from .service import KvService
from .store.base import KvStoreError, ProvisionError

logger = logging.getLogger(__name__)

TEXT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Client libraries that log every RPC or request at INFO
NOISY_LOGGERS = ("google", "grpc", "aiohttp.access")


def setup_logging(config: ServerConfig) -> None:
    """Install one stream handler on the root logger.

    LOG_FORMAT=json selects json_log_formatter, anything else plain text.
    """
    observability = config.observability
    if observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter(TEXT_LOG_FORMAT)

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [stream]
    root.setLevel(getattr(logging, observability.log_level.upper(), logging.INFO))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class Server:
    """Owns the KvService and the HTTP listener for one process.

    Attributes:
        config: Server configuration
        service: Opened KV service (None until start() provisions it)

    Example:
        >>> server = Server(ServerConfig.from_env())
        >>> task = asyncio.create_task(server.start())
        >>> server.request_shutdown()
        >>> await task
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        self.config = config or ServerConfig.from_env()
        self.service: KvService | None = None
        self._runner: web.AppRunner | None = None
        self._running = False
        self._stopping = asyncio.Event()

    async def start(self) -> None:
        """Provision, connect and serve until request_shutdown() is called.

        Raises:
            ProvisionError: If provisioning fails (nothing is left running)
            BackendError: If the store handle cannot connect
        """
        if self._running:
            logger.warning("start() called on a running server")
            return

        self.config.log_config()
        try:
            await self._open_service()
            await self._listen()
        except Exception as e:
            logger.error(f"KV store server failed to start: {e}", exc_info=True)
            await self.stop()
            raise

        self._running = True
        logger.info("KV store server accepting requests")
        await self._stopping.wait()

    async def _open_service(self) -> None:
        self.service = KvService.from_config(self.config)
        await self.service.open()

    async def _listen(self) -> None:
        host, port = self.config.http.host, self.config.http.port
        self._runner = web.AppRunner(create_http_app(self.service))
        await self._runner.setup()
        await web.TCPSite(self._runner, host, port).start()
        logger.info(f"HTTP listener bound to http://{host}:{port}")

    async def stop(self) -> None:
        """Close the listener, then the store handle. Safe to call twice."""
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()

        service, self.service = self.service, None
        if service is not None:
            await service.close()

        if self._running:
            self._running = False
            logger.info("KV store server stopped")

    def request_shutdown(self) -> None:
        self._stopping.set()


async def _serve(server: Server) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _on_signal, server, sig)
    try:
        await server.start()
    finally:
        await server.stop()


def _on_signal(server: Server, sig: signal.Signals) -> None:
    logger.info(f"Shutting down on {sig.name}")
    server.request_shutdown()


def main() -> None:
    """Console entry point for kvstore-server."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    try:
        asyncio.run(_serve(Server(config)))
    except ProvisionError as e:
        logger.error(f"Provisioning failed at {e.step or 'startup'}: {e.message}")
        sys.exit(1)
    except KvStoreError as e:
        logger.error(f"KV store server could not start: {e.message}", extra={"error_code": e.code})
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
