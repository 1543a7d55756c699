"""
HTTP server for the KV store.

This module is thin plumbing over KvService: it parses paths, query
strings and bodies, calls the service and maps results and errors to
HTTP responses. All store logic lives in the core.

Routes:
    PUT /kv/{id}    Store a JSON document      -> {"id": ...}
    GET /kv/{id}    Retrieve a JSON document   -> {"id": ..., "data": ...}
    GET /kv         List documents             -> {"data": [...], "total_count": n}
    GET /health     Probe the backing store    -> {"status": "healthy"}

Invariants:
    - Client-caused failures are 4xx, store-caused failures are 5xx
    - Every error body has "error" and "error_code"
    - JSON request/response format

How to change safely:
    - Add new error kinds to _STATUS_BY_ERROR before raising them
    - Version the API if breaking changes are needed
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from aiohttp import web

from ..store.base import (
    InvalidInputError,
    KvStoreError,
    QueryTimeoutError,
    StoreTimeoutError,
)
from ..store.query import ListRequest, normalize_key

if TYPE_CHECKING:
    from ..service import KvService

logger = logging.getLogger(__name__)

# Checked in order, so subclasses come before their bases
_STATUS_BY_ERROR: tuple[tuple[type[KvStoreError], int], ...] = (
    (InvalidInputError, 400),
    (StoreTimeoutError, 504),
    (QueryTimeoutError, 504),
    (KvStoreError, 500),
)


def status_for(error: KvStoreError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    return 500


def error_response(message: str, code: str, status: int) -> web.Response:
    return web.json_response({"error": message, "error_code": code}, status=status)


def create_http_app(service: KvService) -> web.Application:
    """Create the HTTP application.

    Args:
        service: Opened KvService

    Returns:
        aiohttp Application instance
    """

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except KvStoreError as e:
            status = status_for(e)
            if status >= 500:
                logger.error(
                    f"Store error on {request.method} {request.path}: {e.message}",
                    extra={"error_code": e.code},
                )
            return error_response(e.message, e.code, status)
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return error_response(str(e), "INTERNAL", 500)

    app = web.Application(middlewares=[error_middleware])

    app.router.add_put("/kv/{id}", lambda r: handle_put(r, service))
    app.router.add_get("/kv/{id}", lambda r: handle_get(r, service))
    app.router.add_get("/kv", lambda r: handle_list(r, service))
    app.router.add_get("/health", lambda r: handle_health(r, service))

    return app


async def handle_put(request: web.Request, service: KvService) -> web.Response:
    """Handle PUT /kv/{id} - Store a JSON document."""
    try:
        data = await request.json()
    except ValueError as e:
        # JSONDecodeError, or UnicodeDecodeError for a body that is not UTF-8
        return error_response(f"JSON parse error: {e}", "INVALID_INPUT", 400)

    key = await service.upsert(request.match_info["id"], data)
    return web.json_response({"id": key})


async def handle_get(request: web.Request, service: KvService) -> web.Response:
    """Handle GET /kv/{id} - Retrieve a JSON document."""
    key = request.match_info["id"]
    record = await service.read(key)

    if record is None:
        return error_response(f"Key not found: {normalize_key(key)}", "NOT_FOUND", 404)
    return web.json_response({"id": record.key, "data": record.value})


async def handle_list(request: web.Request, service: KvService) -> web.Response:
    """Handle GET /kv - List documents with prefix, sort and paging."""
    list_request = ListRequest.from_query(request.query)
    result = await service.list(list_request)
    return web.json_response(result.to_dict())


async def handle_health(request: web.Request, service: KvService) -> web.Response:
    """Handle GET /health - Health check."""
    status = await service.check()
    return web.json_response(status.to_dict(), status=200 if status.healthy else 503)

