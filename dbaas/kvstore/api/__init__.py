"""
API module for the KV store server.

This module provides the external HTTP interface over KvService.

Invariants:
    - Handlers hold no store logic; they parse, call the service, respond
    - Provisioning has completed before the app accepts requests

How to change safely:
    - Keep response shapes stable, clients depend on them
"""

from .http_server import create_http_app

__all__ = [
    "create_http_app",
]
