"""
CLI tools for KV store administration.

This module provides command-line tools for:
- provision: Create and inspect the container, database and table

Invariants:
    - Tools work offline (no running server required)
    - Operations are idempotent where possible
"""

from .provision_cli import ProvisionCLI

__all__ = ["ProvisionCLI"]
