"""
Record store: single-key upsert and point read.

Values are arbitrary JSON documents. The store validates the key and the
payload before touching the backing store, then delegates to the shared
handle.

Invariants:
    - Keys are canonical lowercase UUID strings before any store access
    - created_at never changes after the first write of a key
    - updated_at is strictly later than the previous write's timestamp
    - read() returns None for a missing key, never raises for it

How to change safely:
    - Keep key normalization ahead of every handle call
    - Map handle errors to StoreError; never let BackendError escape
"""

from __future__ import annotations

import json
import logging
from typing import Any

from .base import (
    BackendError,
    BackendTimeoutError,
    InvalidInputError,
    Record,
    StoreError,
    StoreHandle,
    StoreTimeoutError,
)
from .query import QueryBuilder, normalize_key, record_from_row

logger = logging.getLogger(__name__)


def serialize_value(value: Any) -> str:
    """Serialize a JSON value for storage.

    Raises:
        InvalidInputError: If value is not representable as JSON
    """
    try:
        return json.dumps(value, allow_nan=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise InvalidInputError(f"Value is not valid JSON: {e}", "value") from e


class RecordStore:
    """Upsert and point-read of records through a shared store handle.

    Example:
        >>> records = RecordStore(handle, "kv_store", timeout=10)
        >>> key = await records.upsert("550E8400-E29B-41D4-A716-446655440000", {"a": 1})
        >>> record = await records.read(key)
        >>> record.value
        {'a': 1}
    """

    def __init__(self, handle: StoreHandle, table: str, timeout: float = 10.0) -> None:
        """Initialize the record store.

        Args:
            handle: Connected store handle
            table: Records table
            timeout: Deadline for each operation in seconds
        """
        self.handle = handle
        self.table = table
        self.timeout = timeout
        self.builder = QueryBuilder(handle.dialect, table)

    async def upsert(self, key: str, value: Any) -> str:
        """Create or replace the value stored under key.

        Args:
            key: UUID in any form uuid.UUID accepts
            value: JSON value

        Returns:
            The canonical key

        Raises:
            InvalidInputError: If key or value is malformed
            StoreTimeoutError: If the write exceeds its deadline
            StoreError: If the backing store rejects the write
        """
        canonical = normalize_key(key)
        data_json = serialize_value(value)

        try:
            created = await self.handle.upsert(self.table, canonical, data_json, self.timeout)
        except BackendTimeoutError as e:
            raise StoreTimeoutError(f"Upsert of {canonical} timed out: {e.message}", canonical) from e
        except BackendError as e:
            raise StoreError(f"Upsert of {canonical} failed: {e.message}", canonical) from e

        logger.debug(
            "Record created" if created else "Record updated",
            extra={"key": canonical, "created": created},
        )
        return canonical

    async def read(self, key: str) -> Record | None:
        """Fetch the record stored under key.

        Returns:
            The record, or None if no record exists for the key

        Raises:
            InvalidInputError: If key is malformed
            StoreTimeoutError: If the read exceeds its deadline
            StoreError: If the read fails or the stored row cannot be decoded
        """
        canonical = normalize_key(key)
        statement = self.builder.point_read(canonical)

        try:
            results = await self.handle.query([statement], self.timeout)
        except BackendTimeoutError as e:
            raise StoreTimeoutError(f"Read of {canonical} timed out: {e.message}", canonical) from e
        except BackendError as e:
            raise StoreError(f"Read of {canonical} failed: {e.message}", canonical) from e

        rows = results[0] if results else []
        if not rows:
            return None
        try:
            return record_from_row(rows[0], self.handle.dialect)
        except ValueError as e:
            raise StoreError(f"Stored record {canonical} is corrupt: {e}", canonical) from e
