"""
List engine: filtered, sorted, paginated listing with a total count.

The page and the count are built from the same ListRequest, so they share
one WHERE clause and one set of bound prefix parameters. Both statements
go to the handle in a single call that reads one consistent snapshot.

Invariants:
    - total_count is the size of the filtered population, independent of
      limit and offset
    - Either both the page and the count are returned or the call fails
    - An offset past the end of the population yields an empty page

How to change safely:
    - Never issue the page and count statements in separate handle calls
    - Map handle errors to QueryError; never let BackendError escape
"""

from __future__ import annotations

import logging
from typing import Any

from .base import (
    BackendError,
    BackendTimeoutError,
    ListResult,
    QueryError,
    QueryTimeoutError,
    StoreHandle,
)
from .query import ListRequest, QueryBuilder, record_from_row

logger = logging.getLogger(__name__)


class ListEngine:
    """Runs list requests through a shared store handle.

    Example:
        >>> engine = ListEngine(handle, "kv_store", timeout=10)
        >>> result = await engine.list(ListRequest(prefix="55", limit=2, offset=1))
        >>> result.total_count
        5
    """

    def __init__(self, handle: StoreHandle, table: str, timeout: float = 10.0) -> None:
        self.handle = handle
        self.timeout = timeout
        self.builder = QueryBuilder(handle.dialect, table)

    async def list(self, request: ListRequest) -> ListResult:
        """Fetch one page of records and the filtered total.

        Args:
            request: Validated list parameters

        Returns:
            ListResult with the page in sort order and the filtered total

        Raises:
            QueryTimeoutError: If the call exceeds its deadline
            QueryError: If the page or the count fails
        """
        page = self.builder.page(request)
        count = self.builder.count(request)

        try:
            page_rows, count_rows = await self.handle.query([page, count], self.timeout)
        except BackendTimeoutError as e:
            raise QueryTimeoutError(f"List timed out: {e.message}") from e
        except BackendError as e:
            raise QueryError(f"List failed: {e.message}") from e

        try:
            records = [record_from_row(row, self.handle.dialect) for row in page_rows]
            total_count = _total_count(count_rows)
        except ValueError as e:
            raise QueryError(f"List returned malformed rows: {e}") from e

        logger.debug(
            "Listed records",
            extra={
                "prefix": request.prefix,
                "sort": request.sort.value,
                "limit": request.limit,
                "offset": request.offset,
                "returned": len(records),
                "total_count": total_count,
            },
        )
        return ListResult(records=records, total_count=total_count)


def _total_count(rows: list[tuple[Any, ...]]) -> int:
    if len(rows) != 1 or not rows[0]:
        raise ValueError(f"Expected one count row, got {len(rows)}")
    return int(rows[0][0])
