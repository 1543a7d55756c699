"""
Query construction for the key-value table.

This module builds every SQL statement the core sends to a backing store.
Statements are assembled from a closed set of fragments:

- the column projection (fixed)
- the prefix predicate (supplied by the dialect)
- the ORDER BY clause (taken from the SortOrder enumeration)
- the LIMIT/OFFSET clause (supplied by the dialect)

Invariants:
    - Caller-supplied literals are always bound parameters, never SQL text
    - Table names are validated identifiers
    - Page and count statements share the same WHERE clause and parameters
    - Every non-key sort order breaks ties on id ASC

How to change safely:
    - Add a SortOrder member only together with its column/direction
    - New dialects must keep prefix matching literal (escape or avoid patterns)
    - Keep the projection order in sync with record_from_row()
"""

from __future__ import annotations

import json
import re
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .base import InvalidInputError, Record

# Request parameters are unsigned 32-bit on the wire
MAX_PAGE_VALUE = 2**32 - 1

# Used when a dialect needs an explicit LIMIT to express "no limit"
UNBOUNDED_LIMIT = 2**63 - 1

_IDENTIFIER_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]{0,127}$")

# Characters with meaning inside a LIKE pattern (backslash is the escape)
_LIKE_SPECIAL = ("\\", "%", "_")


def validate_identifier(name: str) -> str:
    """Ensure a table name is a plain SQL identifier."""
    if not isinstance(name, str) or not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid table name: {name!r}")
    return name


def normalize_key(key: Any) -> str:
    """Parse a record key and return its canonical UUID form.

    Raises:
        InvalidInputError: If key is not a UUID
    """
    if not isinstance(key, str):
        raise InvalidInputError(f"Key must be a string, got {type(key).__name__}", "key")
    try:
        return str(uuid.UUID(key))
    except ValueError as e:
        raise InvalidInputError(
            "Invalid UUID format: expected format like "
            f"'550e8400-e29b-41d4-a716-446655440000', got '{key}'",
            "key",
        ) from e


def escape_like(literal: str) -> str:
    """Escape LIKE wildcards so the literal only matches itself."""
    escaped = literal
    for ch in _LIKE_SPECIAL:
        escaped = escaped.replace(ch, "\\" + ch)
    return escaped


class SortOrder(Enum):
    """Sort orders accepted by list()."""

    KEY_ASC = "key_asc"
    KEY_DESC = "key_desc"
    CREATED_ASC = "created_asc"
    CREATED_DESC = "created_desc"
    UPDATED_ASC = "updated_asc"
    UPDATED_DESC = "updated_desc"

    @property
    def column(self) -> str:
        return _SORT_COLUMNS[self]

    @property
    def descending(self) -> bool:
        return self.value.endswith("_desc")

    def order_by(self) -> str:
        """ORDER BY clause body, including the key tie-break."""
        clause = f"{self.column} {'DESC' if self.descending else 'ASC'}"
        if self.column != "id":
            clause += ", id ASC"
        return clause

    @classmethod
    def tokens(cls) -> list[str]:
        return [member.value for member in cls]

    @classmethod
    def parse(cls, token: str | None) -> SortOrder:
        """Parse a sort token. None selects the default (key ascending).

        Raises:
            InvalidInputError: If token is not one of the six sort tokens
        """
        if token is None:
            return cls.KEY_ASC
        try:
            return cls(token)
        except ValueError:
            raise InvalidInputError(
                f"sort must be one of: {', '.join(cls.tokens())}, got '{token}'",
                "sort",
            ) from None


_SORT_COLUMNS = {
    SortOrder.KEY_ASC: "id",
    SortOrder.KEY_DESC: "id",
    SortOrder.CREATED_ASC: "created_at",
    SortOrder.CREATED_DESC: "created_at",
    SortOrder.UPDATED_ASC: "updated_at",
    SortOrder.UPDATED_DESC: "updated_at",
}


def _check_page_value(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"{name} must be a non-negative integer", name)
    if value < 0 or value > MAX_PAGE_VALUE:
        raise InvalidInputError(f"{name} must be between 0 and {MAX_PAGE_VALUE}, got {value}", name)


def _parse_page_value(name: str, raw: str | None) -> int | None:
    if raw is None:
        return None
    text = raw.strip()
    if not text.isdigit() or not text.isascii():
        raise InvalidInputError(f"{name} must be a non-negative integer, got '{raw}'", name)
    return int(text)


@dataclass(frozen=True)
class ListRequest:
    """Validated list parameters.

    Attributes:
        prefix: Literal key prefix to filter on (None = no filter)
        sort: Sort order (default key ascending)
        limit: Maximum records to return (None = all matching records)
        offset: Records to skip
    """

    prefix: str | None = None
    sort: SortOrder = SortOrder.KEY_ASC
    limit: int | None = None
    offset: int = 0

    def __post_init__(self) -> None:
        if self.prefix is not None and not isinstance(self.prefix, str):
            raise InvalidInputError("prefix must be a string", "prefix")
        if not isinstance(self.sort, SortOrder):
            raise InvalidInputError(
                f"sort must be one of: {', '.join(SortOrder.tokens())}", "sort"
            )
        if self.limit is not None:
            _check_page_value("limit", self.limit)
        _check_page_value("offset", self.offset)

    @classmethod
    def from_query(cls, params: Mapping[str, str]) -> ListRequest:
        """Build a request from raw query-string parameters.

        Raises:
            InvalidInputError: For an unknown sort token or a malformed number
        """
        limit = _parse_page_value("limit", params.get("limit"))
        offset = _parse_page_value("offset", params.get("offset"))
        return cls(
            prefix=params.get("prefix"),
            sort=SortOrder.parse(params.get("sort")),
            limit=limit,
            offset=offset or 0,
        )


@dataclass(frozen=True)
class Statement:
    """A SQL statement with bound parameters.

    Attributes:
        sql: Statement text in the handle's dialect
        params: Parameter values by name
        types: Logical parameter types by name ("STRING" or "INT64")
    """

    sql: str
    params: dict[str, Any] = field(default_factory=dict)
    types: dict[str, str] = field(default_factory=dict)


class QueryDialect:
    """Dialect-specific SQL fragments.

    Subclasses only return fixed text around parameter placeholders; they
    never see raw caller input except to transform a bound parameter value.
    """

    name = "generic"

    def placeholder(self, name: str) -> str:
        raise NotImplementedError

    def json_column(self, column: str) -> str:
        """Expression projecting a JSON column as serialized text."""
        return column

    def prefix_predicate(self, column: str) -> str:
        raise NotImplementedError

    def prefix_param(self, prefix: str) -> str:
        return prefix

    def limit_offset(self, limit: int | None, offset: int) -> tuple[str, dict[str, int]]:
        raise NotImplementedError

    def decode_timestamp(self, value: Any) -> datetime:
        raise NotImplementedError


class SpannerDialect(QueryDialect):
    """GoogleSQL as spoken by Cloud Spanner."""

    name = "spanner"

    def placeholder(self, name: str) -> str:
        return f"@{name}"

    def json_column(self, column: str) -> str:
        return f"TO_JSON_STRING({column})"

    def prefix_predicate(self, column: str) -> str:
        return f"{column} LIKE @prefix"

    def prefix_param(self, prefix: str) -> str:
        # Backslash is GoogleSQL's LIKE escape character
        return escape_like(prefix) + "%"

    def limit_offset(self, limit: int | None, offset: int) -> tuple[str, dict[str, int]]:
        # Spanner requires LIMIT whenever OFFSET is present
        if limit is None and offset == 0:
            return "", {}
        params = {"limit": UNBOUNDED_LIMIT if limit is None else limit}
        if offset == 0:
            return " LIMIT @limit", params
        params["offset"] = offset
        return " LIMIT @limit OFFSET @offset", params

    def decode_timestamp(self, value: Any) -> datetime:
        if not isinstance(value, datetime):
            raise ValueError(f"Expected TIMESTAMP value, got {type(value).__name__}")
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


# Stored as fixed-width text so lexical order equals time order
SQLITE_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def format_sqlite_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(SQLITE_TIMESTAMP_FORMAT)


class SqliteDialect(QueryDialect):
    """SQLite, used by the local single-file store."""

    name = "sqlite"

    def placeholder(self, name: str) -> str:
        return f":{name}"

    def prefix_predicate(self, column: str) -> str:
        # Binary comparison instead of LIKE: case-sensitive and pattern-free
        return f"substr({column}, 1, length(:prefix)) = :prefix"

    def limit_offset(self, limit: int | None, offset: int) -> tuple[str, dict[str, int]]:
        if limit is None and offset == 0:
            return "", {}
        return " LIMIT :limit OFFSET :offset", {
            "limit": -1 if limit is None else limit,
            "offset": offset,
        }

    def decode_timestamp(self, value: Any) -> datetime:
        if not isinstance(value, str):
            raise ValueError(f"Expected timestamp text, got {type(value).__name__}")
        return datetime.strptime(value, SQLITE_TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


SPANNER_DIALECT = SpannerDialect()
SQLITE_DIALECT = SqliteDialect()


class QueryBuilder:
    """Builds statements against the key-value table for one dialect.

    Example:
        >>> builder = QueryBuilder(SPANNER_DIALECT, "kv_store")
        >>> stmt = builder.page(ListRequest(prefix="ab", limit=10))
        >>> stmt.sql
        'SELECT id, TO_JSON_STRING(data) AS data, created_at, updated_at FROM kv_store WHERE id LIKE @prefix ORDER BY id ASC LIMIT @limit'
    """

    def __init__(self, dialect: QueryDialect, table: str) -> None:
        self.dialect = dialect
        self.table = validate_identifier(table)

    def _columns(self) -> str:
        return f"id, {self.dialect.json_column('data')} AS data, created_at, updated_at"

    def _where(self, request: ListRequest) -> tuple[str, dict[str, Any], dict[str, str]]:
        if request.prefix is None:
            return "", {}, {}
        return (
            f" WHERE {self.dialect.prefix_predicate('id')}",
            {"prefix": self.dialect.prefix_param(request.prefix)},
            {"prefix": "STRING"},
        )

    def point_read(self, key: str) -> Statement:
        return Statement(
            sql=(
                f"SELECT {self._columns()} FROM {self.table} "
                f"WHERE id = {self.dialect.placeholder('id')}"
            ),
            params={"id": key},
            types={"id": "STRING"},
        )

    def page(self, request: ListRequest) -> Statement:
        where, params, types = self._where(request)
        paging, paging_params = self.dialect.limit_offset(request.limit, request.offset)
        params.update(paging_params)
        types.update({name: "INT64" for name in paging_params})
        return Statement(
            sql=(
                f"SELECT {self._columns()} FROM {self.table}{where} "
                f"ORDER BY {request.sort.order_by()}{paging}"
            ),
            params=params,
            types=types,
        )

    def count(self, request: ListRequest) -> Statement:
        where, params, types = self._where(request)
        return Statement(
            sql=f"SELECT COUNT(*) AS total_count FROM {self.table}{where}",
            params=params,
            types=types,
        )

    def ping(self) -> Statement:
        return Statement(sql="SELECT 1")


def record_from_row(row: tuple[Any, ...], dialect: QueryDialect) -> Record:
    """Convert a (id, data, created_at, updated_at) row into a Record.

    Raises:
        ValueError: If the stored JSON or timestamps cannot be decoded
    """
    key, data, created_at, updated_at = row
    if not isinstance(data, str):
        raise ValueError(f"Expected serialized JSON for {key}, got {type(data).__name__}")
    return Record(
        key=key,
        value=json.loads(data),
        created_at=dialect.decode_timestamp(created_at),
        updated_at=dialect.decode_timestamp(updated_at),
    )
