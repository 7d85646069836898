"""
Record Store Module

Provides the async record store interface the lifecycle engine talks to, plus
an in-memory implementation (testing, development) and a REST implementation
for PostgREST-style data stores reached over HTTP with httpx.

The interface has exactly four verbs: filtered select, insert, update by
filter and delete by filter. There are no multi-row transactions.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union
import asyncio
import json
import logging
import re
import uuid

import httpx

from .config import BackofficeConfig, get_config
from .errors import UpstreamStoreError, ValidationError
from .models import serialize_value

logger = logging.getLogger("loan_backoffice.storage")


FILTER_OPERATORS = ("eq", "neq", "gt", "gte", "lt", "lte", "like", "ilike", "in", "is")


@dataclass(frozen=True)
class Filter:
    """Column predicate. Plain values in a filter mapping mean equality."""
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in FILTER_OPERATORS:
            raise ValidationError(f"Unsupported filter operator '{self.op}'",
                                  {"op": self.op, "allowed": list(FILTER_OPERATORS)})


Filters = Mapping[str, Any]
Rows = Union[Dict[str, Any], Sequence[Dict[str, Any]]]


def _as_filter(value: Any) -> Filter:
    return value if isinstance(value, Filter) else Filter("eq", value)


def _parse_order(order: Optional[Union[str, Sequence[str]]]) -> List[tuple]:
    """Parse "col", "col.desc" or "a.asc,b.desc" into (column, descending) pairs"""
    if not order:
        return []
    parts = order.split(",") if isinstance(order, str) else list(order)
    result = []
    for part in parts:
        part = part.strip()
        if not part:
            continue
        column, _, direction = part.partition(".")
        result.append((column, direction.lower() == "desc"))
    return result


class RecordStore(ABC):
    """Abstract interface for record store backends"""

    @abstractmethod
    async def select(self, table: str, filters: Optional[Filters] = None,
                     order: Optional[Union[str, Sequence[str]]] = None,
                     limit: Optional[int] = None,
                     offset: Optional[int] = None) -> List[Dict[str, Any]]:
        """Read rows matching filters"""
        pass

    @abstractmethod
    async def insert(self, table: str, rows: Rows, returning: bool = True) -> List[Dict[str, Any]]:
        """Insert one row or a batch of rows as a single request"""
        pass

    @abstractmethod
    async def update(self, table: str, filters: Filters, values: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Partially update rows matching filters, returning the affected rows"""
        pass

    @abstractmethod
    async def delete(self, table: str, filters: Filters) -> List[Dict[str, Any]]:
        """Delete rows matching filters, returning the deleted rows"""
        pass

    async def close(self) -> None:
        """Close store connection (default no-op)"""
        pass

    async def get(self, table: str, record_id: Any) -> Optional[Dict[str, Any]]:
        """Load a single row by id"""
        rows = await self.select(table, {"id": record_id}, limit=1)
        return rows[0] if rows else None

    async def count(self, table: str, filters: Optional[Filters] = None) -> int:
        """Count rows matching filters"""
        return len(await self.select(table, filters))

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


def _require_filters(verb: str, table: str, filters: Filters) -> None:
    # Unfiltered bulk mutation is never what a lifecycle step means
    if not filters:
        raise ValidationError(f"Refusing to {verb} every row of {table} without a filter",
                              {"table": table})


def _numeric(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value)
        except InvalidOperation:
            return None
    return None


def _compare_key(value: Any) -> Any:
    value = serialize_value(value)
    number = _numeric(value)
    return number if number is not None else value


def _like_to_regex(pattern: str) -> str:
    escaped = re.escape(str(pattern))
    return "^" + escaped.replace(r"\*", ".*").replace("%", ".*") + "$"


def _matches(row: Dict[str, Any], column: str, flt: Filter) -> bool:
    actual = row.get(column)
    expected = serialize_value(flt.value)

    if flt.op == "is":
        return actual is expected or actual == expected
    if flt.op == "in":
        return any(_matches(row, column, Filter("eq", v)) for v in expected)
    if flt.op in ("like", "ilike"):
        if actual is None:
            return False
        flags = re.IGNORECASE if flt.op == "ilike" else 0
        return re.match(_like_to_regex(expected), str(actual), flags) is not None

    if actual is None:
        return flt.op == "neq" and expected is not None
    left, right = _compare_key(actual), _compare_key(expected)
    if isinstance(left, bool) or isinstance(right, bool):
        left, right = actual, expected
    elif type(left) is not type(right):
        left, right = str(actual), str(expected)

    if flt.op == "eq":
        return left == right
    if flt.op == "neq":
        return left != right
    if flt.op == "gt":
        return left > right
    if flt.op == "gte":
        return left >= right
    if flt.op == "lt":
        return left < right
    return left <= right


class InMemoryRecordStore(RecordStore):
    """In-memory record store for testing and local development"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        if table not in self._data:
            self._data[table] = {}
        return self._data[table]

    @staticmethod
    def _copy(row: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy through JSON to prevent external mutation
        return json.loads(json.dumps(serialize_value(row), default=str))

    def _filter(self, table: str, filters: Optional[Filters]) -> List[Dict[str, Any]]:
        predicates = [(column, _as_filter(value)) for column, value in (filters or {}).items()]
        return [
            row for row in self._table(table).values()
            if all(_matches(row, column, flt) for column, flt in predicates)
        ]

    async def select(self, table, filters=None, order=None, limit=None, offset=None):
        async with self._lock:
            rows = self._filter(table, filters)
            for column, descending in reversed(_parse_order(order)):
                rows.sort(key=lambda r: (r.get(column) is None, _compare_key(r.get(column))),
                          reverse=descending)
            if offset:
                rows = rows[offset:]
            if limit is not None:
                rows = rows[:limit]
            return [self._copy(row) for row in rows]

    async def insert(self, table, rows, returning=True):
        batch = [rows] if isinstance(rows, Mapping) else list(rows)
        now = datetime.now(timezone.utc).isoformat()
        async with self._lock:
            created = []
            for row in batch:
                record = self._copy(dict(row))
                record.setdefault("id", str(uuid.uuid4()))
                record["id"] = str(record["id"])
                if record["id"] in self._table(table):
                    raise UpstreamStoreError(
                        f"Duplicate key {record['id']} in {table}", step=f"insert {table}"
                    )
                record.setdefault("created_at", now)
                record.setdefault("updated_at", now)
                created.append(record)
            # All or nothing, like a single batch request
            for record in created:
                self._table(table)[record["id"]] = record
            return [self._copy(r) for r in created] if returning else []

    async def update(self, table, filters, values):
        _require_filters("update", table, filters)
        changes = self._copy(dict(values))
        changes.setdefault("updated_at", datetime.now(timezone.utc).isoformat())
        async with self._lock:
            matched = self._filter(table, filters)
            for row in matched:
                row.update(changes)
            return [self._copy(row) for row in matched]

    async def delete(self, table, filters):
        _require_filters("delete", table, filters)
        async with self._lock:
            matched = self._filter(table, filters)
            for row in matched:
                del self._table(table)[row["id"]]
            return [self._copy(row) for row in matched]

    def dump(self, table: str) -> List[Dict[str, Any]]:
        """Get all rows of a table for debugging/inspection"""
        return [self._copy(row) for row in self._table(table).values()]


def _render_value(value: Any) -> str:
    value = serialize_value(value)
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render_filters(filters: Optional[Filters]) -> List[tuple]:
    """Render a filter mapping as PostgREST query parameters"""
    params = []
    for column, value in (filters or {}).items():
        flt = _as_filter(value)
        if flt.op == "in":
            rendered = ",".join(_render_value(v) for v in flt.value)
            params.append((column, f"in.({rendered})"))
        else:
            params.append((column, f"{flt.op}.{_render_value(flt.value)}"))
    return params


class RestRecordStore(RecordStore):
    """Record store reached over a PostgREST-style REST API"""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = headers

    async def _request(self, method: str, table: str, params: List[tuple],
                       payload: Any = None, prefer: Optional[str] = None) -> List[Dict[str, Any]]:
        step = f"{method.lower()} {table}"
        headers = dict(self._headers)
        if prefer:
            headers["Prefer"] = prefer
        try:
            response = await self._client.request(
                method,
                f"{self.base_url}/{table}",
                params=params,
                json=serialize_value(payload) if payload is not None else None,
                headers=headers,
            )
        except httpx.HTTPError as e:
            logger.error(f"Record store {step} failed: {e}")
            raise UpstreamStoreError(f"Record store request failed during {step}: {e}", step=step)

        if response.status_code >= 400:
            logger.warning(f"Record store returned {response.status_code} for {step}: {response.text}")
            raise UpstreamStoreError(
                f"Record store returned {response.status_code} during {step}",
                step=step,
                details={"status_code": response.status_code, "body": response.text[:500]},
            )

        if not response.content:
            return []
        try:
            data = response.json()
        except ValueError:
            # Successful write with a non-JSON body
            return []
        if isinstance(data, dict):
            return [data]
        return data

    async def select(self, table, filters=None, order=None, limit=None, offset=None):
        params = [("select", "*")] + render_filters(filters)
        ordering = _parse_order(order)
        if ordering:
            params.append(("order", ",".join(
                f"{column}.{'desc' if descending else 'asc'}" for column, descending in ordering
            )))
        if limit is not None:
            params.append(("limit", str(limit)))
        if offset:
            params.append(("offset", str(offset)))
        return await self._request("GET", table, params)

    async def insert(self, table, rows, returning=True):
        batch = [rows] if isinstance(rows, Mapping) else list(rows)
        prefer = "return=representation" if returning else "return=minimal"
        return await self._request("POST", table, [], payload=batch, prefer=prefer)

    async def update(self, table, filters, values):
        _require_filters("update", table, filters)
        payload = dict(values)
        payload.setdefault("updated_at", datetime.now(timezone.utc))
        return await self._request("PATCH", table, render_filters(filters),
                                   payload=payload, prefer="return=representation")

    async def delete(self, table, filters):
        _require_filters("delete", table, filters)
        return await self._request("DELETE", table, render_filters(filters),
                                   prefer="return=representation")

    async def close(self) -> None:
        """Close the HTTP client"""
        await self._client.aclose()


def create_record_store(config: Optional[BackofficeConfig] = None) -> RecordStore:
    """Factory function to create record store instances"""
    config = config or get_config()
    if config.record_store_url:
        return RestRecordStore(
            base_url=config.record_store_url,
            api_key=config.record_store_api_key,
            timeout=config.record_store_timeout,
        )
    # Default to in-memory store for development
    return InMemoryRecordStore()
