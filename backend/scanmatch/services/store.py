"""Row store access for the hosted relational tables.

The service only relies on a handful of row operations (select, upsert,
insert, update, delete, count). Each call is an independent round trip;
there are no transactions, and every failure surfaces as PersistenceError.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import itertools
import logging

import httpx

from .errors import PersistenceError
from ..config import Settings

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
Filters = Optional[Dict[str, Any]]


def utcnow_iso() -> str:
    """Current UTC time in the ISO format the store returns."""
    return datetime.now(timezone.utc).isoformat()


class RowStore(ABC):
    """Minimal async table API consumed by the services."""

    @abstractmethod
    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Filters = None,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[Row]:
        """Return rows matching equality filters (None value = IS NULL)."""

    @abstractmethod
    async def upsert(self, table: str, rows: List[Row], on_conflict: str) -> List[Row]:
        """Insert rows, merging into existing rows that share the conflict key."""

    @abstractmethod
    async def insert(self, table: str, row: Row) -> Row:
        """Insert a single row and return it as stored."""

    @abstractmethod
    async def update(self, table: str, values: Row, filters: Dict[str, Any]) -> List[Row]:
        """Update matching rows and return them."""

    @abstractmethod
    async def delete(self, table: str, filters: Filters = None) -> int:
        """Delete matching rows (all rows when filters is None)."""

    @abstractmethod
    async def count(self, table: str) -> int:
        """Number of rows in the table."""

    async def aclose(self) -> None:
        """Release network resources."""


def _matches(row: Row, filters: Filters) -> bool:
    if not filters:
        return True
    for column, value in filters.items():
        if value is None:
            if row.get(column) is not None:
                return False
        elif row.get(column) != value:
            return False
    return True


def _project(row: Row, columns: str) -> Row:
    if columns.strip() == "*":
        return dict(row)
    wanted = [c.strip() for c in columns.split(",") if c.strip()]
    return {c: row.get(c) for c in wanted}


class InMemoryRowStore(RowStore):
    """
    Dictionary-backed store with the same semantics as the hosted tables.

    Enforces the unique keys it is configured with, assigns ids and
    created_at, and can be told to fail upcoming calls so retry paths can
    be exercised locally.
    """

    def __init__(self, unique_keys: Optional[Dict[str, List[Tuple[str, ...]]]] = None):
        self._tables: Dict[str, List[Row]] = {}
        self._ids = itertools.count(1)
        self.unique_keys = unique_keys or {}
        self.calls: List[Tuple[str, str]] = []
        # None = let the call through
        self._failures: List[Optional[str]] = []

    def fail_next(self, times: int = 1, message: str = "connection reset by peer", after: int = 0) -> None:
        """Let `after` calls through, then make `times` calls raise PersistenceError."""
        self._failures.extend([None] * after + [message] * times)

    def rows(self, table: str) -> List[Row]:
        """Direct (synchronous) view of a table's rows."""
        return [dict(r) for r in self._tables.get(table, [])]

    def _enter(self, op: str, table: str) -> List[Row]:
        self.calls.append((op, table))
        if self._failures:
            message = self._failures.pop(0)
            if message is not None:
                raise PersistenceError(f"{op} on {table} failed", message)
        return self._tables.setdefault(table, [])

    def _check_unique(self, table: str, rows: List[Row], candidate: Row, skip: Optional[Row] = None) -> None:
        for key in self.unique_keys.get(table, []):
            values = tuple(candidate.get(c) for c in key)
            for existing in rows:
                if existing is skip:
                    continue
                if tuple(existing.get(c) for c in key) == values:
                    raise PersistenceError(
                        "duplicate key value violates unique constraint",
                        f"Key ({', '.join(key)})=({', '.join(str(v) for v in values)}) already exists.",
                    )

    def _new_row(self, row: Row) -> Row:
        stored = dict(row)
        stored.setdefault("id", next(self._ids))
        stored.setdefault("created_at", utcnow_iso())
        return stored

    async def select(self, table, columns="*", filters=None, order_by=None, descending=False):
        rows = self._enter("select", table)
        found = [r for r in rows if _matches(r, filters)]
        if order_by:
            found.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by)), reverse=descending)
        return [_project(r, columns) for r in found]

    async def upsert(self, table, rows, on_conflict):
        existing_rows = self._enter("upsert", table)
        key = tuple(c.strip() for c in on_conflict.split(","))
        result = []
        for row in rows:
            values = tuple(row.get(c) for c in key)
            target = next(
                (r for r in existing_rows if tuple(r.get(c) for c in key) == values),
                None,
            )
            if target is not None:
                merged = {**target, **row}
                self._check_unique(table, existing_rows, merged, skip=target)
                target.update(row)
                result.append(dict(target))
            else:
                stored = self._new_row(row)
                self._check_unique(table, existing_rows, stored)
                existing_rows.append(stored)
                result.append(dict(stored))
        return result

    async def insert(self, table, row):
        rows = self._enter("insert", table)
        stored = self._new_row(row)
        self._check_unique(table, rows, stored)
        rows.append(stored)
        return dict(stored)

    async def update(self, table, values, filters):
        rows = self._enter("update", table)
        updated = []
        for r in rows:
            if _matches(r, filters):
                r.update(values)
                updated.append(dict(r))
        return updated

    async def delete(self, table, filters=None):
        rows = self._enter("delete", table)
        keep = [r for r in rows if not _matches(r, filters)]
        removed = len(rows) - len(keep)
        rows[:] = keep
        return removed

    async def count(self, table):
        rows = self._enter("count", table)
        return len(rows)


def _encode_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _filter_params(filters: Filters) -> Dict[str, str]:
    params = {}
    for column, value in (filters or {}).items():
        params[column] = "is.null" if value is None else f"eq.{_encode_value(value)}"
    return params


class PostgrestRowStore(RowStore):
    """
    Row store over the hosted database's PostgREST endpoint.

    Uses httpx.AsyncClient; non-2xx responses and transport errors are
    raised as PersistenceError carrying the store's own error detail.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def _request(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        headers = dict(extra_headers or {})
        if prefer:
            headers["Prefer"] = prefer
        try:
            response = await self._client.request(method, table, params=params, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"Store {method} {table} failed: {e}")
            raise PersistenceError(f"{method} {table} failed", str(e)) from e

        if response.status_code >= 400:
            detail = response.text
            message = f"{method} {table} failed with HTTP {response.status_code}"
            try:
                body = response.json()
                if isinstance(body, dict):
                    message = body.get("message") or message
                    detail = body.get("details") or body.get("hint") or body.get("code") or detail
            except ValueError:
                pass
            raise PersistenceError(message, detail)
        return response

    @staticmethod
    def _rows(response: httpx.Response) -> List[Row]:
        if not response.content:
            return []
        body = response.json()
        return body if isinstance(body, list) else [body]

    async def select(self, table, columns="*", filters=None, order_by=None, descending=False):
        params = {"select": columns, **_filter_params(filters)}
        if order_by:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        response = await self._request("GET", table, params=params)
        return self._rows(response)

    async def upsert(self, table, rows, on_conflict):
        if not rows:
            return []
        response = await self._request(
            "POST",
            table,
            params={"on_conflict": on_conflict},
            json=rows,
            prefer="resolution=merge-duplicates,return=representation",
        )
        return self._rows(response)

    async def insert(self, table, row):
        response = await self._request("POST", table, json=row, prefer="return=representation")
        rows = self._rows(response)
        return rows[0] if rows else dict(row)

    async def update(self, table, values, filters):
        response = await self._request(
            "PATCH", table, params=_filter_params(filters), json=values, prefer="return=representation"
        )
        return self._rows(response)

    async def delete(self, table, filters=None):
        # PostgREST refuses unfiltered deletes; id > 0 matches every row
        params = _filter_params(filters) if filters else {"id": "gt.0"}
        response = await self._request("DELETE", table, params=params, prefer="return=representation")
        return len(self._rows(response))

    async def count(self, table):
        response = await self._request(
            "GET",
            table,
            params={"select": "id"},
            prefer="count=exact",
            extra_headers={"Range-Unit": "items", "Range": "0-0"},
        )
        content_range = response.headers.get("content-range", "")
        total = content_range.rsplit("/", 1)[-1] if "/" in content_range else ""
        if total.isdigit():
            return int(total)
        return len(self._rows(response))

    async def aclose(self):
        await self._client.aclose()


def default_unique_keys(settings: Settings) -> Dict[str, List[Tuple[str, ...]]]:
    """Unique constraints of the hosted schema, keyed by configured table name."""
    return {
        settings.ocr_results_table: [("text",)],
        settings.scan_items_table: [("session_id", "text")],
    }


def build_store(settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> RowStore:
    """Create the configured row store backend."""
    if settings.store_backend == "postgrest":
        if not settings.postgrest_url:
            raise ValueError("postgrest_url must be set when store_backend is 'postgrest'")
        logger.info(f"Using PostgREST row store at {settings.postgrest_url}")
        return PostgrestRowStore(
            settings.postgrest_url,
            api_key=settings.postgrest_api_key,
            timeout=settings.store_timeout_seconds,
            transport=transport,
        )
    logger.info("Using in-memory row store")
    return InMemoryRowStore(unique_keys=default_unique_keys(settings))
