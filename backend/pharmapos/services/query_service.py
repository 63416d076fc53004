# Overview: Generic table query/mutation/pagination layer with a scope-aware cache.

"""
Generic Data Access

WHY: List screens all do the same thing: select rows of one table filtered
by tenant/branch plus a few equality filters, ordered by a column. This
module does that once, server-side, against an allow-list of tables.

MULTI-TENANT: Every table in TABLES declares how it is scoped:
- "branch": tenant_id + branch_id columns (branch filter applies when the
  scope names a branch)
- "tenant": tenant_id only
- "parent": no scope columns; joined to its owning scoped table
Tables outside TABLES cannot be read or written through this layer.

STATE MACHINE (QueryResult / Pagination):
    idle -> loading -> success | error, re-entering loading on refetch.
Each fetch gets a generation number; a response whose generation is older
than the newest issued fetch is discarded, so a slow stale response can
never overwrite a newer one.

CACHE (QueryCache):
- TTL entries keyed by (table, tenant, branch, columns, filters, order, window)
- Concurrent identical loads are deduplicated (one loader runs, the rest wait)
- invalidate(table, tenant_id, branch_id) drops matching entries; the
  realtime bus calls it for every committed change
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from flask import current_app
from sqlalchemy import asc, desc, inspect

from ..extensions import db
from ..models import (
    Branch,
    Category,
    Customer,
    LoyaltyTransaction,
    Product,
    PurchaseOrder,
    PurchaseOrderItem,
    Refund,
    Sale,
    SaleItem,
    StockAudit,
    StockAuditItem,
    Supplier,
    User,
)
from ..validation import (
    ModelValidationPolicy,
    ValidationError,
    coerce_column_value,
    enforce_rules_product,
    validate_payload,
)
from . import customers_service, products_service, purchase_service, sales_service, suppliers_service
from .realtime_service import EXTENSION_KEY as REALTIME_KEY, ChangeEvent, row_snapshot
from .tenant_service import Scope, scoped_query


EXTENSION_KEY = "pharmapos.query_cache"
STATUSES = ("idle", "loading", "success", "error")
DEFAULT_PAGE_SIZE = 20
MAX_LIMIT = 500


class QueryError(Exception):
    """Raised for generic query/mutation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


@dataclass(frozen=True)
class TableSpec:
    model: Any
    scope: str = "branch"
    parent: Any = None
    parent_key: str | None = None
    hidden: frozenset = frozenset()
    policy: ModelValidationPolicy | None = None
    rules: Callable | None = None
    insert: Callable | None = None
    delete: Callable | None = None


TABLES: dict[str, TableSpec] = {
    "products": TableSpec(
        Product,
        policy=products_service.PRODUCT_POLICY,
        rules=enforce_rules_product,
        insert=products_service.create_product,
        delete=products_service.delete_product,
    ),
    "categories": TableSpec(
        Category,
        policy=products_service.CATEGORY_POLICY,
        insert=products_service.create_category,
        delete=products_service.delete_category,
    ),
    "customers": TableSpec(
        Customer,
        policy=customers_service.CUSTOMER_POLICY,
        insert=customers_service.create_customer,
        delete=customers_service.delete_customer,
    ),
    "suppliers": TableSpec(
        Supplier,
        policy=suppliers_service.SUPPLIER_POLICY,
        rules=suppliers_service.enforce_rules_supplier,
        insert=suppliers_service.create_supplier,
        delete=suppliers_service.delete_supplier,
    ),
    "sales": TableSpec(Sale, delete=sales_service.delete_sale),
    "sale_items": TableSpec(SaleItem, scope="parent", parent=Sale, parent_key="sale_id"),
    "refunds": TableSpec(Refund),
    "loyalty_transactions": TableSpec(LoyaltyTransaction),
    "purchase_orders": TableSpec(
        PurchaseOrder,
        insert=purchase_service.create_purchase_order,
        delete=purchase_service.delete_purchase_order,
    ),
    "purchase_order_items": TableSpec(
        PurchaseOrderItem, scope="parent", parent=PurchaseOrder, parent_key="purchase_order_id"
    ),
    "stock_audits": TableSpec(StockAudit),
    "stock_audit_items": TableSpec(StockAuditItem, scope="parent", parent=StockAudit, parent_key="audit_id"),
    "branches": TableSpec(Branch, scope="tenant"),
    "users": TableSpec(User, scope="tenant", hidden=frozenset({"password_hash"})),
}


def get_table(table: str) -> TableSpec:
    spec = TABLES.get(table)
    if spec is None:
        raise QueryError(f"Unknown table: {table}", {"table": table})
    return spec


def _column_keys(spec: TableSpec) -> list[str]:
    return [attr.key for attr in inspect(spec.model).mapper.column_attrs if attr.key not in spec.hidden]


def normalize_columns(spec: TableSpec, columns: Any) -> tuple[str, ...]:
    """Accept "*", a comma-separated string or a sequence of column names."""
    available = _column_keys(spec)
    if columns in (None, "", "*"):
        return tuple(available)
    if isinstance(columns, str):
        requested = [c.strip() for c in columns.split(",") if c.strip()]
    else:
        requested = list(columns)
    unknown = [c for c in requested if c not in available]
    if unknown:
        raise ValidationError(f"Unknown column: {unknown[0]}")
    if not requested:
        return tuple(available)
    return tuple(dict.fromkeys(requested))


def normalize_filters(spec: TableSpec, filters: dict | None) -> tuple:
    """Equality filters as a sorted tuple of (column, coerced value)."""
    if not filters:
        return ()
    if not isinstance(filters, dict):
        raise ValidationError("filters must be an object")
    normalized = []
    for key, value in filters.items():
        if key in spec.hidden:
            raise ValidationError(f"Unknown column: {key}")
        if isinstance(value, str) and value.startswith("eq."):
            value = value[3:]
        normalized.append((key, coerce_column_value(spec.model, key, value)))
    return tuple(sorted(normalized, key=lambda pair: pair[0]))


def normalize_order(spec: TableSpec, order_by: dict | None) -> tuple:
    if not order_by:
        return ()
    if not isinstance(order_by, dict):
        raise ValidationError("order_by must be an object")
    available = set(_column_keys(spec))
    normalized = []
    for key, direction in order_by.items():
        if key not in available:
            raise ValidationError(f"Unknown column: {key}")
        if direction not in ("asc", "desc"):
            raise ValidationError(f"Invalid sort direction for {key}: {direction}")
        normalized.append((key, direction))
    return tuple(normalized)


def _base_query(spec: TableSpec, scope: Scope):
    if spec.scope == "branch":
        return scoped_query(spec.model, scope)
    if spec.scope == "tenant":
        return scoped_query(spec.model, scope, branch=False)
    parent_col = getattr(spec.model, spec.parent_key)
    return (
        db.session.query(spec.model)
        .join(spec.parent, spec.parent.id == parent_col)
        .filter(spec.parent.tenant_id == scope.tenant_id)
        .filter(*(
            [spec.parent.branch_id == scope.branch_id] if scope.branch_id is not None else []
        ))
    )


def run_query(
    table: str,
    scope: Scope,
    *,
    columns: Any = "*",
    filters: dict | None = None,
    order_by: dict | None = None,
    offset: int = 0,
    limit: int | None = None,
) -> list[dict]:
    """Execute one scoped select and return rows as JSON-safe dicts."""
    spec = get_table(table)
    selected = normalize_columns(spec, columns)
    return _execute(spec, scope, selected, normalize_filters(spec, filters),
                    normalize_order(spec, order_by), offset, limit)


def _execute(spec, scope, selected, filters, order, offset, limit) -> list[dict]:
    query = _base_query(spec, scope)
    for key, value in filters:
        query = query.filter(getattr(spec.model, key) == value)
    for key, direction in order:
        column = getattr(spec.model, key)
        query = query.order_by(asc(column) if direction == "asc" else desc(column))
    query = query.order_by(spec.model.id)
    if offset:
        query = query.offset(offset)
    if limit is not None:
        query = query.limit(min(limit, MAX_LIMIT))

    rows = []
    for obj in query.all():
        snapshot = row_snapshot(obj)
        rows.append({key: snapshot.get(key) for key in selected})
    return rows


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

@dataclass
class _Entry:
    value: list
    expires_at: float
    table: str
    tenant_id: int
    branch_id: int | None


@dataclass
class _InFlight:
    event: threading.Event = field(default_factory=threading.Event)
    value: Any = None
    error: BaseException | None = None


class QueryCache:
    """Request-deduplicating TTL cache keyed by table + scope + query shape."""

    def __init__(self, ttl_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[tuple, _Entry] = {}
        self._inflight: dict[tuple, _InFlight] = {}
        self._epochs: dict[str, int] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(table: str, scope: Scope, *parts) -> tuple:
        return (table, scope.tenant_id, scope.branch_id) + tuple(parts)

    def __len__(self) -> int:
        return len(self._entries)

    def get_or_load(self, key: tuple, loader: Callable[[], list]) -> list:
        table, tenant_id, branch_id = key[:3]
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at > self._clock():
                self.hits += 1
                return entry.value
            waiter = self._inflight.get(key)
            owner = waiter is None
            if owner:
                waiter = self._inflight[key] = _InFlight()
                epoch = self._epochs.get(table, 0)
                self.misses += 1

        if not owner:
            waiter.event.wait()
            if waiter.error is not None:
                raise waiter.error
            return waiter.value

        try:
            value = loader()
        except Exception as exc:
            waiter.error = exc
            raise
        else:
            waiter.value = value
            with self._lock:
                # A change committed while loading makes this result stale
                if self._epochs.get(table, 0) == epoch:
                    self._entries[key] = _Entry(
                        value, self._clock() + self.ttl_seconds, table, tenant_id, branch_id
                    )
            return value
        finally:
            with self._lock:
                self._inflight.pop(key, None)
            waiter.event.set()

    def invalidate(self, table: str, tenant_id: int | None = None, branch_id: int | None = None) -> int:
        """
        Drop entries for a table.

        tenant_id None drops the table for every scope. A branch_id only
        spares entries cached for a different branch; tenant-wide entries
        (branch None) are always dropped.
        """
        with self._lock:
            self._epochs[table] = self._epochs.get(table, 0) + 1
            doomed = [
                key for key, entry in self._entries.items()
                if entry.table == table
                and (tenant_id is None or entry.tenant_id == tenant_id)
                and (branch_id is None or entry.branch_id is None or entry.branch_id == branch_id)
            ]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def on_change(self, change: ChangeEvent) -> None:
        self.invalidate(change.table, change.tenant_id, change.branch_id)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def init_app(app) -> QueryCache:
    cache = QueryCache(ttl_seconds=app.config.get("QUERY_CACHE_TTL_SECONDS", 30))
    app.extensions[EXTENSION_KEY] = cache
    bus = app.extensions.get(REALTIME_KEY)
    if bus is not None:
        bus.add_listener(cache.on_change)
    return cache


def get_cache() -> QueryCache | None:
    return current_app.extensions.get(EXTENSION_KEY)


def cached_query(
    table: str,
    scope: Scope,
    *,
    columns: Any = "*",
    filters: dict | None = None,
    order_by: dict | None = None,
    offset: int = 0,
    limit: int | None = None,
    cache: QueryCache | None = None,
) -> list[dict]:
    """run_query through the cache, when there is one."""
    spec = get_table(table)
    selected = normalize_columns(spec, columns)
    normalized_filters = normalize_filters(spec, filters)
    order = normalize_order(spec, order_by)

    def _load():
        return _execute(spec, scope, selected, normalized_filters, order, offset, limit)

    if cache is None:
        return _load()
    key = QueryCache.make_key(table, scope, selected, normalized_filters, order, offset, limit)
    return cache.get_or_load(key, _load)


# ---------------------------------------------------------------------------
# Query / Pagination state holders
# ---------------------------------------------------------------------------

class _FetchState:
    """Status + generation bookkeeping shared by QueryResult and Pagination."""

    def __init__(self):
        self.status = "idle"
        self.error: Exception | None = None
        self._issued = 0

    @property
    def loading(self) -> bool:
        return self.status == "loading"

    @property
    def generation(self) -> int:
        return self._issued

    def begin(self) -> int:
        self._issued += 1
        self.status = "loading"
        self.error = None
        return self._issued

    def is_current(self, generation: int) -> bool:
        return generation == self._issued

    def fail(self, generation: int, error: Exception) -> bool:
        if not self.is_current(generation):
            return False
        self.status = "error"
        self.error = error
        return True


class QueryResult(_FetchState):
    """
    Result of query(): data, status, error and refetch().

    Domain errors (unknown column, bad filter value, scope problems) are
    recorded on the result, not raised, matching what a list screen renders.
    """

    def __init__(
        self,
        table: str,
        scope: Scope,
        *,
        columns: Any = "*",
        filters: dict | None = None,
        order_by: dict | None = None,
        enabled: bool = True,
        refetch_interval: float | None = None,
        on_success: Callable | None = None,
        on_error: Callable | None = None,
        cache: QueryCache | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__()
        self.table = table
        self.scope = scope
        self.columns = columns
        self.filters = filters
        self.order_by = order_by
        self.enabled = enabled
        self.refetch_interval = refetch_interval
        self.on_success = on_success
        self.on_error = on_error
        self.cache = cache
        self._clock = clock
        self.data: list[dict] | None = None
        self.fetched_at: float | None = None

    def complete(self, generation: int, data: list[dict]) -> bool:
        """Apply a response; stale generations are dropped."""
        if not self.is_current(generation):
            return False
        self.data = data
        self.status = "success"
        self.fetched_at = self._clock()
        return True

    def refetch(self) -> "QueryResult":
        if not self.enabled:
            return self
        generation = self.begin()
        try:
            data = cached_query(
                self.table, self.scope,
                columns=self.columns, filters=self.filters, order_by=self.order_by,
                cache=self.cache,
            )
        except (QueryError, ValidationError) as exc:
            if self.fail(generation, exc) and self.on_error:
                self.on_error(exc)
            return self
        if self.complete(generation, data) and self.on_success:
            self.on_success(data)
        return self

    def is_due(self) -> bool:
        if not self.enabled or not self.refetch_interval or self.loading:
            return False
        if self.fetched_at is None:
            return True
        return self._clock() - self.fetched_at >= self.refetch_interval

    def poll(self) -> bool:
        """Refetch if the refetch interval has elapsed; returns whether it ran."""
        if not self.is_due():
            return False
        self.refetch()
        return True

    def to_dict(self) -> dict:
        return {
            "table": self.table,
            "status": self.status,
            "loading": self.loading,
            "data": self.data,
            "error": str(self.error) if self.error else None,
        }


def query(table: str, scope: Scope, columns: Any = "*", **options) -> QueryResult:
    """Create a QueryResult and run the first fetch (unless enabled=False)."""
    if "cache" not in options:
        options["cache"] = get_cache()
    result = QueryResult(table, scope, columns=columns, **options)
    return result.refetch()


class Pagination(_FetchState):
    """
    Offset pagination over one table.

    Page n covers rows [n * page_size, (n + 1) * page_size). load_more()
    appends the next page, refresh() starts over from page 0. has_more is
    true while the last fetch returned a full page.
    """

    def __init__(
        self,
        table: str,
        scope: Scope,
        *,
        columns: Any = "*",
        filters: dict | None = None,
        order_by: dict | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        super().__init__()
        if page_size < 1:
            raise ValidationError("page_size must be a positive integer")
        self.table = table
        self.scope = scope
        self.columns = columns
        self.filters = filters
        self.order_by = order_by
        self.page_size = page_size
        self.data: list[dict] = []
        self.page = 0
        self.has_more = True

    def _fetch(self, page: int) -> list[dict]:
        return run_query(
            self.table, self.scope,
            columns=self.columns, filters=self.filters, order_by=self.order_by,
            offset=page * self.page_size, limit=self.page_size,
        )

    def _apply(self, generation: int, rows: list[dict], *, append: bool) -> bool:
        if not self.is_current(generation):
            return False
        self.data = self.data + rows if append else rows
        self.has_more = len(rows) == self.page_size
        self.page = self.page + 1 if append else 1
        self.status = "success"
        return True

    def load_more(self) -> "Pagination":
        generation = self.begin()
        try:
            rows = self._fetch(self.page)
        except (QueryError, ValidationError) as exc:
            self.fail(generation, exc)
            return self
        self._apply(generation, rows, append=True)
        return self

    def refresh(self) -> "Pagination":
        self.page = 0
        self.data = []
        generation = self.begin()
        try:
            rows = self._fetch(0)
        except (QueryError, ValidationError) as exc:
            self.fail(generation, exc)
            return self
        self._apply(generation, rows, append=False)
        return self

    def to_dict(self) -> dict:
        return {
            "table": self.table,
            "status": self.status,
            "data": self.data,
            "page": self.page,
            "page_size": self.page_size,
            "has_more": self.has_more,
            "error": str(self.error) if self.error else None,
        }


def pagination(table: str, scope: Scope, columns: Any = "*", **options) -> Pagination:
    return Pagination(table, scope, columns=columns, **options).refresh()


def fetch_page(
    table: str,
    scope: Scope,
    page: int,
    *,
    columns: Any = "*",
    filters: dict | None = None,
    order_by: dict | None = None,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> dict:
    """One page for stateless HTTP callers (page is 0-indexed)."""
    if page < 0:
        raise ValidationError("page must be >= 0")
    if page_size < 1:
        raise ValidationError("page_size must be a positive integer")
    rows = run_query(
        table, scope,
        columns=columns, filters=filters, order_by=order_by,
        offset=page * page_size, limit=page_size,
    )
    return {
        "data": rows,
        "page": page,
        "page_size": page_size,
        "has_more": len(rows) == page_size,
    }


# ---------------------------------------------------------------------------
# Mutation
# ---------------------------------------------------------------------------

def _validated(spec: TableSpec, row: dict) -> dict:
    patch = validate_payload(model=spec.model, payload=row, policy=spec.policy, partial=False)
    if spec.rules:
        spec.rules(patch)
    return patch


def mutation(table: str, payload: Any, scope: Scope) -> dict:
    """
    Insert or delete through the table's resource service.

    A payload carrying "id" deletes that row; anything else (a dict or a
    list of dicts) is inserted. Updates are not part of this surface.
    Inserts of a list run in one transaction.
    """
    spec = get_table(table)

    if isinstance(payload, dict) and "id" in payload:
        if spec.delete is None:
            raise QueryError(f"Deleting from {table} is not supported", {"table": table})
        object_id = payload["id"]
        if isinstance(object_id, str) and object_id.strip().isdigit():
            object_id = int(object_id)
        if isinstance(object_id, bool) or not isinstance(object_id, int):
            raise ValidationError("id must be an integer")
        if not spec.delete(object_id, scope):
            raise QueryError("Row not found", {"table": table, "id": object_id})
        return {"operation": "delete", "table": table, "data": [{"id": object_id}]}

    if spec.insert is None:
        raise QueryError(f"Inserting into {table} is not supported", {"table": table})

    rows = payload if isinstance(payload, list) else [payload]
    if not rows or not all(isinstance(row, dict) for row in rows):
        raise ValidationError("Payload must be an object or a list of objects")

    if spec.model is PurchaseOrder:
        # Purchase orders carry items and commit on their own
        created = [spec.insert(scope, row) for row in rows]
    else:
        try:
            created = [spec.insert(scope, _validated(spec, row), commit=False) for row in rows]
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    hidden = spec.hidden
    data = [{k: v for k, v in row_snapshot(obj).items() if k not in hidden} for obj in created]
    return {"operation": "insert", "table": table, "data": data}
