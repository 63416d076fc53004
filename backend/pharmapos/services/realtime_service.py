# Overview: In-process change feed; delivers committed row changes to subscribers.

"""
Realtime Change Subscriptions

WHY: Screens that show live lists (stock, sales history) subscribe to row
changes instead of polling. Changes are captured when the ORM flushes and
delivered only after the transaction commits, so a rolled-back sale never
reaches a subscriber.

DESIGN:
- One RealtimeBus per Flask app (app.extensions["pharmapos.realtime"])
- SQLAlchemy session events collect changes in session.info
- after_commit dispatches, after_rollback drops
- Bulk UPDATE statements bypass the flush, so services that use them call
  record_change() explicitly
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable

from flask import current_app, has_app_context
from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from ..time_utils import to_iso_date, to_utc_z


EVENTS = ("INSERT", "UPDATE", "DELETE")
EXTENSION_KEY = "pharmapos.realtime"
_PENDING_KEY = "pharmapos.realtime.pending"

# Columns never published to subscribers
HIDDEN_COLUMNS = {"password_hash", "token_hash"}


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event: str
    record: dict
    tenant_id: int | None = None
    branch_id: int | None = None


def _json_safe(value: Any):
    if isinstance(value, datetime):
        return to_utc_z(value)
    if isinstance(value, date):
        return to_iso_date(value)
    return value


def row_snapshot(obj, *, loaded_only: bool = False) -> dict:
    """
    Column values of a mapped object, without touching relationships.

    loaded_only skips expired attributes instead of reloading them; a row
    deleted in the current flush can no longer be read back.
    """
    state = inspect(obj)
    skipped = state.unloaded if loaded_only else set()
    record = {
        attr.key: _json_safe(getattr(obj, attr.key))
        for attr in state.mapper.column_attrs
        if attr.key not in HIDDEN_COLUMNS and attr.key not in skipped
    }
    if loaded_only and "id" not in record and state.identity:
        record["id"] = state.identity[0]
    return record


def parse_filter(filter_spec) -> dict:
    """
    Accept either an equality dict or a "column=eq.value" string.

    String values are compared as strings against the record, so
    "branch_id=eq.5" matches a record whose branch_id is 5.
    """
    if not filter_spec:
        return {}
    if isinstance(filter_spec, dict):
        return dict(filter_spec)
    column, sep, rest = str(filter_spec).partition("=")
    if not sep or not rest.startswith("eq."):
        raise ValueError(f"Unsupported filter: {filter_spec}")
    return {column.strip(): rest[3:]}


def _matches(record: dict, criteria: dict) -> bool:
    for key, expected in criteria.items():
        actual = record.get(key)
        if isinstance(expected, str) and not isinstance(actual, str):
            actual = "" if actual is None else str(actual)
        if actual != expected:
            return False
    return True


@dataclass(eq=False)
class Channel:
    """Handle returned by subscribe(); unsubscribe() stops delivery."""
    bus: "RealtimeBus"
    table: str
    tenant_id: int
    branch_id: int | None
    event: str
    criteria: dict
    callback: Callable[[ChangeEvent], None]
    active: bool = field(default=True)

    def wants(self, change: ChangeEvent) -> bool:
        if not self.active or change.table != self.table:
            return False
        if self.event != "*" and change.event != self.event:
            return False
        # MULTI-TENANT: rows without a tenant_id (child tables) are never delivered
        if change.tenant_id != self.tenant_id:
            return False
        if self.branch_id is not None and change.branch_id not in (None, self.branch_id):
            return False
        return _matches(change.record, self.criteria)

    def unsubscribe(self) -> None:
        self.active = False
        self.bus._remove(self)


class RealtimeBus:
    def __init__(self):
        self._lock = threading.Lock()
        self._channels: list[Channel] = []
        self._listeners: list[Callable[[ChangeEvent], None]] = []

    def subscribe(self, table: str, scope, callback, *, event: str = "*", filter=None) -> Channel:
        """
        Deliver committed changes of one tenant to callback.

        A scope naming a branch also drops rows of the tenant's other
        branches; tenant-level rows (no branch_id) still arrive.
        """
        if event != "*" and event not in EVENTS:
            raise ValueError(f"Unsupported event: {event}")
        channel = Channel(self, table, scope.tenant_id, scope.branch_id, event, parse_filter(filter), callback)
        with self._lock:
            self._channels.append(channel)
        return channel

    def add_listener(self, listener: Callable[[ChangeEvent], None]) -> None:
        """Register an internal listener that sees every change (cache invalidation)."""
        with self._lock:
            self._listeners.append(listener)

    def _remove(self, channel: Channel) -> None:
        with self._lock:
            if channel in self._channels:
                self._channels.remove(channel)

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    def publish(self, changes: list[ChangeEvent]) -> None:
        with self._lock:
            listeners = list(self._listeners)
            channels = list(self._channels)

        for change in changes:
            for listener in listeners:
                listener(change)
            for channel in channels:
                if not channel.wants(change):
                    continue
                try:
                    channel.callback(change)
                except Exception:
                    # One broken subscriber must not block the others
                    current_app.logger.exception(
                        "Failed to deliver %s change on %s", change.event, change.table
                    )


def _pending(session) -> list[ChangeEvent]:
    return session.info.setdefault(_PENDING_KEY, [])


def record_change(obj, event_name: str, session=None) -> None:
    """Queue a change for delivery on the next commit of the session."""
    from ..extensions import db

    session = session or db.session
    record = row_snapshot(obj)
    _pending(session).append(ChangeEvent(
        table=obj.__tablename__,
        event=event_name,
        record=record,
        tenant_id=record.get("tenant_id"),
        branch_id=record.get("branch_id"),
    ))


def _on_after_flush(session, flush_context):
    if not has_app_context() or EXTENSION_KEY not in current_app.extensions:
        return
    pending = _pending(session)
    for obj in session.new:
        pending.append(_change(obj, "INSERT"))
    for obj in session.dirty:
        if session.is_modified(obj, include_collections=False):
            pending.append(_change(obj, "UPDATE"))
    for obj in session.deleted:
        pending.append(_change(obj, "DELETE", loaded_only=True))


def _change(obj, event_name: str, *, loaded_only: bool = False) -> ChangeEvent:
    record = row_snapshot(obj, loaded_only=loaded_only)
    return ChangeEvent(
        table=obj.__tablename__,
        event=event_name,
        record=record,
        tenant_id=record.get("tenant_id"),
        branch_id=record.get("branch_id"),
    )


def _on_after_commit(session):
    # No SQL may be emitted here; subscribers get snapshots only
    changes = session.info.pop(_PENDING_KEY, None)
    if not changes or not has_app_context():
        return
    bus = current_app.extensions.get(EXTENSION_KEY)
    if bus is not None:
        bus.publish(changes)


def _on_after_rollback(session, previous_transaction):
    session.info.pop(_PENDING_KEY, None)


def init_app(app) -> RealtimeBus:
    bus = RealtimeBus()
    app.extensions[EXTENSION_KEY] = bus
    if not event.contains(Session, "after_flush", _on_after_flush):
        event.listen(Session, "after_flush", _on_after_flush)
        event.listen(Session, "after_commit", _on_after_commit)
        event.listen(Session, "after_soft_rollback", _on_after_rollback)
    return bus


def get_bus() -> RealtimeBus:
    return current_app.extensions[EXTENSION_KEY]


def subscription(table: str, scope, callback, *, event: str = "*", filter=None) -> Channel:
    """Subscribe to committed changes on a table, limited to the scope's tenant."""
    return get_bus().subscribe(table, scope, callback, event=event, filter=filter)
