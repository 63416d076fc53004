# Overview: Service-layer operations for stock audits; counting and applying differences.

"""
Stock Audits

WHY: Shelf counts drift from system stock (breakage, theft, data entry).
An audit records what was counted and, on completion, corrects stock.

LIFECYCLE:
    pending -> in_progress (first count recorded) -> completed | cancelled
Completed and cancelled audits are frozen.

COMPLETION (complete_audit) runs as one transaction:
1. Lock the audit; reject it unless pending or in_progress
2. For every counted item whose product still exists, apply
   difference = actual - expected with products_service.adjust_stock
3. Mark the audit completed (completed_at, completed_by)

The difference is applied as a delta, not by writing the counted quantity
back, so sales saved between the count and the completion are kept.
StockAudit.version_id turns a concurrent second completion into a
StaleDataError; the retry sees status=completed and is rejected.
"""

from __future__ import annotations

from datetime import date
from typing import Any

from sqlalchemy import func

from ..extensions import db
from ..models import STOCK_AUDIT_STATUSES, Product, StockAudit, StockAuditItem
from ..time_utils import parse_iso_date, start_of_month, today, utcnow
from ..validation import ValidationError, coerce_int
from .concurrency import lock_for_update, run_with_retry
from .listing import paginate
from .products_service import adjust_stock, product_exists
from .tenant_service import Scope, scoped_query

OPEN_STATUSES = ("pending", "in_progress")


class AuditError(Exception):
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def _audit_date(value: Any) -> date:
    if value in (None, ""):
        return today()
    if isinstance(value, str):
        try:
            parsed = parse_iso_date(value)
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed
    raise ValidationError("audit_date must be an ISO-8601 date")


def _product_ids(raw: Any) -> list[int]:
    if not isinstance(raw, list):
        raise ValidationError("product_ids must be a list")
    ids = []
    for index, value in enumerate(raw):
        product_id = coerce_int(value, f"product_ids[{index}]")
        if product_id not in ids:
            ids.append(product_id)
    return ids


def _add_items(audit: StockAudit, scope: Scope, product_ids: list[int]) -> None:
    present = {item.product_id for item in audit.items}
    for product_id in product_ids:
        if product_id in present:
            continue
        product = scoped_query(Product, scope).filter(Product.id == product_id).first()
        if product is None:
            raise AuditError("Product not found", {"product_id": product_id})
        audit.items.append(StockAuditItem(
            product_id=product.id,
            product_name=product.name,
            expected_quantity=product.quantity,
        ))
        present.add(product.id)


def _open_audit(audit_id: int, scope: Scope) -> StockAudit:
    audit = lock_for_update(scoped_query(StockAudit, scope).filter(StockAudit.id == audit_id)).first()
    if audit is None:
        raise AuditError("Audit not found", {"audit_id": audit_id})
    if audit.status not in OPEN_STATUSES:
        raise AuditError(f"Audit is {audit.status}", {"audit_id": audit_id, "status": audit.status})
    return audit


def get_audit(audit_id: int, scope: Scope) -> StockAudit | None:
    return scoped_query(StockAudit, scope).filter(StockAudit.id == audit_id).first()


def audit_detail(audit: StockAudit) -> dict:
    data = audit.to_dict()
    data["items"] = [item.to_dict() for item in audit.items]
    return data


def create_audit(scope: Scope, payload: dict) -> StockAudit:
    """
    Start an audit.

    Body keys: audit_date (default today), notes, and either product_ids or
    all_products=true (every active product of the branch). Each item's
    expected quantity is the product's stock at this moment.
    """
    branch_id = scope.require_branch()

    if payload.get("all_products"):
        product_ids = [
            row.id for row in scoped_query(Product, scope)
            .filter(Product.status == "active")
            .order_by(Product.name)
            .with_entities(Product.id)
        ]
    else:
        product_ids = _product_ids(payload.get("product_ids") or [])

    audit = StockAudit(
        tenant_id=scope.tenant_id,
        branch_id=branch_id,
        user_id=scope.user_id,
        audit_date=_audit_date(payload.get("audit_date")),
        notes=payload.get("notes"),
        status="pending",
    )
    db.session.add(audit)
    try:
        _add_items(audit, scope, product_ids)
    except AuditError:
        db.session.rollback()
        raise
    db.session.commit()
    return audit


def record_counts(audit_id: int, scope: Scope, counts: Any) -> StockAudit:
    """
    Record shelf counts: counts=[{product_id, actual_quantity, notes?}].

    A product not yet in the audit is added with its current stock as the
    expected quantity. The first count moves a pending audit to in_progress.
    """
    if not isinstance(counts, list) or not counts:
        raise ValidationError("counts must be a non-empty list")

    parsed = []
    for index, raw in enumerate(counts):
        if not isinstance(raw, dict):
            raise ValidationError(f"counts[{index}] must be an object")
        product_id = coerce_int(raw.get("product_id"), f"counts[{index}].product_id")
        actual = coerce_int(raw.get("actual_quantity"), f"counts[{index}].actual_quantity")
        if actual < 0:
            raise ValidationError(f"counts[{index}].actual_quantity must be >= 0")
        parsed.append((product_id, actual, raw.get("notes")))

    def _op():
        audit = _open_audit(audit_id, scope)
        _add_items(audit, scope, [product_id for product_id, _actual, _notes in parsed])

        by_product = {item.product_id: item for item in audit.items}
        for product_id, actual, notes in parsed:
            item = by_product[product_id]
            item.actual_quantity = actual
            if notes is not None:
                item.notes = notes

        audit.status = "in_progress"
        db.session.commit()
        return audit

    return run_with_retry(_op)


def complete_audit(audit_id: int, scope: Scope) -> StockAudit:
    """Apply every counted difference to stock and freeze the audit."""
    def _op():
        audit = _open_audit(audit_id, scope)
        if audit.counted_items == 0:
            raise AuditError("Nothing has been counted", {"audit_id": audit_id})

        for item in audit.items:
            if item.difference and product_exists(item.product_id, scope):
                adjust_stock(item.product_id, item.difference, scope)

        audit.status = "completed"
        audit.completed_at = utcnow()
        audit.completed_by = scope.user_id
        db.session.commit()
        return audit

    return run_with_retry(_op)


def cancel_audit(audit_id: int, scope: Scope) -> StockAudit:
    def _op():
        audit = _open_audit(audit_id, scope)
        audit.status = "cancelled"
        db.session.commit()
        return audit

    return run_with_retry(_op)


def list_audits(
    scope: Scope,
    *,
    status: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """Audits newest first."""
    query = scoped_query(StockAudit, scope)
    if status and status != "all":
        if status not in STOCK_AUDIT_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(STOCK_AUDIT_STATUSES)}")
        query = query.filter(StockAudit.status == status)
    if date_from is not None:
        query = query.filter(StockAudit.audit_date >= date_from)
    if date_to is not None:
        query = query.filter(StockAudit.audit_date <= date_to)

    return paginate(query.order_by(StockAudit.audit_date.desc(), StockAudit.id.desc()), page, per_page)


def audit_stats(scope: Scope) -> dict:
    base = scoped_query(StockAudit, scope)
    month_start = start_of_month(utcnow())

    pending = base.filter(StockAudit.status.in_(OPEN_STATUSES)).with_entities(func.count(StockAudit.id)).scalar()
    completed = base.filter(
        StockAudit.status == "completed",
        StockAudit.completed_at >= month_start,
    ).with_entities(func.count(StockAudit.id)).scalar()

    return {
        "pending_audits": pending,
        "completed_audits_this_month": completed,
    }
