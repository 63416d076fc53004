# Overview: Service-layer operations for suppliers and supplier statistics.

from __future__ import annotations

from sqlalchemy import func

from ..extensions import db
from ..models import PurchaseOrder, Supplier
from ..time_utils import start_of_month, utcnow
from ..validation import ConflictError, ModelValidationPolicy, enforce_non_negative_amounts
from .listing import like_pattern, paginate
from .tenant_service import Scope, scoped_query

SUPPLIER_STATUSES = ("active", "inactive", "suspended")

SUPPLIER_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "contact_person", "email", "phone", "address",
        "tax_number", "payment_terms", "credit_limit", "status", "notes",
    },
    required_on_create={"name"},
    choices={"status": SUPPLIER_STATUSES},
)

SORTABLE_FIELDS = {"name", "created_at", "status"}


def list_suppliers(
    scope: Scope,
    *,
    search: str | None = None,
    status: str | None = None,
    sort_by: str | None = None,
    sort_order: str = "asc",
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    query = scoped_query(Supplier, scope)
    if search:
        pattern = like_pattern(search)
        query = query.filter(db.or_(
            Supplier.name.ilike(pattern, escape="\\"),
            Supplier.email.ilike(pattern, escape="\\"),
            Supplier.phone.ilike(pattern, escape="\\"),
            Supplier.contact_person.ilike(pattern, escape="\\"),
        ))
    if status and status != "all":
        query = query.filter(Supplier.status == status)

    column = getattr(Supplier, sort_by) if sort_by in SORTABLE_FIELDS else Supplier.name
    ordering = column.desc() if sort_order == "desc" else column.asc()
    return paginate(query.order_by(ordering, Supplier.id.asc()), page, per_page)


def get_supplier(supplier_id: int, scope: Scope) -> Supplier | None:
    return scoped_query(Supplier, scope).filter(Supplier.id == supplier_id).first()


def create_supplier(scope: Scope, patch: dict, *, commit: bool = True) -> Supplier:
    branch_id = scope.require_branch()
    supplier = Supplier(tenant_id=scope.tenant_id, branch_id=branch_id, created_by=scope.user_id)
    for key, value in patch.items():
        setattr(supplier, key, value)
    db.session.add(supplier)
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return supplier


def update_supplier(supplier_id: int, scope: Scope, patch: dict) -> Supplier | None:
    supplier = get_supplier(supplier_id, scope)
    if supplier is None:
        return None
    for key, value in patch.items():
        setattr(supplier, key, value)
    db.session.commit()
    return supplier


def delete_supplier(supplier_id: int, scope: Scope, *, commit: bool = True) -> bool:
    """Suppliers with purchase orders are kept; deactivate them instead."""
    supplier = get_supplier(supplier_id, scope)
    if supplier is None:
        return False
    has_orders = scoped_query(PurchaseOrder, scope).filter(PurchaseOrder.supplier_id == supplier.id).first()
    if has_orders:
        raise ConflictError("Cannot delete supplier with purchase orders")
    db.session.delete(supplier)
    if commit:
        db.session.commit()
    return True


def supplier_stats(scope: Scope, *, top: int = 5) -> dict:
    month_start = start_of_month(utcnow())
    suppliers = scoped_query(Supplier, scope)
    orders = scoped_query(PurchaseOrder, scope).filter(PurchaseOrder.status != "cancelled")

    status_counts = dict(
        suppliers.with_entities(Supplier.status, func.count(Supplier.id))
        .group_by(Supplier.status)
        .all()
    )
    order_count, total_spent = orders.with_entities(
        func.count(PurchaseOrder.id), func.coalesce(func.sum(PurchaseOrder.total_amount), 0)
    ).one()
    total_spent = int(total_spent)

    top_rows = (
        orders.join(Supplier, Supplier.id == PurchaseOrder.supplier_id)
        .with_entities(
            Supplier.id,
            Supplier.name,
            func.count(PurchaseOrder.id),
            func.sum(PurchaseOrder.total_amount),
            func.max(PurchaseOrder.order_date),
        )
        .group_by(Supplier.id, Supplier.name)
        .order_by(func.sum(PurchaseOrder.total_amount).desc())
        .limit(top)
        .all()
    )

    return {
        "total_suppliers": sum(status_counts.values()),
        "active_suppliers": status_counts.get("active", 0),
        "inactive_suppliers": status_counts.get("inactive", 0),
        "suspended_suppliers": status_counts.get("suspended", 0),
        "total_purchase_orders": order_count,
        "pending_orders": orders.filter(PurchaseOrder.status == "pending").count(),
        "total_spent": total_spent,
        "average_order_value": round(total_spent / order_count) if order_count else 0,
        "suppliers_added_this_month": suppliers.filter(Supplier.created_at >= month_start).count(),
        "orders_this_month": orders.filter(PurchaseOrder.created_at >= month_start).count(),
        "top_suppliers": [
            {
                "supplier_id": supplier_id,
                "supplier_name": name,
                "total_orders": count,
                "total_spent": int(spent or 0),
                "average_order_value": round(int(spent or 0) / count) if count else 0,
                "last_order_date": last_order.isoformat() if last_order else None,
            }
            for supplier_id, name, count, spent, last_order in top_rows
        ],
    }


def enforce_rules_supplier(patch: dict) -> None:
    enforce_non_negative_amounts(patch, ("credit_limit",))
