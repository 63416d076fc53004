# Overview: Service-layer operations for purchase orders; create, update, cancel, receive.

"""
Purchase Orders

WHY: Receiving a purchase order is the only flow that increments stock.
The receipt runs as one transaction:

1. Lock the order; reject it if already received or cancelled
2. Record received_quantity per line
3. Atomically increment each product's stock (products_service.adjust_stock)
4. Mark the order received (delivery_date, received_by)
5. Commit once

PurchaseOrder.version_id makes a concurrent second receipt fail with
StaleDataError; the retry then sees status=received and is rejected, so
stock is never incremented twice.
"""

from __future__ import annotations

import secrets
import string
from typing import Any

from ..extensions import db
from ..models import Product, PurchaseOrder, PurchaseOrderItem, Supplier
from ..time_utils import parse_iso_date, today, utcnow
from ..validation import MAX_AMOUNT, ValidationError, coerce_int, require_positive_int
from .concurrency import lock_for_update, run_with_retry
from .listing import like_pattern, paginate
from .products_service import adjust_stock, product_exists
from .settings_service import get_setting
from .tenant_service import Scope, scoped_query

EDITABLE_STATUSES = ("pending", "ordered")
HEADER_FIELDS = ("expected_delivery_date", "payment_status", "notes", "status", "discount", "tax")
_ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


class PurchaseError(Exception):
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def generate_order_number(scope: Scope) -> str:
    """PO<yy><mm><6 random chars>, unique within the branch."""
    now = utcnow()
    prefix = f"PO{now:%y}{now:%m}"
    for _ in range(10):
        candidate = prefix + "".join(secrets.choice(_ORDER_NUMBER_ALPHABET) for _ in range(6))
        exists = scoped_query(PurchaseOrder, scope).filter(PurchaseOrder.order_number == candidate).first()
        if not exists:
            return candidate
    raise PurchaseError("Could not allocate an order number")


def _parse_date(value, field: str):
    if value in (None, ""):
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be an ISO-8601 date")
    try:
        return parse_iso_date(value)
    except ValueError as exc:
        raise ValidationError(f"{field} must be an ISO-8601 date") from exc


def _amount(value, field: str, default: int = 0) -> int:
    if value is None:
        return default
    amount = coerce_int(value, field)
    if amount < 0:
        raise ValidationError(f"{field} must be >= 0")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT}")
    return amount


def _build_items(scope: Scope, raw_items: Any) -> list[PurchaseOrderItem]:
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("At least one item is required")

    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object")

        product = None
        product_id = raw.get("product_id")
        if product_id is not None:
            product = scoped_query(Product, scope).filter(
                Product.id == coerce_int(product_id, "product_id")
            ).first()
            if product is None:
                raise ValidationError(f"items[{index}]: product not found")

        name = (raw.get("product_name") or (product.name if product else "")).strip()
        if not name:
            raise ValidationError(f"items[{index}]: product_name is required")

        quantity = require_positive_int(raw.get("quantity"), f"items[{index}].quantity")
        unit_cost = _amount(raw.get("unit_cost"), f"items[{index}].unit_cost",
                            default=product.cost_price if product else 0)

        items.append(PurchaseOrderItem(
            product_id=product.id if product else None,
            product_name=name,
            quantity=quantity,
            unit_cost=unit_cost,
            total_cost=quantity * unit_cost,
            received_quantity=0,
            batch_number=raw.get("batch_number"),
            expiry_date=_parse_date(raw.get("expiry_date"), f"items[{index}].expiry_date"),
            notes=raw.get("notes"),
        ))
    return items


def _recalculate(scope: Scope, order: PurchaseOrder, tax: int | None) -> None:
    order.subtotal = sum(item.total_cost for item in order.items)
    if tax is None:
        rate = get_setting(scope, "inventory", "purchase_tax_rate") or 0
        tax = round(order.subtotal * rate / 100)
    order.tax = tax
    order.total_amount = order.subtotal + order.tax - (order.discount or 0)
    if order.total_amount < 0:
        raise ValidationError("Discount cannot exceed subtotal plus tax")


def create_purchase_order(scope: Scope, payload: dict) -> PurchaseOrder:
    """
    Create an order with its items.

    Tax defaults to the branch's inventory.purchase_tax_rate percentage of the
    subtotal when the payload does not carry an explicit tax amount.
    """
    branch_id = scope.require_branch()
    supplier_id = payload.get("supplier_id")
    if supplier_id is None:
        raise ValidationError("supplier_id is required")
    supplier = scoped_query(Supplier, scope).filter(
        Supplier.id == coerce_int(supplier_id, "supplier_id")
    ).first()
    if supplier is None:
        raise ValidationError("Supplier not found")

    order = PurchaseOrder(
        tenant_id=scope.tenant_id,
        branch_id=branch_id,
        supplier_id=supplier.id,
        order_number=generate_order_number(scope),
        order_date=_parse_date(payload.get("order_date"), "order_date") or today(),
        expected_delivery_date=_parse_date(payload.get("expected_delivery_date"), "expected_delivery_date"),
        discount=_amount(payload.get("discount"), "discount"),
        status="pending",
        payment_status="pending",
        notes=payload.get("notes"),
        created_by=scope.user_id,
    )
    order.items = _build_items(scope, payload.get("items"))
    _recalculate(scope, order, _amount(payload["tax"], "tax") if payload.get("tax") is not None else None)

    db.session.add(order)
    db.session.commit()
    return order


def list_purchase_orders(
    scope: Scope,
    *,
    status: str | None = None,
    payment_status: str | None = None,
    supplier_id: int | None = None,
    search: str | None = None,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    query = scoped_query(PurchaseOrder, scope)
    if status and status != "all":
        query = query.filter(PurchaseOrder.status == status)
    if payment_status and payment_status != "all":
        query = query.filter(PurchaseOrder.payment_status == payment_status)
    if supplier_id is not None:
        query = query.filter(PurchaseOrder.supplier_id == supplier_id)
    if search:
        query = query.filter(PurchaseOrder.order_number.ilike(like_pattern(search), escape="\\"))
    query = query.order_by(PurchaseOrder.order_date.desc(), PurchaseOrder.id.desc())
    return paginate(query, page, per_page)


def get_purchase_order(order_id: int, scope: Scope) -> PurchaseOrder | None:
    return scoped_query(PurchaseOrder, scope).filter(PurchaseOrder.id == order_id).first()


def purchase_order_detail(order: PurchaseOrder) -> dict:
    data = order.to_dict()
    data["items"] = [item.to_dict() for item in order.items]
    data["supplier"] = order.supplier.to_dict() if order.supplier else None
    return data


def update_purchase_order(order_id: int, scope: Scope, payload: dict) -> PurchaseOrder | None:
    """
    Update header fields and optionally replace the items.

    Received and cancelled orders are frozen. Status can move between
    pending and ordered here; receiving and cancelling have their own
    operations.
    """
    order = get_purchase_order(order_id, scope)
    if order is None:
        return None
    if order.status not in EDITABLE_STATUSES:
        raise PurchaseError(f"Cannot edit a {order.status} purchase order", {"status": order.status})

    unknown = set(payload) - set(HEADER_FIELDS) - {"items"}
    if unknown:
        raise ValidationError(f"Field not allowed: {sorted(unknown)[0]}")

    if "status" in payload:
        if payload["status"] not in EDITABLE_STATUSES:
            raise ValidationError("status must be one of: pending, ordered")
        order.status = payload["status"]
    if "payment_status" in payload:
        if payload["payment_status"] not in ("pending", "partial", "paid"):
            raise ValidationError("payment_status must be one of: pending, partial, paid")
        order.payment_status = payload["payment_status"]
    if "expected_delivery_date" in payload:
        order.expected_delivery_date = _parse_date(payload["expected_delivery_date"], "expected_delivery_date")
    if "notes" in payload:
        order.notes = payload["notes"]
    if "discount" in payload:
        order.discount = _amount(payload["discount"], "discount")
    if "items" in payload:
        order.items = _build_items(scope, payload["items"])

    tax = _amount(payload["tax"], "tax") if payload.get("tax") is not None else order.tax
    if "items" in payload and payload.get("tax") is None:
        tax = None
    _recalculate(scope, order, tax)

    db.session.commit()
    return order


def cancel_purchase_order(order_id: int, scope: Scope) -> PurchaseOrder | None:
    order = get_purchase_order(order_id, scope)
    if order is None:
        return None
    if order.status == "received":
        raise PurchaseError("Cannot cancel a received purchase order", {"status": order.status})
    order.status = "cancelled"
    db.session.commit()
    return order


def delete_purchase_order(order_id: int, scope: Scope, *, commit: bool = True) -> bool:
    order = get_purchase_order(order_id, scope)
    if order is None:
        return False
    if order.status == "received":
        raise PurchaseError("Cannot delete a received purchase order", {"status": order.status})
    db.session.delete(order)
    if commit:
        db.session.commit()
    return True


def receive_purchase_order(
    order_id: int,
    scope: Scope,
    received_items: list[dict] | None = None,
) -> PurchaseOrder:
    """
    Receive an order into stock.

    received_items: optional [{"item_id": .., "received_quantity": ..}].
    Lines not listed are received in full.
    """
    overrides = {}
    for entry in received_items or []:
        if not isinstance(entry, dict):
            raise ValidationError("items entries must be objects")
        item_id = coerce_int(entry.get("item_id"), "item_id")
        received = coerce_int(entry.get("received_quantity"), "received_quantity")
        if received < 0:
            raise ValidationError("received_quantity must be >= 0")
        overrides[item_id] = received

    def _op():
        order = lock_for_update(
            scoped_query(PurchaseOrder, scope).filter(PurchaseOrder.id == order_id)
        ).first()
        if order is None:
            raise PurchaseError("Purchase order not found", {"order_id": order_id})
        if order.status == "received":
            raise PurchaseError("Purchase order already received", {"order_id": order.id})
        if order.status == "cancelled":
            raise PurchaseError("Cannot receive a cancelled purchase order", {"order_id": order.id})

        unknown = set(overrides) - {item.id for item in order.items}
        if unknown:
            raise PurchaseError("Unknown purchase order item", {"item_ids": sorted(unknown)})

        for item in order.items:
            item.received_quantity = overrides.get(item.id, item.quantity)
            if item.received_quantity > 0 and product_exists(item.product_id, scope):
                adjust_stock(item.product_id, item.received_quantity, scope)

        order.status = "received"
        order.delivery_date = today()
        order.received_by = scope.user_id
        db.session.commit()
        return order

    return run_with_retry(_op)
