"""
Sales Service - draft editing and atomic sale save

WHY: A cashier builds a sale as a draft (header + line items) and then
saves it. The draft is plain in-memory state with derived totals; the save
writes header, items and stock changes in ONE transaction.

SAVE SEQUENCE (save_draft):
1. New sale: insert header with a SALE-<epoch ms> transaction number.
   Existing sale: return the old lines' quantities to stock, overwrite the
   allow-listed header fields, drop the old items.
2. Insert the draft's lines as the sale's items.
3. Decrement each product's stock by the line quantity, floored at zero,
   with an atomic UPDATE (never a snapshot written back).
4. Commit. Any failure rolls back every step above.

INVARIANTS (hold for every draft and every saved sale):
- subtotal == sum(line.total_price)
- total_amount == subtotal - discount + tax
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sqlalchemy import func

from ..extensions import db
from ..models import (
    PAYMENT_METHODS,
    PAYMENT_STATUSES,
    SALE_STATUSES,
    Branch,
    Customer,
    Product,
    Sale,
    SaleItem,
    Tenant,
)
from ..time_utils import epoch_millis, parse_iso_date, start_of_month, today, utcnow
from ..validation import MAX_AMOUNT, ConflictError, ValidationError, coerce_int, require_positive_int
from .concurrency import run_with_retry
from .listing import like_pattern, paginate
from .products_service import adjust_stock, product_exists
from .refund_service import refund_stats, refunded_total
from .tenant_service import Scope, scoped_query

NEW_SALE = "new"

# Header fields an edit may overwrite; everything else on the row is fixed
EDITABLE_SALE_FIELDS = (
    "sale_date",
    "customer_id",
    "subtotal",
    "tax",
    "discount",
    "total_amount",
    "payment_method",
    "payment_status",
    "status",
    "notes",
)


class SaleError(Exception):
    """Raised for sale operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


@dataclass(frozen=True)
class ProductSnapshot:
    """Product as seen when it was picked into the draft."""
    id: int
    name: str
    price: int
    cost_price: int | None
    quantity: int

    @classmethod
    def from_product(cls, product: Product) -> "ProductSnapshot":
        return cls(
            id=product.id,
            name=product.name,
            price=product.price,
            cost_price=product.cost_price,
            quantity=product.quantity,
        )


@dataclass
class DraftLine:
    product: ProductSnapshot
    quantity: int
    unit_price: int
    discount_amount: int = 0
    item_id: int | None = None

    @property
    def total_price(self) -> int:
        return self.quantity * self.unit_price

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "product_id": self.product.id,
            "product_name": self.product.name,
            "available_quantity": self.product.quantity,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "total_price": self.total_price,
            "discount_amount": self.discount_amount,
        }


def _non_negative_amount(value: Any, field_name: str) -> int:
    amount = coerce_int(value, field_name)
    if amount < 0:
        raise ValidationError(f"{field_name} must be >= 0")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"{field_name} cannot exceed {MAX_AMOUNT}")
    return amount


@dataclass
class SaleDraft:
    """
    Editable sale: header fields plus an ordered list of lines keyed by product.

    subtotal and total_amount are properties, so they are recomputed after
    every add/remove/quantity/tax/discount change by construction.
    """
    sale_id: int | None = None
    transaction_number: str | None = None
    sale_date: date = field(default_factory=today)
    customer_id: int | None = None
    payment_method: str = "cash"
    payment_status: str = "completed"
    status: str = "completed"
    notes: str | None = None
    tax: int = 0
    discount: int = 0
    lines: list[DraftLine] = field(default_factory=list)

    @property
    def is_new(self) -> bool:
        return self.sale_id is None

    @property
    def subtotal(self) -> int:
        return sum(line.total_price for line in self.lines)

    @property
    def total_amount(self) -> int:
        return self.subtotal - self.discount + self.tax

    def find_line(self, product_id: int) -> int | None:
        for index, line in enumerate(self.lines):
            if line.product.id == product_id:
                return index
        return None

    def add_product(self, product: ProductSnapshot) -> DraftLine:
        """
        Existing line: +1, but never past the product's available stock.
        Otherwise append a line of 1 at the product's current price.
        """
        index = self.find_line(product.id)
        if index is not None:
            line = self.lines[index]
            if line.quantity < product.quantity:
                line.quantity += 1
            return line

        line = DraftLine(product=product, quantity=1, unit_price=product.price)
        self.lines.append(line)
        return line

    def remove_line(self, index: int) -> None:
        if 0 <= index < len(self.lines):
            del self.lines[index]

    def update_quantity(self, index: int, quantity: int) -> bool:
        """
        Set a line's quantity if 1 <= quantity <= available stock.

        Out-of-range values are ignored; returns whether the change applied.
        """
        if not 0 <= index < len(self.lines):
            return False
        line = self.lines[index]
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            return False
        if 0 < quantity <= line.product.quantity:
            line.quantity = quantity
            return True
        return False

    def set_tax(self, tax: Any) -> None:
        self.tax = _non_negative_amount(tax, "tax")

    def set_discount(self, discount: Any) -> None:
        self.discount = _non_negative_amount(discount, "discount")

    def set_customer(self, customer_id: int | None) -> None:
        self.customer_id = customer_id

    def set_header(self, **fields) -> None:
        """Set sale_date, payment_method, payment_status, status or notes."""
        for key, value in fields.items():
            if key == "sale_date":
                self.sale_date = _parse_sale_date(value)
            elif key == "payment_method":
                self.payment_method = _choice(value, PAYMENT_METHODS, key)
            elif key == "payment_status":
                self.payment_status = _choice(value, PAYMENT_STATUSES, key)
            elif key == "status":
                self.status = _choice(value, SALE_STATUSES, key)
            elif key == "notes":
                self.notes = value.strip() if isinstance(value, str) and value.strip() else None
            else:
                raise ValidationError(f"Field not allowed: {key}")

    def to_dict(self) -> dict:
        return {
            "sale_id": self.sale_id,
            "transaction_number": self.transaction_number,
            "sale_date": self.sale_date.isoformat() if self.sale_date else None,
            "customer_id": self.customer_id,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "status": self.status,
            "notes": self.notes,
            "subtotal": self.subtotal,
            "tax": self.tax,
            "discount": self.discount,
            "total_amount": self.total_amount,
            "items": [line.to_dict() for line in self.lines],
        }


def _choice(value: Any, choices: tuple[str, ...], field_name: str) -> str:
    if value not in choices:
        raise ValidationError(f"{field_name} must be one of: {', '.join(choices)}")
    return value


def _parse_sale_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            parsed = parse_iso_date(value)
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed
    raise ValidationError("sale_date must be an ISO-8601 date")


def _get_sale(sale_id: int, scope: Scope) -> Sale | None:
    return scoped_query(Sale, scope).filter(Sale.id == sale_id).first()


def load_draft(sale_id: int | str, scope: Scope) -> SaleDraft:
    """
    "new" yields an empty draft dated today (cash, completed).
    An identifier loads the saved header and items of a sale in scope.
    """
    if sale_id == NEW_SALE or sale_id is None:
        return SaleDraft()

    sale = _get_sale(coerce_int(sale_id, "sale_id"), scope)
    if sale is None:
        raise SaleError("Sale not found", {"sale_id": sale_id})

    lines = []
    for item in sale.items:
        product = item.product
        snapshot = ProductSnapshot(
            id=item.product_id,
            name=item.product_name,
            price=product.price if product else item.unit_price,
            cost_price=item.cost_price,
            quantity=product.quantity if product else 0,
        )
        lines.append(DraftLine(
            product=snapshot,
            quantity=item.quantity,
            unit_price=item.unit_price,
            discount_amount=item.discount_amount or 0,
            item_id=item.id,
        ))

    return SaleDraft(
        sale_id=sale.id,
        transaction_number=sale.transaction_number,
        sale_date=sale.sale_date,
        customer_id=sale.customer_id,
        payment_method=sale.payment_method,
        payment_status=sale.payment_status,
        status=sale.status,
        notes=sale.notes,
        tax=sale.tax,
        discount=sale.discount,
        lines=lines,
    )


def product_snapshot(product_id: int, scope: Scope) -> ProductSnapshot:
    product = scoped_query(Product, scope).filter(Product.id == product_id).first()
    if product is None:
        raise SaleError("Product not found", {"product_id": product_id})
    return ProductSnapshot.from_product(product)


def draft_from_payload(payload: dict, scope: Scope, sale_id: int | str = NEW_SALE) -> SaleDraft:
    """
    Build the draft a client submits.

    Payload keys: header fields, tax, discount, customer_id and
    items=[{product_id, quantity, unit_price?, discount_amount?}].
    On an edit, keys that are absent keep their saved values; an "items"
    key (even an empty list) replaces every line.
    Each product's total quantity must fit its stock; on an edit the units
    the sale already holds count as available.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    allowed = {"sale_date", "payment_method", "payment_status", "status", "notes",
               "tax", "discount", "customer_id", "items"}
    unknown = sorted(set(payload) - allowed)
    if unknown:
        raise ValidationError(f"Field not allowed: {unknown[0]}")

    draft = load_draft(sale_id, scope)

    draft.set_header(**{k: payload[k] for k in ("sale_date", "payment_method", "payment_status", "status", "notes")
                        if k in payload})
    if "tax" in payload:
        draft.set_tax(payload["tax"] if payload["tax"] is not None else 0)
    if "discount" in payload:
        draft.set_discount(payload["discount"] if payload["discount"] is not None else 0)
    if "customer_id" in payload:
        customer_id = payload["customer_id"]
        draft.set_customer(coerce_int(customer_id, "customer_id") if customer_id not in (None, "") else None)

    if "items" in payload:
        raw_items = payload["items"]
        if not isinstance(raw_items, list):
            raise ValidationError("items must be a list")
        # Units this sale already took out of stock go back before the edit is saved
        held: dict[int, int] = {}
        for line in draft.lines:
            held[line.product.id] = held.get(line.product.id, 0) + line.quantity

        requested: dict[int, int] = {}
        lines = []
        for index, raw in enumerate(raw_items):
            if not isinstance(raw, dict) or raw.get("product_id") is None:
                raise ValidationError(f"items[{index}].product_id is required")
            snapshot = product_snapshot(coerce_int(raw["product_id"], "product_id"), scope)
            quantity = require_positive_int(raw.get("quantity", 1), f"items[{index}].quantity")

            requested[snapshot.id] = requested.get(snapshot.id, 0) + quantity
            available = snapshot.quantity + held.get(snapshot.id, 0)
            if requested[snapshot.id] > available:
                raise SaleError("Insufficient stock", {
                    "product_id": snapshot.id,
                    "requested": requested[snapshot.id],
                    "available": available,
                })

            unit_price = raw.get("unit_price")
            lines.append(DraftLine(
                product=snapshot,
                quantity=quantity,
                unit_price=(
                    _non_negative_amount(unit_price, f"items[{index}].unit_price")
                    if unit_price is not None else snapshot.price
                ),
                discount_amount=_non_negative_amount(
                    raw.get("discount_amount") or 0, f"items[{index}].discount_amount"
                ),
            ))
        draft.lines = lines

    return draft


def generate_transaction_number(scope: Scope) -> str:
    """SALE-<epoch ms>; bumps the millisecond until unique in the branch."""
    stamp = epoch_millis()
    while True:
        candidate = f"SALE-{stamp}"
        taken = scoped_query(Sale, scope).filter(Sale.transaction_number == candidate).first()
        if not taken:
            return candidate
        stamp += 1


def _restock_items(sale: Sale, scope: Scope) -> None:
    for item in sale.items:
        if product_exists(item.product_id, scope):
            adjust_stock(item.product_id, item.quantity, scope)


def save_draft(draft: SaleDraft, scope: Scope) -> Sale:
    """
    Persist the draft and its stock effects in one transaction.

    Editing replaces the items wholesale: the saved sale ends up with exactly
    the draft's lines, so a draft with zero lines leaves zero items.
    """
    branch_id = scope.require_branch()

    def _op():
        if draft.customer_id is not None:
            customer = scoped_query(Customer, scope).filter(Customer.id == draft.customer_id).first()
            if customer is None:
                raise SaleError("Customer not found", {"customer_id": draft.customer_id})

        if draft.is_new:
            sale = Sale(
                tenant_id=scope.tenant_id,
                branch_id=branch_id,
                cashier_id=scope.user_id,
                transaction_number=generate_transaction_number(scope),
            )
            db.session.add(sale)
            # New sales are always recorded as completed
            sale.status = "completed"
            fields = tuple(f for f in EDITABLE_SALE_FIELDS if f != "status")
        else:
            sale = _get_sale(draft.sale_id, scope)
            if sale is None:
                raise SaleError("Sale not found", {"sale_id": draft.sale_id})
            refunded = refunded_total(sale.id)
            if draft.total_amount < refunded:
                raise SaleError(
                    "Sale total cannot drop below the amount already refunded",
                    {"total_amount": draft.total_amount, "refunded": refunded},
                )
            _restock_items(sale, scope)
            fields = EDITABLE_SALE_FIELDS

        for key in fields:
            setattr(sale, key, getattr(draft, key))

        # Lines kept from an edit may point at a product that is gone
        present = {line.product.id for line in draft.lines if product_exists(line.product.id, scope)}
        sale.items = [
            SaleItem(
                product_id=line.product.id if line.product.id in present else None,
                product_name=line.product.name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                total_price=line.total_price,
                cost_price=line.product.cost_price,
                discount_amount=line.discount_amount,
            )
            for line in draft.lines
        ]
        db.session.flush()

        for line in draft.lines:
            if line.product.id in present:
                adjust_stock(line.product.id, -line.quantity, scope)

        db.session.commit()
        return sale

    sale = run_with_retry(_op)
    draft.sale_id = sale.id
    draft.transaction_number = sale.transaction_number
    return sale


def delete_sale(sale_id: int, scope: Scope) -> bool:
    """
    Remove a sale and its items. Stock is not returned.

    Raises ConflictError when refunds point at the sale.
    """
    sale = _get_sale(sale_id, scope)
    if sale is None:
        return False
    if sale.refunds:
        raise ConflictError("Cannot delete a sale with refunds")
    db.session.delete(sale)
    db.session.commit()
    return True


def _sale_row(sale: Sale) -> dict:
    data = sale.to_dict()
    data["customer_name"] = sale.customer.full_name if sale.customer else None
    data["cashier_name"] = sale.cashier.full_name if sale.cashier else None
    data["item_count"] = len(sale.items)
    return data


def list_sales(
    scope: Scope,
    *,
    search: str | None = None,
    status: str | None = None,
    payment_method: str | None = None,
    payment_status: str | None = None,
    customer_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """Sales history, newest first."""
    query = scoped_query(Sale, scope)

    if search:
        pattern = like_pattern(search)
        query = query.outerjoin(Customer, Customer.id == Sale.customer_id).filter(db.or_(
            Sale.transaction_number.ilike(pattern, escape="\\"),
            Customer.first_name.ilike(pattern, escape="\\"),
            Customer.last_name.ilike(pattern, escape="\\"),
        ))
    if status and status != "all":
        query = query.filter(Sale.status == status)
    if payment_method and payment_method != "all":
        query = query.filter(Sale.payment_method == payment_method)
    if payment_status and payment_status != "all":
        query = query.filter(Sale.payment_status == payment_status)
    if customer_id is not None:
        query = query.filter(Sale.customer_id == customer_id)
    if date_from is not None:
        query = query.filter(Sale.sale_date >= date_from)
    if date_to is not None:
        query = query.filter(Sale.sale_date <= date_to)

    query = query.order_by(Sale.sale_date.desc(), Sale.id.desc())
    return paginate(query, page, per_page, serialize=_sale_row)


def sales_stats(scope: Scope) -> dict:
    """
    Totals for the sales history screen.

    Cancelled sales are excluded from counts and revenue.
    net_revenue is revenue minus completed refunds.
    """
    base = scoped_query(Sale, scope).filter(Sale.status != "cancelled")
    current_day = today()
    month_start = start_of_month(utcnow()).date()

    def _totals(query):
        count, revenue = query.with_entities(
            func.count(Sale.id), func.coalesce(func.sum(Sale.total_amount), 0)
        ).one()
        return count, int(revenue)

    total_count, total_revenue = _totals(base)
    today_count, today_revenue = _totals(base.filter(Sale.sale_date == current_day))
    month_count, month_revenue = _totals(base.filter(Sale.sale_date >= month_start))

    stats = {
        "total_sales": total_count,
        "total_revenue": total_revenue,
        "today_sales": today_count,
        "today_revenue": today_revenue,
        "month_sales": month_count,
        "month_revenue": month_revenue,
        "average_order_value": round(total_revenue / total_count) if total_count else 0,
    }
    refunds = refund_stats(scope)
    stats["total_refunds"] = refunds["total_refunds"]
    stats["refund_amount"] = refunds["refund_amount"]
    stats["net_revenue"] = total_revenue - refunds["refund_amount"]
    return stats


def get_sale_detail(sale_id: int, scope: Scope) -> dict:
    """Sale with items, customer, cashier, branch and tenant for the detail view and receipts."""
    sale = _get_sale(sale_id, scope)
    if sale is None:
        raise SaleError("Sale not found", {"sale_id": sale_id})

    branch = db.session.get(Branch, sale.branch_id)
    tenant = db.session.get(Tenant, sale.tenant_id)
    cashier = sale.cashier

    return {
        "sale": sale.to_dict(),
        "items": [item.to_dict() for item in sale.items],
        "customer": sale.customer.to_dict() if sale.customer else None,
        "cashier": {
            "id": cashier.id,
            "first_name": cashier.first_name,
            "last_name": cashier.last_name,
            "email": cashier.email,
        } if cashier else None,
        "branch": branch.to_dict() if branch else None,
        "tenant": tenant.to_dict() if tenant else None,
    }
